import abc
import logging
import threading
from collections import deque
from typing import Dict, List, Optional

from errors import DuplicateNode, SlotConflict, TreeNotInitialized, ValidationError
from models import TreeNode, require_id, utcnow

logger = logging.getLogger(__name__)


class TreeStore(abc.ABC):
    """
    durable mapping member_id -> TreeNode.

    nodes are written exactly once and never edited, so readers can never see
    a node change underneath them. the only write is `create_node`, which is
    an atomic conditional claim of (parent_id, position).
    """

    max_children: int = 3

    @abc.abstractmethod
    def get_node(self, member_id: str) -> Optional[TreeNode]:
        ...

    @abc.abstractmethod
    def create_node(self, member_id: str, parent_id: str, level: int, position: int) -> TreeNode:
        """
        claim `position` under `parent_id` for `member_id`.

        raises:
          - DuplicateNode if member_id already exists
          - SlotConflict if the slot is taken or the parent is full
            (the caller read stale state and should retry)
          - ValidationError if the parent is unknown or level/position are
            inconsistent with it
        """

    @abc.abstractmethod
    def list_children(self, member_id: str) -> List[TreeNode]:
        ...

    @abc.abstractmethod
    def get_ancestors(self, member_id: str) -> List[TreeNode]:
        """
        [parent, grandparent, ..., root] of `member_id`, all read from one
        snapshot. empty for the root or an unknown member.
        """

    @abc.abstractmethod
    def find_open_node(self, start_id: str, max_level: Optional[int] = None) -> Optional[TreeNode]:
        """
        first node under `start_id` (inclusive), in level order then position
        order, that has a free child slot and sits above `max_level`.
        the search reads one snapshot; the slot can still be lost to a
        concurrent claim.
        """

    @abc.abstractmethod
    def get_root(self) -> TreeNode:
        """raises TreeNotInitialized if no root was bootstrapped."""

    @abc.abstractmethod
    def ensure_root(self, member_id: str) -> TreeNode:
        """create the single root if missing. returns the root either way."""

    @abc.abstractmethod
    def list_nodes(self) -> List[TreeNode]:
        """every node, ordered by level then parent order then position."""

    @abc.abstractmethod
    def count_nodes(self) -> int:
        ...

    def _check_claim(self, parent: TreeNode, member_id: str, level: int, position: int) -> None:
        # shared validation, runs under the backend's lock / row lock
        if level != parent.level + 1:
            raise ValidationError(
                f"Level {level} for {member_id} must be parent level + 1 ({parent.level + 1})"
            )
        if not 0 <= position < self.max_children:
            raise ValidationError(
                f"Position {position} out of range [0, {self.max_children - 1}]"
            )
        if len(parent.child_slots) >= self.max_children or len(parent.child_slots) != position:
            raise SlotConflict(parent.member_id, position)


class InMemoryTreeStore(TreeStore):
    """
    process-local store. a single re-entrant lock guards every read and write
    so concurrent placements serialize on the claim step.
    """

    def __init__(self, max_children: int = 3):
        if max_children < 1:
            raise ValueError("max_children must be >= 1")
        self.max_children = max_children
        self._nodes: Dict[str, TreeNode] = {}
        self._children: Dict[str, List[str]] = {}
        self._root_id: Optional[str] = None
        self._lock = threading.RLock()

    def _snapshot(self, member_id: str) -> TreeNode:
        node = self._nodes[member_id]
        children = tuple(self._children.get(member_id, ()))
        if children == node.child_slots:
            return node
        return TreeNode(
            member_id=node.member_id,
            parent_id=node.parent_id,
            level=node.level,
            position=node.position,
            child_slots=children,
            created_at=node.created_at,
        )

    def get_node(self, member_id: str) -> Optional[TreeNode]:
        with self._lock:
            if member_id not in self._nodes:
                return None
            return self._snapshot(member_id)

    def create_node(self, member_id: str, parent_id: str, level: int, position: int) -> TreeNode:
        require_id(member_id, "member_id")
        require_id(parent_id, "parent_id")
        with self._lock:
            if member_id in self._nodes:
                raise DuplicateNode(member_id)
            if parent_id not in self._nodes:
                # parent nodes are never deleted, so this is a caller bug
                raise ValidationError(f"Parent {parent_id} is not in the tree")

            parent = self._snapshot(parent_id)
            self._check_claim(parent, member_id, level, position)

            node = TreeNode(
                member_id=member_id,
                parent_id=parent_id,
                level=level,
                position=position,
                child_slots=(),
                created_at=utcnow(),
            )
            self._nodes[member_id] = node
            self._children.setdefault(parent_id, []).append(member_id)
            self._children[member_id] = []
            return node

    def list_children(self, member_id: str) -> List[TreeNode]:
        with self._lock:
            return [self._snapshot(c) for c in self._children.get(member_id, ())]

    def get_ancestors(self, member_id: str) -> List[TreeNode]:
        with self._lock:
            chain: List[TreeNode] = []
            node = self._nodes.get(member_id)
            # parents always exist before their children here
            while node is not None and node.parent_id is not None:
                node = self._nodes[node.parent_id]
                chain.append(self._snapshot(node.member_id))
            return chain

    def find_open_node(self, start_id: str, max_level: Optional[int] = None) -> Optional[TreeNode]:
        with self._lock:
            if start_id not in self._nodes:
                return None
            queue = deque([start_id])
            while queue:
                node = self._snapshot(queue.popleft())
                if max_level is not None and node.level >= max_level:
                    continue
                if node.has_open_slot(self.max_children):
                    return node
                queue.extend(node.child_slots)
            return None

    def get_root(self) -> TreeNode:
        with self._lock:
            if self._root_id is None:
                raise TreeNotInitialized("Tree has no root; call ensure_root first")
            return self._snapshot(self._root_id)

    def ensure_root(self, member_id: str) -> TreeNode:
        require_id(member_id, "root member_id")
        with self._lock:
            if self._root_id is not None:
                if self._root_id != member_id:
                    logger.warning(
                        "Root already bootstrapped as %s, ignoring %s", self._root_id, member_id
                    )
                return self._snapshot(self._root_id)
            if member_id in self._nodes:
                raise DuplicateNode(member_id)
            self._nodes[member_id] = TreeNode(
                member_id=member_id,
                parent_id=None,
                level=0,
                position=0,
                child_slots=(),
                created_at=utcnow(),
            )
            self._children[member_id] = []
            self._root_id = member_id
            logger.info("Bootstrapped tree root %s", member_id)
            return self._nodes[member_id]

    def list_nodes(self) -> List[TreeNode]:
        # level order walk gives level, then parent order, then position
        with self._lock:
            if self._root_id is None:
                return []
            out: List[TreeNode] = []
            queue = deque([self._root_id])
            while queue:
                current = queue.popleft()
                out.append(self._snapshot(current))
                queue.extend(self._children.get(current, ()))
            return out

    def count_nodes(self) -> int:
        with self._lock:
            return len(self._nodes)
