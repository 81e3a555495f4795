import logging
import random
import time
from typing import Optional

from errors import (
    AlreadyPlaced,
    DuplicateNode,
    PlacementFailed,
    StoreConflict,
    TreeFull,
    UnknownReferrer,
    ValidationError,
)
from models import TreeNode, require_id
from tree_store import TreeStore

logger = logging.getLogger(__name__)

SUBTREE_FIRST = "subtree_first"
GLOBAL = "global"


class PlacementEngine:
    """
    inserts new members into the referral tree.

    rules:
      - referrer has an open slot -> attach as its next child (direct referral)
      - referrer is full -> breadth-first overflow, level order then position
        order. `subtree_first` searches the referrer's subtree before the whole
        tree; `global` searches the whole tree from the root.
      - the slot claim is a conditional write in the store; losing a race
        means re-reading everything and trying again.
    """

    def __init__(
        self,
        store: TreeStore,
        overflow_policy: str = SUBTREE_FIRST,
        max_depth: Optional[int] = None,
        retry_attempts: int = 5,
        backoff_seconds: float = 0.005,
    ):
        if overflow_policy not in (SUBTREE_FIRST, GLOBAL):
            raise ValueError(f"Unknown overflow policy {overflow_policy!r}")
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        self.store = store
        self.overflow_policy = overflow_policy
        self.max_depth = max_depth
        self.retry_attempts = retry_attempts
        self.backoff_seconds = backoff_seconds

    def can_accept(self, node: TreeNode) -> bool:
        if self.max_depth is not None and node.level >= self.max_depth:
            return False
        return node.has_open_slot(self.store.max_children)

    def place_member(self, referrer_id: Optional[str], new_member_id: str) -> TreeNode:
        """
        place `new_member_id` under `referrer_id` (None = under the root).
        returns the persisted node.
        """
        require_id(new_member_id, "new_member_id")
        if referrer_id is not None:
            require_id(referrer_id, "referrer_id")
            if referrer_id == new_member_id:
                raise ValidationError("Member cannot refer themselves.")

        last_conflict: Optional[StoreConflict] = None

        for attempt in range(1, self.retry_attempts + 1):
            # 1) every attempt starts from freshly persisted state
            if self.store.get_node(new_member_id) is not None:
                raise AlreadyPlaced(new_member_id)

            start = self._resolve_referrer(referrer_id)

            # 2) find the parent: referrer itself, or the first open slot BFS
            parent = self.find_open_parent(start)
            if parent is None:
                raise TreeFull(
                    f"No open slot anywhere in the tree for {new_member_id}"
                )
            position = len(parent.child_slots)

            # 3) conditional claim of (parent, position)
            try:
                node = self.store.create_node(
                    new_member_id, parent.member_id, parent.level + 1, position
                )
            except DuplicateNode:
                # a concurrent placement of the same member won
                raise AlreadyPlaced(new_member_id)
            except StoreConflict as e:
                last_conflict = e
                logger.info(
                    "Placement of %s lost slot race at %s/%s (attempt %d/%d)",
                    new_member_id, parent.member_id, position, attempt, self.retry_attempts,
                )
                self._backoff(attempt)
                continue

            if parent.member_id == start.member_id:
                logger.info(
                    "Placed %s under %s (level=%d, position=%d)",
                    new_member_id, parent.member_id, node.level, node.position,
                )
            else:
                logger.info(
                    "Overflow: placed %s under %s instead of %s (level=%d, position=%d)",
                    new_member_id, parent.member_id, start.member_id, node.level, node.position,
                )
            return node

        logger.error(
            "Placement of %s failed after %d attempts", new_member_id, self.retry_attempts
        )
        raise PlacementFailed(
            f"Could not claim a slot for {new_member_id} after {self.retry_attempts} attempts"
        ) from last_conflict

    def find_open_parent(self, start: TreeNode) -> Optional[TreeNode]:
        """
        first node able to take a child, searching from `start` according to
        the overflow policy. None means the tree is full.
        """
        if self.can_accept(start):
            return start

        if self.overflow_policy == SUBTREE_FIRST:
            found = self._first_open(start)
            if found is not None:
                return found
            if start.is_root:
                return None

        return self._first_open(self.store.get_root())

    def _first_open(self, start: TreeNode) -> Optional[TreeNode]:
        # nodes at max_depth cannot take children, so the search stops above it
        return self.store.find_open_node(start.member_id, max_level=self.max_depth)

    def _resolve_referrer(self, referrer_id: Optional[str]) -> TreeNode:
        if referrer_id is None:
            return self.store.get_root()
        node = self.store.get_node(referrer_id)
        if node is None:
            raise UnknownReferrer(referrer_id)
        return node

    def _backoff(self, attempt: int) -> None:
        if self.backoff_seconds > 0 and attempt < self.retry_attempts:
            time.sleep(random.uniform(0, self.backoff_seconds * attempt))
