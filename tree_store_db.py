import logging
from collections import deque
from typing import Dict, List, Optional

from psycopg.errors import UniqueViolation

from db.db import TRANSIENT_ERRORS, get_conn, get_snapshot_conn
from db.repositories import (
    count_tree_nodes,
    find_first_open_node_id,
    get_root_node,
    get_tree_node,
    insert_root_if_missing,
    insert_tree_node,
    list_all_nodes,
    list_ancestor_nodes,
    list_child_nodes,
)
from errors import (
    DuplicateNode,
    SlotConflict,
    StoreConflict,
    TreeNotInitialized,
    ValidationError,
)
from models import TreeNode, require_id
from tree_store import TreeStore

logger = logging.getLogger(__name__)


class PostgresTreeStore(TreeStore):
    """
    DB-backed tree store.

    the slot claim locks the parent row (SELECT ... FOR UPDATE), re-checks its
    child count, then inserts. mlm_tree_slot_unique backs this up, so even a
    writer that skipped the lock could never land on a taken position.
    """

    def __init__(self, dsn: Optional[str] = None, max_children: int = 3):
        self.dsn = dsn
        self.max_children = max_children

    def get_node(self, member_id: str) -> Optional[TreeNode]:
        with get_conn(self.dsn) as conn:
            return get_tree_node(conn, member_id)

    def create_node(self, member_id: str, parent_id: str, level: int, position: int) -> TreeNode:
        require_id(member_id, "member_id")
        require_id(parent_id, "parent_id")
        with get_conn(self.dsn) as conn:
            try:
                # 1) lock the parent; concurrent claims under it queue here
                parent = get_tree_node(conn, parent_id, for_update=True)
                if parent is None:
                    raise ValidationError(f"Parent {parent_id} is not in the tree")

                # 2) member must be new
                if get_tree_node(conn, member_id) is not None:
                    raise DuplicateNode(member_id)

                # 3) re-check the slot against the locked state
                self._check_claim(parent, member_id, level, position)

                node = insert_tree_node(conn, member_id, parent_id, level, position)
                conn.commit()
                return node
            except UniqueViolation as e:
                conn.rollback()
                if e.diag.constraint_name == "mlm_tree_pkey":
                    raise DuplicateNode(member_id) from e
                raise SlotConflict(parent_id, position) from e
            except TRANSIENT_ERRORS as e:
                conn.rollback()
                raise StoreConflict(str(e)) from e
            except Exception:
                conn.rollback()
                raise

    def list_children(self, member_id: str) -> List[TreeNode]:
        with get_conn(self.dsn) as conn:
            return list_child_nodes(conn, member_id)

    def get_ancestors(self, member_id: str) -> List[TreeNode]:
        with get_snapshot_conn(self.dsn) as conn:
            node = get_tree_node(conn, member_id)
            if node is None:
                return []
            return list_ancestor_nodes(conn, member_id, max_hops=node.level)

    def find_open_node(self, start_id: str, max_level: Optional[int] = None) -> Optional[TreeNode]:
        with get_snapshot_conn(self.dsn) as conn:
            found = find_first_open_node_id(conn, start_id, self.max_children, max_level)
            if found is None:
                return None
            return get_tree_node(conn, found)

    def get_root(self) -> TreeNode:
        with get_conn(self.dsn) as conn:
            root = get_root_node(conn)
        if root is None:
            raise TreeNotInitialized("Tree has no root; call ensure_root first")
        return root

    def ensure_root(self, member_id: str) -> TreeNode:
        require_id(member_id, "root member_id")
        with get_conn(self.dsn) as conn:
            try:
                created = insert_root_if_missing(conn, member_id)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            root = get_root_node(conn)

        if root is None:
            # member_id exists as a non-root node and nothing is the root
            raise DuplicateNode(member_id)
        if created:
            logger.info("Bootstrapped tree root %s", member_id)
        elif root.member_id != member_id:
            logger.warning("Root already bootstrapped as %s, ignoring %s", root.member_id, member_id)
        return root

    def list_nodes(self) -> List[TreeNode]:
        with get_snapshot_conn(self.dsn) as conn:
            nodes = list_all_nodes(conn)

        by_id: Dict[str, TreeNode] = {n.member_id: n for n in nodes}
        roots = [n for n in nodes if n.parent_id is None]
        if not roots:
            return []

        # level order from the root, siblings by position
        out: List[TreeNode] = []
        queue = deque([roots[0]])
        while queue:
            node = queue.popleft()
            out.append(node)
            queue.extend(by_id[c] for c in node.child_slots if c in by_id)
        return out

    def count_nodes(self) -> int:
        with get_conn(self.dsn) as conn:
            return count_tree_nodes(conn)
