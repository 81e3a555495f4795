from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, List, Sequence, Tuple

from psycopg import Connection

from models import DistributionEvent, EventKind, LedgerTotals, TreeNode


# ---------
# mlm_tree
# ---------

TREE_COLUMNS = "member_id, parent_id, level, position, created_at"


def _child_slots(conn: Connection, member_ids: Sequence[str]) -> Dict[str, Tuple[str, ...]]:
    """
    child ids (position order) for many parents in one query.
    """
    if not member_ids:
        return {}
    slots: Dict[str, List[str]] = {m: [] for m in member_ids}
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT parent_id, member_id
            FROM mlm_tree
            WHERE parent_id = ANY(%s)
            ORDER BY parent_id, position
            """,
            (list(member_ids),),
        )
        for parent_id, member_id in cur.fetchall():
            slots[parent_id].append(member_id)
    return {k: tuple(v) for k, v in slots.items()}


def _rows_to_nodes(conn: Connection, rows) -> List[TreeNode]:
    slots = _child_slots(conn, [r[0] for r in rows])
    return [
        TreeNode(
            member_id=r[0],
            parent_id=r[1],
            level=r[2],
            position=r[3],
            child_slots=slots.get(r[0], ()),
            created_at=r[4],
        )
        for r in rows
    ]


def get_tree_node(conn: Connection, member_id: str, for_update: bool = False) -> Optional[TreeNode]:
    """
    fetch a node with its child slots, or None.
    for_update=True takes a row lock on the node, which serializes slot
    claims under it until the transaction ends.
    """
    lock = " FOR UPDATE" if for_update else ""
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {TREE_COLUMNS} FROM mlm_tree WHERE member_id = %s{lock}",
            (member_id,),
        )
        row = cur.fetchone()
    if row is None:
        return None
    return _rows_to_nodes(conn, [row])[0]


def get_root_node(conn: Connection) -> Optional[TreeNode]:
    with conn.cursor() as cur:
        cur.execute(f"SELECT {TREE_COLUMNS} FROM mlm_tree WHERE parent_id IS NULL")
        row = cur.fetchone()
    if row is None:
        return None
    return _rows_to_nodes(conn, [row])[0]


def list_child_nodes(conn: Connection, parent_id: str) -> List[TreeNode]:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {TREE_COLUMNS}
            FROM mlm_tree
            WHERE parent_id = %s
            ORDER BY position
            """,
            (parent_id,),
        )
        rows = cur.fetchall()
    return _rows_to_nodes(conn, rows)


def list_all_nodes(conn: Connection) -> List[TreeNode]:
    with conn.cursor() as cur:
        cur.execute(f"SELECT {TREE_COLUMNS} FROM mlm_tree ORDER BY level, position")
        rows = cur.fetchall()
    return _rows_to_nodes(conn, rows)


def list_ancestor_nodes(conn: Connection, member_id: str, max_hops: int) -> List[TreeNode]:
    """
    [parent, grandparent, ..., root] in one recursive query.
    max_hops bounds the walk (a node at level L has L ancestors).
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            WITH RECURSIVE chain (member_id, hops) AS (
                SELECT parent_id, 1
                FROM mlm_tree
                WHERE member_id = %(member_id)s AND parent_id IS NOT NULL
              UNION ALL
                SELECT t.parent_id, chain.hops + 1
                FROM chain
                JOIN mlm_tree t ON t.member_id = chain.member_id
                WHERE t.parent_id IS NOT NULL AND chain.hops < %(max_hops)s
            )
            SELECT t.member_id, t.parent_id, t.level, t.position, t.created_at
            FROM chain
            JOIN mlm_tree t ON t.member_id = chain.member_id
            ORDER BY chain.hops
            """,
            {"member_id": member_id, "max_hops": max_hops},
        )
        rows = cur.fetchall()
    return _rows_to_nodes(conn, rows)


def find_first_open_node_id(
    conn: Connection,
    start_id: str,
    max_children: int,
    max_level: Optional[int] = None,
) -> Optional[str]:
    """
    breadth-first search for a free slot in one statement.

    `path` is the list of positions from the start node, so ordering by
    (level, path) is level order with siblings in position order.
    nodes at or below max_level are never expanded.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            WITH RECURSIVE sub (member_id, level, path) AS (
                SELECT member_id, level, ARRAY[]::integer[]
                FROM mlm_tree
                WHERE member_id = %(start_id)s
              UNION ALL
                SELECT t.member_id, t.level, sub.path || t.position
                FROM sub
                JOIN mlm_tree t ON t.parent_id = sub.member_id
                WHERE %(max_level)s::integer IS NULL OR t.level < %(max_level)s::integer
            )
            SELECT sub.member_id
            FROM sub
            LEFT JOIN mlm_tree c ON c.parent_id = sub.member_id
            WHERE %(max_level)s::integer IS NULL OR sub.level < %(max_level)s::integer
            GROUP BY sub.member_id, sub.level, sub.path
            HAVING COUNT(c.member_id) < %(max_children)s
            ORDER BY sub.level, sub.path
            LIMIT 1
            """,
            {"start_id": start_id, "max_children": max_children, "max_level": max_level},
        )
        row = cur.fetchone()
    return row[0] if row else None


def count_tree_nodes(conn: Connection) -> int:
    with conn.cursor() as cur:
        cur.execute("SELECT COUNT(*) FROM mlm_tree")
        return cur.fetchone()[0]


def insert_tree_node(
    conn: Connection,
    member_id: str,
    parent_id: Optional[str],
    level: int,
    position: int,
) -> TreeNode:
    """
    insert a node. relies on:
      - mlm_tree_pkey for member uniqueness
      - mlm_tree_slot_unique for (parent_id, position)
      - mlm_tree_single_root for the root
    """
    with conn.cursor() as cur:
        cur.execute(
            f"""
            INSERT INTO mlm_tree (member_id, parent_id, level, position)
            VALUES (%s, %s, %s, %s)
            RETURNING {TREE_COLUMNS}
            """,
            (member_id, parent_id, level, position),
        )
        row = cur.fetchone()
    return TreeNode(
        member_id=row[0],
        parent_id=row[1],
        level=row[2],
        position=row[3],
        child_slots=(),
        created_at=row[4],
    )


def insert_root_if_missing(conn: Connection, member_id: str) -> bool:
    """
    returns True if this call created the root.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO mlm_tree (member_id, parent_id, level, position)
            VALUES (%s, NULL, 0, 0)
            ON CONFLICT DO NOTHING
            RETURNING member_id
            """,
            (member_id,),
        )
        return cur.fetchone() is not None


# ---------
# distribution ledger
# ---------

EVENT_COLUMNS = (
    "id, source_payment_id, beneficiary_id, amount, kind, payer_id, depth, "
    "distribution_pool, participants_count, created_at"
)


def _row_to_event(r) -> DistributionEvent:
    return DistributionEvent(
        id=r[0],
        source_payment_id=r[1],
        beneficiary_id=r[2],
        amount=Decimal(r[3]),
        kind=EventKind(r[4]),
        payer_id=r[5],
        depth=r[6],
        distribution_pool=Decimal(r[7]),
        participants_count=r[8],
        created_at=r[9],
    )


def ensure_distribution_run(
    conn: Connection,
    payment_id: str,
    payer_id: str,
    distribution_pool: Decimal,
    participants_count: int,
    created_at: datetime,
) -> bool:
    """
    claim the payment (idempotent).
    returns True if this transaction created the run, False if it already existed.

    a concurrent claim blocks on the primary key until the first transaction
    ends, then sees the conflict.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO distribution_runs
                (payment_id, payer_id, distribution_pool, participants_count, created_at)
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (payment_id) DO NOTHING
            RETURNING payment_id
            """,
            (payment_id, payer_id, distribution_pool, participants_count, created_at),
        )
        return cur.fetchone() is not None


def insert_distribution_event(conn: Connection, event: DistributionEvent, seq: int) -> None:
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO distribution_events
                (id, source_payment_id, seq, beneficiary_id, amount, kind, payer_id,
                 depth, distribution_pool, participants_count, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                event.id,
                event.source_payment_id,
                seq,
                event.beneficiary_id,
                event.amount,
                event.kind.value,
                event.payer_id,
                event.depth,
                event.distribution_pool,
                event.participants_count,
                event.created_at,
            ),
        )


def upsert_member_earnings(conn: Connection, beneficiary_id: str, amount_delta: Decimal) -> None:
    """
    increment total_amount by amount_delta for beneficiary_id.
    creates the row if it doesn't exist.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            INSERT INTO member_earnings (beneficiary_id, total_amount)
            VALUES (%s, %s)
            ON CONFLICT (beneficiary_id)
            DO UPDATE SET
                total_amount = member_earnings.total_amount + EXCLUDED.total_amount,
                updated_at = NOW()
            """,
            (beneficiary_id, amount_delta),
        )


def payment_has_run(conn: Connection, payment_id: str) -> bool:
    with conn.cursor() as cur:
        cur.execute("SELECT 1 FROM distribution_runs WHERE payment_id = %s", (payment_id,))
        return cur.fetchone() is not None


def select_events_by_payment(conn: Connection, payment_id: str) -> List[DistributionEvent]:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {EVENT_COLUMNS}
            FROM distribution_events
            WHERE source_payment_id = %s
            ORDER BY seq
            """,
            (payment_id,),
        )
        return [_row_to_event(r) for r in cur.fetchall()]


def select_events_by_member(
    conn: Connection,
    beneficiary_id: str,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> List[DistributionEvent]:
    params: list = [beneficiary_id]
    where_clauses = ["beneficiary_id = %s"]

    if since is not None:
        where_clauses.append("created_at >= %s")
        params.append(since)
    if until is not None:
        where_clauses.append("created_at < %s")
        params.append(until)

    where_sql = " AND ".join(where_clauses)

    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {EVENT_COLUMNS}
            FROM distribution_events
            WHERE {where_sql}
            ORDER BY created_at DESC, source_payment_id, seq
            """,
            tuple(params),
        )
        return [_row_to_event(r) for r in cur.fetchall()]


def select_recent_events(conn: Connection, limit: int = 50) -> List[DistributionEvent]:
    with conn.cursor() as cur:
        cur.execute(
            f"""
            SELECT {EVENT_COLUMNS}
            FROM distribution_events
            ORDER BY created_at DESC, source_payment_id, seq
            LIMIT %s
            """,
            (limit,),
        )
        return [_row_to_event(r) for r in cur.fetchall()]


def select_member_earnings(conn: Connection, beneficiary_id: str) -> Decimal:
    with conn.cursor() as cur:
        cur.execute(
            "SELECT total_amount FROM member_earnings WHERE beneficiary_id = %s",
            (beneficiary_id,),
        )
        row = cur.fetchone()
    return Decimal(row[0]) if row else Decimal("0")


def select_ledger_totals(conn: Connection) -> LedgerTotals:
    """
    one consistent snapshot of the journal aggregates.
    REPEATABLE READ keeps the three reads on the same snapshot.
    """
    totals = LedgerTotals()
    with conn.cursor() as cur:
        cur.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ")
        cur.execute(
            """
            SELECT
                COALESCE(SUM(amount), 0),
                COALESCE(SUM(amount) FILTER (WHERE kind = 'ancestor_credit'), 0),
                COALESCE(SUM(amount) FILTER (WHERE kind = 'company_share'), 0),
                COUNT(*)
            FROM distribution_events
            """
        )
        total, members, company, count = cur.fetchone()
        totals.total_distributed = Decimal(total)
        totals.member_total = Decimal(members)
        totals.company_total = Decimal(company)
        totals.events_count = count

        cur.execute("SELECT COUNT(*) FROM distribution_runs")
        totals.payments_processed = cur.fetchone()[0]

        cur.execute(
            """
            SELECT beneficiary_id, SUM(amount)
            FROM distribution_events
            GROUP BY beneficiary_id
            ORDER BY beneficiary_id
            """
        )
        totals.per_beneficiary = {b: Decimal(s) for b, s in cur.fetchall()}
    return totals
