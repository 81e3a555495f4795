import logging
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from db.db import TRANSIENT_ERRORS, get_conn
from db.repositories import (
    ensure_distribution_run,
    insert_distribution_event,
    payment_has_run,
    select_events_by_member,
    select_events_by_payment,
    select_ledger_totals,
    select_member_earnings,
    select_recent_events,
    upsert_member_earnings,
)
from errors import BatchConflict, StoreConflict
from ledger import DistributionLedger, validate_batch
from models import DistributionEvent, LedgerTotals

logger = logging.getLogger(__name__)


class PostgresLedger(DistributionLedger):
    """
    DB-backed ledger.

    append_batch is one transaction:
      1) claim the payment in distribution_runs (ON CONFLICT DO NOTHING)
      2) insert every journal row
      3) bump member_earnings balances
    a concurrent batch for the same payment waits on the run's primary key
    and then sees the conflict, so only one batch ever commits.
    """

    def __init__(self, dsn: Optional[str] = None):
        self.dsn = dsn

    def has_events_for(self, payment_id: str) -> bool:
        with get_conn(self.dsn) as conn:
            return payment_has_run(conn, payment_id)

    def append_batch(self, payment_id: str, events: Sequence[DistributionEvent]) -> None:
        validate_batch(payment_id, events)
        company = events[-1]

        with get_conn(self.dsn) as conn:
            try:
                created = ensure_distribution_run(
                    conn,
                    payment_id=payment_id,
                    payer_id=company.payer_id,
                    distribution_pool=company.distribution_pool,
                    participants_count=company.participants_count,
                    created_at=company.created_at,
                )
                if not created:
                    conn.rollback()
                    raise BatchConflict(payment_id)

                for seq, event in enumerate(events):
                    insert_distribution_event(conn, event, seq)

                # one upsert per beneficiary, in a fixed order so concurrent
                # batches lock balance rows in the same order
                deltas: Dict[str, Decimal] = {}
                for event in events:
                    deltas[event.beneficiary_id] = deltas.get(event.beneficiary_id, Decimal("0")) + event.amount
                for beneficiary_id in sorted(deltas):
                    upsert_member_earnings(conn, beneficiary_id, deltas[beneficiary_id])

                conn.commit()
            except BatchConflict:
                raise
            except TRANSIENT_ERRORS as e:
                conn.rollback()
                raise StoreConflict(str(e)) from e
            except Exception:
                conn.rollback()
                raise

        logger.debug("Committed %d events for payment %s", len(events), payment_id)

    def list_by_payment(self, payment_id: str) -> List[DistributionEvent]:
        with get_conn(self.dsn) as conn:
            return select_events_by_payment(conn, payment_id)

    def list_by_member(
        self,
        member_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[DistributionEvent]:
        with get_conn(self.dsn) as conn:
            return select_events_by_member(conn, member_id, since=since, until=until)

    def list_events(self, limit: int = 50) -> List[DistributionEvent]:
        if limit <= 0:
            return []
        with get_conn(self.dsn) as conn:
            return select_recent_events(conn, limit)

    def aggregate_totals(self) -> LedgerTotals:
        with get_conn(self.dsn) as conn:
            totals = select_ledger_totals(conn)
            conn.rollback()
        return totals

    def member_balance(self, member_id: str) -> Decimal:
        with get_conn(self.dsn) as conn:
            return select_member_earnings(conn, member_id)
