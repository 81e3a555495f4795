import abc
import logging
import threading
from datetime import datetime
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from errors import BatchConflict, ValidationError
from models import DistributionEvent, LedgerTotals

logger = logging.getLogger(__name__)


class DistributionLedger(abc.ABC):
    """
    append-only journal of distribution events, keyed for idempotence by
    source payment. a payment has either no events or exactly one batch.
    """

    @abc.abstractmethod
    def has_events_for(self, payment_id: str) -> bool:
        ...

    @abc.abstractmethod
    def append_batch(self, payment_id: str, events: Sequence[DistributionEvent]) -> None:
        """
        write the whole batch or nothing.
        raises BatchConflict if the payment already has a batch.
        """

    @abc.abstractmethod
    def list_by_payment(self, payment_id: str) -> List[DistributionEvent]:
        """events of one batch in run order (ancestors nearest-first, company last)."""

    @abc.abstractmethod
    def list_by_member(
        self,
        member_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[DistributionEvent]:
        """events crediting `member_id`, newest first, within [since, until)."""

    @abc.abstractmethod
    def list_events(self, limit: int = 50) -> List[DistributionEvent]:
        """latest distribution history: newest batch first, run order within a batch."""

    @abc.abstractmethod
    def aggregate_totals(self) -> LedgerTotals:
        ...

    @abc.abstractmethod
    def member_balance(self, member_id: str) -> Decimal:
        """running sum of everything credited to `member_id`."""


def validate_batch(payment_id: str, events: Sequence[DistributionEvent]) -> None:
    if not events:
        raise ValidationError(f"Empty distribution batch for payment {payment_id}")
    for e in events:
        if e.source_payment_id != payment_id:
            raise ValidationError(
                f"Event {e.id} belongs to payment {e.source_payment_id}, not {payment_id}"
            )
        if e.amount < 0:
            raise ValidationError(f"Event {e.id} has negative amount {e.amount}")
    company = [e for e in events if e.is_company_share]
    if len(company) != 1 or not events[-1].is_company_share:
        raise ValidationError(
            f"Batch for payment {payment_id} must end with exactly one company share"
        )


def _in_window(e: DistributionEvent, since: Optional[datetime], until: Optional[datetime]) -> bool:
    if since is not None and e.created_at < since:
        return False
    if until is not None and e.created_at >= until:
        return False
    return True


class InMemoryLedger(DistributionLedger):
    """
    process-local ledger. the check-then-append happens under one lock, so two
    concurrent batches for the same payment can never both land.
    """

    def __init__(self):
        self._batches: Dict[str, Tuple[DistributionEvent, ...]] = {}
        self._journal: List[DistributionEvent] = []
        self._balances: Dict[str, Decimal] = {}
        self._lock = threading.Lock()

    def has_events_for(self, payment_id: str) -> bool:
        with self._lock:
            return payment_id in self._batches

    def append_batch(self, payment_id: str, events: Sequence[DistributionEvent]) -> None:
        validate_batch(payment_id, events)
        with self._lock:
            if payment_id in self._batches:
                raise BatchConflict(payment_id)
            batch = tuple(events)
            self._batches[payment_id] = batch
            self._journal.extend(batch)
            for e in batch:
                self._balances[e.beneficiary_id] = (
                    self._balances.get(e.beneficiary_id, Decimal("0")) + e.amount
                )

    def list_by_payment(self, payment_id: str) -> List[DistributionEvent]:
        with self._lock:
            return list(self._batches.get(payment_id, ()))

    def list_by_member(
        self,
        member_id: str,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[DistributionEvent]:
        with self._lock:
            matches = [
                e for e in self._journal
                if e.beneficiary_id == member_id and _in_window(e, since, until)
            ]
        return list(reversed(matches))

    def list_events(self, limit: int = 50) -> List[DistributionEvent]:
        # newest batch first, run order inside a batch
        out: List[DistributionEvent] = []
        with self._lock:
            for batch in reversed(list(self._batches.values())):
                if len(out) >= limit:
                    break
                out.extend(batch)
        return out[:max(limit, 0)]

    def aggregate_totals(self) -> LedgerTotals:
        with self._lock:
            journal = list(self._journal)
            payments = len(self._batches)

        totals = LedgerTotals(payments_processed=payments, events_count=len(journal))
        for e in journal:
            totals.total_distributed += e.amount
            if e.is_company_share:
                totals.company_total += e.amount
            else:
                totals.member_total += e.amount
            totals.per_beneficiary[e.beneficiary_id] = (
                totals.per_beneficiary.get(e.beneficiary_id, Decimal("0")) + e.amount
            )
        return totals

    def member_balance(self, member_id: str) -> Decimal:
        with self._lock:
            return self._balances.get(member_id, Decimal("0"))
