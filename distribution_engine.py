import logging
import random
import time
from decimal import Decimal
from typing import List, Optional, Any

from errors import (
    BatchConflict,
    DistributionFailed,
    StoreConflict,
    UnknownPayer,
    ValidationError,
)
from ledger import DistributionLedger
from models import (
    DistributionEvent,
    DistributionResult,
    TreeNode,
    require_id,
    to_amount,
    utcnow,
)
from notifications import Notifier
from psf_engine import psf_split
from tree_store import TreeStore

logger = logging.getLogger(__name__)

DEFAULT_UNIT_AMOUNT = Decimal("30")
DEFAULT_TOTAL_AMOUNT = Decimal("500")


class DistributionEngine:
    """
    turns an approved PSF payment into ledger events:
      - one unit credit per ancestor of the payer, nearest first, up to the root
      - one company share for whatever the ancestors did not take

    credits stop once the payment no longer covers a full unit (16 levels at
    500/30), or at max_levels if set. a deep payer's credited chain can
    therefore be shorter than its real ancestor chain; the rest of the
    payment goes to the company share.

    exactly-once per payment: a replay returns the stored batch with
    status "duplicate" and writes nothing.
    """

    def __init__(
        self,
        tree: TreeStore,
        ledger: DistributionLedger,
        unit_amount: Any = DEFAULT_UNIT_AMOUNT,
        total_amount: Any = DEFAULT_TOTAL_AMOUNT,
        max_levels: Optional[int] = None,
        retry_attempts: int = 5,
        notifier: Optional[Notifier] = None,
        backoff_seconds: float = 0.005,
    ):
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be >= 1")
        self.tree = tree
        self.ledger = ledger
        self.unit_amount = to_amount(unit_amount)
        self.total_amount = to_amount(total_amount)
        self.max_levels = max_levels
        self.retry_attempts = retry_attempts
        self.notifier = notifier
        self.backoff_seconds = backoff_seconds

    def distribute(
        self,
        payment_id: str,
        payer_member_id: str,
        unit_amount: Any = None,
        total_amount: Any = None,
    ) -> DistributionResult:
        # validation happens before any store access
        require_id(payment_id, "payment_id")
        require_id(payer_member_id, "payer_member_id")
        unit = self.unit_amount if unit_amount is None else to_amount(unit_amount)
        total = self.total_amount if total_amount is None else to_amount(total_amount)
        if unit <= 0:
            raise ValidationError(f"unit_amount must be positive, got {unit}")
        if total < unit:
            raise ValidationError(f"total_amount ({total}) must cover at least one unit ({unit})")

        last_conflict: Optional[StoreConflict] = None

        for attempt in range(1, self.retry_attempts + 1):
            try:
                # 1) idempotency check
                if self.ledger.has_events_for(payment_id):
                    return self._replay(payment_id, payer_member_id)

                # 2) payer + ancestor chain
                payer = self.tree.get_node(payer_member_id)
                if payer is None:
                    raise UnknownPayer(payer_member_id)
                events = self._build_run(payment_id, payer, unit, total)

                # 3) single atomic write; a concurrent winner shows up as BatchConflict
                self.ledger.append_batch(payment_id, events)

            except BatchConflict:
                return self._replay(payment_id, payer_member_id)
            except StoreConflict as e:
                last_conflict = e
                logger.warning(
                    "Distribution of %s hit a store conflict (attempt %d/%d): %s",
                    payment_id, attempt, self.retry_attempts, e,
                )
                if attempt < self.retry_attempts and self.backoff_seconds > 0:
                    time.sleep(random.uniform(0, self.backoff_seconds * attempt))
                continue
            except (UnknownPayer, DistributionFailed):
                raise
            except Exception as e:
                logger.exception("Distribution of %s aborted, nothing written", payment_id)
                raise DistributionFailed(f"Distribution of payment {payment_id} failed: {e}") from e

            logger.info(
                "Distributed payment %s from %s: %d ancestor credits, company share %s",
                payment_id, payer_member_id, len(events) - 1, events[-1].amount,
            )
            self._notify(events)
            return DistributionResult(status="applied", payment_id=payment_id, events=tuple(events))

        logger.error("Distribution of %s failed after %d attempts", payment_id, self.retry_attempts)
        raise DistributionFailed(
            f"Distribution of payment {payment_id} kept conflicting after {self.retry_attempts} attempts"
        ) from last_conflict

    def ancestors_of(self, node: TreeNode) -> List[TreeNode]:
        """
        [parent, grandparent, ..., root], read from the store in one snapshot.
        each link must name the previous node's parent one level up, and the
        chain must end at the root.
        """
        chain = self.tree.get_ancestors(node.member_id)
        current = node
        for parent in chain:
            if parent.member_id != current.parent_id:
                raise DistributionFailed(
                    f"Broken ancestor chain: {current.member_id} points to {current.parent_id}, "
                    f"got {parent.member_id}"
                )
            if parent.level != current.level - 1:
                raise DistributionFailed(
                    f"Inconsistent levels: {current.member_id}@{current.level} under "
                    f"{parent.member_id}@{parent.level}"
                )
            current = parent
        if current.parent_id is not None:
            raise DistributionFailed(
                f"Broken ancestor chain: {current.member_id} points to missing {current.parent_id}"
            )
        return chain

    def _build_run(
        self, payment_id: str, payer: TreeNode, unit: Decimal, total: Decimal
    ) -> List[DistributionEvent]:
        ancestors = [n.member_id for n in self.ancestors_of(payer)]
        split = psf_split(total, unit, ancestors, max_levels=self.max_levels)

        if len(split["credits"]) < len(ancestors):
            logger.info(
                "Payment %s covers %d of %d ancestors of %s",
                payment_id, len(split["credits"]), len(ancestors), payer.member_id,
            )

        now = utcnow()
        participants = len(split["credits"])
        events = [
            DistributionEvent.ancestor_credit(
                payment_id=payment_id,
                payer_id=payer.member_id,
                ancestor_id=ancestor_id,
                depth=depth,
                amount=amount,
                distribution_pool=total,
                participants_count=participants,
                created_at=now,
            )
            for (ancestor_id, depth, amount) in split["credits"]
        ]
        events.append(
            DistributionEvent.company_share(
                payment_id=payment_id,
                payer_id=payer.member_id,
                amount=split["company"],
                distribution_pool=total,
                participants_count=participants,
                created_at=now,
            )
        )
        return events

    def _replay(self, payment_id: str, payer_member_id: str) -> DistributionResult:
        events = self.ledger.list_by_payment(payment_id)
        if events and events[0].payer_id != payer_member_id:
            logger.warning(
                "Replay of payment %s names payer %s but it was distributed for %s",
                payment_id, payer_member_id, events[0].payer_id,
            )
        logger.info("Payment %s already distributed (%d events), skipping", payment_id, len(events))
        return DistributionResult(status="duplicate", payment_id=payment_id, events=tuple(events))

    def _notify(self, events: List[DistributionEvent]) -> None:
        if self.notifier is None:
            return
        for e in events:
            try:
                self.notifier.credited(e)
            except Exception:
                # the ledger is already committed; delivery is best-effort
                logger.exception("Credit notification for %s failed", e.id)
