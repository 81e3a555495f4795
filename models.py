import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_DOWN
from typing import Optional, Tuple, Dict, Literal, Any

from errors import ValidationError

# sentinel beneficiary for the company/reserve share
COMPANY_ACCOUNT = "company"

CENT = Decimal("0.01")

# amounts are stored as NUMERIC(14,2)
MAX_AMOUNT = Decimal("1000000000000")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """naive datetimes are taken to be UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_amount(value: Any) -> Decimal:
    """
    coerce to a Decimal money amount (2 places, truncated).
    floats go through str() so 0.1 stays 0.1.
    """
    if isinstance(value, float):
        value = str(value)
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite():
        raise ValidationError(f"Invalid amount: {value!r}")
    if abs(amount) >= MAX_AMOUNT:
        raise ValidationError(f"Amount {value!r} exceeds the maximum of {MAX_AMOUNT}")
    try:
        return amount.quantize(CENT, rounding=ROUND_DOWN)
    except InvalidOperation:
        raise ValidationError(f"Invalid amount: {value!r}")


def require_id(value: Any, what: str) -> str:
    """
    identifiers are non-blank strings without surrounding whitespace.
    """
    if not isinstance(value, str):
        raise ValidationError(f"{what} must be a string, got {type(value).__name__}")
    if not value.strip():
        raise ValidationError(f"{what} cannot be empty")
    if value != value.strip():
        raise ValidationError(f"{what} has leading/trailing whitespace: {value!r}")
    return value


@dataclass(frozen=True)
class TreeNode:
    member_id: str
    parent_id: Optional[str]
    level: int
    position: int
    child_slots: Tuple[str, ...] = ()
    created_at: Optional[datetime] = None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def children_count(self) -> int:
        return len(self.child_slots)

    def has_open_slot(self, max_children: int) -> bool:
        return len(self.child_slots) < max_children

    def to_dict(self) -> Dict[str, Any]:
        return {
            "member_id": self.member_id,
            "parent_id": self.parent_id,
            "level": self.level,
            "position": self.position,
            "child_slots": list(self.child_slots),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class EventKind(str, enum.Enum):
    ANCESTOR_CREDIT = "ancestor_credit"
    COMPANY_SHARE = "company_share"


@dataclass(frozen=True)
class DistributionEvent:
    id: str
    source_payment_id: str
    beneficiary_id: str
    amount: Decimal
    kind: EventKind
    payer_id: str
    depth: Optional[int] = None
    distribution_pool: Decimal = Decimal("0")
    participants_count: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @property
    def is_company_share(self) -> bool:
        return self.kind is EventKind.COMPANY_SHARE

    @classmethod
    def ancestor_credit(
        cls,
        payment_id: str,
        payer_id: str,
        ancestor_id: str,
        depth: int,
        amount: Decimal,
        distribution_pool: Decimal,
        participants_count: int,
        created_at: datetime,
    ) -> "DistributionEvent":
        return cls(
            id=uuid.uuid4().hex,
            source_payment_id=payment_id,
            beneficiary_id=ancestor_id,
            amount=amount,
            kind=EventKind.ANCESTOR_CREDIT,
            payer_id=payer_id,
            depth=depth,
            distribution_pool=distribution_pool,
            participants_count=participants_count,
            created_at=created_at,
        )

    @classmethod
    def company_share(
        cls,
        payment_id: str,
        payer_id: str,
        amount: Decimal,
        distribution_pool: Decimal,
        participants_count: int,
        created_at: datetime,
    ) -> "DistributionEvent":
        return cls(
            id=uuid.uuid4().hex,
            source_payment_id=payment_id,
            beneficiary_id=COMPANY_ACCOUNT,
            amount=amount,
            kind=EventKind.COMPANY_SHARE,
            payer_id=payer_id,
            depth=None,
            distribution_pool=distribution_pool,
            participants_count=participants_count,
            created_at=created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        # decimals must serialize as strings
        return {
            "id": self.id,
            "source_payment_id": self.source_payment_id,
            "beneficiary_id": self.beneficiary_id,
            "amount": f"{self.amount:.2f}",
            "kind": self.kind.value,
            "is_company_share": self.is_company_share,
            "payer_id": self.payer_id,
            "depth": self.depth,
            "distribution_pool": f"{self.distribution_pool:.2f}",
            "participants_count": self.participants_count,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class DistributionResult:
    status: Literal["applied", "duplicate"]
    payment_id: str
    events: Tuple[DistributionEvent, ...]

    @property
    def is_replay(self) -> bool:
        return self.status == "duplicate"

    @property
    def total(self) -> Decimal:
        return sum((e.amount for e in self.events), Decimal("0"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "payment_id": self.payment_id,
            "total": f"{self.total:.2f}",
            "events": [e.to_dict() for e in self.events],
        }


@dataclass
class LedgerTotals:
    total_distributed: Decimal = Decimal("0")
    member_total: Decimal = Decimal("0")
    company_total: Decimal = Decimal("0")
    payments_processed: int = 0
    events_count: int = 0
    per_beneficiary: Dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_distributed": f"{self.total_distributed:.2f}",
            "member_total": f"{self.member_total:.2f}",
            "company_total": f"{self.company_total:.2f}",
            "payments_processed": self.payments_processed,
            "events_count": self.events_count,
            "per_beneficiary": {k: f"{v:.2f}" for k, v in self.per_beneficiary.items()},
        }
