"""
Domain models for pharmastock.

Pure data classes + value objects. No I/O, no side effects.
Repositories return these as immutable snapshots; every mutation goes
through an explicit repository command inside a transaction.
"""
from dataclasses import dataclass, field
from enum import Enum
from datetime import date as Date, datetime
from decimal import Decimal
from typing import Optional, Tuple, Dict, Union, Type, TypeVar

from ..errors import ValidationError


class UrgencyLevel(Enum):
    """
    Severity shared by stock alerts and replenishment predictions.

    Ordered by severity: RUPTURE < CRITIQUE < URGENT < ATTENTION < OK,
    so sorted() puts the most urgent first.
    """
    RUPTURE = "RUPTURE"      # No vendable stock
    CRITIQUE = "CRITIQUE"
    URGENT = "URGENT"
    ATTENTION = "ATTENTION"
    OK = "OK"

    @property
    def rank(self) -> int:
        return _URGENCY_RANK[self]

    def __lt__(self, other):
        if not isinstance(other, UrgencyLevel):
            return NotImplemented
        return self.rank < other.rank

    def __le__(self, other):
        if not isinstance(other, UrgencyLevel):
            return NotImplemented
        return self.rank <= other.rank

    def __gt__(self, other):
        if not isinstance(other, UrgencyLevel):
            return NotImplemented
        return self.rank > other.rank

    def __ge__(self, other):
        if not isinstance(other, UrgencyLevel):
            return NotImplemented
        return self.rank >= other.rank


_URGENCY_RANK = {
    UrgencyLevel.RUPTURE: 0,
    UrgencyLevel.CRITIQUE: 1,
    UrgencyLevel.URGENT: 2,
    UrgencyLevel.ATTENTION: 3,
    UrgencyLevel.OK: 4,
}


class SessionStatus(Enum):
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


_E = TypeVar("_E", bound="_CodedReason")


class _CodedReason(Enum):
    """Reason code enum accepting either a member or its string value."""

    @classmethod
    def parse(cls: Type[_E], value: Union[str, "_CodedReason", None]) -> Optional[_E]:
        if value is None or value == "":
            return None
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            allowed = ", ".join(m.value for m in cls)
            raise ValidationError(f"Unknown {cls.__name__} {value!r} (allowed: {allowed})") from None


class ReturnReason(_CodedReason):
    """Why a customer brought units back."""
    DEFECTIVE_PRODUCT = "DEFECTIVE_PRODUCT"
    PRESCRIPTION_ERROR = "PRESCRIPTION_ERROR"
    ADVERSE_REACTION = "ADVERSE_REACTION"
    TREATMENT_CHANGE = "TREATMENT_CHANGE"
    NEAR_EXPIRY = "NEAR_EXPIRY"
    DAMAGED_PACKAGING = "DAMAGED_PACKAGING"
    EXCESS_QUANTITY = "EXCESS_QUANTITY"
    OTHER = "OTHER"


class VarianceReason(_CodedReason):
    """Why a physical count differs from the recorded quantity."""
    BREAKAGE = "BREAKAGE"
    EXPIRED_REMOVED = "EXPIRED_REMOVED"
    THEFT = "THEFT"
    COUNTING_ERROR = "COUNTING_ERROR"
    ENTRY_ERROR = "ENTRY_ERROR"
    UNRECORDED_MOVEMENT = "UNRECORDED_MOVEMENT"
    OTHER = "OTHER"


class WriteOffReason(Enum):
    """Why a reintegration request was recorded as a write-off instead."""
    NOT_REQUESTED = "NOT_REQUESTED"
    LOT_EXPIRED = "LOT_EXPIRED"


@dataclass(frozen=True)
class Medication:
    """Catalog entry - immutable."""
    medication_id: int
    commercial_name: str
    active_ingredient: str = ""
    reorder_threshold: int = 10
    unit_price: Decimal = Decimal("0")
    prescription_required: bool = False
    active: bool = True
    dosage_form: str = ""
    strength: str = ""

    def __post_init__(self):
        if not self.commercial_name or not self.commercial_name.strip():
            raise ValueError("Commercial name cannot be empty")
        if self.reorder_threshold < 0:
            raise ValueError("Reorder threshold cannot be negative")
        if self.unit_price < 0:
            raise ValueError("Unit price cannot be negative")


@dataclass(frozen=True)
class Lot:
    """Batch of one medication with its own expiration date - immutable snapshot."""
    lot_id: int
    medication_id: int
    lot_number: str
    expiration_date: Date
    quantity_on_hand: int
    purchase_price: Decimal = Decimal("0")
    supplier_id: Optional[int] = None
    received_at: Optional[datetime] = None

    def __post_init__(self):
        if not self.lot_number or not self.lot_number.strip():
            raise ValueError("Lot number cannot be empty")
        if self.quantity_on_hand < 0:
            raise ValueError("Lot quantity cannot be negative")

    def is_expired(self, check_date: Date) -> bool:
        """A lot is usable through its expiration date, expired the day after."""
        return check_date > self.expiration_date

    def days_until_expiry(self, check_date: Date) -> int:
        return (self.expiration_date - check_date).days

    @property
    def fefo_key(self) -> Tuple[Date, int]:
        return (self.expiration_date, self.lot_id)

    @property
    def stock_value(self) -> Decimal:
        return self.purchase_price * self.quantity_on_hand


@dataclass(frozen=True)
class SaleLine:
    """Units taken from one lot by one sale - immutable."""
    sale_id: int
    lot_id: int
    medication_id: int
    quantity: int
    unit_price: Decimal
    line_id: Optional[int] = None

    @property
    def amount(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class Sale:
    """Sale header with its lines. The amount is never edited after creation."""
    sale_id: int
    sold_at: datetime
    total_amount: Decimal
    prescription: bool = False
    prescription_number: Optional[str] = None
    seller_id: Optional[int] = None
    notes: str = ""
    lines: Tuple[SaleLine, ...] = ()

    def quantity_by_medication(self) -> Dict[int, int]:
        totals: Dict[int, int] = {}
        for line in self.lines:
            totals[line.medication_id] = totals.get(line.medication_id, 0) + line.quantity
        return totals


@dataclass(frozen=True)
class Return:
    """Customer return against one (sale, lot) pair."""
    return_id: int
    sale_id: int
    lot_id: int
    quantity: int
    reason: ReturnReason
    reintegrated: bool
    returned_at: datetime
    comment: str = ""
    user_id: Optional[int] = None
    write_off_reason: Optional[WriteOffReason] = None

    @property
    def is_write_off(self) -> bool:
        return not self.reintegrated


@dataclass(frozen=True)
class InventorySession:
    """Physical counting session."""
    session_id: int
    started_at: datetime
    status: SessionStatus
    operator_id: Optional[int] = None
    notes: str = ""
    ended_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status == SessionStatus.IN_PROGRESS


@dataclass(frozen=True)
class CountEntry:
    """Physical count of one lot within one session."""
    session_id: int
    lot_id: int
    theoretical_qty: int
    physical_qty: int
    counted_at: datetime
    reason: Optional[VarianceReason] = None
    comment: str = ""
    counted_by: Optional[int] = None

    @property
    def variance(self) -> int:
        return self.physical_qty - self.theoretical_qty

    @property
    def needs_reason(self) -> bool:
        return self.variance != 0 and self.reason is None


@dataclass(frozen=True)
class SessionSummary:
    session: InventorySession
    counted_lots: int
    lots_with_variance: int
    net_variance_units: int
    variance_value: Decimal
    missing_reasons: int


@dataclass(frozen=True)
class Prediction:
    """Replenishment forecast for one medication (derived, never persisted)."""
    medication_id: int
    commercial_name: str
    vendable_stock: int
    daily_consumption: float
    days_remaining: float                    # math.inf when nothing is sold
    depletion_date: Optional[Date]           # None when days_remaining is infinite
    suggested_reorder_qty: int
    urgency: UrgencyLevel
    reorder_threshold: int = 0
    recommended_order_date: Optional[Date] = None

    @property
    def monthly_consumption(self) -> float:
        return self.daily_consumption * 30


@dataclass(frozen=True)
class LowStockAlert:
    medication_id: int
    commercial_name: str
    vendable_stock: int
    threshold: int

    @property
    def deficit(self) -> int:
        return self.threshold - self.vendable_stock


@dataclass(frozen=True)
class ExpirationAlert:
    lot: Lot
    commercial_name: str
    days_remaining: int
    urgency: UrgencyLevel


@dataclass(frozen=True)
class AuditEntry:
    """Audit trail entry for ledger mutations."""
    audit_id: int
    timestamp: datetime
    operation: str
    details: str
    medication_id: Optional[int] = None
    user_id: Optional[int] = None


@dataclass(frozen=True)
class StockProjection:
    """Projected vendable stock at regular offsets from today."""
    medication_id: int
    dates: Tuple[Date, ...] = field(default_factory=tuple)
    quantities: Tuple[int, ...] = field(default_factory=tuple)
    threshold: int = 0
