"""
Stock ledger decision logic: FEFO ordering, allocation planning,
forecast arithmetic and urgency tiering.

Deterministic, testable, no I/O. The workflows feed these functions with
snapshots read inside a transaction and apply the resulting plan.
"""
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Tuple, Optional, Iterable, Sequence
from dataclasses import dataclass
import math

import numpy as np

from .models import Lot, Medication, UrgencyLevel, StockProjection, CountEntry
from ..errors import InsufficientStockError


# ============================================================
# FEFO ordering
# ============================================================

def fefo_order(lots: Iterable[Lot], as_of: date) -> List[Lot]:
    """
    Lots eligible for allocation, soonest-expiring first.

    Keeps lots with quantity > 0 that are not expired on as_of; ties on
    expiration date are broken by ascending lot id (oldest registered first).
    """
    eligible = [lot for lot in lots if lot.quantity_on_hand > 0 and not lot.is_expired(as_of)]
    return sorted(eligible, key=lambda lot: lot.fefo_key)


# ============================================================
# Allocation planning
# ============================================================

@dataclass(frozen=True)
class PlannedAllocation:
    """Pending sale line: units to take from one lot."""
    lot_id: int
    medication_id: int
    quantity: int
    unit_price: Decimal

    @property
    def amount(self) -> Decimal:
        return self.unit_price * self.quantity


class AllocationPlanner:
    """
    FEFO allocation across lots for a whole sale request.

    Each requested line walks its medication's FEFO list taking
    min(lot remaining, still needed) per lot.  Lines for the same medication
    draw from the same working quantities, so a repeated medication cannot
    allocate the same units twice.  Any unsatisfiable line fails the whole plan.
    """

    def __init__(self, lots_by_medication: Dict[int, Sequence[Lot]], as_of: date):
        self.as_of = as_of
        self._fefo: Dict[int, List[Lot]] = {
            medication_id: fefo_order(lots, as_of)
            for medication_id, lots in lots_by_medication.items()
        }
        self._remaining: Dict[int, int] = {
            lot.lot_id: lot.quantity_on_hand
            for lots in self._fefo.values()
            for lot in lots
        }

    def available(self, medication_id: int) -> int:
        return sum(self._remaining[lot.lot_id] for lot in self._fefo.get(medication_id, []))

    def allocate_line(self, medication: Medication, quantity: int) -> List[PlannedAllocation]:
        """
        Plan one requested line.

        Raises:
            InsufficientStockError: If FEFO lots are exhausted before quantity is covered
        """
        available = self.available(medication.medication_id)
        if available < quantity:
            raise InsufficientStockError(medication.medication_id, quantity, available)

        planned = []
        remaining = quantity

        for lot in self._fefo.get(medication.medication_id, []):
            if remaining == 0:
                break

            on_hand = self._remaining[lot.lot_id]
            if on_hand == 0:
                continue

            allocated = min(on_hand, remaining)
            self._remaining[lot.lot_id] = on_hand - allocated
            remaining -= allocated
            planned.append(PlannedAllocation(
                lot_id=lot.lot_id,
                medication_id=medication.medication_id,
                quantity=allocated,
                unit_price=medication.unit_price,
            ))

        return planned

    def plan(self, requests: Sequence[Tuple[Medication, int]]) -> List[PlannedAllocation]:
        """
        Plan every requested line; all-or-nothing.

        Returns:
            One PlannedAllocation per (line, lot) touched, in request then FEFO order
        """
        allocations: List[PlannedAllocation] = []
        for medication, quantity in requests:
            allocations.extend(self.allocate_line(medication, quantity))
        return allocations


def merge_allocations(allocations: Iterable[PlannedAllocation]) -> List[PlannedAllocation]:
    """
    Collapse allocations hitting the same lot (repeated medication lines)
    into one sale line per lot, preserving first-seen order.
    """
    merged: Dict[int, PlannedAllocation] = {}
    for allocation in allocations:
        existing = merged.get(allocation.lot_id)
        if existing is None:
            merged[allocation.lot_id] = allocation
        else:
            merged[allocation.lot_id] = PlannedAllocation(
                lot_id=existing.lot_id,
                medication_id=existing.medication_id,
                quantity=existing.quantity + allocation.quantity,
                unit_price=existing.unit_price,
            )
    return list(merged.values())


def sale_total(allocations: Iterable[PlannedAllocation]) -> Decimal:
    return sum((a.amount for a in allocations), Decimal("0"))


# ============================================================
# Forecast arithmetic
# ============================================================

def daily_consumption(units_sold: int, window_days: int) -> float:
    """Average units per day over the trailing window (0 if nothing sold)."""
    if window_days <= 0:
        raise ValueError("window_days must be >= 1")
    if units_sold <= 0:
        return 0.0
    return units_sold / window_days


def days_remaining(vendable_stock: int, consumption_per_day: float) -> float:
    """Days of cover; math.inf when nothing is consumed."""
    if consumption_per_day <= 0:
        return math.inf
    return vendable_stock / consumption_per_day


def depletion_date(today: date, remaining_days: float) -> Optional[date]:
    """today + whole days of cover; None when cover is infinite."""
    if math.isinf(remaining_days):
        return None
    return today + timedelta(days=int(math.floor(remaining_days)))


def round_units(value: float) -> int:
    """Round half up to whole units."""
    return int(math.floor(value + 0.5))


def suggested_reorder_qty(target_stock_days: int, consumption_per_day: float, vendable_stock: int) -> int:
    """max(0, target_days × daily consumption − vendable stock), rounded to whole units."""
    return max(0, round_units(target_stock_days * consumption_per_day - vendable_stock))


def recommended_order_date(
    depletion: Optional[date],
    today: date,
    delivery_lead_days: int,
    safety_margin_days: int,
) -> Optional[date]:
    """Latest order date that still lands before depletion (never before today)."""
    if depletion is None:
        return None
    return max(today, depletion - timedelta(days=delivery_lead_days + safety_margin_days))


def classify_stock_urgency(
    vendable_stock: int,
    remaining_days: float,
    critical_days: int,
    urgent_days: int,
) -> UrgencyLevel:
    """
    RUPTURE if nothing vendable; CRITIQUE / URGENT when cover is at or below
    the configured day thresholds; ATTENTION otherwise.  Stock that is not
    consumed at all (infinite cover) is OK.
    """
    if vendable_stock <= 0:
        return UrgencyLevel.RUPTURE
    if math.isinf(remaining_days):
        return UrgencyLevel.OK
    if remaining_days <= critical_days:
        return UrgencyLevel.CRITIQUE
    if remaining_days <= urgent_days:
        return UrgencyLevel.URGENT
    return UrgencyLevel.ATTENTION


def classify_expiry_urgency(days_left: int, critical_days: int, urgent_days: int) -> UrgencyLevel:
    """CRITIQUE below critical_days, URGENT below urgent_days, else ATTENTION."""
    if days_left < critical_days:
        return UrgencyLevel.CRITIQUE
    if days_left < urgent_days:
        return UrgencyLevel.URGENT
    return UrgencyLevel.ATTENTION


def project_stock(
    medication_id: int,
    vendable_stock: int,
    consumption_per_day: float,
    today: date,
    horizon_days: int = 60,
    step_days: int = 5,
    threshold: int = 0,
) -> StockProjection:
    """
    Linear projection of vendable stock: max(0, stock − daily × offset)
    at offsets 0, step, 2·step, … up to horizon (inclusive).
    """
    if step_days <= 0:
        raise ValueError("step_days must be >= 1")
    offsets = np.arange(0, horizon_days + 1, step_days)
    projected = np.maximum(0, np.floor(vendable_stock - consumption_per_day * offsets)).astype(int)
    return StockProjection(
        medication_id=medication_id,
        dates=tuple(today + timedelta(days=int(offset)) for offset in offsets),
        quantities=tuple(int(q) for q in projected),
        threshold=threshold,
    )


# ============================================================
# Count reconciliation
# ============================================================

def entries_missing_reason(entries: Iterable[CountEntry]) -> List[CountEntry]:
    """Count entries with a non-zero variance and no reason code."""
    return [entry for entry in entries if entry.needs_reason]


def regularizations(entries: Iterable[CountEntry]) -> List[CountEntry]:
    """Entries whose lot must be set to the physical quantity on completion."""
    return [entry for entry in entries if entry.variance != 0]
