"""
Lot inventory: FEFO reads, stock totals and single-lot mutations.

Every mutation runs in its own IMMEDIATE transaction and leaves an
audit trail entry; the quantity guard lives in LotRepository.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Callable, Dict, List, Optional
import logging

from ..db import ConnectionFactory, transaction
from ..domain.models import Lot
from ..domain.validation import parse_price, require, validate_quantity
from ..errors import ValidationError
from ..repositories import RepositoryFactory, LotRepository

logger = logging.getLogger(__name__)


class StockReadCache:
    """
    Read-through cache of stock figures for one evaluation pass.

    Create one per forecasting or alert call and drop it afterwards; it is
    bound to the connection (and transaction) of that call.
    """

    def __init__(self, lots: LotRepository, as_of: date):
        self.lots = lots
        self.as_of = as_of
        self._vendable: Optional[Dict[int, int]] = None

    def vendable_stock(self, medication_id: int) -> int:
        if self._vendable is None:
            self._vendable = self.lots.vendable_by_medication(self.as_of)
        return self._vendable.get(medication_id, 0)


class LotInventory:
    """Lot-level stock for the ledger."""

    def __init__(self, factory: ConnectionFactory, clock: Callable[[], datetime] = datetime.now):
        self.factory = factory
        self.clock = clock

    def today(self) -> date:
        return self.clock().date()

    # ------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------

    def lots_for_allocation(self, medication_id: int) -> List[Lot]:
        """
        Lots a sale may draw from: quantity > 0, not expired, ordered by
        (expiration date, lot id).

        Raises:
            NotFoundError: Unknown medication
        """
        with self.factory.reader() as conn, transaction(conn):
            repos = RepositoryFactory(conn)
            repos.medications().require(medication_id)
            return repos.lots().list_fefo(medication_id, self.today())

    get_lots_fefo = lots_for_allocation

    def vendable_stock(self, medication_id: int) -> int:
        with self.factory.reader() as conn, transaction(conn):
            repos = RepositoryFactory(conn)
            repos.medications().require(medication_id)
            return repos.lots().vendable_stock(medication_id, self.today())

    def total_stock(self, medication_id: int) -> int:
        """All units on hand, expired lots included (display only)."""
        with self.factory.reader() as conn, transaction(conn):
            repos = RepositoryFactory(conn)
            repos.medications().require(medication_id)
            return repos.lots().total_stock(medication_id)

    def get_lot(self, lot_id: int) -> Lot:
        with self.factory.reader() as conn, transaction(conn):
            return RepositoryFactory(conn).lots().require(lot_id)

    def lots_for_medication(self, medication_id: int) -> List[Lot]:
        with self.factory.reader() as conn, transaction(conn):
            repos = RepositoryFactory(conn)
            repos.medications().require(medication_id)
            return repos.lots().list_for_medication(medication_id)

    def all_lots(self, with_stock_only: bool = False) -> List[Lot]:
        with self.factory.reader() as conn, transaction(conn):
            return RepositoryFactory(conn).lots().list_all(with_stock_only=with_stock_only)

    def stock_value(self, medication_id: Optional[int] = None) -> Decimal:
        """Σ quantity × purchase price over non-expired lots (one medication or all)."""
        today = self.today()
        with self.factory.reader() as conn, transaction(conn):
            repo = RepositoryFactory(conn).lots()
            lots = repo.list_for_medication(medication_id) if medication_id is not None else repo.list_all()
        return sum((lot.stock_value for lot in lots if not lot.is_expired(today)), Decimal("0"))

    # ------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------

    def receive_lot(
        self,
        medication_id: int,
        lot_number: str,
        expiration_date: date,
        quantity: int,
        purchase_price: Decimal = Decimal("0"),
        supplier_id: Optional[int] = None,
        user_id: Optional[int] = None,
    ) -> Lot:
        """
        Register a newly received lot.

        Raises:
            ValidationError: Non-positive quantity, empty lot number, negative price
            NotFoundError: Unknown medication
            StateError: Lot number already registered for this medication
        """
        require(validate_quantity(quantity))
        if not lot_number or not lot_number.strip():
            raise ValidationError("Lot number cannot be empty")
        purchase_price = parse_price(purchase_price, "Purchase price")

        now = self.clock()
        with self.factory.writer() as conn, transaction(conn, "IMMEDIATE"):
            repos = RepositoryFactory(conn)
            repos.medications().require(medication_id)
            lot_id = repos.lots().add(
                medication_id=medication_id,
                lot_number=lot_number,
                expiration_date=expiration_date,
                quantity=quantity,
                purchase_price=purchase_price,
                supplier_id=supplier_id,
                received_at=now,
            )
            repos.audit().log(
                "LOT_RECEIVED",
                f"Lot {lot_number.strip()} (id={lot_id}): +{quantity}, expires {expiration_date.isoformat()}",
                medication_id=medication_id,
                user_id=user_id,
                timestamp=now,
            )
            lot = repos.lots().require(lot_id)

        logger.info(f"Lot received: {lot.lot_number} medication={medication_id} qty={quantity}")
        return lot

    def decrement(self, lot_id: int, qty: int, user_id: Optional[int] = None, note: str = "") -> int:
        """
        Remove qty units from a lot.

        Returns:
            New quantity on hand

        Raises:
            ValidationError: qty not a positive integer
            NotFoundError: Unknown lot
            StateError: Lot holds fewer than qty units
        """
        require(validate_quantity(qty))
        return self._adjust(lot_id, user_id, note, lambda lots: lots.decrement(lot_id, qty), f"-{qty}")

    def increment(self, lot_id: int, qty: int, user_id: Optional[int] = None, note: str = "") -> int:
        """Add qty units to a lot. Returns the new quantity on hand."""
        require(validate_quantity(qty))
        return self._adjust(lot_id, user_id, note, lambda lots: lots.increment(lot_id, qty), f"+{qty}")

    def set_quantity(self, lot_id: int, qty: int, user_id: Optional[int] = None, note: str = "") -> int:
        """
        Overwrite a lot's quantity.

        Returns:
            New quantity on hand

        Raises:
            StateError: Negative target
        """
        if isinstance(qty, bool) or not isinstance(qty, int):
            raise ValidationError(f"Quantity must be an integer, got {qty!r}")

        def apply(lots: LotRepository) -> int:
            lots.set_quantity(lot_id, qty)
            return qty

        return self._adjust(lot_id, user_id, note, apply, f"={qty}")

    def _adjust(self, lot_id: int, user_id: Optional[int], note: str, apply, label: str) -> int:
        now = self.clock()
        with self.factory.writer() as conn, transaction(conn, "IMMEDIATE"):
            repos = RepositoryFactory(conn)
            lot = repos.lots().require(lot_id)
            new_qty = apply(repos.lots())
            details = f"Lot {lot.lot_number} (id={lot_id}): {lot.quantity_on_hand} {label} -> {new_qty}"
            if note:
                details += f" ({note})"
            repos.audit().log("LOT_ADJUSTED", details, medication_id=lot.medication_id, user_id=user_id, timestamp=now)

        logger.info(f"Lot adjusted: {details}")
        return new_qty

