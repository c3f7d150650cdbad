"""
PharmacyLedger: one object wiring every ledger component over a shared
ConnectionFactory.

Usage:
    >>> ledger = PharmacyLedger.open(Path("pharmacy.db"))
    >>> sale = ledger.create_sale([(med_id, 12)], seller_id=1, prescription_flag=False)
    >>> ledger.get_stock_vendable(med_id)
"""
from datetime import date, datetime
from pathlib import Path
from typing import Callable, List, Optional, Sequence, Tuple
import logging

from .config import Settings, load_settings
from .db import ConnectionFactory, initialize_database
from .domain.models import (
    CountEntry, ExpirationAlert, InventorySession, Lot, LowStockAlert, Prediction, Return, Sale,
)
from .workflows import (
    Catalog,
    LotInventory,
    AllocationEngine,
    ReturnReintegrationEngine,
    InventoryReconciliationEngine,
    ReplenishmentForecaster,
    AlertEvaluator,
)

logger = logging.getLogger(__name__)


class PharmacyLedger:
    """In-process entry point for the presentation layer."""

    def __init__(
        self,
        factory: ConnectionFactory,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.factory = factory
        self.settings = settings or Settings()
        self.clock = clock

        self.catalog = Catalog(factory, self.settings.alerts)
        self.inventory = LotInventory(factory, clock)
        self.sales = AllocationEngine(factory, clock)
        self.returns = ReturnReintegrationEngine(factory, clock)
        self.counting = InventoryReconciliationEngine(factory, clock)
        self.forecaster = ReplenishmentForecaster(factory, self.settings.forecast, clock)
        self.alerts = AlertEvaluator(factory, self.settings.alerts, clock)

    @classmethod
    def open(
        cls,
        db_path: Optional[Path] = None,
        settings_path: Optional[Path] = None,
        clock: Callable[[], datetime] = datetime.now,
    ) -> "PharmacyLedger":
        """Initialize (migrate) the database and load settings."""
        factory = initialize_database(db_path)
        settings = load_settings(settings_path)
        logger.info(f"Ledger opened on {factory.db_path}")
        return cls(factory, settings, clock)

    # Sales

    def create_sale(
        self,
        lines: Sequence[Tuple[int, int]],
        seller_id: Optional[int] = None,
        prescription_flag: bool = False,
        prescription_number: Optional[str] = None,
        notes: str = "",
    ) -> Sale:
        return self.sales.create_sale(lines, seller_id, prescription_flag, prescription_number, notes)

    # Stock

    def get_lots_fefo(self, medication_id: int) -> List[Lot]:
        return self.inventory.lots_for_allocation(medication_id)

    def get_stock_total(self, medication_id: int) -> int:
        return self.inventory.total_stock(medication_id)

    def get_stock_vendable(self, medication_id: int) -> int:
        return self.inventory.vendable_stock(medication_id)

    # Returns

    def register_return(
        self,
        sale_id: int,
        lot_id: int,
        quantity: int,
        reason,
        reintegrate: bool = True,
        comment: str = "",
        user_id: Optional[int] = None,
    ) -> Return:
        return self.returns.register_return(sale_id, lot_id, quantity, reason, reintegrate, comment, user_id)

    # Inventory counting

    def start_session(self, operator_id: Optional[int] = None, notes: str = "") -> InventorySession:
        return self.counting.start_session(operator_id, notes)

    def record_count(
        self,
        session_id: int,
        lot_id: int,
        physical_qty: int,
        reason=None,
        comment: str = "",
        counted_by: Optional[int] = None,
    ) -> CountEntry:
        return self.counting.record_count(session_id, lot_id, physical_qty, reason, comment, counted_by)

    def cancel_session(self, session_id: int, user_id: Optional[int] = None) -> InventorySession:
        return self.counting.cancel_session(session_id, user_id)

    def complete_session(self, session_id: int, user_id: Optional[int] = None) -> InventorySession:
        return self.counting.complete_session(session_id, user_id)

    # Forecast & alerts

    def generate_predictions(self, window_days: Optional[int] = None) -> List[Prediction]:
        return self.forecaster.generate_predictions(window_days)

    def low_stock_alerts(self) -> List[LowStockAlert]:
        return self.alerts.low_stock_alerts()

    def expiration_alerts(self, window_days: Optional[int] = None) -> List[ExpirationAlert]:
        return self.alerts.expiration_alerts(window_days)

    def expired_lots(self) -> List[Lot]:
        return self.alerts.expired_lots()

    def today(self) -> date:
        return self.clock().date()
