"""
Stock and expiry alerts.
"""
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..config import AlertSettings
from ..db import ConnectionFactory, transaction
from ..domain.models import ExpirationAlert, Lot, LowStockAlert, UrgencyLevel
from ..domain.ledger import classify_expiry_urgency
from ..domain.validation import require, validate_quantity
from ..repositories import RepositoryFactory
from .lot_inventory import StockReadCache


class AlertEvaluator:
    """Low-stock, near-expiry and expired-lot reports."""

    def __init__(
        self,
        factory: ConnectionFactory,
        settings: Optional[AlertSettings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.factory = factory
        self.settings = settings or AlertSettings()
        self.clock = clock

    def low_stock_alerts(self) -> List[LowStockAlert]:
        """Active medications whose vendable stock is below their reorder threshold, largest deficit first."""
        today = self.clock().date()
        alerts = []
        with self.factory.reader() as conn, transaction(conn):
            repos = RepositoryFactory(conn)
            cache = StockReadCache(repos.lots(), today)
            for medication in repos.medications().list(active_only=True):
                stock = cache.vendable_stock(medication.medication_id)
                if stock < medication.reorder_threshold:
                    alerts.append(LowStockAlert(
                        medication_id=medication.medication_id,
                        commercial_name=medication.commercial_name,
                        vendable_stock=stock,
                        threshold=medication.reorder_threshold,
                    ))

        alerts.sort(key=lambda a: (-a.deficit, a.commercial_name))
        return alerts

    def expiration_alerts(self, window_days: Optional[int] = None) -> List[ExpirationAlert]:
        """
        Unexpired lots with stock expiring within window_days.

        Args:
            window_days: Look-ahead in days (default: configured expiry window)

        Returns:
            Alerts ordered by expiration date
        """
        window_days = self.settings.expiry_window_days if window_days is None else window_days
        require(validate_quantity(window_days, allow_zero=True))

        today = self.clock().date()
        with self.factory.reader() as conn, transaction(conn):
            repos = RepositoryFactory(conn)
            lots = repos.lots().list_expiring(today, today + timedelta(days=window_days))
            names = self._names(repos)

        alerts = []
        for lot in lots:
            days_left = lot.days_until_expiry(today)
            alerts.append(ExpirationAlert(
                lot=lot,
                commercial_name=names.get(lot.medication_id, ""),
                days_remaining=days_left,
                urgency=classify_expiry_urgency(
                    days_left, self.settings.expiry_critical_days, self.settings.expiry_urgent_days
                ),
            ))
        return alerts

    def expired_lots(self) -> List[Lot]:
        """Lots past their expiration date that still hold stock (to remove or destroy)."""
        today = self.clock().date()
        with self.factory.reader() as conn, transaction(conn):
            return RepositoryFactory(conn).lots().list_expired(today)

    def summary(self) -> Dict[str, int]:
        """Badge counts for a dashboard."""
        low_stock = self.low_stock_alerts()
        expiring = self.expiration_alerts()
        expired = self.expired_lots()
        return {
            "low_stock": len(low_stock),
            "out_of_stock": sum(1 for a in low_stock if a.vendable_stock == 0),
            "expiring": len(expiring),
            "expiring_critical": sum(1 for a in expiring if a.urgency == UrgencyLevel.CRITIQUE),
            "expired_lots": len(expired),
        }

    @staticmethod
    def _names(repos: RepositoryFactory) -> Dict[int, str]:
        return {m.medication_id: m.commercial_name for m in repos.medications().list(active_only=False)}
