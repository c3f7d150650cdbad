"""
Replenishment forecast: depletion dates and reorder suggestions from the
trailing sales window.

Read-only.  A medication whose history cannot be read is logged and
skipped; the rest of the batch is still returned.
"""
from datetime import date, datetime, timedelta
from typing import Callable, List, Optional
import logging

from ..config import ForecastSettings, DEFAULT_PROJECTION_HORIZON_DAYS, DEFAULT_PROJECTION_STEP_DAYS
from ..db import ConnectionFactory, transaction
from ..domain.models import Medication, Prediction, StockProjection
from ..domain.ledger import (
    daily_consumption,
    days_remaining,
    depletion_date,
    suggested_reorder_qty,
    recommended_order_date,
    classify_stock_urgency,
    project_stock,
)
from ..domain.validation import require, validate_window_days
from ..repositories import RepositoryFactory, SaleRepository
from .lot_inventory import StockReadCache

logger = logging.getLogger(__name__)


class ReplenishmentForecaster:
    """Per-medication consumption forecast and reorder suggestion."""

    def __init__(
        self,
        factory: ConnectionFactory,
        settings: Optional[ForecastSettings] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.factory = factory
        self.settings = settings or ForecastSettings()
        self.clock = clock

    def generate_predictions(self, window_days: Optional[int] = None) -> List[Prediction]:
        """
        Forecast every active medication.

        Args:
            window_days: Trailing sales window (default: configured analysis window)

        Returns:
            Predictions sorted most urgent first, then by days remaining
        """
        window_days = self.settings.analysis_window_days if window_days is None else window_days
        require(validate_window_days(window_days))

        now = self.clock()
        since = now - timedelta(days=window_days)
        predictions = []

        with self.factory.reader() as conn, transaction(conn):
            repos = RepositoryFactory(conn)
            cache = StockReadCache(repos.lots(), now.date())

            for medication in repos.medications().list(active_only=True):
                try:
                    prediction = self._predict(medication, repos.sales(), cache, since, window_days, now.date())
                except Exception as e:
                    logger.warning(f"Forecast skipped for medication {medication.medication_id}: {e}")
                    continue
                predictions.append(prediction)

        predictions.sort(key=lambda p: (p.urgency, p.days_remaining, p.medication_id))
        return predictions

    def predict(self, medication_id: int, window_days: Optional[int] = None) -> Prediction:
        """
        Forecast a single medication (errors propagate).

        Raises:
            NotFoundError: Unknown medication
        """
        window_days = self.settings.analysis_window_days if window_days is None else window_days
        require(validate_window_days(window_days))

        now = self.clock()
        with self.factory.reader() as conn, transaction(conn):
            repos = RepositoryFactory(conn)
            medication = repos.medications().require(medication_id)
            cache = StockReadCache(repos.lots(), now.date())
            return self._predict(
                medication, repos.sales(), cache, now - timedelta(days=window_days), window_days, now.date()
            )

    def _predict(
        self,
        medication: Medication,
        sales: SaleRepository,
        cache: StockReadCache,
        since: datetime,
        window_days: int,
        today: date,
    ) -> Prediction:
        settings = self.settings

        sold = sales.units_sold(medication.medication_id, since)
        consumption = daily_consumption(sold, window_days)
        stock = cache.vendable_stock(medication.medication_id)
        remaining = days_remaining(stock, consumption)
        depletion = depletion_date(today, remaining)

        return Prediction(
            medication_id=medication.medication_id,
            commercial_name=medication.commercial_name,
            vendable_stock=stock,
            daily_consumption=consumption,
            days_remaining=remaining,
            depletion_date=depletion,
            suggested_reorder_qty=suggested_reorder_qty(settings.target_stock_days, consumption, stock),
            urgency=classify_stock_urgency(stock, remaining, settings.critical_days, settings.urgent_days),
            reorder_threshold=medication.reorder_threshold,
            recommended_order_date=recommended_order_date(
                depletion, today, settings.delivery_lead_days, settings.safety_margin_days
            ),
        )

    def project_stock(
        self,
        prediction: Prediction,
        horizon_days: int = DEFAULT_PROJECTION_HORIZON_DAYS,
        step_days: int = DEFAULT_PROJECTION_STEP_DAYS,
    ) -> StockProjection:
        """Linear vendable-stock projection for a prediction, with its reorder threshold."""
        require(validate_window_days(horizon_days))
        require(validate_window_days(step_days))
        return project_stock(
            medication_id=prediction.medication_id,
            vendable_stock=prediction.vendable_stock,
            consumption_per_day=prediction.daily_consumption,
            today=self.clock().date(),
            horizon_days=horizon_days,
            step_days=step_days,
            threshold=prediction.reorder_threshold,
        )
