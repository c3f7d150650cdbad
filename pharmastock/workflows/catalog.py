"""
Catalog workflow: medication lookup and catalog maintenance.
"""
from decimal import Decimal
from typing import List, Optional
import logging

from ..db import ConnectionFactory, transaction
from ..domain.models import Medication
from ..config import AlertSettings
from ..domain.validation import parse_price, require, validate_quantity
from ..repositories import RepositoryFactory

logger = logging.getLogger(__name__)


class Catalog:
    """Read access to medications plus the few edits the ledger depends on."""

    def __init__(self, factory: ConnectionFactory, settings: Optional[AlertSettings] = None):
        self.factory = factory
        self.settings = settings or AlertSettings()

    def get(self, medication_id: int) -> Medication:
        """
        Raises:
            NotFoundError: Unknown medication
        """
        with self.factory.reader() as conn, transaction(conn):
            return RepositoryFactory(conn).medications().require(medication_id)

    def list_active(self) -> List[Medication]:
        with self.factory.reader() as conn, transaction(conn):
            return RepositoryFactory(conn).medications().list(active_only=True)

    def list_all(self) -> List[Medication]:
        with self.factory.reader() as conn, transaction(conn):
            return RepositoryFactory(conn).medications().list(active_only=False)

    def search(self, text: str, limit: int = 50) -> List[Medication]:
        with self.factory.reader() as conn, transaction(conn):
            return RepositoryFactory(conn).medications().search(text, limit)

    def add_medication(
        self,
        commercial_name: str,
        active_ingredient: str = "",
        unit_price: Decimal = Decimal("0"),
        reorder_threshold: Optional[int] = None,
        prescription_required: bool = False,
        dosage_form: str = "",
        strength: str = "",
    ) -> Medication:
        """
        Register a medication (threshold defaults to the configured stock threshold).

        Raises:
            ValidationError: Empty name, invalid price, negative threshold
        """
        if reorder_threshold is None:
            reorder_threshold = self.settings.default_stock_threshold
        require(validate_quantity(reorder_threshold, allow_zero=True))
        unit_price = parse_price(unit_price, "Unit price")

        with self.factory.writer() as conn, transaction(conn, "IMMEDIATE"):
            repo = RepositoryFactory(conn).medications()
            medication_id = repo.add(
                commercial_name=commercial_name,
                active_ingredient=active_ingredient,
                reorder_threshold=reorder_threshold,
                unit_price=unit_price,
                prescription_required=prescription_required,
                dosage_form=dosage_form,
                strength=strength,
            )
            medication = repo.require(medication_id)

        logger.info(f"Medication added: {medication.commercial_name} (id={medication_id})")
        return medication

    def update_threshold(self, medication_id: int, reorder_threshold: int) -> Medication:
        require(validate_quantity(reorder_threshold, allow_zero=True))
        return self._update(medication_id, reorder_threshold=reorder_threshold)

    def update_price(self, medication_id: int, unit_price: Decimal) -> Medication:
        """New price applies to future sales only; existing sale lines keep theirs."""
        unit_price = parse_price(unit_price, "Unit price")
        return self._update(medication_id, unit_price=unit_price)

    def set_active(self, medication_id: int, active: bool) -> Medication:
        return self._update(medication_id, active=active)

    def _update(self, medication_id: int, **fields) -> Medication:
        with self.factory.writer() as conn, transaction(conn, "IMMEDIATE"):
            repo = RepositoryFactory(conn).medications()
            repo.require(medication_id)
            repo.update(medication_id, **fields)
            return repo.require(medication_id)
