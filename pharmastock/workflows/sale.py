"""
Sale workflow: FEFO allocation across lots with all-or-nothing commit.

The FEFO read, the plan and every write happen inside one IMMEDIATE
transaction held under the factory's writer lock, so two concurrent sales
can never both consume the same units.
"""
from datetime import date, datetime
from typing import Callable, List, Optional, Sequence, Tuple
import logging

from ..db import ConnectionFactory, transaction
from ..domain.models import Sale
from ..domain.ledger import AllocationPlanner, merge_allocations, sale_total
from ..domain.validation import require, validate_sale_lines, validate_date_range
from ..errors import ValidationError
from ..repositories import RepositoryFactory

logger = logging.getLogger(__name__)


class AllocationEngine:
    """Point-of-sale stock consumption."""

    def __init__(self, factory: ConnectionFactory, clock: Callable[[], datetime] = datetime.now):
        self.factory = factory
        self.clock = clock

    def create_sale(
        self,
        lines: Sequence[Tuple[int, int]],
        seller_id: Optional[int] = None,
        prescription_flag: bool = False,
        prescription_number: Optional[str] = None,
        notes: str = "",
    ) -> Sale:
        """
        Sell (medication_id, quantity) lines, drawing each from FEFO lots.

        Args:
            lines: Requested lines; the same medication may appear more than once
            seller_id: Seller user id
            prescription_flag: Sale is backed by a prescription
            prescription_number: Prescription reference (optional)
            notes: Free text

        Returns:
            Committed Sale with one line per (lot) touched

        Raises:
            ValidationError: Empty request, non-positive quantity, inactive
                medication, prescription-only medication without prescription
            NotFoundError: Unknown medication
            InsufficientStockError: A line cannot be covered; nothing is written
        """
        require(validate_sale_lines(lines))
        now = self.clock()
        as_of = now.date()

        with self.factory.writer() as conn, transaction(conn, "IMMEDIATE"):
            repos = RepositoryFactory(conn)

            # 1. Resolve medications (fails before any lot is touched)
            requests = []
            for medication_id, quantity in lines:
                medication = repos.medications().require(medication_id)
                if not medication.active:
                    raise ValidationError(f"Medication {medication.commercial_name} is not active")
                if medication.prescription_required and not prescription_flag:
                    raise ValidationError(
                        f"Medication {medication.commercial_name} requires a prescription"
                    )
                requests.append((medication, quantity))

            # 2. Plan against lots read under the write lock
            lots_by_medication = repos.lots().list_for_medications(m.medication_id for m, _ in requests)
            planner = AllocationPlanner(lots_by_medication, as_of)
            allocations = merge_allocations(planner.plan(requests))
            total = sale_total(allocations)

            # 3. Persist header, lines and decrements as one unit
            sale_id = repos.sales().insert_sale(
                sold_at=now,
                total_amount=total,
                prescription=prescription_flag,
                prescription_number=prescription_number,
                seller_id=seller_id,
                notes=notes,
            )
            for allocation in allocations:
                repos.sales().insert_line(sale_id, allocation)
                repos.lots().decrement(allocation.lot_id, allocation.quantity)

            medication_ids = {m.medication_id for m, _ in requests}
            repos.audit().log(
                "SALE_CREATED",
                f"Sale {sale_id}: {len(allocations)} lines, total {total}",
                medication_id=next(iter(medication_ids)) if len(medication_ids) == 1 else None,
                user_id=seller_id,
                timestamp=now,
            )
            sale = repos.sales().require(sale_id)

        logger.info(
            f"Sale {sale.sale_id} committed: {len(sale.lines)} lines, total={sale.total_amount}, "
            f"seller={seller_id}"
        )
        return sale

    def get_sale(self, sale_id: int) -> Sale:
        """
        Raises:
            NotFoundError: Unknown sale
        """
        with self.factory.reader() as conn, transaction(conn):
            return RepositoryFactory(conn).sales().require(sale_id)

    def list_sales(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        seller_id: Optional[int] = None,
        prescription_only: bool = False,
    ) -> List[Sale]:
        require(validate_date_range(date_from, date_to))
        with self.factory.reader() as conn, transaction(conn):
            return RepositoryFactory(conn).sales().list(
                date_from=date_from,
                date_to=date_to,
                seller_id=seller_id,
                prescription_only=prescription_only,
            )

    def units_sold(self, medication_id: int, since: datetime) -> int:
        """Gross units sold since a timestamp (returns are not netted out)."""
        with self.factory.reader() as conn, transaction(conn):
            repos = RepositoryFactory(conn)
            repos.medications().require(medication_id)
            return repos.sales().units_sold(medication_id, since)
