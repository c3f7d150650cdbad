"""
Return workflow: customer returns against a (sale, lot) pair.

Units go back into the lot they were sold from when reintegration is
requested and the lot is still unexpired; otherwise the return is recorded
as a write-off and stock is left untouched.
"""
from datetime import date, datetime
from typing import Callable, List, Optional, Union
import logging

from ..db import ConnectionFactory, transaction
from ..domain.models import Return, ReturnReason, WriteOffReason
from ..domain.validation import require, validate_quantity, validate_date_range
from ..errors import NotFoundError, ValidationError
from ..repositories import RepositoryFactory

logger = logging.getLogger(__name__)


class ReturnReintegrationEngine:
    """Registers returns and credits stock back to the originating lot."""

    def __init__(self, factory: ConnectionFactory, clock: Callable[[], datetime] = datetime.now):
        self.factory = factory
        self.clock = clock

    def register_return(
        self,
        sale_id: int,
        lot_id: int,
        quantity: int,
        reason: Union[ReturnReason, str],
        reintegrate: bool = True,
        comment: str = "",
        user_id: Optional[int] = None,
    ) -> Return:
        """
        Record a return and optionally put the units back into stock.

        A lot that has expired since the sale cannot take units back: the
        return is downgraded to a write-off and Return.write_off_reason
        says so.

        Raises:
            ValidationError: Non-positive quantity, missing/unknown reason,
                quantity above what is still returnable for the pair
            NotFoundError: Unknown sale, or the sale never drew from this lot
        """
        require(validate_quantity(quantity))
        reason_code = ReturnReason.parse(reason)
        if reason_code is None:
            raise ValidationError("A return reason is required")

        now = self.clock()

        with self.factory.writer() as conn, transaction(conn, "IMMEDIATE"):
            repos = RepositoryFactory(conn)

            # 1. Check the pair and the remaining returnable quantity
            repos.sales().require(sale_id)
            sold = repos.sales().sold_quantity(sale_id, lot_id)
            if sold == 0:
                raise NotFoundError(f"Sale {sale_id} has no line for lot {lot_id}")

            already_returned = repos.returns().returned_quantity(sale_id, lot_id)
            returnable = sold - already_returned
            if quantity > returnable:
                raise ValidationError(
                    f"Cannot return {quantity} units of lot {lot_id} for sale {sale_id}: "
                    f"sold {sold}, already returned {already_returned}"
                )

            # 2. Decide reintegration vs write-off
            lot = repos.lots().require(lot_id)
            reintegrated = bool(reintegrate)
            write_off_reason = None
            if not reintegrated:
                write_off_reason = WriteOffReason.NOT_REQUESTED
            elif lot.is_expired(now.date()):
                reintegrated = False
                write_off_reason = WriteOffReason.LOT_EXPIRED
                logger.warning(
                    f"Return on sale {sale_id}: lot {lot.lot_number} expired on "
                    f"{lot.expiration_date.isoformat()}, recorded as write-off"
                )

            # 3. Credit stock and record the return together
            if reintegrated:
                repos.lots().increment(lot_id, quantity)

            return_id = repos.returns().insert(
                sale_id=sale_id,
                lot_id=lot_id,
                quantity=quantity,
                reason=reason_code,
                reintegrated=reintegrated,
                write_off_reason=write_off_reason,
                comment=comment,
                user_id=user_id,
                returned_at=now,
            )
            repos.audit().log(
                "RETURN_REGISTERED",
                f"Return {return_id} on sale {sale_id}, lot {lot.lot_number}: {quantity} units, "
                f"{reason_code.value}, {'reintegrated' if reintegrated else 'written off'}",
                medication_id=lot.medication_id,
                user_id=user_id,
                timestamp=now,
            )
            registered = repos.returns().get(return_id)

        logger.info(
            f"Return {return_id} registered: sale={sale_id} lot={lot_id} qty={quantity} "
            f"reintegrated={reintegrated}"
        )
        return registered

    def returnable_quantity(self, sale_id: int, lot_id: int) -> int:
        """Units of lot_id that can still be returned against sale_id."""
        with self.factory.reader() as conn, transaction(conn):
            repos = RepositoryFactory(conn)
            repos.sales().require(sale_id)
            sold = repos.sales().sold_quantity(sale_id, lot_id)
            return max(0, sold - repos.returns().returned_quantity(sale_id, lot_id))

    def returns_for_sale(self, sale_id: int) -> List[Return]:
        with self.factory.reader() as conn, transaction(conn):
            repos = RepositoryFactory(conn)
            repos.sales().require(sale_id)
            return repos.returns().list_for_sale(sale_id)

    def returns_between(self, date_from: Optional[date] = None, date_to: Optional[date] = None) -> List[Return]:
        require(validate_date_range(date_from, date_to))
        with self.factory.reader() as conn, transaction(conn):
            return RepositoryFactory(conn).returns().list(date_from=date_from, date_to=date_to)
