"""
Physical inventory reconciliation.

Session lifecycle:
    (none) -> IN_PROGRESS -> COMPLETED
                          -> CANCELLED

Only one session may be IN_PROGRESS at a time.  Counts are upserted per
lot; completion sets every varying lot to its physical quantity in one
transaction and consumes the session.
"""
from datetime import datetime
from decimal import Decimal
from typing import Callable, List, Optional, Union
import logging

from ..db import ConnectionFactory, transaction
from ..domain.models import CountEntry, InventorySession, SessionStatus, SessionSummary, VarianceReason
from ..domain.ledger import entries_missing_reason, regularizations
from ..domain.validation import require, validate_quantity
from ..errors import StateError, ValidationError
from ..repositories import RepositoryFactory, InventoryRepository

logger = logging.getLogger(__name__)


def _require_open(inventory: InventoryRepository, session_id: int) -> InventorySession:
    session = inventory.require_session(session_id)
    if not session.is_open:
        raise StateError(f"Inventory session {session_id} is {session.status.value}")
    return session


class InventoryReconciliationEngine:
    """Counting sessions and stock regularization."""

    def __init__(self, factory: ConnectionFactory, clock: Callable[[], datetime] = datetime.now):
        self.factory = factory
        self.clock = clock

    def start_session(self, operator_id: Optional[int] = None, notes: str = "") -> InventorySession:
        """
        Open a counting session.

        Raises:
            StateError: Another session is already in progress
        """
        now = self.clock()
        with self.factory.writer() as conn, transaction(conn, "IMMEDIATE"):
            repos = RepositoryFactory(conn)
            active = repos.inventory().active_session()
            if active is not None:
                raise StateError(f"Inventory session {active.session_id} is already in progress")

            session_id = repos.inventory().insert_session(now, operator_id, notes)
            repos.audit().log("SESSION_STARTED", f"Session {session_id}", user_id=operator_id, timestamp=now)
            session = repos.inventory().require_session(session_id)

        logger.info(f"Inventory session {session_id} started by operator {operator_id}")
        return session

    def record_count(
        self,
        session_id: int,
        lot_id: int,
        physical_qty: int,
        reason: Union[VarianceReason, str, None] = None,
        comment: str = "",
        counted_by: Optional[int] = None,
    ) -> CountEntry:
        """
        Record (or re-record) the physical count of one lot.

        The theoretical quantity is the lot's quantity at the moment of
        recording.

        Raises:
            ValidationError: Negative count, unknown reason, or missing reason
                on a non-zero variance
            NotFoundError: Unknown session or lot
            StateError: Session not in progress
        """
        require(validate_quantity(physical_qty, allow_zero=True))
        reason_code = VarianceReason.parse(reason)
        now = self.clock()

        with self.factory.writer() as conn, transaction(conn, "IMMEDIATE"):
            repos = RepositoryFactory(conn)
            _require_open(repos.inventory(), session_id)
            lot = repos.lots().require(lot_id)

            entry = CountEntry(
                session_id=session_id,
                lot_id=lot_id,
                theoretical_qty=lot.quantity_on_hand,
                physical_qty=physical_qty,
                counted_at=now,
                reason=reason_code,
                comment=comment or "",
                counted_by=counted_by,
            )
            if entry.needs_reason:
                raise ValidationError(
                    f"Lot {lot.lot_number}: variance {entry.variance:+d} requires a reason"
                )

            repos.inventory().upsert_count(entry)

        return entry

    def cancel_session(self, session_id: int, user_id: Optional[int] = None) -> InventorySession:
        """
        Drop all counts and close the session without touching stock.

        Raises:
            StateError: Session not in progress
        """
        now = self.clock()
        with self.factory.writer() as conn, transaction(conn, "IMMEDIATE"):
            repos = RepositoryFactory(conn)
            _require_open(repos.inventory(), session_id)
            discarded = repos.inventory().delete_counts(session_id)
            repos.inventory().close_session(session_id, SessionStatus.CANCELLED, now)
            repos.audit().log(
                "SESSION_CANCELLED", f"Session {session_id}: {discarded} counts discarded",
                user_id=user_id, timestamp=now,
            )
            session = repos.inventory().require_session(session_id)

        logger.info(f"Inventory session {session_id} cancelled ({discarded} counts discarded)")
        return session

    def complete_session(self, session_id: int, user_id: Optional[int] = None) -> InventorySession:
        """
        Apply every non-zero variance and close the session.

        Raises:
            ValidationError: A varying count has no reason (nothing applied)
            StateError: Session not in progress (e.g. already completed)
        """
        now = self.clock()
        with self.factory.writer() as conn, transaction(conn, "IMMEDIATE"):
            repos = RepositoryFactory(conn)
            _require_open(repos.inventory(), session_id)
            entries = repos.inventory().counts(session_id)

            missing = entries_missing_reason(entries)
            if missing:
                lots = ", ".join(str(entry.lot_id) for entry in missing)
                raise ValidationError(f"Session {session_id}: variance without reason on lots {lots}")

            adjusted = regularizations(entries)
            for entry in adjusted:
                lot = repos.lots().require(entry.lot_id)
                repos.lots().set_quantity(entry.lot_id, entry.physical_qty)
                repos.audit().log(
                    "REGULARIZATION",
                    f"Session {session_id}, lot {lot.lot_number}: {lot.quantity_on_hand} -> "
                    f"{entry.physical_qty} ({entry.reason.value})",
                    medication_id=lot.medication_id,
                    user_id=user_id,
                    timestamp=now,
                )

            if not repos.inventory().close_session(session_id, SessionStatus.COMPLETED, now):
                raise StateError(f"Inventory session {session_id} could not be completed")
            repos.audit().log(
                "SESSION_COMPLETED",
                f"Session {session_id}: {len(entries)} counts, {len(adjusted)} regularizations",
                user_id=user_id,
                timestamp=now,
            )
            session = repos.inventory().require_session(session_id)

        logger.info(f"Inventory session {session_id} completed: {len(adjusted)} lots regularized")
        return session

    def active_session(self) -> Optional[InventorySession]:
        with self.factory.reader() as conn, transaction(conn):
            return RepositoryFactory(conn).inventory().active_session()

    def get_session(self, session_id: int) -> InventorySession:
        with self.factory.reader() as conn, transaction(conn):
            return RepositoryFactory(conn).inventory().require_session(session_id)

    def counts(self, session_id: int) -> List[CountEntry]:
        with self.factory.reader() as conn, transaction(conn):
            repos = RepositoryFactory(conn)
            repos.inventory().require_session(session_id)
            return repos.inventory().counts(session_id)

    def list_sessions(self, limit: int = 100) -> List[InventorySession]:
        with self.factory.reader() as conn, transaction(conn):
            return RepositoryFactory(conn).inventory().list_sessions(limit)

    def session_summary(self, session_id: int) -> SessionSummary:
        """Counted lots, lots with variance, net units and variance value at purchase price."""
        with self.factory.reader() as conn, transaction(conn):
            repos = RepositoryFactory(conn)
            session = repos.inventory().require_session(session_id)
            entries = repos.inventory().counts(session_id)
            varying = regularizations(entries)
            value = Decimal("0")
            for entry in varying:
                lot = repos.lots().require(entry.lot_id)
                value += lot.purchase_price * entry.variance

        return SessionSummary(
            session=session,
            counted_lots=len(entries),
            lots_with_variance=len(varying),
            net_variance_units=sum(entry.variance for entry in varying),
            variance_value=value,
            missing_reasons=len(entries_missing_reason(entries)),
        )
