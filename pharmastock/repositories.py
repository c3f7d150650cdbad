"""
Repository/DAL Layer for SQLite Storage

- MedicationRepository: catalog reads (+ catalog management writes)
- LotRepository: per-lot quantities, FEFO queries, guarded mutations
- SaleRepository: sale headers/lines (append-only)
- ReturnRepository: returns against (sale, lot) pairs
- InventoryRepository: counting sessions and count entries
- AuditRepository: audit trail

Design Principles:
- Repositories never open transactions: the calling workflow owns the
  transaction boundary so several repositories commit as one unit
- Reads return frozen domain snapshots, never live rows
- IntegrityError mapped to ledger exceptions
- No business logic: pure data access layer
"""

import sqlite3
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any, Iterable

from dateutil import parser as dateparser

from .domain.models import (
    Medication, Lot, Sale, SaleLine, Return, ReturnReason, WriteOffReason,
    InventorySession, SessionStatus, CountEntry, VarianceReason, AuditEntry,
)
from .domain.ledger import PlannedAllocation
from .errors import NotFoundError, StateError, ValidationError


TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"


# ============================================================
# Conversion helpers
# ============================================================

def format_timestamp(value: datetime) -> str:
    return value.strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return dateparser.isoparse(value)


def _date(value: str) -> date:
    return date.fromisoformat(value)


def _decimal(value: Any) -> Decimal:
    return Decimal(str(value)) if value is not None else Decimal("0")


def _map_integrity_error(e: sqlite3.IntegrityError, context: str) -> Exception:
    error_msg = str(e).lower()
    if "foreign key" in error_msg:
        return NotFoundError(f"{context}: referenced entity does not exist")
    if "check constraint" in error_msg:
        return StateError(f"{context}: business rule violated ({e})")
    if "unique" in error_msg:
        return StateError(f"{context}: duplicate entry ({e})")
    return StateError(f"{context}: {e}")


# ============================================================
# Medication Repository
# ============================================================

class MedicationRepository:
    """
    Repository for the medication catalog.

    Responsibilities:
    - Lookup by id, name search, active listing
    - Catalog management writes (add, threshold/price/active edits)
    """

    UPDATABLE_FIELDS = {"reorder_threshold", "unit_price", "active", "commercial_name",
                        "active_ingredient", "dosage_form", "strength", "prescription_required"}

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def _to_model(row: sqlite3.Row) -> Medication:
        return Medication(
            medication_id=row["medication_id"],
            commercial_name=row["commercial_name"],
            active_ingredient=row["active_ingredient"],
            reorder_threshold=row["reorder_threshold"],
            unit_price=_decimal(row["unit_price"]),
            prescription_required=bool(row["prescription_required"]),
            active=bool(row["active"]),
            dosage_form=row["dosage_form"],
            strength=row["strength"],
        )

    def get(self, medication_id: int) -> Optional[Medication]:
        row = self.conn.execute(
            "SELECT * FROM medications WHERE medication_id = ?", (medication_id,)
        ).fetchone()
        return self._to_model(row) if row else None

    def require(self, medication_id: int) -> Medication:
        """Get medication or raise NotFoundError."""
        medication = self.get(medication_id)
        if medication is None:
            raise NotFoundError(f"Medication {medication_id} not found")
        return medication

    def list(self, active_only: bool = True) -> List[Medication]:
        where_sql = "WHERE active = 1" if active_only else ""
        rows = self.conn.execute(
            f"SELECT * FROM medications {where_sql} ORDER BY commercial_name, medication_id"
        ).fetchall()
        return [self._to_model(row) for row in rows]

    def search(self, text: str, limit: int = 50) -> List[Medication]:
        pattern = f"%{text.strip()}%"
        rows = self.conn.execute("""
            SELECT * FROM medications
            WHERE commercial_name LIKE ? OR active_ingredient LIKE ?
            ORDER BY commercial_name
            LIMIT ?
        """, (pattern, pattern, limit)).fetchall()
        return [self._to_model(row) for row in rows]

    def add(
        self,
        commercial_name: str,
        active_ingredient: str = "",
        reorder_threshold: int = 10,
        unit_price: Decimal = Decimal("0"),
        prescription_required: bool = False,
        active: bool = True,
        dosage_form: str = "",
        strength: str = "",
    ) -> int:
        """
        Insert a catalog entry.

        Returns:
            medication_id (AUTOINCREMENT)
        """
        if not commercial_name or not commercial_name.strip():
            raise ValidationError("Commercial name cannot be empty")

        try:
            cur = self.conn.execute("""
                INSERT INTO medications (commercial_name, active_ingredient, reorder_threshold, unit_price,
                                         prescription_required, active, dosage_form, strength)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                commercial_name.strip(), active_ingredient, reorder_threshold, str(Decimal(unit_price)),
                1 if prescription_required else 0, 1 if active else 0, dosage_form, strength,
            ))
        except sqlite3.IntegrityError as e:
            raise _map_integrity_error(e, f"Medication {commercial_name}") from e

        medication_id = cur.lastrowid
        assert medication_id is not None, "lastrowid should be set after INSERT"
        return medication_id

    def update(self, medication_id: int, **fields: Any) -> bool:
        """
        Update catalog fields (threshold, price, active flag, labels).

        Returns:
            True if updated, False if medication not found
        """
        unknown = set(fields) - self.UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update medication fields: {', '.join(sorted(unknown))}")
        if not fields:
            return self.get(medication_id) is not None

        set_clauses = []
        values: List[Any] = []
        for key, value in fields.items():
            if key == "unit_price":
                value = str(Decimal(value))
            elif isinstance(value, bool):
                value = 1 if value else 0
            set_clauses.append(f"{key} = ?")
            values.append(value)
        set_clauses.append("updated_at = datetime('now')")
        values.append(medication_id)

        try:
            cur = self.conn.execute(
                f"UPDATE medications SET {', '.join(set_clauses)} WHERE medication_id = ?", values
            )
        except sqlite3.IntegrityError as e:
            raise _map_integrity_error(e, f"Medication {medication_id}") from e
        return cur.rowcount > 0


# ============================================================
# Lot Repository
# ============================================================

class LotRepository:
    """
    Repository for lots: authoritative per-lot quantities.

    Mutations are guarded in SQL so quantity_on_hand can never go negative,
    even if a caller planned against a stale snapshot.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def _to_model(row: sqlite3.Row) -> Lot:
        return Lot(
            lot_id=row["lot_id"],
            medication_id=row["medication_id"],
            lot_number=row["lot_number"],
            expiration_date=_date(row["expiration_date"]),
            quantity_on_hand=row["quantity_on_hand"],
            purchase_price=_decimal(row["purchase_price"]),
            supplier_id=row["supplier_id"],
            received_at=parse_timestamp(row["received_at"]),
        )

    def get(self, lot_id: int) -> Optional[Lot]:
        row = self.conn.execute("SELECT * FROM lots WHERE lot_id = ?", (lot_id,)).fetchone()
        return self._to_model(row) if row else None

    def require(self, lot_id: int) -> Lot:
        lot = self.get(lot_id)
        if lot is None:
            raise NotFoundError(f"Lot {lot_id} not found")
        return lot

    def add(
        self,
        medication_id: int,
        lot_number: str,
        expiration_date: date,
        quantity: int,
        purchase_price: Decimal = Decimal("0"),
        supplier_id: Optional[int] = None,
        received_at: Optional[datetime] = None,
    ) -> int:
        """
        Register a received lot.

        Raises:
            NotFoundError: If medication doesn't exist
            StateError: If lot number already registered for this medication
        """
        received_at = received_at or datetime.now()
        try:
            cur = self.conn.execute("""
                INSERT INTO lots (medication_id, lot_number, expiration_date, quantity_on_hand,
                                  purchase_price, supplier_id, received_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, (
                medication_id, lot_number.strip(), expiration_date.isoformat(), quantity,
                str(Decimal(purchase_price)), supplier_id, format_timestamp(received_at),
            ))
        except sqlite3.IntegrityError as e:
            raise _map_integrity_error(e, f"Lot {lot_number} for medication {medication_id}") from e

        lot_id = cur.lastrowid
        assert lot_id is not None, "lastrowid should be set after INSERT"
        return lot_id

    def list_for_medication(self, medication_id: int) -> List[Lot]:
        rows = self.conn.execute("""
            SELECT * FROM lots WHERE medication_id = ?
            ORDER BY expiration_date ASC, lot_id ASC
        """, (medication_id,)).fetchall()
        return [self._to_model(row) for row in rows]

    def list_for_medications(self, medication_ids: Iterable[int]) -> Dict[int, List[Lot]]:
        """All lots for several medications, grouped by medication id."""
        ids = sorted(set(medication_ids))
        grouped: Dict[int, List[Lot]] = {medication_id: [] for medication_id in ids}
        if not ids:
            return grouped
        placeholders = ", ".join("?" * len(ids))
        rows = self.conn.execute(f"""
            SELECT * FROM lots WHERE medication_id IN ({placeholders})
            ORDER BY expiration_date ASC, lot_id ASC
        """, ids).fetchall()
        for row in rows:
            grouped[row["medication_id"]].append(self._to_model(row))
        return grouped

    def list_fefo(self, medication_id: int, as_of: date) -> List[Lot]:
        """Lots with stock, not expired on as_of, soonest expiry first (ties: lot id)."""
        rows = self.conn.execute("""
            SELECT * FROM lots
            WHERE medication_id = ? AND quantity_on_hand > 0 AND expiration_date >= ?
            ORDER BY expiration_date ASC, lot_id ASC
        """, (medication_id, as_of.isoformat())).fetchall()
        return [self._to_model(row) for row in rows]

    def list_all(self, with_stock_only: bool = False) -> List[Lot]:
        where_sql = "WHERE quantity_on_hand > 0" if with_stock_only else ""
        rows = self.conn.execute(
            f"SELECT * FROM lots {where_sql} ORDER BY medication_id, expiration_date, lot_id"
        ).fetchall()
        return [self._to_model(row) for row in rows]

    def list_expiring(self, as_of: date, until: date) -> List[Lot]:
        """Non-expired lots with stock expiring between as_of and until (inclusive)."""
        rows = self.conn.execute("""
            SELECT * FROM lots
            WHERE quantity_on_hand > 0 AND expiration_date >= ? AND expiration_date <= ?
            ORDER BY expiration_date ASC, lot_id ASC
        """, (as_of.isoformat(), until.isoformat())).fetchall()
        return [self._to_model(row) for row in rows]

    def list_expired(self, as_of: date) -> List[Lot]:
        rows = self.conn.execute("""
            SELECT * FROM lots
            WHERE quantity_on_hand > 0 AND expiration_date < ?
            ORDER BY expiration_date ASC, lot_id ASC
        """, (as_of.isoformat(),)).fetchall()
        return [self._to_model(row) for row in rows]

    def vendable_stock(self, medication_id: int, as_of: date) -> int:
        row = self.conn.execute("""
            SELECT COALESCE(SUM(quantity_on_hand), 0) FROM lots
            WHERE medication_id = ? AND expiration_date >= ?
        """, (medication_id, as_of.isoformat())).fetchone()
        return row[0]

    def total_stock(self, medication_id: int) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(SUM(quantity_on_hand), 0) FROM lots WHERE medication_id = ?",
            (medication_id,),
        ).fetchone()
        return row[0]

    def vendable_by_medication(self, as_of: date) -> Dict[int, int]:
        rows = self.conn.execute("""
            SELECT medication_id, SUM(quantity_on_hand) AS qty FROM lots
            WHERE expiration_date >= ?
            GROUP BY medication_id
        """, (as_of.isoformat(),)).fetchall()
        return {row["medication_id"]: row["qty"] for row in rows}

    def decrement(self, lot_id: int, qty: int) -> int:
        """
        Subtract qty from a lot.

        Returns:
            New quantity_on_hand

        Raises:
            NotFoundError: Unknown lot
            StateError: Result would be negative
        """
        cur = self.conn.execute("""
            UPDATE lots SET quantity_on_hand = quantity_on_hand - ?
            WHERE lot_id = ? AND quantity_on_hand >= ?
        """, (qty, lot_id, qty))
        if cur.rowcount == 0:
            lot = self.require(lot_id)
            raise StateError(
                f"Lot {lot_id} has {lot.quantity_on_hand} units, cannot remove {qty}"
            )
        return self.require(lot_id).quantity_on_hand

    def increment(self, lot_id: int, qty: int) -> int:
        """Add qty to a lot. Returns the new quantity."""
        current = self.require(lot_id).quantity_on_hand
        if current + qty < 0:
            raise StateError(f"Lot {lot_id} has {current} units, cannot apply {qty:+d}")
        self.conn.execute(
            "UPDATE lots SET quantity_on_hand = quantity_on_hand + ? WHERE lot_id = ?", (qty, lot_id)
        )
        return current + qty

    def set_quantity(self, lot_id: int, qty: int) -> int:
        """Absolute set. Returns the previous quantity."""
        previous = self.require(lot_id).quantity_on_hand
        if qty < 0:
            raise StateError(f"Lot {lot_id} quantity cannot be set to {qty}")
        self.conn.execute("UPDATE lots SET quantity_on_hand = ? WHERE lot_id = ?", (qty, lot_id))
        return previous


# ============================================================
# Sale Repository
# ============================================================

class SaleRepository:
    """
    Repository for sales (header + one line per lot touched).

    Sales are append-only: no update or delete.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def _line_to_model(row: sqlite3.Row) -> SaleLine:
        return SaleLine(
            line_id=row["line_id"],
            sale_id=row["sale_id"],
            lot_id=row["lot_id"],
            medication_id=row["medication_id"],
            quantity=row["quantity"],
            unit_price=_decimal(row["unit_price"]),
        )

    def _to_model(self, row: sqlite3.Row, with_lines: bool = True) -> Sale:
        return Sale(
            sale_id=row["sale_id"],
            sold_at=parse_timestamp(row["sold_at"]),
            total_amount=_decimal(row["total_amount"]),
            prescription=bool(row["prescription"]),
            prescription_number=row["prescription_number"],
            seller_id=row["seller_id"],
            notes=row["notes"],
            lines=tuple(self.lines(row["sale_id"])) if with_lines else (),
        )

    def insert_sale(
        self,
        sold_at: datetime,
        total_amount: Decimal,
        prescription: bool,
        prescription_number: Optional[str],
        seller_id: Optional[int],
        notes: str = "",
    ) -> int:
        cur = self.conn.execute("""
            INSERT INTO sales (sold_at, total_amount, prescription, prescription_number, seller_id, notes)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (
            format_timestamp(sold_at), str(total_amount), 1 if prescription else 0,
            prescription_number, seller_id, notes,
        ))
        sale_id = cur.lastrowid
        assert sale_id is not None, "lastrowid should be set after INSERT"
        return sale_id

    def insert_line(self, sale_id: int, allocation: PlannedAllocation) -> int:
        try:
            cur = self.conn.execute("""
                INSERT INTO sale_lines (sale_id, lot_id, medication_id, quantity, unit_price)
                VALUES (?, ?, ?, ?, ?)
            """, (
                sale_id, allocation.lot_id, allocation.medication_id,
                allocation.quantity, str(allocation.unit_price),
            ))
        except sqlite3.IntegrityError as e:
            raise _map_integrity_error(e, f"Sale {sale_id} line for lot {allocation.lot_id}") from e
        line_id = cur.lastrowid
        assert line_id is not None, "lastrowid should be set after INSERT"
        return line_id

    def get(self, sale_id: int) -> Optional[Sale]:
        row = self.conn.execute("SELECT * FROM sales WHERE sale_id = ?", (sale_id,)).fetchone()
        return self._to_model(row) if row else None

    def require(self, sale_id: int) -> Sale:
        sale = self.get(sale_id)
        if sale is None:
            raise NotFoundError(f"Sale {sale_id} not found")
        return sale

    def lines(self, sale_id: int) -> List[SaleLine]:
        rows = self.conn.execute(
            "SELECT * FROM sale_lines WHERE sale_id = ? ORDER BY line_id", (sale_id,)
        ).fetchall()
        return [self._line_to_model(row) for row in rows]

    def sold_quantity(self, sale_id: int, lot_id: int) -> int:
        """Units of lot_id sold by sale_id (0 if the sale never touched the lot)."""
        row = self.conn.execute(
            "SELECT COALESCE(SUM(quantity), 0) FROM sale_lines WHERE sale_id = ? AND lot_id = ?",
            (sale_id, lot_id),
        ).fetchone()
        return row[0]

    def list(
        self,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        seller_id: Optional[int] = None,
        prescription_only: bool = False,
        limit: int = 1000,
    ) -> List[Sale]:
        """List sales with filters (most recent first)."""
        where_clauses = []
        values: List[Any] = []

        if date_from:
            where_clauses.append("DATE(sold_at) >= ?")
            values.append(date_from.isoformat())

        if date_to:
            where_clauses.append("DATE(sold_at) <= ?")
            values.append(date_to.isoformat())

        if seller_id is not None:
            where_clauses.append("seller_id = ?")
            values.append(seller_id)

        if prescription_only:
            where_clauses.append("prescription = 1")

        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
        values.append(limit)

        rows = self.conn.execute(f"""
            SELECT * FROM sales {where_sql}
            ORDER BY sold_at DESC, sale_id DESC
            LIMIT ?
        """, values).fetchall()
        return [self._to_model(row) for row in rows]

    def units_sold(self, medication_id: int, since: datetime, until: Optional[datetime] = None) -> int:
        """Units of a medication sold with sold_at >= since (and < until if given)."""
        sql = """
            SELECT COALESCE(SUM(sl.quantity), 0)
            FROM sale_lines sl JOIN sales s ON s.sale_id = sl.sale_id
            WHERE sl.medication_id = ? AND s.sold_at >= ?
        """
        values: List[Any] = [medication_id, format_timestamp(since)]
        if until is not None:
            sql += " AND s.sold_at < ?"
            values.append(format_timestamp(until))
        return self.conn.execute(sql, values).fetchone()[0]


# ============================================================
# Return Repository
# ============================================================

class ReturnRepository:
    """Repository for returns against (sale, lot) pairs."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def _to_model(row: sqlite3.Row) -> Return:
        return Return(
            return_id=row["return_id"],
            sale_id=row["sale_id"],
            lot_id=row["lot_id"],
            quantity=row["quantity"],
            reason=ReturnReason(row["reason"]),
            reintegrated=bool(row["reintegrated"]),
            write_off_reason=WriteOffReason(row["write_off_reason"]) if row["write_off_reason"] else None,
            comment=row["comment"],
            user_id=row["user_id"],
            returned_at=parse_timestamp(row["returned_at"]),
        )

    def insert(
        self,
        sale_id: int,
        lot_id: int,
        quantity: int,
        reason: ReturnReason,
        reintegrated: bool,
        write_off_reason: Optional[WriteOffReason],
        comment: str,
        user_id: Optional[int],
        returned_at: datetime,
    ) -> int:
        try:
            cur = self.conn.execute("""
                INSERT INTO returns (sale_id, lot_id, quantity, reason, reintegrated,
                                     write_off_reason, comment, user_id, returned_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                sale_id, lot_id, quantity, reason.value, 1 if reintegrated else 0,
                write_off_reason.value if write_off_reason else None,
                comment or "", user_id, format_timestamp(returned_at),
            ))
        except sqlite3.IntegrityError as e:
            raise _map_integrity_error(e, f"Return for sale {sale_id} lot {lot_id}") from e
        return_id = cur.lastrowid
        assert return_id is not None, "lastrowid should be set after INSERT"
        return return_id

    def get(self, return_id: int) -> Optional[Return]:
        row = self.conn.execute("SELECT * FROM returns WHERE return_id = ?", (return_id,)).fetchone()
        return self._to_model(row) if row else None

    def returned_quantity(self, sale_id: int, lot_id: int) -> int:
        row = self.conn.execute(
            "SELECT COALESCE(SUM(quantity), 0) FROM returns WHERE sale_id = ? AND lot_id = ?",
            (sale_id, lot_id),
        ).fetchone()
        return row[0]

    def list_for_sale(self, sale_id: int) -> List[Return]:
        rows = self.conn.execute(
            "SELECT * FROM returns WHERE sale_id = ? ORDER BY return_id", (sale_id,)
        ).fetchall()
        return [self._to_model(row) for row in rows]

    def list(self, date_from: Optional[date] = None, date_to: Optional[date] = None, limit: int = 1000) -> List[Return]:
        where_clauses = []
        values: List[Any] = []
        if date_from:
            where_clauses.append("DATE(returned_at) >= ?")
            values.append(date_from.isoformat())
        if date_to:
            where_clauses.append("DATE(returned_at) <= ?")
            values.append(date_to.isoformat())
        where_sql = f"WHERE {' AND '.join(where_clauses)}" if where_clauses else ""
        values.append(limit)
        rows = self.conn.execute(f"""
            SELECT * FROM returns {where_sql}
            ORDER BY returned_at DESC, return_id DESC
            LIMIT ?
        """, values).fetchall()
        return [self._to_model(row) for row in rows]


# ============================================================
# Inventory Repository
# ============================================================

class InventoryRepository:
    """
    Repository for counting sessions and count entries.

    The partial unique index on inventory_sessions(status) is the single
    IN_PROGRESS gate; inserting a second open session raises StateError.
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    @staticmethod
    def _session_to_model(row: sqlite3.Row) -> InventorySession:
        return InventorySession(
            session_id=row["session_id"],
            started_at=parse_timestamp(row["started_at"]),
            ended_at=parse_timestamp(row["ended_at"]),
            status=SessionStatus(row["status"]),
            operator_id=row["operator_id"],
            notes=row["notes"],
        )

    @staticmethod
    def _entry_to_model(row: sqlite3.Row) -> CountEntry:
        return CountEntry(
            session_id=row["session_id"],
            lot_id=row["lot_id"],
            theoretical_qty=row["theoretical_qty"],
            physical_qty=row["physical_qty"],
            reason=VarianceReason(row["reason"]) if row["reason"] else None,
            comment=row["comment"],
            counted_by=row["counted_by"],
            counted_at=parse_timestamp(row["counted_at"]),
        )

    def active_session(self) -> Optional[InventorySession]:
        row = self.conn.execute(
            "SELECT * FROM inventory_sessions WHERE status = 'IN_PROGRESS'"
        ).fetchone()
        return self._session_to_model(row) if row else None

    def get_session(self, session_id: int) -> Optional[InventorySession]:
        row = self.conn.execute(
            "SELECT * FROM inventory_sessions WHERE session_id = ?", (session_id,)
        ).fetchone()
        return self._session_to_model(row) if row else None

    def require_session(self, session_id: int) -> InventorySession:
        session = self.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Inventory session {session_id} not found")
        return session

    def insert_session(self, started_at: datetime, operator_id: Optional[int], notes: str) -> int:
        try:
            cur = self.conn.execute("""
                INSERT INTO inventory_sessions (started_at, status, operator_id, notes)
                VALUES (?, 'IN_PROGRESS', ?, ?)
            """, (format_timestamp(started_at), operator_id, notes or ""))
        except sqlite3.IntegrityError as e:
            if "unique" in str(e).lower():
                raise StateError("An inventory session is already in progress") from e
            raise _map_integrity_error(e, "Inventory session") from e
        session_id = cur.lastrowid
        assert session_id is not None, "lastrowid should be set after INSERT"
        return session_id

    def close_session(self, session_id: int, status: SessionStatus, ended_at: datetime) -> bool:
        """Move an IN_PROGRESS session to a terminal status. False if it was not open."""
        cur = self.conn.execute("""
            UPDATE inventory_sessions SET status = ?, ended_at = ?
            WHERE session_id = ? AND status = 'IN_PROGRESS'
        """, (status.value, format_timestamp(ended_at), session_id))
        return cur.rowcount > 0

    def list_sessions(self, limit: int = 100) -> List[InventorySession]:
        rows = self.conn.execute(
            "SELECT * FROM inventory_sessions ORDER BY started_at DESC, session_id DESC LIMIT ?", (limit,)
        ).fetchall()
        return [self._session_to_model(row) for row in rows]

    def upsert_count(self, entry: CountEntry) -> None:
        """Insert or overwrite the count of one lot in one session."""
        try:
            self.conn.execute("""
                INSERT INTO count_entries (session_id, lot_id, theoretical_qty, physical_qty, variance,
                                           reason, comment, counted_by, counted_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(session_id, lot_id) DO UPDATE SET
                    theoretical_qty = excluded.theoretical_qty,
                    physical_qty = excluded.physical_qty,
                    variance = excluded.variance,
                    reason = excluded.reason,
                    comment = excluded.comment,
                    counted_by = excluded.counted_by,
                    counted_at = excluded.counted_at
            """, (
                entry.session_id, entry.lot_id, entry.theoretical_qty, entry.physical_qty, entry.variance,
                entry.reason.value if entry.reason else None, entry.comment or "",
                entry.counted_by, format_timestamp(entry.counted_at),
            ))
        except sqlite3.IntegrityError as e:
            raise _map_integrity_error(e, f"Count of lot {entry.lot_id} in session {entry.session_id}") from e

    def counts(self, session_id: int) -> List[CountEntry]:
        rows = self.conn.execute(
            "SELECT * FROM count_entries WHERE session_id = ? ORDER BY lot_id", (session_id,)
        ).fetchall()
        return [self._entry_to_model(row) for row in rows]

    def delete_counts(self, session_id: int) -> int:
        cur = self.conn.execute("DELETE FROM count_entries WHERE session_id = ?", (session_id,))
        return cur.rowcount


# ============================================================
# Audit Repository
# ============================================================

class AuditRepository:
    """Audit trail written in the same transaction as the mutation it describes."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def log(
        self,
        operation: str,
        details: str = "",
        medication_id: Optional[int] = None,
        user_id: Optional[int] = None,
        timestamp: Optional[datetime] = None,
    ) -> int:
        cur = self.conn.execute("""
            INSERT INTO audit_log (timestamp, operation, medication_id, details, user_id)
            VALUES (?, ?, ?, ?, ?)
        """, (format_timestamp(timestamp or datetime.now()), operation, medication_id, details, user_id))
        audit_id = cur.lastrowid
        assert audit_id is not None, "lastrowid should be set after INSERT"
        return audit_id

    def list(
        self,
        operation: Optional[str] = None,
        medication_id: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[AuditEntry]:
        """Query audit log (most recent first)."""
        query = "SELECT * FROM audit_log WHERE 1=1"
        params: List[Any] = []

        if operation is not None:
            query += " AND operation = ?"
            params.append(operation)

        if medication_id is not None:
            query += " AND medication_id = ?"
            params.append(medication_id)

        query += " ORDER BY timestamp DESC, audit_id DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])

        return [
            AuditEntry(
                audit_id=row["audit_id"],
                timestamp=parse_timestamp(row["timestamp"]),
                operation=row["operation"],
                details=row["details"],
                medication_id=row["medication_id"],
                user_id=row["user_id"],
            )
            for row in self.conn.execute(query, params).fetchall()
        ]


# ============================================================
# Repository Factory (Convenience)
# ============================================================

class RepositoryFactory:
    """
    Factory for creating repository instances sharing a connection.

    Usage:
        >>> with factory.writer() as conn, transaction(conn, "IMMEDIATE"):
        ...     repos = RepositoryFactory(conn)
        ...     repos.lots().decrement(lot_id, 3)
        ...     repos.audit().log("LOT_ADJUSTED", "...")
    """

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn

    def medications(self) -> MedicationRepository:
        return MedicationRepository(self.conn)

    def lots(self) -> LotRepository:
        return LotRepository(self.conn)

    def sales(self) -> SaleRepository:
        return SaleRepository(self.conn)

    def returns(self) -> ReturnRepository:
        return ReturnRepository(self.conn)

    def inventory(self) -> InventoryRepository:
        return InventoryRepository(self.conn)

    def audit(self) -> AuditRepository:
        return AuditRepository(self.conn)
