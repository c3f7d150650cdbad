"""
Database connection manager and migration utilities for SQLite storage.

- Connection management with PRAGMA configuration
- Single-writer connection factory
- Transaction context manager (all-or-nothing, ledger errors preserved)
- Migration runner over pharmastock/migrations/NNN_description.sql
- Schema verification and integrity checks

Design Principles:
- Foreign keys enforced (PRAGMA foreign_keys=ON)
- WAL journal mode for concurrent read/write
- Write transactions use BEGIN IMMEDIATE: the database write lock is taken
  before the first read, so read-plan-write sequences cannot interleave
- Idempotent migration application
- No retry: transient failures surface as InfrastructureError
"""

import sqlite3
import threading
import hashlib
import logging
from pathlib import Path
from contextlib import contextmanager
from typing import Optional, List, Tuple, Dict, Any

from .errors import LedgerError, InfrastructureError
from .utils.logging_config import setup_logging
from .utils.paths import get_db_path, get_migrations_dir

logger = logging.getLogger(__name__)


# ============================================================
# Configuration Constants
# ============================================================

MIGRATIONS_DIR: Path = get_migrations_dir()

PRAGMA_CONFIG = {
    "foreign_keys": "ON",           # Enforce FK constraints
    "journal_mode": "WAL",          # Write-Ahead Logging for concurrency
    "synchronous": "NORMAL",        # Balance safety/performance (FULL for max safety)
    "temp_store": "MEMORY",         # Use RAM for temp tables
    "busy_timeout": 5000,           # Wait 5s for lock (milliseconds)
}

EXPECTED_TABLES = {
    "schema_version", "medications", "lots", "sales", "sale_lines",
    "returns", "inventory_sessions", "count_entries", "audit_log",
}

_connection_lock = threading.Lock()
_active_connections = 0


# ============================================================
# Connection Management
# ============================================================

def open_connection(db_path: Optional[Path] = None, track_connection: bool = True) -> sqlite3.Connection:
    """
    Open SQLite connection with PRAGMA configuration.

    Args:
        db_path: Path to database file (default: data_dir/pharmastock.db)
        track_connection: If True, track connection in global counter (for monitoring)

    Returns:
        Configured sqlite3.Connection in autocommit mode (transactions are
        opened explicitly by transaction())

    Raises:
        InfrastructureError: Database locked, inaccessible or corrupted
    """
    global _active_connections

    if db_path is None:
        db_path = get_db_path()

    db_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        conn = sqlite3.connect(
            str(db_path),
            timeout=30.0,
            check_same_thread=False,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row

        cursor = conn.cursor()
        for pragma, value in PRAGMA_CONFIG.items():
            cursor.execute(f"PRAGMA {pragma}={value}")

        fk_enabled = cursor.execute("PRAGMA foreign_keys").fetchone()[0]
        if fk_enabled != 1:
            conn.close()
            raise InfrastructureError("Failed to enable foreign keys (PRAGMA foreign_keys=ON)")

        if track_connection:
            with _connection_lock:
                _active_connections += 1

        return conn

    except sqlite3.OperationalError as e:
        if "locked" in str(e).lower():
            raise InfrastructureError(
                f"Database {db_path} is locked. Another process holds the write lock; retry the operation."
            ) from e
        raise InfrastructureError(f"Cannot open database {db_path}: {e}") from e

    except sqlite3.DatabaseError as e:
        raise InfrastructureError(
            f"Database {db_path} is corrupted. Run 'python -m pharmastock.db verify' "
            f"or restore from backup."
        ) from e


def close_connection(conn: sqlite3.Connection, tracked: bool = True) -> None:
    """Close database connection and update tracking."""
    global _active_connections

    if conn:
        conn.close()

        if tracked:
            with _connection_lock:
                _active_connections = max(0, _active_connections - 1)


def get_active_connections_count() -> int:
    with _connection_lock:
        return _active_connections


class ConnectionFactory:
    """
    Connection factory with single-writer discipline.

    - WAL mode allows N readers + 1 writer simultaneously
    - writer() serializes write connections inside this process; the
      BEGIN IMMEDIATE issued by transaction() serializes across processes

    Usage:
        >>> factory = ConnectionFactory(db_path)
        >>> with factory.reader() as conn:
        ...     rows = conn.execute("SELECT * FROM lots").fetchall()
        >>> with factory.writer() as conn:
        ...     with transaction(conn, "IMMEDIATE") as cur:
        ...         cur.execute("UPDATE lots SET ...")
    """

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or get_db_path()
        self._writer_lock = threading.Lock()

    @contextmanager
    def reader(self):
        """Context manager for a read connection (unlimited)."""
        conn = open_connection(self.db_path, track_connection=True)
        try:
            yield conn
        finally:
            close_connection(conn, tracked=True)

    @contextmanager
    def writer(self, timeout: float = 10.0):
        """
        Context manager for write connection (single writer discipline).

        Raises:
            InfrastructureError: If writer lock cannot be acquired within timeout
        """
        acquired = self._writer_lock.acquire(timeout=timeout)
        if not acquired:
            raise InfrastructureError(
                f"Could not acquire writer lock after {timeout}s. "
                f"Another write operation is in progress."
            )

        conn = None
        try:
            conn = open_connection(self.db_path, track_connection=True)
            yield conn
        finally:
            if conn:
                close_connection(conn, tracked=True)
            self._writer_lock.release()


@contextmanager
def transaction(conn: sqlite3.Connection, isolation_level: str = "DEFERRED"):
    """
    Transaction context manager with automatic commit/rollback.

    Args:
        conn: SQLite connection (autocommit mode, see open_connection)
        isolation_level: DEFERRED (default), IMMEDIATE, or EXCLUSIVE

    Yields:
        sqlite3.Cursor: Cursor for executing queries

    On any exception the transaction is rolled back.  LedgerError subclasses
    are re-raised unchanged; sqlite3 errors are wrapped in InfrastructureError.

    Isolation Levels:
    - DEFERRED: Acquire lock on first write
    - IMMEDIATE: Acquire write lock on BEGIN (used for read-plan-write operations)
    - EXCLUSIVE: Acquire lock on BEGIN, block all readers (migrations)
    """
    cursor = conn.cursor()

    try:
        cursor.execute(f"BEGIN {isolation_level}")
    except sqlite3.Error as e:
        raise InfrastructureError(f"Could not begin transaction: {e}") from e

    try:
        yield cursor
        conn.commit()

    except LedgerError:
        conn.rollback()
        raise

    except sqlite3.Error as e:
        conn.rollback()
        raise InfrastructureError(f"Transaction failed and rolled back: {e}") from e

    except Exception:
        conn.rollback()
        raise


# ============================================================
# Migration Management
# ============================================================

def get_current_schema_version(conn: sqlite3.Connection) -> int:
    """
    Get current schema version from database.

    Returns:
        Current schema version (0 if schema_version table doesn't exist)
    """
    try:
        cursor = conn.cursor()
        cursor.execute("SELECT MAX(version) FROM schema_version")
        result = cursor.fetchone()
        return result[0] if result[0] is not None else 0

    except sqlite3.OperationalError:
        return 0


def get_pending_migrations(conn: sqlite3.Connection, migrations_dir: Optional[Path] = None) -> List[Tuple[int, Path]]:
    """
    Get list of pending migration scripts.

    Returns:
        List of (version, filepath) tuples sorted by version

    Migration script naming convention: NNN_description.sql
    """
    migrations_dir = migrations_dir or MIGRATIONS_DIR
    current_version = get_current_schema_version(conn)

    if not migrations_dir.exists():
        return []

    pending = []
    for migration_file in sorted(migrations_dir.glob("*.sql")):
        version_str = migration_file.stem.split("_")[0]

        try:
            version = int(version_str)
        except ValueError:
            logger.warning(f"Skipping invalid migration filename: {migration_file.name}")
            continue

        if version > current_version:
            pending.append((version, migration_file))

    return sorted(pending, key=lambda x: x[0])


def calculate_file_checksum(filepath: Path) -> str:
    """SHA-256 of a migration file (recorded in schema_version)."""
    digest = hashlib.sha256()
    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            digest.update(chunk)
    return digest.hexdigest()


def apply_migrations(
    conn: sqlite3.Connection,
    dry_run: bool = False,
    migrations_dir: Optional[Path] = None,
) -> int:
    """
    Apply pending migrations in version order.

    Each script wraps its own statements in BEGIN...COMMIT; the runner then
    records version and checksum.

    Returns:
        Number of migrations applied

    Raises:
        InfrastructureError: If a migration fails (database left at previous version)
    """
    current_version = get_current_schema_version(conn)
    pending = get_pending_migrations(conn, migrations_dir)

    if not pending:
        logger.debug(f"Database schema is up-to-date (version {current_version})")
        return 0

    if dry_run:
        for version, filepath in pending:
            logger.info(f"Pending migration [{version}] {filepath.name}")
        return 0

    applied_count = 0

    for version, migration_path in pending:
        logger.info(f"Applying migration {version}: {migration_path.name}")

        with open(migration_path, "r", encoding="utf-8") as f:
            migration_sql = f.read()

        checksum = calculate_file_checksum(migration_path)

        try:
            conn.executescript(migration_sql)
            conn.execute(
                "INSERT INTO schema_version (version, description, checksum) VALUES (?, ?, ?)",
                (version, migration_path.stem, checksum),
            )
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.rollback()
            raise InfrastructureError(f"Migration {version} failed: {e}") from e

        applied_count += 1

    logger.info(f"Schema version: {current_version} → {get_current_schema_version(conn)}")
    return applied_count


# ============================================================
# Health Checks
# ============================================================

def verify_schema(conn: sqlite3.Connection) -> bool:
    """
    Verify database schema matches expected structure.

    Checks:
    - All expected tables exist
    - Foreign keys are enabled
    - Schema version is present
    """
    cursor = conn.cursor()

    cursor.execute("SELECT name FROM sqlite_master WHERE type='table'")
    actual_tables = {row[0] for row in cursor.fetchall()}

    missing_tables = EXPECTED_TABLES - actual_tables
    if missing_tables:
        logger.error(f"Missing tables: {', '.join(sorted(missing_tables))}")
        return False

    fk_enabled = cursor.execute("PRAGMA foreign_keys").fetchone()[0]
    if fk_enabled != 1:
        logger.error("Foreign keys are not enabled")
        return False

    if get_current_schema_version(conn) == 0:
        logger.error("Schema version is 0 (no migrations applied)")
        return False

    return True


def integrity_check(conn: sqlite3.Connection) -> bool:
    """
    Run SQLite integrity checks.

    Checks:
    - PRAGMA integrity_check (structural integrity)
    - PRAGMA foreign_key_check (referential integrity)
    """
    cursor = conn.cursor()

    cursor.execute("PRAGMA integrity_check")
    integrity_result = cursor.fetchall()

    if len(integrity_result) != 1 or integrity_result[0][0] != "ok":
        for row in integrity_result:
            logger.error(f"Integrity check: {row[0]}")
        return False

    cursor.execute("PRAGMA foreign_key_check")
    fk_violations = cursor.fetchall()

    if fk_violations:
        for row in fk_violations[:10]:
            logger.error(f"FK violation: table={row[0]} rowid={row[1]} parent={row[2]}")
        return False

    return True


def get_database_stats(conn: sqlite3.Connection) -> Dict[str, Any]:
    """
    Get database statistics (schema version, table and row counts).
    """
    cursor = conn.cursor()

    stats: Dict[str, Any] = {}

    cursor.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='table'")
    stats["tables_count"] = cursor.fetchone()[0]

    cursor.execute("SELECT COUNT(*) FROM sqlite_master WHERE type='index' AND name NOT LIKE 'sqlite_%'")
    stats["indices_count"] = cursor.fetchone()[0]

    stats["schema_version"] = get_current_schema_version(conn)

    cursor.execute("SELECT name FROM sqlite_master WHERE type='table' ORDER BY name")
    row_counts = {}
    for row in cursor.fetchall():
        table_name = row[0]
        if table_name != "sqlite_sequence":
            cursor.execute(f"SELECT COUNT(*) FROM {table_name}")
            row_counts[table_name] = cursor.fetchone()[0]

    stats["row_counts"] = row_counts
    return stats


def initialize_database(db_path: Optional[Path] = None, force: bool = False) -> ConnectionFactory:
    """
    Create (or open) the database, apply migrations and return a factory.

    Args:
        db_path: Database file (default: data_dir/pharmastock.db)
        force: If True, delete existing database and reinitialize

    Raises:
        InfrastructureError: If schema verification fails after migrating
    """
    db_path = Path(db_path) if db_path else get_db_path()

    if force and db_path.exists():
        logger.warning(f"Deleting existing database: {db_path}")
        db_path.unlink()
        for suffix in ("-wal", "-shm"):
            sidecar = db_path.with_name(db_path.name + suffix)
            if sidecar.exists():
                sidecar.unlink()

    conn = open_connection(db_path, track_connection=False)
    try:
        apply_migrations(conn)
        if not verify_schema(conn):
            raise InfrastructureError(f"Schema verification failed for {db_path}")
    finally:
        close_connection(conn, tracked=False)

    return ConnectionFactory(db_path)


# ============================================================
# CLI Interface
# ============================================================

def main(argv: Optional[List[str]] = None) -> int:
    import argparse

    parser = argparse.ArgumentParser(prog="python -m pharmastock.db", description="PharmaStock database tools")
    parser.add_argument("command", choices=["init", "migrate", "verify", "stats"])
    parser.add_argument("--db", type=Path, default=None, help="Database file")
    parser.add_argument("--force", action="store_true", help="Recreate database from scratch (init)")
    parser.add_argument("--dry-run", action="store_true", help="Show pending migrations (migrate)")
    parser.add_argument("--log-dir", type=Path, default=None, help="Log directory")
    args = parser.parse_args(argv)

    setup_logging(args.log_dir)

    db_path = args.db or get_db_path()

    if args.command == "init":
        initialize_database(db_path, force=args.force)
        print(f"✓ Database initialized: {db_path}")
        return 0

    conn = open_connection(db_path, track_connection=False)
    try:
        if args.command == "migrate":
            pending = get_pending_migrations(conn)
            if args.dry_run:
                for version, filepath in pending:
                    print(f"  [{version}] {filepath.name}")
                return 0
            applied = apply_migrations(conn)
            print(f"✓ Migrations applied: {applied}")
            return 0

        if args.command == "verify":
            healthy = verify_schema(conn) and integrity_check(conn)
            print("✓ Database is healthy" if healthy else "✗ Database has issues")
            return 0 if healthy else 1

        stats = get_database_stats(conn)
        print(f"Schema version: {stats['schema_version']}")
        print(f"Tables: {stats['tables_count']}  Indices: {stats['indices_count']}")
        for table, count in sorted(stats["row_counts"].items()):
            print(f"  {table}: {count:,}")
        return 0
    finally:
        close_connection(conn, tracked=False)


if __name__ == "__main__":
    raise SystemExit(main())
