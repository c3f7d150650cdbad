"""
Path resolver for pharmastock.

Provides stable paths whether the library runs from a source tree or an
installed package:

* base_dir    → PHARMASTOCK_HOME if set, else ~/.pharmastock
* data_dir    → base_dir/data
* logs_dir    → base_dir/logs
* migrations  → <package>/migrations (shipped as package data)
* db_path     → data_dir/pharmastock.db
* settings    → data_dir/settings.json

NEVER use os.getcwd() or relative Path("...") strings in runtime code;
always call one of the functions below.
"""

import os
from pathlib import Path


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _get_base_dir() -> Path:
    home = os.environ.get("PHARMASTOCK_HOME")
    if home:
        return Path(home).expanduser().resolve()
    return Path.home() / ".pharmastock"


def _try_writable(path: Path) -> bool:
    """
    Return True if *path* can be created and used as a writable directory.

    Creates the directory if it does not exist.  Uses a canary-file probe
    so we detect permission issues (read-only volume, sandboxed home).
    """
    try:
        path.mkdir(parents=True, exist_ok=True)
        canary = path / ".write_probe"
        canary.touch()
        canary.unlink()
        return True
    except (OSError, PermissionError):
        return False


def _fallback_dir(sub: str) -> Path:
    """Return <tmp>/pharmastock/<sub> when the home directory is not writable."""
    import tempfile
    return Path(tempfile.gettempdir()) / "pharmastock" / sub


def _resolve(sub: str) -> Path:
    primary = _get_base_dir() / sub
    if _try_writable(primary):
        return primary
    fallback = _fallback_dir(sub)
    fallback.mkdir(parents=True, exist_ok=True)
    return fallback


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def get_data_dir() -> Path:
    """
    Data directory.

    Priority:
      1. <base_dir>/data
      2. <tmp>/pharmastock/data  ← fallback if base_dir is read-only
    """
    return _resolve("data")


def get_logs_dir() -> Path:
    """Logs directory (same fallback rules as the data directory)."""
    return _resolve("logs")


def get_migrations_dir() -> Path:
    """SQL migrations directory, bundled next to this package."""
    return Path(__file__).resolve().parent.parent / "migrations"


def get_db_path() -> Path:
    """Full path to the SQLite database file."""
    return get_data_dir() / "pharmastock.db"


def get_settings_path() -> Path:
    return get_data_dir() / "settings.json"
