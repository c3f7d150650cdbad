"""
Shared fixtures: temporary database built through the real migration
runner, a controllable clock and a seeded medication with three lots.
"""
import shutil
import tempfile
from datetime import date, datetime, timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from pharmastock.db import initialize_database
from pharmastock.service import PharmacyLedger


class FixedClock:
    """Callable returning a settable 'now'."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set_date(self, day: date, hour: int = 10):
        self.now = datetime(day.year, day.month, day.day, hour, 0, 0)

    def advance(self, days: int = 0, hours: int = 0):
        self.now += timedelta(days=days, hours=hours)


@pytest.fixture
def temp_dir():
    """Temporary directory removed after the test."""
    path = tempfile.mkdtemp()
    yield Path(path)
    shutil.rmtree(path, ignore_errors=True)


@pytest.fixture
def db_path(temp_dir):
    return temp_dir / "test.db"


@pytest.fixture
def factory(db_path):
    return initialize_database(db_path)


@pytest.fixture
def clock():
    return FixedClock(datetime(2024, 1, 5, 10, 0, 0))


@pytest.fixture
def ledger(factory, clock):
    return PharmacyLedger(factory, clock=clock)


@pytest.fixture
def medication(ledger):
    return ledger.catalog.add_medication(
        "Doliprane 500mg",
        active_ingredient="Paracetamol",
        unit_price=Decimal("2.50"),
        reorder_threshold=10,
    )


@pytest.fixture
def fefo_lots(ledger, medication):
    """L1 qty=5 exp=2024-01-10, L2 qty=10 exp=2024-02-01, L3 qty=20 exp=2024-03-01."""
    inventory = ledger.inventory
    l1 = inventory.receive_lot(medication.medication_id, "L1", date(2024, 1, 10), 5, Decimal("1.00"))
    l2 = inventory.receive_lot(medication.medication_id, "L2", date(2024, 2, 1), 10, Decimal("1.00"))
    l3 = inventory.receive_lot(medication.medication_id, "L3", date(2024, 3, 1), 20, Decimal("1.00"))
    return l1, l2, l3
