"""
Tests for AlertEvaluator.
"""
from datetime import date

import pytest

from pharmastock.config import AlertSettings
from pharmastock.domain.models import UrgencyLevel
from pharmastock.errors import ValidationError
from pharmastock.workflows import AlertEvaluator


class TestLowStock:

    def test_below_threshold(self, ledger, medication):
        ledger.inventory.receive_lot(medication.medication_id, "A", date(2024, 6, 1), 4)

        alerts = ledger.low_stock_alerts()

        assert len(alerts) == 1
        assert alerts[0].medication_id == medication.medication_id
        assert alerts[0].vendable_stock == 4
        assert alerts[0].deficit == 6

    def test_at_threshold_no_alert(self, ledger, medication):
        ledger.inventory.receive_lot(medication.medication_id, "A", date(2024, 6, 1), 10)
        assert ledger.low_stock_alerts() == []

    def test_expired_units_do_not_count(self, ledger, clock, medication, fefo_lots):
        assert ledger.low_stock_alerts() == []
        clock.set_date(date(2024, 3, 2))
        alerts = ledger.low_stock_alerts()
        assert alerts[0].vendable_stock == 0
        assert alerts[0].deficit == 10

    def test_largest_deficit_first_inactive_ignored(self, ledger, medication):
        empty = ledger.catalog.add_medication("Empty", reorder_threshold=30)
        retired = ledger.catalog.add_medication("Retired", reorder_threshold=50)
        ledger.catalog.set_active(retired.medication_id, False)

        alerts = ledger.low_stock_alerts()

        assert [a.medication_id for a in alerts] == [empty.medication_id, medication.medication_id]
        assert [a.deficit for a in alerts] == [30, 10]


class TestExpiration:

    def test_tiers_and_order(self, ledger, medication, fefo_lots):
        l1, l2, l3 = fefo_lots
        soon = ledger.inventory.receive_lot(medication.medication_id, "SOON", date(2024, 1, 15), 2)

        alerts = ledger.expiration_alerts(window_days=30)

        assert [a.lot.lot_id for a in alerts] == [l1.lot_id, soon.lot_id, l2.lot_id]
        assert [a.days_remaining for a in alerts] == [5, 10, 27]
        assert [a.urgency for a in alerts] == [UrgencyLevel.CRITIQUE, UrgencyLevel.URGENT, UrgencyLevel.ATTENTION]
        assert alerts[0].commercial_name == "Doliprane 500mg"

    def test_default_window_90_days(self, ledger, medication, fefo_lots):
        ledger.inventory.receive_lot(medication.medication_id, "FAR", date(2024, 6, 1), 2)
        assert len(ledger.expiration_alerts()) == 3

    def test_expiring_today_included(self, ledger, clock, medication, fefo_lots):
        l1, _, _ = fefo_lots
        clock.set_date(date(2024, 1, 10))
        alert = ledger.expiration_alerts(window_days=0)[0]
        assert alert.lot.lot_id == l1.lot_id
        assert alert.days_remaining == 0
        assert alert.urgency is UrgencyLevel.CRITIQUE

    def test_empty_and_expired_lots_excluded(self, ledger, clock, medication, fefo_lots):
        l1, l2, _ = fefo_lots
        ledger.inventory.decrement(l2.lot_id, 10)
        clock.set_date(date(2024, 1, 11))
        assert ledger.expiration_alerts(window_days=30) == []

    def test_custom_tiers(self, factory, clock, medication, fefo_lots):
        evaluator = AlertEvaluator(factory, AlertSettings(expiry_critical_days=3, expiry_urgent_days=6), clock)
        assert evaluator.expiration_alerts(window_days=10)[0].urgency is UrgencyLevel.URGENT

    def test_negative_window(self, ledger):
        with pytest.raises(ValidationError):
            ledger.expiration_alerts(window_days=-1)


class TestExpiredLots:

    def test_expired_with_stock(self, ledger, clock, medication, fefo_lots):
        l1, _, _ = fefo_lots
        assert ledger.expired_lots() == []

        clock.set_date(date(2024, 1, 11))
        assert [lot.lot_id for lot in ledger.expired_lots()] == [l1.lot_id]

    def test_empty_expired_lot_not_reported(self, ledger, clock, fefo_lots):
        l1, _, _ = fefo_lots
        ledger.inventory.decrement(l1.lot_id, 5)
        clock.set_date(date(2024, 1, 11))
        assert ledger.expired_lots() == []


class TestSummary:

    def test_counts(self, ledger, clock, medication, fefo_lots):
        ledger.catalog.add_medication("Empty")
        clock.set_date(date(2024, 1, 11))

        summary = ledger.alerts.summary()

        assert summary == {
            "low_stock": 1,
            "out_of_stock": 1,
            "expiring": 2,
            "expiring_critical": 0,
            "expired_lots": 1,
        }
