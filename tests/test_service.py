"""
End-to-end tests through the PharmacyLedger facade.
"""
import json
from datetime import date, datetime
from decimal import Decimal

import pharmastock
from pharmastock import PharmacyLedger, InsufficientStockError
from pharmastock.domain.models import ReturnReason, VarianceReason, UrgencyLevel


class TestOpen:

    def test_open_initializes_database_and_settings(self, temp_dir):
        settings_path = temp_dir / "settings.json"
        settings_path.write_text(json.dumps({"alerts": {"expiry_window_days": 30}}), encoding="utf-8")

        ledger = PharmacyLedger.open(temp_dir / "pharmacy.db", settings_path)

        assert (temp_dir / "pharmacy.db").exists()
        assert ledger.settings.alerts.expiry_window_days == 30
        assert ledger.alerts.settings.expiry_window_days == 30

    def test_configured_default_threshold_used_for_new_medications(self, temp_dir):
        settings_path = temp_dir / "settings.json"
        settings_path.write_text(json.dumps({"alerts": {"default_stock_threshold": 25}}), encoding="utf-8")

        ledger = PharmacyLedger.open(temp_dir / "pharmacy.db", settings_path)

        assert ledger.catalog.add_medication("No threshold given").reorder_threshold == 25
        assert ledger.catalog.add_medication("Explicit", reorder_threshold=4).reorder_threshold == 4

    def test_package_exports(self):
        assert pharmastock.PharmacyLedger is PharmacyLedger
        assert issubclass(pharmastock.InsufficientStockError, pharmastock.LedgerError)


class TestDayInThePharmacy:

    def test_sale_return_count_forecast(self, ledger, clock, medication, fefo_lots):
        l1, l2, l3 = fefo_lots
        med_id = medication.medication_id

        # Morning sale spans L1 and L2
        sale = ledger.create_sale([(med_id, 12)], seller_id=2, prescription_flag=False)
        assert ledger.get_stock_vendable(med_id) == 23

        # Customer brings back 3 units from L2
        ledger.register_return(sale.sale_id, l2.lot_id, 3, ReturnReason.TREATMENT_CHANGE, True, "", 2)
        assert ledger.inventory.get_lot(l2.lot_id).quantity_on_hand == 6

        # Oversized sale is refused without side effects
        try:
            ledger.create_sale([(med_id, 100)])
        except InsufficientStockError:
            pass
        assert ledger.get_stock_total(med_id) == 26

        # Evening count finds 2 units missing in L2
        session = ledger.start_session(operator_id=1)
        ledger.record_count(session.session_id, l2.lot_id, 4, VarianceReason.BREAKAGE)
        ledger.record_count(session.session_id, l3.lot_id, 20)
        ledger.complete_session(session.session_id)
        assert ledger.inventory.get_lot(l2.lot_id).quantity_on_hand == 4
        assert ledger.get_lots_fefo(med_id)[0].lot_id == l2.lot_id

        # Next day: forecast over a 1-day window
        clock.now = datetime(2024, 1, 6, 9, 0, 0)
        prediction = ledger.generate_predictions(window_days=1)[0]
        assert prediction.vendable_stock == 24
        assert prediction.daily_consumption == 12.0
        assert prediction.days_remaining == 2.0
        assert prediction.urgency is UrgencyLevel.CRITIQUE

        # L1 (empty) never shows in expiry alerts; L2 is 26 days out
        alerts = ledger.expiration_alerts(window_days=30)
        assert [a.lot.lot_id for a in alerts] == [l2.lot_id]
        assert ledger.expired_lots() == []
        assert ledger.low_stock_alerts() == []

    def test_audit_trail(self, ledger, medication, fefo_lots):
        l1, _, _ = fefo_lots
        sale = ledger.create_sale([(medication.medication_id, 2)], seller_id=7)
        ledger.register_return(sale.sale_id, l1.lot_id, 1, ReturnReason.OTHER, user_id=7)
        session = ledger.start_session(operator_id=7)
        ledger.cancel_session(session.session_id, user_id=7)

        with ledger.factory.reader() as conn:
            operations = [row[0] for row in conn.execute("SELECT operation FROM audit_log ORDER BY audit_id")]

        assert operations == [
            "LOT_RECEIVED", "LOT_RECEIVED", "LOT_RECEIVED",
            "SALE_CREATED", "RETURN_REGISTERED", "SESSION_STARTED", "SESSION_CANCELLED",
        ]

    def test_stock_value_after_activity(self, ledger, medication, fefo_lots):
        ledger.create_sale([(medication.medication_id, 5)])
        assert ledger.inventory.stock_value() == Decimal("30.00")
        assert ledger.today() == date(2024, 1, 5)
