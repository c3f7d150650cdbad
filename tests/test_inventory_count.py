"""
Tests for InventoryReconciliationEngine (counting session state machine).
"""
import sqlite3
from dataclasses import replace
from decimal import Decimal

import pytest

from pharmastock.domain.models import SessionStatus, VarianceReason
from pharmastock.errors import InfrastructureError, NotFoundError, StateError, ValidationError
from pharmastock.repositories import InventoryRepository, LotRepository


class TestSessionLifecycle:

    def test_single_session_in_progress(self, ledger):
        session = ledger.start_session(operator_id=1, notes="monthly")

        assert session.status is SessionStatus.IN_PROGRESS
        assert ledger.counting.active_session().session_id == session.session_id
        with pytest.raises(StateError, match="already in progress"):
            ledger.start_session(operator_id=2)

    def test_new_session_after_completion(self, ledger):
        first = ledger.start_session()
        ledger.complete_session(first.session_id)

        second = ledger.start_session()
        assert second.session_id != first.session_id
        assert [s.session_id for s in ledger.counting.list_sessions()] == [second.session_id, first.session_id]

    def test_unknown_session(self, ledger, fefo_lots):
        l1, _, _ = fefo_lots
        with pytest.raises(NotFoundError):
            ledger.record_count(42, l1.lot_id, 5)
        with pytest.raises(NotFoundError):
            ledger.complete_session(42)


class TestCounting:

    def test_count_with_variance_and_completion(self, ledger, fefo_lots):
        _, l2, _ = fefo_lots
        ledger.inventory.set_quantity(l2.lot_id, 6)
        session = ledger.start_session(operator_id=1)

        with pytest.raises(ValidationError, match="requires a reason"):
            ledger.record_count(session.session_id, l2.lot_id, 4)

        entry = ledger.record_count(session.session_id, l2.lot_id, 4, VarianceReason.BREAKAGE, counted_by=1)
        assert entry.theoretical_qty == 6
        assert entry.variance == -2

        completed = ledger.complete_session(session.session_id, user_id=1)

        assert completed.status is SessionStatus.COMPLETED
        assert completed.ended_at is not None
        assert ledger.inventory.get_lot(l2.lot_id).quantity_on_hand == 4
        assert ledger.counting.active_session() is None

    def test_complete_twice_rejected(self, ledger, fefo_lots):
        l1, _, _ = fefo_lots
        session = ledger.start_session()
        ledger.record_count(session.session_id, l1.lot_id, 3, "COUNTING_ERROR")
        ledger.complete_session(session.session_id)

        with pytest.raises(StateError):
            ledger.complete_session(session.session_id)
        assert ledger.inventory.get_lot(l1.lot_id).quantity_on_hand == 3

    def test_matching_count_needs_no_reason(self, ledger, fefo_lots):
        l1, _, _ = fefo_lots
        session = ledger.start_session()

        entry = ledger.record_count(session.session_id, l1.lot_id, 5)

        assert entry.variance == 0
        assert entry.reason is None

    def test_recount_overwrites(self, ledger, fefo_lots):
        l1, _, _ = fefo_lots
        session = ledger.start_session()

        ledger.record_count(session.session_id, l1.lot_id, 5)
        ledger.record_count(session.session_id, l1.lot_id, 3, VarianceReason.THEFT, comment="shelf B")

        counts = ledger.counting.counts(session.session_id)
        assert len(counts) == 1
        assert counts[0].physical_qty == 3
        assert counts[0].comment == "shelf B"

    def test_theoretical_captured_at_recording(self, ledger, medication, fefo_lots):
        l1, _, _ = fefo_lots
        session = ledger.start_session()
        ledger.create_sale([(medication.medication_id, 2)])

        entry = ledger.record_count(session.session_id, l1.lot_id, 3)

        assert entry.theoretical_qty == 3
        assert entry.variance == 0

    def test_invalid_counts(self, ledger, fefo_lots):
        l1, _, _ = fefo_lots
        session = ledger.start_session()

        with pytest.raises(ValidationError):
            ledger.record_count(session.session_id, l1.lot_id, -1, VarianceReason.OTHER)
        with pytest.raises(ValidationError, match="Unknown VarianceReason"):
            ledger.record_count(session.session_id, l1.lot_id, 1, "MISPLACED")
        with pytest.raises(NotFoundError):
            ledger.record_count(session.session_id, 999, 1)

    def test_regularization_applies_every_variance(self, ledger, fefo_lots):
        l1, l2, l3 = fefo_lots
        session = ledger.start_session()
        ledger.record_count(session.session_id, l1.lot_id, 5)
        ledger.record_count(session.session_id, l2.lot_id, 12, VarianceReason.UNRECORDED_MOVEMENT)
        ledger.record_count(session.session_id, l3.lot_id, 0, VarianceReason.EXPIRED_REMOVED)

        ledger.complete_session(session.session_id)

        assert [ledger.inventory.get_lot(lot.lot_id).quantity_on_hand for lot in fefo_lots] == [5, 12, 0]
        with ledger.factory.reader() as conn:
            operations = [row[0] for row in conn.execute(
                "SELECT operation FROM audit_log WHERE operation IN ('REGULARIZATION', 'SESSION_COMPLETED') "
                "ORDER BY audit_id"
            )]
        assert operations == ["REGULARIZATION", "REGULARIZATION", "SESSION_COMPLETED"]


class TestCompletionRollback:

    def test_store_failure_midway_changes_nothing(self, ledger, fefo_lots, monkeypatch):
        l1, l2, _ = fefo_lots
        session = ledger.start_session()
        ledger.record_count(session.session_id, l1.lot_id, 3, VarianceReason.COUNTING_ERROR)
        ledger.record_count(session.session_id, l2.lot_id, 8, VarianceReason.BREAKAGE)

        original = LotRepository.set_quantity
        calls = []

        def failing_second(self, lot_id, qty):
            calls.append(lot_id)
            if len(calls) == 2:
                raise sqlite3.OperationalError("disk I/O error")
            return original(self, lot_id, qty)

        monkeypatch.setattr(LotRepository, "set_quantity", failing_second)

        with pytest.raises(InfrastructureError):
            ledger.complete_session(session.session_id)

        assert calls == [l1.lot_id, l2.lot_id]
        assert ledger.inventory.get_lot(l1.lot_id).quantity_on_hand == 5
        assert ledger.inventory.get_lot(l2.lot_id).quantity_on_hand == 10
        assert ledger.counting.get_session(session.session_id).status is SessionStatus.IN_PROGRESS
        assert len(ledger.counting.counts(session.session_id)) == 2
        with ledger.factory.reader() as conn:
            regularized = conn.execute(
                "SELECT COUNT(*) FROM audit_log WHERE operation = 'REGULARIZATION'"
            ).fetchone()[0]
        assert regularized == 0

    def test_count_without_reason_blocks_completion(self, ledger, fefo_lots, monkeypatch):
        l1, l2, _ = fefo_lots
        session = ledger.start_session()
        ledger.record_count(session.session_id, l1.lot_id, 3, VarianceReason.THEFT)
        ledger.record_count(session.session_id, l2.lot_id, 8, VarianceReason.BREAKAGE)

        original = InventoryRepository.counts

        def reason_lost(self, session_id):
            entries = original(self, session_id)
            return [replace(entries[0], reason=None)] + entries[1:]

        monkeypatch.setattr(InventoryRepository, "counts", reason_lost)

        with pytest.raises(ValidationError, match=f"variance without reason on lots {l1.lot_id}"):
            ledger.complete_session(session.session_id)

        monkeypatch.undo()
        assert ledger.inventory.get_lot(l1.lot_id).quantity_on_hand == 5
        assert ledger.inventory.get_lot(l2.lot_id).quantity_on_hand == 10
        assert ledger.counting.active_session().session_id == session.session_id


class TestCancel:

    def test_cancel_discards_counts(self, ledger, fefo_lots):
        _, _, l3 = fefo_lots
        session = ledger.start_session()
        ledger.record_count(session.session_id, l3.lot_id, 15, VarianceReason.THEFT)

        cancelled = ledger.cancel_session(session.session_id)

        assert cancelled.status is SessionStatus.CANCELLED
        assert ledger.counting.get_session(session.session_id) == cancelled
        assert ledger.counting.counts(session.session_id) == []
        assert ledger.inventory.get_lot(l3.lot_id).quantity_on_hand == 20

    def test_closed_session_rejects_operations(self, ledger, fefo_lots):
        l1, _, _ = fefo_lots
        session = ledger.start_session()
        ledger.cancel_session(session.session_id)

        with pytest.raises(StateError):
            ledger.cancel_session(session.session_id)
        with pytest.raises(StateError):
            ledger.complete_session(session.session_id)
        with pytest.raises(StateError):
            ledger.record_count(session.session_id, l1.lot_id, 5)

        assert ledger.start_session().status is SessionStatus.IN_PROGRESS


class TestSummary:

    def test_session_summary(self, ledger, fefo_lots):
        l1, l2, l3 = fefo_lots
        session = ledger.start_session()
        ledger.record_count(session.session_id, l1.lot_id, 5)
        ledger.record_count(session.session_id, l2.lot_id, 8, VarianceReason.BREAKAGE)
        ledger.record_count(session.session_id, l3.lot_id, 21, VarianceReason.COUNTING_ERROR)

        summary = ledger.counting.session_summary(session.session_id)

        assert summary.counted_lots == 3
        assert summary.lots_with_variance == 2
        assert summary.net_variance_units == -1
        assert summary.variance_value == Decimal("-1.00")
        assert summary.missing_reasons == 0
