"""
Tests for ReturnReintegrationEngine.
"""
from datetime import date

import pytest

from pharmastock.domain.models import ReturnReason, WriteOffReason
from pharmastock.errors import NotFoundError, ValidationError


@pytest.fixture
def sale(ledger, medication, fefo_lots):
    """Sale of 12 units: 5 from L1, 7 from L2."""
    return ledger.create_sale([(medication.medication_id, 12)], seller_id=3)


class TestReintegration:

    def test_return_credits_origin_lot(self, ledger, sale, fefo_lots):
        _, l2, _ = fefo_lots

        returned = ledger.register_return(sale.sale_id, l2.lot_id, 3, ReturnReason.TREATMENT_CHANGE, reintegrate=True)

        assert returned.reintegrated is True
        assert returned.write_off_reason is None
        assert ledger.inventory.get_lot(l2.lot_id).quantity_on_hand == 6

    def test_sell_then_return_restores_lot(self, ledger, medication, fefo_lots):
        l1, _, _ = fefo_lots
        sale = ledger.create_sale([(medication.medication_id, 4)])

        ledger.register_return(sale.sale_id, l1.lot_id, 4, "EXCESS_QUANTITY", reintegrate=True)

        assert ledger.inventory.get_lot(l1.lot_id).quantity_on_hand == 5

    def test_depleted_lot_still_accepts_units(self, ledger, sale, fefo_lots):
        l1, _, _ = fefo_lots
        assert ledger.inventory.get_lot(l1.lot_id).quantity_on_hand == 0

        ledger.register_return(sale.sale_id, l1.lot_id, 1, ReturnReason.OTHER)

        assert ledger.inventory.get_lot(l1.lot_id).quantity_on_hand == 1

    def test_write_off_requested(self, ledger, sale, fefo_lots):
        _, l2, _ = fefo_lots

        returned = ledger.register_return(
            sale.sale_id, l2.lot_id, 2, ReturnReason.DAMAGED_PACKAGING, reintegrate=False, comment="box crushed"
        )

        assert returned.reintegrated is False
        assert returned.write_off_reason is WriteOffReason.NOT_REQUESTED
        assert returned.comment == "box crushed"
        assert ledger.inventory.get_lot(l2.lot_id).quantity_on_hand == 3

    def test_expired_lot_downgraded_to_write_off(self, ledger, clock, sale, fefo_lots):
        l1, _, _ = fefo_lots
        clock.set_date(date(2024, 1, 11))

        returned = ledger.register_return(sale.sale_id, l1.lot_id, 2, ReturnReason.DEFECTIVE_PRODUCT, reintegrate=True)

        assert returned.reintegrated is False
        assert returned.write_off_reason is WriteOffReason.LOT_EXPIRED
        assert ledger.inventory.get_lot(l1.lot_id).quantity_on_hand == 0


class TestReturnCaps:

    def test_cannot_exceed_sold_quantity(self, ledger, sale, fefo_lots):
        _, l2, _ = fefo_lots
        with pytest.raises(ValidationError, match="sold 7"):
            ledger.register_return(sale.sale_id, l2.lot_id, 8, ReturnReason.OTHER)

    def test_cumulative_returns_capped(self, ledger, sale, fefo_lots):
        _, l2, _ = fefo_lots
        ledger.register_return(sale.sale_id, l2.lot_id, 5, ReturnReason.OTHER)
        assert ledger.returns.returnable_quantity(sale.sale_id, l2.lot_id) == 2

        with pytest.raises(ValidationError, match="already returned 5"):
            ledger.register_return(sale.sale_id, l2.lot_id, 3, ReturnReason.OTHER)

        ledger.register_return(sale.sale_id, l2.lot_id, 2, ReturnReason.OTHER, reintegrate=False)
        assert ledger.returns.returnable_quantity(sale.sale_id, l2.lot_id) == 0
        assert ledger.inventory.get_lot(l2.lot_id).quantity_on_hand == 8

    @pytest.mark.parametrize("qty", [0, -1])
    def test_non_positive_quantity(self, ledger, sale, fefo_lots, qty):
        _, l2, _ = fefo_lots
        with pytest.raises(ValidationError):
            ledger.register_return(sale.sale_id, l2.lot_id, qty, ReturnReason.OTHER)

    def test_reason_required(self, ledger, sale, fefo_lots):
        _, l2, _ = fefo_lots
        with pytest.raises(ValidationError, match="reason is required"):
            ledger.register_return(sale.sale_id, l2.lot_id, 1, None)
        with pytest.raises(ValidationError, match="Unknown ReturnReason"):
            ledger.register_return(sale.sale_id, l2.lot_id, 1, "NO_REASON")

    def test_unknown_sale(self, ledger, fefo_lots):
        l1, _, _ = fefo_lots
        with pytest.raises(NotFoundError):
            ledger.register_return(999, l1.lot_id, 1, ReturnReason.OTHER)

    def test_lot_not_in_sale(self, ledger, sale, fefo_lots):
        _, _, l3 = fefo_lots
        with pytest.raises(NotFoundError, match="no line for lot"):
            ledger.register_return(sale.sale_id, l3.lot_id, 1, ReturnReason.OTHER)
        assert ledger.inventory.get_lot(l3.lot_id).quantity_on_hand == 20


class TestReturnQueries:

    def test_returns_for_sale_and_period(self, ledger, sale, fefo_lots):
        l1, l2, _ = fefo_lots
        ledger.register_return(sale.sale_id, l1.lot_id, 1, ReturnReason.OTHER, user_id=8)
        ledger.register_return(sale.sale_id, l2.lot_id, 1, ReturnReason.OTHER)

        returns = ledger.returns.returns_for_sale(sale.sale_id)
        assert [r.lot_id for r in returns] == [l1.lot_id, l2.lot_id]
        assert returns[0].user_id == 8

        assert len(ledger.returns.returns_between(date(2024, 1, 1), date(2024, 1, 31))) == 2
        assert ledger.returns.returns_between(date(2024, 2, 1), date(2024, 2, 28)) == []

    def test_invalid_period(self, ledger):
        with pytest.raises(ValidationError):
            ledger.returns.returns_between(date(2024, 2, 1), date(2024, 1, 1))
