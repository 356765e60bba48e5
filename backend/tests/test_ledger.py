"""
Inventory ledger tests.

Verifies:
- Atomic central stock decrement
- One lot per approved request
- apply_allocation bounds and inconsistency detection
- Ledger consistency scan
"""

import pytest

from stockflow.errors import DuplicateError, InsufficientStockError, NotFoundError, OverAllocationError, ValidationError
from stockflow.models import Allocation, LedgerEvent, Product
from stockflow.services import catalog_service, ledger_service


class TestCentralStock:

    def test_decrement(self, db_session, product):
        remaining = ledger_service.decrement_central_stock(product.id, 400)
        db_session.commit()

        assert remaining == 600
        assert db_session.get(Product, product.id).stock_units == 600

    def test_decrement_never_goes_negative(self, db_session, product):
        with pytest.raises(InsufficientStockError) as exc_info:
            ledger_service.decrement_central_stock(product.id, 1001)

        assert exc_info.value.available == 1000
        assert db_session.get(Product, product.id).stock_units == 1000

    def test_decrement_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            ledger_service.decrement_central_stock(9999, 1)

    def test_restock(self, db_session, product):
        catalog_service.add_central_stock(product.id, 50)
        db_session.commit()
        assert db_session.get(Product, product.id).stock_units == 1050

    def test_restock_requires_positive_units(self, db_session, product):
        with pytest.raises(ValidationError):
            catalog_service.add_central_stock(product.id, 0)


class TestLots:

    def test_duplicate_lot_for_request(self, db_session, approved_lot):
        lot = approved_lot(10)

        with pytest.raises(DuplicateError):
            ledger_service.open_lot(lot.distributor_id, lot.product_id, 10, lot.source_request_id)

    def test_open_lot_requires_positive_total(self, db_session, distributor, product, verified_request):
        req = verified_request(5)
        with pytest.raises(ValidationError):
            ledger_service.open_lot(distributor.id, product.id, 0, req.id)

    def test_lot_opened_event(self, db_session, approved_lot):
        lot = approved_lot(10)
        event = db_session.query(LedgerEvent).filter_by(event_type="lot.opened").one()
        assert event.lot_id == lot.id
        assert event.request_id == lot.source_request_id

    def test_apply_allocation_bounds(self, db_session, approved_lot):
        lot = approved_lot(10)

        ledger_service.apply_allocation(lot, 10)
        assert lot.available_units == 0

        with pytest.raises(OverAllocationError):
            ledger_service.apply_allocation(lot, 1)

        ledger_service.apply_allocation(lot, -10)
        assert lot.allocated_units == 0

        with pytest.raises(OverAllocationError):
            ledger_service.apply_allocation(lot.id, -1)

    def test_inconsistent_lot_is_fatal(self, db_session, approved_lot):
        lot = approved_lot(10)
        lot.available_units = 7

        with pytest.raises(OverAllocationError) as exc_info:
            ledger_service.apply_allocation(lot, 1)
        assert exc_info.value.fatal

    def test_lots_ordered_oldest_first(self, db_session, distributor, product, approved_lot):
        first = approved_lot(5)
        second = approved_lot(6)
        third = approved_lot(7)

        lots = ledger_service.get_lots(distributor.id, product.id)
        assert [lot.id for lot in lots] == [first.id, second.id, third.id]

    def test_distributor_stock_grouped_by_product(self, db_session, distributor, approved_lot):
        approved_lot(10)
        approved_lot(25)

        stocks = ledger_service.get_distributor_stock(distributor.id)
        assert len(stocks) == 1
        assert stocks[0]["total_units"] == 35
        assert stocks[0]["available_units"] == 35
        assert len(stocks[0]["sources"]) == 2


class TestConsistencyCheck:

    def test_consistent_ledger(self, db_session, approved_lot):
        approved_lot(10)
        assert ledger_service.check_ledger_consistency() == []

    def test_detects_allocation_sum_mismatch(self, db_session, distributor, field_agent, approved_lot):
        lot = approved_lot(10)
        db_session.add(Allocation(
            distributor_id=distributor.id,
            recipient_id=field_agent.id,
            product_id=lot.product_id,
            quantity=3,
            lot_id=lot.id,
        ))
        db_session.commit()

        violations = ledger_service.check_ledger_consistency()
        assert len(violations) == 1
        assert violations[0]["lot"]["id"] == lot.id
        assert "allocation records sum to 3" in violations[0]["problems"][0]

    def test_detects_broken_arithmetic(self, db_session, approved_lot):
        lot = approved_lot(10)
        lot.allocated_units = 4
        db_session.commit()

        problems = ledger_service.check_ledger_consistency()[0]["problems"]
        assert "available_units != total_units - allocated_units" in problems
