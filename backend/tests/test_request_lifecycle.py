"""
Stock request lifecycle tests.

Verifies:
- Submission checks quantity and central stock
- Receipt upload ownership and state rules
- Payment verification / rejection transitions
- Approval gates (payment verified, stock available) and lot creation
- Cancellation and terminal-state immutability
"""

import io

import pytest
from werkzeug.datastructures import FileStorage

from stockflow.errors import (
    InsufficientStockError,
    NotFoundError,
    PaymentNotVerifiedError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from stockflow.models import LedgerEvent, Lot, Product
from stockflow.services import request_service
from stockflow.services.receipt_storage import LocalReceiptStore


def _image(data=b"\x89PNG fake image", filename="receipt.png", content_type="image/png"):
    return FileStorage(stream=io.BytesIO(data), filename=filename, content_type=content_type)


# =============================================================================
# SUBMISSION
# =============================================================================


class TestSubmitRequest:

    def test_creates_pending_request(self, db_session, distributor, product):
        req = request_service.submit_request(distributor.id, product.id, 40, notes="first order")
        db_session.commit()

        assert req.status == "pending"
        assert req.payment_status == "pending"
        assert req.quantity == 40
        assert req.notes == "first order"

        event = db_session.query(LedgerEvent).filter_by(event_type="request.created").one()
        assert event.request_id == req.id

    def test_submission_does_not_touch_central_stock(self, db_session, distributor, product):
        request_service.submit_request(distributor.id, product.id, 40)
        db_session.commit()
        assert db_session.get(Product, product.id).stock_units == 1000

    @pytest.mark.parametrize("quantity", [0, -5, "10", 2.5, True, None])
    def test_rejects_invalid_quantity(self, db_session, distributor, product, quantity):
        with pytest.raises(ValidationError):
            request_service.submit_request(distributor.id, product.id, quantity)

    def test_rejects_quantity_above_central_stock(self, db_session, distributor, product):
        with pytest.raises(InsufficientStockError) as exc_info:
            request_service.submit_request(distributor.id, product.id, 1001)
        assert exc_info.value.available == 1000
        assert exc_info.value.requested == 1001

    def test_unknown_product(self, db_session, distributor):
        with pytest.raises(NotFoundError):
            request_service.submit_request(distributor.id, 9999, 1)


# =============================================================================
# RECEIPTS AND PAYMENT
# =============================================================================


class TestReceiptAndPayment:

    def test_receipt_marks_paid(self, db_session, distributor, product, receipt_store):
        req = request_service.submit_request(distributor.id, product.id, 5)
        request_service.attach_receipt(req.id, distributor.id, _image(), store=receipt_store)
        db_session.commit()

        assert req.payment_status == "paid"
        assert req.receipt_ref == receipt_store.saved[-1]

    def test_only_requester_can_upload(self, db_session, distributor, other_distributor, product, receipt_store):
        req = request_service.submit_request(distributor.id, product.id, 5)
        db_session.commit()

        with pytest.raises(PermissionDeniedError):
            request_service.attach_receipt(req.id, other_distributor.id, _image(), store=receipt_store)
        assert receipt_store.saved == []

    def test_cannot_upload_while_paid(self, db_session, distributor, product, receipt_store):
        req = request_service.submit_request(distributor.id, product.id, 5)
        request_service.attach_receipt(req.id, distributor.id, _image(), store=receipt_store)

        with pytest.raises(StateError):
            request_service.attach_receipt(req.id, distributor.id, _image(), store=receipt_store)

    def test_verify_requires_paid(self, db_session, distributor, issuer, product):
        req = request_service.submit_request(distributor.id, product.id, 5)

        with pytest.raises(StateError):
            request_service.verify_payment(req.id, issuer.id)

    def test_verify_records_verifier(self, db_session, distributor, issuer, product, receipt_store):
        req = request_service.submit_request(distributor.id, product.id, 5)
        request_service.attach_receipt(req.id, distributor.id, _image(), store=receipt_store)
        request_service.verify_payment(req.id, issuer.id, notes="UTR 1234")
        db_session.commit()

        assert req.payment_status == "verified"
        assert req.payment_verified_by_user_id == issuer.id
        assert req.payment_verified_at is not None
        assert req.payment_notes == "UTR 1234"

    def test_reject_then_reupload(self, db_session, distributor, issuer, product, receipt_store):
        req = request_service.submit_request(distributor.id, product.id, 5)
        request_service.attach_receipt(req.id, distributor.id, _image(), store=receipt_store)
        request_service.reject_payment(req.id, issuer.id)

        assert req.payment_status == "rejected"
        assert req.receipt_ref is None
        assert req.payment_notes == request_service.DEFAULT_REJECTION_NOTE

        request_service.attach_receipt(req.id, distributor.id, _image(), store=receipt_store)
        assert req.payment_status == "paid"
        assert req.receipt_ref == receipt_store.saved[-1]

    def test_reject_then_verify_is_invalid(self, db_session, distributor, issuer, product, receipt_store):
        req = request_service.submit_request(distributor.id, product.id, 5)
        request_service.attach_receipt(req.id, distributor.id, _image(), store=receipt_store)
        request_service.reject_payment(req.id, issuer.id, notes="blurry")

        with pytest.raises(StateError):
            request_service.verify_payment(req.id, issuer.id)

    def test_failed_attach_discards_upload(self, db_session, distributor, product, receipt_store, monkeypatch):
        req = request_service.submit_request(distributor.id, product.id, 5)
        db_session.commit()

        def ledger_down(**kwargs):
            raise RuntimeError("ledger unavailable")

        monkeypatch.setattr(request_service, "append_ledger_event", ledger_down)

        with pytest.raises(RuntimeError):
            request_service.attach_receipt(req.id, distributor.id, _image(), store=receipt_store)
        assert len(receipt_store.saved) == 1
        assert receipt_store.discarded == receipt_store.saved


class TestLocalReceiptStore:

    def test_saves_image(self, tmp_path):
        store = LocalReceiptStore(str(tmp_path), max_bytes=1024)
        ref = store.save(_image())

        assert ref.startswith("receipts/")
        assert ref.endswith(".png")
        assert (tmp_path / ref.split("/", 1)[1]).read_bytes() == b"\x89PNG fake image"

    def test_rejects_missing_image(self, tmp_path):
        with pytest.raises(ValidationError):
            LocalReceiptStore(str(tmp_path), max_bytes=1024).save(None)

    def test_rejects_non_image(self, tmp_path):
        with pytest.raises(ValidationError):
            LocalReceiptStore(str(tmp_path), max_bytes=1024).save(
                _image(filename="receipt.pdf", content_type="application/pdf")
            )

    def test_rejects_oversized(self, tmp_path):
        with pytest.raises(ValidationError):
            LocalReceiptStore(str(tmp_path), max_bytes=8).save(_image(data=b"x" * 9))

    def test_discard_removes_file(self, app, tmp_path):
        store = LocalReceiptStore(str(tmp_path), max_bytes=1024)
        ref = store.save(_image())

        store.discard(ref)
        assert not (tmp_path / ref.split("/", 1)[1]).exists()

    def test_discard_unknown_ref(self, app, tmp_path):
        LocalReceiptStore(str(tmp_path), max_bytes=1024).discard("receipts/missing.png")


# =============================================================================
# APPROVAL
# =============================================================================


class TestApproveRequest:

    def test_approve_opens_lot_and_decrements_stock(self, db_session, issuer, product, verified_request):
        req = verified_request(100)
        request_service.approve_request(req.id, issuer.id)
        db_session.commit()

        assert req.status == "approved"
        assert req.processed_by_user_id == issuer.id
        assert db_session.get(Product, product.id).stock_units == 900

        lot = db_session.query(Lot).filter_by(source_request_id=req.id).one()
        assert lot.distributor_id == req.requester_id
        assert lot.total_units == 100
        assert lot.allocated_units == 0
        assert lot.available_units == 100

    def test_approve_requires_verified_payment(self, db_session, distributor, issuer, product, receipt_store):
        req = request_service.submit_request(distributor.id, product.id, 5)
        request_service.attach_receipt(req.id, distributor.id, _image(), store=receipt_store)

        with pytest.raises(PaymentNotVerifiedError):
            request_service.approve_request(req.id, issuer.id)
        assert db_session.get(Product, product.id).stock_units == 1000

    def test_approve_rechecks_central_stock(self, db_session, issuer, product, verified_request):
        first = verified_request(700)
        second = verified_request(700)

        request_service.approve_request(first.id, issuer.id)
        db_session.commit()

        with pytest.raises(InsufficientStockError) as exc_info:
            request_service.approve_request(second.id, issuer.id)
        assert exc_info.value.available == 300
        assert exc_info.value.requested == 700

        db_session.rollback()
        assert db_session.get(Product, product.id).stock_units == 300
        assert second.status == "pending"
        assert db_session.query(Lot).count() == 1

    def test_cannot_approve_twice(self, db_session, issuer, product, verified_request):
        req = verified_request(10)
        request_service.approve_request(req.id, issuer.id)
        db_session.commit()

        with pytest.raises(StateError):
            request_service.approve_request(req.id, issuer.id)
        assert db_session.get(Product, product.id).stock_units == 990
        assert db_session.query(Lot).count() == 1

    def test_rejected_path_reaches_same_end_state(self, db_session, distributor, issuer, product,
                                                  receipt_store):
        direct = request_service.submit_request(distributor.id, product.id, 5)
        request_service.attach_receipt(direct.id, distributor.id, _image(), store=receipt_store)
        request_service.verify_payment(direct.id, issuer.id)
        request_service.approve_request(direct.id, issuer.id)

        retried = request_service.submit_request(distributor.id, product.id, 5)
        request_service.attach_receipt(retried.id, distributor.id, _image(), store=receipt_store)
        request_service.reject_payment(retried.id, issuer.id)
        request_service.attach_receipt(retried.id, distributor.id, _image(), store=receipt_store)
        request_service.verify_payment(retried.id, issuer.id)
        request_service.approve_request(retried.id, issuer.id)
        db_session.commit()

        for req in (direct, retried):
            assert (req.status, req.payment_status) == ("approved", "verified")
            assert req.receipt_ref is not None
            assert req.lot.total_units == req.lot.available_units == 5
        assert db_session.get(Product, product.id).stock_units == 990

    def test_lots_are_never_merged(self, db_session, distributor, approved_lot):
        first = approved_lot(10)
        second = approved_lot(25)

        assert first.id != second.id
        assert db_session.query(Lot).filter_by(distributor_id=distributor.id).count() == 2


# =============================================================================
# CANCELLATION AND TERMINAL STATES
# =============================================================================


class TestCancelRequest:

    def test_cancel_pending_request(self, db_session, distributor, issuer, product):
        req = request_service.submit_request(distributor.id, product.id, 5)
        request_service.cancel_request(req.id, issuer.id, notes="duplicate")
        db_session.commit()

        assert req.status == "cancelled"
        assert req.processed_by_user_id == issuer.id
        assert db_session.get(Product, product.id).stock_units == 1000
        assert db_session.query(Lot).count() == 0

    def test_cancelled_request_is_immutable(self, db_session, distributor, issuer, product, receipt_store):
        req = request_service.submit_request(distributor.id, product.id, 5)
        request_service.cancel_request(req.id, issuer.id)

        with pytest.raises(StateError):
            request_service.approve_request(req.id, issuer.id)
        with pytest.raises(StateError):
            request_service.cancel_request(req.id, issuer.id)
        with pytest.raises(StateError):
            request_service.attach_receipt(req.id, distributor.id, _image(), store=receipt_store)

    def test_approved_request_cannot_be_cancelled(self, db_session, issuer, verified_request):
        req = verified_request(5)
        request_service.approve_request(req.id, issuer.id)

        with pytest.raises(StateError):
            request_service.cancel_request(req.id, issuer.id)


# =============================================================================
# VISIBILITY AND STATS
# =============================================================================


class TestVisibility:

    def test_list_requests_by_role(self, db_session, issuer, regional, distributor, other_distributor,
                                   field_agent, product):
        mine = request_service.submit_request(distributor.id, product.id, 5)
        theirs = request_service.submit_request(other_distributor.id, product.id, 7)
        db_session.commit()

        assert {r.id for r in request_service.list_requests(issuer)} == {mine.id, theirs.id}
        assert {r.id for r in request_service.list_requests(regional)} == {mine.id, theirs.id}
        assert [r.id for r in request_service.list_requests(distributor)] == [mine.id]
        assert request_service.list_requests(field_agent) == []

    def test_get_request_for_other_distributor_denied(self, db_session, distributor, other_distributor, product):
        req = request_service.submit_request(distributor.id, product.id, 5)
        db_session.commit()

        with pytest.raises(PermissionDeniedError):
            request_service.get_request_for(other_distributor, req.id)

    def test_distributor_stats(self, db_session, issuer, regional, distributor, product, verified_request):
        approved = verified_request(10)
        request_service.approve_request(approved.id, issuer.id)
        request_service.submit_request(distributor.id, product.id, 4)
        db_session.commit()

        stats = request_service.get_distributor_request_stats(regional.id, distributor.id)["stats"]
        assert stats["total_requests"] == 2
        assert stats["approved_requests"] == 1
        assert stats["pending_requests"] == 1
        assert stats["total_units_requested"] == 14
        assert stats["total_units_approved"] == 10
        # 10 units * 10 packets * 150 cents
        assert stats["total_value_approved_cents"] == 15000

    def test_stats_for_foreign_distributor_denied(self, db_session, issuer, distributor):
        with pytest.raises(NotFoundError):
            request_service.get_distributor_request_stats(issuer.id, distributor.id)
