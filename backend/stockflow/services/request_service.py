# backend/stockflow/services/request_service.py
"""
Stock request lifecycle service.

WHY: A distributor's entitlement is only created after the issuer has been
paid and has approved the request. Approval is the single point where
central stock turns into a distributor-owned lot.

LIFECYCLE:
- status:          pending -> approved | cancelled (terminal)
- payment_status:  pending -> paid -> verified
                   paid -> rejected -> paid (dealer re-uploads; no retry cap)

RULES:
1. Receipts can be attached only by the requester, only while the request is
   pending and the payment is pending or rejected.
2. Only a 'paid' receipt can be verified or rejected.
3. Approval requires status=pending and payment_status=verified, and
   re-checks central stock with an atomic conditional decrement.
4. Approval opens exactly one lot (guarded by DuplicateError on open_lot).
5. Cancellation has no stock or ledger effect.
"""
from __future__ import annotations

from flask import current_app
from werkzeug.datastructures import FileStorage

from ..extensions import db
from ..errors import (
    InsufficientStockError,
    NotFoundError,
    PaymentNotVerifiedError,
    PermissionDeniedError,
    StateError,
    ValidationError,
)
from ..models import Role, StockRequest, User
from ..models.requests import (
    REQUEST_STATUS_PENDING,
    REQUEST_STATUS_APPROVED,
    REQUEST_STATUS_CANCELLED,
    PAYMENT_STATUS_PENDING,
    PAYMENT_STATUS_PAID,
    PAYMENT_STATUS_VERIFIED,
    PAYMENT_STATUS_REJECTED,
)
from ..signals import emit, request_approved
from ..time_utils import to_utc_z, utcnow
from .catalog_service import get_product
from .concurrency import lock_for_update, run_with_retry
from .ledger_service import append_ledger_event, decrement_central_stock, open_lot
from .receipt_storage import ReceiptStore, get_receipt_store


DEFAULT_REJECTION_NOTE = "Receipt rejected. Please upload a valid receipt."


def validate_quantity(quantity) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise ValidationError("quantity must be a positive integer")
    if quantity < 1:
        raise ValidationError("quantity must be at least 1")
    return quantity


def _require_id(value, name: str) -> int:
    if value is None:
        raise ValidationError(f"{name} is required")
    return value


def _load_request(request_id: int, *, lock: bool = False) -> StockRequest:
    _require_id(request_id, "request_id")
    query = db.session.query(StockRequest).filter_by(id=request_id)
    if lock:
        query = lock_for_update(query)
    req = query.first()
    if req is None:
        raise NotFoundError("Request not found", request_id=request_id)
    return req


def submit_request(
    requester_id: int,
    product_id: int,
    quantity: int,
    notes: str | None = None,
) -> StockRequest:
    """
    Create a pending request.

    The stock check here is optimistic: approval re-checks it, because other
    requests may consume central stock in the meantime.
    """
    _require_id(requester_id, "requester_id")
    _require_id(product_id, "product_id")
    validate_quantity(quantity)

    product = get_product(product_id)
    if product.stock_units < quantity:
        raise InsufficientStockError(
            f"Insufficient stock. Available: {product.stock_units} units, Requested: {quantity} units",
            available=product.stock_units,
            requested=quantity,
        )

    req = StockRequest(
        requester_id=requester_id,
        product_id=product.id,
        quantity=quantity,
        status=REQUEST_STATUS_PENDING,
        payment_status=PAYMENT_STATUS_PENDING,
        notes=notes or "",
    )
    db.session.add(req)
    db.session.flush()

    append_ledger_event(
        event_type="request.created",
        entity_type="request",
        entity_id=req.id,
        actor_user_id=requester_id,
        request_id=req.id,
        occurred_at=req.requested_at,
        payload=f"product_id={product.id},quantity={quantity}",
    )
    return req


def attach_receipt(
    request_id: int,
    requester_id: int,
    image: FileStorage,
    *,
    store: ReceiptStore | None = None,
) -> StockRequest:
    """
    Attach a payment receipt (payment_status -> paid).

    Ownership and state are checked before the image reaches receipt storage.
    If the operation fails after the upload, the stored image is discarded.
    """
    store = store or get_receipt_store()
    uploaded: dict[str, str] = {}

    def _op():
        req = _load_request(request_id, lock=True)

        if req.requester_id != requester_id:
            raise PermissionDeniedError(
                "Access denied. You can only upload receipts for your own requests."
            )
        if req.status != REQUEST_STATUS_PENDING:
            raise StateError(f"Cannot upload receipt for {req.status} request", status=req.status)
        if req.payment_status not in (PAYMENT_STATUS_PENDING, PAYMENT_STATUS_REJECTED):
            raise StateError(
                f"Cannot upload receipt while payment status is {req.payment_status}",
                payment_status=req.payment_status,
            )

        if "ref" not in uploaded:
            uploaded["ref"] = store.save(image)

        req.receipt_ref = uploaded["ref"]
        req.payment_status = PAYMENT_STATUS_PAID
        db.session.flush()

        append_ledger_event(
            event_type="request.receipt_attached",
            entity_type="request",
            entity_id=req.id,
            actor_user_id=requester_id,
            request_id=req.id,
            payload=f"receipt_ref={req.receipt_ref}",
        )
        return req

    try:
        return run_with_retry(_op)
    except Exception:
        if "ref" in uploaded:
            store.discard(uploaded["ref"])
        raise


def discard_receipt(ref: str | None) -> None:
    """Remove a stored receipt whose request change was never committed."""
    if ref:
        get_receipt_store().discard(ref)


def verify_payment(request_id: int, approver_id: int, notes: str | None = None) -> StockRequest:
    def _op():
        req = _load_request(request_id, lock=True)

        if req.is_terminal:
            raise StateError(f"Request is already {req.status}", status=req.status)
        if req.payment_status != PAYMENT_STATUS_PAID:
            raise StateError(
                f"Payment status is {req.payment_status}. Only 'paid' receipts can be verified.",
                payment_status=req.payment_status,
            )

        req.payment_status = PAYMENT_STATUS_VERIFIED
        req.payment_verified_by_user_id = approver_id
        req.payment_verified_at = utcnow()
        req.payment_notes = notes or ""
        db.session.flush()

        append_ledger_event(
            event_type="request.payment_verified",
            entity_type="request",
            entity_id=req.id,
            actor_user_id=approver_id,
            request_id=req.id,
            occurred_at=req.payment_verified_at,
            note=req.payment_notes or None,
        )
        return req

    return run_with_retry(_op)


def reject_payment(request_id: int, approver_id: int, notes: str | None = None) -> StockRequest:
    """Reject the receipt; the reference is cleared so the requester must re-upload."""
    def _op():
        req = _load_request(request_id, lock=True)

        if req.is_terminal:
            raise StateError(f"Request is already {req.status}", status=req.status)
        if req.payment_status != PAYMENT_STATUS_PAID:
            raise StateError(
                f"Payment status is {req.payment_status}. Only 'paid' receipts can be rejected.",
                payment_status=req.payment_status,
            )

        req.payment_status = PAYMENT_STATUS_REJECTED
        req.payment_verified_by_user_id = approver_id
        req.payment_verified_at = utcnow()
        req.payment_notes = notes or DEFAULT_REJECTION_NOTE
        req.receipt_ref = None
        db.session.flush()

        append_ledger_event(
            event_type="request.payment_rejected",
            entity_type="request",
            entity_id=req.id,
            actor_user_id=approver_id,
            request_id=req.id,
            occurred_at=req.payment_verified_at,
            note=req.payment_notes,
        )
        return req

    req = run_with_retry(_op)
    current_app.logger.warning("Payment rejected for request %s by user %s", req.id, approver_id)
    return req


def approve_request(request_id: int, approver_id: int, notes: str | None = None) -> StockRequest:
    """
    Approve a verified request: decrement central stock and open a lot.

    Errors distinguish "payment not verified" (PaymentNotVerifiedError) from
    "insufficient stock" (InsufficientStockError) so the caller knows whether
    to wait for payment or escalate.
    """
    def _op():
        req = _load_request(request_id, lock=True)

        if req.status != REQUEST_STATUS_PENDING:
            raise StateError(f"Request is already {req.status}", status=req.status)

        if req.payment_status != PAYMENT_STATUS_VERIFIED:
            raise PaymentNotVerifiedError(
                f"Cannot approve request. Payment status is {req.payment_status}. "
                f"Payment must be verified first.",
                payment_status=req.payment_status,
            )

        decrement_central_stock(req.product_id, req.quantity)

        req.status = REQUEST_STATUS_APPROVED
        req.processed_by_user_id = approver_id
        req.processed_at = utcnow()
        req.notes = notes or ""
        db.session.flush()  # version check: a racing approval fails here

        lot = open_lot(
            req.requester_id,
            req.product_id,
            req.quantity,
            req.id,
            actor_user_id=approver_id,
        )

        append_ledger_event(
            event_type="request.approved",
            entity_type="request",
            entity_id=req.id,
            actor_user_id=approver_id,
            request_id=req.id,
            lot_id=lot.id,
            occurred_at=req.processed_at,
            note=req.notes or None,
            payload=f"product_id={req.product_id},quantity={req.quantity}",
        )
        return req, lot

    req, lot = run_with_retry(_op)

    current_app.logger.info(
        "Request %s approved by user %s: %s units of product %s -> lot %s",
        req.id, approver_id, req.quantity, req.product_id, lot.id,
    )
    emit(request_approved, req, lot=lot)
    return req


def cancel_request(request_id: int, approver_id: int, notes: str | None = None) -> StockRequest:
    """Cancel a pending request. Central stock was never touched, so nothing to restore."""
    def _op():
        req = _load_request(request_id, lock=True)

        if req.status != REQUEST_STATUS_PENDING:
            raise StateError(f"Request is already {req.status}", status=req.status)

        req.status = REQUEST_STATUS_CANCELLED
        req.processed_by_user_id = approver_id
        req.processed_at = utcnow()
        req.notes = notes or ""
        db.session.flush()

        append_ledger_event(
            event_type="request.cancelled",
            entity_type="request",
            entity_id=req.id,
            actor_user_id=approver_id,
            request_id=req.id,
            occurred_at=req.processed_at,
            note=req.notes or None,
        )
        return req

    return run_with_retry(_op)


def get_request_for(caller: User, request_id: int) -> StockRequest:
    """Load a request the caller is allowed to see."""
    req = _load_request(request_id)

    if caller.role == Role.ISSUER:
        return req
    if caller.role == Role.DISTRIBUTOR and req.requester_id == caller.id:
        return req
    if caller.role == Role.REGIONAL_DISTRIBUTOR and req.requester.parent_id == caller.id:
        return req
    raise PermissionDeniedError("Access denied")


def list_requests(caller: User) -> list[StockRequest]:
    """
    Requests visible to the caller, newest first.

    - issuer: all requests
    - distributor: own requests
    - regional distributor: requests of distributors it created
    - field agent: none
    """
    query = db.session.query(StockRequest)

    if caller.role == Role.DISTRIBUTOR:
        query = query.filter(StockRequest.requester_id == caller.id)
    elif caller.role == Role.REGIONAL_DISTRIBUTOR:
        child_ids = db.session.query(User.id).filter(
            User.parent_id == caller.id,
            User.role == Role.DISTRIBUTOR.value,
        )
        query = query.filter(StockRequest.requester_id.in_(child_ids))
    elif caller.role != Role.ISSUER:
        return []

    return query.order_by(StockRequest.requested_at.desc(), StockRequest.id.desc()).all()


def get_distributor_request_stats(regional_id: int, distributor_id: int) -> dict:
    """Request statistics for a distributor created by the calling regional distributor."""
    distributor = db.session.query(User).filter_by(
        id=distributor_id,
        parent_id=regional_id,
        role=Role.DISTRIBUTOR.value,
    ).first()
    if distributor is None:
        raise NotFoundError("Distributor not found or access denied", distributor_id=distributor_id)

    requests = (
        db.session.query(StockRequest)
        .filter(StockRequest.requester_id == distributor_id)
        .order_by(StockRequest.requested_at.desc(), StockRequest.id.desc())
        .all()
    )

    def _units(status=None):
        return sum(r.quantity for r in requests if status is None or r.status == status)

    def _value(status=None):
        return sum(r.value_cents for r in requests if status is None or r.status == status)

    return {
        "distributor": distributor.to_summary(),
        "stats": {
            "total_requests": len(requests),
            "pending_requests": sum(1 for r in requests if r.status == REQUEST_STATUS_PENDING),
            "approved_requests": sum(1 for r in requests if r.status == REQUEST_STATUS_APPROVED),
            "cancelled_requests": sum(1 for r in requests if r.status == REQUEST_STATUS_CANCELLED),
            "total_units_requested": _units(),
            "total_units_approved": _units(REQUEST_STATUS_APPROVED),
            "total_units_pending": _units(REQUEST_STATUS_PENDING),
            "total_value_requested_cents": _value(),
            "total_value_approved_cents": _value(REQUEST_STATUS_APPROVED),
        },
        "requests": [
            {
                "id": r.id,
                "product": r.product.to_summary(),
                "quantity": r.quantity,
                "status": r.status,
                "payment_status": r.payment_status,
                "requested_at": to_utc_z(r.requested_at),
                "processed_at": to_utc_z(r.processed_at),
                "total_value_cents": r.value_cents,
            }
            for r in requests
        ],
    }
