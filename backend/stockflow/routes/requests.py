# backend/stockflow/routes/requests.py
"""
Stock request API routes.

Distributors submit requests and upload payment receipts; the issuer
verifies or rejects payment and approves or cancels requests.
"""
from flask import Blueprint, current_app, request, jsonify, g

from ..decorators import require_auth, require_role, require_approver
from ..errors import StockflowError
from ..models import Role
from ..services import request_service
from ..services.concurrency import commit_with_retry
from ..settings import PaymentSettings
from .responses import internal_error_response, service_error_response


requests_bp = Blueprint("requests", __name__, url_prefix="/api/requests")


def _notes_from_body() -> str | None:
    data = request.get_json(silent=True) or {}
    return data.get("notes")


@requests_bp.post("")
@require_auth
@require_role(Role.DISTRIBUTOR)
def submit_request_route():
    """
    Submit a stock request.

    Request body:
    {
        "product_id": int,
        "quantity": int,
        "notes": str (optional)
    }

    Returns:
        201: Request created (status=pending, payment_status=pending)
        400: Invalid input
        404: Product not found
        409: Insufficient central stock
    """
    data = request.get_json(silent=True) or {}

    if data.get("product_id") is None or data.get("quantity") is None:
        return jsonify({"error": "product_id and quantity required"}), 400

    try:
        req = request_service.submit_request(
            requester_id=g.current_user.id,
            product_id=data["product_id"],
            quantity=data["quantity"],
            notes=data.get("notes"),
        )
        commit_with_retry()
        return jsonify({"request": req.to_dict(), "message": "Request created successfully"}), 201

    except StockflowError as e:
        return service_error_response(e)
    except Exception:
        return internal_error_response("Failed to create stock request")


@requests_bp.get("")
@require_auth
def list_requests_route():
    """Requests visible to the caller, newest first."""
    requests = request_service.list_requests(g.current_user)
    return jsonify({"requests": [r.to_dict() for r in requests]}), 200


@requests_bp.get("/payment-address")
@require_auth
def payment_address_route():
    """Where distributors send payment before uploading a receipt."""
    settings = PaymentSettings.from_config(current_app.config)
    return jsonify(settings.to_dict()), 200


@requests_bp.get("/<int:request_id>")
@require_auth
def get_request_route(request_id: int):
    try:
        req = request_service.get_request_for(g.current_user, request_id)
        return jsonify({"request": req.to_dict()}), 200
    except StockflowError as e:
        return service_error_response(e)


@requests_bp.put("/<int:request_id>/receipt")
@require_auth
@require_role(Role.DISTRIBUTOR)
def upload_receipt_route(request_id: int):
    """
    Upload a payment receipt image (multipart field "receipt").

    Returns:
        200: Receipt stored, payment_status=paid
        400: Missing or invalid image
        403: Not the requester
        409: Request not pending, or payment not awaiting a receipt
    """
    receipt_ref = None
    try:
        req = request_service.attach_receipt(
            request_id=request_id,
            requester_id=g.current_user.id,
            image=request.files.get("receipt"),
        )
        receipt_ref = req.receipt_ref
        commit_with_retry()
        return jsonify({
            "request": req.to_dict(),
            "message": "Receipt uploaded successfully. Waiting for admin verification.",
        }), 200

    except StockflowError as e:
        return service_error_response(e)
    except Exception:
        request_service.discard_receipt(receipt_ref)
        return internal_error_response("Failed to upload receipt")


@requests_bp.put("/<int:request_id>/verify-payment")
@require_auth
@require_approver
def verify_payment_route(request_id: int):
    try:
        req = request_service.verify_payment(request_id, g.current_user.id, _notes_from_body())
        commit_with_retry()
        return jsonify({
            "request": req.to_dict(),
            "message": "Payment verified successfully. You can now approve the request.",
        }), 200

    except StockflowError as e:
        return service_error_response(e)
    except Exception:
        return internal_error_response("Failed to verify payment")


@requests_bp.put("/<int:request_id>/reject-payment")
@require_auth
@require_approver
def reject_payment_route(request_id: int):
    try:
        req = request_service.reject_payment(request_id, g.current_user.id, _notes_from_body())
        commit_with_retry()
        return jsonify({
            "request": req.to_dict(),
            "message": "Payment rejected. Dealer can upload a new receipt.",
        }), 200

    except StockflowError as e:
        return service_error_response(e)
    except Exception:
        return internal_error_response("Failed to reject payment")


@requests_bp.put("/<int:request_id>/approve")
@require_auth
@require_approver
def approve_request_route(request_id: int):
    """
    Approve a request whose payment is verified.

    Returns:
        200: Approved; central stock decremented and a lot opened
        409: Already processed, payment not verified, or insufficient stock
    """
    try:
        req = request_service.approve_request(request_id, g.current_user.id, _notes_from_body())
        commit_with_retry()
        return jsonify({
            "request": req.to_dict(),
            "lot": req.lot.to_dict() if req.lot else None,
            "message": "Request approved successfully",
        }), 200

    except StockflowError as e:
        return service_error_response(e)
    except Exception:
        return internal_error_response("Failed to approve request")


@requests_bp.put("/<int:request_id>/cancel")
@require_auth
@require_approver
def cancel_request_route(request_id: int):
    try:
        req = request_service.cancel_request(request_id, g.current_user.id, _notes_from_body())
        commit_with_retry()
        return jsonify({"request": req.to_dict(), "message": "Request cancelled successfully"}), 200

    except StockflowError as e:
        return service_error_response(e)
    except Exception:
        return internal_error_response("Failed to cancel request")


@requests_bp.get("/distributors/<int:distributor_id>/stats")
@require_auth
@require_role(Role.REGIONAL_DISTRIBUTOR)
def distributor_stats_route(distributor_id: int):
    """Request statistics for a distributor created by the calling regional distributor."""
    try:
        stats = request_service.get_distributor_request_stats(g.current_user.id, distributor_id)
        return jsonify(stats), 200
    except StockflowError as e:
        return service_error_response(e)
