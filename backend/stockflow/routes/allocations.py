# backend/stockflow/routes/allocations.py
"""
Distributor stock and allocation API routes.
"""
from flask import Blueprint, request, jsonify, g

from ..decorators import require_auth, require_role
from ..errors import StockflowError
from ..models import Role
from ..services import allocation_service, ledger_service
from ..services.concurrency import commit_with_retry
from .responses import internal_error_response, service_error_response


allocations_bp = Blueprint("allocations", __name__, url_prefix="/api")


@allocations_bp.get("/stock")
@require_auth
@require_role(Role.DISTRIBUTOR)
def distributor_stock_route():
    """Caller's entitlement grouped by product, with per-lot sources (oldest first)."""
    stocks = ledger_service.get_distributor_stock(g.current_user.id)
    return jsonify({"stocks": stocks}), 200


@allocations_bp.post("/allocations")
@require_auth
@require_role(Role.DISTRIBUTOR)
def allocate_route():
    """
    Allocate units to a field agent from the caller's lots.

    Request body:
    {
        "recipient_id": int,
        "product_id": int,
        "quantity": int,
        "notes": str (optional)
    }

    Returns:
        201: Allocated (possibly across several lots)
        400: Invalid input
        404: Product or recipient not found
        409: Insufficient stock; body reports units available
    """
    data = request.get_json(silent=True) or {}

    missing = [k for k in ("recipient_id", "product_id", "quantity") if data.get(k) is None]
    if missing:
        return jsonify({"error": f"Missing required fields: {', '.join(missing)}"}), 400

    try:
        result = allocation_service.allocate(
            distributor_id=g.current_user.id,
            recipient_id=data["recipient_id"],
            product_id=data["product_id"],
            quantity=data["quantity"],
            notes=data.get("notes"),
        )
        commit_with_retry()
        return jsonify({
            **result.to_dict(),
            "message": f"Successfully allocated {result.quantity} units",
        }), 201

    except StockflowError as e:
        return service_error_response(e)
    except Exception:
        return internal_error_response("Failed to allocate stock")


@allocations_bp.get("/allocations")
@require_auth
@require_role(Role.DISTRIBUTOR)
def list_allocations_route():
    """Caller's allocations grouped by recipient."""
    groups = allocation_service.list_distributor_allocations(g.current_user.id)
    return jsonify({
        "allocations": groups,
        "total_allocations": sum(len(group["allocations"]) for group in groups),
    }), 200


@allocations_bp.get("/allocations/recipients")
@require_auth
@require_role(Role.DISTRIBUTOR)
def list_recipients_route():
    """Active field agents the caller can allocate to."""
    recipients = allocation_service.list_recipients(g.current_user.id)
    return jsonify({
        "recipients": [recipient.to_summary() for recipient in recipients],
        "count": len(recipients),
    }), 200


@allocations_bp.get("/allocations/received")
@require_auth
@require_role(Role.FIELD_AGENT)
def received_stock_route():
    """Units the calling field agent has received, grouped by product."""
    stocks = allocation_service.get_recipient_stock(g.current_user.id)
    return jsonify({"stocks": stocks}), 200
