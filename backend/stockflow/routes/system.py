# backend/stockflow/routes/system.py
"""
System health endpoint.

Reports database reachability plus a few ledger counters operators watch
(pending requests, open lots with availability).
"""

import time
from flask import Blueprint, current_app, jsonify

from ..extensions import db
from ..models import Lot, StockRequest
from ..models.requests import REQUEST_STATUS_PENDING

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """Query the request and lot tables; any failure marks the database unhealthy."""
    start_time = time.time()
    try:
        pending = db.session.query(StockRequest).filter_by(status=REQUEST_STATUS_PENDING).count()
        open_lots = db.session.query(Lot).filter(Lot.available_units > 0).count()
        elapsed_ms = (time.time() - start_time) * 1000
        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {"pending_requests": pending, "open_lots": open_lots},
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        db.session.rollback()
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


@system_bp.get("/health")
def health():
    database = check_database_health()
    status_code = 200 if database["status"] == "healthy" else 503
    return jsonify({"status": database["status"], "checks": {"database": database}}), status_code
