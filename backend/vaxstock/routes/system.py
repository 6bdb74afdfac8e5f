# backend/vaxstock/routes/system.py
"""
System endpoints: health and the audit event log.

Health reports database reachability and a few row counts for deployment
debugging.
"""

import time
from flask import Blueprint, request, jsonify, current_app
from ..decorators import require_scope
from ..extensions import db
from ..models import Vaccine, StockLot, PendingStockTransfer
from ..services import event_log_service
from ..time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        vaccine_count = db.session.query(Vaccine).count()
        lot_count = db.session.query(StockLot).count()
        pending_count = db.session.query(PendingStockTransfer).filter_by(status="PENDING").count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "vaccines": vaccine_count,
                "stock_lots": lot_count,
                "pending_transfers": pending_count,
            }
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


@system_bp.route("/api/health", methods=["GET"])
def health():
    database = check_database_health()
    status_code = 200 if database["status"] == "healthy" else 503
    return jsonify({
        "status": database["status"],
        "time": to_utc_z(utcnow()),
        "checks": {"database": database},
    }), status_code


@system_bp.route("/api/events", methods=["GET"])
@require_scope
def list_events(scope):
    """
    Most recent audit events, newest first.

    Query params: entity_type, entity_id, event_type, limit (default 100, max 500)

    Returns:
        200: List of events
        400: Invalid filter
        403: Only SUPERADMIN and NATIONAL scopes read the log
    """
    if not scope.is_global:
        return jsonify({"error": "Audit log requires a national scope"}), 403

    try:
        entity_id = request.args.get("entity_id", type=int)
        limit = min(request.args.get("limit", 100, type=int), 500)
        if limit <= 0:
            return jsonify({"error": "limit must be positive"}), 400

        events = event_log_service.list_events(
            entity_type=request.args.get("entity_type"),
            entity_id=entity_id,
            event_type=request.args.get("event_type"),
            limit=limit,
        )
        return jsonify([ev.to_dict() for ev in events]), 200

    except Exception:
        current_app.logger.exception("Failed to list events")
        return jsonify({"error": "Unexpected error"}), 500
