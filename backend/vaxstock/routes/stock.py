# backend/vaxstock/routes/stock.py
"""
Stock lot API routes: receive, adjust, reduce, owner stock reads and removal.
"""
from flask import Blueprint, request, jsonify, current_app
from ..decorators import require_scope
from ..errors import StockLedgerError
from ..extensions import db
from ..owners import Owner
from ..services import lot_service, impact_service, cascade_service
from ..services.concurrency import commit_with_retry
from ..services.scope_service import require_scope_covers


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _optional_int(name: str):
    value = request.args.get(name)
    if value is None or value == "":
        return None
    return int(value)


@stock_bp.route("/lots", methods=["POST"])
@require_scope
def receive_lot(scope):
    """
    Record stock arriving at an owner.

    Request body:
    {
        "owner": {"level": "DISTRICT", "id": 4},
        "vaccine_id": int,
        "quantity": int,
        "expiration": "YYYY-MM-DD",
        "note": str (optional)
    }

    Returns:
        201: Lot created
        400: Invalid request
        403: Scope does not cover owner
        404: Owner or vaccine not found
    """
    data = request.get_json(silent=True) or {}

    try:
        owner = Owner.from_dict(data["owner"])
        vaccine_id, quantity, expiration = data["vaccine_id"], data["quantity"], data["expiration"]

        lot = commit_with_retry(lambda: lot_service.receive_lot(
            owner, vaccine_id, quantity, expiration, scope=scope, note=data.get("note"),
        ))

        return jsonify(lot.to_dict()), 201

    except KeyError as e:
        db.session.rollback()
        return jsonify({"error": f"Missing required field: {e}"}), 400
    except StockLedgerError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), e.http_status
    except ValueError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to receive lot")
        return jsonify({"error": "Unexpected error"}), 500


@stock_bp.route("/owner", methods=["GET"])
@require_scope
def owner_stock(scope):
    """
    Aggregates and lots held by one owner.

    Query params: level, id (omitted for NATIONAL), vaccine_id (optional)

    Returns:
        200: {"owner", "stocks", "lots"}
        400: Invalid owner
        403: Scope does not cover owner
        404: Owner not found
    """
    try:
        owner = Owner.from_dict(request.args.to_dict())
        require_scope_covers(scope, owner, "view")

        commit_with_retry(lot_service.maybe_mark_expired)

        return jsonify(lot_service.get_owner_stock(owner, _optional_int("vaccine_id"))), 200

    except StockLedgerError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), e.http_status
    except ValueError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to read owner stock")
        return jsonify({"error": "Unexpected error"}), 500


@stock_bp.route("/owner/impact", methods=["GET"])
@require_scope
def owner_stock_impact(scope):
    """
    What removing one owner's stock of a vaccine would touch.

    Query params: level, id, vaccine_id
    """
    try:
        owner = Owner.from_dict(request.args.to_dict())
        vaccine_id = _optional_int("vaccine_id")
        if vaccine_id is None:
            return jsonify({"error": "vaccine_id is required"}), 400
        require_scope_covers(scope, owner, "view")

        return jsonify(impact_service.owner_stock_impact(owner, vaccine_id)), 200

    except StockLedgerError as e:
        return jsonify({"error": str(e)}), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to compute owner stock impact")
        return jsonify({"error": "Unexpected error"}), 500


@stock_bp.route("/owner", methods=["DELETE"])
@require_scope
def delete_owner_stock(scope):
    """
    Remove one owner's stock of a vaccine: its lots and aggregate row.

    Query params: level, id, vaccine_id

    Returns:
        200: Counts removed and appointments cancelled
        400: Invalid owner or missing vaccine_id
        403: Scope does not cover owner
        404: Owner holds no stock of the vaccine
    """
    try:
        owner = Owner.from_dict(request.args.to_dict())
        vaccine_id = _optional_int("vaccine_id")
        if vaccine_id is None:
            return jsonify({"error": "vaccine_id is required"}), 400

        result = commit_with_retry(
            lambda: cascade_service.delete_owner_stock(owner, vaccine_id, scope=scope)
        )

        return jsonify(result), 200

    except StockLedgerError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), e.http_status
    except ValueError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to delete owner stock")
        return jsonify({"error": "Unexpected error"}), 500


@stock_bp.route("/lots/<int:lot_id>/adjust", methods=["POST"])
@require_scope
def adjust_lot(lot_id: int, scope):
    """
    Manual correction of a lot quantity.

    Request body:
    {
        "delta": int (negative to debit),
        "note": str (optional)
    }

    Returns:
        200: Lot adjusted
        400: Invalid delta
        404: Lot not found
        409: Lot would go negative
    """
    data = request.get_json(silent=True) or {}

    try:
        delta = data["delta"]

        lot = commit_with_retry(lambda: lot_service.adjust_quantity(
            lot_id, delta, scope=scope, note=data.get("note"),
        ))

        return jsonify(lot.to_dict()), 200

    except KeyError as e:
        db.session.rollback()
        return jsonify({"error": f"Missing required field: {e}"}), 400
    except StockLedgerError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), e.http_status
    except ValueError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to adjust lot %s", lot_id)
        return jsonify({"error": "Unexpected error"}), 500


@stock_bp.route("/lots/<int:lot_id>/reduce-impact", methods=["GET"])
@require_scope
def lot_reduce_impact(lot_id: int, scope):
    """
    Appointments a reduction would cancel.

    Query params: quantity
    """
    try:
        lot = lot_service.get_lot(lot_id)
        require_scope_covers(scope, lot.owner, "view")
        quantity = _optional_int("quantity")
        if quantity is None:
            return jsonify({"error": "quantity is required"}), 400

        return jsonify(impact_service.lot_reduction_impact(lot_id, quantity)), 200

    except StockLedgerError as e:
        return jsonify({"error": str(e)}), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to compute reduce impact for lot %s", lot_id)
        return jsonify({"error": "Unexpected error"}), 500


@stock_bp.route("/lots/<int:lot_id>/reduce", methods=["POST"])
@require_scope
def reduce_lot(lot_id: int, scope):
    """
    Take doses out of a lot, cancelling appointments that no longer fit.

    Request body:
    {
        "quantity": int,
        "note": str (optional)
    }
    """
    data = request.get_json(silent=True) or {}

    try:
        quantity = data["quantity"]

        result = commit_with_retry(lambda: cascade_service.reduce_lot(
            lot_id, quantity, scope=scope, note=data.get("note"),
        ))

        return jsonify(result), 200

    except KeyError as e:
        db.session.rollback()
        return jsonify({"error": f"Missing required field: {e}"}), 400
    except StockLedgerError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), e.http_status
    except ValueError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to reduce lot %s", lot_id)
        return jsonify({"error": "Unexpected error"}), 500
