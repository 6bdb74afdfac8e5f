# backend/vaxstock/routes/transfers.py
"""
Stock transfer API routes.
"""
from flask import Blueprint, request, jsonify, current_app
from ..decorators import require_scope
from ..errors import StockLedgerError
from ..extensions import db
from ..owners import Owner
from ..services import transfer_service
from ..services.concurrency import commit_with_retry
from ..services.scope_service import require_scope_covers, scope_covers


transfers_bp = Blueprint("transfers", __name__, url_prefix="/api/transfers")


def _resolve(action, transfer_id: int, scope, **kwargs):
    """Run a confirm/reject/cancel service call and commit."""
    try:
        transfer = commit_with_retry(lambda: action(transfer_id, scope=scope, **kwargs))

        return jsonify(transfer_service.serialize_transfer(transfer)), 200

    except StockLedgerError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), e.http_status
    except ValueError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to %s transfer %s", action.__name__, transfer_id)
        return jsonify({"error": "Unexpected error"}), 500


@transfers_bp.route("", methods=["POST"])
@require_scope
def propose_transfer(scope):
    """
    Propose a transfer; source lots are debited immediately.

    Request body:
    {
        "vaccine_id": int,
        "from_owner": {"level": "REGIONAL", "id": 1},
        "to_owner": {"level": "DISTRICT", "id": 4},
        "quantity": int
    }

    Returns:
        201: Transfer created (PENDING)
        400: Invalid request
        403: Scope does not cover the sender
        404: Owner or vaccine not found
        409: Insufficient valid stock
    """
    data = request.get_json(silent=True) or {}

    try:
        vaccine_id = data["vaccine_id"]
        from_owner = Owner.from_dict(data["from_owner"])
        to_owner = Owner.from_dict(data["to_owner"])
        quantity = data["quantity"]

        transfer = commit_with_retry(lambda: transfer_service.propose_transfer(
            vaccine_id, from_owner, to_owner, quantity, scope=scope,
        ))

        return jsonify(transfer_service.serialize_transfer(transfer)), 201

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
        current_app.logger.exception("Failed to propose transfer")
        return jsonify({"error": "Unexpected error"}), 500


@transfers_bp.route("/<int:transfer_id>/confirm", methods=["POST"])
@require_scope
def confirm_transfer(transfer_id: int, scope):
    """
    Receive a pending transfer (receiver action).

    Returns:
        200: Transfer confirmed
        403: Scope does not cover the receiver
        404: Transfer not found
        409: Transfer is not pending
    """
    return _resolve(transfer_service.confirm_transfer, transfer_id, scope)


@transfers_bp.route("/<int:transfer_id>/reject", methods=["POST"])
@require_scope
def reject_transfer(transfer_id: int, scope):
    """
    Refuse a pending transfer (receiver action).

    Request body (optional): {"reason": str}
    """
    data = request.get_json(silent=True) or {}
    return _resolve(transfer_service.reject_transfer, transfer_id, scope, reason=data.get("reason"))


@transfers_bp.route("/<int:transfer_id>/cancel", methods=["POST"])
@require_scope
def cancel_transfer(transfer_id: int, scope):
    """
    Withdraw a pending transfer (sender action).

    Request body (optional): {"reason": str}
    """
    data = request.get_json(silent=True) or {}
    return _resolve(transfer_service.cancel_transfer, transfer_id, scope, reason=data.get("reason"))


@transfers_bp.route("/pending", methods=["GET"])
@require_scope
def list_pending(scope):
    """
    Pending transfers of an owner.

    Query params: level, id, direction (incoming|outgoing|all), vaccine_id
    """
    try:
        owner = Owner.from_dict(request.args.to_dict())
        require_scope_covers(scope, owner, "view")
        vaccine_id = request.args.get("vaccine_id", type=int)

        transfers = transfer_service.list_pending_transfers(
            owner,
            direction=request.args.get("direction", "incoming"),
            vaccine_id=vaccine_id,
        )
        return jsonify([transfer_service.serialize_transfer(t) for t in transfers]), 200

    except StockLedgerError as e:
        return jsonify({"error": str(e)}), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to list pending transfers")
        return jsonify({"error": "Unexpected error"}), 500


@transfers_bp.route("/history", methods=["GET"])
@require_scope
def transfer_history(scope):
    """
    Confirmed transfers sent or received by an owner.

    Query params: level, id, vaccine_id, limit
    """
    try:
        owner = Owner.from_dict(request.args.to_dict())
        require_scope_covers(scope, owner, "view")

        transfers = transfer_service.get_transfer_history(
            owner,
            vaccine_id=request.args.get("vaccine_id", type=int),
            limit=request.args.get("limit", default=100, type=int),
        )
        return jsonify([transfer_service.serialize_history(t) for t in transfers]), 200

    except StockLedgerError as e:
        return jsonify({"error": str(e)}), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to read transfer history")
        return jsonify({"error": "Unexpected error"}), 500


@transfers_bp.route("/<int:transfer_id>", methods=["GET"])
@require_scope
def get_transfer(transfer_id: int, scope):
    """Get one transfer with its lot lines; visible to sender and receiver."""
    try:
        transfer = transfer_service.get_transfer(transfer_id)
        if not (scope_covers(scope, transfer.from_owner) or scope_covers(scope, transfer.to_owner)):
            return jsonify({"error": "Forbidden"}), 403
        return jsonify(transfer_service.serialize_transfer(transfer)), 200

    except StockLedgerError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to read transfer %s", transfer_id)
        return jsonify({"error": "Unexpected error"}), 500

