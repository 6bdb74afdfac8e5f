# backend/vaxstock/routes/deletions.py
"""
Deletion impact preview and cascade execution routes.

<entity_type> is one of region, commune, district, healthcenter
(health-center also accepted), vaccine, lot.
"""
from flask import Blueprint, jsonify, current_app
from ..decorators import require_scope
from ..errors import StockLedgerError
from ..extensions import db
from ..services import impact_service, cascade_service
from ..services.concurrency import commit_with_retry


deletions_bp = Blueprint("deletions", __name__, url_prefix="/api/deletions")


@deletions_bp.route("/<entity_type>/<int:entity_id>/impact", methods=["GET"])
@require_scope
def preview_impact(entity_type: str, entity_id: int, scope):
    """
    What deleting the entity would remove. Read-only, computed per request.

    Returns:
        200: CascadeImpact
        400: Unknown entity type
        403: Scope may not delete the entity
        404: Entity not found
    """
    try:
        impact = impact_service.preview_deletion_impact(entity_type, entity_id, scope=scope)
        return jsonify(impact.to_dict()), 200

    except StockLedgerError as e:
        return jsonify({"error": str(e)}), e.http_status
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except Exception:
        current_app.logger.exception("Failed to preview deletion of %s %s", entity_type, entity_id)
        return jsonify({"error": "Unexpected error"}), 500


@deletions_bp.route("/vaccine/<int:vaccine_id>/appointments", methods=["GET"])
@require_scope
def preview_vaccine_appointments(vaccine_id: int, scope):
    """Appointments cancelled by deleting a vaccine."""
    try:
        return jsonify(impact_service.preview_vaccine_deletion_impact(vaccine_id, scope=scope)), 200

    except StockLedgerError as e:
        return jsonify({"error": str(e)}), e.http_status
    except Exception:
        current_app.logger.exception("Failed to preview vaccine %s deletion", vaccine_id)
        return jsonify({"error": "Unexpected error"}), 500


@deletions_bp.route("/<entity_type>/<int:entity_id>", methods=["DELETE"])
@require_scope
def execute_deletion(entity_type: str, entity_id: int, scope):
    """
    Delete the entity and everything depending on it, atomically.

    Returns:
        200: CascadeResult with the counts removed
        400: Unknown entity type
        403: Scope may not delete the entity
        410: Entity already deleted
    """
    try:
        result = commit_with_retry(
            lambda: cascade_service.execute_cascade_deletion(entity_type, entity_id, scope=scope)
        )

        return jsonify(result.to_dict()), 200

    except StockLedgerError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), e.http_status
    except ValueError as e:
        db.session.rollback()
        return jsonify({"error": str(e)}), 400
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Cascade deletion of %s %s failed", entity_type, entity_id)
        return jsonify({"error": "Unexpected error"}), 500
