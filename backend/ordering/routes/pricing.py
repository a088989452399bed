"""
Price override administration and live price resolution.

POST / PATCH / toggle answer with the supersede result:
{"accepted": true, "override": {...}, "superseded_ids": [...]} or
400 {"accepted": false, "reason": ..., "message": ...}.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import pricing_service
from ..time_utils import parse_iso_datetime
from ..validation import ValidationError
from ..decorators import require_staff
from . import DOMAIN_ERRORS, error_response, json_body


price_overrides_bp = Blueprint("price_overrides", __name__, url_prefix="/api/price-overrides")
pricing_bp = Blueprint("pricing", __name__, url_prefix="/api/pricing")


def _at_arg():
    raw = request.args.get("at")
    try:
        return parse_iso_datetime(raw)
    except ValueError:
        raise ValidationError("at must be an ISO-8601 datetime")


def _result_response(result, created: bool = False):
    if not result.accepted:
        return jsonify(result.to_dict()), 400
    return jsonify(result.to_dict()), 201 if created else 200


@price_overrides_bp.get("")
@require_staff
def list_overrides_route():
    """History view; ?include_deleted=1 adds soft-deleted records separately."""
    try:
        product_id = request.args.get("product_id", type=int)
        branch_id = request.args.get("branch_id", type=int)
        if not product_id and not branch_id:
            return jsonify({"error": "product_id or branch_id required"}), 400

        include_deleted = request.args.get("include_deleted", "").lower() in ("1", "true", "yes")
        live, deleted = pricing_service.list_overrides(
            product_id=product_id,
            branch_id=branch_id,
            include_deleted=include_deleted,
        )
        return jsonify({
            "overrides": [o.to_dict() for o in live],
            "deleted": [o.to_dict() for o in deleted],
        }), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list price overrides")
        return jsonify({"error": "Internal server error"}), 500


@price_overrides_bp.post("")
@require_staff
def create_override_route():
    """
    Body: {product_id, branch_id?, name, kind, value, is_percentage?,
           starts_at, ends_at, days_of_week?, time_start?, time_end?, auto_revert?}
    """
    try:
        data = json_body(request)
        product_id = data.get("product_id")
        if not product_id:
            return jsonify({"error": "product_id required"}), 400

        result = pricing_service.create_override(
            product_id=product_id,
            branch_id=data.get("branch_id"),
            name=data.get("name"),
            kind=data.get("kind"),
            value=data.get("value"),
            is_percentage=bool(data.get("is_percentage", False)),
            starts_at=data.get("starts_at"),
            ends_at=data.get("ends_at"),
            days_of_week=data.get("days_of_week"),
            time_start=data.get("time_start"),
            time_end=data.get("time_end"),
            auto_revert=bool(data.get("auto_revert", False)),
            created_by=g.staff_id,
        )
        return _result_response(result, created=True)
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create price override")
        return jsonify({"error": "Internal server error"}), 500


@price_overrides_bp.post("/bulk")
@require_staff
def bulk_temporary_route():
    """Body: {branch_id, starts_at, ends_at, name?, items: [{product_id, price_cents}]}"""
    try:
        data = json_body(request)
        branch_id = data.get("branch_id")
        items = data.get("items")
        if not branch_id:
            return jsonify({"error": "branch_id required"}), 400
        if not isinstance(items, list) or not items:
            return jsonify({"error": "items must be a non-empty list"}), 400

        outcome = pricing_service.apply_bulk_temporary(
            branch_id=branch_id,
            starts_at=data.get("starts_at"),
            ends_at=data.get("ends_at"),
            items=items,
            name=data.get("name") or "Temporary price",
            created_by=g.staff_id,
        )
        status = 201 if outcome["applied"] else 400
        return jsonify(outcome), status
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to apply bulk price overrides")
        return jsonify({"error": "Internal server error"}), 500


@price_overrides_bp.patch("/<int:override_id>")
@require_staff
def update_override_route(override_id: int):
    try:
        data = json_body(request)
        if not data:
            return jsonify({"error": "No fields to update"}), 400
        result = pricing_service.update_override(override_id, data)
        return _result_response(result)
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update price override")
        return jsonify({"error": "Internal server error"}), 500


@price_overrides_bp.patch("/<int:override_id>/toggle")
@require_staff
def toggle_override_route(override_id: int):
    try:
        return _result_response(pricing_service.toggle_override(override_id))
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to toggle price override")
        return jsonify({"error": "Internal server error"}), 500


@price_overrides_bp.delete("/<int:override_id>")
@require_staff
def delete_override_route(override_id: int):
    try:
        override = pricing_service.delete_override(override_id)
        return jsonify({"override": override.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to delete price override")
        return jsonify({"error": "Internal server error"}), 500


@price_overrides_bp.post("/sweep")
@require_staff
def sweep_route():
    try:
        count = pricing_service.sweep_expired()
        return jsonify({"deactivated": count}), 200
    except Exception:
        current_app.logger.exception("Failed to sweep expired price overrides")
        return jsonify({"error": "Internal server error"}), 500


@pricing_bp.get("/resolve/<int:product_id>")
def resolve_route(product_id: int):
    """Effective price now, or at ?at=<ISO-8601>."""
    try:
        return jsonify(pricing_service.resolve(product_id, _at_arg()).to_dict()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to resolve price")
        return jsonify({"error": "Internal server error"}), 500


@pricing_bp.get("/effective")
def effective_prices_route():
    try:
        branch_id = request.args.get("branch_id", type=int)
        if not branch_id:
            return jsonify({"error": "branch_id required"}), 400
        prices = pricing_service.effective_prices(branch_id, _at_arg())
        return jsonify({"branch_id": branch_id, "prices": [p.to_dict() for p in prices]}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list effective prices")
        return jsonify({"error": "Internal server error"}), 500
