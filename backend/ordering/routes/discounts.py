"""Discount code administration and validation preview."""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import discount_service
from ..decorators import optional_identity, require_staff
from . import DOMAIN_ERRORS, error_response, json_body


discounts_bp = Blueprint("discounts", __name__, url_prefix="/api/discounts")


@discounts_bp.get("")
@require_staff
def list_discounts_route():
    try:
        active_only = request.args.get("active", "").lower() in ("1", "true", "yes")
        discounts = discount_service.list_discounts(active_only=active_only)
        return jsonify({"discounts": [d.to_dict() for d in discounts]}), 200
    except Exception:
        current_app.logger.exception("Failed to list discounts")
        return jsonify({"error": "Internal server error"}), 500


@discounts_bp.post("")
@require_staff
def create_discount_route():
    try:
        discount = discount_service.create_discount(json_body(request), created_by=g.staff_id)
        return jsonify({"discount": discount.to_dict()}), 201
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create discount")
        return jsonify({"error": "Internal server error"}), 500


@discounts_bp.get("/<int:discount_id>")
@require_staff
def get_discount_route(discount_id: int):
    try:
        return jsonify({"discount": discount_service.get_discount(discount_id).to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load discount")
        return jsonify({"error": "Internal server error"}), 500


@discounts_bp.patch("/<int:discount_id>")
@require_staff
def update_discount_route(discount_id: int):
    try:
        data = json_body(request)
        if not data:
            return jsonify({"error": "No fields to update"}), 400
        discount = discount_service.update_discount(discount_id, data)
        return jsonify({"discount": discount.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update discount")
        return jsonify({"error": "Internal server error"}), 500


@discounts_bp.delete("/<int:discount_id>")
@require_staff
def deactivate_discount_route(discount_id: int):
    """Codes are deactivated, never deleted: orders keep referencing them."""
    try:
        discount = discount_service.deactivate_discount(discount_id)
        return jsonify({"discount": discount.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to deactivate discount")
        return jsonify({"error": "Internal server error"}), 500


@discounts_bp.post("/validate")
@optional_identity
def validate_discount_route():
    """
    Preview a code against an order context.

    Body: {code, subtotal_cents, branch_id, order_type?}
    400 carries details.reason with the first failing check.
    """
    try:
        data = json_body(request)
        code = data.get("code")
        subtotal = data.get("subtotal_cents")
        branch_id = data.get("branch_id")
        if not code or subtotal is None or not branch_id:
            return jsonify({"error": "code, subtotal_cents and branch_id are required"}), 400
        if isinstance(subtotal, bool) or not isinstance(subtotal, int) or subtotal < 0:
            return jsonify({"error": "subtotal_cents must be a non-negative integer"}), 400

        preview = discount_service.preview(
            code,
            subtotal_cents=subtotal,
            order_type=data.get("order_type"),
            branch_id=branch_id,
            user_id=g.user_id,
        )
        return jsonify({"valid": True, **preview}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to validate discount")
        return jsonify({"error": "Internal server error"}), 500
