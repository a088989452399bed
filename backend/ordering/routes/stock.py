"""Stock availability checks and admin stock maintenance."""

from flask import Blueprint, request, jsonify, current_app

from ..services import stock_service
from ..validation import ValidationError
from ..decorators import require_staff
from . import DOMAIN_ERRORS, error_response, json_body


stock_bp = Blueprint("stock", __name__, url_prefix="/api/stock")


def _stock_payload(product_id: int, record) -> dict:
    if record is None:
        return {"product_id": product_id, "is_managed": False, "quantity": None}
    return record.to_dict()


@stock_bp.post("/availability")
def availability_route():
    """
    Body: {items: [{product_id, quantity}]}

    Quantities for the same product are summed before checking.
    """
    try:
        items = json_body(request).get("items")
        if not isinstance(items, list) or not items:
            return jsonify({"error": "items must be a non-empty list"}), 400

        pairs = []
        for item in items:
            if not isinstance(item, dict) or not item.get("product_id"):
                raise ValidationError("Each item needs product_id and quantity")
            pairs.append((item["product_id"], item.get("quantity")))

        return jsonify(stock_service.check_availability(pairs).to_dict()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to check availability")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.get("/low")
@require_staff
def low_stock_route():
    try:
        branch_id = request.args.get("branch_id", type=int)
        return jsonify({"items": stock_service.low_stock_report(branch_id)}), 200
    except Exception:
        current_app.logger.exception("Failed to build low stock report")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.get("/<int:product_id>")
def get_stock_route(product_id: int):
    try:
        return jsonify(_stock_payload(product_id, stock_service.get_stock(product_id))), 200
    except Exception:
        current_app.logger.exception("Failed to load stock record")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.put("/<int:product_id>")
@require_staff
def set_stock_route(product_id: int):
    """Body: {is_managed?, quantity?, low_stock_threshold?}"""
    try:
        data = json_body(request)
        record = stock_service.set_stock(
            product_id,
            is_managed=data.get("is_managed"),
            quantity=data.get("quantity"),
            low_stock_threshold=data.get("low_stock_threshold"),
        )
        return jsonify(record.to_dict()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to set stock")
        return jsonify({"error": "Internal server error"}), 500


@stock_bp.post("/<int:product_id>/adjust")
@require_staff
def adjust_stock_route(product_id: int):
    """Body: {delta} (positive receives, negative write-offs)."""
    try:
        record = stock_service.adjust_stock(product_id, json_body(request).get("delta"))
        return jsonify(record.to_dict()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust stock")
        return jsonify({"error": "Internal server error"}), 500
