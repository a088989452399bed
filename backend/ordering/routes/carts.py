"""Cart API routes. Identity comes from X-User-Id / X-Session-Id."""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import cart_service
from ..validation import ValidationError
from ..decorators import require_identity
from . import DOMAIN_ERRORS, error_response, json_body


carts_bp = Blueprint("carts", __name__, url_prefix="/api/cart")


def _view():
    return cart_service.view(user_id=g.user_id, session_id=g.session_id)


@carts_bp.get("")
@require_identity
def view_cart_route():
    try:
        return jsonify(_view()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load cart")
        return jsonify({"error": "Internal server error"}), 500


@carts_bp.get("/summary")
@require_identity
def cart_summary_route():
    try:
        return jsonify(cart_service.summary(user_id=g.user_id, session_id=g.session_id)), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load cart summary")
        return jsonify({"error": "Internal server error"}), 500


@carts_bp.delete("")
@require_identity
def clear_cart_route():
    try:
        cart_service.clear_cart(user_id=g.user_id, session_id=g.session_id)
        return jsonify(_view()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to clear cart")
        return jsonify({"error": "Internal server error"}), 500


@carts_bp.post("/items")
@require_identity
def add_item_route():
    """
    Add a line. Body: {product_id, quantity?, attributes?: [{attribute_id, item_id, quantity?}], note?}

    Identical lines are never merged; every add appends.
    """
    try:
        data = json_body(request)
        product_id = data.get("product_id")
        if not product_id:
            return jsonify({"error": "product_id required"}), 400

        line = cart_service.add_item(
            user_id=g.user_id,
            session_id=g.session_id,
            product_id=product_id,
            quantity=data.get("quantity", 1),
            attributes=data.get("attributes"),
            note=data.get("note"),
        )
        return jsonify({"line": line.to_dict(), "cart": _view()}), 201
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to add cart item")
        return jsonify({"error": "Internal server error"}), 500


@carts_bp.patch("/items/<int:line_id>")
@require_identity
def update_item_route(line_id: int):
    try:
        data = json_body(request)
        if "quantity" not in data and "note" not in data:
            return jsonify({"error": "quantity or note required"}), 400

        kwargs = {}
        if "quantity" in data:
            kwargs["quantity"] = data["quantity"]
            if data["quantity"] is None:
                raise ValidationError("quantity cannot be null")
        if "note" in data:
            kwargs["note"] = data["note"]

        line = cart_service.update_item(line_id, user_id=g.user_id, session_id=g.session_id, **kwargs)
        return jsonify({"line": line.to_dict(), "cart": _view()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update cart item")
        return jsonify({"error": "Internal server error"}), 500


@carts_bp.delete("/items/<int:line_id>")
@require_identity
def remove_item_route(line_id: int):
    try:
        cart_service.remove_item(line_id, user_id=g.user_id, session_id=g.session_id)
        return jsonify(_view()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to remove cart item")
        return jsonify({"error": "Internal server error"}), 500


@carts_bp.put("/delivery")
@require_identity
def set_delivery_route():
    """Body: {order_type, branch_id?, delivery_fee_cents?}"""
    try:
        data = json_body(request)
        order_type = data.get("order_type")
        if not order_type:
            return jsonify({"error": "order_type required"}), 400

        cart_service.set_delivery(
            user_id=g.user_id,
            session_id=g.session_id,
            order_type=order_type,
            branch_id=data.get("branch_id"),
            delivery_fee_cents=data.get("delivery_fee_cents"),
        )
        return jsonify(_view()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to set cart delivery")
        return jsonify({"error": "Internal server error"}), 500


@carts_bp.post("/merge")
def merge_cart_route():
    """
    Fold a guest cart into the signed-in user's cart after login.

    Needs X-User-Id plus the guest session id in the body.
    """
    try:
        user_id = (request.headers.get("X-User-Id") or "").strip()
        if not user_id:
            return jsonify({"error": "X-User-Id required"}), 400
        data = json_body(request)
        session_id = str(data.get("session_id") or "").strip()
        if not session_id:
            return jsonify({"error": "session_id required"}), 400

        result = cart_service.merge(user_id=user_id, session_id=session_id)
        return jsonify({
            "merged": result.merged,
            "skipped": result.skipped,
            "cart": cart_service.view(user_id=user_id),
        }), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to merge carts")
        return jsonify({"error": "Internal server error"}), 500
