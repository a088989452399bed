"""Order API routes: checkout, customer views and staff lifecycle actions."""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import order_service
from ..services.event_service import list_order_events
from ..decorators import require_identity, optional_identity, require_staff
from . import DOMAIN_ERRORS, error_response, json_body


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("")
@require_identity
def checkout_route():
    """
    Create an order from the caller's active cart.

    Body: {payment_method: "card"|"cash_on_delivery", discount_code?,
           guest?: {name, email, phone}, customer_notes?}
    Card orders return the gateway client_secret for the payment UI.
    """
    try:
        data = json_body(request)
        payment_method = data.get("payment_method")
        if not payment_method:
            return jsonify({"error": "payment_method required"}), 400

        result = order_service.create_order(
            user_id=g.user_id,
            session_id=g.session_id,
            payment_method=payment_method,
            discount_code=data.get("discount_code") or None,
            guest=data.get("guest"),
            customer_notes=data.get("customer_notes"),
        )
        return jsonify(result.to_dict()), 201
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_staff
def list_orders_route():
    try:
        orders, total = order_service.list_orders(
            branch_id=request.args.get("branch_id", type=int),
            status=request.args.get("status") or None,
            payment_status=request.args.get("payment_status") or None,
            limit=request.args.get("limit", 50, type=int),
            offset=request.args.get("offset", 0, type=int),
        )
        return jsonify({
            "orders": [o.to_dict(include_lines=False) for o in orders],
            "total": total,
        }), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/mine")
@require_identity
def my_orders_route():
    try:
        orders = order_service.list_orders_for_owner(
            user_id=g.user_id,
            session_id=g.session_id,
            limit=request.args.get("limit", 50, type=int),
        )
        return jsonify({"orders": [o.to_dict() for o in orders]}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list customer orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@optional_identity
def get_order_route(order_id: int):
    """Staff see any order; customers only their own."""
    try:
        if g.staff_id:
            order = order_service.get_order(order_id)
        else:
            order = order_service.get_order_for_owner(order_id, user_id=g.user_id, session_id=g.session_id)
        return jsonify({"order": order.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>/events")
@require_staff
def order_events_route(order_id: int):
    try:
        order_service.get_order(order_id)
        return jsonify({"events": [ev.to_dict() for ev in list_order_events(order_id)]}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load order events")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.patch("/<int:order_id>/status")
@require_staff
def update_status_route(order_id: int):
    """Body: {status?, estimated_completion_minutes?, internal_notes?}"""
    try:
        data = json_body(request)
        order = order_service.update_status(
            order_id,
            status=data.get("status"),
            estimated_completion_minutes=data.get("estimated_completion_minutes"),
            internal_notes=data.get("internal_notes"),
            actor=g.staff_id,
        )
        return jsonify({"order": order.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to update order status")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@optional_identity
def cancel_order_route(order_id: int):
    """
    Cancel a pending/processing order (staff, or the customer who owns it).

    A refund failure does not fail the request: the order is cancelled
    and refund_error is set on the returned order.
    """
    try:
        data = json_body(request)
        if not g.staff_id and bool(g.user_id) == bool(g.session_id):
            return jsonify({"error": "Exactly one of X-User-Id or X-Session-Id is required"}), 400

        order = order_service.cancel_order(
            order_id,
            reason=data.get("reason"),
            actor=g.staff_id or g.user_id or g.session_id,
            user_id=g.user_id,
            session_id=g.session_id,
            staff=bool(g.staff_id),
        )
        return jsonify({"order": order.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/refund")
@require_staff
def refund_order_route(order_id: int):
    try:
        order = order_service.refund_order(order_id, actor=g.staff_id)
        return jsonify({"order": order.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to refund order")
        return jsonify({"error": "Internal server error"}), 500
