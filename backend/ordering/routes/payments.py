"""Payment gateway callbacks, customer payment cancellation and reconciliation."""

from flask import Blueprint, request, jsonify, g, current_app

from ..payments import parse_event, verify_signature
from ..services import order_service
from ..decorators import require_identity, require_staff
from . import DOMAIN_ERRORS, error_response, json_body


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.post("/webhook")
def webhook_route():
    """
    Gateway event delivery (at-least-once).

    Always answers 200 for well-formed, correctly signed events, including
    duplicates and events for unknown intents, so the gateway stops retrying.
    """
    try:
        payload = request.get_data()
        secret = current_app.config.get("PAYMENT_WEBHOOK_SECRET")
        if secret:
            verify_signature(
                payload,
                request.headers.get("Stripe-Signature"),
                secret,
                tolerance=current_app.config.get("PAYMENT_WEBHOOK_TOLERANCE", 300),
            )

        event = parse_event(payload)
        result = order_service.handle_payment_event(
            intent_id=event["intent_id"],
            outcome=event["outcome"],
            event_id=event["event_id"],
            event_type=event["event_type"],
        )
        return jsonify({"received": True, **result.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to process payment webhook")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/cancel/<intent_id>")
@require_identity
def cancel_payment_route(intent_id: str):
    try:
        order = order_service.cancel_payment(intent_id, user_id=g.user_id, session_id=g.session_id)
        return jsonify({"order": order.to_dict()}), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to cancel payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.post("/reconcile")
@require_staff
def reconcile_route():
    """Body: {hours?} look-back window; defaults to PAYMENT_RECONCILE_WINDOW_HOURS."""
    try:
        data = json_body(request)
        hours = data.get("hours")
        if hours is not None and (isinstance(hours, bool) or not isinstance(hours, int) or hours < 1):
            return jsonify({"error": "hours must be a positive integer"}), 400

        summary = order_service.reconcile_payments(hours=hours)
        return jsonify(summary.to_dict()), 200
    except DOMAIN_ERRORS as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reconcile payments")
        return jsonify({"error": "Internal server error"}), 500
