"""
Inbound gateway events.

Signature header format: "t=<unix ts>,v1=<hex hmac>[,v1=...]" where the
HMAC-SHA256 is taken over "<t>.<raw body>" with the webhook secret.
"""
from __future__ import annotations

import hashlib
import hmac
import json
import time

from ..validation import ValidationError


SUPPORTED_EVENTS = {
    "payment_intent.succeeded": "succeeded",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "canceled",
    "payment_intent.processing": "processing",
}


class WebhookSignatureError(ValidationError):
    """Signature missing, malformed, stale or wrong."""
    pass


def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed = f"{timestamp}.".encode() + payload
    return hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()


def verify_signature(payload: bytes, header: str | None, secret: str, *, tolerance: int = 300, now: float | None = None) -> None:
    if not header:
        raise WebhookSignatureError("Missing signature header")

    timestamp = None
    signatures = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1":
            signatures.append(value)

    if not timestamp or not timestamp.isdigit() or not signatures:
        raise WebhookSignatureError("Malformed signature header")

    ts = int(timestamp)
    now = time.time() if now is None else now
    if tolerance and abs(now - ts) > tolerance:
        raise WebhookSignatureError("Signature timestamp outside tolerance")

    expected = compute_signature(payload, secret, ts)
    if not any(hmac.compare_digest(expected, sig) for sig in signatures):
        raise WebhookSignatureError("Signature mismatch")


def parse_event(payload: bytes) -> dict:
    """
    Reduce a gateway event to {event_id, event_type, outcome, intent_id}.

    outcome is None for event types the engine does not act on.
    """
    try:
        body = json.loads(payload or b"{}")
    except ValueError:
        raise ValidationError("Invalid JSON payload")
    if not isinstance(body, dict):
        raise ValidationError("Invalid JSON payload")

    event_type = body.get("type")
    obj = (body.get("data") or {}).get("object") or {}
    intent_id = obj.get("id") if isinstance(obj, dict) else None
    if not event_type or not intent_id:
        raise ValidationError("Event type and payment intent id are required")

    return {
        "event_id": body.get("id"),
        "event_type": event_type,
        "outcome": SUPPORTED_EVENTS.get(event_type),
        "intent_id": intent_id,
    }
