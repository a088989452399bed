# backend/ordering/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///ordering.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Money
    CURRENCY = os.environ.get("CURRENCY", "gbp")
    DEFAULT_DELIVERY_FEE_CENTS = int(os.environ.get("DEFAULT_DELIVERY_FEE_CENTS", "500"))

    # Payment gateway (Stripe-compatible REST API)
    PAYMENT_GATEWAY_BACKEND = os.environ.get("PAYMENT_GATEWAY_BACKEND", "stripe")
    PAYMENT_GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL", "https://api.stripe.com")
    PAYMENT_GATEWAY_SECRET_KEY = os.environ.get("PAYMENT_GATEWAY_SECRET_KEY", "")
    PAYMENT_GATEWAY_TIMEOUT = float(os.environ.get("PAYMENT_GATEWAY_TIMEOUT", "10"))
    PAYMENT_WEBHOOK_SECRET = os.environ.get("PAYMENT_WEBHOOK_SECRET", "")
    PAYMENT_WEBHOOK_TOLERANCE = int(os.environ.get("PAYMENT_WEBHOOK_TOLERANCE", "300"))
    PAYMENT_RECONCILE_WINDOW_HOURS = int(os.environ.get("PAYMENT_RECONCILE_WINDOW_HOURS", "24"))

    # Roll back the whole checkout when a reservation loses a race
    STRICT_STOCK_RESERVATION = _env_bool("STRICT_STOCK_RESERVATION", True)
