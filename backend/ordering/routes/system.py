# backend/ordering/routes/system.py
"""
System health and version endpoints.

/health checks the database and the payment gateway configuration;
/version reports non-sensitive deployment info.
"""

import sys
import time
from flask import Blueprint, current_app
from ..extensions import db
from ..models import Branch, Order
from ..time_utils import utcnow

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    """
    Check database connectivity and basic operations.

    Returns dict with status and details.
    """
    start_time = time.time()
    try:
        branch_count = db.session.query(Branch).count()
        order_count = db.session.query(Order).count()

        elapsed_ms = (time.time() - start_time) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(elapsed_ms, 2),
            "details": {
                "branches": branch_count,
                "orders": order_count,
            }
        }
    except Exception:
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {
            "status": "unhealthy",
            "latency_ms": round(elapsed_ms, 2),
            "error": "Database error"
        }


def check_payment_gateway_health() -> dict:
    """
    Configuration check only: no outbound call is made from /health.
    """
    backend = current_app.config.get("PAYMENT_GATEWAY_BACKEND")
    gateway = current_app.extensions.get("payment_gateway")

    if gateway is None:
        return {"status": "unhealthy", "error": "Payment gateway not initialized"}
    if backend == "stripe" and not current_app.config.get("PAYMENT_GATEWAY_SECRET_KEY"):
        return {
            "status": "degraded",
            "warning": "PAYMENT_GATEWAY_SECRET_KEY is not set",
            "details": {"backend": backend},
        }
    if not current_app.config.get("PAYMENT_WEBHOOK_SECRET"):
        return {
            "status": "degraded",
            "warning": "Webhook signatures are not verified (PAYMENT_WEBHOOK_SECRET unset)",
            "details": {"backend": backend},
        }
    return {"status": "healthy", "details": {"backend": backend}}


@system_bp.get("/health")
def health():
    """
    Returns:
    - 200: healthy or degraded (still operational)
    - 503: one or more checks unhealthy
    """
    start_time = time.time()

    database_health = check_database_health()
    gateway_health = check_payment_gateway_health()

    all_checks = [database_health, gateway_health]
    unhealthy_count = sum(1 for check in all_checks if check["status"] == "unhealthy")
    degraded_count = sum(1 for check in all_checks if check["status"] == "degraded")

    if unhealthy_count > 0:
        overall_status = "unhealthy"
        http_status = 503
    elif degraded_count > 0:
        overall_status = "degraded"
        http_status = 200
    else:
        overall_status = "healthy"
        http_status = 200

    total_elapsed_ms = (time.time() - start_time) * 1000

    response = {
        "status": overall_status,
        "timestamp": utcnow().isoformat() + "Z",
        "total_latency_ms": round(total_elapsed_ms, 2),
        "checks": {
            "database": database_health,
            "payment_gateway": gateway_health,
        }
    }

    return response, http_status


@system_bp.get("/version")
def version():
    env = "production" if not current_app.debug else "development"

    return {
        "api_version": "1.0.0",
        "environment": env,
        "python_version": sys.version.split()[0],
        "server_time": utcnow().isoformat() + "Z",
    }
