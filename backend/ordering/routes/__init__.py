from flask import jsonify

from ..payments import PaymentGatewayError
from ..services.discount_service import DiscountRejected
from ..services.stock_service import StockShortfallError
from ..validation import ConflictError, NotFoundError, ValidationError


DOMAIN_ERRORS = (
    ValidationError,
    NotFoundError,
    ConflictError,
    StockShortfallError,
    DiscountRejected,
    PaymentGatewayError,
)


def error_response(e: Exception):
    """JSON body + status for a domain error: {"error": message, "details": {...}}."""
    if isinstance(e, ValidationError):
        status = 400
    elif isinstance(e, NotFoundError):
        status = 404
    elif isinstance(e, (ConflictError, StockShortfallError)):
        status = 409
    elif isinstance(e, DiscountRejected):
        status = 400
    elif isinstance(e, PaymentGatewayError):
        status = 502
    else:
        status = 500
    return jsonify({"error": str(e), "details": getattr(e, "details", {})}), status


def json_body(request) -> dict:
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Invalid JSON payload")
    return data
