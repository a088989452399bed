from .gateway import (
    IntentResult,
    IntentStatus,
    PaymentGateway,
    PaymentGatewayError,
    RefundResult,
    StripeGateway,
    build_gateway,
    get_gateway,
)
from .webhooks import WebhookSignatureError, parse_event, verify_signature

__all__ = [
    'IntentResult', 'IntentStatus', 'PaymentGateway', 'PaymentGatewayError', 'RefundResult',
    'StripeGateway', 'build_gateway', 'get_gateway',
    'WebhookSignatureError', 'parse_event', 'verify_signature',
]
