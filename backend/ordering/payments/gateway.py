"""
Payment gateway client.

The engine reaches the gateway through four calls: create_intent,
get_intent_status, refund and cancel_intent. Amounts always travel as
integer minor units. Every call is bounded by PAYMENT_GATEWAY_TIMEOUT;
a timeout surfaces as PaymentGatewayError(details={"timeout": True}).

The app's gateway lives in app.extensions["payment_gateway"] so tests
can install a fake.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
from flask import current_app


class PaymentGatewayError(Exception):
    """Raised when a gateway call fails or times out."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}

    @property
    def timeout(self) -> bool:
        return bool(self.details.get("timeout"))


@dataclass(frozen=True)
class IntentResult:
    intent_id: str
    client_secret: Optional[str]
    status: str
    amount_cents: int


@dataclass(frozen=True)
class IntentStatus:
    intent_id: str
    status: str
    last_payment_error: Optional[str] = None


@dataclass(frozen=True)
class RefundResult:
    refund_id: str
    status: str
    amount_cents: int


class PaymentGateway:
    """Interface the order lifecycle depends on."""

    def create_intent(
        self,
        amount_cents: int,
        currency: str,
        description: str,
        *,
        metadata: dict | None = None,
        idempotency_key: str | None = None,
    ) -> IntentResult:
        raise NotImplementedError

    def get_intent_status(self, intent_id: str) -> IntentStatus:
        raise NotImplementedError

    def refund(self, intent_id: str, *, idempotency_key: str | None = None) -> RefundResult:
        raise NotImplementedError

    def cancel_intent(self, intent_id: str) -> IntentStatus:
        raise NotImplementedError


class StripeGateway(PaymentGateway):
    """Stripe-compatible REST client (form-encoded requests, JSON responses)."""

    def __init__(
        self,
        *,
        base_url: str,
        secret_key: str,
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers={"Authorization": f"Bearer {secret_key}"},
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def _request(self, method: str, path: str, *, data: dict | None = None, idempotency_key: str | None = None) -> dict:
        headers = {}
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key

        try:
            response = self._client.request(method, path, data=data, headers=headers)
        except httpx.TimeoutException as e:
            raise PaymentGatewayError(
                "Payment gateway timed out",
                details={"timeout": True, "path": path},
            ) from e
        except httpx.HTTPError as e:
            raise PaymentGatewayError(
                "Payment gateway unreachable",
                details={"timeout": False, "path": path, "error": str(e)},
            ) from e

        try:
            body = response.json()
        except ValueError:
            body = {}

        if response.status_code >= 400:
            err = body.get("error") if isinstance(body, dict) else None
            message = (err or {}).get("message") or f"Payment gateway returned {response.status_code}"
            raise PaymentGatewayError(
                message,
                details={
                    "timeout": False,
                    "status_code": response.status_code,
                    "code": (err or {}).get("code"),
                },
            )
        return body

    def create_intent(self, amount_cents, currency, description, *, metadata=None, idempotency_key=None) -> IntentResult:
        if isinstance(amount_cents, bool) or not isinstance(amount_cents, int) or amount_cents < 0:
            raise PaymentGatewayError("amount must be a non-negative integer in minor units")

        data = {
            "amount": str(amount_cents),
            "currency": currency.lower(),
            "description": description,
            "automatic_payment_methods[enabled]": "true",
        }
        for key, value in (metadata or {}).items():
            data[f"metadata[{key}]"] = str(value)

        body = self._request("POST", "/v1/payment_intents", data=data, idempotency_key=idempotency_key)
        return IntentResult(
            intent_id=body["id"],
            client_secret=body.get("client_secret"),
            status=body.get("status", "requires_payment_method"),
            amount_cents=int(body.get("amount", amount_cents)),
        )

    def get_intent_status(self, intent_id: str) -> IntentStatus:
        body = self._request("GET", f"/v1/payment_intents/{intent_id}")
        last_error = body.get("last_payment_error") or None
        if isinstance(last_error, dict):
            last_error = last_error.get("message") or last_error.get("code") or "payment error"
        return IntentStatus(
            intent_id=body.get("id", intent_id),
            status=body["status"],
            last_payment_error=last_error,
        )

    def refund(self, intent_id: str, *, idempotency_key: str | None = None) -> RefundResult:
        body = self._request(
            "POST",
            "/v1/refunds",
            data={"payment_intent": intent_id},
            idempotency_key=idempotency_key or f"refund-{intent_id}",
        )
        return RefundResult(
            refund_id=body["id"],
            status=body.get("status", "pending"),
            amount_cents=int(body.get("amount", 0)),
        )

    def cancel_intent(self, intent_id: str) -> IntentStatus:
        body = self._request("POST", f"/v1/payment_intents/{intent_id}/cancel")
        return IntentStatus(intent_id=body.get("id", intent_id), status=body.get("status", "canceled"))


def build_gateway(config) -> PaymentGateway:
    backend = (config.get("PAYMENT_GATEWAY_BACKEND") or "stripe").lower()
    if backend != "stripe":
        raise ValueError(f"Unknown payment gateway backend: {backend}")
    return StripeGateway(
        base_url=config.get("PAYMENT_GATEWAY_URL", "https://api.stripe.com"),
        secret_key=config.get("PAYMENT_GATEWAY_SECRET_KEY", ""),
        timeout=float(config.get("PAYMENT_GATEWAY_TIMEOUT", 10)),
    )


def get_gateway() -> PaymentGateway:
    return current_app.extensions["payment_gateway"]
