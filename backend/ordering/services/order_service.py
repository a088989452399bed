"""
OrderLifecycle: checkout, fulfilment status, cancellation, refunds and
payment-gateway events.

Order status:    pending -> processing -> completed
                 pending | processing -> cancelled
Payment status:  none | pending -> processing -> paid
                 none | pending | processing -> failed
                 paid -> refunded

Checkout order of work (each step aborts the whole checkout):
  1. re-resolve every line price (cart prices are never trusted)
  2. check stock availability
  3. validate the discount code
  4. compute totals
  5. card: create the gateway intent (nothing persisted yet)
  6. persist order + lines, allocate the order number
  7. reserve stock, record the discount redemption, convert the cart
Steps 6-7 share one DB transaction. If it fails after the intent exists,
the intent is cancelled at the gateway.

Gateway events are handled idempotently: delivered event ids are stored
in payment_events, and the transition tables ignore anything that would
move a status backwards.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Cart, Order, OrderLine, PaymentEvent
from ..models.carts import CART_CONVERTED, ORDER_TYPE_DELIVERY
from ..models.orders import (
    ORDER_CANCELLED,
    ORDER_COMPLETED,
    ORDER_PENDING,
    ORDER_PROCESSING,
    ORDER_STATUSES,
    PAYMENT_FAILED,
    PAYMENT_METHOD_CARD,
    PAYMENT_METHODS,
    PAYMENT_NONE,
    PAYMENT_PAID,
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_REFUNDED,
    PAYMENT_STATUSES,
)
from ..payments import PaymentGatewayError, get_gateway
from ..time_utils import normalize_datetime, utcnow
from ..validation import ConflictError, NotFoundError, ValidationError
from . import cart_service, catalog_service, discount_service, document_service, pricing_service, stock_service
from .concurrency import run_with_retry
from .event_service import append_order_event, discard_pending, send_pending


ORDER_TRANSITIONS = {
    ORDER_PENDING: {ORDER_PROCESSING, ORDER_CANCELLED},
    ORDER_PROCESSING: {ORDER_COMPLETED, ORDER_CANCELLED},
    ORDER_COMPLETED: set(),
    ORDER_CANCELLED: set(),
}

PAYMENT_TRANSITIONS = {
    PAYMENT_NONE: {PAYMENT_PENDING, PAYMENT_PROCESSING, PAYMENT_PAID, PAYMENT_FAILED},
    PAYMENT_PENDING: {PAYMENT_PROCESSING, PAYMENT_PAID, PAYMENT_FAILED},
    PAYMENT_PROCESSING: {PAYMENT_PAID, PAYMENT_FAILED},
    # Money captured after a failure report still has to be accounted for
    PAYMENT_FAILED: {PAYMENT_PAID},
    PAYMENT_PAID: {PAYMENT_REFUNDED},
    PAYMENT_REFUNDED: set(),
}

# Gateway outcome codes (see payments.webhooks.SUPPORTED_EVENTS)
OUTCOME_SUCCEEDED = "succeeded"
OUTCOME_PROCESSING = "processing"
OUTCOME_FAILED = "failed"
OUTCOME_CANCELED = "canceled"


def can_transition(current: str, target: str) -> bool:
    return target in ORDER_TRANSITIONS.get(current, set())


def can_transition_payment(current: str, target: str) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, set())


@dataclass
class CheckoutResult:
    order: Order
    client_secret: Optional[str] = None

    def to_dict(self) -> dict:
        return {"order": self.order.to_dict(), "client_secret": self.client_secret}


@dataclass
class PaymentEventResult:
    outcome: str  # applied, duplicate, ignored, unknown_intent
    order: Optional[Order] = None
    refund_attempted: bool = False

    def to_dict(self) -> dict:
        return {
            "outcome": self.outcome,
            "order_id": self.order.id if self.order else None,
            "refund_attempted": self.refund_attempted,
        }


# =============================================================================
# Lookups
# =============================================================================

def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if not order:
        raise NotFoundError("Order not found", details={"order_id": order_id})
    return order


def _owns(order: Order, user_id: str | None, session_id: str | None) -> bool:
    if user_id:
        return order.user_id == user_id
    return bool(session_id) and order.user_id is None and order.session_id == session_id


def get_order_for_owner(order_id: int, *, user_id: str | None = None, session_id: str | None = None) -> Order:
    cart_service.identity_filter(user_id, session_id)
    order = db.session.get(Order, order_id)
    if not order or not _owns(order, user_id, session_id):
        raise NotFoundError("Order not found", details={"order_id": order_id})
    return order


def list_orders(
    *,
    branch_id: int | None = None,
    status: str | None = None,
    payment_status: str | None = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Order], int]:
    if status and status not in ORDER_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(ORDER_STATUSES)}")
    if payment_status and payment_status not in PAYMENT_STATUSES:
        raise ValidationError(f"payment_status must be one of {', '.join(PAYMENT_STATUSES)}")

    query = db.session.query(Order)
    if branch_id:
        query = query.filter(Order.branch_id == branch_id)
    if status:
        query = query.filter(Order.status == status)
    if payment_status:
        query = query.filter(Order.payment_status == payment_status)

    total = query.count()
    limit = max(1, min(limit, 200))
    offset = max(0, offset)
    orders = query.order_by(Order.created_at.desc(), Order.id.desc()).offset(offset).limit(limit).all()
    return orders, total


def list_orders_for_owner(*, user_id: str | None = None, session_id: str | None = None, limit: int = 50) -> list[Order]:
    ident = cart_service.identity_filter(user_id, session_id)
    query = db.session.query(Order)
    if ident["user_id"]:
        query = query.filter(Order.user_id == ident["user_id"])
    else:
        query = query.filter(Order.user_id.is_(None), Order.session_id == ident["session_id"])
    return query.order_by(Order.created_at.desc(), Order.id.desc()).limit(max(1, min(limit, 200))).all()


# =============================================================================
# Checkout
# =============================================================================

def _guest_contact(guest: dict | None) -> dict:
    guest = guest or {}
    if not isinstance(guest, dict):
        raise ValidationError("guest must be an object")
    contact = {
        "guest_name": (guest.get("name") or "").strip() or None,
        "guest_email": (guest.get("email") or "").strip() or None,
        "guest_phone": (guest.get("phone") or "").strip() or None,
    }
    if not contact["guest_email"] and not contact["guest_phone"]:
        raise ValidationError("Guest checkout requires an email or phone number")
    return contact


def _price_lines(cart: Cart, at: datetime) -> list[dict]:
    """Fresh price snapshot of every cart line."""
    priced = []
    for line in cart.lines:
        product = catalog_service.get_product(line.product_id)
        if product.branch_id != cart.branch_id:
            raise ValidationError(
                "Cart contains a product from another branch",
                details={"product_id": product.id},
            )
        resolution = pricing_service.resolve(product.id, at)
        surcharge = line.attribute_surcharge_cents()
        unit = resolution.effective_price_cents
        priced.append({
            "product_id": product.id,
            "product_name": product.name,
            "quantity": line.quantity,
            "base_price_cents": resolution.base_price_cents,
            "unit_price_cents": unit,
            "price_override_id": resolution.source_override_id,
            "attributes": list(line.attributes or []),
            "attribute_total_cents": surcharge,
            "line_total_cents": (unit + surcharge) * line.quantity,
            "note": line.note,
        })
    return priced


def _cancel_intent_quietly(intent_id: str) -> None:
    try:
        get_gateway().cancel_intent(intent_id)
    except PaymentGatewayError as e:
        current_app.logger.error(
            "Could not cancel payment intent %s after failed checkout: %s", intent_id, e
        )


def create_order(
    *,
    payment_method: str,
    user_id: str | None = None,
    session_id: str | None = None,
    discount_code: str | None = None,
    guest: dict | None = None,
    customer_notes: str | None = None,
    at: datetime | None = None,
) -> CheckoutResult:
    """Turn the identity's active cart into an order."""
    ident = cart_service.identity_filter(user_id, session_id)
    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
    if customer_notes is not None and (not isinstance(customer_notes, str) or len(customer_notes) > 500):
        raise ValidationError("customer_notes must be a string of at most 500 characters")
    contact = {} if ident["user_id"] else _guest_contact(guest)

    at = normalize_datetime(at) or utcnow()
    cart = cart_service.get_cart(user_id, session_id)
    if not cart or not cart.lines:
        raise ValidationError("Cart is empty")
    if cart.branch_id is None:
        raise ValidationError("Cart has no branch")
    branch = catalog_service.get_branch(cart.branch_id)
    cart_id = cart.id
    order_type = cart.order_type

    # 1. prices
    priced = _price_lines(cart, at)
    subtotal = sum(p["line_total_cents"] for p in priced)
    items = [(p["product_id"], p["quantity"]) for p in priced]

    # 2. stock
    availability = stock_service.check_availability(items)
    if not availability.ok:
        raise stock_service.StockShortfallError(
            "Insufficient stock",
            details={"items": availability.shortfalls},
        )

    # 3. discount
    discount = None
    discount_amount = 0
    if discount_code:
        discount = discount_service.validate(
            discount_code,
            subtotal_cents=subtotal,
            order_type=order_type,
            branch_id=branch.id,
            user_id=ident["user_id"],
            at=at,
        ).raise_if_invalid()
        discount_amount = discount_service.calculate_amount(discount, subtotal)

    # 4. totals
    delivery_fee = cart.delivery_fee_cents if order_type == ORDER_TYPE_DELIVERY else 0
    final_total = subtotal - discount_amount + delivery_fee

    # 5. payment intent
    intent = None
    if payment_method == PAYMENT_METHOD_CARD:
        if final_total <= 0:
            raise ValidationError("Card payment requires a positive total")
        intent = get_gateway().create_intent(
            final_total,
            current_app.config.get("CURRENCY", "gbp"),
            f"{branch.name} {order_type} order",
            metadata={"branch": branch.code, "cart_id": cart_id},
        )

    strict = bool(current_app.config.get("STRICT_STOCK_RESERVATION", True))

    def _persist() -> Order:
        discard_pending()
        live_cart = db.session.get(Cart, cart_id)

        order = Order(
            order_number=document_service.next_order_number(branch.id, at),
            branch_id=branch.id,
            user_id=ident["user_id"],
            session_id=ident["session_id"],
            order_type=order_type,
            subtotal_cents=subtotal,
            delivery_fee_cents=delivery_fee,
            final_total_cents=final_total,
            status=ORDER_PENDING,
            payment_method=payment_method,
            payment_status=PAYMENT_PENDING,
            payment_intent_id=intent.intent_id if intent else None,
            stock_reserved=False,
            customer_notes=customer_notes,
            created_at=at,
            updated_at=at,
            **contact,
        )
        if discount:
            order.discount_id = discount.id
            order.discount_code = discount.code
            order.discount_type = discount.discount_type
            order.discount_value = discount.discount_value
            order.discount_amount_cents = discount_amount
            order.discount_original_total_cents = subtotal
        db.session.add(order)
        db.session.flush()

        lines = [OrderLine(order_id=order.id, **p) for p in priced]
        db.session.add_all(lines)

        reserved = set(stock_service.reserve(items, strict=strict))
        for line in lines:
            line.stock_reserved = line.product_id in reserved
        order.stock_reserved = bool(reserved)

        if discount:
            discount_service.record_redemption(
                discount,
                order_id=order.id,
                user_id=ident["user_id"],
                amount_cents=discount_amount,
            )

        if live_cart:
            live_cart.status = CART_CONVERTED

        append_order_event(
            order,
            "order_created",
            actor=ident["user_id"] or ident["session_id"],
            payload={
                "final_total_cents": final_total,
                "payment_method": payment_method,
                "discount_code": order.discount_code,
            },
        )
        db.session.commit()
        return order

    try:
        order = run_with_retry(_persist)
    except Exception as e:
        db.session.rollback()
        discard_pending()
        if isinstance(e, (stock_service.StockShortfallError, ConflictError)):
            current_app.logger.warning("Checkout of cart %s lost a stock reservation: %s", cart_id, e)
        if intent:
            _cancel_intent_quietly(intent.intent_id)
        raise

    send_pending()
    return CheckoutResult(order=order, client_secret=intent.client_secret if intent else None)


# =============================================================================
# Shared transition helpers (caller commits)
# =============================================================================

def _release_stock(order: Order) -> None:
    """Give back the order's reserved stock once."""
    if not order.stock_reserved:
        return
    items = [(line.product_id, line.quantity) for line in order.lines if line.stock_reserved]
    if items:
        stock_service.release(items)
    for line in order.lines:
        line.stock_reserved = False
    order.stock_reserved = False


def _mark_cancelled(order: Order, *, reason: str | None, actor: str | None) -> None:
    order.status = ORDER_CANCELLED
    order.cancelled_at = utcnow()
    order.cancel_reason = (reason or "")[:255] or None
    _release_stock(order)
    append_order_event(order, "order_cancelled", actor=actor, note=order.cancel_reason)


def _set_payment_status(order: Order, target: str) -> bool:
    if order.payment_status == target:
        return False
    if not can_transition_payment(order.payment_status, target):
        current_app.logger.info(
            "Ignoring payment transition %s -> %s for order %s",
            order.payment_status, target, order.order_number,
        )
        return False
    order.payment_status = target
    if target == PAYMENT_PAID:
        order.paid_at = utcnow()
    return True


def _apply_outcome(order: Order, outcome: str, *, actor: str) -> tuple[bool, bool]:
    """
    Apply a gateway outcome to a locked order.

    Returns (changed, needs_refund). needs_refund is set when money was
    captured for an order that is already cancelled.
    """
    if outcome == OUTCOME_SUCCEEDED:
        if not _set_payment_status(order, PAYMENT_PAID):
            return False, False
        append_order_event(order, "order_payment_succeeded", actor=actor)
        if order.status == ORDER_CANCELLED:
            return True, True
        if order.status == ORDER_PENDING:
            order.status = ORDER_PROCESSING
            append_order_event(order, "order_updated", actor=actor, note="Payment received")
        return True, False

    if outcome == OUTCOME_PROCESSING:
        if not _set_payment_status(order, PAYMENT_PROCESSING):
            return False, False
        append_order_event(order, "order_payment_processing", actor=actor)
        return True, False

    if outcome in (OUTCOME_FAILED, OUTCOME_CANCELED):
        if not _set_payment_status(order, PAYMENT_FAILED):
            return False, False
        append_order_event(order, "order_payment_failed", actor=actor, note=outcome)
        if order.status == ORDER_PENDING:
            _mark_cancelled(order, reason=f"Payment {outcome}", actor=actor)
        return True, False

    current_app.logger.info("Unhandled payment outcome %r for order %s", outcome, order.order_number)
    return False, False


# =============================================================================
# Refunds
# =============================================================================

def _attempt_refund(order_id: int, *, actor: str | None, raise_on_failure: bool = False) -> bool:
    """
    Refund a paid card order at the gateway.

    A failure is recorded on the order (refund_error + ledger row) and
    logged for manual follow-up; reconciliation retries it later.
    """
    order = get_order(order_id)
    if order.payment_method != PAYMENT_METHOD_CARD or order.payment_status != PAYMENT_PAID:
        return False
    if not order.payment_intent_id:
        raise ConflictError("Order has no payment intent to refund")

    try:
        refund = get_gateway().refund(order.payment_intent_id, idempotency_key=f"refund-{order.order_number}")
    except PaymentGatewayError as e:
        def _record_failure():
            failed = get_order(order_id)
            failed.refund_error = str(e)[:255]
            append_order_event(failed, "refund_failed", actor=actor, note=failed.refund_error, payload=e.details)
            db.session.commit()

        run_with_retry(_record_failure)
        current_app.logger.error(
            "Refund failed for order %s (intent %s): %s",
            order.order_number, order.payment_intent_id, e,
        )
        if raise_on_failure:
            raise
        return False

    def _record_success():
        refunded = get_order(order_id)
        if _set_payment_status(refunded, PAYMENT_REFUNDED):
            refunded.refund_id = refund.refund_id
            refunded.refund_error = None
            append_order_event(
                refunded,
                "order_updated",
                actor=actor,
                note="Refund issued",
                payload={"refund_id": refund.refund_id, "amount_cents": refund.amount_cents},
            )
        db.session.commit()

    run_with_retry(_record_success)
    send_pending()
    return True


def refund_order(order_id: int, *, actor: str | None = None) -> Order:
    """Explicit staff refund of a paid card order."""
    order = get_order(order_id)
    if order.payment_method != PAYMENT_METHOD_CARD:
        raise ConflictError("Only card payments can be refunded through the gateway")
    if order.payment_status != PAYMENT_PAID:
        raise ConflictError(
            f"Cannot refund an order whose payment is {order.payment_status}",
            details={"payment_status": order.payment_status},
        )
    _attempt_refund(order_id, actor=actor, raise_on_failure=True)
    return get_order(order_id)


# =============================================================================
# Cancellation & status
# =============================================================================

def cancel_order(
    order_id: int,
    *,
    reason: str | None = None,
    actor: str | None = None,
    user_id: str | None = None,
    session_id: str | None = None,
    staff: bool = False,
) -> Order:
    """
    Cancel a pending or processing order.

    The cancellation and stock release commit first. A paid card order is
    then refunded; a refund failure is recorded but does not undo the
    cancellation. A card intent still awaiting payment is cancelled at the
    gateway so it cannot be captured later.
    """
    if reason is not None and not isinstance(reason, str):
        raise ValidationError("reason must be a string")
    if not staff:
        get_order_for_owner(order_id, user_id=user_id, session_id=session_id)

    def _op() -> Order:
        discard_pending()
        order = get_order(order_id)
        if not can_transition(order.status, ORDER_CANCELLED):
            raise ConflictError(
                f"Cannot cancel an order that is {order.status}",
                details={"status": order.status},
            )
        _mark_cancelled(order, reason=reason, actor=actor or user_id or session_id)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    send_pending()

    if order.payment_method == PAYMENT_METHOD_CARD and order.payment_intent_id:
        if order.payment_status == PAYMENT_PAID:
            _attempt_refund(order.id, actor=actor)
        elif order.payment_status in (PAYMENT_NONE, PAYMENT_PENDING):
            _cancel_intent_quietly(order.payment_intent_id)

    return get_order(order_id)


def update_status(
    order_id: int,
    *,
    status: str | None = None,
    estimated_completion_minutes: int | None = None,
    internal_notes: str | None = None,
    actor: str | None = None,
) -> Order:
    """Staff update: fulfilment status, ETA and internal notes."""
    if status is not None and status not in ORDER_STATUSES:
        raise ValidationError(f"status must be one of {', '.join(ORDER_STATUSES)}")
    if status == ORDER_CANCELLED:
        return cancel_order(order_id, reason=internal_notes, actor=actor, staff=True)
    if estimated_completion_minutes is not None:
        if isinstance(estimated_completion_minutes, bool) or not isinstance(estimated_completion_minutes, int) \
                or estimated_completion_minutes < 0:
            raise ValidationError("estimated_completion_minutes must be a non-negative integer")
    if internal_notes is not None and not isinstance(internal_notes, str):
        raise ValidationError("internal_notes must be a string")

    def _op() -> Order:
        discard_pending()
        order = get_order(order_id)
        changes = {}

        if status is not None and status != order.status:
            if not can_transition(order.status, status):
                raise ConflictError(
                    f"Cannot move order from {order.status} to {status}",
                    details={"status": order.status, "requested": status},
                )
            changes["status"] = [order.status, status]
            order.status = status
            if status == ORDER_COMPLETED:
                order.completed_at = utcnow()

        if estimated_completion_minutes is not None:
            changes["estimated_completion_minutes"] = estimated_completion_minutes
            order.estimated_completion_minutes = estimated_completion_minutes
        if internal_notes is not None:
            order.internal_notes = internal_notes

        if changes or internal_notes is not None:
            append_order_event(order, "order_updated", actor=actor, payload=changes or None)
        db.session.commit()
        return order

    order = run_with_retry(_op)
    send_pending()
    return order


# =============================================================================
# Payment events
# =============================================================================

def handle_payment_event(
    *,
    intent_id: str,
    outcome: str | None,
    event_id: str | None = None,
    event_type: str | None = None,
    actor: str = "gateway",
) -> PaymentEventResult:
    """
    Apply one gateway event. Safe to call any number of times per event.
    """
    def _op() -> PaymentEventResult:
        discard_pending()
        if event_id and db.session.query(PaymentEvent.id).filter_by(event_id=event_id).first():
            return PaymentEventResult(outcome="duplicate")

        order = db.session.query(Order).filter_by(payment_intent_id=intent_id).first()
        if not order:
            result = PaymentEventResult(outcome="unknown_intent")
        elif outcome is None:
            result = PaymentEventResult(outcome="ignored", order=order)
        else:
            changed, needs_refund = _apply_outcome(order, outcome, actor=actor)
            result = PaymentEventResult(
                outcome="applied" if changed else "ignored",
                order=order,
                refund_attempted=needs_refund,
            )

        db.session.add(PaymentEvent(
            event_id=event_id,
            event_type=event_type or outcome or "unknown",
            intent_id=intent_id,
            order_id=order.id if order else None,
            outcome=result.outcome,
        ))
        db.session.commit()
        return result

    try:
        result = run_with_retry(_op)
    except IntegrityError:
        # Same event id committed concurrently by another delivery
        db.session.rollback()
        discard_pending()
        return PaymentEventResult(outcome="duplicate")

    send_pending()
    if result.outcome == "unknown_intent":
        current_app.logger.warning("Payment event for unknown intent %s", intent_id)
    if result.refund_attempted and result.order:
        current_app.logger.warning(
            "Payment captured for cancelled order %s; refunding", result.order.order_number
        )
        _attempt_refund(result.order.id, actor=actor)
    return result


def cancel_payment(intent_id: str, *, user_id: str | None = None, session_id: str | None = None) -> Order:
    """Customer abandons a card payment: cancel the intent and the pending order."""
    cart_service.identity_filter(user_id, session_id)
    order = db.session.query(Order).filter_by(payment_intent_id=intent_id).first()
    if not order or not _owns(order, user_id, session_id):
        raise NotFoundError("Order not found for payment", details={"intent_id": intent_id})
    if order.payment_status in (PAYMENT_PAID, PAYMENT_REFUNDED):
        raise ConflictError("Payment already completed; cancel the order instead")

    get_gateway().cancel_intent(intent_id)
    handle_payment_event(
        intent_id=intent_id,
        outcome=OUTCOME_CANCELED,
        event_type="payment_intent.canceled",
        actor=user_id or session_id,
    )
    return get_order(order.id)


# =============================================================================
# Reconciliation
# =============================================================================

def outcome_for_gateway_status(status: str, last_payment_error: str | None = None) -> str | None:
    """Map a polled intent status onto the outcome an event would have carried."""
    if status == "succeeded":
        return OUTCOME_SUCCEEDED
    if status == "processing":
        return OUTCOME_PROCESSING
    if status == "canceled":
        return OUTCOME_CANCELED
    if status == "requires_payment_method" and last_payment_error:
        return OUTCOME_FAILED
    return None


@dataclass
class ReconcileSummary:
    checked: int = 0
    updated: int = 0
    refunds_retried: int = 0
    refunds_succeeded: int = 0
    errors: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "checked": self.checked,
            "updated": self.updated,
            "refunds_retried": self.refunds_retried,
            "refunds_succeeded": self.refunds_succeeded,
            "errors": self.errors,
        }


def reconcile_payments(*, hours: int | None = None, now: datetime | None = None) -> ReconcileSummary:
    """
    Poll the gateway for recent card orders still awaiting payment and
    retry refunds owed on cancelled orders. One failure never stops the sweep.
    """
    now = normalize_datetime(now) or utcnow()
    hours = hours if hours is not None else int(current_app.config.get("PAYMENT_RECONCILE_WINDOW_HOURS", 24))
    since = now - timedelta(hours=hours)
    gateway = get_gateway()
    summary = ReconcileSummary()

    pending = (
        db.session.query(Order.id, Order.payment_intent_id)
        .filter(
            Order.payment_method == PAYMENT_METHOD_CARD,
            Order.payment_status.in_([PAYMENT_PENDING, PAYMENT_PROCESSING]),
            Order.payment_intent_id.isnot(None),
            Order.created_at >= since,
        )
        .order_by(Order.id)
        .all()
    )
    for order_id, intent_id in pending:
        summary.checked += 1
        try:
            status = gateway.get_intent_status(intent_id)
        except PaymentGatewayError as e:
            current_app.logger.warning("Reconcile: status check failed for order %s: %s", order_id, e)
            summary.errors.append({"order_id": order_id, "error": str(e)})
            continue

        outcome = outcome_for_gateway_status(status.status, status.last_payment_error)
        if outcome is None:
            continue
        result = handle_payment_event(
            intent_id=intent_id,
            outcome=outcome,
            event_type=f"reconcile.{status.status}",
            actor="reconcile",
        )
        if result.outcome == "applied":
            summary.updated += 1

    owed = (
        db.session.query(Order.id)
        .filter(
            Order.payment_method == PAYMENT_METHOD_CARD,
            Order.status == ORDER_CANCELLED,
            Order.payment_status == PAYMENT_PAID,
        )
        .order_by(Order.id)
        .all()
    )
    for (order_id,) in owed:
        summary.refunds_retried += 1
        if _attempt_refund(order_id, actor="reconcile"):
            summary.refunds_succeeded += 1
        else:
            summary.errors.append({"order_id": order_id, "error": "refund failed"})

    return summary
