from __future__ import annotations

from ..extensions import db
from ordering.time_utils import to_utc_z
from ordering.money import fmt_cents


ORDER_PENDING = "pending"
ORDER_PROCESSING = "processing"
ORDER_COMPLETED = "completed"
ORDER_CANCELLED = "cancelled"

ORDER_STATUSES = (ORDER_PENDING, ORDER_PROCESSING, ORDER_COMPLETED, ORDER_CANCELLED)

PAYMENT_METHOD_CARD = "card"
PAYMENT_METHOD_CASH = "cash_on_delivery"

PAYMENT_METHODS = (PAYMENT_METHOD_CARD, PAYMENT_METHOD_CASH)

PAYMENT_NONE = "none"
PAYMENT_PENDING = "pending"
PAYMENT_PROCESSING = "processing"
PAYMENT_PAID = "paid"
PAYMENT_FAILED = "failed"
PAYMENT_REFUNDED = "refunded"

PAYMENT_STATUSES = (
    PAYMENT_NONE,
    PAYMENT_PENDING,
    PAYMENT_PROCESSING,
    PAYMENT_PAID,
    PAYMENT_FAILED,
    PAYMENT_REFUNDED,
)


class Order(db.Model):
    """
    Order snapshot.

    Everything that determines what the customer was charged (unit prices,
    attribute prices, discount terms and amount) is frozen onto the order
    and its lines at creation time and never recomputed.

    Orders are never hard-deleted; cancellation is a status transition.
    stock_reserved tracks whether the lines' stock is currently held so
    release happens at most once however many times a cancel path runs.
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.Index("ix_orders_branch_status_created", "branch_id", "status", "created_at"),
        db.Index("ix_orders_payment_method_status", "payment_method", "payment_status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_number = db.Column(db.String(32), nullable=False, unique=True, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)

    # Owner: authenticated user or guest contact snapshot
    user_id = db.Column(db.String(64), nullable=True, index=True)
    session_id = db.Column(db.String(128), nullable=True)
    guest_name = db.Column(db.String(120), nullable=True)
    guest_email = db.Column(db.String(255), nullable=True)
    guest_phone = db.Column(db.String(32), nullable=True)

    order_type = db.Column(db.String(16), nullable=False)

    # Totals (minor units)
    subtotal_cents = db.Column(db.Integer, nullable=False)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    final_total_cents = db.Column(db.Integer, nullable=False)

    # Applied discount snapshot
    discount_id = db.Column(db.Integer, db.ForeignKey("discounts.id"), nullable=True)
    discount_code = db.Column(db.String(50), nullable=True)
    discount_type = db.Column(db.String(16), nullable=True)
    discount_value = db.Column(db.Integer, nullable=True)
    discount_amount_cents = db.Column(db.Integer, nullable=True)
    discount_original_total_cents = db.Column(db.Integer, nullable=True)

    # Lifecycle
    status = db.Column(db.String(16), nullable=False, default=ORDER_PENDING, index=True)
    payment_method = db.Column(db.String(32), nullable=False)
    payment_status = db.Column(db.String(16), nullable=False, default=PAYMENT_NONE, index=True)
    payment_intent_id = db.Column(db.String(128), nullable=True, unique=True, index=True)
    refund_id = db.Column(db.String(128), nullable=True)
    refund_error = db.Column(db.String(255), nullable=True)
    stock_reserved = db.Column(db.Boolean, nullable=False, default=False)

    estimated_completion_minutes = db.Column(db.Integer, nullable=True)
    customer_notes = db.Column(db.String(500), nullable=True)
    internal_notes = db.Column(db.Text, nullable=True)
    cancel_reason = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    branch = db.relationship("Branch")
    lines = db.relationship("OrderLine", backref="order", lazy=True, order_by="OrderLine.id")
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.order_number!r} status={self.status} payment={self.payment_status}>"

    def applied_discount(self) -> dict | None:
        if not self.discount_code:
            return None
        return {
            "code": self.discount_code,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "amount_cents": self.discount_amount_cents,
            "original_total_cents": self.discount_original_total_cents,
            "amount": fmt_cents(self.discount_amount_cents),
        }

    def to_dict(self, include_lines: bool = True) -> dict:
        data = {
            "id": self.id,
            "order_number": self.order_number,
            "branch_id": self.branch_id,
            "user_id": self.user_id,
            "guest": None if self.user_id else {
                "name": self.guest_name,
                "email": self.guest_email,
                "phone": self.guest_phone,
            },
            "order_type": self.order_type,
            "subtotal_cents": self.subtotal_cents,
            "delivery_fee_cents": self.delivery_fee_cents,
            "final_total_cents": self.final_total_cents,
            "subtotal": fmt_cents(self.subtotal_cents),
            "delivery_fee": fmt_cents(self.delivery_fee_cents),
            "final_total": fmt_cents(self.final_total_cents),
            "applied_discount": self.applied_discount(),
            "status": self.status,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "payment_intent_id": self.payment_intent_id,
            "refund_error": self.refund_error,
            "stock_reserved": self.stock_reserved,
            "estimated_completion_minutes": self.estimated_completion_minutes,
            "customer_notes": self.customer_notes,
            "internal_notes": self.internal_notes,
            "cancel_reason": self.cancel_reason,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
            "paid_at": to_utc_z(self.paid_at),
            "completed_at": to_utc_z(self.completed_at),
            "cancelled_at": to_utc_z(self.cancelled_at),
            "version_id": self.version_id,
        }
        if include_lines:
            data["lines"] = [line.to_dict() for line in self.lines]
        return data


class OrderLine(db.Model):
    """Frozen line snapshot: resolved unit price and attribute prices at checkout."""
    __tablename__ = "order_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    product_name = db.Column(db.String(255), nullable=False)

    quantity = db.Column(db.Integer, nullable=False)
    base_price_cents = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    price_override_id = db.Column(db.Integer, db.ForeignKey("price_overrides.id"), nullable=True)
    attributes = db.Column(db.JSON, nullable=False, default=list)
    attribute_total_cents = db.Column(db.Integer, nullable=False, default=0)  # per unit
    line_total_cents = db.Column(db.Integer, nullable=False)
    note = db.Column(db.String(500), nullable=True)
    stock_reserved = db.Column(db.Boolean, nullable=False, default=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "base_price_cents": self.base_price_cents,
            "unit_price_cents": self.unit_price_cents,
            "price_override_id": self.price_override_id,
            "attributes": self.attributes or [],
            "attribute_total_cents": self.attribute_total_cents,
            "line_total_cents": self.line_total_cents,
            "line_total": fmt_cents(self.line_total_cents),
            "note": self.note,
            "stock_reserved": self.stock_reserved,
        }


class OrderEvent(db.Model):
    """
    Append-only ledger of order lifecycle events.

    Written inside the same DB transaction as the change it records.
    event_type matches the signal names sent to subscribers after commit.
    """
    __tablename__ = "order_events"
    __table_args__ = (
        db.Index("ix_order_events_order_occurred", "order_id", "occurred_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    event_type = db.Column(db.String(64), nullable=False, index=True)
    actor = db.Column(db.String(64), nullable=True)
    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    note = db.Column(db.String(255), nullable=True)
    payload = db.Column(db.JSON, nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "branch_id": self.branch_id,
            "event_type": self.event_type,
            "actor": self.actor,
            "occurred_at": to_utc_z(self.occurred_at),
            "note": self.note,
            "payload": self.payload,
        }


class PaymentEvent(db.Model):
    """
    Every payment-gateway event delivered to us.

    event_id is unique so a redelivered event is recognised before any
    state is touched (at-least-once delivery).
    """
    __tablename__ = "payment_events"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(128), nullable=True, unique=True)
    event_type = db.Column(db.String(64), nullable=False)
    intent_id = db.Column(db.String(128), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=True, index=True)
    outcome = db.Column(db.String(32), nullable=False)
    received_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_id": self.event_id,
            "event_type": self.event_type,
            "intent_id": self.intent_id,
            "order_id": self.order_id,
            "outcome": self.outcome,
            "received_at": to_utc_z(self.received_at),
        }


class DocumentSequence(db.Model):
    """
    Atomic per-branch number sequences.

    Prevents race conditions when generating order numbers.
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("branch_id", "sequence_key", name="uq_doc_sequences_branch_key"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    sequence_key = db.Column(db.String(32), nullable=False, index=True)
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "sequence_key": self.sequence_key,
            "next_number": self.next_number,
            "updated_at": to_utc_z(self.updated_at),
        }
