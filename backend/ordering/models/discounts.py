from __future__ import annotations

from ..extensions import db
from ordering.time_utils import to_utc_z


DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED = "fixed"


class Discount(db.Model):
    """
    Promotional code.

    code is stored upper-cased; lookups upper-case the input, which makes
    the unique constraint case-insensitive.

    discount_value is a whole percent for "percentage" and minor units for
    "fixed". Null constraint columns mean "no restriction".
    """
    __tablename__ = "discounts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), nullable=False, unique=True, index=True)
    name = db.Column(db.String(100), nullable=False)

    discount_type = db.Column(db.String(16), nullable=False)
    discount_value = db.Column(db.Integer, nullable=False)

    min_order_cents = db.Column(db.Integer, nullable=False, default=0)
    max_spend_cents = db.Column(db.Integer, nullable=True)
    eligible_order_types = db.Column(db.JSON, nullable=True)
    eligible_branch_ids = db.Column(db.JSON, nullable=True)
    days_available = db.Column(db.JSON, nullable=True)
    max_uses_per_user = db.Column(db.Integer, nullable=True)
    max_uses_total = db.Column(db.Integer, nullable=True)

    starts_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=True)

    is_active = db.Column(db.Boolean, nullable=False, default=True, index=True)

    # Usage tracking
    times_used = db.Column(db.Integer, nullable=False, default=0)
    total_savings_cents = db.Column(db.Integer, nullable=False, default=0)
    last_used_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    def __repr__(self) -> str:
        return f"<Discount id={self.id} code={self.code!r} active={self.is_active}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "discount_type": self.discount_type,
            "discount_value": self.discount_value,
            "min_order_cents": self.min_order_cents,
            "max_spend_cents": self.max_spend_cents,
            "eligible_order_types": self.eligible_order_types,
            "eligible_branch_ids": self.eligible_branch_ids,
            "days_available": self.days_available,
            "max_uses_per_user": self.max_uses_per_user,
            "max_uses_total": self.max_uses_total,
            "starts_at": to_utc_z(self.starts_at),
            "ends_at": to_utc_z(self.ends_at),
            "is_active": self.is_active,
            "times_used": self.times_used,
            "total_savings_cents": self.total_savings_cents,
            "last_used_at": to_utc_z(self.last_used_at),
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class DiscountRedemption(db.Model):
    """One successful use of a discount by an order (per-user cap source)."""
    __tablename__ = "discount_redemptions"
    __table_args__ = (
        db.UniqueConstraint("discount_id", "order_id", name="uq_discount_redemptions_discount_order"),
        db.Index("ix_discount_redemptions_discount_user", "discount_id", "user_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    discount_id = db.Column(db.Integer, db.ForeignKey("discounts.id"), nullable=False, index=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    user_id = db.Column(db.String(64), nullable=True)
    amount_cents = db.Column(db.Integer, nullable=False)
    redeemed_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    discount = db.relationship("Discount", backref=db.backref("redemptions", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "discount_id": self.discount_id,
            "order_id": self.order_id,
            "user_id": self.user_id,
            "amount_cents": self.amount_cents,
            "redeemed_at": to_utc_z(self.redeemed_at),
        }
