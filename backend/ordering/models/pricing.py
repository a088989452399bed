from __future__ import annotations

from ..extensions import db
from ordering.time_utils import to_utc_z


OVERRIDE_FIXED = "fixed"
OVERRIDE_INCREASE = "increase"
OVERRIDE_DECREASE = "decrease"
OVERRIDE_TEMPORARY = "temporary"

OVERRIDE_KINDS = (OVERRIDE_FIXED, OVERRIDE_INCREASE, OVERRIDE_DECREASE, OVERRIDE_TEMPORARY)


class PriceOverride(db.Model):
    """
    Time-windowed price rule for one catalog item.

    The validity window is half-open: starts_at <= t < ends_at.

    value is in minor units, except for increase/decrease with
    is_percentage=True where it is in basis points (1000 = 10%).
    resolved_price_cents is the value materialized to an absolute price
    against the base price at creation time; resolution uses it for
    "temporary" and keeps it for history views otherwise.

    At most one active, non-deleted override of an item may overlap another;
    pricing_service.create_override supersedes (deactivates) overlapping ones
    in the same transaction. Soft-deleted rows stay for audit.
    """
    __tablename__ = "price_overrides"
    __table_args__ = (
        db.Index("ix_price_overrides_product_active", "product_id", "active", "deleted"),
        db.Index("ix_price_overrides_branch_window", "branch_id", "active", "starts_at", "ends_at"),
        db.Index("ix_price_overrides_expiry", "ends_at", "auto_revert", "active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)

    kind = db.Column(db.String(16), nullable=False)
    value = db.Column(db.Integer, nullable=False)
    is_percentage = db.Column(db.Boolean, nullable=False, default=False)
    original_price_cents = db.Column(db.Integer, nullable=False)
    resolved_price_cents = db.Column(db.Integer, nullable=False)

    starts_at = db.Column(db.DateTime(timezone=True), nullable=False)
    ends_at = db.Column(db.DateTime(timezone=True), nullable=False)

    # Optional recurring restriction, evaluated in the branch timezone
    days_of_week = db.Column(db.JSON, nullable=True)  # ["monday", ...]
    time_start = db.Column(db.String(5), nullable=True)  # "HH:MM"
    time_end = db.Column(db.String(5), nullable=True)

    active = db.Column(db.Boolean, nullable=False, default=True, index=True)
    auto_revert = db.Column(db.Boolean, nullable=False, default=False)
    deleted = db.Column(db.Boolean, nullable=False, default=False)
    deleted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    superseded_by_id = db.Column(db.Integer, db.ForeignKey("price_overrides.id"), nullable=True)

    created_by = db.Column(db.String(64), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    product = db.relationship("Product", backref=db.backref("price_overrides", lazy=True))

    def __repr__(self) -> str:
        return f"<PriceOverride id={self.id} product_id={self.product_id} kind={self.kind} active={self.active}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "branch_id": self.branch_id,
            "name": self.name,
            "kind": self.kind,
            "value": self.value,
            "is_percentage": self.is_percentage,
            "original_price_cents": self.original_price_cents,
            "resolved_price_cents": self.resolved_price_cents,
            "starts_at": to_utc_z(self.starts_at),
            "ends_at": to_utc_z(self.ends_at),
            "days_of_week": self.days_of_week or [],
            "time_start": self.time_start,
            "time_end": self.time_end,
            "active": self.active,
            "auto_revert": self.auto_revert,
            "deleted": self.deleted,
            "deleted_at": to_utc_z(self.deleted_at),
            "superseded_by_id": self.superseded_by_id,
            "created_by": self.created_by,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
