from __future__ import annotations

from ..extensions import db
from ordering.time_utils import to_utc_z


ORDER_TYPE_DELIVERY = "delivery"
ORDER_TYPE_PICKUP = "pickup"
ORDER_TYPE_DINE_IN = "dine-in"

ORDER_TYPES = (ORDER_TYPE_DELIVERY, ORDER_TYPE_PICKUP, ORDER_TYPE_DINE_IN)

CART_ACTIVE = "active"
CART_CONVERTED = "converted"
CART_ABANDONED = "abandoned"


class Cart(db.Model):
    """
    Mutable shopping cart, owned by exactly one of user_id / session_id.

    Totals are not stored: they are recomputed from live prices by
    cart_service.view() so a displayed cart always reflects current pricing.
    """
    __tablename__ = "carts"
    __table_args__ = (
        db.CheckConstraint(
            "(user_id IS NULL) <> (session_id IS NULL)",
            name="ck_carts_single_identity",
        ),
        db.Index("ix_carts_user_status", "user_id", "status"),
        db.Index("ix_carts_session_status", "session_id", "status"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.String(64), nullable=True)
    session_id = db.Column(db.String(128), nullable=True)

    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=True, index=True)
    order_type = db.Column(db.String(16), nullable=False, default=ORDER_TYPE_DELIVERY)
    delivery_fee_cents = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(16), nullable=False, default=CART_ACTIVE, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), onupdate=db.func.now())

    lines = db.relationship(
        "CartLine",
        backref="cart",
        lazy=True,
        order_by="CartLine.id",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        owner = f"user={self.user_id}" if self.user_id else f"session={self.session_id}"
        return f"<Cart id={self.id} {owner} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "session_id": self.session_id,
            "branch_id": self.branch_id,
            "order_type": self.order_type,
            "delivery_fee_cents": self.delivery_fee_cents,
            "status": self.status,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class CartLine(db.Model):
    """
    One line of a cart.

    price_at_time is advisory only (checkout re-resolves prices).
    attributes is a snapshot of the selected sub-options taken when the
    line was added: [{attribute_id, attribute_name, item_id, name,
    price_cents, quantity}], so historical views stay stable.
    """
    __tablename__ = "cart_lines"
    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_cart_lines_quantity_positive"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    cart_id = db.Column(db.Integer, db.ForeignKey("carts.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)
    quantity = db.Column(db.Integer, nullable=False, default=1)
    price_at_time_cents = db.Column(db.Integer, nullable=False)
    attributes = db.Column(db.JSON, nullable=False, default=list)
    note = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product")

    def attribute_surcharge_cents(self) -> int:
        """Per-unit surcharge of the snapshotted attribute selections."""
        return sum(a["price_cents"] * a.get("quantity", 1) for a in (self.attributes or []))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "cart_id": self.cart_id,
            "product_id": self.product_id,
            "quantity": self.quantity,
            "price_at_time_cents": self.price_at_time_cents,
            "attributes": self.attributes or [],
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }
