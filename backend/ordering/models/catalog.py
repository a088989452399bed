from __future__ import annotations

from ..extensions import db
from ordering.time_utils import to_utc_z


class Branch(db.Model):
    """
    Restaurant branch.

    Order numbers, stock and price overrides are all branch-scoped.
    timezone drives day-of-week/time-of-day price restrictions.
    """
    __tablename__ = "branches"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False, unique=True)
    code = db.Column(db.String(16), nullable=False, unique=True, index=True)
    timezone = db.Column(db.String(64), nullable=False, default="UTC")
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Branch id={self.id} code={self.code!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "code": self.code,
            "timezone": self.timezone,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }


class Product(db.Model):
    """
    Catalog item.

    Read-only to the ordering engine: only existence, base price, branch
    and attribute options are consumed. Effective prices are never cached
    here; they are resolved from price_overrides on every read.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.Index("ix_products_branch_active", "branch_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    branch_id = db.Column(db.Integer, db.ForeignKey("branches.id"), nullable=False, index=True)
    name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)

    # Authoritative storage in minor units
    base_price_cents = db.Column(db.Integer, nullable=False)

    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    branch = db.relationship("Branch", backref=db.backref("products", lazy=True))

    def __repr__(self) -> str:
        return f"<Product id={self.id} name={self.name!r} branch_id={self.branch_id}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "branch_id": self.branch_id,
            "name": self.name,
            "description": self.description,
            "base_price_cents": self.base_price_cents,
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }


class ProductAttribute(db.Model):
    """Attribute group (e.g. "Size", "Extra toppings")."""
    __tablename__ = "product_attributes"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    type = db.Column(db.String(32), nullable=False, default="multiple")  # single, multiple

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "type": self.type}


class ProductAttributeItem(db.Model):
    """Priced sub-option of an attribute group, defined per product."""
    __tablename__ = "product_attribute_items"
    __table_args__ = (
        db.Index("ix_attr_items_product_attribute", "product_id", "attribute_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    attribute_id = db.Column(db.Integer, db.ForeignKey("product_attributes.id"), nullable=False, index=True)
    name = db.Column(db.String(120), nullable=False)
    price_cents = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    product = db.relationship("Product", backref=db.backref("attribute_items", lazy=True))
    attribute = db.relationship("ProductAttribute")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "attribute_id": self.attribute_id,
            "name": self.name,
            "price_cents": self.price_cents,
            "is_active": self.is_active,
        }


class StockRecord(db.Model):
    """
    Managed-stock counter for one catalog item.

    quantity is only ever changed through conditional UPDATE statements in
    stock_service (compare-and-decrement on quantity, version bumped on every
    write). It must never go negative; the CHECK constraint is the last line.
    Items without a row, or with is_managed=False, are always available.
    """
    __tablename__ = "stock_records"
    __table_args__ = (
        db.CheckConstraint("quantity >= 0", name="ck_stock_records_quantity_non_negative"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, unique=True, index=True)
    is_managed = db.Column(db.Boolean, nullable=False, default=False)
    quantity = db.Column(db.Integer, nullable=False, default=0)
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=0)
    version = db.Column(db.Integer, nullable=False, default=1)
    last_updated = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", backref=db.backref("stock", uselist=False, lazy=True))

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "is_managed": self.is_managed,
            "quantity": self.quantity,
            "low_stock_threshold": self.low_stock_threshold,
            "is_low_stock": self.is_managed and self.quantity <= self.low_stock_threshold,
            "version": self.version,
            "last_updated": to_utc_z(self.last_updated),
        }
