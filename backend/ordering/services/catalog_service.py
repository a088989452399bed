"""
Read-only access to the catalog store.

The ordering engine never writes products or attribute options; it only
needs existence, base price, branch, managed-stock flag and the priced
attribute options of an item.
"""
from __future__ import annotations

from dataclasses import dataclass, field

from ..extensions import db
from ..models import Branch, Product, ProductAttributeItem, StockRecord
from ..validation import NotFoundError


@dataclass(frozen=True)
class AttributeOption:
    item_id: int
    attribute_id: int
    attribute_name: str
    name: str
    price_cents: int


@dataclass(frozen=True)
class CatalogItem:
    id: int
    branch_id: int
    name: str
    base_price_cents: int
    managed_stock: bool
    attribute_options: dict[int, AttributeOption] = field(default_factory=dict)


def get_product(product_id: int, *, active_only: bool = True) -> Product:
    product = db.session.get(Product, product_id)
    if not product or (active_only and not product.is_active):
        raise NotFoundError("Product not found", details={"product_id": product_id})
    return product


def get_branch(branch_id: int) -> Branch:
    branch = db.session.get(Branch, branch_id)
    if not branch or not branch.is_active:
        raise NotFoundError("Branch not found", details={"branch_id": branch_id})
    return branch


def get_item(product_id: int) -> CatalogItem:
    """Catalog view of one product, keyed attribute options by item id."""
    product = get_product(product_id)

    items = (
        db.session.query(ProductAttributeItem)
        .filter_by(product_id=product.id, is_active=True)
        .all()
    )
    options = {
        it.id: AttributeOption(
            item_id=it.id,
            attribute_id=it.attribute_id,
            attribute_name=it.attribute.name if it.attribute else "",
            name=it.name,
            price_cents=it.price_cents,
        )
        for it in items
    }

    stock = db.session.query(StockRecord).filter_by(product_id=product.id).first()

    return CatalogItem(
        id=product.id,
        branch_id=product.branch_id,
        name=product.name,
        base_price_cents=product.base_price_cents,
        managed_stock=bool(stock and stock.is_managed),
        attribute_options=options,
    )
