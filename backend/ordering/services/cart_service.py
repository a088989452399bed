"""
CartAggregator: the mutable cart of one user or one anonymous session.

Policy: add_item always appends a new line, even when an identical line
(same product, same attribute selections) exists. Lines are never
deduplicated, which keeps each line's note and snapshot independent.

price_at_time on a line is advisory. view() and checkout always
re-resolve live prices through pricing_service.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from flask import current_app

from ..extensions import db
from ..models import Cart, CartLine, Product
from ..models.carts import CART_ACTIVE, ORDER_TYPE_DELIVERY, ORDER_TYPES
from ..money import fmt_cents
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError, ValidationError, require_positive_int
from . import catalog_service, pricing_service
from .concurrency import run_with_retry


MAX_NOTE_LENGTH = 500
_UNSET = object()


def identity_filter(user_id: str | None, session_id: str | None) -> dict:
    """Exactly one of user_id / session_id; anything else is a client error."""
    user_id = (user_id or "").strip() or None
    session_id = (session_id or "").strip() or None
    if bool(user_id) == bool(session_id):
        raise ValidationError("Exactly one of user id or session id is required")
    if user_id:
        return {"user_id": user_id, "session_id": None}
    return {"user_id": None, "session_id": session_id}


def get_cart(user_id: str | None = None, session_id: str | None = None, *, create: bool = False) -> Cart | None:
    ident = identity_filter(user_id, session_id)
    cart = (
        db.session.query(Cart)
        .filter_by(status=CART_ACTIVE, **ident)
        .order_by(Cart.id.desc())
        .first()
    )
    if cart or not create:
        return cart

    cart = Cart(
        status=CART_ACTIVE,
        order_type=ORDER_TYPE_DELIVERY,
        delivery_fee_cents=normalize_delivery_fee(ORDER_TYPE_DELIVERY, None),
        **ident,
    )
    db.session.add(cart)
    db.session.flush()
    return cart


def _require_cart(user_id, session_id) -> Cart:
    cart = get_cart(user_id, session_id)
    if not cart:
        raise NotFoundError("Cart not found")
    return cart


def _get_line(cart: Cart, line_id: int) -> CartLine:
    line = db.session.query(CartLine).filter_by(id=line_id, cart_id=cart.id).first()
    if not line:
        raise NotFoundError("Cart item not found", details={"line_id": line_id})
    return line


def _clean_note(note) -> str | None:
    if note is None:
        return None
    if not isinstance(note, str):
        raise ValidationError("note must be a string")
    note = note.strip()
    if len(note) > MAX_NOTE_LENGTH:
        raise ValidationError(f"note exceeds max length {MAX_NOTE_LENGTH}")
    return note or None


def _snapshot_attributes(item: catalog_service.CatalogItem, selections) -> list[dict]:
    """
    Validate selections against the product's own attribute options and
    freeze name and price as they are right now.
    """
    if not selections:
        return []
    if not isinstance(selections, list):
        raise ValidationError("attributes must be a list")

    snapshot = []
    for sel in selections:
        if not isinstance(sel, dict):
            raise ValidationError("each attribute selection must be an object")
        item_id = sel.get("item_id")
        attribute_id = sel.get("attribute_id")
        quantity = sel.get("quantity", 1)
        require_positive_int(quantity, "attribute quantity")

        option = item.attribute_options.get(item_id)
        if option is None:
            raise ValidationError(
                "Attribute option not available for this product",
                details={"product_id": item.id, "item_id": item_id},
            )
        if attribute_id is not None and option.attribute_id != attribute_id:
            raise ValidationError(
                "Attribute option does not belong to the stated attribute",
                details={"attribute_id": attribute_id, "item_id": item_id},
            )

        snapshot.append({
            "attribute_id": option.attribute_id,
            "attribute_name": option.attribute_name,
            "item_id": option.item_id,
            "name": option.name,
            "price_cents": option.price_cents,
            "quantity": quantity,
        })
    return snapshot


def add_item(
    *,
    product_id: int,
    quantity: int = 1,
    attributes: list | None = None,
    note: str | None = None,
    user_id: str | None = None,
    session_id: str | None = None,
) -> CartLine:
    """Append a line, creating the cart on first add."""
    identity_filter(user_id, session_id)
    require_positive_int(quantity, "quantity")
    note = _clean_note(note)

    def _op() -> CartLine:
        item = catalog_service.get_item(product_id)
        snapshot = _snapshot_attributes(item, attributes)

        cart = get_cart(user_id, session_id, create=True)
        if cart.branch_id is None:
            cart.branch_id = item.branch_id
        elif cart.branch_id != item.branch_id:
            db.session.rollback()
            raise ValidationError(
                "Product belongs to a different branch than the cart",
                details={"cart_branch_id": cart.branch_id, "product_branch_id": item.branch_id},
            )

        line = CartLine(
            cart_id=cart.id,
            product_id=item.id,
            quantity=quantity,
            price_at_time_cents=pricing_service.resolve(item.id).effective_price_cents,
            attributes=snapshot,
            note=note,
        )
        db.session.add(line)
        cart.updated_at = utcnow()
        db.session.commit()
        return line

    return run_with_retry(_op)


def update_item(
    line_id: int,
    *,
    quantity: int | None = None,
    note=_UNSET,
    user_id: str | None = None,
    session_id: str | None = None,
) -> CartLine:
    """Change quantity and/or note of one line."""
    if quantity is not None:
        require_positive_int(quantity, "quantity")
    if note is not _UNSET:
        note = _clean_note(note)

    cart = _require_cart(user_id, session_id)
    line = _get_line(cart, line_id)
    if quantity is not None:
        line.quantity = quantity
    if note is not _UNSET:
        line.note = note
    cart.updated_at = utcnow()
    db.session.commit()
    return line


def remove_item(line_id: int, *, user_id: str | None = None, session_id: str | None = None) -> None:
    cart = _require_cart(user_id, session_id)
    line = _get_line(cart, line_id)
    cart.lines.remove(line)
    cart.updated_at = utcnow()
    db.session.commit()


def clear_cart(*, user_id: str | None = None, session_id: str | None = None) -> Cart | None:
    cart = get_cart(user_id, session_id)
    if not cart:
        return None
    cart.lines.clear()
    cart.updated_at = utcnow()
    db.session.commit()
    return cart


def normalize_delivery_fee(order_type: str, fee_cents: int | None) -> int:
    """Non-delivery carts carry no fee; a delivery cart without one gets the default."""
    if order_type != ORDER_TYPE_DELIVERY:
        return 0
    if fee_cents is None:
        return int(current_app.config.get("DEFAULT_DELIVERY_FEE_CENTS", 0))
    if isinstance(fee_cents, bool) or not isinstance(fee_cents, int) or fee_cents < 0:
        raise ValidationError("delivery_fee_cents must be a non-negative integer")
    return fee_cents


def set_delivery(
    *,
    order_type: str,
    branch_id: int | None = None,
    delivery_fee_cents: int | None = None,
    user_id: str | None = None,
    session_id: str | None = None,
) -> Cart:
    if order_type not in ORDER_TYPES:
        raise ValidationError(f"order_type must be one of {', '.join(ORDER_TYPES)}")
    fee = normalize_delivery_fee(order_type, delivery_fee_cents)

    cart = get_cart(user_id, session_id, create=True)
    if branch_id is not None and branch_id != cart.branch_id:
        catalog_service.get_branch(branch_id)
        if cart.lines:
            db.session.rollback()
            raise ConflictError("Clear the cart before switching branch")
        cart.branch_id = branch_id

    cart.order_type = order_type
    cart.delivery_fee_cents = fee
    cart.updated_at = utcnow()
    db.session.commit()
    return cart


@dataclass
class MergeResult:
    cart: Cart | None
    merged: list[int] = field(default_factory=list)
    skipped: list[dict] = field(default_factory=list)


def merge(*, user_id: str, session_id: str) -> MergeResult:
    """
    Fold the session's guest cart into the user's cart, then drop it.

    Every guest line goes back through add_item so validation and
    snapshots re-run against the current catalog. Not atomic across
    lines: lines that fail are reported in skipped.
    """
    if not user_id or not session_id:
        raise ValidationError("user id and session id are both required to merge")

    guest = get_cart(session_id=session_id)
    if not guest:
        return MergeResult(cart=get_cart(user_id=user_id))

    target = get_cart(user_id=user_id, create=True)
    if not target.lines:
        # An empty user cart takes the guest cart's branch, even if one was set earlier
        target.order_type = guest.order_type
        target.delivery_fee_cents = guest.delivery_fee_cents
        target.branch_id = guest.branch_id
    db.session.commit()

    result = MergeResult(cart=target)
    for line in list(guest.lines):
        selections = [
            {"attribute_id": a["attribute_id"], "item_id": a["item_id"], "quantity": a.get("quantity", 1)}
            for a in (line.attributes or [])
        ]
        try:
            new_line = add_item(
                user_id=user_id,
                product_id=line.product_id,
                quantity=line.quantity,
                attributes=selections,
                note=line.note,
            )
        except (ValidationError, NotFoundError, ConflictError) as e:
            result.skipped.append({"line_id": line.id, "product_id": line.product_id, "reason": str(e)})
            continue
        result.merged.append(new_line.id)

    guest = db.session.get(Cart, guest.id)
    if guest:
        db.session.delete(guest)
    db.session.commit()

    if result.skipped:
        current_app.logger.info("Cart merge for user %s skipped %d line(s)", user_id, len(result.skipped))
    return result


def _line_view(line: CartLine, at: datetime) -> dict:
    product = db.session.get(Product, line.product_id)
    surcharge = line.attribute_surcharge_cents()
    data = line.to_dict()
    data["product_name"] = product.name if product else None

    if not product or not product.is_active:
        data.update({
            "available": False,
            "unit_price_cents": None,
            "attribute_surcharge_cents": surcharge,
            "line_total_cents": 0,
            "price_changed": False,
        })
        return data

    resolution = pricing_service.resolve(line.product_id, at)
    unit = resolution.effective_price_cents
    line_total = (unit + surcharge) * line.quantity
    data.update({
        "available": True,
        "unit_price_cents": unit,
        "price_override_id": resolution.source_override_id,
        "attribute_surcharge_cents": surcharge,
        "line_total_cents": line_total,
        "line_total": fmt_cents(line_total),
        "price_changed": unit != line.price_at_time_cents,
    })
    return data


def view(*, user_id: str | None = None, session_id: str | None = None, at: datetime | None = None) -> dict:
    """
    Cart with live prices.

    subtotal = sum((effective price + attribute surcharge) * quantity)
    total = subtotal + delivery fee
    """
    at = at or utcnow()
    cart = get_cart(user_id, session_id)
    if not cart:
        return {
            "cart": None,
            "lines": [],
            "item_count": 0,
            "subtotal_cents": 0,
            "delivery_fee_cents": 0,
            "total_cents": 0,
            "subtotal": fmt_cents(0),
            "delivery_fee": fmt_cents(0),
            "total": fmt_cents(0),
        }

    lines = [_line_view(line, at) for line in cart.lines]
    subtotal = sum(l["line_total_cents"] for l in lines)
    fee = cart.delivery_fee_cents or 0
    return {
        "cart": cart.to_dict(),
        "lines": lines,
        "item_count": sum(l["quantity"] for l in lines if l["available"]),
        "subtotal_cents": subtotal,
        "delivery_fee_cents": fee,
        "total_cents": subtotal + fee,
        "subtotal": fmt_cents(subtotal),
        "delivery_fee": fmt_cents(fee),
        "total": fmt_cents(subtotal + fee),
    }


def summary(*, user_id: str | None = None, session_id: str | None = None) -> dict:
    data = view(user_id=user_id, session_id=session_id)
    return {
        "item_count": data["item_count"],
        "line_count": len(data["lines"]),
        "subtotal_cents": data["subtotal_cents"],
        "delivery_fee_cents": data["delivery_fee_cents"],
        "total_cents": data["total_cents"],
        "total": data["total"],
    }
