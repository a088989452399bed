"""
StockLedger: managed-stock check / reserve / release.

Every mutation of StockRecord.quantity is a single conditional UPDATE
(compare-and-decrement with a version bump), never a read-modify-write
from Python, so concurrent checkouts of the same item cannot oversell.

reserve() and release() do not commit: they run inside the caller's
order transaction so a failed checkout rolls its reservations back.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from flask import current_app
from sqlalchemy import update

from ..extensions import db
from ..models import Product, StockRecord
from ..time_utils import utcnow
from ..validation import ConflictError, NotFoundError, ValidationError
from .concurrency import run_with_retry


class StockShortfallError(Exception):
    """Raised when managed stock cannot cover a request; details.items lists each short item."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


@dataclass
class AvailabilityResult:
    ok: bool
    shortfalls: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"ok": self.ok, "shortfalls": self.shortfalls}


def _aggregate(items: Iterable) -> dict[int, int]:
    """Sum (product_id, quantity) pairs so multi-line requests are checked as a whole."""
    totals: dict[int, int] = {}
    for product_id, quantity in items:
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("quantity must be a positive integer", details={"product_id": product_id})
        totals[product_id] = totals.get(product_id, 0) + quantity
    return totals


def _managed_records(product_ids) -> dict[int, StockRecord]:
    if not product_ids:
        return {}
    rows = (
        db.session.query(StockRecord)
        .filter(StockRecord.product_id.in_(list(product_ids)), StockRecord.is_managed.is_(True))
        .all()
    )
    return {r.product_id: r for r in rows}


def _product_names(product_ids) -> dict[int, str]:
    if not product_ids:
        return {}
    rows = db.session.query(Product.id, Product.name).filter(Product.id.in_(list(product_ids))).all()
    return {pid: name for pid, name in rows}


def _shortfall(product_id: int, name: str | None, requested: int, available: int) -> dict:
    return {
        "product_id": product_id,
        "product_name": name,
        "requested": requested,
        "available": available,
    }


def check_availability(items: Iterable) -> AvailabilityResult:
    """Shortfall for every managed item whose requested quantity exceeds on-hand."""
    totals = _aggregate(items)
    records = _managed_records(totals.keys())
    names = _product_names(records.keys())

    shortfalls = [
        _shortfall(pid, names.get(pid), qty, records[pid].quantity)
        for pid, qty in totals.items()
        if pid in records and qty > records[pid].quantity
    ]
    return AvailabilityResult(ok=not shortfalls, shortfalls=shortfalls)


def _decrement(product_id: int, quantity: int) -> bool:
    stmt = (
        update(StockRecord)
        .where(
            StockRecord.product_id == product_id,
            StockRecord.is_managed.is_(True),
            StockRecord.quantity >= quantity,
        )
        .values(
            quantity=StockRecord.quantity - quantity,
            version=StockRecord.version + 1,
            last_updated=utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    return db.session.execute(stmt).rowcount == 1


def _reserve_one(product_id: int, quantity: int) -> None:
    if _decrement(product_id, quantity):
        return

    # Zero rows: either genuinely short or lost a race on the version
    on_hand = (
        db.session.query(StockRecord.quantity)
        .filter_by(product_id=product_id, is_managed=True)
        .scalar()
    )
    if on_hand is None:
        return  # unmanaged since the check
    if on_hand >= quantity:
        if _decrement(product_id, quantity):
            return
        raise ConflictError(
            "Stock reservation conflicted with a concurrent checkout",
            details={"product_id": product_id},
        )

    name = _product_names([product_id]).get(product_id)
    raise StockShortfallError(
        "Insufficient stock",
        details={"items": [_shortfall(product_id, name, quantity, on_hand)]},
    )


def reserve(items: Iterable, *, strict: bool = True) -> list[int]:
    """
    Atomically decrement every managed item; returns the reserved product ids.

    strict=True raises on the first failure (the caller rolls back).
    strict=False logs and skips items it lost, reserving the rest.
    """
    totals = _aggregate(items)
    records = _managed_records(totals.keys())

    reserved: list[int] = []
    for product_id, quantity in totals.items():
        if product_id not in records:
            continue
        try:
            _reserve_one(product_id, quantity)
        except (StockShortfallError, ConflictError) as e:
            if strict:
                raise
            current_app.logger.warning(
                "Stock reservation lost for product %s (qty %s): %s", product_id, quantity, e
            )
            continue
        reserved.append(product_id)
    return reserved


def release(items: Iterable) -> None:
    """Give reserved quantity back. Unmanaged items are no-ops."""
    for product_id, quantity in _aggregate(items).items():
        stmt = (
            update(StockRecord)
            .where(StockRecord.product_id == product_id, StockRecord.is_managed.is_(True))
            .values(
                quantity=StockRecord.quantity + quantity,
                version=StockRecord.version + 1,
                last_updated=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        db.session.execute(stmt)


# =============================================================================
# Admin surface
# =============================================================================

def get_stock(product_id: int) -> StockRecord | None:
    return db.session.query(StockRecord).filter_by(product_id=product_id).first()


def set_stock(
    product_id: int,
    *,
    is_managed: bool | None = None,
    quantity: int | None = None,
    low_stock_threshold: int | None = None,
) -> StockRecord:
    """Create or overwrite a product's stock record (admin count)."""
    for name, value in (("quantity", quantity), ("low_stock_threshold", low_stock_threshold)):
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < 0):
            raise ValidationError(f"{name} must be a non-negative integer")

    def _op() -> StockRecord:
        product = db.session.get(Product, product_id)
        if not product:
            raise NotFoundError("Product not found", details={"product_id": product_id})

        record = get_stock(product_id)
        if not record:
            record = StockRecord(product_id=product_id, is_managed=False, quantity=0, low_stock_threshold=0, version=1)
            db.session.add(record)
        else:
            record.version = record.version + 1

        if is_managed is not None:
            record.is_managed = bool(is_managed)
        if quantity is not None:
            record.quantity = quantity
        if low_stock_threshold is not None:
            record.low_stock_threshold = low_stock_threshold
        record.last_updated = utcnow()

        db.session.commit()
        return record

    return run_with_retry(_op)


def adjust_stock(product_id: int, delta: int) -> StockRecord:
    """Relative adjustment; refuses to take quantity below zero."""
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise ValidationError("delta must be a non-zero integer")

    def _op() -> StockRecord:
        stmt = (
            update(StockRecord)
            .where(
                StockRecord.product_id == product_id,
                StockRecord.quantity + delta >= 0,
            )
            .values(
                quantity=StockRecord.quantity + delta,
                version=StockRecord.version + 1,
                last_updated=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if db.session.execute(stmt).rowcount == 0:
            db.session.rollback()
            record = get_stock(product_id)
            if not record:
                raise NotFoundError("Stock record not found", details={"product_id": product_id})
            raise ConflictError(
                "Adjustment would take stock below zero",
                details={"product_id": product_id, "quantity": record.quantity, "delta": delta},
            )
        db.session.commit()
        record = get_stock(product_id)
        db.session.refresh(record)
        return record

    return run_with_retry(_op)


def low_stock_report(branch_id: int | None = None) -> list[dict]:
    """Managed items at or under their threshold, lowest quantity first."""
    query = (
        db.session.query(StockRecord, Product)
        .join(Product, Product.id == StockRecord.product_id)
        .filter(
            StockRecord.is_managed.is_(True),
            StockRecord.quantity <= StockRecord.low_stock_threshold,
            Product.is_active.is_(True),
        )
    )
    if branch_id:
        query = query.filter(Product.branch_id == branch_id)

    rows = query.order_by(StockRecord.quantity.asc(), Product.name.asc()).all()
    return [
        {
            "product_id": product.id,
            "product_name": product.name,
            "branch_id": product.branch_id,
            "quantity": record.quantity,
            "low_stock_threshold": record.low_stock_threshold,
            "deficit": record.low_stock_threshold - record.quantity,
        }
        for record, product in rows
    ]
