"""
PriceResolver: effective price of a catalog item at an instant.

Read path (resolve / effective_prices) is side-effect free and always
computes from the override table; there is no cached price on products.

Write path (create / update / toggle / delete / bulk / sweep) keeps the
overlap invariant: at most one active, non-deleted override of a product
has a window intersecting another. An override that becomes active
supersedes every overlapping active one in the same transaction.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import update

from ..extensions import db
from ..models import Branch, Product, PriceOverride
from ..models.pricing import (
    OVERRIDE_DECREASE,
    OVERRIDE_FIXED,
    OVERRIDE_INCREASE,
    OVERRIDE_KINDS,
    OVERRIDE_TEMPORARY,
)
from ..money import basis_points_of
from ..time_utils import WEEKDAYS, normalize_datetime, parse_hhmm, to_local, utcnow
from ..validation import MAX_PRICE_CENTS, ConflictError, NotFoundError
from .concurrency import begin_immediate, lock_for_update, run_with_retry


MAX_PERCENT_BPS = 10_000


@dataclass(frozen=True)
class PriceResolution:
    product_id: int
    base_price_cents: int
    effective_price_cents: int
    source_override_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "base_price_cents": self.base_price_cents,
            "effective_price_cents": self.effective_price_cents,
            "source_override_id": self.source_override_id,
        }


@dataclass
class OverrideResult:
    """Outcome of a supersede-aware write: accepted with the ids it displaced, or rejected."""
    accepted: bool
    override: Optional[PriceOverride] = None
    superseded_ids: list[int] = field(default_factory=list)
    reason: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def rejected(cls, reason: str, message: str) -> "OverrideResult":
        return cls(accepted=False, reason=reason, message=message)

    def to_dict(self) -> dict:
        if not self.accepted:
            return {"accepted": False, "reason": self.reason, "message": self.message}
        return {
            "accepted": True,
            "override": self.override.to_dict() if self.override else None,
            "superseded_ids": list(self.superseded_ids),
        }


# =============================================================================
# Resolution
# =============================================================================

def price_for_kind(kind: str, value: int, is_percentage: bool, base_cents: int, resolved_cents: int | None = None) -> int:
    if kind == OVERRIDE_FIXED:
        return value
    if kind == OVERRIDE_INCREASE:
        delta = basis_points_of(base_cents, value) if is_percentage else value
        return base_cents + delta
    if kind == OVERRIDE_DECREASE:
        delta = basis_points_of(base_cents, value) if is_percentage else value
        return max(0, base_cents - delta)
    if kind == OVERRIDE_TEMPORARY:
        return resolved_cents if resolved_cents is not None else value
    raise ValueError(f"unknown override kind: {kind}")


def _restriction_matches(override: PriceOverride, at: datetime, tz_name: str | None) -> bool:
    if not override.days_of_week and not (override.time_start and override.time_end):
        return True

    local = to_local(at, tz_name)

    if override.days_of_week and WEEKDAYS[local.weekday()] not in override.days_of_week:
        return False

    if override.time_start and override.time_end:
        start = parse_hhmm(override.time_start)
        end = parse_hhmm(override.time_end)
        now_t = local.time()
        if start <= end:
            return start <= now_t < end
        # wraps past midnight
        return now_t >= start or now_t < end

    return True


def _pick(product: Product, tz_name: str | None, candidates: list[PriceOverride], at: datetime) -> PriceResolution:
    matches = [
        o for o in candidates
        if o.starts_at <= at < o.ends_at and _restriction_matches(o, at, tz_name)
    ]
    if not matches:
        return PriceResolution(product.id, product.base_price_cents, product.base_price_cents)

    # Most recently started wins if a race left more than one active
    chosen = max(matches, key=lambda o: (o.starts_at, o.id))
    price = price_for_kind(
        chosen.kind,
        chosen.value,
        chosen.is_percentage,
        product.base_price_cents,
        chosen.resolved_price_cents,
    )
    return PriceResolution(product.id, product.base_price_cents, price, chosen.id)


def _candidate_query():
    return db.session.query(PriceOverride).filter(
        PriceOverride.active.is_(True),
        PriceOverride.deleted.is_(False),
    )


def resolve(product_id: int, at: datetime | None = None) -> PriceResolution:
    """Effective unit price of a product at `at` (default: now)."""
    at = normalize_datetime(at) or utcnow()

    product = db.session.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found", details={"product_id": product_id})

    candidates = (
        _candidate_query()
        .filter(
            PriceOverride.product_id == product_id,
            PriceOverride.starts_at <= at,
            PriceOverride.ends_at > at,
        )
        .all()
    )
    tz_name = product.branch.timezone if product.branch else None
    return _pick(product, tz_name, candidates, at)


def effective_prices(branch_id: int, at: datetime | None = None) -> list[PriceResolution]:
    """Live resolution for every active product of a branch."""
    at = normalize_datetime(at) or utcnow()

    branch = db.session.get(Branch, branch_id)
    if not branch:
        raise NotFoundError("Branch not found", details={"branch_id": branch_id})

    products = (
        db.session.query(Product)
        .filter_by(branch_id=branch_id, is_active=True)
        .order_by(Product.id)
        .all()
    )
    if not products:
        return []

    by_product: dict[int, list[PriceOverride]] = {}
    rows = (
        _candidate_query()
        .filter(
            PriceOverride.product_id.in_([p.id for p in products]),
            PriceOverride.starts_at <= at,
            PriceOverride.ends_at > at,
        )
        .all()
    )
    for row in rows:
        by_product.setdefault(row.product_id, []).append(row)

    return [_pick(p, branch.timezone, by_product.get(p.id, []), at) for p in products]


# =============================================================================
# Write path
# =============================================================================

def _check_restriction(days_of_week, time_start, time_end) -> list[str] | None:
    """Normalize a day/time restriction; ValueError when malformed."""
    days = None
    if days_of_week:
        if not isinstance(days_of_week, list):
            raise ValueError("days_of_week must be a list")
        days = []
        for d in days_of_week:
            name = str(d).strip().lower()
            if name not in WEEKDAYS:
                raise ValueError(f"unknown weekday: {d}")
            if name not in days:
                days.append(name)

    if bool(time_start) != bool(time_end):
        raise ValueError("time_start and time_end must be given together")
    if time_start:
        if parse_hhmm(time_start) == parse_hhmm(time_end):
            raise ValueError("time_start and time_end must differ")

    return days


def _check_amount(kind: str, value, is_percentage: bool) -> OverrideResult | None:
    if kind not in OVERRIDE_KINDS:
        return OverrideResult.rejected("invalid_kind", f"kind must be one of {', '.join(OVERRIDE_KINDS)}")
    if isinstance(value, bool) or not isinstance(value, int):
        return OverrideResult.rejected("invalid_value", "value must be an integer")
    if value < 0:
        return OverrideResult.rejected("invalid_value", "value must be >= 0")
    if is_percentage and kind not in (OVERRIDE_INCREASE, OVERRIDE_DECREASE):
        return OverrideResult.rejected("invalid_value", "only increase/decrease overrides can be percentages")
    if is_percentage and kind == OVERRIDE_DECREASE and value > MAX_PERCENT_BPS:
        return OverrideResult.rejected("invalid_value", "percentage decrease cannot exceed 100%")
    if not is_percentage and value > MAX_PRICE_CENTS:
        return OverrideResult.rejected("invalid_value", f"value cannot exceed {MAX_PRICE_CENTS}")
    return None


def _check_window(start, end) -> tuple[datetime | None, datetime | None, OverrideResult | None]:
    try:
        start = normalize_datetime(start)
        end = normalize_datetime(end)
    except ValueError:
        return None, None, OverrideResult.rejected("invalid_window", "starts_at/ends_at must be ISO-8601 datetimes")
    if start is None or end is None:
        return None, None, OverrideResult.rejected("invalid_window", "starts_at and ends_at are required")
    if start >= end:
        return None, None, OverrideResult.rejected("invalid_window", "ends_at must be after starts_at")
    return start, end, None


def _supersede_overlapping(override: PriceOverride) -> list[int]:
    """Deactivate every other active override of the product whose window intersects."""
    overlapping = (
        _candidate_query()
        .filter(
            PriceOverride.product_id == override.product_id,
            PriceOverride.id != override.id,
            PriceOverride.starts_at < override.ends_at,
            PriceOverride.ends_at > override.starts_at,
        )
        .all()
    )
    for other in overlapping:
        other.active = False
        other.superseded_by_id = override.id
    return [o.id for o in overlapping]


def _lock_product(product_id: int) -> Optional[Product]:
    """Row-lock the product so concurrent override writes on it serialize."""
    return lock_for_update(db.session.query(Product).filter(Product.id == product_id)).one_or_none()


def _locked_write(apply) -> OverrideResult:
    """
    Run apply() under the write lock; commit if accepted, roll back otherwise.

    apply() locks the product row it touches via _lock_product; on SQLite
    begin_immediate() already holds the database write lock.

    Supersede and the change that triggers it become visible together.
    """
    def _op() -> OverrideResult:
        begin_immediate()
        try:
            result = apply()
        except Exception:
            db.session.rollback()
            raise
        if result.accepted:
            db.session.commit()
        else:
            db.session.rollback()
        return result

    return run_with_retry(_op)


def create_override(
    *,
    product_id: int,
    name: str,
    kind: str,
    value: int,
    starts_at,
    ends_at,
    branch_id: int | None = None,
    is_percentage: bool = False,
    days_of_week: list[str] | None = None,
    time_start: str | None = None,
    time_end: str | None = None,
    auto_revert: bool = False,
    created_by: str | None = None,
    now: datetime | None = None,
) -> OverrideResult:
    """
    Create an active override and supersede the overlapping ones atomically.

    Returns OverrideResult(accepted=True, override, superseded_ids) on
    success; invalid input yields OverrideResult(accepted=False, reason).
    """
    rejection = _check_amount(kind, value, bool(is_percentage))
    if rejection:
        return rejection

    start, end, rejection = _check_window(starts_at, ends_at)
    if rejection:
        return rejection

    now = normalize_datetime(now) or utcnow()
    if end <= now:
        return OverrideResult.rejected("window_lapsed", "override window has already ended")

    try:
        days = _check_restriction(days_of_week, time_start, time_end)
    except ValueError as e:
        return OverrideResult.rejected("invalid_restriction", str(e))

    if not name or not str(name).strip():
        return OverrideResult.rejected("invalid_name", "name is required")

    def _apply() -> OverrideResult:
        product = _lock_product(product_id)
        if not product:
            return OverrideResult.rejected("product_not_found", "Product not found")
        if branch_id is not None and product.branch_id != branch_id:
            return OverrideResult.rejected("branch_mismatch", "Product does not belong to this branch")

        override = PriceOverride(
            product_id=product.id,
            branch_id=product.branch_id,
            name=str(name).strip(),
            kind=kind,
            value=value,
            is_percentage=bool(is_percentage),
            original_price_cents=product.base_price_cents,
            resolved_price_cents=price_for_kind(kind, value, bool(is_percentage), product.base_price_cents),
            starts_at=start,
            ends_at=end,
            days_of_week=days,
            time_start=time_start or None,
            time_end=time_end or None,
            active=True,
            auto_revert=bool(auto_revert),
            created_by=created_by,
        )
        db.session.add(override)
        db.session.flush()

        superseded = _supersede_overlapping(override)
        return OverrideResult(accepted=True, override=override, superseded_ids=superseded)

    return _locked_write(_apply)


def _get_override(override_id: int) -> PriceOverride:
    override = db.session.get(PriceOverride, override_id)
    if not override:
        raise NotFoundError("Price override not found", details={"override_id": override_id})
    return override


UPDATABLE_FIELDS = {
    "name", "value", "is_percentage", "starts_at", "ends_at",
    "days_of_week", "time_start", "time_end", "auto_revert",
}


def update_override(override_id: int, patch: dict) -> OverrideResult:
    """Edit an override; an active one re-runs supersede against its new window."""
    unknown = sorted(set(patch) - UPDATABLE_FIELDS)
    if unknown:
        return OverrideResult.rejected("invalid_field", f"Field not allowed: {', '.join(unknown)}")

    def _apply() -> OverrideResult:
        override = _get_override(override_id)
        if override.deleted:
            raise ConflictError("Deleted price overrides cannot be edited")
        _lock_product(override.product_id)

        value = patch.get("value", override.value)
        is_percentage = bool(patch.get("is_percentage", override.is_percentage))
        rejection = _check_amount(override.kind, value, is_percentage)
        if rejection:
            return rejection

        start, end, rejection = _check_window(
            patch.get("starts_at", override.starts_at),
            patch.get("ends_at", override.ends_at),
        )
        if rejection:
            return rejection

        time_start = patch.get("time_start", override.time_start) or None
        time_end = patch.get("time_end", override.time_end) or None
        try:
            days = _check_restriction(patch.get("days_of_week", override.days_of_week), time_start, time_end)
        except ValueError as e:
            return OverrideResult.rejected("invalid_restriction", str(e))

        if "name" in patch:
            if not patch["name"] or not str(patch["name"]).strip():
                return OverrideResult.rejected("invalid_name", "name is required")
            override.name = str(patch["name"]).strip()

        base = override.product.base_price_cents
        override.value = value
        override.is_percentage = is_percentage
        override.original_price_cents = base
        override.resolved_price_cents = price_for_kind(override.kind, value, is_percentage, base)
        override.starts_at = start
        override.ends_at = end
        override.days_of_week = days
        override.time_start = time_start
        override.time_end = time_end
        if "auto_revert" in patch:
            override.auto_revert = bool(patch["auto_revert"])

        superseded = _supersede_overlapping(override) if override.active else []
        return OverrideResult(accepted=True, override=override, superseded_ids=superseded)

    return _locked_write(_apply)


def toggle_override(override_id: int) -> OverrideResult:
    """Flip active; activating supersedes overlapping active overrides."""
    def _apply() -> OverrideResult:
        override = _get_override(override_id)
        if override.deleted:
            raise ConflictError("Deleted price overrides cannot be toggled")
        _lock_product(override.product_id)

        override.active = not override.active
        superseded: list[int] = []
        if override.active:
            override.superseded_by_id = None
            superseded = _supersede_overlapping(override)
        return OverrideResult(accepted=True, override=override, superseded_ids=superseded)

    return _locked_write(_apply)


def delete_override(override_id: int) -> PriceOverride:
    """Soft delete: kept for history, excluded from resolution. Idempotent."""
    def _op() -> PriceOverride:
        override = _get_override(override_id)
        if not override.deleted:
            override.deleted = True
            override.deleted_at = utcnow()
            override.active = False
            db.session.commit()
        return override

    return run_with_retry(_op)


def apply_bulk_temporary(
    *,
    branch_id: int,
    starts_at,
    ends_at,
    items: list[dict],
    name: str = "Temporary price",
    created_by: str | None = None,
) -> dict:
    """
    One auto-reverting temporary override per {product_id, price_cents}.

    Each item commits on its own; failures are collected, not raised.
    """
    applied: list[dict] = []
    failed: list[dict] = []

    for item in items or []:
        product_id = item.get("product_id") if isinstance(item, dict) else None
        price_cents = item.get("price_cents") if isinstance(item, dict) else None
        if not product_id:
            failed.append({"product_id": product_id, "reason": "invalid_item", "message": "product_id required"})
            continue

        result = create_override(
            product_id=product_id,
            branch_id=branch_id,
            name=item.get("name") or name,
            kind=OVERRIDE_TEMPORARY,
            value=price_cents,
            starts_at=starts_at,
            ends_at=ends_at,
            auto_revert=True,
            created_by=created_by,
        )
        if result.accepted:
            applied.append(result.to_dict())
        else:
            failed.append({"product_id": product_id, "reason": result.reason, "message": result.message})

    return {"applied": applied, "failed": failed}


def list_overrides(
    *,
    product_id: int | None = None,
    branch_id: int | None = None,
    include_deleted: bool = False,
) -> tuple[list[PriceOverride], list[PriceOverride]]:
    """History view: (live records, soft-deleted records), newest first."""
    query = db.session.query(PriceOverride)
    if product_id:
        query = query.filter(PriceOverride.product_id == product_id)
    if branch_id:
        query = query.filter(PriceOverride.branch_id == branch_id)

    rows = query.order_by(PriceOverride.starts_at.desc(), PriceOverride.id.desc()).all()
    live = [r for r in rows if not r.deleted]
    deleted = [r for r in rows if r.deleted] if include_deleted else []
    return live, deleted


def sweep_expired(now: datetime | None = None) -> int:
    """
    Deactivate auto-reverting overrides whose window has ended.

    A single conditional UPDATE: concurrent sweeps and repeated runs are no-ops.
    """
    now = normalize_datetime(now) or utcnow()

    def _op() -> int:
        stmt = (
            update(PriceOverride)
            .where(
                PriceOverride.auto_revert.is_(True),
                PriceOverride.active.is_(True),
                PriceOverride.ends_at < now,
            )
            .values(active=False, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = db.session.execute(stmt)
        db.session.commit()
        return result.rowcount or 0

    return run_with_retry(_op)
