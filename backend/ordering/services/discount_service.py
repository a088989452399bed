"""
DiscountValidator: promotional codes.

Checks run in a fixed order and the first failing one wins, so the
reason returned to the customer is deterministic:

    exists & active -> active window -> day of week -> branch
    -> order type -> minimum spend -> maximum spend
    -> per-user cap -> global cap
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import Branch, Discount, DiscountRedemption
from ..models.discounts import DISCOUNT_PERCENTAGE
from ..money import fmt_cents, percent_of
from ..time_utils import WEEKDAYS, normalize_datetime, to_local, utcnow
from ..validation import (
    ConflictError,
    ModelValidationPolicy,
    NotFoundError,
    ValidationError,
    enforce_rules_discount,
    validate_payload,
)
from .concurrency import run_with_retry


# Rejection reason codes
NOT_FOUND = "not_found"
INACTIVE = "inactive"
NOT_STARTED = "not_started"
EXPIRED = "expired"
DAY_NOT_AVAILABLE = "day_not_available"
BRANCH_NOT_ELIGIBLE = "branch_not_eligible"
ORDER_TYPE_NOT_ELIGIBLE = "order_type_not_eligible"
BELOW_MINIMUM_SPEND = "below_minimum_spend"
ABOVE_MAXIMUM_SPEND = "above_maximum_spend"
LOGIN_REQUIRED = "login_required"
USER_LIMIT_REACHED = "user_limit_reached"
USAGE_LIMIT_REACHED = "usage_limit_reached"


class DiscountRejected(Exception):
    """A code failed validation; reason is the machine code of the first failing check."""
    def __init__(self, reason: str, message: str, details: dict | None = None):
        super().__init__(message)
        self.reason = reason
        self.details = {"reason": reason, **(details or {})}


@dataclass
class DiscountCheck:
    valid: bool
    discount: Optional[Discount] = None
    reason: Optional[str] = None
    message: Optional[str] = None

    def raise_if_invalid(self) -> Discount:
        if not self.valid:
            raise DiscountRejected(self.reason, self.message)
        return self.discount


def _reject(reason: str, message: str, discount: Discount | None = None) -> DiscountCheck:
    return DiscountCheck(valid=False, discount=discount, reason=reason, message=message)


def normalize_code(code) -> str:
    if not isinstance(code, str) or not code.strip():
        raise ValidationError("discount code is required")
    return code.strip().upper()


def find_by_code(code: str) -> Discount | None:
    return db.session.query(Discount).filter_by(code=normalize_code(code)).first()


def user_redemption_count(discount_id: int, user_id: str) -> int:
    return (
        db.session.query(func.count(DiscountRedemption.id))
        .filter_by(discount_id=discount_id, user_id=user_id)
        .scalar()
    ) or 0


def validate(
    code: str,
    *,
    subtotal_cents: int,
    order_type: str | None,
    branch_id: int | None,
    user_id: str | None = None,
    at: datetime | None = None,
) -> DiscountCheck:
    at = normalize_datetime(at) or utcnow()
    discount = find_by_code(code)

    if discount is None:
        return _reject(NOT_FOUND, "Invalid discount code")
    if not discount.is_active:
        return _reject(INACTIVE, "Discount is not active", discount)

    if discount.starts_at and at < discount.starts_at:
        return _reject(NOT_STARTED, "Discount is not active yet", discount)
    if discount.ends_at and at >= discount.ends_at:
        return _reject(EXPIRED, "Discount has expired", discount)

    if discount.days_available:
        branch = db.session.get(Branch, branch_id) if branch_id else None
        local = to_local(at, branch.timezone if branch else None)
        if WEEKDAYS[local.weekday()] not in discount.days_available:
            return _reject(DAY_NOT_AVAILABLE, "Discount not available today", discount)

    if discount.eligible_branch_ids and branch_id not in discount.eligible_branch_ids:
        return _reject(BRANCH_NOT_ELIGIBLE, "Discount not available at this branch", discount)

    if discount.eligible_order_types and order_type not in discount.eligible_order_types:
        return _reject(ORDER_TYPE_NOT_ELIGIBLE, f"Discount not available for {order_type}", discount)

    if subtotal_cents < (discount.min_order_cents or 0):
        return _reject(
            BELOW_MINIMUM_SPEND,
            f"Minimum spend of {fmt_cents(discount.min_order_cents)} required",
            discount,
        )
    if discount.max_spend_cents and subtotal_cents > discount.max_spend_cents:
        return _reject(
            ABOVE_MAXIMUM_SPEND,
            f"Maximum spend of {fmt_cents(discount.max_spend_cents)} exceeded",
            discount,
        )

    if discount.max_uses_per_user:
        if not user_id:
            return _reject(LOGIN_REQUIRED, "Sign in to use this discount code", discount)
        if user_redemption_count(discount.id, user_id) >= discount.max_uses_per_user:
            return _reject(USER_LIMIT_REACHED, "You have already used this discount code", discount)

    if discount.max_uses_total is not None and discount.times_used >= discount.max_uses_total:
        return _reject(USAGE_LIMIT_REACHED, "Discount usage limit reached", discount)

    return DiscountCheck(valid=True, discount=discount)


def calculate_amount(discount: Discount, subtotal_cents: int) -> int:
    """Never more than the subtotal, so a total can't go negative."""
    if subtotal_cents <= 0:
        return 0
    if discount.discount_type == DISCOUNT_PERCENTAGE:
        return min(percent_of(subtotal_cents, discount.discount_value), subtotal_cents)
    return min(discount.discount_value, subtotal_cents)


def preview(code: str, **context) -> dict:
    """Validate and price a code without recording anything."""
    check = validate(code, **context)
    discount = check.raise_if_invalid()
    subtotal = context["subtotal_cents"]
    amount = calculate_amount(discount, subtotal)
    return {
        "discount_id": discount.id,
        "code": discount.code,
        "name": discount.name,
        "discount_type": discount.discount_type,
        "discount_value": discount.discount_value,
        "amount_cents": amount,
        "original_total_cents": subtotal,
        "new_total_cents": subtotal - amount,
        "amount": fmt_cents(amount),
    }


def record_redemption(discount: Discount, *, order_id: int, user_id: str | None, amount_cents: int) -> DiscountRedemption:
    """
    Count one use inside the caller's order transaction.

    The global counter moves with a conditional UPDATE, so two checkouts
    racing for the last use cannot both succeed. That UPDATE also holds the
    discount row until commit, so the per-user count taken after it sees
    every redemption committed by an earlier checkout.
    """
    now = utcnow()
    stmt = (
        update(Discount)
        .where(
            Discount.id == discount.id,
            or_(Discount.max_uses_total.is_(None), Discount.times_used < Discount.max_uses_total),
        )
        .values(
            times_used=Discount.times_used + 1,
            total_savings_cents=Discount.total_savings_cents + amount_cents,
            last_used_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if db.session.execute(stmt).rowcount == 0:
        raise DiscountRejected(USAGE_LIMIT_REACHED, "Discount usage limit reached")

    if discount.max_uses_per_user and user_id:
        if user_redemption_count(discount.id, user_id) >= discount.max_uses_per_user:
            raise DiscountRejected(USER_LIMIT_REACHED, "You have already used this discount code")

    redemption = DiscountRedemption(
        discount_id=discount.id,
        order_id=order_id,
        user_id=user_id,
        amount_cents=amount_cents,
        redeemed_at=now,
    )
    db.session.add(redemption)
    return redemption


# =============================================================================
# Admin CRUD
# =============================================================================

DISCOUNT_POLICY = ModelValidationPolicy(
    writable_fields={
        "code", "name", "discount_type", "discount_value",
        "min_order_cents", "max_spend_cents",
        "eligible_order_types", "eligible_branch_ids", "days_available",
        "max_uses_per_user", "max_uses_total",
        "starts_at", "ends_at", "is_active",
    },
    required_on_create={"code", "name", "discount_type", "discount_value"},
)


def _check_days(patch: dict) -> None:
    days = patch.get("days_available")
    if days:
        normalized = [str(d).strip().lower() for d in days]
        unknown = [d for d in normalized if d not in WEEKDAYS]
        if unknown:
            raise ValidationError(f"Unknown weekdays: {', '.join(unknown)}")
        patch["days_available"] = normalized


def get_discount(discount_id: int) -> Discount:
    discount = db.session.get(Discount, discount_id)
    if not discount:
        raise NotFoundError("Discount not found", details={"discount_id": discount_id})
    return discount


def list_discounts(*, active_only: bool = False) -> list[Discount]:
    query = db.session.query(Discount)
    if active_only:
        query = query.filter(Discount.is_active.is_(True))
    return query.order_by(Discount.created_at.desc(), Discount.id.desc()).all()


def create_discount(payload: dict, *, created_by: str | None = None) -> Discount:
    patch = validate_payload(model=Discount, payload=payload, policy=DISCOUNT_POLICY, partial=False)
    patch["code"] = normalize_code(patch["code"])
    enforce_rules_discount(patch)
    _check_days(patch)

    if find_by_code(patch["code"]):
        raise ConflictError("Discount code already exists", details={"code": patch["code"]})

    discount = Discount(created_by=created_by, times_used=0, total_savings_cents=0, **patch)
    db.session.add(discount)
    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Discount code already exists", details={"code": patch["code"]})
    return discount


def update_discount(discount_id: int, payload: dict) -> Discount:
    discount = get_discount(discount_id)
    patch = validate_payload(model=Discount, payload=payload, policy=DISCOUNT_POLICY, partial=True)
    if "code" in patch:
        patch["code"] = normalize_code(patch["code"])
        existing = find_by_code(patch["code"])
        if existing and existing.id != discount.id:
            raise ConflictError("Discount code already exists", details={"code": patch["code"]})

    # Cross-field rules are checked against the merged record
    merged = {k: getattr(discount, k) for k in DISCOUNT_POLICY.writable_fields}
    merged.update(patch)
    enforce_rules_discount(merged)
    _check_days(patch)

    def _op() -> Discount:
        for k, v in patch.items():
            setattr(discount, k, v)
        db.session.commit()
        return discount

    try:
        return run_with_retry(_op)
    except IntegrityError:
        db.session.rollback()
        raise ConflictError("Discount code already exists", details={"code": patch.get("code")})


def deactivate_discount(discount_id: int) -> Discount:
    discount = get_discount(discount_id)
    if discount.is_active:
        discount.is_active = False
        db.session.commit()
    return discount
