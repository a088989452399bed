# Overview: Pytest coverage for discount code validation, precedence and redemption caps.

from datetime import timedelta

import pytest

from ordering.extensions import db
from ordering.models import Discount, DiscountRedemption
from ordering.services import discount_service
from ordering.services.discount_service import DiscountRejected
from ordering.time_utils import WEEKDAYS, utcnow
from ordering.validation import ConflictError, NotFoundError, ValidationError


def _discount(**overrides):
    payload = {
        "code": "save10",
        "name": "Save 10%",
        "discount_type": "percentage",
        "discount_value": 10,
    }
    payload.update(overrides)
    return discount_service.create_discount(payload, created_by="staff-1")


def _check(code="SAVE10", subtotal=2000, order_type="delivery", branch_id=None, user_id="user-1", at=None):
    return discount_service.validate(
        code,
        subtotal_cents=subtotal,
        order_type=order_type,
        branch_id=branch_id,
        user_id=user_id,
        at=at,
    )


class TestValidate:
    def test_valid_code_is_case_insensitive(self, branch):
        _discount()
        check = _check("  Save10 ", branch_id=branch.id)
        assert check.valid
        assert check.discount.code == "SAVE10"

    def test_unknown_and_inactive(self, branch):
        assert _check("NOPE", branch_id=branch.id).reason == "not_found"

        discount = _discount()
        discount_service.deactivate_discount(discount.id)
        assert _check(branch_id=branch.id).reason == "inactive"

    def test_active_window(self, branch):
        now = utcnow()
        _discount(starts_at=(now + timedelta(days=1)).isoformat(), ends_at=(now + timedelta(days=2)).isoformat())

        assert _check(branch_id=branch.id, at=now).reason == "not_started"
        assert _check(branch_id=branch.id, at=now + timedelta(days=1, hours=1)).valid
        assert _check(branch_id=branch.id, at=now + timedelta(days=2)).reason == "expired"

    def test_days_available(self, branch):
        now = utcnow()
        today = WEEKDAYS[now.weekday()]
        tomorrow = WEEKDAYS[(now.weekday() + 1) % 7]
        _discount(days_available=[tomorrow])

        assert _check(branch_id=branch.id, at=now).reason == "day_not_available"
        assert _check(branch_id=branch.id, at=now + timedelta(days=1)).valid
        assert today != tomorrow

    def test_branch_and_order_type_eligibility(self, branch, other_branch):
        _discount(eligible_branch_ids=[branch.id], eligible_order_types=["pickup"])

        assert _check(branch_id=other_branch.id, order_type="pickup").reason == "branch_not_eligible"
        assert _check(branch_id=branch.id, order_type="delivery").reason == "order_type_not_eligible"
        assert _check(branch_id=branch.id, order_type="pickup").valid

    def test_spend_bounds(self, branch):
        _discount(min_order_cents=1500, max_spend_cents=5000)

        assert _check(branch_id=branch.id, subtotal=1499).reason == "below_minimum_spend"
        assert _check(branch_id=branch.id, subtotal=1500).valid
        assert _check(branch_id=branch.id, subtotal=5000).valid
        assert _check(branch_id=branch.id, subtotal=5001).reason == "above_maximum_spend"

    def test_first_failing_check_wins(self, branch, other_branch):
        _discount(eligible_branch_ids=[branch.id], min_order_cents=5000)

        # Fails both branch and minimum spend; branch is checked first
        assert _check(branch_id=other_branch.id, subtotal=100).reason == "branch_not_eligible"

    def test_per_user_cap_requires_login(self, branch):
        discount = _discount(max_uses_per_user=1)

        assert _check(branch_id=branch.id, user_id=None).reason == "login_required"
        assert _check(branch_id=branch.id, user_id="user-1").valid

        db.session.add(DiscountRedemption(discount_id=discount.id, order_id=1, user_id="user-1", amount_cents=200))
        db.session.commit()

        assert _check(branch_id=branch.id, user_id="user-1").reason == "user_limit_reached"
        assert _check(branch_id=branch.id, user_id="user-2").valid

    def test_global_cap(self, branch):
        discount = _discount(max_uses_total=1)
        discount.times_used = 1
        db.session.commit()

        assert _check(branch_id=branch.id).reason == "usage_limit_reached"

    def test_raise_if_invalid(self, branch):
        with pytest.raises(DiscountRejected) as exc:
            _check("MISSING", branch_id=branch.id).raise_if_invalid()
        assert exc.value.reason == "not_found"
        assert exc.value.details["reason"] == "not_found"


class TestAmounts:
    def test_percentage_rounds_half_up(self, db_session):
        discount = _discount(discount_value=15)
        # 15% of 1010 = 151.5
        assert discount_service.calculate_amount(discount, 1010) == 152

    def test_fixed_amount_never_exceeds_subtotal(self, db_session):
        discount = _discount(code="FIVER", discount_type="fixed", discount_value=500)
        assert discount_service.calculate_amount(discount, 2000) == 500
        assert discount_service.calculate_amount(discount, 300) == 300
        assert discount_service.calculate_amount(discount, 0) == 0

    def test_preview(self, branch):
        _discount()
        preview = discount_service.preview(
            "save10", subtotal_cents=2550, order_type="delivery", branch_id=branch.id, user_id=None,
        )
        assert preview["amount_cents"] == 255
        assert preview["original_total_cents"] == 2550
        assert preview["new_total_cents"] == 2295
        assert preview["amount"] == "2.55"


class TestRedemption:
    def test_record_redemption_counts_usage(self, db_session):
        discount = _discount()
        discount_service.record_redemption(discount, order_id=7, user_id="user-1", amount_cents=250)
        db.session.commit()

        db.session.expire_all()
        stored = db.session.get(Discount, discount.id)
        assert stored.times_used == 1
        assert stored.total_savings_cents == 250
        assert discount_service.user_redemption_count(discount.id, "user-1") == 1

    def test_global_cap_holds_at_redemption_time(self, db_session):
        discount = _discount(max_uses_total=1)
        discount_service.record_redemption(discount, order_id=1, user_id=None, amount_cents=100)
        db.session.commit()

        with pytest.raises(DiscountRejected) as exc:
            discount_service.record_redemption(discount, order_id=2, user_id=None, amount_cents=100)
        db.session.rollback()
        assert exc.value.reason == "usage_limit_reached"

    def test_per_user_cap_holds_at_redemption_time(self, db_session):
        discount = _discount(max_uses_per_user=1)
        # Both checkouts validated before either redeemed
        assert _check(user_id="user-1").valid
        discount_service.record_redemption(discount, order_id=1, user_id="user-1", amount_cents=100)
        db.session.commit()

        with pytest.raises(DiscountRejected) as exc:
            discount_service.record_redemption(discount, order_id=2, user_id="user-1", amount_cents=100)
        db.session.rollback()
        assert exc.value.reason == "user_limit_reached"

        discount_service.record_redemption(discount, order_id=3, user_id="user-2", amount_cents=100)
        db.session.commit()
        db.session.expire_all()
        assert db.session.get(Discount, discount.id).times_used == 2
        assert discount_service.user_redemption_count(discount.id, "user-1") == 1


class TestAdmin:
    def test_duplicate_code_is_case_insensitive(self, db_session):
        _discount(code="summer")
        with pytest.raises(ConflictError):
            _discount(code="SUMMER")

    @pytest.mark.parametrize("payload", [
        {"discount_type": "bogo"},
        {"discount_value": 150},
        {"discount_value": -5},
        {"eligible_order_types": ["drone"]},
        {"days_available": ["someday"]},
        {"unknown": 1},
    ])
    def test_create_validation(self, db_session, payload):
        with pytest.raises(ValidationError):
            _discount(**payload)

    def test_update_and_deactivate(self, db_session):
        discount = _discount()
        updated = discount_service.update_discount(discount.id, {"discount_value": 20, "code": "save20"})
        assert updated.discount_value == 20
        assert updated.code == "SAVE20"

        discount_service.deactivate_discount(discount.id)
        assert discount_service.get_discount(discount.id).is_active is False
        assert discount_service.list_discounts(active_only=True) == []

        with pytest.raises(NotFoundError):
            discount_service.get_discount(999)
