# Overview: Pytest coverage for price resolution and price override administration.

from datetime import timedelta

import pytest

from ordering.extensions import db
from ordering.models import Branch, PriceOverride, Product
from ordering.services import pricing_service
from ordering.time_utils import WEEKDAYS, utcnow
from ordering.validation import ConflictError, NotFoundError


def _window(days_before=1, days_after=10):
    now = utcnow()
    return now - timedelta(days=days_before), now + timedelta(days=days_after)


def _create(product, kind="fixed", value=800, **kwargs):
    start, end = _window()
    params = dict(
        product_id=product.id,
        name=f"{kind} {value}",
        kind=kind,
        value=value,
        starts_at=kwargs.pop("starts_at", start),
        ends_at=kwargs.pop("ends_at", end),
    )
    params.update(kwargs)
    return pricing_service.create_override(**params)


class TestResolve:
    def test_base_price_without_overrides(self, pizza):
        res = pricing_service.resolve(pizza.id)
        assert res.effective_price_cents == 1000
        assert res.source_override_id is None

    def test_unknown_product(self, db_session):
        with pytest.raises(NotFoundError):
            pricing_service.resolve(999)

    def test_fixed_override_inside_window(self, pizza):
        result = _create(pizza, "fixed", 800)
        assert result.accepted

        res = pricing_service.resolve(pizza.id)
        assert res.effective_price_cents == 800
        assert res.source_override_id == result.override.id

    def test_window_is_half_open(self, pizza):
        start, end = _window()
        _create(pizza, "fixed", 800, starts_at=start, ends_at=end)

        assert pricing_service.resolve(pizza.id, start).effective_price_cents == 800
        assert pricing_service.resolve(pizza.id, end - timedelta(seconds=1)).effective_price_cents == 800
        assert pricing_service.resolve(pizza.id, end).effective_price_cents == 1000
        assert pricing_service.resolve(pizza.id, start - timedelta(seconds=1)).effective_price_cents == 1000

    @pytest.mark.parametrize("kind,value,is_percentage,expected", [
        ("increase", 250, False, 1250),
        ("decrease", 250, False, 750),
        ("decrease", 5000, False, 0),
        ("increase", 1000, True, 1100),
        ("decrease", 2500, True, 750),
        ("temporary", 499, False, 499),
    ])
    def test_kinds(self, pizza, kind, value, is_percentage, expected):
        result = _create(pizza, kind, value, is_percentage=is_percentage)
        assert result.accepted, result.message
        assert pricing_service.resolve(pizza.id).effective_price_cents == expected

    def test_inactive_and_deleted_overrides_are_ignored(self, pizza):
        result = _create(pizza, "fixed", 800)
        pricing_service.toggle_override(result.override.id)
        assert pricing_service.resolve(pizza.id).effective_price_cents == 1000

        pricing_service.toggle_override(result.override.id)
        pricing_service.delete_override(result.override.id)
        assert pricing_service.resolve(pizza.id).effective_price_cents == 1000

    def test_day_of_week_restriction_uses_branch_timezone(self, db_session):
        branch = Branch(name="Shibuya", code="SHB", timezone="Asia/Tokyo")
        db_session.add(branch)
        db_session.flush()
        product = Product(branch_id=branch.id, name="Ramen", base_price_cents=1200)
        db_session.add(product)
        db_session.commit()

        start, end = _window(days_before=1, days_after=14)
        # 16:00 UTC is 01:00 the next day in Tokyo
        at = (start + timedelta(days=2)).replace(hour=16, minute=0, second=0, microsecond=0)
        tokyo_day = WEEKDAYS[(at + timedelta(hours=9)).weekday()]

        result = _create(product, "fixed", 900, starts_at=start, ends_at=end, days_of_week=[tokyo_day])
        assert result.accepted

        assert pricing_service.resolve(product.id, at).effective_price_cents == 900
        assert pricing_service.resolve(product.id, at + timedelta(days=1)).effective_price_cents == 1200

    def test_time_window_wraps_past_midnight(self, pizza):
        start, end = _window(days_before=1, days_after=14)
        _create(pizza, "fixed", 700, starts_at=start, ends_at=end, time_start="22:00", time_end="02:00")

        day = (start + timedelta(days=2)).replace(minute=0, second=0, microsecond=0)
        assert pricing_service.resolve(pizza.id, day.replace(hour=23)).effective_price_cents == 700
        assert pricing_service.resolve(pizza.id, day.replace(hour=1)).effective_price_cents == 700
        assert pricing_service.resolve(pizza.id, day.replace(hour=12)).effective_price_cents == 1000

    def test_effective_prices_for_branch(self, pizza, tiramisu):
        _create(pizza, "fixed", 800)

        prices = {p.product_id: p.effective_price_cents for p in pricing_service.effective_prices(pizza.branch_id)}
        assert prices == {pizza.id: 800, tiramisu.id: 550}


class TestOverrideWrites:
    def test_new_override_supersedes_overlapping(self, pizza):
        first = _create(pizza, "fixed", 800)
        second = _create(pizza, "decrease", 100)

        assert second.accepted
        assert second.superseded_ids == [first.override.id]

        db.session.expire_all()
        old = db.session.get(PriceOverride, first.override.id)
        assert old.active is False
        assert old.superseded_by_id == second.override.id
        assert pricing_service.resolve(pizza.id).effective_price_cents == 900

    def test_at_most_one_active_overlapping_override(self, pizza):
        for value in (800, 700, 600):
            _create(pizza, "fixed", value)

        active = (
            db.session.query(PriceOverride)
            .filter_by(product_id=pizza.id, active=True, deleted=False)
            .all()
        )
        assert [o.value for o in active] == [600]

    def test_non_overlapping_windows_both_stay_active(self, pizza):
        now = utcnow()
        a = _create(pizza, "fixed", 800, starts_at=now - timedelta(hours=1), ends_at=now + timedelta(days=1))
        b = _create(pizza, "fixed", 700, starts_at=now + timedelta(days=1), ends_at=now + timedelta(days=2))

        assert b.superseded_ids == []
        db.session.expire_all()
        assert db.session.get(PriceOverride, a.override.id).active is True

    @pytest.mark.parametrize("kwargs,reason", [
        ({"kind": "bogus"}, "invalid_kind"),
        ({"value": -1}, "invalid_value"),
        ({"kind": "fixed", "is_percentage": True}, "invalid_value"),
        ({"kind": "decrease", "value": 10001, "is_percentage": True}, "invalid_value"),
        ({"days_of_week": ["funday"]}, "invalid_restriction"),
        ({"time_start": "22:00"}, "invalid_restriction"),
        ({"time_start": 1100, "time_end": 1400}, "invalid_restriction"),
        ({"name": "  "}, "invalid_name"),
    ])
    def test_rejections(self, pizza, kwargs, reason):
        params = {"kind": "fixed", "value": 800}
        params.update(kwargs)
        kind = params.pop("kind")
        value = params.pop("value")
        result = _create(pizza, kind, value, **params)

        assert result.accepted is False
        assert result.reason == reason
        assert db.session.query(PriceOverride).count() == 0

    def test_inverted_and_lapsed_windows_rejected(self, pizza):
        now = utcnow()
        inverted = _create(pizza, starts_at=now + timedelta(days=2), ends_at=now + timedelta(days=1))
        lapsed = _create(pizza, starts_at=now - timedelta(days=2), ends_at=now - timedelta(days=1))

        assert inverted.reason == "invalid_window"
        assert lapsed.reason == "window_lapsed"

    def test_branch_mismatch_and_unknown_product(self, pizza, other_branch):
        mismatch = _create(pizza, branch_id=other_branch.id)
        assert mismatch.reason == "branch_mismatch"

        start, end = _window()
        missing = pricing_service.create_override(
            product_id=999, name="x", kind="fixed", value=1, starts_at=start, ends_at=end,
        )
        assert missing.reason == "product_not_found"

    def test_update_reruns_supersede(self, pizza):
        now = utcnow()
        a = _create(pizza, "fixed", 800, starts_at=now - timedelta(hours=1), ends_at=now + timedelta(days=1))
        b = _create(pizza, "fixed", 700, starts_at=now + timedelta(days=2), ends_at=now + timedelta(days=3))

        result = pricing_service.update_override(b.override.id, {"starts_at": now - timedelta(hours=2)})

        assert result.accepted
        assert result.superseded_ids == [a.override.id]
        assert pricing_service.resolve(pizza.id).effective_price_cents == 700

    def test_update_rejects_unknown_fields(self, pizza):
        result = _create(pizza)
        update = pricing_service.update_override(result.override.id, {"kind": "increase"})
        assert update.reason == "invalid_field"

    def test_deleted_override_cannot_be_edited(self, pizza):
        result = _create(pizza)
        pricing_service.delete_override(result.override.id)

        with pytest.raises(ConflictError):
            pricing_service.update_override(result.override.id, {"value": 100})
        with pytest.raises(ConflictError):
            pricing_service.toggle_override(result.override.id)

    def test_toggle_on_supersedes(self, pizza):
        a = _create(pizza, "fixed", 800)
        b = _create(pizza, "fixed", 700)  # supersedes a

        result = pricing_service.toggle_override(a.override.id)
        assert result.override.active is True
        assert result.superseded_ids == [b.override.id]
        assert pricing_service.resolve(pizza.id).effective_price_cents == 800

    def test_writes_lock_the_product_row(self, pizza, monkeypatch):
        locked = []
        real_lock = pricing_service.lock_for_update

        def spy(query):
            locked.append(query.column_descriptions[0]["entity"])
            return real_lock(query)

        monkeypatch.setattr(pricing_service, "lock_for_update", spy)

        result = _create(pizza, "fixed", 800)
        pricing_service.update_override(result.override.id, {"value": 750})
        pricing_service.toggle_override(result.override.id)

        assert locked == [Product, Product, Product]

    def test_delete_is_soft_and_listed_separately(self, pizza):
        keep = _create(pizza, "fixed", 800)
        gone = _create(pizza, "fixed", 700)
        pricing_service.delete_override(gone.override.id)
        pricing_service.delete_override(gone.override.id)  # idempotent

        live, deleted = pricing_service.list_overrides(product_id=pizza.id, include_deleted=True)
        assert [o.id for o in live] == [keep.override.id]
        assert [o.id for o in deleted] == [gone.override.id]
        assert deleted[0].deleted_at is not None

    def test_bulk_temporary_collects_failures(self, pizza, tiramisu):
        start, end = _window()
        outcome = pricing_service.apply_bulk_temporary(
            branch_id=pizza.branch_id,
            starts_at=start,
            ends_at=end,
            items=[
                {"product_id": pizza.id, "price_cents": 650},
                {"product_id": 999, "price_cents": 100},
                {"price_cents": 100},
            ],
        )

        assert len(outcome["applied"]) == 1
        assert [f["reason"] for f in outcome["failed"]] == ["product_not_found", "invalid_item"]
        assert pricing_service.resolve(pizza.id).effective_price_cents == 650
        assert outcome["applied"][0]["override"]["auto_revert"] is True


class TestSweep:
    def test_sweep_deactivates_expired_auto_revert_once(self, pizza):
        result = _create(pizza, "temporary", 500, auto_revert=True)
        keep = _create(pizza, "fixed", 800, starts_at=utcnow() + timedelta(days=20), ends_at=utcnow() + timedelta(days=21))
        assert keep.accepted

        override = db.session.get(PriceOverride, result.override.id)
        override.ends_at = utcnow() - timedelta(minutes=1)
        db.session.commit()

        assert pricing_service.sweep_expired() == 1
        assert pricing_service.sweep_expired() == 0

        db.session.expire_all()
        assert db.session.get(PriceOverride, result.override.id).active is False
        assert db.session.get(PriceOverride, keep.override.id).active is True
