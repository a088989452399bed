# Overview: Pytest coverage for checkout, cancellation, refunds and fulfilment status.

import re
from datetime import timedelta

import pytest

from ordering import signals
from ordering.extensions import db
from ordering.models import Discount, Order, OrderEvent
from ordering.services import cart_service, discount_service, order_service, pricing_service, stock_service
from ordering.services.discount_service import DiscountRejected
from ordering.services.stock_service import StockShortfallError
from ordering.payments import PaymentGatewayError
from ordering.time_utils import utcnow
from ordering.validation import ConflictError, NotFoundError, ValidationError

from conftest import stock_of


USER = {"user_id": "user-42"}
GUEST = {"session_id": "sess-9"}
CONTACT = {"name": "Ada", "email": "ada@example.com"}


def _event_types(order_id):
    rows = db.session.query(OrderEvent).filter_by(order_id=order_id).order_by(OrderEvent.id).all()
    return [r.event_type for r in rows]


def _fill_cart(pizza, tiramisu, ident=USER):
    cart_service.add_item(product_id=pizza.id, quantity=2, **ident)
    cart_service.add_item(product_id=tiramisu.id, quantity=1, **ident)


class TestCheckout:
    def test_cash_checkout(self, gateway, pizza, tiramisu):
        _fill_cart(pizza, tiramisu)

        result = order_service.create_order(payment_method="cash_on_delivery", customer_notes="ring twice", **USER)
        order = result.order

        assert result.client_secret is None
        assert gateway.created == []
        assert order.subtotal_cents == 2550
        assert order.delivery_fee_cents == 500
        assert order.final_total_cents == 3050
        assert order.status == "pending"
        assert order.payment_status == "pending"
        assert order.stock_reserved is True
        assert re.fullmatch(r"SOH-\d{6}-0001", order.order_number)
        assert [l.unit_price_cents for l in order.lines] == [1000, 550]

        assert stock_of(tiramisu.id) == 4
        assert cart_service.get_cart(**USER) is None
        assert _event_types(order.id) == ["order_created"]

    def test_order_numbers_increment_per_branch(self, gateway, pizza):
        numbers = []
        for _ in range(3):
            cart_service.add_item(product_id=pizza.id, **USER)
            numbers.append(order_service.create_order(payment_method="cash_on_delivery", **USER).order.order_number)

        assert [n[-4:] for n in numbers] == ["0001", "0002", "0003"]
        assert len(set(numbers)) == 3

    def test_card_checkout_creates_intent_for_final_total(self, gateway, pizza):
        cart_service.add_item(product_id=pizza.id, quantity=3, **USER)

        result = order_service.create_order(payment_method="card", **USER)

        assert len(gateway.created) == 1
        assert gateway.created[0]["amount_cents"] == 3500
        assert gateway.created[0]["currency"] == "gbp"
        assert result.order.payment_intent_id == gateway.created[0]["intent_id"]
        assert result.client_secret == f"{result.order.payment_intent_id}_secret"

    def test_pickup_orders_have_no_delivery_fee(self, gateway, pizza):
        cart_service.add_item(product_id=pizza.id, **USER)
        cart_service.set_delivery(order_type="pickup", **USER)

        order = order_service.create_order(payment_method="cash_on_delivery", **USER).order
        assert order.delivery_fee_cents == 0
        assert order.final_total_cents == 1000

    def test_prices_are_re_resolved_at_checkout(self, gateway, pizza):
        cart_service.add_item(product_id=pizza.id, quantity=2, **USER)
        pricing_service.create_override(
            product_id=pizza.id,
            name="Flash sale",
            kind="fixed",
            value=700,
            starts_at=utcnow() - timedelta(minutes=5),
            ends_at=utcnow() + timedelta(hours=1),
        )

        order = order_service.create_order(payment_method="cash_on_delivery", **USER).order
        assert order.lines[0].unit_price_cents == 700
        assert order.lines[0].base_price_cents == 1000
        assert order.lines[0].price_override_id is not None
        assert order.subtotal_cents == 1400

    def test_attribute_prices_are_snapshotted_on_lines(self, gateway, pizza, extras):
        cart_service.add_item(
            product_id=pizza.id,
            quantity=2,
            attributes=[{"item_id": extras["cheese"].id}],
            **USER,
        )
        order = order_service.create_order(payment_method="cash_on_delivery", **USER).order

        line = order.lines[0]
        assert line.attribute_total_cents == 150
        assert line.line_total_cents == 2300
        assert line.attributes[0]["name"] == "Extra cheese"

    def test_discount_is_snapshotted(self, gateway, pizza, tiramisu):
        discount_service.create_discount({
            "code": "TENOFF", "name": "10%", "discount_type": "percentage", "discount_value": 10,
        })
        _fill_cart(pizza, tiramisu)

        order = order_service.create_order(payment_method="cash_on_delivery", discount_code="tenoff", **USER).order

        assert order.discount_code == "TENOFF"
        assert order.discount_amount_cents == 255
        assert order.discount_original_total_cents == 2550
        assert order.final_total_cents == 2550 - 255 + 500

        db.session.expire_all()
        assert db.session.query(Discount).filter_by(code="TENOFF").one().times_used == 1
        assert order.to_dict()["applied_discount"]["amount"] == "2.55"

    def test_order_snapshot_ignores_later_rule_changes(self, gateway, pizza, extras):
        discount = discount_service.create_discount({
            "code": "FIVER", "name": "Five off", "discount_type": "fixed", "discount_value": 500,
        })
        cart_service.add_item(product_id=pizza.id, attributes=[{"item_id": extras["cheese"].id}], **USER)
        order = order_service.create_order(payment_method="cash_on_delivery", discount_code="FIVER", **USER).order
        before = order.to_dict()

        pricing_service.create_override(
            product_id=pizza.id, name="Rise", kind="increase", value=300,
            starts_at=utcnow() - timedelta(minutes=1), ends_at=utcnow() + timedelta(hours=1),
        )
        discount_service.update_discount(discount.id, {"discount_value": 100})
        extras["cheese"].price_cents = 999
        db.session.commit()
        db.session.expire_all()

        after = order_service.get_order(order.id).to_dict()
        assert after["final_total_cents"] == before["final_total_cents"] == 1150 - 500 + 500
        assert after["lines"][0]["line_total_cents"] == before["lines"][0]["line_total_cents"]
        assert after["applied_discount"]["amount_cents"] == 500

    def test_rejected_discount_aborts_checkout(self, gateway, pizza):
        discount_service.create_discount({
            "code": "BIG", "name": "Big spend", "discount_type": "fixed", "discount_value": 500,
            "min_order_cents": 5000,
        })
        cart_service.add_item(product_id=pizza.id, **USER)

        with pytest.raises(DiscountRejected) as exc:
            order_service.create_order(payment_method="card", discount_code="BIG", **USER)

        assert exc.value.reason == "below_minimum_spend"
        assert gateway.created == []
        assert db.session.query(Order).count() == 0

    def test_shortfall_aborts_before_anything_is_created(self, gateway, pizza, tiramisu):
        cart_service.add_item(product_id=tiramisu.id, quantity=4, **USER)
        cart_service.add_item(product_id=tiramisu.id, quantity=2, **USER)

        with pytest.raises(StockShortfallError) as exc:
            order_service.create_order(payment_method="card", **USER)

        assert exc.value.details["items"][0]["requested"] == 6
        assert gateway.created == []
        assert db.session.query(Order).count() == 0
        assert stock_of(tiramisu.id) == 5
        assert cart_service.get_cart(**USER) is not None

    def test_lost_reservation_rolls_back_and_cancels_intent(self, gateway, pizza, tiramisu, monkeypatch):
        _fill_cart(pizza, tiramisu)

        def lose_race(items, strict=True):
            raise StockShortfallError("Insufficient stock", details={"items": []})

        monkeypatch.setattr(stock_service, "reserve", lose_race)

        with pytest.raises(StockShortfallError):
            order_service.create_order(payment_method="card", **USER)

        assert gateway.cancelled == [gateway.created[0]["intent_id"]]
        assert db.session.query(Order).count() == 0
        assert cart_service.get_cart(**USER) is not None

    def test_gateway_failure_leaves_nothing_behind(self, gateway, pizza):
        gateway.fail_create = True
        cart_service.add_item(product_id=pizza.id, **USER)

        with pytest.raises(PaymentGatewayError) as exc:
            order_service.create_order(payment_method="card", **USER)

        assert exc.value.timeout is True
        assert db.session.query(Order).count() == 0

    def test_guest_checkout_needs_contact(self, gateway, pizza):
        cart_service.add_item(product_id=pizza.id, **GUEST)

        with pytest.raises(ValidationError):
            order_service.create_order(payment_method="cash_on_delivery", guest={"name": "Ada"}, **GUEST)

        order = order_service.create_order(payment_method="cash_on_delivery", guest=CONTACT, **GUEST).order
        assert order.guest_email == "ada@example.com"
        assert order.user_id is None
        assert order.session_id == GUEST["session_id"]

    def test_empty_cart_and_bad_method(self, gateway, pizza):
        with pytest.raises(ValidationError):
            order_service.create_order(payment_method="cash_on_delivery", **USER)

        cart_service.add_item(product_id=pizza.id, **USER)
        with pytest.raises(ValidationError):
            order_service.create_order(payment_method="cheque", **USER)

    def test_order_created_signal_fires_after_commit(self, gateway, app, pizza):
        received = []

        def on_created(sender, order_id, order, **extra):
            received.append((order_id, order["order_number"], db.session.get(Order, order_id) is not None))

        signals.order_created.connect(on_created, sender=app)
        try:
            cart_service.add_item(product_id=pizza.id, **USER)
            order = order_service.create_order(payment_method="cash_on_delivery", **USER).order
        finally:
            signals.order_created.disconnect(on_created, sender=app)

        assert received == [(order.id, order.order_number, True)]


class TestCancel:
    def test_cancel_releases_stock_once(self, gateway, pizza, tiramisu):
        _fill_cart(pizza, tiramisu)
        order = order_service.create_order(payment_method="cash_on_delivery", **USER).order
        assert stock_of(tiramisu.id) == 4

        cancelled = order_service.cancel_order(order.id, reason="changed mind", **USER)
        assert cancelled.status == "cancelled"
        assert cancelled.stock_reserved is False
        assert stock_of(tiramisu.id) == 5

        with pytest.raises(ConflictError):
            order_service.cancel_order(order.id, **USER)
        assert stock_of(tiramisu.id) == 5

    def test_only_owner_or_staff_may_cancel(self, gateway, pizza):
        cart_service.add_item(product_id=pizza.id, **USER)
        order = order_service.create_order(payment_method="cash_on_delivery", **USER).order

        with pytest.raises(NotFoundError):
            order_service.cancel_order(order.id, user_id="someone-else")

        assert order_service.cancel_order(order.id, actor="staff-1", staff=True).status == "cancelled"

    def test_cancel_pending_card_order_cancels_intent(self, gateway, pizza):
        cart_service.add_item(product_id=pizza.id, **USER)
        order = order_service.create_order(payment_method="card", **USER).order

        order_service.cancel_order(order.id, **USER)
        assert gateway.cancelled == [order.payment_intent_id]
        assert gateway.refunds == []

    def test_cancel_paid_card_order_refunds(self, gateway, pizza):
        cart_service.add_item(product_id=pizza.id, **USER)
        order = order_service.create_order(payment_method="card", **USER).order
        order_service.handle_payment_event(intent_id=order.payment_intent_id, outcome="succeeded", event_id="evt_1")

        cancelled = order_service.cancel_order(order.id, **USER)

        assert cancelled.status == "cancelled"
        assert cancelled.payment_status == "refunded"
        assert cancelled.refund_id is not None
        assert gateway.refunds == [order.payment_intent_id]

    def test_failed_refund_keeps_cancellation_and_is_retried(self, gateway, pizza):
        cart_service.add_item(product_id=pizza.id, **USER)
        order = order_service.create_order(payment_method="card", **USER).order
        order_service.handle_payment_event(intent_id=order.payment_intent_id, outcome="succeeded")

        gateway.fail_refund = True
        cancelled = order_service.cancel_order(order.id, **USER)

        assert cancelled.status == "cancelled"
        assert cancelled.payment_status == "paid"
        assert cancelled.refund_error
        assert "refund_failed" in _event_types(order.id)

        gateway.fail_refund = False
        summary = order_service.reconcile_payments()
        assert summary.refunds_retried == 1
        assert summary.refunds_succeeded == 1
        assert order_service.get_order(order.id).payment_status == "refunded"


class TestRefund:
    def test_staff_refund_of_paid_order(self, gateway, pizza):
        cart_service.add_item(product_id=pizza.id, **USER)
        order = order_service.create_order(payment_method="card", **USER).order
        order_service.handle_payment_event(intent_id=order.payment_intent_id, outcome="succeeded")

        refunded = order_service.refund_order(order.id, actor="staff-1")
        assert refunded.payment_status == "refunded"

        with pytest.raises(ConflictError):
            order_service.refund_order(order.id)

    def test_refund_requires_paid_card_order(self, gateway, pizza):
        cart_service.add_item(product_id=pizza.id, **USER)
        order = order_service.create_order(payment_method="cash_on_delivery", **USER).order

        with pytest.raises(ConflictError):
            order_service.refund_order(order.id)

    def test_refund_gateway_failure_surfaces(self, gateway, pizza):
        cart_service.add_item(product_id=pizza.id, **USER)
        order = order_service.create_order(payment_method="card", **USER).order
        order_service.handle_payment_event(intent_id=order.payment_intent_id, outcome="succeeded")

        gateway.fail_refund = True
        with pytest.raises(PaymentGatewayError):
            order_service.refund_order(order.id)
        assert order_service.get_order(order.id).payment_status == "paid"


class TestStatus:
    def test_fulfilment_flow(self, gateway, pizza):
        cart_service.add_item(product_id=pizza.id, **USER)
        order = order_service.create_order(payment_method="cash_on_delivery", **USER).order

        order = order_service.update_status(order.id, status="processing", estimated_completion_minutes=25, actor="staff-1")
        assert order.status == "processing"
        assert order.estimated_completion_minutes == 25

        order = order_service.update_status(order.id, status="completed", internal_notes="handed to rider")
        assert order.status == "completed"
        assert order.completed_at is not None
        assert order.internal_notes == "handed to rider"

        with pytest.raises(ConflictError):
            order_service.update_status(order.id, status="processing")
        with pytest.raises(ConflictError):
            order_service.update_status(order.id, status="cancelled")

    def test_transition_tables(self):
        assert order_service.can_transition("pending", "processing")
        assert not order_service.can_transition("pending", "completed")
        assert not order_service.can_transition("cancelled", "pending")
        assert order_service.can_transition_payment("pending", "paid")
        assert not order_service.can_transition_payment("paid", "processing")
        assert not order_service.can_transition_payment("refunded", "paid")

    def test_invalid_status(self, gateway, pizza):
        cart_service.add_item(product_id=pizza.id, **USER)
        order = order_service.create_order(payment_method="cash_on_delivery", **USER).order
        with pytest.raises(ValidationError):
            order_service.update_status(order.id, status="shipped")

    def test_listing(self, gateway, pizza):
        for ident in (USER, GUEST):
            cart_service.add_item(product_id=pizza.id, **ident)
            order_service.create_order(payment_method="cash_on_delivery", guest=CONTACT, **ident)

        orders, total = order_service.list_orders(branch_id=pizza.branch_id, status="pending")
        assert total == 2
        assert len(orders) == 2

        mine = order_service.list_orders_for_owner(**GUEST)
        assert [o.session_id for o in mine] == [GUEST["session_id"]]
