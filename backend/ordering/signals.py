"""
Order lifecycle signals for notification / UI-refresh subscribers.

Sent after the change is committed; the sender is the current Flask app
and the payload is the order id plus its serialized state.

    from ordering.signals import order_created

    @order_created.connect
    def on_created(app, order_id, order, **extra):
        ...
"""
from blinker import Namespace


_signals = Namespace()

order_created = _signals.signal("order_created")
order_updated = _signals.signal("order_updated")
order_cancelled = _signals.signal("order_cancelled")
order_payment_succeeded = _signals.signal("order_payment_succeeded")
order_payment_failed = _signals.signal("order_payment_failed")
order_payment_processing = _signals.signal("order_payment_processing")

BY_NAME = {
    "order_created": order_created,
    "order_updated": order_updated,
    "order_cancelled": order_cancelled,
    "order_payment_succeeded": order_payment_succeeded,
    "order_payment_failed": order_payment_failed,
    "order_payment_processing": order_payment_processing,
}
