"""
Order event ledger.

- Append-only: rows are never updated or deleted.
- Events are written inside the same DB transaction as the change they record.
- Signals are only sent once that transaction has committed (send_pending).
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from flask import current_app, g

from ..extensions import db
from ..models import Order, OrderEvent
from .. import signals
from ..time_utils import utcnow


def append_order_event(
    order: Order,
    event_type: str,
    *,
    actor: str | None = None,
    note: Optional[str] = None,
    payload: Optional[dict] = None,
    occurred_at: Optional[datetime] = None,
    signal: bool = True,
) -> OrderEvent:
    """Write one ledger row; queue the matching signal for after commit."""
    if order.id is None:
        db.session.flush()

    ev = OrderEvent(
        order_id=order.id,
        branch_id=order.branch_id,
        event_type=event_type,
        actor=actor,
        note=note,
        payload=payload,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(ev)

    if signal and event_type in signals.BY_NAME:
        pending = g.setdefault("pending_order_signals", [])
        pending.append((event_type, order.id))
    return ev


def discard_pending() -> None:
    g.pop("pending_order_signals", None)


def send_pending() -> None:
    """Send queued signals. Call after a successful commit."""
    pending = g.pop("pending_order_signals", [])
    if not pending:
        return

    app = current_app._get_current_object()
    for event_type, order_id in pending:
        order = db.session.get(Order, order_id)
        signals.BY_NAME[event_type].send(
            app,
            order_id=order_id,
            order=order.to_dict() if order else None,
        )


def list_order_events(order_id: int) -> list[OrderEvent]:
    return (
        db.session.query(OrderEvent)
        .filter_by(order_id=order_id)
        .order_by(OrderEvent.occurred_at.asc(), OrderEvent.id.asc())
        .all()
    )
