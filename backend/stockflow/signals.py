# Overview: Fulfillment events published for downstream consumers (notifications, reporting).

"""
Events are emitted, never awaited. Delivery is best-effort: a failing
receiver is logged and does not affect the operation that emitted the event.

- request.approved        sender: StockRequest, lot=Lot
- allocation.created      sender: AllocationResult
- allocation.rolled_back  sender: distributor id, plus shortfall details
"""

from __future__ import annotations

from blinker import Namespace
from flask import current_app

_signals = Namespace()

request_approved = _signals.signal("request.approved")
allocation_created = _signals.signal("allocation.created")
allocation_rolled_back = _signals.signal("allocation.rolled_back")


def emit(signal, sender, **payload) -> None:
    for receiver in signal.receivers_for(sender):
        try:
            receiver(sender, **payload)
        except Exception:
            current_app.logger.exception("Receiver %r failed for event %s", receiver, signal.name)
