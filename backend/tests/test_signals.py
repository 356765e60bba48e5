"""
Fulfillment event tests.

Events are best-effort: a failing receiver never breaks the operation.
"""

import pytest

from stockflow.errors import InsufficientStockError
from stockflow.services import allocation_service, request_service
from stockflow.signals import allocation_created, allocation_rolled_back, request_approved


def test_request_approved_event(db_session, issuer, verified_request):
    received = []

    def receiver(sender, **payload):
        received.append((sender, payload))

    req = verified_request(10)
    with request_approved.connected_to(receiver):
        request_service.approve_request(req.id, issuer.id)

    assert len(received) == 1
    sender, payload = received[0]
    assert sender.id == req.id
    assert payload["lot"].total_units == 10


def test_allocation_events(db_session, distributor, field_agent, product, approved_lot):
    created, rolled_back = [], []
    approved_lot(10)

    def on_created(sender, **payload):
        created.append(sender)

    def on_rolled_back(sender, **payload):
        rolled_back.append((sender, payload))

    with allocation_created.connected_to(on_created), allocation_rolled_back.connected_to(on_rolled_back):
        allocation_service.allocate(distributor.id, field_agent.id, product.id, 4)
        with pytest.raises(InsufficientStockError):
            allocation_service.allocate(distributor.id, field_agent.id, product.id, 50)

    assert [result.quantity for result in created] == [4]
    assert rolled_back == [(distributor.id, {
        "recipient_id": field_agent.id,
        "product_id": product.id,
        "requested": 50,
        "available": 6,
    })]


def test_failing_receiver_does_not_break_approval(db_session, issuer, verified_request):
    def broken(sender, **payload):
        raise RuntimeError("notification service down")

    req = verified_request(10)
    with request_approved.connected_to(broken):
        request_service.approve_request(req.id, issuer.id)

    assert req.status == "approved"
    assert req.lot is not None
