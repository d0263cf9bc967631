"""Dispatch racing a cancellation: exactly one of them may win."""

import threading

import pytest

from orderflow.domain import orderflow
from orderflow.errors import ConflictError
from orderflow.order.order import OrderRepository, OrderStatus
from orderflow.order.state_machine import OrderStateMachine
from orderflow.shipment.courier import CourierService
from orderflow.shipment.shipment import ShipmentRepository


def test_cancel_during_courier_call_wins(place_order, carrier, monkeypatch):
    order = place_order()
    order_id = str(order.id)
    manifested = []
    create_shipment = carrier.create_shipment

    def _create_then_cancel(request):
        response = create_shipment(request)
        manifested.append(response["waybill"])
        OrderStateMachine().cancel(order_id, "buyer", "Changed my mind")
        return response

    monkeypatch.setattr(carrier, "create_shipment", _create_then_cancel)

    with pytest.raises(ConflictError):
        CourierService().dispatch(order_id)

    assert OrderRepository().get(order_id).status == OrderStatus.CANCELLED.value
    assert ShipmentRepository().find_by_owner(order_id) == []
    assert carrier.calls_to("cancel_shipment") == [("cancel_shipment", manifested[0])]


def test_cancel_after_dispatch_conflicts(place_order):
    order = place_order()
    CourierService().dispatch(str(order.id))

    with pytest.raises(ConflictError):
        OrderStateMachine().cancel(str(order.id), "buyer", "Too late")
    assert OrderRepository().get(order.id).status == OrderStatus.SHIPPED.value


def test_threaded_dispatch_and_cancel(place_order):
    order_id = str(place_order().id)
    start = threading.Barrier(2)
    outcomes = {}

    def _run(name, action):
        with orderflow.domain_context():
            start.wait()
            try:
                action()
                outcomes[name] = "ok"
            except ConflictError:
                outcomes[name] = "conflict"

    threads = [
        threading.Thread(target=_run, args=("dispatch", lambda: CourierService().dispatch(order_id))),
        threading.Thread(
            target=_run, args=("cancel", lambda: OrderStateMachine().cancel(order_id, "buyer", "Changed my mind"))
        ),
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert sorted(outcomes.values()) == ["conflict", "ok"]

    final = OrderRepository().get(order_id)
    active = ShipmentRepository().active_for_order(order_id)
    if outcomes["dispatch"] == "ok":
        assert final.status == OrderStatus.SHIPPED.value
        assert active is not None
    else:
        assert final.status == OrderStatus.CANCELLED.value
        assert active is None
