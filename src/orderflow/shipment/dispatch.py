"""Shipment dispatch: commands and handler.

Admin actions that create, schedule, edit or cancel shipments.
"""

import json

from protean import handle
from protean.fields import Identifier, String, Text

from orderflow.domain import orderflow
from orderflow.shipment.courier import CourierService
from orderflow.shipment.shipment import Shipment


@orderflow.command(part_of="Shipment")
class DispatchOrder:
    """Hand a confirmed order to the courier."""

    order_id = Identifier(required=True)
    pickup_location = String(max_length=100)


@orderflow.command(part_of="Shipment")
class RequestPickup:
    shipment_ids = Text(required=True)  # JSON list of shipment IDs
    pickup_date = String(max_length=10)


@orderflow.command(part_of="Shipment")
class CancelShipment:
    shipment_id = Identifier(required=True)


@orderflow.command(part_of="Shipment")
class BulkUpdateShipments:
    updates = Text(required=True)  # JSON list of {shipment_id, changes}


def _json(value):
    return json.loads(value) if isinstance(value, str) else value


@orderflow.command_handler(part_of=Shipment)
class DispatchHandler:
    @handle(DispatchOrder)
    def dispatch_order(self, command):
        shipment = CourierService().dispatch(command.order_id, command.pickup_location)
        return shipment.to_document()

    @handle(RequestPickup)
    def request_pickup(self, command):
        return CourierService().request_pickup(_json(command.shipment_ids), command.pickup_date)

    @handle(CancelShipment)
    def cancel_shipment(self, command):
        shipment = CourierService().cancel(command.shipment_id)
        return shipment.to_document()

    @handle(BulkUpdateShipments)
    def bulk_update(self, command):
        return CourierService().bulk_update(_json(command.updates))
