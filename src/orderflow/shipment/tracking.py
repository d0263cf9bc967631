"""Shipment tracking: commands and handler.

Courier scan and document pushes, and the admin's answer to a failed
delivery attempt.
"""

import json

from protean import handle
from protean.fields import Identifier, String, Text

from orderflow.domain import orderflow
from orderflow.shipment.courier import CourierService
from orderflow.shipment.shipment import Shipment


@orderflow.command(part_of="Shipment")
class IngestScanEvent:
    """Record a tracking scan pushed by the courier."""

    waybill = String(required=True, max_length=100)
    status = String(required=True, max_length=255)
    timestamp = String(required=True, max_length=64)
    location = String(max_length=255)
    raw = Text()  # JSON of the original payload


@orderflow.command(part_of="Shipment")
class IngestShipmentDocument:
    waybill = String(required=True, max_length=100)
    doc_type = String(required=True, max_length=50)
    urls = Text(required=True)  # JSON list of document URLs


@orderflow.command(part_of="Shipment")
class TriggerNdrAction:
    """Tell the courier to reattempt delivery or return the parcel."""

    shipment_id = Identifier(required=True)
    action = String(required=True, max_length=20)
    remarks = String(max_length=500)


@orderflow.command_handler(part_of=Shipment)
class TrackingHandler:
    @handle(IngestScanEvent)
    def ingest_scan(self, command):
        raw = json.loads(command.raw) if command.raw else None
        return CourierService().ingest_scan(
            command.waybill,
            command.status,
            command.timestamp,
            location=command.location,
            raw=raw,
        )

    @handle(IngestShipmentDocument)
    def ingest_document(self, command):
        urls = json.loads(command.urls) if isinstance(command.urls, str) else command.urls
        return CourierService().ingest_document(command.waybill, command.doc_type, urls)

    @handle(TriggerNdrAction)
    def trigger_ndr(self, command):
        shipment = CourierService().trigger_ndr(command.shipment_id, command.action, command.remarks)
        return shipment.to_document()
