"""Courier Adapter: shipments, pickups, scans and non-delivery handling.

The courier is always called before the ledger is touched, so a courier
failure leaves nothing behind. Scan and document pushes are deduplicated on
their natural keys inside the same transaction that applies them.
"""

import re
import threading
import time
from collections import defaultdict
from datetime import datetime, timedelta

import structlog
from protean.exceptions import ObjectNotFoundError, ValidationError

from orderflow.carrier import get_carrier
from orderflow.config import get_settings
from orderflow.errors import AuthError, ConflictError, ExternalServiceError
from orderflow.ledger import get_ledger
from orderflow.order.order import Order, OrderRepository, OrderStatus, PaymentMethod
from orderflow.order.state_machine import OrderStateMachine
from orderflow.shipment.scans import normalize_scan_status, parse_scan_time
from orderflow.shipment.shipment import NdrAction, Shipment, ShipmentRepository, ShipmentStatus
from orderflow.utils.batch import run_batch
from orderflow.utils.timestamps import to_iso, utcnow

logger = structlog.get_logger(__name__)

_PINCODE = re.compile(r"^\d{6}$")
_PARCEL_FIELDS = {
    "weight",
    "length",
    "breadth",
    "height",
    "payment_mode",
    "cod_amount",
}


# ---------------------------------------------------------------------------
# Serviceability cache
# ---------------------------------------------------------------------------
class ServiceabilityCache:
    """Read-through TTL cache of pincode serviceability, keyed per courier."""

    def __init__(self) -> None:
        self._entries: dict[tuple[str, str], tuple[bool, float]] = {}
        self._lock = threading.Lock()

    def get(self, courier: str, pincode: str, ttl: int) -> bool | None:
        with self._lock:
            entry = self._entries.get((courier, pincode))
        if entry is None:
            return None
        serviceable, stored_at = entry
        if time.monotonic() - stored_at > ttl:
            return None
        return serviceable

    def put(self, courier: str, pincode: str, serviceable: bool) -> None:
        with self._lock:
            self._entries[(courier, pincode)] = (serviceable, time.monotonic())

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


serviceability_cache = ServiceabilityCache()


class CourierService:
    def __init__(self, ledger=None) -> None:
        self.ledger = ledger or get_ledger()
        self.orders = OrderRepository(self.ledger)
        self.shipments = ShipmentRepository(self.ledger)

    def get(self, shipment_id: str) -> Shipment:
        return self.shipments.get(shipment_id)

    # -------------------------------------------------------------------
    # Serviceability
    # -------------------------------------------------------------------
    def serviceability(self, pincode: str) -> bool:
        pincode = str(pincode or "").strip()
        if not _PINCODE.match(pincode):
            raise ValidationError({"pincode": ["Pincode must be 6 digits"]})

        carrier = get_carrier()
        ttl = get_settings().serviceability_cache_ttl
        cached = serviceability_cache.get(carrier.name, pincode, ttl)
        if cached is not None:
            return cached

        serviceable = carrier.check_serviceability(pincode)
        serviceability_cache.put(carrier.name, pincode, serviceable)
        return serviceable

    # -------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------
    def dispatch(self, order_id: str, pickup_location: str | None = None) -> Shipment:
        """Manifest a shipment with the courier and move the order to shipped.

        A shipped order whose shipment was cancelled may be dispatched again.
        """
        order = self.orders.get(order_id)
        status = OrderStatus(order.status)
        if status == OrderStatus.SHIPPED:
            active = self.shipments.active_for_order(order_id)
            if active is not None:
                raise ConflictError({"shipment": [f"Order {order_id} already has shipment {active.id}"]})
        elif status != OrderStatus.CONFIRMED:
            raise ConflictError({"status": [f"Order {order_id} is {order.status}; only confirmed orders ship"]})

        address = order.shipping_address
        if not self.serviceability(address.pincode):
            raise ValidationError({"pincode": [f"Pincode {address.pincode} is not serviceable"]})

        carrier = get_carrier()
        pickup_location = pickup_location or get_settings().default_pickup_location
        parcel = self._parcel_for(order)
        response = carrier.create_shipment(self._shipment_request(order, parcel, pickup_location))
        if response.get("error") or not response.get("waybill"):
            logger.warning("dispatch_rejected", order_id=order_id, reason=response.get("error"))
            raise ExternalServiceError({"carrier": [response.get("error") or "Courier returned no waybill"]})

        waybill = response["waybill"]
        shipment = Shipment.create(
            order_id=order_id,
            waybill=waybill,
            courier=carrier.name,
            pickup_location=pickup_location,
            label_url=response.get("label_url"),
            parcel=parcel,
        )
        try:
            with self.ledger.transaction():
                self.shipments.add(shipment)
                OrderStateMachine(self.ledger).mark_shipped(order_id, expected_version=order.version)
        except ConflictError:
            logger.warning("dispatch_lost_race", order_id=order_id, waybill=waybill)
            self._release_waybill(waybill)
            raise

        logger.info("order_dispatched", order_id=order_id, shipment_id=str(shipment.id), waybill=waybill)
        return shipment

    @staticmethod
    def _parcel_for(order: Order) -> dict:
        cod = order.payment_method == PaymentMethod.COD.value
        return {
            "weight": 0.5 * sum(item.quantity for item in order.items),
            "payment_mode": "COD" if cod else "Prepaid",
            "cod_amount": order.total if cod else 0.0,
        }

    @staticmethod
    def _shipment_request(order: Order, parcel: dict, pickup_location: str) -> dict:
        address = order.shipping_address
        return {
            "order_id": str(order.id),
            "consignee_name": address.name,
            "consignee_phone": address.phone,
            "address": ", ".join(part for part in (address.line1, address.line2) if part),
            "city": address.city,
            "state": address.state,
            "pincode": address.pincode,
            "country": address.country,
            "payment_mode": parcel["payment_mode"],
            "cod_amount": parcel["cod_amount"],
            "total_amount": order.total,
            "description": ", ".join(item.title for item in order.items),
            "quantity": sum(item.quantity for item in order.items),
            "weight": parcel["weight"],
            "pickup_location": pickup_location,
        }

    def _release_waybill(self, waybill: str) -> None:
        try:
            response = get_carrier().cancel_shipment(waybill)
        except ExternalServiceError:
            logger.error("orphan_waybill", waybill=waybill)
            return
        if not response.get("cancelled"):
            logger.error("orphan_waybill", waybill=waybill, reason=response.get("reason"))

    # -------------------------------------------------------------------
    # Pickups
    # -------------------------------------------------------------------
    def request_pickup(self, shipment_ids: list[str], pickup_date: str | None = None) -> list[dict]:
        """Book courier pickups, one request per pickup location.

        Returns one ``{id, ok, error}`` result per shipment id.
        """
        pickup_date = pickup_date or (utcnow().date() + timedelta(days=1)).isoformat()
        results: dict[str, dict] = {}
        groups: dict[str, list[Shipment]] = defaultdict(list)

        for shipment_id in shipment_ids:
            try:
                shipment = self.shipments.get(shipment_id)
            except ObjectNotFoundError:
                results[shipment_id] = {"id": shipment_id, "ok": False, "error": "Shipment not found"}
                continue
            if ShipmentStatus(shipment.status) != ShipmentStatus.CREATED:
                results[shipment_id] = {
                    "id": shipment_id,
                    "ok": False,
                    "error": f"Shipment is {shipment.status}; pickup needs created",
                }
                continue
            groups[shipment.pickup_location].append(shipment)

        pickup_ids: dict[str, str] = {}

        def _book(location: str) -> None:
            members = groups[location]
            response = get_carrier().request_pickup(location, [s.waybill for s in members], pickup_date)
            if response.get("error") or not response.get("pickup_id"):
                raise ExternalServiceError({"carrier": [response.get("error") or "Pickup was not booked"]})
            pickup_ids[location] = response["pickup_id"]

        booking_errors = {r["id"]: r["error"] for r in run_batch(list(groups), _book) if not r["ok"]}

        booked = []
        for location, members in groups.items():
            for shipment in members:
                if location in booking_errors:
                    results[str(shipment.id)] = {"id": str(shipment.id), "ok": False, "error": booking_errors[location]}
                else:
                    booked.append(shipment)

        def _schedule(shipment: Shipment) -> None:
            shipment.schedule_pickup(pickup_ids[shipment.pickup_location])
            self.shipments.save(shipment, ShipmentStatus.CREATED.value)

        for result in run_batch(booked, _schedule, key=lambda s: str(s.id)):
            results[result["id"]] = result

        logger.info(
            "pickups_requested",
            requested=len(shipment_ids),
            scheduled=sum(1 for r in results.values() if r["ok"]),
        )
        return [results[str(shipment_id)] for shipment_id in shipment_ids]

    # -------------------------------------------------------------------
    # Cancellation and edits
    # -------------------------------------------------------------------
    def cancel(self, shipment_id: str) -> Shipment:
        shipment = self.shipments.get(shipment_id)
        expected_status = shipment.status
        if ShipmentStatus(expected_status) not in (ShipmentStatus.CREATED, ShipmentStatus.PICKUP_SCHEDULED):
            raise ConflictError({"status": [f"Shipment cannot be cancelled once {expected_status}"]})

        response = get_carrier().cancel_shipment(shipment.waybill)
        if not response.get("cancelled"):
            raise ExternalServiceError({"carrier": [response.get("reason") or "Courier refused the cancellation"]})

        shipment.cancel()
        self.shipments.save(shipment, expected_status)
        logger.info("shipment_cancelled", shipment_id=shipment_id, order_id=str(shipment.order_id))
        return shipment

    def bulk_update(self, updates: list[dict]) -> list[dict]:
        """Edit parcel details for several shipments before pickup."""

        def _update(update: dict) -> None:
            changes = update.get("changes") or {}
            unknown = set(changes) - _PARCEL_FIELDS
            if not changes or unknown:
                raise ValidationError({"changes": [f"Unsupported parcel fields: {', '.join(sorted(unknown)) or 'none'}"]})

            shipment = self.shipments.get(update.get("shipment_id"))
            expected_status = shipment.status
            shipment.update_parcel(changes)
            response = get_carrier().update_shipment(shipment.waybill, changes)
            if not response.get("updated"):
                raise ExternalServiceError({"carrier": [response.get("error") or "Courier rejected the update"]})
            self.shipments.save(shipment, expected_status)

        return run_batch(updates, _update, key=lambda u: str(u.get("shipment_id")))

    # -------------------------------------------------------------------
    # Courier pushes
    # -------------------------------------------------------------------
    def authenticate_webhook(self, raw_body: str, signature: str | None) -> None:
        if not get_carrier().verify_webhook_signature(raw_body, signature or ""):
            logger.warning("carrier_webhook_rejected")
            raise AuthError({"signature": ["Invalid carrier webhook token"]})

    def ingest_scan(
        self,
        waybill: str,
        status: str,
        timestamp,
        location: str | None = None,
        raw: dict | None = None,
    ) -> str:
        """Record a courier scan; return ``applied``, ``recorded``, ``duplicate`` or ``ignored``."""
        if not waybill:
            raise ValidationError({"waybill": ["Waybill is required"]})
        if not status:
            raise ValidationError({"status": ["Scan status is required"]})
        occurred_at = parse_scan_time(timestamp)
        normalized = normalize_scan_status(status)
        log = logger.bind(waybill=waybill, raw_status=status, status=normalized)

        with self.ledger.transaction():
            if not self.ledger.claim_event("scan", f"{waybill}:{to_iso(occurred_at)}"):
                log.info("scan_duplicate")
                return "duplicate"

            shipment = self.shipments.find_by_waybill(waybill)
            if shipment is None:
                log.warning("scan_unknown_waybill")
                return "ignored"

            expected_status = shipment.status
            changed = shipment.record_scan(normalized, status, location, occurred_at, raw=raw)
            self.shipments.save(shipment, expected_status)

            if changed and shipment.status == ShipmentStatus.DELIVERED.value:
                self._complete_delivery(shipment, occurred_at)

        log.info("scan_ingested", shipment_id=str(shipment.id), applied=changed, shipment_status=shipment.status)
        return "applied" if changed else "recorded"

    def _complete_delivery(self, shipment: Shipment, delivered_at: datetime) -> None:
        from orderflow.payment.settlement import PaymentSettlement

        OrderStateMachine(self.ledger).mark_delivered(str(shipment.order_id), delivered_at)
        PaymentSettlement(self.ledger).collect_cash_on_delivery(str(shipment.order_id))

    def ingest_document(self, waybill: str, doc_type: str, urls: list[str]) -> str:
        """Attach courier documents (POD, labels); return ``recorded``, ``duplicate`` or ``ignored``."""
        if not waybill or not doc_type:
            raise ValidationError({"document": ["Waybill and document type are required"]})
        urls = [u for u in (urls or []) if u]
        if not urls:
            raise ValidationError({"urls": ["At least one document URL is required"]})

        with self.ledger.transaction():
            shipment = self.shipments.find_by_waybill(waybill)
            if shipment is None:
                logger.warning("document_unknown_waybill", waybill=waybill)
                return "ignored"

            fresh = [u for u in urls if self.ledger.claim_event("document", f"{waybill}:{doc_type}:{u}")]
            if not fresh:
                return "duplicate"

            expected_status = shipment.status
            for url in fresh:
                shipment.record_document(doc_type, url)
            self.shipments.save(shipment, expected_status)

        logger.info("documents_ingested", shipment_id=str(shipment.id), doc_type=doc_type, count=len(fresh))
        return "recorded"

    # -------------------------------------------------------------------
    # Non-delivery reports
    # -------------------------------------------------------------------
    def trigger_ndr(self, shipment_id: str, action: str, remarks: str | None = None) -> Shipment:
        """Send the admin's reattempt/RTO instruction to the courier and record it."""
        if action not in {a.value for a in NdrAction}:
            raise ValidationError({"action": [f"Unsupported NDR action: {action}"]})

        shipment = self.shipments.get(shipment_id)
        expected_status = shipment.status
        shipment.pending_ndr_case()

        response = get_carrier().submit_ndr_action(shipment.waybill, action, remarks)
        if not response.get("accepted"):
            raise ExternalServiceError({"carrier": [response.get("error") or "Courier rejected the NDR action"]})

        shipment.decide_ndr(action, response.get("reference"), remarks)
        self.shipments.save(shipment, expected_status)
        logger.info("ndr_action_recorded", shipment_id=shipment_id, action=action, reference=response.get("reference"))
        return shipment
