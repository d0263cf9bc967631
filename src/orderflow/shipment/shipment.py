"""Shipment aggregate: one courier consignment for an order.

State Machine:
    CREATED → PICKUP_SCHEDULED → IN_TRANSIT → OUT_FOR_DELIVERY → DELIVERED
    OUT_FOR_DELIVERY ⇄ NDR (failed attempt, then reattempt)
    any in-flight state → RTO
    CREATED/PICKUP_SCHEDULED → CANCELLED

Scan events are always kept in arrival order. The status only follows a scan
when the move is allowed and the scan is newer than the last one applied
(terminal scans always win), so late or reordered webhooks never walk the
status backwards.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from protean.exceptions import ValidationError
from protean.fields import DateTime, Dict, Float, HasMany, Identifier, Integer, String, ValueObject

from orderflow.domain import orderflow
from orderflow.errors import ConflictError
from orderflow.ledger.repository import LedgerRepository, document_of, load_element
from orderflow.utils.timestamps import utcnow


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class ShipmentStatus(Enum):
    CREATED = "created"
    PICKUP_SCHEDULED = "pickup_scheduled"
    IN_TRANSIT = "in_transit"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    NDR = "ndr"
    RTO = "rto"
    CANCELLED = "cancelled"


class NdrAction(Enum):
    REATTEMPT = "reattempt"
    RTO = "rto"


_IN_FLIGHT = {
    ShipmentStatus.IN_TRANSIT,
    ShipmentStatus.OUT_FOR_DELIVERY,
    ShipmentStatus.DELIVERED,
    ShipmentStatus.NDR,
    ShipmentStatus.RTO,
}

_VALID_TRANSITIONS = {
    ShipmentStatus.CREATED: _IN_FLIGHT | {ShipmentStatus.PICKUP_SCHEDULED, ShipmentStatus.CANCELLED},
    ShipmentStatus.PICKUP_SCHEDULED: _IN_FLIGHT | {ShipmentStatus.CANCELLED},
    ShipmentStatus.IN_TRANSIT: _IN_FLIGHT - {ShipmentStatus.IN_TRANSIT},
    ShipmentStatus.OUT_FOR_DELIVERY: {ShipmentStatus.DELIVERED, ShipmentStatus.NDR, ShipmentStatus.RTO},
    ShipmentStatus.NDR: {
        ShipmentStatus.OUT_FOR_DELIVERY,
        ShipmentStatus.IN_TRANSIT,
        ShipmentStatus.DELIVERED,
        ShipmentStatus.RTO,
    },
    ShipmentStatus.DELIVERED: set(),  # terminal
    ShipmentStatus.RTO: set(),  # terminal
    ShipmentStatus.CANCELLED: set(),  # terminal
}

TERMINAL_STATUSES = {ShipmentStatus.DELIVERED, ShipmentStatus.RTO, ShipmentStatus.CANCELLED}
_CANCELLABLE_STATUSES = {ShipmentStatus.CREATED, ShipmentStatus.PICKUP_SCHEDULED}


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------
@orderflow.value_object(part_of="Shipment")
class Parcel:
    """Physical and billing details declared to the courier."""

    weight = Float(default=0.5)
    length = Float()
    breadth = Float()
    height = Float()
    payment_mode = String(max_length=20, default="Prepaid")
    cod_amount = Float(default=0.0)


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@orderflow.entity(part_of="Shipment")
class ScanEvent:
    """A courier scan as received; ``status`` is None when it carries no progress."""

    status = String(max_length=50)
    raw_status = String(max_length=255)
    location = String(max_length=255)
    occurred_at = DateTime(required=True)
    raw = Dict()


@orderflow.entity(part_of="Shipment")
class ShipmentDocument:
    doc_type = String(required=True, max_length=50)
    url = String(required=True, max_length=1000)
    received_at = DateTime()


@orderflow.entity(part_of="Shipment")
class NdrCase:
    """A failed delivery or return-to-origin awaiting an admin decision."""

    trigger = String(required=True, max_length=20)
    reason = String(max_length=500)
    opened_at = DateTime(required=True)
    decision = String(choices=NdrAction)
    decided_at = DateTime()
    reference = String(max_length=255)
    remarks = String(max_length=500)


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@orderflow.aggregate
class Shipment:
    order_id = Identifier(required=True)
    waybill = String(required=True, max_length=100)
    courier = String(required=True, max_length=50)
    status = String(choices=ShipmentStatus, default=ShipmentStatus.CREATED.value)
    pickup_location = String(max_length=100)
    pickup_reference = String(max_length=100)
    document_url = String(max_length=1000)
    parcel = ValueObject(Parcel)
    scan_events = HasMany(ScanEvent)
    documents = HasMany(ShipmentDocument)
    ndr_cases = HasMany(NdrCase)
    ndr_attempts = Integer(default=0)
    last_scan_at = DateTime()
    created_at = DateTime()
    delivered_at = DateTime()
    cancelled_at = DateTime()
    version = Integer(default=0)

    @classmethod
    def create(
        cls,
        order_id: str,
        waybill: str,
        courier: str,
        pickup_location: str,
        label_url: str | None = None,
        parcel: dict | None = None,
    ) -> "Shipment":
        return cls(
            id=str(uuid4()),
            order_id=order_id,
            waybill=waybill,
            courier=courier,
            pickup_location=pickup_location,
            document_url=label_url,
            parcel=Parcel(**(parcel or {})),
            created_at=utcnow(),
        )

    # -------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------
    def _assert_can_transition(self, target_status: ShipmentStatus) -> None:
        current = ShipmentStatus(self.status)
        if target_status not in _VALID_TRANSITIONS.get(current, set()):
            raise ConflictError({"status": [f"Cannot transition shipment from {current.value} to {target_status.value}"]})

    @property
    def is_active(self) -> bool:
        return ShipmentStatus(self.status) != ShipmentStatus.CANCELLED

    @property
    def is_terminal(self) -> bool:
        return ShipmentStatus(self.status) in TERMINAL_STATUSES

    def schedule_pickup(self, pickup_reference: str) -> None:
        self._assert_can_transition(ShipmentStatus.PICKUP_SCHEDULED)
        self.status = ShipmentStatus.PICKUP_SCHEDULED.value
        self.pickup_reference = pickup_reference

    def cancel(self) -> None:
        current = ShipmentStatus(self.status)
        if current not in _CANCELLABLE_STATUSES:
            raise ConflictError({"status": [f"Shipment cannot be cancelled once {current.value}"]})
        self.status = ShipmentStatus.CANCELLED.value
        self.cancelled_at = utcnow()

    def update_parcel(self, changes: dict) -> None:
        if ShipmentStatus(self.status) not in _CANCELLABLE_STATUSES:
            raise ConflictError({"status": [f"Parcel details are locked once {self.status}"]})
        current = self.parcel.to_dict() if self.parcel else {}
        self.parcel = Parcel(**{**current, **changes})

    def confirm_delivery(self, delivered_at: datetime | None = None) -> bool:
        """Mark delivered outside the scan feed (OTP handover); False if already delivered."""
        if ShipmentStatus(self.status) == ShipmentStatus.DELIVERED:
            return False
        self._assert_can_transition(ShipmentStatus.DELIVERED)
        self.status = ShipmentStatus.DELIVERED.value
        self.delivered_at = delivered_at or utcnow()
        return True

    # -------------------------------------------------------------------
    # Scans
    # -------------------------------------------------------------------
    def record_scan(
        self,
        status: str | None,
        raw_status: str,
        location: str | None,
        occurred_at: datetime,
        raw: dict | None = None,
    ) -> bool:
        """Append a scan and mirror it into the status when allowed.

        Returns True if the shipment status changed.
        """
        self.add_scan_events(
            ScanEvent(
                id=str(uuid4()),
                status=status,
                raw_status=raw_status,
                location=location,
                occurred_at=occurred_at,
                raw=raw or {},
            )
        )
        if status is None:
            return False

        target = ShipmentStatus(status)
        current = ShipmentStatus(self.status)
        newer = self.last_scan_at is None or occurred_at >= self.last_scan_at
        if target not in _VALID_TRANSITIONS.get(current, set()):
            return False
        if target not in TERMINAL_STATUSES and not newer:
            return False

        self.status = target.value
        if newer:
            self.last_scan_at = occurred_at
        if target == ShipmentStatus.DELIVERED:
            self.delivered_at = occurred_at
        elif target == ShipmentStatus.NDR:
            self.ndr_attempts = (self.ndr_attempts or 0) + 1
            self._open_ndr_case("ndr", raw_status, occurred_at)
        elif target == ShipmentStatus.RTO:
            self._open_ndr_case("rto", raw_status, occurred_at)
        return True

    def record_document(self, doc_type: str, url: str) -> None:
        self.add_documents(ShipmentDocument(id=str(uuid4()), doc_type=doc_type, url=url, received_at=utcnow()))
        if not self.document_url:
            self.document_url = url

    # -------------------------------------------------------------------
    # Non-delivery handling
    # -------------------------------------------------------------------
    def _open_ndr_case(self, trigger: str, reason: str | None, opened_at: datetime) -> None:
        self.add_ndr_cases(NdrCase(id=str(uuid4()), trigger=trigger, reason=reason, opened_at=opened_at))

    @property
    def open_ndr_case(self) -> NdrCase | None:
        return next((c for c in reversed(list(self.ndr_cases)) if not c.decision), None)

    def pending_ndr_case(self) -> NdrCase:
        if ShipmentStatus(self.status) not in (ShipmentStatus.NDR, ShipmentStatus.RTO):
            raise ConflictError({"status": [f"No failed delivery to act on; shipment is {self.status}"]})
        case = self.open_ndr_case
        if case is None:
            raise ValidationError({"ndr": ["No open non-delivery case awaiting a decision"]})
        return case

    def decide_ndr(self, action: str, reference: str | None, remarks: str | None) -> NdrCase:
        """Record the admin's reattempt/RTO decision; the courier's scans drive the status."""
        case = self.pending_ndr_case()
        case.decision = NdrAction(action).value
        case.decided_at = utcnow()
        case.reference = reference
        case.remarks = remarks
        return case

    # -------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------
    def to_document(self) -> dict:
        return document_of(self)

    @classmethod
    def from_document(cls, document: dict, version: int = 0) -> "Shipment":
        return load_element(cls, document, version=version)


class ShipmentRepository(LedgerRepository):
    table = "shipments"
    aggregate_cls = Shipment

    def owner_of(self, aggregate) -> str | None:
        return str(aggregate.order_id)

    def lookup_key_of(self, aggregate) -> str | None:
        return aggregate.waybill

    def find_by_waybill(self, waybill: str) -> Shipment | None:
        return self.find_by_lookup_key(waybill)

    def active_for_order(self, order_id: str) -> Shipment | None:
        return next((s for s in self.find_by_owner(order_id) if s.is_active), None)
