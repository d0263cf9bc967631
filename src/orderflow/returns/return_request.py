"""ReturnRequest aggregate: a buyer's request to send delivered items back.

State Machine:
    PENDING → APPROVED → PROCESSING → COMPLETED
    PROCESSING → APPROVED (refund failed; retryable)
    PENDING → REJECTED | CANCELLED
"""

from enum import Enum
from uuid import uuid4

from protean.exceptions import ValidationError
from protean.fields import DateTime, Dict, Float, HasMany, Identifier, Integer, List, String

from orderflow.domain import orderflow
from orderflow.errors import ConflictError
from orderflow.ledger.repository import LedgerRepository, document_of, load_element
from orderflow.payment.payment import RefundDestination
from orderflow.utils.timestamps import utcnow


class ReturnStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RefundStatus(Enum):
    NOT_STARTED = "not_started"
    PROCESSING = "processing"
    REFUNDED = "refunded"
    FAILED = "failed"


_VALID_TRANSITIONS = {
    ReturnStatus.PENDING: {ReturnStatus.APPROVED, ReturnStatus.REJECTED, ReturnStatus.CANCELLED},
    ReturnStatus.APPROVED: {ReturnStatus.PROCESSING},
    ReturnStatus.PROCESSING: {ReturnStatus.APPROVED, ReturnStatus.COMPLETED},
    ReturnStatus.REJECTED: set(),  # terminal
    ReturnStatus.COMPLETED: set(),  # terminal
    ReturnStatus.CANCELLED: set(),  # terminal
}

OPEN_RETURN_STATUSES = {ReturnStatus.PENDING, ReturnStatus.APPROVED, ReturnStatus.PROCESSING}


@orderflow.entity(part_of="ReturnRequest")
class ReturnItem:
    order_item_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)
    reason = String(max_length=500)
    paid_unit_price = Float(required=True, min_value=0.0)
    received_quantity = Integer(default=0, min_value=0)


@orderflow.aggregate
class ReturnRequest:
    order_id = Identifier(required=True)
    buyer_id = Identifier(required=True)
    items = HasMany(ReturnItem)
    reason = String(max_length=500)
    status = String(choices=ReturnStatus, default=ReturnStatus.PENDING.value)
    refund_amount = Float(default=0.0)
    refund_status = String(choices=RefundStatus, default=RefundStatus.NOT_STARTED.value)
    refund_reference = String(max_length=255)
    refund_failure = String(max_length=500)
    refund_method = String(choices=RefundDestination, default=RefundDestination.ORIGINAL.value)
    pickup_address = Dict()
    evidence_images = List(content_type=String)
    reverse_pickup_waybill = String(max_length=100)
    rejection_reason = String(max_length=500)
    requested_at = DateTime()
    approved_at = DateTime()
    rejected_at = DateTime()
    completed_at = DateTime()
    cancelled_at = DateTime()
    version = Integer(default=0)

    @classmethod
    def create(
        cls,
        order_id: str,
        buyer_id: str,
        items: list[dict],
        reason: str,
        evidence_images: list[str] | None = None,
        pickup_address: dict | None = None,
    ) -> "ReturnRequest":
        """Build a pending return.

        Args:
            items: dicts with order_item_id, quantity, paid_unit_price and an
                   optional per-item reason.
        """
        return cls(
            id=str(uuid4()),
            order_id=order_id,
            buyer_id=buyer_id,
            items=[
                ReturnItem(
                    id=str(uuid4()),
                    order_item_id=item["order_item_id"],
                    quantity=item["quantity"],
                    reason=item.get("reason") or reason,
                    paid_unit_price=item["paid_unit_price"],
                )
                for item in items
            ],
            reason=reason,
            pickup_address=pickup_address or {},
            evidence_images=list(evidence_images or []),
            requested_at=utcnow(),
        )

    # -------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------
    def _assert_can_transition(self, target_status: ReturnStatus) -> None:
        current = ReturnStatus(self.status)
        if target_status not in _VALID_TRANSITIONS.get(current, set()):
            raise ConflictError({"status": [f"Cannot move return from {current.value} to {target_status.value}"]})

    @property
    def is_open(self) -> bool:
        return ReturnStatus(self.status) in OPEN_RETURN_STATUSES

    def approve(self) -> None:
        self._assert_can_transition(ReturnStatus.APPROVED)
        self.status = ReturnStatus.APPROVED.value
        self.approved_at = utcnow()

    def record_reverse_pickup(self, waybill: str) -> None:
        self.reverse_pickup_waybill = waybill

    def reject(self, reason: str) -> None:
        if not reason:
            raise ValidationError({"reason": ["A rejection reason is required"]})
        self._assert_can_transition(ReturnStatus.REJECTED)
        self.status = ReturnStatus.REJECTED.value
        self.rejection_reason = reason
        self.rejected_at = utcnow()

    def cancel(self) -> None:
        self._assert_can_transition(ReturnStatus.CANCELLED)
        self.status = ReturnStatus.CANCELLED.value
        self.cancelled_at = utcnow()

    # -------------------------------------------------------------------
    # Receiving and refunding
    # -------------------------------------------------------------------
    def item_for(self, order_item_id: str) -> ReturnItem | None:
        return next((i for i in self.items if str(i.order_item_id) == str(order_item_id)), None)

    def refund_due(self, received: dict[str, int]) -> float:
        """Refund owed for ``received`` units; each must be within what was approved."""
        if not received:
            raise ValidationError({"received_items": ["At least one received item is required"]})
        total = 0.0
        for order_item_id, quantity in received.items():
            item = self.item_for(order_item_id)
            if item is None:
                raise ValidationError({"received_items": [f"Item {order_item_id} is not part of this return"]})
            if quantity < 1 or quantity > item.quantity:
                raise ValidationError(
                    {"received_items": [f"Received {quantity} of item {order_item_id}; approved {item.quantity}"]}
                )
            total += quantity * item.paid_unit_price
        return round(total, 2)

    def start_refund(
        self,
        received: dict[str, int],
        amount: float,
        refund_method: str = RefundDestination.ORIGINAL.value,
    ) -> None:
        if ReturnStatus(self.status) != ReturnStatus.PROCESSING:
            self._assert_can_transition(ReturnStatus.PROCESSING)
            self.status = ReturnStatus.PROCESSING.value
        for item in self.items:
            item.received_quantity = received.get(str(item.order_item_id), 0)
        self.refund_amount = amount
        self.refund_method = refund_method
        self.refund_status = RefundStatus.PROCESSING.value
        self.refund_failure = None

    def fail_refund(self, reason: str) -> None:
        self._assert_can_transition(ReturnStatus.APPROVED)
        self.status = ReturnStatus.APPROVED.value
        self.refund_status = RefundStatus.FAILED.value
        self.refund_failure = reason

    def complete_refund(self, reference: str | None) -> None:
        self._assert_can_transition(ReturnStatus.COMPLETED)
        self.status = ReturnStatus.COMPLETED.value
        self.refund_status = RefundStatus.REFUNDED.value
        self.refund_reference = reference
        self.completed_at = utcnow()

    @property
    def received_items(self) -> dict[str, int]:
        return {str(i.order_item_id): i.received_quantity for i in self.items if i.received_quantity}

    # -------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------
    def to_document(self) -> dict:
        return document_of(self)

    @classmethod
    def from_document(cls, document: dict, version: int = 0) -> "ReturnRequest":
        return load_element(cls, document, version=version)


class ReturnRequestRepository(LedgerRepository):
    table = "return_requests"
    aggregate_cls = ReturnRequest

    def owner_of(self, aggregate) -> str | None:
        return str(aggregate.order_id)
