"""Exchange aggregate: delivered items swapped for different variants.

State Machine:
    REQUESTED/QC_PENDING → QC_PASSED | QC_FAILED
    QC_PASSED → PAYMENT_PENDING (replacement costs more) → COMPLETED
    QC_PASSED → COMPLETED (credit covers the replacement)
    any non-terminal → CANCELLED

The returned items are credited at what the buyer actually paid for them;
``price_difference`` is what the replacement costs on top of that credit and
is negative when the credit exceeds it.
"""

from enum import Enum
from uuid import uuid4

from protean.fields import DateTime, Float, HasMany, Identifier, Integer, List, String

from orderflow.domain import orderflow
from orderflow.errors import ConflictError
from orderflow.ledger.repository import LedgerRepository, document_of, load_element
from orderflow.utils.timestamps import utcnow


class ExchangeStatus(Enum):
    REQUESTED = "requested"
    QC_PENDING = "qc_pending"
    QC_PASSED = "qc_passed"
    QC_FAILED = "qc_failed"
    PAYMENT_PENDING = "payment_pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class QcStatus(Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


_VALID_TRANSITIONS = {
    ExchangeStatus.REQUESTED: {ExchangeStatus.QC_PASSED, ExchangeStatus.QC_FAILED, ExchangeStatus.CANCELLED},
    ExchangeStatus.QC_PENDING: {ExchangeStatus.QC_PASSED, ExchangeStatus.QC_FAILED, ExchangeStatus.CANCELLED},
    ExchangeStatus.QC_PASSED: {ExchangeStatus.PAYMENT_PENDING, ExchangeStatus.COMPLETED, ExchangeStatus.CANCELLED},
    ExchangeStatus.PAYMENT_PENDING: {ExchangeStatus.COMPLETED, ExchangeStatus.CANCELLED},
    ExchangeStatus.QC_FAILED: {ExchangeStatus.CANCELLED},
    ExchangeStatus.COMPLETED: set(),  # terminal
    ExchangeStatus.CANCELLED: set(),  # terminal
}

# Statuses in which the returned units are still spoken for
OPEN_EXCHANGE_STATUSES = {
    ExchangeStatus.REQUESTED,
    ExchangeStatus.QC_PENDING,
    ExchangeStatus.QC_PASSED,
    ExchangeStatus.PAYMENT_PENDING,
}


@orderflow.entity(part_of="Exchange")
class ExchangeItem:
    """An item from the original order being sent back."""

    order_item_id = Identifier(required=True)
    quantity = Integer(required=True, min_value=1)
    paid_unit_price = Float(required=True, min_value=0.0)


@orderflow.entity(part_of="Exchange")
class ReplacementItem:
    """A catalogue-priced line for the replacement order."""

    product_id = Identifier(required=True)
    variant_id = Identifier(required=True)
    title = String(required=True, max_length=255)
    unit_price = Float(required=True, min_value=0.0)
    quantity = Integer(required=True, min_value=1)
    size = String(max_length=20)
    color = String(max_length=50)


@orderflow.aggregate
class Exchange:
    order_id = Identifier(required=True)
    buyer_id = Identifier(required=True)
    items = HasMany(ExchangeItem)
    replacement_items = HasMany(ReplacementItem)
    reason = String(max_length=500)
    credit_amount = Float(default=0.0)
    replacement_total = Float(default=0.0)
    price_difference = Float(default=0.0)
    gateway = String(max_length=50)
    status = String(choices=ExchangeStatus, default=ExchangeStatus.REQUESTED.value)
    qc_status = String(choices=QcStatus, default=QcStatus.PENDING.value)
    qc_notes = String(max_length=1000)
    qc_images = List(content_type=String)
    difference_payment_id = Identifier()
    replacement_order_id = Identifier()
    excess_refund_reference = String(max_length=255)
    idempotency_key = String(max_length=255)
    requested_at = DateTime()
    qc_at = DateTime()
    completed_at = DateTime()
    cancelled_at = DateTime()
    version = Integer(default=0)

    @classmethod
    def create(
        cls,
        order_id: str,
        buyer_id: str,
        items: list[dict],
        replacement_items: list[dict],
        reason: str,
        gateway: str,
        idempotency_key: str | None = None,
    ) -> "Exchange":
        credit = round(sum(i["paid_unit_price"] * i["quantity"] for i in items), 2)
        replacement_total = round(sum(i["unit_price"] * i["quantity"] for i in replacement_items), 2)
        return cls(
            id=str(uuid4()),
            order_id=order_id,
            buyer_id=buyer_id,
            items=[
                ExchangeItem(
                    id=str(uuid4()),
                    order_item_id=i["order_item_id"],
                    quantity=i["quantity"],
                    paid_unit_price=i["paid_unit_price"],
                )
                for i in items
            ],
            replacement_items=[
                ReplacementItem(
                    id=str(uuid4()),
                    product_id=i["product_id"],
                    variant_id=i["variant_id"],
                    title=i["title"],
                    unit_price=i["unit_price"],
                    quantity=i["quantity"],
                    size=i.get("size"),
                    color=i.get("color"),
                )
                for i in replacement_items
            ],
            reason=reason,
            credit_amount=credit,
            replacement_total=replacement_total,
            price_difference=round(replacement_total - credit, 2),
            gateway=gateway,
            status=ExchangeStatus.QC_PENDING.value,
            idempotency_key=idempotency_key,
            requested_at=utcnow(),
        )

    def _assert_can_transition(self, target_status: ExchangeStatus) -> None:
        current = ExchangeStatus(self.status)
        if target_status not in _VALID_TRANSITIONS.get(current, set()):
            raise ConflictError({"status": [f"Cannot move exchange from {current.value} to {target_status.value}"]})

    @property
    def is_open(self) -> bool:
        return ExchangeStatus(self.status) in OPEN_EXCHANGE_STATUSES

    @property
    def excess_credit(self) -> float:
        return round(max(-self.price_difference, 0.0), 2)

    def record_qc(self, passed: bool, notes: str | None, images: list[str] | None) -> None:
        target = ExchangeStatus.QC_PASSED if passed else ExchangeStatus.QC_FAILED
        self._assert_can_transition(target)
        self.status = target.value
        self.qc_status = (QcStatus.PASSED if passed else QcStatus.FAILED).value
        self.qc_notes = notes
        self.qc_images = list(images or [])
        self.qc_at = utcnow()

    def await_payment(self, payment_id: str) -> None:
        self._assert_can_transition(ExchangeStatus.PAYMENT_PENDING)
        self.status = ExchangeStatus.PAYMENT_PENDING.value
        self.difference_payment_id = payment_id

    def complete(self, replacement_order_id: str) -> None:
        self._assert_can_transition(ExchangeStatus.COMPLETED)
        self.status = ExchangeStatus.COMPLETED.value
        self.replacement_order_id = replacement_order_id
        self.completed_at = utcnow()

    def cancel(self) -> None:
        self._assert_can_transition(ExchangeStatus.CANCELLED)
        self.status = ExchangeStatus.CANCELLED.value
        self.cancelled_at = utcnow()

    def replacement_lines(self) -> list[dict]:
        return [
            {
                "product_id": str(i.product_id),
                "variant_id": str(i.variant_id),
                "title": i.title,
                "unit_price": i.unit_price,
                "quantity": i.quantity,
                "size": i.size,
                "color": i.color,
            }
            for i in self.replacement_items
        ]

    def returned_quantities(self) -> dict[str, int]:
        return {str(i.order_item_id): i.quantity for i in self.items}

    # -------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------
    def to_document(self) -> dict:
        return document_of(self)

    @classmethod
    def from_document(cls, document: dict, version: int = 0) -> "Exchange":
        return load_element(cls, document, version=version)


class ExchangeRepository(LedgerRepository):
    table = "exchanges"
    aggregate_cls = Exchange

    def owner_of(self, aggregate) -> str | None:
        return str(aggregate.order_id)

    def lookup_key_of(self, aggregate) -> str | None:
        if aggregate.idempotency_key:
            return f"{aggregate.buyer_id}:{aggregate.idempotency_key}"
        return None

    def find_by_idempotency_key(self, buyer_id: str, idempotency_key: str) -> Exchange | None:
        return self.find_by_lookup_key(f"{buyer_id}:{idempotency_key}")
