"""Payment aggregate: one settlement attempt against a gateway.

State Machine:
    PENDING → AUTHORIZED → CAPTURED → REFUNDED
    PENDING/AUTHORIZED → FAILED → PENDING (retry)
    COD_PENDING → CAPTURED (cash collected at delivery)

A checkout retry never revives a failed record; it opens a new Payment. Partial
refunds keep the payment CAPTURED and accumulate ``refunded_amount`` until the
full amount has gone back, at which point it becomes REFUNDED.
"""

from enum import Enum
from uuid import uuid4

from protean.exceptions import ValidationError
from protean.fields import DateTime, Float, HasMany, Identifier, Integer, String

from orderflow.domain import orderflow
from orderflow.errors import ConflictError
from orderflow.ledger.repository import LedgerRepository, document_of, load_element
from orderflow.utils.timestamps import utcnow


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class PaymentStatus(Enum):
    PENDING = "pending"
    COD_PENDING = "cod_pending"
    AUTHORIZED = "authorized"
    CAPTURED = "captured"
    FAILED = "failed"
    REFUNDED = "refunded"


class PaymentPurpose(Enum):
    ORDER = "order"
    EXCHANGE_DIFFERENCE = "exchange_difference"


class RefundDestination(Enum):
    ORIGINAL = "original"
    WALLET = "wallet"


_VALID_TRANSITIONS = {
    PaymentStatus.PENDING: {PaymentStatus.AUTHORIZED, PaymentStatus.CAPTURED, PaymentStatus.FAILED},
    PaymentStatus.COD_PENDING: {PaymentStatus.CAPTURED},
    PaymentStatus.AUTHORIZED: {PaymentStatus.CAPTURED, PaymentStatus.FAILED},
    PaymentStatus.CAPTURED: {PaymentStatus.REFUNDED},
    PaymentStatus.FAILED: {PaymentStatus.PENDING},
    PaymentStatus.REFUNDED: set(),  # terminal
}

_OPEN_STATUSES = {PaymentStatus.PENDING, PaymentStatus.COD_PENDING, PaymentStatus.AUTHORIZED}


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@orderflow.entity(part_of="Payment")
class Refund:
    """A refund the gateway has confirmed."""

    amount = Float(required=True, min_value=0.01)
    reason = String(max_length=500)
    gateway_refund_id = String(max_length=255)
    destination = String(choices=RefundDestination, default=RefundDestination.ORIGINAL.value)
    idempotency_key = String(max_length=255)
    created_at = DateTime()


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@orderflow.aggregate
class Payment:
    order_id = Identifier(required=True)
    purpose = String(choices=PaymentPurpose, default=PaymentPurpose.ORDER.value)
    exchange_id = Identifier()
    gateway = String(required=True, max_length=50)
    gateway_order_id = String(max_length=255)
    gateway_payment_id = String(max_length=255)
    signature = String(max_length=512)
    amount = Float(required=True, min_value=0.0)
    refunded_amount = Float(default=0.0)
    currency = String(max_length=3, default="INR")
    status = String(choices=PaymentStatus, default=PaymentStatus.PENDING.value)
    idempotency_key = String(max_length=255)
    failure_reason = String(max_length=500)
    refunds = HasMany(Refund)
    created_at = DateTime()
    captured_at = DateTime()
    version = Integer(default=0)

    @classmethod
    def create(
        cls,
        order_id: str,
        gateway: str,
        amount: float,
        currency: str = "INR",
        cash_on_delivery: bool = False,
        gateway_order_id: str | None = None,
        purpose: str = PaymentPurpose.ORDER.value,
        exchange_id: str | None = None,
    ) -> "Payment":
        return cls(
            id=str(uuid4()),
            order_id=order_id,
            purpose=purpose,
            exchange_id=exchange_id,
            gateway=gateway,
            gateway_order_id=gateway_order_id,
            amount=amount,
            currency=currency,
            status=(PaymentStatus.COD_PENDING.value if cash_on_delivery else PaymentStatus.PENDING.value),
            created_at=utcnow(),
        )

    # -------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------
    def _assert_can_transition(self, target_status: PaymentStatus) -> None:
        current = PaymentStatus(self.status)
        if target_status not in _VALID_TRANSITIONS.get(current, set()):
            raise ConflictError({"status": [f"Cannot transition payment from {current.value} to {target_status.value}"]})

    @property
    def is_open(self) -> bool:
        return PaymentStatus(self.status) in _OPEN_STATUSES

    @property
    def refundable_amount(self) -> float:
        if PaymentStatus(self.status) != PaymentStatus.CAPTURED:
            return 0.0
        return round(self.amount - self.refunded_amount, 2)

    def authorize(self, gateway_payment_id: str) -> None:
        self._assert_can_transition(PaymentStatus.AUTHORIZED)
        self.status = PaymentStatus.AUTHORIZED.value
        self.gateway_payment_id = gateway_payment_id

    def capture(self, gateway_payment_id: str | None, amount: float, event_key: str | None = None) -> None:
        self._assert_can_transition(PaymentStatus.CAPTURED)
        if round(amount, 2) != round(self.amount, 2):
            raise ValidationError({"amount": [f"Captured amount {amount} does not match payment amount {self.amount}"]})
        self.status = PaymentStatus.CAPTURED.value
        self.gateway_payment_id = gateway_payment_id or self.gateway_payment_id
        self.idempotency_key = event_key
        self.captured_at = utcnow()

    def reopen(self) -> None:
        """A later attempt against the same gateway order reopens a failed payment."""
        self._assert_can_transition(PaymentStatus.PENDING)
        self.status = PaymentStatus.PENDING.value
        self.failure_reason = None

    def fail(self, reason: str | None, gateway_payment_id: str | None = None) -> None:
        self._assert_can_transition(PaymentStatus.FAILED)
        self.status = PaymentStatus.FAILED.value
        self.failure_reason = reason
        self.gateway_payment_id = gateway_payment_id or self.gateway_payment_id

    # -------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------
    def refund_for_key(self, idempotency_key: str | None) -> Refund | None:
        if not idempotency_key:
            return None
        return next((r for r in self.refunds if r.idempotency_key == idempotency_key), None)

    def check_refund(self, amount: float) -> None:
        if amount <= 0:
            raise ValidationError({"amount": ["Refund amount must be positive"]})
        if PaymentStatus(self.status) != PaymentStatus.CAPTURED:
            raise ValidationError({"status": [f"Cannot refund a payment in {self.status} state"]})
        if round(amount, 2) > self.refundable_amount:
            raise ValidationError(
                {"amount": [f"Refund of {amount} exceeds the refundable balance of {self.refundable_amount}"]}
            )

    def record_refund(
        self,
        amount: float,
        gateway_refund_id: str,
        reason: str | None,
        idempotency_key: str | None,
        destination: str = RefundDestination.ORIGINAL.value,
    ):
        """Record a refund the gateway or the buyer's wallet has already accepted."""
        self.check_refund(amount)
        refund = Refund(
            id=str(uuid4()),
            amount=amount,
            reason=reason,
            gateway_refund_id=gateway_refund_id,
            destination=destination,
            idempotency_key=idempotency_key,
            created_at=utcnow(),
        )
        self.add_refunds(refund)
        self.refunded_amount = round(self.refunded_amount + amount, 2)
        if self.refunded_amount >= self.amount:
            self.status = PaymentStatus.REFUNDED.value
        return refund

    # -------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------
    def to_document(self) -> dict:
        return document_of(self)

    @classmethod
    def from_document(cls, document: dict, version: int = 0) -> "Payment":
        return load_element(cls, document, version=version)


class PaymentRepository(LedgerRepository):
    table = "payments"
    aggregate_cls = Payment

    def owner_of(self, aggregate) -> str | None:
        return str(aggregate.order_id)

    def lookup_key_of(self, aggregate) -> str | None:
        if aggregate.gateway_order_id:
            return f"{aggregate.gateway}:{aggregate.gateway_order_id}"
        return None

    def find_by_gateway_order(self, gateway: str, gateway_order_id: str) -> Payment | None:
        return self.find_by_lookup_key(f"{gateway}:{gateway_order_id}")

    def for_order(self, order_id: str, purpose: str = PaymentPurpose.ORDER.value) -> list[Payment]:
        return [p for p in self.find_by_owner(order_id) if p.purpose == purpose]
