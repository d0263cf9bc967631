"""Payment gateway port (abstract interface).

Adapters sign with HMAC-SHA256 by default: webhooks over the raw request
body, and checkout confirmations over ``"{gateway_order_id}|{gateway_payment_id}"``.
Gateways that sign the posted fields instead override ``verify_event``.
"""

import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass

from protean.exceptions import ValidationError

# Provider status vocabulary mapped onto Payment statuses
_STATUS_ALIASES = {
    "captured": "captured",
    "success": "captured",
    "paid": "captured",
    "authorized": "authorized",
    "failed": "failed",
    "failure": "failed",
}


@dataclass(frozen=True)
class GatewayOrderResult:
    """Result of opening a checkout order with the gateway."""

    success: bool
    gateway_order_id: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class CaptureResult:
    """Result of capturing an authorized payment."""

    success: bool
    gateway_payment_id: str | None = None
    gateway_status: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class RefundResult:
    """Result of a refund attempt."""

    success: bool
    gateway_refund_id: str | None = None
    gateway_status: str | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class WebhookEvent:
    """A verified gateway notification reduced to the fields settlement needs."""

    event_id: str | None
    gateway_order_id: str
    gateway_payment_id: str | None
    status: str
    amount: float
    signature: str | None = None
    failure_reason: str | None = None

    @property
    def idempotency_key(self) -> str:
        return self.event_id or f"{self.gateway_payment_id}:{self.status}"


def hmac_sha256_hex(secret: str, message: bytes | str) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signatures_match(expected: str, received: str | None) -> bool:
    return bool(received) and hmac.compare_digest(expected, received)


def normalize_status(raw_status: str | None) -> str:
    status = _STATUS_ALIASES.get((raw_status or "").strip().lower())
    if status is None:
        raise ValidationError({"status": [f"Unsupported payment status: {raw_status}"]})
    return status


class PaymentGateway(ABC):
    """Abstract payment gateway interface."""

    name: str = ""

    @abstractmethod
    def create_order(self, amount: float, currency: str, receipt: str) -> GatewayOrderResult:
        """Open a checkout order the buyer pays against."""
        ...

    @abstractmethod
    def capture_payment(self, gateway_payment_id: str, amount: float, currency: str) -> CaptureResult:
        """Capture an authorized payment."""
        ...

    @abstractmethod
    def create_refund(
        self,
        gateway_payment_id: str,
        amount: float,
        reason: str,
        idempotency_key: str,
    ) -> RefundResult:
        """Refund part or all of a captured payment."""
        ...

    @abstractmethod
    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        """Verify that a webhook payload is authentically from the gateway."""
        ...

    @abstractmethod
    def verify_checkout_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        """Verify the signature the checkout widget hands back to the buyer."""
        ...

    def verify_event(self, payload: dict, event: WebhookEvent) -> bool:
        """Verify a notification whose header signature was missing or wrong."""
        if not (event.gateway_payment_id and event.signature):
            return False
        return self.verify_checkout_signature(event.gateway_order_id, event.gateway_payment_id, event.signature)

    def parse_webhook(self, payload: dict, event_id: str | None = None) -> WebhookEvent:
        """Read the flat webhook shape; adapters override for provider formats."""

        def _field(*names):
            for name in names:
                if payload.get(name) not in (None, ""):
                    return payload[name]
            return None

        gateway_order_id = _field("gatewayOrderId", "gateway_order_id")
        amount = _field("amount")
        if gateway_order_id is None or amount is None:
            raise ValidationError({"payload": ["gatewayOrderId and amount are required"]})
        try:
            amount = float(amount)
        except (TypeError, ValueError) as exc:
            raise ValidationError({"amount": ["Amount must be numeric"]}) from exc

        return WebhookEvent(
            event_id=event_id or _field("eventId", "event_id"),
            gateway_order_id=str(gateway_order_id),
            gateway_payment_id=_field("gatewayPaymentId", "gateway_payment_id"),
            status=normalize_status(_field("status")),
            amount=amount,
            signature=_field("signature"),
            failure_reason=_field("failureReason", "failure_reason"),
        )
