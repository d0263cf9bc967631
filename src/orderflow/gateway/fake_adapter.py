"""Fake payment gateway: deterministic gateway for testing and development.

Signs and verifies with a shared secret exactly like a real provider, so
tests exercise the same authenticity checks production does.
"""

from uuid import uuid4

from orderflow.gateway.port import (
    CaptureResult,
    GatewayOrderResult,
    PaymentGateway,
    RefundResult,
    hmac_sha256_hex,
    signatures_match,
)


class FakeGateway(PaymentGateway):
    """Fake gateway that always succeeds by default."""

    name = "fake"

    def __init__(self, secret: str = "fake-gateway-secret"):
        self.secret = secret
        self.should_succeed = True
        self.failure_reason = "Gateway unavailable"
        self.calls: list[tuple] = []

    def configure(self, should_succeed: bool = True, failure_reason: str = "Gateway unavailable"):
        """Configure the fake gateway behavior for testing."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    # Helpers tests use to produce what the provider would send
    def sign(self, payload: bytes | str) -> str:
        return hmac_sha256_hex(self.secret, payload)

    def checkout_signature(self, gateway_order_id: str, gateway_payment_id: str) -> str:
        return hmac_sha256_hex(self.secret, f"{gateway_order_id}|{gateway_payment_id}")

    def create_order(self, amount: float, currency: str, receipt: str) -> GatewayOrderResult:
        self.calls.append(("create_order", receipt, amount))
        if not self.should_succeed:
            return GatewayOrderResult(success=False, failure_reason=self.failure_reason)
        return GatewayOrderResult(success=True, gateway_order_id=f"order_fake_{uuid4().hex[:14]}")

    def capture_payment(self, gateway_payment_id: str, amount: float, currency: str) -> CaptureResult:
        self.calls.append(("capture_payment", gateway_payment_id, amount))
        if not self.should_succeed:
            return CaptureResult(success=False, gateway_status="failed", failure_reason=self.failure_reason)
        return CaptureResult(success=True, gateway_payment_id=gateway_payment_id, gateway_status="captured")

    def create_refund(
        self,
        gateway_payment_id: str,
        amount: float,
        reason: str,
        idempotency_key: str,
    ) -> RefundResult:
        self.calls.append(("create_refund", gateway_payment_id, amount, idempotency_key))
        if not self.should_succeed:
            return RefundResult(success=False, gateway_status="failed", failure_reason=self.failure_reason)
        return RefundResult(success=True, gateway_refund_id=f"rfnd_fake_{uuid4().hex[:12]}", gateway_status="processed")

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        return signatures_match(self.sign(payload), signature)

    def verify_checkout_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        return signatures_match(self.checkout_signature(gateway_order_id, gateway_payment_id), signature)
