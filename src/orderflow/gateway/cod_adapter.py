"""Cash-on-delivery pseudo gateway.

Cash is collected by the courier, so there is nothing to capture online and
no webhook to trust. Refunds are queued as manual payouts for support.
"""

from uuid import uuid4

from orderflow.gateway.port import CaptureResult, GatewayOrderResult, PaymentGateway, RefundResult


class CashOnDeliveryGateway(PaymentGateway):
    name = "cod"

    def create_order(self, amount: float, currency: str, receipt: str) -> GatewayOrderResult:
        return GatewayOrderResult(success=False, failure_reason="Cash on delivery has no online checkout")

    def capture_payment(self, gateway_payment_id: str, amount: float, currency: str) -> CaptureResult:
        return CaptureResult(success=False, failure_reason="Cash on delivery is captured by the courier")

    def create_refund(
        self,
        gateway_payment_id: str,
        amount: float,
        reason: str,
        idempotency_key: str,
    ) -> RefundResult:
        return RefundResult(success=True, gateway_refund_id=f"manual-{uuid4().hex[:12]}", gateway_status="queued")

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        return False

    def verify_checkout_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        return False
