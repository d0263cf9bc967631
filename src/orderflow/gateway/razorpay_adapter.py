"""Razorpay payment gateway adapter.

Talks to the Razorpay REST API over ``requests`` with a bounded timeout.
Amounts cross the wire in paise. Transport failures raise
ExternalServiceError; declines come back as unsuccessful results. Retrying is
left to the caller.
"""

import requests
import structlog

from orderflow.errors import ExternalServiceError
from orderflow.gateway.port import (
    CaptureResult,
    GatewayOrderResult,
    PaymentGateway,
    RefundResult,
    WebhookEvent,
    hmac_sha256_hex,
    normalize_status,
    signatures_match,
)

logger = structlog.get_logger(__name__)

API_BASE_URL = "https://api.razorpay.com/v1"


def _to_paise(amount: float) -> int:
    return int(round(amount * 100))


class RazorpayGateway(PaymentGateway):
    name = "razorpay"

    def __init__(
        self,
        key_id: str,
        key_secret: str,
        webhook_secret: str,
        timeout: float = 10.0,
        base_url: str = API_BASE_URL,
        session: requests.Session | None = None,
    ) -> None:
        self.key_id = key_id
        self.key_secret = key_secret
        self.webhook_secret = webhook_secret
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.auth = (key_id, key_secret)

    def _post(self, path: str, body: dict) -> tuple[bool, dict]:
        try:
            response = self.session.post(f"{self.base_url}{path}", json=body, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("razorpay_request_failed", path=path, error=str(exc))
            raise ExternalServiceError({"gateway": [f"Razorpay unreachable: {exc}"]}) from exc

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 500:
            raise ExternalServiceError({"gateway": [f"Razorpay returned {response.status_code}"]})
        if not response.ok:
            reason = (data.get("error") or {}).get("description") or f"HTTP {response.status_code}"
            return False, {"failure_reason": reason}
        return True, data

    def create_order(self, amount: float, currency: str, receipt: str) -> GatewayOrderResult:
        ok, data = self._post("/orders", {"amount": _to_paise(amount), "currency": currency, "receipt": receipt[:40]})
        if not ok:
            return GatewayOrderResult(success=False, failure_reason=data["failure_reason"])
        return GatewayOrderResult(success=True, gateway_order_id=data["id"])

    def capture_payment(self, gateway_payment_id: str, amount: float, currency: str) -> CaptureResult:
        ok, data = self._post(
            f"/payments/{gateway_payment_id}/capture",
            {"amount": _to_paise(amount), "currency": currency},
        )
        if not ok:
            return CaptureResult(success=False, gateway_status="failed", failure_reason=data["failure_reason"])
        return CaptureResult(success=True, gateway_payment_id=data.get("id"), gateway_status=data.get("status"))

    def create_refund(
        self,
        gateway_payment_id: str,
        amount: float,
        reason: str,
        idempotency_key: str,
    ) -> RefundResult:
        ok, data = self._post(
            f"/payments/{gateway_payment_id}/refund",
            {"amount": _to_paise(amount), "receipt": idempotency_key[:40], "notes": {"reason": reason or ""}},
        )
        if not ok:
            return RefundResult(success=False, gateway_status="failed", failure_reason=data["failure_reason"])
        return RefundResult(success=True, gateway_refund_id=data.get("id"), gateway_status=data.get("status"))

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        return signatures_match(hmac_sha256_hex(self.webhook_secret, payload), signature)

    def verify_checkout_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        expected = hmac_sha256_hex(self.key_secret, f"{gateway_order_id}|{gateway_payment_id}")
        return signatures_match(expected, signature)

    def parse_webhook(self, payload: dict, event_id: str | None = None) -> WebhookEvent:
        entity = ((payload.get("payload") or {}).get("payment") or {}).get("entity")
        if entity is None:
            return super().parse_webhook(payload, event_id)

        # Native shape: {"event": "payment.captured", "payload": {"payment": {"entity": {...}}}}
        return WebhookEvent(
            event_id=event_id or payload.get("id"),
            gateway_order_id=entity.get("order_id"),
            gateway_payment_id=entity.get("id"),
            status=normalize_status(entity.get("status") or payload.get("event", "").rpartition(".")[2]),
            amount=entity.get("amount", 0) / 100,
            failure_reason=entity.get("error_description"),
        )
