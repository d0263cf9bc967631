"""PayU payment gateway adapter.

PayU checkout is a hosted form, so there is no server-side order to open:
the transaction id we mint is the gateway order id. PayU posts the result
back with a SHA-512 "reverse hash" over the posted fields instead of a signed
header, and refunds go through the merchant post-service API.
"""

import hashlib
from uuid import uuid4

import requests
import structlog
from protean.exceptions import ValidationError

from orderflow.errors import ExternalServiceError
from orderflow.gateway.port import (
    CaptureResult,
    GatewayOrderResult,
    PaymentGateway,
    RefundResult,
    WebhookEvent,
    normalize_status,
    signatures_match,
)

logger = structlog.get_logger(__name__)

API_BASE_URL = "https://info.payu.in"
REFUND_COMMAND = "cancel_refund_transaction"


def sha512_hex(message: str) -> str:
    return hashlib.sha512(message.encode("utf-8")).hexdigest()


class PayUGateway(PaymentGateway):
    name = "payu"

    def __init__(
        self,
        key: str,
        salt: str,
        timeout: float = 10.0,
        base_url: str = API_BASE_URL,
        session: requests.Session | None = None,
    ) -> None:
        self.key = key
        self.salt = salt
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()

    def reverse_hash(self, fields: dict) -> str:
        """Hash PayU sends with a transaction result.

        ``salt|status||||||udf5|udf4|udf3|udf2|udf1|email|firstname|productinfo|amount|txnid|key``,
        prefixed with ``additionalCharges|`` when PayU added a surcharge.
        """

        def _f(name):
            return str(fields.get(name) or "")

        parts = [self.salt, _f("status"), "", "", "", "", ""]
        parts += [_f("udf5"), _f("udf4"), _f("udf3"), _f("udf2"), _f("udf1")]
        parts += [_f("email"), _f("firstname"), _f("productinfo"), _f("amount"), _f("txnid"), self.key]
        if fields.get("additionalCharges"):
            parts.insert(0, _f("additionalCharges"))
        return sha512_hex("|".join(parts))

    def create_order(self, amount: float, currency: str, receipt: str) -> GatewayOrderResult:
        return GatewayOrderResult(success=True, gateway_order_id=f"txn{uuid4().hex[:20]}")

    def capture_payment(self, gateway_payment_id: str, amount: float, currency: str) -> CaptureResult:
        return CaptureResult(
            success=False,
            gateway_status="failed",
            failure_reason="PayU captures at checkout; confirmation arrives with the callback",
        )

    def create_refund(
        self,
        gateway_payment_id: str,
        amount: float,
        reason: str,
        idempotency_key: str,
    ) -> RefundResult:
        # PayU dedupes refunds on the token id (var2)
        token = hashlib.sha256(idempotency_key.encode("utf-8")).hexdigest()[:23]
        body = {
            "key": self.key,
            "command": REFUND_COMMAND,
            "var1": gateway_payment_id,
            "var2": token,
            "var3": f"{amount:.2f}",
            "hash": sha512_hex(f"{self.key}|{REFUND_COMMAND}|{gateway_payment_id}|{self.salt}"),
        }
        url = f"{self.base_url}/merchant/postservice.php?form=2"
        try:
            response = self.session.post(url, data=body, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("payu_request_failed", command=REFUND_COMMAND, error=str(exc))
            raise ExternalServiceError({"gateway": [f"PayU unreachable: {exc}"]}) from exc

        if response.status_code >= 500:
            raise ExternalServiceError({"gateway": [f"PayU returned {response.status_code}"]})
        try:
            data = response.json()
        except ValueError:
            data = {}

        if not response.ok or str(data.get("status")) != "1":
            reason = data.get("msg") or f"HTTP {response.status_code}"
            return RefundResult(success=False, gateway_status="failed", failure_reason=reason)
        return RefundResult(success=True, gateway_refund_id=str(data.get("request_id") or token), gateway_status="queued")

    def verify_webhook_signature(self, payload: bytes, signature: str) -> bool:
        # PayU signs the posted fields, not the request
        return False

    def verify_checkout_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        return False

    def verify_event(self, payload: dict, event: WebhookEvent) -> bool:
        posted = payload.get("hash")
        if not posted or not payload.get("txnid"):
            return False
        return signatures_match(self.reverse_hash(payload), str(posted).lower())

    def parse_webhook(self, payload: dict, event_id: str | None = None) -> WebhookEvent:
        if "txnid" not in payload:
            return super().parse_webhook(payload, event_id)

        try:
            amount = float(payload.get("amount") or 0)
        except (TypeError, ValueError) as exc:
            raise ValidationError({"amount": ["Amount must be numeric"]}) from exc

        # Native shape: the form fields PayU posts to the callback URL
        return WebhookEvent(
            event_id=event_id,
            gateway_order_id=str(payload["txnid"]),
            gateway_payment_id=str(payload["mihpayid"]) if payload.get("mihpayid") else None,
            status=normalize_status(payload.get("status")),
            amount=amount,
            signature=payload.get("hash"),
            failure_reason=payload.get("error_Message") or payload.get("field9"),
        )
