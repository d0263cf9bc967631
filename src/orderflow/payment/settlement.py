"""Payment Settlement Adapter.

Turns gateway notifications into Payment and Order transitions exactly once.
Webhooks are authenticated before any state is read, deduplicated on the
gateway event id, and applied inside one ledger transaction together with the
idempotency claim; if any step fails the claim rolls back with it and the
provider's redelivery retries the whole event.
"""

import json
from uuid import uuid4

import structlog
from protean.exceptions import ValidationError

from orderflow.config import get_settings
from orderflow.errors import AuthError, ConflictError, ExternalServiceError
from orderflow.gateway import get_gateway
from orderflow.gateway.port import WebhookEvent
from orderflow.ledger import get_ledger
from orderflow.order.order import OrderRepository, OrderStatus, PaymentMethod
from orderflow.payment.payment import Payment, PaymentPurpose, PaymentRepository, PaymentStatus, RefundDestination

logger = structlog.get_logger(__name__)


class PaymentSettlement:
    def __init__(self, ledger=None) -> None:
        self.ledger = ledger or get_ledger()
        self.payments = PaymentRepository(self.ledger)

    # -------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------
    def handle_webhook(
        self,
        gateway_name: str,
        raw_body: bytes,
        signature: str | None = None,
        event_id: str | None = None,
    ) -> str:
        """Apply a gateway notification; return the outcome.

        Outcomes: ``captured``, ``authorized``, ``failed``, ``already_applied``,
        ``duplicate`` (event id seen before) or ``ignored`` (unknown gateway
        order). Replays are successes, not errors.
        """
        gateway = get_gateway(gateway_name)

        header_verified = bool(signature) and gateway.verify_webhook_signature(raw_body, signature)

        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            if not header_verified:
                raise AuthError({"signature": ["Invalid webhook signature"]}) from exc
            raise ValidationError({"payload": ["Webhook body is not valid JSON"]}) from exc
        if not isinstance(payload, dict):
            raise ValidationError({"payload": ["Webhook body must be a JSON object"]})

        event = gateway.parse_webhook(payload, event_id)

        if not header_verified and not gateway.verify_event(payload, event):
            logger.warning("payment_webhook_rejected", gateway=gateway.name, gateway_order_id=event.gateway_order_id)
            raise AuthError({"signature": ["Invalid webhook signature"]})

        # The fallback idempotency key is "{gateway_payment_id}:{status}"
        if not event.event_id and not event.gateway_payment_id:
            raise ValidationError({"payload": ["gatewayPaymentId is required when no event id is sent"]})

        log = logger.bind(gateway=gateway.name, event_id=event.idempotency_key, gateway_order_id=event.gateway_order_id)

        with self.ledger.transaction():
            if not self.ledger.claim_event(f"payment:{gateway.name}", event.idempotency_key):
                log.info("payment_webhook_duplicate")
                return "duplicate"

            payment = self.payments.find_by_gateway_order(gateway.name, event.gateway_order_id)
            if payment is None:
                log.warning("payment_webhook_unknown_order")
                return "ignored"

            outcome = self._apply_event(payment, event)

        log.info("payment_webhook_processed", payment_id=str(payment.id), order_id=str(payment.order_id), outcome=outcome)
        return outcome

    def _apply_event(self, payment: Payment, event: WebhookEvent) -> str:
        current = PaymentStatus(payment.status)
        expected_status = payment.status

        if event.status == PaymentStatus.CAPTURED.value:
            if current in (PaymentStatus.CAPTURED, PaymentStatus.REFUNDED):
                return "already_applied"
            if current == PaymentStatus.FAILED:
                payment.reopen()
            if payment.purpose == PaymentPurpose.ORDER.value:
                self._assert_within_order_total(payment, event.amount)
            payment.capture(event.gateway_payment_id, event.amount, event.idempotency_key)
            self.payments.save(payment, expected_status)
            if payment.purpose == PaymentPurpose.ORDER.value:
                self._confirm_order(payment)
            return "captured"

        if event.status == PaymentStatus.AUTHORIZED.value:
            if current != PaymentStatus.PENDING:
                return "already_applied"
            payment.authorize(event.gateway_payment_id)
            self.payments.save(payment, expected_status)
            return "authorized"

        # Failed: a capture that arrived first wins
        if current not in (PaymentStatus.PENDING, PaymentStatus.AUTHORIZED):
            return "already_applied"
        payment.fail(event.failure_reason or "Payment failed at gateway", event.gateway_payment_id)
        self.payments.save(payment, expected_status)
        return "failed"

    def _assert_within_order_total(self, payment: Payment, amount: float) -> None:
        order = OrderRepository(self.ledger).get(payment.order_id)
        captured = sum(
            p.amount
            for p in self.payments.for_order(str(payment.order_id))
            if str(p.id) != str(payment.id) and p.status in (PaymentStatus.CAPTURED.value, PaymentStatus.REFUNDED.value)
        )
        if round(captured + amount, 2) > round(order.total, 2):
            raise ValidationError(
                {"amount": [f"Capturing {amount} would exceed order total {order.total} (already captured {captured})"]}
            )

    def _confirm_order(self, payment: Payment) -> None:
        from orderflow.order.state_machine import OrderStateMachine

        machine = OrderStateMachine(self.ledger)
        order = machine.get(payment.order_id)
        if OrderStatus(order.status) == OrderStatus.CANCELLED:
            self._refund_late_capture(payment)
            return
        machine.confirm(str(order.id))

    def _refund_late_capture(self, payment: Payment) -> None:
        """Send back money captured after the order was cancelled.

        Uses the cancellation refund key, so a support replay of the
        cancellation refund cannot pay the buyer twice.
        """
        amount = payment.refundable_amount
        logger.warning(
            "payment_captured_for_cancelled_order",
            order_id=str(payment.order_id),
            payment_id=str(payment.id),
            amount=amount,
        )
        try:
            self.refund(
                str(payment.id),
                amount,
                reason="order cancelled",
                idempotency_key=f"cancel:{payment.order_id}:{payment.id}",
            )
        except ExternalServiceError:
            # The capture stands; support replays the refund with the same key
            logger.error(
                "cancellation_refund_failed",
                order_id=str(payment.order_id),
                payment_id=str(payment.id),
                amount=amount,
            )

    # -------------------------------------------------------------------
    # Refunds
    # -------------------------------------------------------------------
    def refund(
        self,
        payment_id: str,
        amount: float,
        reason: str | None = None,
        idempotency_key: str | None = None,
        destination: str = RefundDestination.ORIGINAL.value,
    ) -> str:
        """Refund part of a captured payment and return the refund reference.

        The gateway is called before anything is recorded, so a failure leaves
        the payment untouched. A wallet refund credits the buyer's store credit
        in the same ledger transaction that records it on the payment. Reusing
        an idempotency key returns the earlier refund's reference without
        moving money again.
        """
        if destination not in {d.value for d in RefundDestination}:
            raise ValidationError({"destination": [f"Unknown refund destination: {destination}"]})

        payment = self.payments.get(payment_id)
        existing = payment.refund_for_key(idempotency_key)
        if existing is not None:
            logger.info("refund_replayed", payment_id=payment_id, idempotency_key=idempotency_key)
            return existing.gateway_refund_id

        amount = round(amount, 2)
        payment.check_refund(amount)

        key = idempotency_key or f"refund:{payment_id}:{uuid4().hex[:8]}"
        if destination == RefundDestination.WALLET.value:
            return self._refund_to_wallet(payment, amount, reason, key)

        result = get_gateway(payment.gateway).create_refund(payment.gateway_payment_id, amount, reason or "", key)
        if not result.success:
            logger.warning("refund_failed", payment_id=payment_id, amount=amount, reason=result.failure_reason)
            raise ExternalServiceError({"gateway": [result.failure_reason or "Refund failed"]})

        expected_status = payment.status
        payment.record_refund(amount, result.gateway_refund_id, reason, key)
        self.payments.save(payment, expected_status)

        logger.info(
            "refund_recorded",
            payment_id=payment_id,
            order_id=str(payment.order_id),
            amount=amount,
            gateway_refund_id=result.gateway_refund_id,
        )
        return result.gateway_refund_id

    def _refund_to_wallet(self, payment: Payment, amount: float, reason: str | None, key: str) -> str:
        from orderflow.wallet.store_credit import StoreCredit
        from orderflow.wallet.wallet import EntrySource

        order = OrderRepository(self.ledger).get(payment.order_id)
        expected_status = payment.status
        with self.ledger.transaction():
            entry = StoreCredit(self.ledger).credit(
                str(order.buyer_id), amount, EntrySource.REFUND.value, key, reference=str(payment.id), note=reason
            )
            reference = f"wallet:{entry.id}"
            payment.record_refund(amount, reference, reason, key, destination=RefundDestination.WALLET.value)
            self.payments.save(payment, expected_status)

        logger.info(
            "refund_credited_to_wallet",
            payment_id=str(payment.id),
            order_id=str(payment.order_id),
            buyer_id=str(order.buyer_id),
            amount=amount,
        )
        return reference

    # -------------------------------------------------------------------
    # Checkout sessions
    # -------------------------------------------------------------------
    def start_checkout(self, order_id: str) -> Payment:
        """Open a fresh payment for a pending online order after a failure."""
        order = OrderRepository(self.ledger).get(order_id)
        if OrderStatus(order.status) != OrderStatus.PENDING:
            raise ConflictError({"status": [f"Order {order_id} is {order.status}; checkout is closed"]})
        if order.payment_method != PaymentMethod.ONLINE.value:
            raise ValidationError({"payment_method": ["Only online orders go through checkout"]})

        for existing in self.payments.for_order(order_id):
            if existing.is_open or existing.status == PaymentStatus.CAPTURED.value:
                raise ConflictError({"payment": [f"Payment {existing.id} is already {existing.status}"]})

        gateway = get_gateway(order.gateway)
        currency = get_settings().currency
        result = gateway.create_order(order.total, currency, receipt=order_id)
        if not result.success:
            raise ExternalServiceError({"gateway": [result.failure_reason or "Could not open checkout"]})

        payment = Payment.create(order_id, gateway.name, order.total, currency, gateway_order_id=result.gateway_order_id)
        self.payments.add(payment)
        logger.info("checkout_started", order_id=order_id, payment_id=str(payment.id))
        return payment

    def collect_cash_on_delivery(self, order_id: str) -> Payment | None:
        """Mark COD cash as collected once the order is delivered."""
        for payment in self.payments.for_order(order_id):
            if payment.status == PaymentStatus.COD_PENDING.value:
                payment.capture(None, payment.amount, f"cod:{order_id}")
                self.payments.save(payment, PaymentStatus.COD_PENDING.value)
                logger.info("cod_collected", order_id=order_id, payment_id=str(payment.id), amount=payment.amount)
                return payment
        return None

    # -------------------------------------------------------------------
    # Exchange price difference
    # -------------------------------------------------------------------
    def start_difference_payment(self, order_id: str, exchange_id: str, amount: float, gateway_name: str) -> Payment:
        gateway = get_gateway(gateway_name)
        currency = get_settings().currency
        result = gateway.create_order(amount, currency, receipt=f"exch-{exchange_id}")
        if not result.success:
            raise ExternalServiceError({"gateway": [result.failure_reason or "Could not open checkout"]})

        payment = Payment.create(
            order_id,
            gateway.name,
            amount,
            currency,
            gateway_order_id=result.gateway_order_id,
            purpose=PaymentPurpose.EXCHANGE_DIFFERENCE.value,
            exchange_id=exchange_id,
        )
        self.payments.add(payment)
        logger.info("difference_payment_started", exchange_id=exchange_id, payment_id=str(payment.id), amount=amount)
        return payment

    def capture_checkout(self, payment_id: str, gateway_payment_id: str, signature: str) -> Payment:
        """Capture a payment the buyer completed in the checkout widget."""
        payment = self.payments.get(payment_id)
        if payment.status == PaymentStatus.CAPTURED.value:
            return payment

        gateway = get_gateway(payment.gateway)
        if not gateway.verify_checkout_signature(payment.gateway_order_id, gateway_payment_id, signature):
            raise AuthError({"signature": ["Invalid checkout signature"]})

        result = gateway.capture_payment(gateway_payment_id, payment.amount, payment.currency)
        if not result.success:
            raise ExternalServiceError({"gateway": [result.failure_reason or "Capture failed"]})

        expected_status = payment.status
        if payment.status == PaymentStatus.FAILED.value:
            payment.reopen()
        payment.capture(result.gateway_payment_id or gateway_payment_id, payment.amount, f"checkout:{gateway_payment_id}")
        payment.signature = signature
        self.payments.save(payment, expected_status)
        logger.info("checkout_captured", payment_id=payment_id)
        return payment
