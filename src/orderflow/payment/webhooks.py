"""Payment webhooks and refunds: commands and handler."""

from protean import handle
from protean.fields import Float, Identifier, String, Text

from orderflow.domain import orderflow
from orderflow.payment.payment import Payment, RefundDestination
from orderflow.payment.settlement import PaymentSettlement


@orderflow.command(part_of="Payment")
class ProcessPaymentWebhook:
    """Apply a gateway notification exactly once."""

    gateway = String(required=True, max_length=50)
    raw_body = Text(required=True, sanitize=False)  # verified byte-for-byte
    signature = String(max_length=512)
    event_id = String(max_length=255)


@orderflow.command(part_of="Payment")
class RefundPayment:
    payment_id = Identifier(required=True)
    amount = Float(required=True)
    reason = String(max_length=500)
    idempotency_key = String(max_length=255)
    destination = String(max_length=20, default=RefundDestination.ORIGINAL.value)


@orderflow.command_handler(part_of=Payment)
class PaymentHandler:
    @handle(ProcessPaymentWebhook)
    def process_webhook(self, command):
        return PaymentSettlement().handle_webhook(
            command.gateway,
            command.raw_body,
            signature=command.signature,
            event_id=command.event_id,
        )

    @handle(RefundPayment)
    def refund_payment(self, command):
        return PaymentSettlement().refund(
            command.payment_id,
            command.amount,
            reason=command.reason,
            idempotency_key=command.idempotency_key,
            destination=command.destination or RefundDestination.ORIGINAL.value,
        )
