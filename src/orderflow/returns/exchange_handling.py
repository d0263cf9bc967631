"""Exchange handling: commands and handler."""

import json

from protean import handle
from protean.fields import Boolean, Identifier, String, Text

from orderflow.domain import orderflow
from orderflow.returns.exchange import Exchange
from orderflow.returns.exchange_workflow import ExchangeWorkflow


@orderflow.command(part_of="Exchange")
class CreateExchange:
    """Swap delivered items for other variants."""

    order_id = Identifier(required=True)
    buyer_id = Identifier(required=True)
    items = Text(required=True)  # JSON list of {order_item_id, quantity}
    replacement_items = Text(required=True)  # JSON list of {variant_id, quantity, size, color}
    reason = String(max_length=500)
    idempotency_key = String(max_length=255)


@orderflow.command(part_of="Exchange")
class RecordExchangeQc:
    exchange_id = Identifier(required=True)
    passed = Boolean(required=True)
    notes = String(max_length=1000)
    images = Text()  # JSON list of image URLs


@orderflow.command(part_of="Exchange")
class ConfirmExchangePayment:
    exchange_id = Identifier(required=True)
    gateway_payment_id = String(max_length=255)
    signature = String(max_length=512)


@orderflow.command(part_of="Exchange")
class CancelExchange:
    exchange_id = Identifier(required=True)
    buyer_id = Identifier()


def _json(value):
    if not value:
        return None
    return json.loads(value) if isinstance(value, str) else value


@orderflow.command_handler(part_of=Exchange)
class ExchangeHandler:
    @handle(CreateExchange)
    def create_exchange(self, command):
        exchange = ExchangeWorkflow().create(
            command.order_id,
            command.buyer_id,
            _json(command.items),
            _json(command.replacement_items),
            command.reason,
            idempotency_key=command.idempotency_key,
        )
        return exchange.to_document()

    @handle(RecordExchangeQc)
    def record_qc(self, command):
        exchange = ExchangeWorkflow().record_qc(command.exchange_id, command.passed, command.notes, _json(command.images))
        return exchange.to_document()

    @handle(ConfirmExchangePayment)
    def confirm_payment(self, command):
        exchange = ExchangeWorkflow().confirm_payment_and_place_order(
            command.exchange_id,
            gateway_payment_id=command.gateway_payment_id,
            signature=command.signature,
        )
        return exchange.to_document()

    @handle(CancelExchange)
    def cancel_exchange(self, command):
        return ExchangeWorkflow().cancel(command.exchange_id, buyer_id=command.buyer_id).to_document()
