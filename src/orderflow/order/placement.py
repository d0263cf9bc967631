"""Order placement: commands and handler.

Creates orders, cancels them, and reopens checkout after a failed payment.
"""

import json

from protean import handle
from protean.fields import Identifier, Integer, String, Text

from orderflow.domain import orderflow
from orderflow.order.order import Order
from orderflow.order.state_machine import OrderStateMachine
from orderflow.payment.payment import PaymentRepository
from orderflow.payment.settlement import PaymentSettlement


@orderflow.command(part_of="Order")
class CreateOrder:
    """Place an order priced from the catalogue."""

    buyer_id = Identifier(required=True)
    items = Text(required=True)  # JSON list of {variant_id, quantity, size, color}
    shipping_address = Text(required=True)  # JSON address dict
    payment_method = String(required=True, max_length=20)
    coupon_code = String(max_length=100)
    gateway = String(max_length=50)


@orderflow.command(part_of="Order")
class CancelOrder:
    order_id = Identifier(required=True)
    actor = String(required=True, max_length=20)
    reason = String(required=True, max_length=500)
    expected_version = Integer()


@orderflow.command(part_of="Order")
class RetryCheckout:
    """Open a new checkout for a pending order whose payment failed."""

    order_id = Identifier(required=True)


def _json(value):
    return json.loads(value) if isinstance(value, str) else value


def _payment_view(payment) -> dict:
    return {
        "payment_id": str(payment.id),
        "gateway": payment.gateway,
        "gateway_order_id": payment.gateway_order_id,
        "amount": payment.amount,
        "currency": payment.currency,
        "status": payment.status,
    }


@orderflow.command_handler(part_of=Order)
class OrderPlacementHandler:
    @handle(CreateOrder)
    def create_order(self, command):
        machine = OrderStateMachine()
        order = machine.create(
            buyer_id=command.buyer_id,
            items=_json(command.items),
            address=_json(command.shipping_address),
            payment_method=command.payment_method,
            coupon_code=command.coupon_code,
            gateway=command.gateway,
        )
        payments = PaymentRepository(machine.ledger).for_order(str(order.id))
        return {"order": order.to_document(), "version": order.version, "payments": [_payment_view(p) for p in payments]}

    @handle(CancelOrder)
    def cancel_order(self, command):
        order = OrderStateMachine().cancel(command.order_id, command.actor, command.reason, command.expected_version)
        return {"order": order.to_document(), "version": order.version}

    @handle(RetryCheckout)
    def retry_checkout(self, command):
        return _payment_view(PaymentSettlement().start_checkout(command.order_id))
