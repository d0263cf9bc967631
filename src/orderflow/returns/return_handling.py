"""Return handling: commands and handler."""

import json

from protean import handle
from protean.fields import Boolean, Identifier, String, Text

from orderflow.domain import orderflow
from orderflow.payment.payment import RefundDestination
from orderflow.returns.return_request import ReturnRequest
from orderflow.returns.workflow import ReturnWorkflow


@orderflow.command(part_of="ReturnRequest")
class CreateReturnRequest:
    """Ask to return delivered items for a refund."""

    order_id = Identifier(required=True)
    buyer_id = Identifier(required=True)
    items = Text(required=True)  # JSON list of {order_item_id, quantity, reason}
    reason = String(required=True, max_length=500)
    evidence_images = Text()  # JSON list of image URLs
    pickup_address = Text()  # JSON address dict


@orderflow.command(part_of="ReturnRequest")
class ApproveReturn:
    return_id = Identifier(required=True)
    schedule_pickup = Boolean(default=False)


@orderflow.command(part_of="ReturnRequest")
class RejectReturn:
    return_id = Identifier(required=True)
    reason = String(required=True, max_length=500)


@orderflow.command(part_of="ReturnRequest")
class ReceiveReturn:
    """Record the units that arrived back and refund them."""

    return_id = Identifier(required=True)
    received_items = Text(required=True)  # JSON list of {order_item_id, quantity}
    refund_method = String(max_length=20, default=RefundDestination.ORIGINAL.value)


@orderflow.command(part_of="ReturnRequest")
class CancelReturn:
    return_id = Identifier(required=True)
    buyer_id = Identifier()


def _json(value):
    if not value:
        return None
    return json.loads(value) if isinstance(value, str) else value


@orderflow.command_handler(part_of=ReturnRequest)
class ReturnHandler:
    @handle(CreateReturnRequest)
    def create_return(self, command):
        request = ReturnWorkflow().create(
            command.order_id,
            command.buyer_id,
            _json(command.items),
            command.reason,
            evidence_images=_json(command.evidence_images),
            pickup_address=_json(command.pickup_address),
        )
        return request.to_document()

    @handle(ApproveReturn)
    def approve_return(self, command):
        return ReturnWorkflow().approve(command.return_id, schedule_pickup=bool(command.schedule_pickup)).to_document()

    @handle(RejectReturn)
    def reject_return(self, command):
        return ReturnWorkflow().reject(command.return_id, command.reason).to_document()

    @handle(ReceiveReturn)
    def receive_return(self, command):
        request = ReturnWorkflow().receive_and_refund(
            command.return_id,
            _json(command.received_items),
            refund_method=command.refund_method or RefundDestination.ORIGINAL.value,
        )
        return request.to_document()

    @handle(CancelReturn)
    def cancel_return(self, command):
        return ReturnWorkflow().cancel(command.return_id, buyer_id=command.buyer_id).to_document()
