"""Delivery handover: commands and handler."""

from protean import handle
from protean.fields import Identifier, String

from orderflow.delivery.confirmation import DeliveryConfirmation
from orderflow.delivery.otp import DeliveryOtp
from orderflow.domain import orderflow


@orderflow.command(part_of="DeliveryOtp")
class GenerateDeliveryOtp:
    shipment_id = Identifier(required=True)


@orderflow.command(part_of="DeliveryOtp")
class VerifyDeliveryOtp:
    """Check the code the buyer reads out to the delivery agent."""

    shipment_id = Identifier(required=True)
    code = String(required=True, max_length=12)


@orderflow.command_handler(part_of=DeliveryOtp)
class DeliveryHandoverHandler:
    @handle(GenerateDeliveryOtp)
    def generate(self, command):
        return DeliveryConfirmation().generate(command.shipment_id)

    @handle(VerifyDeliveryOtp)
    def verify(self, command):
        otp = DeliveryConfirmation().verify(command.shipment_id, command.code)
        return otp.status
