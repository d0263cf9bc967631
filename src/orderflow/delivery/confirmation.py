"""Delivery Confirmation Service: OTP handover at the doorstep.

A correct code delivers the shipment, the order and any cash-on-delivery
payment in one transaction. A wrong code is committed as a counted attempt
before the error is raised, so guesses cannot be retried for free.
"""

import structlog
from protean.exceptions import ObjectNotFoundError, ValidationError

from orderflow.config import get_settings
from orderflow.delivery.otp import DeliveryOtp, DeliveryOtpRepository
from orderflow.errors import RateLimitError
from orderflow.ledger import get_ledger
from orderflow.order.state_machine import OrderStateMachine
from orderflow.payment.settlement import PaymentSettlement
from orderflow.shipment.shipment import TERMINAL_STATUSES, ShipmentRepository, ShipmentStatus

logger = structlog.get_logger(__name__)


class DeliveryConfirmation:
    def __init__(self, ledger=None) -> None:
        self.ledger = ledger or get_ledger()
        self.otps = DeliveryOtpRepository(self.ledger)
        self.shipments = ShipmentRepository(self.ledger)

    def generate(self, shipment_id: str) -> str:
        """Issue a new code for ``shipment_id`` and return it in plaintext.

        Regenerating replaces the previous code and clears any lock.
        """
        try:
            shipment = self.shipments.get(shipment_id)
        except ObjectNotFoundError as exc:
            raise ValidationError({"shipment_id": [f"Shipment {shipment_id} does not exist"]}) from exc
        if ShipmentStatus(shipment.status) in TERMINAL_STATUSES:
            raise ValidationError({"shipment_id": [f"Shipment is {shipment.status}; no delivery to confirm"]})

        settings = get_settings()
        record = self.ledger.get(self.otps.table, shipment_id)
        if record is None:
            otp, code = DeliveryOtp.issue(shipment_id, settings.otp_hash_secret, settings.otp_ttl_seconds)
            self.otps.add(otp)
        else:
            otp = DeliveryOtp.from_document(record.document, record.version)
            code = otp.regenerate(settings.otp_hash_secret, settings.otp_ttl_seconds)
            self.otps.save(otp, record.status)

        logger.info("delivery_otp_generated", shipment_id=shipment_id, expires_at=str(otp.expires_at))
        return code

    def verify(self, shipment_id: str, code: str) -> DeliveryOtp:
        settings = get_settings()
        try:
            otp = self.otps.get(shipment_id)
        except ObjectNotFoundError as exc:
            raise ValidationError({"code": ["No delivery code has been generated for this shipment"]}) from exc
        log = logger.bind(shipment_id=shipment_id)

        if otp.is_verified:
            log.info("delivery_otp_already_verified")
            return otp
        if otp.is_exhausted(settings.otp_max_attempts):
            log.warning("delivery_otp_locked", attempts=otp.attempts)
            raise RateLimitError({"code": ["Too many wrong attempts; generate a new code"]})
        if otp.is_expired():
            raise ValidationError({"code": ["Delivery code has expired"]})

        expected_status = otp.status
        if not otp.matches(settings.otp_hash_secret, code):
            otp.record_failed_attempt(settings.otp_max_attempts)
            self.otps.save(otp, expected_status)
            log.warning("delivery_otp_mismatch", attempts=otp.attempts, locked=otp.locked)
            raise ValidationError({"code": ["Incorrect delivery code"]})

        with self.ledger.transaction():
            otp.mark_verified()
            self.otps.save(otp, expected_status)

            shipment = self.shipments.get(shipment_id)
            shipment_status = shipment.status
            if shipment.confirm_delivery():
                self.shipments.save(shipment, shipment_status)

            OrderStateMachine(self.ledger).mark_delivered(str(shipment.order_id), shipment.delivered_at)
            PaymentSettlement(self.ledger).collect_cash_on_delivery(str(shipment.order_id))

        log.info("delivery_confirmed_by_otp", order_id=str(shipment.order_id))
        return otp
