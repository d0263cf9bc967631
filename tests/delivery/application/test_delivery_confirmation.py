"""OTP handover: generation, verification, lockout and delivery side effects."""

import pytest
from protean.exceptions import ValidationError

from orderflow.config import reset_settings
from orderflow.delivery.confirmation import DeliveryConfirmation
from orderflow.delivery.otp import DeliveryOtpRepository, OtpStatus
from orderflow.errors import RateLimitError
from orderflow.order.order import OrderRepository, OrderStatus
from orderflow.payment.payment import PaymentRepository, PaymentStatus
from orderflow.shipment.courier import CourierService
from orderflow.shipment.shipment import ShipmentStatus


def _wrong(code):
    return "000000" if code != "000000" else "111111"


@pytest.fixture
def confirmation():
    return DeliveryConfirmation()


@pytest.fixture
def out_for_delivery(place_order):
    """A COD shipment with the agent at the door."""

    def _ship(**kwargs):
        service = CourierService()
        shipment = service.dispatch(str(place_order(**kwargs).id))
        service.ingest_scan(shipment.waybill, "Out For Delivery", "2026-03-01T08:00:00")
        return service.get(str(shipment.id))

    return _ship


class TestGenerate:
    def test_generate_returns_six_digits(self, confirmation, out_for_delivery):
        shipment = out_for_delivery()
        code = confirmation.generate(str(shipment.id))
        assert len(code) == 6 and code.isdigit()

    def test_unknown_shipment(self, confirmation):
        with pytest.raises(ValidationError):
            confirmation.generate("missing")

    def test_terminal_shipment(self, confirmation, out_for_delivery):
        shipment = out_for_delivery()
        CourierService().ingest_scan(shipment.waybill, "Delivered", "2026-03-01T09:00:00")
        with pytest.raises(ValidationError):
            confirmation.generate(str(shipment.id))

    def test_regenerate_replaces_code(self, confirmation, out_for_delivery):
        shipment = out_for_delivery()
        first = confirmation.generate(str(shipment.id))
        second = confirmation.generate(str(shipment.id))

        if first != second:
            with pytest.raises(ValidationError):
                confirmation.verify(str(shipment.id), first)
        assert confirmation.verify(str(shipment.id), second).status == OtpStatus.VERIFIED.value


class TestVerify:
    def test_correct_code_delivers_everything(self, confirmation, out_for_delivery):
        shipment = out_for_delivery()
        code = confirmation.generate(str(shipment.id))

        otp = confirmation.verify(str(shipment.id), code)

        assert otp.is_verified
        assert CourierService().get(str(shipment.id)).status == ShipmentStatus.DELIVERED.value
        assert OrderRepository().get(shipment.order_id).status == OrderStatus.DELIVERED.value
        [payment] = PaymentRepository().for_order(str(shipment.order_id))
        assert payment.status == PaymentStatus.CAPTURED.value

    def test_verifying_twice_is_a_no_op(self, confirmation, out_for_delivery):
        shipment = out_for_delivery()
        code = confirmation.generate(str(shipment.id))
        confirmation.verify(str(shipment.id), code)

        again = confirmation.verify(str(shipment.id), _wrong(code))

        assert again.is_verified

    def test_scan_after_otp_is_harmless(self, confirmation, out_for_delivery):
        shipment = out_for_delivery()
        confirmation.verify(str(shipment.id), confirmation.generate(str(shipment.id)))

        assert CourierService().ingest_scan(shipment.waybill, "Delivered", "2026-03-01T09:30:00") == "recorded"
        assert OrderRepository().get(shipment.order_id).status == OrderStatus.DELIVERED.value

    def test_without_generated_code(self, confirmation, out_for_delivery):
        with pytest.raises(ValidationError):
            confirmation.verify(str(out_for_delivery().id), "123456")

    def test_wrong_code_is_counted(self, confirmation, out_for_delivery):
        shipment = out_for_delivery()
        code = confirmation.generate(str(shipment.id))

        with pytest.raises(ValidationError):
            confirmation.verify(str(shipment.id), _wrong(code))

        assert DeliveryOtpRepository().get(str(shipment.id)).attempts == 1
        assert OrderRepository().get(shipment.order_id).status == OrderStatus.SHIPPED.value

    def test_lockout_after_five_wrong_codes(self, confirmation, out_for_delivery):
        shipment = out_for_delivery()
        code = confirmation.generate(str(shipment.id))

        for _ in range(5):
            with pytest.raises(ValidationError):
                confirmation.verify(str(shipment.id), _wrong(code))

        # Even the right code is refused once locked
        with pytest.raises(RateLimitError):
            confirmation.verify(str(shipment.id), code)
        assert OrderRepository().get(shipment.order_id).status == OrderStatus.SHIPPED.value

        fresh = confirmation.generate(str(shipment.id))
        assert confirmation.verify(str(shipment.id), fresh).is_verified

    def test_expired_code(self, confirmation, out_for_delivery, monkeypatch):
        monkeypatch.setenv("OTP_TTL_SECONDS", "-1")
        reset_settings()
        shipment = out_for_delivery()
        code = confirmation.generate(str(shipment.id))

        with pytest.raises(ValidationError) as exc:
            confirmation.verify(str(shipment.id), code)
        assert "expired" in str(exc.value.messages["code"][0])
