import pytest
from protean.exceptions import ValidationError

from orderflow.errors import ConflictError
from orderflow.returns.return_request import RefundStatus, ReturnRequest, ReturnStatus


def _request():
    return ReturnRequest.create(
        "order-1",
        "buyer-1",
        [
            {"order_item_id": "item-tee", "quantity": 2, "paid_unit_price": 450.0},
            {"order_item_id": "item-cap", "quantity": 1, "paid_unit_price": 270.0, "reason": "Wrong colour"},
        ],
        "Does not fit",
        evidence_images=["https://img.example.com/1.jpg"],
    )


class TestCreation:
    def test_new_request_is_pending(self):
        request = _request()
        assert request.status == ReturnStatus.PENDING.value
        assert request.refund_status == RefundStatus.NOT_STARTED.value
        assert request.is_open

    def test_item_reason_falls_back_to_request_reason(self):
        request = _request()
        assert request.item_for("item-tee").reason == "Does not fit"
        assert request.item_for("item-cap").reason == "Wrong colour"

    def test_missing_pickup_address_is_empty(self):
        request = _request()
        assert request.pickup_address == {}

    def test_document_without_pickup_address_loads(self):
        document = _request().to_document()
        document["pickup_address"] = None

        restored = ReturnRequest.from_document(document)
        assert restored.pickup_address == {}


class TestTransitions:
    def test_approve_then_reject_conflicts(self):
        request = _request()
        request.approve()
        with pytest.raises(ConflictError):
            request.reject("Too late")

    def test_reject_needs_reason(self):
        with pytest.raises(ValidationError):
            _request().reject("")

    def test_cancel_only_while_pending(self):
        request = _request()
        request.approve()
        with pytest.raises(ConflictError):
            request.cancel()

    def test_rejected_is_closed(self):
        request = _request()
        request.reject("Worn item")
        assert not request.is_open
        assert request.rejection_reason == "Worn item"


class TestRefundDue:
    def test_partial_receipt(self):
        assert _request().refund_due({"item-tee": 1}) == 450.0

    def test_full_receipt(self):
        assert _request().refund_due({"item-tee": 2, "item-cap": 1}) == 1170.0

    @pytest.mark.parametrize(
        "received",
        [{}, {"item-tee": 3}, {"item-tee": 0}, {"item-jacket": 1}],
    )
    def test_invalid_receipts(self, received):
        with pytest.raises(ValidationError):
            _request().refund_due(received)


class TestRefundLifecycle:
    def test_failed_refund_goes_back_to_approved(self):
        request = _request()
        request.approve()
        request.start_refund({"item-tee": 2}, 900.0)
        assert request.status == ReturnStatus.PROCESSING.value

        request.fail_refund("Gateway unavailable")

        assert request.status == ReturnStatus.APPROVED.value
        assert request.refund_status == RefundStatus.FAILED.value
        assert request.refund_failure == "Gateway unavailable"

    def test_completion(self):
        request = _request()
        request.approve()
        request.start_refund({"item-tee": 2, "item-cap": 1}, 1170.0)
        request.complete_refund("rfnd_1")

        assert request.status == ReturnStatus.COMPLETED.value
        assert request.refund_status == RefundStatus.REFUNDED.value
        assert request.received_items == {"item-tee": 2, "item-cap": 1}
        assert not request.is_open

    def test_cannot_refund_pending_request(self):
        with pytest.raises(ConflictError):
            _request().start_refund({"item-tee": 1}, 450.0)


def test_document_round_trip():
    request = _request()
    request.approve()
    restored = ReturnRequest.from_document(request.to_document(), version=3)
    assert restored.status == ReturnStatus.APPROVED.value
    assert restored.item_for("item-tee").paid_unit_price == 450.0
    assert restored.evidence_images == ["https://img.example.com/1.jpg"]
    assert restored.version == 3
