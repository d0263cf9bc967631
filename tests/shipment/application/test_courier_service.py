"""Tests for CourierService: dispatch, pickups, edits, courier pushes and NDR."""

import pytest
from protean.exceptions import ValidationError

from orderflow.errors import ConflictError, ExternalServiceError
from orderflow.order.order import OrderRepository, OrderStatus
from orderflow.payment.payment import PaymentRepository, PaymentStatus
from orderflow.shipment.courier import CourierService
from orderflow.shipment.shipment import ShipmentRepository, ShipmentStatus


@pytest.fixture
def service():
    return CourierService()


class TestServiceability:
    def test_result_is_cached_per_pincode(self, service, carrier):
        carrier.configure(non_serviceable={"110001"})

        assert service.serviceability("560001") is True
        assert service.serviceability("560001") is True
        assert service.serviceability("110001") is False

        assert carrier.calls_to("check_serviceability") == [
            ("check_serviceability", "560001"),
            ("check_serviceability", "110001"),
        ]

    @pytest.mark.parametrize("pincode", ["5600", "56000A", "", None])
    def test_malformed_pincode(self, service, pincode):
        with pytest.raises(ValidationError):
            service.serviceability(pincode)


class TestDispatch:
    def test_dispatch_ships_order(self, service, place_order, carrier):
        order = place_order()

        shipment = service.dispatch(str(order.id))

        assert shipment.waybill.startswith("FAKE")
        assert shipment.status == ShipmentStatus.CREATED.value
        assert shipment.parcel.payment_mode == "COD"
        assert shipment.parcel.cod_amount == 2000.0
        assert OrderRepository().get(order.id).status == OrderStatus.SHIPPED.value
        assert ShipmentRepository().find_by_waybill(shipment.waybill).id == shipment.id

    def test_prepaid_parcel(self, service, paid_order):
        shipment = service.dispatch(str(paid_order().id))
        assert shipment.parcel.payment_mode == "Prepaid"
        assert shipment.parcel.cod_amount == 0.0

    def test_pending_order_cannot_ship(self, service, place_order, carrier):
        order = place_order(payment_method="online")
        with pytest.raises(ConflictError):
            service.dispatch(str(order.id))
        assert carrier.calls_to("create_shipment") == []

    def test_unserviceable_pincode(self, service, place_order, carrier):
        carrier.configure(non_serviceable={"110001"})
        order = place_order(pincode="110001")

        with pytest.raises(ValidationError) as exc:
            service.dispatch(str(order.id))

        assert "pincode" in exc.value.messages
        assert carrier.calls_to("create_shipment") == []
        assert OrderRepository().get(order.id).status == OrderStatus.CONFIRMED.value

    def test_courier_failure_leaves_nothing_behind(self, service, place_order, carrier):
        order = place_order()
        carrier.configure(should_succeed=False, failure_reason="Manifest API down")

        with pytest.raises(ExternalServiceError):
            service.dispatch(str(order.id))

        assert ShipmentRepository().find_by_owner(str(order.id)) == []
        assert OrderRepository().get(order.id).status == OrderStatus.CONFIRMED.value

    def test_second_dispatch_conflicts(self, service, place_order):
        order = place_order()
        service.dispatch(str(order.id))
        with pytest.raises(ConflictError):
            service.dispatch(str(order.id))

    def test_redispatch_after_cancelled_shipment(self, service, place_order):
        order = place_order()
        first = service.dispatch(str(order.id))
        service.cancel(str(first.id))

        second = service.dispatch(str(order.id))

        assert second.waybill != first.waybill
        shipments = ShipmentRepository().find_by_owner(str(order.id))
        assert sorted(s.status for s in shipments) == ["cancelled", "created"]
        assert OrderRepository().get(order.id).status == OrderStatus.SHIPPED.value


class TestCancelAndEdit:
    def test_courier_refusal_keeps_shipment(self, service, place_order, carrier):
        shipment = service.dispatch(str(place_order().id))
        carrier.configure(failing_waybills={shipment.waybill})

        with pytest.raises(ExternalServiceError):
            service.cancel(str(shipment.id))
        assert service.get(str(shipment.id)).status == ShipmentStatus.CREATED.value

    def test_cannot_cancel_after_pickup_scan(self, service, place_order):
        shipment = service.dispatch(str(place_order().id))
        service.ingest_scan(shipment.waybill, "Picked Up", "2026-03-01T09:00:00")
        with pytest.raises(ConflictError):
            service.cancel(str(shipment.id))

    def test_bulk_update_reports_each_item(self, service, place_order):
        editable = service.dispatch(str(place_order().id))
        picked_up = service.dispatch(str(place_order().id))
        service.ingest_scan(picked_up.waybill, "In Transit", "2026-03-01T09:00:00")

        results = service.bulk_update(
            [
                {"shipment_id": str(editable.id), "changes": {"weight": 2.0}},
                {"shipment_id": str(picked_up.id), "changes": {"weight": 2.0}},
                {"shipment_id": str(editable.id), "changes": {"colour": "red"}},
                {"shipment_id": "missing", "changes": {"weight": 1.0}},
            ]
        )

        assert [r["ok"] for r in results] == [True, False, False, False]
        assert "colour" in results[2]["error"]
        assert service.get(str(editable.id)).parcel.weight == 2.0


class TestPickups:
    def test_pickup_schedules_created_shipments(self, service, place_order, carrier):
        first = service.dispatch(str(place_order().id))
        second = service.dispatch(str(place_order().id))

        results = service.request_pickup([str(first.id), str(second.id)], "2026-03-02")

        assert all(r["ok"] for r in results)
        assert len(carrier.calls_to("request_pickup")) == 1
        for shipment_id in (first.id, second.id):
            shipment = service.get(str(shipment_id))
            assert shipment.status == ShipmentStatus.PICKUP_SCHEDULED.value
            assert shipment.pickup_reference.startswith("PU-")

    def test_partial_results(self, service, place_order):
        ready = service.dispatch(str(place_order().id))
        moving = service.dispatch(str(place_order().id))
        service.ingest_scan(moving.waybill, "In Transit", "2026-03-01T09:00:00")

        results = service.request_pickup([str(ready.id), str(moving.id), "missing"])

        assert [r["id"] for r in results] == [str(ready.id), str(moving.id), "missing"]
        assert [r["ok"] for r in results] == [True, False, False]
        assert results[2]["error"] == "Shipment not found"

    def test_courier_rejection_fails_the_location(self, service, place_order, carrier):
        shipment = service.dispatch(str(place_order().id))
        carrier.configure(failing_waybills={shipment.waybill}, failure_reason="No pickup slots")

        results = service.request_pickup([str(shipment.id)])

        assert results[0]["ok"] is False
        assert "No pickup slots" in results[0]["error"]
        assert service.get(str(shipment.id)).status == ShipmentStatus.CREATED.value


class TestScanIngestion:
    def test_delivered_scan_delivers_order_and_collects_cod(self, service, place_order):
        order = place_order()
        shipment = service.dispatch(str(order.id))

        assert service.ingest_scan(shipment.waybill, "Out For Delivery", "2026-03-01T08:00:00") == "applied"
        assert service.ingest_scan(shipment.waybill, "Delivered", "2026-03-01T10:00:00") == "applied"

        assert OrderRepository().get(order.id).status == OrderStatus.DELIVERED.value
        [payment] = PaymentRepository().for_order(str(order.id))
        assert payment.status == PaymentStatus.CAPTURED.value

    def test_duplicate_scan(self, service, place_order):
        shipment = service.dispatch(str(place_order().id))
        service.ingest_scan(shipment.waybill, "In Transit", "2026-03-01T08:00:00")

        assert service.ingest_scan(shipment.waybill, "In Transit", "2026-03-01T08:00:00+00:00") == "duplicate"
        assert len(service.get(str(shipment.id)).scan_events) == 1

    def test_late_scan_is_recorded_only(self, service, place_order):
        shipment = service.dispatch(str(place_order().id))
        service.ingest_scan(shipment.waybill, "Out For Delivery", "2026-03-01T10:00:00")

        assert service.ingest_scan(shipment.waybill, "In Transit", "2026-03-01T08:00:00") == "recorded"
        assert service.get(str(shipment.id)).status == ShipmentStatus.OUT_FOR_DELIVERY.value

    def test_courier_payload_is_kept_with_the_scan(self, service, place_order):
        shipment = service.dispatch(str(place_order().id))
        payload = {"Status": "In Transit", "ScanType": "UD", "Instructions": "Bag received at hub"}

        service.ingest_scan(shipment.waybill, "In Transit", "2026-03-01T08:00:00", location="Pune Hub", raw=payload)

        [scan] = service.get(str(shipment.id)).scan_events
        assert scan.raw == payload
        assert scan.location == "Pune Hub"

    def test_scan_without_payload_stores_empty_raw(self, service, place_order):
        shipment = service.dispatch(str(place_order().id))
        service.ingest_scan(shipment.waybill, "In Transit", "2026-03-01T08:00:00")

        [scan] = service.get(str(shipment.id)).scan_events
        assert scan.raw == {}

    def test_unknown_waybill(self, service):
        assert service.ingest_scan("NOPE123", "Delivered", "2026-03-01T10:00:00") == "ignored"

    def test_scan_needs_status(self, service):
        with pytest.raises(ValidationError):
            service.ingest_scan("WB1", "", "2026-03-01T10:00:00")


class TestDocuments:
    def test_documents_are_deduplicated_per_url(self, service, place_order):
        shipment = service.dispatch(str(place_order().id))
        urls = ["https://docs.example.com/pod-1.pdf", "https://docs.example.com/pod-2.pdf"]

        assert service.ingest_document(shipment.waybill, "pod", urls) == "recorded"
        assert service.ingest_document(shipment.waybill, "pod", urls) == "duplicate"
        assert service.ingest_document(shipment.waybill, "pod", [urls[0], "https://docs.example.com/pod-3.pdf"]) == (
            "recorded"
        )

        assert len(service.get(str(shipment.id)).documents) == 3

    def test_document_for_unknown_waybill(self, service):
        assert service.ingest_document("NOPE123", "pod", ["https://docs.example.com/x.pdf"]) == "ignored"

    def test_document_needs_urls(self, service):
        with pytest.raises(ValidationError):
            service.ingest_document("WB1", "pod", [])


class TestNdr:
    def _failed_delivery(self, service, place_order):
        shipment = service.dispatch(str(place_order().id))
        service.ingest_scan(shipment.waybill, "Out For Delivery", "2026-03-01T08:00:00")
        service.ingest_scan(shipment.waybill, "Undelivered - customer not available", "2026-03-01T12:00:00")
        return shipment

    def test_reattempt_is_sent_and_recorded(self, service, place_order, carrier):
        shipment = self._failed_delivery(service, place_order)

        updated = service.trigger_ndr(str(shipment.id), "reattempt", "Call before visit")

        assert carrier.calls_to("submit_ndr_action") == [("submit_ndr_action", shipment.waybill, "reattempt")]
        assert updated.ndr_cases[0].decision == "reattempt"
        assert updated.ndr_cases[0].reference.startswith("NDR-")
        assert service.get(str(shipment.id)).status == ShipmentStatus.NDR.value

    def test_unknown_action(self, service, place_order):
        shipment = self._failed_delivery(service, place_order)
        with pytest.raises(ValidationError):
            service.trigger_ndr(str(shipment.id), "destroy")

    def test_no_failed_delivery(self, service, place_order, carrier):
        shipment = service.dispatch(str(place_order().id))
        with pytest.raises(ConflictError):
            service.trigger_ndr(str(shipment.id), "rto")
        assert carrier.calls_to("submit_ndr_action") == []

    def test_courier_rejection_leaves_case_open(self, service, place_order, carrier):
        shipment = self._failed_delivery(service, place_order)
        carrier.configure(failing_waybills={shipment.waybill})

        with pytest.raises(ExternalServiceError):
            service.trigger_ndr(str(shipment.id), "rto")
        assert service.get(str(shipment.id)).open_ndr_case is not None
