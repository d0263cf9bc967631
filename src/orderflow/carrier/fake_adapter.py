"""Fake carrier adapter: deterministic courier for testing and development.

Generates mock waybills and records every call. Success, serviceability and
per-waybill failures are configurable for integration testing.
"""

from uuid import uuid4

from orderflow.carrier.port import CarrierPort


class FakeCarrier(CarrierPort):
    """Fake carrier that always succeeds by default."""

    name = "fake"

    def __init__(self):
        self.should_succeed = True
        self.failure_reason = "Carrier unavailable"
        self.non_serviceable: set[str] = set()
        self.failing_waybills: set[str] = set()
        self.calls: list[tuple] = []

    def configure(
        self,
        should_succeed: bool = True,
        failure_reason: str = "Carrier unavailable",
        non_serviceable: set[str] | None = None,
        failing_waybills: set[str] | None = None,
    ):
        """Configure the fake carrier behavior for testing."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason
        self.non_serviceable = set(non_serviceable or ())
        self.failing_waybills = set(failing_waybills or ())

    def calls_to(self, method: str) -> list[tuple]:
        return [c for c in self.calls if c[0] == method]

    def _fails(self, waybill: str | None = None) -> bool:
        return not self.should_succeed or (waybill is not None and waybill in self.failing_waybills)

    def check_serviceability(self, pincode: str) -> bool:
        self.calls.append(("check_serviceability", pincode))
        return pincode not in self.non_serviceable

    def create_shipment(self, request: dict) -> dict:
        self.calls.append(("create_shipment", request.get("order_id")))
        if self._fails():
            return {"waybill": None, "label_url": None, "error": self.failure_reason}

        waybill = f"FAKE{uuid4().hex[:10].upper()}"
        return {
            "waybill": waybill,
            "label_url": f"https://fake-carrier.example.com/labels/{waybill}.pdf",
        }

    def request_pickup(self, pickup_location: str, waybills: list[str], pickup_date: str) -> dict:
        self.calls.append(("request_pickup", pickup_location, tuple(waybills)))
        if any(self._fails(w) for w in waybills):
            return {"pickup_id": None, "error": self.failure_reason}
        return {"pickup_id": f"PU-{uuid4().hex[:8]}"}

    def cancel_shipment(self, waybill: str) -> dict:
        self.calls.append(("cancel_shipment", waybill))
        if self._fails(waybill):
            return {"cancelled": False, "reason": self.failure_reason}
        return {"cancelled": True, "reason": "Shipment cancelled successfully"}

    def update_shipment(self, waybill: str, changes: dict) -> dict:
        self.calls.append(("update_shipment", waybill, changes))
        if self._fails(waybill):
            return {"updated": False, "error": self.failure_reason}
        return {"updated": True}

    def submit_ndr_action(self, waybill: str, action: str, remarks: str | None = None) -> dict:
        self.calls.append(("submit_ndr_action", waybill, action))
        if self._fails(waybill):
            return {"accepted": False, "reference": None, "error": self.failure_reason}
        return {"accepted": True, "reference": f"NDR-{uuid4().hex[:8]}"}

    def schedule_reverse_pickup(self, request: dict) -> dict:
        self.calls.append(("schedule_reverse_pickup", request.get("reference")))
        if self._fails():
            return {"waybill": None, "error": self.failure_reason}
        return {"waybill": f"RVP{uuid4().hex[:10].upper()}"}

    def verify_webhook_signature(self, _payload: str, _signature: str) -> bool:
        # FakeCarrier accepts any signature (or empty signature) for testing
        return True
