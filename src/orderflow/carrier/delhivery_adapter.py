"""Delhivery carrier adapter.

Uses the Delhivery express API over ``requests`` with token authentication
and a bounded timeout. Transport errors and 5xx responses raise
ExternalServiceError; business rejections come back as ``error`` keys.
"""

import hmac
import json

import requests
import structlog

from orderflow.carrier.port import CarrierPort
from orderflow.errors import ExternalServiceError

logger = structlog.get_logger(__name__)

_NDR_ACTIONS = {"reattempt": "RE-ATTEMPT", "rto": "RTO"}


def _extract_waybill(data: dict) -> str | None:
    packages = data.get("packages") or data.get("shipments") or []
    if packages:
        return packages[0].get("waybill") or packages[0].get("awb")
    return data.get("waybill") or data.get("awb")


def _extract_error(data: dict) -> str:
    packages = data.get("packages") or []
    remarks = packages[0].get("remarks") if packages else None
    if isinstance(remarks, list):
        remarks = "; ".join(str(r) for r in remarks)
    return remarks or data.get("rmk") or data.get("error") or "Rejected by Delhivery"


class DelhiveryCarrier(CarrierPort):
    name = "delhivery"

    def __init__(
        self,
        base_url: str,
        api_token: str,
        webhook_token: str = "",
        timeout: float = 10.0,
        session: requests.Session | None = None,
        allow_unsigned_webhooks: bool = False,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.webhook_token = webhook_token
        self.allow_unsigned_webhooks = allow_unsigned_webhooks
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.headers.update({"Authorization": f"Token {api_token}", "Accept": "application/json"})

    def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = self.session.request(method, f"{self.base_url}{path}", timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            logger.warning("delhivery_request_failed", path=path, error=str(exc))
            raise ExternalServiceError({"carrier": [f"Delhivery unreachable: {exc}"]}) from exc

        if response.status_code >= 500:
            raise ExternalServiceError({"carrier": [f"Delhivery returned {response.status_code}"]})
        try:
            data = response.json()
        except ValueError:
            data = {}
        if not response.ok:
            return {"error": data.get("error") or f"HTTP {response.status_code}"}
        return data

    def check_serviceability(self, pincode: str) -> bool:
        data = self._request("GET", "/c/api/pin-codes/json/", params={"filter_codes": pincode})
        if "error" in data:
            raise ExternalServiceError({"carrier": [f"Serviceability lookup failed: {data['error']}"]})
        return bool(data.get("delivery_codes"))

    def create_shipment(self, request: dict) -> dict:
        shipment = {
            "order": request["order_id"],
            "name": request["consignee_name"],
            "phone": request["consignee_phone"],
            "add": request["address"],
            "city": request.get("city"),
            "state": request.get("state"),
            "pin": request["pincode"],
            "country": request.get("country", "India"),
            "payment_mode": request.get("payment_mode", "Prepaid"),
            "cod_amount": request.get("cod_amount", 0),
            "total_amount": request.get("total_amount", 0),
            "products_desc": request.get("description", ""),
            "quantity": request.get("quantity", 1),
            "weight": request.get("weight"),
        }
        body = {"pickup_location": {"name": request["pickup_location"]}, "shipments": [shipment]}
        data = self._request("POST", "/api/cmu/create.json", data={"format": "json", "data": json.dumps(body)})

        waybill = _extract_waybill(data)
        if "error" in data or not data.get("success", True) or not waybill:
            return {"waybill": None, "label_url": None, "error": _extract_error(data)}
        return {"waybill": waybill, "label_url": f"{self.base_url}/api/p/packing_slip?wbns={waybill}"}

    def request_pickup(self, pickup_location: str, waybills: list[str], pickup_date: str) -> dict:
        data = self._request(
            "POST",
            "/fm/request/new/",
            json={
                "pickup_location": pickup_location,
                "pickup_date": pickup_date,
                "pickup_time": "11:00:00",
                "expected_package_count": len(waybills),
            },
        )
        if "error" in data or not data.get("pickup_id"):
            return {"pickup_id": None, "error": _extract_error(data)}
        return {"pickup_id": str(data["pickup_id"])}

    def cancel_shipment(self, waybill: str) -> dict:
        data = self._request("POST", "/api/p/edit", json={"waybill": waybill, "cancellation": "true"})
        if "error" in data or not data.get("status", False):
            return {"cancelled": False, "reason": _extract_error(data)}
        return {"cancelled": True, "reason": data.get("remark", "Shipment cancelled")}

    def update_shipment(self, waybill: str, changes: dict) -> dict:
        data = self._request("POST", "/api/p/edit", json={"waybill": waybill, **changes})
        if "error" in data or not data.get("status", False):
            return {"updated": False, "error": _extract_error(data)}
        return {"updated": True}

    def submit_ndr_action(self, waybill: str, action: str, remarks: str | None = None) -> dict:
        data = self._request(
            "POST",
            "/api/p/update",
            json={"data": [{"waybill": waybill, "act": _NDR_ACTIONS[action], "remarks": remarks or ""}]},
        )
        if "error" in data or not data.get("request_id"):
            return {"accepted": False, "reference": None, "error": _extract_error(data)}
        return {"accepted": True, "reference": str(data["request_id"])}

    def schedule_reverse_pickup(self, request: dict) -> dict:
        result = self.create_shipment({**request, "order_id": request["reference"], "payment_mode": "Pickup"})
        if result.get("error"):
            return {"waybill": None, "error": result["error"]}
        return {"waybill": result["waybill"]}

    def verify_webhook_signature(self, payload: str, signature: str) -> bool:
        # Delhivery pushes a static shared token rather than an HMAC
        if not self.webhook_token:
            # Without a configured token only local development accepts pushes
            if not self.allow_unsigned_webhooks:
                logger.warning("delhivery_webhook_token_missing")
            return self.allow_unsigned_webhooks
        return bool(signature) and hmac.compare_digest(self.webhook_token, signature)
