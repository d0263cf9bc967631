"""FastAPI routes for shipments, courier pushes and delivery confirmation."""

import json

from fastapi import APIRouter, Depends, Header, Request
from protean.exceptions import ValidationError
from protean.utils.globals import current_domain

from orderflow.api.auth import Principal, Role, require_role
from orderflow.api.schemas import (
    BatchResponse,
    BulkUpdateRequest,
    CancelShipmentRequest,
    DispatchRequest,
    DocumentPushRequest,
    NdrActionRequest,
    OtpGeneratedResponse,
    PickupRequest,
    ServiceabilityResponse,
    StatusResponse,
    VerifyOtpRequest,
)
from orderflow.config import get_settings
from orderflow.delivery.handover import GenerateDeliveryOtp, VerifyDeliveryOtp
from orderflow.shipment.courier import CourierService
from orderflow.shipment.dispatch import BulkUpdateShipments, CancelShipment, DispatchOrder, RequestPickup
from orderflow.shipment.scans import extract_scan
from orderflow.shipment.tracking import IngestScanEvent, IngestShipmentDocument, TriggerNdrAction
from orderflow.utils.logging import add_context

delivery_router = APIRouter(prefix="/delivery", tags=["delivery"])

_admin = require_role(Role.ADMIN.value)


# ---------------------------------------------------------------------------
# Admin operations
# ---------------------------------------------------------------------------
@delivery_router.post("/dispatch", status_code=201)
async def dispatch_order(body: DispatchRequest, principal: Principal = Depends(_admin)) -> dict:
    """Manifest a shipment for a confirmed order."""
    add_context(order_id=body.order_id)
    command = DispatchOrder(order_id=body.order_id, pickup_location=body.pickup_location)
    return current_domain.process(command, asynchronous=False)


@delivery_router.post("/pickup", response_model=BatchResponse)
async def request_pickup(body: PickupRequest, principal: Principal = Depends(_admin)) -> BatchResponse:
    command = RequestPickup(shipment_ids=json.dumps(body.shipment_ids), pickup_date=body.pickup_date)
    return BatchResponse(results=current_domain.process(command, asynchronous=False))


@delivery_router.post("/cancel")
async def cancel_shipment(body: CancelShipmentRequest, principal: Principal = Depends(_admin)) -> dict:
    add_context(shipment_id=body.shipment_id)
    return current_domain.process(CancelShipment(shipment_id=body.shipment_id), asynchronous=False)


@delivery_router.post("/bulk-update", response_model=BatchResponse)
async def bulk_update(body: BulkUpdateRequest, principal: Principal = Depends(_admin)) -> BatchResponse:
    command = BulkUpdateShipments(updates=json.dumps([u.model_dump() for u in body.updates]))
    return BatchResponse(results=current_domain.process(command, asynchronous=False))


@delivery_router.post("/ndr")
async def trigger_ndr(body: NdrActionRequest, principal: Principal = Depends(_admin)) -> dict:
    """Answer a failed delivery with a reattempt or return-to-origin."""
    add_context(shipment_id=body.shipment_id)
    command = TriggerNdrAction(shipment_id=body.shipment_id, action=body.action, remarks=body.remarks)
    return current_domain.process(command, asynchronous=False)


# ---------------------------------------------------------------------------
# Courier pushes
# ---------------------------------------------------------------------------
async def _authenticated_payload(request: Request, signature: str) -> dict:
    raw_body = (await request.body()).decode("utf-8")
    CourierService().authenticate_webhook(raw_body, signature)
    try:
        payload = json.loads(raw_body)
    except ValueError as exc:
        raise ValidationError({"payload": ["Webhook body is not valid JSON"]}) from exc
    if not isinstance(payload, dict):
        raise ValidationError({"payload": ["Webhook body must be a JSON object"]})
    return payload


@delivery_router.post("/webhook/scan", response_model=StatusResponse)
async def scan_webhook(request: Request, x_carrier_signature: str = Header(default="")) -> StatusResponse:
    payload = await _authenticated_payload(request, x_carrier_signature)
    scan = extract_scan(payload)
    add_context(waybill=scan["waybill"])
    command = IngestScanEvent(
        waybill=scan["waybill"],
        status=scan["status"],
        timestamp=scan["timestamp"],
        location=scan["location"],
        raw=json.dumps(payload),
    )
    return StatusResponse(status=current_domain.process(command, asynchronous=False))


@delivery_router.post("/webhook/doc", response_model=StatusResponse)
async def document_webhook(request: Request, x_carrier_signature: str = Header(default="")) -> StatusResponse:
    payload = await _authenticated_payload(request, x_carrier_signature)
    body = DocumentPushRequest(
        waybill=payload.get("waybill") or payload.get("awb") or "",
        doc_type=payload.get("doc_type") or payload.get("type") or "",
        urls=payload.get("urls") or ([payload["url"]] if payload.get("url") else []),
    )
    command = IngestShipmentDocument(waybill=body.waybill, doc_type=body.doc_type, urls=json.dumps(body.urls))
    return StatusResponse(status=current_domain.process(command, asynchronous=False))


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
@delivery_router.get("/serviceability/{pincode}", response_model=ServiceabilityResponse)
async def serviceability(pincode: str, principal: Principal = Depends(require_role())) -> ServiceabilityResponse:
    return ServiceabilityResponse(pincode=pincode, serviceable=CourierService().serviceability(pincode))


@delivery_router.get("/{shipment_id}")
async def get_shipment(shipment_id: str, principal: Principal = Depends(require_role())) -> dict:
    shipment = CourierService().get(shipment_id)
    return {**shipment.to_document(), "version": shipment.version}


# ---------------------------------------------------------------------------
# Delivery confirmation
# ---------------------------------------------------------------------------
_doorstep = require_role(Role.ADMIN.value, Role.AGENT.value)


@delivery_router.post("/{shipment_id}/otp/generate", response_model=OtpGeneratedResponse)
async def generate_otp(shipment_id: str, principal: Principal = Depends(_doorstep)) -> OtpGeneratedResponse:
    """Issue a delivery code; it is only echoed back where EXPOSE_DELIVERY_OTP is set."""
    add_context(shipment_id=shipment_id)
    code = current_domain.process(GenerateDeliveryOtp(shipment_id=shipment_id), asynchronous=False)
    return OtpGeneratedResponse(
        shipment_id=shipment_id,
        status="generated",
        code=code if get_settings().expose_delivery_otp else None,
    )


@delivery_router.post("/{shipment_id}/otp/verify", response_model=StatusResponse)
async def verify_otp(
    shipment_id: str, body: VerifyOtpRequest, principal: Principal = Depends(_doorstep)
) -> StatusResponse:
    add_context(shipment_id=shipment_id)
    command = VerifyDeliveryOtp(shipment_id=shipment_id, code=body.code)
    return StatusResponse(status=current_domain.process(command, asynchronous=False))
