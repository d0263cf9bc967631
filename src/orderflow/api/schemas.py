"""Pydantic request/response schemas for the Orderflow API.

These are external contracts, separate from internal Protean commands. Range
checks on quantities and amounts are left to the domain so that they surface
as the same 400 responses regardless of entry point.
"""

from typing import Any

from pydantic import BaseModel, Field


# ---------------------------------------------------------------------------
# Shared sub-models
# ---------------------------------------------------------------------------
class AddressSchema(BaseModel):
    name: str
    phone: str
    line1: str
    line2: str | None = None
    city: str
    state: str
    pincode: str
    country: str = "India"


class OrderLineSchema(BaseModel):
    variant_id: str
    quantity: int
    size: str | None = None
    color: str | None = None


class ReturnLineSchema(BaseModel):
    order_item_id: str
    quantity: int
    reason: str | None = None


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------
class CreateOrderRequest(BaseModel):
    items: list[OrderLineSchema]
    shipping_address: AddressSchema
    payment_method: str
    coupon_code: str | None = None
    gateway: str | None = None

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "items": [{"variant_id": "var-001", "quantity": 2, "size": "M"}],
                    "shipping_address": {
                        "name": "Asha Rao",
                        "phone": "9876543210",
                        "line1": "12 MG Road",
                        "city": "Bengaluru",
                        "state": "Karnataka",
                        "pincode": "560001",
                    },
                    "payment_method": "online",
                    "coupon_code": "WELCOME10",
                }
            ]
        }
    }


class CancelOrderRequest(BaseModel):
    reason: str
    expected_version: int | None = None


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------
class RefundRequest(BaseModel):
    amount: float
    reason: str | None = None
    idempotency_key: str | None = None
    destination: str = "original"


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------
class DispatchRequest(BaseModel):
    order_id: str
    pickup_location: str | None = None


class PickupRequest(BaseModel):
    shipment_ids: list[str] = Field(min_length=1)
    pickup_date: str | None = None


class CancelShipmentRequest(BaseModel):
    shipment_id: str


class ShipmentUpdateSchema(BaseModel):
    shipment_id: str
    changes: dict[str, Any]


class BulkUpdateRequest(BaseModel):
    updates: list[ShipmentUpdateSchema] = Field(min_length=1)


class VerifyOtpRequest(BaseModel):
    code: str


class NdrActionRequest(BaseModel):
    shipment_id: str
    action: str
    remarks: str | None = None


class DocumentPushRequest(BaseModel):
    waybill: str
    doc_type: str
    urls: list[str]


# ---------------------------------------------------------------------------
# Returns and exchanges
# ---------------------------------------------------------------------------
class CreateReturnRequest(BaseModel):
    order_id: str
    items: list[ReturnLineSchema]
    reason: str
    evidence_images: list[str] = []
    pickup_address: AddressSchema | None = None


class ApproveReturnRequest(BaseModel):
    schedule_pickup: bool = False


class RejectReturnRequest(BaseModel):
    reason: str


class ReceiveReturnRequest(BaseModel):
    received_items: list[ReturnLineSchema]
    refund_method: str = "original"


class CreateExchangeRequest(BaseModel):
    order_id: str
    items: list[ReturnLineSchema]
    replacement_items: list[OrderLineSchema]
    reason: str | None = None
    idempotency_key: str | None = None


class ExchangeQcRequest(BaseModel):
    exchange_id: str
    passed: bool
    notes: str | None = None
    images: list[str] = []


class ConfirmExchangePaymentRequest(BaseModel):
    exchange_id: str
    gateway_payment_id: str | None = None
    signature: str | None = None


class WalletAdjustmentRequest(BaseModel):
    amount: float
    note: str
    idempotency_key: str


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------
class StatusResponse(BaseModel):
    status: str


class RefundResponse(BaseModel):
    payment_id: str
    refund_reference: str


class ServiceabilityResponse(BaseModel):
    pincode: str
    serviceable: bool


class OtpGeneratedResponse(BaseModel):
    shipment_id: str
    status: str
    code: str | None = None


class BatchItemResult(BaseModel):
    id: str
    ok: bool
    error: str | None = None


class BatchResponse(BaseModel):
    results: list[BatchItemResult]
