"""FastAPI routes for orders and payments."""

import json

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from protean.utils.globals import current_domain

from orderflow.api.auth import Principal, Role, require_role
from orderflow.api.schemas import (
    CancelOrderRequest,
    CreateOrderRequest,
    RefundRequest,
    RefundResponse,
    StatusResponse,
)
from orderflow.order.order import OrderRepository
from orderflow.order.placement import CancelOrder, CreateOrder, RetryCheckout
from orderflow.payment.payment import PaymentRepository
from orderflow.payment.webhooks import ProcessPaymentWebhook, RefundPayment
from orderflow.shipment.shipment import ShipmentRepository
from orderflow.utils.logging import add_context


def _assert_owner(principal: Principal, buyer_id) -> None:
    if principal.is_buyer and str(buyer_id) != str(principal.user_id):
        raise HTTPException(status_code=403, detail="Order belongs to another buyer")


# ---------------------------------------------------------------------------
# Order Router
# ---------------------------------------------------------------------------
order_router = APIRouter(prefix="/orders", tags=["orders"])


@order_router.post("", status_code=201)
async def create_order(
    body: CreateOrderRequest,
    principal: Principal = Depends(require_role(Role.BUYER.value)),
) -> dict:
    """Place an order; online orders come back pending with a checkout reference."""
    command = CreateOrder(
        buyer_id=principal.user_id,
        items=json.dumps([item.model_dump() for item in body.items]),
        shipping_address=json.dumps(body.shipping_address.model_dump()),
        payment_method=body.payment_method,
        coupon_code=body.coupon_code,
        gateway=body.gateway,
    )
    return current_domain.process(command, asynchronous=False)


@order_router.post("/{order_id}/cancel")
async def cancel_order(
    order_id: str,
    body: CancelOrderRequest,
    principal: Principal = Depends(require_role(Role.BUYER.value, Role.SUPPORT.value, Role.ADMIN.value)),
) -> dict:
    add_context(order_id=order_id)
    _assert_owner(principal, OrderRepository().get(order_id).buyer_id)
    command = CancelOrder(
        order_id=order_id,
        actor=principal.role,
        reason=body.reason,
        expected_version=body.expected_version,
    )
    return current_domain.process(command, asynchronous=False)


@order_router.post("/{order_id}/checkout")
async def retry_checkout(
    order_id: str,
    principal: Principal = Depends(require_role(Role.BUYER.value)),
) -> dict:
    """Open a fresh checkout after the previous payment failed."""
    add_context(order_id=order_id)
    _assert_owner(principal, OrderRepository().get(order_id).buyer_id)
    return current_domain.process(RetryCheckout(order_id=order_id), asynchronous=False)


@order_router.get("/{order_id}")
async def get_order(order_id: str, principal: Principal = Depends(require_role())) -> dict:
    order = OrderRepository().get(order_id)
    _assert_owner(principal, order.buyer_id)
    payments = PaymentRepository().find_by_owner(order_id)
    shipments = ShipmentRepository().find_by_owner(order_id)
    return {
        "order": order.to_document(),
        "version": order.version,
        "payments": [{**p.to_document(), "version": p.version} for p in payments],
        "shipments": [{**s.to_document(), "version": s.version} for s in shipments],
    }


# ---------------------------------------------------------------------------
# Payment Router
# ---------------------------------------------------------------------------
payment_router = APIRouter(prefix="/payments", tags=["payments"])


@payment_router.post("/webhook/{gateway}", response_model=StatusResponse)
async def payment_webhook(
    gateway: str,
    request: Request,
    x_webhook_signature: str = Header(default=""),
    x_webhook_event_id: str | None = Header(default=None),
) -> StatusResponse:
    """Apply a gateway notification; replays are acknowledged with ``duplicate``."""
    raw_body = (await request.body()).decode("utf-8")
    add_context(gateway=gateway, event_id=x_webhook_event_id)
    command = ProcessPaymentWebhook(
        gateway=gateway,
        raw_body=raw_body,
        signature=x_webhook_signature or None,
        event_id=x_webhook_event_id,
    )
    outcome = current_domain.process(command, asynchronous=False)
    return StatusResponse(status=outcome)


@payment_router.post("/{payment_id}/refund", response_model=RefundResponse)
async def refund_payment(
    payment_id: str,
    body: RefundRequest,
    principal: Principal = Depends(require_role(Role.ADMIN.value)),
) -> RefundResponse:
    command = RefundPayment(
        payment_id=payment_id,
        amount=body.amount,
        reason=body.reason,
        idempotency_key=body.idempotency_key,
        destination=body.destination,
    )
    reference = current_domain.process(command, asynchronous=False)
    return RefundResponse(payment_id=payment_id, refund_reference=reference)
