"""FastAPI routes for returns and exchanges."""

import json

from fastapi import APIRouter, Depends
from protean.utils.globals import current_domain

from orderflow.api.auth import Principal, Role, require_role
from orderflow.api.schemas import (
    ApproveReturnRequest,
    ConfirmExchangePaymentRequest,
    CreateExchangeRequest,
    CreateReturnRequest,
    ExchangeQcRequest,
    ReceiveReturnRequest,
    RejectReturnRequest,
)
from orderflow.returns.exchange_handling import CancelExchange, ConfirmExchangePayment, CreateExchange, RecordExchangeQc
from orderflow.returns.exchange_workflow import ExchangeWorkflow
from orderflow.returns.return_handling import (
    ApproveReturn,
    CancelReturn,
    CreateReturnRequest as CreateReturnRequestCommand,
    ReceiveReturn,
    RejectReturn,
)
from orderflow.utils.logging import add_context

_admin = require_role(Role.ADMIN.value)
_buyer = require_role(Role.BUYER.value)
_buyer_or_admin = require_role(Role.BUYER.value, Role.ADMIN.value)


# ---------------------------------------------------------------------------
# Return Router
# ---------------------------------------------------------------------------
return_router = APIRouter(prefix="/return", tags=["returns"])


@return_router.post("/create", status_code=201)
async def create_return(body: CreateReturnRequest, principal: Principal = Depends(_buyer)) -> dict:
    add_context(order_id=body.order_id)
    command = CreateReturnRequestCommand(
        order_id=body.order_id,
        buyer_id=principal.user_id,
        items=json.dumps([i.model_dump() for i in body.items]),
        reason=body.reason,
        evidence_images=json.dumps(body.evidence_images),
        pickup_address=json.dumps(body.pickup_address.model_dump()) if body.pickup_address else None,
    )
    return current_domain.process(command, asynchronous=False)


@return_router.post("/{return_id}/approve")
async def approve_return(
    return_id: str, body: ApproveReturnRequest | None = None, principal: Principal = Depends(_admin)
) -> dict:
    schedule_pickup = body.schedule_pickup if body else False
    command = ApproveReturn(return_id=return_id, schedule_pickup=schedule_pickup)
    return current_domain.process(command, asynchronous=False)


@return_router.post("/{return_id}/reject")
async def reject_return(return_id: str, body: RejectReturnRequest, principal: Principal = Depends(_admin)) -> dict:
    return current_domain.process(RejectReturn(return_id=return_id, reason=body.reason), asynchronous=False)


@return_router.post("/{return_id}/receive")
async def receive_return(return_id: str, body: ReceiveReturnRequest, principal: Principal = Depends(_admin)) -> dict:
    """Record what came back and refund it."""
    command = ReceiveReturn(
        return_id=return_id,
        received_items=json.dumps([i.model_dump() for i in body.received_items]),
        refund_method=body.refund_method,
    )
    return current_domain.process(command, asynchronous=False)


@return_router.post("/{return_id}/cancel")
async def cancel_return(return_id: str, principal: Principal = Depends(_buyer_or_admin)) -> dict:
    buyer_id = principal.user_id if principal.is_buyer else None
    return current_domain.process(CancelReturn(return_id=return_id, buyer_id=buyer_id), asynchronous=False)


# ---------------------------------------------------------------------------
# Exchange Router
# ---------------------------------------------------------------------------
exchange_router = APIRouter(prefix="/exchange", tags=["exchanges"])


@exchange_router.post("/create", status_code=201)
async def create_exchange(body: CreateExchangeRequest, principal: Principal = Depends(_buyer)) -> dict:
    add_context(order_id=body.order_id)
    command = CreateExchange(
        order_id=body.order_id,
        buyer_id=principal.user_id,
        items=json.dumps([i.model_dump() for i in body.items]),
        replacement_items=json.dumps([i.model_dump() for i in body.replacement_items]),
        reason=body.reason,
        idempotency_key=body.idempotency_key,
    )
    return current_domain.process(command, asynchronous=False)


@exchange_router.post("/qc")
async def record_qc(body: ExchangeQcRequest, principal: Principal = Depends(_admin)) -> dict:
    command = RecordExchangeQc(
        exchange_id=body.exchange_id,
        passed=body.passed,
        notes=body.notes,
        images=json.dumps(body.images),
    )
    return current_domain.process(command, asynchronous=False)


@exchange_router.post("/confirm-payment")
async def confirm_exchange_payment(
    body: ConfirmExchangePaymentRequest, principal: Principal = Depends(_buyer_or_admin)
) -> dict:
    """Open the difference payment, or capture it and place the replacement order."""
    if principal.is_buyer:
        ExchangeWorkflow().assert_owned_by(body.exchange_id, principal.user_id)
    command = ConfirmExchangePayment(
        exchange_id=body.exchange_id,
        gateway_payment_id=body.gateway_payment_id,
        signature=body.signature,
    )
    return current_domain.process(command, asynchronous=False)


@exchange_router.post("/{exchange_id}/cancel")
async def cancel_exchange(exchange_id: str, principal: Principal = Depends(_buyer_or_admin)) -> dict:
    buyer_id = principal.user_id if principal.is_buyer else None
    return current_domain.process(CancelExchange(exchange_id=exchange_id, buyer_id=buyer_id), asynchronous=False)
