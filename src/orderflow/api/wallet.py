"""FastAPI routes for buyer store credit."""

from fastapi import APIRouter, Depends
from protean.utils.globals import current_domain

from orderflow.api.auth import Principal, Role, require_role
from orderflow.api.schemas import WalletAdjustmentRequest
from orderflow.utils.logging import add_context
from orderflow.wallet.store_credit import StoreCredit
from orderflow.wallet.wallet_handling import AdjustWallet

wallet_router = APIRouter(prefix="/wallet", tags=["wallet"])


@wallet_router.get("/me")
async def my_wallet(principal: Principal = Depends(require_role(Role.BUYER.value))) -> dict:
    return StoreCredit().get(principal.user_id).to_document()


@wallet_router.get("/{buyer_id}")
async def buyer_wallet(
    buyer_id: str,
    principal: Principal = Depends(require_role(Role.SUPPORT.value, Role.ADMIN.value)),
) -> dict:
    return StoreCredit().get(buyer_id).to_document()


@wallet_router.post("/{buyer_id}/adjust")
async def adjust_wallet(
    buyer_id: str,
    body: WalletAdjustmentRequest,
    principal: Principal = Depends(require_role(Role.ADMIN.value)),
) -> dict:
    add_context(buyer_id=buyer_id)
    command = AdjustWallet(
        buyer_id=buyer_id,
        amount=body.amount,
        note=body.note,
        idempotency_key=body.idempotency_key,
    )
    return current_domain.process(command, asynchronous=False)
