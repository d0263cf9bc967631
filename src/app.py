"""Orderflow FastAPI application.

Processes commands synchronously over HTTP. Every request runs inside the
orderflow domain context with a fresh logging context.

Usage:
    uvicorn app:app --host 0.0.0.0 --port 8000 --reload
"""

# ---------------------------------------------------------------------------
# Domain initialization
# ---------------------------------------------------------------------------
# Initialized at module level so uvicorn workers share it.
import uuid

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from orderflow.domain import orderflow
from orderflow.utils.logging import add_context, clear_context, configure_logging

configure_logging()
orderflow.init()

# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------
app = FastAPI(
    title="Orderflow API",
    description="Order lifecycle, payments, delivery and returns",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def domain_context_middleware(request: Request, call_next):
    """Push the orderflow domain context and a request-scoped log context."""
    clear_context()
    add_context(request_id=request.headers.get("x-request-id") or str(uuid.uuid4()))
    try:
        with orderflow.domain_context():
            return await call_next(request)
    finally:
        clear_context()


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------
from orderflow.api.delivery import delivery_router  # noqa: E402
from orderflow.api.errors import register_error_handlers  # noqa: E402
from orderflow.api.orders import order_router, payment_router  # noqa: E402
from orderflow.api.returns import exchange_router, return_router  # noqa: E402
from orderflow.api.wallet import wallet_router  # noqa: E402

app.include_router(order_router)
app.include_router(payment_router)
app.include_router(delivery_router)
app.include_router(return_router)
app.include_router(exchange_router)
app.include_router(wallet_router)

register_error_handlers(app)


# ---------------------------------------------------------------------------
# Health / root
# ---------------------------------------------------------------------------
@app.get("/health")
async def health():
    return JSONResponse(content={"status": "ok", "domain": {"name": orderflow.name}})
