import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from orderflow.api.delivery import delivery_router
from orderflow.api.errors import register_error_handlers
from orderflow.api.orders import order_router, payment_router
from orderflow.api.returns import exchange_router, return_router
from orderflow.api.wallet import wallet_router


@pytest.fixture()
def client():
    from orderflow.domain import orderflow

    app = FastAPI()

    @app.middleware("http")
    async def domain_context(request: Request, call_next):
        with orderflow.domain_context():
            return await call_next(request)

    for router in (order_router, payment_router, delivery_router, return_router, exchange_router, wallet_router):
        app.include_router(router)
    register_error_handlers(app)
    return TestClient(app, raise_server_exceptions=False)


def _headers(role, user_id=None):
    headers = {"X-User-Role": role}
    if user_id:
        headers["X-User-Id"] = user_id
    return headers


@pytest.fixture
def buyer():
    return _headers("buyer", "buyer-1")


@pytest.fixture
def other_buyer():
    return _headers("buyer", "buyer-2")


@pytest.fixture
def admin():
    return _headers("admin", "admin-1")


@pytest.fixture
def agent():
    return _headers("agent", "agent-1")


@pytest.fixture
def order_payload(catalogue, coupons, address):
    def _payload(payment_method="online", **overrides):
        return {
            "items": [{"variant_id": "var-tee", "quantity": 1}, {"variant_id": "var-jeans", "quantity": 1}],
            "shipping_address": address,
            "payment_method": payment_method,
            **overrides,
        }

    return _payload
