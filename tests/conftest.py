import json
import os
from pathlib import Path

import pytest
from protean.integrations.pytest import DomainFixture


def pytest_addoption(parser):
    parser.addoption(
        "--env",
        action="store",
        default="test",
        help="Config environment to run tests on",
    )


def pytest_sessionstart(session):
    """Select the config environment before the domain is imported."""
    os.environ["PROTEAN_ENV"] = session.config.option.env


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their directory location."""
    for item in items:
        test_path = str(Path(item.fspath))

        if "/domain/" in test_path:
            item.add_marker(pytest.mark.domain)
        elif "/application/" in test_path:
            item.add_marker(pytest.mark.application)
        elif "/integration/" in test_path:
            item.add_marker(pytest.mark.integration)
            # Integration tests are often slower
            if not any(m.name == "fast" for m in item.iter_markers()):
                item.add_marker(pytest.mark.slow)
        elif "/bdd/" in test_path:
            item.add_marker(pytest.mark.bdd)


# ---------------------------------------------------------------------------
# Domain and infrastructure
# ---------------------------------------------------------------------------
@pytest.fixture(scope="session")
def orderflow_bed():
    from orderflow.domain import orderflow

    bed = DomainFixture(orderflow)
    bed.setup()
    yield bed
    bed.teardown()


@pytest.fixture(autouse=True)
def _ctx(orderflow_bed):
    with orderflow_bed.domain_context():
        yield


def _reset_singletons():
    from orderflow.carrier import reset_carrier
    from orderflow.collaborators import reset_collaborators
    from orderflow.config import reset_settings
    from orderflow.gateway import reset_gateways
    from orderflow.shipment.courier import serviceability_cache

    reset_settings()
    reset_gateways()
    reset_carrier()
    reset_collaborators()
    serviceability_cache.clear()


@pytest.fixture(autouse=True)
def ledger(tmp_path, monkeypatch):
    """A fresh file-backed ledger and fresh adapters for every test."""
    from orderflow.ledger import configure_ledger, reset_ledger

    monkeypatch.setenv("OTP_HASH_SECRET", "test-otp-secret")
    monkeypatch.setenv("FAKE_GATEWAY_SECRET", "test-gateway-secret")
    _reset_singletons()

    store = configure_ledger(f"sqlite:///{tmp_path / 'ledger.db'}")
    yield store

    reset_ledger()
    _reset_singletons()


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------
@pytest.fixture
def catalogue():
    from orderflow.collaborators import get_catalogue

    catalogue = get_catalogue()
    catalogue.add_variant("var-tee", 500.0, title="Cotton Tee")
    catalogue.add_variant("var-jeans", 1500.0, title="Denim Jeans")
    catalogue.add_variant("var-cap", 300.0, title="Canvas Cap")
    catalogue.add_variant("var-jacket", 2500.0, title="Rain Jacket")
    return catalogue


@pytest.fixture
def coupons():
    from orderflow.collaborators import get_coupon_validator

    validator = get_coupon_validator()
    validator.add_coupon("FLAT200", flat=200.0)
    validator.add_coupon("TENOFF", percent=10.0, min_order=1000.0)
    return validator


@pytest.fixture
def gateway():
    from orderflow.gateway import get_gateway

    return get_gateway("fake")


@pytest.fixture
def carrier():
    from orderflow.carrier import get_carrier

    return get_carrier()


@pytest.fixture
def address():
    return {
        "name": "Asha Rao",
        "phone": "9876543210",
        "line1": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "pincode": "560001",
    }


# ---------------------------------------------------------------------------
# Order lifecycle helpers
# ---------------------------------------------------------------------------
@pytest.fixture
def place_order(catalogue, coupons, address):
    """Create an order; defaults to one tee and one pair of jeans paid by COD."""
    from orderflow.order.state_machine import OrderStateMachine

    def _place(payment_method="cod", items=None, coupon_code=None, buyer_id="buyer-1", pincode=None):
        shipping = {**address, "pincode": pincode} if pincode else address
        return OrderStateMachine().create(
            buyer_id=buyer_id,
            items=items or [{"variant_id": "var-tee", "quantity": 1}, {"variant_id": "var-jeans", "quantity": 1}],
            address=shipping,
            payment_method=payment_method,
            coupon_code=coupon_code,
        )

    return _place


@pytest.fixture
def capture_webhook(gateway):
    """Deliver a signed ``captured`` webhook for the order's open payment."""
    from orderflow.payment.payment import PaymentRepository
    from orderflow.payment.settlement import PaymentSettlement

    def _capture(order_id, event_id=None, amount=None, status="captured"):
        payment = PaymentRepository().for_order(str(order_id))[-1]
        body = json.dumps(
            {
                "gatewayOrderId": payment.gateway_order_id,
                "gatewayPaymentId": f"pay_{str(payment.id)[:8]}",
                "status": status,
                "amount": payment.amount if amount is None else amount,
            }
        )
        return PaymentSettlement().handle_webhook(
            "fake", body, signature=gateway.sign(body), event_id=event_id or f"evt-{payment.id}-{status}"
        )

    return _capture


@pytest.fixture
def paid_order(place_order, capture_webhook):
    """An online order whose payment has been captured."""
    from orderflow.order.order import OrderRepository

    def _paid(**kwargs):
        order = place_order(payment_method="online", **kwargs)
        capture_webhook(order.id)
        return OrderRepository().get(order.id)

    return _paid


@pytest.fixture
def delivered_order(paid_order, place_order, carrier):
    """Dispatch an order and deliver it with a courier scan."""
    from orderflow.order.order import OrderRepository
    from orderflow.shipment.courier import CourierService
    from orderflow.utils.timestamps import to_iso, utcnow

    def _delivered(payment_method="online", **kwargs):
        order = paid_order(**kwargs) if payment_method == "online" else place_order(payment_method, **kwargs)
        service = CourierService()
        shipment = service.dispatch(str(order.id))
        service.ingest_scan(shipment.waybill, "Delivered", to_iso(utcnow()), location="Bengaluru")
        return OrderRepository().get(order.id)

    return _delivered


@pytest.fixture
def line():
    """Find the order line for a catalogue variant."""

    def _line(order, variant_id):
        return next(i for i in order.items if str(i.variant_id) == variant_id)

    return _line
