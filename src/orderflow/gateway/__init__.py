"""Payment gateway adapters, looked up by the name carried on each Payment."""

from protean.exceptions import ValidationError

from orderflow.config import get_settings

_gateway_instances: dict = {}


def _build_gateway(name: str):
    settings = get_settings()
    if name == "fake":
        from orderflow.gateway.fake_adapter import FakeGateway

        return FakeGateway(secret=settings.fake_gateway_secret)
    if name == "cod":
        from orderflow.gateway.cod_adapter import CashOnDeliveryGateway

        return CashOnDeliveryGateway()
    if name == "razorpay":
        from orderflow.gateway.razorpay_adapter import RazorpayGateway

        return RazorpayGateway(
            key_id=settings.razorpay_key_id,
            key_secret=settings.razorpay_key_secret,
            webhook_secret=settings.razorpay_webhook_secret,
            timeout=settings.external_timeout_seconds,
        )
    if name == "payu":
        from orderflow.gateway.payu_adapter import PayUGateway

        return PayUGateway(
            key=settings.payu_key,
            salt=settings.payu_salt,
            timeout=settings.external_timeout_seconds,
            base_url=settings.payu_base_url,
        )
    raise ValueError(f"Unknown payment gateway: {name}")


def get_gateway(name: str | None = None):
    """Return the adapter for ``name`` (default: DEFAULT_GATEWAY).

    Only gateways enabled through PAYMENT_GATEWAYS, or installed with
    ``set_gateway``, can be resolved.
    """
    settings = get_settings()
    name = name or settings.default_gateway
    if name not in _gateway_instances:
        if name not in settings.payment_gateways:
            raise ValidationError({"gateway": [f"Payment gateway {name} is not enabled"]})
        _gateway_instances[name] = _build_gateway(name)
    return _gateway_instances[name]


def set_gateway(gateway, name: str | None = None) -> None:
    """Override a gateway instance (useful for testing)."""
    _gateway_instances[name or gateway.name] = gateway


def reset_gateways() -> None:
    """Reset all gateway singletons (useful for testing)."""
    _gateway_instances.clear()
