"""Carrier adapter abstraction: pluggable courier integration."""

from orderflow.config import get_settings

_carrier_instance = None


def get_carrier():
    """Return the configured carrier adapter (singleton).

    Uses FakeCarrier by default. In production, configure via
    CARRIER_ADAPTER environment variable.
    """
    global _carrier_instance
    if _carrier_instance is None:
        settings = get_settings()
        adapter = settings.carrier_adapter
        if adapter == "fake":
            from orderflow.carrier.fake_adapter import FakeCarrier

            _carrier_instance = FakeCarrier()
        elif adapter == "delhivery":
            from orderflow.carrier.delhivery_adapter import DelhiveryCarrier

            _carrier_instance = DelhiveryCarrier(
                base_url=settings.carrier_api_url,
                api_token=settings.carrier_api_token,
                webhook_token=settings.carrier_webhook_token,
                timeout=settings.external_timeout_seconds,
                allow_unsigned_webhooks=settings.environment == "development",
            )
        else:
            raise ValueError(f"Unknown carrier adapter: {adapter}")
    return _carrier_instance


def set_carrier(carrier) -> None:
    """Override the carrier instance (useful for testing)."""
    global _carrier_instance
    _carrier_instance = carrier


def reset_carrier():
    """Reset the carrier singleton (useful for testing)."""
    global _carrier_instance
    _carrier_instance = None
