"""Environment-driven settings.

Values are read once per process through ``get_settings()``; tests call
``reset_settings()`` after changing the environment.
"""

import os
from dataclasses import dataclass, field
from functools import lru_cache


def _int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _list(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass(frozen=True)
class Settings:
    environment: str = "development"
    ledger_database_uri: str = "sqlite:///orderflow.db"
    currency: str = "INR"

    # Payments
    payment_gateways: list[str] = field(default_factory=lambda: ["fake", "cod"])
    default_gateway: str = "fake"
    fake_gateway_secret: str = "fake-gateway-secret"
    razorpay_key_id: str = ""
    razorpay_key_secret: str = ""
    razorpay_webhook_secret: str = ""
    payu_key: str = ""
    payu_salt: str = ""
    payu_base_url: str = "https://info.payu.in"

    # Courier
    carrier_adapter: str = "fake"
    carrier_api_url: str = "https://track.delhivery.com"
    carrier_api_token: str = ""
    carrier_webhook_token: str = ""
    default_pickup_location: str = "primary-warehouse"
    serviceability_cache_ttl: int = 3600

    # Delivery confirmation
    otp_hash_secret: str = "change-me"
    otp_ttl_seconds: int = 600
    otp_max_attempts: int = 5
    expose_delivery_otp: bool = False

    # Orders
    pending_order_ttl_hours: int = 48

    # Returns
    return_window_days: int = 7

    # Execution
    batch_max_workers: int = 4
    external_timeout_seconds: float = 10.0


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    env = os.environ.get("PROTEAN_ENV", "development").lower()
    return Settings(
        environment=env,
        ledger_database_uri=os.environ.get("LEDGER_DATABASE_URI", "sqlite:///orderflow.db"),
        currency=os.environ.get("CURRENCY", "INR"),
        payment_gateways=_list("PAYMENT_GATEWAYS", "fake,cod"),
        default_gateway=os.environ.get("DEFAULT_GATEWAY", "fake"),
        fake_gateway_secret=os.environ.get("FAKE_GATEWAY_SECRET", "fake-gateway-secret"),
        razorpay_key_id=os.environ.get("RAZORPAY_KEY_ID", ""),
        razorpay_key_secret=os.environ.get("RAZORPAY_KEY_SECRET", ""),
        razorpay_webhook_secret=os.environ.get("RAZORPAY_WEBHOOK_SECRET", ""),
        payu_key=os.environ.get("PAYU_KEY", ""),
        payu_salt=os.environ.get("PAYU_SALT", ""),
        payu_base_url=os.environ.get("PAYU_BASE_URL", "https://info.payu.in"),
        carrier_adapter=os.environ.get("CARRIER_ADAPTER", "fake"),
        carrier_api_url=os.environ.get("CARRIER_API_URL", "https://track.delhivery.com"),
        carrier_api_token=os.environ.get("CARRIER_API_TOKEN", ""),
        carrier_webhook_token=os.environ.get("CARRIER_WEBHOOK_TOKEN", ""),
        default_pickup_location=os.environ.get("DEFAULT_PICKUP_LOCATION", "primary-warehouse"),
        serviceability_cache_ttl=_int("SERVICEABILITY_CACHE_TTL", 3600),
        otp_hash_secret=os.environ.get("OTP_HASH_SECRET", "change-me"),
        otp_ttl_seconds=_int("OTP_TTL_SECONDS", 600),
        otp_max_attempts=_int("OTP_MAX_ATTEMPTS", 5),
        # Staging/test only: echo generated delivery codes in API responses
        expose_delivery_otp=os.environ.get("EXPOSE_DELIVERY_OTP", "false").lower() in ("1", "true", "yes"),
        pending_order_ttl_hours=_int("PENDING_ORDER_TTL_HOURS", 48),
        return_window_days=_int("RETURN_WINDOW_DAYS", 7),
        batch_max_workers=_int("BATCH_MAX_WORKERS", 4),
        external_timeout_seconds=float(os.environ.get("EXTERNAL_TIMEOUT_SECONDS", 10)),
    )


def reset_settings() -> None:
    get_settings.cache_clear()
