"""DeliveryOtp aggregate: the handover code for one shipment.

Only an HMAC of the code is stored. Wrong guesses are counted and the OTP
locks at the attempt limit; only regeneration unlocks it.

State Machine:
    ACTIVE → VERIFIED
    ACTIVE → LOCKED (attempt limit reached)
    any → ACTIVE (regenerated)
"""

import hmac
import secrets
from datetime import datetime, timedelta
from enum import Enum
from hashlib import sha256

from protean.fields import Boolean, DateTime, Identifier, Integer, String

from orderflow.domain import orderflow
from orderflow.ledger.repository import LedgerRepository, document_of, load_element
from orderflow.utils.timestamps import utcnow


class OtpStatus(Enum):
    ACTIVE = "active"
    LOCKED = "locked"
    VERIFIED = "verified"


def hash_code(secret: str, shipment_id: str, code: str) -> str:
    return hmac.new(secret.encode(), f"{shipment_id}:{code}".encode(), sha256).hexdigest()


def new_code() -> str:
    return f"{secrets.randbelow(1_000_000):06d}"


@orderflow.aggregate
class DeliveryOtp:
    shipment_id = Identifier(required=True)
    code_hash = String(required=True, max_length=64)
    status = String(choices=OtpStatus, default=OtpStatus.ACTIVE.value)
    expires_at = DateTime(required=True)
    verified_at = DateTime()
    attempts = Integer(default=0)
    locked = Boolean(default=False)
    generated_at = DateTime()
    version = Integer(default=0)

    @classmethod
    def issue(cls, shipment_id: str, secret: str, ttl_seconds: int) -> tuple["DeliveryOtp", str]:
        """Return a fresh OTP and its plaintext code."""
        code = new_code()
        now = utcnow()
        otp = cls(
            id=shipment_id,
            shipment_id=shipment_id,
            code_hash=hash_code(secret, shipment_id, code),
            expires_at=now + timedelta(seconds=ttl_seconds),
            generated_at=now,
        )
        return otp, code

    def regenerate(self, secret: str, ttl_seconds: int) -> str:
        code = new_code()
        now = utcnow()
        self.code_hash = hash_code(secret, str(self.shipment_id), code)
        self.status = OtpStatus.ACTIVE.value
        self.expires_at = now + timedelta(seconds=ttl_seconds)
        self.generated_at = now
        self.verified_at = None
        self.attempts = 0
        self.locked = False
        return code

    @property
    def is_verified(self) -> bool:
        return self.status == OtpStatus.VERIFIED.value

    def is_exhausted(self, max_attempts: int) -> bool:
        return self.locked or self.attempts >= max_attempts

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def matches(self, secret: str, code: str) -> bool:
        return hmac.compare_digest(self.code_hash, hash_code(secret, str(self.shipment_id), str(code).strip()))

    def record_failed_attempt(self, max_attempts: int) -> None:
        self.attempts = (self.attempts or 0) + 1
        if self.attempts >= max_attempts:
            self.locked = True
            self.status = OtpStatus.LOCKED.value

    def mark_verified(self) -> None:
        self.status = OtpStatus.VERIFIED.value
        self.verified_at = utcnow()

    def to_document(self) -> dict:
        return document_of(self)

    @classmethod
    def from_document(cls, document: dict, version: int = 0) -> "DeliveryOtp":
        return load_element(cls, document, version=version)


class DeliveryOtpRepository(LedgerRepository):
    table = "delivery_otps"
    aggregate_cls = DeliveryOtp

    def owner_of(self, aggregate) -> str | None:
        return str(aggregate.shipment_id)
