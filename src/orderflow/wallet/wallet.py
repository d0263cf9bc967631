"""Wallet aggregate: a buyer's store-credit balance.

One wallet per buyer, keyed by the buyer id. Every movement is an entry with
its own idempotency key, so a replayed credit returns the earlier entry
instead of adding the amount twice.
"""

from enum import Enum
from uuid import uuid4

from protean.exceptions import ValidationError
from protean.fields import DateTime, Float, HasMany, Identifier, Integer, String

from orderflow.domain import orderflow
from orderflow.ledger.repository import LedgerRepository, document_of, load_element
from orderflow.utils.timestamps import utcnow


class WalletStatus(Enum):
    ACTIVE = "active"


class EntryType(Enum):
    CREDIT = "credit"
    DEBIT = "debit"


class EntrySource(Enum):
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


@orderflow.entity(part_of="Wallet")
class WalletEntry:
    entry_type = String(choices=EntryType, required=True)
    amount = Float(required=True, min_value=0.01)
    source = String(choices=EntrySource, required=True)
    reference = String(max_length=255)
    note = String(max_length=500)
    idempotency_key = String(required=True, max_length=255)
    created_at = DateTime()


@orderflow.aggregate
class Wallet:
    buyer_id = Identifier(required=True)
    status = String(choices=WalletStatus, default=WalletStatus.ACTIVE.value)
    balance = Float(default=0.0)
    currency = String(max_length=3, default="INR")
    entries = HasMany(WalletEntry)
    created_at = DateTime()
    version = Integer(default=0)

    @classmethod
    def open(cls, buyer_id: str, currency: str = "INR") -> "Wallet":
        return cls(id=str(buyer_id), buyer_id=buyer_id, currency=currency, created_at=utcnow())

    def entry_for_key(self, idempotency_key: str) -> WalletEntry | None:
        return next((e for e in self.entries if e.idempotency_key == idempotency_key), None)

    def credit(self, amount: float, source: str, idempotency_key: str, reference=None, note=None) -> WalletEntry:
        return self._post(EntryType.CREDIT, amount, source, idempotency_key, reference, note)

    def debit(self, amount: float, source: str, idempotency_key: str, reference=None, note=None) -> WalletEntry:
        if round(amount, 2) > round(self.balance, 2):
            raise ValidationError({"amount": [f"Debit of {amount} exceeds the wallet balance of {self.balance}"]})
        return self._post(EntryType.DEBIT, amount, source, idempotency_key, reference, note)

    def _post(self, entry_type, amount, source, idempotency_key, reference, note) -> WalletEntry:
        amount = round(amount, 2)
        if amount <= 0:
            raise ValidationError({"amount": ["Wallet amounts must be positive"]})
        entry = WalletEntry(
            id=str(uuid4()),
            entry_type=entry_type.value,
            amount=amount,
            source=source,
            reference=reference,
            note=note,
            idempotency_key=idempotency_key,
            created_at=utcnow(),
        )
        self.add_entries(entry)
        signed = amount if entry_type == EntryType.CREDIT else -amount
        self.balance = round(self.balance + signed, 2)
        return entry

    def to_document(self) -> dict:
        return document_of(self)

    @classmethod
    def from_document(cls, document: dict, version: int = 0) -> "Wallet":
        return load_element(cls, document, version=version)


class WalletRepository(LedgerRepository):
    table = "wallets"
    aggregate_cls = Wallet

    def owner_of(self, aggregate) -> str | None:
        return str(aggregate.buyer_id)
