"""Store Credit: posts refunds and support adjustments to buyer wallets.

A buyer's wallet is created by its first credit. Every posting is keyed, and
the key is checked against the stored wallet before anything is written, so
a replay returns the original entry.
"""

import structlog
from protean.exceptions import ValidationError

from orderflow.config import get_settings
from orderflow.ledger import get_ledger
from orderflow.wallet.wallet import EntrySource, Wallet, WalletEntry, WalletRepository

logger = structlog.get_logger(__name__)


class StoreCredit:
    def __init__(self, ledger=None) -> None:
        self.ledger = ledger or get_ledger()
        self.wallets = WalletRepository(self.ledger)

    def get(self, buyer_id: str) -> Wallet:
        """The buyer's wallet; a buyer who was never credited has an empty one."""
        return self._load(buyer_id)[0]

    def _load(self, buyer_id: str) -> tuple[Wallet, bool]:
        records = self.wallets.find_by_owner(str(buyer_id))
        if records:
            return records[0], False
        return Wallet.open(str(buyer_id), get_settings().currency), True

    def credit(
        self,
        buyer_id: str,
        amount: float,
        source: str,
        idempotency_key: str,
        reference: str | None = None,
        note: str | None = None,
    ) -> WalletEntry:
        if amount <= 0:
            raise ValidationError({"amount": ["Credit amount must be positive"]})
        return self._post(buyer_id, amount, source, idempotency_key, reference, note)

    def adjust(self, buyer_id: str, amount: float, note: str, idempotency_key: str) -> WalletEntry:
        """Support correction; a negative amount takes credit back."""
        if not note:
            raise ValidationError({"note": ["A note is required for adjustments"]})
        if not amount:
            raise ValidationError({"amount": ["Adjustment amount cannot be zero"]})
        return self._post(buyer_id, amount, EntrySource.ADJUSTMENT.value, idempotency_key, None, note)

    def _post(self, buyer_id, amount, source, idempotency_key, reference, note) -> WalletEntry:
        if not idempotency_key:
            raise ValidationError({"idempotency_key": ["An idempotency key is required"]})

        wallet, is_new = self._load(buyer_id)
        existing = wallet.entry_for_key(idempotency_key)
        if existing is not None:
            logger.info("wallet_posting_replayed", buyer_id=str(buyer_id), idempotency_key=idempotency_key)
            return existing

        expected_status = wallet.status
        if amount > 0:
            entry = wallet.credit(amount, source, idempotency_key, reference=reference, note=note)
        else:
            entry = wallet.debit(-amount, source, idempotency_key, reference=reference, note=note)

        if is_new:
            self.wallets.add(wallet)
        else:
            self.wallets.save(wallet, expected_status)

        logger.info(
            "wallet_posted",
            buyer_id=str(buyer_id),
            entry_type=entry.entry_type,
            amount=entry.amount,
            source=source,
            balance=wallet.balance,
        )
        return entry
