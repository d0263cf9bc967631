"""Store credit postings against the ledger."""

import pytest
from protean.exceptions import ValidationError

from orderflow.errors import ConflictError
from orderflow.wallet.store_credit import StoreCredit
from orderflow.wallet.wallet import EntrySource, WalletRepository


@pytest.fixture
def store_credit():
    return StoreCredit()


class TestCredit:
    def test_first_credit_opens_the_wallet(self, store_credit):
        store_credit.credit("buyer-1", 300.0, EntrySource.REFUND.value, "return:r-1")

        wallet = store_credit.get("buyer-1")
        assert wallet.balance == 300.0
        assert wallet.version == 0
        assert len(wallet.entries) == 1

    def test_later_credits_accumulate(self, store_credit):
        store_credit.credit("buyer-1", 300.0, EntrySource.REFUND.value, "return:r-1")
        store_credit.credit("buyer-1", 200.0, EntrySource.REFUND.value, "return:r-2")

        wallet = store_credit.get("buyer-1")
        assert wallet.balance == 500.0
        assert wallet.version == 1

    def test_replayed_key_posts_once(self, store_credit):
        first = store_credit.credit("buyer-1", 300.0, EntrySource.REFUND.value, "return:r-1")
        second = store_credit.credit("buyer-1", 300.0, EntrySource.REFUND.value, "return:r-1")

        assert first.id == second.id
        assert store_credit.get("buyer-1").balance == 300.0

    def test_wallets_are_per_buyer(self, store_credit):
        store_credit.credit("buyer-1", 300.0, EntrySource.REFUND.value, "k-1")

        assert store_credit.get("buyer-2").balance == 0.0
        assert WalletRepository().find_by_owner("buyer-2") == []

    def test_negative_credit_is_rejected(self, store_credit):
        with pytest.raises(ValidationError):
            store_credit.credit("buyer-1", -10.0, EntrySource.REFUND.value, "k-1")

    def test_key_is_required(self, store_credit):
        with pytest.raises(ValidationError):
            store_credit.credit("buyer-1", 10.0, EntrySource.REFUND.value, "")


class TestAdjust:
    def test_negative_adjustment_takes_credit_back(self, store_credit):
        store_credit.credit("buyer-1", 300.0, EntrySource.REFUND.value, "k-1")

        store_credit.adjust("buyer-1", -100.0, "Duplicate refund", "adj-1")

        assert store_credit.get("buyer-1").balance == 200.0

    def test_adjustment_cannot_overdraw(self, store_credit):
        with pytest.raises(ValidationError):
            store_credit.adjust("buyer-1", -1.0, "Clawback", "adj-1")

    def test_adjustment_needs_a_note(self, store_credit):
        with pytest.raises(ValidationError):
            store_credit.adjust("buyer-1", 50.0, "", "adj-1")

    def test_stale_wallet_write_conflicts(self, store_credit, ledger):
        store_credit.credit("buyer-1", 300.0, EntrySource.REFUND.value, "k-1")
        stale = store_credit.get("buyer-1")
        store_credit.credit("buyer-1", 50.0, EntrySource.REFUND.value, "k-2")

        stale.credit(10.0, EntrySource.ADJUSTMENT.value, "k-3")
        with pytest.raises(ConflictError):
            WalletRepository(ledger).save(stale, stale.status)
        assert store_credit.get("buyer-1").balance == 350.0
