"""Wallet adjustments: command and handler."""

from protean import handle
from protean.fields import Float, Identifier, String

from orderflow.domain import orderflow
from orderflow.wallet.store_credit import StoreCredit
from orderflow.wallet.wallet import Wallet


@orderflow.command(part_of="Wallet")
class AdjustWallet:
    """Support correction to a buyer's store credit; negative amounts take credit back."""

    buyer_id = Identifier(required=True)
    amount = Float(required=True)
    note = String(required=True, max_length=500)
    idempotency_key = String(required=True, max_length=255)


@orderflow.command_handler(part_of=Wallet)
class WalletHandler:
    @handle(AdjustWallet)
    def adjust_wallet(self, command):
        store_credit = StoreCredit()
        store_credit.adjust(command.buyer_id, command.amount, command.note, command.idempotency_key)
        return store_credit.get(command.buyer_id).to_document()
