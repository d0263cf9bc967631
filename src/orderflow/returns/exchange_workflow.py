"""Exchange Workflow: swap delivered items for different variants.

Confirmation is two-phase when the replacement costs more than the credit:
the first call opens a difference payment, the second captures it and places
the replacement order. The replacement order and the exchange's completion
are written in one transaction.
"""

import structlog
from protean.exceptions import ValidationError

from orderflow.config import get_settings
from orderflow.errors import ConflictError, ExternalServiceError
from orderflow.ledger import get_ledger
from orderflow.order.order import OrderRepository, PaymentMethod
from orderflow.order.state_machine import ExchangeSettlement, OrderStateMachine, price_items
from orderflow.payment.payment import PaymentRepository, PaymentStatus
from orderflow.payment.settlement import PaymentSettlement
from orderflow.returns.eligibility import check_order_eligible, claim_items
from orderflow.returns.exchange import Exchange, ExchangeRepository, ExchangeStatus
from orderflow.returns.return_request import ReturnRequestRepository

logger = structlog.get_logger(__name__)


class ExchangeWorkflow:
    def __init__(self, ledger=None) -> None:
        self.ledger = ledger or get_ledger()
        self.orders = OrderRepository(self.ledger)
        self.exchanges = ExchangeRepository(self.ledger)
        self.returns = ReturnRequestRepository(self.ledger)
        self.payments = PaymentRepository(self.ledger)

    def get(self, exchange_id: str) -> Exchange:
        return self.exchanges.get(exchange_id)

    def assert_owned_by(self, exchange_id: str, buyer_id: str) -> Exchange:
        exchange = self.exchanges.get(exchange_id)
        if str(exchange.buyer_id) != str(buyer_id):
            raise ValidationError({"exchange_id": ["Exchange does not belong to this buyer"]})
        return exchange

    def create(
        self,
        order_id: str,
        buyer_id: str,
        items: list[dict],
        replacement_items: list[dict],
        reason: str,
        idempotency_key: str | None = None,
    ) -> Exchange:
        if idempotency_key:
            existing = self.exchanges.find_by_idempotency_key(buyer_id, idempotency_key)
            if existing is not None:
                logger.info("exchange_replayed", exchange_id=str(existing.id), idempotency_key=idempotency_key)
                return existing

        order = self.orders.get(order_id)
        check_order_eligible(order, buyer_id)
        open_claims = [r for r in self.returns.find_by_owner(order_id) if r.is_open]
        open_claims += [e for e in self.exchanges.find_by_owner(order_id) if e.is_open]
        lines = claim_items(order, items, open_claims)
        replacements = price_items(replacement_items)

        gateway = order.gateway if order.payment_method == PaymentMethod.ONLINE.value else None
        exchange = Exchange.create(
            order_id,
            buyer_id,
            lines,
            replacements,
            reason,
            gateway=gateway or get_settings().default_gateway,
            idempotency_key=idempotency_key,
        )
        self.exchanges.add(exchange)
        logger.info(
            "exchange_requested",
            exchange_id=str(exchange.id),
            order_id=order_id,
            credit=exchange.credit_amount,
            price_difference=exchange.price_difference,
        )
        return exchange

    def record_qc(self, exchange_id: str, passed: bool, notes: str | None = None, images: list[str] | None = None):
        exchange = self.exchanges.get(exchange_id)
        expected_status = exchange.status
        exchange.record_qc(passed, notes, images)
        self.exchanges.save(exchange, expected_status)
        logger.info("exchange_qc_recorded", exchange_id=exchange_id, passed=passed)
        return exchange

    # -------------------------------------------------------------------
    # Settlement
    # -------------------------------------------------------------------
    def confirm_payment_and_place_order(
        self,
        exchange_id: str,
        gateway_payment_id: str | None = None,
        signature: str | None = None,
    ) -> Exchange:
        exchange = self.exchanges.get(exchange_id)
        status = ExchangeStatus(exchange.status)

        if status == ExchangeStatus.QC_PASSED:
            if exchange.price_difference > 0:
                return self._open_difference_payment(exchange)
            self._refund_excess_credit(exchange)
            return self._place_replacement(exchange, ExchangeStatus.QC_PASSED, gateway_payment_id=None)

        if status == ExchangeStatus.PAYMENT_PENDING:
            payment = self.payments.get(exchange.difference_payment_id)
            if payment.status != PaymentStatus.CAPTURED.value:
                if not (gateway_payment_id and signature):
                    raise ValidationError({"payment": ["Gateway payment id and signature are required"]})
                payment = PaymentSettlement(self.ledger).capture_checkout(str(payment.id), gateway_payment_id, signature)
            return self._place_replacement(exchange, ExchangeStatus.PAYMENT_PENDING, payment.gateway_payment_id)

        raise ConflictError({"status": [f"Exchange is {exchange.status}; nothing to confirm"]})

    def _open_difference_payment(self, exchange: Exchange) -> Exchange:
        payment = PaymentSettlement(self.ledger).start_difference_payment(
            str(exchange.order_id), str(exchange.id), exchange.price_difference, exchange.gateway
        )
        exchange.await_payment(str(payment.id))
        self.exchanges.save(exchange, ExchangeStatus.QC_PASSED.value)
        logger.info("exchange_awaiting_payment", exchange_id=str(exchange.id), payment_id=str(payment.id))
        return exchange

    def _refund_excess_credit(self, exchange: Exchange) -> None:
        """Return credit the replacement does not use to the original payment."""
        excess = exchange.excess_credit
        if excess <= 0:
            return
        candidates = [p for p in self.payments.for_order(str(exchange.order_id)) if p.refundable_amount > 0]
        payment = max(candidates, key=lambda p: p.refundable_amount, default=None)
        if payment is None:
            logger.warning("exchange_excess_unrefundable", exchange_id=str(exchange.id), excess=excess)
            return
        exchange.excess_refund_reference = PaymentSettlement(self.ledger).refund(
            str(payment.id),
            min(excess, payment.refundable_amount),
            reason=f"exchange {exchange.id} excess credit",
            idempotency_key=f"exchange:{exchange.id}:excess",
        )

    def _place_replacement(
        self, exchange: Exchange, expected_status: ExchangeStatus, gateway_payment_id: str | None
    ) -> Exchange:
        original = self.orders.get(exchange.order_id)
        machine = OrderStateMachine(self.ledger)
        with self.ledger.transaction():
            replacement = machine.create(
                buyer_id=str(exchange.buyer_id),
                items=exchange.replacement_lines(),
                address=original.shipping_address.to_dict(),
                payment_method=PaymentMethod.EXCHANGE.value,
                exchange=ExchangeSettlement(
                    exchange_id=str(exchange.id),
                    credit=min(exchange.credit_amount, exchange.replacement_total),
                    gateway=exchange.gateway,
                    gateway_payment_id=gateway_payment_id,
                ),
            )
            exchange.complete(str(replacement.id))
            self.exchanges.save(exchange, expected_status.value)
            machine.record_returned_items(str(exchange.order_id), exchange.returned_quantities())

        logger.info(
            "exchange_completed",
            exchange_id=str(exchange.id),
            replacement_order_id=str(replacement.id),
        )
        return exchange

    # -------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------
    def cancel(self, exchange_id: str, buyer_id: str | None = None) -> Exchange:
        exchange = self.assert_owned_by(exchange_id, buyer_id) if buyer_id else self.exchanges.get(exchange_id)
        expected_status = exchange.status
        exchange.cancel()
        self.exchanges.save(exchange, expected_status)
        logger.info("exchange_cancelled", exchange_id=exchange_id)

        if exchange.difference_payment_id:
            self._refund_difference(exchange)
        return exchange

    def _refund_difference(self, exchange: Exchange) -> None:
        payment = self.payments.get(exchange.difference_payment_id)
        if payment.refundable_amount <= 0:
            return
        try:
            PaymentSettlement(self.ledger).refund(
                str(payment.id),
                payment.refundable_amount,
                reason="exchange cancelled",
                idempotency_key=f"exchange:{exchange.id}:cancel",
            )
        except ExternalServiceError:
            logger.error("exchange_difference_refund_failed", exchange_id=str(exchange.id), payment_id=str(payment.id))
