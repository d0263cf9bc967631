"""Return Workflow: request, approve, receive and refund.

The refund is claimed with a compare-and-set to ``processing`` before the
gateway is called, so two admins receiving the same return cannot both refund
it. The gateway refund is keyed on the return id, which makes a retry after a
crash or a failed refund safe.
"""

import structlog
from protean.exceptions import ValidationError

from orderflow.carrier import get_carrier
from orderflow.errors import ExternalServiceError
from orderflow.ledger import get_ledger
from orderflow.order.order import OrderRepository
from orderflow.order.state_machine import OrderStateMachine
from orderflow.payment.payment import PaymentRepository, RefundDestination
from orderflow.payment.settlement import PaymentSettlement
from orderflow.returns.eligibility import check_order_eligible, claim_items
from orderflow.returns.exchange import ExchangeRepository
from orderflow.returns.return_request import ReturnRequest, ReturnRequestRepository, ReturnStatus

logger = structlog.get_logger(__name__)


class ReturnWorkflow:
    def __init__(self, ledger=None) -> None:
        self.ledger = ledger or get_ledger()
        self.orders = OrderRepository(self.ledger)
        self.returns = ReturnRequestRepository(self.ledger)
        self.exchanges = ExchangeRepository(self.ledger)
        self.payments = PaymentRepository(self.ledger)

    def get(self, return_id: str) -> ReturnRequest:
        return self.returns.get(return_id)

    def open_claims(self, order_id: str) -> list:
        """Open returns and exchanges holding units of ``order_id``."""
        returns = [r for r in self.returns.find_by_owner(order_id) if r.is_open]
        exchanges = [e for e in self.exchanges.find_by_owner(order_id) if e.is_open]
        return returns + exchanges

    def create(
        self,
        order_id: str,
        buyer_id: str,
        items: list[dict],
        reason: str,
        evidence_images: list[str] | None = None,
        pickup_address: dict | None = None,
    ) -> ReturnRequest:
        if not reason:
            raise ValidationError({"reason": ["A reason is required"]})
        order = self.orders.get(order_id)
        check_order_eligible(order, buyer_id)
        lines = claim_items(order, items, self.open_claims(order_id))

        request = ReturnRequest.create(
            order_id,
            buyer_id,
            lines,
            reason,
            evidence_images=evidence_images,
            pickup_address=pickup_address or order.shipping_address.to_dict(),
        )
        self.returns.add(request)
        logger.info("return_requested", return_id=str(request.id), order_id=order_id, items=len(lines))
        return request

    def approve(self, return_id: str, schedule_pickup: bool = False) -> ReturnRequest:
        request = self.returns.get(return_id)
        expected_status = request.status
        request.approve()
        self.returns.save(request, expected_status)
        logger.info("return_approved", return_id=return_id)

        if schedule_pickup:
            self._schedule_reverse_pickup(request)
        return request

    def _schedule_reverse_pickup(self, request: ReturnRequest) -> None:
        order = self.orders.get(request.order_id)
        pickup = {
            "reference": f"return-{request.id}",
            "order_id": str(request.order_id),
            "address": request.pickup_address,
            "items": [
                {"title": order.item(str(i.order_item_id)).title, "quantity": i.quantity} for i in request.items
            ],
        }
        try:
            response = get_carrier().schedule_reverse_pickup(pickup)
        except ExternalServiceError:
            logger.error("reverse_pickup_unreachable", return_id=str(request.id))
            return
        if response.get("error") or not response.get("waybill"):
            # The return stays approved; the pickup can be booked by hand
            logger.error("reverse_pickup_failed", return_id=str(request.id), reason=response.get("error"))
            return

        request.record_reverse_pickup(response["waybill"])
        self.returns.save(request, request.status)
        logger.info("reverse_pickup_scheduled", return_id=str(request.id), waybill=response["waybill"])

    def reject(self, return_id: str, reason: str) -> ReturnRequest:
        request = self.returns.get(return_id)
        expected_status = request.status
        request.reject(reason)
        self.returns.save(request, expected_status)
        logger.info("return_rejected", return_id=return_id)
        return request

    def cancel(self, return_id: str, buyer_id: str | None = None) -> ReturnRequest:
        request = self.returns.get(return_id)
        if buyer_id is not None and str(request.buyer_id) != str(buyer_id):
            raise ValidationError({"return_id": ["Return does not belong to this buyer"]})
        expected_status = request.status
        request.cancel()
        self.returns.save(request, expected_status)
        logger.info("return_cancelled", return_id=return_id)
        return request

    # -------------------------------------------------------------------
    # Receiving and refunding
    # -------------------------------------------------------------------
    def receive_and_refund(
        self,
        return_id: str,
        received_items: list[dict],
        refund_method: str = RefundDestination.ORIGINAL.value,
    ) -> ReturnRequest:
        """Refund the units that came back and record them on the order.

        ``refund_method`` sends the money back through the original gateway or
        as store credit to the buyer's wallet.
        """
        if refund_method not in {d.value for d in RefundDestination}:
            raise ValidationError({"refund_method": [f"Unknown refund method: {refund_method}"]})
        request = self.returns.get(return_id)
        if ReturnStatus(request.status) not in (ReturnStatus.APPROVED, ReturnStatus.PROCESSING):
            raise ValidationError({"status": [f"Return is {request.status}; only approved returns can be received"]})

        received: dict[str, int] = {}
        for line in received_items or []:
            key = str(line.get("order_item_id"))
            received[key] = received.get(key, 0) + int(line.get("quantity") or 0)

        log = logger.bind(return_id=return_id, order_id=str(request.order_id))
        amount = request.refund_due(received)
        payment = self._refundable_payment(str(request.order_id))
        if payment is not None:
            amount = min(amount, payment.refundable_amount)
        else:
            amount = 0.0

        # Claim the refund before money moves
        expected_status = request.status
        request.start_refund(received, amount, refund_method)
        self.returns.save(request, expected_status)

        reference = None
        if amount > 0:
            try:
                reference = PaymentSettlement(self.ledger).refund(
                    str(payment.id),
                    amount,
                    reason=f"return {return_id}",
                    idempotency_key=f"return:{return_id}",
                    destination=refund_method,
                )
            except (ExternalServiceError, ValidationError) as exc:
                messages = getattr(exc, "messages", {})
                request.fail_refund(str(messages) if messages else str(exc))
                self.returns.save(request, ReturnStatus.PROCESSING.value)
                log.error("return_refund_failed", amount=amount)
                raise ExternalServiceError({"refund": ["Refund could not be completed; retry later"]}) from exc

        with self.ledger.transaction():
            request.complete_refund(reference)
            self.returns.save(request, ReturnStatus.PROCESSING.value)
            OrderStateMachine(self.ledger).record_returned_items(str(request.order_id), received)

        log.info("return_refunded", amount=amount, refund_method=refund_method, refund_reference=reference)
        return request

    def _refundable_payment(self, order_id: str):
        payments = [p for p in self.payments.for_order(order_id) if p.refundable_amount > 0]
        return max(payments, key=lambda p: p.refundable_amount, default=None)
