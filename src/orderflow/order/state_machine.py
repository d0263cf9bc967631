"""Order State Machine: the only component that changes ``Order.status``.

Payment settlement, the courier, delivery confirmation and the returns
workflow all request transitions through this service. Each transition reads
the order, applies the in-memory transition check, and persists with a
compare-and-set on the status and version that were read, so a concurrent or
replayed caller fails with ConflictError instead of overwriting.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta

import structlog
from protean.exceptions import ValidationError

from orderflow.collaborators import get_catalogue, get_coupon_validator
from orderflow.config import get_settings
from orderflow.errors import ConflictError, ExternalServiceError
from orderflow.gateway import get_gateway
from orderflow.ledger import get_ledger
from orderflow.order.order import CancellationActor, Order, OrderRepository, OrderStatus, PaymentMethod
from orderflow.payment.payment import Payment, PaymentRepository
from orderflow.utils.timestamps import utcnow

logger = structlog.get_logger(__name__)

_PINCODE = re.compile(r"^\d{6}$")
_REQUIRED_ADDRESS_FIELDS = ("name", "phone", "line1", "city", "state", "pincode")


@dataclass(frozen=True)
class ExchangeSettlement:
    """How a replacement order created by an exchange has been paid for."""

    exchange_id: str
    credit: float
    gateway: str
    gateway_payment_id: str | None = None


def price_items(items: list[dict]) -> list[dict]:
    """Resolve each requested variant against the catalogue.

    Client-supplied prices are ignored. Raises ValidationError for an empty
    basket, a bad quantity or a variant the catalogue cannot sell.
    """
    if not items:
        raise ValidationError({"items": ["Order must contain at least one item"]})

    catalogue = get_catalogue()
    priced = []
    for item in items:
        quantity = item.get("quantity")
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError({"items": [f"Invalid quantity for variant {item.get('variant_id')}"]})

        variant = catalogue.resolve(str(item.get("variant_id")))
        if variant is None:
            raise ValidationError({"items": [f"Variant {item.get('variant_id')} is not available"]})

        priced.append(
            {
                "product_id": variant.product_id,
                "variant_id": variant.variant_id,
                "title": variant.title,
                "unit_price": variant.unit_price,
                "quantity": quantity,
                "size": item.get("size"),
                "color": item.get("color"),
            }
        )
    return priced


def validate_address(address: dict | None) -> dict:
    if not address:
        raise ValidationError({"shipping_address": ["Shipping address is required"]})
    missing = [f for f in _REQUIRED_ADDRESS_FIELDS if not str(address.get(f) or "").strip()]
    if missing:
        raise ValidationError({"shipping_address": [f"Missing fields: {', '.join(missing)}"]})
    if not _PINCODE.match(str(address["pincode"]).strip()):
        raise ValidationError({"shipping_address": ["Pincode must be 6 digits"]})
    return {**address, "pincode": str(address["pincode"]).strip()}


class OrderStateMachine:
    def __init__(self, ledger=None) -> None:
        self.ledger = ledger or get_ledger()
        self.orders = OrderRepository(self.ledger)
        self.payments = PaymentRepository(self.ledger)

    def get(self, order_id: str) -> Order:
        return self.orders.get(order_id)

    # -------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------
    def create(
        self,
        buyer_id: str,
        items: list[dict],
        address: dict,
        payment_method: str,
        coupon_code: str | None = None,
        gateway: str | None = None,
        exchange: ExchangeSettlement | None = None,
    ) -> Order:
        """Create an order and its payment record in one transaction.

        COD and exchange orders are confirmed straight away; online orders
        stay pending until the gateway reports a capture.
        """
        address = validate_address(address)
        if exchange is not None:
            payment_method = PaymentMethod.EXCHANGE.value
        elif payment_method not in (PaymentMethod.COD.value, PaymentMethod.ONLINE.value):
            raise ValidationError({"payment_method": [f"Unsupported payment method: {payment_method}"]})

        # Replacement lines were priced when the exchange was raised
        priced = items if exchange is not None else price_items(items)
        if not priced:
            raise ValidationError({"items": ["Order must contain at least one item"]})

        discount = 0.0
        if exchange is not None:
            discount = exchange.credit
        elif coupon_code:
            discount = get_coupon_validator().validate(coupon_code, buyer_id, priced)

        settings = get_settings()
        if payment_method == PaymentMethod.COD.value:
            gateway_name = "cod"
        elif exchange is not None:
            gateway_name = exchange.gateway
        else:
            gateway_name = gateway or settings.default_gateway

        order = Order.create(
            buyer_id=buyer_id,
            items=priced,
            shipping_address=address,
            payment_method=payment_method,
            discount=discount,
            coupon_code=coupon_code.upper() if coupon_code and exchange is None else None,
            gateway=gateway_name,
            exchange_id=exchange.exchange_id if exchange else None,
        )

        payment = self._open_payment(order, gateway_name, exchange)
        confirm_now = payment_method != PaymentMethod.ONLINE.value or order.total == 0

        with self.ledger.transaction():
            self.orders.add(order)
            self.payments.add(payment)
            if confirm_now:
                order.confirm()
                self.orders.save(order, OrderStatus.PENDING.value)

        logger.info(
            "order_created",
            order_id=str(order.id),
            buyer_id=buyer_id,
            total=order.total,
            payment_method=payment_method,
            status=order.status,
        )
        return order

    def _open_payment(self, order: Order, gateway_name: str, exchange: ExchangeSettlement | None) -> Payment:
        currency = get_settings().currency
        if order.payment_method == PaymentMethod.COD.value:
            return Payment.create(str(order.id), "cod", order.total, currency, cash_on_delivery=True)

        payment = Payment.create(str(order.id), gateway_name, order.total, currency)
        if exchange is not None or order.total == 0:
            # Settled by exchange credit and/or the captured difference payment
            payment.capture(exchange.gateway_payment_id if exchange else None, order.total, f"settled:{order.id}")
            return payment

        result = get_gateway(gateway_name).create_order(order.total, currency, receipt=str(order.id))
        if not result.success:
            raise ExternalServiceError({"gateway": [result.failure_reason or "Could not open checkout"]})
        payment.gateway_order_id = result.gateway_order_id
        return payment

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------
    def _load(self, order_id: str, expected_version: int | None) -> Order:
        order = self.orders.get(order_id)
        if expected_version is not None and order.version != expected_version:
            raise ConflictError(
                {"version": [f"Order {order_id} is at version {order.version}, expected {expected_version}"]}
            )
        return order

    def confirm(self, order_id: str, expected_version: int | None = None) -> Order:
        order = self._load(order_id, expected_version)
        if order.has_reached(OrderStatus.CONFIRMED):
            logger.info("order_confirm_noop", order_id=order_id, status=order.status)
            return order

        order.confirm()
        self.orders.save(order, OrderStatus.PENDING.value)
        logger.info("order_confirmed", order_id=order_id, version=order.version)
        return order

    def mark_shipped(self, order_id: str, expected_version: int | None = None) -> Order:
        """Move a confirmed order to shipped.

        A shipped order whose shipment was cancelled can be re-dispatched; that
        write keeps the status and only bumps the version, so it still races
        safely against other writers.
        """
        order = self._load(order_id, expected_version)
        expected_status = order.status
        if OrderStatus(order.status) != OrderStatus.SHIPPED:
            order.ship()
        self.orders.save(order, expected_status)
        logger.info("order_shipped", order_id=order_id, version=order.version)
        return order

    def mark_delivered(self, order_id: str, delivered_at: datetime | None = None) -> Order:
        """Record delivery; whichever of scan or OTP arrives second is a no-op."""
        order = self.orders.get(order_id)
        if order.has_reached(OrderStatus.DELIVERED):
            logger.info("order_deliver_noop", order_id=order_id, status=order.status)
            return order

        order.deliver(delivered_at)
        self.orders.save(order, OrderStatus.SHIPPED.value)
        logger.info("order_delivered", order_id=order_id, version=order.version)
        return order

    def cancel(self, order_id: str, actor: str, reason: str, expected_version: int | None = None) -> Order:
        if actor not in {a.value for a in CancellationActor}:
            raise ValidationError({"actor": [f"Unknown cancelling actor: {actor}"]})
        order = self._load(order_id, expected_version)
        expected_status = order.status
        order.cancel(actor, reason)
        self.orders.save(order, expected_status)
        logger.info("order_cancelled", order_id=order_id, actor=actor, reason=reason)

        self._refund_captured_payments(order)
        return order

    def _refund_captured_payments(self, order: Order) -> None:
        from orderflow.payment.settlement import PaymentSettlement

        settlement = PaymentSettlement(self.ledger)
        for payment in self.payments.for_order(str(order.id)):
            if payment.refundable_amount <= 0:
                continue
            try:
                settlement.refund(
                    str(payment.id),
                    payment.refundable_amount,
                    reason="order cancelled",
                    idempotency_key=f"cancel:{order.id}:{payment.id}",
                )
            except ExternalServiceError:
                # The cancellation stands; support replays the refund with the same key
                logger.error(
                    "cancellation_refund_failed",
                    order_id=str(order.id),
                    payment_id=str(payment.id),
                    amount=payment.refundable_amount,
                )

    def expire_pending(self, now: datetime | None = None) -> list[str]:
        """Cancel pending online orders older than the checkout window.

        Runs from a scheduler. Each order is cancelled at the version that was
        read, so a capture landing mid-sweep wins and the order is skipped. A
        capture that arrives after expiry is refunded by settlement.
        """
        cutoff = (now or utcnow()) - timedelta(hours=get_settings().pending_order_ttl_hours)
        expired = []
        for order in self.orders.find_by_status(OrderStatus.PENDING.value):
            if order.ordered_at is None or order.ordered_at > cutoff:
                continue
            try:
                self.cancel(
                    str(order.id),
                    CancellationActor.SYSTEM.value,
                    "Payment not received in time",
                    expected_version=order.version,
                )
            except ConflictError:
                logger.info("order_expiry_skipped", order_id=str(order.id))
                continue
            expired.append(str(order.id))

        logger.info("pending_orders_expired", count=len(expired), cutoff=cutoff.isoformat())
        return expired

    def record_returned_items(self, order_id: str, quantities: dict[str, int]) -> Order:
        """Track returned units; the order becomes returned once all units are back."""
        order = self.orders.get(order_id)
        expected_status = order.status
        if OrderStatus(expected_status) != OrderStatus.DELIVERED:
            raise ConflictError({"status": [f"Order {order_id} is {expected_status}, not delivered"]})

        if order.record_returned(quantities):
            logger.info("order_returned", order_id=order_id)
        self.orders.save(order, expected_status)
        return order
