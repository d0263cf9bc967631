"""Order aggregate: the record whose status every other component reconciles.

State Machine (forward only):
    PENDING → CONFIRMED → SHIPPED → DELIVERED → RETURNED
    PENDING/CONFIRMED → CANCELLED

Only the OrderStateMachine moves an order between states; the methods here
check the transition and mutate in memory, and the state machine persists the
result with a compare-and-set on the status and version it read.
"""

from datetime import datetime
from enum import Enum
from uuid import uuid4

from protean import invariant
from protean.exceptions import ValidationError
from protean.fields import DateTime, Float, HasMany, Identifier, Integer, String, ValueObject

from orderflow.domain import orderflow
from orderflow.errors import ConflictError
from orderflow.ledger.repository import LedgerRepository, document_of, load_element
from orderflow.utils.timestamps import utcnow


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class OrderStatus(Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"


class PaymentMethod(Enum):
    COD = "cod"
    ONLINE = "online"
    EXCHANGE = "exchange"


class CancellationActor(Enum):
    BUYER = "buyer"
    SUPPORT = "support"
    ADMIN = "admin"
    SYSTEM = "system"


_VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.CONFIRMED, OrderStatus.CANCELLED},
    OrderStatus.CONFIRMED: {OrderStatus.SHIPPED, OrderStatus.CANCELLED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: {OrderStatus.RETURNED},
    OrderStatus.CANCELLED: set(),  # terminal
    OrderStatus.RETURNED: set(),  # terminal
}

_CANCELLABLE_STATES = {OrderStatus.PENDING, OrderStatus.CONFIRMED}

# Position along the happy path; used to recognise transitions already applied
_PROGRESS = {
    OrderStatus.PENDING: 0,
    OrderStatus.CONFIRMED: 1,
    OrderStatus.SHIPPED: 2,
    OrderStatus.DELIVERED: 3,
    OrderStatus.RETURNED: 4,
}


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------
@orderflow.value_object(part_of="Order")
class ShippingAddress:
    """Where the order ships, captured at checkout and never changed."""

    name = String(required=True, max_length=120)
    phone = String(required=True, max_length=20)
    line1 = String(required=True, max_length=255)
    line2 = String(max_length=255)
    city = String(required=True, max_length=100)
    state = String(required=True, max_length=100)
    pincode = String(required=True, max_length=10)
    country = String(max_length=100, default="India")


# ---------------------------------------------------------------------------
# Entities
# ---------------------------------------------------------------------------
@orderflow.entity(part_of="Order")
class OrderItem:
    """A line item, priced from the catalogue at creation time."""

    product_id = Identifier(required=True)
    variant_id = Identifier(required=True)
    title = String(required=True, max_length=255)
    unit_price = Float(required=True, min_value=0.0)
    quantity = Integer(required=True, min_value=1)
    size = String(max_length=20)
    color = String(max_length=50)
    returned_quantity = Integer(default=0, min_value=0)

    @property
    def line_total(self) -> float:
        return self.unit_price * self.quantity


# ---------------------------------------------------------------------------
# Aggregate Root
# ---------------------------------------------------------------------------
@orderflow.aggregate
class Order:
    buyer_id = Identifier(required=True)
    status = String(choices=OrderStatus, default=OrderStatus.PENDING.value)
    items = HasMany(OrderItem)
    subtotal = Float(default=0.0)
    discount = Float(default=0.0)
    total = Float(default=0.0)
    coupon_code = String(max_length=100)
    shipping_address = ValueObject(ShippingAddress)
    payment_method = String(choices=PaymentMethod, required=True)
    gateway = String(max_length=50)
    exchange_id = Identifier()
    ordered_at = DateTime()
    delivered_at = DateTime()
    cancelled_at = DateTime()
    cancellation_reason = String(max_length=500)
    cancelled_by = String(max_length=50)
    version = Integer(default=0)

    @invariant.post
    def total_is_subtotal_less_discount(self):
        if self.total < 0:
            raise ValidationError({"total": ["Order total cannot be negative"]})
        if round(self.subtotal - self.discount, 2) != round(self.total, 2):
            raise ValidationError({"total": ["Order total must equal subtotal less discount"]})

    # -------------------------------------------------------------------
    # Factory method
    # -------------------------------------------------------------------
    @classmethod
    def create(
        cls,
        buyer_id: str,
        items: list[dict],
        shipping_address: dict,
        payment_method: str,
        discount: float = 0.0,
        coupon_code: str | None = None,
        gateway: str | None = None,
        exchange_id: str | None = None,
    ) -> "Order":
        """Build a pending order from catalogue-priced line items.

        Args:
            items: dicts with product_id, variant_id, title, unit_price,
                   quantity and optional size/color.
            discount: already validated; capped at the subtotal.
        """
        subtotal = round(sum(item["unit_price"] * item["quantity"] for item in items), 2)
        discount = round(min(max(discount, 0.0), subtotal), 2)

        return cls(
            id=str(uuid4()),
            buyer_id=buyer_id,
            items=[
                OrderItem(
                    id=str(uuid4()),
                    product_id=item["product_id"],
                    variant_id=item["variant_id"],
                    title=item["title"],
                    unit_price=item["unit_price"],
                    quantity=item["quantity"],
                    size=item.get("size"),
                    color=item.get("color"),
                )
                for item in items
            ],
            subtotal=subtotal,
            discount=discount,
            total=round(subtotal - discount, 2),
            coupon_code=coupon_code,
            shipping_address=ShippingAddress(**shipping_address),
            payment_method=payment_method,
            gateway=gateway,
            exchange_id=exchange_id,
            ordered_at=utcnow(),
        )

    # -------------------------------------------------------------------
    # State transitions
    # -------------------------------------------------------------------
    def _assert_can_transition(self, target_status: OrderStatus) -> None:
        current = OrderStatus(self.status)
        if target_status not in _VALID_TRANSITIONS.get(current, set()):
            raise ConflictError({"status": [f"Cannot transition from {current.value} to {target_status.value}"]})

    def has_reached(self, target_status: OrderStatus) -> bool:
        """True if the order already went through ``target_status`` on the happy path."""
        current = OrderStatus(self.status)
        if current == OrderStatus.CANCELLED:
            return False
        return _PROGRESS[current] >= _PROGRESS[target_status]

    def confirm(self) -> None:
        self._assert_can_transition(OrderStatus.CONFIRMED)
        self.status = OrderStatus.CONFIRMED.value

    def ship(self) -> None:
        self._assert_can_transition(OrderStatus.SHIPPED)
        self.status = OrderStatus.SHIPPED.value

    def deliver(self, delivered_at: datetime | None = None) -> None:
        self._assert_can_transition(OrderStatus.DELIVERED)
        self.status = OrderStatus.DELIVERED.value
        self.delivered_at = delivered_at or utcnow()

    def cancel(self, actor: str, reason: str) -> None:
        current = OrderStatus(self.status)
        if current not in _CANCELLABLE_STATES:
            raise ConflictError({"status": [f"Order cannot be cancelled in {current.value} state"]})
        self.status = OrderStatus.CANCELLED.value
        self.cancelled_by = actor
        self.cancellation_reason = reason
        self.cancelled_at = utcnow()

    # -------------------------------------------------------------------
    # Returns bookkeeping
    # -------------------------------------------------------------------
    def item(self, item_id: str) -> OrderItem | None:
        return next((i for i in self.items if str(i.id) == str(item_id)), None)

    def paid_unit_price(self, item: OrderItem) -> float:
        """Unit price after the order discount is pro-rated by line share."""
        if not self.subtotal:
            return 0.0
        return round(item.unit_price * (1 - self.discount / self.subtotal), 2)

    def record_returned(self, quantities: dict[str, int]) -> bool:
        """Add returned units per item; return True once every unit is back."""
        for item_id, quantity in quantities.items():
            item = self.item(item_id)
            if item is None:
                raise ValidationError({"items": [f"Item {item_id} does not belong to order {self.id}"]})
            if item.returned_quantity + quantity > item.quantity:
                raise ValidationError({"items": [f"Cannot return more than {item.quantity} of item {item_id}"]})
            item.returned_quantity = item.returned_quantity + quantity

        fully_returned = all(i.returned_quantity >= i.quantity for i in self.items)
        if fully_returned:
            self._assert_can_transition(OrderStatus.RETURNED)
            self.status = OrderStatus.RETURNED.value
        return fully_returned

    # -------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------
    def to_document(self) -> dict:
        return document_of(self)

    @classmethod
    def from_document(cls, document: dict, version: int = 0) -> "Order":
        return load_element(cls, document, version=version)


class OrderRepository(LedgerRepository):
    table = "orders"
    aggregate_cls = Order

    def owner_of(self, aggregate) -> str | None:
        return str(aggregate.buyer_id)
