"""Shared preconditions for returns and exchanges."""

from datetime import timedelta

from protean.exceptions import ValidationError

from orderflow.config import get_settings
from orderflow.order.order import Order, OrderStatus
from orderflow.utils.timestamps import utcnow


def check_order_eligible(order: Order, buyer_id: str) -> None:
    """The buyer owns the order, it was delivered, and the window is still open."""
    if str(order.buyer_id) != str(buyer_id):
        raise ValidationError({"order_id": ["Order does not belong to this buyer"]})
    if OrderStatus(order.status) != OrderStatus.DELIVERED:
        raise ValidationError({"order_id": [f"Only delivered orders can be returned; order is {order.status}"]})

    window = timedelta(days=get_settings().return_window_days)
    if order.delivered_at is None or utcnow() > order.delivered_at + window:
        raise ValidationError({"order_id": ["The return window for this order has closed"]})


def returnable_quantities(order: Order, open_claims: list) -> dict[str, int]:
    """Units per order item not yet returned nor claimed by an open return or exchange."""
    remaining = {str(i.id): i.quantity - (i.returned_quantity or 0) for i in order.items}
    for claim in open_claims:
        for item in claim.items:
            key = str(item.order_item_id)
            if key in remaining:
                remaining[key] -= item.quantity
    return remaining


def claim_items(order: Order, items: list[dict], open_claims: list) -> list[dict]:
    """Validate requested lines and price them at what the buyer paid.

    Returns dicts with order_item_id, quantity, reason and paid_unit_price.
    """
    if not items:
        raise ValidationError({"items": ["Select at least one item"]})

    remaining = returnable_quantities(order, open_claims)
    requested: dict[str, int] = {}
    for line in items:
        item_id = str(line.get("order_item_id"))
        quantity = line.get("quantity")
        if order.item(item_id) is None:
            raise ValidationError({"items": [f"Item {item_id} does not belong to order {order.id}"]})
        if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
            raise ValidationError({"items": [f"Invalid quantity for item {item_id}"]})
        requested[item_id] = requested.get(item_id, 0) + quantity

    for item_id, quantity in requested.items():
        if quantity > remaining.get(item_id, 0):
            raise ValidationError(
                {"items": [f"Only {max(remaining.get(item_id, 0), 0)} unit(s) of item {item_id} can still be returned"]}
            )

    return [
        {
            "order_item_id": str(line["order_item_id"]),
            "quantity": line["quantity"],
            "reason": line.get("reason"),
            "paid_unit_price": order.paid_unit_price(order.item(str(line["order_item_id"]))),
        }
        for line in items
    ]
