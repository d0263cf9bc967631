"""Tests for the Order aggregate: pricing, transitions and returned units."""

import json

import pytest
from protean.exceptions import ValidationError

from orderflow.errors import ConflictError
from orderflow.order.order import Order, OrderStatus

ADDRESS = {
    "name": "Asha Rao",
    "phone": "9876543210",
    "line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
}


def _make_order(discount=0.0, quantity=1, payment_method="cod"):
    return Order.create(
        buyer_id="buyer-1",
        items=[
            {"product_id": "p1", "variant_id": "v1", "title": "Tee", "unit_price": 500.0, "quantity": quantity},
            {"product_id": "p2", "variant_id": "v2", "title": "Jeans", "unit_price": 1500.0, "quantity": 1},
        ],
        shipping_address=ADDRESS,
        payment_method=payment_method,
        discount=discount,
    )


class TestOrderPricing:
    def test_total_is_subtotal_less_discount(self):
        order = _make_order(discount=200.0)
        assert order.subtotal == 2000.0
        assert order.discount == 200.0
        assert order.total == 1800.0

    def test_discount_is_capped_at_subtotal(self):
        order = _make_order(discount=5000.0)
        assert order.discount == 2000.0
        assert order.total == 0.0

    def test_negative_discount_is_ignored(self):
        order = _make_order(discount=-50.0)
        assert order.total == order.subtotal

    @pytest.mark.parametrize("discount", [0.0, 0.01, 199.99, 1999.99])
    def test_total_never_negative(self, discount):
        order = _make_order(discount=discount)
        assert order.total >= 0
        assert round(order.subtotal - order.discount, 2) == order.total

    def test_inconsistent_total_is_rejected(self):
        with pytest.raises(ValidationError):
            Order(
                buyer_id="buyer-1",
                subtotal=100.0,
                discount=10.0,
                total=100.0,
                payment_method="cod",
            )

    def test_starts_pending(self):
        order = _make_order()
        assert order.status == OrderStatus.PENDING.value
        assert order.ordered_at is not None


class TestOrderTransitions:
    def test_happy_path(self):
        order = _make_order()
        order.confirm()
        order.ship()
        order.deliver()
        assert order.status == OrderStatus.DELIVERED.value
        assert order.delivered_at is not None

    def test_cannot_ship_pending(self):
        order = _make_order()
        with pytest.raises(ConflictError):
            order.ship()

    def test_cannot_skip_back(self):
        order = _make_order()
        order.confirm()
        order.ship()
        with pytest.raises(ConflictError):
            order.confirm()

    @pytest.mark.parametrize("advance", [0, 1])
    def test_cancel_before_shipping(self, advance):
        order = _make_order()
        if advance:
            order.confirm()
        order.cancel("buyer", "Changed my mind")
        assert order.status == OrderStatus.CANCELLED.value
        assert order.cancelled_by == "buyer"
        assert order.cancellation_reason == "Changed my mind"

    def test_cancel_after_shipping_conflicts(self):
        order = _make_order()
        order.confirm()
        order.ship()
        with pytest.raises(ConflictError):
            order.cancel("buyer", "Too late")
        assert order.status == OrderStatus.SHIPPED.value

    def test_cancelled_is_terminal(self):
        order = _make_order()
        order.cancel("support", "Fraud check")
        with pytest.raises(ConflictError):
            order.confirm()

    def test_has_reached(self):
        order = _make_order()
        order.confirm()
        order.ship()
        assert order.has_reached(OrderStatus.CONFIRMED)
        assert order.has_reached(OrderStatus.SHIPPED)
        assert not order.has_reached(OrderStatus.DELIVERED)

    def test_cancelled_has_reached_nothing(self):
        order = _make_order()
        order.cancel("buyer", "No longer needed")
        assert not order.has_reached(OrderStatus.CONFIRMED)


class TestReturnedUnits:
    def _delivered(self, **kwargs):
        order = _make_order(**kwargs)
        order.confirm()
        order.ship()
        order.deliver()
        return order

    def test_partial_return_keeps_order_delivered(self):
        order = self._delivered(quantity=2)
        tee = order.items[0]
        assert order.record_returned({str(tee.id): 1}) is False
        assert order.status == OrderStatus.DELIVERED.value
        assert order.item(str(tee.id)).returned_quantity == 1

    def test_all_units_back_marks_returned(self):
        order = self._delivered()
        assert order.record_returned({str(i.id): i.quantity for i in order.items}) is True
        assert order.status == OrderStatus.RETURNED.value

    def test_cannot_return_more_than_bought(self):
        order = self._delivered()
        with pytest.raises(ValidationError):
            order.record_returned({str(order.items[0].id): 2})

    def test_unknown_item(self):
        order = self._delivered()
        with pytest.raises(ValidationError):
            order.record_returned({"not-an-item": 1})

    def test_paid_unit_price_prorates_discount(self):
        order = self._delivered(discount=200.0)
        tee, jeans = order.items
        assert order.paid_unit_price(tee) == 450.0
        assert order.paid_unit_price(jeans) == 1350.0


class TestOrderDocument:
    def test_round_trip_keeps_items_and_address(self):
        order = _make_order(discount=100.0)
        order.confirm()

        restored = Order.from_document(order.to_document(), version=3)

        assert restored.version == 3
        assert restored.status == OrderStatus.CONFIRMED.value
        assert restored.total == order.total
        assert [i.title for i in restored.items] == ["Tee", "Jeans"]
        assert restored.shipping_address.pincode == "560001"
        assert restored.ordered_at == order.ordered_at

    def test_document_is_plain_json_without_version(self):
        order = _make_order()
        order.confirm()

        document = order.to_document()

        assert "version" not in document
        assert not [key for key in document if key.startswith("_")]
        assert json.loads(json.dumps(document)) == document
        assert document["ordered_at"] == order.ordered_at.isoformat()
