"""BDD tests for the order fulfillment lifecycle."""

from protean.exceptions import ValidationError
from pytest_bdd import given, parsers, scenarios, then, when

from orderflow.delivery.confirmation import DeliveryConfirmation
from orderflow.errors import RateLimitError
from orderflow.order.order import OrderRepository
from orderflow.order.state_machine import OrderStateMachine
from orderflow.payment.payment import PaymentRepository
from orderflow.returns.workflow import ReturnWorkflow
from orderflow.shipment.courier import CourierService
from orderflow.utils.timestamps import to_iso, utcnow

scenarios("features/order_fulfillment.feature")


# ---------------------------------------------------------------------------
# Given steps
# ---------------------------------------------------------------------------
@given(
    parsers.cfparse('a cash on delivery order for {first:d} "{first_variant}" and {second:d} "{second_variant}"'),
    target_fixture="order",
)
def cod_order(place_order, first, first_variant, second, second_variant):
    return place_order(
        "cod",
        items=[
            {"variant_id": first_variant, "quantity": first},
            {"variant_id": second_variant, "quantity": second},
        ],
    )


@given(parsers.cfparse('an online order for {quantity:d} "{variant}"'), target_fixture="order")
def online_order(place_order, quantity, variant):
    return place_order("online", items=[{"variant_id": variant, "quantity": quantity}])


@given(parsers.cfparse('a delivered online order for {quantity:d} "{variant}"'), target_fixture="order")
def delivered_online_order(delivered_order, quantity, variant):
    return delivered_order(items=[{"variant_id": variant, "quantity": quantity}])


@given("a delivery code has been generated")
def delivery_code(context):
    context["code"] = DeliveryConfirmation().generate(str(context["shipment"].id))


# ---------------------------------------------------------------------------
# When steps
# ---------------------------------------------------------------------------
@given("the order is dispatched")
@when("the order is dispatched")
def dispatch(order, context):
    context["shipment"] = CourierService().dispatch(str(order.id))


@when(parsers.cfparse('the courier reports "{status}"'))
def courier_scan(context, status):
    CourierService().ingest_scan(context["shipment"].waybill, status, to_iso(utcnow()))


@given(parsers.cfparse("the gateway reports the payment captured {times:d} times"))
@when(parsers.cfparse("the gateway reports the payment captured {times:d} times"))
def payment_captured(order, capture_webhook, context, times):
    context["outcomes"] = [capture_webhook(order.id, event_id=f"evt-{order.id}") for _ in range(times)]


@when(parsers.cfparse("a wrong delivery code is entered {times:d} times"))
def wrong_codes(context, times):
    wrong = "000000" if context["code"] != "000000" else "111111"
    for _ in range(times):
        try:
            DeliveryConfirmation().verify(str(context["shipment"].id), wrong)
        except ValidationError as exc:
            context.setdefault("errors", []).append(exc)


@when(parsers.cfparse('the buyer returns {quantity:d} "{variant}" and the warehouse receives it'))
def return_and_receive(order, line, context, quantity, variant):
    items = [{"order_item_id": str(line(order, variant).id), "quantity": quantity}]
    workflow = ReturnWorkflow()
    request = workflow.create(str(order.id), str(order.buyer_id), items, "Does not fit")
    workflow.approve(str(request.id))
    context["return"] = workflow.receive_and_refund(str(request.id), items)


@when("the buyer cancels the order")
def buyer_cancels(order):
    OrderStateMachine().cancel(str(order.id), "buyer", "Found it cheaper")


# ---------------------------------------------------------------------------
# Then steps
# ---------------------------------------------------------------------------
@then(parsers.cfparse('the order status is "{status}"'))
def order_status_is(order, status):
    assert OrderRepository().get(order.id).status == status


@then(parsers.cfparse('the order payment status is "{status}"'))
def payment_status_is(order, status):
    [payment] = PaymentRepository().for_order(str(order.id))
    assert payment.status == status


@then(parsers.cfparse('the webhook outcomes are "{outcomes}"'))
def webhook_outcomes(context, outcomes):
    assert context["outcomes"] == outcomes.split(",")


@then("the correct delivery code is refused as rate limited")
def correct_code_refused(context, error):
    try:
        DeliveryConfirmation().verify(str(context["shipment"].id), context["code"])
    except RateLimitError as exc:
        error["exc"] = exc
    assert isinstance(error["exc"], RateLimitError)
    assert len(context["errors"]) == 5


@then(parsers.cfparse('the return status is "{status}"'))
def return_status_is(context, status):
    assert context["return"].status == status


@then(parsers.cfparse("the refund amount is {amount:f}"))
def refund_amount_is(context, amount):
    assert context["return"].refund_amount == amount
