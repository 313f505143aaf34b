from datetime import datetime, timedelta

import pytest
from pymongo.errors import AutoReconnect

from conftest import add_coupon, add_product, signed
from errors import InvalidInput, InvalidTransition, PaymentIntentFailed, PersistenceAfterPaymentFailed, PriceNotSet
from money import amount_to_pay
from orders import OrderStore
from payments import PaymentFlow
from schemas import (
    CustomOrderCreate,
    OrderItem,
    PaymentConfirmIn,
    PaymentIntentIn,
    ShippingDetails,
    SimpleOrderCreate,
)

pytestmark = pytest.mark.anyio


@pytest.fixture
def flow(db, gateway, outbox):
    return PaymentFlow(db, gateway, outbox, minimum=1.0)


async def priced_simple_order(db, customer, shipping, amount=990.0):
    return await OrderStore(db).create_order(SimpleOrderCreate(
        customer=customer,
        items=[OrderItem(name="Cake", quantity=1, price=amount)],
        total=amount,
        price=amount,
        final_amount=amount,
        shipping=ShippingDetails(**shipping),
    ))


def test_amount_to_pay_floors_and_lifts_to_minimum():
    assert amount_to_pay(990.75, 1) == 990
    assert amount_to_pay(0.4, 1) == 1
    assert amount_to_pay(0, 1) == 1


async def test_tampered_signature_changes_nothing(flow, db, outbox, customer, shipping):
    order = await priced_simple_order(db, customer, shipping)
    intent = await flow.create_intent(PaymentIntentIn(order_id=order.id))

    req = PaymentConfirmIn(
        order_id=order.id,
        gateway_order_id=intent.gateway_order_id,
        payment_id="pay_1",
        amount=intent.amount,
        signature=signed(intent.gateway_order_id, "pay_2"),
    )
    with pytest.raises(PaymentIntentFailed):
        await flow.confirm(req)

    stored = await OrderStore(db).get_order(order.id)
    assert stored.status == "payment pending"
    assert stored.payment_status == "pending"
    assert await outbox.all() == []


async def test_missing_signature_is_refused(flow, db, customer, shipping):
    order = await priced_simple_order(db, customer, shipping)
    with pytest.raises(PaymentIntentFailed):
        await flow.confirm(PaymentConfirmIn(
            order_id=order.id, gateway_order_id="order_gw_1", payment_id="pay_1", amount=990,
        ))


async def test_custom_order_is_paid_only_after_pricing(flow, db, gateway, customer, shipping):
    store = OrderStore(db)
    order = await store.create_order(CustomOrderCreate(
        customer=customer,
        occasion="Anniversary",
        cake_size="2 kg",
        flavor="Pineapple",
        description="Heart shaped",
        required_date=datetime.utcnow() + timedelta(days=7),
    ))

    with pytest.raises(PriceNotSet) as exc:
        await flow.create_intent(PaymentIntentIn(order_id=order.id, shipping=shipping))
    assert exc.value.message == "Order price not confirmed yet"
    assert gateway.intents == []

    await store.set_price(order.id, 1500)
    intent = await flow.create_intent(PaymentIntentIn(order_id=order.id, shipping=shipping))
    assert intent.amount == 1500
    assert intent.amount_subunits == 150000

    result = await flow.confirm(PaymentConfirmIn(
        order_id=order.id,
        gateway_order_id=intent.gateway_order_id,
        payment_id="pay_custom",
        amount=1500,
        signature=signed(intent.gateway_order_id, "pay_custom"),
        shipping=shipping,
    ))
    assert result.status == "confirmed"
    assert result.payment_status == "paid"
    assert result.clear_cart is False

    stored = await store.get_order(order.id)
    assert stored.payment_id == "pay_custom"
    assert stored.payment_amount == 1500
    assert stored.pincode == shipping["pincode"]


async def test_intent_needs_shipping(flow, db, customer):
    order = await OrderStore(db).create_order(SimpleOrderCreate(
        customer=customer,
        items=[OrderItem(name="Cake", quantity=1, price=100)],
        total=100, price=100, final_amount=100,
    ))
    with pytest.raises(InvalidInput):
        await flow.create_intent(PaymentIntentIn(order_id=order.id))


async def test_fully_discounted_checkout_charges_minimum(flow, db, gateway, customer, shipping):
    pid = await add_product(db, "Cookie box", 500)
    await add_coupon(db, code="MEGA", discount_type="fixed", discount_value=2000)
    checkout = {"customer": customer, "items": [{"product_id": pid, "quantity": 1}],
                "coupon_code": "MEGA", "shipping": shipping}
    intent = await flow.create_intent(PaymentIntentIn(checkout=checkout))
    assert intent.amount == 1
    assert gateway.intents[0][0] == 1


async def test_checkout_order_is_created_paid_and_confirm_is_idempotent(flow, db, customer, shipping):
    pid = await add_product(db, "Cake", 550)
    checkout = {"customer": customer, "items": [{"product_id": pid, "quantity": 2}], "shipping": shipping}
    intent = await flow.create_intent(PaymentIntentIn(checkout=checkout))
    req = PaymentConfirmIn(
        checkout=checkout,
        gateway_order_id=intent.gateway_order_id,
        payment_id="pay_cart",
        amount=intent.amount,
        signature=signed(intent.gateway_order_id, "pay_cart"),
    )

    first = await flow.confirm(req)
    second = await flow.confirm(req)
    assert first.order_id == second.order_id
    assert first.status == "confirmed"
    assert first.clear_cart is True
    assert len(db["orders"].docs) == 1


async def test_failed_write_is_replayed_without_charging_again(flow, db, gateway, outbox, customer, shipping):
    pid = await add_product(db, "Cake", 550)
    checkout = {"customer": customer, "items": [{"product_id": pid, "quantity": 1}], "shipping": shipping}
    intent = await flow.create_intent(PaymentIntentIn(checkout=checkout))
    assert len(gateway.intents) == 1

    db["orders"].fail_next["insert_one"] = AutoReconnect("primary stepped down")
    with pytest.raises(PersistenceAfterPaymentFailed) as exc:
        await flow.confirm(PaymentConfirmIn(
            checkout=checkout,
            gateway_order_id=intent.gateway_order_id,
            payment_id="pay_lost",
            amount=intent.amount,
            signature=signed(intent.gateway_order_id, "pay_lost"),
        ))
    assert exc.value.payment_id == "pay_lost"
    assert "pay_lost" in exc.value.message
    assert db["orders"].docs == []

    entry = await outbox.get("pay_lost")
    assert entry.state == "pending"
    assert entry.attempts == 1

    result = await flow.replay_pending()
    assert len(result.recovered) == 1
    assert result.pending == []
    assert await outbox.all() == []
    assert len(gateway.intents) == 1

    order = await OrderStore(db).find_by_payment_id("pay_lost")
    assert order.status == "confirmed"
    assert order.payment_status == "paid"


async def test_rejected_payment_is_kept_for_staff(flow, db, outbox, customer, shipping):
    order = await priced_simple_order(db, customer, shipping)
    intent = await flow.create_intent(PaymentIntentIn(order_id=order.id))
    await OrderStore(db).update_status(order.id, "cancelled")

    with pytest.raises(InvalidTransition):
        await flow.confirm(PaymentConfirmIn(
            order_id=order.id,
            gateway_order_id=intent.gateway_order_id,
            payment_id="pay_late",
            amount=990,
            signature=signed(intent.gateway_order_id, "pay_late"),
        ))
    entry = await outbox.get("pay_late")
    assert entry.state == "rejected"
    assert await outbox.retryable() == []

    replay = await flow.replay_pending()
    assert replay.recovered == []
    assert replay.pending == ["pay_late"]


async def test_manual_recover_after_attempts_run_out(flow, db, outbox, customer, shipping):
    order = await priced_simple_order(db, customer, shipping)
    intent = await flow.create_intent(PaymentIntentIn(order_id=order.id))
    req = PaymentConfirmIn(
        order_id=order.id,
        gateway_order_id=intent.gateway_order_id,
        payment_id="pay_retry",
        amount=990,
        signature=signed(intent.gateway_order_id, "pay_retry"),
    )
    for _ in range(outbox.max_attempts):
        db["orders"].fail_next["update_one"] = AutoReconnect("down")
        with pytest.raises(PersistenceAfterPaymentFailed):
            await flow.confirm(req)
    assert await outbox.retryable() == []

    result = await flow.recover("pay_retry")
    assert result.status == "confirmed"
    assert await outbox.get("pay_retry") is None


async def custom_order_priced_at(db, customer, price):
    store = OrderStore(db)
    order = await store.create_order(CustomOrderCreate(
        customer=customer,
        occasion="Wedding",
        cake_size="4 kg",
        flavor="Mango",
        description="Floral tiers",
        required_date=datetime.utcnow() + timedelta(days=10),
    ))
    return await store.set_price(order.id, price)


async def test_payment_for_a_cheaper_order_cannot_settle_another(flow, db, outbox, customer, shipping):
    cheap = await priced_simple_order(db, customer, shipping, amount=1)
    cheap_intent = await flow.create_intent(PaymentIntentIn(order_id=cheap.id))
    big = await custom_order_priced_at(db, customer, 2000)

    with pytest.raises(PaymentIntentFailed):
        await flow.confirm(PaymentConfirmIn(
            order_id=big.id,
            gateway_order_id=cheap_intent.gateway_order_id,
            payment_id="pay_cheap",
            amount=cheap_intent.amount,
            signature=signed(cheap_intent.gateway_order_id, "pay_cheap"),
            shipping=shipping,
        ))

    stored = await OrderStore(db).get_order(big.id)
    assert stored.status == "payment pending"
    assert stored.payment_status == "pending"
    assert (await outbox.get("pay_cheap")).state == "rejected"


async def test_reported_amount_must_match_intent(flow, db, customer, shipping):
    order = await priced_simple_order(db, customer, shipping)
    intent = await flow.create_intent(PaymentIntentIn(order_id=order.id))
    with pytest.raises(PaymentIntentFailed):
        await flow.confirm(PaymentConfirmIn(
            order_id=order.id,
            gateway_order_id=intent.gateway_order_id,
            payment_id="pay_short",
            amount=1,
            signature=signed(intent.gateway_order_id, "pay_short"),
        ))
    assert (await OrderStore(db).get_order(order.id)).payment_status == "pending"


async def test_unknown_gateway_order_is_refused(flow, db, customer, shipping):
    order = await priced_simple_order(db, customer, shipping)
    with pytest.raises(PaymentIntentFailed):
        await flow.confirm(PaymentConfirmIn(
            order_id=order.id,
            gateway_order_id="order_never_issued",
            payment_id="pay_x",
            amount=990,
            signature=signed("order_never_issued", "pay_x"),
        ))


async def test_checkout_intent_only_settles_the_same_cart(flow, db, customer, shipping):
    cake = await add_product(db, "Cake", 550)
    cookie = await add_product(db, "Cookie", 20)
    small = {"customer": customer, "items": [{"product_id": cookie, "quantity": 1}], "shipping": shipping}
    big = {"customer": customer, "items": [{"product_id": cake, "quantity": 4}], "shipping": shipping}
    intent = await flow.create_intent(PaymentIntentIn(checkout=small))

    with pytest.raises(PaymentIntentFailed):
        await flow.confirm(PaymentConfirmIn(
            checkout=big,
            gateway_order_id=intent.gateway_order_id,
            payment_id="pay_swap",
            amount=intent.amount,
            signature=signed(intent.gateway_order_id, "pay_swap"),
        ))
    assert db["orders"].docs == []


async def test_repriced_after_intent_is_refused(flow, db, customer, shipping):
    order = await custom_order_priced_at(db, customer, 1500)
    intent = await flow.create_intent(PaymentIntentIn(order_id=order.id, shipping=shipping))
    await OrderStore(db).set_price(order.id, 1800)

    with pytest.raises(PaymentIntentFailed):
        await flow.confirm(PaymentConfirmIn(
            order_id=order.id,
            gateway_order_id=intent.gateway_order_id,
            payment_id="pay_old_quote",
            amount=1500,
            signature=signed(intent.gateway_order_id, "pay_old_quote"),
            shipping=shipping,
        ))
    assert (await OrderStore(db).get_order(order.id)).payment_status == "pending"


async def test_recorded_amount_is_what_the_intent_charged(flow, db, customer, shipping):
    order = await priced_simple_order(db, customer, shipping, amount=990.75)
    intent = await flow.create_intent(PaymentIntentIn(order_id=order.id))
    await flow.confirm(PaymentConfirmIn(
        order_id=order.id,
        gateway_order_id=intent.gateway_order_id,
        payment_id="pay_floor",
        amount=intent.amount,
        signature=signed(intent.gateway_order_id, "pay_floor"),
    ))
    stored = await OrderStore(db).get_order(order.id)
    assert stored.payment_amount == intent.amount == 990
