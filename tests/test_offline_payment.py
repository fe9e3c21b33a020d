import pytest

from conftest import OutboxEvent, fetch_all, fetch_group, place_order, set_order_fields


async def choose(client, order, method="cash_on_delivery"):
    return await client.post("/payment/offline", json={"orderId": order["orderId"], "method": method})


async def test_cash_on_delivery_confirms_the_group(client, catalog, broadcaster, mailer):
    order = await place_order(client, (catalog["cheeseburger"], 1), (catalog["margherita"], 1))

    resp = await choose(client, order)

    assert resp.status_code == 200, resp.text
    assert resp.json() == {
        "success": True,
        "orderId": order["orderId"],
        "paymentMethod": "cash_on_delivery",
        "paymentStatus": "AwaitingPayment",
    }
    orders = await fetch_group(order["groupId"])
    assert {o.payment_status for o in orders} == {"AwaitingPayment"}
    assert {o.payment_method for o in orders} == {"cash_on_delivery"}

    tickets = broadcaster.events("order:new")
    assert sorted(rid for rid, _ in tickets) == sorted([catalog["burger"], catalog["pizza"]])
    assert {p["paymentMethod"] for _, p in tickets} == {"cash_on_delivery"}
    assert len(mailer.sent) == 1


async def test_changing_method_does_not_reprint(client, catalog, broadcaster, mailer):
    order = await place_order(client, (catalog["cheeseburger"], 1))
    await choose(client, order)

    resp = await choose(client, order, "pickup")

    assert resp.status_code == 200, resp.text
    assert [o.payment_method for o in await fetch_group(order["groupId"])] == ["pickup"]
    assert len(broadcaster.events("order:new")) == 1
    assert len(mailer.sent) == 1
    confirmed = [e for e in await fetch_all(OutboxEvent) if e.event_type == "order.confirmed"]
    assert len(confirmed) == 1


@pytest.mark.parametrize("settled", ["Paid", "Failed"])
async def test_settled_order_cannot_switch_to_offline(client, catalog, settled):
    order = await place_order(client, (catalog["cheeseburger"], 1))
    await set_order_fields(order["orderId"], payment_status=settled)

    resp = await choose(client, order)

    assert resp.status_code == 409
    assert resp.json()["errorCode"] == "ILLEGAL_PAYMENT_TRANSITION"
    assert (await fetch_group(order["groupId"]))[0].payment_status == settled


async def test_online_method_is_rejected(client, catalog):
    order = await place_order(client, (catalog["cheeseburger"], 1))

    resp = await choose(client, order, "credit_card")

    assert resp.status_code == 400
    assert resp.json()["errorCode"] == "INVALID_PAYMENT_METHOD"


async def test_unknown_method_is_a_validation_error(client, catalog):
    order = await place_order(client, (catalog["cheeseburger"], 1))

    resp = await choose(client, order, "barter")

    assert resp.status_code == 400
    assert resp.json()["errorCode"] == "VALIDATION_ERROR"


async def test_unknown_order(client, catalog):
    resp = await client.post("/payment/offline", json={"orderId": 999, "method": "pickup"})

    assert resp.status_code == 404
