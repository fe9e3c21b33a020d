from decimal import Decimal

from conftest import CARD, OutboxEvent, fetch_all, fetch_group, fetch_order, place_order, set_order_fields


async def checkout(client, catalog):
    # 60.00 at the burger place, 40.00 at the pizza place
    return await place_order(client, (catalog["cheeseburger"], 1), (catalog["margherita"], 1))


def init_payload(order, **overrides):
    payload = {"orderId": order["orderId"], "amount": order["totalAmount"], **CARD}
    payload.update(overrides)
    return payload


async def test_enrolled_card_returns_acs_redirect(client, catalog, bank):
    order = await checkout(client, catalog)

    resp = await client.post("/payment/initialize", json=init_payload(order, installmentCount=3))

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["enrolled"] is True
    assert body["requires3DSecure"] is True
    assert body["acsUrl"] == "https://acs.bank.test/challenge"
    assert body["paReq"] == "cGFyZXE="
    assert body["md"] == "bWQtdmFsdWU="
    assert body["verifyEnrollmentRequestId"].startswith("ENR_")
    assert "paymentResult" not in body

    enrollment = bank.enrollments[0]
    assert enrollment["PurchaseAmount"] == "100.00"
    assert enrollment["ExpiryDate"] == "3012"
    assert enrollment["InstallmentCount"] == "3"
    assert enrollment["SuccessUrl"].startswith("http://testserver/payment/callback/3d-secure?cbt=")

    primary = await fetch_order(order["orderId"])
    assert primary.payment_status == "Pending"
    assert primary.verify_enrollment_request_id == body["verifyEnrollmentRequestId"]
    assert primary.payment_response["callbackToken"] == bank.callback_token()
    assert primary.payment_response["groupId"] == order["groupId"]
    assert primary.payment_response["amount"] == "100.00"
    assert primary.payment_response["brand"] == "100"
    assert bank.provisions == []


async def test_not_enrolled_card_is_paid_directly(client, catalog, bank, broadcaster, mailer):
    bank.enrollment_status = "N"
    order = await checkout(client, catalog)

    resp = await client.post("/payment/initialize", json=init_payload(order),
                             headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"})

    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["enrolled"] is False
    assert body["paymentResult"]["transactionId"].startswith("TXN_")
    assert body["paymentResult"]["rrn"] == "123456789012"
    assert body["paymentResult"]["authCode"] == "A1B2C3"

    [provision] = bank.provisions
    assert provision["Pan"] == "4938410000000005"
    assert provision["Expiry"] == "203012"
    assert provision["CurrencyAmount"] == "100.00"
    assert provision["ClientIp"] == "203.0.113.9"

    orders = await fetch_group(order["groupId"])
    assert {o.payment_status for o in orders} == {"Paid"}
    assert {o.payment_transaction_id for o in orders} == {body["paymentResult"]["transactionId"]}
    assert all(o.paid_at is not None for o in orders)

    # Settlement notifies once: one e-mail for the cart, one ticket per kitchen
    assert len(mailer.sent) == 1
    assert sorted(rid for rid, _ in broadcaster.events("order:new")) == sorted([catalog["burger"], catalog["pizza"]])
    confirmed = [e for e in await fetch_all(OutboxEvent) if e.event_type == "order.confirmed"]
    assert len(confirmed) == 1


async def test_not_enrolled_decline_fails_the_group(client, catalog, bank, mailer):
    bank.enrollment_status = "N"
    bank.result_code = "0051"
    order = await checkout(client, catalog)

    resp = await client.post("/payment/initialize", json=init_payload(order))

    assert resp.status_code == 400
    assert resp.json()["errorCode"] == "0051"
    assert "RED" not in resp.text
    orders = await fetch_group(order["groupId"])
    assert {o.payment_status for o in orders} == {"Failed"}
    assert mailer.sent == []


async def test_enrollment_error_leaves_order_pending(client, catalog, bank):
    bank.enrollment_status = "E"
    bank.enrollment_error = "2005"
    order = await checkout(client, catalog)

    resp = await client.post("/payment/initialize", json=init_payload(order))

    assert resp.status_code == 400
    assert resp.json()["errorCode"] == "2005"
    primary = await fetch_order(order["orderId"])
    assert primary.payment_status == "Pending"
    assert primary.verify_enrollment_request_id is None

    # Retry-safe: the next attempt goes through
    bank.enrollment_status = "Y"
    bank.enrollment_error = None
    retry = await client.post("/payment/initialize", json=init_payload(order))
    assert retry.status_code == 200


async def test_issuer_exception_with_acs_continues_to_3d_secure(client, catalog, bank):
    bank.enrollment_status = "E"
    bank.enrollment_error = "7"
    order = await checkout(client, catalog)

    resp = await client.post("/payment/initialize", json=init_payload(order))

    assert resp.json()["enrolled"] is True


async def test_bank_unreachable(client, catalog, bank):
    bank.fail_transport = True
    order = await checkout(client, catalog)

    resp = await client.post("/payment/initialize", json=init_payload(order))

    assert resp.status_code == 400
    assert resp.json()["errorCode"] == "TRANSPORT_ERROR"
    assert (await fetch_order(order["orderId"])).payment_status == "Pending"


async def test_amount_must_match_group_total(client, catalog, bank):
    order = await checkout(client, catalog)

    resp = await client.post("/payment/initialize", json=init_payload(order, amount="60.00"))

    assert resp.status_code == 400
    assert resp.json()["errorCode"] == "AMOUNT_MISMATCH"
    assert bank.enrollments == []


async def test_settled_order_cannot_be_initialized(client, catalog):
    order = await checkout(client, catalog)
    await set_order_fields(order["orderId"], payment_status="Paid")

    resp = await client.post("/payment/initialize", json=init_payload(order))

    assert resp.status_code == 409


async def test_unknown_order(client, catalog):
    resp = await client.post("/payment/initialize", json={"orderId": 999, "amount": "10.00", **CARD})
    assert resp.status_code == 404


async def test_bad_card_number_is_rejected_before_the_bank(client, catalog, bank):
    order = await checkout(client, catalog)

    resp = await client.post("/payment/initialize", json=init_payload(order, cardNumber="4111-abc"))

    assert resp.status_code == 400
    assert bank.enrollments == []


async def test_status_lookup_by_transaction_and_enrollment_id(client, catalog, bank):
    bank.enrollment_status = "N"
    order = await checkout(client, catalog)
    paid = (await client.post("/payment/initialize", json=init_payload(order))).json()
    transaction_id = paid["paymentResult"]["transactionId"]

    resp = await client.get(f"/payment/status/{transaction_id}")

    assert resp.status_code == 200
    status = resp.json()
    assert status["orderId"] == order["orderId"]
    assert status["paymentStatus"] == "Paid"
    assert status["paymentTransactionId"] == transaction_id
    assert status["paidAt"] is not None

    enrollment_id = (await fetch_order(order["orderId"])).verify_enrollment_request_id
    assert (await client.get(f"/payment/status/{enrollment_id}")).json()["orderId"] == order["orderId"]
    assert (await client.get("/payment/status/TXN_unknown")).status_code == 404


async def test_amount_tolerance(client, catalog, bank):
    order = await checkout(client, catalog)
    amount = str(Decimal(order["totalAmount"]) + Decimal("0.004"))

    resp = await client.post("/payment/initialize", json=init_payload(order, amount=amount))

    assert resp.status_code == 200
