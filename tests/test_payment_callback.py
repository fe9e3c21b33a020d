from urllib.parse import parse_qs, urlparse

import pytest

from conftest import CARD, OutboxEvent, fetch_all, fetch_group, fetch_order, place_order

CALLBACK = "/payment/callback/3d-secure"


@pytest.fixture
async def enrolled(client, catalog, bank):
    """A two-restaurant checkout waiting on the ACS page."""
    order = await place_order(client, (catalog["cheeseburger"], 1), (catalog["margherita"], 1))
    resp = await client.post(
        "/payment/initialize", json={"orderId": order["orderId"], "amount": order["totalAmount"], **CARD}
    )
    assert resp.status_code == 200, resp.text
    order["enrollmentId"] = resp.json()["verifyEnrollmentRequestId"]
    order["token"] = bank.callback_token()
    return order


def bank_fields(order, **overrides):
    fields = {
        "Status": "Y",
        "VerifyEnrollmentRequestId": order["enrollmentId"],
        "PurchAmount": "100.00",
        "Eci": "05",
        "Cavv": "AAABBCCDDEEFF",
        "MdStatus": "1",
        "MerchantId": "000100000013506",
    }
    fields.update(overrides)
    return {k: v for k, v in fields.items() if v is not None}


async def post_callback(client, order, token=None, **overrides):
    token = order["token"] if token is None else token
    return await client.post(f"{CALLBACK}?cbt={token}", data=bank_fields(order, **overrides))


def redirect_query(resp):
    assert resp.status_code == 302
    location = urlparse(resp.headers["location"])
    return location, {k: v[0] for k, v in parse_qs(location.query).items()}


async def test_successful_callback_settles_the_whole_group(client, enrolled, bank, broadcaster, mailer):
    resp = await post_callback(client, enrolled)

    location, query = redirect_query(resp)
    assert location.path == "/payment/success"
    assert query["orderId"] == str(enrolled["orderId"])
    assert query["transactionId"].startswith("TXN_")

    [provision] = bank.provisions
    assert provision["ECI"] == "05"
    assert provision["CAVV"] == "AAABBCCDDEEFF"
    assert provision["MpiTransactionId"] == enrolled["enrollmentId"]
    assert provision["CurrencyAmount"] == "100.00"
    assert "Pan" not in provision

    orders = await fetch_group(enrolled["groupId"])
    assert {o.payment_status for o in orders} == {"Paid"}
    assert {o.payment_transaction_id for o in orders} == {query["transactionId"]}
    primary = orders[0]
    assert primary.payment_response["callback"]["mdStatus"] == "1"
    assert primary.payment_response["provision"]["resultCode"] == "0000"
    assert "callbackToken" not in orders[1].payment_response

    assert len(mailer.sent) == 1
    assert len(broadcaster.events("order:new")) == 2


async def test_replayed_callback_is_a_no_op(client, enrolled, bank, broadcaster, mailer):
    first = await post_callback(client, enrolled)
    second = await post_callback(client, enrolled)

    _, first_query = redirect_query(first)
    location, second_query = redirect_query(second)
    assert location.path == "/payment/success"
    assert second_query["transactionId"] == first_query["transactionId"]

    assert len(bank.provisions) == 1
    assert len(mailer.sent) == 1
    assert len(broadcaster.events("order:new")) == 2
    confirmed = [e for e in await fetch_all(OutboxEvent) if e.event_type == "order.confirmed"]
    assert len(confirmed) == 1


async def test_get_callback_is_accepted(client, enrolled):
    params = {**bank_fields(enrolled), "cbt": enrolled["token"]}
    resp = await client.get(CALLBACK, params=params)

    location, _ = redirect_query(resp)
    assert location.path == "/payment/success"


@pytest.mark.parametrize("token", ["", "0" * 32])
@pytest.mark.parametrize("status", ["Y", "N"])
async def test_bad_token_is_rejected_without_state_change(client, enrolled, bank, token, status):
    resp = await post_callback(client, enrolled, token=token, Status=status)

    location, query = redirect_query(resp)
    assert location.path == "/payment/failure"
    assert query["reason"] == "invalid_request"
    assert bank.provisions == []
    orders = await fetch_group(enrolled["groupId"])
    assert {o.payment_status for o in orders} == {"Pending"}


async def test_amount_mismatch_fails_the_group(client, enrolled, bank, mailer):
    resp = await post_callback(client, enrolled, PurchAmount="1.00")

    location, query = redirect_query(resp)
    assert location.path == "/payment/failure"
    assert query["reason"] == "amount_mismatch"
    assert "1.00" not in resp.headers["location"]
    assert bank.provisions == []
    orders = await fetch_group(enrolled["groupId"])
    assert {o.payment_status for o in orders} == {"Failed"}
    assert "Amount mismatch" in orders[0].payment_error
    assert mailer.sent == []


async def test_missing_amount_counts_as_mismatch(client, enrolled):
    resp = await post_callback(client, enrolled, PurchAmount=None)

    _, query = redirect_query(resp)
    assert query["reason"] == "amount_mismatch"


async def test_amount_within_tolerance_is_accepted(client, enrolled):
    resp = await post_callback(client, enrolled, PurchAmount="100.004")

    location, _ = redirect_query(resp)
    assert location.path == "/payment/success"


@pytest.mark.parametrize("status", ["N", "U", "E"])
async def test_failed_authentication(client, enrolled, bank, status):
    resp = await post_callback(client, enrolled, Status=status, Eci=None, Cavv=None)

    _, query = redirect_query(resp)
    assert query["reason"] == "authentication_failed"
    assert bank.provisions == []
    orders = await fetch_group(enrolled["groupId"])
    assert {o.payment_status for o in orders} == {"Failed"}
    assert f"Status: {status}" in orders[0].payment_error


async def test_missing_eci_is_derived_from_brand(client, catalog, bank):
    bank.brand = "200"
    order = await place_order(client, (catalog["fries"], 5))
    init = await client.post("/payment/initialize",
                             json={"orderId": order["orderId"], "amount": order["totalAmount"], **CARD})
    enrolled = {**order, "enrollmentId": init.json()["verifyEnrollmentRequestId"], "token": bank.callback_token()}

    resp = await post_callback(client, enrolled, Status="A", Eci=None, Cavv=None, PurchAmount="100.00")

    location, _ = redirect_query(resp)
    assert location.path == "/payment/success"
    [provision] = bank.provisions
    assert provision["ECI"] == "01"
    assert "CAVV" not in provision


async def test_declined_provisioning(client, enrolled, bank, mailer):
    bank.result_code = "0005"

    resp = await post_callback(client, enrolled)

    _, query = redirect_query(resp)
    assert query["reason"] == "declined"
    assert "0005" not in resp.headers["location"]
    primary = await fetch_order(enrolled["orderId"])
    assert primary.payment_status == "Failed"
    assert primary.payment_response["provision"]["resultCode"] == "0005"
    assert mailer.sent == []


async def test_bank_unreachable_during_provisioning(client, enrolled, bank):
    bank.fail_transport = True

    resp = await post_callback(client, enrolled)

    _, query = redirect_query(resp)
    assert query["reason"] == "declined"
    assert (await fetch_order(enrolled["orderId"])).payment_status == "Failed"


@pytest.mark.parametrize("missing", ["Status", "VerifyEnrollmentRequestId"])
async def test_missing_parameters(client, enrolled, missing):
    resp = await post_callback(client, enrolled, **{missing: None})

    _, query = redirect_query(resp)
    assert query["reason"] == "missing_parameters"
    assert (await fetch_order(enrolled["orderId"])).payment_status == "Pending"


async def test_unknown_enrollment_id(client, enrolled):
    resp = await post_callback(client, enrolled, VerifyEnrollmentRequestId="ENR_forged")

    _, query = redirect_query(resp)
    assert query["reason"] == "not_found"


async def test_callback_after_failure_is_not_reprocessed(client, enrolled, bank):
    await post_callback(client, enrolled, Status="N")

    resp = await post_callback(client, enrolled)

    _, query = redirect_query(resp)
    assert query["reason"] == "already_processed"
    assert bank.provisions == []
