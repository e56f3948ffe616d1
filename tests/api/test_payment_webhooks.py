import pytest

from models import OrderStatus, PaymentMethod, PaymentStatus

QUERY_PATH = "/mpesa/stkpushquery/v1/query"
FLW_VERIFY_PATH = "/v3/transactions/verify_by_reference"


def stk_callback(reference="ws_CO_001", result_code=0):
    callback = {
        "MerchantRequestID": "29115-34620561-1",
        "CheckoutRequestID": reference,
        "ResultCode": result_code,
        "ResultDesc": "The service request is processed successfully.",
    }
    if result_code == 0:
        callback["CallbackMetadata"] = {"Item": [
            {"Name": "Amount", "Value": 1500},
            {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
            {"Name": "PhoneNumber", "Value": 254712345678},
        ]}
    return {"Body": {"stkCallback": callback}}


@pytest.fixture
def daraja(provider):
    provider.on("GET", "/oauth/v1/generate", (200, {"access_token": "daraja-token"}))
    return provider


async def test_mpesa_callback_confirms_order(client, session, daraja, make_order, notifier):
    order, payment = make_order()
    daraja.on("POST", QUERY_PATH, (200, {"ResultCode": "0", "ResultDesc": "Processed"}))

    response = await client.post("/payments/mpesa/callback", json=stk_callback())

    assert response.status_code == 200
    assert response.json() == {"ResultCode": 0, "ResultDesc": "Accepted"}
    session.refresh(order)
    session.refresh(payment)
    assert order.status == OrderStatus.CONFIRMED
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.receipt_number == "NLJ7RT61SV"
    assert notifier.sent == [(order.id, OrderStatus.CONFIRMED)]


async def test_mpesa_callback_redelivery_is_acknowledged_once(client, session, daraja, make_order, notifier):
    order, _ = make_order()
    daraja.on("POST", QUERY_PATH, (200, {"ResultCode": "0", "ResultDesc": "Processed"}))

    first = await client.post("/payments/mpesa/callback", json=stk_callback())
    second = await client.post("/payments/mpesa/callback", json=stk_callback())

    assert first.status_code == 200
    assert second.status_code == 200
    assert len(daraja.calls_to(QUERY_PATH)) == 1
    assert notifier.sent == [(order.id, OrderStatus.CONFIRMED)]


async def test_mpesa_callback_for_cancelled_prompt(client, session, daraja, make_order, notifier):
    order, payment = make_order()
    daraja.on("POST", QUERY_PATH, (200, {"ResultCode": "1032", "ResultDesc": "Request cancelled by user"}))

    response = await client.post("/payments/mpesa/callback", json=stk_callback(result_code=1032))

    assert response.status_code == 200
    session.refresh(order)
    assert order.status == OrderStatus.PAYMENT_FAILED
    assert notifier.sent == [(order.id, OrderStatus.PAYMENT_FAILED)]


async def test_mpesa_callback_claim_is_not_trusted(client, session, daraja, make_order):
    order, payment = make_order()
    daraja.on("POST", QUERY_PATH, (200, {"ResultCode": "2001", "ResultDesc": "The initiator information is invalid."}))

    response = await client.post("/payments/mpesa/callback", json=stk_callback())

    assert response.status_code == 200
    session.refresh(payment)
    assert payment.status == PaymentStatus.FAILED
    session.refresh(order)
    assert order.status == OrderStatus.PAYMENT_FAILED


async def test_mpesa_callback_for_unknown_payment(client, daraja):
    response = await client.post("/payments/mpesa/callback", json=stk_callback("ws_CO_unknown"))

    assert response.status_code == 404
    assert response.json() == {"detail": "We could not process this update"}
    assert daraja.calls == []


async def test_mpesa_callback_without_reference(client):
    response = await client.post("/payments/mpesa/callback", json={"Body": {"stkCallback": {}}})

    assert response.status_code == 400


async def test_mpesa_callback_when_provider_is_down(client, session, daraja, make_order):
    order, payment = make_order()
    daraja.on("POST", QUERY_PATH, (503, {"errorMessage": "Service unavailable"}))

    response = await client.post("/payments/mpesa/callback", json=stk_callback())

    assert response.status_code == 503
    session.refresh(payment)
    assert payment.status == PaymentStatus.PENDING


async def test_pesapal_ipn_get(client, session, provider, make_order, notifier):
    order, payment = make_order(method=PaymentMethod.PESAPAL, gateway="pesapal",
                                reference="b945e4af-80a5-4ec1-8706-e03f8332fb04")
    provider.on("POST", "/v3/api/Auth/RequestToken", (200, {"token": "pesapal-token", "status": "200"}))
    provider.on("GET", "/v3/api/Transactions/GetTransactionStatus", (200, {
        "status_code": 1, "payment_status_description": "Completed", "amount": 1500, "currency": "KES",
        "confirmation_code": "AA11BB22", "merchant_reference": order.id,
    }))

    response = await client.get("/payments/pesapal/ipn", params={
        "OrderTrackingId": "b945e4af-80a5-4ec1-8706-e03f8332fb04",
        "OrderMerchantReference": order.id,
        "OrderNotificationType": "IPNCHANGE",
    })

    assert response.status_code == 200
    assert response.json() == {
        "orderNotificationType": "IPNCHANGE",
        "orderTrackingId": "b945e4af-80a5-4ec1-8706-e03f8332fb04",
        "orderMerchantReference": order.id,
        "status": 200,
    }
    session.refresh(order)
    session.refresh(payment)
    assert order.status == OrderStatus.CONFIRMED
    assert payment.receipt_number == "AA11BB22"


async def test_pesapal_ipn_unknown_tracking_id(client, provider):
    response = await client.post("/payments/pesapal/ipn", json={
        "OrderTrackingId": "missing", "OrderMerchantReference": "x", "OrderNotificationType": "IPNCHANGE",
    })

    assert response.status_code == 404
    assert response.json()["status"] == 500
    assert response.json()["orderTrackingId"] == "missing"


async def test_flutterwave_webhook_needs_signature(client, session, provider, make_order):
    order, payment = make_order(method=PaymentMethod.CARD, gateway="flutterwave", reference="ref-1")

    response = await client.post("/payments/flutterwave/webhook", headers={"verif-hash": "wrong"},
                                 json={"event": "charge.completed", "data": {"tx_ref": "ref-1"}})

    assert response.status_code == 401
    assert provider.calls == []
    session.refresh(payment)
    assert payment.status == PaymentStatus.PENDING


async def test_flutterwave_webhook_confirms_card_payment(client, session, provider, make_order, notifier):
    order, payment = make_order(method=PaymentMethod.CARD, gateway="flutterwave", reference="ref-1")
    provider.on("GET", FLW_VERIFY_PATH, (200, {"status": "success", "data": {
        "id": 288200108, "tx_ref": "ref-1", "flw_ref": "FLW-MOCK-1", "status": "successful",
        "amount": 1500, "currency": "KES",
    }}))

    response = await client.post("/payments/flutterwave/webhook", headers={"verif-hash": "flw-hash"},
                                 json={"event": "charge.completed", "data": {"id": 288200108, "tx_ref": "ref-1"}})

    assert response.status_code == 200
    session.refresh(order)
    session.refresh(payment)
    assert order.status == OrderStatus.CONFIRMED
    assert payment.receipt_number == "FLW-MOCK-1"


async def test_flutterwave_amount_mismatch_is_not_recorded(client, session, provider, make_order, notifier):
    order, payment = make_order(method=PaymentMethod.CARD, gateway="flutterwave", reference="ref-1")
    provider.on("GET", FLW_VERIFY_PATH, (200, {"status": "success", "data": {
        "tx_ref": "ref-1", "flw_ref": "FLW-MOCK-2", "status": "successful", "amount": 15, "currency": "KES",
    }}))

    response = await client.post("/payments/flutterwave/webhook", headers={"verif-hash": "flw-hash"},
                                 json={"event": "charge.completed", "data": {"tx_ref": "ref-1"}})

    assert response.status_code == 409
    session.refresh(order)
    session.refresh(payment)
    assert payment.status == PaymentStatus.PENDING
    assert order.status == OrderStatus.PENDING
    assert notifier.sent == []


async def test_paypal_webhook_captures_approved_order(client, session, provider, make_order):
    order, payment = make_order(total="25.00", currency="USD", method=PaymentMethod.PAYPAL, gateway="paypal",
                                reference="5O190127TN364715T")
    provider.on("POST", "/v1/oauth2/token", (200, {"access_token": "A21AAF"}))
    provider.on("GET", "/v2/checkout/orders/5O190127TN364715T", (200, {"id": "5O190127TN364715T",
                                                                       "status": "APPROVED"}))
    provider.on("POST", "/v2/checkout/orders/5O190127TN364715T/capture", (201, {
        "id": "5O190127TN364715T",
        "status": "COMPLETED",
        "purchase_units": [{"payments": {"captures": [{
            "id": "3C679366HH908993F", "status": "COMPLETED",
            "amount": {"currency_code": "USD", "value": "25.00"},
        }]}}],
    }))

    response = await client.post("/payments/paypal/webhook", json={
        "event_type": "CHECKOUT.ORDER.APPROVED",
        "resource": {"id": "5O190127TN364715T", "status": "APPROVED"},
    })

    assert response.status_code == 200
    session.refresh(order)
    session.refresh(payment)
    assert payment.status == PaymentStatus.COMPLETED
    assert payment.receipt_number == "3C679366HH908993F"
    assert order.status == OrderStatus.CONFIRMED
