import json
from decimal import Decimal
from types import SimpleNamespace

import pytest

from core.config import settings
from core.exceptions import GatewayUnavailable, InvalidRequest
from services.gateways import Customer, OutcomeStatus, PesapalAdapter

ORDER = SimpleNamespace(id="9c1d2e3f-0000-4000-8000-000000000001", phone_number="+254712345678")
CUSTOMER = Customer(email="amina@example.com", phone_number="+254722000000", full_name="Amina Hassan")


@pytest.fixture
def adapter(http):
    return PesapalAdapter(settings, http)


@pytest.fixture
def authed(provider):
    provider.on("POST", "/v3/api/Auth/RequestToken",
                (200, {"token": "pesapal-token", "expiryDate": "2026-10-17T10:00:00Z", "error": None, "status": "200"}))
    return provider


def test_initiate_submits_order(adapter, authed):
    authed.on("POST", "/v3/api/Transactions/SubmitOrderRequest", (200, {
        "order_tracking_id": "b945e4af-80a5-4ec1-8706-e03f8332fb04",
        "merchant_reference": "ignored",
        "redirect_url": "https://pay.pesapal.com/iframe/PesapalIframe3/Index/?OrderTrackingId=b945e4af",
        "error": None,
        "status": "200",
    }))

    result = adapter.initiate(ORDER, Decimal("2300.00"), "KES", CUSTOMER)

    assert result.external_reference == "b945e4af-80a5-4ec1-8706-e03f8332fb04"
    assert result.redirect_url.startswith("https://pay.pesapal.com/")

    body = json.loads(authed.calls_to("/v3/api/Transactions/SubmitOrderRequest")[0].content)
    assert body["id"].startswith(ORDER.id + "-")
    assert body["notification_id"] == settings.PESAPAL_IPN_ID
    assert body["amount"] == 2300.0
    assert body["billing_address"]["first_name"] == "Amina"
    assert body["billing_address"]["last_name"] == "Hassan"


def test_initiate_needs_contact_details(adapter, provider):
    with pytest.raises(InvalidRequest):
        adapter.initiate(ORDER, Decimal("100"), "KES", Customer())
    assert provider.calls == []


def test_initiate_error_body_is_invalid_request(adapter, authed):
    authed.on("POST", "/v3/api/Transactions/SubmitOrderRequest",
              (200, {"error": {"error_type": "api_error", "code": "invalid_amount", "message": "Amount is invalid"},
                     "status": "500"}))

    with pytest.raises(InvalidRequest) as exc_info:
        adapter.initiate(ORDER, Decimal("100"), "KES", CUSTOMER)
    assert exc_info.value.detail == "Amount is invalid"


def test_auth_error_is_gateway_unavailable(adapter, provider):
    provider.on("POST", "/v3/api/Auth/RequestToken",
                (200, {"token": None, "error": {"code": "invalid_consumer_key_or_secret_provided"}}))

    with pytest.raises(GatewayUnavailable):
        adapter.initiate(ORDER, Decimal("100"), "KES", CUSTOMER)


@pytest.mark.parametrize("status_code,expected", [
    (1, OutcomeStatus.SUCCESS),
    (2, OutcomeStatus.FAILURE),
    (3, OutcomeStatus.FAILURE),
    (0, OutcomeStatus.PENDING),
])
def test_confirm_maps_status_codes(adapter, authed, status_code, expected):
    authed.on("GET", "/v3/api/Transactions/GetTransactionStatus", (200, {
        "payment_method": "MpesaKE",
        "amount": 2300.0,
        "confirmation_code": "QJK7XYZ123",
        "payment_status_description": "Completed" if status_code == 1 else "Failed",
        "currency": "KES",
        "status_code": status_code,
    }))

    outcome = adapter.confirm("b945e4af")

    assert outcome.status == expected
    if expected == OutcomeStatus.SUCCESS:
        assert outcome.receipt == "QJK7XYZ123"
        assert outcome.amount == Decimal("2300.0")
    request = authed.calls_to("/v3/api/Transactions/GetTransactionStatus")[0]
    assert request.url.params["orderTrackingId"] == "b945e4af"


def test_parse_ipn():
    hint = PesapalAdapter(settings, None).parse_callback({
        "OrderTrackingId": "b945e4af", "OrderMerchantReference": "order-1-ab12cd34",
        "OrderNotificationType": "IPNCHANGE",
    })

    assert hint.external_reference == "b945e4af"
    assert hint.payload["notification_type"] == "IPNCHANGE"
