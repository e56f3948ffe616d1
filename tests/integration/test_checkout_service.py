from decimal import Decimal

import pytest

from core.exceptions import GatewayUnavailable, InvalidRequest
from models import Order, OrderItem, OrderStatus, OrderTracking, Payment, PaymentMethod, PaymentStatus, Prescription, PrescriptionStatus
from schemas.checkout_schemas import CheckoutRequest
from services.checkout_service import CheckoutService
from services.gateways import Customer

STK_PATH = "/mpesa/stkpush/v1/processrequest"
MPESA_CUSTOMER = Customer(email="wanjiru@example.com", phone_number="+254712345678", full_name="Wanjiru Kamau")


def checkout_request(**overrides):
    data = {
        "items": [
            {"product_id": "amoxil-500", "product_name": "Amoxil 500mg", "unit_price": "450.00", "quantity": 2},
            {"product_id": "panadol-ex", "product_name": "Panadol Extra", "unit_price": "120.00", "quantity": 1},
        ],
        "delivery_address": "Ngong Road, Adams Arcade",
        "county": "Kiambu",
        "phone_number": "0712345678",
        "payment_method": "mpesa",
    }
    data.update(overrides)
    return CheckoutRequest(**data)


def stk_accepted(reference):
    return (200, {"ResponseCode": "0", "CheckoutRequestID": reference, "CustomerMessage": "Check your phone"})


@pytest.fixture
def daraja(provider):
    provider.on("GET", "/oauth/v1/generate", (200, {"access_token": "daraja-token"}))
    return provider


def test_create_order_computes_totals(session, customer):
    order = CheckoutService.create_order(session, {"user_id": customer.id}, checkout_request())

    assert order.status == OrderStatus.PENDING
    assert order.delivery_fee == Decimal("200")
    assert order.total_amount == Decimal("1220")
    assert order.phone_number == "+254712345678"
    assert order.requires_prescription is False

    items = session.query(OrderItem).filter(OrderItem.order_id == order.id).all()
    assert sorted(item.subtotal for item in items) == [Decimal("120"), Decimal("900")]
    rows = session.query(OrderTracking).filter(OrderTracking.order_id == order.id).all()
    assert [(row.status, row.note) for row in rows] == [(OrderStatus.PENDING, "Order placed")]


def test_free_delivery_over_threshold(session, customer):
    request = checkout_request(items=[{"product_id": "glucometer", "product_name": "Glucometer kit",
                                       "unit_price": "2500.00", "quantity": 1}], county="Turkana")

    order = CheckoutService.create_order(session, {"user_id": customer.id}, request)

    assert order.delivery_fee == Decimal("0")
    assert order.total_amount == Decimal("2500")


def test_prescription_item_flags_order(session, customer):
    request = checkout_request(items=[{"product_id": "augmentin", "product_name": "Augmentin 625mg",
                                       "unit_price": "980.00", "quantity": 1, "requires_prescription": True}])

    order = CheckoutService.create_order(session, {"user_id": customer.id}, request)

    assert order.requires_prescription is True
    assert order.prescription_approved is False


def test_approved_prescription_is_linked(session, customer):
    prescription = Prescription(user_id=customer.id, image_url="https://cdn.example.com/rx/1.jpg",
                                status=PrescriptionStatus.APPROVED)
    session.add(prescription)
    session.commit()

    order = CheckoutService.create_order(session, {"user_id": customer.id},
                                         checkout_request(prescription_id=prescription.id))

    session.refresh(prescription)
    assert prescription.order_id == order.id
    assert order.requires_prescription is True
    assert order.prescription_approved is True


def test_rejected_prescription_cannot_be_used(session, customer):
    prescription = Prescription(user_id=customer.id, image_url="https://cdn.example.com/rx/2.jpg",
                                status=PrescriptionStatus.REJECTED)
    session.add(prescription)
    session.commit()

    with pytest.raises(InvalidRequest):
        CheckoutService.create_order(session, {"user_id": customer.id},
                                     checkout_request(prescription_id=prescription.id))
    assert session.query(Order).count() == 0


def test_initiate_records_pending_payment(session, http, daraja, make_order):
    order, _ = make_order(with_payment=False)
    daraja.on("POST", STK_PATH, stk_accepted("ws_CO_100"))

    payment, session_info = CheckoutService.initiate_payment(session, http, order, PaymentMethod.MPESA, MPESA_CUSTOMER)

    assert payment.status == PaymentStatus.PENDING
    assert payment.gateway == "mpesa"
    assert payment.external_reference == "ws_CO_100"
    assert payment.amount == order.total_amount
    assert payment.user_id == order.user_id
    assert payment.order_id == order.id
    assert "initiate" in payment.provider_metadata
    assert session_info.prompt_message == "Check your phone"


def test_no_second_pending_payment_on_same_gateway(session, http, daraja, make_order):
    order, _ = make_order(with_payment=False)
    daraja.on("POST", STK_PATH, stk_accepted("ws_CO_100"), stk_accepted("ws_CO_101"))
    CheckoutService.initiate_payment(session, http, order, PaymentMethod.MPESA, MPESA_CUSTOMER)

    with pytest.raises(InvalidRequest):
        CheckoutService.initiate_payment(session, http, order, PaymentMethod.MPESA, MPESA_CUSTOMER)

    assert len(daraja.calls_to(STK_PATH)) == 1
    pending = session.query(Payment).filter(Payment.order_id == order.id, Payment.status == PaymentStatus.PENDING)
    assert pending.count() == 1


def test_new_attempt_allowed_after_failure(session, http, daraja, make_order):
    order, payment = make_order()
    payment.status = PaymentStatus.FAILED
    session.commit()
    daraja.on("POST", STK_PATH, stk_accepted("ws_CO_200"))

    retry, _ = CheckoutService.initiate_payment(session, http, order, PaymentMethod.MPESA, MPESA_CUSTOMER)

    assert retry.id != payment.id
    assert retry.status == PaymentStatus.PENDING


def test_closed_order_cannot_be_paid(session, http, provider, make_order):
    order, _ = make_order(order_status=OrderStatus.PAYMENT_FAILED, with_payment=False)

    with pytest.raises(InvalidRequest):
        CheckoutService.initiate_payment(session, http, order, PaymentMethod.MPESA, MPESA_CUSTOMER)
    assert provider.calls == []


def test_transient_failures_are_retried(session, http, daraja, make_order):
    order, _ = make_order(with_payment=False)
    daraja.on("POST", STK_PATH, (503, {"errorMessage": "busy"}), (503, {"errorMessage": "busy"}),
              stk_accepted("ws_CO_300"))

    payment, _ = CheckoutService.initiate_payment(session, http, order, PaymentMethod.MPESA, MPESA_CUSTOMER)

    assert payment.external_reference == "ws_CO_300"
    assert len(daraja.calls_to(STK_PATH)) == 3


def test_retries_are_bounded(session, http, daraja, make_order):
    order, _ = make_order(with_payment=False)
    daraja.on("POST", STK_PATH, (503, {"errorMessage": "busy"}))

    with pytest.raises(GatewayUnavailable):
        CheckoutService.initiate_payment(session, http, order, PaymentMethod.MPESA, MPESA_CUSTOMER)

    assert len(daraja.calls_to(STK_PATH)) == 3
    assert session.query(Payment).count() == 0
    session.refresh(order)
    assert order.status == OrderStatus.PENDING


def test_rejected_request_not_retried(session, http, daraja, make_order):
    order, _ = make_order(with_payment=False)
    daraja.on("POST", STK_PATH, (400, {"errorMessage": "Bad Request - Invalid Amount"}))

    with pytest.raises(InvalidRequest):
        CheckoutService.initiate_payment(session, http, order, PaymentMethod.MPESA, MPESA_CUSTOMER)

    assert len(daraja.calls_to(STK_PATH)) == 1


def test_prescription_on_another_order_cannot_be_reused(session, customer, make_order):
    earlier, _ = make_order(requires_prescription=True, prescription_approved=True, with_payment=False)
    prescription = Prescription(user_id=customer.id, order_id=earlier.id, image_url="https://cdn.example.com/rx/3.jpg",
                                status=PrescriptionStatus.APPROVED)
    session.add(prescription)
    session.commit()

    with pytest.raises(InvalidRequest):
        CheckoutService.create_order(session, {"user_id": customer.id},
                                     checkout_request(prescription_id=prescription.id))

    session.refresh(prescription)
    assert prescription.order_id == earlier.id
    assert session.query(Order).count() == 1
