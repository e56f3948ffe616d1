from fastapi import APIRouter, Request
from starlette import status
from core.exceptions import PaymentFlowError
from middleware.rate_limiter import limiter
from schemas.checkout_schemas import CheckoutRequest, CheckoutResponse, InitiatePaymentRequest, PaymentSession
from services.checkout_service import CheckoutService
from services.gateways import Customer
from services.user_service import UserService
from utils.deps import db_dependency, http_dependency, user_dependency
from utils.logger import get_logger

# Setup logger
logger = get_logger(__name__)


router = APIRouter(
    tags=["checkout"]
)


def _payment_session(payment, session) -> PaymentSession:
    return PaymentSession(
        payment_id=payment.id,
        gateway=payment.gateway,
        external_reference=payment.external_reference,
        status=payment.status.value,
        redirect_url=session.redirect_url,
        prompt_message=session.prompt_message,
    )


def _start_payment(db, http, order, method, customer):
    """Initiate, keeping the order when the provider refuses so the customer can retry."""
    try:
        return CheckoutService.initiate_payment(db, http, order, method, customer)
    except PaymentFlowError as e:
        logger.warning(
            f"Payment not started: {e.detail}",
            extra={"order_id": order.id, "payment_method": str(method), "error_type": type(e).__name__}
        )
        raise type(e)(f"Your order was saved but payment was not started. {e.detail}",
                      order_id=order.id) from e


@router.post("/checkout", status_code=status.HTTP_201_CREATED, response_model=CheckoutResponse)
@limiter.limit("10/minute")
def checkout(request: Request, body: CheckoutRequest, user: user_dependency, db: db_dependency,
             http: http_dependency):
    """
    Place an order and open a payment session for it.

    The response carries either a redirect URL (hosted checkouts) or a prompt
    message (M-PESA STK push).
    """
    profile = UserService.sync_from_identity(db, user)
    order = CheckoutService.create_order(db, user, body)

    customer = Customer(email=body.email or profile.email, phone_number=body.phone_number,
                        full_name=profile.full_name)
    payment, session = _start_payment(db, http, order, body.payment_method, customer)

    return CheckoutResponse(
        order_id=order.id,
        status=order.status.value,
        subtotal=order.total_amount - order.delivery_fee,
        delivery_fee=order.delivery_fee,
        total_amount=order.total_amount,
        currency=order.currency,
        requires_prescription=order.requires_prescription,
        payment=_payment_session(payment, session),
        message=session.prompt_message or "Complete your payment to confirm the order.",
    )


@router.post("/orders/{order_id}/payments", status_code=status.HTTP_201_CREATED, response_model=PaymentSession)
@limiter.limit("10/minute")
def retry_payment(request: Request, order_id: str, body: InitiatePaymentRequest, user: user_dependency,
                  db: db_dependency, http: http_dependency):
    """Start a new payment attempt for a pending order, through the same or another gateway."""
    profile = UserService.sync_from_identity(db, user)
    order = CheckoutService.get_owned_order(db, order_id, user)

    customer = Customer(email=profile.email, phone_number=body.phone_number or order.phone_number,
                        full_name=profile.full_name)
    payment, session = CheckoutService.initiate_payment(db, http, order, body.payment_method, customer)
    return _payment_session(payment, session)
