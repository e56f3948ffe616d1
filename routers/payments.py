from typing import Annotated

from fastapi import APIRouter, Body, Header, Request
from fastapi.responses import JSONResponse
from starlette import status

from core.config import settings
from core.exceptions import PaymentFlowError
from middleware.rate_limiter import limiter
from schemas.payment_schemas import PaymentStatusResponse, VerifyPaymentRequest, VerifyPaymentResponse
from services.gateways import FlutterwaveAdapter, get_adapter_for_gateway
from services.payment_polling import PollResult, await_payment
from services.payment_service import PaymentService, ReconcileResult, describe_payment, result_label
from utils.deps import db_dependency, http_dependency, notifier_dependency, user_dependency
from utils.logger import get_logger

# Setup logger
logger = get_logger(__name__)


router = APIRouter(
    prefix="/payments",
    tags=["payments"]
)

NOT_PROCESSED = {"detail": "We could not process this update"}


def _process_notification(gateway: str, payload: dict, db, http, notifier) -> ReconcileResult:
    """Provider notification -> confirm with the provider -> state machine."""
    adapter = get_adapter_for_gateway(gateway, http)
    hint = adapter.parse_callback(payload)
    return PaymentService.reconcile(db, http, gateway, hint.external_reference, notifier=notifier, hint=hint)


def _rejected(gateway: str, e: PaymentFlowError) -> JSONResponse:
    # Non-2xx makes the provider deliver again later
    logger.warning(
        f"{gateway} notification not processed: {e.detail}",
        extra={**e.context, "gateway": gateway, "error_type": type(e).__name__}
    )
    return JSONResponse(status_code=e.status_code, content=NOT_PROCESSED)


@router.post("/mpesa/callback")
def mpesa_callback(payload: Annotated[dict, Body()], db: db_dependency, http: http_dependency,
                   notifier: notifier_dependency):
    try:
        result = _process_notification("mpesa", payload, db, http, notifier)
    except PaymentFlowError as e:
        return _rejected("mpesa", e)

    logger.info("M-PESA callback processed",
                extra={"payment_id": result.payment.id, "outcome": result.outcome.value,
                       "result": result_label(result.transition)})
    return {"ResultCode": 0, "ResultDesc": "Accepted"}


def _pesapal_ipn(params: dict, db, http, notifier):
    try:
        _process_notification("pesapal", params, db, http, notifier)
    except PaymentFlowError as e:
        logger.warning(
            f"pesapal notification not processed: {e.detail}",
            extra={**e.context, "gateway": "pesapal", "error_type": type(e).__name__}
        )
        return JSONResponse(status_code=e.status_code, content={
            "orderNotificationType": params.get("OrderNotificationType"),
            "orderTrackingId": params.get("OrderTrackingId"),
            "orderMerchantReference": params.get("OrderMerchantReference"),
            "status": 500,
        })

    return {
        "orderNotificationType": params.get("OrderNotificationType"),
        "orderTrackingId": params.get("OrderTrackingId"),
        "orderMerchantReference": params.get("OrderMerchantReference"),
        "status": 200,
    }


@router.get("/pesapal/ipn")
def pesapal_ipn_get(request: Request, db: db_dependency, http: http_dependency, notifier: notifier_dependency):
    return _pesapal_ipn(dict(request.query_params), db, http, notifier)


@router.post("/pesapal/ipn")
def pesapal_ipn_post(payload: Annotated[dict, Body()], db: db_dependency, http: http_dependency,
                     notifier: notifier_dependency):
    return _pesapal_ipn(payload, db, http, notifier)


@router.post("/flutterwave/webhook")
def flutterwave_webhook(payload: Annotated[dict, Body()], db: db_dependency, http: http_dependency,
                        notifier: notifier_dependency,
                        verif_hash: Annotated[str | None, Header(alias="verif-hash")] = None):
    if not FlutterwaveAdapter(settings, http).verify_webhook_signature(verif_hash):
        logger.warning("Flutterwave webhook with invalid signature", extra={"gateway": "flutterwave"})
        return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content=NOT_PROCESSED)

    try:
        _process_notification("flutterwave", payload, db, http, notifier)
    except PaymentFlowError as e:
        return _rejected("flutterwave", e)
    return {"status": "ok"}


@router.post("/paypal/webhook")
def paypal_webhook(payload: Annotated[dict, Body()], db: db_dependency, http: http_dependency,
                   notifier: notifier_dependency):
    try:
        _process_notification("paypal", payload, db, http, notifier)
    except PaymentFlowError as e:
        return _rejected("paypal", e)
    return {"status": "ok"}


@router.post("/verify", response_model=VerifyPaymentResponse)
@limiter.limit("20/minute")
def verify_payment(request: Request, body: VerifyPaymentRequest, user: user_dependency, db: db_dependency,
                   http: http_dependency, notifier: notifier_dependency):
    """
    Ask the provider for the outcome of one of the caller's payments.

    Used on the return from a hosted checkout and by the "check status"
    button; the result never relies on what the return URL said.
    """
    result = PaymentService.verify_for_user(db, http, user, body.gateway, body.reference, notifier=notifier)
    payment = result.payment
    order = payment.order
    return VerifyPaymentResponse(
        outcome=result.outcome.value,
        result=result_label(result.transition),
        payment_id=payment.id,
        payment_status=payment.status.value,
        order_id=payment.order_id,
        order_status=order.status.value if order else None,
        payment_recorded=payment.is_successful,
        message=result.message,
    )


@router.get("/{payment_id}/status", response_model=PaymentStatusResponse)
async def payment_status(payment_id: str, user: user_dependency, db: db_dependency):
    payment = PaymentService.get_for_user(db, payment_id, user)
    order = payment.order
    return PaymentStatusResponse(
        payment_id=payment.id,
        payment_status=payment.status.value,
        order_id=payment.order_id,
        order_status=order.status.value if order else None,
        message=describe_payment(payment),
    )


@router.get("/{payment_id}/await", response_model=PaymentStatusResponse)
async def await_payment_status(payment_id: str, user: user_dependency, db: db_dependency):
    """
    Wait (bounded) for a mobile-money payment to settle.

    A timeout does not mean the payment failed: the confirmation may still
    arrive, and the order history will show it.
    """
    payment = PaymentService.get_for_user(db, payment_id, user)
    outcome = await await_payment(db, payment, settings.MPESA_POLL_MAX_ATTEMPTS,
                                  settings.MPESA_POLL_INTERVAL_SECONDS)
    payment = outcome.payment
    order = payment.order

    if outcome.result == PollResult.TIMEOUT:
        message = ("We have not received a confirmation yet. Your payment may still go through; "
                   "check your order history in a few minutes.")
    else:
        message = describe_payment(payment)

    return PaymentStatusResponse(
        payment_id=payment.id,
        payment_status=payment.status.value,
        order_id=payment.order_id,
        order_status=order.status.value if order else None,
        result=outcome.result.value,
        message=message,
    )
