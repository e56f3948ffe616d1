import time
from decimal import Decimal

import httpx
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import Settings, settings
from core.exceptions import Forbidden, GatewayUnavailable, InvalidRequest, NotFound, PersistenceFailure
from models.order_items import OrderItem
from models.order_tracking import OrderTracking
from models.orders import Order, OrderStatus, PaymentMethod
from models.payments import Payment, PaymentStatus
from schemas.checkout_schemas import CheckoutRequest
from services.gateways import Customer, InitiateResult, gateway_for_method, get_gateway_adapter
from services.prescription_gate import PrescriptionService
from utils.logger import get_logger, sanitize_log_data

logger = get_logger(__name__)

FREE_DELIVERY_THRESHOLD = Decimal("2000")
NEARBY_COUNTIES = {"kiambu", "kajiado", "machakos"}
NEARBY_DELIVERY_FEE = Decimal("200")
STANDARD_DELIVERY_FEE = Decimal("300")


def delivery_fee_for(subtotal: Decimal, county: str) -> Decimal:
    """KES delivery fee: free in Nairobi or above the threshold, flat rates elsewhere."""
    county = (county or "").strip().lower()
    if subtotal >= FREE_DELIVERY_THRESHOLD or county == "nairobi":
        return Decimal("0")
    if county in NEARBY_COUNTIES:
        return NEARBY_DELIVERY_FEE
    return STANDARD_DELIVERY_FEE


class CheckoutService:

    @staticmethod
    def create_order(db: Session, user: dict, request: CheckoutRequest) -> Order:
        """Order + line items + first tracking row, committed together."""
        subtotal = sum((item.unit_price * item.quantity for item in request.items), Decimal("0"))
        delivery_fee = delivery_fee_for(subtotal, request.county)

        order = Order(
            user_id=user["user_id"],
            total_amount=subtotal + delivery_fee,
            delivery_fee=delivery_fee,
            currency=request.currency,
            delivery_address=request.delivery_address,
            county=request.county,
            phone_number=request.phone_number,
            payment_method=request.payment_method,
            status=OrderStatus.PENDING,
            requires_prescription=any(item.requires_prescription for item in request.items),
            prescription_approved=False,
        )
        db.add(order)
        db.flush()

        for item in request.items:
            db.add(OrderItem(
                order_id=order.id,
                product_id=item.product_id,
                product_name=item.product_name,
                price_at_time=item.unit_price,
                quantity=item.quantity,
                subtotal=item.unit_price * item.quantity,
            ))

        if request.prescription_id:
            try:
                PrescriptionService.link_to_order(db, request.prescription_id, order)
            except InvalidRequest:
                db.rollback()
                raise

        db.add(OrderTracking(order_id=order.id, status=OrderStatus.PENDING,
                             note="Order placed", updated_by=user["user_id"]))
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not create order: {str(e)}",
                         extra={"user_id": user["user_id"], "error_type": type(e).__name__})
            raise PersistenceFailure("Your order could not be saved. Please try again.") from e

        db.refresh(order)
        logger.info(
            "Order created",
            extra={"order_id": order.id, "user_id": order.user_id, "total_amount": str(order.total_amount),
                   "payment_method": order.payment_method.value,
                   "requires_prescription": order.requires_prescription},
        )
        return order

    @staticmethod
    def get_owned_order(db: Session, order_id: str, user: dict) -> Order:
        order = db.get(Order, order_id)
        if order is None:
            raise NotFound("Order not found")
        if order.user_id != user["user_id"] and user.get("user_role") != "admin":
            raise Forbidden("You do not have access to this order")
        return order

    @staticmethod
    def initiate_payment(db: Session, http: httpx.Client, order: Order, method: PaymentMethod,
                         customer: Customer, config: Settings = settings) -> tuple[Payment, InitiateResult]:
        """
        Open a provider session for ``order`` and record it as a pending Payment.

        Only transient provider failures are retried; a rejected request is
        returned to the customer immediately.
        """
        method = PaymentMethod(method)
        gateway = gateway_for_method(method)
        context = {"order_id": order.id, "gateway": gateway}

        if order.status != OrderStatus.PENDING:
            raise InvalidRequest(f"Order is {order.status.value.replace('_', ' ')} and cannot be paid", **context)

        already_pending = db.query(Payment.id).filter(
            Payment.order_id == order.id,
            Payment.gateway == gateway,
            Payment.status == PaymentStatus.PENDING,
        ).first()
        if already_pending is not None:
            raise InvalidRequest("A payment for this order is already in progress", **context)

        adapter = get_gateway_adapter(method, http, config)
        attempts = max(1, config.GATEWAY_INITIATE_ATTEMPTS)
        result = None
        for attempt in range(1, attempts + 1):
            try:
                result = adapter.initiate(order, order.total_amount, order.currency, customer)
                break
            except GatewayUnavailable:
                if attempt == attempts:
                    logger.error("Payment initiation failed after retries",
                                 extra={**context, "attempts": attempts})
                    raise
                delay = config.GATEWAY_RETRY_BACKOFF_SECONDS * (2 ** (attempt - 1))
                logger.warning("Payment provider unavailable, retrying",
                               extra={**context, "attempt": attempt, "retry_in_seconds": delay})
                time.sleep(delay)

        payment = Payment(
            order_id=order.id,
            user_id=order.user_id,
            amount=order.total_amount,
            currency=order.currency,
            method=method,
            gateway=gateway,
            status=PaymentStatus.PENDING,
            external_reference=result.external_reference,
            provider_metadata={"initiate": sanitize_log_data(result.raw)},
        )
        db.add(payment)
        if order.payment_method != method:
            order.payment_method = method
        try:
            db.commit()
        except IntegrityError as e:
            db.rollback()
            logger.warning("Duplicate payment attempt rejected by the database",
                           extra={**context, "external_reference": result.external_reference})
            raise InvalidRequest("A payment for this order is already in progress", **context) from e
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not record payment: {str(e)}",
                         extra={**context, "external_reference": result.external_reference,
                                "error_type": type(e).__name__})
            raise PersistenceFailure(**context) from e

        db.refresh(payment)
        logger.info("Payment initiated",
                    extra={**context, "payment_id": payment.id,
                           "external_reference": payment.external_reference})
        return payment, result
