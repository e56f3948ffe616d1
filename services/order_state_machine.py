"""
The single writer of ``Order.status`` and of terminal ``Payment.status``.

Every change goes through ``OrderStateMachine.apply(event)``. Payment and
order rows are moved with conditional updates (``WHERE status = :expected``),
so when two deliveries of the same webhook race, exactly one of them sees a
row change and the other is reported as a duplicate. Tracking rows are
written in the same transaction as the status they record. Notifications
are handed off only after commit.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import GuardViolation, InvalidRequest, NotFound, PersistenceFailure, UnknownPayment
from models.order_tracking import OrderTracking
from models.orders import Order, OrderStatus
from models.payments import Payment, PaymentStatus, SUCCESSFUL_PAYMENT_STATUSES
from services.prescription_gate import can_fulfill
from utils.logger import get_logger

logger = get_logger(__name__)

PIPELINE = (
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PROCESSING,
    OrderStatus.SHIPPED,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
)

TERMINAL_ORDER_STATUSES = (OrderStatus.DELIVERED, OrderStatus.CANCELLED)
# payment_failed is absorbing: a retry means a new order
CLOSED_ORDER_STATUSES = TERMINAL_ORDER_STATUSES + (OrderStatus.PAYMENT_FAILED,)

NOTIFY_ON = (OrderStatus.CONFIRMED, OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.PAYMENT_FAILED)

SYSTEM_ACTOR = "system"


def rank(order_status: OrderStatus) -> Optional[int]:
    """Position on the fulfilment pipeline, None for cancelled/payment_failed."""
    try:
        return PIPELINE.index(OrderStatus(order_status))
    except ValueError:
        return None


# Events

@dataclass(frozen=True)
class PaymentSucceeded:
    gateway: str
    external_reference: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    receipt: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentFailed:
    gateway: str
    external_reference: str
    reason: Optional[str] = None
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PrescriptionApproved:
    order_id: str


@dataclass(frozen=True)
class AdminStatusUpdate:
    order_id: str
    new_status: str
    actor: str
    location: Optional[str] = None
    note: Optional[str] = None


class TransitionKind(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    UNCHANGED = "unchanged"


@dataclass
class TransitionResult:
    kind: TransitionKind
    order_id: Optional[str] = None
    order_status: Optional[OrderStatus] = None
    payment_id: Optional[str] = None
    payment_status: Optional[PaymentStatus] = None
    payment_recorded: bool = False
    message: str = ""


class _StaleRow(Exception):
    """A conditional update matched no row."""


class OrderStateMachine:

    def __init__(self, db: Session, notifier=None):
        self.db = db
        self.notifier = notifier

    def apply(self, event) -> TransitionResult:
        if isinstance(event, PaymentSucceeded):
            return self._payment_succeeded(event)
        if isinstance(event, PaymentFailed):
            return self._payment_failed(event)
        if isinstance(event, PrescriptionApproved):
            return self._prescription_approved(event)
        if isinstance(event, AdminStatusUpdate):
            return self._admin_status_update(event)
        raise InvalidRequest(f"Unsupported event: {type(event).__name__}")

    # Lookups

    def _find_payment(self, gateway: str, external_reference: str) -> Payment:
        payment = self.db.query(Payment).filter(
            Payment.gateway == gateway,
            Payment.external_reference == external_reference,
        ).first()
        if payment is None:
            logger.warning(
                "Gateway update for unknown payment",
                extra={"gateway": gateway, "external_reference": external_reference},
            )
            raise UnknownPayment(gateway=gateway, external_reference=external_reference)
        return payment

    def _get_order(self, order_id: str) -> Order:
        order = self.db.get(Order, order_id)
        if order is None:
            raise NotFound("Order not found")
        return order

    def _has_completed_payment(self, order: Order) -> bool:
        return self.db.query(Payment.id).filter(
            Payment.order_id == order.id,
            Payment.status.in_(SUCCESSFUL_PAYMENT_STATUSES),
        ).first() is not None

    # Writes, always inside the caller's transaction

    def _settle_payment(self, payment: Payment, new_status: PaymentStatus, **values):
        metadata = dict(payment.provider_metadata or {})
        extra_metadata = values.pop("metadata", None)
        if extra_metadata:
            metadata.update(extra_metadata)

        result = self.db.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.status == PaymentStatus.PENDING)
            .values(status=new_status, provider_metadata=metadata, **values)
        )
        if result.rowcount == 0:
            raise _StaleRow()
        self.db.refresh(payment)

    def _move_order(self, order: Order, new_status: OrderStatus, actor: str,
                    location: str | None = None, note: str | None = None):
        expected = order.status
        result = self.db.execute(
            update(Order)
            .where(Order.id == order.id, Order.status == expected)
            .values(status=new_status)
        )
        if result.rowcount == 0:
            raise _StaleRow()
        self._track(order, new_status, actor, location=location, note=note)
        self.db.refresh(order)

    def _track(self, order: Order, order_status: OrderStatus, actor: str,
               location: str | None = None, note: str | None = None):
        self.db.add(OrderTracking(order_id=order.id, status=order_status, location=location,
                                  note=note, updated_by=actor))

    def _commit(self, **context):
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"Transition commit failed: {str(e)}",
                extra={**context, "error_type": type(e).__name__},
                exc_info=True,
            )
            raise PersistenceFailure(**context) from e

    def _fail_write(self, e: SQLAlchemyError, **context):
        self.db.rollback()
        logger.error(
            f"Transition write failed: {str(e)}",
            extra={**context, "error_type": type(e).__name__},
            exc_info=True,
        )
        raise PersistenceFailure(**context) from e

    def _notify(self, order_id: str, order_status: OrderStatus):
        if self.notifier is None or order_status not in NOTIFY_ON:
            return
        try:
            self.notifier.notify(order_id, order_status)
        except Exception as e:
            logger.error(
                f"Could not schedule notification: {str(e)}",
                extra={"order_id": order_id, "status": order_status.value, "error_type": type(e).__name__},
            )

    def _duplicate(self, payment: Payment) -> TransitionResult:
        order = payment.order
        logger.info(
            "Duplicate gateway update ignored",
            extra={"payment_id": payment.id, "gateway": payment.gateway,
                   "external_reference": payment.external_reference, "status": payment.status.value},
        )
        return TransitionResult(
            kind=TransitionKind.DUPLICATE,
            order_id=payment.order_id,
            order_status=order.status if order else None,
            payment_id=payment.id,
            payment_status=payment.status,
            payment_recorded=payment.is_successful,
            message="This update was already processed.",
        )

    # Event handlers

    def _payment_succeeded(self, event: PaymentSucceeded) -> TransitionResult:
        payment = self._find_payment(event.gateway, event.external_reference)
        if payment.is_terminal:
            return self._duplicate(payment)

        context = {"payment_id": payment.id, "order_id": payment.order_id,
                   "gateway": event.gateway, "external_reference": event.external_reference}

        if event.amount is not None and Decimal(event.amount) < Decimal(payment.amount):
            logger.warning("Reported amount is lower than the payment amount",
                           extra={**context, "reported_amount": str(event.amount),
                                  "expected_amount": str(payment.amount)})
            raise GuardViolation("Reported amount does not cover the payment", **context)
        if event.currency and event.currency.upper() != (payment.currency or "").upper():
            logger.warning("Reported currency does not match the payment",
                           extra={**context, "reported_currency": event.currency})
            raise GuardViolation("Reported currency does not match the payment", **context)

        order = payment.order
        notify_status = None
        try:
            self._settle_payment(
                payment, PaymentStatus.COMPLETED,
                receipt_number=event.receipt or payment.receipt_number,
                completed_at=datetime.now(timezone.utc),
                metadata={"confirmation": event.metadata} if event.metadata else None,
            )

            if order is None:
                logger.warning("Completed payment has no order", extra=context)
            elif order.status == OrderStatus.PENDING:
                if can_fulfill(order):
                    self._move_order(order, OrderStatus.CONFIRMED, SYSTEM_ACTOR,
                                     note=f"Payment received via {event.gateway}")
                    notify_status = OrderStatus.CONFIRMED
                else:
                    self._track(order, OrderStatus.PENDING, SYSTEM_ACTOR,
                                note="Payment received, awaiting prescription approval")
            elif order.status in CLOSED_ORDER_STATUSES:
                self._track(order, order.status, SYSTEM_ACTOR,
                            note=f"Payment received via {event.gateway} after the order was "
                                 f"{order.status.value.replace('_', ' ')}; refund review needed")
            else:
                self._track(order, order.status, SYSTEM_ACTOR,
                            note=f"Additional payment received via {event.gateway}")
        except _StaleRow:
            self.db.rollback()
            self.db.refresh(payment)
            if payment.is_terminal:
                return self._duplicate(payment)
            raise PersistenceFailure("Order changed while recording the payment. Please retry.", **context)
        except SQLAlchemyError as e:
            self._fail_write(e, **context)

        self._commit(**context)
        logger.info("Payment completed", extra={**context, "status": order.status.value if order else None})

        if notify_status:
            self._notify(order.id, notify_status)

        if order is not None and order.status == OrderStatus.PENDING:
            message = "Payment received. Your order will be processed once your prescription is approved."
        else:
            message = "Payment received."
        return TransitionResult(
            kind=TransitionKind.APPLIED,
            order_id=payment.order_id,
            order_status=order.status if order else None,
            payment_id=payment.id,
            payment_status=payment.status,
            payment_recorded=True,
            message=message,
        )

    def _payment_failed(self, event: PaymentFailed) -> TransitionResult:
        payment = self._find_payment(event.gateway, event.external_reference)
        if payment.is_terminal:
            return self._duplicate(payment)

        context = {"payment_id": payment.id, "order_id": payment.order_id,
                   "gateway": event.gateway, "external_reference": event.external_reference}
        order = payment.order
        notify_status = None
        try:
            self._settle_payment(
                payment, PaymentStatus.FAILED,
                failure_reason=event.reason,
                metadata={"confirmation": event.metadata} if event.metadata else None,
            )

            if order is not None and order.status == OrderStatus.PENDING:
                other_live_payment = self.db.query(Payment.id).filter(
                    Payment.order_id == order.id,
                    Payment.id != payment.id,
                    Payment.status.in_((PaymentStatus.PENDING,) + SUCCESSFUL_PAYMENT_STATUSES),
                ).first()
                if other_live_payment is None:
                    self._move_order(order, OrderStatus.PAYMENT_FAILED, SYSTEM_ACTOR,
                                     note=event.reason or f"Payment via {event.gateway} failed")
                    notify_status = OrderStatus.PAYMENT_FAILED
        except _StaleRow:
            self.db.rollback()
            self.db.refresh(payment)
            if payment.is_terminal:
                return self._duplicate(payment)
            raise PersistenceFailure("Order changed while recording the payment. Please retry.", **context)
        except SQLAlchemyError as e:
            self._fail_write(e, **context)

        self._commit(**context)
        logger.info("Payment failed", extra={**context, "reason": event.reason})

        if notify_status:
            self._notify(order.id, notify_status)

        return TransitionResult(
            kind=TransitionKind.APPLIED,
            order_id=payment.order_id,
            order_status=order.status if order else None,
            payment_id=payment.id,
            payment_status=payment.status,
            payment_recorded=False,
            message=f"Payment was not completed: {event.reason}" if event.reason else "Payment was not completed.",
        )

    def _prescription_approved(self, event: PrescriptionApproved) -> TransitionResult:
        order = self._get_order(event.order_id)
        paid = self._has_completed_payment(order)

        if order.status != OrderStatus.PENDING or not paid or not can_fulfill(order):
            return TransitionResult(
                kind=TransitionKind.UNCHANGED,
                order_id=order.id,
                order_status=order.status,
                payment_recorded=paid,
                message="Prescription approved." if paid else "Prescription approved. Awaiting payment.",
            )

        context = {"order_id": order.id}
        try:
            self._move_order(order, OrderStatus.CONFIRMED, SYSTEM_ACTOR, note="Prescription approved")
        except _StaleRow:
            self.db.rollback()
            raise PersistenceFailure("Order changed while it was being confirmed. Please retry.", **context)
        except SQLAlchemyError as e:
            self._fail_write(e, **context)

        self._commit(**context)
        logger.info("Order confirmed after prescription approval", extra=context)
        self._notify(order.id, OrderStatus.CONFIRMED)

        return TransitionResult(
            kind=TransitionKind.APPLIED,
            order_id=order.id,
            order_status=order.status,
            payment_recorded=True,
            message="Prescription approved. Your order is confirmed.",
        )

    def _check_admin_move(self, order: Order, new_status: OrderStatus):
        current = order.status
        if new_status == OrderStatus.PAYMENT_FAILED:
            raise GuardViolation("payment_failed can only be set from a gateway result", order_id=order.id)
        if current in CLOSED_ORDER_STATUSES:
            raise GuardViolation(f"Order is {current.value} and can no longer change status", order_id=order.id)
        if new_status == OrderStatus.CANCELLED:
            return
        if rank(new_status) < rank(current):
            raise GuardViolation(f"Order cannot move back from {current.value} to {new_status.value}",
                                 order_id=order.id)
        if not self._has_completed_payment(order):
            raise GuardViolation("Order has no completed payment", order_id=order.id)
        if rank(new_status) > rank(OrderStatus.CONFIRMED) and not can_fulfill(order):
            raise GuardViolation("Prescription has not been approved", order_id=order.id)

    def _admin_status_update(self, event: AdminStatusUpdate) -> TransitionResult:
        try:
            new_status = OrderStatus(event.new_status)
        except ValueError:
            raise InvalidRequest(f"Unknown order status: {event.new_status}")

        order = self._get_order(event.order_id)
        context = {"order_id": order.id, "actor": event.actor}

        if new_status == order.status:
            try:
                self._track(order, order.status, event.actor, location=event.location, note=event.note)
            except SQLAlchemyError as e:
                self._fail_write(e, **context)
            self._commit(**context)
            return TransitionResult(
                kind=TransitionKind.UNCHANGED,
                order_id=order.id,
                order_status=order.status,
                payment_recorded=self._has_completed_payment(order),
                message="Tracking updated.",
            )

        try:
            self._check_admin_move(order, new_status)
        except GuardViolation as e:
            logger.warning(
                f"Status update rejected: {e.detail}",
                extra={**context, "from_status": order.status.value, "to_status": new_status.value},
            )
            raise

        previous = order.status
        try:
            self._move_order(order, new_status, event.actor, location=event.location, note=event.note)
        except _StaleRow:
            self.db.rollback()
            raise GuardViolation("Order was updated by someone else. Reload and try again.", **context)
        except SQLAlchemyError as e:
            self._fail_write(e, **context)

        self._commit(**context)
        logger.info(
            "Order status updated",
            extra={**context, "from_status": previous.value, "to_status": new_status.value},
        )
        self._notify(order.id, new_status)

        return TransitionResult(
            kind=TransitionKind.APPLIED,
            order_id=order.id,
            order_status=order.status,
            payment_recorded=self._has_completed_payment(order),
            message=f"Order is now {new_status.value.replace('_', ' ')}.",
        )
