"""
Turns provider notifications and customer "check status" requests into
state machine events.

Whatever a webhook, IPN or return URL claims is only used to find the
payment. The outcome always comes from ``adapter.confirm``, a direct query
to the provider's own API, so a spoofed notification can at worst trigger
a status check.
"""
from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.config import Settings, settings
from core.exceptions import Forbidden, PersistenceFailure, UnknownPayment
from models.orders import OrderStatus
from models.payments import Payment, PaymentStatus
from services.gateways import CallbackHint, Outcome, OutcomeStatus, get_adapter_for_gateway
from services.order_state_machine import OrderStateMachine, PaymentFailed, PaymentSucceeded, TransitionResult
from utils.logger import get_logger, sanitize_log_data

logger = get_logger(__name__)


@dataclass
class ReconcileResult:
    outcome: OutcomeStatus
    payment: Payment
    transition: Optional[TransitionResult] = None

    @property
    def message(self) -> str:
        if self.transition is not None:
            return self.transition.message
        return "Payment is still being processed. Check your order history shortly."


def event_for(gateway: str, outcome: Outcome, hint: CallbackHint | None = None):
    """State machine event for a confirmed outcome, None while still pending."""
    metadata = sanitize_log_data(outcome.raw) if outcome.raw else {}
    if outcome.status == OutcomeStatus.SUCCESS:
        return PaymentSucceeded(
            gateway=gateway,
            external_reference=outcome.external_reference,
            amount=outcome.amount,
            currency=outcome.currency,
            receipt=outcome.receipt or (hint.receipt if hint else None),
            metadata=metadata,
        )
    if outcome.status == OutcomeStatus.FAILURE:
        return PaymentFailed(
            gateway=gateway,
            external_reference=outcome.external_reference,
            reason=outcome.reason,
            metadata=metadata,
        )
    return None


class PaymentService:

    @staticmethod
    def find_payment(db: Session, gateway: str, external_reference: str) -> Payment:
        payment = db.query(Payment).filter(
            Payment.gateway == gateway,
            Payment.external_reference == external_reference,
        ).first()
        if payment is None:
            logger.warning("Notification for unknown payment",
                           extra={"gateway": gateway, "external_reference": external_reference})
            raise UnknownPayment(gateway=gateway, external_reference=external_reference)
        return payment

    @staticmethod
    def reconcile(db: Session, http: httpx.Client, gateway: str, external_reference: str,
                  notifier=None, hint: CallbackHint | None = None,
                  config: Settings = settings) -> ReconcileResult:
        """
        Confirm with the provider and apply the result.

        A payment that is already settled is answered as a duplicate without
        calling the provider again.
        """
        payment = PaymentService.find_payment(db, gateway, external_reference)
        machine = OrderStateMachine(db, notifier)

        if payment.is_terminal:
            event = PaymentSucceeded(gateway, external_reference) if payment.is_successful \
                else PaymentFailed(gateway, external_reference)
            transition = machine.apply(event)
            return ReconcileResult(outcome=OutcomeStatus.SUCCESS if payment.is_successful else OutcomeStatus.FAILURE,
                                   payment=payment, transition=transition)

        adapter = get_adapter_for_gateway(gateway, http, config)
        outcome = adapter.confirm(external_reference)
        logger.info(
            "Provider confirmation received",
            extra={"gateway": gateway, "external_reference": external_reference,
                   "payment_id": payment.id, "order_id": payment.order_id, "outcome": outcome.status.value},
        )

        event = event_for(gateway, outcome, hint)
        if event is None:
            if hint is not None and hint.payload:
                PaymentService._remember_notification(db, payment, hint)
            return ReconcileResult(outcome=OutcomeStatus.PENDING, payment=payment)

        transition = machine.apply(event)
        db.refresh(payment)
        return ReconcileResult(outcome=outcome.status, payment=payment, transition=transition)

    @staticmethod
    def _remember_notification(db: Session, payment: Payment, hint: CallbackHint):
        """Keep an early notification on the pending row; the status itself is left alone."""
        metadata = dict(payment.provider_metadata or {})
        notifications = list(metadata.get("notifications") or [])
        notifications.append(sanitize_log_data(hint.payload))
        metadata["notifications"] = notifications[-10:]
        payment.provider_metadata = metadata
        if hint.receipt and not payment.receipt_number:
            payment.receipt_number = hint.receipt
        try:
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Could not store notification payload: {str(e)}",
                         extra={"payment_id": payment.id, "error_type": type(e).__name__})
            raise PersistenceFailure(payment_id=payment.id) from e

    @staticmethod
    def verify_for_user(db: Session, http: httpx.Client, user: dict, gateway: str, reference: str,
                        notifier=None, config: Settings = settings) -> ReconcileResult:
        payment = PaymentService.find_payment(db, gateway, reference)
        if payment.user_id != user["user_id"] and user.get("user_role") != "admin":
            raise Forbidden("You do not have access to this payment")
        return PaymentService.reconcile(db, http, gateway, reference, notifier=notifier, config=config)

    @staticmethod
    def get_for_user(db: Session, payment_id: str, user: dict) -> Payment:
        payment = db.get(Payment, payment_id)
        if payment is None:
            raise UnknownPayment()
        if payment.user_id != user["user_id"] and user.get("user_role") != "admin":
            raise Forbidden("You do not have access to this payment")
        return payment


def describe_payment(payment: Payment) -> str:
    order = payment.order
    if payment.is_successful:
        if order is not None and order.status == OrderStatus.PENDING:
            return "Payment received. Your order will be processed once your prescription is approved."
        return "Payment received."
    if payment.status == PaymentStatus.FAILED:
        return f"Payment was not completed: {payment.failure_reason}" if payment.failure_reason \
            else "Payment was not completed."
    return "Waiting for payment confirmation."


def result_label(transition: TransitionResult | None) -> str | None:
    return transition.kind.value if transition is not None else None
