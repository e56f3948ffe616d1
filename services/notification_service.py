"""
Customer notifications for order status changes.

Runs after the transition has committed, normally as a FastAPI background
task. Each channel (in-app row, email, SMS) is attempted on its own.
Email and SMS are retried a bounded number of times, then the failure is
only logged: a notification can never undo or block an order update.
"""
import smtplib
import time

import httpx
from fastapi import BackgroundTasks
from sqlalchemy.exc import SQLAlchemyError

from core.config import Settings, settings
from core.database import SessionLocal
from models.notifications import Notification, NotificationType
from models.orders import Order, OrderStatus
from services.email_service import ORDER_EMAIL_SUBJECTS, render_order_email, send_email
from utils.logger import get_logger
from utils.phone import to_e164

logger = get_logger(__name__)

SMS_MAX_LENGTH = 160

IN_APP_TITLES = {
    OrderStatus.CONFIRMED: "Order confirmed",
    OrderStatus.DELIVERED: "Order delivered",
    OrderStatus.CANCELLED: "Order cancelled",
    OrderStatus.PAYMENT_FAILED: "Payment failed",
}

SMS_TEMPLATES = {
    OrderStatus.CONFIRMED: "Your order #{ref} is confirmed and being prepared.",
    OrderStatus.DELIVERED: "Your order #{ref} has been delivered. Thank you!",
    OrderStatus.CANCELLED: "Your order #{ref} has been cancelled.",
    OrderStatus.PAYMENT_FAILED: "Payment for order #{ref} was not completed. Please try again.",
}


def send_sms(http: httpx.Client, phone_number: str, content: str):
    """Brevo transactional SMS."""
    recipient = to_e164(phone_number)
    if recipient is None:
        logger.warning("SMS skipped, invalid phone number")
        return
    content = content[:SMS_MAX_LENGTH]

    if settings.ENV == "testing" or not settings.BREVO_API_KEY:
        logger.info("[TEST MODE] SMS skipped" if settings.ENV == "testing" else "SMS not configured, skipped",
                    extra={"sms_length": len(content)})
        return

    response = http.post(
        f"{settings.BREVO_BASE_URL.rstrip('/')}/transactionalSMS/sms",
        json={
            "type": "transactional",
            "sender": settings.SMS_SENDER,
            "recipient": recipient.lstrip("+"),
            "content": content,
        },
        headers={"api-key": settings.BREVO_API_KEY, "Accept": "application/json"},
    )
    response.raise_for_status()
    logger.info("SMS sent", extra={"status_code": response.status_code})


class NotificationDispatcher:

    def __init__(self, session_factory=SessionLocal, email_sender=send_email, sms_sender=send_sms,
                 http_factory=None, config: Settings = settings):
        self.session_factory = session_factory
        self.config = config
        self.email_sender = email_sender
        self.sms_sender = sms_sender
        self.http_factory = http_factory or (lambda: httpx.Client(timeout=settings.GATEWAY_TIMEOUT_SECONDS))

    def dispatch(self, order_id: str, order_status: OrderStatus):
        if order_status not in IN_APP_TITLES:
            return

        db = self.session_factory()
        try:
            order = db.get(Order, order_id)
            if order is None:
                logger.warning("Notification for missing order", extra={"order_id": order_id})
                return
            self._in_app(db, order, order_status)

            user = order.user
            email = user.email if user else None
            full_name = user.full_name if user else None
            phone = order.phone_number or (user.phone_number if user else None)

            if email:
                self._email(order, order_status, email, full_name)
            if phone:
                self._sms(order, order_status, phone)
        finally:
            db.close()

    def _in_app(self, db, order: Order, order_status: OrderStatus):
        try:
            db.add(Notification(
                user_id=order.user_id,
                order_id=order.id,
                type=NotificationType.ORDER_STATUS,
                title=IN_APP_TITLES[order_status],
                message=ORDER_EMAIL_SUBJECTS[order_status] + f" (#{order.id[:8].upper()}).",
            ))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"In-app notification failed: {str(e)}",
                         extra={"order_id": order.id, "status": order_status.value, "error_type": type(e).__name__})

    def _email(self, order: Order, order_status: OrderStatus, email: str, full_name: str | None):
        subject, body = render_order_email(order, order_status, full_name)
        self._deliver("email", order, order_status, (smtplib.SMTPException, OSError),
                      lambda: self.email_sender(to_email=email, subject=subject, body=body))

    def _sms(self, order: Order, order_status: OrderStatus, phone: str):
        content = SMS_TEMPLATES[order_status].format(ref=order.id[:8].upper())

        def send():
            with self.http_factory() as http:
                self.sms_sender(http, phone, content)

        self._deliver("sms", order, order_status, (httpx.HTTPError,), send)

    def _deliver(self, channel: str, order: Order, order_status: OrderStatus, errors: tuple, send) -> bool:
        """
        Run ``send`` with bounded retries and exponential backoff.

        A provider that answered with a 4xx rejected the message itself, so
        that is not retried. The last failure is logged and swallowed.
        """
        context = {"order_id": order.id, "status": order_status.value, "channel": channel}
        attempts = max(1, self.config.NOTIFICATION_SEND_ATTEMPTS)
        for attempt in range(1, attempts + 1):
            try:
                send()
                return True
            except errors as e:
                rejected = isinstance(e, httpx.HTTPStatusError) and e.response.status_code < 500
                if rejected or attempt == attempts:
                    logger.error(f"Order {channel} failed: {str(e)}",
                                 extra={**context, "attempts": attempt, "error_type": type(e).__name__})
                    return False
                delay = self.config.NOTIFICATION_RETRY_BACKOFF_SECONDS * (2 ** (attempt - 1))
                logger.warning(f"Order {channel} failed, retrying",
                               extra={**context, "attempt": attempt, "retry_in_seconds": delay})
                time.sleep(delay)
        return False


class BackgroundNotifier:
    """Schedules dispatch on the request's BackgroundTasks, so it runs after the response."""

    def __init__(self, bg: BackgroundTasks, dispatcher: NotificationDispatcher | None = None):
        self.bg = bg
        self.dispatcher = dispatcher or NotificationDispatcher()

    def notify(self, order_id: str, order_status: OrderStatus):
        self.bg.add_task(self.dispatcher.dispatch, order_id, order_status)
