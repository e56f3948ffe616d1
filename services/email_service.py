import smtplib
from email.mime.text import MIMEText
from email.mime.multipart import MIMEMultipart
from core.config import settings
from models.orders import OrderStatus
from utils.logger import get_logger

# Setup logger
logger = get_logger(__name__)

ORDER_EMAIL_SUBJECTS = {
    OrderStatus.CONFIRMED: "Your order is confirmed",
    OrderStatus.DELIVERED: "Your order has been delivered",
    OrderStatus.CANCELLED: "Your order was cancelled",
    OrderStatus.PAYMENT_FAILED: "Payment for your order was not completed",
}

ORDER_EMAIL_LINES = {
    OrderStatus.CONFIRMED: "We have received your payment and your order is being prepared.",
    OrderStatus.DELIVERED: "Your order has been delivered. Thank you for shopping with us.",
    OrderStatus.CANCELLED: "Your order has been cancelled. If you were charged, our team will contact you about a refund.",
    OrderStatus.PAYMENT_FAILED: "We could not complete your payment. No order will be dispatched. You can place the order again at any time.",
}


def render_order_email(order, order_status: OrderStatus, recipient_name: str | None = None) -> tuple[str, str]:
    """Subject and HTML body for an order status email."""
    subject = f"{ORDER_EMAIL_SUBJECTS[order_status]} - #{order.id[:8].upper()}"
    greeting = f"Hi {recipient_name}," if recipient_name else "Hello,"
    body = f"""
        <html>
        <body>
            <p>{greeting}</p>
            <h2>{ORDER_EMAIL_SUBJECTS[order_status]}</h2>
            <p>{ORDER_EMAIL_LINES[order_status]}</p>
            <table>
                <tr><td>Order</td><td>#{order.id[:8].upper()}</td></tr>
                <tr><td>Total</td><td>{order.currency} {order.total_amount:,.2f}</td></tr>
                <tr><td>Delivery address</td><td>{order.delivery_address}</td></tr>
            </table>
            <p><a href="{settings.FRONTEND_BASE_URL.rstrip('/')}/orders/{order.id}">View your order</a></p>
        </body>
        </html>
            """
    return subject, body


def send_email(to_email: str, subject: str, body: str):
    # Skip email sending in test environment
    if settings.ENV == "testing":
        logger.info(
            "[TEST MODE] Email skipped",
            extra={"recipient": to_email, "subject": subject}
        )
        return

    logger.debug(
        "Attempting to send email",
        extra={"recipient": to_email, "subject": subject}
    )

    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = settings.MAIL_FROM
    message["To"] = to_email
    message.attach(MIMEText(body, "html"))

    try:
        with smtplib.SMTP(settings.MAIL_SERVER, settings.MAIL_PORT) as server:
            server.starttls()
            if settings.MAIL_USERNAME:
                server.login(settings.MAIL_USERNAME, settings.MAIL_PASSWORD)
            server.sendmail(settings.MAIL_FROM, to_email, message.as_string())

        logger.info(
            "Email sent successfully",
            extra={"recipient": to_email, "subject": subject}
        )

    except smtplib.SMTPException as e:
        logger.error(
            f"Failed to send email: {str(e)}",
            extra={
                "recipient": to_email,
                "subject": subject,
                "error": str(e),
                "error_type": type(e).__name__
            },
            exc_info=True
        )
        raise
