"""
Bounded wait for a mobile-money payment to settle.

Polling only reads. The webhook (or a customer verify) is the only path
that settles a payment, so a poll that runs out of attempts reports a
timeout and leaves the order exactly as it was.
"""
import asyncio
import enum
from dataclasses import dataclass

from sqlalchemy.orm import Session

from models.payments import Payment, PaymentStatus
from utils.logger import get_logger

logger = get_logger(__name__)


class PollResult(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class PollOutcome:
    result: PollResult
    attempts: int
    payment: Payment


async def await_payment(db: Session, payment: Payment, max_attempts: int, interval_seconds: float,
                        sleep=asyncio.sleep) -> PollOutcome:
    payment_id = payment.id
    for attempt in range(1, max_attempts + 1):
        # Other requests commit the settlement, drop what this session cached
        db.expire_all()
        payment = db.get(Payment, payment_id)

        if payment.is_successful:
            return PollOutcome(PollResult.COMPLETED, attempt, payment)
        if payment.status == PaymentStatus.FAILED:
            return PollOutcome(PollResult.FAILED, attempt, payment)
        if attempt < max_attempts:
            await sleep(interval_seconds)

    logger.info("Payment verification timed out",
                extra={"payment_id": payment_id, "order_id": payment.order_id, "attempts": max_attempts})
    return PollOutcome(PollResult.TIMEOUT, max_attempts, payment)
