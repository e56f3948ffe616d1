"""
Error taxonomy for the checkout / payment reconciliation flow.

Each error carries the HTTP status it maps to and a message that is safe to
show to the caller. Internal detail goes to the logs, never to the response.

A duplicate webhook delivery is not an error: the state machine reports it
through TransitionResult.
"""
from starlette import status


class PaymentFlowError(Exception):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Request could not be processed"

    def __init__(self, detail: str | None = None, **context):
        self.detail = detail or self.default_detail
        self.context = context
        super().__init__(self.detail)


class InvalidRequest(PaymentFlowError):
    """Bad input. Never retried."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Invalid request"


class NotFound(PaymentFlowError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found"


class Forbidden(PaymentFlowError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "Access denied"


class GatewayUnavailable(PaymentFlowError):
    """Provider auth/handshake or transport failure. Transient, retry with backoff."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Payment provider is unavailable. Please try again."


class UnknownPayment(PaymentFlowError):
    """Callback references no payment we know of. Logged for investigation."""
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Payment not found"


class GuardViolation(PaymentFlowError):
    """Transition rejected, the order stays where it is."""
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Order cannot move to the requested status"


class PersistenceFailure(PaymentFlowError):
    """Transactional write failed. The whole apply must be retried."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "We could not save this update. Please retry."
