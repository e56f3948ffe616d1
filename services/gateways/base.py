"""
Common interface every payment provider adapter implements.

An adapter only talks to its provider. It never touches the database and
never changes order state: ``initiate`` opens a provider session and
``confirm`` asks the provider, server-to-server, what happened to it. What
to do with the answer is the state machine's job.
"""
import enum
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

import httpx

from core.config import Settings
from core.exceptions import GatewayUnavailable, InvalidRequest
from utils.logger import get_logger, log_gateway_call

logger = get_logger(__name__)


class OutcomeStatus(str, enum.Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    PENDING = "pending"


@dataclass
class Customer:
    email: Optional[str] = None
    phone_number: Optional[str] = None
    full_name: Optional[str] = None

    @property
    def first_name(self) -> str:
        if self.full_name:
            return self.full_name.split()[0]
        if self.email:
            return self.email.split("@")[0]
        return "Customer"

    @property
    def last_name(self) -> str:
        parts = (self.full_name or "").split()
        return " ".join(parts[1:]) if len(parts) > 1 else "Customer"


@dataclass
class InitiateResult:
    external_reference: str
    redirect_url: Optional[str] = None
    prompt_message: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class Outcome:
    status: OutcomeStatus
    external_reference: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    receipt: Optional[str] = None
    reason: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class CallbackHint:
    """What a webhook/IPN/redirect claims. Used to find the payment, never as proof."""
    external_reference: str
    receipt: Optional[str] = None
    payload: dict = field(default_factory=dict)


def to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


class GatewayAdapter(ABC):
    name: str = ""

    def __init__(self, config: Settings, http: httpx.Client):
        self.config = config
        self.http = http

    @abstractmethod
    def initiate(self, order, amount: Decimal, currency: str, customer: Customer) -> InitiateResult:
        """Start a provider session. Raises InvalidRequest or GatewayUnavailable."""

    @abstractmethod
    def confirm(self, external_reference: str) -> Outcome:
        """Authoritative status straight from the provider's API."""

    @abstractmethod
    def parse_callback(self, payload: dict) -> CallbackHint:
        """Pull the external reference out of a provider notification."""

    def _request(self, method: str, url: str, operation: str, *,
                 external_reference: Optional[str] = None,
                 raise_on_server_error: bool = True, **kwargs) -> httpx.Response:
        start = time.time()
        try:
            response = self.http.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error(
                f"{self.name} {operation} transport error: {str(e)}",
                extra={"gateway": self.name, "operation": operation,
                       "external_reference": external_reference, "error_type": type(e).__name__},
            )
            raise GatewayUnavailable(gateway=self.name, operation=operation) from e

        log_gateway_call(logger, self.name, operation, response.status_code,
                         (time.time() - start) * 1000, external_reference=external_reference)

        if raise_on_server_error and response.status_code >= 500:
            raise GatewayUnavailable(gateway=self.name, operation=operation)
        return response

    def _json(self, response: httpx.Response, operation: str) -> dict:
        try:
            data = response.json()
        except ValueError as e:
            logger.error(f"{self.name} {operation} returned a non-JSON body",
                         extra={"gateway": self.name, "status_code": response.status_code})
            raise GatewayUnavailable(gateway=self.name, operation=operation) from e
        return data if isinstance(data, dict) else {"data": data}

    def _require_credentials(self, *values: str):
        if not all(values):
            logger.error(f"{self.name} credentials are not configured", extra={"gateway": self.name})
            raise GatewayUnavailable(f"{self.name} payments are not configured", gateway=self.name)

    @staticmethod
    def _require_positive(amount: Decimal):
        if amount is None or amount <= 0:
            raise InvalidRequest("Payment amount must be greater than zero")
