import secrets
from decimal import Decimal

from core.exceptions import GatewayUnavailable, InvalidRequest
from services.gateways.base import (GatewayAdapter, InitiateResult, Outcome, OutcomeStatus,
                                    CallbackHint, Customer, to_decimal)
from utils.logger import get_logger

logger = get_logger(__name__)

# GetTransactionStatus status_code values
PESAPAL_INVALID = 0
PESAPAL_COMPLETED = 1
PESAPAL_FAILED = 2
PESAPAL_REVERSED = 3


class PesapalAdapter(GatewayAdapter):
    """Pesapal API v3: hosted redirect checkout, outcome through IPN."""
    name = "pesapal"

    @property
    def base_url(self) -> str:
        return self.config.PESAPAL_BASE_URL.rstrip("/")

    def _access_token(self) -> str:
        self._require_credentials(self.config.PESAPAL_CONSUMER_KEY, self.config.PESAPAL_CONSUMER_SECRET)
        response = self._request(
            "POST", f"{self.base_url}/api/Auth/RequestToken", "auth",
            json={
                "consumer_key": self.config.PESAPAL_CONSUMER_KEY,
                "consumer_secret": self.config.PESAPAL_CONSUMER_SECRET,
            },
            headers={"Accept": "application/json"},
        )
        data = self._json(response, "auth")
        token = data.get("token")
        if response.status_code != 200 or data.get("error") or not token:
            raise GatewayUnavailable("Could not authenticate with Pesapal", gateway=self.name)
        return token

    def initiate(self, order, amount: Decimal, currency: str, customer: Customer) -> InitiateResult:
        self._require_positive(amount)
        if not (customer.email or customer.phone_number):
            raise InvalidRequest("An email address or phone number is required for Pesapal")
        self._require_credentials(self.config.PESAPAL_IPN_ID)

        token = self._access_token()
        # Merchant reference must be unique per attempt, an order can be retried
        merchant_reference = f"{order.id}-{secrets.token_hex(4)}"
        body = {
            "id": merchant_reference,
            "currency": currency.upper(),
            "amount": float(amount),
            "description": f"Pharmacy order {order.id}"[:100],
            "callback_url": f"{self.config.FRONTEND_BASE_URL.rstrip('/')}/pesapal-callback",
            "notification_id": self.config.PESAPAL_IPN_ID,
            "billing_address": {
                "email_address": customer.email,
                "phone_number": customer.phone_number,
                "country_code": "KE",
                "first_name": customer.first_name,
                "last_name": customer.last_name,
            },
        }
        response = self._request(
            "POST", f"{self.base_url}/api/Transactions/SubmitOrderRequest", "submit_order",
            json=body, headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
        )
        data = self._json(response, "submit_order")

        if response.status_code in (401, 403):
            raise GatewayUnavailable("Could not authenticate with Pesapal", gateway=self.name)
        error = data.get("error")
        if response.status_code >= 400 or error:
            message = (error or {}).get("message") if isinstance(error, dict) else error
            raise InvalidRequest(message or "Pesapal rejected the payment request")
        if not data.get("order_tracking_id") or not data.get("redirect_url"):
            raise GatewayUnavailable("Pesapal returned an incomplete response", gateway=self.name)

        return InitiateResult(
            external_reference=data["order_tracking_id"],
            redirect_url=data["redirect_url"],
            raw={**data, "merchant_reference": data.get("merchant_reference") or merchant_reference},
        )

    def confirm(self, external_reference: str) -> Outcome:
        token = self._access_token()
        response = self._request(
            "GET", f"{self.base_url}/api/Transactions/GetTransactionStatus", "transaction_status",
            external_reference=external_reference,
            params={"orderTrackingId": external_reference},
            headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
        )
        data = self._json(response, "transaction_status")
        if response.status_code >= 400:
            raise InvalidRequest("Unknown Pesapal transaction")

        try:
            status_code = int(data.get("status_code"))
        except (TypeError, ValueError):
            status_code = PESAPAL_INVALID

        amount = to_decimal(data.get("amount"))
        currency = data.get("currency")
        if status_code == PESAPAL_COMPLETED:
            return Outcome(OutcomeStatus.SUCCESS, external_reference, amount=amount, currency=currency,
                           receipt=data.get("confirmation_code"), raw=data)
        if status_code in (PESAPAL_FAILED, PESAPAL_REVERSED):
            return Outcome(OutcomeStatus.FAILURE, external_reference, amount=amount, currency=currency,
                           reason=data.get("payment_status_description") or data.get("description")
                           or "Pesapal payment failed",
                           raw=data)
        return Outcome(OutcomeStatus.PENDING, external_reference, raw=data)

    def parse_callback(self, payload: dict) -> CallbackHint:
        reference = payload.get("OrderTrackingId") or payload.get("orderTrackingId")
        if not reference:
            raise InvalidRequest("Missing OrderTrackingId in Pesapal notification")
        return CallbackHint(
            external_reference=reference,
            payload={
                "merchant_reference": payload.get("OrderMerchantReference") or payload.get("orderMerchantReference"),
                "notification_type": payload.get("OrderNotificationType") or payload.get("orderNotificationType"),
            },
        )
