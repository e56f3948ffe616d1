import hmac
import secrets
from decimal import Decimal

from core.exceptions import GatewayUnavailable, InvalidRequest
from services.gateways.base import (GatewayAdapter, InitiateResult, Outcome, OutcomeStatus,
                                    CallbackHint, Customer, to_decimal)
from utils.logger import get_logger

logger = get_logger(__name__)


class FlutterwaveAdapter(GatewayAdapter):
    """
    Flutterwave Standard (hosted payment link), v3 API.

    Also serves the ``card`` payment method with the hosted page restricted
    to card payments. ``tx_ref`` is generated here, so it is known before
    the provider is called.
    """
    name = "flutterwave"

    def __init__(self, config, http, card_only: bool = False):
        super().__init__(config, http)
        self.card_only = card_only

    @property
    def base_url(self) -> str:
        return self.config.FLUTTERWAVE_BASE_URL.rstrip("/")

    def _headers(self) -> dict:
        self._require_credentials(self.config.FLUTTERWAVE_SECRET_KEY)
        return {"Authorization": f"Bearer {self.config.FLUTTERWAVE_SECRET_KEY}"}

    def verify_webhook_signature(self, signature: str | None) -> bool:
        expected = self.config.FLUTTERWAVE_WEBHOOK_HASH
        if not expected or not signature:
            return False
        return hmac.compare_digest(expected.encode(), signature.encode())

    def initiate(self, order, amount: Decimal, currency: str, customer: Customer) -> InitiateResult:
        self._require_positive(amount)
        if not customer.email:
            raise InvalidRequest("An email address is required for card payments")

        tx_ref = f"{order.id}-{secrets.token_hex(4)}"
        body = {
            "tx_ref": tx_ref,
            "amount": str(Decimal(amount).quantize(Decimal("0.01"))),
            "currency": (currency or "KES").upper(),
            "redirect_url": f"{self.config.FRONTEND_BASE_URL.rstrip('/')}/payment-success",
            "customer": {
                "email": customer.email,
                "phonenumber": customer.phone_number,
                "name": customer.full_name or customer.first_name,
            },
            "customizations": {
                "title": "Pharmacy order",
                "description": f"Payment for order {order.id}",
            },
            "meta": {"order_id": order.id},
        }
        if self.card_only:
            body["payment_options"] = "card"

        response = self._request("POST", f"{self.base_url}/payments", "create_payment",
                                 json=body, headers=self._headers())
        data = self._json(response, "create_payment")

        if response.status_code in (401, 403):
            raise GatewayUnavailable("Could not authenticate with Flutterwave", gateway=self.name)
        if response.status_code >= 400 or data.get("status") != "success":
            raise InvalidRequest(data.get("message") or "Flutterwave rejected the payment request")

        link = (data.get("data") or {}).get("link")
        if not link:
            raise GatewayUnavailable("Flutterwave returned an incomplete response", gateway=self.name)
        return InitiateResult(external_reference=tx_ref, redirect_url=link, raw=data)

    def confirm(self, external_reference: str) -> Outcome:
        response = self._request(
            "GET", f"{self.base_url}/transactions/verify_by_reference", "verify",
            external_reference=external_reference,
            params={"tx_ref": external_reference}, headers=self._headers(),
        )
        data = self._json(response, "verify")

        if response.status_code in (401, 403):
            raise GatewayUnavailable("Could not authenticate with Flutterwave", gateway=self.name)
        if response.status_code == 404 or (response.status_code == 400 and data.get("status") == "error"):
            # No charge attempt yet for this tx_ref
            return Outcome(OutcomeStatus.PENDING, external_reference, raw=data)
        if response.status_code >= 400:
            raise GatewayUnavailable(gateway=self.name, operation="verify")

        transaction = data.get("data") or {}
        tx_status = (transaction.get("status") or "").lower()
        amount = to_decimal(transaction.get("amount"))
        currency = transaction.get("currency")

        if data.get("status") == "success" and tx_status == "successful":
            receipt = transaction.get("flw_ref") or (str(transaction["id"]) if transaction.get("id") else None)
            return Outcome(OutcomeStatus.SUCCESS, external_reference, amount=amount, currency=currency,
                           receipt=receipt, raw=data)
        if tx_status == "failed":
            return Outcome(OutcomeStatus.FAILURE, external_reference, amount=amount, currency=currency,
                           reason=transaction.get("processor_response") or "Card payment failed", raw=data)
        return Outcome(OutcomeStatus.PENDING, external_reference, raw=data)

    def parse_callback(self, payload: dict) -> CallbackHint:
        data = payload.get("data") or payload
        reference = data.get("tx_ref") or data.get("txRef") or payload.get("tx_ref")
        if not reference:
            raise InvalidRequest("Missing tx_ref in Flutterwave notification")
        return CallbackHint(
            external_reference=reference,
            payload={"event": payload.get("event") or payload.get("event.type"),
                     "transaction_id": data.get("id") or payload.get("transaction_id")},
        )
