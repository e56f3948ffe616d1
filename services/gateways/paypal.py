from decimal import Decimal

from core.exceptions import GatewayUnavailable, InvalidRequest
from services.gateways.base import (GatewayAdapter, InitiateResult, Outcome, OutcomeStatus,
                                    CallbackHint, Customer, to_decimal)
from utils.logger import get_logger

logger = get_logger(__name__)

SUPPORTED_CURRENCIES = {"USD", "EUR"}


class PaypalAdapter(GatewayAdapter):
    """
    PayPal Orders v2 with CAPTURE intent.

    The buyer approves on paypal.com and comes back to the storefront.
    ``confirm`` captures an approved order, so the capture happens on our side
    regardless of what the return URL said.
    """
    name = "paypal"

    @property
    def base_url(self) -> str:
        return self.config.PAYPAL_BASE_URL.rstrip("/")

    def _access_token(self) -> str:
        self._require_credentials(self.config.PAYPAL_CLIENT_ID, self.config.PAYPAL_CLIENT_SECRET)
        response = self._request(
            "POST", f"{self.base_url}/v1/oauth2/token", "oauth",
            data={"grant_type": "client_credentials"},
            auth=(self.config.PAYPAL_CLIENT_ID, self.config.PAYPAL_CLIENT_SECRET),
        )
        if response.status_code != 200:
            raise GatewayUnavailable("Could not authenticate with PayPal", gateway=self.name)
        token = self._json(response, "oauth").get("access_token")
        if not token:
            raise GatewayUnavailable("Could not authenticate with PayPal", gateway=self.name)
        return token

    def initiate(self, order, amount: Decimal, currency: str, customer: Customer) -> InitiateResult:
        self._require_positive(amount)
        currency = (currency or "").upper()
        if currency not in SUPPORTED_CURRENCIES:
            raise InvalidRequest(f"PayPal does not accept {currency or 'this currency'}; use USD or EUR")

        token = self._access_token()
        frontend = self.config.FRONTEND_BASE_URL.rstrip("/")
        body = {
            "intent": "CAPTURE",
            "purchase_units": [{
                "reference_id": order.id,
                "custom_id": order.id,
                "description": f"Pharmacy order {order.id}"[:127],
                "amount": {"currency_code": currency, "value": f"{Decimal(amount):.2f}"},
            }],
            "application_context": {
                "return_url": f"{frontend}/payment-success",
                "cancel_url": f"{frontend}/checkout",
                "shipping_preference": "NO_SHIPPING",
                "user_action": "PAY_NOW",
            },
        }
        response = self._request(
            "POST", f"{self.base_url}/v2/checkout/orders", "create_order",
            json=body, headers={"Authorization": f"Bearer {token}"},
        )
        data = self._json(response, "create_order")

        if response.status_code in (401, 403):
            raise GatewayUnavailable("Could not authenticate with PayPal", gateway=self.name)
        if response.status_code >= 400:
            raise InvalidRequest(data.get("message") or "PayPal rejected the payment request")

        approve_url = next((link.get("href") for link in data.get("links", []) if link.get("rel") in ("approve", "payer-action")), None)
        if not data.get("id") or not approve_url:
            raise GatewayUnavailable("PayPal returned an incomplete response", gateway=self.name)

        return InitiateResult(external_reference=data["id"], redirect_url=approve_url, raw=data)

    def _get_order(self, order_id: str, token: str) -> dict:
        response = self._request(
            "GET", f"{self.base_url}/v2/checkout/orders/{order_id}", "get_order",
            external_reference=order_id, headers={"Authorization": f"Bearer {token}"},
        )
        if response.status_code == 404:
            raise InvalidRequest("Unknown PayPal order")
        if response.status_code >= 400:
            raise GatewayUnavailable(gateway=self.name, operation="get_order")
        return self._json(response, "get_order")

    def _capture(self, order_id: str, token: str) -> dict:
        response = self._request(
            "POST", f"{self.base_url}/v2/checkout/orders/{order_id}/capture", "capture",
            external_reference=order_id, json={},
            headers={"Authorization": f"Bearer {token}", "PayPal-Request-Id": f"capture-{order_id}"},
        )
        if response.status_code == 422:
            # Already captured by a concurrent confirm, read the order instead
            return self._get_order(order_id, token)
        if response.status_code >= 400:
            raise GatewayUnavailable(gateway=self.name, operation="capture")
        return self._json(response, "capture")

    def confirm(self, external_reference: str) -> Outcome:
        token = self._access_token()
        data = self._get_order(external_reference, token)
        if data.get("status") == "APPROVED":
            data = self._capture(external_reference, token)

        status = data.get("status")
        unit = (data.get("purchase_units") or [{}])[0]
        captures = (unit.get("payments") or {}).get("captures") or []
        capture = captures[0] if captures else {}
        money = capture.get("amount") or unit.get("amount") or {}
        amount = to_decimal(money.get("value"))
        currency = money.get("currency_code")

        if status == "COMPLETED":
            if capture and capture.get("status") not in (None, "COMPLETED", "PENDING"):
                return Outcome(OutcomeStatus.FAILURE, external_reference, amount=amount, currency=currency,
                               reason=f"PayPal capture {capture.get('status', '').lower()}", raw=data)
            if capture.get("status") == "PENDING":
                return Outcome(OutcomeStatus.PENDING, external_reference, raw=data)
            return Outcome(OutcomeStatus.SUCCESS, external_reference, amount=amount, currency=currency,
                           receipt=capture.get("id"), raw=data)
        if status == "VOIDED":
            return Outcome(OutcomeStatus.FAILURE, external_reference, amount=amount, currency=currency,
                           reason="PayPal order was voided", raw=data)
        return Outcome(OutcomeStatus.PENDING, external_reference, raw=data)

    def parse_callback(self, payload: dict) -> CallbackHint:
        resource = payload.get("resource") or {}
        event_type = payload.get("event_type") or ""
        if event_type.startswith("PAYMENT.CAPTURE"):
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            reference = related.get("order_id")
        else:
            reference = resource.get("id") or payload.get("token") or payload.get("order_id")
        if not reference:
            raise InvalidRequest("Missing PayPal order id")
        return CallbackHint(external_reference=reference, payload={"event_type": event_type or None})
