"""
M-PESA STK push through Safaricom Daraja.

The customer confirms on their phone, so ``initiate`` only gets a
CheckoutRequestID back. The outcome arrives on the callback URL; it is
re-checked with the STK push query API before anything is recorded.
"""
import base64
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP

from core.exceptions import GatewayUnavailable, InvalidRequest
from services.gateways.base import (GatewayAdapter, InitiateResult, Outcome, OutcomeStatus,
                                    CallbackHint, Customer, to_decimal)
from utils.logger import get_logger
from utils.phone import normalize_kenyan_msisdn

logger = get_logger(__name__)

EAT = timezone(timedelta(hours=3))

# Query answers while the customer has not entered the PIN yet
STILL_PROCESSING_ERROR_CODES = {"500.001.1001"}
STILL_PROCESSING_RESULT_CODES = {"4999"}

RESULT_DESCRIPTIONS = {
    "1": "Insufficient M-PESA balance",
    "1032": "Request cancelled by user",
    "1037": "Phone could not be reached",
    "2001": "Wrong M-PESA PIN",
}


def stk_timestamp(now: datetime | None = None) -> str:
    """Daraja wants local Nairobi time as YYYYMMDDHHMMSS."""
    return (now or datetime.now(EAT)).astimezone(EAT).strftime("%Y%m%d%H%M%S")


def stk_password(shortcode: str, passkey: str, timestamp: str) -> str:
    return base64.b64encode(f"{shortcode}{passkey}{timestamp}".encode()).decode()


class MpesaAdapter(GatewayAdapter):
    name = "mpesa"

    @property
    def base_url(self) -> str:
        return self.config.MPESA_BASE_URL.rstrip("/")

    def _access_token(self) -> str:
        self._require_credentials(self.config.MPESA_CONSUMER_KEY, self.config.MPESA_CONSUMER_SECRET,
                                  self.config.MPESA_PASSKEY)
        response = self._request(
            "GET", f"{self.base_url}/oauth/v1/generate", "oauth",
            params={"grant_type": "client_credentials"},
            auth=(self.config.MPESA_CONSUMER_KEY, self.config.MPESA_CONSUMER_SECRET),
        )
        if response.status_code != 200:
            raise GatewayUnavailable("Could not authenticate with M-PESA", gateway=self.name)

        token = self._json(response, "oauth").get("access_token")
        if not token:
            raise GatewayUnavailable("Could not authenticate with M-PESA", gateway=self.name)
        return token

    def _credentials(self) -> dict:
        timestamp = stk_timestamp()
        return {
            "BusinessShortCode": self.config.MPESA_SHORTCODE,
            "Password": stk_password(self.config.MPESA_SHORTCODE, self.config.MPESA_PASSKEY, timestamp),
            "Timestamp": timestamp,
        }

    def initiate(self, order, amount: Decimal, currency: str, customer: Customer) -> InitiateResult:
        if (currency or "").upper() != "KES":
            raise InvalidRequest("M-PESA payments must be in KES")

        whole_shillings = int(Decimal(amount).to_integral_value(rounding=ROUND_HALF_UP))
        if whole_shillings < 1:
            raise InvalidRequest("Payment amount must be at least 1 KES")

        try:
            msisdn = normalize_kenyan_msisdn(customer.phone_number or order.phone_number or "")
        except ValueError as e:
            raise InvalidRequest(str(e))

        token = self._access_token()
        body = {
            **self._credentials(),
            "TransactionType": "CustomerPayBillOnline",
            "Amount": whole_shillings,
            "PartyA": msisdn,
            "PartyB": self.config.MPESA_SHORTCODE,
            "PhoneNumber": msisdn,
            "CallBackURL": f"{self.config.PUBLIC_BASE_URL.rstrip('/')}/payments/mpesa/callback",
            "AccountReference": order.id.replace("-", "")[:12],
            "TransactionDesc": "Order payment",
        }

        response = self._request(
            "POST", f"{self.base_url}/mpesa/stkpush/v1/processrequest", "stk_push",
            json=body, headers={"Authorization": f"Bearer {token}"},
        )
        data = self._json(response, "stk_push")

        if response.status_code in (401, 403):
            raise GatewayUnavailable("Could not authenticate with M-PESA", gateway=self.name)
        if response.status_code >= 400:
            raise InvalidRequest(data.get("errorMessage") or "M-PESA rejected the payment request")
        if str(data.get("ResponseCode")) != "0" or not data.get("CheckoutRequestID"):
            logger.warning("STK push was not accepted",
                           extra={"gateway": self.name, "order_id": order.id,
                                  "response_description": data.get("ResponseDescription")})
            raise GatewayUnavailable(data.get("ResponseDescription") or "M-PESA did not accept the request",
                                     gateway=self.name)

        return InitiateResult(
            external_reference=data["CheckoutRequestID"],
            prompt_message=data.get("CustomerMessage") or "Check your phone and enter your M-PESA PIN",
            raw=data,
        )

    def confirm(self, external_reference: str) -> Outcome:
        token = self._access_token()
        response = self._request(
            "POST", f"{self.base_url}/mpesa/stkpushquery/v1/query", "stk_query",
            external_reference=external_reference, raise_on_server_error=False,
            json={**self._credentials(), "CheckoutRequestID": external_reference},
            headers={"Authorization": f"Bearer {token}"},
        )
        data = self._json(response, "stk_query")

        if data.get("errorCode") in STILL_PROCESSING_ERROR_CODES:
            return Outcome(OutcomeStatus.PENDING, external_reference, raw=data)
        if response.status_code >= 500 or response.status_code in (401, 403):
            raise GatewayUnavailable(gateway=self.name, operation="stk_query")
        if response.status_code >= 400 or "ResultCode" not in data:
            raise InvalidRequest(data.get("errorMessage") or "Unknown M-PESA checkout request")

        result_code = str(data.get("ResultCode"))
        if result_code == "0":
            return Outcome(OutcomeStatus.SUCCESS, external_reference, currency="KES", raw=data)
        if result_code in STILL_PROCESSING_RESULT_CODES:
            return Outcome(OutcomeStatus.PENDING, external_reference, raw=data)
        return Outcome(
            OutcomeStatus.FAILURE, external_reference,
            reason=RESULT_DESCRIPTIONS.get(result_code) or data.get("ResultDesc") or "M-PESA payment failed",
            raw=data,
        )

    def parse_callback(self, payload: dict) -> CallbackHint:
        callback = (payload.get("Body") or {}).get("stkCallback") or {}
        reference = callback.get("CheckoutRequestID")
        if not reference:
            raise InvalidRequest("Missing CheckoutRequestID in M-PESA callback")

        items = (callback.get("CallbackMetadata") or {}).get("Item") or []
        values = {item.get("Name"): item.get("Value") for item in items if isinstance(item, dict)}
        receipt = values.get("MpesaReceiptNumber")

        return CallbackHint(
            external_reference=reference,
            receipt=str(receipt) if receipt else None,
            payload={
                "result_code": callback.get("ResultCode"),
                "result_desc": callback.get("ResultDesc"),
                "amount": str(to_decimal(values.get("Amount"))) if values.get("Amount") is not None else None,
                "phone_number": str(values["PhoneNumber"]) if values.get("PhoneNumber") else None,
                "callback": payload,
            },
        )
