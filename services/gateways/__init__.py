"""
Payment provider adapters and the lookup from payment method to adapter.
"""
import httpx

from core.config import Settings, settings
from core.exceptions import InvalidRequest
from models.orders import PaymentMethod
from services.gateways.base import (GatewayAdapter, InitiateResult, Outcome, OutcomeStatus,
                                    CallbackHint, Customer)
from services.gateways.flutterwave import FlutterwaveAdapter
from services.gateways.mpesa import MpesaAdapter
from services.gateways.paypal import PaypalAdapter
from services.gateways.pesapal import PesapalAdapter

GATEWAY_FOR_METHOD = {
    PaymentMethod.MPESA: "mpesa",
    PaymentMethod.PESAPAL: "pesapal",
    PaymentMethod.PAYPAL: "paypal",
    PaymentMethod.FLUTTERWAVE: "flutterwave",
    PaymentMethod.CARD: "flutterwave",
}

_ADAPTERS = {
    "mpesa": MpesaAdapter,
    "pesapal": PesapalAdapter,
    "paypal": PaypalAdapter,
    "flutterwave": FlutterwaveAdapter,
}


def gateway_for_method(method: PaymentMethod | str) -> str:
    try:
        return GATEWAY_FOR_METHOD[PaymentMethod(method)]
    except ValueError:
        raise InvalidRequest(f"Unsupported payment method: {method}")


def get_gateway_adapter(method: PaymentMethod | str, http: httpx.Client,
                        config: Settings = settings) -> GatewayAdapter:
    """Adapter that starts a payment for ``method``."""
    gateway = gateway_for_method(method)
    if PaymentMethod(method) == PaymentMethod.CARD:
        return FlutterwaveAdapter(config, http, card_only=True)
    return _ADAPTERS[gateway](config, http)


def get_adapter_for_gateway(gateway: str, http: httpx.Client, config: Settings = settings) -> GatewayAdapter:
    """Adapter that confirms a payment already recorded against ``gateway``."""
    try:
        return _ADAPTERS[gateway](config, http)
    except KeyError:
        raise InvalidRequest(f"Unknown payment gateway: {gateway}")


__all__ = [
    "GatewayAdapter", "InitiateResult", "Outcome", "OutcomeStatus", "CallbackHint", "Customer",
    "MpesaAdapter", "PesapalAdapter", "PaypalAdapter", "FlutterwaveAdapter",
    "GATEWAY_FOR_METHOD", "gateway_for_method", "get_gateway_adapter", "get_adapter_for_gateway",
]
