"""
Logging utility functions and helpers.
"""

import logging
from typing import Any, Dict, Optional


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a module.

    Usage:
        from utils.logger import get_logger
        logger = get_logger(__name__)
    """
    return logging.getLogger(name)


SENSITIVE_FIELDS = {
    'password', 'passkey', 'token', 'secret', 'api_key', 'apikey', 'authorization',
    'consumer_key', 'client_id', 'card_number', 'cvv', 'verif-hash'
}


def sanitize_log_data(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Remove credentials from a payload before it is logged.

    Provider requests and responses are logged for reconciliation, but they
    carry OAuth tokens, the STK push password and API keys.

    Tokens keep their first 8 characters so a log line can still be matched
    against a provider's dashboard; everything else sensitive is redacted.
    Nested dicts and lists of dicts are walked recursively.
    """
    sanitized = data.copy()

    for key, value in sanitized.items():
        lowered = key.lower()
        if any(sensitive in lowered for sensitive in SENSITIVE_FIELDS):
            if isinstance(value, str):
                if 'token' in lowered and len(value) > 8:
                    sanitized[key] = f"{value[:8]}..."
                else:
                    sanitized[key] = "***REDACTED***"

        elif isinstance(value, dict):
            sanitized[key] = sanitize_log_data(value)

        elif isinstance(value, list):
            sanitized[key] = [sanitize_log_data(v) if isinstance(v, dict) else v for v in value]

    return sanitized


def log_gateway_call(
    logger: logging.Logger,
    gateway: str,
    operation: str,
    status_code: int,
    duration_ms: float,
    external_reference: Optional[str] = None,
    extra: Optional[Dict[str, Any]] = None
):
    """
    Log one HTTP exchange with a payment provider in a structured format.

    Usage:
        log_gateway_call(logger, "mpesa", "stk_push", 200, 312.4, external_reference="ws_CO_...")
    """
    log_data = {
        "gateway": gateway,
        "operation": operation,
        "status_code": status_code,
        "duration_ms": round(duration_ms, 2),
    }

    if external_reference:
        log_data["external_reference"] = external_reference

    if extra:
        log_data.update(sanitize_log_data(extra))

    if status_code >= 500:
        logger.error(f"{gateway} {operation} - {status_code}", extra=log_data)
    elif status_code >= 400:
        logger.warning(f"{gateway} {operation} - {status_code}", extra=log_data)
    else:
        logger.info(f"{gateway} {operation} - {status_code}", extra=log_data)
