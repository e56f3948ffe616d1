"""
Request middleware for the orders API: request id stamping and the
per-customer rate limiter used by checkout, verify and prescription upload.
"""

from middleware.request_id import RequestIDMiddleware
from middleware.rate_limiter import limiter, get_user_id

__all__ = ["RequestIDMiddleware", "limiter", "get_user_id"]
