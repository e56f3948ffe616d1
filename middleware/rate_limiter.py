from slowapi import Limiter
from slowapi.util import get_remote_address
from fastapi import Request
from jose import JWTError
from core.config import settings
from utils.deps import decode_access_token

def get_user_id(request: Request):
    """Rate limit per signed-in customer, per client address otherwise."""
    token = request.headers.get("Authorization")
    if token:
        try:
            payload = decode_access_token(token.replace("Bearer ", ""))
            user_id = payload.get("sub")
            if user_id:
                return str(user_id)
        except JWTError:
            pass

    return get_remote_address(request)

limiter = Limiter(
    key_func=get_user_id,
    default_limits=["200/hour"],
    enabled=settings.ENV != "testing"
)
