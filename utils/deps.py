from core.database import SessionLocal
from typing import Annotated
from fastapi import BackgroundTasks, Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session
from jose import JWTError, jwt
from starlette import status
from core.config import settings
import httpx
from services.notification_service import BackgroundNotifier

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

db_dependency = Annotated[Session, Depends(get_db)]


def get_http_client():
    """One outbound client per request, shared by every gateway call in it."""
    with httpx.Client(timeout=settings.GATEWAY_TIMEOUT_SECONDS) as client:
        yield client

http_dependency = Annotated[httpx.Client, Depends(get_http_client)]


def decode_access_token(token: str) -> dict:
    options = {"verify_aud": settings.JWT_AUDIENCE is not None}
    return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM],
                      audience=settings.JWT_AUDIENCE, options=options)


def get_current_user(token: Annotated[str, Depends(OAuth2PasswordBearer(tokenUrl="auth/token"))]):
    """
    Identity from the auth platform's access token.

    The role lives either at the top level or under ``app_metadata`` depending
    on how the platform was configured; both are honoured.
    """
    try:
        payload = decode_access_token(token)
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="Could not validate credentials.")

    user_id: str = payload.get("sub")
    if user_id is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED,
                            detail="Could not validate credentials.")

    app_metadata = payload.get("app_metadata") or {}
    user_metadata = payload.get("user_metadata") or {}
    role = app_metadata.get("role") or payload.get("role")
    if role in (None, "authenticated", "anon"):
        # Platform default roles, not application roles
        role = "customer"

    return {
        "user_id": str(user_id),
        "email": payload.get("email"),
        "phone_number": payload.get("phone") or user_metadata.get("phone"),
        "full_name": user_metadata.get("full_name"),
        "user_role": role,
    }


user_dependency = Annotated[dict, Depends(get_current_user)]


def require_admin(user: user_dependency):
    if user.get("user_role") != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN,
                            detail="Admin privileges required.")
    return user


admin_dependency = Annotated[dict, Depends(require_admin)]


def get_notifier(bg: BackgroundTasks):
    """Order notifications run after the response has been sent."""
    return BackgroundNotifier(bg)

notifier_dependency = Annotated[BackgroundNotifier, Depends(get_notifier)]
