import os

# Settings are read at import time, so the test environment goes in first
os.environ["ENV"] = "testing"
os.environ["DATABASE_URL"] = "sqlite:///./test.db"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["LOG_DIR"] = "logs"
os.environ["GATEWAY_RETRY_BACKOFF_SECONDS"] = "0"
os.environ["NOTIFICATION_RETRY_BACKOFF_SECONDS"] = "0"
os.environ["MPESA_CONSUMER_KEY"] = "mpesa-key"
os.environ["MPESA_CONSUMER_SECRET"] = "mpesa-secret"
os.environ["MPESA_PASSKEY"] = "mpesa-passkey"
os.environ["PESAPAL_CONSUMER_KEY"] = "pesapal-key"
os.environ["PESAPAL_CONSUMER_SECRET"] = "pesapal-secret"
os.environ["PESAPAL_IPN_ID"] = "ipn-123"
os.environ["PAYPAL_CLIENT_ID"] = "paypal-client"
os.environ["PAYPAL_CLIENT_SECRET"] = "paypal-secret"
os.environ["FLUTTERWAVE_SECRET_KEY"] = "FLWSECK_TEST-abc"
os.environ["FLUTTERWAVE_WEBHOOK_HASH"] = "flw-hash"

from decimal import Decimal
from typing import Generator

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy.orm import Session

from main import app
from core.config import settings
from core.database import Base, SessionLocal, engine
from models import Order, OrderStatus, OrderTracking, Payment, PaymentMethod, PaymentStatus, User
from utils.deps import get_db, get_http_client, get_notifier


class RecordingNotifier:
    """Stands in for the background notifier; remembers what would have been sent."""

    def __init__(self):
        self.sent = []

    def notify(self, order_id, order_status):
        self.sent.append((order_id, order_status))


class FakeProvider:
    """
    httpx.MockTransport handler keyed by (method, path).

    Each route holds a list of responses; they are served in order and the
    last one repeats. A response is a ``(status, json)`` tuple or a callable
    taking the request.
    """

    def __init__(self):
        self.routes = {}
        self.calls = []

    def on(self, method: str, path: str, *responses):
        self.routes[(method.upper(), path)] = list(responses)
        return self

    def calls_to(self, path: str):
        return [request for request in self.calls if request.url.path == path]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": f"no fake for {request.method} {request.url.path}"})
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(item):
            return item(request)
        status_code, body = item
        return httpx.Response(status_code, json=body)


def make_token(sub: str, role: str | None = None, email: str | None = None, phone: str | None = None,
               full_name: str | None = None) -> str:
    claims = {"sub": sub, "role": "authenticated", "email": email,
              "user_metadata": {"full_name": full_name, "phone": phone}}
    if role:
        claims["app_metadata"] = {"role": role}
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


@pytest.fixture
def session() -> Generator[Session, None, None]:
    """
    Creates a fresh, empty database for each test.
    """
    Base.metadata.create_all(bind=engine)

    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def http(provider):
    with httpx.Client(transport=httpx.MockTransport(provider)) as client:
        yield client


@pytest.fixture
async def client(session: Session, http: httpx.Client, notifier: RecordingNotifier):
    """
    Async HTTP client against the app, with the test database, faked
    gateways and a recording notifier.
    """
    def override_get_db():
        yield session

    def override_get_http_client():
        yield http

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_http_client] = override_get_http_client
    app.dependency_overrides[get_notifier] = lambda: notifier

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def customer(session) -> User:
    user = User(id="user-1", email="wanjiru@example.com", full_name="Wanjiru Kamau",
                phone_number="+254712345678", role="customer")
    session.add(user)
    session.commit()
    return user


@pytest.fixture
def customer_headers(customer):
    token = make_token(customer.id, email=customer.email, phone=customer.phone_number,
                       full_name=customer.full_name)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def other_headers():
    return {"Authorization": f"Bearer {make_token('user-2', email='otieno@example.com')}"}


@pytest.fixture
def admin_headers(session):
    session.add(User(id="admin-1", email="pharmacist@example.com", role="admin"))
    session.commit()
    return {"Authorization": f"Bearer {make_token('admin-1', role='admin', email='pharmacist@example.com')}"}


@pytest.fixture
def make_order(session, customer):
    """Pending order, with a pending payment when ``gateway`` is given."""
    def _make(total="1500.00", requires_prescription=False, prescription_approved=False,
              method=PaymentMethod.MPESA, gateway="mpesa", reference="ws_CO_001", currency="KES",
              order_status=OrderStatus.PENDING, with_payment=True):
        order = Order(
            user_id=customer.id,
            total_amount=Decimal(total),
            delivery_fee=Decimal("0"),
            currency=currency,
            delivery_address="Kilimani, Argwings Kodhek Rd",
            county="Nairobi",
            phone_number="+254712345678",
            payment_method=method,
            status=order_status,
            requires_prescription=requires_prescription,
            prescription_approved=prescription_approved,
        )
        session.add(order)
        session.flush()
        session.add(OrderTracking(order_id=order.id, status=order_status, note="Order placed",
                                  updated_by=customer.id))
        payment = None
        if with_payment:
            payment = Payment(order_id=order.id, user_id=customer.id, amount=Decimal(total), currency=currency,
                              method=method, gateway=gateway, status=PaymentStatus.PENDING,
                              external_reference=reference, provider_metadata={})
            session.add(payment)
        session.commit()
        return order, payment
    return _make
