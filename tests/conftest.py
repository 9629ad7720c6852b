import hashlib
import hmac
import os
import tempfile
import threading
from datetime import datetime, timedelta, timezone

_DB_DIR = tempfile.mkdtemp(prefix="box-office-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'box_office.db')}?timeout=30"
os.environ["REAPER_ENABLED"] = "false"

import pytest
from fastapi.testclient import TestClient

from src.api.routes.routes import get_gateway
from src.domain.exceptions import GatewayInitError, GatewayTransientError
from src.domain.gateway import (
    GatewayClient,
    GatewayOrderStatus,
    GatewaySession,
    GatewayStatus,
)
from src.domain.state_machine import EventStatus, EventVisibility
from src.infrastructure.db.models import Base, Event, User
from src.infrastructure.db.session import SessionLocal, engine
from src.main import app

WEBHOOK_SECRET = "whsec_test"


class FakeGateway(GatewayClient):
    """
    Deterministic gateway. ``status`` is what every status query reports;
    ``charged_amount`` overrides the amount echoed back for CHARGED.
    """

    def __init__(self):
        self.status = GatewayStatus.CHARGED.value
        self.charged_amount = None
        self.fail_session = False
        self.transient = False
        self.sessions: dict[str, int] = {}
        self.session_calls = 0
        self.query_calls = 0
        self._lock = threading.Lock()

    def create_session(
        self,
        order_id,
        amount_paise,
        currency,
        customer,
        return_url,
        idempotency_key,
    ):
        self.session_calls += 1
        if self.fail_session:
            raise GatewayInitError("gateway timed out")

        gateway_order_id = f"order_{order_id}"
        self.sessions[gateway_order_id] = amount_paise
        return GatewaySession(
            gateway_order_id=gateway_order_id,
            payload={
                "order_id": gateway_order_id,
                "amount": amount_paise,
                "currency": currency,
                "callback_url": return_url,
                "prefill": {"email": customer.email},
            },
        )

    def query_status(self, gateway_order_id):
        with self._lock:
            self.query_calls += 1
        if self.transient:
            raise GatewayTransientError("status query timed out")

        charged = None
        if self.status == GatewayStatus.CHARGED.value:
            charged = self.charged_amount
            if charged is None:
                charged = self.sessions.get(gateway_order_id)
        return GatewayOrderStatus(
            status=self.status,
            charged_amount=charged,
            transaction_id="pay_test_001",
            raw={"order_id": gateway_order_id, "status": self.status, "amount": charged},
        )

    def verify_signature(self, raw_body, signature):
        if not signature:
            return False
        return hmac.compare_digest(sign(raw_body), signature)


def sign(raw_body: str) -> str:
    return hmac.new(
        WEBHOOK_SECRET.encode("utf-8"),
        raw_body.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


@pytest.fixture
def schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield
    engine.dispose()


@pytest.fixture
def db(schema):
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def client(schema, gateway):
    app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    counter = {"n": 0}

    def _make(role: str = "attendee", name: str | None = None) -> User:
        counter["n"] += 1
        n = counter["n"]
        user = User(
            name=name or f"User {n}",
            email=f"user{n}@example.com",
            phone=f"90000000{n:02d}",
            role=role,
        )
        db.add(user)
        db.commit()
        return user

    return _make


@pytest.fixture
def make_event(db):
    def _make(
        capacity: int = 10,
        price: int = 500,
        title: str = "Live Concert",
        status: EventStatus = EventStatus.PUBLISHED,
        visibility: EventVisibility = EventVisibility.PUBLIC,
        sold: int = 0,
    ) -> Event:
        start = datetime.now(timezone.utc) + timedelta(days=7)
        event = Event(
            title=title,
            venue="Main Hall",
            start_time=start,
            end_time=start + timedelta(hours=3),
            price=price,
            capacity=capacity,
            sold=sold,
            status=status,
            visibility=visibility,
        )
        db.add(event)
        db.commit()
        return event

    return _make


def sold_seats(event_id: str) -> int:
    """Read ``sold`` through a fresh session."""
    with SessionLocal() as session:
        return session.get(Event, event_id).sold


@pytest.fixture
def seats():
    return sold_seats


@pytest.fixture
def signer():
    return sign
