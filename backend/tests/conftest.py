"""
Pytest configuration and shared fixtures for the billing engine.
"""
import os
import sys
from pathlib import Path

# Ensure backend package is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

# Settings are read at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("OPERATOR_API_KEY", "")

# Patch PostgreSQL UUID type BEFORE any imports
from sqlalchemy.dialects import postgresql
from sqlalchemy import TypeDecorator, CHAR
import uuid as uuid_module

class GUID(TypeDecorator):
    """Platform-independent GUID type. Uses PostgreSQL's UUID type, otherwise uses CHAR(36)."""
    impl = CHAR
    cache_ok = True

    def __init__(self, as_uuid=True):
        """Accept as_uuid parameter for compatibility with PostgreSQL UUID."""
        self.as_uuid = as_uuid
        super().__init__()

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(_original_uuid(as_uuid=self.as_uuid))
        else:
            return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        elif isinstance(value, uuid_module.UUID):
            return value
        else:
            return uuid_module.UUID(value)

# Monkey patch BEFORE models are imported
_original_uuid = postgresql.UUID
postgresql.UUID = GUID

from datetime import datetime, timedelta
from typing import Dict, List
from urllib.parse import urlencode

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool


@pytest.fixture(scope="function")
def db():
    """
    Create a fresh database for each test.

    Uses an in-memory SQLite database for fast, isolated testing.
    UUID type has been patched at module level to work with SQLite.
    """
    from billing_engine.db.base import Base
    import billing_engine.models  # noqa: F401

    # Create in-memory SQLite database
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    # Create all tables
    Base.metadata.create_all(bind=engine)

    # Create session
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = TestingSessionLocal()

    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


class Clock:
    """Settable clock injected into the services."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def gateway_reply(**fields):
    """Build a decoded gateway reply from form fields (response defaults to approved)."""
    from billing_engine.services.gateway import decode_gateway_response

    fields.setdefault("response", "1")
    return decode_gateway_response(urlencode(fields))


def approved_reply(**fields):
    fields.setdefault("responsetext", "SUCCESS")
    fields.setdefault("response_code", "100")
    fields.setdefault("authcode", "123456")
    fields.setdefault("transactionid", "9000001")
    return gateway_reply(response="1", **fields)


def declined_reply(code: str, text: str = "DECLINE", **fields):
    return gateway_reply(response="2", response_code=code, responsetext=text, **fields)


class FakeGateway:
    """
    Scripted stand-in for NMIGateway.

    Replies are queued per method; an exception instance in the queue is
    raised instead of returned. Empty queues answer with an approval.
    """

    def __init__(self):
        self.replies: Dict[str, List] = {}
        self.calls: List[tuple] = []

    def queue(self, method: str, *replies) -> "FakeGateway":
        self.replies.setdefault(method, []).extend(replies)
        return self

    def _next(self, method: str, default):
        queued = self.replies.get(method)
        reply = queued.pop(0) if queued else default
        if isinstance(reply, Exception):
            raise reply
        return reply

    def calls_to(self, method: str) -> List[dict]:
        return [kwargs for name, kwargs in self.calls if name == method]

    def create_vault_customer(self, **kwargs):
        self.calls.append(("create_vault_customer", kwargs))
        return self._next("create_vault_customer", approved_reply(customer_vault_id="vault_123"))

    def charge(self, **kwargs):
        self.calls.append(("charge", kwargs))
        return self._next("charge", approved_reply())

    def update_vault_customer(self, vault_token, card, order_id):
        self.calls.append(("update_vault_customer", {"vault_token": vault_token, "card": card, "order_id": order_id}))
        return self._next("update_vault_customer", approved_reply(customer_vault_id=vault_token))

    def refresh_credential(self, vault_token):
        self.calls.append(("refresh_credential", {"vault_token": vault_token}))
        return self._next("refresh_credential", gateway_reply(response="3", responsetext="No update available"))

    def enable_network_token(self, vault_token):
        self.calls.append(("enable_network_token", {"vault_token": vault_token}))
        return self._next(
            "enable_network_token",
            approved_reply(network_token="ntk_abc", token_cryptogram="crypt_xyz"),
        )

    def close(self):
        pass


class RecordingPublisher:
    """Collects published decline events."""

    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 10, 12, 0, 0))


@pytest.fixture
def billing_config():
    """Default policy with no courtesy delays and the test-mode BIN exclusions."""
    from billing_engine.core.config import BillingConfig

    return BillingConfig(
        network_token_unsupported_bins=("400000", "555555"),
        inter_charge_delay_seconds=0,
        retry_run_delay_seconds=0,
        card_updater_delay_seconds=0,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def processor(db, gateway, billing_config, publisher, clock):
    from billing_engine.services.transaction_processor import TransactionProcessor

    return TransactionProcessor(db, gateway, billing_config, publisher=publisher, clock=clock)


@pytest.fixture
def plan(db):
    from billing_engine.models import Plan

    plan = Plan(name="Pro Monthly", amount=1999, interval="monthly", is_active=True)
    db.add(plan)
    db.commit()
    db.refresh(plan)
    return plan


@pytest.fixture
def customer(db):
    from billing_engine.models import Customer

    customer = Customer(email="jamie@example.com", name="Jamie Rivera")
    db.add(customer)
    db.commit()
    db.refresh(customer)
    return customer


@pytest.fixture
def make_subscription(db, customer, plan, clock):
    """Factory for subscriptions in any state."""
    from billing_engine.models import Subscription

    def _make(**overrides):
        values = dict(
            customer_id=customer.id,
            plan_id=plan.id,
            status="active",
            amount=plan.amount,
            interval=plan.interval,
            next_bill_at=clock.now - timedelta(hours=1),
            retries=0,
            vault_token="vault_123",
            card_last_four="1111",
            card_brand="visa",
            card_bin="411111",
            card_exp_month=12,
            card_exp_year=2030,
        )
        values.update(overrides)
        subscription = Subscription(**values)
        db.add(subscription)
        db.commit()
        db.refresh(subscription)
        return subscription

    return _make


@pytest.fixture
def client(db, gateway, publisher, billing_config):
    """TestClient wired to the test session, the fake gateway and the recording publisher."""
    from fastapi.testclient import TestClient

    from billing_engine.api.dependencies import get_config, get_gateway, get_insight_publisher
    from billing_engine.db.base import get_db
    from billing_engine.main import app

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_insight_publisher] = lambda: publisher
    app.dependency_overrides[get_config] = lambda: billing_config

    yield TestClient(app)

    app.dependency_overrides.clear()
