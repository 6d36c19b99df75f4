"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Skip MongoDB startup when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from pymongo.errors import DuplicateKeyError
from pymongo.results import UpdateResult

from config import Settings
from dependencies import build_billing_services
from models import GatewaySubscription, PaymentMethod, PaymentMethodType


class FakeCollection:
    """Minimal in-memory stand-in for a Motor collection (equality queries, $set updates).

    `present_unique_keys` behave like a MongoDB sparse unique index: documents
    without the field are skipped, but a stored null is indexed like any value.
    """

    def __init__(self, unique_key=None, present_unique_keys=()):
        self.docs = []
        self.unique_key = unique_key
        self.present_unique_keys = tuple(present_unique_keys)

    @staticmethod
    def _matches(doc, query):
        return all(doc.get(k) == v for k, v in query.items())

    def _check_unique(self, new_doc, replacing=None):
        for other in self.docs:
            if other is replacing:
                continue
            for key in self.present_unique_keys:
                if key in new_doc and key in other and new_doc[key] == other[key]:
                    raise DuplicateKeyError(f"E11000 duplicate key error index: {key}_1")

    async def find_one(self, query, projection=None, **kw):
        for doc in self.docs:
            if self._matches(doc, query):
                return {k: v for k, v in doc.items() if k != "_id"}
        return None

    async def replace_one(self, query, replacement, upsert=False, **kw):
        for i, doc in enumerate(self.docs):
            if self._matches(doc, query):
                self._check_unique(replacement, replacing=doc)
                self.docs[i] = dict(replacement)
                return
        if upsert:
            self._check_unique(replacement)
            self.docs.append(dict(replacement))

    async def update_one(self, query, update, upsert=False, **kw):
        for doc in self.docs:
            if self._matches(doc, query):
                doc.update(update.get("$set", {}))
                return UpdateResult({"n": 1, "nModified": 1}, acknowledged=True)
        if upsert:
            new_doc = dict(query)
            new_doc.update(update.get("$set", {}))
            self.docs.append(new_doc)
            return UpdateResult({"n": 1, "nModified": 0, "upserted": 1}, acknowledged=True)
        return UpdateResult({"n": 0, "nModified": 0}, acknowledged=True)

    async def insert_one(self, doc, **kw):
        if self.unique_key and any(d.get(self.unique_key) == doc.get(self.unique_key) for d in self.docs):
            raise DuplicateKeyError("E11000 duplicate key error")
        self.docs.append(dict(doc))


class FakeDB:
    def __init__(self):
        self.subscription_records = FakeCollection("subscriber_id", present_unique_keys=("subscription_id",))
        self.gateway_plans = FakeCollection("plan_code")
        self.webhook_events = FakeCollection("event_key")
        self.users = FakeCollection("uid")
        self.audit_logs = FakeCollection()


class FrozenClock:
    """Injectable clock; tests move `now` explicitly."""

    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture
def fake_db():
    return FakeDB()


@pytest.fixture
def clock():
    return FrozenClock(utc(2024, 1, 1, 10, 0, 0))


@pytest.fixture
def fake_gateway():
    gateway = MagicMock()
    gateway.create_plan = AsyncMock(return_value="2c9380848f2a1b3c018f2a7e1d2b0001")
    gateway.register_card_method = AsyncMock(
        return_value=PaymentMethod(id="card_9f3b", name="visa", type=PaymentMethodType.CREDIT_CARD)
    )
    gateway.create_subscription = AsyncMock(
        return_value=GatewaySubscription(subscription_id="2c93808490a1", status="authorized")
    )
    gateway.get_subscription_status = AsyncMock(
        return_value=GatewaySubscription(subscription_id="2c93808490a1", status="authorized")
    )
    gateway.aclose = AsyncMock()
    return gateway


@pytest.fixture(autouse=True)
def mock_audit():
    """Audit writes go to the global database; keep them out of unit tests."""
    audit = AsyncMock(return_value="audit-id")
    with patch("services.subscription_lifecycle.create_audit_log", audit):
        with patch("services.mercadopago_webhook_service.create_audit_log", audit):
            yield audit


@pytest.fixture
def billing(fake_db, fake_gateway, clock):
    return build_billing_services(fake_db, Settings(), gateway=fake_gateway, clock=clock)


@pytest.fixture
def client(billing):
    """TestClient for server:app wired to the in-memory billing services."""
    from fastapi.testclient import TestClient
    from server import app

    app.state.billing = billing
    try:
        yield TestClient(app)
    finally:
        del app.state.billing
