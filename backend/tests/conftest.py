"""
Pytest configuration and shared test helpers for backend tests.
"""
import copy
import hashlib
import hmac
import json
import os
import sys
import time
import uuid
from pathlib import Path
from types import SimpleNamespace

# Backend root on path so tests import modules the way server.py does
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

os.environ.setdefault("MONGO_URL", "mongodb://localhost:27017")
os.environ.setdefault("DB_NAME", "patrimo_test")

import pytest
from fastapi.testclient import TestClient
from unittest.mock import MagicMock

WEBHOOK_SECRET = "whsec_test_secret"
PRICE_ESSENTIEL = "price_essentiel"
PRICE_PREMIUM = "price_premium"


@pytest.fixture(autouse=True)
def stripe_env(monkeypatch):
    """Configured price ids for every test; plan lookups read them lazily."""
    monkeypatch.setenv("STRIPE_PRICE_ESSENTIEL", PRICE_ESSENTIEL)
    monkeypatch.setenv("STRIPE_PRICE_PREMIUM", PRICE_PREMIUM)
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", WEBHOOK_SECRET)
    monkeypatch.setenv("STRIPE_SECRET_KEY", "sk_test_dummy")


# ============================================================================
# In-memory MongoDB stand-in (only the calls the services make)
# ============================================================================

def _matches(doc, query):
    return all(doc.get(key) == value for key, value in query.items())


class InMemoryCollection:
    def __init__(self):
        self.docs = []
        self.fail_writes = False

    async def find_one(self, query, projection=None, **kwargs):
        for doc in self.docs:
            if _matches(doc, query):
                found = copy.deepcopy(doc)
                found.pop("_id", None)
                return found
        return None

    async def update_one(self, query, update, upsert=False, **kwargs):
        if self.fail_writes:
            from pymongo.errors import PyMongoError
            raise PyMongoError("write failed")
        for doc in self.docs:
            if _matches(doc, query):
                doc.update(update.get("$set", {}))
                return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if not upsert:
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)
        doc = {"_id": str(uuid.uuid4()), **query, **update.get("$setOnInsert", {}), **update.get("$set", {})}
        self.docs.append(doc)
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc["_id"])

    async def insert_one(self, doc, **kwargs):
        if self.fail_writes:
            from pymongo.errors import PyMongoError
            raise PyMongoError("write failed")
        doc["_id"] = str(uuid.uuid4())
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=doc["_id"])

    async def count_documents(self, query, **kwargs):
        return sum(1 for doc in self.docs if _matches(doc, query))

    async def create_index(self, *args, **kwargs):
        return None


class InMemoryDb:
    def __init__(self):
        self.profiles = InMemoryCollection()
        self.properties = InMemoryCollection()
        self.stripe_events = InMemoryCollection()
        self.analytics_events = InMemoryCollection()


@pytest.fixture
def db():
    return InMemoryDb()


# ============================================================================
# Stripe helpers
# ============================================================================

def stripe_signature_header(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int = None) -> str:
    """Stripe-Signature header for payload: t=<ts>,v1=<hmac-sha256 of "ts.payload">."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def make_event(event_type: str, obj: dict, event_id: str = None) -> dict:
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "livemode": False,
        "data": {"object": obj},
    }


def signed_payload(event: dict, secret: str = WEBHOOK_SECRET):
    payload = json.dumps(event).encode("utf-8")
    return payload, stripe_signature_header(payload, secret)


def subscription_with_price(price_id: str, unit_amount: int = None, subscription_id: str = "sub_123") -> dict:
    price = {"id": price_id}
    if unit_amount is not None:
        price["unit_amount"] = unit_amount
    return {"id": subscription_id, "status": "active", "items": {"data": [{"price": price}]}}


@pytest.fixture
def billing_settings():
    from services.stripe_service import BillingSettings
    return BillingSettings(
        stripe_secret_key="sk_test_dummy",
        webhook_secret=WEBHOOK_SECRET,
        app_url="http://localhost:3000",
        webhook_timeout_seconds=10.0,
    )


@pytest.fixture
def client(db, billing_settings):
    """TestClient for server:app with services on an in-memory db; Stripe and analytics are mocks."""
    from server import app, build_services

    build_services(app, db, billing_settings)
    app.state.analytics = MagicMock()
    app.state.webhook_service.analytics = app.state.analytics
    return TestClient(app)
