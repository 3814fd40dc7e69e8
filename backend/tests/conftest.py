"""
Pytest configuration and shared test helpers for backend tests.

No test needs MongoDB or Stripe: `fake_db` swaps database.get_db() for an
in-memory store and Stripe calls are patched per test.
"""
import copy
from types import SimpleNamespace
from unittest.mock import patch

import pytest
import stripe
from pymongo.errors import DuplicateKeyError

from auth import create_admin_token, create_company_token
from database import DEFAULT_PLANS, database

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app


# =============================================================================
# In-memory Motor stand-in
# =============================================================================

def _matches(doc, query):
    for key, cond in query.items():
        value = doc.get(key)
        if isinstance(cond, dict) and any(k.startswith("$") for k in cond):
            for op, arg in cond.items():
                if op == "$lt" and not (value is not None and value < arg):
                    return False
                if op == "$gt" and not (value is not None and value > arg):
                    return False
                if op == "$ne" and value == arg:
                    return False
                if op == "$in" and value not in arg:
                    return False
        elif value != cond:
            return False
    return True


def _project(doc, projection):
    doc = copy.deepcopy(doc)
    doc.pop("_id", None)
    included = [k for k, v in (projection or {}).items() if v and k != "_id"]
    if included:
        return {k: doc[k] for k in included if k in doc}
    return doc


def _apply_update(doc, update, inserting=False):
    doc.update(copy.deepcopy(update.get("$set", {})))
    if inserting:
        doc.update(copy.deepcopy(update.get("$setOnInsert", {})))
    for key in update.get("$unset", {}):
        doc.pop(key, None)


class _Cursor:
    def __init__(self, docs):
        self._docs = docs

    def sort(self, key, direction=1):
        keys = key if isinstance(key, list) else [(key, direction)]
        for field, order in reversed(keys):
            self._docs.sort(key=lambda d: (d.get(field) is None, d.get(field)), reverse=order < 0)
        return self

    def limit(self, n):
        self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return self._docs[:length] if length else list(self._docs)


class InMemoryCollection:
    """The subset of AsyncIOMotorCollection the billing code uses."""

    def __init__(self, unique=()):
        self.docs = []
        # (field, partial filter or None)
        self._unique = list(unique)

    def _check_unique(self, doc):
        for field, partial in self._unique:
            if partial and not _matches(doc, partial):
                continue
            for other in self.docs:
                if partial and not _matches(other, partial):
                    continue
                if field in doc and other.get(field) == doc[field]:
                    raise DuplicateKeyError(f"E11000 duplicate key error: {field}={doc[field]!r}")

    def _find(self, query, sort=None):
        found = [d for d in self.docs if _matches(d, query)]
        if sort:
            _Cursor(found).sort(sort)
        return found

    async def find_one(self, query, projection=None, sort=None, **kwargs):
        found = self._find(query, sort)
        return _project(found[0], projection) if found else None

    def find(self, query=None, projection=None):
        return _Cursor([_project(d, projection) for d in self._find(query or {})])

    async def insert_one(self, doc, **kwargs):
        self._check_unique(doc)
        self.docs.append(copy.deepcopy(doc))
        return SimpleNamespace(inserted_id=len(self.docs))

    async def update_one(self, query, update, upsert=False, **kwargs):
        found = self._find(query)
        if found:
            _apply_update(found[0], update)
            return SimpleNamespace(matched_count=1, modified_count=1, upserted_id=None)
        if upsert:
            doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
            _apply_update(doc, update, inserting=True)
            await self.insert_one(doc)
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=len(self.docs))
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

    async def update_many(self, query, update, **kwargs):
        found = self._find(query)
        for doc in found:
            _apply_update(doc, update)
        return SimpleNamespace(matched_count=len(found), modified_count=len(found))

    async def find_one_and_update(self, query, update, projection=None, return_document=False, upsert=False, **kwargs):
        found = self._find(query)
        if not found:
            return None
        before = _project(found[0], projection)
        _apply_update(found[0], update)
        # ReturnDocument.AFTER is True
        return _project(found[0], projection) if return_document else before

    async def count_documents(self, query, **kwargs):
        return len(self._find(query))


class InMemoryDb:
    def __init__(self):
        self.companies = InMemoryCollection(unique=[("company_id", None)])
        self.plans = InMemoryCollection(unique=[("plan_id", None)])
        self.subscription_intents = InMemoryCollection(unique=[
            ("intent_id", None),
            ("company_id", {"status": "pending"}),
        ])
        self.stripe_events = InMemoryCollection(unique=[("event_id", None)])
        self.audit_logs = InMemoryCollection()
        self.professionals = InMemoryCollection()

    def company(self, company_id):
        return next((d for d in self.companies.docs if d["company_id"] == company_id), None)

    def plan(self, plan_id):
        return next((d for d in self.plans.docs if d["plan_id"] == plan_id), None)

    def intents(self, **filters):
        return [d for d in self.subscription_intents.docs if _matches(d, filters)]


# =============================================================================
# Fixtures
# =============================================================================

COMPANY_ID = 101


@pytest.fixture
def fake_db():
    """In-memory store seeded with the default plans and one active company."""
    db = InMemoryDb()
    for plan in DEFAULT_PLANS:
        db.plans.docs.append(copy.deepcopy(plan))
    db.companies.docs.append({
        "company_id": COMPANY_ID,
        "name": "Salão Aurora",
        "email": "contato@aurora.example",
        "is_active": True,
        "plan_status": "active",
        "plan_id": 1,
    })
    with patch.object(database, "get_db", return_value=db):
        yield db


@pytest.fixture
def stripe_unconfigured(monkeypatch):
    monkeypatch.setattr(stripe, "api_key", "")


@pytest.fixture
def stripe_configured(monkeypatch):
    monkeypatch.setattr(stripe, "api_key", "sk_test_dummy")


@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture
def company_headers():
    return {"Authorization": f"Bearer {create_company_token(COMPANY_ID)}"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_admin_token('admin-1')}"}


@pytest.fixture
def company_id():
    return COMPANY_ID
