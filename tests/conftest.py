"""
Shared fixtures.

MongoDB is replaced by mongomock behind a thin async adapter exposing the
subset of the Motor API the service uses.
"""

import asyncio
import os
from datetime import datetime, timedelta

os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.pop("REDIS_URL", None)

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient
from jose import jwt

from market_chat.config import settings
from market_chat.database import get_database
from market_chat.models.user import Identity
from market_chat.realtime.gateway import Gateway, get_gateway
from market_chat.services.chat_store import ChatStore


class AsyncCursor:
    """Motor-like cursor over a mongomock cursor"""

    def __init__(self, cursor):
        self._cursor = cursor
        self._iter = None

    def sort(self, *args, **kwargs):
        self._cursor = self._cursor.sort(*args, **kwargs)
        return self

    def skip(self, n):
        self._cursor = self._cursor.skip(n)
        return self

    def limit(self, n):
        self._cursor = self._cursor.limit(n)
        return self

    def __aiter__(self):
        self._iter = iter(self._cursor)
        return self

    async def __anext__(self):
        try:
            return next(self._iter)
        except StopIteration:
            raise StopAsyncIteration

    async def to_list(self, length=None):
        docs = list(self._cursor)
        return docs if length is None else docs[:length]


class AsyncCollection:
    """Motor-like collection: every call yields to the loop once, like real I/O"""

    def __init__(self, collection):
        self.sync = collection

    def find(self, *args, **kwargs):
        return AsyncCursor(self.sync.find(*args, **kwargs))

    def __getattr__(self, name):
        attr = getattr(self.sync, name)
        if not callable(attr):
            return attr

        async def call(*args, **kwargs):
            await asyncio.sleep(0)
            return attr(*args, **kwargs)

        return call


class AsyncDatabase:
    def __init__(self, db):
        self.sync = db

    def __getattr__(self, name):
        return AsyncCollection(self.sync[name])

    def __getitem__(self, name):
        return AsyncCollection(self.sync[name])

    async def command(self, name):
        return {"ok": 1.0}


@pytest.fixture
def db():
    return AsyncDatabase(mongomock.MongoClient()["marketchat_test"])


@pytest.fixture
async def store(db):
    chat_store = ChatStore(db)
    await chat_store.ensure_indexes()
    return chat_store


def sign_token(claims: dict, expires_delta: timedelta = timedelta(hours=1)) -> str:
    """Sign ``claims`` the way the account service issues bearer tokens."""
    now = datetime.utcnow()
    payload = dict(claims, exp=now + expires_delta, iat=now)
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


@pytest.fixture
def make_token():
    return sign_token


def add_user(db, role="client", active=True, name=None):
    """Insert an account and return (identity, bearer token)."""
    user = {
        "_id": ObjectId(),
        "email": f"{role}-{ObjectId()}@example.com",
        "name": name or role.title(),
        "role": role,
        "active": active,
    }
    db.sync.users.insert_one(user)
    token = sign_token({"sub": str(user["_id"])})
    return Identity.from_user(user), token


def add_order(db, customer: Identity, order_number="ORD-2024-042"):
    order = {"_id": ObjectId(), "user_id": customer.id, "order_number": order_number, "status": "pending"}
    db.sync.orders.insert_one(order)
    return order


def add_chat(db, customer_id, order_id=None, subject=None, messages=(), open=True):
    """Insert a chat document. ``messages`` holds (sender, content) or (sender, content, read) tuples."""
    now = datetime.utcnow()
    doc = {
        "_id": ObjectId(),
        "customer_id": customer_id,
        "admin_id": None,
        "subject": subject,
        "is_order_chat": order_id is not None,
        "open": open,
        "messages": [
            {
                "_id": str(ObjectId()),
                "sender": entry[0],
                "sender_id": customer_id if entry[0] == "user" else None,
                "content": entry[1],
                "attachments": [],
                "timestamp": now,
                "read": entry[2] if len(entry) > 2 else False,
            }
            for entry in messages
        ],
        "created_at": now,
        "updated_at": now,
    }
    if order_id is not None:
        doc["order_id"] = str(order_id)
    db.sync.chats.insert_one(doc)
    return str(doc["_id"])


@pytest.fixture
def make_user(db):
    return lambda role="client", **kwargs: add_user(db, role, **kwargs)


@pytest.fixture
def make_order(db):
    return lambda customer, **kwargs: add_order(db, customer, **kwargs)


@pytest.fixture
def make_chat(db):
    return lambda customer_id, **kwargs: add_chat(db, customer_id, **kwargs)


@pytest.fixture
def customer(db):
    return add_user(db, "client", name="Carla")


@pytest.fixture
def other_customer(db):
    return add_user(db, "client", name="Oscar")


@pytest.fixture
def admin(db):
    return add_user(db, "admin", name="Ada")


@pytest.fixture
def order(db, customer):
    return add_order(db, customer[0])


@pytest.fixture
def gateway():
    return Gateway()


@pytest.fixture
def client(db, gateway, monkeypatch):
    """TestClient sharing one event loop between HTTP calls and WebSockets."""
    from market_chat import main

    async def fake_connect():
        main.database.db = db

    async def fake_close():
        main.database.db = None

    monkeypatch.setattr(main, "connect_to_mongo", fake_connect)
    monkeypatch.setattr(main, "close_mongo_connection", fake_close)
    monkeypatch.setattr(main, "gateway", gateway)
    monkeypatch.setattr(main.settings, "redis_url", None)

    main.app.dependency_overrides[get_database] = lambda: db
    main.app.dependency_overrides[get_gateway] = lambda: gateway
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()