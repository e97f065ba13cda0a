"""Pytest fixtures for the marketplace tests."""

from datetime import datetime, timedelta

import mongomock
import pytest
from bson import ObjectId

from config import Settings
from scheduler import Clock
from services import build_services


class ManualClock(Clock):
    """Clock that only moves when a test advances it."""

    def __init__(self, start: datetime):
        self.current = start

    def now(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture
def clock():
    return ManualClock(datetime(2026, 1, 15, 9, 0, 0))


@pytest.fixture
def db():
    return mongomock.MongoClient()["marketplace_test"]


@pytest.fixture
def settings():
    # mongomock has no sessions; run units of work on the compensation log.
    return Settings(mongo_transactions=False)


@pytest.fixture
def services(db, settings, clock):
    return build_services(db, settings, clock=clock)


def _insert(db, collection, doc):
    return str(db[collection].insert_one(doc).inserted_id)


@pytest.fixture
def seed(db):
    """A buyer with an address, an active store with two products in one leaf category."""
    buyer_id = _insert(db, "user", {"name": "Buyer", "email": "buyer@example.com"})
    other_id = _insert(db, "user", {"name": "Other", "email": "other@example.com"})
    seller_id = _insert(db, "user", {"name": "Seller", "email": "seller@example.com"})
    address_id = _insert(db, "address", {"user_id": buyer_id, "label": "Home", "line1": "Jl. Merdeka 1"})
    other_address_id = _insert(db, "address", {"user_id": other_id, "label": "Work"})
    store_id = _insert(db, "store", {"owner_id": seller_id, "name": "Gadget Hub", "status": "active"})
    category_id = _insert(db, "category", {
        "name": "Laptops", "status": "active", "is_leaf": True, "has_active_product": False,
    })
    laptop_id = _insert(db, "product", {
        "name": "Laptop Pro 14", "slug": "laptop-pro-14", "reseller_price": 16000000,
        "consumer_price": 17000000, "description": "14 inch", "stock": 5, "sold_count": 0,
        "store_id": store_id, "category_id": category_id, "status": "active",
    })
    mouse_id = _insert(db, "product", {
        "name": "Wireless Mouse", "slug": "wireless-mouse", "reseller_price": 400000,
        "consumer_price": 500000, "description": "2.4GHz", "stock": 10, "sold_count": 0,
        "store_id": store_id, "category_id": category_id, "status": "active",
    })
    return {
        "buyer_id": buyer_id,
        "other_id": other_id,
        "seller_id": seller_id,
        "address_id": address_id,
        "other_address_id": other_address_id,
        "store_id": store_id,
        "category_id": category_id,
        "laptop_id": laptop_id,
        "mouse_id": mouse_id,
    }


@pytest.fixture
def place_order(services, seed):
    def _place(lines=None, method="bank_transfer"):
        lines = lines or [
            {"product_id": seed["laptop_id"], "quantity": 1},
            {"product_id": seed["mouse_id"], "quantity": 2},
        ]
        return services.orders.create_order(seed["buyer_id"], seed["address_id"], method, lines)
    return _place


def stock_of(db, product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})["stock"]


def sold_of(db, product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})["sold_count"]


class InterceptingCollection:
    """Collection wrapper that routes every method call through `hook(name, method, args, kwargs)`."""

    def __init__(self, collection, hook):
        self._collection = collection
        self._hook = hook

    def __getattr__(self, name):
        attr = getattr(self._collection, name)
        if not callable(attr):
            return attr

        def call(*args, **kwargs):
            return self._hook(name, attr, args, kwargs)
        return call


class InterceptingDatabase:
    def __init__(self, db, hook, client=None):
        self._db = db
        self._hook = hook
        self.client = client if client is not None else db.client

    def __getitem__(self, name):
        return InterceptingCollection(self._db[name], self._hook)

    def __getattr__(self, name):
        return getattr(self._db, name)


class FakeSession:
    def __init__(self):
        self.in_transaction = False
        self.committed = False
        self.aborted = False
        self.ended = False

    def start_transaction(self):
        self.in_transaction = True

    def commit_transaction(self):
        self.in_transaction = False
        self.committed = True

    def abort_transaction(self):
        self.in_transaction = False
        self.aborted = True

    def end_session(self):
        self.ended = True


class FakeSessionClient:
    def __init__(self):
        self.sessions = []

    def start_session(self):
        session = FakeSession()
        self.sessions.append(session)
        return session
