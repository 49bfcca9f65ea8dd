"""Pytest fixtures for the ordering backend tests."""

from datetime import datetime, timedelta

import mongomock
import pytest
from bson import ObjectId

from database import create_document, ensure_indexes
from orders import OrderService
from order_stats import OrderStatistics
from schemas import Category, CatalogProduct, OrderCreate, SizePrice, Tenant, TenantContact

DAY = datetime(2026, 10, 19, 12, 0, 0)


class RecordingNotifier:
    """Notifier double that remembers every call."""

    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    def notify(self, tenant_id, phone, text, event):
        self.calls.append({"tenant_id": tenant_id, "phone": phone, "text": text, **event})
        if self.fail:
            raise RuntimeError("gateway down")
        return True


class TickingClock:
    """Returns start, start + 1s, start + 2s, ..."""

    def __init__(self, start: datetime = DAY):
        self.now = start

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current


@pytest.fixture
def db():
    database = mongomock.MongoClient()["ordering"]
    ensure_indexes(database)
    return database


@pytest.fixture
def tenant(db):
    tenant_id = create_document(db, "tenant", Tenant(
        name="Pizzaria Bella",
        slug="bella",
        api_key="bella-key",
        contact=TenantContact(email="owner@bella.example.com", phone="5511900000000"),
    ))
    return db["tenant"].find_one({"_id": ObjectId(tenant_id)})


@pytest.fixture
def other_tenant(db):
    tenant_id = create_document(db, "tenant", Tenant(
        name="Burger Joint",
        slug="burger",
        api_key="burger-key",
        contact=TenantContact(email="owner@burger.example.com", phone="5511911111111"),
    ))
    return db["tenant"].find_one({"_id": ObjectId(tenant_id)})


@pytest.fixture
def catalog(db, tenant):
    """Category plus a few products; returns their ids as strings."""
    tid = str(tenant["_id"])
    pizzas = create_document(db, "category", Category(tenant_id=tid, name="Pizzas", slug="pizzas"))
    pizza = create_document(db, "catalog", CatalogProduct(
        tenant_id=tid,
        name="Pizza Calabresa",
        price=40,
        category_id=pizzas,
        product_type="pizza",
        sizes_prices=[SizePrice(size_name="Tamanho P", price=35), SizePrice(size_name="Tamanho G", price=55)],
    ))
    soda = create_document(db, "catalog", CatalogProduct(tenant_id=tid, name="Soda", price=6))
    sold_out = create_document(db, "catalog", CatalogProduct(tenant_id=tid, name="Lasagna", price=45, available=False))
    return {"category": pizzas, "pizza": pizza, "soda": soda, "sold_out": sold_out}


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def service(db, notifier, clock):
    return OrderService(db, notifier, clock=clock)


@pytest.fixture
def statistics(db):
    return OrderStatistics(db)


def make_payload(**overrides) -> OrderCreate:
    data = {
        "customer": {"name": "Maria", "phone": "5511987654321", "address": "Rua A, 10"},
        "items": [{"name": "Pizza Margherita", "quantity": 2, "unit_price": 30,
                   "options": [{"name": "Borda", "price": 5}]}],
        "payment_method": "pix",
        "delivery_fee": 5,
    }
    data.update(overrides)
    return OrderCreate(**data)


def set_status(db, order, status):
    """Force a stored status, bypassing the lifecycle (test setup only)."""
    db["order"].update_one({"_id": ObjectId(order["id"])}, {"$set": {"status": status}})
