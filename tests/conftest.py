"""
Shared fixtures: an in-memory Mongo (mongomock), a fresh event relay and a
TestClient wired to both through dependency overrides.
"""

from typing import Any, Dict, List, Optional

import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from database import create_document, ensure_indexes, get_db
from main import app, create_jwt
from relay import EventRelay, get_relay
from schemas import GeoPoint, OrderItem, Restaurant, Rider, User


class PlaceOrder:
    """Checkout payload with the same shape as the HTTP body."""

    def __init__(self, restaurant_id: str, items: List[OrderItem], shipping_address: str = "12 Mall Road",
                 delivery_location: Optional[GeoPoint] = None, payment_method: str = "cod",
                 distance_km: Optional[float] = None, delivery_fee: Optional[float] = None,
                 tax: Optional[float] = None, service_fee: float = 0, discount: float = 0):
        self.restaurant_id = restaurant_id
        self.items = items
        self.shipping_address = shipping_address
        self.delivery_location = delivery_location
        self.delivery_instructions = None
        self.cutlery = False
        self.payment_method = payment_method
        self.distance_km = distance_km
        self.delivery_fee = delivery_fee
        self.tax = tax
        self.service_fee = service_fee
        self.discount = discount


@pytest.fixture
def db():
    database = mongomock.MongoClient().db
    ensure_indexes(database)
    return database


@pytest.fixture
def relay():
    return EventRelay()


@pytest.fixture
def client(db, relay):
    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_relay] = lambda: relay
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def actor(user_id: str, role: str) -> Dict[str, Any]:
    return {"sub": user_id, "role": role}


def auth_header(user_id: str, role: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_jwt({'sub': user_id, 'role': role})}"}


@pytest.fixture
def customer(db):
    uid = create_document(db, "user", User(name="Ayesha", email="ayesha@example.com", role="customer"))
    return actor(uid, "customer")


@pytest.fixture
def admin(db):
    uid = create_document(db, "user", User(name="Ops", email="ops@example.com", role="admin"))
    return actor(uid, "admin")


@pytest.fixture
def restaurant(db):
    owner = create_document(db, "user", User(name="Bilal", email="bilal@example.com", role="restaurant"))
    rid = create_document(db, "restaurant", Restaurant(name="Karahi House", address="Gulberg", owner_user_id=owner,
                                                       location=GeoPoint(lat=31.5204, lng=74.3587)))
    return {"id": rid, "actor": actor(owner, "restaurant")}


def make_rider(db, name: str, email: str, approved: bool = True, online: bool = True,
               location: Optional[GeoPoint] = None) -> Dict[str, Any]:
    uid = create_document(db, "user", User(name=name, email=email, role="rider"))
    rider = Rider(user_id=uid, full_name=name, verification_status="approved" if approved else "pending",
                  is_online=online, current_location=location)
    rid = create_document(db, "rider", rider)
    return {"id": rid, "actor": actor(uid, "rider")}


@pytest.fixture
def rider_a(db):
    return make_rider(db, "Rider A", "a@example.com", location=GeoPoint(lat=31.5210, lng=74.3590))


@pytest.fixture
def rider_b(db):
    return make_rider(db, "Rider B", "b@example.com", location=GeoPoint(lat=31.5220, lng=74.3600))


def items(price: float = 500, quantity: int = 1) -> List[OrderItem]:
    return [OrderItem(dish_id=str(ObjectId()), name="Chicken Karahi", quantity=quantity, unit_price=price)]


@pytest.fixture
def place(db, relay, customer, restaurant):
    """Factory placing an order through the checkout service."""
    import orders

    def _place(**kwargs):
        kwargs.setdefault("items", items())
        kwargs.setdefault("delivery_fee", 0)
        kwargs.setdefault("tax", 0)
        body = PlaceOrder(restaurant["id"], **kwargs)
        order = orders.create_order(db, relay, customer, body)
        return str(order["_id"])

    return _place


def listen(relay: EventRelay, *channels: str):
    return relay.subscribe(channels)


def drain(queue) -> List[Dict[str, Any]]:
    out = []
    while not queue.empty():
        out.append(queue.get_nowait())
    return out
