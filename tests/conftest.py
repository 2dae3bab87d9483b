"""Pytest fixtures for marketcore tests."""

import json
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from marketcore.config import Settings
from marketcore.document_store import JsonDocumentStore
from marketcore.errors import GatewayError
from marketcore.gateway import GatewayOrder, compute_signature, to_minor_units
from marketcore.models import Address, Product, Role, User
from marketcore.orders import CartLine
from marketcore.services import build_services

WEBHOOK_SECRET = "whsec_test"
KEY_SECRET = "key_secret_test"
SHIPMENT_SECRET = "shipsec_test"


class Clock:
    """Settable clock shared by every component under test."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeGateway:
    """In-memory stand-in for the payment gateway API."""

    key_id = "rzp_test_key"

    def __init__(self):
        self.orders: list[GatewayOrder] = []
        self.fail = False

    def create_order(self, amount: float, currency: str, receipt: str) -> GatewayOrder:
        if self.fail:
            raise GatewayError("Payment gateway unreachable")
        order = GatewayOrder(
            id=f"order_{len(self.orders) + 1:04d}",
            amount=to_minor_units(amount),
            currency=currency,
            receipt=receipt,
        )
        self.orders.append(order)
        return order


@pytest.fixture
def temp_dir():
    """Create a temporary directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def store(temp_dir):
    return JsonDocumentStore(temp_dir / "data")


@pytest.fixture
def clock():
    return Clock(datetime(2026, 3, 15, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        app_env="test",
        razorpay_key_id=FakeGateway.key_id,
        razorpay_key_secret=KEY_SECRET,
        razorpay_webhook_secret=WEBHOOK_SECRET,
        shipment_webhook_secret=SHIPMENT_SECRET,
        jwt_secret="test-jwt-secret",
        low_stock_threshold=3,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def users():
    return {
        "buyer": User("buyer-1", "Asha Buyer", "asha@example.com", Role.BUYER, is_verified=True),
        "other_buyer": User("buyer-2", "Ravi Buyer", "ravi@example.com", Role.BUYER, is_verified=True),
        "unverified": User("buyer-3", "New Buyer", "new@example.com", Role.BUYER),
        "seller_a": User("seller-a", "Seller A", "a@example.com", Role.SELLER, is_verified=True),
        "seller_b": User("seller-b", "Seller B", "b@example.com", Role.SELLER, is_verified=True),
        "admin": User("admin-1", "Admin", "admin@example.com", Role.ADMIN, is_verified=True),
    }


@pytest.fixture
def products():
    return {
        "p1": Product("prod-1", "Ceramic Mug", 100.0, "seller-a", 10, created_at="2026-01-01T00:00:00.000000Z"),
        "p2": Product("prod-2", "Teapot", 250.0, "seller-b", 5, created_at="2026-01-01T00:00:00.000000Z"),
        "p3": Product("prod-3", "Coaster", 40.0, "seller-a", 100, created_at="2026-01-01T00:00:00.000000Z"),
        "retired": Product("prod-4", "Old Vase", 80.0, "seller-b", 7, is_active=False, created_at="2026-01-01T00:00:00.000000Z"),
    }


@pytest.fixture
def services(settings, store, gateway, clock, users, products):
    """Fully wired order core over a temp-dir JSON store with seeded data."""
    svc = build_services(settings, store=store, gateway=gateway, clock=clock)
    for user in users.values():
        svc.users.add_user(user)
    for product in products.values():
        svc.catalog.add_product(product)
    return svc


@pytest.fixture
def address():
    return Address(
        name="Asha",
        street="12 MG Road",
        city="Bengaluru",
        state="KA",
        country="IN",
        pincode="560001",
        phone="9999999999",
    )


@pytest.fixture
def checkout(services, users, address):
    """Stage a checkout: checkout([("prod-1", 2), ...], buyer=None, ip=...)."""

    def _checkout(lines, buyer=None, ip="10.0.0.1"):
        cart = [CartLine(product_id=pid, quantity=qty) for pid, qty in lines]
        return services.orders.create_from_cart(buyer or users["buyer"], cart, address, ip)

    return _checkout


@pytest.fixture
def signed_webhook():
    """Build a gateway webhook body and its signature."""

    def _build(event, order_id, payment_id="pay_0001", secret=WEBHOOK_SECRET, **entity):
        body = json.dumps(
            {
                "entity": "event",
                "event": event,
                "payload": {
                    "payment": {
                        "entity": {"id": payment_id, "order_id": order_id, **entity}
                    }
                },
            }
        ).encode("utf-8")
        return body, compute_signature(secret, body)

    return _build


@pytest.fixture
def stock_of(services):
    def _stock(product_id):
        return services.catalog.get_product(product_id).quantity_available

    return _stock
