"""Pytest fixtures for storefront tests."""

import asyncio
import json

import httpx
import jwt
import pytest
from fastapi.testclient import TestClient

from api.server import create_app
from config import Settings
from schemas.products import Product
from schemas.users import Actor, ActorRole
from services.cart_service import CartService
from services.order_service import OrderService
from services.order_state_machine import OrderStateMachine
from services.payment_gateway import KhaltiGateway
from storage.memory import MemoryStorage

JWT_SECRET = "test-secret"


def run(coro):
    """Drive one coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


def mint_token(user_id: str, role: str = "user", name: str = "Test User", email: str = "test@example.com",
               secret: str = JWT_SECRET) -> str:
    return jwt.encode({"id": user_id, "role": role, "name": name, "email": email}, secret, algorithm="HS256")


def khalti_lookup_handler(status: str = "Completed"):
    def handler(request: httpx.Request) -> httpx.Response:
        pidx = json.loads(request.content)["pidx"]
        return httpx.Response(200, json={
            "pidx": pidx,
            "total_amount": 150000,
            "status": status,
            "transaction_id": "GFq9PFS7b2iYvL8Lir9oXe",
            "fee": 0,
            "refunded": False,
        })
    return handler


@pytest.fixture
def settings():
    return Settings(
        env="test",
        jwt_secret=JWT_SECRET,
        khalti_base_url="https://khalti.test/api/v2",
        khalti_secret_key="test-secret-key",
        gateway_timeout_seconds=1.0,
        gateway_max_retries=2,
        gateway_backoff_seconds=0.0,
    )


@pytest.fixture
def storage():
    return MemoryStorage()


@pytest.fixture
def product(storage):
    return storage.seed_product(Product(
        name="Handwoven Dhaka Shawl",
        price=750.0,
        stock_quantity=5,
        images=["/images/dhaka-shawl.jpg"],
        vendor_id="vendor-1",
    ))


@pytest.fixture
def buyer():
    return Actor(id="user-1", role=ActorRole.USER, name="Sita Sharma", email="sita@example.com")


@pytest.fixture
def other_buyer():
    return Actor(id="user-2", role=ActorRole.USER, name="Ram Thapa", email="ram@example.com")


@pytest.fixture
def admin():
    return Actor(id="admin-1", role=ActorRole.ADMIN, name="Admin", email="admin@example.com")


@pytest.fixture
def vendor():
    return Actor(id="vendor-1", role=ActorRole.VENDOR, name="Vendor", email="vendor@example.com")


@pytest.fixture
def order_service(storage, settings):
    return OrderService(storage, settings)


@pytest.fixture
def state_machine(storage):
    return OrderStateMachine(storage)


@pytest.fixture
def cart_service(storage, settings):
    return CartService(storage, settings)


@pytest.fixture
def gateway(settings):
    return KhaltiGateway(settings, transport=httpx.MockTransport(khalti_lookup_handler()))


@pytest.fixture
def app(settings, storage, gateway):
    return create_app(settings=settings, storage=storage, gateway=gateway)


@pytest.fixture
def api_client(app):
    with TestClient(app) as client:
        yield client


@pytest.fixture
def buyer_headers(buyer):
    return {"Authorization": f"Bearer {mint_token(buyer.id, name=buyer.name, email=buyer.email)}"}


@pytest.fixture
def other_headers(other_buyer):
    return {"Authorization": f"Bearer {mint_token(other_buyer.id)}"}


@pytest.fixture
def admin_headers(admin):
    return {"Authorization": f"Bearer {mint_token(admin.id, role='admin')}"}


@pytest.fixture
def vendor_headers(vendor):
    return {"Authorization": f"Bearer {mint_token(vendor.id, role='vendor')}"}
