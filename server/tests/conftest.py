"""
Shared fixtures for the storefront API tests.

The app lifespan is not run by TestClient(app) outside a `with` block, so
the database pool is never opened: tests patch the `storefront.db`
functions they need. OTP and checkout stores are swapped for fresh
in-memory stores per test.
"""

import pytest
from fastapi.testclient import TestClient

from storefront import checkout_store, otp_store
from storefront.auth import create_session_token
from storefront.rate_limit import limiter
from storefront.services import delivery


CUSTOMER = {
    "id": "11111111-1111-1111-1111-111111111111",
    "email": "customer@example.com",
    "name": "customer",
    "role": "user",
}

ADMIN = {
    "id": "22222222-2222-2222-2222-222222222222",
    "email": "owner@example.com",
    "name": "Owner",
    "role": "admin",
}


@pytest.fixture(autouse=True)
def fresh_state():
    """In-memory stores, a clean rate limiter and no cached delivery rules."""
    otp_store._store = otp_store.MemoryOTPStore()
    checkout_store._store = checkout_store.MemoryCheckoutStore()
    limiter.reset()
    delivery.rules_cache.invalidate()
    yield
    otp_store._store = None
    checkout_store._store = None


@pytest.fixture
def client():
    from storefront.main import app
    return TestClient(app)


@pytest.fixture
def customer():
    return dict(CUSTOMER)


@pytest.fixture
def customer_headers():
    return {"Authorization": f"Bearer {create_session_token(CUSTOMER)}"}


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {create_session_token(ADMIN)}"}


def async_return(value):
    """side_effect helper: an async function returning `value`."""
    async def _fn(*args, **kwargs):
        return value
    return _fn
