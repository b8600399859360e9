"""Pytest configuration and fixtures for checkout tests."""
from __future__ import annotations

import sys
from decimal import Decimal
from pathlib import Path
from typing import AsyncGenerator

import pytest
from httpx import ASGITransport, AsyncClient

# Ensure the local package is importable when running pytest directly.
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from laos_checkout.api import StaticTokenIdentityProvider, create_app
from laos_checkout.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from laos_checkout.config import CheckoutSettings
from laos_checkout.gateway import SimulatedPaymentGateway
from laos_checkout.models import Product
from laos_checkout.rate_limiter import RateLimitConfig, TokenBucketRateLimiter
from laos_checkout.service import CheckoutService
from laos_checkout.store import InMemoryCheckoutStore

USER_ID = "user_1"
USER_TOKEN = "token_user_1"
PRODUCT_ID = "prod_tee"


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> CheckoutSettings:
    """Settings isolated from the environment and any .env file."""
    return CheckoutSettings(
        _env_file=None,
        app_url="https://shop.test",
        cleanup_interval_seconds=0,
    )


@pytest.fixture
def store() -> InMemoryCheckoutStore:
    """Store with one product, one user and a single-line cart."""
    store = InMemoryCheckoutStore()
    store.add_product(Product(
        id=PRODUCT_ID,
        name="Tour T-Shirt",
        price=Decimal("100.00"),
        stock_quantity=10,
        description="Black tee, 2025 tour",
        image="https://cdn.shop.test/tee.png",
    ))
    store.set_user_email(USER_ID, "fan@example.com")
    store.add_cart_line(USER_ID, PRODUCT_ID, 1)
    return store


@pytest.fixture
def gateway() -> SimulatedPaymentGateway:
    return SimulatedPaymentGateway(webhook_secret="whsec_test")


@pytest.fixture
def breaker(clock) -> CircuitBreaker:
    return CircuitBreaker("simulated", CircuitBreakerConfig(failure_threshold=5, reset_timeout=60.0), clock=clock)


@pytest.fixture
def rate_limiter(clock) -> TokenBucketRateLimiter:
    return TokenBucketRateLimiter(RateLimitConfig(capacity=5, refill_rate=5, window_seconds=60.0), clock=clock)


@pytest.fixture
def service(store, gateway, settings, rate_limiter, breaker) -> CheckoutService:
    return CheckoutService(
        store,
        gateway,
        settings,
        rate_limiter=rate_limiter,
        breaker=breaker,
    )


@pytest.fixture
def app(service):
    """Create a test application instance."""
    identity = StaticTokenIdentityProvider({USER_TOKEN: USER_ID})
    return create_app(service=service, identity=identity)


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client authenticated as USER_ID."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"Authorization": f"Bearer {USER_TOKEN}"},
    ) as ac:
        yield ac


@pytest.fixture
async def anon_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an unauthenticated async test client."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
