"""Tests for laos_checkout.service."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from conftest import PRODUCT_ID, USER_ID
from laos_checkout.config import CheckoutSettings
from laos_checkout.exceptions import (
    PaymentGatewayError,
    RateLimitExceededError,
    StockUnavailableError,
)
from laos_checkout.gateway import SimulatedPaymentGateway
from laos_checkout.models import CheckoutRequest, OrderStatus, PaymentStatus, StockReservation
from laos_checkout.reservations import InMemoryReservationStore
from laos_checkout.service import CheckoutService
from laos_checkout.store import InMemoryCheckoutStore

CARD = CheckoutRequest.model_validate({"paymentMethod": "card"})


class MovableNow:
    def __init__(self):
        self.value = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.value


class TestCheckout:
    """Tests for CheckoutService.checkout."""

    @pytest.mark.asyncio
    async def test_returns_session(self, service, store):
        """Should return the session, order id and summary."""
        result = await service.checkout(USER_ID, CARD)

        [order] = store.orders()
        assert result.order_id == order.id
        assert result.session_id == order.gateway_session_id
        assert result.url is not None

        [log] = store.payment_logs(order.id)
        assert log.event == "checkout.initiated"
        assert log.status == "pending"
        assert log.currency == "BRL"
        assert log.raw_data["sessionId"] == result.session_id

    @pytest.mark.asyncio
    async def test_result_comes_from_created_session(self, service, store, gateway, monkeypatch):
        """Should answer from the created session without a second gateway call."""
        async def unavailable(session_id):
            raise PaymentGatewayError(original_error="retrieve disabled")

        monkeypatch.setattr(gateway, "retrieve_session", unavailable)
        result = await service.checkout(USER_ID, CARD)

        [order] = store.orders()
        assert order.status == OrderStatus.PENDING
        assert result.url.endswith(result.session_id)
        assert result.expires_at is not None
        assert gateway.expired == []

    @pytest.mark.asyncio
    async def test_releases_holds_after_success(self, service):
        """Should not keep soft holds once the order exists."""
        await service.checkout(USER_ID, CARD)
        assert await service.reservations.held_quantity(PRODUCT_ID) == 0

    @pytest.mark.asyncio
    async def test_releases_holds_after_failure(self, service, gateway):
        """Should release holds when a later stage fails."""
        gateway.fail_next()
        with pytest.raises(PaymentGatewayError):
            await service.checkout(USER_ID, CARD)
        assert await service.reservations.held_quantity(PRODUCT_ID) == 0

    @pytest.mark.asyncio
    async def test_stock_is_not_decremented_at_checkout(self, service, store):
        """Should leave stock untouched until payment completes."""
        await service.checkout(USER_ID, CARD)
        assert store.get_product(PRODUCT_ID).stock_quantity == 10

    @pytest.mark.asyncio
    async def test_held_stock_blocks_concurrent_attempt(self, service, store):
        """Should count another attempt's holds against availability."""
        await service.reservations.hold([StockReservation(PRODUCT_ID, 10)])
        with pytest.raises(StockUnavailableError):
            await service.checkout(USER_ID, CARD)
        assert store.orders() == []


class TestEnforceRateLimit:
    """Tests for CheckoutService.enforce_rate_limit."""

    @pytest.mark.asyncio
    async def test_limit_per_user(self, service):
        """Should raise once a user exhausts their attempts."""
        for _ in range(5):
            await service.enforce_rate_limit(USER_ID)

        with pytest.raises(RateLimitExceededError) as exc_info:
            await service.enforce_rate_limit(USER_ID)
        assert exc_info.value.retry_after == 60
        assert exc_info.value.limit == 5

        # Other users are unaffected
        await service.enforce_rate_limit("user_2")


class TestSweepAbandonedOrders:
    """Tests for CheckoutService.sweep_abandoned_orders."""

    @pytest.fixture
    def now(self):
        return MovableNow()

    @pytest.fixture
    def swept_service(self, store, gateway, settings, rate_limiter, breaker, now):
        return CheckoutService(
            store,
            gateway,
            settings,
            rate_limiter=rate_limiter,
            breaker=breaker,
            now=now,
        )

    @staticmethod
    def _age_orders(store, minutes):
        for order in store.orders():
            order.created_at = order.created_at - timedelta(minutes=minutes)

    @pytest.mark.asyncio
    async def test_cancels_stale_orders(self, swept_service, store, gateway, now):
        """Should expire the session and cancel orders older than the TTL."""
        result = await swept_service.checkout(USER_ID, CARD)
        now.value = datetime.now(timezone.utc)
        self._age_orders(store, 61)

        canceled = await swept_service.sweep_abandoned_orders()

        assert canceled == 1
        order = store.orders()[0]
        assert order.status == OrderStatus.CANCELED
        assert order.payment_status == PaymentStatus.CANCELED
        assert gateway.expired == [result.session_id]

    @pytest.mark.asyncio
    async def test_keeps_recent_orders(self, swept_service, store, now):
        """Should leave orders younger than the TTL alone."""
        await swept_service.checkout(USER_ID, CARD)
        now.value = datetime.now(timezone.utc)
        self._age_orders(store, 30)

        assert await swept_service.sweep_abandoned_orders() == 0
        assert store.orders()[0].status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_skips_paid_sessions(self, swept_service, store, gateway, now):
        """Should wait for the completion webhook when the session is paid."""
        result = await swept_service.checkout(USER_ID, CARD)
        gateway.session_completed_object(result.session_id, 13500)
        now.value = datetime.now(timezone.utc)
        self._age_orders(store, 61)

        assert await swept_service.sweep_abandoned_orders() == 0
        assert store.orders()[0].status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_cleanup_reports_counts(self, swept_service, store, rate_limiter, clock, now):
        """Should sweep idle buckets and abandoned orders together."""
        await swept_service.enforce_rate_limit(USER_ID)
        await swept_service.checkout(USER_ID, CARD)
        now.value = datetime.now(timezone.utc)
        self._age_orders(store, 61)
        clock.advance(121)

        stats = await swept_service.cleanup()

        assert stats == {"rateLimitBuckets": 1, "abandonedOrders": 1}
        assert len(rate_limiter) == 0


class TestCheckoutServiceWiring:
    """Tests for CheckoutService collaborator injection."""

    def test_keeps_injected_collaborators(self, store, gateway, settings, rate_limiter, breaker):
        """Should use injected instances even when they are empty."""
        reservations = InMemoryReservationStore()
        assert len(rate_limiter) == 0

        service = CheckoutService(
            store,
            gateway,
            settings,
            rate_limiter=rate_limiter,
            breaker=breaker,
            reservations=reservations,
        )

        assert service.settings is settings
        assert service.rate_limiter is rate_limiter
        assert service.breaker is breaker
        assert service.reservations is reservations
        assert service.webhook_limiter.max_events == settings.webhook_max_events_per_minute


class TestFromSettings:
    """Tests for CheckoutService.from_settings."""

    def test_defaults_to_in_memory_and_simulated(self):
        """Should pick the in-memory store and simulated gateway without credentials."""
        service = CheckoutService.from_settings(CheckoutSettings(_env_file=None))

        assert isinstance(service.store, InMemoryCheckoutStore)
        assert isinstance(service.gateway, SimulatedPaymentGateway)
        assert service.breaker.name == "simulated"

    def test_production_requires_stripe_key(self):
        """Should refuse to start in production without a Stripe key."""
        with pytest.raises(RuntimeError):
            CheckoutService.from_settings(CheckoutSettings(_env_file=None, environment="prod"))
