"""
Checkout service: wires the pipeline, resilience guards and persistence.

Every collaborator is constructed once and injected, so tests build a fresh
service (with its own breaker and limiter) per case.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .config import CheckoutSettings
from .exceptions import RateLimitExceededError, WebhookRateLimitExceeded
from .gateway import PaymentGateway, SimulatedPaymentGateway, StripeGateway
from .models import (
    CheckoutContext,
    CheckoutRequest,
    CheckoutResult,
    OrderStatus,
    PaymentStatus,
    utcnow,
)
from .pipeline import CheckoutPipeline
from .rate_limiter import (
    RateLimitConfig,
    RateLimitResult,
    SlidingWindowRateLimiter,
    TokenBucketRateLimiter,
)
from .reconciler import WebhookReconciler
from .reservations import InMemoryReservationStore, ReservationStore
from .stages import build_default_stages
from .store import CheckoutStore, InMemoryCheckoutStore

logger = logging.getLogger(__name__)


class CheckoutService:
    """
    Entry point for checkout attempts and their maintenance.

    Usage:
        service = CheckoutService(store, gateway, settings)
        await service.enforce_rate_limit(user_id)
        result = await service.checkout(user_id, request)
    """

    def __init__(
        self,
        store: CheckoutStore,
        gateway: PaymentGateway,
        settings: Optional[CheckoutSettings] = None,
        rate_limiter: Optional[TokenBucketRateLimiter] = None,
        breaker: Optional[CircuitBreaker] = None,
        reservations: Optional[ReservationStore] = None,
        pipeline: Optional[CheckoutPipeline] = None,
        webhook_limiter: Optional[SlidingWindowRateLimiter] = None,
        now: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings if settings is not None else CheckoutSettings()
        self.store = store
        self.gateway = gateway
        self._now = now

        if rate_limiter is None:
            rl = self.settings.rate_limit
            rate_limiter = TokenBucketRateLimiter(
                RateLimitConfig(
                    capacity=rl.capacity,
                    refill_rate=rl.refill_rate,
                    window_seconds=rl.window_seconds,
                    max_buckets=rl.max_buckets,
                )
            )
        if breaker is None:
            cb = self.settings.circuit_breaker
            breaker = CircuitBreaker(
                gateway.name,
                CircuitBreakerConfig(
                    failure_threshold=cb.failure_threshold,
                    reset_timeout=cb.reset_timeout,
                ),
            )
        self.rate_limiter = rate_limiter
        self.breaker = breaker
        self.reservations = reservations if reservations is not None else InMemoryReservationStore()
        if pipeline is None:
            pipeline = CheckoutPipeline(
                build_default_stages(store, self.reservations, gateway, breaker, self.settings)
            )
        self.pipeline = pipeline
        if webhook_limiter is None:
            webhook_limiter = SlidingWindowRateLimiter(
                max_events=self.settings.webhook_max_events_per_minute,
                window_seconds=60.0,
            )
        self.webhook_limiter = webhook_limiter
        self.reconciler = WebhookReconciler(store, now=now)

    @classmethod
    def from_settings(cls, settings: CheckoutSettings) -> "CheckoutService":
        """Build the store and gateway selected by configuration."""
        store: CheckoutStore
        if settings.use_postgres:
            from .store_postgres import PostgresCheckoutStore

            store = PostgresCheckoutStore(
                settings.database_url,
                max_wait=settings.transaction.max_wait,
                timeout=settings.transaction.timeout,
            )
        else:
            store = InMemoryCheckoutStore(max_wait=settings.transaction.max_wait)

        gateway: PaymentGateway
        if settings.use_stripe:
            gateway = StripeGateway(
                settings.stripe_secret_key,
                webhook_secret=settings.stripe_webhook_secret,
                webhook_tolerance=settings.webhook_tolerance_seconds,
            )
        else:
            if settings.is_production:
                raise RuntimeError("Stripe secret key is required in production")
            logger.warning("No Stripe key configured, using simulated payment gateway")
            gateway = SimulatedPaymentGateway(
                webhook_secret=settings.stripe_webhook_secret or "whsec_simulated",
                webhook_tolerance=settings.webhook_tolerance_seconds,
            )

        return cls(store, gateway, settings)

    async def enforce_rate_limit(self, user_id: str) -> RateLimitResult:
        """
        Consume one checkout attempt for ``user_id``.

        Raises:
            RateLimitExceededError: If the user has no attempts left
        """
        result = await self.rate_limiter.check_limit(f"checkout:{user_id}")
        if not result.allowed:
            logger.warning("Checkout rate limit exceeded for user %s", user_id)
            raise RateLimitExceededError(
                result.retry_after_seconds or 1,
                limit=self.rate_limiter.config.capacity,
            )
        return result

    async def enforce_webhook_rate_limit(self) -> RateLimitResult:
        """
        Count one inbound webhook delivery against the per-minute budget.

        Raises:
            WebhookRateLimitExceeded: If the window is full
        """
        result = await self.webhook_limiter.check()
        if not result.allowed:
            logger.warning("Webhook rate limit exceeded")
            raise WebhookRateLimitExceeded(
                result.retry_after_seconds or 1,
                limit=self.webhook_limiter.max_events,
            )
        return result

    async def checkout(self, user_id: str, request: CheckoutRequest) -> CheckoutResult:
        """
        Run the checkout pipeline and return the gateway redirect.

        Raises:
            CheckoutError: Any typed stage failure, after compensation
        """
        context = CheckoutContext(user_id=user_id, request=request)
        context = await self.pipeline.execute(context)

        # Holds only cover the attempt itself; the PENDING order now exists
        if context.stock_reservations:
            await self.reservations.release(context.stock_reservations)

        summary = context.order_summary
        logger.info(
            "Checkout session created",
            extra={
                "order_id": context.order_id,
                "session_id": context.gateway_session_id,
                "total": str(summary.total),
                "payment_method": request.payment_method.value,
            },
        )
        return CheckoutResult(
            session_id=context.gateway_session_id,
            url=context.gateway_session_url,
            expires_at=context.gateway_session_expires_at,
            order_id=context.order_id,
            summary=summary,
        )

    async def sweep_abandoned_orders(self) -> int:
        """
        Cancel PENDING orders older than the abandoned-order TTL.

        Orders whose gateway session was already paid are left for the
        completion webhook; open sessions are expired first (best effort).

        Returns:
            Number of orders canceled.
        """
        cutoff = self._now() - timedelta(minutes=self.settings.abandoned_order_ttl_minutes)
        async with self.store.transaction() as tx:
            abandoned = await tx.list_abandoned_orders(cutoff)

        canceled = 0
        for order in abandoned:
            if order.gateway_session_id:
                try:
                    session = await self.gateway.retrieve_session(order.gateway_session_id)
                    if session.payment_status == "paid":
                        # Completion webhook still pending
                        continue
                    if session.status == "open":
                        await self.gateway.expire_session(order.gateway_session_id)
                except Exception:
                    logger.warning(
                        "Could not expire session %s of abandoned order %s",
                        order.gateway_session_id,
                        order.id,
                        exc_info=True,
                    )
            async with self.store.transaction() as tx:
                current = await tx.get_order(order.id)
                if current is None or current.status != OrderStatus.PENDING:
                    continue
                await tx.update_order(
                    order.id,
                    status=OrderStatus.CANCELED,
                    payment_status=PaymentStatus.CANCELED,
                    canceled_at=self._now(),
                )
            canceled += 1

        if canceled:
            logger.info("Canceled %d abandoned orders", canceled)
        return canceled

    async def cleanup(self) -> Dict[str, int]:
        """Periodic maintenance: idle rate-limit buckets and abandoned orders."""
        buckets = await self.rate_limiter.sweep()
        orders = await self.sweep_abandoned_orders()
        return {"rateLimitBuckets": buckets, "abandonedOrders": orders}

    async def close(self) -> None:
        await self.store.close()
