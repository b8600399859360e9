"""Tests for laos_checkout.reconciler."""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from conftest import PRODUCT_ID, USER_ID
from laos_checkout.exceptions import WebhookEventNotSupported, WebhookProcessingError
from laos_checkout.gateway import GatewayEvent
from laos_checkout.models import CheckoutRequest, OrderStatus, PaymentStatus
from laos_checkout.reconciler import (
    PAYMENT_CANCELED,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    SESSION_COMPLETED,
    SESSION_EXPIRED,
    WebhookReconciler,
)

PAID_AT = datetime(2025, 3, 1, 12, 30, tzinfo=timezone.utc)


@pytest.fixture
def reconciler(store):
    return WebhookReconciler(store, now=lambda: PAID_AT)


@pytest.fixture
async def checkout(service):
    """A completed checkout attempt: PENDING order with an open session."""
    return await service.checkout(USER_ID, CheckoutRequest.model_validate({"paymentMethod": "card"}))


def event(gateway, event_type, data_object, event_id=None) -> GatewayEvent:
    return GatewayEvent.from_payload(gateway.build_event(event_type, data_object, event_id=event_id))


def intent_object(order_id=None, **fields):
    obj = {"id": "pi_123", "object": "payment_intent", "amount": 13500, "currency": "brl"}
    obj["metadata"] = {"orderId": order_id} if order_id else {}
    obj.update(fields)
    return obj


class TestSessionCompleted:
    """Tests for checkout.session.completed."""

    @pytest.mark.asyncio
    async def test_marks_order_paid(self, reconciler, store, gateway, checkout):
        """Should move the order to PROCESSING/SUCCEEDED, consume stock and clear the cart."""
        session = gateway.session_completed_object(checkout.session_id, 13500)
        result = await reconciler.handle(event(gateway, SESSION_COMPLETED, session, "evt_1"))

        assert result.duplicate is False
        assert result.order_id == checkout.order_id

        [order] = store.orders()
        assert order.status == OrderStatus.PROCESSING
        assert order.payment_status == PaymentStatus.SUCCEEDED
        assert order.payment_method == "CARD"
        assert order.paid_at == PAID_AT
        assert order.gateway_payment_intent_id == session["payment_intent"]
        assert store.get_product(PRODUCT_ID).stock_quantity == 9
        assert store.cart_size(USER_ID) == 0
        assert "evt_1" in store.processed_event_ids()

        log = store.payment_logs(order.id)[-1]
        assert log.event == SESSION_COMPLETED
        assert log.status == "succeeded"
        assert log.amount == Decimal("135")
        assert log.gateway_event_id == "evt_1"

    @pytest.mark.asyncio
    async def test_replay_is_not_reapplied(self, reconciler, store, gateway, checkout):
        """Should report a redelivered event as duplicate without touching stock."""
        session = gateway.session_completed_object(checkout.session_id, 13500)
        completed = event(gateway, SESSION_COMPLETED, session, "evt_1")

        await reconciler.handle(completed)
        replay = await reconciler.handle(completed)

        assert replay.duplicate is True
        assert store.get_product(PRODUCT_ID).stock_quantity == 9
        assert len(store.payment_logs(checkout.order_id)) == 2  # initiated + completed

    @pytest.mark.asyncio
    async def test_second_event_for_paid_order_is_noop(self, reconciler, store, gateway, checkout):
        """Should not decrement stock again for a different event id."""
        session = gateway.session_completed_object(checkout.session_id, 13500)
        await reconciler.handle(event(gateway, SESSION_COMPLETED, session, "evt_1"))
        await reconciler.handle(event(gateway, SESSION_COMPLETED, session, "evt_2"))

        assert store.get_product(PRODUCT_ID).stock_quantity == 9

    @pytest.mark.asyncio
    async def test_pix_and_shipping(self, reconciler, store, gateway, checkout):
        """Should record PIX and copy the collected shipping address."""
        session = gateway.session_completed_object(
            checkout.session_id,
            13500,
            payment_method_types=["pix"],
            shipping={
                "name": "Ana Souza",
                "address": {
                    "line1": "Rua das Flores 100",
                    "city": "Sao Paulo",
                    "state": "SP",
                    "postal_code": "01310-100",
                    "country": "BR",
                },
            },
        )
        await reconciler.handle(event(gateway, SESSION_COMPLETED, session))

        [order] = store.orders()
        assert order.payment_method == "PIX"
        assert order.shipping_name == "Ana Souza"
        assert order.shipping_address == "Rua das Flores 100"
        assert order.shipping_zip_code == "01310-100"

    @pytest.mark.asyncio
    async def test_unknown_session_fails_and_writes_nothing(self, reconciler, store, gateway):
        """Should fail with WebhookProcessingError and leave the event unrecorded."""
        session = {"id": "cs_unknown", "metadata": {}, "amount_total": 100}

        with pytest.raises(WebhookProcessingError) as exc_info:
            await reconciler.handle(event(gateway, SESSION_COMPLETED, session, "evt_x"))

        assert exc_info.value.http_status == 500
        assert exc_info.value.details["eventId"] == "evt_x"
        assert store.processed_event_ids() == set()


class TestSessionExpired:
    """Tests for checkout.session.expired."""

    @pytest.mark.asyncio
    async def test_cancels_pending_order(self, reconciler, store, gateway, checkout):
        """Should cancel the order without touching stock or cart."""
        session = {"id": checkout.session_id, "metadata": {"orderId": checkout.order_id}}
        await reconciler.handle(event(gateway, SESSION_EXPIRED, session))

        [order] = store.orders()
        assert order.status == OrderStatus.CANCELED
        assert order.payment_status == PaymentStatus.CANCELED
        assert order.canceled_at == PAID_AT
        assert store.get_product(PRODUCT_ID).stock_quantity == 10
        assert store.cart_size(USER_ID) == 1

    @pytest.mark.asyncio
    async def test_paid_order_is_kept(self, reconciler, store, gateway, checkout):
        """Should ignore an expiry that arrives after payment."""
        completed = gateway.session_completed_object(checkout.session_id, 13500)
        await reconciler.handle(event(gateway, SESSION_COMPLETED, completed))
        await reconciler.handle(event(gateway, SESSION_EXPIRED, {"id": checkout.session_id}))

        assert store.orders()[0].status == OrderStatus.PROCESSING


class TestPaymentIntentEvents:
    """Tests for payment_intent.* events."""

    @pytest.mark.asyncio
    async def test_failed_marks_payment_failed(self, reconciler, store, gateway, checkout):
        """Should set FAILED and log the gateway's error message."""
        intent = intent_object(
            checkout.order_id,
            last_payment_error={"message": "Your card was declined."},
        )
        await reconciler.handle(event(gateway, PAYMENT_FAILED, intent))

        [order] = store.orders()
        assert order.payment_status == PaymentStatus.FAILED
        assert order.status == OrderStatus.PENDING

        log = store.payment_logs(order.id)[-1]
        assert log.status == "failed"
        assert log.error_message == "Your card was declined."

    @pytest.mark.asyncio
    async def test_failed_intent_from_checkout_finds_order(self, reconciler, store, gateway, checkout):
        """Should resolve the order from metadata the checkout put on the intent."""
        intent = gateway.payment_intent_object(checkout.session_id, status="requires_payment_method")
        await reconciler.handle(event(gateway, PAYMENT_FAILED, intent))

        [order] = store.orders()
        assert intent["metadata"]["orderId"] == checkout.order_id
        assert order.payment_status == PaymentStatus.FAILED

    @pytest.mark.asyncio
    async def test_canceled_cancels_order(self, reconciler, store, gateway, checkout):
        """Should cancel both statuses and log."""
        await reconciler.handle(event(gateway, PAYMENT_CANCELED, intent_object(checkout.order_id)))

        [order] = store.orders()
        assert order.status == OrderStatus.CANCELED
        assert order.payment_status == PaymentStatus.CANCELED
        assert store.payment_logs(order.id)[-1].status == "canceled"

    @pytest.mark.asyncio
    async def test_succeeded_only_logs(self, reconciler, store, gateway, checkout):
        """Should append a log entry without changing the order."""
        result = await reconciler.handle(event(gateway, PAYMENT_SUCCEEDED, intent_object(checkout.order_id)))

        [order] = store.orders()
        assert result.order_id == order.id
        assert order.payment_status == PaymentStatus.PENDING
        assert store.payment_logs(order.id)[-1].amount == Decimal("135")

    @pytest.mark.asyncio
    async def test_without_order_reference_is_noop(self, reconciler, store, gateway):
        """Should accept intents that carry no orderId."""
        result = await reconciler.handle(event(gateway, PAYMENT_SUCCEEDED, intent_object(), "evt_n"))

        assert result.order_id is None
        assert result.duplicate is False
        assert "evt_n" in store.processed_event_ids()


class TestReconcilerDispatch:
    """Tests for event dispatch and concurrency."""

    @pytest.mark.asyncio
    async def test_unsupported_event(self, reconciler, gateway):
        """Should raise WebhookEventNotSupported for unknown types."""
        with pytest.raises(WebhookEventNotSupported):
            await reconciler.handle(event(gateway, "customer.created", {"id": "cus_1"}))
        assert reconciler.supports(SESSION_COMPLETED)
        assert not reconciler.supports("customer.created")

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_apply_once(self, reconciler, store, gateway, checkout):
        """Should apply one of several simultaneous deliveries of the same event."""
        session = gateway.session_completed_object(checkout.session_id, 13500)
        completed = event(gateway, SESSION_COMPLETED, session, "evt_1")

        results = await asyncio.gather(*(reconciler.handle(completed) for _ in range(3)))

        assert sum(1 for r in results if not r.duplicate) == 1
        assert store.get_product(PRODUCT_ID).stock_quantity == 9
