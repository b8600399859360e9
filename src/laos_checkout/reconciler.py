"""
Webhook-driven order reconciliation.

After an order is created, its status and payment status change only here.
Each gateway event is applied in a single store transaction that also
records the event id, so a redelivered event is recognised and skipped
instead of decrementing stock or clearing the cart a second time.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Optional

from .exceptions import (
    CheckoutError,
    OrderNotFoundError,
    WebhookEventNotSupported,
    WebhookProcessingError,
)
from .gateway import GatewayEvent
from .models import Order, OrderStatus, PaymentLogEntry, PaymentStatus, utcnow
from .store import CheckoutStore, StoreTransaction

logger = logging.getLogger(__name__)

SESSION_COMPLETED = "checkout.session.completed"
SESSION_EXPIRED = "checkout.session.expired"
PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
PAYMENT_CANCELED = "payment_intent.canceled"


@dataclass
class ReconcileResult:
    """Outcome of applying one event."""
    event_id: str
    event_type: str
    duplicate: bool = False
    order_id: Optional[str] = None


def _minor_to_amount(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return Decimal(int(value)) / Decimal(100)


def _shipping_fields(session: Dict[str, Any]) -> Dict[str, str]:
    """Order shipping fields present on a completed session."""
    details = session.get("shipping_details")
    if not details:
        details = (session.get("collected_information") or {}).get("shipping_details")
    if not details:
        return {}

    address = details.get("address") or {}
    candidates = {
        "shipping_name": details.get("name"),
        "shipping_address": address.get("line1"),
        "shipping_city": address.get("city"),
        "shipping_state": address.get("state"),
        "shipping_zip_code": address.get("postal_code"),
    }
    return {key: value for key, value in candidates.items() if value}


class WebhookReconciler:
    """
    Applies verified gateway events to persisted orders.

    Concurrent deliveries of the same event id within this process share
    one processing task; later arrivals wait for it and report a duplicate.
    """

    def __init__(
        self,
        store: CheckoutStore,
        now: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._now = now
        self._inflight: Dict[str, "asyncio.Task[ReconcileResult]"] = {}
        self._handlers: Dict[
            str, Callable[[StoreTransaction, GatewayEvent], Awaitable[Optional[str]]]
        ] = {
            SESSION_COMPLETED: self._on_session_completed,
            SESSION_EXPIRED: self._on_session_expired,
            PAYMENT_SUCCEEDED: self._on_payment_succeeded,
            PAYMENT_FAILED: self._on_payment_failed,
            PAYMENT_CANCELED: self._on_payment_canceled,
        }

    def supports(self, event_type: str) -> bool:
        return event_type in self._handlers

    async def handle(self, event: GatewayEvent) -> ReconcileResult:
        """
        Apply ``event`` exactly once.

        Raises:
            WebhookEventNotSupported: If no handler exists for the event type
            WebhookProcessingError: If applying the event failed; nothing was
                written and the event may be redelivered
        """
        if not self.supports(event.type):
            raise WebhookEventNotSupported(event.type)

        running = self._inflight.get(event.id)
        if running is not None:
            logger.info("Webhook event %s already in progress, waiting", event.id)
            await asyncio.shield(running)
            return ReconcileResult(event.id, event.type, duplicate=True)

        task = asyncio.ensure_future(self._process(event))
        self._inflight[event.id] = task
        task.add_done_callback(lambda _: self._inflight.pop(event.id, None))
        return await asyncio.shield(task)

    async def _process(self, event: GatewayEvent) -> ReconcileResult:
        handler = self._handlers[event.type]
        try:
            async with self._store.transaction() as tx:
                if await tx.has_processed_event(event.id):
                    logger.info("Duplicate webhook event %s ignored", event.id)
                    return ReconcileResult(event.id, event.type, duplicate=True)

                order_id = await handler(tx, event)
                await tx.mark_event_processed(event.id, event.type)
        except Exception as exc:
            logger.error(
                "Webhook processing failed for %s (%s)",
                event.id,
                event.type,
                exc_info=True,
            )
            reason = exc.message if isinstance(exc, CheckoutError) else type(exc).__name__
            raise WebhookProcessingError(event.id, reason) from exc

        logger.info(
            "Webhook event %s processed",
            event.id,
            extra={"event_type": event.type, "order_id": order_id},
        )
        return ReconcileResult(event.id, event.type, order_id=order_id)

    # Handlers return the affected order id, or None when the event was a no-op

    async def _order_for_session(self, tx: StoreTransaction, session: Dict[str, Any]) -> Order:
        order = await tx.get_order_by_session(session["id"])
        if order is None:
            order_id = (session.get("metadata") or {}).get("orderId")
            if order_id:
                order = await tx.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(session_id=session["id"])
        return order

    async def _on_session_completed(self, tx: StoreTransaction, event: GatewayEvent) -> Optional[str]:
        session = event.data_object
        order = await self._order_for_session(tx, session)

        if order.payment_status == PaymentStatus.SUCCEEDED:
            logger.warning("Order %s already paid, completion not reapplied", order.id)
            return order.id

        method_types = session.get("payment_method_types") or []
        payment_intent = session.get("payment_intent")
        if isinstance(payment_intent, dict):
            payment_intent = payment_intent.get("id")

        await tx.update_order(
            order.id,
            status=OrderStatus.PROCESSING,
            payment_status=PaymentStatus.SUCCEEDED,
            payment_method="PIX" if "pix" in method_types else "CARD",
            gateway_payment_intent_id=payment_intent,
            gateway_session_id=session["id"],
            paid_at=self._now(),
            **_shipping_fields(session),
        )

        for line in order.items:
            await tx.decrement_stock(line.product_id, line.quantity)

        removed = await tx.clear_cart(order.user_id)
        logger.debug("Cleared %d cart lines for user %s", removed, order.user_id)

        await tx.add_payment_log(PaymentLogEntry(
            order_id=order.id,
            event=event.type,
            status="succeeded",
            amount=_minor_to_amount(session.get("amount_total")),
            currency=session.get("currency"),
            gateway_event_id=event.id,
            raw_data=event.raw,
        ))
        return order.id

    async def _on_session_expired(self, tx: StoreTransaction, event: GatewayEvent) -> Optional[str]:
        order = await self._order_for_session(tx, event.data_object)

        if order.payment_status == PaymentStatus.SUCCEEDED:
            logger.warning("Expiry for paid order %s ignored", order.id)
            return order.id

        await tx.update_order(
            order.id,
            status=OrderStatus.CANCELED,
            payment_status=PaymentStatus.CANCELED,
            canceled_at=self._now(),
        )
        return order.id

    async def _order_for_intent(
        self, tx: StoreTransaction, intent: Dict[str, Any]
    ) -> Optional[Order]:
        order_id = (intent.get("metadata") or {}).get("orderId")
        if not order_id:
            return None
        order = await tx.get_order(order_id)
        if order is None:
            raise OrderNotFoundError(order_id=order_id)
        return order

    def _intent_log(
        self,
        order: Order,
        event: GatewayEvent,
        status: str,
        error_message: Optional[str] = None,
    ) -> PaymentLogEntry:
        intent = event.data_object
        return PaymentLogEntry(
            order_id=order.id,
            event=event.type,
            status=status,
            amount=_minor_to_amount(intent.get("amount")),
            currency=intent.get("currency"),
            gateway_event_id=event.id,
            raw_data=event.raw,
            error_message=error_message,
        )

    async def _on_payment_succeeded(self, tx: StoreTransaction, event: GatewayEvent) -> Optional[str]:
        order = await self._order_for_intent(tx, event.data_object)
        if order is None:
            return None
        await tx.add_payment_log(self._intent_log(order, event, "succeeded"))
        return order.id

    async def _on_payment_failed(self, tx: StoreTransaction, event: GatewayEvent) -> Optional[str]:
        intent = event.data_object
        order = await self._order_for_intent(tx, intent)
        if order is None:
            return None

        await tx.update_order(order.id, payment_status=PaymentStatus.FAILED)
        error = (intent.get("last_payment_error") or {}).get("message")
        await tx.add_payment_log(self._intent_log(order, event, "failed", error_message=error))
        return order.id

    async def _on_payment_canceled(self, tx: StoreTransaction, event: GatewayEvent) -> Optional[str]:
        order = await self._order_for_intent(tx, event.data_object)
        if order is None:
            return None

        await tx.update_order(
            order.id,
            status=OrderStatus.CANCELED,
            payment_status=PaymentStatus.CANCELED,
            canceled_at=self._now(),
        )
        await tx.add_payment_log(self._intent_log(order, event, "canceled"))
        return order.id
