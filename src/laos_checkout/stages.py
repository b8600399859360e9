"""The four checkout pipeline stages."""
from __future__ import annotations

import logging
import secrets
import string
import time
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from .circuit_breaker import CircuitBreaker
from .config import CheckoutSettings
from .exceptions import EmptyCartError, StockUnavailableError, TooManyItemsError
from .gateway import GatewaySessionRequest, PaymentGateway
from .models import (
    CheckoutContext,
    Order,
    OrderLine,
    OrderStatus,
    PaymentLogEntry,
    PaymentMethod,
    PaymentStatus,
    StockReservation,
    new_id,
    utcnow,
)
from .pipeline import PipelineStage
from .pricing import PricingRules, line_total, summarize_cart, to_cents, to_minor_units
from .reservations import ReservationStore
from .store import CheckoutStore

logger = logging.getLogger(__name__)

_ORDER_SUFFIX_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number() -> str:
    """``LAOS-<epoch ms>-<9 uppercase alphanumerics>``."""
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(9))
    return f"LAOS-{int(time.time() * 1000)}-{suffix}"


class LoadCartStage(PipelineStage):
    """Loads the user's cart lines with product snapshots. Read-only."""

    name = "LoadCart"

    def __init__(self, store: CheckoutStore, max_items: int = 50):
        self._store = store
        self._max_items = max_items

    async def execute(self, context: CheckoutContext) -> CheckoutContext:
        async with self._store.transaction() as tx:
            cart_items = await tx.list_cart_lines(context.user_id)

        if not cart_items:
            raise EmptyCartError()
        if len(cart_items) > self._max_items:
            raise TooManyItemsError(len(cart_items), self._max_items)

        return replace(context, cart_items=cart_items)


class ValidateStockStage(PipelineStage):
    """
    Checks every cart line against available stock and places soft holds.

    All violations are collected before failing. Available stock is the
    product's stock minus units already held by other in-flight checkouts.
    """

    name = "ValidateStock"

    def __init__(self, reservations: ReservationStore):
        self._reservations = reservations

    async def execute(self, context: CheckoutContext) -> CheckoutContext:
        unavailable: List[Dict[str, Any]] = []

        for item in context.cart_items:
            product = item.product
            held = await self._reservations.held_quantity(item.product_id)
            available = max(0, product.stock_quantity - held) if product.in_stock else 0
            if not product.in_stock or item.quantity > available:
                unavailable.append({
                    "productId": item.product_id,
                    "name": product.name,
                    "available": available,
                })

        if unavailable:
            raise StockUnavailableError(unavailable)

        reservations = [
            StockReservation(product_id=item.product_id, quantity=item.quantity)
            for item in context.cart_items
        ]
        await self._reservations.hold(reservations)
        return replace(context, stock_reservations=reservations)

    async def compensate(self, context: CheckoutContext) -> None:
        if context.stock_reservations:
            await self._reservations.release(context.stock_reservations)


class CalculateTotalsStage(PipelineStage):
    """Prices the cart. No side effects."""

    name = "CalculateTotals"

    def __init__(self, rules: Optional[PricingRules] = None):
        self._rules = rules

    async def execute(self, context: CheckoutContext) -> CheckoutContext:
        summary = summarize_cart(context.cart_items, self._rules)
        logger.info(
            "Order totals calculated",
            extra={"total": str(summary.total), "item_count": len(context.cart_items)},
        )
        return replace(context, order_summary=summary)


class CreateGatewaySessionStage(PipelineStage):
    """
    Persists a PENDING order and opens a gateway checkout session for it.

    Two phases: the order is committed first, the gateway is called through
    the circuit breaker outside any transaction, and the session id is
    attached in a second transaction together with the ``checkout.initiated``
    log. If anything after the first commit fails, the order is canceled (and
    any session expired) before the error propagates.
    """

    name = "CreateGatewaySession"

    def __init__(
        self,
        store: CheckoutStore,
        gateway: PaymentGateway,
        breaker: CircuitBreaker,
        settings: CheckoutSettings,
        now: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._gateway = gateway
        self._breaker = breaker
        self._settings = settings
        self._now = now

    async def execute(self, context: CheckoutContext) -> CheckoutContext:
        order, email = await self._create_pending_order(context)
        request = self.build_session_request(context, order, email)

        try:
            session = await self._breaker.execute(
                lambda: self._gateway.create_checkout_session(request)
            )
        except Exception:
            await self._cancel_order(order.id)
            raise

        try:
            async with self._store.transaction() as tx:
                await tx.attach_session(order.id, session.id)
                await tx.add_payment_log(self._initiated_log(context, order, session.id))
        except Exception:
            await self._expire_session(session.id)
            await self._cancel_order(order.id)
            raise

        logger.info(
            "Gateway session %s created for order %s",
            session.id,
            order.id,
            extra={"order_number": order.order_number},
        )
        return replace(
            context,
            gateway_session_id=session.id,
            gateway_session_url=session.url,
            gateway_session_expires_at=session.expires_at,
            order_id=order.id,
        )

    async def compensate(self, context: CheckoutContext) -> None:
        if context.gateway_session_id:
            await self._expire_session(context.gateway_session_id)
        if context.order_id:
            await self._cancel_order(context.order_id)

    async def _create_pending_order(self, context: CheckoutContext):
        summary = context.order_summary
        if summary is None:
            raise RuntimeError("CreateGatewaySession requires calculated totals")

        async with self._store.transaction() as tx:
            product_ids = [item.product_id for item in context.cart_items]
            products = await tx.get_products(product_ids)
            missing = [
                {"productId": item.product_id, "name": item.product.name, "available": 0}
                for item in context.cart_items
                if item.product_id not in products
            ]
            if missing:
                raise StockUnavailableError(missing)

            email = await tx.get_user_email(context.user_id)
            shipping = context.request.shipping
            order = Order(
                id=new_id("ord"),
                user_id=context.user_id,
                order_number=generate_order_number(),
                subtotal=summary.subtotal,
                tax=summary.tax,
                shipping=summary.shipping,
                total=summary.total,
                items=[
                    OrderLine(
                        product_id=item.product_id,
                        quantity=item.quantity,
                        price=item.product.price,
                        total=to_cents(line_total(item.product.price, item.quantity)),
                    )
                    for item in context.cart_items
                ],
                shipping_name=shipping.name if shipping else None,
                shipping_address=shipping.address if shipping else None,
                shipping_city=shipping.city if shipping else None,
                shipping_state=shipping.state if shipping else None,
                shipping_zip_code=shipping.zip_code if shipping else None,
                shipping_phone=shipping.phone if shipping else None,
            )
            await tx.create_order(order)

        return order, email

    def build_session_request(
        self,
        context: CheckoutContext,
        order: Order,
        customer_email: Optional[str] = None,
    ) -> GatewaySessionRequest:
        settings = self._settings
        request = context.request
        base_url = settings.app_url

        success_url = request.success_url or (
            f"{base_url}/checkout/success?session_id={{CHECKOUT_SESSION_ID}}"
        )
        cancel_url = request.cancel_url or f"{base_url}/checkout/cancel"

        metadata: Dict[str, str] = {}
        if request.metadata:
            metadata.update(request.metadata.as_strings())
        metadata.update({
            "orderTotal": str(order.total),
            "itemCount": str(len(context.cart_items)),
            "orderId": order.id,
            "userId": context.user_id,
        })

        line_items = []
        for item in context.cart_items:
            product = item.product
            if product.gateway_price_id:
                line_items.append({"price": product.gateway_price_id, "quantity": item.quantity})
                continue
            product_data: Dict[str, Any] = {
                "name": product.name,
                "metadata": {"productId": product.id},
            }
            if product.description:
                product_data["description"] = product.description
            if product.image:
                product_data["images"] = [product.image]
            line_items.append({
                "price_data": {
                    "currency": settings.currency,
                    "product_data": product_data,
                    "unit_amount": to_minor_units(product.price),
                },
                "quantity": item.quantity,
            })

        payment_method_options: Dict[str, Any] = {}
        if request.payment_method == PaymentMethod.PIX:
            payment_method_options["pix"] = {
                "expires_after_seconds": settings.pix_expires_after_seconds,
            }

        expires_at = self._now() + timedelta(minutes=settings.session_expiration_minutes)

        return GatewaySessionRequest(
            payment_method_types=[request.payment_method.value],
            line_items=line_items,
            success_url=success_url,
            cancel_url=cancel_url,
            expires_at=int(expires_at.timestamp()),
            metadata=metadata,
            payment_intent_metadata={"orderId": order.id, "userId": context.user_id},
            customer_email=customer_email,
            payment_method_options=payment_method_options,
            allowed_countries=list(settings.allowed_shipping_countries),
            locale=settings.locale,
        )

    def _initiated_log(self, context: CheckoutContext, order: Order, session_id: str) -> PaymentLogEntry:
        request = context.request
        return PaymentLogEntry(
            order_id=order.id,
            event="checkout.initiated",
            status="pending",
            amount=order.total,
            currency=self._settings.currency.upper(),
            raw_data={
                "sessionId": session_id,
                "paymentMethod": request.payment_method.value,
                "metadata": request.metadata.as_strings() if request.metadata else {},
            },
        )

    async def _expire_session(self, session_id: str) -> None:
        try:
            await self._gateway.expire_session(session_id)
        except Exception:
            logger.warning("Could not expire gateway session %s", session_id, exc_info=True)

    async def _cancel_order(self, order_id: str) -> None:
        try:
            async with self._store.transaction() as tx:
                await tx.update_order(
                    order_id,
                    status=OrderStatus.CANCELED,
                    payment_status=PaymentStatus.CANCELED,
                    canceled_at=self._now(),
                )
        except Exception:
            logger.error("Could not cancel order %s", order_id, exc_info=True)
        else:
            logger.info("Order %s canceled", order_id)


def build_default_stages(
    store: CheckoutStore,
    reservations: ReservationStore,
    gateway: PaymentGateway,
    breaker: CircuitBreaker,
    settings: CheckoutSettings,
) -> List[PipelineStage]:
    """Stages in execution order."""
    return [
        LoadCartStage(store, max_items=settings.max_items_per_order),
        ValidateStockStage(reservations),
        CalculateTotalsStage(PricingRules.from_settings(settings)),
        CreateGatewaySessionStage(store, gateway, breaker, settings),
    ]

