"""Checkout, webhook and health endpoints."""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from ..exceptions import (
    AuthenticationRequiredError,
    CheckoutError,
    CheckoutValidationError,
    WebhookEventNotSupported,
    WebhookPayloadTooLarge,
    WebhookProcessingTimeout,
    WebhookSourceForbidden,
)
from ..logging_config import LogContext, generate_trace_id
from ..models import CheckoutRequest
from ..service import CheckoutService
from .auth import IdentityProvider
from .middleware import checkout_error_response, format_validation_errors

logger = logging.getLogger("laos_checkout.api")

router = APIRouter()

SIGNATURE_HEADER = "Stripe-Signature"


@dataclass
class CheckoutDependencies:
    service: CheckoutService
    identity: IdentityProvider


def get_deps() -> CheckoutDependencies:
    raise NotImplementedError("Dependency override required")


async def _parse_checkout_request(request: Request) -> CheckoutRequest:
    try:
        body = await request.json()
    except ValueError:
        raise CheckoutValidationError("Request body must be valid JSON")
    try:
        return CheckoutRequest.model_validate(body)
    except ValidationError as exc:
        raise CheckoutValidationError(errors=format_validation_errors(exc.errors()))


@router.post("/checkout")
async def create_checkout(
    request: Request,
    deps: CheckoutDependencies = Depends(get_deps),
) -> JSONResponse:
    """Start a checkout for the caller's cart and return the gateway redirect.

    The rate limit is consumed before the body is parsed, so malformed
    requests count against the caller too.
    """
    start = time.perf_counter()

    user = await deps.identity.validate_request(request)
    if user is None:
        raise AuthenticationRequiredError()

    with LogContext(user_id=user.id):
        await deps.service.enforce_rate_limit(user.id)
        checkout_request = await _parse_checkout_request(request)
        result = await deps.service.checkout(user.id, checkout_request)

    elapsed_ms = int((time.perf_counter() - start) * 1000)
    return JSONResponse(
        content={"success": True, "data": result.to_dict()},
        headers={
            "X-Response-Time": f"{elapsed_ms}ms",
            "X-Order-Id": result.order_id,
        },
    )


def client_ip(request: Request) -> str:
    """Sender address, preferring reverse-proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else "unknown"


@router.post("/checkout/webhook")
async def handle_gateway_webhook(
    request: Request,
    deps: CheckoutDependencies = Depends(get_deps),
) -> JSONResponse:
    """Receive a signed gateway event and reconcile the order it refers to.

    Handled outcomes, accepted or rejected, carry ``X-Trace-Id`` and
    ``X-Processing-Time``.

    Returns:
        200 once the event is applied, already applied, or of a type that
        needs no handling. 401 on a bad signature, 403 for a sender outside
        the allowlist, 413 on an oversized body, 429 when the delivery rate
        is exceeded, 500 when processing failed and 504 when it timed out;
        the gateway redelivers on 429 and 5xx.
    """
    trace_id = generate_trace_id()
    start = time.perf_counter()

    try:
        content = await _process_webhook(request, deps, trace_id)
        response = JSONResponse(content=content)
    except CheckoutError as exc:
        response = checkout_error_response(request, exc)

    elapsed_ms = int((time.perf_counter() - start) * 1000)
    response.headers["X-Trace-Id"] = trace_id
    response.headers["X-Processing-Time"] = f"{elapsed_ms}ms"
    return response


async def _process_webhook(
    request: Request,
    deps: CheckoutDependencies,
    trace_id: str,
) -> Dict[str, Any]:
    service = deps.service
    settings = service.settings

    await service.enforce_webhook_rate_limit()

    ip = client_ip(request)
    if settings.webhook_allowed_ips and ip not in settings.webhook_allowed_ips:
        logger.warning("Webhook from %s rejected by allowlist", ip, extra={"trace_id": trace_id})
        raise WebhookSourceForbidden(ip)

    max_size = settings.webhook_max_payload_bytes
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_size:
        raise WebhookPayloadTooLarge(int(declared), max_size)

    payload = await request.body()
    if len(payload) > max_size:
        raise WebhookPayloadTooLarge(len(payload), max_size)

    event = service.gateway.verify_webhook(payload, request.headers.get(SIGNATURE_HEADER))
    logger.info(
        "Webhook received: %s (id=%s)",
        event.type,
        event.id,
        extra={"trace_id": trace_id, "client_ip": ip},
    )

    timeout = settings.webhook_processing_timeout_seconds
    started = time.perf_counter()
    try:
        result = await asyncio.wait_for(service.reconciler.handle(event), timeout=timeout)
    except WebhookEventNotSupported:
        logger.info("Unhandled webhook event type %s", event.type)
        return {"received": True, "ignored": True}
    except asyncio.TimeoutError:
        duration_ms = int((time.perf_counter() - started) * 1000)
        raise WebhookProcessingTimeout(event.id, duration_ms)

    if result.duplicate:
        return {"received": True, "duplicate": True}
    return {"received": True, "eventId": event.id, "success": True}


@router.get("/health")
async def health(deps: CheckoutDependencies = Depends(get_deps)) -> Dict[str, Any]:
    return {"ok": True, "circuitBreaker": deps.service.breaker.state.value}
