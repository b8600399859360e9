"""
Payment gateway adapters.

``StripeGateway`` talks to Stripe Checkout through the official SDK.
``SimulatedPaymentGateway`` keeps sessions in memory and signs webhooks with
the same ``t=<ts>,v1=<hmac>`` scheme, for local development and tests.
"""
from __future__ import annotations

import asyncio
import hashlib
import hmac
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import stripe

from .exceptions import (
    CheckoutValidationError,
    PaymentGatewayError,
    WebhookSignatureInvalid,
)
from .models import GatewaySession

logger = logging.getLogger(__name__)


@dataclass
class GatewaySessionRequest:
    """Everything needed to open a hosted checkout session."""
    payment_method_types: List[str]
    line_items: List[Dict[str, Any]]
    success_url: str
    cancel_url: str
    expires_at: int  # epoch seconds
    metadata: Dict[str, str] = field(default_factory=dict)
    # Copied onto the PaymentIntent; session metadata is not
    payment_intent_metadata: Dict[str, str] = field(default_factory=dict)
    customer_email: Optional[str] = None
    payment_method_options: Dict[str, Any] = field(default_factory=dict)
    allowed_countries: List[str] = field(default_factory=lambda: ["BR"])
    locale: str = "pt-BR"
    mode: str = "payment"
    allow_promotion_codes: bool = True

    def to_params(self) -> Dict[str, Any]:
        """Stripe ``checkout.Session.create`` parameters."""
        params: Dict[str, Any] = {
            "mode": self.mode,
            "payment_method_types": list(self.payment_method_types),
            "line_items": self.line_items,
            "success_url": self.success_url,
            "cancel_url": self.cancel_url,
            "expires_at": self.expires_at,
            "metadata": dict(self.metadata),
            "shipping_address_collection": {
                "allowed_countries": list(self.allowed_countries),
            },
            "locale": self.locale,
            "allow_promotion_codes": self.allow_promotion_codes,
        }
        if self.payment_intent_metadata:
            params["payment_intent_data"] = {"metadata": dict(self.payment_intent_metadata)}
        if self.customer_email:
            params["customer_email"] = self.customer_email
        if self.payment_method_options:
            params["payment_method_options"] = self.payment_method_options
        return params


@dataclass
class GatewayEvent:
    """A verified webhook event."""
    id: str
    type: str
    data_object: Dict[str, Any]
    created: Optional[int] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: bytes) -> "GatewayEvent":
        try:
            body = json.loads(payload)
            return cls(
                id=body["id"],
                type=body["type"],
                data_object=body["data"]["object"],
                created=body.get("created"),
                raw=body,
            )
        except (ValueError, KeyError, TypeError) as exc:
            raise CheckoutValidationError("Malformed webhook event") from exc


class PaymentGateway(ABC):
    """Abstract interface for hosted-checkout payment gateways."""

    @property
    @abstractmethod
    def name(self) -> str:
        pass

    @abstractmethod
    async def create_checkout_session(self, request: GatewaySessionRequest) -> GatewaySession:
        """
        Open a checkout session.

        Raises:
            PaymentGatewayError: If the gateway rejects the call or is unreachable
        """

    @abstractmethod
    async def retrieve_session(self, session_id: str) -> GatewaySession:
        pass

    @abstractmethod
    async def expire_session(self, session_id: str) -> None:
        """Expire an open session so it can no longer be paid."""

    @abstractmethod
    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        """
        Verify a webhook signature and parse the event.

        Raises:
            WebhookSignatureInvalid: If the signature is missing or wrong
        """


# =============================================================================
# Signatures
# =============================================================================

def compute_signature(payload: bytes, secret: str, timestamp: int) -> str:
    signed_payload = f"{timestamp}.{payload.decode('utf-8')}"
    return hmac.new(
        secret.encode("utf-8"),
        signed_payload.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def sign_payload(payload: bytes, secret: str, timestamp: Optional[int] = None) -> str:
    """Build a ``t=...,v1=...`` signature header for ``payload``."""
    ts = int(time.time()) if timestamp is None else timestamp
    return f"t={ts},v1={compute_signature(payload, secret, ts)}"


def verify_signature(
    payload: bytes,
    signature: str,
    secret: str,
    tolerance: Optional[int] = 300,
    now: Optional[float] = None,
) -> bool:
    """Verify a webhook signature using HMAC-SHA256.

    Args:
        payload: Raw request body bytes
        signature: Value of the signature header ("t=timestamp,v1=signature")
        secret: Webhook signing secret
        tolerance: Maximum age of the timestamp in seconds, None to skip
        now: Current epoch time, for tests

    Returns:
        True if signature is valid, False otherwise
    """
    sig_parts: Dict[str, List[str]] = {}
    for part in signature.split(","):
        key, sep, value = part.strip().partition("=")
        if sep:
            sig_parts.setdefault(key, []).append(value)

    timestamps = sig_parts.get("t")
    candidates = sig_parts.get("v1")
    if not timestamps or not candidates:
        logger.warning("Missing timestamp or signature in signature header")
        return False

    try:
        timestamp = int(timestamps[0])
    except ValueError:
        return False

    if tolerance is not None:
        current = time.time() if now is None else now
        if abs(current - timestamp) > tolerance:
            logger.warning("Webhook signature timestamp outside tolerance")
            return False

    try:
        expected = compute_signature(payload, secret, timestamp)
    except UnicodeDecodeError:
        return False
    return any(hmac.compare_digest(expected, candidate) for candidate in candidates)


# =============================================================================
# Stripe
# =============================================================================

def map_stripe_error(exc: Exception) -> PaymentGatewayError:
    """Translate a Stripe SDK exception into a PaymentGatewayError."""
    if isinstance(exc, stripe.CardError):
        code, message = "CARD_ERROR", "Card was declined"
    elif isinstance(exc, stripe.RateLimitError):
        code, message = "RATE_LIMIT", "Too many requests to payment gateway"
    elif isinstance(exc, stripe.InvalidRequestError):
        code, message = "INVALID_REQUEST", "Invalid payment request"
    elif isinstance(exc, stripe.AuthenticationError):
        code, message = "AUTH_ERROR", "Payment gateway authentication failed"
    elif isinstance(exc, stripe.APIConnectionError):
        code, message = "CONNECTION_ERROR", "Could not reach payment gateway"
    elif isinstance(exc, stripe.APIError):
        code, message = "API_ERROR", "Payment gateway error"
    else:
        code, message = "UNKNOWN_ERROR", "Payment gateway temporarily unavailable"

    original = getattr(exc, "user_message", None) or str(exc)
    return PaymentGatewayError(original_error=original, gateway_code=code, message=message)


def _session_from_stripe(session: Any) -> GatewaySession:
    payment_intent = session.get("payment_intent")
    if isinstance(payment_intent, dict):
        payment_intent = payment_intent.get("id")
    return GatewaySession(
        id=session["id"],
        url=session.get("url"),
        expires_at=datetime.fromtimestamp(session["expires_at"], tz=timezone.utc),
        status=session.get("status") or "open",
        payment_status=session.get("payment_status") or "unpaid",
        payment_intent_id=payment_intent,
        metadata=dict(session.get("metadata") or {}),
    )


class StripeGateway(PaymentGateway):
    """
    Stripe Checkout gateway.

    SDK calls are blocking, so they run in a worker thread.
    """

    def __init__(
        self,
        api_key: str,
        webhook_secret: Optional[str] = None,
        webhook_tolerance: int = 300,
    ):
        if not api_key:
            raise ValueError("Stripe API key required")
        self._webhook_secret = webhook_secret
        self._webhook_tolerance = webhook_tolerance
        self._is_test_mode = api_key.startswith("sk_test_")

        self._stripe = stripe
        self._stripe.api_key = api_key

    @property
    def name(self) -> str:
        return "stripe"

    async def create_checkout_session(self, request: GatewaySessionRequest) -> GatewaySession:
        try:
            session = await asyncio.to_thread(
                self._stripe.checkout.Session.create,
                **request.to_params(),
            )
        except stripe.StripeError as exc:
            logger.error("Stripe session creation failed: %s", exc)
            raise map_stripe_error(exc) from exc
        logger.info("Created Stripe checkout session %s", session["id"])
        return _session_from_stripe(session)

    async def retrieve_session(self, session_id: str) -> GatewaySession:
        try:
            session = await asyncio.to_thread(
                self._stripe.checkout.Session.retrieve, session_id
            )
        except stripe.StripeError as exc:
            raise map_stripe_error(exc) from exc
        return _session_from_stripe(session)

    async def expire_session(self, session_id: str) -> None:
        try:
            await asyncio.to_thread(self._stripe.checkout.Session.expire, session_id)
        except stripe.StripeError as exc:
            raise map_stripe_error(exc) from exc
        logger.info("Expired Stripe checkout session %s", session_id)

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        if not signature:
            raise WebhookSignatureInvalid("Missing signature")
        if not self._webhook_secret:
            logger.error("Stripe webhook secret not configured")
            raise WebhookSignatureInvalid("Webhook verification not configured")
        try:
            self._stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                self._webhook_secret,
                self._webhook_tolerance,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as exc:
            raise WebhookSignatureInvalid() from exc
        return GatewayEvent.from_payload(payload)


# =============================================================================
# Simulated
# =============================================================================

class SimulatedPaymentGateway(PaymentGateway):
    """
    In-memory gateway for development and tests.

    Sessions are kept in a dict; ``fail_next(n)`` makes the next ``n``
    session creations raise ``PaymentGatewayError``.
    """

    def __init__(
        self,
        webhook_secret: str = "whsec_simulated",
        base_url: str = "https://checkout.simulated.local",
        webhook_tolerance: Optional[int] = 300,
    ):
        self.webhook_secret = webhook_secret
        self._base_url = base_url.rstrip("/")
        self._webhook_tolerance = webhook_tolerance
        self._sessions: Dict[str, GatewaySession] = {}
        self.requests: List[GatewaySessionRequest] = []
        self.expired: List[str] = []
        self._intent_metadata: Dict[str, Dict[str, str]] = {}
        self._failures_remaining = 0

    @property
    def name(self) -> str:
        return "simulated"

    def fail_next(self, count: int = 1) -> None:
        self._failures_remaining = count

    async def create_checkout_session(self, request: GatewaySessionRequest) -> GatewaySession:
        self.requests.append(request)
        if self._failures_remaining > 0:
            self._failures_remaining -= 1
            raise PaymentGatewayError(
                original_error="Simulated gateway failure",
                gateway_code="API_ERROR",
                message="Payment gateway error",
            )

        session_id = f"cs_test_{uuid.uuid4().hex}"
        session = GatewaySession(
            id=session_id,
            url=f"{self._base_url}/pay/{session_id}",
            expires_at=datetime.fromtimestamp(request.expires_at, tz=timezone.utc),
            payment_intent_id=f"pi_{uuid.uuid4().hex[:24]}",
            metadata=dict(request.metadata),
        )
        self._sessions[session_id] = session
        self._intent_metadata[session.payment_intent_id] = dict(request.payment_intent_metadata)
        return session

    async def retrieve_session(self, session_id: str) -> GatewaySession:
        session = self._sessions.get(session_id)
        if session is None:
            raise PaymentGatewayError(
                original_error=f"No such checkout session: {session_id}",
                gateway_code="INVALID_REQUEST",
                message="Invalid payment request",
            )
        return session

    async def expire_session(self, session_id: str) -> None:
        session = await self.retrieve_session(session_id)
        session.status = "expired"
        self.expired.append(session_id)

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        if not signature:
            raise WebhookSignatureInvalid("Missing signature")
        if not verify_signature(payload, signature, self.webhook_secret, self._webhook_tolerance):
            raise WebhookSignatureInvalid()
        return GatewayEvent.from_payload(payload)

    # Event builders for driving the reconciler

    def build_event(
        self,
        event_type: str,
        data_object: Dict[str, Any],
        event_id: Optional[str] = None,
    ) -> bytes:
        body = {
            "id": event_id or f"evt_{uuid.uuid4().hex[:24]}",
            "object": "event",
            "type": event_type,
            "created": int(time.time()),
            "data": {"object": data_object},
        }
        return json.dumps(body).encode("utf-8")

    def session_completed_object(
        self,
        session_id: str,
        amount_total: int,
        payment_method_types: Optional[List[str]] = None,
        shipping: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """Gateway-shaped ``checkout.session`` object for a paid session."""
        session = self._sessions[session_id]
        session.status = "complete"
        session.payment_status = "paid"
        obj: Dict[str, Any] = {
            "id": session_id,
            "object": "checkout.session",
            "status": "complete",
            "payment_status": "paid",
            "payment_intent": session.payment_intent_id,
            "payment_method_types": payment_method_types or ["card"],
            "amount_total": amount_total,
            "currency": "brl",
            "metadata": dict(session.metadata),
        }
        if shipping:
            obj["shipping_details"] = shipping
        return obj

    def payment_intent_object(self, session_id: str, **fields: Any) -> Dict[str, Any]:
        """Gateway-shaped ``payment_intent`` object for a session's intent."""
        intent_id = self._sessions[session_id].payment_intent_id
        obj: Dict[str, Any] = {
            "id": intent_id,
            "object": "payment_intent",
            "currency": "brl",
            "metadata": dict(self._intent_metadata.get(intent_id, {})),
        }
        obj.update(fields)
        return obj

    def sign(self, payload: bytes, timestamp: Optional[int] = None) -> str:
        return sign_payload(payload, self.webhook_secret, timestamp)
