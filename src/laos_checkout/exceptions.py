"""Unified exception hierarchy for the checkout core.

Every checkout-specific exception inherits from CheckoutError, enabling:
- Consistent error handling across pipeline stages and the webhook path
- HTTP status code mapping in the API layer
- Structured, serializable error responses with machine-readable codes
- A retry hint for callers (``is_retryable``)

All exceptions have:
- error_code: Machine-readable error code (e.g., "EMPTY_CART")
- http_status: Appropriate HTTP status code for API responses
- is_retryable: Whether the same request may succeed later
- message: Human-readable error message
- details: Optional additional context dictionary
- to_dict(): Convert to API response format
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional, Sequence


class CheckoutError(Exception):
    """Base exception for all checkout errors.

    Attributes:
        message: Human-readable error message
        error_code: Machine-readable error code
        details: Optional additional context
    """

    error_code: str = "CHECKOUT_ERROR"
    http_status: int = 500
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        http_status: Optional[int] = None,
        is_retryable: Optional[bool] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code
        if http_status is not None:
            self.http_status = http_status
        if is_retryable is not None:
            self.is_retryable = is_retryable
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to API response format."""
        result: dict[str, Any] = {
            "error": self.message,
            "code": self.error_code,
            "isRetryable": self.is_retryable,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        if self.details:
            result["details"] = self.details
        return result


# =============================================================================
# Business-rule errors (400)
# =============================================================================

class EmptyCartError(CheckoutError):
    """The user's cart has no lines."""

    error_code = "EMPTY_CART"
    http_status = 400

    def __init__(self, message: str = "Your cart is empty") -> None:
        super().__init__(
            message,
            details={"suggestion": "Add items to cart before checkout"},
        )


class TooManyItemsError(CheckoutError):
    """The cart has more lines than a single order may carry."""

    error_code = "TOO_MANY_ITEMS"
    http_status = 400

    def __init__(self, item_count: int, max_items: int) -> None:
        super().__init__(
            f"Maximum {max_items} items per order",
            details={"itemCount": item_count, "maxItems": max_items},
        )


class StockUnavailableError(CheckoutError):
    """One or more cart lines cannot be fulfilled from current stock."""

    error_code = "STOCK_UNAVAILABLE"
    http_status = 400

    def __init__(self, unavailable_items: Sequence[dict[str, Any]]) -> None:
        self.unavailable_items = list(unavailable_items)
        super().__init__(
            "One or more items are out of stock",
            details={"unavailableItems": self.unavailable_items},
        )


class InvalidOrderValueError(CheckoutError):
    """Order total falls outside the configured bounds."""

    error_code = "INVALID_ORDER_VALUE"
    http_status = 400

    def __init__(self, value: Decimal, min_value: Decimal, max_value: Decimal) -> None:
        self.value = value
        self.min_value = min_value
        self.max_value = max_value
        super().__init__(
            f"Order value must be between R$ {min_value} and R$ {max_value}",
            details={
                "currentValue": str(value),
                "minValue": str(min_value),
                "maxValue": str(max_value),
            },
        )


class CheckoutValidationError(CheckoutError):
    """Request body failed validation."""

    error_code = "VALIDATION_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str = "Validation error",
        errors: Optional[list[dict[str, Any]]] = None,
    ) -> None:
        super().__init__(message, details={"errors": errors or []})


class OrderNotFoundError(CheckoutError):
    """Referenced order does not exist."""

    error_code = "ORDER_NOT_FOUND"
    http_status = 404

    def __init__(
        self,
        order_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> None:
        details: dict[str, Any] = {}
        if order_id:
            details["orderId"] = order_id
        if session_id:
            details["sessionId"] = session_id
        ref = order_id or session_id or "unknown"
        super().__init__(f"Order '{ref}' not found", details=details)


# =============================================================================
# Access errors
# =============================================================================

class AuthenticationRequiredError(CheckoutError):
    """Caller is not authenticated."""

    error_code = "UNAUTHORIZED"
    http_status = 401

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class RateLimitExceededError(CheckoutError):
    """Too many checkout attempts for this identity."""

    error_code = "RATE_LIMIT_EXCEEDED"
    http_status = 429
    is_retryable = True

    def __init__(
        self,
        retry_after: int,
        limit: Optional[int] = None,
        message: str = "Too many checkout attempts. Please try again later.",
    ) -> None:
        self.retry_after = retry_after
        self.limit = limit
        super().__init__(
            message,
            details={"retryAfter": retry_after},
        )


# =============================================================================
# Dependency errors (5xx)
# =============================================================================

class PaymentGatewayError(CheckoutError):
    """Payment gateway unavailable or rejected the call.

    Raised by the circuit breaker when open, and by gateway adapters when the
    underlying SDK call fails. The original cause is kept in ``details`` and
    chained via ``__cause__`` by the raiser.
    """

    error_code = "PAYMENT_GATEWAY_ERROR"
    http_status = 503
    is_retryable = True

    def __init__(
        self,
        original_error: Optional[str] = None,
        gateway_code: Optional[str] = None,
        message: str = "Payment gateway temporarily unavailable",
    ) -> None:
        self.original_error = original_error
        self.gateway_code = gateway_code
        details: dict[str, Any] = {"originalError": original_error}
        if gateway_code:
            details["gatewayCode"] = gateway_code
        super().__init__(message, details=details)


class InternalCheckoutError(CheckoutError):
    """Catch-all for unexpected failures.

    Only the correlation id is exposed to the caller.
    """

    error_code = "INTERNAL_ERROR"
    http_status = 500
    is_retryable = True

    def __init__(self, error_id: str) -> None:
        self.error_id = error_id
        super().__init__(
            "An unexpected error occurred",
            details={"errorId": error_id},
        )

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["errorId"] = self.error_id
        return result


# =============================================================================
# Webhook errors
# =============================================================================

class WebhookError(CheckoutError):
    """Base class for inbound webhook errors."""

    error_code = "WEBHOOK_ERROR"
    http_status = 500


class WebhookSignatureInvalid(WebhookError):
    """Missing or invalid gateway signature."""

    error_code = "INVALID_SIGNATURE"
    http_status = 401

    def __init__(self, message: str = "Invalid webhook signature") -> None:
        super().__init__(message)


class WebhookPayloadTooLarge(WebhookError):
    """Webhook body exceeds the configured size limit."""

    error_code = "PAYLOAD_TOO_LARGE"
    http_status = 413

    def __init__(self, size: int, max_size: int) -> None:
        super().__init__(
            "Payload too large",
            details={"size": size, "maxSize": max_size},
        )


class WebhookEventNotSupported(WebhookError):
    """Event type has no reconciliation handler."""

    error_code = "EVENT_NOT_SUPPORTED"
    http_status = 422

    def __init__(self, event_type: str) -> None:
        self.event_type = event_type
        super().__init__(f"Event type not supported: {event_type}")


class WebhookProcessingError(WebhookError):
    """Reconciliation failed; the gateway should redeliver."""

    error_code = "WEBHOOK_PROCESSING_FAILED"
    http_status = 500
    is_retryable = True

    def __init__(self, event_id: str, reason: str) -> None:
        self.event_id = event_id
        super().__init__(
            "Webhook processing failed",
            details={"eventId": event_id, "reason": reason},
        )


class WebhookProcessingTimeout(WebhookError):
    """Reconciliation did not finish within the processing budget."""

    error_code = "PROCESSING_TIMEOUT"
    http_status = 504
    is_retryable = True

    def __init__(self, event_id: str, duration_ms: int) -> None:
        self.event_id = event_id
        super().__init__(
            "Event processing timeout",
            details={"eventId": event_id, "duration": duration_ms},
        )


class WebhookSourceForbidden(WebhookError):
    """Delivery came from an address outside the configured allowlist."""

    error_code = "FORBIDDEN"
    http_status = 403

    def __init__(self, client_ip: str) -> None:
        self.client_ip = client_ip
        super().__init__("Webhook source not allowed")


class WebhookRateLimitExceeded(RateLimitExceededError):
    """Too many webhook deliveries in the current window."""

    def __init__(self, retry_after: int, limit: Optional[int] = None) -> None:
        super().__init__(retry_after, limit, message="Webhook rate limit exceeded")
