"""Checkout orchestration core for the Laos storefront.

Runs a cart through a fixed pipeline (load cart, validate stock, price the
order, open a payment gateway session) with saga compensation, guards the
gateway with a circuit breaker, rate-limits attempts per user and reconciles
orders from gateway webhooks.
"""
__version__ = "0.1.0"

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig, CircuitState
from .config import CheckoutSettings, load_settings
from .exceptions import (
    AuthenticationRequiredError,
    CheckoutError,
    CheckoutValidationError,
    EmptyCartError,
    InternalCheckoutError,
    InvalidOrderValueError,
    OrderNotFoundError,
    PaymentGatewayError,
    RateLimitExceededError,
    StockUnavailableError,
    TooManyItemsError,
    WebhookError,
    WebhookEventNotSupported,
    WebhookPayloadTooLarge,
    WebhookProcessingError,
    WebhookProcessingTimeout,
    WebhookRateLimitExceeded,
    WebhookSignatureInvalid,
    WebhookSourceForbidden,
)
from .gateway import (
    GatewayEvent,
    GatewaySessionRequest,
    PaymentGateway,
    SimulatedPaymentGateway,
    StripeGateway,
)
from .models import (
    CartLine,
    CheckoutContext,
    CheckoutRequest,
    CheckoutResult,
    Order,
    OrderLine,
    OrderStatus,
    OrderSummary,
    PaymentLogEntry,
    PaymentMethod,
    PaymentStatus,
    Product,
    StockReservation,
)
from .pipeline import CheckoutPipeline, PipelineStage
from .pricing import PricingRules, calculate_order_summary
from .rate_limiter import (
    RateLimitConfig,
    RateLimitResult,
    SlidingWindowRateLimiter,
    TokenBucketRateLimiter,
)
from .reconciler import ReconcileResult, WebhookReconciler
from .reservations import InMemoryReservationStore, ReservationStore
from .service import CheckoutService
from .stages import (
    CalculateTotalsStage,
    CreateGatewaySessionStage,
    LoadCartStage,
    ValidateStockStage,
)
from .store import CheckoutStore, InMemoryCheckoutStore, StoreTransaction

__all__ = [
    "__version__",
    # Config
    "CheckoutSettings",
    "load_settings",
    # Models
    "CartLine",
    "CheckoutContext",
    "CheckoutRequest",
    "CheckoutResult",
    "Order",
    "OrderLine",
    "OrderStatus",
    "OrderSummary",
    "PaymentLogEntry",
    "PaymentMethod",
    "PaymentStatus",
    "Product",
    "StockReservation",
    # Pricing
    "PricingRules",
    "calculate_order_summary",
    # Resilience
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitState",
    "RateLimitConfig",
    "RateLimitResult",
    "SlidingWindowRateLimiter",
    "TokenBucketRateLimiter",
    # Pipeline
    "CheckoutPipeline",
    "PipelineStage",
    "LoadCartStage",
    "ValidateStockStage",
    "CalculateTotalsStage",
    "CreateGatewaySessionStage",
    "ReservationStore",
    "InMemoryReservationStore",
    # Persistence
    "CheckoutStore",
    "StoreTransaction",
    "InMemoryCheckoutStore",
    # Gateway
    "GatewayEvent",
    "GatewaySessionRequest",
    "PaymentGateway",
    "SimulatedPaymentGateway",
    "StripeGateway",
    # Service
    "CheckoutService",
    "ReconcileResult",
    "WebhookReconciler",
    # Errors
    "AuthenticationRequiredError",
    "CheckoutError",
    "CheckoutValidationError",
    "EmptyCartError",
    "InternalCheckoutError",
    "InvalidOrderValueError",
    "OrderNotFoundError",
    "PaymentGatewayError",
    "RateLimitExceededError",
    "StockUnavailableError",
    "TooManyItemsError",
    "WebhookError",
    "WebhookEventNotSupported",
    "WebhookPayloadTooLarge",
    "WebhookProcessingError",
    "WebhookProcessingTimeout",
    "WebhookRateLimitExceeded",
    "WebhookSignatureInvalid",
    "WebhookSourceForbidden",
]
