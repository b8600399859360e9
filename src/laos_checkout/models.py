"""Checkout data models.

Request input is validated with pydantic; everything that flows between
pipeline stages, the store and the reconciler is a plain dataclass.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlsplit
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:24]}"


class PaymentMethod(str, Enum):
    """Payment methods accepted at checkout."""
    CARD = "card"
    PIX = "pix"


class OrderStatus(str, Enum):
    """Persisted order status."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    CANCELED = "CANCELED"


class PaymentStatus(str, Enum):
    """Persisted order payment status."""
    PENDING = "PENDING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"


# =============================================================================
# Request schema
# =============================================================================

class CheckoutMetadata(BaseModel):
    """Optional tracking metadata supplied by the client."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    source: Optional[str] = None  # 'web', 'mobile', 'api'
    campaign: Optional[str] = None
    referrer: Optional[str] = None
    device_id: Optional[str] = Field(default=None, alias="deviceId")

    def as_strings(self) -> Dict[str, str]:
        """Non-empty fields, keyed by wire name."""
        return {
            key: value
            for key, value in self.model_dump(by_alias=True).items()
            if value is not None
        }


class ShippingDetails(BaseModel):
    """Shipping override; may also come from the gateway session later."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: Optional[str] = Field(default=None, min_length=2, max_length=100)
    address: Optional[str] = Field(default=None, min_length=5, max_length=200)
    city: Optional[str] = Field(default=None, min_length=2, max_length=100)
    state: Optional[str] = Field(default=None, min_length=2, max_length=2)
    zip_code: Optional[str] = Field(default=None, alias="zipCode", pattern=r"^\d{5}-?\d{3}$")
    phone: Optional[str] = Field(
        default=None,
        pattern=r"^\(?[1-9]{2}\)?\s?9?\d{4}-?\d{4}$",
    )


class CheckoutRequest(BaseModel):
    """Validated body of ``POST /checkout``."""
    model_config = ConfigDict(extra="forbid", populate_by_name=True, frozen=True)

    payment_method: PaymentMethod = Field(alias="paymentMethod")
    metadata: Optional[CheckoutMetadata] = None
    shipping: Optional[ShippingDetails] = None
    coupon_code: Optional[str] = Field(default=None, alias="couponCode")
    success_url: Optional[str] = Field(default=None, alias="successUrl")
    cancel_url: Optional[str] = Field(default=None, alias="cancelUrl")

    @field_validator("success_url", "cancel_url")
    @classmethod
    def validate_url(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        parts = urlsplit(v)
        if parts.scheme not in ("http", "https") or not parts.netloc:
            raise ValueError("must be an absolute http(s) URL")
        return v


# =============================================================================
# Catalog and cart
# =============================================================================

@dataclass
class Product:
    """Product row, or a point-in-time snapshot of one attached to a cart line."""
    id: str
    name: str
    price: Decimal
    stock_quantity: int = 0
    in_stock: bool = True
    description: str = ""
    image: str = ""
    gateway_price_id: Optional[str] = None  # pre-registered catalog price


@dataclass
class CartLine:
    """One (user, product) line of a cart."""
    id: str
    user_id: str
    product_id: str
    quantity: int
    product: Product


@dataclass
class StockReservation:
    """Soft, non-persisted stock hold for one product."""
    product_id: str
    quantity: int


@dataclass(frozen=True)
class OrderSummary:
    """Monetary totals, each rounded to cents independently."""
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    discount: Decimal
    total: Decimal

    def to_dict(self) -> Dict[str, float]:
        return {
            "subtotal": float(self.subtotal),
            "tax": float(self.tax),
            "shipping": float(self.shipping),
            "discount": float(self.discount),
            "total": float(self.total),
        }


@dataclass
class CheckoutContext:
    """State accumulated by one pipeline execution.

    Owned by a single checkout attempt and never shared across requests.
    ``user_id`` and ``request`` are fixed at creation; each stage fills in
    its own fields and hands the context on.
    """
    user_id: str
    request: CheckoutRequest
    cart_items: List[CartLine] = field(default_factory=list)
    order_summary: Optional[OrderSummary] = None
    stock_reservations: Optional[List[StockReservation]] = None
    gateway_session_id: Optional[str] = None
    gateway_session_url: Optional[str] = None
    gateway_session_expires_at: Optional[datetime] = None
    order_id: Optional[str] = None


# =============================================================================
# Orders
# =============================================================================

@dataclass
class OrderLine:
    """Persisted order line with the unit price captured at checkout."""
    product_id: str
    quantity: int
    price: Decimal
    total: Decimal
    id: str = field(default_factory=lambda: new_id("oli"))
    order_id: str = ""


@dataclass
class Order:
    """Durable order entity."""
    id: str
    user_id: str
    order_number: str
    subtotal: Decimal
    tax: Decimal
    shipping: Decimal
    total: Decimal
    items: List[OrderLine] = field(default_factory=list)
    status: OrderStatus = OrderStatus.PENDING
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: Optional[str] = None  # "CARD" | "PIX"
    gateway_session_id: Optional[str] = None
    gateway_payment_intent_id: Optional[str] = None
    shipping_name: Optional[str] = None
    shipping_address: Optional[str] = None
    shipping_city: Optional[str] = None
    shipping_state: Optional[str] = None
    shipping_zip_code: Optional[str] = None
    shipping_phone: Optional[str] = None
    paid_at: Optional[datetime] = None
    canceled_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class PaymentLogEntry:
    """Append-only audit record for an order's payment lifecycle."""
    order_id: str
    event: str
    status: str
    raw_data: Dict[str, Any] = field(default_factory=dict)
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    gateway_event_id: Optional[str] = None
    error_message: Optional[str] = None
    id: str = field(default_factory=lambda: new_id("plog"))
    created_at: datetime = field(default_factory=utcnow)


# =============================================================================
# Gateway results
# =============================================================================

@dataclass
class GatewaySession:
    """Checkout session as reported by the payment gateway."""
    id: str
    url: Optional[str]
    expires_at: datetime
    status: str = "open"
    payment_status: str = "unpaid"
    payment_intent_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class CheckoutResult:
    """Successful checkout, as returned to the HTTP layer."""
    session_id: str
    url: Optional[str]
    expires_at: datetime
    order_id: str
    summary: OrderSummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "url": self.url,
            "expiresAt": self.expires_at.isoformat(),
            "orderId": self.order_id,
            "summary": self.summary.to_dict(),
        }
