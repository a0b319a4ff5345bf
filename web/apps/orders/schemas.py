"""Pydantic schemas for orders.

This module exposes the request validation schemas used by the orders API
and the read DTOs used to render orders back to clients.
"""

import re
from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

from .domain import CartLine, Order, OrderStatus, PaymentMethod, ShippingAddress


PRODUCT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
ZIP_RE = re.compile(r"^[0-9A-Za-z -]{3,12}$")


class CartLineIn(BaseModel):
    """Input schema for a single cart line.

    Attributes:
        product_id: Catalog product identifier.
        size: Numeric shoe size; must exist for the product.
        quantity: Positive number of units.
        unit_price_cents: Price the client displayed. Optional and never
            used for totals.
    """

    product_id: str = Field(min_length=1, max_length=64)
    size: int = Field(gt=0)
    quantity: int = Field(ge=1)
    unit_price_cents: int | None = Field(default=None, ge=0)

    @field_validator("product_id")
    @classmethod
    def validate_product_id(cls, v: str) -> str:
        if not PRODUCT_ID_RE.match(v):
            raise ValueError("Invalid product id format")
        return v

    def to_domain(self) -> CartLine:
        return CartLine(
            product_id=self.product_id,
            size=self.size,
            quantity=self.quantity,
            unit_price_cents=self.unit_price_cents,
        )


class ShippingAddressIn(BaseModel):
    full_name: str = Field(min_length=1, max_length=120)
    street: str = Field(min_length=1, max_length=200)
    city: str = Field(min_length=1, max_length=80)
    state: str = Field(min_length=1, max_length=80)
    zip_code: str = Field(min_length=3, max_length=12)
    country: str = Field(default="India", max_length=80)
    phone: str | None = Field(default=None, max_length=20)

    @field_validator("zip_code")
    @classmethod
    def validate_zip(cls, v: str) -> str:
        v2 = v.strip()
        if not ZIP_RE.match(v2):
            raise ValueError("Invalid zip code")
        return v2

    def to_domain(self) -> ShippingAddress:
        return ShippingAddress(**self.model_dump())


class CreateOrderDTO(BaseModel):
    """Schema for placing an order.

    Attributes:
        items: Cart snapshot. An empty list is rejected by the service
            with ``EMPTY_ORDER``.
        shipping_address: Delivery address.
        payment_method: ``online`` or ``cod``. Normalized to lowercase.
    """

    items: list[CartLineIn]
    shipping_address: ShippingAddressIn
    payment_method: PaymentMethod

    @field_validator("payment_method", mode="before")
    @classmethod
    def normalize_method(cls, v):
        return v.lower() if isinstance(v, str) else v


class ConfirmPaymentDTO(BaseModel):
    """Payment proof returned by the gateway checkout to the client."""

    payment_id: str = Field(min_length=1, max_length=64)
    signature: str = Field(min_length=1, max_length=128)


class UpdateStatusDTO(BaseModel):
    status: OrderStatus


class OrderLineReadDTO(BaseModel):
    product_id: str
    product_name: str
    size: int
    quantity: int
    unit_price_cents: int
    line_total_cents: int


class OrderReadDTO(BaseModel):
    """Read schema for an order as returned by the API."""

    id: UUID
    user_id: str
    status: OrderStatus
    payment_method: PaymentMethod
    items: list[OrderLineReadDTO]
    shipping_address: dict
    subtotal_cents: int
    shipping_cents: int
    total_cents: int
    amount_paid_cents: int
    amount_due_cents: int
    currency: str
    gateway_order_id: str | None = None
    payment_id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_domain(cls, order: Order) -> "OrderReadDTO":
        return cls(
            id=order.id,
            user_id=order.user_id,
            status=order.status,
            payment_method=order.payment_method,
            items=[
                OrderLineReadDTO(
                    product_id=i.product_id,
                    product_name=i.product_name,
                    size=i.size,
                    quantity=i.quantity,
                    unit_price_cents=i.unit_price_cents,
                    line_total_cents=i.line_total_cents,
                )
                for i in order.items
            ],
            shipping_address=order.shipping_address.as_dict(),
            subtotal_cents=order.subtotal_cents,
            shipping_cents=order.shipping_cents,
            total_cents=order.total_cents,
            amount_paid_cents=order.amount_paid_cents,
            amount_due_cents=order.amount_due_cents,
            currency=order.currency,
            gateway_order_id=order.gateway_order_id,
            payment_id=order.payment_id,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )


class PaymentInitDTO(BaseModel):
    """What the client needs to open the gateway checkout."""

    gateway_order_id: str
    amount_cents: int
    currency: str
    key_id: str
