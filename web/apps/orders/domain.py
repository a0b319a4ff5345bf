"""Domain models and ports for checkout.

This module contains the value objects passed between the checkout
orchestrator and its collaborators, the order status state machine, and
the protocol definitions (ports) for the inventory store, the payment
gateway and the order ledger. It performs no I/O.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Protocol
from uuid import UUID


# ---- Enums ----
class OrderStatus(str, Enum):
    """Lifecycle states of an order.

    ``pending`` is initial; ``delivered`` and ``cancelled`` are terminal.
    """

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    """How the order is paid: fully online, or a deposit plus cash on delivery."""

    ONLINE = "online"
    COD = "cod"


class ReservationState(str, Enum):
    """What the order's stock reservation currently amounts to."""

    HELD = "held"
    RELEASED = "released"
    COMMITTED = "committed"


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def can_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    """Return True when ``current -> requested`` is in the transition table."""
    return OrderStatus(requested) in ALLOWED_TRANSITIONS[OrderStatus(current)]


# ---- Entities / DTOs ----
@dataclass(frozen=True)
class CartLine:
    """One line of the caller's cart snapshot.

    ``unit_price_cents`` is whatever the client displayed; it is kept only
    for diagnostics and never used to price the order.
    """

    product_id: str
    size: int
    quantity: int
    unit_price_cents: int | None = None


@dataclass(frozen=True)
class StockDelta:
    """Quantity to take from (or give back to) one product/size counter."""

    product_id: str
    size: int
    quantity: int


@dataclass(frozen=True)
class LineFailure:
    """Why a product/size could not be satisfied.

    Attributes:
        reason: ``INSUFFICIENT_STOCK``, ``UNKNOWN_SIZE`` or ``UNKNOWN_PRODUCT``.
    """

    product_id: str
    size: int
    requested: int
    available: int
    reason: str = "INSUFFICIENT_STOCK"

    def as_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "size": self.size,
            "requested": self.requested,
            "available": self.available,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class ProductSnapshot:
    """Authoritative product data as read from the inventory store."""

    id: str
    name: str
    price_cents: int
    sizes: dict[int, int] = field(default_factory=dict)

    def stock_for(self, size: int) -> int | None:
        """Current stock for ``size``, or None when the size does not exist."""
        return self.sizes.get(int(size))


@dataclass(frozen=True)
class ReserveResult:
    reserved: bool
    shortages: List[LineFailure] = field(default_factory=list)


@dataclass(frozen=True)
class ShippingAddress:
    full_name: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "India"
    phone: str | None = None

    def as_dict(self) -> dict:
        return {
            "full_name": self.full_name,
            "street": self.street,
            "city": self.city,
            "state": self.state,
            "zip_code": self.zip_code,
            "country": self.country,
            "phone": self.phone,
        }


@dataclass(frozen=True)
class OrderLine:
    """Immutable snapshot of a purchased line, priced at placement time."""

    product_id: str
    product_name: str
    size: int
    quantity: int
    unit_price_cents: int

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass(frozen=True)
class OrderDraft:
    """Everything the ledger needs to write a new pending order."""

    id: UUID
    user_id: str
    items: List[OrderLine]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    subtotal_cents: int
    shipping_cents: int
    total_cents: int
    currency: str


@dataclass
class Order:
    """Container for a persisted order.

    Attributes:
        id: Order identifier, also the key of its stock reservation.
        items: Line snapshots; never re-derived from current product data.
        total_cents: Subtotal plus shipping, in minor units.
        amount_paid_cents: Captured online so far (full total or deposit).
        amount_due_cents: ``total_cents - amount_paid_cents``.
        gateway_order_id: Gateway reference the payment proof is checked against.
        gateway_amount_cents: Amount the gateway order was created for.
    """

    id: UUID
    user_id: str
    items: List[OrderLine]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod
    subtotal_cents: int
    shipping_cents: int
    total_cents: int
    currency: str
    amount_paid_cents: int = 0
    amount_due_cents: int = 0
    status: OrderStatus = OrderStatus.PENDING
    reservation_state: ReservationState = ReservationState.HELD
    gateway_order_id: str | None = None
    gateway_amount_cents: int | None = None
    payment_id: str | None = None
    payment_signature: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class GatewayOrder:
    """Gateway-side order bound to a specific amount."""

    id: str
    amount_cents: int
    currency: str
    receipt: str


@dataclass(frozen=True)
class PlacedOrder:
    order: Order
    gateway_order: GatewayOrder


@dataclass(frozen=True)
class OrderPage:
    count: int
    page: int
    page_size: int
    orders: List[Order]


@dataclass(frozen=True)
class SweepResult:
    expired: int
    released: int


@dataclass(frozen=True)
class ShippingPolicy:
    """Flat shipping fee, waived at or above a subtotal threshold."""

    free_threshold_cents: int
    flat_cents: int

    def cost_for(self, subtotal_cents: int) -> int:
        if subtotal_cents >= self.free_threshold_cents:
            return 0
        return self.flat_cents


# ---- Ports (DIP) ----
class InventoryPort(Protocol):
    """Port describing the inventory store used by checkout.

    Reservations are keyed by the order id: ``reserve`` with a known key is
    a replay, and ``release`` restores stock at most once per key.
    """

    def get_products(self, product_ids: Iterable[str]) -> dict[str, ProductSnapshot]:
        """Return snapshots for the known ids; unknown ids are omitted."""
        raise NotImplementedError()

    def reserve(self, reservation_id: UUID, deltas: List[StockDelta]) -> ReserveResult:
        """Decrement every delta or none of them."""
        raise NotImplementedError()

    def release(self, reservation_id: UUID) -> bool:
        """Give a held reservation's stock back; False when nothing was held."""
        raise NotImplementedError()

    def commit(self, reservation_id: UUID) -> bool:
        """Make a held reservation permanent."""
        raise NotImplementedError()


class PaymentGatewayPort(Protocol):
    """Port describing the payment gateway contract."""

    def create_order(self, amount_cents: int, currency: str, receipt: str) -> GatewayOrder:
        """Create a gateway order for exactly ``amount_cents``.

        Raises:
            PaymentInitFailed: When the gateway rejects the amount.
        """
        raise NotImplementedError()

    def verify(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        """Check the gateway's signature over ``gateway_order_id|payment_id``."""
        raise NotImplementedError()


class OrderLedgerPort(Protocol):
    """Port describing durable order storage.

    The ``(Order, bool)`` returning methods are conditional transitions: the
    flag is True only for the single caller that performed the change.
    """

    def create(self, draft: OrderDraft) -> Order: ...

    def get(self, order_id: UUID) -> Order: ...

    def list_for_user(self, user_id: str, page: int = 1, page_size: int = 20) -> OrderPage: ...

    def list_all(self, page: int = 1, page_size: int = 20, status: OrderStatus | None = None) -> OrderPage: ...

    def update_status(self, order_id: UUID, status: OrderStatus) -> Order: ...

    def attach_gateway_order(self, order_id: UUID, gateway_order_id: str, amount_cents: int) -> Order: ...

    def confirm_payment(self, order_id: UUID, payment_id: str, signature: str) -> tuple[Order, bool]: ...

    def cancel_pending(self, order_id: UUID) -> tuple[Order, bool]: ...

    def mark_reservation(self, order_id: UUID, state: ReservationState) -> Order: ...

    def stale_pending(self, cutoff: datetime) -> List[Order]: ...

    def unreleased_cancelled(self, cutoff: datetime) -> List[Order]: ...
