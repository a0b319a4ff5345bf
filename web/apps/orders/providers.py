"""Service provider helpers for wiring OrderService with ports.

This module exposes a small factory function `get_order_service` that
returns a configured `OrderService` instance. When
``settings.USE_HTTP_ADAPTERS`` is truthy the service talks to the inventory
and payments services over HTTP; otherwise it uses process-wide in-memory
stubs seeded from ``settings.INVENTORY_STUB_CATALOG``, suitable for tests
and local development.
"""

import threading

from django.conf import settings

from .adapters import InventoryStub, PaymentGatewayStub
from .checkout import OrderService
from .domain import ShippingPolicy
from .http_adapters import HttpInventoryClient, HttpPaymentGatewayClient
from .repository import OrderRepository

_stubs_lock = threading.Lock()
_stub_inventory: InventoryStub | None = None
_stub_gateway: PaymentGatewayStub | None = None


def get_stub_inventory() -> InventoryStub:
    """Return the shared in-memory inventory, creating it on first use."""
    global _stub_inventory
    with _stubs_lock:
        if _stub_inventory is None:
            _stub_inventory = InventoryStub(getattr(settings, "INVENTORY_STUB_CATALOG", {}))
        return _stub_inventory


def get_stub_gateway() -> PaymentGatewayStub:
    """Return the shared in-memory gateway, creating it on first use."""
    global _stub_gateway
    with _stubs_lock:
        if _stub_gateway is None:
            _stub_gateway = PaymentGatewayStub(
                key_secret=settings.PAYMENT_GATEWAY_KEY_SECRET,
                key_id=settings.PAYMENT_GATEWAY_KEY_ID,
            )
        return _stub_gateway


def reset_stubs() -> None:
    """Drop the shared stubs so the next call re-seeds them from settings."""
    global _stub_inventory, _stub_gateway
    with _stubs_lock:
        _stub_inventory = None
        _stub_gateway = None


def get_order_service() -> OrderService:
    """Return a configured OrderService instance.

    Returns:
        OrderService: A service wired to the HTTP clients or to the shared
        stubs, with the Django ORM ledger and the store's pricing settings.
    """
    if getattr(settings, "USE_HTTP_ADAPTERS", True):
        inventory, payments = HttpInventoryClient(), HttpPaymentGatewayClient()
    else:
        inventory, payments = get_stub_inventory(), get_stub_gateway()

    return OrderService(
        inventory=inventory,
        payments=payments,
        ledger=OrderRepository(),
        currency=settings.STORE_CURRENCY,
        deposit_cents=settings.COD_DEPOSIT_CENTS,
        shipping=ShippingPolicy(
            free_threshold_cents=settings.SHIPPING_FREE_THRESHOLD_CENTS,
            flat_cents=settings.SHIPPING_FLAT_CENTS,
        ),
    )
