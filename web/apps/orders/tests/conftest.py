"""Shared fixtures for checkout tests.

``InMemoryLedger`` is a dict-backed order ledger with the same conditional
transition semantics as the ORM repository, so the orchestrator can be
tested without a database.
"""

import threading
from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from apps.orders.adapters import InventoryStub, PaymentGatewayStub
from apps.orders.checkout import OrderService
from apps.orders.domain import (
    OrderLedgerPort,
    Order,
    OrderPage,
    OrderStatus,
    ReservationState,
    ShippingAddress,
    ShippingPolicy,
    can_transition,
)
from apps.orders.errors import InvalidTransition, NotFound

GATEWAY_SECRET = "test-gateway-secret"


class InMemoryLedger(OrderLedgerPort):
    def __init__(self):
        self._lock = threading.Lock()
        self._orders: dict = {}
        self.fail_create = False

    def create(self, draft):
        if self.fail_create:
            raise RuntimeError("ledger unavailable")
        now = datetime.now(timezone.utc)
        order = Order(
            id=draft.id,
            user_id=draft.user_id,
            items=list(draft.items),
            shipping_address=draft.shipping_address,
            payment_method=draft.payment_method,
            subtotal_cents=draft.subtotal_cents,
            shipping_cents=draft.shipping_cents,
            total_cents=draft.total_cents,
            currency=draft.currency,
            amount_paid_cents=0,
            amount_due_cents=draft.total_cents,
            created_at=now,
            updated_at=now,
        )
        with self._lock:
            self._orders[order.id] = order
            return replace(order)

    def get(self, order_id):
        with self._lock:
            if order_id not in self._orders:
                raise NotFound("order", order_id)
            return replace(self._orders[order_id])

    def all(self):
        with self._lock:
            return [replace(o) for o in self._orders.values()]

    def list_for_user(self, user_id, page=1, page_size=20):
        mine = [o for o in self.all() if o.user_id == user_id]
        start = (page - 1) * page_size
        return OrderPage(count=len(mine), page=page, page_size=page_size, orders=mine[start:start + page_size])

    def list_all(self, page=1, page_size=20, status=None):
        found = [o for o in self.all() if status is None or o.status == OrderStatus(status)]
        start = (page - 1) * page_size
        return OrderPage(count=len(found), page=page, page_size=page_size, orders=found[start:start + page_size])

    def update_status(self, order_id, status):
        with self._lock:
            order = self._stored(order_id)
            if not can_transition(order.status, status):
                raise InvalidTransition(order.status, OrderStatus(status))
            order.status = OrderStatus(status)
            order.updated_at = datetime.now(timezone.utc)
            return replace(order)

    def attach_gateway_order(self, order_id, gateway_order_id, amount_cents):
        with self._lock:
            order = self._stored(order_id)
            order.gateway_order_id = gateway_order_id
            order.gateway_amount_cents = amount_cents
            return replace(order)

    def confirm_payment(self, order_id, payment_id, signature):
        with self._lock:
            order = self._stored(order_id)
            if order.status != OrderStatus.PENDING:
                return replace(order), False
            order.status = OrderStatus.CONFIRMED
            order.reservation_state = ReservationState.COMMITTED
            order.amount_paid_cents = order.gateway_amount_cents or 0
            order.amount_due_cents = order.total_cents - order.amount_paid_cents
            order.payment_id = payment_id
            order.payment_signature = signature
            return replace(order), True

    def cancel_pending(self, order_id):
        with self._lock:
            order = self._stored(order_id)
            if order.status != OrderStatus.PENDING:
                return replace(order), False
            order.status = OrderStatus.CANCELLED
            order.updated_at = datetime.now(timezone.utc)
            return replace(order), True

    def mark_reservation(self, order_id, state):
        with self._lock:
            order = self._stored(order_id)
            order.reservation_state = ReservationState(state)
            return replace(order)

    def stale_pending(self, cutoff):
        return [o for o in self.all() if o.status == OrderStatus.PENDING and o.created_at < cutoff]

    def unreleased_cancelled(self, cutoff):
        return [
            o
            for o in self.all()
            if o.status == OrderStatus.CANCELLED
            and o.reservation_state == ReservationState.HELD
            and o.updated_at < cutoff
        ]

    def age(self, order_id, seconds):
        """Move an order's timestamps ``seconds`` into the past."""
        with self._lock:
            order = self._stored(order_id)
            order.created_at -= timedelta(seconds=seconds)
            order.updated_at -= timedelta(seconds=seconds)

    def _stored(self, order_id):
        if order_id not in self._orders:
            raise NotFound("order", order_id)
        return self._orders[order_id]


@pytest.fixture
def inventory():
    return InventoryStub(
        {
            "runner-01": {"name": "Trail Runner", "price_cents": 150000, "sizes": {8: 5, 9: 5}},
            "court-02": {"name": "Court Classic", "price_cents": 75000, "sizes": {9: 1, 10: 3}},
        }
    )


@pytest.fixture
def gateway():
    return PaymentGatewayStub(key_secret=GATEWAY_SECRET, key_id="test_key")


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def service(inventory, gateway, ledger):
    return OrderService(
        inventory=inventory,
        payments=gateway,
        ledger=ledger,
        currency="INR",
        deposit_cents=20000,
        shipping=ShippingPolicy(free_threshold_cents=100000, flat_cents=10000),
    )


@pytest.fixture
def address():
    return ShippingAddress(
        full_name="Asha Rao",
        street="12 MG Road",
        city="Bengaluru",
        state="Karnataka",
        zip_code="560001",
        phone="9800000000",
    )


@pytest.fixture
def address_payload():
    return {
        "full_name": "Asha Rao",
        "street": "12 MG Road",
        "city": "Bengaluru",
        "state": "Karnataka",
        "zip_code": "560001",
        "phone": "9800000000",
    }
