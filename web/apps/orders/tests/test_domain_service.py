"""Unit tests for the OrderService checkout orchestration.

These tests drive the service with the in-process inventory and gateway
stubs and the in-memory ledger from ``conftest``. Wrappers around the stubs
inject failures at each step so every compensation path is exercised.
"""

import threading
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from apps.orders.domain import CartLine, OrderStatus, PaymentMethod, ReservationState, ShippingAddress
from apps.orders.errors import (
    EmptyOrder,
    InvalidTransition,
    NotFound,
    OutOfStock,
    PaymentInitFailed,
    PaymentVerificationFailed,
)

ADDR = ShippingAddress(
    full_name="Asha Rao", street="12 MG Road", city="Bengaluru", state="Karnataka", zip_code="560001"
)


def _pay(gateway, order):
    """Complete the gateway checkout for ``order`` and return the proof."""
    return gateway.capture(order.gateway_order_id)


# ---- Scenarios ----
def test_scenario_a_reserves_and_leaves_order_pending(service, inventory):
    placed = service.place_order("u1", [CartLine("runner-01", 8, 2)], ADDR, PaymentMethod.ONLINE)

    assert placed.order.status == OrderStatus.PENDING
    assert placed.order.reservation_state == ReservationState.HELD
    assert inventory.stock("runner-01", 8) == 3
    assert placed.gateway_order.amount_cents == placed.order.total_cents == 300000
    assert placed.order.gateway_order_id == placed.gateway_order.id


def test_scenario_b_out_of_stock_changes_nothing(service, inventory, ledger):
    with pytest.raises(OutOfStock) as e:
        service.place_order("u1", [CartLine("court-02", 9, 2)], ADDR, "online")

    assert str(e.value) == "OUT_OF_STOCK"
    assert [line.as_dict() for line in e.value.lines] == [
        {"product_id": "court-02", "size": 9, "requested": 2, "available": 1, "reason": "INSUFFICIENT_STOCK"}
    ]
    assert inventory.stock("court-02", 9) == 1
    assert ledger.all() == []


def test_scenario_c_cod_collects_deposit_only(service, gateway, inventory):
    placed = service.place_order("u1", [CartLine("runner-01", 9, 1)], ADDR, PaymentMethod.COD)
    assert placed.order.total_cents == 150000
    assert placed.gateway_order.amount_cents == 20000

    payment_id, signature = _pay(gateway, placed.order)
    order = service.confirm_payment(placed.order.id, payment_id, signature)

    assert order.status == OrderStatus.CONFIRMED
    assert order.amount_paid_cents == 20000
    assert order.amount_due_cents == 130000
    assert order.reservation_state == ReservationState.COMMITTED
    assert inventory.reservation_state(order.id) == ReservationState.COMMITTED
    assert inventory.stock("runner-01", 9) == 4


def test_scenario_d_failed_verification_cancels_and_restores(service, inventory):
    placed = service.place_order("u1", [CartLine("runner-01", 9, 1)], ADDR, PaymentMethod.ONLINE)
    assert inventory.stock("runner-01", 9) == 4

    with pytest.raises(PaymentVerificationFailed) as e:
        service.confirm_payment(placed.order.id, "pay_forged", "deadbeef")

    assert e.value.order.status == OrderStatus.CANCELLED
    assert e.value.order.amount_paid_cents == 0
    assert e.value.order.reservation_state == ReservationState.RELEASED
    assert inventory.stock("runner-01", 9) == 5


# ---- Placement ----
def test_empty_cart_raises_empty_order(service):
    with pytest.raises(EmptyOrder) as e:
        service.place_order("u1", [], ADDR, "online")
    assert str(e.value) == "EMPTY_ORDER"


def test_unknown_product_raises_not_found_without_reserving(service, inventory):
    with pytest.raises(NotFound):
        service.place_order("u1", [CartLine("ghost-99", 9, 1), CartLine("runner-01", 8, 1)], ADDR, "online")
    assert inventory.stock("runner-01", 8) == 5


def test_prices_come_from_the_catalog_not_the_client(service):
    placed = service.place_order(
        "u1", [CartLine("runner-01", 8, 1, unit_price_cents=1)], ADDR, PaymentMethod.ONLINE
    )
    assert placed.order.items[0].unit_price_cents == 150000
    assert placed.order.subtotal_cents == 150000


def test_flat_shipping_below_free_threshold(service):
    placed = service.place_order("u1", [CartLine("court-02", 10, 1)], ADDR, PaymentMethod.ONLINE)
    assert placed.order.subtotal_cents == 75000
    assert placed.order.shipping_cents == 10000
    assert placed.order.total_cents == 85000
    assert placed.order.amount_due_cents == 85000


def test_deposit_is_capped_at_the_order_total(service, inventory):
    inventory.upsert_product("sock-01", "Ankle Socks", 5000, {9: 10})
    placed = service.place_order("u1", [CartLine("sock-01", 9, 1)], ADDR, PaymentMethod.COD)
    assert placed.order.total_cents == 15000
    assert placed.gateway_order.amount_cents == 15000


def test_gateway_failure_cancels_order_and_releases_stock(service, gateway, inventory, ledger, monkeypatch):
    def boom(amount_cents, currency, receipt):
        raise PaymentInitFailed("AMOUNT_REJECTED")

    monkeypatch.setattr(gateway, "create_order", boom)

    with pytest.raises(PaymentInitFailed):
        service.place_order("u1", [CartLine("runner-01", 8, 2)], ADDR, PaymentMethod.ONLINE)

    [order] = ledger.all()
    assert order.status == OrderStatus.CANCELLED
    assert order.reservation_state == ReservationState.RELEASED
    assert inventory.stock("runner-01", 8) == 5


def test_gateway_transport_error_becomes_payment_init_failed(service, gateway, inventory, monkeypatch):
    def down(amount_cents, currency, receipt):
        raise httpx.ConnectError("gateway down")

    monkeypatch.setattr(gateway, "create_order", down)

    with pytest.raises(PaymentInitFailed):
        service.place_order("u1", [CartLine("runner-01", 8, 1)], ADDR, PaymentMethod.ONLINE)
    assert inventory.stock("runner-01", 8) == 5


def test_ledger_failure_releases_the_reservation(service, inventory, ledger):
    ledger.fail_create = True

    with pytest.raises(RuntimeError):
        service.place_order("u1", [CartLine("runner-01", 8, 2)], ADDR, PaymentMethod.ONLINE)

    assert inventory.stock("runner-01", 8) == 5
    assert ledger.all() == []


def test_reserve_transport_error_releases_by_key(service, inventory, monkeypatch):
    real_reserve = inventory.reserve

    def reserve_then_timeout(reservation_id, deltas):
        # the decrement lands, the response is lost
        real_reserve(reservation_id, deltas)
        raise httpx.ReadTimeout("lost response")

    monkeypatch.setattr(inventory, "reserve", reserve_then_timeout)

    with pytest.raises(httpx.ReadTimeout):
        service.place_order("u1", [CartLine("runner-01", 8, 2)], ADDR, PaymentMethod.ONLINE)
    assert inventory.stock("runner-01", 8) == 5


def test_losing_the_race_at_reservation_raises_out_of_stock(service, inventory, monkeypatch):
    real_get_products = inventory.get_products

    def stale_snapshot(product_ids):
        snapshot = real_get_products(product_ids)
        # another checkout takes the last unit after our read
        inventory.upsert_product("court-02", "Court Classic", 75000, {9: 0, 10: 3})
        return snapshot

    monkeypatch.setattr(inventory, "get_products", stale_snapshot)

    with pytest.raises(OutOfStock) as e:
        service.place_order("u1", [CartLine("court-02", 9, 1)], ADDR, PaymentMethod.ONLINE)
    assert e.value.lines[0].available == 0
    assert inventory.stock("court-02", 9) == 0


def test_concurrent_checkouts_for_the_last_unit(service, inventory):
    outcomes = []
    barrier = threading.Barrier(2)

    def checkout(user):
        barrier.wait()
        try:
            service.place_order(user, [CartLine("court-02", 9, 1)], ADDR, PaymentMethod.ONLINE)
            outcomes.append("placed")
        except OutOfStock:
            outcomes.append("out_of_stock")

    threads = [threading.Thread(target=checkout, args=(u,)) for u in ("u1", "u2")]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes) == ["out_of_stock", "placed"]
    assert inventory.stock("court-02", 9) == 0


# ---- Confirmation ----
def test_confirming_twice_credits_once(service, gateway):
    placed = service.place_order("u1", [CartLine("runner-01", 8, 1)], ADDR, PaymentMethod.ONLINE)
    payment_id, signature = _pay(gateway, placed.order)

    first = service.confirm_payment(placed.order.id, payment_id, signature)
    second = service.confirm_payment(placed.order.id, payment_id, signature)

    assert first.status == second.status == OrderStatus.CONFIRMED
    assert second.amount_paid_cents == 150000
    assert second.amount_due_cents == 0


def test_forged_proof_on_a_confirmed_order_is_refused_without_changes(service, gateway, inventory):
    placed = service.place_order("u1", [CartLine("runner-01", 8, 1)], ADDR, PaymentMethod.ONLINE)
    payment_id, signature = _pay(gateway, placed.order)
    service.confirm_payment(placed.order.id, payment_id, signature)

    for forged in [(payment_id, "0" * 64), ("pay_other", signature), _pay(gateway, placed.order)]:
        with pytest.raises(PaymentVerificationFailed) as e:
            service.confirm_payment(placed.order.id, *forged)
        assert e.value.order.status == OrderStatus.CONFIRMED

    order = service.get_order(placed.order.id)
    assert order.status == OrderStatus.CONFIRMED
    assert order.payment_id == payment_id
    assert order.amount_paid_cents == 150000
    assert inventory.stock("runner-01", 8) == 4


def test_proof_for_another_gateway_order_is_rejected(service, gateway, inventory):
    mine = service.place_order("u1", [CartLine("runner-01", 8, 1)], ADDR, PaymentMethod.ONLINE)
    other = service.place_order("u2", [CartLine("runner-01", 9, 1)], ADDR, PaymentMethod.ONLINE)
    payment_id, signature = _pay(gateway, other.order)

    with pytest.raises(PaymentVerificationFailed):
        service.confirm_payment(mine.order.id, payment_id, signature)
    assert inventory.stock("runner-01", 8) == 5


def test_replayed_failure_does_not_release_twice(service, inventory):
    placed = service.place_order("u1", [CartLine("runner-01", 8, 2)], ADDR, PaymentMethod.ONLINE)
    with pytest.raises(PaymentVerificationFailed):
        service.confirm_payment(placed.order.id, "pay_x", "bad")

    # stock is taken by someone else in between
    inventory.reserve("someone-else", [CartLine("runner-01", 8, 4)])

    with pytest.raises(PaymentVerificationFailed) as e:
        service.confirm_payment(placed.order.id, "pay_x", "bad")
    assert e.value.order.status == OrderStatus.CANCELLED
    assert inventory.stock("runner-01", 8) == 1


def test_confirm_by_another_user_is_not_found(service, gateway):
    placed = service.place_order("u1", [CartLine("runner-01", 8, 1)], ADDR, PaymentMethod.ONLINE)
    payment_id, signature = _pay(gateway, placed.order)
    with pytest.raises(NotFound):
        service.confirm_payment(placed.order.id, payment_id, signature, user_id="u2")


def test_valid_proof_after_expiry_is_refused(service, gateway, ledger, inventory):
    placed = service.place_order("u1", [CartLine("runner-01", 8, 1)], ADDR, PaymentMethod.ONLINE)
    payment_id, signature = _pay(gateway, placed.order)
    ledger.age(placed.order.id, 3600)
    service.expire_stale(datetime.now(timezone.utc) - timedelta(minutes=30))

    with pytest.raises(PaymentVerificationFailed):
        service.confirm_payment(placed.order.id, payment_id, signature)
    assert inventory.stock("runner-01", 8) == 5


# ---- Fulfillment ----
def test_fulfillment_cannot_leave_pending(service):
    placed = service.place_order("u1", [CartLine("runner-01", 8, 1)], ADDR, PaymentMethod.ONLINE)
    for target in (OrderStatus.CONFIRMED, OrderStatus.CANCELLED, OrderStatus.SHIPPED):
        with pytest.raises(InvalidTransition):
            service.update_status(placed.order.id, target)


def test_fulfillment_walks_the_state_machine(service, gateway):
    placed = service.place_order("u1", [CartLine("runner-01", 8, 1)], ADDR, PaymentMethod.ONLINE)
    service.confirm_payment(placed.order.id, *_pay(gateway, placed.order))

    for target in ("processing", "shipped", "delivered"):
        order = service.update_status(placed.order.id, target)
        assert order.status == OrderStatus(target)

    with pytest.raises(InvalidTransition) as e:
        service.update_status(placed.order.id, "processing")
    assert e.value.current == OrderStatus.DELIVERED


def test_cancelling_a_confirmed_order_keeps_stock_committed(service, gateway, inventory):
    placed = service.place_order("u1", [CartLine("runner-01", 8, 2)], ADDR, PaymentMethod.ONLINE)
    service.confirm_payment(placed.order.id, *_pay(gateway, placed.order))

    order = service.update_status(placed.order.id, OrderStatus.CANCELLED)

    assert order.status == OrderStatus.CANCELLED
    assert inventory.stock("runner-01", 8) == 3


# ---- Expiry ----
def test_expire_stale_cancels_old_pending_orders_only(service, gateway, ledger, inventory):
    old = service.place_order("u1", [CartLine("runner-01", 8, 2)], ADDR, PaymentMethod.ONLINE)
    fresh = service.place_order("u2", [CartLine("runner-01", 9, 1)], ADDR, PaymentMethod.ONLINE)
    paid = service.place_order("u3", [CartLine("court-02", 10, 1)], ADDR, PaymentMethod.ONLINE)
    service.confirm_payment(paid.order.id, *_pay(gateway, paid.order))
    ledger.age(old.order.id, 3600)
    ledger.age(paid.order.id, 3600)

    result = service.expire_stale(datetime.now(timezone.utc) - timedelta(minutes=30))

    assert (result.expired, result.released) == (1, 1)
    assert ledger.get(old.order.id).status == OrderStatus.CANCELLED
    assert ledger.get(fresh.order.id).status == OrderStatus.PENDING
    assert ledger.get(paid.order.id).status == OrderStatus.CONFIRMED
    assert inventory.stock("runner-01", 8) == 5
    assert inventory.stock("runner-01", 9) == 4


def test_expire_stale_retries_a_failed_release(service, ledger, inventory, monkeypatch):
    placed = service.place_order("u1", [CartLine("runner-01", 8, 2)], ADDR, PaymentMethod.ONLINE)
    ledger.age(placed.order.id, 3600)
    cutoff = datetime.now(timezone.utc) - timedelta(minutes=30)

    real_release = inventory.release
    def release_down(reservation_id):
        raise httpx.ConnectError("inventory down")

    monkeypatch.setattr(inventory, "release", release_down)
    first = service.expire_stale(cutoff)
    assert (first.expired, first.released) == (1, 0)
    assert ledger.get(placed.order.id).reservation_state == ReservationState.HELD
    assert inventory.stock("runner-01", 8) == 3

    monkeypatch.setattr(inventory, "release", real_release)
    ledger.age(placed.order.id, 3600)
    second = service.expire_stale(cutoff)
    assert (second.expired, second.released) == (0, 1)
    assert ledger.get(placed.order.id).reservation_state == ReservationState.RELEASED
    assert inventory.stock("runner-01", 8) == 5


# ---- Queries ----
def test_list_orders_is_scoped_to_the_user(service):
    service.place_order("u1", [CartLine("runner-01", 8, 1)], ADDR, PaymentMethod.ONLINE)
    service.place_order("u2", [CartLine("runner-01", 8, 1)], ADDR, PaymentMethod.ONLINE)

    page = service.list_orders("u1")
    assert page.count == 1
    assert page.orders[0].user_id == "u1"
    assert service.list_all_orders().count == 2
