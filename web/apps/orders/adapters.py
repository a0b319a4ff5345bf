"""In-process adapters for the checkout ports.

These implement ``InventoryPort`` and ``PaymentGatewayPort`` without any
network calls. They keep the same contracts as the HTTP services
(all-or-nothing keyed reservations, signed payment proofs) so unit tests
and local development exercise the real checkout rules.
"""

import threading
import uuid
from typing import Iterable, List, Mapping

from .domain import (
    GatewayOrder,
    InventoryPort,
    LineFailure,
    PaymentGatewayPort,
    ProductSnapshot,
    ReservationState,
    ReserveResult,
    StockDelta,
)
from .errors import PaymentInitFailed
from .signatures import sign, verify_signature
from .validation import merge_lines


class InventoryStub(InventoryPort):
    """In-memory inventory store.

    A single lock guards every check-and-decrement, so two concurrent
    reservations can never both take the last unit of a size.

    Args:
        products: Optional ``{product_id: {"name", "price_cents", "sizes"}}``
            where ``sizes`` maps size to stock.
    """

    def __init__(self, products: Mapping[str, Mapping] | None = None):
        self._lock = threading.Lock()
        self._products: dict[str, dict] = {}
        self._reservations: dict[str, dict] = {}
        for product_id, data in (products or {}).items():
            self.upsert_product(product_id, data["name"], data["price_cents"], data["sizes"])

    def upsert_product(self, product_id: str, name: str, price_cents: int, sizes: Mapping) -> None:
        """Create or replace a product and its size/stock table."""
        with self._lock:
            self._products[product_id] = {
                "name": name,
                "price_cents": int(price_cents),
                "sizes": {int(size): int(stock) for size, stock in sizes.items()},
            }

    def stock(self, product_id: str, size: int) -> int | None:
        with self._lock:
            product = self._products.get(product_id)
            return None if product is None else product["sizes"].get(int(size))

    def reservation_state(self, reservation_id) -> ReservationState | None:
        with self._lock:
            rec = self._reservations.get(str(reservation_id))
            return None if rec is None else rec["state"]

    def get_products(self, product_ids: Iterable[str]) -> dict[str, ProductSnapshot]:
        with self._lock:
            return {
                pid: ProductSnapshot(
                    id=pid,
                    name=self._products[pid]["name"],
                    price_cents=self._products[pid]["price_cents"],
                    sizes=dict(self._products[pid]["sizes"]),
                )
                for pid in product_ids
                if pid in self._products
            }

    def reserve(self, reservation_id, deltas: List[StockDelta]) -> ReserveResult:
        """Apply every delta or none; a known ``reservation_id`` is a replay."""
        key = str(reservation_id)
        merged = merge_lines(deltas)
        with self._lock:
            existing = self._reservations.get(key)
            if existing is not None:
                return ReserveResult(reserved=existing["state"] != ReservationState.RELEASED)

            shortages = self._shortages(merged)
            if shortages:
                return ReserveResult(reserved=False, shortages=shortages)

            for d in merged:
                self._products[d.product_id]["sizes"][d.size] -= d.quantity
            self._reservations[key] = {"items": merged, "state": ReservationState.HELD}
            return ReserveResult(reserved=True)

    def release(self, reservation_id) -> bool:
        """Restore a held reservation once.

        Releasing an unknown id leaves a released marker so a late
        ``reserve`` with the same id cannot take stock afterwards.
        """
        key = str(reservation_id)
        with self._lock:
            rec = self._reservations.get(key)
            if rec is None:
                self._reservations[key] = {"items": [], "state": ReservationState.RELEASED}
                return False
            if rec["state"] != ReservationState.HELD:
                return False
            for d in rec["items"]:
                self._products[d.product_id]["sizes"][d.size] += d.quantity
            rec["state"] = ReservationState.RELEASED
            return True

    def commit(self, reservation_id) -> bool:
        with self._lock:
            rec = self._reservations.get(str(reservation_id))
            if rec is None or rec["state"] != ReservationState.HELD:
                return False
            rec["state"] = ReservationState.COMMITTED
            return True

    def _shortages(self, merged: List[StockDelta]) -> List[LineFailure]:
        out = []
        for d in merged:
            product = self._products.get(d.product_id)
            if product is None:
                out.append(LineFailure(d.product_id, d.size, d.quantity, 0, reason="UNKNOWN_PRODUCT"))
                continue
            available = product["sizes"].get(d.size)
            if available is None:
                out.append(LineFailure(d.product_id, d.size, d.quantity, 0, reason="UNKNOWN_SIZE"))
            elif available < d.quantity:
                out.append(LineFailure(d.product_id, d.size, d.quantity, available))
        return out


class PaymentGatewayStub(PaymentGatewayPort):
    """In-memory payment gateway.

    Gateway orders are idempotent on the receipt. ``capture`` plays the
    part of the hosted checkout page: it returns a payment id and the
    signature the real gateway would send back to the client.
    """

    def __init__(self, key_secret: str, key_id: str = "stub_key"):
        self.key_id = key_id
        self.key_secret = key_secret
        self._lock = threading.Lock()
        self._by_receipt: dict[str, GatewayOrder] = {}

    def create_order(self, amount_cents: int, currency: str, receipt: str) -> GatewayOrder:
        if amount_cents <= 0:
            raise PaymentInitFailed("AMOUNT_REJECTED")
        with self._lock:
            existing = self._by_receipt.get(receipt)
            if existing is not None:
                if existing.amount_cents != amount_cents or existing.currency != currency:
                    raise PaymentInitFailed("IDEMPOTENCY_CONFLICT")
                return existing
            order = GatewayOrder(
                id=f"order_{uuid.uuid4().hex[:14]}",
                amount_cents=amount_cents,
                currency=currency,
                receipt=receipt,
            )
            self._by_receipt[receipt] = order
            return order

    def verify(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        return verify_signature(self.key_secret, gateway_order_id, payment_id, signature)

    def capture(self, gateway_order_id: str) -> tuple[str, str]:
        """Return ``(payment_id, signature)`` for a successful sandbox payment."""
        payment_id = f"pay_{uuid.uuid4().hex[:14]}"
        return payment_id, sign(self.key_secret, gateway_order_id, payment_id)
