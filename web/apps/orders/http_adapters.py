"""httpx clients for the inventory service and the payment gateway.

Both clients share one request loop that:

- forwards the current ``X-Request-ID`` (from the gateway middleware
    ContextVar) to the downstream service;
- consults a per-service circuit breaker before calling, and probes a
    single request once the breaker has cooled down;
- retries transport errors and 5xx with exponential backoff. Retrying is
    safe because reservations are keyed by order id and gateway orders by
    receipt.
"""

import os
import sys
import threading
import time
from enum import Enum
from typing import Iterable, List, Optional
from uuid import UUID

import httpx
from django.conf import settings
from django.utils.module_loading import import_string

from .domain import (
    GatewayOrder,
    InventoryPort,
    LineFailure,
    PaymentGatewayPort,
    ProductSnapshot,
    ReserveResult,
    StockDelta,
)
from .errors import PaymentInitFailed
from .signatures import verify_signature

REQUEST_ID_CTX = import_string("gateway.middleware.REQUEST_ID_CTX")


def _is_test_mode() -> bool:
    return (
        "pytest" in sys.modules
        or os.environ.get("PYTEST_CURRENT_TEST") is not None
        or os.environ.get("PYTEST_RUNNING") == "1"
    )

# ---------------- Circuit Breaker ---------------- #

class BreakerState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """Minimal circuit breaker with CLOSED/OPEN/HALF_OPEN states.

    Transitions:
    - CLOSED → OPEN when failures reach ``fail_threshold``.
    - OPEN → HALF_OPEN after ``reset_timeout`` seconds.
    - HALF_OPEN → CLOSED on a successful probe; only one probe may be in
      flight; a failed probe opens the circuit again.

    Thread-safe via an internal lock.
    """

    def __init__(self, name: str, fail_threshold: int, reset_timeout: float):
        self.name = name
        self.fail_threshold = fail_threshold
        self.reset_timeout = reset_timeout
        self._lock = threading.RLock()
        self._failures = 0
        self._state = BreakerState.CLOSED
        self._opened_at = 0.0
        self._probe_in_flight = False

    @property
    def state(self) -> BreakerState:
        """Current state, moving OPEN to HALF_OPEN once the timeout elapsed."""
        with self._lock:
            if self._state is BreakerState.OPEN and (time.monotonic() - self._opened_at) >= self.reset_timeout:
                self._state = BreakerState.HALF_OPEN
                self._probe_in_flight = False
            return self._state

    def before_call(self) -> BreakerState:
        """Gate a protected call.

        Raises:
            RuntimeError: ``CIRCUIT_OPEN`` while open, ``CIRCUIT_HALF_OPEN_BUSY``
                while another probe is running.
        """
        with self._lock:
            st = self.state
            if st is BreakerState.OPEN:
                raise RuntimeError("CIRCUIT_OPEN")
            if st is BreakerState.HALF_OPEN:
                if self._probe_in_flight:
                    raise RuntimeError("CIRCUIT_HALF_OPEN_BUSY")
                self._probe_in_flight = True
            return st

    def on_success(self):
        with self._lock:
            self._failures = 0
            self._state = BreakerState.CLOSED
            self._probe_in_flight = False

    def on_failure(self):
        with self._lock:
            self._failures += 1
            if self._state is BreakerState.HALF_OPEN or (
                self._failures >= self.fail_threshold and self._state is not BreakerState.OPEN
            ):
                self._state = BreakerState.OPEN
                self._opened_at = time.monotonic()
                self._probe_in_flight = False

    def on_finish(self):
        with self._lock:
            if self._state is BreakerState.HALF_OPEN:
                self._probe_in_flight = False


_inventory_cb = CircuitBreaker(
    "inventory",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)
_payments_cb = CircuitBreaker(
    "payments",
    getattr(settings, "HTTP_CIRCUIT_FAIL_THRESHOLD", 5),
    getattr(settings, "HTTP_CIRCUIT_RESET_TIMEOUT", 30.0),
)


# ---------------- Helpers ---------------- #

def _request_headers(extra: Optional[dict] = None) -> dict:
    """Base headers carrying ``X-Request-ID`` when one is set, plus ``extra``."""
    headers: dict[str, str] = {}
    rid = REQUEST_ID_CTX.get()
    if rid and rid != "-":
        headers["X-Request-ID"] = rid
    if extra:
        headers.update(extra)
    return headers


def _retry_policy():
    """Return retry configuration as (max_retries, backoff_base_seconds)."""
    return (
        getattr(settings, "HTTP_RETRY_MAX", 3),
        getattr(settings, "HTTP_RETRY_BACKOFF_BASE", 0.15),
    )


def _should_retry(resp: Optional[httpx.Response], exc: Optional[Exception]) -> bool:
    """Retry only on transport errors or HTTP 5xx."""
    if exc is not None:
        return True
    if resp is not None and 500 <= resp.status_code < 600:
        return True
    return False


class _ServiceClient:
    """Shared request loop: circuit precheck, retries with backoff, breaker accounting.

    Subclasses set ``breaker`` and ``business_statuses``: non-2xx statuses
    that are answers rather than failures and are returned to the caller
    without counting against the circuit.
    """

    breaker: CircuitBreaker
    business_statuses: frozenset[int] = frozenset()

    def __init__(self, base_url: str, timeout: float | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECS

    def _send(self, method: str, path: str, json=None, params=None, extra_headers=None) -> httpx.Response:
        """Send one logical request.

        Raises:
            RuntimeError: When the circuit is open.
            httpx.RequestError: For network/transport errors after retries.
            httpx.HTTPStatusError: For non-retriable non-2xx responses, or 5xx
                once retries are exhausted.
        """
        max_retries, backoff = _retry_policy()
        if _is_test_mode():
            max_retries = max(max_retries, 1)
            backoff = 0.0
        tries = 0

        state = self.breaker.before_call()
        headers = _request_headers({**(extra_headers or {}), "X-Circuit-State": state.value, "X-Retry-Count": "0"})

        try:
            with httpx.Client(timeout=self.timeout) as client:
                while True:
                    resp = None
                    exc = None
                    try:
                        resp = client.request(method, f"{self.base_url}{path}", json=json, params=params, headers=headers)
                        if resp.status_code < 400 or resp.status_code in self.business_statuses:
                            self.breaker.on_success()
                            return resp
                        if not _should_retry(resp, None):
                            resp.raise_for_status()
                    except httpx.RequestError as e:
                        exc = e

                    tries += 1
                    headers["X-Retry-Count"] = str(tries)

                    if tries >= max_retries or not _should_retry(resp, exc):
                        self.breaker.on_failure()
                        if exc:
                            raise exc
                        resp.raise_for_status()

                    sleep_s = backoff * (2 ** (tries - 1))
                    cap = getattr(settings, "HTTP_RETRY_MAX_SLEEP", 0.5)
                    if not _is_test_mode():
                        time.sleep(min(sleep_s, cap))
        finally:
            self.breaker.on_finish()


# ---------------- Inventory Adapter ---------------- #

class HttpInventoryClient(_ServiceClient, InventoryPort):
    """HTTP client for the inventory service.

    Business mappings:
    - ``POST /reserve`` 422 → ``ReserveResult(reserved=False, shortages)``,
      not counted as a circuit failure.
    """

    breaker = _inventory_cb
    business_statuses = frozenset({422})

    def __init__(self, base_url: str | None = None, timeout: float | None = None):
        super().__init__(base_url or settings.INVENTORY_BASE_URL, timeout)

    def get_products(self, product_ids: Iterable[str]) -> dict[str, ProductSnapshot]:
        params = [("ids", pid) for pid in product_ids]
        resp = self._send("GET", "/products", params=params)
        return {
            p["id"]: ProductSnapshot(
                id=p["id"],
                name=p["name"],
                price_cents=int(p["price_cents"]),
                sizes={int(s["size"]): int(s["stock"]) for s in p.get("sizes", [])},
            )
            for p in resp.json()
        }

    def reserve(self, reservation_id: UUID, deltas: List[StockDelta]) -> ReserveResult:
        payload = {
            "reservation_id": str(reservation_id),
            "items": [{"product_id": d.product_id, "size": d.size, "quantity": d.quantity} for d in deltas],
        }
        resp = self._send("POST", "/reserve", json=payload)
        body = resp.json()
        shortages = [
            LineFailure(
                product_id=s["product_id"],
                size=int(s["size"]),
                requested=int(s["requested"]),
                available=int(s["available"]),
                reason=s.get("reason", "INSUFFICIENT_STOCK"),
            )
            for s in body.get("shortages", [])
        ]
        return ReserveResult(reserved=bool(body.get("reserved", False)), shortages=shortages)

    def release(self, reservation_id: UUID) -> bool:
        resp = self._send("POST", f"/reservations/{reservation_id}/release")
        return bool(resp.json().get("released", False))

    def commit(self, reservation_id: UUID) -> bool:
        resp = self._send("POST", f"/reservations/{reservation_id}/commit")
        return bool(resp.json().get("committed", False))


# ---------------- Payments Adapter ---------------- #

class HttpPaymentGatewayClient(_ServiceClient, PaymentGatewayPort):
    """HTTP client for the payment gateway.

    Gateway orders are created with the receipt as ``Idempotency-Key`` so a
    retried create returns the same gateway order. Proofs are verified
    locally with the merchant key secret; no network call is involved.

    Business mappings:
    - 409 or 422 on create → ``PaymentInitFailed`` (amount rejected or
      receipt reused with a different amount), not a circuit failure.
    """

    breaker = _payments_cb
    business_statuses = frozenset({409, 422})

    def __init__(self, base_url: str | None = None, timeout: float | None = None, key_secret: str | None = None):
        super().__init__(base_url or settings.PAYMENTS_BASE_URL, timeout)
        self.key_secret = key_secret or settings.PAYMENT_GATEWAY_KEY_SECRET

    def create_order(self, amount_cents: int, currency: str, receipt: str) -> GatewayOrder:
        payload = {"amount_cents": amount_cents, "currency": currency, "receipt": receipt}
        resp = self._send("POST", "/orders", json=payload, extra_headers={"Idempotency-Key": receipt})
        data = resp.json()
        if resp.status_code in self.business_statuses:
            raise PaymentInitFailed(str(data.get("detail", resp.status_code)))
        return GatewayOrder(
            id=data["id"],
            amount_cents=int(data["amount_cents"]),
            currency=data["currency"],
            receipt=data.get("receipt", receipt),
        )

    def verify(self, gateway_order_id: str, payment_id: str, signature: str) -> bool:
        return verify_signature(self.key_secret, gateway_order_id, payment_id, signature)
