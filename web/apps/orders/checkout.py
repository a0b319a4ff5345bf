"""Checkout orchestration.

``OrderService`` sequences a checkout: stock pre-check, pricing from
authoritative product data, the stock reservation (the single commit
point), the pending order write, and the gateway round trip. Once a
reservation has succeeded the order must end up either confirmed or
cancelled with its stock released; every failure after the commit point
is compensated here rather than in the views.
"""

import logging
import uuid
from datetime import datetime
from typing import List
from uuid import UUID

from .domain import (
    CartLine,
    InventoryPort,
    Order,
    OrderDraft,
    OrderLedgerPort,
    OrderLine,
    OrderPage,
    OrderStatus,
    PaymentGatewayPort,
    PaymentMethod,
    PlacedOrder,
    ProductSnapshot,
    ReservationState,
    ShippingAddress,
    ShippingPolicy,
    StockDelta,
    SweepResult,
)
from .errors import (
    EmptyOrder,
    InvalidTransition,
    NotFound,
    OutOfStock,
    PaymentInitFailed,
    PaymentVerificationFailed,
)
from .validation import validate_cart

logger = logging.getLogger("orders.checkout")


class OrderService:
    """Domain service responsible for placing and settling orders.

    The service holds no state of its own; inventory, gateway and ledger
    are injected ports so tests can drive every failure path.
    """

    def __init__(
        self,
        inventory: InventoryPort,
        payments: PaymentGatewayPort,
        ledger: OrderLedgerPort,
        currency: str = "INR",
        deposit_cents: int = 20000,
        shipping: ShippingPolicy | None = None,
    ):
        """Initialize the service with required dependencies.

        Args:
            inventory: Store that reserves and releases stock.
            payments: Gateway used to create and verify payments.
            ledger: Durable order storage.
            currency: ISO code every order is priced in.
            deposit_cents: Amount captured online for cash-on-delivery orders.
            shipping: Shipping fee policy; free shipping when omitted.
        """
        self.inventory = inventory
        self.payments = payments
        self.ledger = ledger
        self.currency = currency
        self.deposit_cents = deposit_cents
        self.shipping = shipping or ShippingPolicy(free_threshold_cents=0, flat_cents=0)

    # ---- Commands ----
    def place_order(
        self,
        user_id: str,
        lines: List[CartLine],
        shipping_address: ShippingAddress,
        payment_method: PaymentMethod | str,
    ) -> PlacedOrder:
        """Reserve stock, write a pending order and open a gateway order.

        Args:
            user_id: Authenticated shopper id.
            lines: Cart snapshot.
            shipping_address: Where the order ships.
            payment_method: ``online`` for full payment, ``cod`` for a deposit.

        Returns:
            PlacedOrder: The pending order and the gateway order the client
            must complete.

        Raises:
            EmptyOrder: If ``lines`` is empty.
            NotFound: If a line references an unknown product.
            OutOfStock: If the pre-check or the reservation fails.
            PaymentInitFailed: If the gateway order cannot be created; the
                order is cancelled and its stock released first.
        """
        if not lines:
            raise EmptyOrder()
        method = PaymentMethod(payment_method)

        # 1) Pre-check, no side effects
        catalog = self.inventory.get_products(sorted({line.product_id for line in lines}))
        check = validate_cart(lines, catalog)
        if not check.satisfiable:
            raise OutOfStock(check.failures)

        # 2) Price from authoritative data
        items = self._price_lines(check.deltas, catalog)
        self._log_price_drift(lines, catalog)
        subtotal = sum(item.line_total_cents for item in items)
        shipping_cents = self.shipping.cost_for(subtotal)
        draft = OrderDraft(
            id=uuid.uuid4(),
            user_id=str(user_id),
            items=items,
            shipping_address=shipping_address,
            payment_method=method,
            subtotal_cents=subtotal,
            shipping_cents=shipping_cents,
            total_cents=subtotal + shipping_cents,
            currency=self.currency,
        )

        # 3) Reserve (commit point)
        self._reserve(draft.id, check.deltas)

        # 4) Pending order, written right after the reservation
        try:
            order = self.ledger.create(draft)
        except Exception:
            logger.exception("order write failed, releasing stock", extra={"order_id": str(draft.id)})
            self._release_after_failure(draft.id)
            raise
        logger.info(
            "order created",
            extra={"order_id": str(order.id), "user_id": order.user_id, "total_cents": order.total_cents},
        )

        # 5) Gateway order for the total or the deposit
        amount = order.total_cents if method is PaymentMethod.ONLINE else min(self.deposit_cents, order.total_cents)
        try:
            gateway_order = self.payments.create_order(amount, order.currency, receipt=str(order.id))
        except Exception as exc:
            logger.warning("gateway order failed", extra={"order_id": str(order.id), "error": str(exc)})
            self._cancel_and_release(order.id)
            if isinstance(exc, PaymentInitFailed):
                raise
            raise PaymentInitFailed(str(exc)) from exc

        try:
            order = self.ledger.attach_gateway_order(order.id, gateway_order.id, gateway_order.amount_cents)
        except Exception:
            logger.exception("gateway reference write failed", extra={"order_id": str(order.id)})
            self._cancel_and_release(order.id)
            raise
        return PlacedOrder(order=order, gateway_order=gateway_order)

    def confirm_payment(
        self,
        order_id: UUID,
        payment_id: str,
        signature: str,
        user_id: str | None = None,
    ) -> Order:
        """Settle a pending order from a gateway payment proof.

        The proof is checked against the gateway order id stored on the
        order, never against anything the caller asserts. Replays are safe:
        a settled order is returned unchanged for the proof that settled it,
        any other proof is refused without touching the order, and a
        cancelled order is reported as failed without touching stock again.

        Args:
            order_id: Order to settle.
            payment_id: Gateway payment id from the proof.
            signature: Gateway signature from the proof.
            user_id: When given, the order must belong to this user.

        Returns:
            Order: The confirmed order.

        Raises:
            NotFound: If the order does not exist (or is not the user's).
            PaymentVerificationFailed: If the proof does not verify; a
                pending order is cancelled and its stock released, a
                settled one is left as it is.
        """
        order = self.get_order(order_id, user_id=user_id)

        if order.status == OrderStatus.CANCELLED:
            raise PaymentVerificationFailed(order)
        if order.status != OrderStatus.PENDING:
            if payment_id == order.payment_id and self.payments.verify(order.gateway_order_id, payment_id, signature):
                return order
            logger.warning("proof does not match the settled payment", extra={"order_id": str(order.id)})
            raise PaymentVerificationFailed(order)

        verified = bool(order.gateway_order_id) and self.payments.verify(
            order.gateway_order_id, payment_id, signature
        )
        if not verified:
            logger.warning("payment verification failed", extra={"order_id": str(order.id)})
            raise PaymentVerificationFailed(self._cancel_and_release(order.id))

        order, confirmed_now = self.ledger.confirm_payment(order.id, payment_id, signature)
        if not confirmed_now:
            if order.status == OrderStatus.CANCELLED:
                # expired between the read above and the conditional update
                logger.error("payment verified for an order that was cancelled", extra={"order_id": str(order.id)})
                raise PaymentVerificationFailed(order)
            if order.payment_id != payment_id:
                # a second genuine payment on the same gateway order
                logger.error("order already settled by another payment", extra={"order_id": str(order.id)})
                raise PaymentVerificationFailed(order)
            return order

        logger.info(
            "order confirmed",
            extra={"order_id": str(order.id), "amount_paid_cents": order.amount_paid_cents},
        )
        self._commit_reservation(order.id)
        return order

    def update_status(self, order_id: UUID, status: OrderStatus | str) -> Order:
        """Fulfillment transition (processing, shipped, delivered, cancelled).

        Leaving ``pending`` is reserved to payment confirmation and expiry,
        and a cancellation from here never gives stock back.

        Raises:
            NotFound: If the order does not exist.
            InvalidTransition: If the change is not allowed.
        """
        requested = OrderStatus(status)
        order = self.ledger.get(order_id)
        if order.status == OrderStatus.PENDING:
            raise InvalidTransition(order.status, requested)
        return self.ledger.update_status(order.id, requested)

    def expire_stale(self, cutoff: datetime) -> SweepResult:
        """Cancel pending orders created before ``cutoff`` and release their stock.

        Also retries releases for cancelled orders whose stock is still held
        because an earlier release call failed.
        """
        expired = 0
        released = 0
        for stale in self.ledger.stale_pending(cutoff):
            order, cancelled_now = self.ledger.cancel_pending(stale.id)
            if not cancelled_now:
                continue
            expired += 1
            logger.info("pending order expired", extra={"order_id": str(order.id)})
            if self._release(order).reservation_state == ReservationState.RELEASED:
                released += 1

        for order in self.ledger.unreleased_cancelled(cutoff):
            if self._release(order).reservation_state == ReservationState.RELEASED:
                released += 1
        return SweepResult(expired=expired, released=released)

    # ---- Queries ----
    def get_order(self, order_id: UUID, user_id: str | None = None) -> Order:
        order = self.ledger.get(order_id)
        if user_id is not None and order.user_id != str(user_id):
            raise NotFound("order", order_id)
        return order

    def list_orders(self, user_id: str, page: int = 1, page_size: int = 20) -> OrderPage:
        return self.ledger.list_for_user(str(user_id), page=page, page_size=page_size)

    def list_all_orders(self, page: int = 1, page_size: int = 20, status: OrderStatus | None = None) -> OrderPage:
        return self.ledger.list_all(page=page, page_size=page_size, status=status)

    # ---- Helpers ----
    def _price_lines(self, deltas: List[StockDelta], catalog: dict[str, ProductSnapshot]) -> List[OrderLine]:
        return [
            OrderLine(
                product_id=d.product_id,
                product_name=catalog[d.product_id].name,
                size=d.size,
                quantity=d.quantity,
                unit_price_cents=catalog[d.product_id].price_cents,
            )
            for d in deltas
        ]

    def _log_price_drift(self, lines: List[CartLine], catalog: dict[str, ProductSnapshot]) -> None:
        for line in lines:
            current = catalog[line.product_id].price_cents
            if line.unit_price_cents is not None and line.unit_price_cents != current:
                logger.info(
                    "client price differs from catalog",
                    extra={"product_id": line.product_id, "client_cents": line.unit_price_cents, "catalog_cents": current},
                )

    def _reserve(self, order_id: UUID, deltas: List[StockDelta]) -> None:
        try:
            result = self.inventory.reserve(order_id, deltas)
        except Exception:
            # the decrement may have landed before the failure; release is keyed and safe
            logger.exception("reservation outcome unknown", extra={"order_id": str(order_id)})
            self._release_after_failure(order_id)
            raise
        if not result.reserved:
            logger.info("reservation lost the race", extra={"order_id": str(order_id)})
            raise OutOfStock(result.shortages)
        logger.info("stock reserved", extra={"order_id": str(order_id), "lines": len(deltas)})

    def _cancel_and_release(self, order_id: UUID) -> Order:
        """Cancel a pending order; only the caller that cancels it releases stock."""
        order, cancelled_now = self.ledger.cancel_pending(order_id)
        if not cancelled_now:
            return order
        logger.info("order cancelled", extra={"order_id": str(order.id)})
        return self._release(order)

    def _release(self, order: Order) -> Order:
        try:
            released = self.inventory.release(order.id)
        except Exception:
            logger.exception("stock release failed, left for the sweeper", extra={"order_id": str(order.id)})
            return order
        logger.info("stock released", extra={"order_id": str(order.id), "released": released})
        return self.ledger.mark_reservation(order.id, ReservationState.RELEASED)

    def _release_after_failure(self, order_id: UUID) -> None:
        try:
            self.inventory.release(order_id)
        except Exception:
            logger.exception("compensating release failed", extra={"order_id": str(order_id)})

    def _commit_reservation(self, order_id: UUID) -> None:
        try:
            self.inventory.commit(order_id)
        except Exception:
            # the decrement is already permanent; commit only retires the hold record
            logger.warning("reservation commit failed", extra={"order_id": str(order_id)}, exc_info=True)
