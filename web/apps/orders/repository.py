"""Repository layer for persisting orders.

This module contains the Django ORM implementation of the order ledger.
It keeps a thin interface so the checkout orchestrator is not coupled to
Django ORM details: every method takes and returns domain objects.

Status changes are conditional updates performed under a row lock
(``SELECT ... FOR UPDATE``) inside ``transaction.atomic``, so concurrent
confirmations, cancellations and expiries serialize on the order row and
exactly one of them wins.
"""

from datetime import datetime
from typing import List
from uuid import UUID

from django.core.paginator import Paginator
from django.db import transaction

from .domain import (
    Order,
    OrderDraft,
    OrderLine,
    OrderPage,
    OrderStatus,
    PaymentMethod,
    ReservationState,
    ShippingAddress,
    can_transition,
)
from .errors import InvalidTransition, NotFound
from .models import OrderLineModel, OrderModel


def _to_domain(obj: OrderModel) -> Order:
    items = [
        OrderLine(
            product_id=line.product_id,
            product_name=line.product_name,
            size=line.size,
            quantity=line.quantity,
            unit_price_cents=line.unit_price_cents,
        )
        for line in obj.lines.all()
    ]
    addr = obj.shipping_address or {}
    return Order(
        id=obj.id,
        user_id=obj.user_id,
        items=items,
        shipping_address=ShippingAddress(
            full_name=addr.get("full_name", ""),
            street=addr.get("street", ""),
            city=addr.get("city", ""),
            state=addr.get("state", ""),
            zip_code=addr.get("zip_code", ""),
            country=addr.get("country", "India"),
            phone=addr.get("phone"),
        ),
        payment_method=PaymentMethod(obj.payment_method),
        subtotal_cents=obj.subtotal_cents,
        shipping_cents=obj.shipping_cents,
        total_cents=obj.total_cents,
        currency=obj.currency,
        amount_paid_cents=obj.amount_paid_cents,
        amount_due_cents=obj.amount_due_cents,
        status=OrderStatus(obj.status),
        reservation_state=ReservationState(obj.reservation_state),
        gateway_order_id=obj.gateway_order_id,
        gateway_amount_cents=obj.gateway_amount_cents,
        payment_id=obj.payment_id,
        payment_signature=obj.payment_signature,
        created_at=obj.created_at,
        updated_at=obj.updated_at,
    )


class OrderRepository:
    """Order ledger backed by the Django ORM.

    Methods returning ``(Order, bool)`` are conditional transitions: the
    flag is True only when this call performed the change.
    """

    def create(self, draft: OrderDraft) -> Order:
        """Persist a new pending order and its line snapshots atomically.

        Args:
            draft: Priced order whose id is also its reservation key.

        Returns:
            Order: The stored order with nothing paid and the full total due.
        """
        with transaction.atomic():
            obj = OrderModel.objects.create(
                id=draft.id,
                user_id=draft.user_id,
                status=OrderStatus.PENDING.value,
                payment_method=PaymentMethod(draft.payment_method).value,
                reservation_state=ReservationState.HELD.value,
                shipping_address=draft.shipping_address.as_dict(),
                subtotal_cents=draft.subtotal_cents,
                shipping_cents=draft.shipping_cents,
                total_cents=draft.total_cents,
                amount_paid_cents=0,
                amount_due_cents=draft.total_cents,
                currency=draft.currency,
            )
            OrderLineModel.objects.bulk_create(
                [
                    OrderLineModel(
                        order=obj,
                        product_id=item.product_id,
                        product_name=item.product_name,
                        size=item.size,
                        quantity=item.quantity,
                        unit_price_cents=item.unit_price_cents,
                    )
                    for item in draft.items
                ]
            )
        return self.get(obj.id)

    def get(self, order_id: UUID) -> Order:
        """Return the order with ``order_id``.

        Raises:
            NotFound: If no such order exists.
        """
        try:
            obj = OrderModel.objects.prefetch_related("lines").get(id=order_id)
        except OrderModel.DoesNotExist:
            raise NotFound("order", order_id)
        return _to_domain(obj)

    def list_for_user(self, user_id: str, page: int = 1, page_size: int = 20) -> OrderPage:
        qs = OrderModel.objects.filter(user_id=str(user_id))
        return self._page(qs, page, page_size)

    def list_all(self, page: int = 1, page_size: int = 20, status: OrderStatus | None = None) -> OrderPage:
        qs = OrderModel.objects.all()
        if status is not None:
            qs = qs.filter(status=OrderStatus(status).value)
        return self._page(qs, page, page_size)

    def update_status(self, order_id: UUID, status: OrderStatus) -> Order:
        """Apply a transition from the status table under a row lock.

        Raises:
            NotFound: If the order does not exist.
            InvalidTransition: If the transition is not allowed from the
                order's current status.
        """
        requested = OrderStatus(status)
        with transaction.atomic():
            obj = self._locked(order_id)
            current = OrderStatus(obj.status)
            if not can_transition(current, requested):
                raise InvalidTransition(current, requested)
            obj.status = requested.value
            obj.save(update_fields=["status", "updated_at"])
        return self.get(order_id)

    def attach_gateway_order(self, order_id: UUID, gateway_order_id: str, amount_cents: int) -> Order:
        with transaction.atomic():
            obj = self._locked(order_id)
            obj.gateway_order_id = gateway_order_id
            obj.gateway_amount_cents = amount_cents
            obj.save(update_fields=["gateway_order_id", "gateway_amount_cents", "updated_at"])
        return self.get(order_id)

    def confirm_payment(self, order_id: UUID, payment_id: str, signature: str) -> tuple[Order, bool]:
        """Move a pending order to confirmed and record what was paid.

        The amount paid is what the gateway order was created for: the full
        total for online orders, the deposit for cash on delivery.
        """
        with transaction.atomic():
            obj = self._locked(order_id)
            if obj.status != OrderStatus.PENDING.value:
                return self.get(order_id), False
            paid = obj.gateway_amount_cents or 0
            obj.status = OrderStatus.CONFIRMED.value
            obj.reservation_state = ReservationState.COMMITTED.value
            obj.amount_paid_cents = paid
            obj.amount_due_cents = obj.total_cents - paid
            obj.payment_id = payment_id
            obj.payment_signature = signature
            obj.save(
                update_fields=[
                    "status",
                    "reservation_state",
                    "amount_paid_cents",
                    "amount_due_cents",
                    "payment_id",
                    "payment_signature",
                    "updated_at",
                ]
            )
        return self.get(order_id), True

    def cancel_pending(self, order_id: UUID) -> tuple[Order, bool]:
        with transaction.atomic():
            obj = self._locked(order_id)
            if obj.status != OrderStatus.PENDING.value:
                return self.get(order_id), False
            obj.status = OrderStatus.CANCELLED.value
            obj.save(update_fields=["status", "updated_at"])
        return self.get(order_id), True

    def mark_reservation(self, order_id: UUID, state: ReservationState) -> Order:
        OrderModel.objects.filter(id=order_id).update(reservation_state=ReservationState(state).value)
        return self.get(order_id)

    def stale_pending(self, cutoff: datetime) -> List[Order]:
        qs = OrderModel.objects.filter(status=OrderStatus.PENDING.value, created_at__lt=cutoff)
        return [_to_domain(o) for o in qs.prefetch_related("lines")]

    def unreleased_cancelled(self, cutoff: datetime) -> List[Order]:
        """Cancelled orders, last touched before ``cutoff``, still holding stock."""
        qs = OrderModel.objects.filter(
            status=OrderStatus.CANCELLED.value,
            reservation_state=ReservationState.HELD.value,
            updated_at__lt=cutoff,
        )
        return [_to_domain(o) for o in qs.prefetch_related("lines")]

    # ---- Helpers ----
    def _locked(self, order_id: UUID) -> OrderModel:
        try:
            return OrderModel.objects.select_for_update().get(id=order_id)
        except OrderModel.DoesNotExist:
            raise NotFound("order", order_id)

    def _page(self, qs, page: int, page_size: int) -> OrderPage:
        p = Paginator(qs.prefetch_related("lines"), page_size)
        page_obj = p.get_page(page)
        return OrderPage(
            count=p.count,
            page=page_obj.number,
            page_size=page_size,
            orders=[_to_domain(o) for o in page_obj.object_list],
        )
