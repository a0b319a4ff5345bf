"""HTTP views for the orders app.

Views are kept small: they validate requests (via Pydantic), map them to
domain values, delegate to ``OrderService`` and render the result. All
compensation (releasing stock, cancelling orders) lives in the service;
a view only translates error codes into HTTP statuses.

The caller's identity comes from ``request.user_id`` / ``request.user_role``
as set by ``gateway.middleware.UserIdentityMiddleware``.

Idempotency: when an ``Idempotency-Key`` header is sent to the create
endpoint, the first request is processed and its response stored; retries
with the same payload get the stored response back (with
``Idempotent-Replay: true``), and reusing the key with a different payload
returns 409.
"""

import logging

from django.conf import settings
from pydantic import ValidationError
from rest_framework import status
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from .errors import (
    CheckoutError,
    InvalidTransition,
    NotFound,
    OutOfStock,
    PaymentInitFailed,
    PaymentVerificationFailed,
)
from .idempotency import discard, finalize, get_or_create_idempotent, scoped_key
from .providers import get_order_service
from .schemas import (
    ConfirmPaymentDTO,
    CreateOrderDTO,
    OrderReadDTO,
    PaymentInitDTO,
    UpdateStatusDTO,
)

logger = logging.getLogger("orders.api")

MAX_PAGE_SIZE = 100
MAX_IDEMPOTENCY_KEY_LENGTH = 128


def _order_body(order) -> dict:
    return OrderReadDTO.from_domain(order).model_dump(mode="json")


def _page_body(page) -> dict:
    return {
        "count": page.count,
        "page": page.page,
        "page_size": page.page_size,
        "results": [_order_body(o) for o in page.orders],
    }


def _paging(request) -> tuple[int, int]:
    try:
        page = int(request.GET.get("page", 1))
        page_size = int(request.GET.get("page_size", 20))
    except ValueError:
        return 1, 20
    return max(page, 1), min(max(page_size, 1), MAX_PAGE_SIZE)


def _validation_body(exc: ValidationError) -> dict:
    return {"detail": "VALIDATION_ERROR", "errors": exc.errors(include_url=False, include_context=False)}


def _is_admin(request) -> bool:
    return getattr(request, "user_role", None) == "admin"


def _error_body(exc: CheckoutError) -> tuple[int, dict]:
    """Map a checkout error to ``(status_code, body)``."""
    body = {"detail": str(exc)}
    if isinstance(exc, OutOfStock):
        body["lines"] = [line.as_dict() for line in exc.lines]
        return 422, body
    if isinstance(exc, NotFound):
        return 404, body
    if isinstance(exc, PaymentInitFailed):
        return 502, body
    if isinstance(exc, PaymentVerificationFailed):
        if exc.order is not None:
            body["order"] = _order_body(exc.order)
        return 402, body
    if isinstance(exc, InvalidTransition):
        body["current"] = str(exc.current.value)
        body["requested"] = str(exc.requested.value)
        return 409, body
    return 400, body


class OrdersPingView(APIView):
    """Liveness endpoint for the orders module; returns ``{"ok": true}``."""

    def get(self, request):
        return Response({"ok": True})


class OrdersCollectionView(APIView):
    """List the caller's orders (GET) or place a new order (POST)."""

    throttle_classes = [ScopedRateThrottle]

    def get_throttles(self):
        # DRF evaluates throttles in initial(), before get/post
        self.throttle_scope = "orders_list" if self.request.method == "GET" else "orders_create"
        return [throttle() for throttle in self.throttle_classes]

    def get(self, request):
        page, page_size = _paging(request)
        result = get_order_service().list_orders(request.user_id, page=page, page_size=page_size)
        return Response(_page_body(result), status=200)

    def post(self, request):
        """Place an order.

        Returns:
            Response: One of the following responses.
            - 201 with ``{order, payment}``; ``payment`` carries the gateway
              order the client must complete.
            - stored status/body with ``Idempotent-Replay: true`` on a retry.
            - 400 for validation errors, ``EMPTY_ORDER`` and an
              ``Idempotency-Key`` longer than 128 characters.
            - 404 ``NOT_FOUND`` for an unknown product.
            - 409 ``IDEMPOTENCY_CONFLICT`` (or ``IDEMPOTENCY_IN_PROGRESS``).
            - 422 ``OUT_OF_STOCK`` with every failing ``lines`` entry.
            - 502 ``PAYMENT_INIT_FAILED``.
            - 503 ``UPSTREAM_UNAVAILABLE``.
        """
        idem_key = request.headers.get("Idempotency-Key")
        if idem_key and len(idem_key) > MAX_IDEMPOTENCY_KEY_LENGTH:
            return Response({"detail": "INVALID_IDEMPOTENCY_KEY"}, status=status.HTTP_400_BAD_REQUEST)

        # 1) Pydantic validation
        try:
            dto = CreateOrderDTO.model_validate(request.data)
        except ValidationError as e:
            return Response(_validation_body(e), status=status.HTTP_400_BAD_REQUEST)

        # 2) Idempotency get-or-create
        rec = None
        if idem_key:
            try:
                existing, rec = get_or_create_idempotent(scoped_key(request.user_id, idem_key), request.data)
            except ValueError:
                return Response({"detail": "IDEMPOTENCY_CONFLICT"}, status=status.HTTP_409_CONFLICT)
            if existing:
                if not rec.response_status:
                    return Response({"detail": "IDEMPOTENCY_IN_PROGRESS"}, status=status.HTTP_409_CONFLICT)
                resp = Response(rec.response_body, status=rec.response_status)
                resp["Idempotent-Replay"] = "true"
                return resp

        # 3) Domain
        service = get_order_service()
        try:
            placed = service.place_order(
                user_id=request.user_id,
                lines=[line.to_domain() for line in dto.items],
                shipping_address=dto.shipping_address.to_domain(),
                payment_method=dto.payment_method,
            )
        except CheckoutError as e:
            status_code, body = _error_body(e)
            if rec:
                finalize(rec, status_code, body)
            return Response(body, status=status_code)
        except Exception:
            logger.exception("checkout failed on an upstream call")
            if rec:
                discard(rec)
            return Response({"detail": "UPSTREAM_UNAVAILABLE"}, status=status.HTTP_503_SERVICE_UNAVAILABLE)

        # 4) Response
        body = {
            "order": _order_body(placed.order),
            "payment": PaymentInitDTO(
                gateway_order_id=placed.gateway_order.id,
                amount_cents=placed.gateway_order.amount_cents,
                currency=placed.gateway_order.currency,
                key_id=settings.PAYMENT_GATEWAY_KEY_ID,
            ).model_dump(),
        }
        if rec:
            finalize(rec, status.HTTP_201_CREATED, body, order_id=placed.order.id)
        return Response(body, status=status.HTTP_201_CREATED)


class RetrieveOrderView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_detail"

    def get(self, request, oid):
        try:
            order = get_order_service().get_order(oid, user_id=request.user_id)
        except NotFound:
            return Response({"detail": "NOT_FOUND"}, status=status.HTTP_404_NOT_FOUND)
        return Response(_order_body(order), status=200)


class ConfirmOrderView(APIView):
    """Settle a pending order with the payment proof from the gateway checkout.

    200 with the confirmed order (also on a replay of the same proof); 402
    with the order when the proof does not verify. A pending order is
    cancelled at that point, a settled one is left unchanged.
    """

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_confirm"

    def post(self, request, oid):
        try:
            dto = ConfirmPaymentDTO.model_validate(request.data)
        except ValidationError as e:
            return Response(_validation_body(e), status=status.HTTP_400_BAD_REQUEST)

        try:
            order = get_order_service().confirm_payment(
                oid, dto.payment_id, dto.signature, user_id=request.user_id
            )
        except CheckoutError as e:
            status_code, body = _error_body(e)
            return Response(body, status=status_code)
        except Exception:
            logger.exception("payment confirmation failed on an upstream call", extra={"order_id": str(oid)})
            return Response({"detail": "UPSTREAM_UNAVAILABLE"}, status=status.HTTP_503_SERVICE_UNAVAILABLE)
        return Response(_order_body(order), status=200)


class AdminOrdersView(APIView):
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_admin"

    def get(self, request):
        if not _is_admin(request):
            return Response({"detail": "FORBIDDEN"}, status=status.HTTP_403_FORBIDDEN)
        page, page_size = _paging(request)
        status_filter = request.GET.get("status") or None
        try:
            result = get_order_service().list_all_orders(page=page, page_size=page_size, status=status_filter)
        except ValueError:
            return Response({"detail": "INVALID_STATUS"}, status=status.HTTP_400_BAD_REQUEST)
        return Response(_page_body(result), status=200)


class AdminOrderStatusView(APIView):
    """Fulfillment status changes (processing, shipped, delivered, cancelled)."""

    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "orders_admin"

    def patch(self, request, oid):
        if not _is_admin(request):
            return Response({"detail": "FORBIDDEN"}, status=status.HTTP_403_FORBIDDEN)
        try:
            dto = UpdateStatusDTO.model_validate(request.data)
        except ValidationError as e:
            return Response(_validation_body(e), status=status.HTTP_400_BAD_REQUEST)

        try:
            order = get_order_service().update_status(oid, dto.status)
        except CheckoutError as e:
            status_code, body = _error_body(e)
            return Response(body, status=status_code)
        logger.info("order status changed", extra={"order_id": str(oid), "status": order.status.value})
        return Response(_order_body(order), status=200)
