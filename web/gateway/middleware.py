"""Gateway middleware: request correlation, payload limits and caller identity.

Every incoming request receives a request identifier, read from the
``X-Request-Id`` header when the client (or the proxy in front of us)
provides one and generated otherwise. The id is stored on the request and
in a context variable so logging filters and the outbound HTTP clients can
pick it up without passing it around.

Authentication itself happens upstream: the auth proxy forwards a trusted
``X-User-Id`` (and optionally ``X-User-Role``). ``UserIdentityMiddleware``
turns those headers into ``request.user_id`` / ``request.user_role`` and
rejects API calls that arrive without an identity.
"""

import contextvars
import os
import uuid

from django.http import JsonResponse
from django.utils.deprecation import MiddlewareMixin

REQUEST_ID_CTX = contextvars.ContextVar("request_id", default="-")
USER_ID_CTX = contextvars.ContextVar("user_id", default="-")
MAX_API_BYTES = int(os.getenv("API_MAX_BYTES", str(1 * 1024 * 1024)))


class RequestIdMiddleware(MiddlewareMixin):
    """Set a per-request identifier and echo it back as ``X-Request-ID``."""

    HEADER = "HTTP_X_REQUEST_ID"       # incoming header as found in request.META
    RESPONSE_HEADER = "X-Request-ID"   # header to add to outgoing responses

    def process_request(self, request):
        """Reuse the client's id or generate a UUIDv4, then publish it.

        The id lands on ``request.request_id`` and in ``REQUEST_ID_CTX``.
        """
        rid = request.META.get(self.HEADER)
        if not rid:
            rid = str(uuid.uuid4())
        request.request_id = rid
        REQUEST_ID_CTX.set(rid)

    def process_response(self, request, response):
        rid = getattr(request, "request_id", REQUEST_ID_CTX.get())
        response[self.RESPONSE_HEADER] = rid
        return response


class ApiSizeLimitMiddleware(MiddlewareMixin):
    """Reject ``/api/`` requests whose declared body exceeds ``API_MAX_BYTES``."""

    def process_request(self, request):
        if request.path.startswith("/api/"):
            clen = request.META.get("CONTENT_LENGTH")
            if clen and clen.isdigit() and int(clen) > MAX_API_BYTES:
                return JsonResponse({"detail": "PAYLOAD_TOO_LARGE"}, status=413)


class UserIdentityMiddleware(MiddlewareMixin):
    """Attach the proxy-asserted caller identity to API requests.

    Paths listed in ``PUBLIC_PATHS`` (liveness checks) are served without an
    identity; every other ``/api/`` path answers 401 when ``X-User-Id`` is
    missing.
    """

    USER_HEADER = "HTTP_X_USER_ID"
    ROLE_HEADER = "HTTP_X_USER_ROLE"
    PUBLIC_PATHS = ("/api/orders/ping/",)

    def process_request(self, request):
        user_id = (request.META.get(self.USER_HEADER) or "").strip()
        request.user_id = user_id or None
        request.user_role = (request.META.get(self.ROLE_HEADER) or "customer").strip().lower()
        USER_ID_CTX.set(user_id or "-")

        if not request.path.startswith("/api/") or request.path in self.PUBLIC_PATHS:
            return None
        if not user_id:
            return JsonResponse({"detail": "UNAUTHENTICATED"}, status=401)
        return None
