"""Checkout error taxonomy.

Every error is a ``ValueError`` whose string form is a short, stable code
(for example ``"OUT_OF_STOCK"``). Views map the code to an HTTP status and
tests assert on ``str(err)``. Extra context travels as attributes.
"""


class CheckoutError(ValueError):
    """Base class for all checkout errors."""

    code = "CHECKOUT_ERROR"

    def __init__(self, code: str | None = None):
        super().__init__(code or self.code)


class EmptyOrder(CheckoutError):
    """Raised when an order is placed with no lines."""

    code = "EMPTY_ORDER"


class OutOfStock(CheckoutError):
    """Raised when one or more cart lines cannot be satisfied.

    Attributes:
        lines: Every failing line (``LineFailure``), never just the first.
    """

    code = "OUT_OF_STOCK"

    def __init__(self, lines):
        super().__init__()
        self.lines = list(lines)


class PaymentInitFailed(CheckoutError):
    """Raised when the gateway could not create an order for the amount."""

    code = "PAYMENT_INIT_FAILED"

    def __init__(self, reason: str | None = None):
        super().__init__()
        self.reason = reason


class PaymentVerificationFailed(CheckoutError):
    """Raised when a payment proof does not verify.

    Attributes:
        order: The order as it stands after the refusal, so callers can render it.
    """

    code = "PAYMENT_VERIFICATION_FAILED"

    def __init__(self, order=None):
        super().__init__()
        self.order = order


class InvalidTransition(CheckoutError):
    """Raised when a status change is not in the transition table."""

    code = "INVALID_TRANSITION"

    def __init__(self, current, requested):
        super().__init__()
        self.current = current
        self.requested = requested


class NotFound(CheckoutError):
    """Raised for an unknown order or product."""

    code = "NOT_FOUND"

    def __init__(self, kind: str, ref):
        super().__init__()
        self.kind = kind
        self.ref = ref
