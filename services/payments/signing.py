"""Payment proof signatures issued by the sandbox.

A proof is ``HMAC-SHA256(key_secret, "{gateway_order_id}|{payment_id}")``
in hex, the same scheme merchants verify on their side.
"""

import hashlib
import hmac
import os

KEY_ID = os.getenv("PAYMENT_GATEWAY_KEY_ID", "rzp_test_key")
KEY_SECRET = os.getenv("PAYMENT_GATEWAY_KEY_SECRET", "dev-gateway-secret")


def sign(gateway_order_id: str, payment_id: str, key_secret: str | None = None) -> str:
    secret = key_secret or KEY_SECRET
    message = f"{gateway_order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
