"""Gateway payment signatures.

The gateway signs ``"{gateway_order_id}|{payment_id}"`` with HMAC-SHA256
using the merchant key secret and returns the hex digest alongside the
payment id. A payment proof is genuine only if the digest recomputed with
our copy of the secret matches.
"""

import hashlib
import hmac


def sign(key_secret: str, gateway_order_id: str, payment_id: str) -> str:
    """Return the hex HMAC-SHA256 signature for a gateway order and payment."""
    message = f"{gateway_order_id}|{payment_id}".encode("utf-8")
    return hmac.new(key_secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_signature(key_secret: str, gateway_order_id: str, payment_id: str, signature: str) -> bool:
    """Constant-time check of a payment proof; empty inputs never verify."""
    if not (key_secret and gateway_order_id and payment_id and signature):
        return False
    return hmac.compare_digest(sign(key_secret, gateway_order_id, payment_id), signature)
