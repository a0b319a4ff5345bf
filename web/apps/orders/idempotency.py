"""Idempotency utilities for safely handling duplicate checkout requests.

A client that retries ``POST /api/orders/`` with the same
``Idempotency-Key`` must get the first attempt's response back instead of a
second reservation and a second gateway order. Keys are scoped per user so
two shoppers cannot collide on (or probe) each other's keys.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .models import IdempotencyKey


def scoped_key(user_id: str, key: str) -> str:
    """Return the storage key for a client key sent by ``user_id``."""
    return f"{user_id}:{key}"


def _hash(payload: dict) -> str:
    """SHA-256 of the canonical JSON form (sorted keys, no whitespace)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@transaction.atomic
def get_or_create_idempotent(key: str, payload: dict):
    """Claim ``key`` for this request, or find the attempt that claimed it first.

    Behavior:
        - First request with a new key: create a record and return
          (existing=False, rec).
        - Same key, same payload: lock and return (existing=True, rec).
          ``rec.response_status`` is 0 while the first attempt is still
          in flight.
        - Same key, different payload: raise ``ValueError("IDEMPOTENCY_CONFLICT")``.

    The create path runs in a nested savepoint so an IntegrityError only
    rolls back that block; the existing-record path takes a row lock.

    Returns:
        tuple[bool, IdempotencyKey]: (existing, rec).

    Raises:
        ValueError: If the key exists with a different payload hash.
    """
    h = _hash(payload)

    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(key=key, request_hash=h, response_status=0, response_body={})
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=key)
        if rec.request_hash != h:
            raise ValueError("IDEMPOTENCY_CONFLICT")
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id=None):
    """Store the response a replay of this key should get back."""
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])


def discard(rec: IdempotencyKey):
    """Forget a key whose attempt left no trace, so the client may retry it."""
    IdempotencyKey.objects.filter(key=rec.key, response_status=0).delete()
