"""Idempotency utilities for safely handling duplicate order creation.

A client may send ``Idempotency-Key`` with ``POST /api/orders/``. Keys are
scoped per user, so two users can never collide on the same key. The first
request creates a record holding the request hash; when it completes the
response is stored on the record and later retries replay it instead of
running the saga again.

Server errors (5xx) are not stored: the record is discarded so the client
can retry with the same key.
"""

import hashlib
import json

from django.db import IntegrityError, transaction

from .models import IdempotencyKey

CONFLICT = "IDEMPOTENCY_CONFLICT"
IN_PROGRESS = "IDEMPOTENCY_IN_PROGRESS"


def _hash(payload: dict) -> str:
    """Compute a stable SHA-256 hash for a JSON-serializable payload.

    The payload is serialized with sorted keys and compact separators to
    ensure a deterministic representation before hashing.
    """
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


def scoped_key(user_id: int, key: str) -> str:
    return f"{user_id}:{key}"


@transaction.atomic
def get_or_create_idempotent(key: str, user_id: int, payload: dict):
    """Get-or-create an idempotency record for ``user_id``'s key and payload.

    Behavior:
        - First request with a new key: create a record and return
          ``(False, rec)``; the caller must later ``finalize`` or ``discard`` it.
        - Retry with the same payload after completion: return ``(True, rec)``
          so the stored response can be replayed.
        - Same key with a different payload: raise ``ValueError(CONFLICT)``.
        - Same key while the first request is still running: raise
          ``ValueError(IN_PROGRESS)``.

    The create path runs in a nested savepoint so an ``IntegrityError`` only
    rolls back that block; the existing-record path locks the row
    (``SELECT ... FOR UPDATE``) before reading it.
    """
    scoped = scoped_key(user_id, key)
    h = _hash(payload)

    try:
        with transaction.atomic():
            rec = IdempotencyKey.objects.create(
                key=scoped, request_hash=h, response_status=0, response_body={}
            )
            return False, rec
    except IntegrityError:
        rec = IdempotencyKey.objects.select_for_update().get(key=scoped)
        if rec.request_hash != h:
            raise ValueError(CONFLICT)
        if rec.response_status == 0:
            raise ValueError(IN_PROGRESS)
        return True, rec


def finalize(rec: IdempotencyKey, status_code: int, body: dict, order_id: str | None = None) -> None:
    """Store the final response so retries can replay it.

    5xx responses are not stored; the record is discarded instead.
    """
    if status_code >= 500:
        discard(rec)
        return
    rec.response_status = status_code
    rec.response_body = body
    if order_id is not None:
        rec.order_id = order_id
    rec.save(update_fields=["response_status", "response_body", "order_id"])


def discard(rec: IdempotencyKey) -> None:
    """Forget an unfinished record so the key can be used again."""
    IdempotencyKey.objects.filter(pk=rec.pk, response_status=0).delete()
