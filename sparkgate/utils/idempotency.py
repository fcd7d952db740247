"""
SparkGate -- Idempotency key derivation.

A key identifies one *logical* side-effecting operation: the caller's
identity plus the arguments that make two requests semantically the same.
Volatile inputs (timestamps, request ids, retry counters) must never be
passed in, otherwise a client retry would not coalesce with the original.

Keys hash a canonical JSON array rather than joining strings, so
``("a-b", "c")`` and ``("a", "b-c")`` can never collide, and ``None``
stays distinct from ``""``.
"""

from __future__ import annotations

import hashlib
import json
from typing import Any

ANONYMOUS = "anonymous"


def generate_idempotency_key(principal: str | None, *fields: Any) -> str:
    """Return a 64-char hex SHA-256 key for *principal* + *fields*.

    Parameters
    ----------
    principal:
        Authenticated principal id, or ``None`` for anonymous callers.
    fields:
        JSON-serialisable values that define semantic equivalence.
    """
    payload = [principal if principal else ANONYMOUS, *fields]
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()


def creation_key(
    principal: str | None,
    name: str,
    mode: str,
    persona_context: str | None = None,
    context_link: str | None = None,
) -> str:
    """Key for "create persona" requests.

    Two creations are duplicates when the same caller asks for the same
    name, training mode and training source.
    """
    return generate_idempotency_key(
        principal, "create_persona", name, mode, persona_context, context_link,
    )
