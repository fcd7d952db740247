"""
SparkGate -- Signed user discovery tokens.

A discovery token lets the widget list *its own user's* sparks without an
OAuth round-trip.  It is a capability: whoever holds it can read that
principal's sparks, nothing more, so it carries no expiry and stays valid
until the signing secret rotates.

Token format (current)::

    base64url("<principal>:<hex(HMAC-SHA256(secret, principal))[:32]>")

Legacy formats still accepted::

    A  "<principal>:<tag16>"                tag over principal, 16 hex chars
    B  "<principal>:<expiry_ms>:<tag16>"    tag over "<principal>:<expiry_ms>",
                                            rejected once expired

Anything else is invalid; the parser never guesses.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import secrets
import time
from typing import TYPE_CHECKING, Callable

from sparkgate.config.settings import MIN_SECRET_LENGTH
from sparkgate.utils.errors import ConfigurationError

if TYPE_CHECKING:
    from sparkgate.config.settings import SparkGateSettings
    from sparkgate.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)

TAG_LENGTH = 32
LEGACY_TAG_LENGTH = 16
_HEX = frozenset("0123456789abcdef")


def resolve_discovery_secret(settings: SparkGateSettings) -> str:
    """Return the signing secret, or abort startup.

    Development may run without one: a random per-process secret is
    generated, and issued tokens stop verifying after a restart.
    """
    secret = settings.discovery_secret
    if secret:
        if len(secret) < MIN_SECRET_LENGTH:
            raise ConfigurationError(
                f"discovery secret must be at least {MIN_SECRET_LENGTH} characters long"
            )
        return secret

    if settings.is_development:
        logger.warning(
            "tokens.random_secret: SPARKGATE_DISCOVERY_SECRET not set; "
            "discovery tokens will not survive a restart"
        )
        return secrets.token_hex(32)

    raise ConfigurationError(
        "SPARKGATE_DISCOVERY_SECRET is required outside development"
    )


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(token: str) -> bytes:
    padded = token + "=" * (-len(token) % 4)
    # validate=True rejects stray characters instead of silently dropping them
    return base64.b64decode(padded, altchars=b"-_", validate=True)


class DiscoveryTokenSigner:
    """Issue and verify discovery tokens with one secret.

    Principal ids must be non-empty and must not contain ``:``, the field
    separator of every token format.  Such ids are rejected by :meth:`issue`
    with ``ValueError``; that is a constraint on how principals are named by
    the identity provider, not a runtime verification failure.  Every other
    id round-trips: ``verify(issue(pid)) == pid``.

    Parameters
    ----------
    secret:
        HMAC key.  See :func:`resolve_discovery_secret`.
    wall_clock:
        Epoch seconds, only consulted for legacy expiring tokens.
    """

    def __init__(
        self,
        secret: str,
        wall_clock: Callable[[], float] = time.time,
        metrics: MetricsCollector | None = None,
    ) -> None:
        if not secret:
            raise ConfigurationError("discovery token secret must not be empty")
        self._key = secret.encode()
        self._wall_clock = wall_clock
        self._metrics = metrics

    def _tag(self, payload: str, length: int) -> str:
        return hmac.new(self._key, payload.encode(), hashlib.sha256).hexdigest()[:length]

    def _matches(self, payload: str, tag: str, length: int) -> bool:
        return hmac.compare_digest(self._tag(payload, length), tag)

    def _record(self, valid: bool, token_format: str) -> None:
        if self._metrics is not None:
            self._metrics.record_token_verification(valid, token_format)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def issue(self, principal_id: str) -> str:
        """Return a non-expiring token for *principal_id*.

        Raises ``ValueError`` for an empty id or one containing ``:``.
        """
        if not principal_id:
            raise ValueError("principal_id must not be empty")
        if ":" in principal_id:
            raise ValueError("principal_id must not contain ':'")
        tag = self._tag(principal_id, TAG_LENGTH)
        return _b64url_encode(f"{principal_id}:{tag}".encode())

    def verify(self, token: str) -> str | None:
        """Return the embedded principal id, or ``None`` if the token is invalid."""
        try:
            raw = _b64url_decode(token)
            decoded = raw.decode("utf-8")
        except (binascii.Error, ValueError):
            self._record(False, "malformed")
            return None
        # Non-canonical encodings (e.g. altered padding bits) are rejected.
        if _b64url_encode(raw) != token:
            self._record(False, "malformed")
            return None

        parts = decoded.split(":")

        if len(parts) == 2:
            principal, tag = parts
            if len(tag) == TAG_LENGTH:
                token_format = "current"
            elif len(tag) == LEGACY_TAG_LENGTH:
                token_format = "legacy"
            else:
                self._record(False, "malformed")
                return None
            valid = (
                bool(principal)
                and set(tag) <= _HEX
                and self._matches(principal, tag, len(tag))
            )
            self._record(valid, token_format)
            return principal if valid else None

        if len(parts) == 3:
            principal, expiry_str, tag = parts
            if (
                not principal
                or not (expiry_str.isascii() and expiry_str.isdigit())
                or len(tag) != LEGACY_TAG_LENGTH
                or not set(tag) <= _HEX
            ):
                self._record(False, "malformed")
                return None
            if self._wall_clock() * 1000 > int(expiry_str):
                logger.debug("tokens.expired_legacy")
                self._record(False, "legacy_expiring")
                return None
            valid = self._matches(f"{principal}:{expiry_str}", tag, LEGACY_TAG_LENGTH)
            self._record(valid, "legacy_expiring")
            return principal if valid else None

        self._record(False, "malformed")
        return None
