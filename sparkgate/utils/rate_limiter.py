"""
SparkGate -- Fixed-window rate limiter.

Every caller (authenticated principal, or ``ip:<address>`` otherwise) gets
one counter window.  Within a window two ceilings apply, in order:

1. an aggregate limit chosen by authentication status;
2. a stricter per-operation limit when one is configured for the
   operation name.

A window is discarded wholesale once it is older than ``window`` seconds;
there is no sliding or incremental decay.

Usage::

    limiter = FixedWindowRateLimiter(RateLimitConfig(authenticated_limit=3))

    decision = limiter.admit("user-1", is_authenticated=True,
                             operation="talk_to_ai_persona")
    if decision.allowed:
        limiter.record("user-1", "talk_to_ai_persona")
    else:
        headers = decision.headers()   # Retry-After, X-RateLimit-*

Denial is a normal return value, never an exception.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Mapping

if TYPE_CHECKING:
    from sparkgate.observability.metrics import MetricsCollector

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitConfig:
    unauthenticated_limit: int = 100
    authenticated_limit: int = 1000
    window: float = 60.0
    operation_limits: Mapping[str, int] = field(
        default_factory=lambda: {
            "create_ai_persona_or_digital_twin": 20,
            "talk_to_ai_persona": 60,
            "tools/call": 100,
        }
    )

    def __post_init__(self) -> None:
        if self.window <= 0:
            raise ValueError(f"window must be > 0, got {self.window}")
        if self.unauthenticated_limit < 0 or self.authenticated_limit < 0:
            raise ValueError("limits must be >= 0")


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of an admission check."""

    allowed: bool
    remaining: int
    limit: int
    retry_after: int = 0

    def headers(self) -> dict[str, str]:
        """Response headers describing the caller's quota."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


@dataclass
class _WindowEntry:
    window_start: float
    count: int = 0
    operation_counts: dict[str, int] = field(default_factory=dict)


class FixedWindowRateLimiter:
    """Per-identifier fixed-window counters.

    Parameters
    ----------
    config:
        Limits and window length.
    clock:
        Monotonic time source in seconds.  Injected for tests.
    metrics:
        Optional collector receiving one sample per decision.
    """

    def __init__(
        self,
        config: RateLimitConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        metrics: MetricsCollector | None = None,
    ) -> None:
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._metrics = metrics
        self._entries: dict[str, _WindowEntry] = {}

        # Observability counters
        self.total_allowed: int = 0
        self.total_denied: int = 0

    # ------------------------------------------------------------------ #
    # Internal helpers
    # ------------------------------------------------------------------ #

    def _entry(self, identifier: str, now: float) -> _WindowEntry:
        entry = self._entries.get(identifier)
        if entry is None or now - entry.window_start > self.config.window:
            entry = _WindowEntry(window_start=now)
            self._entries[identifier] = entry
        return entry

    def _retry_after(self, entry: _WindowEntry, now: float) -> int:
        return max(1, math.ceil(entry.window_start + self.config.window - now))

    def _deny(
        self,
        identifier: str,
        entry: _WindowEntry,
        now: float,
        limit: int,
        count: int,
        operation: str | None,
        scope: str,
    ) -> RateLimitDecision:
        self.total_denied += 1
        retry_after = self._retry_after(entry, now)
        logger.warning(
            "rate_limiter.denied",
            extra={
                "identifier": identifier[:20] + "...",
                "scope": scope,
                "operation": operation,
                "count": count,
                "limit": limit,
                "retry_after": retry_after,
            },
        )
        if self._metrics is not None:
            self._metrics.record_rate_limit(False, scope)
        return RateLimitDecision(
            allowed=False, remaining=0, limit=limit, retry_after=retry_after,
        )

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def admit(
        self,
        identifier: str,
        is_authenticated: bool,
        operation: str | None = None,
    ) -> RateLimitDecision:
        """Decide whether one more request fits in the current window.

        Does not consume quota; call :meth:`record` after an allowed
        decision (or use :meth:`check`).
        """
        now = self._clock()
        entry = self._entry(identifier, now)
        limit = (
            self.config.authenticated_limit
            if is_authenticated
            else self.config.unauthenticated_limit
        )

        if entry.count >= limit:
            return self._deny(
                identifier, entry, now, limit, entry.count, operation, "aggregate",
            )

        op_limit = self.config.operation_limits.get(operation) if operation else None
        if op_limit is not None:
            op_count = entry.operation_counts.get(operation, 0)
            if op_count >= op_limit:
                return self._deny(
                    identifier, entry, now, op_limit, op_count, operation, "operation",
                )

        self.total_allowed += 1
        if self._metrics is not None:
            self._metrics.record_rate_limit(
                True, "operation" if op_limit is not None else "aggregate",
            )
        return RateLimitDecision(
            allowed=True, remaining=limit - entry.count - 1, limit=limit,
        )

    def record(self, identifier: str, operation: str | None = None) -> None:
        """Consume one unit of quota.  Only call after an allowed admission."""
        entry = self._entry(identifier, self._clock())
        entry.count += 1
        if operation:
            entry.operation_counts[operation] = entry.operation_counts.get(operation, 0) + 1

    def check(
        self,
        identifier: str,
        is_authenticated: bool,
        operation: str | None = None,
    ) -> RateLimitDecision:
        """Admit and, when allowed, record in one step."""
        decision = self.admit(identifier, is_authenticated, operation)
        if decision.allowed:
            self.record(identifier, operation)
        return decision

    def stats(self, identifier: str) -> tuple[int, int] | None:
        """Return ``(count, seconds_until_reset)`` for a live window, else None."""
        entry = self._entries.get(identifier)
        if entry is None:
            return None
        now = self._clock()
        if now - entry.window_start > self.config.window:
            return None
        return entry.count, math.ceil(entry.window_start + self.config.window - now)

    def sweep(self) -> int:
        """Drop windows older than twice the window length.  Returns count removed."""
        now = self._clock()
        cutoff = self.config.window * 2
        stale = [
            key for key, entry in self._entries.items()
            if now - entry.window_start > cutoff
        ]
        for key in stale:
            del self._entries[key]
        if stale:
            logger.debug("rate_limiter.swept", extra={"removed": len(stale)})
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def __repr__(self) -> str:
        return (
            f"FixedWindowRateLimiter(window={self.config.window}, "
            f"authenticated={self.config.authenticated_limit}, "
            f"unauthenticated={self.config.unauthenticated_limit}, "
            f"tracked={len(self._entries)})"
        )


# ---------------------------------------------------------------------- #
# Caller identity helpers
# ---------------------------------------------------------------------- #


def client_identifier(ip: str, principal_id: str | None) -> str:
    """Authenticated principals are limited by id, everyone else by address."""
    return principal_id if principal_id else f"ip:{ip}"


def get_client_ip(headers: Mapping[str, str | list[str] | None]) -> str:
    """Best-effort client address from common proxy headers."""
    forwarded_for = headers.get("x-forwarded-for")
    if forwarded_for:
        first = forwarded_for[0] if isinstance(forwarded_for, list) else forwarded_for.split(",")[0]
        return first.strip()

    for name in ("x-real-ip", "cf-connecting-ip"):
        value = headers.get(name)
        if value:
            return value[0] if isinstance(value, list) else value

    return "0.0.0.0"
