"""
SparkGate -- Resilience gateway.

Owns one instance of every resilience component and the sweeper that
reaps their state.  Request handlers receive the gateway explicitly; there
are no module-level singletons, so tests build isolated gateways.

Side-effecting call flow (:meth:`ResilienceGateway.guarded_call`)::

    idempotency key
      -> DedupCache.begin()          completed / in-flight -> shared result
      -> FixedWindowRateLimiter      denied -> RateLimitExceeded
      -> CircuitBreaker.execute()    open -> CircuitBreakerOpen / fallback
           -> call_with_timeout()    expiry -> UpstreamTimeout (a failure)
      -> DedupLease.commit() / fail()
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Sequence, TypeVar

from sparkgate.config.settings import SparkGateSettings
from sparkgate.observability.metrics import MetricsCollector
from sparkgate.utils.circuit_breaker import CircuitBreakerRegistry, Fallback
from sparkgate.utils.dedup import DedupCache, DedupHit, DedupPending
from sparkgate.utils.errors import RateLimitExceeded
from sparkgate.utils.fuzzy_match import NameResolution, resolve_name
from sparkgate.utils.rate_limiter import (
    FixedWindowRateLimiter,
    RateLimitConfig,
    RateLimitDecision,
    client_identifier,
)
from sparkgate.utils.sweeper import PeriodicSweeper
from sparkgate.utils.timeouts import call_with_timeout
from sparkgate.utils.tokens import DiscoveryTokenSigner, resolve_discovery_secret

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ResilienceGateway:
    """Composition root for rate limiting, breakers, dedup and tokens."""

    def __init__(
        self,
        limiter: FixedWindowRateLimiter,
        breakers: CircuitBreakerRegistry,
        dedup: DedupCache,
        signer: DiscoveryTokenSigner,
        sweeper: PeriodicSweeper | None = None,
        default_timeout: float = 30.0,
        fuzzy_min_score: float = 50.0,
    ) -> None:
        self.limiter = limiter
        self.breakers = breakers
        self.dedup = dedup
        self.signer = signer
        self.sweeper = sweeper or PeriodicSweeper()
        self.default_timeout = default_timeout
        self.fuzzy_min_score = fuzzy_min_score

        self.sweeper.register("rate_limiter", self.limiter.sweep)
        self.sweeper.register("dedup", self.dedup.sweep)

    @classmethod
    def from_settings(
        cls,
        settings: SparkGateSettings,
        metrics: MetricsCollector | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> ResilienceGateway:
        """Build a gateway from configuration.

        Raises :class:`~sparkgate.utils.errors.ConfigurationError` when the
        discovery secret is missing outside development.
        """
        limiter = FixedWindowRateLimiter(
            RateLimitConfig(
                unauthenticated_limit=settings.rate_limit_unauthenticated,
                authenticated_limit=settings.rate_limit_authenticated,
                window=settings.rate_limit_window_seconds,
                operation_limits=dict(settings.rate_limit_operations),
            ),
            clock=clock,
            metrics=metrics,
        )
        breakers = CircuitBreakerRegistry(
            failure_threshold=settings.circuit_breaker_failure_threshold,
            reset_timeout=settings.circuit_breaker_reset_timeout_seconds,
            success_threshold=settings.circuit_breaker_success_threshold,
            clock=clock,
            metrics=metrics,
        )
        dedup = DedupCache(ttl=settings.dedup_ttl_seconds, clock=clock, metrics=metrics)
        signer = DiscoveryTokenSigner(resolve_discovery_secret(settings), metrics=metrics)
        return cls(
            limiter=limiter,
            breakers=breakers,
            dedup=dedup,
            signer=signer,
            sweeper=PeriodicSweeper(settings.sweep_interval_seconds),
            default_timeout=settings.default_api_timeout_seconds,
            fuzzy_min_score=settings.fuzzy_min_score,
        )

    # -- lifecycle ---------------------------------------------------------- #

    def start(self) -> None:
        self.sweeper.start()

    async def shutdown(self) -> None:
        await self.sweeper.stop()

    # -- admission ---------------------------------------------------------- #

    def check_rate_limit(
        self, ip: str, principal_id: str | None, operation: str | None = None,
    ) -> RateLimitDecision:
        """Admit and record one request.  Never raises on denial."""
        identifier = client_identifier(ip, principal_id)
        return self.limiter.check(identifier, bool(principal_id), operation)

    def enforce_rate_limit(
        self, ip: str, principal_id: str | None, operation: str | None = None,
    ) -> RateLimitDecision:
        """Like :meth:`check_rate_limit` but raises :class:`RateLimitExceeded`."""
        decision = self.check_rate_limit(ip, principal_id, operation)
        if not decision.allowed:
            raise RateLimitExceeded(decision.retry_after, decision.limit)
        return decision

    # -- guarded calls ------------------------------------------------------ #

    async def call_dependency(
        self,
        dependency: str,
        operation: Callable[[], Awaitable[T]],
        *,
        timeout: float | None = None,
        fallback: Fallback | None = None,
    ) -> T:
        """Breaker + timeout around one outbound call."""
        if timeout is None:
            timeout = self.default_timeout
        return await self.breakers.execute(
            dependency,
            lambda: call_with_timeout(operation, timeout, dependency),
            fallback,
        )

    async def guarded_call(
        self,
        key: str,
        operation: Callable[[], Awaitable[T]],
        *,
        ip: str,
        principal_id: str | None,
        rate_operation: str | None = None,
        dependency: str | None = None,
        timeout: float | None = None,
    ) -> T:
        """Run a side-effecting call at most once per idempotency *key*.

        Replays and coalesced callers are not charged against the rate
        limit; only the executing caller is admitted.  With *dependency*
        set, the call also runs under that breaker and a timeout; leave it
        unset when *operation* is already guarded (e.g. a ``SparkApiClient``
        method).
        """
        outcome = self.dedup.begin(key)
        if isinstance(outcome, DedupHit):
            logger.info("gateway.replayed", extra={"key": key[:12]})
            return outcome.result
        if isinstance(outcome, DedupPending):
            logger.info("gateway.coalesced", extra={"key": key[:12]})
            return await outcome.wait()

        try:
            self.enforce_rate_limit(ip, principal_id, rate_operation)
            if dependency is None:
                result = await operation()
            else:
                result = await self.call_dependency(dependency, operation, timeout=timeout)
        except Exception as exc:
            outcome.fail(exc)
            raise
        except BaseException:
            outcome.abandon()
            raise
        outcome.commit(result)
        return result

    # -- names and tokens --------------------------------------------------- #

    def resolve_by_name(
        self,
        query: str,
        candidates: Sequence[T],
        name_of: Callable[[T], str],
        min_score: float | None = None,
    ) -> NameResolution[T]:
        return resolve_name(
            query,
            candidates,
            name_of,
            self.fuzzy_min_score if min_score is None else min_score,
        )

    def issue_discovery_token(self, principal_id: str) -> str:
        return self.signer.issue(principal_id)

    def verify_discovery_token(self, token: str) -> str | None:
        return self.signer.verify(token)
