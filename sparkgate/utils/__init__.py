"""SparkGate -- Shared resilience primitives."""

from sparkgate.utils.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from sparkgate.utils.dedup import DedupCache, DedupHit, DedupLease, DedupPending
from sparkgate.utils.errors import CircuitBreakerOpen
from sparkgate.utils.fuzzy_match import find_best_match, fuzzy_score
from sparkgate.utils.idempotency import creation_key, generate_idempotency_key
from sparkgate.utils.rate_limiter import (
    FixedWindowRateLimiter,
    RateLimitConfig,
    RateLimitDecision,
)
from sparkgate.utils.sweeper import PeriodicSweeper
from sparkgate.utils.tokens import DiscoveryTokenSigner

__all__ = [
    # circuit breaker
    "CircuitBreaker",
    "CircuitBreakerOpen",
    "CircuitBreakerRegistry",
    "CircuitState",
    # rate limiter
    "FixedWindowRateLimiter",
    "RateLimitConfig",
    "RateLimitDecision",
    # dedup / idempotency
    "DedupCache",
    "DedupHit",
    "DedupLease",
    "DedupPending",
    "creation_key",
    "generate_idempotency_key",
    # tokens
    "DiscoveryTokenSigner",
    # fuzzy matching
    "find_best_match",
    "fuzzy_score",
    # sweeping
    "PeriodicSweeper",
]
