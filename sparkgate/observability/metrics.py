"""Prometheus Metrics.

Minimum metrics that protect the backend:
- rate-limit decisions by scope (aggregate / per-operation)
- circuit breaker state gauge + transition counter per dependency
- dedup outcomes (hit / coalesced / miss / failed)
- discovery token verification outcomes by format
- outbound call latency by dependency and status
"""

import logging
from typing import Optional

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    start_http_server,
)

logger = logging.getLogger(__name__)

CIRCUIT_STATE_VALUES = {"CLOSED": 0, "OPEN": 1, "HALF_OPEN": 2}


class MetricsCollector:
    """Centralized Prometheus metrics collector.

    Each collector owns its own ``CollectorRegistry`` so several gateways
    (or tests) can live in one process without duplicate-series errors.
    """

    def __init__(self, port: int = 8000, registry: Optional[CollectorRegistry] = None):
        self._port = port
        self._started = False
        self.registry = registry if registry is not None else CollectorRegistry()

        # === Rate Limiting ===
        self.rate_limit_decisions = Counter(
            'sparkgate_rate_limit_decisions_total',
            'Rate limit admission decisions',
            ['result', 'scope'],
            registry=self.registry,
        )

        # === Circuit Breaker ===
        self.circuit_breaker_state = Gauge(
            'sparkgate_circuit_breaker_state',
            'Circuit breaker state (0=closed, 1=open, 2=half_open)',
            ['breaker'],
            registry=self.registry,
        )

        self.circuit_breaker_transitions = Counter(
            'sparkgate_circuit_breaker_transitions_total',
            'Circuit breaker state transitions',
            ['breaker', 'to_state'],
            registry=self.registry,
        )

        # === Dedup ===
        self.dedup_outcomes = Counter(
            'sparkgate_dedup_outcomes_total',
            'Deduplication cache outcomes',
            ['outcome'],
            registry=self.registry,
        )

        # === Tokens ===
        self.token_verifications = Counter(
            'sparkgate_token_verifications_total',
            'Discovery token verifications',
            ['result', 'format'],
            registry=self.registry,
        )

        # === Upstream ===
        self.upstream_latency = Histogram(
            'sparkgate_upstream_latency_seconds',
            'Outbound call latency',
            ['dependency', 'status'],
            buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
            registry=self.registry,
        )

        # === Build Info ===
        self.build_info = Info(
            'sparkgate_build',
            'Build information',
            registry=self.registry,
        )

    def record_rate_limit(self, allowed: bool, scope: str = "aggregate"):
        self.rate_limit_decisions.labels(
            result="allowed" if allowed else "denied", scope=scope,
        ).inc()

    def record_circuit_state(self, breaker: str, state: str):
        self.circuit_breaker_state.labels(breaker=breaker).set(CIRCUIT_STATE_VALUES[state])
        self.circuit_breaker_transitions.labels(breaker=breaker, to_state=state).inc()

    def record_dedup(self, outcome: str):
        self.dedup_outcomes.labels(outcome=outcome).inc()

    def record_token_verification(self, valid: bool, token_format: str):
        self.token_verifications.labels(
            result="valid" if valid else "invalid", format=token_format,
        ).inc()

    def observe_upstream(self, dependency: str, seconds: float, status: str):
        self.upstream_latency.labels(dependency=dependency, status=status).observe(seconds)

    def start_server(self):
        """Start Prometheus HTTP server."""
        if self._started:
            return
        try:
            start_http_server(self._port, registry=self.registry)
            self._started = True
            logger.info(f"Prometheus metrics server started on port {self._port}")
        except OSError as e:
            logger.error(f"Failed to start metrics server: {e}")

    def set_build_info(self, version: str, instance_id: str, environment: str):
        """Set build information."""
        self.build_info.info({
            'version': version,
            'instance_id': instance_id,
            'environment': environment,
        })


# Process-wide default, used when the host does not inject its own collector.
_metrics: Optional[MetricsCollector] = None

def get_metrics(port: int = 8000) -> MetricsCollector:
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector(port)
    return _metrics
