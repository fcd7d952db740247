"""SparkGate -- Observability package.

Prometheus metrics and structured logging setup.
"""

from sparkgate.observability.logging_setup import setup_logging
from sparkgate.observability.metrics import MetricsCollector, get_metrics

__all__: list[str] = [
    "MetricsCollector",
    "get_metrics",
    "setup_logging",
]
