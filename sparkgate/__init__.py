"""SparkGate -- resilience layer for persona tool calls."""

__version__ = "0.1.0"
