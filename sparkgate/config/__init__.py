"""SparkGate -- Configuration package."""

from sparkgate.config.settings import SparkGateSettings, get_settings

__all__ = ["SparkGateSettings", "get_settings"]
