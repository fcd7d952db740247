"""SparkGate - Application entry point.

Wires the resilience layer for a tool-call server in dependency order:
1. Configuration + logging
2. Observability (metrics server)
3. Resilience gateway (limiter, breakers, dedup cache, token signer)
4. Persona backend client + service
5. Periodic sweeper

The protocol transport (HTTP / stdio framing) is hosted elsewhere and is
handed :attr:`SparkGateApplication.personas` and
:attr:`SparkGateApplication.gateway`.

Missing or malformed mandatory configuration aborts startup.
"""

import asyncio
import logging
import signal
import sys
from typing import Optional

from pydantic import ValidationError

from sparkgate import __version__
from sparkgate.config.settings import get_settings
from sparkgate.gateway import ResilienceGateway
from sparkgate.observability.logging_setup import setup_logging
from sparkgate.observability.metrics import get_metrics
from sparkgate.personas.client import SparkApiClient
from sparkgate.personas.service import PersonaService
from sparkgate.utils.errors import ConfigurationError

logger = logging.getLogger(__name__)


class SparkGateApplication:
    """Owns the lifecycle of the gateway and its collaborators.

    Usage::

        app = SparkGateApplication()
        await app.initialize()
        await app.run()        # blocks until shutdown signal
        await app.shutdown()
    """

    def __init__(self, api_key: Optional[str] = None):
        self._api_key = api_key
        self._settings = None
        self._client: Optional[SparkApiClient] = None
        self.gateway: Optional[ResilienceGateway] = None
        self.personas: Optional[PersonaService] = None
        self._shutdown_event = asyncio.Event()

    async def initialize(self):
        """Initialize all components in dependency order."""
        # ---- 1. Load configuration ----------------------------------------
        self._settings = get_settings()
        setup_logging(self._settings.log_level, self._settings.log_format)

        logger.info("SparkGate %s starting", __version__)
        logger.info("Instance: %s", self._settings.instance_id)
        logger.info("Environment: %s", self._settings.environment)

        # ---- 2. Observability ---------------------------------------------
        metrics = get_metrics(self._settings.prometheus_port)
        metrics.start_server()
        metrics.set_build_info(
            __version__,
            self._settings.instance_id,
            self._settings.environment,
        )

        # ---- 3. Resilience gateway ----------------------------------------
        self.gateway = ResilienceGateway.from_settings(self._settings, metrics=metrics)

        # ---- 4. Backend client + persona service --------------------------
        self._client = SparkApiClient(
            base_url=self._settings.api_base_url,
            breakers=self.gateway.breakers,
            api_key=self._api_key or self._settings.backend_api_key or None,
            default_timeout=self._settings.default_api_timeout_seconds,
            metrics=metrics,
        )
        self.personas = PersonaService(
            self.gateway,
            self._client,
            creation_timeout=self._settings.creation_timeout_seconds,
            chat_timeout=self._settings.chat_timeout_seconds,
            polling_timeout=self._settings.polling_timeout_seconds,
            poll_interval=self._settings.status_poll_interval_seconds,
            poll_max_attempts=self._settings.status_poll_max_attempts,
        )

        # ---- 5. Periodic sweeper ------------------------------------------
        self.gateway.start()
        logger.info("SparkGate initialized")

    async def run(self):
        """Block until a shutdown signal arrives."""
        await self._shutdown_event.wait()

    def request_shutdown(self):
        self._shutdown_event.set()

    async def shutdown(self):
        """Graceful shutdown in reverse order."""
        logger.info("Shutting down SparkGate...")

        if self.gateway is not None:
            try:
                await self.gateway.shutdown()
            except Exception as exc:
                logger.error("Error stopping gateway: %s", exc)

        if self._client is not None:
            try:
                await self._client.close()
            except Exception as exc:
                logger.error("Error closing backend client: %s", exc)

        logger.info("SparkGate shutdown complete")


# ---------------------------------------------------------------------------
# Async entry point
# ---------------------------------------------------------------------------

async def main() -> int:
    """Main async entry point.  Returns the process exit code."""
    app = SparkGateApplication()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, app.request_shutdown)

    try:
        await app.initialize()
        await app.run()
    except (ConfigurationError, ValidationError) as exc:
        logger.critical("Invalid configuration: %s", exc)
        return 1
    finally:
        await app.shutdown()
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
