"""Persona backend client -- aiohttp with per-call timeout and circuit breaker.

Every call runs inside the breaker for its dependency:

    internal-api  authenticated calls (Bearer API key)
    public-api    unauthenticated calls

A timeout cancels the request and counts as a failure.  When the
``internal-api`` circuit is open the caller gets ``ServiceUnavailable``
instead of a breaker error.
"""

import asyncio
import logging
import time
from typing import Any, Optional

import aiohttp

from sparkgate.personas.models import PersonaStatus
from sparkgate.utils.circuit_breaker import CircuitBreakerRegistry
from sparkgate.utils.errors import (
    AuthenticationRequired,
    BackendError,
    GatewayError,
    ServiceUnavailable,
)
from sparkgate.utils.timeouts import call_with_timeout

logger = logging.getLogger(__name__)

INTERNAL_API = "internal-api"
PUBLIC_API = "public-api"


def _unavailable():
    raise ServiceUnavailable("Persona API")


class SparkApiClient:
    """Thin JSON client for the persona backend."""

    def __init__(self, base_url: str, breakers: CircuitBreakerRegistry,
                 api_key: Optional[str] = None, default_timeout: float = 30.0,
                 metrics=None, session: Optional[aiohttp.ClientSession] = None):
        self._base_url = base_url.rstrip("/")
        self._breakers = breakers
        self._api_key = api_key
        self._default_timeout = default_timeout
        self._metrics = metrics
        self._session = session
        self._call_count = 0
        self._error_count = 0

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Accept": "application/json"},
            )
        return self._session

    async def close(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def _send(self, method: str, endpoint: str, payload: Optional[dict],
                    params: Optional[dict],
                    authenticated: bool) -> Any:
        session = await self._get_session()
        headers = {"Content-Type": "application/json"}
        if authenticated:
            headers["Authorization"] = f"Bearer {self._api_key}"

        async with session.request(method, f"{self._base_url}{endpoint}",
                                   json=payload, params=params,
                                   headers=headers) as resp:
            if resp.status >= 400:
                try:
                    body = await resp.json(content_type=None)
                except (aiohttp.ContentTypeError, ValueError):
                    body = None
                message = body.get("message") if isinstance(body, dict) else None
                raise BackendError(resp.status, message or f"API error: {resp.status}")
            return await resp.json(content_type=None)

    async def request_json(self, method: str, endpoint: str, *,
                           payload: Optional[dict] = None,
                           params: Optional[dict] = None,
                           timeout: Optional[float] = None,
                           authenticated: bool = True) -> Any:
        """Issue one guarded request and return the decoded JSON body."""
        if authenticated and not self._api_key:
            raise AuthenticationRequired(
                "Authentication required. Configure an API key for the persona API."
            )

        if timeout is None:
            timeout = self._default_timeout
        dependency = INTERNAL_API if authenticated else PUBLIC_API
        self._call_count += 1
        start = time.monotonic()
        status = "ok"

        async def attempt():
            return await call_with_timeout(
                lambda: self._send(method, endpoint, payload, params, authenticated),
                timeout,
                endpoint,
            )

        try:
            return await self._breakers.execute(
                dependency,
                attempt,
                fallback=_unavailable if authenticated else None,
            )
        except Exception as e:
            status = type(e).__name__
            self._error_count += 1
            logger.warning(f"{method} {endpoint} failed: {e}")
            raise
        finally:
            if self._metrics is not None:
                self._metrics.observe_upstream(dependency, time.monotonic() - start, status)

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------

    async def list_sparks(self, search: Optional[str] = None) -> list[dict]:
        params = {"search": search} if search else None
        result = await self.request_json("GET", "/api/v1/sparks", params=params)
        return (result or {}).get("data") or []

    async def get_spark(self, spark_id: str) -> dict:
        result = await self.request_json("GET", f"/api/v1/sparks/{spark_id}")
        return (result or {}).get("data") or {}

    async def create_spark(self, payload: dict, timeout: Optional[float] = None) -> dict:
        result = await self.request_json("POST", "/api/spark", payload=payload,
                                         timeout=timeout)
        return (result or {}).get("data") or {}

    async def list_sparks_for_discovery(self, principal_id: str) -> list[dict]:
        """Unauthenticated listing used by the widget with a verified token."""
        result = await self.request_json(
            "GET", "/api/mcp/sparks", params={"userId": principal_id},
            authenticated=False,
        )
        return (result or {}).get("data") or []

    async def chat(self, spark_id: str, messages: list[dict],
                   timeout: Optional[float] = None) -> dict:
        """Send a conversation to a persona and return its completion."""
        return await self.request_json(
            "POST", f"/api/v1/sparks/{spark_id}/completion",
            payload={"messages": messages}, timeout=timeout,
        ) or {}

    async def fetch_status(self, spark_id: str,
                           timeout: Optional[float] = None) -> PersonaStatus:
        data = await self.request_json(
            "GET", f"/api/public/spark/{spark_id}/demo-state",
            params={"_t": str(int(time.time() * 1000))},
            timeout=timeout, authenticated=False,
        )
        return PersonaStatus.from_demo_state(spark_id, data or {})

    async def poll_status(self, spark_id: str, max_attempts: int = 30,
                          interval: float = 2.0, wait_for_completion: bool = False,
                          timeout: Optional[float] = None) -> PersonaStatus:
        """Poll training progress.

        Without *wait_for_completion* the first successful poll is returned.
        Otherwise polling continues until a terminal status or *max_attempts*,
        after which a ``timeout`` status carrying the latest knowledge is
        returned.  Failed polls are logged and retried.
        """
        last: Optional[PersonaStatus] = None
        for attempt in range(max_attempts):
            try:
                status = await self.fetch_status(spark_id, timeout=timeout)
            except (GatewayError, aiohttp.ClientError) as e:
                logger.warning(f"Status poll for {spark_id[:8]}... failed: {e}")
            else:
                if last is not None and len(last.knowledge) > len(status.knowledge):
                    status = status.model_copy(update={"knowledge": last.knowledge})
                last = status
                logger.debug(
                    f"Status poll {spark_id[:8]}...: {status.status} ({status.progress}%)"
                )
                if status.is_terminal or not wait_for_completion:
                    return status
            if attempt < max_attempts - 1:
                await asyncio.sleep(interval)

        return PersonaStatus(
            persona_id=spark_id,
            status="timeout",
            progress=0,
            message="Training is still in progress; check again later.",
            knowledge=last.knowledge if last else [],
            spark=last.spark if last else None,
        )

    def get_stats(self) -> dict:
        return {
            "calls": self._call_count,
            "errors": self._error_count,
        }
