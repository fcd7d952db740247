"""Persona operations routed through the resilience gateway.

The tool-handling layer calls these instead of the backend client so that
every call is rate limited, breaker-guarded and, for creations,
deduplicated.
"""

import logging

from sparkgate.gateway import ResilienceGateway
from sparkgate.personas.client import SparkApiClient
from sparkgate.personas.models import (
    ChatRequest,
    CreatePersonaRequest,
    PersonaStatus,
    PersonaSummary,
)
from sparkgate.utils.errors import InvalidParams, InvalidToken, ResourceNotFound
from sparkgate.utils.fuzzy_match import NameResolution
from sparkgate.utils.idempotency import creation_key

logger = logging.getLogger(__name__)

CREATE_OPERATION = "create_ai_persona_or_digital_twin"
CHAT_OPERATION = "talk_to_ai_persona"
TOOL_CALL_OPERATION = "tools/call"


class PersonaService:
    """Create, find, chat with and discover personas for one backend."""

    def __init__(self, gateway: ResilienceGateway, client: SparkApiClient,
                 creation_timeout: float = 60.0, chat_timeout: float = 45.0,
                 polling_timeout: float = 5.0, poll_interval: float = 2.0,
                 poll_max_attempts: int = 30):
        self._gateway = gateway
        self._client = client
        self._creation_timeout = creation_timeout
        self._chat_timeout = chat_timeout
        self._polling_timeout = polling_timeout
        self._poll_interval = poll_interval
        self._poll_max_attempts = poll_max_attempts

    async def create_persona(self, request: CreatePersonaRequest, *,
                             principal_id: str | None, ip: str) -> dict:
        """Create a persona once, however often the client retries."""
        key = creation_key(
            principal_id,
            request.name,
            request.mode,
            request.persona_context,
            request.context_link,
        )
        spark = await self._gateway.guarded_call(
            key,
            lambda: self._client.create_spark(
                request.to_backend_payload(), timeout=self._creation_timeout,
            ),
            ip=ip,
            principal_id=principal_id,
            rate_operation=CREATE_OPERATION,
        )
        logger.info("Persona ready: %s", str(spark.get("id", ""))[:8])
        return spark

    async def list_personas(self, *, principal_id: str | None, ip: str,
                            search: str | None = None) -> list[PersonaSummary]:
        self._gateway.enforce_rate_limit(ip, principal_id, TOOL_CALL_OPERATION)
        return await self._fetch_personas(search)

    async def _fetch_personas(self, search: str | None = None) -> list[PersonaSummary]:
        sparks = await self._client.list_sparks(search)
        return [PersonaSummary.from_backend(s) for s in sparks]

    def _resolve(self, name: str,
                 personas: list[PersonaSummary]) -> NameResolution[PersonaSummary]:
        if not name.strip():
            raise InvalidParams("Persona name must not be empty")
        return self._gateway.resolve_by_name(name, personas, lambda p: p.name)

    @staticmethod
    def _require(resolution: NameResolution[PersonaSummary]) -> PersonaSummary:
        if resolution.match is None:
            raise ResourceNotFound(
                "persona", resolution.query, [p.name for p in resolution.candidates],
            )
        if resolution.match.score < 100:
            logger.debug(
                "Fuzzy matched persona '%s' -> '%s' (%.0f)",
                resolution.query, resolution.match.item.name, resolution.match.score,
            )
        return resolution.match.item

    async def find_persona(self, name: str, *, principal_id: str | None,
                           ip: str) -> NameResolution[PersonaSummary]:
        """Resolve a user-typed name.  No match is a normal outcome."""
        if not name.strip():
            raise InvalidParams("Persona name must not be empty")
        personas = await self.list_personas(principal_id=principal_id, ip=ip)
        return self._resolve(name, personas)

    async def require_persona(self, name: str, *, principal_id: str | None,
                              ip: str) -> PersonaSummary:
        """Like :meth:`find_persona` but raises ``ResourceNotFound`` listing every name."""
        return self._require(await self.find_persona(name, principal_id=principal_id, ip=ip))

    async def chat_with_persona(self, request: ChatRequest, *,
                                principal_id: str | None, ip: str) -> dict:
        """Send one message (plus history) to a persona addressed by id or name.

        Charged once against the chat operation limit; resolving a name
        does not count as a separate tool call.
        """
        self._gateway.enforce_rate_limit(ip, principal_id, CHAT_OPERATION)

        persona_id = request.persona_id
        if not persona_id:
            persona = self._require(
                self._resolve(request.persona_name, await self._fetch_personas())
            )
            persona_id = persona.id

        result = await self._client.chat(
            persona_id, request.to_messages(), timeout=self._chat_timeout,
        )
        return {
            "persona_id": persona_id,
            "response": result.get("content"),
            "metadata": result.get("metadata"),
        }

    async def get_persona_status(self, persona_id: str, *, principal_id: str | None,
                                 ip: str, wait_for_completion: bool = False) -> PersonaStatus:
        """Training progress; with *wait_for_completion*, poll until it settles."""
        self._gateway.enforce_rate_limit(ip, principal_id, TOOL_CALL_OPERATION)
        return await self._client.poll_status(
            persona_id,
            max_attempts=self._poll_max_attempts if wait_for_completion else 1,
            interval=self._poll_interval,
            wait_for_completion=wait_for_completion,
            timeout=self._polling_timeout,
        )

    async def discover_personas(self, token: str) -> list[PersonaSummary]:
        """List a principal's personas given only a discovery token."""
        principal_id = self._gateway.verify_discovery_token(token)
        if principal_id is None:
            raise InvalidToken()
        sparks = await self._client.list_sparks_for_discovery(principal_id)
        return [PersonaSummary.from_backend(s) for s in sparks]
