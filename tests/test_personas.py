"""Tests for persona models, backend client and service."""

import asyncio

import pytest
from pydantic import ValidationError
from unittest.mock import AsyncMock, MagicMock, patch

from sparkgate.gateway import ResilienceGateway
from sparkgate.personas.client import INTERNAL_API, PUBLIC_API, SparkApiClient
from sparkgate.personas.models import (
    ChatRequest,
    CreatePersonaRequest,
    PersonaStatus,
    PersonaSummary,
)
from sparkgate.personas.service import CHAT_OPERATION, PersonaService
from sparkgate.utils.circuit_breaker import CircuitBreakerRegistry
from sparkgate.utils.dedup import DedupCache
from sparkgate.utils.errors import (
    AuthenticationRequired,
    BackendError,
    InvalidParams,
    InvalidToken,
    RateLimitExceeded,
    ResourceNotFound,
    ServiceUnavailable,
    UpstreamTimeout,
)
from sparkgate.utils.idempotency import creation_key
from sparkgate.utils.rate_limiter import FixedWindowRateLimiter, RateLimitConfig
from sparkgate.utils.tokens import DiscoveryTokenSigner

SPARKS = [
    {"id": "1", "name": "Einstein", "type": "expert"},
    {"id": "2", "name": "Albert Einstein"},
    {"id": "3", "name": "Steve Jobs"},
]


class TestCreatePersonaRequest:

    def test_keywords_mode_requires_keywords(self):
        with pytest.raises(ValidationError):
            CreatePersonaRequest(name="Bot", mode="keywords")
        assert CreatePersonaRequest(name="Bot", mode="keywords", keywords=["ai"]).keywords == ["ai"]

    def test_clone_mode_requires_context(self):
        with pytest.raises(ValidationError):
            CreatePersonaRequest(name="Einstein", mode="clone")

    def test_link_mode_requires_url(self):
        with pytest.raises(ValidationError):
            CreatePersonaRequest(name="Docs", mode="link")

    def test_unknown_fields_rejected(self):
        with pytest.raises(ValidationError):
            CreatePersonaRequest(name="Bot", mode="manual", colour="red")

    def test_empty_name_rejected(self):
        with pytest.raises(ValidationError):
            CreatePersonaRequest(name="", mode="manual")

    def test_backend_payload(self):
        payload = CreatePersonaRequest(
            name="Einstein", mode="clone", persona_context="Albert Einstein",
        ).to_backend_payload()
        assert payload["name"] == "Einstein"
        assert payload["personaContext"] == "Albert Einstein"
        assert payload["type"] == "expert"
        assert payload["demo"] is True


class TestPersonaSummary:

    def test_from_backend_keeps_extra_fields(self):
        summary = PersonaSummary.from_backend({"id": 7, "name": "Ada", "type": "expert"})
        assert summary.id == "7"
        assert summary.name == "Ada"
        assert summary.extra == {"type": "expert"}


class TestChatRequest:

    def test_requires_a_target(self):
        with pytest.raises(ValidationError):
            ChatRequest(message="hi")
        with pytest.raises(ValidationError):
            ChatRequest(message="hi", persona_name="   ")

    def test_messages_append_user_turn(self):
        request = ChatRequest(
            message="and now?",
            persona_id="1",
            history=[
                {"role": "user", "content": "hello"},
                {"role": "assistant", "content": "hi there"},
            ],
        )
        assert request.to_messages() == [
            {"role": "user", "content": "hello"},
            {"role": "assistant", "content": "hi there"},
            {"role": "user", "content": "and now?"},
        ]


class TestPersonaStatus:

    def test_from_demo_state(self):
        status = PersonaStatus.from_demo_state("s1", {
            "collectionStatus": {"status": "running", "progress": 40, "message": "Reading"},
            "portfolioItems": [{"title": "a"}],
            "spark": {"id": "s1", "name": "Ada"},
        })
        assert status.progress == 40
        assert status.message == "Reading"
        assert status.knowledge == [{"title": "a"}]
        assert not status.is_terminal
        assert not status.is_ready

    def test_completed_is_full_progress(self):
        status = PersonaStatus.from_demo_state(
            "s1", {"collectionStatus": {"status": "completed", "progress": 80}},
        )
        assert status.progress == 100
        assert status.is_ready and status.is_terminal

    def test_missing_collection_defaults_to_running(self):
        status = PersonaStatus.from_demo_state("s1", {})
        assert status.status == "running"
        assert status.progress == 0
        assert status.message == "Processing..."


def demo_state(status, progress=0, knowledge=()):
    return {
        "collectionStatus": {"status": status, "progress": progress},
        "portfolioItems": list(knowledge),
    }


@pytest.fixture
def breakers(clock):
    return CircuitBreakerRegistry(failure_threshold=2, clock=clock)


class TestSparkApiClient:

    @pytest.mark.asyncio
    async def test_authenticated_call_without_key(self, breakers):
        client = SparkApiClient("http://backend", breakers)
        with pytest.raises(AuthenticationRequired):
            await client.list_sparks()

    @pytest.mark.asyncio
    async def test_unwraps_data(self, breakers):
        client = SparkApiClient("http://backend/", breakers, api_key="key")
        with patch.object(client, "_send", AsyncMock(return_value={"data": SPARKS})) as send:
            assert await client.list_sparks("ein") == SPARKS
        send.assert_awaited_once_with("GET", "/api/v1/sparks", None, {"search": "ein"}, True)
        assert breakers.get(INTERNAL_API) is not None

    @pytest.mark.asyncio
    async def test_discovery_listing_is_unauthenticated(self, breakers):
        client = SparkApiClient("http://backend", breakers)
        with patch.object(client, "_send", AsyncMock(return_value={"data": []})) as send:
            assert await client.list_sparks_for_discovery("user-1") == []
        send.assert_awaited_once_with(
            "GET", "/api/mcp/sparks", None, {"userId": "user-1"}, False,
        )
        assert breakers.get(PUBLIC_API) is not None

    @pytest.mark.asyncio
    async def test_backend_error_propagates_then_service_unavailable(self, breakers):
        client = SparkApiClient("http://backend", breakers, api_key="key")
        failing = AsyncMock(side_effect=BackendError(500, "boom"))
        with patch.object(client, "_send", failing):
            with pytest.raises(BackendError):
                await client.get_spark("1")
            # Second failure opens the circuit; the fallback takes over
            with pytest.raises(ServiceUnavailable):
                await client.get_spark("1")
            with pytest.raises(ServiceUnavailable):
                await client.get_spark("1")
        assert failing.await_count == 2
        assert client.get_stats() == {"calls": 3, "errors": 3}

    @pytest.mark.asyncio
    async def test_timeout_is_reported(self, breakers):
        client = SparkApiClient("http://backend", breakers, api_key="key")

        async def hang(*args):
            await asyncio.sleep(5)

        metrics = MagicMock()
        client._metrics = metrics
        with patch.object(client, "_send", hang):
            with pytest.raises(UpstreamTimeout):
                await client.create_spark({"name": "x"}, timeout=0.01)
        assert breakers.get(INTERNAL_API).failure_count == 1
        dependency, _, status = metrics.observe_upstream.call_args.args
        assert dependency == INTERNAL_API
        assert status == "UpstreamTimeout"

    @pytest.mark.asyncio
    async def test_explicit_zero_timeout_is_honoured(self, breakers):
        client = SparkApiClient("http://backend", breakers, api_key="key",
                                default_timeout=30.0)

        async def slow(*args):
            await asyncio.sleep(0.2)

        with patch.object(client, "_send", slow):
            with pytest.raises(UpstreamTimeout) as exc_info:
                await client.request_json("GET", "/api/v1/sparks", timeout=0)
        assert exc_info.value.timeout == 0

    @pytest.mark.asyncio
    async def test_chat_posts_messages(self, breakers):
        client = SparkApiClient("http://backend", breakers, api_key="key")
        reply = {"content": "E = mc^2", "metadata": {"tokens": 12}}
        messages = [{"role": "user", "content": "explain"}]
        with patch.object(client, "_send", AsyncMock(return_value=reply)) as send:
            assert await client.chat("1", messages, timeout=45.0) == reply
        send.assert_awaited_once_with(
            "POST", "/api/v1/sparks/1/completion", {"messages": messages}, None, True,
        )

    @pytest.mark.asyncio
    async def test_fetch_status_is_public(self, breakers):
        client = SparkApiClient("http://backend", breakers)
        send = AsyncMock(return_value=demo_state("running", 30))
        with patch.object(client, "_send", send):
            status = await client.fetch_status("s1")
        method, endpoint, payload, params, authenticated = send.await_args.args
        assert (method, endpoint, authenticated) == ("GET", "/api/public/spark/s1/demo-state", False)
        assert "_t" in params
        assert status.progress == 30

    @pytest.mark.asyncio
    async def test_poll_returns_first_snapshot_without_waiting(self, breakers):
        client = SparkApiClient("http://backend", breakers)
        send = AsyncMock(return_value=demo_state("running", 10))
        with patch.object(client, "_send", send):
            status = await client.poll_status("s1", max_attempts=5, interval=0)
        assert status.status == "running"
        assert send.await_count == 1

    @pytest.mark.asyncio
    async def test_poll_waits_for_terminal_status(self, breakers):
        client = SparkApiClient("http://backend", breakers)
        send = AsyncMock(side_effect=[
            demo_state("running", 20, knowledge=["a", "b"]),
            BackendError(503, "busy"),
            demo_state("running", 60, knowledge=["a"]),
            demo_state("completed", 90),
        ])
        with patch.object(client, "_send", send):
            status = await client.poll_status(
                "s1", max_attempts=10, interval=0, wait_for_completion=True,
            )
        assert status.status == "completed"
        assert status.progress == 100
        assert status.knowledge == ["a", "b"]
        assert send.await_count == 4

    @pytest.mark.asyncio
    async def test_poll_gives_up_after_max_attempts(self, breakers):
        client = SparkApiClient("http://backend", breakers)
        send = AsyncMock(return_value=demo_state("running", 50, knowledge=["doc"]))
        with patch.object(client, "_send", send):
            status = await client.poll_status(
                "s1", max_attempts=3, interval=0, wait_for_completion=True,
            )
        assert status.status == "timeout"
        assert status.knowledge == ["doc"]
        assert send.await_count == 3


@pytest.fixture
def gateway(clock):
    return ResilienceGateway(
        limiter=FixedWindowRateLimiter(
            RateLimitConfig(operation_limits={"create_ai_persona_or_digital_twin": 1}),
            clock=clock,
        ),
        breakers=CircuitBreakerRegistry(clock=clock),
        dedup=DedupCache(ttl=10.0, clock=clock),
        signer=DiscoveryTokenSigner("p" * 32),
    )


@pytest.fixture
def client():
    client = MagicMock(spec=SparkApiClient)
    client.list_sparks = AsyncMock(return_value=SPARKS)
    client.list_sparks_for_discovery = AsyncMock(return_value=SPARKS[:1])
    client.create_spark = AsyncMock(return_value={"id": "new-spark", "name": "Einstein"})
    client.chat = AsyncMock(return_value={"content": "Imagination.", "metadata": {"model": "m"}})
    client.poll_status = AsyncMock(
        return_value=PersonaStatus(persona_id="1", status="running", progress=40),
    )
    return client


class TestPersonaService:

    @pytest.mark.asyncio
    async def test_create_is_deduplicated(self, gateway, client):
        service = PersonaService(gateway, client, creation_timeout=60.0)
        request = CreatePersonaRequest(
            name="Einstein", mode="clone", persona_context="Albert Einstein",
        )
        first = await service.create_persona(request, principal_id="u", ip="ip")
        second = await service.create_persona(request, principal_id="u", ip="ip")
        assert first == second == {"id": "new-spark", "name": "Einstein"}
        client.create_spark.assert_awaited_once_with(
            request.to_backend_payload(), timeout=60.0,
        )

    @pytest.mark.asyncio
    async def test_distinct_creations_are_rate_limited(self, gateway, client):
        service = PersonaService(gateway, client)
        await service.create_persona(
            CreatePersonaRequest(name="A", mode="manual"), principal_id="u", ip="ip",
        )
        with pytest.raises(RateLimitExceeded):
            await service.create_persona(
                CreatePersonaRequest(name="B", mode="manual"), principal_id="u", ip="ip",
            )

    @pytest.mark.asyncio
    async def test_failed_creation_can_be_retried(self, gateway, client, clock):
        client.create_spark.side_effect = [BackendError(502, "bad gateway"), {"id": "ok"}]
        service = PersonaService(gateway, client)
        request = CreatePersonaRequest(name="A", mode="manual")
        with pytest.raises(BackendError):
            await service.create_persona(request, principal_id="u", ip="ip")
        assert not gateway.dedup.in_flight(
            creation_key("u", request.name, request.mode),
        )
        # The failed attempt still used the single creation slot
        clock.advance(61)
        assert await service.create_persona(request, principal_id="u", ip="ip") == {"id": "ok"}
        assert client.create_spark.await_count == 2

    @pytest.mark.asyncio
    async def test_find_persona_prefers_exact(self, gateway, client):
        service = PersonaService(gateway, client)
        resolution = await service.find_persona("einstein", principal_id="u", ip="ip")
        assert resolution.match.item.id == "1"

    @pytest.mark.asyncio
    async def test_require_persona_lists_candidates(self, gateway, client):
        service = PersonaService(gateway, client)
        with pytest.raises(ResourceNotFound) as exc_info:
            await service.require_persona("zzzz", principal_id="u", ip="ip")
        assert exc_info.value.candidates == ["Einstein", "Albert Einstein", "Steve Jobs"]

    @pytest.mark.asyncio
    async def test_discover_with_valid_token(self, gateway, client):
        service = PersonaService(gateway, client)
        token = gateway.issue_discovery_token("user-9")
        personas = await service.discover_personas(token)
        assert [p.name for p in personas] == ["Einstein"]
        client.list_sparks_for_discovery.assert_awaited_once_with("user-9")

    @pytest.mark.asyncio
    async def test_discover_with_bad_token(self, gateway, client):
        service = PersonaService(gateway, client)
        with pytest.raises(InvalidToken):
            await service.discover_personas("garbage")
        client.list_sparks_for_discovery.assert_not_called()

    @pytest.mark.asyncio
    async def test_blank_name_is_rejected_before_listing(self, gateway, client):
        service = PersonaService(gateway, client)
        with pytest.raises(InvalidParams):
            await service.find_persona("  ", principal_id="u", ip="ip")
        client.list_sparks.assert_not_called()

    @pytest.mark.asyncio
    async def test_chat_by_id(self, gateway, client):
        service = PersonaService(gateway, client, chat_timeout=45.0)
        reply = await service.chat_with_persona(
            ChatRequest(message="What matters most?", persona_id="3"),
            principal_id="u", ip="ip",
        )
        assert reply == {
            "persona_id": "3",
            "response": "Imagination.",
            "metadata": {"model": "m"},
        }
        client.chat.assert_awaited_once_with(
            "3", [{"role": "user", "content": "What matters most?"}], timeout=45.0,
        )
        client.list_sparks.assert_not_called()

    @pytest.mark.asyncio
    async def test_chat_by_name_uses_fuzzy_match(self, gateway, client):
        service = PersonaService(gateway, client)
        reply = await service.chat_with_persona(
            ChatRequest(message="hi", persona_name="steve"),
            principal_id="u", ip="ip",
        )
        assert reply["persona_id"] == "3"

    @pytest.mark.asyncio
    async def test_chat_unknown_name_lists_candidates(self, gateway, client):
        service = PersonaService(gateway, client)
        with pytest.raises(ResourceNotFound) as exc_info:
            await service.chat_with_persona(
                ChatRequest(message="hi", persona_name="zzzz"),
                principal_id="u", ip="ip",
            )
        assert "Steve Jobs" in exc_info.value.candidates
        client.chat.assert_not_called()

    @pytest.mark.asyncio
    async def test_chat_is_charged_to_chat_operation(self, gateway, client):
        service = PersonaService(gateway, client)
        request = ChatRequest(message="hi", persona_name="einstein")
        await service.chat_with_persona(request, principal_id="u", ip="ip")
        entry = gateway.limiter._entries["u"]
        assert entry.operation_counts == {CHAT_OPERATION: 1}
        assert entry.count == 1

    @pytest.mark.asyncio
    async def test_chat_rate_limited(self, clock, client):
        gateway = ResilienceGateway(
            limiter=FixedWindowRateLimiter(
                RateLimitConfig(operation_limits={CHAT_OPERATION: 1}), clock=clock,
            ),
            breakers=CircuitBreakerRegistry(clock=clock),
            dedup=DedupCache(ttl=10.0, clock=clock),
            signer=DiscoveryTokenSigner("p" * 32),
        )
        service = PersonaService(gateway, client)
        request = ChatRequest(message="hi", persona_id="1")
        await service.chat_with_persona(request, principal_id="u", ip="ip")
        with pytest.raises(RateLimitExceeded):
            await service.chat_with_persona(request, principal_id="u", ip="ip")
        assert client.chat.await_count == 1

    @pytest.mark.asyncio
    async def test_status_single_poll(self, gateway, client):
        service = PersonaService(gateway, client, polling_timeout=5.0, poll_interval=2.0)
        status = await service.get_persona_status("1", principal_id="u", ip="ip")
        assert status.progress == 40
        client.poll_status.assert_awaited_once_with(
            "1", max_attempts=1, interval=2.0, wait_for_completion=False, timeout=5.0,
        )

    @pytest.mark.asyncio
    async def test_status_wait_uses_configured_attempts(self, gateway, client):
        service = PersonaService(gateway, client, poll_max_attempts=7)
        await service.get_persona_status(
            "1", principal_id="u", ip="ip", wait_for_completion=True,
        )
        assert client.poll_status.await_args.kwargs["max_attempts"] == 7
