"""Tests for session actors, identity context and frame limits."""

import asyncio
import json
import time

import pytest
from starlette import status

from errors import AUTHENTICATION_REQUIRED, UpstreamExchangeFailed
from oauth.provider import OAuthProvider
from oauth.stores import AuthorizationRequest
from session import (
    DISCOVERY,
    DISCOVERY_METHODS,
    DISCOVERY_SESSION_KEY,
    MISSING,
    ActorRegistry,
    Authenticated,
    Discovery,
    FrameLimiter,
    FrameLimits,
    SessionActor,
    actor_key,
)

from conftest import FakeBridge, FakeCatalogue

LIVE_PROPS = {
    "upstream_access_token": "at-1",
    "upstream_refresh_token": "rt-1",
    "upstream_expires_at": int(time.time()) + 3600,
    "display_name": "Ada",
}


def rpc(method, request_id=1, **params):
    message = {"jsonrpc": "2.0", "method": method, "params": params}
    if request_id is not None:
        message["id"] = request_id
    return message


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class ContextSpyCatalogue(FakeCatalogue):
    """Records the actor's context whenever tools are listed."""

    def __init__(self):
        super().__init__()
        self.actor = None
        self.seen_contexts = []

    def list_tools(self):
        self.seen_contexts.append(self.actor.context)
        return super().list_tools()


class ScriptedWebSocket:
    """Minimal WebSocket: feeds queued messages, then disconnects."""

    def __init__(self, messages=(), on_accept=None):
        self.scope = {"subprotocols": []}
        self.messages = list(messages)
        self.on_accept = on_accept
        self.sent = []
        self.closed = None

    async def accept(self, subprotocol=None):
        if self.on_accept is not None:
            self.on_accept()

    async def receive(self):
        if not self.messages:
            return {"type": "websocket.disconnect"}
        return {"type": "websocket.receive", "text": json.dumps(self.messages.pop(0))}

    async def send_text(self, text):
        self.sent.append(json.loads(text))

    async def close(self, code=1000, reason=None):
        self.closed = code


class TestContext:
    def test_actor_keys(self):
        assert actor_key(DISCOVERY) == DISCOVERY_SESSION_KEY
        assert actor_key(MISSING) == DISCOVERY_SESSION_KEY
        assert actor_key(Authenticated("g1", {})) == "grant:g1"


class TestDiscoveryMethods:
    """Discovery never requires identity."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["initialize", "ping", "tools/list", "resources/list", "prompts/list"])
    @pytest.mark.parametrize("context", [MISSING, DISCOVERY, Authenticated("g1", LIVE_PROPS)])
    async def test_never_authentication_required(self, catalogue, method, context):
        actor = SessionActor("k", catalogue)
        response = await actor.submit(rpc(method), context)
        assert "error" not in response
        assert response["id"] == 1

    @pytest.mark.asyncio
    async def test_initialize_negotiates_protocol_version(self, catalogue):
        actor = SessionActor("k", catalogue)
        response = await actor.submit(rpc("initialize", protocolVersion="2024-11-05"))
        result = response["result"]
        assert result["protocolVersion"] == "2024-11-05"
        assert result["serverInfo"]["name"] == "microsoft-365-mcp"
        assert "tools" in result["capabilities"]
        assert actor.state == "READY"

    @pytest.mark.asyncio
    async def test_tools_list_uses_wire_names(self, catalogue):
        response = await SessionActor("k", catalogue).submit(rpc("tools/list"))
        (tool,) = response["result"]["tools"]
        assert tool["name"] == "getProfile"
        assert "inputSchema" in tool

    @pytest.mark.asyncio
    async def test_context_is_swapped_and_restored(self):
        catalogue = ContextSpyCatalogue()
        actor = SessionActor("grant:g1", catalogue)
        catalogue.actor = actor
        held = Authenticated("g1", LIVE_PROPS)

        await actor.submit(rpc("tools/list"), held)

        assert catalogue.seen_contexts == [DISCOVERY]
        assert isinstance(catalogue.seen_contexts[0], Discovery)
        assert actor.context == held

    @pytest.mark.asyncio
    async def test_context_restored_when_handler_raises(self):
        class Broken(ContextSpyCatalogue):
            def list_tools(self):
                super().list_tools()
                raise RuntimeError("boom")

        catalogue = Broken()
        actor = SessionActor("grant:g1", catalogue)
        catalogue.actor = actor
        held = Authenticated("g1", LIVE_PROPS)

        response = await actor.submit(rpc("tools/list"), held)

        assert response["error"]["code"] == -32603
        assert actor.context == held

    def test_discovery_set(self):
        assert "tools/call" not in DISCOVERY_METHODS
        assert "resources/read" not in DISCOVERY_METHODS


class TestProtectedMethods:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("context", [MISSING, DISCOVERY])
    async def test_without_identity_is_refused(self, catalogue, context):
        actor = SessionActor("k", catalogue)
        response = await actor.submit(rpc("tools/call", name="getProfile", arguments={}), context)

        assert response["error"]["code"] == AUTHENTICATION_REQUIRED == -32001
        assert "authentication required" in response["error"]["message"].lower()
        assert catalogue.calls == []

    @pytest.mark.asyncio
    async def test_with_identity_reaches_catalogue(self, catalogue):
        actor = SessionActor("grant:g1", catalogue)
        response = await actor.submit(
            rpc("tools/call", name="getProfile", arguments={"x": 1}),
            Authenticated("g1", LIVE_PROPS),
        )

        assert response["result"]["content"][0]["text"] == "getProfile ok"
        assert catalogue.calls == [(LIVE_PROPS, "getProfile", {"x": 1})]

    @pytest.mark.asyncio
    async def test_props_without_upstream_token_are_refused(self, catalogue):
        actor = SessionActor("grant:g1", catalogue)
        response = await actor.submit(rpc("tools/call", name="getProfile"), Authenticated("g1", {}))
        assert response["error"]["code"] == -32001
        assert catalogue.calls == []

    @pytest.mark.asyncio
    async def test_unknown_resource_is_invalid_params(self, catalogue):
        actor = SessionActor("grant:g1", catalogue)
        response = await actor.submit(rpc("resources/read", uri="microsoft://nope"), Authenticated("g1", LIVE_PROPS))
        assert response["error"]["code"] == -32602

    @pytest.mark.asyncio
    async def test_unknown_method(self, catalogue):
        actor = SessionActor("grant:g1", catalogue)
        authenticated = await actor.submit(rpc("does/not/exist"), Authenticated("g1", LIVE_PROPS))
        anonymous = await SessionActor("k", catalogue).submit(rpc("does/not/exist"), MISSING)

        assert authenticated["error"]["code"] == -32601
        assert anonymous["error"]["code"] == -32001

    @pytest.mark.asyncio
    async def test_context_sticks_between_messages(self, catalogue):
        actor = SessionActor("grant:g1", catalogue)
        await actor.submit(rpc("initialize"), Authenticated("g1", LIVE_PROPS))
        response = await actor.submit(rpc("tools/call", request_id=2, name="getProfile"))
        assert "result" in response


class TestEnvelopes:
    @pytest.mark.asyncio
    async def test_notifications_get_no_response(self, catalogue):
        actor = SessionActor("k", catalogue)
        assert await actor.submit(rpc("notifications/initialized", request_id=None)) is None
        assert await actor.submit(rpc("tools/call", request_id=None, name="getProfile")) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", [[1], {"method": "ping", "id": 1}, {"jsonrpc": "2.0", "id": 1}])
    async def test_invalid_messages(self, catalogue, message):
        response = await SessionActor("k", catalogue).handle_payload(message)
        if isinstance(response, list):
            (response,) = response
        assert response["error"]["code"] == -32600

    @pytest.mark.asyncio
    async def test_batch(self, catalogue):
        actor = SessionActor("k", catalogue)
        responses = await actor.handle_payload([
            rpc("ping", request_id=1),
            rpc("notifications/initialized", request_id=None),
            rpc("tools/list", request_id=2),
        ])
        assert [r["id"] for r in responses] == [1, 2]

    @pytest.mark.asyncio
    async def test_empty_batch(self, catalogue):
        response = await SessionActor("k", catalogue).handle_payload([])
        assert response["error"]["code"] == -32600

    @pytest.mark.asyncio
    @pytest.mark.parametrize("params", [[1, 2], "uri", 7])
    async def test_non_object_params_are_invalid_params(self, catalogue, params):
        actor = SessionActor("k", catalogue)
        for method in ("tools/list", "tools/call"):
            response = await actor.submit({"jsonrpc": "2.0", "id": 1, "method": method, "params": params})
            assert response["error"]["code"] == -32602
        assert catalogue.calls == []

    @pytest.mark.asyncio
    async def test_client_responses_are_ignored(self, catalogue):
        actor = SessionActor("k", catalogue)
        assert await actor.submit({"jsonrpc": "2.0", "id": 9, "result": {}}) is None


class TestSequentialProcessing:
    @pytest.mark.asyncio
    async def test_messages_processed_in_arrival_order(self):
        events = []

        class SlowCatalogue(FakeCatalogue):
            async def call_tool(self, props, name, arguments=None):
                events.append(("start", name))
                await asyncio.sleep(0.01)
                events.append(("end", name))
                return await super().call_tool(props, name, arguments)

        actor = SessionActor("grant:g1", SlowCatalogue())
        context = Authenticated("g1", LIVE_PROPS)
        await asyncio.gather(
            actor.submit(rpc("tools/call", request_id=1, name="first"), context),
            actor.submit(rpc("tools/call", request_id=2, name="second"), context),
        )

        assert events == [("start", "first"), ("end", "first"), ("start", "second"), ("end", "second")]


class TestInlineRefresh:
    EXPIRED = {**LIVE_PROPS, "upstream_expires_at": int(time.time()) - 10}

    @pytest.mark.asyncio
    async def test_expired_credential_is_refreshed_before_the_call(self, catalogue):
        calls = []

        async def refresher(grant_id, stale_access_token):
            calls.append((grant_id, stale_access_token))
            return {**self.EXPIRED, "upstream_access_token": "at-2", "upstream_expires_at": int(time.time()) + 3600}

        actor = SessionActor("grant:g1", catalogue, refresher)
        response = await actor.submit(rpc("tools/call", name="getProfile"), Authenticated("g1", self.EXPIRED))

        assert "result" in response
        assert calls == [("g1", "at-1")]
        assert catalogue.calls[0][0]["upstream_access_token"] == "at-2"
        assert actor.context.props["upstream_access_token"] == "at-2"

    @pytest.mark.asyncio
    async def test_failed_refresh_is_authentication_required(self, catalogue):
        async def refresher(grant_id, stale_access_token):
            raise UpstreamExchangeFailed(400, '{"error":"invalid_grant"}', operation="refresh")

        actor = SessionActor("grant:g1", catalogue, refresher)
        response = await actor.submit(rpc("tools/call", name="getProfile"), Authenticated("g1", self.EXPIRED))

        assert response["error"]["code"] == -32001
        assert catalogue.calls == []

    @pytest.mark.asyncio
    async def test_no_refresher_is_authentication_required(self, catalogue):
        actor = SessionActor("grant:g1", catalogue)
        response = await actor.submit(rpc("tools/call", name="getProfile"), Authenticated("g1", self.EXPIRED))
        assert response["error"]["code"] == -32001

    @pytest.mark.asyncio
    async def test_consecutive_expiries_on_one_duplex_connection(self, config, catalogue):
        """Every expiry triggers a new refresh, not just the first one."""
        # Each upstream token is already inside the refresh skew when issued
        bridge = FakeBridge(expires_in=0)
        provider = OAuthProvider(config, bridge)
        _, grant = provider.complete_authorization(
            AuthorizationRequest(client_id="C1", redirect_uri="https://cb", scope="S", state="X1"),
            {"upstream_auth_code": "ABC", "upstream_redirect_uri": "https://bridge.test/callback"},
        )
        await provider.exchange_grant(grant.grant_id)

        actor = SessionActor(f"grant:{grant.grant_id}", catalogue, provider.refresh_grant)
        websocket = ScriptedWebSocket([rpc("tools/call", request_id=n, name="getProfile") for n in (1, 2, 3)])
        await actor.serve_duplex(websocket, Authenticated(grant.grant_id, grant.props), FrameLimits())

        assert [response["id"] for response in websocket.sent] == [1, 2, 3]
        assert len(bridge.refreshes) == 3
        used = [props["upstream_access_token"] for props, _, _ in catalogue.calls]
        assert used == ["upstream-access-r1", "upstream-access-r2", "upstream-access-r3"]


class TestFrameLimiter:
    def test_oversize_frame(self):
        limiter = FrameLimiter(FrameLimits(max_message_bytes=10))
        assert limiter.admit(10) is None
        assert limiter.admit(11)[0] == status.WS_1009_MESSAGE_TOO_BIG

    def test_message_rate_window_slides(self):
        clock = FakeClock()
        limiter = FrameLimiter(FrameLimits(max_messages_per_minute=2), clock)
        assert limiter.admit(1) is None
        assert limiter.admit(1) is None
        assert limiter.admit(1) == (status.WS_1008_POLICY_VIOLATION, "Message rate exceeded")

        clock.now += 60
        assert limiter.admit(1) is None

    def test_bandwidth(self):
        clock = FakeClock()
        limiter = FrameLimiter(FrameLimits(max_bytes_per_minute=100, max_message_bytes=100), clock)
        assert limiter.admit(60) is None
        assert limiter.admit(60) == (status.WS_1008_POLICY_VIOLATION, "Bandwidth exceeded")
        clock.now += 61
        assert limiter.admit(60) is None

    def test_limits_from_config(self, config):
        limits = FrameLimits.from_config(config)
        assert limits.idle_timeout == 60
        assert limits.max_message_bytes == 1024 * 1024


class TestRegistry:
    def test_one_actor_per_key(self, catalogue):
        registry = ActorRegistry(catalogue)
        first = registry.for_context(Authenticated("g1", {}))
        assert registry.for_context(Authenticated("g1", LIVE_PROPS)) is first
        assert registry.for_context(Authenticated("g2", {})) is not first
        assert registry.for_context(MISSING) is registry.discovery_actor()
        assert len(registry) == 3

    def test_idle_actors_are_evicted(self, catalogue):
        clock = FakeClock()
        registry = ActorRegistry(catalogue, idle_timeout=10, clock=clock)
        registry.get("grant:g1")
        streaming = registry.get("grant:g2")
        stream_id, _ = registry.open_stream(streaming)

        clock.now += 11
        assert registry.evict_idle() == ["grant:g1"]
        assert "grant:g1" not in registry
        assert "grant:g2" in registry

        registry.close_stream(stream_id)
        clock.now += 11
        assert registry.evict_idle() == ["grant:g2"]

    def test_busy_actor_is_not_evicted(self, catalogue):
        clock = FakeClock()
        registry = ActorRegistry(catalogue, idle_timeout=10, clock=clock)
        registry.get("grant:g1").busy = True
        clock.now += 100
        assert registry.evict_idle() == []

    def test_lookup_counts_as_activity(self, catalogue):
        clock = FakeClock()
        registry = ActorRegistry(catalogue, idle_timeout=10, clock=clock)
        first = registry.get("grant:g1")
        clock.now += 11
        assert registry.get("grant:g1") is first
        assert registry.evict_idle() == []

    @pytest.mark.asyncio
    async def test_connecting_websocket_keeps_actor_alive(self, catalogue):
        """An eviction sweep during the handshake must not orphan the actor."""
        clock = FakeClock()
        registry = ActorRegistry(catalogue, idle_timeout=10, clock=clock)
        actor = registry.get("grant:g1")
        clock.now += 11
        evicted = []

        websocket = ScriptedWebSocket(on_accept=lambda: evicted.extend(registry.evict_idle()))
        await actor.serve_duplex(websocket, MISSING, FrameLimits())

        assert evicted == []
        assert registry.get("grant:g1") is actor
        assert actor.connections == 0

    @pytest.mark.asyncio
    async def test_deliver_to_stream(self, catalogue):
        registry = ActorRegistry(catalogue)
        actor = registry.discovery_actor()
        stream_id, queue = registry.open_stream(actor)

        assert registry.stream_actor(stream_id) is actor
        assert await actor.deliver(stream_id, {"id": 1}) is True
        assert queue.get_nowait() == {"id": 1}

        registry.close_stream(stream_id)
        assert registry.stream_actor(stream_id) is None
        assert await actor.deliver(stream_id, {"id": 2}) is False
        assert actor.connections == 0
