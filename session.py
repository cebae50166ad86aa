"""Session actors: per-caller JSON-RPC state behind the /mcp endpoint.

One actor serves one key. Anonymous traffic shares a single discovery actor;
authenticated traffic gets an actor per grant (`grant:<grant_id>`). Each actor
processes one message at a time, in arrival order.

Identity is an explicit tagged value passed in by the router:

    Discovery                     capability enumeration, no identity
    Authenticated(grant_id, props) upstream tokens and user identifiers
    Missing                       no identity; protected calls are refused

Discovery methods always run under the Discovery context. Whatever context
the actor held is swapped out for the call and restored afterwards.
"""

import asyncio
import json
import logging
import secrets
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

from mcp.shared.version import SUPPORTED_PROTOCOL_VERSIONS
from mcp.types import (
    INTERNAL_ERROR,
    INVALID_PARAMS,
    INVALID_REQUEST,
    LATEST_PROTOCOL_VERSION,
    METHOD_NOT_FOUND,
    PARSE_ERROR,
    Implementation,
    InitializeResult,
    ListPromptsResult,
    ListResourcesResult,
    ListToolsResult,
    PromptsCapability,
    ResourcesCapability,
    ServerCapabilities,
    ToolsCapability,
)
from pydantic import BaseModel
from starlette import status
from starlette.websockets import WebSocket

from config import Config
from errors import AuthenticationRequired, InvalidRequest, UpstreamExchangeFailed
from oauth.bridge import credential_expired
from tools import OperationCatalogue

logger = logging.getLogger(__name__)

SERVER_NAME = "microsoft-365-mcp"
SERVER_VERSION = "1.0.0"

DISCOVERY_SESSION_KEY = "discovery-session"

DISCOVERY_METHODS = frozenset({
    "initialize",
    "notifications/initialized",
    "ping",
    "tools/list",
    "resources/list",
    "prompts/list",
})

AUTH_REQUIRED_MESSAGE = (
    "Microsoft 365 authentication required. Please ensure you have completed "
    "the OAuth flow and have a valid access token."
)


# ============== Identity context ==============

@dataclass(frozen=True)
class Discovery:
    pass


@dataclass(frozen=True)
class Authenticated:
    grant_id: str
    props: dict = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class Missing:
    reason: str = ""


Context = Union[Discovery, Authenticated, Missing]

DISCOVERY = Discovery()
MISSING = Missing()


def actor_key(context: Context) -> str:
    if isinstance(context, Authenticated):
        return f"grant:{context.grant_id}"
    return DISCOVERY_SESSION_KEY


# ============== JSON-RPC envelopes ==============

class RpcError(Exception):
    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = data


def rpc_result(request_id, result: Any) -> dict:
    return {"jsonrpc": "2.0", "id": request_id, "result": result}


def rpc_error(request_id, code: int, message: str, data: Any = None) -> dict:
    error = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"jsonrpc": "2.0", "id": request_id, "error": error}


def dump_model(model: BaseModel) -> dict:
    return model.model_dump(by_alias=True, exclude_none=True, mode="json")


def is_notification(message: dict) -> bool:
    return "id" not in message


# ============== Duplex frame limits ==============

@dataclass(frozen=True)
class FrameLimits:
    idle_timeout: float = 60.0
    max_messages_per_minute: int = 1000
    max_bytes_per_minute: int = 10 * 1024 * 1024
    max_message_bytes: int = 1024 * 1024

    @classmethod
    def from_config(cls, config: Config) -> "FrameLimits":
        return cls(
            idle_timeout=config.ws_idle_timeout,
            max_messages_per_minute=config.ws_max_messages_per_minute,
            max_bytes_per_minute=config.ws_max_bytes_per_minute,
            max_message_bytes=config.ws_max_message_bytes,
        )


class FrameLimiter:
    """Sliding one-minute window over inbound frames of one connection."""

    WINDOW_SECONDS = 60.0

    def __init__(self, limits: FrameLimits, clock: Callable[[], float] = time.monotonic):
        self.limits = limits
        self._clock = clock
        self._frames: deque = deque()
        self._bytes = 0

    def admit(self, size: int) -> Optional[tuple[int, str]]:
        """Record a frame. Returns (close code, reason) if it breaks a limit."""
        if size > self.limits.max_message_bytes:
            return status.WS_1009_MESSAGE_TOO_BIG, "Message too big"

        now = self._clock()
        while self._frames and now - self._frames[0][0] >= self.WINDOW_SECONDS:
            _, old_size = self._frames.popleft()
            self._bytes -= old_size

        if len(self._frames) + 1 > self.limits.max_messages_per_minute:
            return status.WS_1008_POLICY_VIOLATION, "Message rate exceeded"
        if self._bytes + size > self.limits.max_bytes_per_minute:
            return status.WS_1008_POLICY_VIOLATION, "Bandwidth exceeded"

        self._frames.append((now, size))
        self._bytes += size
        return None


# ============== Session actor ==============

Refresher = Callable[[str, Optional[str]], Awaitable[dict]]


class SessionActor:
    """Sequential JSON-RPC processor for one session key.

    Args:
        key: Session key (discovery constant or `grant:<id>`).
        catalogue: Protected-operation catalogue; only used with identity.
        refresher: `async (grant_id, stale_access_token) -> props`, used when
            the attached upstream credential has expired.
    """

    def __init__(
        self,
        key: str,
        catalogue: OperationCatalogue,
        refresher: Refresher = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.key = key
        self.catalogue = catalogue
        self.refresher = refresher
        self.state = "UNINITIALIZED"
        self.context: Context = MISSING
        self.connections = 0
        self.busy = False
        self._clock = clock
        self.last_active = clock()
        self._lock = asyncio.Lock()
        self._streams: dict[str, asyncio.Queue] = {}

    def __repr__(self) -> str:
        return f"SessionActor({self.key!r}, state={self.state})"

    def touch(self) -> None:
        self.last_active = self._clock()

    # ---- message entry points ----

    async def submit(self, message: Any, context: Context = None) -> Optional[dict]:
        """Process one JSON-RPC message. Returns the response, or None for notifications.

        `context` replaces the actor's attached context when given.
        """
        async with self._lock:
            self.busy = True
            self.touch()
            try:
                if context is not None:
                    self.context = context
                return await self._process(message)
            finally:
                self.busy = False
                self.touch()

    async def attach(self, context: Context) -> None:
        """Replace the attached context between messages."""
        async with self._lock:
            self.context = context

    async def handle_payload(self, payload: Any, context: Context = None) -> Union[dict, list, None]:
        """Single message or batch."""
        if isinstance(payload, list):
            if not payload:
                return rpc_error(None, INVALID_REQUEST, "Empty batch")
            responses = []
            for message in payload:
                response = await self.submit(message, context)
                if response is not None:
                    responses.append(response)
            return responses or None
        return await self.submit(payload, context)

    # ---- classification ----

    async def _process(self, message: Any) -> Optional[dict]:
        if not isinstance(message, dict) or message.get("jsonrpc") != "2.0":
            return rpc_error(None, INVALID_REQUEST, "Invalid JSON-RPC message")

        request_id = message.get("id")
        method = message.get("method")
        if not isinstance(method, str):
            if "result" in message or "error" in message:
                # Client response to a server request; nothing to answer
                return None
            return rpc_error(request_id, INVALID_REQUEST, "Missing method")

        params = message.get("params")
        if params is None:
            params = {}
        elif not isinstance(params, dict):
            return None if is_notification(message) else rpc_error(
                request_id, INVALID_PARAMS, "params must be an object"
            )

        try:
            if method in DISCOVERY_METHODS:
                result = await self._run_discovery(method, params)
            else:
                result = await self._run_protected(method, params)
        except AuthenticationRequired as e:
            logger.info(f"[SESSION] {method} refused on {self.key}: authentication required")
            return None if is_notification(message) else {
                "jsonrpc": "2.0", "id": request_id, "error": e.to_rpc_error(),
            }
        except RpcError as e:
            return None if is_notification(message) else rpc_error(request_id, e.code, e.message, e.data)
        except Exception as e:
            logger.exception(f"[SESSION] {method} failed on {self.key}: {e}")
            return None if is_notification(message) else rpc_error(request_id, INTERNAL_ERROR, "Internal error")

        if is_notification(message):
            return None
        return rpc_result(request_id, result)

    async def _run_discovery(self, method: str, params: dict) -> Any:
        held = self.context
        self.context = DISCOVERY
        try:
            return self._discover(method, params)
        finally:
            self.context = held

    def _discover(self, method: str, params: dict) -> Any:
        """Discovery handlers. They read no identity and no per-caller state."""
        if method == "initialize":
            self.state = "READY"
            requested = params.get("protocolVersion")
            version = requested if requested in SUPPORTED_PROTOCOL_VERSIONS else LATEST_PROTOCOL_VERSION
            return dump_model(InitializeResult(
                protocolVersion=version,
                capabilities=ServerCapabilities(
                    tools=ToolsCapability(listChanged=False),
                    resources=ResourcesCapability(subscribe=False, listChanged=False),
                    prompts=PromptsCapability(listChanged=False),
                ),
                serverInfo=Implementation(name=SERVER_NAME, version=SERVER_VERSION),
                instructions="Microsoft 365 mail, calendar and contacts. Tools require signing in.",
            ))
        if method == "notifications/initialized":
            self.state = "READY"
            return None
        if method == "ping":
            return {}
        if method == "tools/list":
            return dump_model(ListToolsResult(tools=self.catalogue.list_tools()))
        if method == "resources/list":
            return dump_model(ListResourcesResult(resources=self.catalogue.list_resources()))
        if method == "prompts/list":
            return dump_model(ListPromptsResult(prompts=[]))
        raise RpcError(METHOD_NOT_FOUND, f"Method not found: {method}")

    async def _run_protected(self, method: str, params: dict) -> Any:
        context = self.context
        if not isinstance(context, Authenticated):
            raise AuthenticationRequired(AUTH_REQUIRED_MESSAGE)
        props = await self._fresh_props(context)

        if method == "tools/call":
            name = params.get("name")
            if not isinstance(name, str):
                raise RpcError(INVALID_PARAMS, "tools/call requires a tool name")
            return dump_model(await self.catalogue.call_tool(props, name, params.get("arguments")))
        if method == "resources/read":
            uri = params.get("uri")
            result = await self.catalogue.read_resource(props, uri) if isinstance(uri, str) else None
            if result is None:
                raise RpcError(INVALID_PARAMS, f"Unknown resource: {uri}")
            return dump_model(result)
        raise RpcError(METHOD_NOT_FOUND, f"Method not found: {method}")

    async def _fresh_props(self, context: Authenticated) -> dict:
        """Props with a usable upstream token, refreshing inline if it expired."""
        props = context.props
        if not props.get("upstream_access_token"):
            raise AuthenticationRequired(AUTH_REQUIRED_MESSAGE)

        if not credential_expired(props):
            return props

        if self.refresher is None:
            raise AuthenticationRequired("Upstream credential expired")
        logger.info(f"[SESSION] Upstream credential expired on {self.key}, refreshing")
        try:
            props = await self.refresher(context.grant_id, props.get("upstream_access_token"))
        except (UpstreamExchangeFailed, InvalidRequest) as e:
            logger.warning(f"[SESSION] Inline refresh failed on {self.key}: {e}")
            raise AuthenticationRequired("Upstream credential expired and could not be refreshed")

        self.context = Authenticated(context.grant_id, props)
        return props

    # ---- server-streaming ----

    def open_stream(self) -> tuple[str, asyncio.Queue]:
        stream_id = secrets.token_urlsafe(16)
        queue: asyncio.Queue = asyncio.Queue()
        self._streams[stream_id] = queue
        self.connections += 1
        self.touch()
        return stream_id, queue

    def close_stream(self, stream_id: str) -> None:
        if self._streams.pop(stream_id, None) is not None:
            self.connections -= 1
            self.touch()

    async def deliver(self, stream_id: str, response: Union[dict, list]) -> bool:
        queue = self._streams.get(stream_id)
        if queue is None:
            return False
        await queue.put(response)
        return True

    # ---- duplex ----

    async def serve_duplex(self, websocket: WebSocket, context: Context, limits: FrameLimits) -> None:
        """Own an accepted-on-entry WebSocket until it closes or breaks a limit."""
        subprotocols = websocket.scope.get("subprotocols") or []
        limiter = FrameLimiter(limits)
        self.connections += 1
        try:
            await websocket.accept(subprotocol="mcp" if "mcp" in subprotocols else None)
            await self.attach(context)
            logger.info(f"[WS] Duplex session opened on {self.key}")
            while True:
                try:
                    frame = await asyncio.wait_for(websocket.receive(), timeout=limits.idle_timeout)
                except asyncio.TimeoutError:
                    logger.info(f"[WS] Idle timeout on {self.key}")
                    await websocket.close(code=status.WS_1000_NORMAL_CLOSURE, reason="Idle timeout")
                    return
                if frame["type"] == "websocket.disconnect":
                    return

                raw = frame.get("bytes") or (frame.get("text") or "").encode("utf-8")
                violation = limiter.admit(len(raw))
                if violation is not None:
                    code, reason = violation
                    logger.warning(f"[WS] Closing {self.key}: {reason}")
                    await websocket.close(code=code, reason=reason)
                    return

                try:
                    payload = json.loads(raw)
                except ValueError:
                    await websocket.send_text(json.dumps(rpc_error(None, PARSE_ERROR, "Parse error")))
                    continue

                response = await self.handle_payload(payload)
                if response is not None:
                    await websocket.send_text(json.dumps(response))
        finally:
            self.connections -= 1
            self.touch()
            logger.info(f"[WS] Duplex session closed on {self.key}")


# ============== Registry ==============

class ActorRegistry:
    """Exactly one live actor per key; idle actors are evicted."""

    def __init__(
        self,
        catalogue: OperationCatalogue,
        refresher: Refresher = None,
        idle_timeout: float = 900.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.catalogue = catalogue
        self.refresher = refresher
        self.idle_timeout = idle_timeout
        self._clock = clock
        self._actors: dict[str, SessionActor] = {}
        self._streams: dict[str, SessionActor] = {}

    def __len__(self) -> int:
        return len(self._actors)

    def __contains__(self, key: str) -> bool:
        return key in self._actors

    def get(self, key: str) -> SessionActor:
        actor = self._actors.get(key)
        if actor is None:
            actor = SessionActor(key, self.catalogue, self.refresher, clock=self._clock)
            self._actors[key] = actor
            logger.info(f"[SESSION] Created actor {key}")
        actor.touch()
        return actor

    def for_context(self, context: Context) -> SessionActor:
        return self.get(actor_key(context))

    def discovery_actor(self) -> SessionActor:
        return self.get(DISCOVERY_SESSION_KEY)

    # ---- stream index ----

    def open_stream(self, actor: SessionActor) -> tuple[str, asyncio.Queue]:
        stream_id, queue = actor.open_stream()
        self._streams[stream_id] = actor
        return stream_id, queue

    def stream_actor(self, stream_id: str) -> Optional[SessionActor]:
        return self._streams.get(stream_id)

    def close_stream(self, stream_id: str) -> None:
        actor = self._streams.pop(stream_id, None)
        if actor is not None:
            actor.close_stream(stream_id)

    # ---- eviction ----

    def evict_idle(self, now: float = None) -> list[str]:
        """Drop actors idle past the timeout. Busy or connected actors stay."""
        now = self._clock() if now is None else now
        evicted = [
            key for key, actor in self._actors.items()
            if not actor.busy and actor.connections == 0 and now - actor.last_active > self.idle_timeout
        ]
        for key in evicted:
            del self._actors[key]
        if evicted:
            logger.info(f"[SESSION] Evicted {len(evicted)} idle actor(s)")
        return evicted
