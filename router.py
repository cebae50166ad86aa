"""Protocol router for the multiplexed MCP endpoint.

Sits in front of the FastAPI app as ASGI middleware and owns /mcp and /sse.
For each connection it decides the transport (duplex, server-streaming or
plain request/response) and the auth class (discovery or authenticated), then
hands the traffic to a session actor.

Duplex detection looks at several independent signals because proxies may
rewrite or drop any single one of them. It runs before anything reads the
request body.
"""

import json
import logging
import re
from typing import Optional

from mcp.types import PARSE_ERROR
from sse_starlette.sse import EventSourceResponse
from starlette import status
from starlette.datastructures import Headers
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocket

from config import Config
from errors import AUTHENTICATION_REQUIRED, InvalidRequest, TransportUnavailable, error_response
from oauth.provider import OAuthProvider
from session import (
    MISSING,
    ActorRegistry,
    Authenticated,
    Context,
    FrameLimits,
    actor_key,
    rpc_error,
)

logger = logging.getLogger(__name__)

MCP_PATHS = ("/mcp", "/sse")
EVENT_STREAM = "text/event-stream"

_SEGMENT_DELIMITERS = re.compile(r"[.:]")


# ============== Classification helpers ==============

def detect_duplex_signals(headers: Headers) -> list[str]:
    """Names of the upgrade signals present on a request."""
    signals = []
    if headers.get("upgrade", "").strip().lower() == "websocket":
        signals.append("upgrade-header")
    if headers.get("sec-websocket-key") and headers.get("sec-websocket-version"):
        signals.append("websocket-handshake")
    connection_tokens = [token.strip().lower() for token in headers.get("connection", "").split(",")]
    if "upgrade" in connection_tokens:
        signals.append("connection-upgrade")
    return signals


def wants_event_stream(headers: Headers) -> bool:
    return EVENT_STREAM in headers.get("accept", "")


def prefers_event_stream(headers: Headers) -> bool:
    """Only an event stream is acceptable; JSON is not offered."""
    accept = headers.get("accept", "")
    return EVENT_STREAM in accept and "application/json" not in accept


def extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, credential = authorization.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return credential.strip()


def is_structured_credential(token: Optional[str]) -> bool:
    """Exactly three colon/dot-delimited segments, the shape this service issues."""
    if not token:
        return False
    return len(_SEGMENT_DELIMITERS.split(token)) == 3


def classify_credential(token: Optional[str]) -> str:
    return "authenticated" if is_structured_credential(token) else "discovery"


def requires_authentication(response) -> bool:
    """Whether every response in a JSON-RPC reply (or batch) is an auth-required error."""
    responses = response if isinstance(response, list) else [response]
    return bool(responses) and all(
        isinstance(item, dict) and (item.get("error") or {}).get("code") == AUTHENTICATION_REQUIRED
        for item in responses
    )


async def stream_events(registry: ActorRegistry, stream_id: str, queue, endpoint: str):
    """Server-sent events for one stream: the endpoint first, then responses."""
    try:
        yield {"event": "endpoint", "data": endpoint}
        while True:
            message = await queue.get()
            yield {"event": "message", "data": json.dumps(message)}
    finally:
        registry.close_stream(stream_id)
        logger.info(f"[SSE] Stream {stream_id[:8]} closed")


# ============== Router ==============

class ProtocolRouter:
    """ASGI middleware dispatching MCP traffic to session actors."""

    def __init__(
        self,
        app: ASGIApp,
        config: Config,
        provider: OAuthProvider,
        registry: ActorRegistry,
        paths: tuple = MCP_PATHS,
    ):
        self.app = app
        self.config = config
        self.provider = provider
        self.registry = registry
        self.paths = paths
        self.limits = FrameLimits.from_config(config)

    def _matches(self, path: str) -> bool:
        return any(path == p or path.startswith(p + "/") for p in self.paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket") or not self._matches(scope["path"]):
            await self.app(scope, receive, send)
            return

        self.registry.evict_idle()
        headers = Headers(scope=scope)

        if scope["type"] == "websocket":
            await self._serve_duplex(WebSocket(scope, receive, send), headers)
            return

        signals = detect_duplex_signals(headers)
        if signals:
            # Upgrade was asked for, but the server handed us a plain HTTP exchange
            logger.warning(f"[ROUTER] Upgrade signals on plain HTTP request: {', '.join(signals)}")
            exc = TransportUnavailable("WebSocket upgrade was requested but is not available on this connection")
            await error_response(exc)(scope, receive, send)
            return

        response = await self._handle_http(Request(scope, receive), headers)
        await response(scope, receive, send)

    # ---- identity ----

    def resolve_context(self, token: Optional[str]) -> Optional[Context]:
        """Context for a bearer credential; None when a structured credential is invalid."""
        if classify_credential(token) == "discovery":
            return MISSING
        grant = self.provider.resolve_access_token(token)
        if grant is None:
            return None
        return Authenticated(grant.grant_id, dict(grant.props))

    def unauthorized_response(self, error: str, error_description: str) -> JSONResponse:
        """Return 401 with WWW-Authenticate header pointing to resource metadata (RFC 9728)."""
        return JSONResponse(
            {"error": error, "error_description": error_description},
            status_code=401,
            headers={"WWW-Authenticate": self._www_authenticate()},
        )

    def _www_authenticate(self) -> str:
        return f'Bearer resource_metadata="{self.config.server_url}/.well-known/oauth-protected-resource"'

    # ---- duplex ----

    async def _serve_duplex(self, websocket: WebSocket, headers: Headers) -> None:
        context = self.resolve_context(extract_bearer(headers.get("authorization")))
        if context is None:
            logger.info("[WS] Rejecting upgrade: invalid access token")
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="invalid_token")
            return
        actor = self.registry.for_context(context)
        await actor.serve_duplex(websocket, context, self.limits)

    # ---- HTTP ----

    async def _handle_http(self, request: Request, headers: Headers) -> Response:
        context = self.resolve_context(extract_bearer(headers.get("authorization")))
        if context is None:
            logger.info("[AUTH] Request rejected: invalid or expired token")
            return self.unauthorized_response("invalid_token", "Invalid or expired token")

        if request.method == "GET":
            if wants_event_stream(headers):
                return self._open_stream(request, context)
            return JSONResponse(
                {"error": "invalid_request", "error_description": f"GET requires Accept: {EVENT_STREAM}"},
                status_code=406,
            )
        if request.method != "POST":
            return Response(status_code=405, headers={"Allow": "GET, POST"})

        try:
            payload = json.loads(await request.body())
        except ValueError:
            return JSONResponse(rpc_error(None, PARSE_ERROR, "Parse error"), status_code=400)

        stream_id = request.query_params.get("sessionId")
        if stream_id:
            return await self._post_to_stream(stream_id, payload, context)

        actor = self.registry.for_context(context)
        response = await actor.handle_payload(payload, context)
        if response is None:
            return Response(status_code=202)

        if requires_authentication(response):
            return JSONResponse(response, status_code=401, headers={"WWW-Authenticate": self._www_authenticate()})
        if prefers_event_stream(headers):
            return EventSourceResponse(iter([{"event": "message", "data": json.dumps(response)}]))
        return JSONResponse(response)

    def _open_stream(self, request: Request, context: Context) -> EventSourceResponse:
        actor = self.registry.for_context(context)
        stream_id, queue = self.registry.open_stream(actor)
        endpoint = f"{request.url.path}?sessionId={stream_id}"
        logger.info(f"[SSE] Stream {stream_id[:8]} opened on {actor.key}")
        return EventSourceResponse(
            stream_events(self.registry, stream_id, queue, endpoint),
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    async def _post_to_stream(self, stream_id: str, payload, context: Context) -> Response:
        actor = self.registry.stream_actor(stream_id)
        if actor is None:
            return error_response(InvalidRequest("Unknown sessionId", status_code=404))
        if actor.key != actor_key(context):
            return error_response(InvalidRequest("sessionId belongs to another session", status_code=403))

        response = await actor.handle_payload(payload, context)
        if response is not None:
            await actor.deliver(stream_id, response)
        return Response(status_code=202)
