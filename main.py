"""Microsoft 365 MCP bridge.

Exposes Microsoft 365 operations to MCP clients over one multiplexed
endpoint, gated by a delegated OAuth 2.1 flow against the Microsoft identity
platform. It handles:
- MCP traffic on /mcp (and /sse) via the protocol router: WebSocket,
  server-sent events, or plain JSON request/response
- OAuth endpoints for MCP clients (oauth/)
- Health and info endpoints

Run with `python main.py` or `uvicorn main:app`.
"""
import logging
import secrets
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from supabase import create_client, Client

from config import Config, load_config
from errors import BridgeError, bridge_error_handler
from logging_config import flush_logs, setup_logging
from oauth.bridge import TokenBridge
from oauth.endpoints import router as oauth_router, init_oauth_routes
from oauth.jwt_utils import init_jwt_secret
from oauth.provider import OAuthProvider
from router import MCP_PATHS, ProtocolRouter
from session import SERVER_NAME, SERVER_VERSION, ActorRegistry
from tools import OperationCatalogue

logger = logging.getLogger(__name__)


def create_supabase_client(config: Config) -> Optional[Client]:
    """Supabase client for log shipping, when configured."""
    if config.supabase_url and config.supabase_key:
        return create_client(config.supabase_url, config.supabase_key)
    return None


def create_app(
    config: Config = None,
    bridge: TokenBridge = None,
    catalogue: OperationCatalogue = None,
) -> FastAPI:
    """Wire the bridge, provider, session registry and routes into one app."""
    config = config or load_config()

    if not config.is_valid():
        logger.warning("[STARTUP] MICROSOFT_CLIENT_ID / MICROSOFT_CLIENT_SECRET not set; upstream login will fail")
    if not config.cookie_secret:
        # Approvals will not survive a restart
        logger.warning("[STARTUP] COOKIE_SECRET not set, generating an ephemeral one")
        config.data["COOKIE_SECRET"] = secrets.token_urlsafe(32)
    init_jwt_secret(config.jwt_secret)

    bridge = bridge or TokenBridge(config)
    catalogue = catalogue or OperationCatalogue(config)
    provider = OAuthProvider(config, bridge)
    registry = ActorRegistry(
        catalogue,
        refresher=provider.refresh_grant,
        idle_timeout=config.session_idle_timeout,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"[STARTUP] SERVER_URL: {config.server_url}")
        yield
        await bridge.aclose()
        await catalogue.aclose()
        flush_logs()

    app = FastAPI(
        title="Microsoft 365 MCP Bridge",
        description="MCP access to Microsoft 365 with OAuth 2.1 and a delegated Microsoft login",
        version=SERVER_VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.provider = provider
    app.state.registry = registry

    app.add_exception_handler(BridgeError, bridge_error_handler)

    # Protocol router owns the MCP paths, including WebSocket upgrades
    app.add_middleware(ProtocolRouter, config=config, provider=provider, registry=registry)

    # Add CORS middleware for browser-based MCP client access
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ============== Include Routers ==============

    init_oauth_routes(config, provider)
    app.include_router(oauth_router)

    # ============== Server Info Endpoints ==============

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": SERVER_NAME, "sessions": len(registry)}

    @app.get("/")
    async def root():
        """Root endpoint with server info."""
        return {
            "name": SERVER_NAME,
            "version": SERVER_VERSION,
            "endpoints": {
                "mcp": "/mcp",
                "sse": "/sse",
                "transports": ["websocket", "sse", "http"],
            },
            "tools": [tool.name for tool in catalogue.list_tools()],
            "oauth": {
                "protected_resource": f"{config.server_url}/.well-known/oauth-protected-resource",
                "authorization_server": f"{config.server_url}/.well-known/oauth-authorization-server",
            },
            "upstream_configured": config.is_valid(),
        }

    return app


# ============== Module-level app ==============

local_config = load_config()
setup_logging(supabase_client=create_supabase_client(local_config), level=local_config.log_level)
logger.info(f"[STARTUP] Config loaded - valid: {local_config.is_valid()}")

app = create_app(local_config)


# ============== Main Entry Point ==============

if __name__ == "__main__":
    import uvicorn
    logger.info(f"Starting MCP bridge on {local_config.host}:{local_config.port}")
    logger.info(f"MCP endpoints: {', '.join(MCP_PATHS)}")
    uvicorn.run(app, host=local_config.host, port=local_config.port)
