"""OAuth 2.1 endpoints for the Microsoft 365 bridge.

This module contains all OAuth-related endpoints:
- Discovery metadata (/.well-known/*)
- Client registration (/register)
- Authorization flow (/authorize, /callback)
- Token endpoint (/token)

The flow is delegated: after consent the browser is sent to the Microsoft
identity platform, which returns to /callback. No flow state is held in
memory between those hops; it travels in the signed upstream `state` and in
the approval cookie.
"""

import logging
from urllib.parse import urlencode, urlparse

from fastapi import APIRouter, BackgroundTasks, Form, Request
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from config import Config
from errors import InvalidRequest
from oauth.cookies import (
    client_already_approved,
    decode_form_state,
    decode_upstream_state,
    encode_form_state,
    encode_upstream_state,
    extend_approvals,
    get_approved_clients,
    set_approval_cookie,
)
from oauth.provider import OAuthProvider, append_query
from oauth.stores import AuthorizationRequest
from oauth.templates import render_consent_page

logger = logging.getLogger(__name__)

# Router for OAuth endpoints
router = APIRouter(tags=["oauth"])

# These will be set by init_oauth_routes()
_config: Config = None
_provider: OAuthProvider = None


def init_oauth_routes(config: Config, provider: OAuthProvider):
    """Initialize OAuth routes with config and the platform provider.

    Must be called before including the router in the app.
    """
    global _config, _provider
    _config = config
    _provider = provider


def client_type_for(redirect_uri: str) -> str:
    """Free-text tag for grant metadata. Never used for access decisions."""
    host = urlparse(redirect_uri).hostname or ""
    if host in ("localhost", "127.0.0.1"):
        return "mcp-remote"
    return "web-connector"


def _request_from_state(data: dict) -> AuthorizationRequest:
    info = data.get("oauthReqInfo")
    if not isinstance(info, dict):
        raise InvalidRequest("State does not carry an authorization request")
    try:
        return AuthorizationRequest.from_dict(info)
    except (KeyError, TypeError):
        raise InvalidRequest("State does not carry an authorization request")


def redirect_to_upstream(auth_request: AuthorizationRequest) -> RedirectResponse:
    """Send the browser to the upstream authorize endpoint."""
    client_type = client_type_for(auth_request.redirect_uri)
    state = encode_upstream_state(
        {"oauthReqInfo": auth_request.to_dict(), "clientType": client_type},
        _config.cookie_secret,
    )
    params = {
        "client_id": _config.client_id or "",
        "response_type": "code",
        "redirect_uri": f"{_config.server_url}/callback",
        "scope": _config.upstream_scopes,
        "state": state,
        "response_mode": "query",
    }
    logger.info(f"[AUTH] Redirecting client {auth_request.client_id} upstream ({client_type})")
    return RedirectResponse(url=f"{_config.upstream_authorize_url}?{urlencode(params)}", status_code=302)


# ============== OAuth 2.1 Discovery Endpoints ==============

@router.get("/.well-known/oauth-protected-resource")
async def oauth_protected_resource():
    """OAuth 2.0 Protected Resource Metadata (RFC 9728)."""
    server_url = _config.server_url
    return {
        "resource": server_url,
        "authorization_servers": [server_url],
        "bearer_methods_supported": ["header"],
        "resource_documentation": f"{server_url}/docs",
    }


@router.get("/.well-known/oauth-authorization-server")
async def oauth_authorization_server():
    """OAuth 2.0 Authorization Server Metadata (RFC 8414)."""
    server_url = _config.server_url
    return {
        "issuer": server_url,
        "authorization_endpoint": f"{server_url}/authorize",
        "token_endpoint": f"{server_url}/token",
        "registration_endpoint": f"{server_url}/register",
        "response_types_supported": ["code"],
        "response_modes_supported": ["query"],
        "grant_types_supported": ["authorization_code", "refresh_token"],
        "token_endpoint_auth_methods_supported": ["none"],
        "code_challenge_methods_supported": ["S256", "plain"],
        "service_documentation": f"{server_url}/docs",
    }


# ============== Client Registration ==============

@router.post("/register")
async def register_client(request: Request):
    """OAuth 2.0 Dynamic Client Registration (RFC 7591)."""
    try:
        data = await request.json()
    except ValueError:
        raise InvalidRequest("Client metadata must be a JSON object", error="invalid_client_metadata")
    if not isinstance(data, dict):
        raise InvalidRequest("Client metadata must be a JSON object", error="invalid_client_metadata")

    client = _provider.register_client(data)
    return JSONResponse(client.to_dict(), status_code=201)


# ============== Authorization Flow ==============

@router.get("/authorize")
async def authorize(request: Request):
    """Show the consent page, or go straight upstream for approved clients."""
    auth_request = _provider.parse_auth_request(request.query_params)
    client = _provider.lookup_client(auth_request.client_id)

    if client_already_approved(request.cookies, client.client_id, _config.cookie_secret):
        logger.info(f"[AUTH] Client {client.client_id} already approved, skipping consent")
        return redirect_to_upstream(auth_request)

    state = encode_form_state({"oauthReqInfo": auth_request.to_dict()})
    return HTMLResponse(render_consent_page(client, state, auth_request.scope))


@router.post("/authorize")
async def authorize_submit(
    request: Request,
    state: str = Form(""),
    action: str = Form("approve"),
):
    """Handle the consent form."""
    if not state:
        raise InvalidRequest("Missing state")
    auth_request = _request_from_state(decode_form_state(state))
    client = _provider.validate_auth_request(auth_request)

    if action == "deny":
        logger.info(f"[AUTH] User denied access for client {client.client_id}")
        params = {
            "error": "access_denied",
            "error_description": "User denied access",
            "state": auth_request.state,
        }
        return RedirectResponse(url=append_query(auth_request.redirect_uri, params), status_code=302)

    approved = extend_approvals(
        get_approved_clients(request.cookies, _config.cookie_secret),
        client.client_id,
    )
    response = redirect_to_upstream(auth_request)
    set_approval_cookie(response, approved, _config.cookie_secret)
    return response


@router.get("/callback")
async def callback(
    background_tasks: BackgroundTasks,
    code: str = "",
    state: str = "",
    error: str = "",
    error_description: str = "",
):
    """Upstream identity provider redirect target."""
    if error:
        logger.warning(f"[AUTH] Upstream authorization error: {error}")
        raise InvalidRequest(f"Upstream identity provider returned '{error}': {error_description}".rstrip(": "))
    if not code:
        raise InvalidRequest("Missing code")

    data = decode_upstream_state(state, _config.cookie_secret)
    auth_request = _request_from_state(data)
    _provider.validate_auth_request(auth_request)

    client_type = data.get("clientType") or client_type_for(auth_request.redirect_uri)
    props = {
        "upstream_auth_code": code,
        "upstream_redirect_uri": f"{_config.server_url}/callback",
        "client_type": client_type,
    }
    metadata = {
        "label": f"Microsoft 365 User ({client_type})",
        "client_type": client_type,
    }
    redirect_to, grant = _provider.complete_authorization(auth_request, props, metadata)

    # Exchange starts now; /token waits for it if it is still running
    background_tasks.add_task(_provider.prefetch_exchange, grant.grant_id)
    return RedirectResponse(url=redirect_to, status_code=302)


# ============== Token Endpoint ==============

@router.post("/token")
async def token(
    request: Request,
    grant_type: str = Form(None),
    code: str = Form(None),
    redirect_uri: str = Form(None),
    client_id: str = Form(None),
    code_verifier: str = Form(None),
    refresh_token: str = Form(None),
):
    """OAuth 2.0 Token Endpoint."""
    # Handle form data or JSON
    if grant_type is None:
        try:
            data = await request.json()
        except ValueError:
            raise InvalidRequest("Missing grant_type")
        if not isinstance(data, dict):
            raise InvalidRequest("Missing grant_type")
        grant_type = data.get("grant_type")
        code = data.get("code")
        redirect_uri = data.get("redirect_uri")
        client_id = data.get("client_id")
        code_verifier = data.get("code_verifier")
        refresh_token = data.get("refresh_token")

    logger.debug(f"[TOKEN] grant_type: {grant_type}, client_id: {client_id}")

    if grant_type == "authorization_code":
        tokens = await _provider.exchange_code(code, client_id, redirect_uri, code_verifier)
    elif grant_type == "refresh_token":
        tokens = await _provider.refresh_tokens(refresh_token, client_id)
    else:
        raise InvalidRequest(f"Unsupported grant_type: {grant_type}", error="unsupported_grant_type")

    return JSONResponse(tokens, headers={"Cache-Control": "no-store"})
