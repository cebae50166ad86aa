"""Authorization-completion contract and token grants.

The provider owns the client registry and the grants created when a caller
finishes the upstream login. A grant starts with pending props (the one-time
upstream code and the callback redirect URI); the token bridge turns those into
upstream tokens, and the session credentials issued here point at the grant.

Upstream exchange and refresh run under a per-grant lock, so concurrent
requests for the same grant share one upstream call instead of racing on a
single-use code or refresh token.
"""

import asyncio
import base64
import hashlib
import hmac
import logging
import secrets
import time
from typing import Mapping, Optional
from urllib.parse import urlencode, urlparse

from config import Config
from errors import InvalidRequest, UpstreamExchangeFailed
from oauth.bridge import TokenBridge, credential_expired, merge_credential
from oauth.jwt_utils import create_access_token, create_refresh_token, verify_access_token, verify_refresh_token
from oauth.stores import AuthorizationCode, AuthorizationRequest, ClientRegistration, Grant, InMemoryStore

logger = logging.getLogger(__name__)

AUTHORIZATION_CODE_TTL = 600  # 10 minutes
# Unredeemed or failed grants are dropped once their code could no longer be used
PENDING_GRANT_TTL = AUTHORIZATION_CODE_TTL
PKCE_METHODS = ("S256", "plain")
LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "[::1]", "::1")
FORBIDDEN_SCHEMES = ("javascript", "data", "file", "vbscript")


def append_query(url: str, params: dict) -> str:
    """Append query parameters to a URL that may already carry some."""
    params = {k: v for k, v in params.items() if v}
    if not params:
        return url
    separator = "&" if urlparse(url).query else "?"
    return f"{url}{separator}{urlencode(params)}"


def validate_redirect_uri(uri: str) -> bool:
    """https anywhere, http only on loopback, custom schemes for native apps."""
    try:
        parsed = urlparse(uri)
    except ValueError:
        return False
    if not parsed.scheme or parsed.fragment or parsed.scheme.lower() in FORBIDDEN_SCHEMES:
        return False
    if parsed.scheme == "https":
        return bool(parsed.netloc)
    if parsed.scheme == "http":
        return parsed.hostname in LOOPBACK_HOSTS
    return True


def pkce_challenge(code_verifier: str, method: str = "S256") -> str:
    if method == "plain":
        return code_verifier
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class OAuthProvider:
    """Client registry, grants, and the /token grant types."""

    def __init__(self, config: Config, bridge: TokenBridge, store: InMemoryStore = None):
        self.config = config
        self.bridge = bridge
        self.store = store or InMemoryStore()
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def issuer(self) -> str:
        return self.config.server_url

    def _lock_for(self, grant_id: str) -> asyncio.Lock:
        return self._locks.setdefault(grant_id, asyncio.Lock())

    def _require_grant(self, grant_id: str) -> Grant:
        grant = self.store.get_grant(grant_id)
        if grant is None:
            raise InvalidRequest("Unknown grant", error="invalid_grant")
        return grant

    def purge_stale(self, now: float = None) -> int:
        """Drop expired codes, dead grants, and the locks of those grants."""
        dropped = self.store.purge_expired(PENDING_GRANT_TTL, now)
        for grant_id in dropped:
            self._locks.pop(grant_id, None)
        if dropped:
            logger.info(f"[OAUTH] Purged {len(dropped)} stale grant(s)")
        return len(dropped)

    # ============== Client registry ==============

    def register_client(self, metadata: dict) -> ClientRegistration:
        """Dynamic client registration (RFC 7591), public clients only."""
        redirect_uris = metadata.get("redirect_uris")
        if not isinstance(redirect_uris, list) or not redirect_uris:
            raise InvalidRequest("redirect_uris must be a non-empty list", error="invalid_redirect_uri")
        for uri in redirect_uris:
            if not isinstance(uri, str) or not validate_redirect_uri(uri):
                raise InvalidRequest(f"Invalid redirect URI: {uri}", error="invalid_redirect_uri")

        auth_method = metadata.get("token_endpoint_auth_method", "none")
        if auth_method != "none":
            raise InvalidRequest(
                "Only public clients are supported (token_endpoint_auth_method=none)",
                error="invalid_client_metadata",
            )

        client = ClientRegistration(
            client_id=secrets.token_urlsafe(16),
            client_name=str(metadata.get("client_name") or "MCP Client"),
            redirect_uris=list(redirect_uris),
            grant_types=list(metadata.get("grant_types") or ["authorization_code", "refresh_token"]),
            response_types=list(metadata.get("response_types") or ["code"]),
            client_uri=metadata.get("client_uri"),
        )
        self.store.save_client(client)
        logger.info(f"[OAUTH] Registered client {client.client_id} ({client.client_name})")
        return client

    def lookup_client(self, client_id: str) -> Optional[ClientRegistration]:
        return self.store.get_client(client_id) if client_id else None

    # ============== Authorization requests ==============

    def parse_auth_request(self, params: Mapping[str, str]) -> AuthorizationRequest:
        """Parse and validate /authorize query parameters."""
        response_type = params.get("response_type") or ""
        if response_type != "code":
            raise InvalidRequest("response_type must be 'code'", error="unsupported_response_type")

        client_id = params.get("client_id") or ""
        client = self.lookup_client(client_id)
        if client is None:
            raise InvalidRequest("Unknown or missing client_id")

        redirect_uri = params.get("redirect_uri") or ""
        if not redirect_uri and len(client.redirect_uris) == 1:
            redirect_uri = client.redirect_uris[0]

        code_challenge = params.get("code_challenge") or None
        method = None
        if code_challenge:
            method = params.get("code_challenge_method") or "plain"

        request = AuthorizationRequest(
            client_id=client_id,
            redirect_uri=redirect_uri,
            scope=params.get("scope") or "",
            state=params.get("state") or "",
            response_type=response_type,
            code_challenge=code_challenge,
            code_challenge_method=method,
        )
        self.validate_auth_request(request)
        return request

    def validate_auth_request(self, request: AuthorizationRequest) -> ClientRegistration:
        """Check a (possibly round-tripped) request against the registry."""
        client = self.lookup_client(request.client_id)
        if client is None:
            raise InvalidRequest("Unknown or missing client_id")
        if not request.redirect_uri or request.redirect_uri not in client.redirect_uris:
            raise InvalidRequest("redirect_uri is not registered for this client")
        if request.code_challenge and request.code_challenge_method not in PKCE_METHODS:
            raise InvalidRequest("Unsupported code_challenge_method")
        return client

    def complete_authorization(
        self,
        request: AuthorizationRequest,
        props: dict,
        metadata: dict = None,
        user_id: str = None,
    ) -> tuple[str, Grant]:
        """Create a grant and a one-time code; return the caller redirect URL."""
        self.purge_stale()
        grant = Grant(
            grant_id=secrets.token_urlsafe(16),
            client_id=request.client_id,
            # Provisional until the upstream identity is resolved
            user_id=user_id or f"upstream_{int(time.time() * 1000)}",
            scope=request.scope,
            redirect_uri=request.redirect_uri,
            props=dict(props),
            metadata=dict(metadata or {}),
            code_challenge=request.code_challenge,
            code_challenge_method=request.code_challenge_method,
        )
        self.store.save_grant(grant)

        code = AuthorizationCode(
            code=secrets.token_urlsafe(32),
            grant_id=grant.grant_id,
            expires_at=int(time.time()) + AUTHORIZATION_CODE_TTL,
        )
        self.store.save_code(code)
        logger.info(f"[OAUTH] Authorization completed for client {grant.client_id}, grant {grant.grant_id[:8]}")

        return append_query(request.redirect_uri, {"code": code.code, "state": request.state}), grant

    # ============== Upstream exchange and refresh ==============

    async def exchange_grant(self, grant_id: str) -> Grant:
        """Exchange the grant's pending upstream code. Idempotent."""
        grant = self._require_grant(grant_id)
        async with self._lock_for(grant_id):
            if grant.exchanged:
                return grant
            if grant.exchange_error is not None:
                raise grant.exchange_error

            code = grant.props.get("upstream_auth_code")
            if not code:
                raise InvalidRequest("No upstream authorization code available", error="invalid_grant")

            try:
                credential = await self.bridge.exchange(code, grant.props.get("upstream_redirect_uri", ""))
            except UpstreamExchangeFailed as e:
                grant.exchange_error = e
                raise

            props = merge_credential(grant.props, credential)
            props.pop("upstream_auth_code", None)
            identity = await self.bridge.fetch_identity(credential.access_token)
            props.update(identity)
            if identity.get("user_id"):
                grant.user_id = identity["user_id"]

            grant.props = props
            grant.exchanged = True
            logger.info(f"[TOKEN] Upstream credential attached to grant {grant_id[:8]}")
            return grant

    async def prefetch_exchange(self, grant_id: str) -> None:
        """Background half of authorization completion.

        Failures are recorded on the grant and reported by /token.
        """
        try:
            await self.exchange_grant(grant_id)
        except UpstreamExchangeFailed as e:
            logger.warning(f"[TOKEN] Background upstream exchange failed ({e.upstream_status}) for grant {grant_id[:8]}")
        except InvalidRequest as e:
            logger.warning(f"[TOKEN] Background upstream exchange skipped: {e.description}")

    async def refresh_grant(self, grant_id: str, stale_access_token: str = None) -> dict:
        """Refresh upstream tokens for a grant, at most once per stale token.

        Callers that observed the same stale access token while another
        refresh was in flight get the refreshed props without a second
        upstream call, as long as those props have not expired in turn.
        """
        grant = self._require_grant(grant_id)
        observed = stale_access_token or grant.props.get("upstream_access_token")
        async with self._lock_for(grant_id):
            if not grant.exchanged:
                raise InvalidRequest("Grant has no upstream credential yet", error="invalid_grant")
            current = grant.props.get("upstream_access_token")
            if current != observed and not credential_expired(grant.props):
                logger.info(f"[TOKEN] Reusing concurrent refresh for grant {grant_id[:8]}")
                return grant.props

            refresh_token = grant.props.get("upstream_refresh_token")
            if not refresh_token:
                raise InvalidRequest("No upstream refresh token available", error="invalid_grant")

            credential = await self.bridge.refresh(refresh_token)
            grant.props = merge_credential(grant.props, credential)
            logger.info(f"[TOKEN] Upstream credential refreshed for grant {grant_id[:8]}")
            return grant.props

    # ============== Token endpoint ==============

    def _token_ttl(self, grant: Grant) -> int:
        expires_at = grant.props.get("upstream_expires_at")
        if not expires_at:
            return self.config.default_token_ttl
        return max(int(expires_at) - int(time.time()), 1)

    def _issue_tokens(self, grant: Grant) -> dict:
        expires_in = self._token_ttl(grant)
        # Rotation: only the refresh token issued here stays valid
        grant.refresh_jti = secrets.token_urlsafe(16)
        return {
            "access_token": create_access_token(
                grant.user_id, grant.grant_id, grant.client_id, grant.scope, self.issuer, expires_in
            ),
            "token_type": "bearer",
            "expires_in": expires_in,
            "refresh_token": create_refresh_token(
                grant.user_id, grant.grant_id, grant.client_id, grant.scope, self.issuer,
                jti=grant.refresh_jti,
            ),
            "scope": grant.scope,
        }

    async def exchange_code(
        self,
        code: str,
        client_id: str = None,
        redirect_uri: str = None,
        code_verifier: str = None,
    ) -> dict:
        """authorization_code grant."""
        if not code:
            raise InvalidRequest("Missing code")
        record = self.store.pop_code(code)
        if record is None or record.expired():
            raise InvalidRequest("Invalid or expired authorization code", error="invalid_grant")

        grant = self._require_grant(record.grant_id)
        if client_id and client_id != grant.client_id:
            raise InvalidRequest("Code was issued to another client", error="invalid_grant")
        if redirect_uri and redirect_uri != grant.redirect_uri:
            raise InvalidRequest("redirect_uri does not match", error="invalid_grant")

        if grant.code_challenge:
            if not code_verifier:
                raise InvalidRequest("code_verifier is required", error="invalid_grant")
            expected = pkce_challenge(code_verifier, grant.code_challenge_method or "plain")
            if not hmac.compare_digest(expected, grant.code_challenge):
                raise InvalidRequest("PKCE verification failed", error="invalid_grant")

        grant.redeemed = True
        await self.exchange_grant(grant.grant_id)
        logger.info(f"[TOKEN] Session credential issued for user {grant.user_id}")
        return self._issue_tokens(grant)

    async def refresh_tokens(self, refresh_token: str, client_id: str = None) -> dict:
        """refresh_token grant."""
        payload = verify_refresh_token(refresh_token or "", issuer=self.issuer)
        if payload is None:
            raise InvalidRequest("Invalid or expired refresh token", error="invalid_grant")

        grant = self._require_grant(payload["gid"])
        if client_id and client_id != grant.client_id:
            raise InvalidRequest("Refresh token was issued to another client", error="invalid_grant")
        if not grant.refresh_jti or payload.get("jti") != grant.refresh_jti:
            logger.warning(f"[TOKEN] Rejected superseded refresh token for grant {grant.grant_id[:8]}")
            raise InvalidRequest("Refresh token has already been used", error="invalid_grant")

        # Claim the token before awaiting so a concurrent replay fails
        grant.refresh_jti = None
        try:
            await self.refresh_grant(grant.grant_id)
        except Exception:
            grant.refresh_jti = payload["jti"]
            raise
        return self._issue_tokens(grant)

    def resolve_access_token(self, token: str) -> Optional[Grant]:
        """Grant behind a valid access token, or None."""
        payload = verify_access_token(token, issuer=self.issuer)
        if payload is None:
            return None
        grant = self.store.get_grant(payload["gid"])
        if grant is None or not grant.exchanged:
            return None
        return grant
