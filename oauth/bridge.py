"""Token bridge between this service and the upstream identity provider.

Exchanges one-time upstream authorization codes for upstream tokens and
refreshes them later. Results are applied to session props as a merge patch:
only token fields change, everything else in the props is left alone.
"""

import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

from config import Config
from errors import UpstreamExchangeFailed

logger = logging.getLogger(__name__)

# Refresh a little before the upstream token actually expires
REFRESH_SKEW_SECONDS = 60


@dataclass
class UpstreamCredential:
    access_token: str
    token_type: str
    scope: str
    expires_in: int
    refresh_token: Optional[str] = None

    @classmethod
    def from_response(cls, data: dict, default_ttl: int = 3600) -> "UpstreamCredential":
        return cls(
            access_token=data["access_token"],
            token_type=data.get("token_type", "Bearer"),
            scope=data.get("scope", ""),
            expires_in=int(data.get("expires_in") or default_ttl),
            refresh_token=data.get("refresh_token") or None,
        )

    def as_patch(self, now: float = None) -> dict:
        """Token fields to overlay onto session props."""
        now = time.time() if now is None else now
        patch = {
            "upstream_access_token": self.access_token,
            "upstream_token_type": self.token_type,
            "upstream_scope": self.scope,
            "upstream_expires_at": int(now) + self.expires_in,
        }
        # Refresh tokens are not always rotated; keep the prior one if omitted
        if self.refresh_token:
            patch["upstream_refresh_token"] = self.refresh_token
        return patch


def merge_credential(props: dict, credential: UpstreamCredential, now: float = None) -> dict:
    """Overlay credential token fields onto props without touching other keys."""
    merged = dict(props)
    merged.update(credential.as_patch(now))
    return merged


def credential_expired(props: dict, now: float = None) -> bool:
    """True once the upstream access token is within the refresh skew of expiry."""
    expires_at = props.get("upstream_expires_at")
    if not expires_at:
        return False
    now = time.time() if now is None else now
    return expires_at - REFRESH_SKEW_SECONDS <= now


class TokenBridge:
    """Calls the upstream token endpoint with the application credentials."""

    def __init__(self, config: Config, client: httpx.AsyncClient = None):
        self.config = config
        self._client = client or httpx.AsyncClient(timeout=config.upstream_timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post_token(self, form: dict, operation: str) -> UpstreamCredential:
        form = {
            "client_id": self.config.client_id or "",
            "client_secret": self.config.client_secret or "",
            "scope": self.config.upstream_scopes,
            **form,
        }
        try:
            response = await self._client.post(
                self.config.upstream_token_url,
                data=form,
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as e:
            logger.warning(f"[BRIDGE] Upstream token {operation} transport error: {e}")
            raise UpstreamExchangeFailed(502, str(e), operation=operation) from e

        if response.status_code >= 400:
            logger.warning(f"[BRIDGE] Upstream token {operation} failed: {response.status_code}")
            raise UpstreamExchangeFailed(response.status_code, response.text, operation=operation)

        try:
            credential = UpstreamCredential.from_response(response.json(), self.config.default_token_ttl)
        except (ValueError, KeyError) as e:
            raise UpstreamExchangeFailed(response.status_code, response.text, operation=operation) from e

        logger.info(f"[BRIDGE] Upstream token {operation} succeeded, expires_in={credential.expires_in}")
        return credential

    async def exchange(self, code: str, redirect_uri: str) -> UpstreamCredential:
        """Exchange a one-time upstream authorization code. No retry."""
        return await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
            },
            operation="exchange",
        )

    async def refresh(self, refresh_token: str) -> UpstreamCredential:
        """Refresh upstream tokens. The caller keeps the prior refresh token if none comes back."""
        return await self._post_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
            operation="refresh",
        )

    async def fetch_identity(self, access_token: str) -> dict:
        """Resolve upstream user identifiers for a fresh access token.

        Returns an empty dict when the profile cannot be read; the grant then
        keeps its provisional user id.
        """
        try:
            response = await self._client.get(
                f"{self.config.graph_api_base}/me",
                headers={"Authorization": f"Bearer {access_token}"},
            )
            response.raise_for_status()
            profile = response.json()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"[BRIDGE] Could not resolve upstream identity: {e}")
            return {}

        return {
            key: value
            for key, value in {
                "user_id": profile.get("id"),
                "display_name": profile.get("displayName"),
                "mail": profile.get("mail"),
                "user_principal_name": profile.get("userPrincipalName"),
            }.items()
            if value
        }
