"""In-memory stores for OAuth state.

Client registrations, grants and one-time authorization codes live here.
Session credentials themselves are JWTs and are not stored; they point at a
grant by id, and the grant holds the upstream props.
"""

import time
from dataclasses import dataclass, field
from typing import Optional

from errors import UpstreamExchangeFailed


@dataclass
class ClientRegistration:
    client_id: str
    client_name: str = "MCP Client"
    redirect_uris: list[str] = field(default_factory=list)
    token_endpoint_auth_method: str = "none"
    grant_types: list[str] = field(default_factory=lambda: ["authorization_code", "refresh_token"])
    response_types: list[str] = field(default_factory=lambda: ["code"])
    client_uri: Optional[str] = None
    client_id_issued_at: int = field(default_factory=lambda: int(time.time()))

    def to_dict(self) -> dict:
        data = {
            "client_id": self.client_id,
            "client_name": self.client_name,
            "redirect_uris": self.redirect_uris,
            "token_endpoint_auth_method": self.token_endpoint_auth_method,
            "grant_types": self.grant_types,
            "response_types": self.response_types,
            "client_id_issued_at": self.client_id_issued_at,
        }
        if self.client_uri:
            data["client_uri"] = self.client_uri
        return data


@dataclass(frozen=True)
class AuthorizationRequest:
    """Caller-supplied authorization parameters. Immutable once parsed."""

    client_id: str
    redirect_uri: str
    scope: str
    state: str
    response_type: str = "code"
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "scope": self.scope,
            "state": self.state,
            "response_type": self.response_type,
            "code_challenge": self.code_challenge,
            "code_challenge_method": self.code_challenge_method,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AuthorizationRequest":
        return cls(
            client_id=data["client_id"],
            redirect_uri=data["redirect_uri"],
            scope=data.get("scope") or "",
            state=data.get("state") or "",
            response_type=data.get("response_type") or "code",
            code_challenge=data.get("code_challenge"),
            code_challenge_method=data.get("code_challenge_method"),
        )


@dataclass
class Grant:
    grant_id: str
    client_id: str
    user_id: str
    scope: str
    redirect_uri: str
    props: dict = field(default_factory=dict)
    metadata: dict = field(default_factory=dict)
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None
    exchanged: bool = False
    exchange_error: Optional[UpstreamExchangeFailed] = None
    # Set once the authorization code is redeemed at /token
    redeemed: bool = False
    # jti of the only refresh token that may still be used
    refresh_jti: Optional[str] = None
    created_at: int = field(default_factory=lambda: int(time.time()))


@dataclass
class AuthorizationCode:
    code: str
    grant_id: str
    expires_at: int

    def expired(self, now: float = None) -> bool:
        return (time.time() if now is None else now) > self.expires_at


class InMemoryStore:
    """Process-local store. One instance per provider."""

    def __init__(self):
        self.clients: dict[str, ClientRegistration] = {}
        self.grants: dict[str, Grant] = {}
        self.codes: dict[str, AuthorizationCode] = {}

    def save_client(self, client: ClientRegistration) -> None:
        self.clients[client.client_id] = client

    def get_client(self, client_id: str) -> Optional[ClientRegistration]:
        return self.clients.get(client_id)

    def save_grant(self, grant: Grant) -> None:
        self.grants[grant.grant_id] = grant

    def get_grant(self, grant_id: str) -> Optional[Grant]:
        return self.grants.get(grant_id)

    def save_code(self, code: AuthorizationCode) -> None:
        self.codes[code.code] = code

    def pop_code(self, code: str) -> Optional[AuthorizationCode]:
        """Remove and return a code; codes are single use."""
        return self.codes.pop(code, None)

    def purge_expired(self, max_pending_age: int, now: float = None) -> list[str]:
        """Drop expired codes and grants nobody can use any more.

        A grant is dropped once it is older than `max_pending_age` and either
        its code was never redeemed or it never got an upstream credential. Returns
        the ids of the dropped grants.
        """
        now = time.time() if now is None else now
        for code in [code for code, record in self.codes.items() if record.expired(now)]:
            del self.codes[code]

        stale = [
            grant_id for grant_id, grant in self.grants.items()
            if (not grant.redeemed or not grant.exchanged)
            and now - grant.created_at > max_pending_age
        ]
        for grant_id in stale:
            del self.grants[grant_id]
        return stale
