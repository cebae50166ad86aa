"""Config management for the Microsoft 365 MCP bridge.

Settings come from the process environment. A `.env` file in the working
directory is loaded first so local development does not need exported vars.
"""
import os
from pathlib import Path
from typing import Mapping, Optional

from dotenv import load_dotenv


CONFIG_DIR = Path.home() / ".m365-mcp-bridge"

GRAPH_SCOPES = (
    "User.Read Mail.Read Mail.ReadWrite Mail.Send Calendars.Read "
    "Calendars.ReadWrite Contacts.Read People.Read offline_access"
)

DEFAULTS = {
    "SERVER_URL": "http://localhost:8766",
    "MCP_HOST": "0.0.0.0",
    "MCP_PORT": "8766",
    "MICROSOFT_TENANT_ID": "common",
    "UPSTREAM_SCOPES": GRAPH_SCOPES,
    "GRAPH_API_BASE": "https://graph.microsoft.com/v1.0",
    "UPSTREAM_TIMEOUT": "10",
    "DEFAULT_TOKEN_TTL": "3600",
    "SESSION_IDLE_TIMEOUT": "900",
    "WS_IDLE_TIMEOUT": "60",
    "WS_MAX_MESSAGES_PER_MINUTE": "1000",
    "WS_MAX_BYTES_PER_MINUTE": str(10 * 1024 * 1024),
    "WS_MAX_MESSAGE_BYTES": str(1024 * 1024),
    "LOG_LEVEL": "INFO",
}

ENV_KEYS = tuple(DEFAULTS) + (
    "MICROSOFT_CLIENT_ID",
    "MICROSOFT_CLIENT_SECRET",
    "UPSTREAM_AUTHORIZE_URL",
    "UPSTREAM_TOKEN_URL",
    "COOKIE_SECRET",
    "JWT_SECRET",
    "SUPABASE_URL",
    "SUPABASE_ANON_KEY",
)


class Config:
    """Configuration container."""

    def __init__(self, data: dict = None):
        self.data = dict(DEFAULTS)
        self.data.update({k: v for k, v in (data or {}).items() if v is not None})

    def _int(self, key: str) -> int:
        return int(self.data[key])

    def _float(self, key: str) -> float:
        return float(self.data[key])

    @property
    def server_url(self) -> str:
        return self.data["SERVER_URL"].rstrip("/")

    @property
    def host(self) -> str:
        return self.data["MCP_HOST"]

    @property
    def port(self) -> int:
        return self._int("MCP_PORT")

    @property
    def client_id(self) -> Optional[str]:
        return self.data.get("MICROSOFT_CLIENT_ID")

    @property
    def client_secret(self) -> Optional[str]:
        return self.data.get("MICROSOFT_CLIENT_SECRET")

    @property
    def tenant_id(self) -> str:
        return self.data["MICROSOFT_TENANT_ID"]

    @property
    def upstream_authorize_url(self) -> str:
        return self.data.get("UPSTREAM_AUTHORIZE_URL") or (
            f"https://login.microsoftonline.com/{self.tenant_id}/oauth2/v2.0/authorize"
        )

    @property
    def upstream_token_url(self) -> str:
        return self.data.get("UPSTREAM_TOKEN_URL") or (
            f"https://login.microsoftonline.com/{self.tenant_id}/oauth2/v2.0/token"
        )

    @property
    def upstream_scopes(self) -> str:
        return self.data["UPSTREAM_SCOPES"]

    @property
    def graph_api_base(self) -> str:
        return self.data["GRAPH_API_BASE"].rstrip("/")

    @property
    def upstream_timeout(self) -> float:
        return self._float("UPSTREAM_TIMEOUT")

    @property
    def cookie_secret(self) -> Optional[str]:
        return self.data.get("COOKIE_SECRET")

    @property
    def jwt_secret(self) -> Optional[str]:
        return self.data.get("JWT_SECRET")

    @property
    def default_token_ttl(self) -> int:
        return self._int("DEFAULT_TOKEN_TTL")

    @property
    def session_idle_timeout(self) -> float:
        return self._float("SESSION_IDLE_TIMEOUT")

    @property
    def ws_idle_timeout(self) -> float:
        return self._float("WS_IDLE_TIMEOUT")

    @property
    def ws_max_messages_per_minute(self) -> int:
        return self._int("WS_MAX_MESSAGES_PER_MINUTE")

    @property
    def ws_max_bytes_per_minute(self) -> int:
        return self._int("WS_MAX_BYTES_PER_MINUTE")

    @property
    def ws_max_message_bytes(self) -> int:
        return self._int("WS_MAX_MESSAGE_BYTES")

    @property
    def supabase_url(self) -> Optional[str]:
        return self.data.get("SUPABASE_URL")

    @property
    def supabase_key(self) -> Optional[str]:
        return self.data.get("SUPABASE_ANON_KEY")

    @property
    def log_level(self) -> str:
        return self.data["LOG_LEVEL"].upper()

    def is_valid(self) -> bool:
        """Check if the upstream application credentials are present."""
        return bool(self.client_id and self.client_secret)


def load_config(environ: Mapping[str, str] = None) -> Config:
    """Build config from the environment (after loading `.env` if present)."""
    if environ is None:
        env_file = Path(".env")
        if env_file.exists():
            load_dotenv(env_file)
        environ = os.environ

    return Config({key: environ.get(key) for key in ENV_KEYS if environ.get(key)})
