"""JWT session credentials issued by this service.

Access and refresh tokens are HS256 JWTs. Each carries the grant id (`gid`)
that holds the upstream props, so a token is only useful while its grant
exists. The three dot-separated segments are also what the protocol router
uses to tell an issued credential from an anonymous one.
"""

import os
import secrets
import logging
import time
from typing import Optional

import jwt

from config import CONFIG_DIR

logger = logging.getLogger(__name__)

JWT_ALGORITHM = "HS256"
REFRESH_TOKEN_EXPIRE_SECONDS = 30 * 24 * 60 * 60  # 30 days

_jwt_secret: Optional[str] = None
SECRET_FILE = CONFIG_DIR / "jwt_secret"


def init_jwt_secret(secret: Optional[str]) -> None:
    """Use an explicit secret (from config) instead of env/file lookup."""
    global _jwt_secret
    _jwt_secret = secret or None


def _get_or_create_secret() -> str:
    """Get JWT secret from env or file, or create and persist one."""
    global _jwt_secret

    if _jwt_secret:
        return _jwt_secret

    env_secret = os.getenv("JWT_SECRET")
    if env_secret:
        _jwt_secret = env_secret
        logger.info("[JWT] Using JWT_SECRET from environment")
        return _jwt_secret

    if SECRET_FILE.exists():
        try:
            _jwt_secret = SECRET_FILE.read_text().strip()
            if _jwt_secret:
                logger.info("[JWT] Loaded JWT secret from file")
                return _jwt_secret
        except IOError as e:
            logger.warning(f"[JWT] Could not read JWT secret file: {e}")

    _jwt_secret = secrets.token_urlsafe(64)

    try:
        SECRET_FILE.parent.mkdir(parents=True, exist_ok=True)
        SECRET_FILE.write_text(_jwt_secret)
        os.chmod(SECRET_FILE, 0o600)
        logger.info("[JWT] Generated and saved new JWT secret")
    except IOError as e:
        logger.warning(f"[JWT] Could not save JWT secret to file: {e}")

    return _jwt_secret


def _create_token(
    token_type: str,
    user_id: str,
    grant_id: str,
    client_id: str,
    scope: str,
    issuer: str,
    expires_in: int,
    jti: str = None,
) -> str:
    now = int(time.time())
    payload = {
        "sub": user_id,
        "gid": grant_id,
        "client_id": client_id,
        "scope": scope,
        "iss": issuer,
        "iat": now,
        "exp": now + expires_in,
        "jti": jti or secrets.token_urlsafe(8),
        "type": token_type,
    }
    return jwt.encode(payload, _get_or_create_secret(), algorithm=JWT_ALGORITHM)


def create_access_token(
    user_id: str,
    grant_id: str,
    client_id: str,
    scope: str,
    issuer: str,
    expires_in: int,
) -> str:
    """Create an access token.

    Args:
        user_id: Upstream user identifier
        grant_id: Grant holding the session props
        client_id: The OAuth client the grant was issued to
        scope: Granted scope
        issuer: The token issuer (server URL)
        expires_in: Lifetime in seconds; mirrors the upstream access token

    Returns:
        A signed JWT token string
    """
    return _create_token("access", user_id, grant_id, client_id, scope, issuer, expires_in)


def create_refresh_token(
    user_id: str,
    grant_id: str,
    client_id: str,
    scope: str,
    issuer: str,
    expires_in: int = REFRESH_TOKEN_EXPIRE_SECONDS,
    jti: str = None,
) -> str:
    """Create a refresh token. Pass `jti` to pin the id the grant will accept."""
    return _create_token("refresh", user_id, grant_id, client_id, scope, issuer, expires_in, jti)


def _verify(token: str, token_type: str, issuer: str = None) -> Optional[dict]:
    options = {"require": ["exp", "sub", "gid"]}
    kwargs = {"issuer": issuer} if issuer else {}
    try:
        payload = jwt.decode(
            token,
            _get_or_create_secret(),
            algorithms=[JWT_ALGORITHM],
            options=options,
            **kwargs,
        )
    except jwt.ExpiredSignatureError:
        logger.debug(f"[JWT] {token_type} token expired")
        return None
    except jwt.InvalidTokenError as e:
        logger.debug(f"[JWT] Invalid {token_type} token: {e}")
        return None

    if payload.get("type") != token_type:
        logger.debug(f"[JWT] Token is not a {token_type} token")
        return None
    return payload


def verify_access_token(token: str, issuer: str = None) -> Optional[dict]:
    """Decode an access token; None if invalid, expired or of the wrong type."""
    return _verify(token, "access", issuer)


def verify_refresh_token(token: str, issuer: str = None) -> Optional[dict]:
    return _verify(token, "refresh", issuer)
