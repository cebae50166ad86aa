"""HMAC-signed approval cookie and state encoding.

The approval cookie remembers which OAuth clients the browser already
consented to:

    mcp-approved-clients=<hmac-hex>.<base64url(JSON array of client ids)>

A cookie that fails verification in any way is treated as "no approvals",
which at worst shows the consent page again. It is never treated as approval.
"""

import base64
import binascii
import hashlib
import hmac
import json
import logging
from typing import Any, Iterable, Optional

from starlette.responses import Response

from errors import ApprovalTampered, InvalidRequest

logger = logging.getLogger(__name__)

COOKIE_NAME = "mcp-approved-clients"
ONE_YEAR_IN_SECONDS = 31536000


class SigningKey:
    """HMAC-SHA256 key that only exposes sign and verify."""

    __slots__ = ("_key",)

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("COOKIE_SECRET is not defined. A secret key is required for signing cookies.")
        self._key = secret.encode("utf-8")

    def __repr__(self) -> str:
        return "SigningKey(<hidden>)"

    def sign(self, payload: str) -> str:
        return hmac.new(self._key, payload.encode("utf-8"), hashlib.sha256).hexdigest()

    def verify(self, payload: str, signature: str) -> bool:
        try:
            expected = bytes.fromhex(self.sign(payload))
            given = bytes.fromhex(signature)
        except (ValueError, TypeError):
            return False
        return hmac.compare_digest(expected, given)


def sign(payload: str, secret: str) -> str:
    """Sign payload, returning the hex HMAC."""
    return SigningKey(secret).sign(payload)


def verify(payload: str, signature: str, secret: str) -> bool:
    """Check a hex HMAC against payload."""
    return SigningKey(secret).verify(payload, signature)


def _b64encode(raw: str) -> str:
    return base64.urlsafe_b64encode(raw.encode("utf-8")).rstrip(b"=").decode("ascii")


def _b64decode(encoded: str) -> str:
    padded = encoded + "=" * (-len(encoded) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")


def canonical_json(value: Any) -> str:
    return json.dumps(value, separators=(",", ":"))


# ============== Approval cookie ==============

def encode_approval_cookie(client_ids: Iterable[str], secret: str) -> str:
    """Build the signed cookie value for a list of approved client ids."""
    payload = canonical_json(list(client_ids))
    return f"{sign(payload, secret)}.{_b64encode(payload)}"


def decode_approval_cookie(value: str, secret: str) -> list[str]:
    """Verify and decode a cookie value.

    Raises:
        ApprovalTampered: on any shape, encoding, signature or payload problem.
    """
    parts = value.split(".")
    if len(parts) != 2:
        raise ApprovalTampered("expected signature.payload")

    signature, encoded_payload = parts
    try:
        payload = _b64decode(encoded_payload)
    except (binascii.Error, ValueError, UnicodeDecodeError):
        raise ApprovalTampered("payload is not valid base64")

    if not verify(payload, signature, secret):
        raise ApprovalTampered("signature mismatch")

    try:
        approved = json.loads(payload)
    except json.JSONDecodeError:
        raise ApprovalTampered("payload is not JSON")

    if not isinstance(approved, list) or not all(isinstance(item, str) for item in approved):
        raise ApprovalTampered("payload is not a list of client ids")
    return approved


def get_approved_clients(cookies: dict, secret: str) -> list[str]:
    """Approved client ids from request cookies; empty when absent or invalid."""
    value = cookies.get(COOKIE_NAME)
    if not value:
        return []
    try:
        return decode_approval_cookie(value, secret)
    except ApprovalTampered as e:
        logger.warning(f"[COOKIE] Ignoring approval cookie: {e.description}")
        return []


def client_already_approved(cookies: dict, client_id: str, secret: str) -> bool:
    if not client_id:
        return False
    return client_id in get_approved_clients(cookies, secret)


def extend_approvals(existing: Iterable[str], client_id: str) -> list[str]:
    """Add client_id to the approval list, keeping order and dropping duplicates."""
    return list(dict.fromkeys([*existing, client_id]))


def set_approval_cookie(response: Response, client_ids: Iterable[str], secret: str) -> None:
    response.set_cookie(
        COOKIE_NAME,
        encode_approval_cookie(client_ids, secret),
        max_age=ONE_YEAR_IN_SECONDS,
        path="/",
        secure=True,
        httponly=True,
        samesite="lax",
    )


# ============== State encoding ==============

def encode_form_state(data: dict) -> str:
    """Opaque state embedded in the consent form."""
    return base64.b64encode(json.dumps(data).encode("utf-8")).decode("ascii")


def decode_form_state(encoded: str) -> dict:
    try:
        data = json.loads(base64.b64decode(encoded.encode("ascii"), validate=True))
    except (binascii.Error, ValueError, UnicodeError):
        raise InvalidRequest("Could not decode state")
    if not isinstance(data, dict):
        raise InvalidRequest("Could not decode state")
    return data


def encode_upstream_state(data: dict, secret: str) -> str:
    """Signed state carried through the upstream identity provider."""
    payload = _b64encode(canonical_json(data))
    return f"{payload}.{sign(payload, secret)}"


def decode_upstream_state(encoded: Optional[str], secret: str) -> dict:
    if not encoded or encoded.count(".") != 1:
        raise InvalidRequest("Invalid state")
    payload, signature = encoded.split(".")
    if not verify(payload, signature, secret):
        raise InvalidRequest("Invalid state")
    try:
        data = json.loads(_b64decode(payload))
    except (binascii.Error, ValueError, UnicodeError):
        raise InvalidRequest("Invalid state")
    if not isinstance(data, dict):
        raise InvalidRequest("Invalid state")
    return data
