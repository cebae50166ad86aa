"""Error taxonomy for the authorization bridge.

Every error is handled at the boundary where it occurs and translated into a
structured, caller-facing response. Upstream bodies are only ever surfaced
under explicitly upstream-labeled fields.
"""

from fastapi import Request
from fastapi.responses import JSONResponse


# JSON-RPC error code returned when a protected method runs without identity
AUTHENTICATION_REQUIRED = -32001


class BridgeError(Exception):
    """Base class for errors that map onto a structured HTTP response."""

    status_code = 500
    error = "server_error"

    def __init__(self, description: str = "", error: str = None, status_code: int = None):
        super().__init__(description or self.error)
        self.description = description
        if error:
            self.error = error
        if status_code:
            self.status_code = status_code

    def to_dict(self) -> dict:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


class InvalidRequest(BridgeError):
    """Malformed or missing OAuth parameters or state."""

    status_code = 400
    error = "invalid_request"


class UpstreamExchangeFailed(BridgeError):
    """The upstream token endpoint returned a non-success response."""

    status_code = 400
    error = "invalid_grant"

    def __init__(self, upstream_status: int, upstream_body: str, operation: str = "exchange"):
        super().__init__(f"Upstream token {operation} failed")
        self.upstream_status = upstream_status
        self.upstream_body = upstream_body
        self.operation = operation

    def to_dict(self) -> dict:
        body = super().to_dict()
        body["upstream_status"] = self.upstream_status
        body["upstream_error"] = self.upstream_body
        return body


class ApprovalTampered(BridgeError):
    """Approval cookie failed verification. Never surfaced to a caller."""

    error = "approval_tampered"


class AuthenticationRequired(BridgeError):
    """A protected method was called without identity/token context."""

    status_code = 401
    error = "authentication_required"

    def to_rpc_error(self) -> dict:
        return {
            "code": AUTHENTICATION_REQUIRED,
            "message": self.description or "Authentication required",
            "data": {"error": self.error},
        }


class TransportUnavailable(BridgeError):
    """A transport was requested that cannot be delivered on this connection."""

    status_code = 503
    error = "transport_unavailable"


def error_response(exc: BridgeError, headers: dict = None) -> JSONResponse:
    """Translate a BridgeError into its JSON response."""
    return JSONResponse(exc.to_dict(), status_code=exc.status_code, headers=headers)


async def bridge_error_handler(request: Request, exc: BridgeError) -> JSONResponse:
    """FastAPI exception handler for the whole taxonomy."""
    return error_response(exc)
