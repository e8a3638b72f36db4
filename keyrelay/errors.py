"""
Error taxonomy shared by the vault, the identity service and the agent.

Each error carries a stable ``code`` that ends up in JSON error bodies, so a
caller can tell "no stored credential" from "vault is down" without parsing
messages.
"""

from __future__ import annotations


class KeyRelayError(Exception):
    """Base class for all KeyRelay errors."""

    code = "internal_error"
    status_code = 500

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class NotFound(KeyRelayError):
    """Expected absence (first-time login, already-deleted record)."""

    code = "not_found"
    status_code = 404


class CredentialNotFound(NotFound):
    pass


class Unauthorized(KeyRelayError):
    """Terminal for the current request. Never retried silently."""

    code = "unauthorized"
    status_code = 401


class TokenRejected(Unauthorized):
    """Capability token missing, unknown or expired."""

    code = "token_rejected"
    status_code = 401


class Forbidden(Unauthorized):
    """Identity is not authorized for the application or scope."""

    code = "forbidden"
    status_code = 403


class UpstreamUnavailable(KeyRelayError):
    """A downstream service is unreachable or erroring."""

    code = "upstream_unavailable"
    status_code = 503


class ValidationError(KeyRelayError):
    """Malformed request. Fixed by the caller, never retried."""

    code = "validation_error"
    status_code = 400


class StorageError(KeyRelayError):
    """Backing store failure. Surfaced to callers as a generic internal error."""

    code = "internal_error"
    status_code = 500


def error_body(exc: KeyRelayError) -> dict[str, str]:
    """JSON body for an error response."""
    return {"error": exc.message, "code": exc.code}
