"""
auth/errors.py -- Closed error taxonomy for the authentication flow.

Every failure the core can surface carries one ErrorKind. The boundary layer
(api/main.py) maps kinds to HTTP status codes and log levels without
inspecting ad hoc attributes on the exception:

  CLIENT_INPUT          400, never retried, logged at WARNING
  UPSTREAM_AUTH         provider status passthrough (401/403/4xx)
  UPSTREAM_UNAVAILABLE  502, safe for the caller to retry idempotent GETs
  PERSISTENCE           500, a failed session save is never a silent redirect
  BEST_EFFORT           logged and swallowed, never raised to callers

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    CLIENT_INPUT = "client_input"
    UPSTREAM_AUTH = "upstream_auth"
    UPSTREAM_UNAVAILABLE = "upstream_unavailable"
    PERSISTENCE = "persistence"
    BEST_EFFORT = "best_effort"


class AuthError(Exception):
    """Base class for every error raised by the auth core."""

    kind: ErrorKind = ErrorKind.PERSISTENCE
    status_code: int = 500
    code: str = "internal_error"
    message: str = "Internal server error"

    def __init__(self, message: str | None = None, *, status_code: int | None = None, detail: str | None = None):
        if message is not None:
            self.message = message
        if status_code is not None:
            self.status_code = status_code
        # Provider response body or exception text; only shown outside production.
        self.detail = detail
        super().__init__(self.message)


class ClientInputError(AuthError):
    kind = ErrorKind.CLIENT_INPUT
    status_code = 400
    code = "bad_request"
    message = "Bad request"


class MissingCode(ClientInputError):
    code = "missing_code"
    message = "Missing authorization code"


class StateMismatch(ClientInputError):
    code = "invalid_state"
    message = "Invalid state"


class UpstreamAuthError(AuthError):
    """The provider rejected a code or token (expired, reused, revoked, mismatched redirect URI)."""

    kind = ErrorKind.UPSTREAM_AUTH
    status_code = 401
    code = "upstream_auth_error"
    message = "Authentication with identity provider failed"


class UpstreamForbidden(UpstreamAuthError):
    status_code = 403
    code = "forbidden"
    message = "Forbidden"


class UpstreamUnavailable(AuthError):
    kind = ErrorKind.UPSTREAM_UNAVAILABLE
    status_code = 502
    code = "upstream_unavailable"
    message = "Identity provider unavailable"


class PersistenceError(AuthError):
    kind = ErrorKind.PERSISTENCE
    status_code = 500
    code = "persistence_error"
    message = "Failed to persist session state"
