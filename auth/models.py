"""
auth/models.py -- Domain dataclasses for the OIDC session lifecycle.

Pattern: Data class (pure data container, zero logic beyond (de)serialization
helpers). Stores and the flow controller do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class OAuthTransaction:
    """Pending authorization request held between the redirect and the callback.

    state is single-use: the session store hands it out at most once via
    take_transaction(). nonce is checked against the ID token's nonce claim.
    redirect_uri must be echoed unchanged to the token endpoint.
    """

    state: str
    nonce: str
    redirect_uri: str
    purpose: str = "login"  # "login" or "register"
    created_at: str = field(default_factory=_now_iso)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> OAuthTransaction:
        return cls(**json.loads(raw))


@dataclass
class AuthenticatedSession:
    """Server-side session created at the end of a successful callback.

    The browser never sees any of these fields -- it holds only the signed
    session id. expires_in is the provider-declared access token lifetime and
    is advisory only.
    """

    subject: str
    username: str
    access_token: str
    refresh_token: str
    id_token: str
    expires_in: int | None = None
    created_at: str = field(default_factory=_now_iso)

    @property
    def is_authenticated(self) -> bool:
        return bool(self.username and self.access_token and self.refresh_token and self.id_token)

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> AuthenticatedSession:
        return cls(**json.loads(raw))


@dataclass
class AuthorizationRequest:
    """Result of building a provider authorization URL."""

    url: str
    state: str
    nonce: str


@dataclass
class TokenResponse:
    """Token endpoint payload for the authorization_code grant."""

    access_token: str
    refresh_token: str = ""
    id_token: str = ""
    expires_in: int | None = None
    token_type: str = "Bearer"
    raw: dict = field(default_factory=dict, repr=False)

    @classmethod
    def from_payload(cls, payload: dict) -> TokenResponse:
        return cls(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token", ""),
            id_token=payload.get("id_token", ""),
            expires_in=payload.get("expires_in"),
            token_type=payload.get("token_type", "Bearer"),
            raw=payload,
        )


@dataclass
class CompletedLogin:
    """Outcome of a successful callback: the rotated session id and where to send the browser."""

    session_id: str
    session: AuthenticatedSession
    redirect_to: str
