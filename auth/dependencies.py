"""
auth/dependencies.py -- FastAPI Depends() helpers for session access.

The browser presents only the signed session-id cookie. These helpers
resolve it against the session store in app.state:

  get_session_id()   -- verified session id from the cookie, or None
  load_session()     -- soft variant: AuthenticatedSession or None
  require_session()  -- guard: 401 {"error": "Access denied"} unless the
                        session carries a non-empty access token
  get_flow()         -- the AuthFlowController built in lifespan
  get_provider()     -- the IdentityProviderClient built in lifespan

Layer rule: no imports from api/. auth/dependencies.py may import from
fastapi because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, HTTPException, Request

from auth.flow import AuthFlowController
from auth.models import AuthenticatedSession
from auth.oidc import IdentityProviderClient


def get_session_id(request: Request) -> str | None:
    return request.app.state.session_cookie.read(request.cookies)


def load_session(request: Request) -> AuthenticatedSession | None:
    """Return the stored session for this request, None when absent or expired.

    Store faults are not swallowed: a PersistenceError propagates to the
    AuthError handler as a 500.
    """
    session_id = get_session_id(request)
    if session_id is None:
        return None
    return request.app.state.session_store.get(session_id)


def require_session(session: AuthenticatedSession | None = Depends(load_session)) -> AuthenticatedSession:
    """Require an authenticated session. Raises HTTP 401 before the handler runs.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(session: AuthenticatedSession = Depends(require_session)): ...
    """
    if session is None or not session.access_token:
        raise HTTPException(status_code=401, detail="Access denied")
    return session


def get_flow(request: Request) -> AuthFlowController:
    return request.app.state.flow


def get_provider(request: Request) -> IdentityProviderClient:
    return request.app.state.provider
