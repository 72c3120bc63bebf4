"""
api/routes/auth.py -- OIDC login, registration, callback, identity and logout.

Routes:
  GET  /api/auth/login      -- 302 to the provider authorization endpoint
  GET  /api/auth/register   -- 302 to the provider registration endpoint
  GET  /api/auth/callback   -- validates state, creates the session, 302 to FRONTEND_URL
  GET  /api/auth/me         -- fresh userinfo + last_login (requires session)
  POST /api/auth/logout     -- revokes (best effort) and destroys the session

Handlers are plain `def`: the provider client and the stores are blocking, so
FastAPI runs them in its threadpool.

Security:
  login/register are limited to AUTH_RATE_LIMIT per IP.
  The callback rotates the session id; the pre-login cookie value is never
  promoted to an authenticated session.
  Cache-Control: no-store on every redirect that carries a Set-Cookie.
  AuthError raised by the flow is rendered by the handler in api/main.py.

No `from __future__ import annotations` here: slowapi wraps login/register and
FastAPI must resolve their annotations at runtime.
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import AUTH_RATE_LIMIT, limiter
from api.models import MessageResponse
from auth.dependencies import get_flow, get_session_id, require_session
from auth.flow import AuthFlowController
from auth.models import AuthenticatedSession
from auth.sessions import SessionCookie, new_session_id

logger = logging.getLogger("synthai.api.auth")

# Auth policy:
# - GET  /api/auth/login:     public
# - GET  /api/auth/register:  public
# - GET  /api/auth/callback:  requires a pending transaction for the cookie's session id
# - GET  /api/auth/me:        requires session (require_session)
# - POST /api/auth/logout:    public -- logging out without a session is a no-op
router = APIRouter(prefix="/auth")


def _begin(request: Request, flow: AuthFlowController, purpose: str) -> RedirectResponse:
    cookie: SessionCookie = request.app.state.session_cookie
    session_id = cookie.read(request.cookies) or new_session_id()
    url = flow.begin(session_id, purpose, str(request.base_url))
    logger.info("Redirecting to identity provider (purpose=%s)", purpose)
    resp = RedirectResponse(url, status_code=302)
    cookie.write(resp, session_id)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/login")
@limiter.limit(AUTH_RATE_LIMIT)
def login(request: Request, flow: AuthFlowController = Depends(get_flow)) -> RedirectResponse:
    """Start the Authorization Code flow for an existing account."""
    return _begin(request, flow, "login")


@router.get("/register")
@limiter.limit(AUTH_RATE_LIMIT)
def register(request: Request, flow: AuthFlowController = Depends(get_flow)) -> RedirectResponse:
    """Start the Authorization Code flow on the provider's registration page."""
    return _begin(request, flow, "register")


@router.get("/callback")
def callback(
    request: Request,
    code: str | None = None,
    state: str | None = None,
    flow: AuthFlowController = Depends(get_flow),
) -> RedirectResponse:
    """Complete the flow and redirect the browser to the frontend.

    The redirect is only built after the session write has been acknowledged;
    any failure before that point is raised and rendered as JSON.
    """
    completed = flow.complete(get_session_id(request), code, state, str(request.base_url))
    resp = RedirectResponse(completed.redirect_to, status_code=302)
    request.app.state.session_cookie.write(resp, completed.session_id)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/me")
def me(
    session: AuthenticatedSession = Depends(require_session),
    flow: AuthFlowController = Depends(get_flow),
) -> dict:
    """Return the provider's current userinfo for this session plus last_login."""
    return flow.identity(session)


@router.post("/logout", response_model=MessageResponse)
def logout(request: Request, flow: AuthFlowController = Depends(get_flow)) -> JSONResponse:
    """End the session. Always 200 unless the session store itself fails."""
    flow.logout(get_session_id(request))
    resp = JSONResponse(content=MessageResponse(message="Logged out").model_dump())
    request.app.state.session_cookie.clear(resp)
    return resp
