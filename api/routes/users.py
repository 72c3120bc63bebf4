"""
api/routes/users.py -- Profile and user administration endpoints.

Routes:
  GET    /api/users/profile  -- profile of the current session's user + last_login
  GET    /api/users          -- list realm users via the provider admin API
  DELETE /api/users/{id}     -- delete a realm user via the provider admin API; 204

All routes require a session. The admin routes call the provider with the
session's own access token, so whether the caller may list or delete users is
decided by the provider's realm roles: a provider 403 comes back as 403, a
provider 404 on delete as 404.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from auth.dependencies import get_flow, get_provider, require_session
from auth.flow import AuthFlowController
from auth.models import AuthenticatedSession
from auth.oidc import IdentityProviderClient

logger = logging.getLogger("synthai.api.users")

router = APIRouter(prefix="/users")

_PROFILE_FIELDS = ("email", "email_verified", "name", "given_name", "family_name")


@router.get("/profile")
def profile(
    session: AuthenticatedSession = Depends(require_session),
    flow: AuthFlowController = Depends(get_flow),
) -> dict:
    """Return a token-free profile built from fresh userinfo."""
    identity = flow.identity(session)
    result = {
        "id": identity.get("sub", session.subject),
        "username": identity.get("preferred_username", session.username),
    }
    for field in _PROFILE_FIELDS:
        if field in identity:
            result[field] = identity[field]
    result["last_login"] = identity["last_login"]
    return result


@router.get("")
def list_users(
    search: str | None = Query(default=None, max_length=255),
    first: int = Query(default=0, ge=0),
    max_results: int = Query(default=100, ge=1, le=1000, alias="max"),
    session: AuthenticatedSession = Depends(require_session),
    provider: IdentityProviderClient = Depends(get_provider),
) -> list[dict]:
    return provider.list_users(session.access_token, search=search, first=first, max_results=max_results)


@router.delete("/{user_id}", status_code=204)
def delete_user(
    user_id: str,
    session: AuthenticatedSession = Depends(require_session),
    provider: IdentityProviderClient = Depends(get_provider),
) -> Response:
    if user_id in (".", ".."):
        raise HTTPException(status_code=400, detail="Invalid user id")
    provider.delete_user(session.access_token, user_id)
    logger.info("User %s deleted by %s", user_id, session.username)
    return Response(status_code=204)
