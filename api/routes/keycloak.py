"""
api/routes/keycloak.py -- Public provider settings for the SPA.

GET /api/keycloak/config returns the browser-facing base URL, realm and client
id. Never the client secret or the internal URL.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from api.models import KeycloakConfigResponse
from core.config import Settings, get_settings

router = APIRouter(prefix="/keycloak")


@router.get("/config", response_model=KeycloakConfigResponse)
def keycloak_config(settings: Settings = Depends(get_settings)) -> KeycloakConfigResponse:
    return KeycloakConfigResponse(
        url=settings.provider_public_url,
        realm=settings.keycloak_realm,
        clientId=settings.keycloak_client_id,
    )
