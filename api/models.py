"""
API response models for the SynthAI authorization service.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the session and transaction representation. Tokens never appear in any
model here.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class ErrorResponse(BaseModel):
    """Error envelope returned on 4xx/5xx responses.

    detail is only populated outside production.
    """

    model_config = ConfigDict(frozen=True)

    error: str
    code: str
    request_id: Optional[str] = None
    detail: Optional[str] = None


class NotFoundResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    error: str = "Endpoint not found"
    path: str
    method: str
    timestamp: str


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class MessageResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    message: str


class KeycloakConfigResponse(BaseModel):
    """Public provider settings the SPA needs; no secrets."""

    model_config = ConfigDict(frozen=True)

    url: str
    realm: str
    clientId: str


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class ServiceIndexResponse(BaseModel):
    """Response for GET /api."""

    model_config = ConfigDict(frozen=True)

    service: str
    version: str
    environment: str
    endpoints: dict[str, str]


class HealthResponse(BaseModel):
    """Response for GET /health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    timestamp: str
    service: str
    version: str


class DetailedHealthResponse(BaseModel):
    """Response for GET /health/detailed.

    checks maps each backing store to "ok" or "unavailable"; any unavailable
    store turns message into "DEGRADED" and the status code into 503.
    """

    model_config = ConfigDict(frozen=True)

    message: str
    uptime: float
    timestamp: str
    service: str
    version: str
    environment: str
    checks: dict[str, str]
