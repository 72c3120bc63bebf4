"""
auth/oidc.py -- Identity provider client for the OIDC Authorization Code flow.

IdentityProviderClient isolates every network contact with the provider
(Keycloak) behind verb-level operations. It holds no per-user state: each
method is a request/response transform over endpoints computed from
configuration.

Public vs internal base URL:
  The authorization endpoint is built from the PUBLIC base URL because the
  browser follows that redirect. Token, userinfo, logout, certs and admin
  calls go to the INTERNAL base URL because the backend may not be able to
  resolve the public hostname. The ID token issuer is the public realm URL.

Error mapping:
  requests exceptions (DNS, connect, timeout) -> UpstreamUnavailable
  provider 5xx                                -> UpstreamUnavailable
  provider 403                                -> UpstreamForbidden
  other provider 4xx                          -> UpstreamAuthError (status passthrough)

Every call carries an explicit timeout (HTTP_TIMEOUT_SECONDS) so an
unreachable provider surfaces as UpstreamUnavailable instead of hanging.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from urllib.parse import quote

import requests
from authlib.common.security import generate_token
from authlib.oauth2.rfc6749.parameters import prepare_grant_uri
from jose import JWTError, jwt

from auth.errors import UpstreamAuthError, UpstreamForbidden, UpstreamUnavailable
from auth.models import AuthorizationRequest, TokenResponse
from core.config import Settings

logger = logging.getLogger("synthai.auth.oidc")

SCOPE = "openid profile email"
PURPOSES = ("login", "register")

# Provider bodies can be large HTML error pages; keep log lines bounded.
_MAX_LOGGED_BODY = 500


@dataclass(frozen=True)
class ProviderEndpoints:
    """Realm endpoints derived from the public/internal base URLs."""

    issuer: str
    authorization: str
    registration: str
    token: str
    userinfo: str
    logout: str
    certs: str
    admin_users: str

    @classmethod
    def from_settings(cls, settings: Settings) -> ProviderEndpoints:
        realm = settings.keycloak_realm
        public_realm = f"{settings.provider_public_url}/realms/{realm}"
        internal_oidc = f"{settings.provider_internal_url}/realms/{realm}/protocol/openid-connect"
        return cls(
            issuer=public_realm,
            authorization=f"{public_realm}/protocol/openid-connect/auth",
            registration=f"{public_realm}/protocol/openid-connect/registrations",
            token=f"{internal_oidc}/token",
            userinfo=f"{internal_oidc}/userinfo",
            logout=f"{internal_oidc}/logout",
            certs=f"{internal_oidc}/certs",
            admin_users=f"{settings.provider_internal_url}/admin/realms/{realm}/users",
        )


class IdentityProviderClient:
    """Stateless client for the provider's OIDC and admin endpoints.

    Usage:
        client = IdentityProviderClient(get_settings())
        auth_request = client.build_authorization_url("https://app.example/api/auth/callback", "login")
        tokens = client.exchange_code(code, auth_request_redirect_uri)
        userinfo = client.fetch_user_info(tokens.access_token)
    """

    def __init__(self, settings: Settings, http: requests.Session | None = None) -> None:
        self.client_id = settings.keycloak_client_id
        self.client_secret = settings.keycloak_client_secret
        self.timeout = settings.http_timeout_seconds
        self.algorithms = settings.id_token_algorithm_list
        self.endpoints = ProviderEndpoints.from_settings(settings)
        self.http = http if http is not None else requests.Session()
        # Provider endpoints are fixed; cap redirect chains.
        self.http.max_redirects = 3

    # ------------------------------------------------------------------
    # Authorization URL (no I/O)
    # ------------------------------------------------------------------

    def build_authorization_url(self, redirect_uri: str, purpose: str = "login") -> AuthorizationRequest:
        """Return the provider URL to redirect the browser to, plus fresh state and nonce.

        purpose="register" targets the realm's registration endpoint; the
        security contract (state, nonce, redirect_uri) is identical.
        """
        if purpose not in PURPOSES:
            raise ValueError(f"Unknown authorization purpose: {purpose!r}")

        state = generate_token(48)
        nonce = generate_token(48)
        endpoint = self.endpoints.registration if purpose == "register" else self.endpoints.authorization
        url = prepare_grant_uri(
            endpoint,
            client_id=self.client_id,
            response_type="code",
            redirect_uri=redirect_uri,
            scope=SCOPE,
            state=state,
            nonce=nonce,
        )
        logger.info(
            "Generated authorization URL (purpose=%s, client_id=%s, redirect_uri=%s)",
            purpose,
            self.client_id,
            redirect_uri,
        )
        return AuthorizationRequest(url=url, state=state, nonce=nonce)

    # ------------------------------------------------------------------
    # Token endpoint
    # ------------------------------------------------------------------

    def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        """Exchange an authorization code for tokens.

        redirect_uri must be byte-identical to the one used in the
        authorization request or the provider rejects the exchange.
        """
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
        }
        if self.client_secret:
            data["client_secret"] = self.client_secret

        resp = self._request("POST", self.endpoints.token, data=data)
        self._check(resp, "token exchange")
        payload = self._json(resp, "token exchange")
        if "access_token" not in payload:
            raise UpstreamAuthError("Token response did not include an access token")
        return TokenResponse.from_payload(payload)

    # ------------------------------------------------------------------
    # Userinfo
    # ------------------------------------------------------------------

    def fetch_user_info(self, access_token: str) -> dict:
        resp = self._request("GET", self.endpoints.userinfo, headers=_bearer(access_token))
        self._check(resp, "userinfo")
        return self._json(resp, "userinfo")

    # ------------------------------------------------------------------
    # ID token
    # ------------------------------------------------------------------

    def fetch_jwks(self) -> dict:
        resp = self._request("GET", self.endpoints.certs)
        self._check(resp, "jwks")
        jwks = self._json(resp, "jwks")
        if "keys" not in jwks:
            raise UpstreamUnavailable("Invalid JWKS response", detail="missing 'keys' field")
        return jwks

    def verify_id_token(self, id_token: str, nonce: str, access_token: str | None = None) -> dict:
        """Verify the ID token signature and claims, including the transaction nonce.

        Checks signature against the realm JWKS, aud == client id,
        iss == public realm URL, expiry, and nonce == the nonce stored in the
        OAuth transaction. Keycloak adds an at_hash claim to code-flow ID
        tokens; it is checked against the access token issued alongside.
        Any failure raises UpstreamAuthError.
        """
        if not id_token:
            raise UpstreamAuthError("Token response did not include an ID token")

        jwks = self.fetch_jwks()
        try:
            claims = jwt.decode(
                id_token,
                jwks,
                algorithms=self.algorithms,
                audience=self.client_id,
                issuer=self.endpoints.issuer,
                access_token=access_token,
            )
        except JWTError as exc:
            logger.warning("ID token rejected: %s", exc)
            raise UpstreamAuthError("Invalid ID token", detail=str(exc)) from exc

        if claims.get("nonce") != nonce:
            logger.warning("ID token nonce mismatch for subject %s", claims.get("sub"))
            raise UpstreamAuthError("Invalid ID token", detail="nonce mismatch")
        return claims

    # ------------------------------------------------------------------
    # Logout / revocation
    # ------------------------------------------------------------------

    def revoke_refresh_token(self, refresh_token: str) -> None:
        """End the provider-side session for this refresh token.

        Raises on failure; the flow controller treats that as best-effort.
        """
        data = {"client_id": self.client_id, "refresh_token": refresh_token}
        if self.client_secret:
            data["client_secret"] = self.client_secret
        resp = self._request("POST", self.endpoints.logout, data=data)
        self._check(resp, "logout")

    # ------------------------------------------------------------------
    # Admin API
    # ------------------------------------------------------------------

    def list_users(
        self, admin_access_token: str, search: str | None = None, first: int = 0, max_results: int = 100
    ) -> list[dict]:
        params: dict[str, str | int] = {"first": first, "max": max_results}
        if search:
            params["search"] = search
        resp = self._request("GET", self.endpoints.admin_users, headers=_bearer(admin_access_token), params=params)
        self._check(resp, "list users")
        users = self._json(resp, "list users")
        if not isinstance(users, list):
            raise UpstreamUnavailable("Unexpected admin API response", detail="expected a JSON array")
        return users

    def delete_user(self, admin_access_token: str, user_id: str) -> None:
        # Dot segments would be normalized away and retarget the realm itself.
        if user_id in ("", ".", ".."):
            raise ValueError(f"Invalid user id: {user_id!r}")
        url = f"{self.endpoints.admin_users}/{quote(user_id, safe='')}"
        resp = self._request("DELETE", url, headers=_bearer(admin_access_token))
        self._check(resp, "delete user")

    def close(self) -> None:
        self.http.close()

    # ------------------------------------------------------------------
    # Transport helpers
    # ------------------------------------------------------------------

    def _request(self, method: str, url: str, **kwargs) -> requests.Response:
        kwargs.setdefault("timeout", self.timeout)
        try:
            return self.http.request(method, url, **kwargs)
        except requests.RequestException as exc:
            logger.error("Identity provider unreachable: %s %s (%s)", method, url, exc)
            raise UpstreamUnavailable(detail=str(exc)) from exc

    def _check(self, resp: requests.Response, action: str) -> None:
        status = resp.status_code
        if status < 400:
            return
        body = (resp.text or "")[:_MAX_LOGGED_BODY]
        if status >= 500:
            logger.error("Identity provider %s failed with %d: %s", action, status, body)
            raise UpstreamUnavailable(detail=body)
        logger.warning("Identity provider rejected %s with %d: %s", action, status, body)
        if status == 403:
            raise UpstreamForbidden(detail=body)
        raise UpstreamAuthError(status_code=status, detail=body)

    def _json(self, resp: requests.Response, action: str):
        try:
            return resp.json()
        except ValueError as exc:
            logger.error("Identity provider returned non-JSON %s response", action)
            raise UpstreamUnavailable("Invalid response from identity provider", detail=str(exc)) from exc


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}
