"""
tests/test_oidc_client.py -- Unit tests for IdentityProviderClient.

The HTTP transport is a MagicMock standing in for requests.Session, so these
tests pin the exact requests sent to the provider and the mapping of provider
responses onto the error taxonomy. ID tokens are real JWTs signed with HS256
and verified against an "oct" JWKS served by the mocked certs endpoint.
"""

from __future__ import annotations

import base64
import hashlib
import time
from unittest.mock import MagicMock
from urllib.parse import parse_qs, urlparse

import pytest
import requests
from jose import jwt
from jose.utils import calculate_at_hash

from auth.errors import UpstreamAuthError, UpstreamForbidden, UpstreamUnavailable
from auth.oidc import IdentityProviderClient, ProviderEndpoints
from core.config import Settings

HMAC_SECRET = "hs256-test-secret-for-id-token-signing"
CLIENT_ID = "synthai-test-client"
PUBLIC = "https://sso.example.com"
INTERNAL = "http://keycloak:8080"
ISSUER = f"{PUBLIC}/realms/synthai"


def _settings(**overrides) -> Settings:
    values = dict(
        environment="development",
        session_secret="x" * 32,
        keycloak_url=PUBLIC,
        keycloak_internal_url=INTERNAL,
        keycloak_realm="synthai",
        keycloak_client_id=CLIENT_ID,
        keycloak_client_secret="client-secret",
        id_token_algorithms="HS256",
        http_timeout_seconds=5.0,
    )
    values.update(overrides)
    return Settings(**values)


def _resp(status: int, payload=None, text: str = "") -> MagicMock:
    resp = MagicMock()
    resp.status_code = status
    resp.text = text
    if payload is None:
        resp.json.side_effect = ValueError("no json")
    else:
        resp.json.return_value = payload
    return resp


def _jwks() -> dict:
    k = base64.urlsafe_b64encode(HMAC_SECRET.encode()).rstrip(b"=").decode()
    return {"keys": [{"kty": "oct", "k": k, "alg": "HS256", "kid": "test"}]}


def _id_token(**overrides) -> str:
    now = int(time.time())
    claims = {
        "iss": ISSUER,
        "aud": CLIENT_ID,
        "sub": "user-1",
        "iat": now,
        "exp": now + 300,
        "nonce": "nonce-1",
    }
    claims.update(overrides)
    return jwt.encode(claims, HMAC_SECRET, algorithm="HS256", headers={"kid": "test"})


@pytest.fixture
def http() -> MagicMock:
    return MagicMock()


@pytest.fixture
def idp(http: MagicMock) -> IdentityProviderClient:
    return IdentityProviderClient(_settings(), http=http)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


class TestEndpoints:
    def test_browser_endpoints_use_public_url(self) -> None:
        endpoints = ProviderEndpoints.from_settings(_settings())
        assert endpoints.issuer == ISSUER
        assert endpoints.authorization == f"{ISSUER}/protocol/openid-connect/auth"
        assert endpoints.registration == f"{ISSUER}/protocol/openid-connect/registrations"

    def test_server_endpoints_use_internal_url(self) -> None:
        endpoints = ProviderEndpoints.from_settings(_settings())
        assert endpoints.token == f"{INTERNAL}/realms/synthai/protocol/openid-connect/token"
        assert endpoints.userinfo.startswith(INTERNAL)
        assert endpoints.logout.startswith(INTERNAL)
        assert endpoints.certs.startswith(INTERNAL)
        assert endpoints.admin_users == f"{INTERNAL}/admin/realms/synthai/users"

    def test_internal_url_defaults_to_public(self) -> None:
        endpoints = ProviderEndpoints.from_settings(_settings(keycloak_internal_url=""))
        assert endpoints.token.startswith(PUBLIC)


# ---------------------------------------------------------------------------
# Authorization URL
# ---------------------------------------------------------------------------


class TestAuthorizationUrl:
    def test_contains_required_parameters(self, idp: IdentityProviderClient) -> None:
        """URL carries client_id, response_type=code, the fixed scope, the exact redirect URI and the state."""
        redirect_uri = "https://app.example/api/auth/callback"
        auth_request = idp.build_authorization_url(redirect_uri, "login")
        parsed = urlparse(auth_request.url)
        query = parse_qs(parsed.query)

        assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == f"{ISSUER}/protocol/openid-connect/auth"
        assert query["client_id"] == [CLIENT_ID]
        assert query["response_type"] == ["code"]
        assert query["scope"] == ["openid profile email"]
        assert query["redirect_uri"] == [redirect_uri]
        assert query["state"] == [auth_request.state]
        assert query["nonce"] == [auth_request.nonce]

    def test_register_targets_registration_endpoint(self, idp: IdentityProviderClient) -> None:
        auth_request = idp.build_authorization_url("https://app.example/cb", "register")
        assert urlparse(auth_request.url).path.endswith("/protocol/openid-connect/registrations")

    def test_state_and_nonce_are_fresh_per_call(self, idp: IdentityProviderClient) -> None:
        requests_made = [idp.build_authorization_url("https://app.example/cb") for _ in range(20)]
        states = {r.state for r in requests_made}
        assert len(states) == 20
        assert all(r.state != r.nonce for r in requests_made)

    def test_no_network_io(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        idp.build_authorization_url("https://app.example/cb")
        http.request.assert_not_called()

    def test_unknown_purpose_rejected(self, idp: IdentityProviderClient) -> None:
        with pytest.raises(ValueError):
            idp.build_authorization_url("https://app.example/cb", "impersonate")


# ---------------------------------------------------------------------------
# Token exchange
# ---------------------------------------------------------------------------


class TestExchangeCode:
    def test_posts_form_with_credentials_and_timeout(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(
            200, {"access_token": "at", "refresh_token": "rt", "id_token": "it", "expires_in": 300}
        )
        tokens = idp.exchange_code("code-1", "https://app.example/cb")

        method, url = http.request.call_args.args
        kwargs = http.request.call_args.kwargs
        assert method == "POST"
        assert url == f"{INTERNAL}/realms/synthai/protocol/openid-connect/token"
        assert kwargs["data"] == {
            "grant_type": "authorization_code",
            "code": "code-1",
            "client_id": CLIENT_ID,
            "client_secret": "client-secret",
            "redirect_uri": "https://app.example/cb",
        }
        assert kwargs["timeout"] == 5.0
        assert (tokens.access_token, tokens.refresh_token, tokens.id_token, tokens.expires_in) == ("at", "rt", "it", 300)

    def test_public_client_omits_secret(self, http: MagicMock) -> None:
        idp = IdentityProviderClient(_settings(keycloak_client_secret=""), http=http)
        http.request.return_value = _resp(200, {"access_token": "at"})
        idp.exchange_code("code-1", "https://app.example/cb")
        assert "client_secret" not in http.request.call_args.kwargs["data"]

    def test_rejected_code_passes_provider_status(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        """An expired or reused code is a client-facing 4xx, not a masked 500."""
        http.request.return_value = _resp(400, {"error": "invalid_grant"}, text='{"error":"invalid_grant"}')
        with pytest.raises(UpstreamAuthError) as exc_info:
            idp.exchange_code("used-code", "https://app.example/cb")
        assert exc_info.value.status_code == 400
        assert "invalid_grant" in exc_info.value.detail

    def test_provider_5xx_is_unavailable(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(503, text="maintenance")
        with pytest.raises(UpstreamUnavailable) as exc_info:
            idp.exchange_code("code-1", "https://app.example/cb")
        assert exc_info.value.status_code == 502

    def test_network_error_is_unavailable(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.side_effect = requests.ConnectTimeout("timed out")
        with pytest.raises(UpstreamUnavailable):
            idp.exchange_code("code-1", "https://app.example/cb")

    def test_missing_access_token_rejected(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(200, {"token_type": "Bearer"})
        with pytest.raises(UpstreamAuthError):
            idp.exchange_code("code-1", "https://app.example/cb")

    def test_non_json_body_is_unavailable(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(200, None, text="<html>proxy error</html>")
        with pytest.raises(UpstreamUnavailable):
            idp.exchange_code("code-1", "https://app.example/cb")


# ---------------------------------------------------------------------------
# Userinfo, logout, admin API
# ---------------------------------------------------------------------------


class TestUserInfo:
    def test_sends_bearer_token(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(200, {"sub": "user-1"})
        assert idp.fetch_user_info("at-1") == {"sub": "user-1"}
        assert http.request.call_args.kwargs["headers"] == {"Authorization": "Bearer at-1"}

    def test_expired_token_is_upstream_auth_401(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(401, text="invalid_token")
        with pytest.raises(UpstreamAuthError) as exc_info:
            idp.fetch_user_info("expired")
        assert exc_info.value.status_code == 401


class TestRevoke:
    def test_posts_refresh_token_to_logout_endpoint(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(204, text="")
        idp.revoke_refresh_token("rt-1")
        method, url = http.request.call_args.args
        assert method == "POST"
        assert url.endswith("/protocol/openid-connect/logout")
        assert http.request.call_args.kwargs["data"]["refresh_token"] == "rt-1"

    def test_failure_raises_for_caller_to_swallow(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(500, text="boom")
        with pytest.raises(UpstreamUnavailable):
            idp.revoke_refresh_token("rt-1")


class TestAdminApi:
    def test_list_users_passes_paging(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(200, [{"id": "u1"}])
        assert idp.list_users("admin-at", search="ali", first=10, max_results=5) == [{"id": "u1"}]
        assert http.request.call_args.kwargs["params"] == {"first": 10, "max": 5, "search": "ali"}

    def test_list_users_forbidden_is_distinct(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(403, text="forbidden")
        with pytest.raises(UpstreamForbidden) as exc_info:
            idp.list_users("user-at")
        assert exc_info.value.status_code == 403

    def test_list_users_rejects_non_list(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(200, {"error": "unexpected"})
        with pytest.raises(UpstreamUnavailable):
            idp.list_users("admin-at")

    def test_delete_user_targets_user_url(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(204, text="")
        idp.delete_user("admin-at", "u1")
        method, url = http.request.call_args.args
        assert (method, url) == ("DELETE", f"{INTERNAL}/admin/realms/synthai/users/u1")

    def test_delete_unknown_user_is_404(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(404, text="User not found")
        with pytest.raises(UpstreamAuthError) as exc_info:
            idp.delete_user("admin-at", "missing")
        assert exc_info.value.status_code == 404

    def test_delete_user_id_is_one_quoted_segment(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(204, text="")
        idp.delete_user("admin-at", "a/b?c#d")
        _, url = http.request.call_args.args
        assert url == f"{INTERNAL}/admin/realms/synthai/users/a%2Fb%3Fc%23d"

    @pytest.mark.parametrize("user_id", ["", ".", ".."])
    def test_delete_rejects_dot_segments(self, idp: IdentityProviderClient, http: MagicMock, user_id: str) -> None:
        """Dot segments would collapse the URL onto the realm endpoint."""
        with pytest.raises(ValueError):
            idp.delete_user("admin-at", user_id)
        http.request.assert_not_called()


# ---------------------------------------------------------------------------
# ID token verification
# ---------------------------------------------------------------------------


class TestVerifyIdToken:
    @pytest.fixture(autouse=True)
    def _serve_jwks(self, http: MagicMock) -> None:
        http.request.return_value = _resp(200, _jwks())

    def test_valid_token_returns_claims(self, idp: IdentityProviderClient) -> None:
        claims = idp.verify_id_token(_id_token(), "nonce-1")
        assert claims["sub"] == "user-1"

    def test_nonce_mismatch_rejected(self, idp: IdentityProviderClient) -> None:
        with pytest.raises(UpstreamAuthError) as exc_info:
            idp.verify_id_token(_id_token(nonce="replayed"), "nonce-1")
        assert exc_info.value.detail == "nonce mismatch"

    def test_wrong_audience_rejected(self, idp: IdentityProviderClient) -> None:
        with pytest.raises(UpstreamAuthError):
            idp.verify_id_token(_id_token(aud="another-client"), "nonce-1")

    def test_wrong_issuer_rejected(self, idp: IdentityProviderClient) -> None:
        with pytest.raises(UpstreamAuthError):
            idp.verify_id_token(_id_token(iss=f"{INTERNAL}/realms/synthai"), "nonce-1")

    def test_expired_token_rejected(self, idp: IdentityProviderClient) -> None:
        past = int(time.time()) - 3600
        with pytest.raises(UpstreamAuthError):
            idp.verify_id_token(_id_token(iat=past - 300, exp=past), "nonce-1")

    def test_bad_signature_rejected(self, idp: IdentityProviderClient) -> None:
        forged = jwt.encode(
            {"iss": ISSUER, "aud": CLIENT_ID, "sub": "x", "exp": int(time.time()) + 300, "nonce": "nonce-1"},
            "attacker-secret",
            algorithm="HS256",
        )
        with pytest.raises(UpstreamAuthError):
            idp.verify_id_token(forged, "nonce-1")

    def test_missing_id_token_rejected(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        with pytest.raises(UpstreamAuthError):
            idp.verify_id_token("", "nonce-1")
        http.request.assert_not_called()

    def test_invalid_jwks_is_unavailable(self, idp: IdentityProviderClient, http: MagicMock) -> None:
        http.request.return_value = _resp(200, {"not": "a jwks"})
        with pytest.raises(UpstreamUnavailable):
            idp.verify_id_token(_id_token(), "nonce-1")

    def test_at_hash_matches_access_token(self, idp: IdentityProviderClient) -> None:
        token = _id_token(at_hash=calculate_at_hash("access-token-1", hashlib.sha256))
        claims = idp.verify_id_token(token, "nonce-1", "access-token-1")
        assert claims["sub"] == "user-1"

    def test_at_hash_mismatch_rejected(self, idp: IdentityProviderClient) -> None:
        token = _id_token(at_hash=calculate_at_hash("access-token-1", hashlib.sha256))
        with pytest.raises(UpstreamAuthError):
            idp.verify_id_token(token, "nonce-1", "some-other-access-token")
