"""
auth/flow.py -- Authentication flow controller for the OIDC Authorization Code dance.

State machine per session id:

  ANONYMOUS --begin()--> PENDING(transaction) --complete()--> AUTHENTICATED(session)
                              |                                      |
                              +--validation failure--> ANONYMOUS     +--logout()--> ANONYMOUS

complete() ordering:
  1. Reject a missing code (MissingCode).
  2. Atomically take the transaction whose state equals the callback state.
     No transaction or a different state -> StateMismatch. This is the CSRF
     defense and it runs BEFORE any call to the provider.
  3. Exchange the code with the redirect URI stored in the transaction.
  4. Verify the ID token signature, audience, issuer, nonce and at_hash.
  5. Fetch userinfo and build the session with all identity fields at once.
  6. Persist the session under a freshly generated id and only then return --
     a PersistenceError here propagates so the route never redirects as if
     authenticated.
  7. Record the last login (best effort, logged and ignored).

The controller holds no mutable state of its own; the provider client, session
store and ledger are injected.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

from auth.errors import AuthError, MissingCode, PersistenceError, StateMismatch, UpstreamAuthError
from auth.models import AuthenticatedSession, CompletedLogin, OAuthTransaction
from auth.oidc import IdentityProviderClient
from auth.sessions import SessionStore, new_session_id
from auth.store import LastLoginStore
from core.config import CALLBACK_PATH, Settings

logger = logging.getLogger("synthai.auth.flow")


class AuthFlowController:
    """Orchestrates login/registration redirects, the callback, logout and identity queries."""

    def __init__(
        self,
        provider: IdentityProviderClient,
        sessions: SessionStore,
        ledger: LastLoginStore,
        settings: Settings,
    ) -> None:
        self.provider = provider
        self.sessions = sessions
        self.ledger = ledger
        self.configured_redirect_uri = settings.keycloak_redirect_uri
        self.public_base_url = settings.public_base_url.rstrip("/")
        self.frontend_url = settings.frontend_url

    # ------------------------------------------------------------------
    # Redirect URI
    # ------------------------------------------------------------------

    def resolve_redirect_uri(self, request_base_url: str) -> str:
        """Return the callback URL to register with the provider.

        Priority: KEYCLOAK_REDIRECT_URI, then PUBLIC_BASE_URL + callback path,
        then the current request's scheme and host. The last fallback trusts
        the Host header, which TrustedHostMiddleware restricts to TRUSTED_HOSTS.
        """
        if self.configured_redirect_uri:
            return self.configured_redirect_uri
        if self.public_base_url:
            return f"{self.public_base_url}{CALLBACK_PATH}"
        derived = f"{request_base_url.rstrip('/')}{CALLBACK_PATH}"
        logger.warning("KEYCLOAK_REDIRECT_URI is not set -- using request-derived redirect URI %s", derived)
        return derived

    # ------------------------------------------------------------------
    # Begin
    # ------------------------------------------------------------------

    def begin(self, session_id: str, purpose: str, request_base_url: str) -> str:
        """Start a login or registration flow and return the provider URL to redirect to."""
        redirect_uri = self.resolve_redirect_uri(request_base_url)
        auth_request = self.provider.build_authorization_url(redirect_uri, purpose)
        self.sessions.put_transaction(
            session_id,
            OAuthTransaction(
                state=auth_request.state,
                nonce=auth_request.nonce,
                redirect_uri=redirect_uri,
                purpose=purpose,
            ),
        )
        return auth_request.url

    # ------------------------------------------------------------------
    # Complete (callback)
    # ------------------------------------------------------------------

    def complete(
        self,
        session_id: str | None,
        code: str | None,
        state: str | None,
        request_base_url: str,
    ) -> CompletedLogin:
        if not code:
            raise MissingCode()

        transaction = self.sessions.take_transaction(session_id, state) if session_id and state else None
        if transaction is None:
            raise StateMismatch()

        redirect_uri = transaction.redirect_uri or self.resolve_redirect_uri(request_base_url)
        tokens = self.provider.exchange_code(code, redirect_uri)
        claims = self.provider.verify_id_token(tokens.id_token, transaction.nonce, tokens.access_token)
        userinfo = self.provider.fetch_user_info(tokens.access_token)

        subject = userinfo.get("sub") or claims.get("sub")
        if not subject or subject != claims.get("sub"):
            raise UpstreamAuthError("Userinfo subject does not match ID token")

        session = AuthenticatedSession(
            subject=subject,
            username=userinfo.get("preferred_username") or subject,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            id_token=tokens.id_token,
            expires_in=tokens.expires_in,
        )
        if not session.is_authenticated:
            raise UpstreamAuthError("Token response is missing a refresh or ID token")

        # Fresh id on privilege change; the pre-login id is discarded.
        authenticated_id = new_session_id()
        self.sessions.set(authenticated_id, session)
        self._discard(session_id)
        self._record_login(subject)

        logger.info("Login completed for %s (purpose=%s)", session.username, transaction.purpose)
        return CompletedLogin(session_id=authenticated_id, session=session, redirect_to=self.frontend_url)

    # ------------------------------------------------------------------
    # Logout
    # ------------------------------------------------------------------

    def logout(self, session_id: str | None) -> None:
        """End the provider session (best effort) and always destroy the local one."""
        if not session_id:
            return
        session = self.sessions.get(session_id)
        if session is not None and session.refresh_token:
            try:
                self.provider.revoke_refresh_token(session.refresh_token)
            except Exception:
                logger.warning(
                    "Provider logout failed for %s; destroying local session anyway",
                    session.username,
                    exc_info=True,
                )
        self.sessions.destroy(session_id)
        if session is not None:
            logger.info("Logout for %s", session.username)

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def identity(self, session: AuthenticatedSession) -> dict:
        """Return fresh userinfo for the session plus its last login.

        Always calls the provider so a revoked or expired access token
        surfaces immediately as UpstreamAuthError.
        """
        userinfo = dict(self.provider.fetch_user_info(session.access_token))
        userinfo["last_login"] = self.ledger.get_last_login(session.subject)
        return userinfo

    # ------------------------------------------------------------------
    # Best-effort helpers
    # ------------------------------------------------------------------

    def _discard(self, session_id: str | None) -> None:
        if not session_id:
            return
        try:
            self.sessions.destroy(session_id)
        except PersistenceError:
            logger.warning("Failed to discard pre-login session id", exc_info=True)

    def _record_login(self, subject: str) -> None:
        try:
            self.ledger.record_login(subject)
        except AuthError:
            logger.error("Failed to update last_login for %s", subject, exc_info=True)
