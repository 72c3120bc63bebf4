"""
auth/sessions.py -- Server-side session store and the signed session cookie.

The browser only ever holds an opaque session id, signed with SESSION_SECRET
via itsdangerous. Tokens live in the store under that id.

Two records are kept per session id:
  session:<sid>  AuthenticatedSession JSON, written once per successful login
  oauth:<sid>    OAuthTransaction JSON, written when a login redirect is issued

Transactions are consumed with take_transaction(), an atomic
compare-and-delete on the state value. Two concurrent callbacks carrying the
same state can never both receive the transaction: the loser sees None and
the flow controller fails it with StateMismatch.

Backends:
  MemorySessionStore -- process-local dict guarded by a lock (dev and tests).
  RedisSessionStore  -- redis-py with SET EX for TTL and a Lua script for the
                        atomic take. Required when running more than one worker.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod

import redis
from itsdangerous import BadSignature, Signer
from redis.exceptions import RedisError

from auth.errors import PersistenceError
from auth.models import AuthenticatedSession, OAuthTransaction
from core.config import Settings

logger = logging.getLogger("synthai.auth.sessions")


class SessionStore(ABC):
    """Durable mapping from session id to session state, with a TTL."""

    def __init__(self, ttl_seconds: int) -> None:
        self.ttl_seconds = ttl_seconds

    @abstractmethod
    def get(self, session_id: str) -> AuthenticatedSession | None: ...

    @abstractmethod
    def set(self, session_id: str, session: AuthenticatedSession) -> None:
        """Persist the session. Must not return until the write is acknowledged."""

    @abstractmethod
    def destroy(self, session_id: str) -> None:
        """Remove the session and any pending transaction for this id."""

    @abstractmethod
    def put_transaction(self, session_id: str, transaction: OAuthTransaction) -> None: ...

    @abstractmethod
    def take_transaction(self, session_id: str, state: str) -> OAuthTransaction | None:
        """Atomically remove and return the transaction if its state equals `state`.

        Returns None when no transaction exists or the state differs; a
        mismatching transaction is left in place.
        """

    @abstractmethod
    def ping(self) -> bool: ...

    def close(self) -> None:
        return None


# ---------------------------------------------------------------------------
# In-memory backend
# ---------------------------------------------------------------------------


class MemorySessionStore(SessionStore):
    """Process-local store. Sessions do not survive restart or span workers."""

    def __init__(self, ttl_seconds: int) -> None:
        super().__init__(ttl_seconds)
        self._lock = threading.Lock()
        self._sessions: dict[str, tuple[float, str]] = {}
        self._transactions: dict[str, tuple[float, str]] = {}

    def _expiry(self) -> float:
        return time.monotonic() + self.ttl_seconds

    @staticmethod
    def _live(bucket: dict[str, tuple[float, str]], key: str) -> str | None:
        entry = bucket.get(key)
        if entry is None:
            return None
        expires_at, raw = entry
        if expires_at <= time.monotonic():
            del bucket[key]
            return None
        return raw

    def get(self, session_id: str) -> AuthenticatedSession | None:
        with self._lock:
            raw = self._live(self._sessions, session_id)
        return AuthenticatedSession.from_json(raw) if raw is not None else None

    def set(self, session_id: str, session: AuthenticatedSession) -> None:
        with self._lock:
            self._sessions[session_id] = (self._expiry(), session.to_json())

    def destroy(self, session_id: str) -> None:
        with self._lock:
            self._sessions.pop(session_id, None)
            self._transactions.pop(session_id, None)

    def put_transaction(self, session_id: str, transaction: OAuthTransaction) -> None:
        with self._lock:
            self._transactions[session_id] = (self._expiry(), transaction.to_json())

    def take_transaction(self, session_id: str, state: str) -> OAuthTransaction | None:
        with self._lock:
            raw = self._live(self._transactions, session_id)
            if raw is None:
                return None
            transaction = OAuthTransaction.from_json(raw)
            if not secrets.compare_digest(transaction.state.encode(), state.encode()):
                return None
            del self._transactions[session_id]
        return transaction

    def ping(self) -> bool:
        return True


# ---------------------------------------------------------------------------
# Redis backend
# ---------------------------------------------------------------------------

# Compare-and-delete in one round trip. Returns the stored JSON when the state
# matches (and deletes the key), nil otherwise.
_TAKE_TRANSACTION_LUA = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return false
end
local ok, tx = pcall(cjson.decode, raw)
if not ok or tx['state'] ~= ARGV[1] then
  return false
end
redis.call('DEL', KEYS[1])
return raw
"""


class RedisSessionStore(SessionStore):
    """Redis-backed store shared by every worker process.

    Usage:
        store = RedisSessionStore(redis.Redis.from_url(url, decode_responses=True), ttl_seconds=86400)
    """

    def __init__(self, client: redis.Redis, ttl_seconds: int, key_prefix: str = "synthai:") -> None:
        super().__init__(ttl_seconds)
        self.redis = client
        self.key_prefix = key_prefix
        self._take_script = client.register_script(_TAKE_TRANSACTION_LUA)

    def _session_key(self, session_id: str) -> str:
        return f"{self.key_prefix}session:{session_id}"

    def _transaction_key(self, session_id: str) -> str:
        return f"{self.key_prefix}oauth:{session_id}"

    def get(self, session_id: str) -> AuthenticatedSession | None:
        try:
            raw = self.redis.get(self._session_key(session_id))
        except RedisError as exc:
            logger.error("Session read failed: %s", exc)
            raise PersistenceError("Failed to read session", detail=str(exc)) from exc
        return AuthenticatedSession.from_json(raw) if raw is not None else None

    def set(self, session_id: str, session: AuthenticatedSession) -> None:
        try:
            self.redis.set(self._session_key(session_id), session.to_json(), ex=self.ttl_seconds)
        except RedisError as exc:
            logger.error("Session write failed: %s", exc)
            raise PersistenceError("Failed to save session", detail=str(exc)) from exc

    def destroy(self, session_id: str) -> None:
        try:
            self.redis.delete(self._session_key(session_id), self._transaction_key(session_id))
        except RedisError as exc:
            logger.error("Session delete failed: %s", exc)
            raise PersistenceError("Failed to destroy session", detail=str(exc)) from exc

    def put_transaction(self, session_id: str, transaction: OAuthTransaction) -> None:
        try:
            self.redis.set(self._transaction_key(session_id), transaction.to_json(), ex=self.ttl_seconds)
        except RedisError as exc:
            logger.error("OAuth transaction write failed: %s", exc)
            raise PersistenceError("Failed to save login state", detail=str(exc)) from exc

    def take_transaction(self, session_id: str, state: str) -> OAuthTransaction | None:
        try:
            raw = self._take_script(keys=[self._transaction_key(session_id)], args=[state])
        except RedisError as exc:
            logger.error("OAuth transaction read failed: %s", exc)
            raise PersistenceError("Failed to read login state", detail=str(exc)) from exc
        return OAuthTransaction.from_json(raw) if raw else None

    def ping(self) -> bool:
        try:
            return bool(self.redis.ping())
        except RedisError:
            return False

    def close(self) -> None:
        self.redis.close()


def new_session_id() -> str:
    """Return a fresh, unguessable session id."""
    return secrets.token_urlsafe(32)


def build_session_store(settings: Settings) -> SessionStore:
    """Construct the store selected by SESSION_BACKEND."""
    if settings.session_backend == "redis":
        client = redis.Redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.http_timeout_seconds,
            socket_connect_timeout=settings.http_timeout_seconds,
        )
        logger.info("Using Redis session store")
        return RedisSessionStore(client, settings.session_ttl_seconds, settings.redis_key_prefix)
    logger.warning("Using in-memory session store -- sessions are lost on restart and not shared across workers")
    return MemorySessionStore(settings.session_ttl_seconds)


# ---------------------------------------------------------------------------
# Signed session cookie
# ---------------------------------------------------------------------------


class SessionCookie:
    """Reads and writes the signed, httpOnly session-id cookie.

    httponly=True: JS cannot read the cookie.
    samesite="lax": sent on top-level navigations (the provider redirects
        back with a GET), not on cross-site POSTs.
    secure: only over HTTPS when SECURE_COOKIES=true.
    max_age: matches the store TTL so cookie and record expire together.
    """

    def __init__(self, settings: Settings) -> None:
        self.name = settings.session_cookie_name
        self.max_age = settings.session_ttl_seconds
        self.secure = settings.secure_cookies
        self.domain = settings.cookie_domain or None
        self._signer = Signer(settings.session_secret, salt="synthai.session")

    def read(self, cookies: dict[str, str]) -> str | None:
        """Return the session id from a verified cookie, None if absent or tampered."""
        value = cookies.get(self.name)
        if not value:
            return None
        try:
            return self._signer.unsign(value).decode("utf-8")
        except BadSignature:
            logger.warning("Rejected session cookie with invalid signature")
            return None

    def write(self, response, session_id: str) -> None:
        response.set_cookie(
            self.name,
            value=self._signer.sign(session_id).decode("utf-8"),
            max_age=self.max_age,
            httponly=True,
            samesite="lax",
            secure=self.secure,
            domain=self.domain,
        )

    def clear(self, response) -> None:
        response.delete_cookie(self.name, domain=self.domain)
