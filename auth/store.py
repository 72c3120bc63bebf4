"""
auth/store.py -- SQLAlchemy Core persistence for the last-login ledger.

Pattern: Repository. LastLoginStore owns the single user_last_login table;
route and flow code never touches SQL directly.

One row per provider subject:
  subject     provider's stable user identifier (primary key)
  last_login  ISO 8601 UTC timestamp of the most recent successful callback
  updated_at  ISO 8601 UTC wall-clock time of the last write

Upsert semantics:
  record_login() is INSERT ... ON CONFLICT (subject) DO UPDATE ... WHERE
  existing.last_login < excluded.last_login. Concurrent or out-of-order calls
  for the same subject therefore always leave the latest timestamp. The
  timestamps are normalized to UTC with fixed microsecond precision so the
  TEXT comparison matches chronological order.

Security:
  All queries use bound parameters.

Dialects: SQLite (default, file or in-memory) and PostgreSQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, event, select, text
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.errors import PersistenceError

_DEFAULT_DB_URL = "sqlite:///synthai_auth.db"

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_user_last_login = Table(
    "user_last_login",
    _metadata,
    Column("subject", String(255), primary_key=True),
    Column("last_login", Text, nullable=False),
    Column("updated_at", Text, nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode so readers do not block behind the upsert.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _to_iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _now_iso() -> str:
    return _to_iso(datetime.now(timezone.utc))


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class LastLoginStore:
    """Repository for per-subject last-login timestamps.

    Usage:
        store = LastLoginStore("sqlite:///:memory:")
        store.record_login("a1b2-c3d4")
        store.get_last_login("a1b2-c3d4")   # "2025-01-01T12:00:00.000000+00:00"
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)

    def _insert(self):
        if self.engine.dialect.name == "postgresql":
            return postgresql.insert(_user_last_login)
        return sqlite.insert(_user_last_login)

    def record_login(self, subject: str, timestamp: datetime | None = None) -> None:
        """Upsert the last-login timestamp for a subject. Later timestamps win.

        Raises PersistenceError on database failure; the flow controller logs
        and ignores it so a ledger outage never blocks a login.
        """
        last_login = _to_iso(timestamp) if timestamp is not None else _now_iso()
        stmt = self._insert().values(subject=subject, last_login=last_login, updated_at=_now_iso())
        stmt = stmt.on_conflict_do_update(
            index_elements=[_user_last_login.c.subject],
            set_={"last_login": stmt.excluded.last_login, "updated_at": stmt.excluded.updated_at},
            where=_user_last_login.c.last_login < stmt.excluded.last_login,
        )
        try:
            with self.engine.connect() as conn:
                conn.execute(stmt)
                conn.commit()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to record last login", detail=str(exc)) from exc

    def get_last_login(self, subject: str) -> str | None:
        """Return the ISO timestamp of the subject's last login, or None if never recorded."""
        try:
            with self.engine.connect() as conn:
                row = conn.execute(
                    select(_user_last_login.c.last_login).where(_user_last_login.c.subject == subject)
                ).fetchone()
        except SQLAlchemyError as exc:
            raise PersistenceError("Failed to read last login", detail=str(exc)) from exc
        return row.last_login if row is not None else None

    def ping(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError:
            return False

    def close(self) -> None:
        self.engine.dispose()
