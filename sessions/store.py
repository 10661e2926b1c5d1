"""
sessions/store.py -- SQL-backed key/value store for session records.

Holds one JSON value per session id with an absolute expiry. The auth core
treats this as an external collaborator and only uses load / save / replace /
touch / delete. Expiry is sliding: the access gate calls touch() on every
authorized request, pushing the deadline out by the TTL again.

Concurrent requests on one session may both replace(); the last write wins.
Both writers hold a semantically valid record, so that is acceptable.
replace() never recreates a deleted session, so a logout racing a token
refresh stays logged out.

Usage:
    store = SessionStore()
    sid = new_session_id()
    store.save(sid, {"type": "local", "userId": "..."}, ttl=7 * 86400)
    record = store.load(sid)     # dict or None (absent or expired)
    store.delete(sid)
    store.purge_expired()        # call periodically to trim old rows
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any, Optional

from sqlalchemy import Column, Float, MetaData, String, Table, Text, delete, select, update
from sqlalchemy.engine import Engine

from core.database import make_engine

logger = logging.getLogger("pentrack.sessions")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'pentrack_sessions.db'}"

_metadata = MetaData()

_sessions = Table(
    "sessions",
    _metadata,
    Column("sid", String(64), primary_key=True),
    Column("data", Text, nullable=False),  # JSON-encoded session record
    Column("expires_at", Float, nullable=False, index=True),  # epoch seconds
)


def new_session_id() -> str:
    """Return an unguessable session id (256 bits of entropy)."""
    return secrets.token_urlsafe(32)


class SessionStore:
    def __init__(self, db_url: str = _DEFAULT_DB_URL, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self.engine: Engine = make_engine(db_url)
        _metadata.create_all(self.engine)

    def load(self, sid: str) -> Optional[Any]:
        """Return the stored value for sid if it exists and hasn't expired."""
        with self.engine.connect() as conn:
            row = conn.execute(select(_sessions.c.data, _sessions.c.expires_at).where(_sessions.c.sid == sid)).fetchone()
        if row is None:
            return None
        if row.expires_at <= self._clock():
            self.delete(sid)
            return None
        try:
            return json.loads(row.data)
        except ValueError:
            logger.warning("Discarding undecodable session record")
            self.delete(sid)
            return None

    def save(self, sid: str, value: Any, ttl: int) -> None:
        """Store value for sid, replacing any existing entry."""
        data = json.dumps(value, separators=(",", ":"))
        expires_at = self._clock() + ttl
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_sessions).where(_sessions.c.sid == sid).values(data=data, expires_at=expires_at)
            )
            if result.rowcount == 0:
                conn.execute(_sessions.insert().values(sid=sid, data=data, expires_at=expires_at))

    def replace(self, sid: str, value: Any, ttl: int) -> bool:
        """Overwrite an existing entry only. Returns False if sid is gone."""
        data = json.dumps(value, separators=(",", ":"))
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_sessions)
                .where(_sessions.c.sid == sid)
                .values(data=data, expires_at=self._clock() + ttl)
            )
        return result.rowcount > 0

    def touch(self, sid: str, ttl: int) -> bool:
        """Extend a live session's expiry. Returns False if sid is unknown."""
        with self.engine.begin() as conn:
            result = conn.execute(
                update(_sessions).where(_sessions.c.sid == sid).values(expires_at=self._clock() + ttl)
            )
        return result.rowcount > 0

    def delete(self, sid: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(delete(_sessions).where(_sessions.c.sid == sid))

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self.engine.begin() as conn:
            result = conn.execute(delete(_sessions).where(_sessions.c.expires_at <= self._clock()))
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()
