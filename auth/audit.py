"""
auth/audit.py -- Append-only audit trail for logins and user management.

The auth core only ever calls record(). Reading the trail (recent() /
for_user()) backs the admin-only GET /api/audit-logs; nothing in the
authorization path depends on it.

A failed audit write is logged and swallowed: losing an audit row must not
turn a successful login or user update into a 500.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from auth.models import AuditEntry

logger = logging.getLogger("pentrack.audit")

_metadata = MetaData()

_audit_logs = Table(
    "audit_logs",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", String(255)),  # actor; NULL for anonymous events
    Column("action", String(30), nullable=False),
    Column("resource_type", String(30), nullable=False),
    Column("resource_id", String(255)),
    Column("details", Text),  # JSON
    Column("ip_address", String(45)),
    Column("user_agent", Text),
    Column("timestamp", String(32), nullable=False),
)


class AuditLog:
    """Appends AuditEntry rows. Shares the user store's engine."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        _metadata.create_all(self.engine)

    def record(
        self,
        action: str,
        resource_type: str,
        user_id: Optional[str] = None,
        resource_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> None:
        try:
            with self.engine.begin() as conn:
                conn.execute(
                    _audit_logs.insert().values(
                        user_id=user_id,
                        action=action,
                        resource_type=resource_type,
                        resource_id=resource_id,
                        details=json.dumps(details, default=str) if details is not None else None,
                        ip_address=ip_address,
                        user_agent=user_agent,
                        timestamp=datetime.now(timezone.utc).isoformat(),
                    )
                )
        except SQLAlchemyError:
            logger.exception("Audit write failed (action=%s resource=%s/%s)", action, resource_type, resource_id)

    def recent(self, limit: int = 50) -> list[AuditEntry]:
        with self.engine.connect() as conn:
            rows = conn.execute(_audit_logs.select().order_by(_audit_logs.c.id.desc()).limit(limit)).fetchall()
        return [_row_to_entry(r) for r in rows]

    def for_user(self, user_id: str, limit: int = 50) -> list[AuditEntry]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(_audit_logs)
                .where(_audit_logs.c.user_id == user_id)
                .order_by(_audit_logs.c.id.desc())
                .limit(limit)
            ).fetchall()
        return [_row_to_entry(r) for r in rows]


def _row_to_entry(row) -> AuditEntry:
    return AuditEntry(
        id=row.id,
        user_id=row.user_id,
        action=row.action,
        resource_type=row.resource_type,
        resource_id=row.resource_id,
        details=json.loads(row.details) if row.details else None,
        ip_address=row.ip_address,
        user_agent=row.user_agent,
        timestamp=row.timestamp,
    )
