"""
auth/store.py -- SQLAlchemy Core persistence layer for user accounts.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user is the mapper. The auth core and
route handlers never touch SQL directly -- they call the methods below.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Role changes have exactly one entry point, update_user_role(). The general
  update_user() refuses a role field, and upsert_user() never touches the
  role of an existing row. A returning federated user therefore cannot
  change their role by logging in again [R2].

DB path: auth/pentrack_auth.db unless DATABASE_URL is set.

Layer rule: no imports from api/ or sessions/. Import from core/ is allowed.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import Column, Integer, MetaData, String, Table, Text, func, select
from sqlalchemy.engine import Engine

from auth.models import ROLES, User
from core.database import make_engine

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent / 'pentrack_auth.db'}"

# Columns a caller may set through update_user() / upsert_user().
_PROFILE_FIELDS = frozenset(
    {"username", "hashed_password", "email", "first_name", "last_name", "profile_image_url", "is_active"}
)

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

metadata = MetaData()

_users = Table(
    "users",
    metadata,
    Column("id", String(255), primary_key=True),  # uuid4 hex or OIDC sub
    Column("username", String(255), unique=True),  # NULL for federated-only users
    Column("hashed_password", Text),  # NULL for federated-only users
    Column("email", String(255)),
    Column("first_name", String(255)),
    Column("last_name", String(255)),
    Column("profile_image_url", Text),
    Column("role", String(30), nullable=False, server_default="client"),
    Column("is_active", Integer, nullable=False, server_default="1"),
    Column("created_at", String(32), nullable=False),
    Column("updated_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _validate_role(role: str) -> None:
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role!r}")


def _to_columns(fields: dict) -> dict:
    unknown = set(fields) - _PROFILE_FIELDS
    if unknown:
        raise ValueError(f"Unknown or protected user fields: {sorted(unknown)!r}")
    values = dict(fields)
    if "is_active" in values:
        values["is_active"] = 1 if values["is_active"] else 0
    return values


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for User entities.

    Usage:
        store = UserStore()
        uid = store.create_user(User(id="", username="admin", role="admin",
                                     hashed_password=hash_password("secret")))
        user = store.get_by_username("admin")
        store.close()
    """

    def __init__(self, db_url: str = _DEFAULT_DB_URL) -> None:
        self.engine: Engine = make_engine(db_url)
        metadata.create_all(self.engine)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def has_admin(self) -> bool:
        """Return True if any admin account exists (active or not).

        Drives the first-user rule: while this is False, the next account
        created on any path becomes an admin.
        """
        return self.count_admins(active_only=False) > 0

    def count_admins(self, active_only: bool = True) -> int:
        """Return the number of admin users. Used by the last-admin guard."""
        query = select(func.count()).select_from(_users).where(_users.c.role == "admin")
        if active_only:
            query = query.where(_users.c.is_active == 1)
        with self.engine.connect() as conn:
            result = conn.execute(query).scalar()
        return result or 0

    def get_by_id(self, user_id: str) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_username(self, username: str) -> User | None:
        """Look up a user by exact username (case-sensitive). Returns None if not found."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_role(self, role: str) -> list[User]:
        _validate_role(role)
        with self.engine.connect() as conn:
            rows = conn.execute(
                _users.select().where(_users.c.role == role).order_by(_users.c.created_at, _users.c.id)
            ).fetchall()
        return [_row_to_user(r) for r in rows]

    def list_users(self) -> list[User]:
        """Return all users grouped admin -> pentester -> client, oldest first."""
        users: list[User] = []
        for role in ROLES:
            users.extend(self.get_by_role(role))
        return users

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        An empty user.id gets a fresh uuid4 hex. Raises
        sqlalchemy.exc.IntegrityError if the id or username already exists.
        """
        _validate_role(user.role)
        user_id = user.id or uuid.uuid4().hex
        now = _now_iso()
        with self.engine.begin() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    username=user.username,
                    hashed_password=user.hashed_password,
                    email=user.email,
                    first_name=user.first_name,
                    last_name=user.last_name,
                    profile_image_url=user.profile_image_url,
                    role=user.role,
                    is_active=1 if user.is_active else 0,
                    created_at=now,
                    updated_at=now,
                )
            )
        return user_id

    def upsert_user(self, user_id: str, role: str, **fields) -> User:
        """Insert the user if absent, otherwise update the given profile fields.

        role is used only for the insert. An existing row keeps its stored
        role no matter what the caller passes [R2].
        """
        _validate_role(role)
        values = _to_columns(fields)
        now = _now_iso()
        with self.engine.begin() as conn:
            exists = conn.execute(select(_users.c.id).where(_users.c.id == user_id)).fetchone()
            if exists is None:
                values.setdefault("is_active", 1)
                conn.execute(_users.insert().values(id=user_id, role=role, created_at=now, updated_at=now, **values))
            else:
                conn.execute(_users.update().where(_users.c.id == user_id).values(updated_at=now, **values))
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row)

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable profile fields on an existing user.

        Accepted fields: see _PROFILE_FIELDS. Passing role raises ValueError --
        use update_user_role().

        Returns True if a row was updated, False if user_id was not found.
        """
        values = _to_columns(fields)
        if not values:
            return self.get_by_id(user_id) is not None
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(updated_at=_now_iso(), **values)
            )
        return result.rowcount > 0

    def update_user_role(self, user_id: str, role: str) -> bool:
        """The administrative role-change path. Returns False if user_id is unknown."""
        _validate_role(role)
        with self.engine.begin() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(role=role, updated_at=_now_iso())
            )
        return result.rowcount > 0

    def delete_user(self, user_id: str) -> bool:
        """Permanently delete a user record. Returns True if deleted.

        Callers must check self-deletion and last-admin invariants first.
        Sessions that still reference the id fail on their next request
        (the session codec raises UserNotFound).
        """
        with self.engine.begin() as conn:
            result = conn.execute(_users.delete().where(_users.c.id == user_id))
        return result.rowcount > 0

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mapper (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        hashed_password=row.hashed_password,
        email=row.email,
        first_name=row.first_name,
        last_name=row.last_name,
        profile_image_url=row.profile_image_url,
        role=row.role,
        is_active=bool(row.is_active),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
