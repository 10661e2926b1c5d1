"""
auth/provisioning.py -- Role assignment and account creation.

Every path that creates a user goes through resolve_new_user_role():
the OIDC callback, the development login, the admin API and the CLI.

Role assignment rule:
  1. While no admin exists, the new account is an admin, whatever was asked.
  2. Otherwise an intended-role hint is honoured only when the caller says so
     (development deployments, or an admin creating the account).
  3. Otherwise the account is a client.

Returning federated users keep their stored role. provision_federated_user()
refreshes profile fields only, and UserStore.upsert_user() ignores the role
argument for existing rows [R2].

Two concurrent first logins can both observe "no admin yet" and both become
admins. That matches the single-instance deployment this targets; it is not
guarded with a lock.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Optional

from auth.models import ROLES, User
from auth.passwords import hash_password
from auth.store import UserStore

logger = logging.getLogger("pentrack.auth.provisioning")


def resolve_new_user_role(store: UserStore, intended_role: Optional[str], honor_hint: bool) -> str:
    """Pick the role for an account that does not exist yet."""
    if not store.has_admin():
        return "admin"
    if honor_hint and intended_role in ROLES:
        return intended_role
    return "client"


def profile_from_claims(claims: Mapping[str, Any]) -> dict[str, Optional[str]]:
    """Map id_token claims onto the mutable profile columns.

    Accepts both the standard OIDC names (given_name, family_name, picture)
    and the flat names some providers emit (first_name, last_name,
    profile_image_url).
    """
    return {
        "email": claims.get("email"),
        "first_name": claims.get("first_name") or claims.get("given_name"),
        "last_name": claims.get("last_name") or claims.get("family_name"),
        "profile_image_url": claims.get("profile_image_url") or claims.get("picture"),
    }


def provision_federated_user(
    store: UserStore,
    claims: Mapping[str, Any],
    intended_role: Optional[str] = None,
    honor_hint: bool = False,
) -> tuple[User, bool]:
    """Create or refresh the user record for a federated login.

    Returns (user, created). The record is keyed by the `sub` claim.
    """
    user_id = str(claims["sub"])
    profile = profile_from_claims(claims)
    existing = store.get_by_id(user_id)
    if existing is not None:
        if intended_role and intended_role != existing.role:
            logger.info("Ignoring role hint %r for returning user %s", intended_role, user_id)
        return store.upsert_user(user_id, existing.role, **profile), False

    role = resolve_new_user_role(store, intended_role, honor_hint)
    user = store.upsert_user(user_id, role, **profile)
    logger.info("Provisioned federated user %s with role %s", user_id, role)
    return user, True


def create_local_user(
    store: UserStore,
    username: str,
    password: str,
    role: str,
    **profile: Optional[str],
) -> User:
    """Create a username/password account.

    The requested role is subject to the first-user rule. Raises
    sqlalchemy.exc.IntegrityError if the username is taken.
    """
    if role not in ROLES:
        raise ValueError(f"Unknown role: {role!r}")
    effective_role = resolve_new_user_role(store, role, honor_hint=True)
    user_id = store.create_user(
        User(
            id="",
            username=username,
            hashed_password=hash_password(password),
            role=effective_role,
            email=profile.get("email"),
            first_name=profile.get("first_name"),
            last_name=profile.get("last_name"),
        )
    )
    user = store.get_by_id(user_id)
    if user is None:
        # Deleted by a concurrent request between insert and read-back.
        raise LookupError(f"User {user_id} was removed before it could be returned")
    logger.info("Created local user %r with role %s", username, effective_role)
    return user


def get_or_create_dev_user(store: UserStore, user_id: str, intended_role: Optional[str]) -> User:
    """Development login: load the user, or create a placeholder account."""
    existing = store.get_by_id(user_id)
    if existing is not None:
        return existing
    role = resolve_new_user_role(store, intended_role, honor_hint=True)
    return store.upsert_user(
        user_id,
        role,
        email=f"{user_id}@dev.local",
        first_name="Dev",
        last_name="User",
    )
