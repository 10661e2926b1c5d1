"""
auth/session_codec.py -- Principal <-> stored session record.

Record variants (JSON-compatible dicts, persisted by sessions.store):

  {"type": "oidc", "claims": {...}, "access_token": "...",
   "refresh_token": "..." | absent, "expires_at": 1700000000}

  {"type": "local", "userId": "..."}

serialize() dispatches on the principal's class, never on which attributes
happen to be present. A local record holds only the user id -- no password
hash and no profile data. An oidc record holds live provider tokens and must
be treated as sensitive.

deserialize() is side-effect free apart from one user lookup for local
records. Federated records are self-contained and need no database read.
"""

from __future__ import annotations

import logging
from typing import Any

from auth.errors import SessionDecodeError, UnknownPrincipalShape, UserNotFound
from auth.models import FederatedPrincipal, LocalPrincipal, Principal
from auth.store import UserStore

logger = logging.getLogger("pentrack.auth.session")

OIDC = "oidc"
LOCAL = "local"


def serialize(principal: Principal) -> dict[str, Any]:
    """Return the storable record for a principal.

    Raises UnknownPrincipalShape for anything that is not one of the two
    principal classes. Only a programming error can get here.
    """
    if isinstance(principal, FederatedPrincipal) and principal.kind == OIDC:
        record: dict[str, Any] = {
            "type": OIDC,
            "claims": dict(principal.claims),
            "access_token": principal.access_token,
            "expires_at": principal.expires_at,
        }
        if principal.refresh_token:
            record["refresh_token"] = principal.refresh_token
        return record
    if isinstance(principal, LocalPrincipal) and principal.kind == LOCAL:
        return {"type": LOCAL, "userId": principal.user_id}
    raise UnknownPrincipalShape(f"Cannot serialize principal of type {type(principal).__name__}")


def deserialize(record: Any, store: UserStore) -> Principal:
    """Rebuild a principal from a stored record.

    Raises SessionDecodeError for an unknown or malformed record and
    UserNotFound when a local record references a deleted user.
    """
    if not isinstance(record, dict):
        raise SessionDecodeError()
    kind = record.get("type")
    if kind == OIDC:
        return _federated_from_record(record)
    if kind == LOCAL:
        user_id = record.get("userId")
        if not isinstance(user_id, str) or not user_id:
            raise SessionDecodeError()
        user = store.get_by_id(user_id)
        if user is None:
            logger.info("Session references deleted user %s", user_id)
            raise UserNotFound()
        return LocalPrincipal(user_id=user_id, user=user)
    logger.warning("Unknown session record type %r", kind)
    raise SessionDecodeError()


def _federated_from_record(record: dict[str, Any]) -> FederatedPrincipal:
    claims = record.get("claims")
    access_token = record.get("access_token")
    expires_at = record.get("expires_at")
    refresh_token = record.get("refresh_token")
    if not isinstance(claims, dict) or "sub" not in claims:
        raise SessionDecodeError()
    if not isinstance(access_token, str) or not access_token:
        raise SessionDecodeError()
    # bool is an int subclass; a stored true/false is not an expiry.
    if not isinstance(expires_at, (int, float)) or isinstance(expires_at, bool):
        raise SessionDecodeError()
    if refresh_token is not None and not isinstance(refresh_token, str):
        raise SessionDecodeError()
    return FederatedPrincipal(
        claims=claims,
        access_token=access_token,
        refresh_token=refresh_token or None,
        expires_at=int(expires_at),
    )
