"""
auth/gate.py -- Request-level access control.

Two orthogonal checks, run in order by auth/dependencies.py:

  authorize(session_id)            "is this request's principal valid now?"
      no cookie / no stored record      -> NoSession
      record not a known variant        -> NoSession (record discarded)
      local record, user deleted        -> UserNotFound (record discarded)
      federated, refresh impossible     -> SessionExpired (record kept as is)
      otherwise                         -> AuthorizedSession

  check_role(principal, roles)     "may this principal call this operation?"
      re-reads the user record on every call; a role change by an admin
      takes effect on the target's very next request.

Local sessions carry no expiry of their own. They live exactly as long as the
session store's sliding TTL, which authorize() extends on every success.

A refreshed federated principal is persisted inside asyncio.shield(): if the
client disconnects mid-refresh the grant still completes and the rotated
refresh token is stored, so the session never falls out of step with the
provider.

Verdicts depend only on (stored record, clock, stored user); the clock is
injected through TokenRefreshManager.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Optional

from auth import session_codec
from auth.errors import (
    AccountDisabled,
    Forbidden,
    NoRefreshToken,
    NoSession,
    RefreshFailed,
    SessionDecodeError,
    SessionExpired,
    UserNotFound,
)
from auth.models import FederatedPrincipal, Principal, User
from auth.refresh import TokenRefreshManager
from auth.store import UserStore
from sessions.store import SessionStore, new_session_id

logger = logging.getLogger("pentrack.auth.gate")


@dataclass(frozen=True)
class AuthorizedSession:
    session_id: str
    principal: Principal
    refreshed: bool = False


class AccessControlGate:
    def __init__(
        self,
        session_store: SessionStore,
        user_store: UserStore,
        refresh_manager: TokenRefreshManager,
        session_ttl: int,
    ) -> None:
        self._sessions = session_store
        self._users = user_store
        self._refresh = refresh_manager
        self.session_ttl = session_ttl

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def establish_session(self, principal: Principal, previous_session_id: Optional[str] = None) -> str:
        """Persist a freshly authenticated principal under a NEW session id.

        Any previous session id is destroyed first so a pre-login id can
        never be promoted to an authenticated one (session fixation).
        """
        if previous_session_id:
            self._sessions.delete(previous_session_id)
        record = session_codec.serialize(principal)
        session_id = new_session_id()
        self._sessions.save(session_id, record, self.session_ttl)
        return session_id

    def end_session(self, session_id: Optional[str]) -> None:
        if session_id:
            self._sessions.delete(session_id)

    # ------------------------------------------------------------------
    # Gate 1: validity
    # ------------------------------------------------------------------

    async def authorize(self, session_id: Optional[str]) -> AuthorizedSession:
        if not session_id:
            raise NoSession()
        record = self._sessions.load(session_id)
        if record is None:
            raise NoSession()

        try:
            principal = session_codec.deserialize(record, self._users)
        except SessionDecodeError as exc:
            self._sessions.delete(session_id)
            raise NoSession() from exc
        except UserNotFound:
            self._sessions.delete(session_id)
            raise

        if isinstance(principal, FederatedPrincipal) and not self._refresh.is_fresh(principal):
            try:
                refreshed = await asyncio.shield(self._refresh_and_persist(session_id, principal))
            except (NoRefreshToken, RefreshFailed) as exc:
                logger.info("Federated session for sub=%s expired (%s)", principal.subject, exc.code)
                raise SessionExpired() from exc
            return AuthorizedSession(session_id, refreshed, refreshed=True)

        self._sessions.touch(session_id, self.session_ttl)
        return AuthorizedSession(session_id, principal)

    async def _refresh_and_persist(self, session_id: str, principal: FederatedPrincipal) -> FederatedPrincipal:
        refreshed = await self._refresh.ensure_fresh(principal)
        if not self._sessions.replace(session_id, session_codec.serialize(refreshed), self.session_ttl):
            # Ended (logout, user deleted) while the refresh grant was in flight.
            logger.info("Dropping refreshed tokens for sub=%s: session ended", principal.subject)
            raise NoSession()
        return refreshed

    # ------------------------------------------------------------------
    # Gate 2: role
    # ------------------------------------------------------------------

    def check_role(self, principal: Principal, roles: Optional[Iterable[str]] = None) -> User:
        """Return the principal's current user record if its role is allowed.

        roles=None means any authenticated, active user.
        """
        user = self._users.get_by_id(principal.user_id)
        if user is None:
            raise UserNotFound()
        if not user.is_active:
            raise AccountDisabled()
        if roles is not None:
            allowed = frozenset(roles)
            if user.role not in allowed:
                logger.info("Denied %s (role=%s, required=%s)", user.id, user.role, sorted(allowed))
                raise Forbidden()
        return user
