"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Every protected route is wrapped by the access control gate through these
dependencies:

  get_principal()     -- gate 1. Reads the session cookie and returns the
                         current principal, refreshing federated tokens when
                         needed. Raises NoSession / SessionExpired /
                         UserNotFound (401).
  get_current_user()  -- gate 1 + gate 2 with no role requirement. Returns
                         the freshly loaded User.
  require_roles(...)  -- gate 1 + gate 2 for a role set. Raises Forbidden
                         (403) on mismatch.
  require_admin       -- require_roles("admin").

Failures are raised as AuthError subclasses; api/main.py turns them into
401/403 JSON responses. Route handlers never inspect cookies themselves.

Layer rule: auth/dependencies.py may import from fastapi (for Depends /
Request) because this module is part of the FastAPI dependency injection
system.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Optional

from fastapi import Depends, Request

from auth.gate import AccessControlGate
from auth.models import Principal, User


def _gate(request: Request) -> AccessControlGate:
    return request.app.state.gate


def session_id_from(request: Request) -> Optional[str]:
    """Return the raw session id cookie, or None."""
    return request.cookies.get(request.app.state.settings.session_cookie_name)


async def get_principal(request: Request) -> Principal:
    """Require a valid session. Raises 401 if the request is not authenticated.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(principal: Principal = Depends(get_principal)): ...
    """
    session = await _gate(request).authorize(session_id_from(request))
    request.state.session_id = session.session_id
    request.state.principal = session.principal
    return session.principal


async def get_current_user(request: Request, principal: Principal = Depends(get_principal)) -> User:
    """Require authentication and return the current user record."""
    return _gate(request).check_role(principal)


def require_roles(*roles: str) -> Callable[..., Awaitable[User]]:
    """Build a dependency that admits only the given roles.

    Use as a FastAPI dependency:
        @router.post("/findings")
        async def route(user: User = Depends(require_roles("admin", "pentester"))): ...
    """
    allowed = frozenset(roles)

    async def dependency(request: Request, principal: Principal = Depends(get_principal)) -> User:
        return _gate(request).check_role(principal, allowed)

    return dependency


require_admin = require_roles("admin")
