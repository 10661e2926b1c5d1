"""
api/routes/users.py -- User management and audit trail endpoints (admin only).

Routes (mounted under /api):
  GET    /users              -- list accounts (?role= filter)
  POST   /users              -- create a local pentester or client account
  PUT    /users/{user_id}    -- update profile, password, role or active flag
  DELETE /users/{user_id}    -- delete an account
  GET    /audit-logs         -- recent audit entries (?user_id=, ?limit=)

[M4] Lock-out guards:
  - an admin cannot demote, deactivate or delete their own account
  - the last active admin cannot be demoted or deactivated

Role changes apply on the target's next request: the gate re-reads the user
record every time, so no session needs to be touched here.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response
from sqlalchemy.exc import IntegrityError

from api.models import AuditEntryResponse, RoleEnum, UserCreate, UserResponse, UserUpdate
from auth.audit import AuditLog
from auth.dependencies import require_admin
from auth.models import User
from auth.passwords import hash_password
from auth.provisioning import create_local_user
from auth.store import UserStore

logger = logging.getLogger("pentrack.api.users")

router = APIRouter()


def _bad_request(code: str, message: str) -> HTTPException:
    return HTTPException(status_code=400, detail={"code": code, "message": message})


def _not_found() -> HTTPException:
    return HTTPException(status_code=404, detail={"code": "not_found", "message": "User not found."})


@router.get("/users", response_model=list[UserResponse])
async def list_users(
    request: Request,
    role: Optional[RoleEnum] = None,
    current_user: User = Depends(require_admin),
) -> list[UserResponse]:
    """List user accounts, admins first. Admin only."""
    user_store: UserStore = request.app.state.user_store
    users = user_store.get_by_role(role.value) if role else user_store.list_users()
    return [UserResponse.from_user(u) for u in users]


@router.post("/users", response_model=UserResponse, status_code=201)
async def create_user(
    request: Request,
    body: UserCreate,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Create a username/password account. Admin only."""
    user_store: UserStore = request.app.state.user_store
    audit: AuditLog = request.app.state.audit

    if user_store.get_by_username(body.username) is not None:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that username already exists."},
        )
    try:
        user = create_local_user(
            user_store,
            body.username,
            body.password,
            body.role,
            email=body.email,
            first_name=body.first_name,
            last_name=body.last_name,
        )
    except IntegrityError as exc:
        raise HTTPException(
            status_code=409,
            detail={"code": "conflict", "message": "A user with that username already exists."},
        ) from exc

    audit.record("created", "user", user_id=current_user.id, resource_id=user.id, details={"role": user.role})
    return UserResponse.from_user(user)


@router.put("/users/{user_id}", response_model=UserResponse)
async def update_user(
    request: Request,
    user_id: str,
    body: UserUpdate,
    current_user: User = Depends(require_admin),
) -> UserResponse:
    """Update an account. Admin only. Omitted fields are left unchanged."""
    user_store: UserStore = request.app.state.user_store
    audit: AuditLog = request.app.state.audit

    target = user_store.get_by_id(user_id)
    if target is None:
        raise _not_found()

    is_self = target.id == current_user.id
    demoting = body.role is not None and body.role.value != target.role and target.role == "admin"
    deactivating = body.is_active is False and target.is_active

    if is_self and demoting:
        raise _bad_request("self_demotion", "You cannot change your own role.")
    if is_self and deactivating:
        raise _bad_request("self_deactivation", "You cannot deactivate your own account.")
    if (demoting or deactivating) and target.role == "admin" and target.is_active:
        if user_store.count_admins(active_only=True) <= 1:
            raise _bad_request("last_admin", "Cannot remove the last active admin account.")

    profile = body.model_dump(include={"email", "first_name", "last_name", "is_active"}, exclude_none=True)
    if body.password is not None:
        profile["hashed_password"] = hash_password(body.password)
    role_change = body.role.value if body.role is not None and body.role.value != target.role else None

    if not profile and role_change is None:
        raise _bad_request("no_changes", "No fields to update.")

    if profile:
        user_store.update_user(user_id, **profile)
    if role_change is not None:
        user_store.update_user_role(user_id, role_change)
        logger.info("User %s changed role of %s: %s -> %s", current_user.id, user_id, target.role, role_change)

    # Audit field names only, never the new hash.
    changed = sorted("password" if f == "hashed_password" else f for f in profile)
    details: dict = {"fields": changed}
    if role_change is not None:
        details["role"] = {"from": target.role, "to": role_change}
    audit.record("updated", "user", user_id=current_user.id, resource_id=user_id, details=details)

    updated = user_store.get_by_id(user_id)
    if updated is None:
        raise _not_found()
    return UserResponse.from_user(updated)


@router.delete("/users/{user_id}", status_code=204)
async def delete_user(
    request: Request,
    user_id: str,
    current_user: User = Depends(require_admin),
) -> Response:
    """Delete an account. Admin only.

    Open sessions of the deleted user fail with 401 on their next request.
    """
    user_store: UserStore = request.app.state.user_store
    audit: AuditLog = request.app.state.audit

    if user_id == current_user.id:
        raise _bad_request("self_deletion", "You cannot delete your own account.")
    target = user_store.get_by_id(user_id)
    if target is None:
        raise _not_found()
    if target.role == "admin" and target.is_active and user_store.count_admins(active_only=True) <= 1:
        raise _bad_request("last_admin", "Cannot remove the last active admin account.")

    user_store.delete_user(user_id)
    audit.record("deleted", "user", user_id=current_user.id, resource_id=user_id, details={"role": target.role})
    return Response(status_code=204)


@router.get("/audit-logs", response_model=list[AuditEntryResponse])
async def list_audit_logs(
    request: Request,
    user_id: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=500),
    current_user: User = Depends(require_admin),
) -> list[AuditEntryResponse]:
    """Most recent audit entries first, optionally only those by one actor. Admin only."""
    audit: AuditLog = request.app.state.audit
    entries = audit.for_user(user_id, limit) if user_id else audit.recent(limit)
    return [AuditEntryResponse.from_entry(e) for e in entries]
