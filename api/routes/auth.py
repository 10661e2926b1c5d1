"""
api/routes/auth.py -- Login, logout and session endpoints.

Routes (mounted under /api):
  POST /local-login        -- username/password login; opens a session
  GET  /login              -- redirect to the identity provider (?role= hint)
  GET  /login/{role}       -- same, with the role hint in the path
  GET  /callback           -- provider redirect target; opens a session
  GET  /logout             -- ends the session; redirects to provider logout
  GET|POST /dev-login      -- development deployments only (GET reads ?userId=&role=)
  GET  /auth/user          -- current user record (requires auth)

Security:
  [H2] POST /local-login is rate-limited per client IP (LOGIN_RATE_LIMIT).
  [C1] validate_credentials() provides timing equalization -- use it, never inline.
  [M5] Cache-Control: no-store on every response that sets a session cookie.
  [R1] The intended-role hint is always stashed but only honoured when
       ENVIRONMENT=development, and only for accounts that do not exist yet.
  Session fixation: every successful login issues a brand-new session id.
"""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from api.limiter import limiter, login_rate_limit
from api.models import DevLoginRequest, LocalLoginRequest, LoginResponse, RoleEnum, UserResponse
from auth.audit import AuditLog
from auth.dependencies import get_current_user, session_id_from
from auth.errors import AuthError, DiscoveryError, TokenExchangeError
from auth.gate import AccessControlGate
from auth.models import LocalPrincipal, User
from auth.oidc import FederatedTokenVerifier
from auth.passwords import validate_credentials
from auth.provisioning import get_or_create_dev_user, provision_federated_user
from auth.store import UserStore
from core.config import Settings

logger = logging.getLogger("pentrack.api.auth")

# Auth policy:
# - POST /api/local-login:   public -- login endpoint must be unauthenticated
# - GET  /api/login[/role]:  public -- starts the provider redirect
# - GET  /api/callback:      public -- provider redirect target
# - GET  /api/logout:        public -- ending a session needs no prior auth
# - GET/POST /api/dev-login: public, 404 outside development
# - GET  /api/auth/user:     requires auth (get_current_user)
router = APIRouter()

_INTENDED_ROLE = "intended_role"
_OIDC_STATE = "oidc_state"
_OIDC_NONCE = "oidc_nonce"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _set_session_cookie(response: Response, settings: Settings, session_id: str) -> None:
    """Write the session id as an httpOnly cookie.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": sent on top-level navigations (needed for the provider
        redirect back to /api/callback) but not on cross-site POST.
    secure: only sent over HTTPS when SECURE_COOKIES=true.
    max_age: matches the session store TTL.
    """
    response.set_cookie(
        settings.session_cookie_name,
        value=session_id,
        httponly=True,
        samesite="lax",
        secure=settings.secure_cookies,
        max_age=settings.session_ttl_seconds,
    )
    response.headers["Cache-Control"] = "no-store"  # [M5]


def _client_meta(request: Request) -> dict[str, Optional[str]]:
    return {
        "ip_address": request.client.host if request.client else None,
        "user_agent": request.headers.get("User-Agent"),
    }


def _verifier(request: Request) -> FederatedTokenVerifier:
    verifier: Optional[FederatedTokenVerifier] = request.app.state.verifier
    if verifier is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "oidc_disabled", "message": "Federated login is not configured."},
        )
    return verifier


def _redirect_uri(request: Request) -> str:
    settings: Settings = request.app.state.settings
    return settings.oidc_redirect_uri or str(request.url_for("oidc_callback"))


def _open_local_session(request: Request, user: User, message: str) -> JSONResponse:
    gate: AccessControlGate = request.app.state.gate
    audit: AuditLog = request.app.state.audit
    session_id = gate.establish_session(LocalPrincipal(user_id=user.id, user=user), session_id_from(request))
    audit.record("login", "session", user_id=user.id, details={"method": "local"}, **_client_meta(request))
    resp = JSONResponse(
        status_code=200,
        content=LoginResponse(message=message, user=UserResponse.from_user(user)).model_dump(mode="json"),
    )
    _set_session_cookie(resp, request.app.state.settings, session_id)
    return resp


# ---------------------------------------------------------------------------
# Local login
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/local-login", response_model=LoginResponse)
def local_login(request: Request, body: LocalLoginRequest) -> JSONResponse:
    """Authenticate with username and password; set the session cookie.

    Unknown username and wrong password produce the same 401 body. A
    disabled account gets its own message, but only after the password
    checked out.
    """
    user_store: UserStore = request.app.state.user_store
    try:
        user = validate_credentials(user_store, body.username, body.password)
    except AuthError as exc:
        logger.info("Local login failed for %r: %s", body.username, exc.code)
        resp = JSONResponse(status_code=exc.status_code, content=exc.to_dict())
        resp.headers["Cache-Control"] = "no-store"  # [M5]
        return resp
    return _open_local_session(request, user, "Login successful")


def _dev_login(request: Request, body: DevLoginRequest) -> JSONResponse:
    settings: Settings = request.app.state.settings
    if not settings.is_development:
        raise HTTPException(status_code=404, detail={"code": "not_found", "message": "Not found."})
    user_store: UserStore = request.app.state.user_store
    role = body.role.value if body.role else None
    user = get_or_create_dev_user(user_store, body.user_id, role)
    return _open_local_session(request, user, "Login successful")


@router.post("/dev-login", response_model=LoginResponse)
def dev_login(request: Request, body: Optional[DevLoginRequest] = None) -> JSONResponse:
    """Open a session for an arbitrary user id without credentials.

    Exists for local development and demos. Any deployment not explicitly
    marked ENVIRONMENT=development answers 404, as if the route did not exist.
    """
    return _dev_login(request, body or DevLoginRequest())


@router.get("/dev-login", response_model=LoginResponse)
def dev_login_link(
    request: Request,
    user_id: str = Query(default="dev-user", alias="userId", min_length=1, max_length=255),
    role: Optional[RoleEnum] = None,
) -> JSONResponse:
    """Same as POST /dev-login, with userId and role in the query string."""
    return _dev_login(request, DevLoginRequest(user_id=user_id, role=role))


# ---------------------------------------------------------------------------
# Federated login
# ---------------------------------------------------------------------------


async def _begin_federated_login(request: Request, role: Optional[str]) -> RedirectResponse:
    verifier = _verifier(request)
    if role:
        request.session[_INTENDED_ROLE] = role
    url, state, nonce = await verifier.authorization_url(_redirect_uri(request))
    request.session[_OIDC_STATE] = state
    request.session[_OIDC_NONCE] = nonce
    return RedirectResponse(url, status_code=302)


@router.get("/login")
async def login(request: Request, role: Optional[RoleEnum] = None) -> RedirectResponse:
    """Redirect the browser to the provider's authorization endpoint."""
    return await _begin_federated_login(request, role.value if role else None)


@router.get("/login/{role}")
async def login_as(request: Request, role: RoleEnum) -> RedirectResponse:
    """Role-specific entry point: /api/login/admin, /pentester, /client."""
    return await _begin_federated_login(request, role.value)


@router.get("/callback", name="oidc_callback")
async def callback(request: Request) -> RedirectResponse:
    """Handle the provider redirect and open a federated session.

    Flow:
      1. Pop state, nonce and role hint from the signed session (single use).
      2. Exchange the code; the verifier checks state, signature and nonce.
      3. Provision the user: new subjects get a role, returning subjects
         keep theirs [R2].
      4. Reject disabled accounts.
      5. Store the principal under a new session id, redirect to /.
    Any exchange failure sends the browser back to /api/login.
    """
    verifier = _verifier(request)
    settings: Settings = request.app.state.settings
    user_store: UserStore = request.app.state.user_store
    gate: AccessControlGate = request.app.state.gate
    audit: AuditLog = request.app.state.audit

    expected_state = request.session.pop(_OIDC_STATE, None)
    nonce = request.session.pop(_OIDC_NONCE, None)
    intended_role = request.session.pop(_INTENDED_ROLE, None)

    try:
        principal = await verifier.exchange_authorization_result(
            request.query_params, _redirect_uri(request), expected_state, nonce
        )
    except (TokenExchangeError, DiscoveryError) as exc:
        logger.warning("Federated login failed: %s", exc.code)
        return RedirectResponse("/api/login", status_code=302)

    user, created = provision_federated_user(
        user_store, principal.claims, intended_role, honor_hint=settings.is_development
    )
    if created:
        audit.record("created", "user", user_id=user.id, resource_id=user.id, details={"role": user.role})

    if not user.is_active:
        logger.info("Federated login refused for disabled user %s", user.id)
        return RedirectResponse("/?error=account_disabled", status_code=302)

    session_id = gate.establish_session(principal, session_id_from(request))
    audit.record("login", "session", user_id=user.id, details={"method": "oidc"}, **_client_meta(request))
    resp = RedirectResponse("/", status_code=302)
    _set_session_cookie(resp, settings, session_id)
    return resp


@router.get("/logout")
async def logout(request: Request) -> RedirectResponse:
    """Destroy the session and send the browser to the provider's logout page.

    Falls back to / when federated login is off or the provider publishes
    no end-session endpoint.
    """
    settings: Settings = request.app.state.settings
    gate: AccessControlGate = request.app.state.gate
    audit: AuditLog = request.app.state.audit

    session_id = session_id_from(request)
    if session_id:
        gate.end_session(session_id)
        audit.record("logout", "session", **_client_meta(request))
    request.session.clear()

    target = "/"
    verifier: Optional[FederatedTokenVerifier] = request.app.state.verifier
    if verifier is not None:
        post_logout = settings.post_logout_redirect_uri or str(request.base_url)
        target = await verifier.end_session_url(post_logout) or "/"

    resp = RedirectResponse(target, status_code=302)
    resp.delete_cookie(settings.session_cookie_name)
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/user", response_model=UserResponse)
async def current_user(user: User = Depends(get_current_user)) -> UserResponse:
    """Return the authenticated user's record, for both local and federated sessions."""
    return UserResponse.from_user(user)
