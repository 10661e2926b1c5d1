"""
tests/conftest.py -- Shared test fixtures for PenTrack auth tests.

This module provides:
  - make_user_store() / make_session_store(): isolated in-memory DBs
  - FakeProvider: an OpenID Connect provider behind httpx.MockTransport
  - _patch_lifespan(): wires test collaborators into app.state
  - app_env: TestClient on the real app with fresh stores per test

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. Every store gets a unique name so tests never share rows.

Environment variables must be set before any api/ or core/ import:
api/main.py reads get_settings() at import time to configure middleware.
"""

from __future__ import annotations

import asyncio
import base64
import hashlib
import os
import time
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import parse_qs

# CRITICAL: Set before any auth/core/api import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("ENVIRONMENT", "development")
os.environ.setdefault("SECRET_KEY", "test-secret-key-that-is-at-least-32-characters")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver", "localhost"]')

import httpx
import pytest
from fastapi.testclient import TestClient
from jose import jwt
from jose.utils import calculate_at_hash

from api.limiter import limiter
from api.main import app
from auth.audit import AuditLog
from auth.gate import AccessControlGate
from auth.oidc import FederatedTokenVerifier, ProviderConfigCache
from auth.refresh import TokenRefreshManager
from auth.store import UserStore
from core.config import get_settings
from sessions.store import SessionStore

# Rate limits are covered by slowapi itself; tests log in many times per IP.
limiter.enabled = False

ISSUER = "https://idp.test"
CLIENT_ID = "pentrack-web"
SIGNING_SECRET = "fake-provider-signing-secret-0123456789"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _memory_url(prefix: str) -> str:
    return f"sqlite:///file:{prefix}_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true"


def make_user_store() -> UserStore:
    return UserStore(db_url=_memory_url("test_users"))


def make_session_store(clock=time.time) -> SessionStore:
    return SessionStore(db_url=_memory_url("test_sessions"), clock=clock)


class FakeClock:
    """Settable clock shared by the stores and refresh manager under test."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def user_store() -> Generator[UserStore, None, None]:
    store = make_user_store()
    yield store
    store.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_store(clock) -> Generator[SessionStore, None, None]:
    store = make_session_store(clock)
    yield store
    store.close()


# ---------------------------------------------------------------------------
# Fake identity provider
# ---------------------------------------------------------------------------


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


@dataclass
class FakeProvider:
    """In-process OpenID Connect provider.

    Signs id_tokens with HS256 and publishes the secret as an "oct" JWK, so
    the verifier's real python-jose path runs end to end. Serve it to the
    code under test with `transport=provider.transport`.
    """

    issuer: str = ISSUER
    client_id: str = CLIENT_ID
    signing_secret: str = SIGNING_SECRET
    end_session: bool = True
    token_lifetime: int = 3600
    rotate_refresh_tokens: bool = True
    fail_discovery: bool = False
    fail_refresh: bool = False
    refresh_id_token: bool = False  # return a fresh id_token from the refresh grant
    refresh_claims: dict[str, Any] = field(default_factory=dict)  # overrides for that id_token
    codes: dict[str, dict[str, Any]] = field(default_factory=dict)
    grants: dict[str, dict[str, Any]] = field(default_factory=dict)  # refresh token -> claims
    discovery_calls: int = 0
    token_calls: int = 0
    refresh_calls: int = 0
    _issued: int = 0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def jwks(self) -> dict[str, Any]:
        return {"keys": [{"kty": "oct", "k": _b64url(self.signing_secret.encode()), "alg": "HS256"}]}

    def discovery(self) -> dict[str, Any]:
        meta = {
            "issuer": self.issuer,
            "authorization_endpoint": f"{self.issuer}/authorize",
            "token_endpoint": f"{self.issuer}/token",
            "jwks_uri": f"{self.issuer}/jwks",
            "id_token_signing_alg_values_supported": ["HS256"],
        }
        if self.end_session:
            meta["end_session_endpoint"] = f"{self.issuer}/logout"
        return meta

    def issue_code(self, sub: str, nonce: Optional[str] = None, **claims: Any) -> str:
        """Register an authorization code that will log in `sub`."""
        code = uuid.uuid4().hex
        self.codes[code] = {"sub": sub, "nonce": nonce, **claims}
        return code

    def id_token(self, claims: dict[str, Any], access_token: str, secret: Optional[str] = None) -> str:
        now = int(time.time())
        payload = {
            "iss": self.issuer,
            "aud": self.client_id,
            "iat": now,
            "exp": now + self.token_lifetime,
            "at_hash": calculate_at_hash(access_token, hashlib.sha256),
            **{k: v for k, v in claims.items() if v is not None},
        }
        return jwt.encode(payload, secret or self.signing_secret, algorithm="HS256")

    def _tokens(self, claims: dict[str, Any], with_id_token: bool = True, **extra: Any) -> dict[str, Any]:
        self._issued += 1
        access_token = f"access-{self._issued}"
        body: dict[str, Any] = {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": self.token_lifetime,
            **extra,
        }
        if with_id_token:
            body["id_token"] = self.id_token(claims, access_token)
        return body

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/.well-known/openid-configuration":
            self.discovery_calls += 1
            if self.fail_discovery:
                return httpx.Response(500, text="unavailable")
            return httpx.Response(200, json=self.discovery())
        if path == "/jwks":
            return httpx.Response(200, json=self.jwks())
        if path == "/token":
            self.token_calls += 1
            form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
            if form.get("grant_type") == "authorization_code":
                claims = self.codes.pop(form.get("code", ""), None)
                if claims is None:
                    return httpx.Response(400, json={"error": "invalid_grant"})
                refresh_token = f"refresh-{uuid.uuid4().hex}"
                self.grants[refresh_token] = {k: v for k, v in claims.items() if k != "nonce"}
                return httpx.Response(200, json=self._tokens(claims, refresh_token=refresh_token))
            if form.get("grant_type") == "refresh_token":
                self.refresh_calls += 1
                if self.fail_refresh:
                    return httpx.Response(400, json={"error": "invalid_grant"})
                claims = self.grants.get(form.get("refresh_token", ""))
                if claims is None:
                    return httpx.Response(400, json={"error": "invalid_grant"})
                extra = {}
                if self.rotate_refresh_tokens:
                    extra["refresh_token"] = f"refresh-{uuid.uuid4().hex}"
                    self.grants[extra["refresh_token"]] = self.grants.pop(form["refresh_token"])
                body = self._tokens({**claims, **self.refresh_claims}, with_id_token=self.refresh_id_token, **extra)
                return httpx.Response(200, json=body)
            return httpx.Response(400, json={"error": "unsupported_grant_type"})
        return httpx.Response(404)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


def make_verifier(provider: FakeProvider, clock=time.time, ttl_seconds: int = 3600) -> FederatedTokenVerifier:
    cache = ProviderConfigCache(provider.issuer, ttl_seconds=ttl_seconds, clock=clock, transport=provider.transport)
    return FederatedTokenVerifier(
        cache,
        provider.client_id,
        "client-secret",
        transport=provider.transport,
        clock=clock,
    )


@pytest.fixture
def verifier(provider) -> FederatedTokenVerifier:
    return make_verifier(provider)


@pytest.fixture
def verifier_factory(provider):
    """Build a verifier against the fake provider with a custom clock or TTL."""

    def factory(clock=time.time, ttl_seconds: int = 3600) -> FederatedTokenVerifier:
        return make_verifier(provider, clock=clock, ttl_seconds=ttl_seconds)

    return factory


# ---------------------------------------------------------------------------
# Application fixtures
# ---------------------------------------------------------------------------


@dataclass
class AppEnv:
    client: TestClient
    user_store: UserStore
    session_store: SessionStore
    audit: AuditLog
    provider: FakeProvider

    def browser(self) -> TestClient:
        """A second, cookie-isolated client on the same running app."""
        return TestClient(self.client.app, follow_redirects=False)


def _patch_lifespan(user_store: UserStore, session_store: SessionStore, verifier: FederatedTokenVerifier):
    """Return an async context manager that replaces the real lifespan.

    The purge_task is a long-sleeping coroutine so shutdown can cancel a
    real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        settings = get_settings()
        app.state.settings = settings
        app.state.user_store = user_store
        app.state.session_store = session_store
        app.state.audit = AuditLog(user_store.engine)
        app.state.verifier = verifier
        app.state.gate = AccessControlGate(
            session_store, user_store, TokenRefreshManager(verifier), settings.session_ttl_seconds
        )
        app.state.purge_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.purge_task.cancel()

    return test_lifespan


@pytest.fixture
def app_env(provider) -> Generator[AppEnv, None, None]:
    """Yield a TestClient on the real app with fresh, empty stores.

    follow_redirects=False so tests can assert on redirect locations, which
    also keeps the client from trying to reach the fake provider's URLs.
    """
    user_store = make_user_store()
    session_store = make_session_store()
    app.router.lifespan_context = _patch_lifespan(user_store, session_store, make_verifier(provider))
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as client:
        yield AppEnv(client, user_store, session_store, client.app.state.audit, provider)
    session_store.close()
    user_store.close()
