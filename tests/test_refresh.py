"""
tests/test_refresh.py -- Unit tests for auth/refresh.py (TokenRefreshManager).

The verifier is replaced by a stub that counts refresh calls, so these tests
pin down exactly when the provider is contacted.

Coverage:
  - fresh principal: returned unchanged, zero provider calls
  - boundary: now == expires_at is still fresh
  - expired without refresh token: NoRefreshToken, zero provider calls
  - expired with refresh token: new principal; the input is untouched
  - provider failure: RefreshFailed; the input is untouched
  - refresh that changes the subject is rejected
"""

from __future__ import annotations

import asyncio
from dataclasses import replace

import pytest

from auth.errors import NoRefreshToken, RefreshFailed
from auth.models import FederatedPrincipal
from auth.refresh import TokenRefreshManager

NOW = 1_700_000_000


class StubVerifier:
    def __init__(self, result: FederatedPrincipal | None = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error
        self.calls = 0

    async def refresh(self, principal: FederatedPrincipal) -> FederatedPrincipal:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.result is not None:
            return self.result
        return replace(principal, access_token="a-new", refresh_token="r-new", expires_at=NOW + 3600)


def _principal(expires_at: int, refresh_token: str | None = "r-old") -> FederatedPrincipal:
    return FederatedPrincipal(
        claims={"sub": "idp|1", "exp": expires_at},
        access_token="a-old",
        refresh_token=refresh_token,
        expires_at=expires_at,
    )


def _manager(verifier) -> TokenRefreshManager:
    return TokenRefreshManager(verifier, clock=lambda: float(NOW))


class TestEnsureFresh:
    def test_fresh_principal_needs_no_network(self) -> None:
        stub = StubVerifier()
        principal = _principal(NOW + 60)
        result = asyncio.run(_manager(stub).ensure_fresh(principal))
        assert result is principal
        assert stub.calls == 0

    def test_expiry_instant_is_still_fresh(self) -> None:
        stub = StubVerifier()
        principal = _principal(NOW)
        assert asyncio.run(_manager(stub).ensure_fresh(principal)) is principal
        assert stub.calls == 0

    def test_repeated_calls_on_fresh_principal_are_idempotent(self) -> None:
        stub = StubVerifier()
        manager = _manager(stub)
        principal = _principal(NOW + 60)
        first = asyncio.run(manager.ensure_fresh(principal))
        second = asyncio.run(manager.ensure_fresh(first))
        assert first is second is principal
        assert stub.calls == 0

    def test_expired_without_refresh_token(self) -> None:
        stub = StubVerifier()
        with pytest.raises(NoRefreshToken):
            asyncio.run(_manager(stub).ensure_fresh(_principal(NOW - 1, refresh_token=None)))
        assert stub.calls == 0

    def test_expired_with_refresh_token_returns_new_principal(self) -> None:
        stub = StubVerifier()
        original = _principal(NOW - 1)
        refreshed = asyncio.run(_manager(stub).ensure_fresh(original))

        assert stub.calls == 1
        assert refreshed is not original
        assert refreshed.access_token == "a-new"
        assert refreshed.refresh_token == "r-new"
        assert refreshed.expires_at == NOW + 3600
        # The input principal is immutable and unchanged.
        assert original.access_token == "a-old"
        assert original.expires_at == NOW - 1

    def test_provider_failure_leaves_principal_untouched(self) -> None:
        stub = StubVerifier(error=RefreshFailed())
        original = _principal(NOW - 1)
        with pytest.raises(RefreshFailed):
            asyncio.run(_manager(stub).ensure_fresh(original))
        assert original.expires_at == NOW - 1
        assert original.refresh_token == "r-old"

    def test_refresh_returning_another_subject_is_rejected(self) -> None:
        other = FederatedPrincipal(claims={"sub": "idp|2", "exp": NOW + 3600}, access_token="x", expires_at=NOW + 3600)
        with pytest.raises(RefreshFailed):
            asyncio.run(_manager(StubVerifier(result=other)).ensure_fresh(_principal(NOW - 1)))

    def test_no_verifier_configured(self) -> None:
        """Federated login switched off after the session began."""
        with pytest.raises(RefreshFailed):
            asyncio.run(_manager(None).ensure_fresh(_principal(NOW - 1)))

    def test_is_fresh(self) -> None:
        manager = _manager(None)
        assert manager.is_fresh(_principal(NOW + 1))
        assert not manager.is_fresh(_principal(NOW - 1))
