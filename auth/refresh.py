"""
auth/refresh.py -- Keeps federated sessions' access tokens fresh.

ensure_fresh() is the only place that decides whether a federated principal
is still usable:

  now <= expires_at             -> the same principal, no network call
  expired, no refresh_token     -> NoRefreshToken
  expired, refresh_token        -> refresh-token grant; a NEW principal on
                                   success, RefreshFailed otherwise

The input principal is immutable, so a failed refresh cannot leave a half
updated session behind, and two handlers holding the same principal never
observe each other's refresh. Persisting the new principal is the caller's
job (AccessControlGate).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Optional

from auth.errors import NoRefreshToken, RefreshFailed
from auth.models import FederatedPrincipal
from auth.oidc import FederatedTokenVerifier

logger = logging.getLogger("pentrack.auth.refresh")


class TokenRefreshManager:
    def __init__(
        self,
        verifier: Optional[FederatedTokenVerifier],
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._verifier = verifier
        self._clock = clock

    def is_fresh(self, principal: FederatedPrincipal) -> bool:
        return int(self._clock()) <= principal.expires_at

    async def ensure_fresh(self, principal: FederatedPrincipal) -> FederatedPrincipal:
        if self.is_fresh(principal):
            return principal
        if not principal.refresh_token:
            raise NoRefreshToken()
        if self._verifier is None:
            # Federated login has been switched off since this session began.
            raise RefreshFailed()
        refreshed = await self._verifier.refresh(principal)
        if refreshed.subject != principal.subject:
            # A provider must never hand back someone else's identity.
            logger.error("Refresh returned sub=%s for session of sub=%s", refreshed.subject, principal.subject)
            raise RefreshFailed()
        logger.info("Refreshed access token for sub=%s (expires_at=%d)", refreshed.subject, refreshed.expires_at)
        return refreshed
