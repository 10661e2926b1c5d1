"""
auth/oidc.py -- OpenID Connect discovery, code exchange and refresh grant.

Two pieces live here:

  ProviderConfigCache -- the issuer metadata and its signing keys, fetched
      from the discovery document and held for a bounded window
      (OIDC_DISCOVERY_TTL_SECONDS, default one hour). One instance is built in
      the application lifespan and shared by every request. There is no lock:
      two requests that miss the cache at the same moment both fetch, and the
      later write wins. The fetch is idempotent, so that race is harmless.

  FederatedTokenVerifier -- authorization URL construction, the
      authorization-code exchange, the refresh-token grant and the
      end-session URL. The OAuth2 protocol work is done by authlib's
      AsyncOAuth2Client (httpx underneath), so every provider round trip is
      awaited without blocking the event loop.

Security notes:
  [H1] The id_token is verified with python-jose against the provider JWKS:
       signature, issuer, audience (our client id), expiry, at_hash when an
       access token is present, and the nonce stored before the redirect.
       Claims are never read from an unverified token.

  OAuth state (CSRF protection) is generated here, stored by the route in
  the signed Starlette session, and compared in exchange_authorization_result()
  before the code is sent anywhere.

Layer rule: no imports from api/ or sessions/.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from typing import Any, Optional

import httpx
from authlib.common.security import generate_token
from authlib.common.urls import add_params_to_uri
from authlib.integrations.httpx_client import AsyncOAuth2Client, OAuthError
from jose import JWTError, jwt

from auth.errors import DiscoveryError, RefreshFailed, TokenExchangeError
from auth.models import FederatedPrincipal, ProviderConfig

logger = logging.getLogger("pentrack.auth.oidc")

Clock = Callable[[], float]

_DISCOVERY_PATH = "/.well-known/openid-configuration"


def discovery_url_for(issuer_url: str) -> str:
    """Return the discovery document URL for an issuer (idempotent)."""
    if issuer_url.endswith(_DISCOVERY_PATH):
        return issuer_url
    return issuer_url.rstrip("/") + _DISCOVERY_PATH


# ---------------------------------------------------------------------------
# Provider configuration cache
# ---------------------------------------------------------------------------


class ProviderConfigCache:
    """Time-bounded holder for the provider's discovery metadata.

    State is (value, fetched_at); an entry older than ttl_seconds is treated
    as absent. invalidate() drops the entry, e.g. after a signature failure
    that may mean the provider rotated its keys.
    """

    def __init__(
        self,
        issuer_url: str,
        ttl_seconds: int = 3600,
        clock: Clock = time.time,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
    ) -> None:
        self.discovery_url = discovery_url_for(issuer_url)
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._transport = transport
        self._timeout = timeout
        self._entry: Optional[tuple[ProviderConfig, float]] = None

    async def get(self) -> ProviderConfig:
        entry = self._entry
        if entry is not None and self._clock() - entry[1] < self.ttl_seconds:
            return entry[0]
        config = await self._fetch()
        self._entry = (config, self._clock())
        return config

    def invalidate(self) -> None:
        self._entry = None

    async def _fetch(self) -> ProviderConfig:
        try:
            async with httpx.AsyncClient(
                transport=self._transport, timeout=self._timeout, follow_redirects=False
            ) as client:
                resp = await client.get(self.discovery_url, headers={"Accept": "application/json"})
                resp.raise_for_status()
                meta = resp.json()
                jwks_resp = await client.get(meta["jwks_uri"], headers={"Accept": "application/json"})
                jwks_resp.raise_for_status()
                jwks = jwks_resp.json()
            config = ProviderConfig(
                issuer=meta["issuer"],
                authorization_endpoint=meta["authorization_endpoint"],
                token_endpoint=meta["token_endpoint"],
                jwks_uri=meta["jwks_uri"],
                jwks=jwks,
                end_session_endpoint=meta.get("end_session_endpoint"),
                signing_algs=tuple(meta.get("id_token_signing_alg_values_supported") or ("RS256",)),
            )
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as exc:
            logger.warning("OIDC discovery failed for %s: %s", self.discovery_url, exc)
            raise DiscoveryError() from exc
        logger.info("OIDC provider configuration loaded (issuer=%s)", config.issuer)
        return config


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------


class FederatedTokenVerifier:
    """Talks to the identity provider on behalf of the login and refresh flows.

    Usage:
        cache = ProviderConfigCache(settings.oidc_issuer_url)
        verifier = FederatedTokenVerifier(cache, client_id, client_secret)
        url, state, nonce = await verifier.authorization_url(redirect_uri)
        principal = await verifier.exchange_authorization_result(
            request.query_params, redirect_uri, state, nonce)
    """

    def __init__(
        self,
        config_cache: ProviderConfigCache,
        client_id: str,
        client_secret: str = "",
        scope: str = "openid email profile offline_access",
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 10.0,
        clock: Clock = time.time,
    ) -> None:
        self.config_cache = config_cache
        self.client_id = client_id
        self._client_secret = client_secret
        self.scope = scope
        self._transport = transport
        self._timeout = timeout
        self._clock = clock

    def _client(self, redirect_uri: Optional[str] = None) -> AsyncOAuth2Client:
        return AsyncOAuth2Client(
            client_id=self.client_id,
            client_secret=self._client_secret or None,
            scope=self.scope,
            redirect_uri=redirect_uri,
            token_endpoint_auth_method="client_secret_basic" if self._client_secret else "none",
            timeout=self._timeout,
            transport=self._transport,
        )

    async def discover_provider_config(self) -> ProviderConfig:
        return await self.config_cache.get()

    async def authorization_url(self, redirect_uri: str) -> tuple[str, str, str]:
        """Return (url, state, nonce) for the browser redirect.

        The caller stores state and nonce in the signed session; both are
        checked when the provider redirects back.
        """
        config = await self.discover_provider_config()
        nonce = generate_token(32)
        async with self._client(redirect_uri) as client:
            url, state = client.create_authorization_url(
                config.authorization_endpoint,
                nonce=nonce,
                prompt="login consent",
            )
        return url, state, nonce

    async def exchange_authorization_result(
        self,
        callback_params: Mapping[str, str],
        redirect_uri: str,
        expected_state: Optional[str],
        nonce: Optional[str],
    ) -> FederatedPrincipal:
        """Complete the authorization-code flow and build a FederatedPrincipal.

        Raises TokenExchangeError when the provider reported an error, the
        state does not match, the code is rejected, or the id_token fails
        verification. Raises DiscoveryError when the provider metadata cannot
        be loaded.
        """
        if "error" in callback_params:
            logger.warning("OIDC provider returned error %r", callback_params.get("error"))
            raise TokenExchangeError()
        code = callback_params.get("code")
        if not code:
            raise TokenExchangeError("Missing authorization code")
        if not expected_state or callback_params.get("state") != expected_state:
            logger.warning("OIDC callback state mismatch")
            raise TokenExchangeError()

        config = await self.discover_provider_config()
        try:
            async with self._client(redirect_uri) as client:
                token = await client.fetch_token(
                    config.token_endpoint,
                    grant_type="authorization_code",
                    code=code,
                )
        except (OAuthError, httpx.HTTPError, ValueError) as exc:
            logger.warning("OIDC code exchange failed: %s", exc)
            raise TokenExchangeError() from exc

        if not token.get("access_token") or not token.get("id_token"):
            raise TokenExchangeError("Token response is missing access_token or id_token")
        try:
            claims = self.verify_id_token(token["id_token"], config, token["access_token"], nonce=nonce)
        except JWTError as exc:
            logger.warning("OIDC id_token rejected: %s", exc)
            self.config_cache.invalidate()
            raise TokenExchangeError() from exc

        return FederatedPrincipal(
            claims=claims,
            access_token=token["access_token"],
            refresh_token=token.get("refresh_token"),
            expires_at=int(claims["exp"]),
        )

    async def refresh(self, principal: FederatedPrincipal) -> FederatedPrincipal:
        """Run the refresh-token grant and return a NEW principal.

        The input principal is never modified. The refresh token is replaced
        only when the provider rotated it. If the response carries no id_token
        the previous claims are kept and expiry comes from expires_in.

        Raises RefreshFailed on any provider, network or verification error.
        """
        if not principal.refresh_token:
            raise RefreshFailed("No refresh token")
        try:
            config = await self.discover_provider_config()
            async with self._client() as client:
                token = await client.refresh_token(config.token_endpoint, refresh_token=principal.refresh_token)
            access_token = token["access_token"]
            if token.get("id_token"):
                claims = self.verify_id_token(token["id_token"], config, access_token)
                expires_at = int(claims["exp"])
            else:
                claims = dict(principal.claims)
                expires_at = _expiry_from_token(token, self._clock())
        except (DiscoveryError, OAuthError, httpx.HTTPError, JWTError, KeyError, ValueError) as exc:
            logger.warning("OIDC token refresh failed for sub=%s: %s", principal.subject, exc)
            raise RefreshFailed() from exc

        return FederatedPrincipal(
            claims=claims,
            access_token=access_token,
            refresh_token=token.get("refresh_token") or principal.refresh_token,
            expires_at=expires_at,
        )

    def verify_id_token(
        self,
        id_token: str,
        config: ProviderConfig,
        access_token: Optional[str] = None,
        nonce: Optional[str] = None,
    ) -> dict[str, Any]:
        """Verify an id_token against the cached key set and return its claims.

        Raises jose.JWTError (or a subclass) on any verification failure.
        """
        claims = jwt.decode(
            id_token,
            config.jwks,
            algorithms=list(config.signing_algs),
            audience=self.client_id,
            issuer=config.issuer,
            access_token=access_token,
        )
        if nonce is not None and claims.get("nonce") != nonce:
            raise JWTError("nonce mismatch")
        if "sub" not in claims or "exp" not in claims:
            raise JWTError("id_token is missing sub or exp")
        return claims

    async def end_session_url(self, post_logout_redirect_uri: str) -> Optional[str]:
        """Return the provider logout URL, or None when the provider has none."""
        try:
            config = await self.discover_provider_config()
        except DiscoveryError:
            return None
        if not config.end_session_endpoint:
            return None
        return add_params_to_uri(
            config.end_session_endpoint,
            [("client_id", self.client_id), ("post_logout_redirect_uri", post_logout_redirect_uri)],
        )


def _expiry_from_token(token: Mapping[str, Any], now: float) -> int:
    if token.get("expires_at"):
        return int(token["expires_at"])
    if token.get("expires_in"):
        return int(now) + int(token["expires_in"])
    raise ValueError("token response carries no expiry")
