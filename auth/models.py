"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; stores, the session codec and routes do the work.

Principal variants carry an explicit `kind` discriminant set when they are
constructed (credential validation or the OIDC callback). Nothing downstream
infers the variant from which fields happen to be present.

Layer rule: no imports from api/ or sessions/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Union

ROLES: tuple[str, ...] = ("admin", "pentester", "client")


@dataclass
class User:
    """A persisted PenTrack account.

    id is a uuid4 hex string for local accounts and the identity provider's
    stable `sub` claim for federated accounts, so the OIDC callback can find a
    returning user with a single primary-key lookup.

    username / hashed_password are None for federated-only users (they have
    no local password). Federated profile fields are refreshed on every login;
    role is not.
    """

    id: str
    role: str  # "admin", "pentester", "client"
    username: str | None = None
    hashed_password: str | None = None  # None = federated-only user
    email: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    profile_image_url: str | None = None
    is_active: bool = True
    created_at: str | None = None
    updated_at: str | None = None

    def public_dict(self) -> dict[str, Any]:
        """Return the client-safe representation (password hash stripped)."""
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "profile_image_url": self.profile_image_url,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class FederatedPrincipal:
    """Identity established through the OpenID Connect provider.

    expires_at is the id_token `exp` claim in epoch seconds. After it passes,
    access_token is untrusted until the refresh manager mints a new one.
    """

    claims: dict[str, Any]
    access_token: str
    expires_at: int
    refresh_token: Optional[str] = None
    kind: Literal["oidc"] = "oidc"

    @property
    def subject(self) -> str:
        return str(self.claims["sub"])

    @property
    def user_id(self) -> str:
        # Federated user records are keyed by the provider subject.
        return self.subject


@dataclass(frozen=True)
class LocalPrincipal:
    """Identity established with a username/password.

    Only user_id is part of the identity. `user` is the record the session
    codec resolved for this request; it is excluded from equality so two
    principals for the same account compare equal regardless of load time.
    """

    user_id: str
    user: Optional[User] = field(default=None, compare=False, repr=False)
    kind: Literal["local"] = "local"


Principal = Union[FederatedPrincipal, LocalPrincipal]


@dataclass(frozen=True)
class ProviderConfig:
    """Issuer metadata from the OIDC discovery document plus its key set."""

    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    jwks_uri: str
    jwks: dict[str, Any]
    end_session_endpoint: str | None = None
    signing_algs: tuple[str, ...] = ("RS256",)


@dataclass
class AuditEntry:
    """One row in the write-only audit log."""

    action: str  # "login", "logout", "created", "updated", "deleted"
    resource_type: str  # "session", "user"
    user_id: str | None = None
    resource_id: str | None = None
    details: dict[str, Any] | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    id: int | None = None
    timestamp: str | None = None
