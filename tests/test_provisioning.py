"""
tests/test_provisioning.py -- Unit tests for auth/provisioning.py.

Coverage:
  - first account on any path becomes admin, whatever role was asked for
  - role hint honoured only when the caller allows it
  - returning federated users keep their role; profile fields refresh
  - claim name mapping (standard OIDC and flat names)
  - development login reuses existing accounts
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from auth.passwords import verify_password
from auth.provisioning import (
    create_local_user,
    get_or_create_dev_user,
    profile_from_claims,
    provision_federated_user,
    resolve_new_user_role,
)


class TestFirstUserRule:
    def test_first_federated_user_is_admin_despite_client_hint(self, user_store) -> None:
        user, created = provision_federated_user(user_store, {"sub": "idp|1"}, "client", honor_hint=False)
        assert created is True
        assert user.role == "admin"

    def test_first_local_user_is_admin(self, user_store) -> None:
        user = create_local_user(user_store, "first", "password1", "client")
        assert user.role == "admin"

    def test_first_dev_user_is_admin(self, user_store) -> None:
        assert get_or_create_dev_user(user_store, "dev-user", "pentester").role == "admin"

    def test_second_user_defaults_to_client(self, user_store) -> None:
        provision_federated_user(user_store, {"sub": "idp|1"})
        user, _ = provision_federated_user(user_store, {"sub": "idp|2"})
        assert user.role == "client"

    def test_disabled_admin_still_counts(self, user_store) -> None:
        """The rule asks whether any admin exists, not whether one is active."""
        admin = create_local_user(user_store, "root", "password1", "admin")
        user_store.update_user(admin.id, is_active=False)
        assert resolve_new_user_role(user_store, None, honor_hint=False) == "client"


class TestRoleHint:
    def test_hint_ignored_unless_honoured(self, user_store) -> None:
        provision_federated_user(user_store, {"sub": "idp|1"})
        user, _ = provision_federated_user(user_store, {"sub": "idp|2"}, "pentester", honor_hint=False)
        assert user.role == "client"

    def test_hint_honoured_in_development(self, user_store) -> None:
        provision_federated_user(user_store, {"sub": "idp|1"})
        user, _ = provision_federated_user(user_store, {"sub": "idp|2"}, "pentester", honor_hint=True)
        assert user.role == "pentester"

    def test_unknown_hint_falls_back_to_client(self, user_store) -> None:
        provision_federated_user(user_store, {"sub": "idp|1"})
        user, _ = provision_federated_user(user_store, {"sub": "idp|2"}, "superuser", honor_hint=True)
        assert user.role == "client"


class TestReturningUsers:
    def test_returning_admin_keeps_role_despite_client_hint(self, user_store) -> None:
        first, _ = provision_federated_user(user_store, {"sub": "idp|1", "email": "old@example.com"})
        assert first.role == "admin"

        again, created = provision_federated_user(
            user_store, {"sub": "idp|1", "email": "new@example.com"}, "client", honor_hint=True
        )

        assert created is False
        assert again.role == "admin"
        assert again.email == "new@example.com"
        assert again.created_at == first.created_at

    def test_admin_role_change_survives_next_login(self, user_store) -> None:
        provision_federated_user(user_store, {"sub": "idp|1"})
        provision_federated_user(user_store, {"sub": "idp|2"})
        user_store.update_user_role("idp|2", "pentester")
        user, _ = provision_federated_user(user_store, {"sub": "idp|2"}, "client", honor_hint=True)
        assert user.role == "pentester"


class TestProfileMapping:
    def test_standard_claim_names(self) -> None:
        profile = profile_from_claims(
            {"sub": "x", "email": "a@b.c", "given_name": "Ada", "family_name": "L", "picture": "https://img/a.png"}
        )
        assert profile == {
            "email": "a@b.c",
            "first_name": "Ada",
            "last_name": "L",
            "profile_image_url": "https://img/a.png",
        }

    def test_flat_claim_names_win(self) -> None:
        profile = profile_from_claims({"first_name": "Flat", "given_name": "Standard"})
        assert profile["first_name"] == "Flat"
        assert profile["email"] is None


class TestLocalAccounts:
    def test_password_is_hashed(self, user_store) -> None:
        create_local_user(user_store, "root", "password1", "admin")
        user = create_local_user(user_store, "alice", "secret123", "pentester", email="alice@example.com")
        assert user.role == "pentester"
        assert user.email == "alice@example.com"
        assert user.hashed_password != "secret123"
        assert verify_password("secret123", user.hashed_password)

    def test_duplicate_username(self, user_store) -> None:
        create_local_user(user_store, "alice", "secret123", "admin")
        with pytest.raises(IntegrityError):
            create_local_user(user_store, "alice", "other-pass", "client")

    def test_unknown_role(self, user_store) -> None:
        with pytest.raises(ValueError):
            create_local_user(user_store, "alice", "secret123", "root")

    def test_dev_user_is_reused(self, user_store) -> None:
        first = get_or_create_dev_user(user_store, "dev-user", None)
        again = get_or_create_dev_user(user_store, "dev-user", "client")
        assert again.id == first.id
        assert again.role == first.role
        assert again.email == "dev-user@dev.local"

    def test_account_removed_before_read_back(self, user_store, monkeypatch) -> None:
        monkeypatch.setattr(user_store, "get_by_id", lambda user_id: None)
        with pytest.raises(LookupError):
            create_local_user(user_store, "alice", "secret123", "admin")

    def test_upsert_returns_the_stored_row(self, user_store) -> None:
        user = user_store.upsert_user("idp|1", "client", email="a@example.com")
        again = user_store.upsert_user("idp|1", "admin", first_name="Ada")
        assert (user.role, user.email) == ("client", "a@example.com")
        assert (again.role, again.email, again.first_name) == ("client", "a@example.com", "Ada")
