"""
tests/test_session_codec.py -- Unit tests for auth/session_codec.py.

Coverage:
  - local and federated principals survive serialize -> deserialize
  - local records hold only the user id
  - refresh_token is omitted from the record when absent
  - unknown principal shapes are refused at write time
  - unknown / malformed records and deleted users are refused at read time
"""

from __future__ import annotations

import json
from dataclasses import dataclass

import pytest

from auth import session_codec
from auth.errors import SessionDecodeError, UnknownPrincipalShape, UserNotFound
from auth.models import FederatedPrincipal, LocalPrincipal, User


def _federated(refresh_token: str | None = "r-1") -> FederatedPrincipal:
    return FederatedPrincipal(
        claims={"sub": "idp|42", "email": "fed@example.com", "exp": 1_700_003_600},
        access_token="a-1",
        refresh_token=refresh_token,
        expires_at=1_700_003_600,
    )


class TestLocalRecords:
    def test_round_trip(self, user_store) -> None:
        uid = user_store.create_user(User(id="", username="alice", hashed_password="x", role="pentester"))
        record = session_codec.serialize(LocalPrincipal(user_id=uid))

        assert record == {"type": "local", "userId": uid}

        principal = session_codec.deserialize(json.loads(json.dumps(record)), user_store)
        assert principal == LocalPrincipal(user_id=uid)
        assert principal.user is not None
        assert principal.user.username == "alice"

    def test_record_never_contains_user_data(self, user_store) -> None:
        user = User(id="u1", username="alice", hashed_password="$2b$secret", role="admin", email="a@x")
        record = session_codec.serialize(LocalPrincipal(user_id="u1", user=user))
        assert set(record) == {"type", "userId"}

    def test_deleted_user(self, user_store) -> None:
        uid = user_store.create_user(User(id="", username="gone", hashed_password="x", role="client"))
        record = session_codec.serialize(LocalPrincipal(user_id=uid))
        user_store.delete_user(uid)
        with pytest.raises(UserNotFound):
            session_codec.deserialize(record, user_store)

    @pytest.mark.parametrize("user_id", [None, "", 42])
    def test_bad_user_id(self, user_store, user_id) -> None:
        with pytest.raises(SessionDecodeError):
            session_codec.deserialize({"type": "local", "userId": user_id}, user_store)


class TestFederatedRecords:
    def test_round_trip(self, user_store) -> None:
        principal = _federated()
        record = session_codec.serialize(principal)

        assert record["type"] == "oidc"
        assert record["refresh_token"] == "r-1"
        assert session_codec.deserialize(json.loads(json.dumps(record)), user_store) == principal

    def test_missing_refresh_token_is_omitted(self, user_store) -> None:
        record = session_codec.serialize(_federated(refresh_token=None))
        assert "refresh_token" not in record
        assert session_codec.deserialize(record, user_store).refresh_token is None

    def test_needs_no_user_lookup(self, user_store) -> None:
        """The federated subject has no user row yet; decoding must still work."""
        assert user_store.get_by_id("idp|42") is None
        assert session_codec.deserialize(session_codec.serialize(_federated()), user_store).subject == "idp|42"

    @pytest.mark.parametrize(
        "mutation",
        [
            {"claims": {"email": "no-sub@example.com"}},
            {"access_token": ""},
            {"expires_at": "tomorrow"},
            {"expires_at": True},
            {"refresh_token": 7},
        ],
    )
    def test_malformed_record(self, user_store, mutation) -> None:
        record = {**session_codec.serialize(_federated()), **mutation}
        with pytest.raises(SessionDecodeError):
            session_codec.deserialize(record, user_store)


class TestUnknownShapes:
    def test_serialize_refuses_lookalike(self) -> None:
        """Having the right attributes is not enough; only the two principal classes serialize."""

        @dataclass(frozen=True)
        class Impostor:
            user_id: str = "u1"
            kind: str = "local"

        with pytest.raises(UnknownPrincipalShape):
            session_codec.serialize(Impostor())

    def test_serialize_refuses_arbitrary_objects(self) -> None:
        with pytest.raises(UnknownPrincipalShape):
            session_codec.serialize({"type": "local", "userId": "u1"})

    @pytest.mark.parametrize("record", [{"type": "saml", "nameId": "x"}, {}, ["local", "u1"], "local", None])
    def test_deserialize_refuses_unknown_records(self, user_store, record) -> None:
        with pytest.raises(SessionDecodeError):
            session_codec.deserialize(record, user_store)
