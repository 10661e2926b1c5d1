"""
auth/passwords.py -- Password hashing and local credential validation.

Security design decisions:
  Passwords: bcrypt, used directly. Bcrypt's cost factor makes offline
       brute-force expensive and checkpw() compares in constant time.

  Enumeration: validate_credentials() raises the SAME InvalidCredentials for
       an unknown username and a wrong password, and runs bcrypt in both cases
       (against _DUMMY_HASH when the user does not exist) so neither the
       message nor the response time reveals whether a username exists [C1].

  Disabled accounts: AccountDisabled is only raised AFTER the password has
       been verified, so the distinct message is never shown to someone who
       does not already know the password.

  Lockout: there is no per-account lockout counter. Brute force is throttled
       per client IP by the rate limit on POST /api/local-login [H2].

Layer rule: no imports from api/ or sessions/.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import bcrypt

from auth.errors import AccountDisabled, InvalidCredentials

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("pentrack.auth")

_BCRYPT_ROUNDS = 12

# bcrypt only reads the first 72 bytes of input and bcrypt>=5 refuses
# anything longer, so every password field is limited in encoded bytes.
MAX_PASSWORD_BYTES = 72


def password_byte_length(plain: str) -> int:
    return len(plain.encode("utf-8"))


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for passwords over MAX_PASSWORD_BYTES once UTF-8
    encoded. Callers validate the length first and report it to the user.
    """
    if password_byte_length(plain) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password cannot be longer than {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt(rounds=_BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if password_byte_length(plain) > MAX_PASSWORD_BYTES:
        # Could never have been hashed, so it cannot match.
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in the DB -- treat as a mismatch, never as a match.
        logger.warning("Stored password hash is malformed")
        return False


# Timing equalization dummy hash [C1]. Computed once at module load so the
# first login attempt is not measurably slower than subsequent ones.
_DUMMY_HASH: str = hash_password("pentrack_timing_dummy")


def validate_credentials(store: UserStore, username: str, password: str) -> User:
    """Validate a local username/password pair.

    Returns the full User on success. Raises InvalidCredentials for an
    unknown username, a federated-only account, or a wrong password, and
    AccountDisabled for a correct password on an inactive account.

    The returned record still holds hashed_password; callers must use
    User.public_dict() for anything client-facing.
    """
    user = store.get_by_username(username)
    if user is None or user.hashed_password is None:
        # Equalize timing -- do NOT return early before running bcrypt [C1]
        verify_password(password, _DUMMY_HASH)
        raise InvalidCredentials()
    if not verify_password(password, user.hashed_password):
        raise InvalidCredentials()
    if not user.is_active:
        raise AccountDisabled()
    return user
