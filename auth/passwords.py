"""
auth/passwords.py -- bcrypt helpers for DirectProvider credential checkers.

Passwords: bcrypt used directly (no passlib wrapper). The _DUMMY_HASH
constant gives timing equalization in BcryptCredChecker so the response time
does not reveal whether a user name exists.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping

import bcrypt

logger = logging.getLogger("authgate.auth.passwords")

# Pre-computed hash of a throwaway password, checked when the user is unknown.
_DUMMY_HASH = bcrypt.hashpw(b"authgate-dummy-password", bcrypt.gensalt()).decode("utf-8")


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt truncates input at 72 bytes; longer passwords still verify
    against their own hash but share it with any password of the same prefix.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in configuration.
        logger.warning("invalid bcrypt hash, rejecting credentials")
        return False


def parse_users(spec: str) -> dict[str, str]:
    """Parse "name:bcrypthash,name2:bcrypthash2" into a mapping.

    Hashes contain "$" but never "," or ":" past the first colon split.
    """
    users: dict[str, str] = {}
    for item in spec.split(","):
        item = item.strip()
        if not item:
            continue
        name, sep, hashed = item.partition(":")
        if not sep or not name or not hashed:
            raise ValueError(f"invalid user entry {item!r}, expected name:bcrypthash")
        users[name.strip()] = hashed.strip()
    return users


class BcryptCredChecker:
    """Credential checker over a static user -> bcrypt hash mapping.

    Usage:
        checker = BcryptCredChecker({"alice": hash_password("secret")})
        service.add_direct_provider("local", checker)
    """

    def __init__(self, users: Mapping[str, str]) -> None:
        self.users = dict(users)

    def __call__(self, user: str, passwd: str) -> bool:
        hashed = self.users.get(user)
        if hashed is None:
            verify_password(passwd, _DUMMY_HASH)
            return False
        return verify_password(passwd, hashed)
