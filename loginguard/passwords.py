from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache

import bcrypt

DEFAULT_BCRYPT_ROUNDS = 12


@dataclass(frozen=True)
class PasswordSettings:
    rounds: int = DEFAULT_BCRYPT_ROUNDS

    def __post_init__(self) -> None:
        if not 4 <= self.rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")

    @classmethod
    def from_env(cls) -> "PasswordSettings":
        raw_rounds = os.getenv("BCRYPT_ROUNDS", str(DEFAULT_BCRYPT_ROUNDS)).strip()
        try:
            rounds = int(raw_rounds)
        except ValueError as exc:
            raise ValueError("BCRYPT_ROUNDS must be an integer value.") from exc
        return cls(rounds=rounds)


def hash_password(plain_password: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> str:
    if not isinstance(plain_password, str) or len(plain_password) == 0:
        raise ValueError("Password must be a non-empty string")

    salt = bcrypt.gensalt(rounds=rounds)
    hashed = bcrypt.hashpw(plain_password.encode("utf-8"), salt)
    return hashed.decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    if not plain_password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash.
        return False


@lru_cache(maxsize=4)
def _dummy_hash(rounds: int) -> str:
    return hash_password("unknown-account-placeholder", rounds=rounds)


def burn_verification(plain_password: str, rounds: int = DEFAULT_BCRYPT_ROUNDS) -> None:
    """Spend one hash comparison for an unknown account so timing matches a real miss."""
    verify_password(plain_password or "x", _dummy_hash(rounds))
