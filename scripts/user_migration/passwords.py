"""bcrypt digests for building test exports."""

from __future__ import annotations

import bcrypt

DEFAULT_ROUNDS = 10


def hash_password(plaintext: str, rounds: int = DEFAULT_ROUNDS) -> str:
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(plaintext.encode("utf-8"), salt).decode("ascii")
