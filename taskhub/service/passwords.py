from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List

from argon2 import PasswordHasher as _Argon2Hasher
from argon2 import Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from taskhub.logging import get_logger

logger = get_logger(__name__)

_SYMBOL_RE = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")
_WEAK_PATTERNS = [
    re.compile(r"^123"),
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"qwerty", re.IGNORECASE),
    re.compile(r"abc123", re.IGNORECASE),
    re.compile(r"(.)\1{2,}"),
]
MIN_VALID_SCORE = 4


class PasswordHasher:
    """Argon2id hashing with a random salt per call.

    ``verify`` answers a plain bool; malformed digests count as a mismatch.
    """

    algorithm = "argon2id"

    def __init__(self, *, time_cost: int = 3, memory_cost: int = 65536) -> None:
        self._hasher = _Argon2Hasher(
            time_cost=time_cost, memory_cost=memory_cost, type=Type.ID
        )

    def hash(self, plaintext: str) -> str:
        if not plaintext:
            raise ValueError("cannot hash an empty password")
        return self._hasher.hash(plaintext)

    def verify(self, plaintext: str, digest: str | None) -> bool:
        if not digest or not plaintext:
            return False
        try:
            return self._hasher.verify(digest, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_digest_invalid")
            return False

    def needs_rehash(self, digest: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(digest)
        except InvalidHash:
            return True


@dataclass
class PasswordStrength:
    is_valid: bool
    score: int
    feedback: List[str] = field(default_factory=list)


def validate_password_strength(password: str) -> PasswordStrength:
    """Score a password 0-6 and list what it is missing.

    One point each for length >= 8, length >= 12, lowercase, uppercase,
    digit and symbol; a weak pattern costs two points. Valid from 4 up.
    """
    feedback: List[str] = []
    score = 0

    if len(password) >= 8:
        score += 1
    else:
        feedback.append("Password should be at least 8 characters")

    if len(password) >= 12:
        score += 1

    if re.search(r"[a-z]", password):
        score += 1
    else:
        feedback.append("Add lowercase letters")

    if re.search(r"[A-Z]", password):
        score += 1
    else:
        feedback.append("Add uppercase letters")

    if re.search(r"\d", password):
        score += 1
    else:
        feedback.append("Add numbers")

    if _SYMBOL_RE.search(password):
        score += 1
    else:
        feedback.append("Add special characters")

    if any(pattern.search(password) for pattern in _WEAK_PATTERNS):
        score = max(0, score - 2)
        feedback.append("Avoid common patterns")

    return PasswordStrength(is_valid=score >= MIN_VALID_SCORE, score=score, feedback=feedback)


__all__ = ["PasswordHasher", "PasswordStrength", "validate_password_strength", "MIN_VALID_SCORE"]
