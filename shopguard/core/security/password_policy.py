# shopguard/core/security/password_policy.py
"""Password strength rules applied before sign-up reaches the auth provider."""

import logging
import re
from dataclasses import dataclass, field
from typing import List

from shopguard.core.exceptions import ValidationError

logger = logging.getLogger(__name__)

MIN_LENGTH = 8
MAX_LENGTH = 128

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"[0-9]")
_SPECIAL = re.compile(r"[!@#$%^&*(),.?\":{}|<>]")
_REPEATED = re.compile(r"(.)\1{3,}")

COMMON_PATTERNS = [
    re.compile(r"123456"),
    re.compile(r"password", re.IGNORECASE),
    re.compile(r"qwerty", re.IGNORECASE),
    re.compile(r"admin", re.IGNORECASE),
    re.compile(r"letmein", re.IGNORECASE),
]


@dataclass
class PasswordValidationResult:
    """Result of password validation"""
    valid: bool
    strength: str = "weak"
    score: int = 0
    errors: List[str] = field(default_factory=list)


def _score(password: str) -> int:
    checks = [
        len(password) >= 8,
        len(password) >= 12,
        bool(_UPPER.search(password)),
        bool(_LOWER.search(password)),
        bool(_DIGIT.search(password)),
        bool(_SPECIAL.search(password)),
        len(password) >= 16,
    ]
    return sum(checks)


def validate_password_strength(password: str) -> PasswordValidationResult:
    """
    Check a password against the strength rules.

    Valid iff no rule is violated and the score reaches 4.
    Strength: score >= 6 strong, >= 4 medium, otherwise weak.
    """
    password = password or ""
    errors: List[str] = []

    if len(password) < MIN_LENGTH:
        errors.append(f"Password must be at least {MIN_LENGTH} characters")
    if len(password) > MAX_LENGTH:
        errors.append(f"Password is too long (maximum {MAX_LENGTH} characters)")
    if not _UPPER.search(password):
        errors.append("Password must contain an uppercase letter")
    if not _LOWER.search(password):
        errors.append("Password must contain a lowercase letter")
    if not _DIGIT.search(password):
        errors.append("Password must contain a number")
    if not _SPECIAL.search(password):
        errors.append("Password must contain a special character")
    if any(pattern.search(password) for pattern in COMMON_PATTERNS):
        errors.append("Password contains a very common pattern")
    if _REPEATED.search(password):
        errors.append("Password cannot repeat a character more than 3 times in a row")

    score = _score(password)
    if score >= 6:
        strength = "strong"
    elif score >= 4:
        strength = "medium"
    else:
        strength = "weak"

    valid = not errors and score >= 4
    if not valid:
        logger.warning("⚠️ Weak password rejected")

    return PasswordValidationResult(valid=valid, strength=strength, score=score, errors=errors)


def ensure_strong_password(password: str) -> PasswordValidationResult:
    """Raise ValidationError listing every violated rule"""
    result = validate_password_strength(password)
    if not result.valid:
        raise ValidationError(
            "Password does not meet the strength requirements",
            field="password",
            errors=result.errors,
        )
    return result
