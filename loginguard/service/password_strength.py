from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List


class Strength(str, Enum):
    VERY_WEAK = "very_weak"
    WEAK = "weak"
    MEDIUM = "medium"
    STRONG = "strong"
    VERY_STRONG = "very_strong"


_BANDS = {
    0: Strength.VERY_WEAK,
    1: Strength.VERY_WEAK,
    2: Strength.WEAK,
    3: Strength.MEDIUM,
    4: Strength.STRONG,
    5: Strength.VERY_STRONG,
}

_CHARACTER_CLASSES = [
    (re.compile(r"[a-z]"), "lowercase letter"),
    (re.compile(r"[A-Z]"), "uppercase letter"),
    (re.compile(r"\d"), "number"),
    (re.compile(r"[^A-Za-z0-9]"), "special character"),
]

COMMON_WORDS = ("password", "admin", "qwerty", "letmein", "welcome", "123456", "login")

_SEQUENCES = ("0123456789", "abcdefghijklmnopqrstuvwxyz", "qwertyuiop", "asdfghjkl")

_REPEATED = re.compile(r"(.)\1\1")

MAX_SCORE = 5


@dataclass
class PasswordStrength:
    score: int
    strength: Strength
    feedback: List[str] = field(default_factory=list)
    suggestions: List[str] = field(default_factory=list)

    @property
    def is_weak(self) -> bool:
        return self.score < 4


def _has_sequence(password: str, run: int = 3) -> bool:
    lowered = password.lower()
    for seq in _SEQUENCES:
        for start in range(len(seq) - run + 1):
            chunk = seq[start:start + run]
            if chunk in lowered or chunk[::-1] in lowered:
                return True
    return False


def evaluate_password(password: str, min_length: int = 8) -> PasswordStrength:
    """Score a password from 0 to 5; advisory only.

    One point for reaching ``min_length`` and one per character class present.
    Pattern checks (common words, sequences, repeats) add feedback but never
    lower the score, so adding a class or length can only raise it.
    """
    password = password or ""
    score = 0
    feedback: List[str] = []
    suggestions: List[str] = []

    if len(password) >= min_length:
        score += 1
    else:
        feedback.append(f"Password is shorter than {min_length} characters")
        suggestions.append(f"Use at least {min_length} characters")

    for pattern, label in _CHARACTER_CLASSES:
        if pattern.search(password):
            score += 1
        else:
            suggestions.append(f"Add at least one {label}")

    lowered = password.lower()
    if any(word in lowered for word in COMMON_WORDS):
        feedback.append("Password contains a common word")
        suggestions.append("Avoid dictionary words such as 'password' or 'admin'")
    if _has_sequence(password):
        feedback.append("Password contains a sequential pattern")
    if _REPEATED.search(password):
        feedback.append("Password repeats the same character three or more times")

    score = min(score, MAX_SCORE)
    return PasswordStrength(
        score=score,
        strength=_BANDS[score],
        feedback=feedback,
        suggestions=suggestions,
    )
