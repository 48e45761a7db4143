"""
auth/passwords.py -- Password hashing and the password strength policy.

Hashing: bcrypt, used directly (no passlib wrapper). bcrypt's cost factor is
the right tool for low-entropy secrets. Passwords are pre-hashed with
SHA-256 and base64-encoded before bcrypt sees them: bcrypt only reads the
first 72 bytes, and the policy allows up to 128 characters (up to 512 bytes
of UTF-8). The 44-byte digest keeps every character significant.

Policy: validate_strength() is the blocking check used by register and
reset; evaluate_strength() is an advisory entropy estimate that never
blocks. Both are pure functions -- no I/O, no config lookups.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import base64
import hashlib
import math
import re
from dataclasses import dataclass
from typing import Iterable

import bcrypt

from core.errors import WeakPassword

MIN_LENGTH = 8
MAX_LENGTH = 128

_UPPER = re.compile(r"[A-Z]")
_LOWER = re.compile(r"[a-z]")
_DIGIT = re.compile(r"\d")
_SPECIAL = re.compile(r"[^A-Za-z0-9]")

# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------


def _prehash(plain: str) -> bytes:
    return base64.b64encode(hashlib.sha256(plain.encode("utf-8")).digest())


def hash_password(plain: str, rounds: int = 12) -> str:
    """Return a salted bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(_prehash(plain), bcrypt.gensalt(rounds=rounds)).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext matches the hash. bcrypt.checkpw compares in constant time."""
    try:
        return bcrypt.checkpw(_prehash(plain), hashed.encode("utf-8"))
    except ValueError:
        # Malformed stored hash. Treat as a mismatch rather than crash the login path.
        return False


# Timing equalization [C1].
# Logins for unknown emails still run bcrypt against a throwaway hash, so
# response time does not reveal whether an account exists. The throwaway hash
# must carry the same cost factor as real hashes.
def make_dummy_hash(rounds: int) -> str:
    """Return a throwaway hash at the given bcrypt cost."""
    return hash_password("gatehouse_timing_dummy", rounds=rounds)


def burn_password_check(plain: str, dummy_hash: str) -> None:
    """Spend one bcrypt verification on a throwaway hash."""
    verify_password(plain, dummy_hash)


# ---------------------------------------------------------------------------
# Strength policy
# ---------------------------------------------------------------------------


def _classes_present(password: str) -> list[bool]:
    return [
        bool(_UPPER.search(password)),
        bool(_LOWER.search(password)),
        bool(_DIGIT.search(password)),
        bool(_SPECIAL.search(password)),
    ]


def validate_strength(password: str, denylist: Iterable[str] = ()) -> None:
    """Raise WeakPassword unless the password satisfies the policy.

    Rules, checked in order so the first failure is the one reported:
      - present and 8..128 characters long
      - at least 3 of: uppercase, lowercase, digit, special character
      - not in the denylist of common passwords (case-insensitive)
    """
    if not password:
        raise WeakPassword("Password is required.")
    if len(password) < MIN_LENGTH:
        raise WeakPassword(f"Password must be at least {MIN_LENGTH} characters.")
    if len(password) > MAX_LENGTH:
        raise WeakPassword(f"Password must be at most {MAX_LENGTH} characters.")
    if sum(_classes_present(password)) < 3:
        raise WeakPassword(
            "Password must contain at least 3 of: uppercase letters, lowercase letters, digits, special characters."
        )
    if password.lower() in {p.lower() for p in denylist}:
        raise WeakPassword("Password is too common.")


@dataclass(frozen=True)
class StrengthReport:
    entropy_bits: float
    score: int  # 1 (very weak) .. 5 (very strong)
    label: str


# (upper bound in bits, score, label) -- first bucket whose bound exceeds the entropy wins.
_TIERS = (
    (30.0, 1, "very weak"),
    (50.0, 2, "weak"),
    (70.0, 3, "moderate"),
    (90.0, 4, "strong"),
)


def estimate_entropy(password: str) -> float:
    """length * log2(alphabet), where the alphabet is the sum of the classes used.

    Class sizes: lowercase 26, uppercase 26, digits 10, specials 32.
    """
    upper, lower, digit, special = _classes_present(password)
    alphabet = 26 * upper + 26 * lower + 10 * digit + 32 * special
    if alphabet == 0:
        return 0.0
    return len(password) * math.log2(alphabet)


def evaluate_strength(password: str) -> StrengthReport:
    """Advisory strength tier. Never raises, never blocks."""
    bits = estimate_entropy(password)
    for bound, score, label in _TIERS:
        if bits < bound:
            return StrengthReport(entropy_bits=bits, score=score, label=label)
    return StrengthReport(entropy_bits=bits, score=5, label="very strong")
