"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Stores and the engine
do the work; these only own the domain shape.

User and RefreshToken are related by key only: RefreshToken.user_id is a
lookup key into the credential store, never an in-memory back-pointer.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class Role(str, Enum):
    """Closed set of account roles."""

    user = "user"
    agent = "agent"
    admin = "admin"


class TokenState(str, Enum):
    """Lifecycle of one refresh-token record.

    EXPIRED is derived from expires_at, never stored. ROTATED and REVOKED are
    both stored as revoked=True; rotated_at tells them apart.
    """

    issued = "issued"
    rotated = "rotated"
    revoked = "revoked"
    expired = "expired"


@dataclass
class User:
    """A user credential record.

    email is always stored lowercased; uniqueness is case-insensitive.
    password_hash is a bcrypt hash and must never leave the service.
    locked_until is set only when failed_login_attempts crosses the lockout
    threshold, and cleared whenever the counter is reset.
    """

    email: str
    password_hash: str
    role: Role = Role.user
    id: Optional[str] = None
    is_active: bool = True
    email_verified: bool = False
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class RefreshToken:
    """Server-side record of one opaque refresh secret.

    Only token_hash (SHA-256 of the raw secret) is persisted. The raw secret
    exists in the response to the client and nowhere else.
    """

    user_id: str
    token_hash: str
    expires_at: datetime
    id: Optional[str] = None
    revoked: bool = False
    rotated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    def state(self, now: datetime) -> TokenState:
        if self.revoked:
            return TokenState.rotated if self.rotated_at is not None else TokenState.revoked
        if self.expires_at <= now:
            return TokenState.expired
        return TokenState.issued


@dataclass
class LockState:
    """Counter and lock timestamp returned by the atomic failed-attempt update."""

    failed_login_attempts: int
    locked_until: Optional[datetime]


@dataclass(frozen=True)
class AccessClaims:
    """Verified claims carried by an access token."""

    subject: str
    email: str
    role: str
    issued_at: datetime
    expires_at: datetime
    issuer: str
    audience: str
    token_id: str

    def as_dict(self) -> dict[str, Any]:
        return {
            "sub": self.subject,
            "email": self.email,
            "role": self.role,
            "iat": int(self.issued_at.timestamp()),
            "exp": int(self.expires_at.timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
            "jti": self.token_id,
        }


@dataclass(frozen=True)
class UserSummary:
    id: str
    email: str
    role: str


@dataclass(frozen=True)
class AuthResult:
    """Outcome of register, login, and refresh: a fresh token pair plus who it is for."""

    access_token: str
    refresh_token: str
    user: UserSummary
    expires_in: int


@dataclass(frozen=True)
class VerifyResult:
    user: UserSummary
    claims: AccessClaims


@dataclass
class NamedSession:
    """Cache-only session record, enumerable per user for bulk removal."""

    user_id: str
    session_id: str
    created_at: str
    payload: dict[str, Any] = field(default_factory=dict)
