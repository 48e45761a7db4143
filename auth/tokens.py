"""
auth/tokens.py -- Token codec: signed access tokens and opaque refresh secrets.

Security design decisions:
  Access tokens: python-jose with HS256. Claims are sub, email, role, iat,
       exp, iss, aud, jti. Verification checks the signature AND the issuer
       and audience, so a token minted for another service with the same key
       is rejected. Expiry is checked against the injected clock rather than
       the wall clock inside jose, which keeps expiry testable.

  Refresh secrets: secrets.token_hex(64) gives 512 bits of entropy. They are
       lookup keys, not claim carriers, so they are never structured or
       signed.

  Opaque-secret hashing: plain SHA-256. This is a lookup hash, not a
       password hash -- the input already has full entropy, so bcrypt's
       deliberate slowness would only cost latency. The same hash is used
       for password-reset secrets and for blacklist keys.

The codec is a pure object: no I/O, no config lookups. Its secret, issuer,
audience, and clock are constructor arguments.

Layer rule: no imports from api/ or cache/.
"""

from __future__ import annotations

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from jose import JWTError, jwt

from auth.models import AccessClaims

_ALGORITHM = "HS256"

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class TokenError(Exception):
    """Base class for access-token verification failures."""


class InvalidSignature(TokenError):
    """Signature did not verify, or issuer/audience did not match."""


class TokenExpired(TokenError):
    pass


class MalformedToken(TokenError):
    """Not a JWT, or a JWT missing required identity claims."""


_REQUIRED_CLAIMS = ("sub", "email", "role", "iat", "exp", "jti")

# ---------------------------------------------------------------------------
# Opaque secrets
# ---------------------------------------------------------------------------


def mint_refresh_secret() -> str:
    """Return a 128-hex-char (512-bit) CSPRNG secret."""
    return secrets.token_hex(64)


def mint_reset_secret() -> str:
    """Return a 64-hex-char (256-bit) CSPRNG secret for password reset links."""
    return secrets.token_hex(32)


def hash_opaque_secret(secret: str) -> str:
    """Return the SHA-256 hex digest used to index an opaque secret."""
    return hashlib.sha256(secret.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Access-token codec
# ---------------------------------------------------------------------------


class TokenCodec:
    """Signs and verifies access tokens.

    Usage:
        codec = TokenCodec(secret_key, issuer="gatehouse", audience="gatehouse-clients")
        token = codec.mint_access_token("42", "a@example.com", "user", ttl=timedelta(minutes=15))
        claims = codec.verify_access_token(token)
    """

    def __init__(self, secret_key: str, *, issuer: str, audience: str, clock: Clock = utcnow) -> None:
        if len(secret_key) < 32:
            raise ValueError("Signing secret must be at least 32 characters.")
        self._secret_key = secret_key
        self.issuer = issuer
        self.audience = audience
        self._clock = clock

    def mint_access_token(self, subject: str, email: str, role: str, ttl: timedelta) -> str:
        """Encode a signed JWT for the subject, valid for ttl from the codec's clock."""
        now = self._clock()
        payload = {
            "sub": str(subject),
            "email": email,
            "role": role,
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
            "jti": uuid.uuid4().hex,
        }
        return jwt.encode(payload, self._secret_key, algorithm=_ALGORITHM)

    def _decode(self, token: str) -> AccessClaims:
        """Check structure, signature, issuer, and audience. Expiry is left to the caller."""
        if not token or token.count(".") != 2:
            raise MalformedToken("Token is not a compact JWS.")
        try:
            jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as exc:
            raise MalformedToken(str(exc)) from exc

        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[_ALGORITHM],
                audience=self.audience,
                issuer=self.issuer,
                options={"verify_exp": False, "require_aud": True, "require_iss": True},
            )
        except JWTError as exc:
            raise InvalidSignature(str(exc)) from exc

        missing = [c for c in _REQUIRED_CLAIMS if c not in payload]
        if missing:
            raise MalformedToken(f"Missing claims: {', '.join(missing)}")
        try:
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError, OSError) as exc:
            raise MalformedToken("iat/exp must be numeric.") from exc

        return AccessClaims(
            subject=str(payload["sub"]),
            email=payload["email"],
            role=payload["role"],
            issued_at=issued_at,
            expires_at=expires_at,
            issuer=payload["iss"],
            audience=self.audience,
            token_id=payload["jti"],
        )

    def verify_access_token(self, token: str) -> AccessClaims:
        """Verify signature, issuer, audience, and expiry; return the claims.

        Raises MalformedToken, InvalidSignature, or TokenExpired. Order:
        structure first (cheap, no key), then signature + iss/aud, then exp.
        """
        claims = self._decode(token)
        if claims.expires_at <= self._clock():
            raise TokenExpired("Token has expired.")
        return claims

    def claims_for_revocation(self, token: str) -> Optional[AccessClaims]:
        """Claims of a token this codec issued, expired or not; None for anything else.

        Logout uses the exp claim to size a blacklist entry, so it must come
        from a token whose signature, issuer, and audience check out.
        """
        try:
            return self._decode(token)
        except TokenError:
            return None
