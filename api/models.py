"""
API request and response models for the Gatehouse REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

Wire names are camelCase (accessToken, confirmPassword, ...). Every model
also accepts the snake_case field name on input.

Input checks here are shape only (types, lengths). Password policy and
email format are the engine's job, so the same rules apply to the CLI.

Separation of concerns: auth/ models = domain truth; api/ models = API contract.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from auth.passwords import MAX_LENGTH

# Generous upper bound on inbound secrets; a refresh secret is 128 hex chars.
_MAX_SECRET = 512
_MAX_TOKEN = 4096


class _Request(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, str_strip_whitespace=True)


class _Response(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class RegisterRequest(_Request):
    """Request body for POST /api/v1/auth/register."""

    email: str = Field(min_length=1, max_length=255)
    # Passwords are not stripped or length-capped here; the strength policy reports those.
    password: str = Field(max_length=MAX_LENGTH * 4)
    confirm_password: str = Field(max_length=MAX_LENGTH * 4)


class LoginRequest(_Request):
    email: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=MAX_LENGTH * 4)


class RefreshRequest(_Request):
    refresh_token: str = Field(min_length=1, max_length=_MAX_SECRET)


class LogoutRequest(_Request):
    """Body for POST /logout. The access token comes from the Authorization header."""

    refresh_token: Optional[str] = Field(default=None, max_length=_MAX_SECRET)


class ForgotPasswordRequest(_Request):
    email: str = Field(min_length=1, max_length=255)


class ResetPasswordRequest(_Request):
    token: str = Field(min_length=1, max_length=_MAX_SECRET)
    password: str = Field(max_length=MAX_LENGTH * 4)
    confirm_password: str = Field(max_length=MAX_LENGTH * 4)


class PasswordCheckRequest(_Request):
    password: str = Field(max_length=MAX_LENGTH * 4)


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class UserOut(_Response):
    id: str
    email: str
    role: str


class TokenPairResponse(_Response):
    """Response for register, login, and refresh."""

    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserOut


class TokenClaims(_Response):
    sub: str
    email: str
    role: str
    iat: int
    exp: int
    iss: str
    aud: str
    jti: str


class VerifyResponse(_Response):
    user: UserOut
    token_claims: TokenClaims


class ProfileResponse(_Response):
    """Response for GET /me and the user lookup endpoints. Never carries the password hash."""

    id: str
    email: str
    role: str
    is_active: bool
    email_verified: bool
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None


class SessionOut(_Response):
    session_id: str
    created_at: str
    refresh_token_id: Optional[str] = None


class StatsResponse(_Response):
    users: int
    active_users: int
    locked_users: int
    active_refresh_tokens: int


class MessageResponse(_Response):
    message: str


class PasswordStrengthResponse(_Response):
    entropy_bits: float
    score: int
    label: str
    acceptable: bool
    reason: Optional[str] = None


# ---------------------------------------------------------------------------
# Errors and health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[Any] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "ok"
    version: str
    components: dict[str, str] = Field(default_factory=dict)
