"""
api/routes/v1/auth.py -- Credential and session lifecycle REST endpoints.

Routes:
  POST /api/v1/auth/register           -- create account; 201 + token pair
  POST /api/v1/auth/login              -- password login; token pair
  POST /api/v1/auth/refresh            -- rotate refresh token; new token pair
  GET  /api/v1/auth/verify             -- validate bearer token; user + claims
  POST /api/v1/auth/logout             -- blacklist bearer, revoke refresh token; idempotent
  POST /api/v1/auth/logout-all         -- revoke every refresh token and session of the caller
  GET  /api/v1/auth/me                 -- caller's profile (requires auth)
  GET  /api/v1/auth/sessions           -- caller's named sessions (requires auth)
  POST /api/v1/auth/forgot-password    -- issue reset secret; always the same answer
  POST /api/v1/auth/reset-password     -- redeem reset secret
  POST /api/v1/auth/password-strength  -- advisory strength estimate (public)
  GET  /api/v1/auth/users/{id}         -- profile lookup (self or admin)
  GET  /api/v1/auth/users/email/{email} -- profile lookup (self or admin)
  GET  /api/v1/auth/stats              -- account and token counts (admin only)

Handlers are plain `def`, so FastAPI runs them in its threadpool and bcrypt
work never blocks the event loop.

Security:
  Cache-Control: no-store on every response that carries a token.
  forgot-password answers identically whether or not the account exists.
  Errors are raised as core.errors exceptions and rendered by api/main.py.
"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Request, Response

from api.models import (
    ForgotPasswordRequest,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    PasswordCheckRequest,
    PasswordStrengthResponse,
    ProfileResponse,
    RefreshRequest,
    RegisterRequest,
    ResetPasswordRequest,
    SessionOut,
    StatsResponse,
    TokenClaims,
    TokenPairResponse,
    UserOut,
    VerifyResponse,
)
from auth.dependencies import bearer_token, get_engine, get_verified, require_admin, require_self_or_admin
from auth.engine import AuthEngine
from auth.models import AuthResult, Role, User, VerifyResult
from auth.passwords import evaluate_strength, validate_strength
from core.errors import Forbidden, WeakPassword

# Auth policy:
# - register, login, refresh, forgot-password, reset-password, password-strength: public
# - logout: public -- works with whatever tokens the caller still holds
# - verify, me, sessions, logout-all: requires a valid bearer token
# - users/*: bearer; self or admin
# - stats: admin only

router = APIRouter()

_FORGOT_MESSAGE = "If an account exists for that email, a reset link has been sent."


def _no_store(response: Response) -> None:
    response.headers["Cache-Control"] = "no-store"
    response.headers["Pragma"] = "no-cache"


def _pair_response(result: AuthResult) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=result.access_token,
        refresh_token=result.refresh_token,
        expires_in=result.expires_in,
        user=UserOut(id=result.user.id, email=result.user.email, role=result.user.role),
    )


def _profile(user: User) -> ProfileResponse:
    return ProfileResponse(
        id=user.id,
        email=user.email,
        role=Role(user.role).value,
        is_active=user.is_active,
        email_verified=user.email_verified,
        created_at=user.created_at,
        last_login=user.last_login,
    )


# ---------------------------------------------------------------------------
# Token lifecycle
# ---------------------------------------------------------------------------


@router.post("/auth/register", response_model=TokenPairResponse, status_code=201)
def register(body: RegisterRequest, response: Response, engine: AuthEngine = Depends(get_engine)):
    result = engine.register(body.email, body.password, body.confirm_password)
    _no_store(response)
    return _pair_response(result)


@router.post("/auth/login", response_model=TokenPairResponse)
def login(body: LoginRequest, response: Response, engine: AuthEngine = Depends(get_engine)):
    result = engine.login(body.email, body.password)
    _no_store(response)
    return _pair_response(result)


@router.post("/auth/refresh", response_model=TokenPairResponse)
def refresh(body: RefreshRequest, response: Response, engine: AuthEngine = Depends(get_engine)):
    result = engine.refresh(body.refresh_token)
    _no_store(response)
    return _pair_response(result)


@router.get("/auth/verify", response_model=VerifyResponse)
def verify(verified: VerifyResult = Depends(get_verified)):
    return VerifyResponse(
        user=UserOut(id=verified.user.id, email=verified.user.email, role=verified.user.role),
        token_claims=TokenClaims(**verified.claims.as_dict()),
    )


@router.post("/auth/logout")
def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    engine: AuthEngine = Depends(get_engine),
) -> dict:
    """Always 200. Invalid, expired, or already-revoked tokens are ignored."""
    engine.logout(bearer_token(request), body.refresh_token if body else None)
    return {}


@router.post("/auth/logout-all")
def logout_all(
    request: Request,
    verified: VerifyResult = Depends(get_verified),
    engine: AuthEngine = Depends(get_engine),
) -> dict:
    """Sign the caller out everywhere.

    The caller's own bearer token is blacklisted first. Other live access
    tokens of the same user lapse within the access-token TTL.
    """
    engine.logout(bearer_token(request), None)
    engine.logout_all(verified.user.id)
    return {}


# ---------------------------------------------------------------------------
# Caller profile
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=ProfileResponse)
def me(verified: VerifyResult = Depends(get_verified), engine: AuthEngine = Depends(get_engine)):
    return _profile(engine.get_current_user(verified.user.id))


@router.get("/auth/sessions", response_model=list[SessionOut])
def list_sessions(verified: VerifyResult = Depends(get_verified), engine: AuthEngine = Depends(get_engine)):
    return [
        SessionOut(
            session_id=s.session_id,
            created_at=s.created_at,
            refresh_token_id=s.payload.get("refreshTokenId"),
        )
        for s in engine.list_sessions(verified.user.id)
    ]


# ---------------------------------------------------------------------------
# Password reset and strength
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=MessageResponse)
def forgot_password(body: ForgotPasswordRequest, engine: AuthEngine = Depends(get_engine)):
    engine.request_password_reset(body.email)
    return MessageResponse(message=_FORGOT_MESSAGE)


@router.post("/auth/reset-password", response_model=MessageResponse)
def reset_password(body: ResetPasswordRequest, response: Response, engine: AuthEngine = Depends(get_engine)):
    engine.reset_password(body.token, body.password, body.confirm_password)
    _no_store(response)
    return MessageResponse(message="Password has been reset. Please log in again.")


@router.post("/auth/password-strength", response_model=PasswordStrengthResponse)
def password_strength(body: PasswordCheckRequest, engine: AuthEngine = Depends(get_engine)):
    report = evaluate_strength(body.password)
    reason = None
    try:
        validate_strength(body.password, engine.denylist)
    except WeakPassword as exc:
        reason = exc.reason
    return PasswordStrengthResponse(
        entropy_bits=round(report.entropy_bits, 2),
        score=report.score,
        label=report.label,
        acceptable=reason is None,
        reason=reason,
    )


# ---------------------------------------------------------------------------
# Lookups for other services
# ---------------------------------------------------------------------------


@router.get("/auth/users/email/{email}", response_model=ProfileResponse)
def get_user_by_email(
    email: str,
    verified: VerifyResult = Depends(get_verified),
    engine: AuthEngine = Depends(get_engine),
):
    # Compare before looking up, so a non-admin cannot probe which emails exist.
    if verified.user.role != Role.admin.value and email.strip().lower() != verified.user.email:
        raise Forbidden("You may only view your own account.")
    return _profile(engine.get_user_by_email(email))


@router.get("/auth/users/{user_id}", response_model=ProfileResponse)
def get_user_by_id(
    user_id: str,
    verified: VerifyResult = Depends(get_verified),
    engine: AuthEngine = Depends(get_engine),
):
    require_self_or_admin(user_id, verified)
    return _profile(engine.get_user_by_id(user_id))


@router.get("/auth/stats", response_model=StatsResponse)
def stats(verified: VerifyResult = Depends(require_admin), engine: AuthEngine = Depends(get_engine)):
    return StatsResponse(**engine.stats())
