"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

Only one credential is accepted: an access token in the
"Authorization: Bearer <token>" header. Verification is delegated entirely
to AuthEngine.verify(), which checks the blacklist, the signature and
claims, and that the account is still active.

Failures raise core.errors exceptions (InvalidCredentials, Forbidden,
ServiceUnavailable); api/main.py renders them with the standard envelope.

Layer rule: no imports from api/ or cache/.
  auth/dependencies.py may import from fastapi (for Depends/Request)
  because this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

from fastapi import Depends, Request

from auth.engine import AuthEngine
from auth.models import Role, VerifyResult
from core.errors import Forbidden, InvalidCredentials


def get_engine(request: Request) -> AuthEngine:
    """The engine built in the app lifespan."""
    return request.app.state.engine


def bearer_token(request: Request) -> str | None:
    """Return the raw bearer token, or None when the header is absent or not Bearer."""
    header = request.headers.get("Authorization", "")
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def get_verified(request: Request, engine: AuthEngine = Depends(get_engine)) -> VerifyResult:
    """Require a valid bearer token.

    Use as a FastAPI dependency:
        @router.get("/protected")
        def route(verified: VerifyResult = Depends(get_verified)): ...
    """
    token = bearer_token(request)
    if token is None:
        raise InvalidCredentials("Authentication required.")
    return engine.verify(token)


def require_admin(verified: VerifyResult = Depends(get_verified)) -> VerifyResult:
    """Require the admin role. 401 if unauthenticated, 403 if authenticated but not admin."""
    if verified.user.role != Role.admin.value:
        raise Forbidden("Admin access required.")
    return verified


def require_self_or_admin(user_id: str, verified: VerifyResult) -> None:
    """Allow access to a user's record only to that user or an admin."""
    if verified.user.id != user_id and verified.user.role != Role.admin.value:
        raise Forbidden("You may only view your own account.")
