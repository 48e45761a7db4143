"""
auth/engine.py -- Token lifecycle engine.

Orchestrates the credential store, the token codec, the revocation/session
cache, and the two pure policies into the public operations:

  register, login, refresh, logout, logout_all, verify
  get_current_user, get_user_by_id, get_user_by_email, list_sessions
  request_password_reset, reset_password
  unlock_user, set_active, set_role
  stats, cleanup

Refresh-token lineage:
  ISSUED -> ROTATED | REVOKED | EXPIRED. Only ISSUED is usable. Rotation is
  the store's conditional revoke-then-insert; its row count decides the
  winner when two callers present the same secret. Presenting a ROTATED
  secret is treated as theft: every refresh token the user holds is revoked
  and the anomaly is logged on the gatehouse.security logger. The caller
  only ever sees InvalidCredentials. A caller that loses a concurrent
  rotation (the other caller already won) is logged and refused, and the
  winner's new pair stays valid.

Failure policy:
  SQLAlchemyError and RedisError never escape. _guard() logs the cause and
  raises ServiceUnavailable, so a store outage fails closed and is never
  mistaken for bad credentials. Publisher failures are logged and dropped.

All collaborators, TTLs, and the clock are constructor arguments. Nothing
here reads environment or Settings after construction.

Layer rule: no imports from api/. cache/ is reached only through the
RevocationCache instance passed in.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Iterable, Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from auth.events import EventPublisher, LoggingPublisher
from auth.lockout import LockoutPolicy
from auth.models import AuthResult, NamedSession, RefreshToken, Role, TokenState, User, UserSummary, VerifyResult
from auth.passwords import burn_password_check, hash_password, make_dummy_hash, validate_strength
from auth.store import CredentialStore
from auth.tokens import (
    Clock,
    TokenCodec,
    TokenError,
    hash_opaque_secret,
    mint_refresh_secret,
    mint_reset_secret,
    utcnow,
)
from core.errors import (
    AccountDisabled,
    AccountLocked,
    InvalidCredentials,
    NotFound,
    PasswordMismatch,
    ServiceUnavailable,
    ValidationFailure,
)

if TYPE_CHECKING:
    from cache.store import RevocationCache
    from core.config import Settings

logger = logging.getLogger("gatehouse.engine")
security_log = logging.getLogger("gatehouse.security")

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MAX_EMAIL_LENGTH = 255


class AuthEngine:
    """Token lifecycle engine.

    Usage:
        engine = AuthEngine.from_settings(settings, CredentialStore(url), RevocationCache.from_url(redis_url))
        result = engine.register("alice@example.com", "Str0ng!Pass", "Str0ng!Pass")
        engine.verify(result.access_token)
        engine.refresh(result.refresh_token)
    """

    def __init__(
        self,
        store: CredentialStore,
        cache: "RevocationCache",
        codec: TokenCodec,
        *,
        publisher: Optional[EventPublisher] = None,
        lockout: LockoutPolicy = LockoutPolicy(),
        access_ttl: timedelta = timedelta(minutes=15),
        refresh_ttl: timedelta = timedelta(days=7),
        session_ttl: Optional[timedelta] = None,
        reset_ttl: timedelta = timedelta(minutes=15),
        bcrypt_rounds: int = 12,
        denylist: Iterable[str] = (),
        clock: Clock = utcnow,
    ) -> None:
        self.store = store
        self.cache = cache
        self.codec = codec
        self.publisher: EventPublisher = publisher if publisher is not None else LoggingPublisher()
        self.lockout = lockout
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.session_ttl = session_ttl or refresh_ttl
        self.reset_ttl = reset_ttl
        self.bcrypt_rounds = bcrypt_rounds
        self.dummy_hash = make_dummy_hash(bcrypt_rounds)
        self.denylist = frozenset(p.lower() for p in denylist)
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: "Settings",
        store: CredentialStore,
        cache: "RevocationCache",
        *,
        publisher: Optional[EventPublisher] = None,
        clock: Clock = utcnow,
    ) -> "AuthEngine":
        codec = TokenCodec(
            settings.secret_key,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            clock=clock,
        )
        return cls(
            store,
            cache,
            codec,
            publisher=publisher,
            lockout=LockoutPolicy(
                threshold=settings.lockout_threshold,
                duration=timedelta(minutes=settings.lockout_minutes),
            ),
            access_ttl=timedelta(seconds=settings.access_token_ttl_seconds),
            refresh_ttl=timedelta(seconds=settings.refresh_token_ttl_seconds),
            session_ttl=timedelta(seconds=settings.effective_session_ttl),
            reset_ttl=timedelta(seconds=settings.reset_token_ttl_seconds),
            bcrypt_rounds=settings.bcrypt_rounds,
            denylist=settings.denylist,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        """Map backing-store failures to ServiceUnavailable."""
        try:
            yield
        except (SQLAlchemyError, RedisError) as exc:
            logger.exception("Backing store failure during %s", operation)
            raise ServiceUnavailable() from exc

    def _emit(self, event_name: str, payload: dict[str, Any]) -> None:
        """Fire-and-forget. A sink failure must never reach the caller."""
        try:
            self.publisher.publish(event_name, payload)
        except Exception:
            logger.exception("Publisher raised for %s; event dropped", event_name)

    def _validate_new_password(self, password: str, confirm_password: str) -> None:
        if password != confirm_password:
            raise PasswordMismatch()
        validate_strength(password, self.denylist)

    @staticmethod
    def _summary(user: User) -> UserSummary:
        return UserSummary(id=user.id, email=user.email, role=Role(user.role).value)

    def _complete(self, user: User, refresh_secret: str, record: RefreshToken) -> AuthResult:
        """Mint the access token for a freshly persisted refresh record and open a named session."""
        access_token = self.codec.mint_access_token(user.id, user.email, Role(user.role).value, self.access_ttl)
        self._open_session(user.id, record.id)
        return AuthResult(
            access_token=access_token,
            refresh_token=refresh_secret,
            user=self._summary(user),
            expires_in=int(self.access_ttl.total_seconds()),
        )

    def _issue(self, user: User) -> AuthResult:
        now = self._clock()
        secret = mint_refresh_secret()
        with self._guard("refresh token issue"):
            record = self.store.create_refresh_token(
                user.id, hash_opaque_secret(secret), now + self.refresh_ttl, now=now
            )
        return self._complete(user, secret, record)

    # Named sessions are auxiliary: they exist for enumeration and bulk
    # removal, so a cache failure while recording one does not fail the
    # login that produced it.

    def _open_session(self, user_id: str, refresh_token_id: str) -> None:
        payload = {"createdAt": self._clock().isoformat(), "refreshTokenId": refresh_token_id}
        try:
            self.cache.store_session(user_id, payload, int(self.session_ttl.total_seconds()))
        except RedisError as exc:
            logger.warning("Could not record session for user %s: %s", user_id, exc)

    def _close_session(self, user_id: str, refresh_token_id: str) -> None:
        try:
            for session in self.cache.list_sessions(user_id):
                if session.payload.get("refreshTokenId") == refresh_token_id:
                    self.cache.delete_session(user_id, session.session_id)
        except RedisError as exc:
            logger.warning("Could not close session for user %s: %s", user_id, exc)

    def _revoke_lineage(self, record: RefreshToken, reason: str) -> None:
        """Reuse detected: revoke every refresh token the owner holds."""
        with self._guard("reuse revocation"):
            revoked = self.store.revoke_all_for_user(record.user_id)
        security_log.warning(
            "Refresh token reuse (%s) for user %s token %s; revoked %d active token(s)",
            reason,
            record.user_id,
            record.id,
            revoked,
        )
        self._emit(
            "security.refresh_token_reused",
            {"userId": record.user_id, "tokenId": record.id, "reason": reason, "revokedTokens": revoked},
        )

    # ------------------------------------------------------------------
    # Credential operations
    # ------------------------------------------------------------------

    def register(self, email: str, password: str, confirm_password: str) -> AuthResult:
        """Create an account and return its first token pair.

        Raises PasswordMismatch, WeakPassword, ValidationFailure (bad email),
        AlreadyExists, or ServiceUnavailable. The registration event is sent
        after the user is committed and cannot undo it.
        """
        if password != confirm_password:
            raise PasswordMismatch()
        user = self.provision_user(email, password, Role.user)
        result = self._issue(user)
        self._emit("user.registered", {"userId": user.id, "email": user.email, "role": result.user.role})
        return result

    def provision_user(self, email: str, password: str, role: Role) -> User:
        """Create an account with the given role and no tokens. Used by register and the operator CLI."""
        email = (email or "").strip()
        if len(email) > _MAX_EMAIL_LENGTH or not _EMAIL_RE.match(email):
            raise ValidationFailure("A valid email address is required.")
        validate_strength(password, self.denylist)

        password_hash = hash_password(password, rounds=self.bcrypt_rounds)
        with self._guard("create user"):
            user = self.store.create_user(email, password_hash, Role(role), now=self._clock())
        logger.info("Created user %s (role=%s)", user.id, user.role.value)
        return user

    def login(self, email: str, password: str) -> AuthResult:
        """Authenticate by email and password.

        Unknown email, wrong password, and a wrong password on a disabled
        account are all InvalidCredentials. A lock in force is reported
        before the password is checked.
        """
        now = self._clock()
        with self._guard("login lookup"):
            user = self.store.get_by_email(email or "")
        if user is None:
            burn_password_check(password or "", self.dummy_hash)
            logger.info("Login failed: unknown email")
            raise InvalidCredentials()

        if self.lockout.is_locked(user, now):
            security_log.warning("Login attempt on locked account %s", user.id)
            raise AccountLocked(user.locked_until)

        if not self.store.verify_password(user, password or ""):
            with self._guard("failed attempt update"):
                state = self.store.increment_failed_attempts(user.id, now=now, policy=self.lockout)
            if state.locked_until is not None and state.locked_until > now:
                security_log.warning(
                    "Account %s locked after %d failed attempts until %s",
                    user.id,
                    state.failed_login_attempts,
                    state.locked_until.isoformat(),
                )
                self._emit(
                    "security.account_locked",
                    {
                        "userId": user.id,
                        "failedAttempts": state.failed_login_attempts,
                        "lockedUntil": state.locked_until.isoformat(),
                    },
                )
                raise AccountLocked(state.locked_until)
            logger.info("Login failed for user %s (%d failed attempts)", user.id, state.failed_login_attempts)
            raise InvalidCredentials()

        if not user.is_active:
            logger.info("Login refused for disabled account %s", user.id)
            raise AccountDisabled()

        with self._guard("login success update"):
            unlocked = self.store.update_last_login(user.id, now=now)
            if not unlocked:
                # A concurrent failure locked the account after our lock check.
                fresh = self.store.get_by_id(user.id)
        if not unlocked:
            security_log.warning("Correct password raced a lockout on account %s", user.id)
            raise AccountLocked(fresh.locked_until if fresh is not None else None)

        result = self._issue(user)
        logger.info("User %s logged in", user.id)
        self._emit("user.login", {"userId": user.id, "email": user.email})
        return result

    def refresh(self, refresh_secret: str) -> AuthResult:
        """Exchange a refresh secret for a new token pair, exactly once.

        Unknown, expired, revoked, and rotated secrets all fail with
        InvalidCredentials. A rotated secret additionally revokes the whole
        lineage.
        """
        if not refresh_secret:
            raise InvalidCredentials()
        now = self._clock()
        with self._guard("refresh lookup"):
            record = self.store.get_refresh_token_by_hash(hash_opaque_secret(refresh_secret))
        if record is None:
            logger.info("Refresh failed: unknown token")
            raise InvalidCredentials()

        state = record.state(now)
        if state is TokenState.rotated:
            self._revoke_lineage(record, "rotated token presented")
            raise InvalidCredentials()
        if state is not TokenState.issued:
            logger.info("Refresh failed: token %s is %s", record.id, state.value)
            raise InvalidCredentials()

        with self._guard("refresh user lookup"):
            user = self.store.get_by_id(record.user_id)
        if user is None or not user.is_active:
            logger.info("Refresh refused: user %s missing or disabled", record.user_id)
            raise InvalidCredentials()

        new_secret = mint_refresh_secret()
        with self._guard("refresh rotation"):
            successor = self.store.rotate_refresh_token(
                record.id, hash_opaque_secret(new_secret), now + self.refresh_ttl, now=now
            )
        if successor is None:
            # Another caller rotated this record first. The winner keeps its new pair.
            security_log.warning(
                "Concurrent refresh of token %s for user %s lost the rotation", record.id, record.user_id
            )
            raise InvalidCredentials()

        self._close_session(user.id, record.id)
        logger.debug("Rotated refresh token %s -> %s", record.id, successor.id)
        return self._complete(user, new_secret, successor)

    def logout(self, access_token: Optional[str], refresh_secret: Optional[str]) -> None:
        """Blacklist the access token and revoke the refresh token. Always succeeds on well-formed input.

        Already-expired, already-revoked, unknown, and forged tokens are no-ops.
        """
        now = self._clock()
        user_id = None
        if access_token:
            claims = self.codec.claims_for_revocation(access_token)
            if claims is not None:
                # Never longer than an access token can live, whatever exp says.
                ttl = min(
                    math.ceil((claims.expires_at - now).total_seconds()),
                    int(self.access_ttl.total_seconds()),
                )
                with self._guard("logout blacklist"):
                    self.cache.blacklist(access_token, ttl)
                user_id = claims.subject

        if refresh_secret:
            with self._guard("logout revoke"):
                record = self.store.get_refresh_token_by_hash(hash_opaque_secret(refresh_secret))
                if record is not None:
                    self.store.revoke_refresh_token(record.token_hash)
            if record is not None:
                user_id = user_id or record.user_id
                self._close_session(record.user_id, record.id)

        if user_id:
            logger.info("User %s logged out", user_id)
            self._emit("user.logout", {"userId": user_id})

    def logout_all(self, user_id: str) -> int:
        """Revoke every refresh token of the user and delete their named sessions.

        Live access tokens are not blacklisted here; they lapse within the
        access-token TTL. Returns the number of refresh tokens revoked.
        """
        with self._guard("logout-all revoke"):
            revoked = self.store.revoke_all_for_user(user_id)
        with self._guard("logout-all sessions"):
            sessions = self.cache.delete_all_user_sessions(user_id)
        logger.info("User %s logged out everywhere (%d tokens, %d sessions)", user_id, revoked, sessions)
        self._emit("user.logout_all_devices", {"userId": user_id, "revokedTokens": revoked, "sessions": sessions})
        return revoked

    def verify(self, access_token: str) -> VerifyResult:
        """Validate a bearer token and confirm its account is still active.

        The blacklist is consulted first, before any signature work.
        """
        if not access_token:
            raise InvalidCredentials()
        with self._guard("blacklist lookup"):
            blacklisted = self.cache.is_blacklisted(access_token)
        if blacklisted:
            security_log.warning("Blacklisted access token presented")
            raise InvalidCredentials()

        try:
            claims = self.codec.verify_access_token(access_token)
        except TokenError as exc:
            logger.debug("Access token rejected: %s: %s", type(exc).__name__, exc)
            raise InvalidCredentials() from exc

        with self._guard("verify user lookup"):
            user = self.store.get_by_id(claims.subject)
        if user is None or not user.is_active:
            logger.info("Access token for missing or disabled user %s", claims.subject)
            raise InvalidCredentials()
        return VerifyResult(user=self._summary(user), claims=claims)

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def get_current_user(self, user_id: str) -> User:
        return self.get_user_by_id(user_id)

    def get_user_by_id(self, user_id: str) -> User:
        with self._guard("user lookup"):
            user = self.store.get_by_id(user_id)
        if user is None:
            raise NotFound("User not found.")
        return user

    def get_user_by_email(self, email: str) -> User:
        with self._guard("user lookup"):
            user = self.store.get_by_email(email)
        if user is None:
            raise NotFound("User not found.")
        return user

    def list_sessions(self, user_id: str) -> list[NamedSession]:
        with self._guard("session listing"):
            return self.cache.list_sessions(user_id)

    # ------------------------------------------------------------------
    # Operator account maintenance
    # ------------------------------------------------------------------

    def unlock_user(self, user_id: str) -> None:
        """Clear the failed-attempt counter and any lock."""
        self.get_user_by_id(user_id)
        with self._guard("unlock"):
            self.store.reset_failed_attempts(user_id, now=self._clock())
        logger.info("Unlocked user %s", user_id)

    def set_active(self, user_id: str, active: bool) -> None:
        """Enable or disable an account. Disabling also signs it out everywhere."""
        self.get_user_by_id(user_id)
        with self._guard("set active"):
            self.store.set_active(user_id, active, now=self._clock())
        logger.info("User %s %s", user_id, "enabled" if active else "disabled")
        if not active:
            self.logout_all(user_id)

    def set_role(self, user_id: str, role: Role) -> None:
        self.get_user_by_id(user_id)
        with self._guard("set role"):
            self.store.set_role(user_id, Role(role), now=self._clock())
        logger.info("User %s role set to %s", user_id, Role(role).value)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def request_password_reset(self, email: str) -> None:
        """Issue a single-use reset secret if the account exists.

        The outcome is identical either way, so callers cannot probe for
        accounts. The raw secret travels only in the published event.
        """
        with self._guard("reset lookup"):
            user = self.store.get_by_email(email or "")
        if user is None or not user.is_active:
            logger.info("Password reset requested for unknown or disabled account")
            return

        secret = mint_reset_secret()
        now = self._clock()
        ttl = int(self.reset_ttl.total_seconds())
        with self._guard("reset token store"):
            self.cache.store_reset_token(
                hash_opaque_secret(secret),
                {"userId": user.id, "email": user.email, "createdAt": now.isoformat()},
                ttl,
            )
        logger.info("Password reset issued for user %s", user.id)
        self._emit(
            "user.password_reset_requested",
            {"userId": user.id, "email": user.email, "resetToken": secret, "expiresIn": ttl},
        )

    def reset_password(self, reset_secret: str, password: str, confirm_password: str) -> None:
        """Redeem a reset secret, set the new password, and sign the user out everywhere.

        Password checks run first so a typo does not burn the secret.
        """
        self._validate_new_password(password, confirm_password)
        if not reset_secret:
            raise InvalidCredentials("Invalid or expired reset token.")
        with self._guard("reset token consume"):
            record = self.cache.consume_reset_token(hash_opaque_secret(reset_secret))
        if record is None:
            raise InvalidCredentials("Invalid or expired reset token.")

        user_id = str(record.get("userId", ""))
        with self._guard("reset user lookup"):
            user = self.store.get_by_id(user_id)
        if user is None or not user.is_active:
            raise InvalidCredentials("Invalid or expired reset token.")

        password_hash = hash_password(password, rounds=self.bcrypt_rounds)
        now = self._clock()
        with self._guard("password reset"):
            self.store.update_password(user.id, password_hash, now=now)
            revoked = self.store.revoke_all_for_user(user.id)
            self.cache.delete_all_user_sessions(user.id)
        logger.info("Password reset completed for user %s (%d tokens revoked)", user.id, revoked)
        self._emit("user.password_reset_completed", {"userId": user.id, "email": user.email})

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, int]:
        with self._guard("stats"):
            return self.store.stats(now=self._clock())

    def cleanup(self) -> int:
        """Delete expired and revoked refresh records. Returns rows removed."""
        with self._guard("cleanup"):
            removed = self.store.purge_refresh_tokens(now=self._clock())
        logger.info("Cleanup removed %d refresh token record(s)", removed)
        return removed
