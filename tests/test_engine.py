"""Tests for auth/engine.py -- the token lifecycle engine end to end over real stores.

Covers:
- register: mismatch, weak password, bad email, duplicate (any case), event
- login: enumeration resistance, lockout after five failures, disabled accounts
- login: unknown emails burn a bcrypt check at the configured cost
- refresh: single-use rotation, reuse revokes the lineage, a lost race revokes nothing
- logout / logout_all / verify: blacklist, idempotency, forged tokens, deactivation
- password reset: single-use secret, everything revoked afterwards
- store and cache outages fail closed with ServiceUnavailable
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from jose import jwt
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from sqlalchemy.exc import OperationalError

import auth.engine
from auth.engine import AuthEngine
from auth.models import Role, TokenState
from auth.tokens import hash_opaque_secret
from core.errors import (
    AccountDisabled,
    AccountLocked,
    AlreadyExists,
    InvalidCredentials,
    NotFound,
    PasswordMismatch,
    ServiceUnavailable,
    ValidationFailure,
    WeakPassword,
)

PASSWORD = "Str0ng!Pass"
NEW_PASSWORD = "N3w&Better!"

# ---------------------------------------------------------------------------
# register
# ---------------------------------------------------------------------------


def test_register_returns_working_pair(engine, publisher):
    result = engine.register("Alice@Example.com", PASSWORD, PASSWORD)
    assert result.user.email == "alice@example.com"
    assert result.user.role == "user"
    assert result.expires_in == 900
    assert len(result.refresh_token) == 128

    verified = engine.verify(result.access_token)
    assert verified.user.id == result.user.id
    assert verified.claims.email == "alice@example.com"
    assert publisher.names() == ["user.registered"]


def test_register_checks_confirmation_first(engine):
    with pytest.raises(PasswordMismatch):
        engine.register("a@example.com", PASSWORD, PASSWORD + "x")


def test_register_rejects_weak_password(engine):
    with pytest.raises(WeakPassword):
        engine.register("a@example.com", "password", "password")
    with pytest.raises(WeakPassword) as exc:
        engine.register("a@example.com", "Password123", "Password123")
    assert "common" in exc.value.reason


@pytest.mark.parametrize("email", ["", "no-at-sign", "two@@example.com", "a@b", "x" * 250 + "@example.com"])
def test_register_rejects_bad_email(engine, email):
    with pytest.raises(ValidationFailure):
        engine.register(email, PASSWORD, PASSWORD)


def test_duplicate_email_any_case(engine, registered):
    with pytest.raises(AlreadyExists):
        engine.register("ALICE@example.com", PASSWORD, PASSWORD)


def test_publisher_failure_does_not_undo_registration(engine):
    engine.publisher = MagicMock()
    engine.publisher.publish.side_effect = RuntimeError("sink down")
    result = engine.register("a@example.com", PASSWORD, PASSWORD)
    assert engine.get_user_by_id(result.user.id).email == "a@example.com"


# ---------------------------------------------------------------------------
# login and lockout
# ---------------------------------------------------------------------------


def test_login_success(engine, registered, publisher, clock):
    result = engine.login("ALICE@example.com", PASSWORD)
    assert result.user.id == registered.user.id
    assert engine.get_current_user(result.user.id).last_login == clock()
    assert "user.login" in publisher.names()


def test_unknown_email_and_wrong_password_look_the_same(engine, registered):
    with pytest.raises(InvalidCredentials) as missing:
        engine.login("nobody@example.com", PASSWORD)
    with pytest.raises(InvalidCredentials) as wrong:
        engine.login("alice@example.com", "Wr0ng!Pass")
    assert missing.value.message == wrong.value.message
    assert missing.value.status_code == wrong.value.status_code == 401


def test_unknown_email_burns_a_check_at_real_cost(engine, registered, store, monkeypatch):
    burned = []
    monkeypatch.setattr(auth.engine, "burn_password_check", lambda plain, hashed: burned.append(hashed))
    with pytest.raises(InvalidCredentials):
        engine.login("nobody@example.com", PASSWORD)
    assert burned == [engine.dummy_hash]
    real_hash = store.get_by_email("alice@example.com").password_hash
    assert engine.dummy_hash[:7] == real_hash[:7] == "$2b$04$"


def test_dummy_hash_follows_configured_rounds(settings, store, cache, clock):
    tuned = AuthEngine.from_settings(settings.model_copy(update={"bcrypt_rounds": 5}), store, cache, clock=clock)
    assert tuned.dummy_hash.startswith("$2b$05$")


def test_five_failures_lock_the_account(engine, registered, publisher):
    responses = []
    for _ in range(5):
        with pytest.raises((InvalidCredentials, AccountLocked)) as exc:
            engine.login("alice@example.com", "Wr0ng!Pass")
        responses.append(type(exc.value))
    assert responses == [InvalidCredentials] * 4 + [AccountLocked]
    assert "security.account_locked" in publisher.names()

    # Correct password is refused while the lock is in force.
    with pytest.raises(AccountLocked) as exc:
        engine.login("alice@example.com", PASSWORD)
    assert exc.value.status_code == 403
    assert exc.value.locked_until is not None


def test_lock_lapses_after_duration(engine, registered, clock):
    for _ in range(5):
        with pytest.raises((InvalidCredentials, AccountLocked)):
            engine.login("alice@example.com", "Wr0ng!Pass")
    clock.advance(minutes=14)
    with pytest.raises(AccountLocked):
        engine.login("alice@example.com", PASSWORD)
    clock.advance(minutes=2)
    engine.login("alice@example.com", PASSWORD)
    assert engine.get_current_user(registered.user.id).failed_login_attempts == 0


def test_success_resets_failure_count(engine, registered):
    for _ in range(4):
        with pytest.raises(InvalidCredentials):
            engine.login("alice@example.com", "Wr0ng!Pass")
    engine.login("alice@example.com", PASSWORD)
    for _ in range(4):
        with pytest.raises(InvalidCredentials):
            engine.login("alice@example.com", "Wr0ng!Pass")


def test_disabled_account(engine, registered):
    engine.set_active(registered.user.id, False)
    with pytest.raises(InvalidCredentials):
        engine.login("alice@example.com", "Wr0ng!Pass")
    with pytest.raises(AccountDisabled):
        engine.login("alice@example.com", PASSWORD)


def test_login_fails_closed_on_store_timeout(engine, registered):
    engine.store = MagicMock(wraps=engine.store)
    engine.store.get_by_email.side_effect = OperationalError("SELECT", {}, Exception("database is locked"))
    with pytest.raises(ServiceUnavailable) as exc:
        engine.login("alice@example.com", PASSWORD)
    assert exc.value.status_code == 503


# ---------------------------------------------------------------------------
# refresh
# ---------------------------------------------------------------------------


def test_refresh_rotates_once(engine, registered):
    rotated = engine.refresh(registered.refresh_token)
    assert rotated.refresh_token != registered.refresh_token
    assert rotated.user.id == registered.user.id
    engine.verify(rotated.access_token)

    with pytest.raises(InvalidCredentials):
        engine.refresh(registered.refresh_token)


def test_reusing_rotated_token_revokes_lineage(engine, registered, publisher):
    rotated = engine.refresh(registered.refresh_token)
    with pytest.raises(InvalidCredentials):
        engine.refresh(registered.refresh_token)
    assert "security.refresh_token_reused" in publisher.names()
    # The legitimate successor is gone too: the lineage is compromised.
    with pytest.raises(InvalidCredentials):
        engine.refresh(rotated.refresh_token)


def test_unknown_and_empty_refresh_tokens(engine):
    with pytest.raises(InvalidCredentials):
        engine.refresh("f" * 128)
    with pytest.raises(InvalidCredentials):
        engine.refresh("")


def test_expired_refresh_token(engine, registered, clock):
    clock.advance(days=8)
    with pytest.raises(InvalidCredentials):
        engine.refresh(registered.refresh_token)


def test_refresh_rechecks_active_flag(engine, registered, store, clock):
    store.set_active(registered.user.id, False, now=clock())
    with pytest.raises(InvalidCredentials):
        engine.refresh(registered.refresh_token)


def test_concurrent_refresh_has_exactly_one_winner(engine, registered, monkeypatch):
    rotate = engine.store.rotate_refresh_token
    both_checked = threading.Barrier(2, timeout=5)

    def rotate_after_both_checked(*args, **kwargs):
        both_checked.wait()
        return rotate(*args, **kwargs)

    monkeypatch.setattr(engine.store, "rotate_refresh_token", rotate_after_both_checked)

    def attempt(_):
        try:
            return engine.refresh(registered.refresh_token)
        except InvalidCredentials:
            return None

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(attempt, range(2)))
    winners = [o for o in outcomes if o is not None]
    assert len(winners) == 1

    # The loser must not take the winner's new pair down with it.
    monkeypatch.setattr(engine.store, "rotate_refresh_token", rotate)
    engine.verify(winners[0].access_token)
    engine.refresh(winners[0].refresh_token)


def test_lost_rotation_is_refused_without_revoking(engine, registered, store, publisher, monkeypatch, caplog, clock):
    monkeypatch.setattr(engine.store, "rotate_refresh_token", lambda *args, **kwargs: None)
    with caplog.at_level(logging.WARNING, logger="gatehouse.security"):
        with pytest.raises(InvalidCredentials):
            engine.refresh(registered.refresh_token)
    assert "lost the rotation" in caplog.text
    assert "security.refresh_token_reused" not in publisher.names()
    record = store.get_refresh_token_by_hash(hash_opaque_secret(registered.refresh_token))
    assert record.state(clock()) is TokenState.issued
    assert len(engine.list_sessions(registered.user.id)) == 1



def test_refresh_replaces_the_named_session(engine, registered):
    before = engine.list_sessions(registered.user.id)
    assert len(before) == 1
    engine.refresh(registered.refresh_token)
    after = engine.list_sessions(registered.user.id)
    assert len(after) == 1
    assert after[0].session_id != before[0].session_id


# ---------------------------------------------------------------------------
# logout, logout_all, verify
# ---------------------------------------------------------------------------


def test_logout_blacklists_and_revokes(engine, registered, redis_client):
    engine.logout(registered.access_token, registered.refresh_token)
    with pytest.raises(InvalidCredentials):
        engine.verify(registered.access_token)
    with pytest.raises(InvalidCredentials):
        engine.refresh(registered.refresh_token)

    keys = redis_client.keys("auth:blacklist:*")
    assert len(keys) == 1
    assert 0 < redis_client.ttl(keys[0]) <= 900


def test_logout_is_idempotent(engine, registered):
    engine.logout(registered.access_token, registered.refresh_token)
    engine.logout(registered.access_token, registered.refresh_token)
    engine.logout("garbage", "also-garbage")
    engine.logout(None, None)


def test_logout_of_expired_token_writes_nothing(engine, registered, clock, redis_client):
    clock.advance(minutes=20)
    engine.logout(registered.access_token, None)
    assert redis_client.keys("auth:blacklist:*") == []


def test_logout_of_forged_token_writes_nothing(engine, registered, clock, redis_client):
    forged = jwt.encode(
        {
            "sub": registered.user.id,
            "email": "alice@example.com",
            "role": "user",
            "jti": "forged",
            "iat": int(clock().timestamp()),
            "exp": int((clock() + timedelta(days=36500)).timestamp()),
            "iss": "gatehouse",
            "aud": "gatehouse-clients",
        },
        "an-attacker-chosen-key-0123456789abcdef",
        algorithm="HS256",
    )
    engine.logout(forged, None)
    assert redis_client.keys("auth:blacklist:*") == []


def test_logout_blacklist_never_outlives_access_ttl(engine, registered, redis_client):
    long_lived = engine.codec.mint_access_token(registered.user.id, "alice@example.com", "user", timedelta(days=10))
    engine.logout(long_lived, None)
    keys = redis_client.keys("auth:blacklist:*")
    assert len(keys) == 1
    assert 0 < redis_client.ttl(keys[0]) <= 900


def test_logout_all_then_refresh_fails(engine, registered, publisher):
    second = engine.login("alice@example.com", PASSWORD)
    assert engine.logout_all(registered.user.id) == 2
    for secret in (registered.refresh_token, second.refresh_token):
        with pytest.raises(InvalidCredentials):
            engine.refresh(secret)
    assert engine.list_sessions(registered.user.id) == []
    assert "user.logout_all_devices" in publisher.names()


def test_logout_all_leaves_access_tokens_until_expiry(engine, registered, clock):
    engine.logout_all(registered.user.id)
    engine.verify(registered.access_token)
    clock.advance(minutes=15)
    with pytest.raises(InvalidCredentials):
        engine.verify(registered.access_token)


def test_verify_rejects_deactivated_account(engine, registered, store, clock):
    store.set_active(registered.user.id, False, now=clock())
    with pytest.raises(InvalidCredentials):
        engine.verify(registered.access_token)


def test_verify_checks_blacklist_before_signature(engine, registered):
    engine.codec = MagicMock(wraps=engine.codec)
    engine.cache.blacklist(registered.access_token, 60)
    with pytest.raises(InvalidCredentials):
        engine.verify(registered.access_token)
    engine.codec.verify_access_token.assert_not_called()


def test_verify_fails_closed_when_cache_is_down(engine, registered):
    engine.cache = MagicMock(wraps=engine.cache)
    engine.cache.is_blacklisted.side_effect = RedisTimeoutError("timed out")
    with pytest.raises(ServiceUnavailable):
        engine.verify(registered.access_token)


def test_session_write_failure_does_not_fail_login(engine, registered):
    engine.cache = MagicMock(wraps=engine.cache)
    engine.cache.store_session.side_effect = RedisConnectionError("down")
    result = engine.login("alice@example.com", PASSWORD)
    assert result.access_token


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------


def _reset_secret(publisher):
    events = [e for e in publisher.events if e["event"] == "user.password_reset_requested"]
    return events[-1]["data"]["resetToken"]


def test_password_reset_flow(engine, registered, publisher):
    engine.request_password_reset("alice@example.com")
    secret = _reset_secret(publisher)

    engine.reset_password(secret, NEW_PASSWORD, NEW_PASSWORD)

    with pytest.raises(InvalidCredentials):
        engine.refresh(registered.refresh_token)
    with pytest.raises(InvalidCredentials):
        engine.login("alice@example.com", PASSWORD)
    engine.login("alice@example.com", NEW_PASSWORD)
    assert "user.password_reset_completed" in publisher.names()

    with pytest.raises(InvalidCredentials):
        engine.reset_password(secret, NEW_PASSWORD, NEW_PASSWORD)


def test_reset_for_unknown_email_is_silent(engine, publisher):
    engine.request_password_reset("nobody@example.com")
    assert "user.password_reset_requested" not in publisher.names()


def test_reset_typo_does_not_burn_the_secret(engine, registered, publisher):
    engine.request_password_reset("alice@example.com")
    secret = _reset_secret(publisher)
    with pytest.raises(PasswordMismatch):
        engine.reset_password(secret, NEW_PASSWORD, NEW_PASSWORD + "x")
    engine.reset_password(secret, NEW_PASSWORD, NEW_PASSWORD)


def test_reset_clears_lockout(engine, registered, publisher):
    for _ in range(5):
        with pytest.raises((InvalidCredentials, AccountLocked)):
            engine.login("alice@example.com", "Wr0ng!Pass")
    engine.request_password_reset("alice@example.com")
    engine.reset_password(_reset_secret(publisher), NEW_PASSWORD, NEW_PASSWORD)
    engine.login("alice@example.com", NEW_PASSWORD)


# ---------------------------------------------------------------------------
# Lookups and maintenance
# ---------------------------------------------------------------------------


def test_lookups(engine, registered):
    assert engine.get_user_by_email("ALICE@example.com").id == registered.user.id
    with pytest.raises(NotFound):
        engine.get_user_by_id("missing")
    with pytest.raises(NotFound):
        engine.get_user_by_email("nobody@example.com")


def test_operator_maintenance(engine, registered):
    for _ in range(5):
        with pytest.raises((InvalidCredentials, AccountLocked)):
            engine.login("alice@example.com", "Wr0ng!Pass")
    engine.unlock_user(registered.user.id)
    engine.login("alice@example.com", PASSWORD)

    engine.set_role(registered.user.id, Role.agent)
    assert engine.login("alice@example.com", PASSWORD).user.role == "agent"


def test_stats_and_cleanup(engine, registered, clock):
    engine.refresh(registered.refresh_token)
    stats = engine.stats()
    assert stats["users"] == 1
    assert stats["active_refresh_tokens"] == 1
    assert engine.cleanup() == 1
    clock.advance(days=8)
    assert engine.cleanup() == 1
    assert engine.stats()["active_refresh_tokens"] == 0
