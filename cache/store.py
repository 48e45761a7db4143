"""
cache/store.py -- Redis-backed revocation and session cache.

Holds the ephemeral, fast-lookup state of the token lifecycle:

  auth:blacklist:{sha256(access_token)}    tombstone, TTL = token's remaining life
  auth:session:{user_id}:{session_id}      named session JSON, TTL = session TTL
  auth:user_sessions:{user_id}             SET of that user's session ids
  auth:reset:{sha256(reset_secret)}        password-reset record, TTL = reset TTL

Every key carries a TTL, so nothing here grows without bound and no
blacklist entry outlives the token it guards. Bulk session removal uses the
explicit per-user index set rather than KEYS/SCAN over the keyspace.

Raw tokens never become keys; only their SHA-256 digests do.

The Redis client is injected (constructor injection). from_url() builds a
real client with socket timeouts so no call blocks indefinitely; tests pass
a fakeredis client. redis.RedisError propagates to the engine, which maps it
to ServiceUnavailable.

Usage:
    cache = RevocationCache.from_url("redis://localhost:6379/0", timeout=5.0)
    cache.blacklist(token, ttl_seconds=600)
    cache.is_blacklisted(token)              # True
    cache.delete_all_user_sessions(user_id)
"""

from __future__ import annotations

import hashlib
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from redis import Redis

from auth.models import NamedSession

logger = logging.getLogger("gatehouse.cache")


def _digest(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class RevocationCache:
    def __init__(self, client: Redis) -> None:
        self.client = client

    @classmethod
    def from_url(cls, redis_url: str, *, timeout: float = 5.0) -> "RevocationCache":
        client = Redis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client)

    # ------------------------------------------------------------------
    # Access-token blacklist
    # ------------------------------------------------------------------

    @staticmethod
    def _blacklist_key(token: str) -> str:
        return f"auth:blacklist:{_digest(token)}"

    def blacklist(self, token: str, ttl_seconds: int) -> bool:
        """Tombstone an access token for ttl_seconds.

        Returns False and writes nothing when the token has no remaining
        life -- an expired token is already unusable.
        """
        if ttl_seconds <= 0:
            return False
        self.client.set(self._blacklist_key(token), "1", ex=int(ttl_seconds))
        return True

    def is_blacklisted(self, token: str) -> bool:
        return bool(self.client.exists(self._blacklist_key(token)))

    # ------------------------------------------------------------------
    # Named sessions
    # ------------------------------------------------------------------

    @staticmethod
    def _session_key(user_id: str, session_id: str) -> str:
        return f"auth:session:{user_id}:{session_id}"

    @staticmethod
    def _index_key(user_id: str) -> str:
        return f"auth:user_sessions:{user_id}"

    def store_session(self, user_id: str, payload: dict[str, Any], ttl_seconds: int) -> str:
        """Create a named session and register it in the user's index. Returns the session id."""
        session_id = uuid.uuid4().hex
        record = {"createdAt": datetime.now(timezone.utc).isoformat(), **payload, "sessionId": session_id}
        index_key = self._index_key(user_id)
        pipe = self.client.pipeline()
        pipe.set(self._session_key(user_id, session_id), json.dumps(record), ex=int(ttl_seconds))
        pipe.sadd(index_key, session_id)
        # All sessions share one TTL, so the newest one always lives longest.
        pipe.expire(index_key, int(ttl_seconds))
        pipe.execute()
        return session_id

    def get_session(self, user_id: str, session_id: str) -> Optional[NamedSession]:
        raw = self.client.get(self._session_key(user_id, session_id))
        if raw is None:
            return None
        return _to_session(user_id, session_id, raw)

    def list_sessions(self, user_id: str) -> list[NamedSession]:
        """Return the user's live sessions, pruning index entries whose session expired."""
        index_key = self._index_key(user_id)
        session_ids = sorted(self.client.smembers(index_key))
        if not session_ids:
            return []
        values = self.client.mget([self._session_key(user_id, sid) for sid in session_ids])
        sessions: list[NamedSession] = []
        stale: list[str] = []
        for sid, raw in zip(session_ids, values):
            if raw is None:
                stale.append(sid)
            else:
                sessions.append(_to_session(user_id, sid, raw))
        if stale:
            self.client.srem(index_key, *stale)
        return sessions

    def delete_session(self, user_id: str, session_id: str) -> bool:
        pipe = self.client.pipeline()
        pipe.delete(self._session_key(user_id, session_id))
        pipe.srem(self._index_key(user_id), session_id)
        deleted, _ = pipe.execute()
        return bool(deleted)

    def delete_all_user_sessions(self, user_id: str) -> int:
        """Delete every named session of the user via the index set. Returns sessions removed."""
        index_key = self._index_key(user_id)
        session_ids = self.client.smembers(index_key)
        if not session_ids:
            return 0
        pipe = self.client.pipeline()
        pipe.delete(*[self._session_key(user_id, sid) for sid in session_ids])
        # SREM only what was read; a session created concurrently keeps its index entry.
        pipe.srem(index_key, *session_ids)
        deleted, _ = pipe.execute()
        return int(deleted)

    # ------------------------------------------------------------------
    # Password-reset secrets (single use)
    # ------------------------------------------------------------------

    @staticmethod
    def _reset_key(token_hash: str) -> str:
        return f"auth:reset:{token_hash}"

    def store_reset_token(self, token_hash: str, payload: dict[str, Any], ttl_seconds: int) -> None:
        self.client.set(self._reset_key(token_hash), json.dumps(payload), ex=int(ttl_seconds))

    def consume_reset_token(self, token_hash: str) -> Optional[dict[str, Any]]:
        """Read and delete a reset record in one MULTI/EXEC, so it can be redeemed once."""
        key = self._reset_key(token_hash)
        pipe = self.client.pipeline(transaction=True)
        pipe.get(key)
        pipe.delete(key)
        raw, _ = pipe.execute()
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            logger.warning("Discarding unreadable reset record %s", token_hash[:8])
            return None

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def ping(self) -> bool:
        return bool(self.client.ping())

    def close(self) -> None:
        self.client.close()


def _to_session(user_id: str, session_id: str, raw: str) -> NamedSession:
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        data = {}
    created_at = data.pop("createdAt", "")
    data.pop("sessionId", None)
    return NamedSession(user_id=user_id, session_id=session_id, created_at=created_at, payload=data)
