"""
auth/lockout.py -- Account lockout policy.

Pure decision logic over the failed-attempt counter and lock timestamp of a
User record. Threshold and duration come from Settings and are passed in;
nothing here reads config or touches a store.

The counter mutation itself lives in CredentialStore.increment_failed_attempts,
which applies the same rule inside a single UPDATE so concurrent failures
cannot undercount. The policy object supplies the parameters for that update.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from auth.models import User


@dataclass(frozen=True)
class LockoutPolicy:
    threshold: int = 5
    duration: timedelta = timedelta(minutes=15)

    def is_locked(self, user: User, now: datetime) -> bool:
        """True iff lock-until is set and still in the future."""
        return user.locked_until is not None and user.locked_until > now

    def lock_expires_at(self, now: datetime) -> datetime:
        return now + self.duration
