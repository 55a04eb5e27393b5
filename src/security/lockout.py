"""
Brute-force Guard.

Per-account lockout state machine:

    Unlocked(n) --failure, n+1 < max--> Unlocked(n+1)
    Unlocked(n) --failure, n+1 >= max--> Locked(now + lock_duration)
    Locked(t)   --t elapsed (lazy)-----> Unlocked(0)
    any         --successful login-----> Unlocked(0)

The lock check runs before credential verification. Counting and locking
are a single atomic store update per account.
"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from typing import Callable

import structlog

from src.security.errors import AccountLocked, Unauthenticated
from src.security.models import LockoutState, Principal
from src.security.stores import UserStore

logger = structlog.get_logger(__name__)


class BruteForceGuard:
    """Failed-login counter and lockout enforcement."""

    def __init__(
        self,
        users: UserStore,
        max_attempts: int = 5,
        lock_duration_seconds: float = 15 * 60,
        clock: Callable[[], float] = time.time,
        store_timeout: float = 2.0,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self._users = users
        self._max_attempts = max_attempts
        self._lock_duration = timedelta(seconds=lock_duration_seconds)
        self._clock = clock
        self._store_timeout = store_timeout

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def lock_duration(self) -> timedelta:
        return self._lock_duration

    def now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc)

    def is_locked(self, principal: Principal) -> bool:
        return principal.lockout.is_locked(self.now())

    def remaining_seconds(self, principal: Principal) -> float:
        lock_until = principal.lockout.lock_until
        if lock_until is None:
            return 0.0
        return max(0.0, (lock_until - self.now()).total_seconds())

    async def _store_call(self, coro, user_id: str):
        try:
            return await asyncio.wait_for(coro, timeout=self._store_timeout)
        except asyncio.TimeoutError as e:
            logger.error("Lockout store timed out", user_id=user_id)
            raise Unauthenticated("Authentication temporarily unavailable") from e

    async def ensure_unlocked(self, principal: Principal) -> None:
        """
        Reject a login attempt on a locked account.

        Must be called before the credential is checked. An elapsed lock is
        cleared here, together with its failed-attempt count.
        """
        now = self.now()
        lockout = principal.lockout

        if lockout.is_locked(now):
            remaining = (lockout.lock_until - now).total_seconds()
            logger.warning(
                "Login attempt on locked account",
                user_id=principal.id,
                retry_after=round(remaining),
            )
            raise AccountLocked(lock_until=lockout.lock_until, retry_after=remaining)

        if lockout.is_expired(now):
            await self._store_call(
                self._users.clear_expired_lock(principal.id, now), principal.id
            )

    async def register_failure(self, principal: Principal) -> LockoutState:
        """Count a failed credential check; locks the account at the threshold."""
        now = self.now()
        state: LockoutState = await self._store_call(
            self._users.register_failed_login(
                principal.id,
                max_attempts=self._max_attempts,
                now=now,
                lock_until=now + self._lock_duration,
            ),
            principal.id,
        )

        if state.is_locked(now) and state.failed_attempts >= self._max_attempts:
            logger.warning(
                "Account locked after repeated failed logins",
                user_id=principal.id,
                failed_attempts=state.failed_attempts,
                lock_until=state.lock_until.isoformat(),
            )
        else:
            logger.info(
                "Failed login recorded",
                user_id=principal.id,
                failed_attempts=state.failed_attempts,
            )
        return state

    async def register_success(self, principal: Principal) -> None:
        """Reset failed attempts and any lock after a successful login."""
        await self._store_call(self._users.clear_failed_logins(principal.id), principal.id)
