"""
User and Chapter store contracts.

The pipeline depends only on these narrow async interfaces. The in-memory
implementations back development and tests; a document-store adapter
implements the same methods with single conditional updates.
"""

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime
from typing import Any

import structlog

from src.security.models import LockoutState, Principal

logger = structlog.get_logger(__name__)

# Fields the pipeline is allowed to change through update()
UPDATABLE_FIELDS = frozenset({"role", "is_active", "is_email_verified", "last_login", "password_hash"})


class UserStore(ABC):
    """User collaborator used for principal loading and lockout persistence."""

    @abstractmethod
    async def find_by_id(self, user_id: str) -> Principal | None:
        pass

    @abstractmethod
    async def find_by_identifier(self, identifier: str) -> Principal | None:
        """Look up by login identifier (email, case-insensitive)."""
        pass

    @abstractmethod
    async def update(self, user_id: str, fields: dict[str, Any]) -> Principal | None:
        """Apply a partial update. Returns the updated principal, or None if absent."""
        pass

    @abstractmethod
    async def register_failed_login(
        self,
        user_id: str,
        max_attempts: int,
        now: datetime,
        lock_until: datetime,
    ) -> LockoutState:
        """
        Atomically increment failed attempts and lock once the threshold is hit.

        Must be a single conditional update: the lock is set to `lock_until`
        when the incremented count reaches `max_attempts` and the account is
        not already locked at `now`.
        """
        pass

    @abstractmethod
    async def clear_failed_logins(self, user_id: str) -> None:
        """Atomically reset failed attempts and remove any lock."""
        pass

    @abstractmethod
    async def clear_expired_lock(self, user_id: str, now: datetime) -> bool:
        """Reset lockout only if the lock has elapsed at `now`. Returns True if cleared."""
        pass


class ChapterStore(ABC):
    """Chapter collaborator queries used by delegation checks."""

    @abstractmethod
    async def delegated_chapter_ids(self, user_id: str) -> frozenset[str]:
        """Chapters the user may administer."""
        pass

    @abstractmethod
    async def chapter_membership_ids(self, user_id: str) -> frozenset[str]:
        """Chapters the user belongs to."""
        pass

    @abstractmethod
    async def chapter_member_ids(self, chapter_id: str) -> frozenset[str]:
        """Users belonging to a chapter."""
        pass


class InMemoryUserStore(UserStore):
    """Process-local user store guarded by a single asyncio lock."""

    def __init__(self, users: Iterable[Principal] | None = None):
        self._users: dict[str, Principal] = {}
        self._by_identifier: dict[str, str] = {}
        self._lock = asyncio.Lock()
        for user in users or []:
            self._put(user)

    def _put(self, user: Principal) -> None:
        self._users[user.id] = user
        self._by_identifier[user.email] = user.id

    async def add(self, user: Principal) -> Principal:
        async with self._lock:
            if user.email in self._by_identifier and self._by_identifier[user.email] != user.id:
                raise ValueError(f"Identifier already registered: {user.email}")
            self._put(user)
        return user

    async def find_by_id(self, user_id: str) -> Principal | None:
        return self._users.get(user_id)

    async def find_by_identifier(self, identifier: str) -> Principal | None:
        user_id = self._by_identifier.get(identifier.strip().lower())
        return self._users.get(user_id) if user_id else None

    async def update(self, user_id: str, fields: dict[str, Any]) -> Principal | None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not updatable: {', '.join(sorted(unknown))}")

        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            updated = user.with_updates(**fields)
            self._put(updated)
            return updated

    async def register_failed_login(
        self,
        user_id: str,
        max_attempts: int,
        now: datetime,
        lock_until: datetime,
    ) -> LockoutState:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return LockoutState()

            current = user.lockout
            attempts = current.failed_attempts + 1
            new_lock = current.lock_until
            if attempts >= max_attempts and not current.is_locked(now):
                new_lock = lock_until

            state = LockoutState(failed_attempts=attempts, lock_until=new_lock)
            self._put(user.with_updates(lockout=state))
            return state

    async def clear_failed_logins(self, user_id: str) -> None:
        async with self._lock:
            user = self._users.get(user_id)
            if user is not None and user.lockout != LockoutState():
                self._put(user.with_updates(lockout=LockoutState()))

    async def clear_expired_lock(self, user_id: str, now: datetime) -> bool:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None or not user.lockout.is_expired(now):
                return False
            self._put(user.with_updates(lockout=LockoutState()))
            logger.debug("Expired account lock cleared", user_id=user_id)
            return True


class InMemoryChapterStore(ChapterStore):
    """Chapter relationships held in dictionaries keyed by user id."""

    def __init__(
        self,
        delegations: dict[str, Iterable[str]] | None = None,
        memberships: dict[str, Iterable[str]] | None = None,
    ):
        self._delegations = {k: frozenset(v) for k, v in (delegations or {}).items()}
        self._memberships = {k: frozenset(v) for k, v in (memberships or {}).items()}

    def delegate(self, user_id: str, chapter_id: str) -> None:
        self._delegations[user_id] = self._delegations.get(user_id, frozenset()) | {chapter_id}

    def add_member(self, user_id: str, chapter_id: str) -> None:
        self._memberships[user_id] = self._memberships.get(user_id, frozenset()) | {chapter_id}

    async def delegated_chapter_ids(self, user_id: str) -> frozenset[str]:
        return self._delegations.get(user_id, frozenset())

    async def chapter_membership_ids(self, user_id: str) -> frozenset[str]:
        return self._memberships.get(user_id, frozenset())

    async def chapter_member_ids(self, chapter_id: str) -> frozenset[str]:
        return frozenset(uid for uid, chapters in self._memberships.items() if chapter_id in chapters)

    @classmethod
    def from_principals(cls, principals: Iterable[Principal]) -> "InMemoryChapterStore":
        """Seed relationships from the chapter sets carried on principals."""
        principals = list(principals)
        return cls(
            delegations={p.id: p.delegated_chapters for p in principals if p.delegated_chapters},
            memberships={p.id: p.memberships for p in principals if p.memberships},
        )
