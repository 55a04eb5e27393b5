"""
Principal and lockout state as seen by the security pipeline.

The User collaborator owns these records; the pipeline reads them and only
mutates lockout fields, last login and (through role assignment) role.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from src.security.catalog import Role


@dataclass(frozen=True)
class LockoutState:
    """Failed-login bookkeeping for one account."""

    failed_attempts: int = 0
    lock_until: datetime | None = None

    def is_locked(self, now: datetime) -> bool:
        return self.lock_until is not None and self.lock_until > now

    def is_expired(self, now: datetime) -> bool:
        """A lock was set and has since elapsed."""
        return self.lock_until is not None and self.lock_until <= now


@dataclass(frozen=True)
class Principal:
    """An account that can authenticate against the platform."""

    id: str
    email: str
    role: Role | str = Role.MEMBER
    is_active: bool = True
    is_email_verified: bool = False
    delegated_chapters: frozenset[str] = frozenset()
    memberships: frozenset[str] = frozenset()
    lockout: LockoutState = field(default_factory=LockoutState)
    password_hash: str | None = field(default=None, repr=False)
    last_login: datetime | None = None

    def __post_init__(self) -> None:
        parsed = Role.parse(self.role)
        if parsed is not None:
            object.__setattr__(self, "role", parsed)
        object.__setattr__(self, "email", self.email.lower())
        object.__setattr__(self, "delegated_chapters", frozenset(self.delegated_chapters))
        object.__setattr__(self, "memberships", frozenset(self.memberships))

    @property
    def role_name(self) -> str:
        return self.role.value if isinstance(self.role, Role) else str(self.role)

    def with_updates(self, **fields: Any) -> "Principal":
        return replace(self, **fields)

    def to_dict(self) -> dict[str, Any]:
        """Public representation. Never includes credentials or lockout internals."""
        return {
            "id": self.id,
            "email": self.email,
            "role": self.role_name,
            "isActive": self.is_active,
            "isEmailVerified": self.is_email_verified,
            "lastLogin": self.last_login.isoformat() if self.last_login else None,
        }
