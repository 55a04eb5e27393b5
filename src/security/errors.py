"""
Security error taxonomy.

Every failure the pipeline can produce is a SecurityError subclass carrying
its HTTP status, a public message and structured context. Components raise
them; only the HTTP layer renders them into responses.
"""

import math
from datetime import datetime
from typing import Any


class SecurityError(Exception):
    """Base class for pipeline failures."""

    status_code: int = 500
    default_message: str = "Security check failed"

    def __init__(self, message: str | None = None, **context: Any):
        self.message = message or self.default_message
        self.context = {k: v for k, v in context.items() if v is not None}
        super().__init__(self.message)

    @property
    def headers(self) -> dict[str, str]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        """JSON body for the error response."""
        return {"success": False, "message": self.message, **self.context}


# =============================================================================
# 401 - Authentication
# =============================================================================


class Unauthenticated(SecurityError):
    """No usable credential, or the credential could not be resolved."""

    status_code = 401
    default_message = "Not authorized to access this route"

    @property
    def headers(self) -> dict[str, str]:
        return {"WWW-Authenticate": "Bearer"}


class InvalidToken(Unauthenticated):
    """Token signature, expiry or type check failed."""


class PrincipalNotFound(Unauthenticated):
    default_message = "No user found with this token"


class AccountDisabled(Unauthenticated):
    default_message = "User account is deactivated"


class InvalidCredentials(Unauthenticated):
    default_message = "Invalid credentials"


# =============================================================================
# 403 - Authorization
# =============================================================================


class Forbidden(SecurityError):
    status_code = 403
    default_message = "Not authorized to access this resource"


class InvalidCSRFToken(Forbidden):
    default_message = "Invalid CSRF token"


# =============================================================================
# 423 / 429 - Throttling
# =============================================================================


class AccountLocked(SecurityError):
    """Login rejected because the account is inside its lockout window."""

    status_code = 423

    def __init__(self, lock_until: datetime, retry_after: float):
        self.lock_until = lock_until
        self.retry_after = max(1, math.ceil(retry_after))
        minutes = max(1, math.ceil(retry_after / 60))
        super().__init__(
            f"Account is locked. Try again in {minutes} minutes.",
            lockUntil=lock_until.isoformat(),
            retryAfter=self.retry_after,
        )

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


class RateLimited(SecurityError):
    status_code = 429
    default_message = "Too many requests, please try again later."

    def __init__(self, message: str | None = None, retry_after: float = 0, policy: str | None = None):
        self.retry_after = max(1, math.ceil(retry_after))
        self.policy = policy
        super().__init__(message, retryAfter=self.retry_after)

    @property
    def headers(self) -> dict[str, str]:
        return {"Retry-After": str(self.retry_after)}


# =============================================================================
# 500 - Misconfiguration
# =============================================================================


class Misconfiguration(SecurityError):
    """Server-side configuration error, never caused by the caller."""

    status_code = 500
    default_message = "Invalid permission configuration"


class UnknownPermission(Misconfiguration):
    def __init__(self, permission: str):
        self.permission = permission
        super().__init__(f"Invalid permission specified: {permission}")

    def to_dict(self) -> dict[str, Any]:
        return {"success": False, "message": "Invalid permission specified"}
