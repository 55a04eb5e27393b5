"""
Credential submission.

Order matters: the lock check runs before the rate-limit check, which runs
before the password is verified. A locked account therefore answers 423
without its password ever being compared.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime

import structlog

from src.security.authentication import IssuedToken, PasswordHasher, TokenService
from src.security.csrf import CSRFTokenManager
from src.security.errors import AccountDisabled, InvalidCredentials, Unauthenticated
from src.security.lockout import BruteForceGuard
from src.security.models import Principal
from src.security.rate_limiter import RateLimitPolicy, RateLimiter
from src.security.stores import UserStore

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class LoginResult:
    principal: Principal
    token: str
    csrf_token: str
    expires_at: datetime
    session_id: str


class LoginService:
    """Verifies a credential submission and opens a session."""

    def __init__(
        self,
        users: UserStore,
        hasher: PasswordHasher,
        tokens: TokenService,
        guard: BruteForceGuard,
        limiter: RateLimiter,
        auth_policy: RateLimitPolicy,
        csrf: CSRFTokenManager,
        lookup_timeout: float = 2.0,
    ):
        self._users = users
        self._hasher = hasher
        self._tokens = tokens
        self._guard = guard
        self._limiter = limiter
        self._auth_policy = auth_policy
        self._csrf = csrf
        self._lookup_timeout = lookup_timeout

    async def _find(self, identifier: str) -> Principal | None:
        try:
            return await asyncio.wait_for(
                self._users.find_by_identifier(identifier.strip().lower()),
                timeout=self._lookup_timeout,
            )
        except asyncio.TimeoutError as e:
            logger.error("User lookup timed out during login")
            raise Unauthenticated("Authentication temporarily unavailable") from e

    async def login(
        self,
        identifier: str,
        password: str,
        client_key: str,
        remember_me: bool = False,
    ) -> LoginResult:
        """
        Authenticate a credential pair.

        Raises:
            AccountLocked: the account is inside its lockout window (423)
            RateLimited: too many failed attempts from this client (429)
            InvalidCredentials: unknown account or wrong password (401)
            AccountDisabled: correct password on a deactivated account (401)
        """
        principal = await self._find(identifier)

        if principal is not None:
            await self._guard.ensure_unlocked(principal)

        await self._limiter.check(self._auth_policy, client_key)

        # bcrypt is CPU-bound; keep it off the event loop
        if principal is None:
            await asyncio.to_thread(self._hasher.dummy_verify, password)
            verified = False
        else:
            verified = await asyncio.to_thread(self._hasher.verify, password, principal.password_hash)

        if not verified:
            await self._limiter.record_failure(self._auth_policy, client_key)
            if principal is not None:
                await self._guard.register_failure(principal)
            logger.info("Login failed", user_id=principal.id if principal else None)
            raise InvalidCredentials()

        if not principal.is_active:
            logger.info("Login refused for deactivated account", user_id=principal.id)
            raise AccountDisabled()

        await self._guard.register_success(principal)
        issued: IssuedToken = self._tokens.issue(principal, remember_me=remember_me)
        csrf_token = await self._csrf.issue(
            issued.session_id, self._tokens.lifetime(remember_me).total_seconds()
        )
        updated = await self._users.update(principal.id, {"last_login": self._guard.now()})

        logger.info("Login succeeded", user_id=principal.id, remember_me=remember_me)
        return LoginResult(
            principal=updated or principal,
            token=issued.token,
            csrf_token=csrf_token,
            expires_at=issued.expires_at,
            session_id=issued.session_id,
        )

    async def logout(self, session_id: str) -> None:
        await self._csrf.revoke(session_id)
