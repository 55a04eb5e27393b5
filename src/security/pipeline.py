"""
Security pipeline assembly.

Wires every component against one set of stores and one clock. The
application keeps the result on `app.state.security`; FastAPI dependencies
reach it through `get_security(request)`.
"""

import time
from dataclasses import dataclass
from typing import Callable

import structlog

from src.config.settings import Settings, get_settings
from src.core.state_store import StateStore, create_state_store
from src.security.audit import SecurityEventLogger
from src.security.authentication import IdentityResolver, PasswordHasher, TokenService
from src.security.catalog import PermissionCatalog, get_permission_catalog
from src.security.csrf import CSRFTokenManager
from src.security.lockout import BruteForceGuard
from src.security.login import LoginService
from src.security.rate_limiter import AUTH, RateLimiter, RateLimitPolicy, build_default_policies
from src.security.stores import ChapterStore, InMemoryChapterStore, InMemoryUserStore, UserStore

logger = structlog.get_logger(__name__)


@dataclass
class SecurityPipeline:
    """All security components of one application instance."""

    settings: Settings
    catalog: PermissionCatalog
    users: UserStore
    chapters: ChapterStore
    store: StateStore
    tokens: TokenService
    hasher: PasswordHasher
    resolver: IdentityResolver
    guard: BruteForceGuard
    limiter: RateLimiter
    policies: dict[str, RateLimitPolicy]
    csrf: CSRFTokenManager
    audit: SecurityEventLogger
    login: LoginService

    @property
    def lookup_timeout(self) -> float:
        return self.settings.auth.lookup_timeout_seconds

    async def close(self) -> None:
        await self.store.close()


def build_security_pipeline(
    settings: Settings | None = None,
    users: UserStore | None = None,
    chapters: ChapterStore | None = None,
    store: StateStore | None = None,
    catalog: PermissionCatalog | None = None,
    clock: Callable[[], float] = time.time,
) -> SecurityPipeline:
    """Build the pipeline; any collaborator left out gets its default."""
    settings = settings or get_settings()
    users = users or InMemoryUserStore()
    chapters = chapters or InMemoryChapterStore()
    store = store or create_state_store(
        backend=settings.store.backend,
        redis_url=settings.store.redis_url,
        prefix=settings.store.key_prefix,
        clock=clock,
    )
    catalog = catalog or get_permission_catalog()

    auth = settings.auth
    tokens = TokenService(
        secret_key=auth.jwt_secret.get_secret_value(),
        algorithm=auth.jwt_algorithm,
        expire_days=auth.token_expire_days,
        remember_me_expire_days=auth.remember_me_expire_days,
    )
    hasher = PasswordHasher(rounds=auth.bcrypt_rounds)
    resolver = IdentityResolver(
        tokens=tokens,
        users=users,
        cookie_name=auth.cookie_name,
        lookup_timeout=auth.lookup_timeout_seconds,
    )
    guard = BruteForceGuard(
        users=users,
        max_attempts=settings.lockout.max_login_attempts,
        lock_duration_seconds=settings.lockout.lock_duration_seconds,
        clock=clock,
        store_timeout=auth.lookup_timeout_seconds,
    )
    limiter = RateLimiter(store, clock=clock)
    policies = build_default_policies(settings.rate_limit)
    csrf = CSRFTokenManager(
        store,
        token_bytes=settings.csrf.token_bytes,
        header_name=settings.csrf.header_name,
        form_field=settings.csrf.form_field,
    )
    login = LoginService(
        users=users,
        hasher=hasher,
        tokens=tokens,
        guard=guard,
        limiter=limiter,
        auth_policy=policies[AUTH],
        csrf=csrf,
        lookup_timeout=auth.lookup_timeout_seconds,
    )

    logger.info(
        "Security pipeline initialised",
        store_backend=settings.store.backend,
        permissions=len(catalog),
        max_login_attempts=guard.max_attempts,
    )
    return SecurityPipeline(
        settings=settings,
        catalog=catalog,
        users=users,
        chapters=chapters,
        store=store,
        tokens=tokens,
        hasher=hasher,
        resolver=resolver,
        guard=guard,
        limiter=limiter,
        policies=policies,
        csrf=csrf,
        audit=SecurityEventLogger(),
        login=login,
    )
