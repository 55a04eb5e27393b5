"""
Rate Limiting Module.

Fixed-window request throttling:
- Named policies (window, max requests, key function, skip-successful)
- Atomic counting over the shared StateStore
- Deferred counting for policies that only count failed responses
- Starlette middleware applying policies by path prefix
"""

import math
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Callable

import structlog
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from src.config.settings import RateLimitSettings
from src.core.state_store import CounterState, StateStore
from src.security.errors import RateLimited

logger = structlog.get_logger(__name__)

KeyFunc = Callable[[Request], str]


# =============================================================================
# Key Functions
# =============================================================================


def client_ip(request: Request, trust_forwarded_for: bool = False) -> str:
    """Client address, optionally taken from the first X-Forwarded-For hop."""
    if trust_forwarded_for:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            first_hop = forwarded.split(",")[0].strip()
            if first_hop:
                return first_hop
    return request.client.host if request.client else "unknown"


def ip_key(trust_forwarded_for: bool = False) -> KeyFunc:
    def key_func(request: Request) -> str:
        return client_ip(request, trust_forwarded_for)
    return key_func


def ip_and_route_key(trust_forwarded_for: bool = False) -> KeyFunc:
    def key_func(request: Request) -> str:
        return f"{client_ip(request, trust_forwarded_for)}:{request.url.path}"
    return key_func


# =============================================================================
# Policies
# =============================================================================


@dataclass(frozen=True)
class RateLimitPolicy:
    """Throttling policy."""

    name: str
    window_seconds: float
    max_requests: int
    message: str = "Too many requests, please try again later."
    key_func: KeyFunc = field(default_factory=ip_key, compare=False)
    skip_successful: bool = False

    def __post_init__(self) -> None:
        if self.window_seconds <= 0:
            raise ValueError(f"Policy '{self.name}' needs a positive window")
        if self.max_requests < 1:
            raise ValueError(f"Policy '{self.name}' needs max_requests >= 1")


@dataclass(frozen=True)
class RateLimitStatus:
    """Counter position after a request was admitted."""

    policy: RateLimitPolicy
    count: int
    reset_at: float

    @property
    def remaining(self) -> int:
        return max(0, self.policy.max_requests - self.count)


GENERAL = "general"
AUTH = "auth"
PASSWORD_RESET = "password_reset"
EMAIL_VERIFICATION = "email_verification"
API = "api"


def build_default_policies(settings: RateLimitSettings | None = None) -> dict[str, RateLimitPolicy]:
    """The five standard policies, sized from settings."""
    settings = settings or RateLimitSettings()
    key_func = ip_key(settings.trust_forwarded_for)

    return {
        GENERAL: RateLimitPolicy(
            name=GENERAL,
            window_seconds=settings.general_window_seconds,
            max_requests=settings.general_max_requests,
            message="Too many requests from this IP, please try again later.",
            key_func=key_func,
        ),
        AUTH: RateLimitPolicy(
            name=AUTH,
            window_seconds=settings.auth_window_seconds,
            max_requests=settings.auth_max_requests,
            message="Too many authentication attempts, please try again later.",
            key_func=key_func,
            skip_successful=True,
        ),
        PASSWORD_RESET: RateLimitPolicy(
            name=PASSWORD_RESET,
            window_seconds=settings.password_reset_window_seconds,
            max_requests=settings.password_reset_max_requests,
            message="Too many password reset attempts, please try again later.",
            key_func=key_func,
        ),
        EMAIL_VERIFICATION: RateLimitPolicy(
            name=EMAIL_VERIFICATION,
            window_seconds=settings.email_verification_window_seconds,
            max_requests=settings.email_verification_max_requests,
            message="Too many email verification attempts, please try again later.",
            key_func=key_func,
        ),
        API: RateLimitPolicy(
            name=API,
            window_seconds=settings.api_window_seconds,
            max_requests=settings.api_max_requests,
            message="API rate limit exceeded, please try again later.",
            key_func=key_func,
        ),
    }


# =============================================================================
# Limiter
# =============================================================================


class RateLimiter:
    """
    Fixed-window rate limiter over a StateStore.

    Immediate policies count every request with one atomic increment and
    reject once the count exceeds the maximum. Skip-successful policies check
    the current count up front and count the request only after a failing
    (non-2xx) outcome.
    """

    def __init__(self, store: StateStore, clock: Callable[[], float] = time.time):
        self._store = store
        self._clock = clock

    @staticmethod
    def _key(policy: RateLimitPolicy, key: str) -> str:
        return f"ratelimit:{policy.name}:{key}"

    def _reject(self, policy: RateLimitPolicy, key: str, state: CounterState) -> RateLimited:
        retry_after = state.seconds_until_reset(self._clock())
        logger.warning(
            "Rate limit exceeded",
            policy=policy.name,
            key=key,
            count=state.count,
            limit=policy.max_requests,
            retry_after=math.ceil(retry_after),
        )
        return RateLimited(policy.message, retry_after=retry_after, policy=policy.name)

    async def hit(self, policy: RateLimitPolicy, key: str) -> RateLimitStatus:
        """Count a request and reject it if the window is exhausted."""
        state = await self._store.increment(self._key(policy, key), policy.window_seconds)
        if state.count > policy.max_requests:
            raise self._reject(policy, key, state)
        return RateLimitStatus(policy, state.count, state.reset_at)

    async def check(self, policy: RateLimitPolicy, key: str) -> RateLimitStatus:
        """Reject without counting if the window is already exhausted."""
        state = await self._store.get_counter(self._key(policy, key))
        if state is None:
            return RateLimitStatus(policy, 0, self._clock() + policy.window_seconds)
        if state.count >= policy.max_requests:
            raise self._reject(policy, key, state)
        return RateLimitStatus(policy, state.count, state.reset_at)

    async def record_failure(self, policy: RateLimitPolicy, key: str) -> RateLimitStatus:
        """Count a failed outcome for a deferred policy."""
        state = await self._store.increment(self._key(policy, key), policy.window_seconds)
        return RateLimitStatus(policy, state.count, state.reset_at)

    async def reset(self, policy: RateLimitPolicy, key: str) -> bool:
        return await self._store.delete(self._key(policy, key))

    async def admit(self, policy: RateLimitPolicy, request: Request) -> RateLimitStatus:
        """Apply a policy to an incoming request."""
        key = policy.key_func(request)
        if policy.skip_successful:
            return await self.check(policy, key)
        return await self.hit(policy, key)

    async def settle(
        self,
        policy: RateLimitPolicy,
        request: Request,
        status_code: int,
    ) -> RateLimitStatus | None:
        """Record the response outcome for deferred policies."""
        if not policy.skip_successful or 200 <= status_code < 300:
            return None
        return await self.record_failure(policy, policy.key_func(request))


# =============================================================================
# Middleware
# =============================================================================


@dataclass(frozen=True)
class RateLimitRule:
    """Applies a policy to requests under a path prefix."""

    policy: RateLimitPolicy
    path_prefix: str = "/"
    methods: frozenset[str] | None = None

    def matches(self, request: Request) -> bool:
        if not request.url.path.startswith(self.path_prefix):
            return False
        return self.methods is None or request.method.upper() in self.methods


def build_default_rules(policies: dict[str, RateLimitPolicy]) -> list[RateLimitRule]:
    """Route coverage of the standard policies (login applies `auth` itself)."""
    post = frozenset({"POST"})
    return [
        RateLimitRule(policies[GENERAL], "/"),
        RateLimitRule(policies[API], "/api"),
        RateLimitRule(policies[AUTH], "/api/auth/register", post),
        RateLimitRule(policies[AUTH], "/api/auth/reset-password", post),
        RateLimitRule(policies[PASSWORD_RESET], "/api/auth/forgot-password", post),
        RateLimitRule(policies[EMAIL_VERIFICATION], "/api/auth/verify-email", post),
        RateLimitRule(policies[EMAIL_VERIFICATION], "/api/auth/resend-verification", post),
    ]


def rate_limit_headers(status: RateLimitStatus, now: float) -> dict[str, str]:
    return {
        "RateLimit-Limit": str(status.policy.max_requests),
        "RateLimit-Remaining": str(status.remaining),
        "RateLimit-Reset": str(max(0, math.ceil(status.reset_at - now))),
    }


class RateLimitMiddleware(BaseHTTPMiddleware):
    """
    Starlette middleware enforcing every rule that matches a request.

    Usage:
        app.add_middleware(RateLimitMiddleware, limiter=limiter, rules=rules)
    """

    def __init__(
        self,
        app,
        limiter: RateLimiter,
        rules: Iterable[RateLimitRule],
        clock: Callable[[], float] = time.time,
    ):
        super().__init__(app)
        self._limiter = limiter
        self._rules = list(rules)
        self._clock = clock

    async def dispatch(self, request: Request, call_next) -> Response:
        matching = [rule.policy for rule in self._rules if rule.matches(request)]
        if not matching:
            return await call_next(request)

        admitted: list[RateLimitStatus] = []
        for policy in matching:
            try:
                admitted.append(await self._limiter.admit(policy, request))
            except RateLimited as e:
                return JSONResponse(e.to_dict(), status_code=e.status_code, headers=e.headers)

        try:
            response = await call_next(request)
        except Exception:
            # An unhandled error still counts against deferred policies
            for policy in matching:
                await self._limiter.settle(policy, request, 500)
            raise

        for policy in matching:
            settled = await self._limiter.settle(policy, request, response.status_code)
            if settled is not None:
                admitted = [settled if s.policy == policy else s for s in admitted]

        tightest = min(admitted, key=lambda s: s.remaining)
        response.headers.update(rate_limit_headers(tightest, self._clock()))
        return response
