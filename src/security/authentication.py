"""
Authentication Module.

Provides identity resolution for every protected route:
- Identity token issuance and verification (JWT)
- Credential extraction from a Bearer header or the session cookie
- One resolution primitive with a three-way result
  (authenticated / anonymous / invalid) and thin required/optional wrappers
- Password hashing (bcrypt)
"""

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Mapping

import bcrypt
import jwt
import structlog
from fastapi import Request

from src.security.errors import (
    AccountDisabled,
    InvalidToken,
    PrincipalNotFound,
    SecurityError,
    Unauthenticated,
)
from src.security.models import Principal
from src.security.stores import UserStore

if TYPE_CHECKING:
    from src.security.pipeline import SecurityPipeline

logger = structlog.get_logger(__name__)

TOKEN_TYPE = "access"


class CredentialSource(str, Enum):
    """Where the identity token was found."""
    BEARER = "bearer"
    COOKIE = "cookie"


@dataclass(frozen=True)
class Credential:
    token: str
    source: CredentialSource


@dataclass(frozen=True)
class TokenClaims:
    """Verified identity token claims."""

    subject: str
    session_id: str
    issued_at: datetime
    expires_at: datetime

    def seconds_remaining(self, now: datetime | None = None) -> float:
        now = now or datetime.now(timezone.utc)
        return max(0.0, (self.expires_at - now).total_seconds())


@dataclass(frozen=True)
class IssuedToken:
    token: str
    session_id: str
    expires_at: datetime


class TokenService:
    """
    Identity token issuance and verification.

    Tokens are signed JWTs carrying only the subject id and a unique session
    id (jti); role and chapter data are always loaded fresh from the stores.
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        expire_days: int = 7,
        remember_me_expire_days: int = 30,
    ):
        self._secret_key = secret_key
        self._algorithm = algorithm
        self._expire = timedelta(days=expire_days)
        self._remember_expire = timedelta(days=remember_me_expire_days)

    def lifetime(self, remember_me: bool = False) -> timedelta:
        return self._remember_expire if remember_me else self._expire

    def issue(
        self,
        principal: Principal,
        remember_me: bool = False,
        additional_claims: dict[str, Any] | None = None,
    ) -> IssuedToken:
        """Create a signed identity token for a principal."""
        now = datetime.now(timezone.utc)
        expires = now + self.lifetime(remember_me)
        session_id = secrets.token_hex(16)

        payload: dict[str, Any] = {
            "sub": principal.id,
            "jti": session_id,
            "iat": now,
            "exp": expires,
            "type": TOKEN_TYPE,
        }
        if additional_claims:
            payload.update(additional_claims)

        token = jwt.encode(payload, self._secret_key, algorithm=self._algorithm)
        return IssuedToken(token=token, session_id=session_id, expires_at=expires)

    def verify(self, token: str) -> TokenClaims:
        """Verify signature, expiry and type. Raises InvalidToken."""
        try:
            payload = jwt.decode(
                token,
                self._secret_key,
                algorithms=[self._algorithm],
                options={"require": ["sub", "exp", "iat", "jti"]},
            )
        except jwt.ExpiredSignatureError as e:
            raise InvalidToken("Session has expired, please log in again") from e
        except jwt.InvalidTokenError as e:
            raise InvalidToken() from e

        if payload.get("type") != TOKEN_TYPE:
            logger.warning("Invalid token type", type=payload.get("type"))
            raise InvalidToken()

        return TokenClaims(
            subject=str(payload["sub"]),
            session_id=str(payload["jti"]),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )


class PasswordHasher:
    """bcrypt password hashing."""

    def __init__(self, rounds: int = 12):
        self._rounds = rounds
        self._dummy_hash = bcrypt.hashpw(b"timing-equaliser", bcrypt.gensalt(rounds=rounds))

    def hash(self, password: str) -> str:
        return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=self._rounds)).decode()

    def verify(self, password: str, hashed: str | None) -> bool:
        if not hashed:
            return False
        try:
            return bcrypt.checkpw(password.encode(), hashed.encode())
        except ValueError:
            logger.warning("Malformed password hash encountered")
            return False

    def dummy_verify(self, password: str) -> None:
        """Spend the same time as a real check so unknown accounts are not distinguishable."""
        bcrypt.checkpw(password.encode(), self._dummy_hash)


# =============================================================================
# Identity Resolution
# =============================================================================


class ResolutionStatus(str, Enum):
    AUTHENTICATED = "authenticated"
    ANONYMOUS = "anonymous"
    INVALID = "invalid"


@dataclass(frozen=True)
class ResolutionResult:
    """Outcome of resolving the identity behind a request."""

    status: ResolutionStatus
    principal: Principal | None = None
    credential: Credential | None = None
    claims: TokenClaims | None = None
    error: SecurityError | None = field(default=None, compare=False)

    @classmethod
    def authenticated(
        cls, principal: Principal, credential: Credential, claims: TokenClaims
    ) -> "ResolutionResult":
        return cls(ResolutionStatus.AUTHENTICATED, principal, credential, claims)

    @classmethod
    def anonymous(cls) -> "ResolutionResult":
        return cls(ResolutionStatus.ANONYMOUS)

    @classmethod
    def invalid(cls, error: SecurityError, credential: Credential | None = None) -> "ResolutionResult":
        return cls(ResolutionStatus.INVALID, credential=credential, error=error)

    @property
    def is_authenticated(self) -> bool:
        return self.status is ResolutionStatus.AUTHENTICATED


def extract_credential(
    headers: Mapping[str, str],
    cookies: Mapping[str, str],
    cookie_name: str = "token",
) -> Credential | None:
    """Bearer header first, then the session cookie."""
    auth_header = headers.get("authorization") or headers.get("Authorization")
    if auth_header:
        scheme, _, value = auth_header.partition(" ")
        token = value.strip()
        if scheme.lower() == "bearer" and token:
            return Credential(token=token, source=CredentialSource.BEARER)

    cookie_token = cookies.get(cookie_name)
    if cookie_token:
        return Credential(token=cookie_token, source=CredentialSource.COOKIE)

    return None


class IdentityResolver:
    """
    Resolves the principal behind a request.

    `resolve` is the single verification primitive. `authenticate` and
    `authenticate_optional` are the two call-site wrappers built on it.
    """

    STATE_KEY = "identity"

    def __init__(
        self,
        tokens: TokenService,
        users: UserStore,
        cookie_name: str = "token",
        lookup_timeout: float = 2.0,
    ):
        self._tokens = tokens
        self._users = users
        self._cookie_name = cookie_name
        self._lookup_timeout = lookup_timeout

    @property
    def cookie_name(self) -> str:
        return self._cookie_name

    async def resolve(
        self,
        headers: Mapping[str, str],
        cookies: Mapping[str, str],
    ) -> ResolutionResult:
        credential = extract_credential(headers, cookies, self._cookie_name)
        if credential is None:
            return ResolutionResult.anonymous()

        try:
            claims = self._tokens.verify(credential.token)
        except InvalidToken as e:
            return ResolutionResult.invalid(e, credential)

        try:
            principal = await asyncio.wait_for(
                self._users.find_by_id(claims.subject),
                timeout=self._lookup_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Principal lookup timed out", user_id=claims.subject)
            return ResolutionResult.invalid(
                Unauthenticated("Authentication temporarily unavailable"), credential
            )

        if principal is None:
            return ResolutionResult.invalid(PrincipalNotFound(), credential)
        if not principal.is_active:
            return ResolutionResult.invalid(AccountDisabled(), credential)

        return ResolutionResult.authenticated(principal, credential, claims)

    async def resolve_request(self, request: Request) -> ResolutionResult:
        """Resolve once per request; later calls reuse the cached result."""
        cached = getattr(request.state, self.STATE_KEY, None)
        if isinstance(cached, ResolutionResult):
            return cached

        result = await self.resolve(request.headers, request.cookies)
        setattr(request.state, self.STATE_KEY, result)
        request.state.principal = result.principal
        return result

    async def authenticate(self, request: Request) -> Principal:
        """Required authentication. Raises the resolution error."""
        result = await self.resolve_request(request)
        if result.is_authenticated:
            return result.principal

        error = result.error or Unauthenticated()
        logger.info(
            "Authentication rejected",
            path=request.url.path,
            reason=type(error).__name__,
        )
        raise error

    async def authenticate_optional(self, request: Request) -> Principal | None:
        """Optional authentication. Any failure downgrades to anonymous."""
        try:
            result = await self.resolve_request(request)
        except Exception as e:
            logger.warning(
                "Identity resolution failed for optional auth",
                path=request.url.path,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

        if result.status is ResolutionStatus.INVALID:
            logger.debug(
                "Invalid credential ignored for optional auth",
                path=request.url.path,
                reason=type(result.error).__name__,
            )
        return result.principal if result.is_authenticated else None


# =============================================================================
# FastAPI Dependencies
# =============================================================================


def get_security(request: Request) -> "SecurityPipeline":
    """The security pipeline attached to the running application."""
    security = getattr(request.app.state, "security", None)
    if security is None:
        raise RuntimeError("Security pipeline not initialised on app.state")
    return security


async def get_current_principal(request: Request) -> Principal:
    """
    FastAPI dependency that requires authentication.

    Usage:
        @app.get("/api/auth/me")
        async def me(principal: Principal = Depends(get_current_principal)):
            return principal.to_dict()
    """
    return await get_security(request).resolver.authenticate(request)


async def get_optional_principal(request: Request) -> Principal | None:
    """FastAPI dependency returning the principal, or None for anonymous requests."""
    return await get_security(request).resolver.authenticate_optional(request)


async def get_resolution(request: Request) -> ResolutionResult:
    """FastAPI dependency exposing the full resolution result."""
    return await get_security(request).resolver.resolve_request(request)
