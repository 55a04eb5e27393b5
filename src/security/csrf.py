"""
CSRF Token Manager.

Anti-forgery tokens for cookie-authenticated sessions. Tokens are random,
bound to the session id of the identity token, and stable for the session's
lifetime. Bearer-token requests are exempt because they carry no ambient
credential.
"""

import hmac
import json
import secrets
from urllib.parse import parse_qs

import structlog
from fastapi import Request

from src.core.state_store import StateStore
from src.security.authentication import CredentialSource, ResolutionResult, get_security
from src.security.errors import InvalidCSRFToken

logger = structlog.get_logger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
MIN_TOKEN_BYTES = 32


class CSRFTokenManager:
    """Issues and validates session-bound CSRF tokens."""

    def __init__(
        self,
        store: StateStore,
        token_bytes: int = MIN_TOKEN_BYTES,
        header_name: str = "X-CSRF-Token",
        form_field: str = "_csrf",
    ):
        if token_bytes < MIN_TOKEN_BYTES:
            raise ValueError(f"CSRF tokens need at least {MIN_TOKEN_BYTES} bytes of entropy")
        self._store = store
        self._token_bytes = token_bytes
        self._header_name = header_name
        self._form_field = form_field

    @staticmethod
    def _key(session_id: str) -> str:
        return f"csrf:{session_id}"

    async def issue(self, session_id: str, ttl_seconds: float) -> str:
        """Token for a session; repeated calls return the same token."""
        candidate = secrets.token_hex(self._token_bytes)
        return await self._store.set_if_absent(self._key(session_id), candidate, max(1.0, ttl_seconds))

    async def validate(self, session_id: str, submitted: str | None) -> None:
        expected = await self._store.get(self._key(session_id))
        if not submitted or not expected:
            raise InvalidCSRFToken()
        if not hmac.compare_digest(submitted.encode(), expected.encode()):
            raise InvalidCSRFToken()

    async def revoke(self, session_id: str) -> None:
        await self._store.delete(self._key(session_id))

    async def submitted_token(self, request: Request) -> str | None:
        """Token from the header, else from a JSON or form body field."""
        header_value = request.headers.get(self._header_name)
        if header_value:
            return header_value

        content_type = request.headers.get("content-type", "")
        body = await request.body()
        if not body:
            return None

        if content_type.startswith("application/json"):
            try:
                payload = json.loads(body)
            except ValueError:
                return None
            value = payload.get(self._form_field) if isinstance(payload, dict) else None
            return value if isinstance(value, str) else None

        if content_type.startswith("application/x-www-form-urlencoded"):
            values = parse_qs(body.decode("utf-8", errors="replace")).get(self._form_field)
            return values[0] if values else None

        return None

    @staticmethod
    def requires_check(method: str, resolution: ResolutionResult) -> bool:
        """Only state-changing requests authenticated by the session cookie are checked."""
        if method.upper() in SAFE_METHODS:
            return False
        if not resolution.is_authenticated or resolution.credential is None:
            return False
        return resolution.credential.source is CredentialSource.COOKIE

    async def enforce(self, request: Request, resolution: ResolutionResult) -> None:
        if not self.requires_check(request.method, resolution):
            return

        submitted = await self.submitted_token(request)
        try:
            await self.validate(resolution.claims.session_id, submitted)
        except InvalidCSRFToken:
            logger.warning(
                "CSRF validation failed",
                path=request.url.path,
                method=request.method,
                user_id=resolution.principal.id,
                token_present=submitted is not None,
            )
            raise


# =============================================================================
# FastAPI Dependency
# =============================================================================


async def verify_csrf(request: Request) -> None:
    """
    FastAPI dependency enforcing CSRF on cookie-authenticated writes.

    Usage:
        @app.post("/api/auth/logout", dependencies=[Depends(verify_csrf)])
    """
    security = get_security(request)
    resolution = await security.resolver.resolve_request(request)
    await security.csrf.enforce(request, resolution)
