"""
Unit Tests for the CSRF Token Manager.

Tests token issuance, validation, body extraction and which requests are
subject to the check.
"""

import json
from datetime import datetime, timezone

import pytest
from starlette.requests import Request

from src.core.state_store import MemoryStateStore
from src.security.authentication import (
    Credential,
    CredentialSource,
    ResolutionResult,
    TokenClaims,
)
from src.security.csrf import CSRFTokenManager
from src.security.errors import InvalidCSRFToken, InvalidToken
from src.security.models import Principal


def make_request(
    method: str = "POST",
    headers: dict[str, str] | None = None,
    body: bytes = b"",
) -> Request:
    sent = False

    async def receive() -> dict:
        nonlocal sent
        if sent:
            return {"type": "http.disconnect"}
        sent = True
        return {"type": "http.request", "body": body, "more_body": False}

    scope = {
        "type": "http",
        "method": method,
        "path": "/api/auth/logout",
        "query_string": b"",
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
        "client": ("10.0.0.1", 5000),
    }
    return Request(scope, receive)


def resolution(source: CredentialSource, session_id: str = "sess-1") -> ResolutionResult:
    now = datetime.now(timezone.utc)
    return ResolutionResult.authenticated(
        Principal(id="u-1", email="a@x.com"),
        Credential(token="t", source=source),
        TokenClaims(subject="u-1", session_id=session_id, issued_at=now, expires_at=now),
    )


@pytest.fixture
def manager(clock) -> CSRFTokenManager:
    return CSRFTokenManager(MemoryStateStore(clock=clock))


class TestTokenLifecycle:
    """Test cases for issue / validate / revoke."""

    @pytest.mark.asyncio
    async def test_token_has_enough_entropy(self, manager) -> None:
        token = await manager.issue("sess-1", 3600)

        assert len(token) == 64
        int(token, 16)

    @pytest.mark.asyncio
    async def test_token_is_stable_per_session(self, manager) -> None:
        first = await manager.issue("sess-1", 3600)

        assert await manager.issue("sess-1", 3600) == first
        assert await manager.issue("sess-2", 3600) != first

    @pytest.mark.asyncio
    async def test_validate(self, manager) -> None:
        token = await manager.issue("sess-1", 3600)

        await manager.validate("sess-1", token)
        with pytest.raises(InvalidCSRFToken):
            await manager.validate("sess-1", token[:-1] + ("0" if token[-1] != "0" else "1"))
        with pytest.raises(InvalidCSRFToken):
            await manager.validate("sess-1", None)

    @pytest.mark.asyncio
    async def test_token_bound_to_session(self, manager) -> None:
        token = await manager.issue("sess-1", 3600)
        await manager.issue("sess-2", 3600)

        with pytest.raises(InvalidCSRFToken):
            await manager.validate("sess-2", token)

    @pytest.mark.asyncio
    async def test_no_token_issued(self, manager) -> None:
        with pytest.raises(InvalidCSRFToken):
            await manager.validate("sess-1", "anything")

    @pytest.mark.asyncio
    async def test_expiry_and_revoke(self, manager, clock) -> None:
        token = await manager.issue("sess-1", 60)
        clock.advance(60)

        with pytest.raises(InvalidCSRFToken):
            await manager.validate("sess-1", token)

        token = await manager.issue("sess-1", 60)
        await manager.revoke("sess-1")
        with pytest.raises(InvalidCSRFToken):
            await manager.validate("sess-1", token)

    def test_rejects_short_tokens(self, clock) -> None:
        with pytest.raises(ValueError):
            CSRFTokenManager(MemoryStateStore(clock=clock), token_bytes=16)


class TestSubmittedToken:
    """Test cases for locating the submitted token."""

    @pytest.mark.asyncio
    async def test_header(self, manager) -> None:
        request = make_request(headers={"X-CSRF-Token": "abc"})

        assert await manager.submitted_token(request) == "abc"

    @pytest.mark.asyncio
    async def test_json_body(self, manager) -> None:
        request = make_request(
            headers={"Content-Type": "application/json"},
            body=json.dumps({"_csrf": "abc", "role": "Leader"}).encode(),
        )

        assert await manager.submitted_token(request) == "abc"

    @pytest.mark.asyncio
    async def test_form_body(self, manager) -> None:
        request = make_request(
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            body=b"name=x&_csrf=abc",
        )

        assert await manager.submitted_token(request) == "abc"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "content_type,body",
        [
            ("application/json", b"not json"),
            ("application/json", b"[1, 2]"),
            ("application/json", b'{"_csrf": 5}'),
            ("text/plain", b"_csrf=abc"),
            ("application/json", b""),
        ],
    )
    async def test_unusable_bodies(self, manager, content_type: str, body: bytes) -> None:
        request = make_request(headers={"Content-Type": content_type}, body=body)

        assert await manager.submitted_token(request) is None


class TestEnforcement:
    """Test cases for which requests are checked."""

    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS"])
    def test_safe_methods_exempt(self, method: str) -> None:
        assert not CSRFTokenManager.requires_check(method, resolution(CredentialSource.COOKIE))

    def test_bearer_exempt(self) -> None:
        assert not CSRFTokenManager.requires_check("POST", resolution(CredentialSource.BEARER))

    def test_unauthenticated_exempt(self) -> None:
        assert not CSRFTokenManager.requires_check("POST", ResolutionResult.anonymous())
        assert not CSRFTokenManager.requires_check("POST", ResolutionResult.invalid(InvalidToken()))

    @pytest.mark.parametrize("method", ["POST", "PUT", "PATCH", "DELETE"])
    def test_cookie_writes_checked(self, method: str) -> None:
        assert CSRFTokenManager.requires_check(method, resolution(CredentialSource.COOKIE))

    @pytest.mark.asyncio
    async def test_enforce_cookie_request(self, manager) -> None:
        token = await manager.issue("sess-1", 3600)
        cookie = resolution(CredentialSource.COOKIE)

        await manager.enforce(make_request(headers={"X-CSRF-Token": token}), cookie)
        with pytest.raises(InvalidCSRFToken) as exc_info:
            await manager.enforce(make_request(), cookie)

        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Invalid CSRF token"

    @pytest.mark.asyncio
    async def test_enforce_bearer_request_without_token(self, manager) -> None:
        await manager.enforce(make_request(), resolution(CredentialSource.BEARER))
