"""
Security Event Logger.

Observes traffic and reports:
- Requests whose URL or body match known attack signatures
- Failed authentication responses on /auth/ routes

Purely observational: a request is never rejected or modified here.
"""

import re
import uuid
from dataclasses import dataclass
from typing import Any
from urllib.parse import unquote

import structlog
from starlette.types import ASGIApp, Message, Receive, Scope, Send

SUSPICIOUS_PATTERNS: dict[str, re.Pattern[str]] = {
    "path_traversal": re.compile(r"\.\."),
    "script_injection": re.compile(r"<script", re.IGNORECASE),
    "sql_injection": re.compile(r"union.*select", re.IGNORECASE | re.DOTALL),
    "protocol_handler_injection": re.compile(r"javascript:", re.IGNORECASE),
}

DEFAULT_BODY_LIMIT = 64 * 1024


@dataclass(frozen=True)
class RequestSnapshot:
    """What the logger knows about a request."""

    method: str
    path: str
    query: str = ""
    client_ip: str | None = None
    user_agent: str | None = None
    request_id: str | None = None

    @property
    def url(self) -> str:
        return f"{self.path}?{self.query}" if self.query else self.path


class SecurityEventLogger:
    """Detects suspicious requests and failed authentication responses."""

    def __init__(self, logger: Any = None, patterns: dict[str, re.Pattern[str]] | None = None):
        self._logger = logger or structlog.get_logger("security.audit")
        self._patterns = patterns or SUSPICIOUS_PATTERNS

    def match(self, text: str) -> list[str]:
        return [name for name, pattern in self._patterns.items() if pattern.search(text)]

    def inspect(
        self,
        request: RequestSnapshot,
        body: bytes | str | None = None,
        user_id: str | None = None,
    ) -> list[str]:
        """Check URL and body against the signatures. Returns matched names."""
        url_text = unquote(request.url)
        matched = self.match(url_text)

        if body:
            body_text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
            for name in self.match(body_text):
                if name not in matched:
                    matched.append(name)

        if matched:
            self._logger.warning(
                "Suspicious request detected",
                ip=request.client_ip,
                method=request.method,
                url=request.url,
                user_agent=request.user_agent,
                user_id=user_id,
                patterns=matched,
            )
        return matched

    def observe_response(
        self,
        request: RequestSnapshot,
        status_code: int,
        user_id: str | None = None,
    ) -> bool:
        """Report 401s on authentication routes. Returns True if reported."""
        if status_code != 401 or "/auth/" not in request.path:
            return False

        self._logger.warning(
            "Failed authentication attempt",
            ip=request.client_ip,
            method=request.method,
            path=request.path,
            user_agent=request.user_agent,
            user_id=user_id,
            status_code=status_code,
        )
        return True


# =============================================================================
# ASGI Middleware
# =============================================================================


def _header(scope: Scope, name: bytes) -> str | None:
    for key, value in scope.get("headers") or []:
        if key.lower() == name:
            return value.decode("latin-1")
    return None


def snapshot_from_scope(scope: Scope) -> RequestSnapshot:
    client = scope.get("client")
    return RequestSnapshot(
        method=scope.get("method", "GET"),
        path=scope.get("path", ""),
        query=(scope.get("query_string") or b"").decode("latin-1"),
        client_ip=client[0] if client else None,
        user_agent=_header(scope, b"user-agent"),
        request_id=_header(scope, b"x-request-id") or uuid.uuid4().hex[:12],
    )


class SecurityAuditMiddleware:
    """
    ASGI middleware feeding the SecurityEventLogger.

    Buffers at most `body_limit` bytes of the request body for inspection and
    replays everything it read to the application unchanged. Findings are
    logged once the response has completed, when the resolved principal is
    known.

    Usage:
        app.add_middleware(SecurityAuditMiddleware, audit=SecurityEventLogger())
    """

    def __init__(
        self,
        app: ASGIApp,
        audit: SecurityEventLogger | None = None,
        body_limit: int = DEFAULT_BODY_LIMIT,
    ):
        self.app = app
        self.audit = audit or SecurityEventLogger()
        self.body_limit = body_limit

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        snapshot = snapshot_from_scope(scope)
        structlog.contextvars.bind_contextvars(
            request_id=snapshot.request_id,
            client_ip=snapshot.client_ip,
        )

        try:
            buffered = await self._buffer_body(receive)
            replay = list(buffered)

            async def replay_receive() -> Message:
                if replay:
                    return replay.pop(0)
                return await receive()

            status_code = 500

            async def capture_send(message: Message) -> None:
                nonlocal status_code
                if message["type"] == "http.response.start":
                    status_code = message["status"]
                await send(message)

            try:
                await self.app(scope, replay_receive if buffered else receive, capture_send)
            finally:
                body = b"".join(m.get("body", b"") for m in buffered)
                self._report(scope, snapshot, body[: self.body_limit], status_code)
        finally:
            structlog.contextvars.clear_contextvars()

    async def _buffer_body(self, receive: Receive) -> list[Message]:
        """Read request messages until the limit or the end of the body."""
        messages: list[Message] = []
        size = 0
        more_body = True
        while more_body and size < self.body_limit:
            message = await receive()
            messages.append(message)
            if message["type"] != "http.request":
                break
            size += len(message.get("body", b""))
            more_body = message.get("more_body", False)
        return messages

    def _report(self, scope: Scope, snapshot: RequestSnapshot, body: bytes, status_code: int) -> None:
        try:
            principal = (scope.get("state") or {}).get("principal")
            user_id = getattr(principal, "id", None)
            self.audit.inspect(snapshot, body, user_id=user_id)
            self.audit.observe_response(snapshot, status_code, user_id=user_id)
        except Exception as e:
            structlog.get_logger(__name__).debug("Security audit logging failed", error=str(e))
