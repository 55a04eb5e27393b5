"""
Structured Logging Configuration.

JSON in production, coloured console output in development. Every event
carries the service name and any request context bound through structlog
contextvars (request id, client ip). Credentials never reach the sink:
values under credential-like keys are replaced, and bearer tokens or JWTs
embedded in free text are masked.
"""

import logging
import re
import sys
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

CREDENTIAL_KEYS = frozenset({
    "password", "secret", "token", "authorization", "cookie",
    "csrf", "api_key", "credential",
})

# Keys that contain a credential word but only ever hold metadata.
SAFE_KEYS = frozenset({"token_type", "token_bytes", "token_present"})

REDACTED = "[REDACTED]"

_JWT_PATTERN = re.compile(r"eyJ[\w-]+\.[\w-]+\.[\w-]+")
_BEARER_PATTERN = re.compile(r"(?i)\bbearer\s+\S+")

SECURITY_LOGGER_PREFIX = "security"


def is_credential_key(key: str) -> bool:
    lowered = key.lower()
    if lowered in SAFE_KEYS:
        return False
    return any(word in lowered for word in CREDENTIAL_KEYS)


def mask_tokens(text: str) -> str:
    """Mask bearer credentials and JWTs that leaked into a free-text value."""
    text = _BEARER_PATTERN.sub(f"Bearer {REDACTED}", text)
    return _JWT_PATTERN.sub(REDACTED, text)


def redact_credentials(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Replace credential values and mask tokens inside other strings."""

    def scrub(key: str, value: Any) -> Any:
        if is_credential_key(key) and value is not None and not isinstance(value, bool):
            return REDACTED
        if isinstance(value, dict):
            return {k: scrub(str(k), v) for k, v in value.items()}
        if isinstance(value, str):
            return mask_tokens(value)
        return value

    for key, value in list(event_dict.items()):
        if key == "event":
            event_dict[key] = mask_tokens(value) if isinstance(value, str) else value
        else:
            event_dict[key] = scrub(key, value)
    return event_dict


def service_stamper(service_name: str) -> Processor:
    def stamp(
        logger: WrappedLogger,
        method_name: str,
        event_dict: EventDict,
    ) -> EventDict:
        event_dict.setdefault("service", service_name)
        return event_dict

    return stamp


def tag_security_events(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Mark events from the security loggers so sinks can route them."""
    name = event_dict.get("logger") or ""
    if SECURITY_LOGGER_PREFIX in name.split("."):
        event_dict.setdefault("category", "security")
    return event_dict


def configure_logging(
    level: str = "INFO",
    format: Literal["json", "console"] = "json",
    service_name: str = "chapterguard",
) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR)
        format: "json" for production, "console" for development
        service_name: Value of the `service` field on every event
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        service_stamper(service_name),
        tag_security_events,
        redact_credentials,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if format == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())

    structlog.configure(
        processors=processors + [renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )

    # Access logs would duplicate the audit middleware's request lines
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)
