"""
Observability Module.

Structured logging for the security pipeline.
"""

from src.observability.logging import configure_logging, mask_tokens, redact_credentials

__all__ = [
    "configure_logging",
    "mask_tokens",
    "redact_credentials",
]
