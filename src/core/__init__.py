"""
Core Infrastructure Module.

Provides foundational building blocks shared by the security pipeline:
- Counter/TTL state store with in-memory and Redis backends
"""

from src.core.state_store import (
    CounterState,
    MemoryStateStore,
    RedisStateStore,
    StateStore,
    create_state_store,
)

__all__ = [
    "CounterState",
    "MemoryStateStore",
    "RedisStateStore",
    "StateStore",
    "create_state_store",
]
