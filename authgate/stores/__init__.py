"""
Stores Package

Typed wrappers over a key-value store with TTL support.

Modules:
- kv: KeyValueStore interface with in-memory and Redis backends
- state: one-time CSRF state tokens mapped to a return URL
- session: token responses stored under opaque session ids
"""

from .kv import KeyValueStore, MemoryKeyValueStore, RedisKeyValueStore, build_kv_store
from .session import SessionStore, is_well_formed_session_id
from .state import StateStore

__all__ = [
    "KeyValueStore",
    "MemoryKeyValueStore",
    "RedisKeyValueStore",
    "build_kv_store",
    "SessionStore",
    "StateStore",
    "is_well_formed_session_id",
]
