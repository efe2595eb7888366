"""Message persistence: backends and the failover controller."""
from __future__ import annotations

from .base import DEFAULT_LIMIT, MessageBackend
from .failover import BackendState, FailoverStore, build_store
from .jsonfile import JsonFileBackend
from .postgres import PostgresBackend

__all__ = [
    "DEFAULT_LIMIT",
    "MessageBackend",
    "BackendState",
    "FailoverStore",
    "build_store",
    "JsonFileBackend",
    "PostgresBackend",
]
