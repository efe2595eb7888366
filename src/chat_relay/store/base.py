"""Persistence contract shared by every message backend."""
from __future__ import annotations

import abc
from typing import List, Optional

from ..models import Message

DEFAULT_LIMIT = 100


class MessageBackend(abc.ABC):
    """Async message store.

    Implementations raise :class:`~chat_relay.errors.StoreUnavailable` for
    operational failures. "Not found" is a return value, never an error:
    ``update`` returns ``None`` and ``delete`` returns ``False`` when no record
    matches both ``id`` and ``user``.
    """

    name: str = "backend"

    @abc.abstractmethod
    async def initialize(self) -> None:
        """Prepare the storage medium. Safe to call more than once."""

    @abc.abstractmethod
    async def list_recent(self, limit: int = DEFAULT_LIMIT) -> List[Message]:
        """Return at most ``limit`` messages, newest first."""

    @abc.abstractmethod
    async def create(self, text: str, user: str) -> Message:
        ...

    @abc.abstractmethod
    async def update(self, message_id: str, text: str, user: str) -> Optional[Message]:
        ...

    @abc.abstractmethod
    async def delete(self, message_id: str, user: str) -> bool:
        ...

    @abc.abstractmethod
    async def clear(self) -> int:
        """Remove every message and return how many were removed."""

    @abc.abstractmethod
    async def close(self) -> None:
        """Release resources. Safe to call more than once."""
