"""PostgreSQL message backend on an asyncpg connection pool."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

import asyncpg

from ..config import DatabaseSettings
from ..errors import StoreUnavailable
from ..models import Message, utc_isoformat
from .base import DEFAULT_LIMIT, MessageBackend

PoolFactory = Callable[..., Awaitable[Any]]

# SERIAL is a 4-byte signed integer.
_MAX_SERIAL = 2**31 - 1

SCHEMA = """
CREATE TABLE IF NOT EXISTS messages (
    id SERIAL PRIMARY KEY,
    text TEXT NOT NULL,
    user_name VARCHAR(255) NOT NULL DEFAULT 'Anonymous',
    created_at TIMESTAMP WITH TIME ZONE DEFAULT CURRENT_TIMESTAMP
)
"""
INDEX = "CREATE INDEX IF NOT EXISTS idx_messages_created_at ON messages (created_at DESC)"

SELECT_RECENT = (
    "SELECT id, text, user_name, created_at FROM messages "
    "ORDER BY created_at DESC, id DESC LIMIT $1"
)
INSERT = "INSERT INTO messages (text, user_name) VALUES ($1, $2) RETURNING id, text, user_name, created_at"
UPDATE = (
    "UPDATE messages SET text = $1 WHERE id = $2 AND user_name = $3 "
    "RETURNING id, text, user_name, created_at"
)
DELETE = "DELETE FROM messages WHERE id = $1 AND user_name = $2"
CLEAR = "DELETE FROM messages"

# Anything the driver or the network can throw at us.
BACKEND_ERRORS = (
    asyncpg.PostgresError,
    asyncpg.InterfaceError,
    asyncpg.exceptions.InternalClientError,
    OSError,
    asyncio.TimeoutError,
)


def _row_to_message(row: Any) -> Message:
    return Message(
        id=str(row["id"]),
        text=row["text"],
        user=row["user_name"],
        created_at=utc_isoformat(row["created_at"]),
    )


def _parse_id(message_id: str) -> Optional[int]:
    """Relational ids are positive integers; anything else can't match a row."""
    try:
        value = int(message_id)
    except (TypeError, ValueError):
        return None
    return value if 0 < value <= _MAX_SERIAL else None


def _rowcount(status: str) -> int:
    # asyncpg returns the command tag, e.g. "DELETE 3"
    try:
        return int(str(status).rsplit(" ", 1)[-1])
    except ValueError:
        return 0


class PostgresBackend(MessageBackend):
    """Primary message store.

    The pool is created lazily by :meth:`initialize` so that constructing the
    backend never touches the network.
    """

    name = "postgres"

    def __init__(
        self,
        settings: DatabaseSettings,
        *,
        pool_factory: Optional[PoolFactory] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.settings = settings
        self.pool_factory = pool_factory or asyncpg.create_pool
        self.logger = logger or logging.getLogger("chat_relay.store")
        self.pool: Any = None

    def _pool(self) -> Any:
        if self.pool is None:
            raise StoreUnavailable(self.name, "connection pool is not initialized")
        return self.pool

    async def _guard(self, op: str, coro_fn: Callable[[Any], Awaitable[Any]]) -> Any:
        pool = self._pool()
        try:
            return await coro_fn(pool)
        except BACKEND_ERRORS as e:
            raise StoreUnavailable(self.name, f"{op}: {e}") from e

    async def initialize(self) -> None:
        if self.pool is not None:
            return
        s = self.settings
        try:
            self.pool = await self.pool_factory(
                host=s.host,
                port=s.port,
                database=s.name,
                user=s.user,
                password=s.password or None,
                min_size=1,
                max_size=s.pool_size,
                max_inactive_connection_lifetime=s.idle_timeout,
                timeout=s.connect_timeout,
                command_timeout=s.command_timeout,
            )
        except BACKEND_ERRORS as e:
            raise StoreUnavailable(self.name, f"connect to {s.host}:{s.port}/{s.name}: {e}") from e
        self.logger.info("Connected to PostgreSQL at %s:%s/%s", s.host, s.port, s.name)

        async def _schema(pool: Any) -> None:
            await pool.execute(SCHEMA)
            await pool.execute(INDEX)

        await self._guard("initialize", _schema)
        self.logger.info("Messages table ready")

    async def list_recent(self, limit: int = DEFAULT_LIMIT) -> List[Message]:
        rows = await self._guard("list_recent", lambda pool: pool.fetch(SELECT_RECENT, max(0, limit)))
        return [_row_to_message(r) for r in rows]

    async def create(self, text: str, user: str) -> Message:
        row = await self._guard("create", lambda pool: pool.fetchrow(INSERT, text, user))
        return _row_to_message(row)

    async def update(self, message_id: str, text: str, user: str) -> Optional[Message]:
        pk = _parse_id(message_id)
        if pk is None:
            return None
        row = await self._guard("update", lambda pool: pool.fetchrow(UPDATE, text, pk, user))
        return _row_to_message(row) if row is not None else None

    async def delete(self, message_id: str, user: str) -> bool:
        pk = _parse_id(message_id)
        if pk is None:
            return False
        status = await self._guard("delete", lambda pool: pool.execute(DELETE, pk, user))
        return _rowcount(status) > 0

    async def clear(self) -> int:
        status = await self._guard("clear", lambda pool: pool.execute(CLEAR))
        return _rowcount(status)

    async def close(self) -> None:
        pool, self.pool = self.pool, None
        if pool is None:
            return
        try:
            await pool.close()
            self.logger.info("PostgreSQL connection pool closed")
        except BACKEND_ERRORS as e:
            self.logger.warning("Error closing PostgreSQL pool: %s", e)
