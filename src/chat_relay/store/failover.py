"""Primary/fallback store selection.

``FailoverStore`` owns the backend selector. While in ``PRIMARY`` every
operation goes to the relational backend; the first ``StoreUnavailable`` it
raises flips the store to ``FALLBACK`` for the rest of the process and the
same operation is retried once against the JSON backend.

Data is never copied between backends. Messages written before a failover
stay in the primary and are invisible afterwards, and the two id schemes
(serial integers vs. millisecond timestamps) are not reconciled.
"""
from __future__ import annotations

import enum
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar

from ..config import DatabaseSettings, FallbackSettings
from ..errors import StoreFailure, StoreUnavailable, ValidationError
from ..models import DEFAULT_USER, Message
from .base import DEFAULT_LIMIT, MessageBackend
from .jsonfile import JsonFileBackend
from .postgres import PostgresBackend

T = TypeVar("T")

MAX_RETRIES = 1


class BackendState(str, enum.Enum):
    PRIMARY = "primary"
    FALLBACK = "fallback"


class FailoverStore:
    """Routes store operations to the active backend with one-shot failover."""

    def __init__(
        self,
        fallback: MessageBackend,
        primary: Optional[MessageBackend] = None,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.logger = logger or logging.getLogger("chat_relay.store")
        self.state = BackendState.PRIMARY if primary is not None else BackendState.FALLBACK
        self._fallback_ready = False

    # --------- state ----------
    @property
    def active(self) -> MessageBackend:
        if self.state is BackendState.PRIMARY and self.primary is not None:
            return self.primary
        return self.fallback

    @property
    def active_name(self) -> str:
        return self.active.name

    async def _ensure_fallback(self) -> None:
        if self._fallback_ready:
            return
        await self.fallback.initialize()
        self._fallback_ready = True

    async def _fail_over(self, op: str, cause: BaseException) -> None:
        self.logger.error(
            "Primary store failed during %s, switching to %s: %s", op, self.fallback.name, cause
        )
        self.state = BackendState.FALLBACK
        if self.primary is not None:
            try:
                await self.primary.close()
            except StoreUnavailable as e:
                self.logger.warning("Closing failed primary store: %s", e)
        await self._ensure_fallback()

    async def _run(self, op: str, call: Callable[[MessageBackend], Awaitable[T]]) -> T:
        attempts = 0
        while True:
            backend = self.active
            on_primary = self.state is BackendState.PRIMARY
            try:
                return await call(backend)
            except StoreUnavailable as e:
                if not on_primary or attempts >= MAX_RETRIES:
                    self.logger.error("Store operation %s failed on %s: %s", op, backend.name, e)
                    raise StoreFailure(op, e) from e
                attempts += 1
                try:
                    await self._fail_over(op, e)
                except StoreUnavailable as fe:
                    raise StoreFailure(op, fe) from fe

    # --------- lifecycle ----------
    async def initialize(self) -> None:
        if self.state is BackendState.PRIMARY and self.primary is not None:
            try:
                await self.primary.initialize()
                return
            except StoreUnavailable as e:
                try:
                    await self._fail_over("initialize", e)
                except StoreUnavailable as fe:
                    raise StoreFailure("initialize", fe) from fe
                return
        try:
            await self._ensure_fallback()
        except StoreUnavailable as e:
            raise StoreFailure("initialize", e) from e

    async def close(self) -> None:
        for backend in (self.primary, self.fallback):
            if backend is None:
                continue
            try:
                await backend.close()
            except StoreUnavailable as e:
                self.logger.warning("Error closing %s store: %s", backend.name, e)

    # --------- operations ----------
    async def list_recent(self, limit: int = DEFAULT_LIMIT) -> List[Message]:
        return await self._run("list_recent", lambda b: b.list_recent(limit))

    async def create(self, text: str, user: Optional[str] = None) -> Message:
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message cannot be empty")
        user = user or DEFAULT_USER
        return await self._run("create", lambda b: b.create(text, user))

    async def update(self, message_id: str, text: str, user: str) -> Optional[Message]:
        text = (text or "").strip()
        if not message_id or not text or not user:
            raise ValidationError("Message ID, text, and user are required")
        return await self._run("update", lambda b: b.update(message_id, text, user))

    async def delete(self, message_id: str, user: str) -> bool:
        if not message_id or not user:
            raise ValidationError("Message ID and user are required")
        return await self._run("delete", lambda b: b.delete(message_id, user))

    async def clear(self) -> int:
        return await self._run("clear", lambda b: b.clear())

    def describe(self) -> Dict[str, Any]:
        return {"backend": self.active_name, "state": self.state.value}


def build_store(cfg: Dict[str, Any], *, logger: Optional[logging.Logger] = None) -> FailoverStore:
    """Construct the store from config. No I/O happens until ``initialize()``."""
    logger = logger or logging.getLogger("chat_relay.store")
    fb = FallbackSettings.from_config(cfg)
    primary: Optional[PostgresBackend] = None
    try:
        db = DatabaseSettings.from_config(cfg)
    except (TypeError, ValueError) as e:
        logger.error("Invalid PostgreSQL settings, using JSON fallback store at %s: %s", fb.path, e)
    else:
        if db.enabled:
            primary = PostgresBackend(db, logger=logger)
        else:
            logger.warning("PostgreSQL disabled in config, using JSON fallback store at %s", fb.path)
    return FailoverStore(JsonFileBackend(fb.path, logger=logger), primary, logger=logger)
