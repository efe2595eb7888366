"""Connection registry and event dispatch for the chat relay.

Frames are JSON objects ``{"event": <name>, "data": <payload>}``.

client -> server:
    notes:create  {text, user}
    notes:update  {id, text, user}
    notes:delete  {id, user}
    notes:clear   {}

server -> client:
    notes:init     [Message, ...]   sent once, to the new connection only
    notes:new      Message          broadcast
    notes:updated  Message          broadcast
    notes:deleted  id               broadcast
    notes:cleared  null             broadcast
    error          str              originating connection only
"""
from __future__ import annotations

import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Tuple

import pydantic

from .errors import ValidationError
from .models import DEFAULT_USER, CreatePayload, DeletePayload, UpdatePayload
from .store import DEFAULT_LIMIT, FailoverStore

EMPTY_TEXT = "Message cannot be empty"
UPDATE_REQUIRED = "Message ID, text, and user are required"
DELETE_REQUIRED = "Message ID and user are required"
UPDATE_NOT_FOUND = "Message not found, could not be updated, or you can only edit your own messages"
DELETE_NOT_FOUND = "Message not found, could not be deleted, or you can only delete your own messages"
MALFORMED = "Malformed message"


class Connection(Protocol):
    async def send_json(self, data: Any) -> None:
        ...


Handler = Callable[[Connection, Dict[str, Any]], Awaitable[None]]


def _label(conn: Any) -> str:
    client = getattr(conn, "client", None)
    if client is not None and getattr(client, "host", None):
        return f"{client.host}:{client.port}"
    return hex(id(conn))


class ChatHub:
    """Validates inbound events, calls the store and fans out the results."""

    def __init__(
        self,
        store: FailoverStore,
        *,
        history_limit: int = DEFAULT_LIMIT,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.store = store
        self.history_limit = history_limit
        self.logger = logger or logging.getLogger("chat_relay.hub")
        self.connections: List[Connection] = []
        # event -> (handler, error sent when the store fails)
        self._routes: Dict[str, Tuple[Handler, str]] = {
            "notes:create": (self._on_create, "Failed to save message"),
            "notes:update": (self._on_update, "Failed to update message"),
            "notes:delete": (self._on_delete, "Failed to delete message"),
            "notes:clear": (self._on_clear, "Failed to clear chat"),
        }

    # --------- registry ----------
    async def connect(self, conn: Connection) -> None:
        """Register ``conn`` and push the recent history to it."""
        self.connections.append(conn)
        self.logger.info("Client connected: %s (%d online)", _label(conn), len(self.connections))
        try:
            messages = await self.store.list_recent(self.history_limit)
        except Exception:
            self.logger.exception("Error loading messages for %s", _label(conn))
            await self.send_error(conn, "Failed to load messages")
            return
        await self.send(conn, "notes:init", [m.to_wire() for m in messages])
        self.logger.info("Sent %d messages to client %s", len(messages), _label(conn))

    def disconnect(self, conn: Connection) -> None:
        if conn in self.connections:
            self.connections.remove(conn)
            self.logger.info("Client disconnected: %s", _label(conn))

    # --------- delivery ----------
    async def send(self, conn: Connection, event: str, data: Any = None) -> bool:
        try:
            await conn.send_json({"event": event, "data": data})
            return True
        except Exception as e:  # closed sockets raise transport-specific errors
            self.logger.warning("Dropping connection %s after failed send: %s", _label(conn), e)
            self.disconnect(conn)
            return False

    async def send_error(self, conn: Connection, message: str) -> None:
        await self.send(conn, "error", message)

    async def broadcast(self, event: str, data: Any = None) -> int:
        """Send to every registered connection, sender included. Returns deliveries."""
        delivered = 0
        for conn in list(self.connections):
            if await self.send(conn, event, data):
                delivered += 1
        return delivered

    # --------- dispatch ----------
    async def handle_frame(self, conn: Connection, raw: str | bytes | Dict[str, Any]) -> None:
        """Decode one inbound frame and handle it. Never raises."""
        frame: Any = raw
        if isinstance(raw, (str, bytes)):
            try:
                frame = json.loads(raw)
            except ValueError:
                await self.send_error(conn, MALFORMED)
                return
        if not isinstance(frame, dict) or not isinstance(frame.get("event"), str):
            await self.send_error(conn, MALFORMED)
            return
        data = frame.get("data")
        await self.handle_event(conn, frame["event"], data if isinstance(data, dict) else {})

    async def handle_event(self, conn: Connection, event: str, data: Dict[str, Any]) -> None:
        route = self._routes.get(event)
        if route is None:
            await self.send_error(conn, f"Unknown event: {event}")
            return
        handler, failure = route
        try:
            await handler(conn, data)
        except ValidationError as e:
            self.logger.debug("Rejected %s from %s: %s", event, _label(conn), e)
            await self.send_error(conn, str(e))
        except Exception:
            self.logger.exception("Error handling %s from %s", event, _label(conn))
            await self.send_error(conn, failure)

    # --------- handlers ----------
    async def _on_create(self, conn: Connection, data: Dict[str, Any]) -> None:
        payload = _parse(CreatePayload, data, EMPTY_TEXT)
        text = (payload.text or "").strip()
        if not text:
            raise ValidationError(EMPTY_TEXT)
        message = await self.store.create(text, payload.user or DEFAULT_USER)
        self.logger.info("New message from %s: %s", message.user, message.text[:50])
        await self.broadcast("notes:new", message.to_wire())

    async def _on_update(self, conn: Connection, data: Dict[str, Any]) -> None:
        payload = _parse(UpdatePayload, data, UPDATE_REQUIRED)
        text = (payload.text or "").strip()
        if not payload.id or not text or not payload.user:
            raise ValidationError(UPDATE_REQUIRED)
        message = await self.store.update(payload.id, text, payload.user)
        if message is None:
            await self.send_error(conn, UPDATE_NOT_FOUND)
            return
        self.logger.info("Message updated by %s: %s", payload.user, payload.id)
        await self.broadcast("notes:updated", message.to_wire())

    async def _on_delete(self, conn: Connection, data: Dict[str, Any]) -> None:
        payload = _parse(DeletePayload, data, DELETE_REQUIRED)
        if not payload.id or not payload.user:
            raise ValidationError(DELETE_REQUIRED)
        if not await self.store.delete(payload.id, payload.user):
            await self.send_error(conn, DELETE_NOT_FOUND)
            return
        self.logger.info("Message deleted by %s: %s", payload.user, payload.id)
        await self.broadcast("notes:deleted", payload.id)

    async def _on_clear(self, conn: Connection, data: Dict[str, Any]) -> None:
        count = await self.store.clear()
        self.logger.info("Chat cleared: %d messages deleted", count)
        await self.broadcast("notes:cleared")


def _parse(model: Any, data: Dict[str, Any], message: str) -> Any:
    try:
        return model.model_validate(data)
    except pydantic.ValidationError as e:
        raise ValidationError(message) from e
