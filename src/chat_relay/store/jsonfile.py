"""Embedded JSON-document message backend (thread-safe, atomic writes).

Layout:
    <path>            # {"notes": [{"id", "text", "user", "t"}, ...]}
    <path>.corrupt.json  # previous document, if it could not be parsed

The whole document is rewritten on every mutation. Ids are wall-clock
milliseconds rendered as strings; they only need to be unique within the
file and never match the relational backend's numbering.
"""
from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, TypeVar

from ..errors import StoreUnavailable
from ..models import DEFAULT_USER, Message, utc_isoformat
from .base import DEFAULT_LIMIT, MessageBackend

NOTES_KEY = "notes"

T = TypeVar("T")


# -----------------------------
# Helpers
# -----------------------------
def _atomic_write_text(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile("w", encoding="utf-8", delete=False, dir=str(path.parent)) as tmp:
        tmp.write(text)
        tmp.flush()
        os.fsync(tmp.fileno())
        tmp_name = tmp.name
    os.replace(tmp_name, path)


def _read_json(path: Path) -> Any:
    with path.open("r", encoding="utf-8") as f:
        return json.load(f)


def _write_json(path: Path, obj: Any) -> None:
    _atomic_write_text(path, json.dumps(obj, ensure_ascii=False, indent=2))


def _next_id(notes: List[Dict[str, Any]]) -> str:
    now = int(time.time() * 1000)
    taken = [int(n["id"]) for n in notes if isinstance(n, dict) and str(n.get("id", "")).isdigit()]
    if taken and now <= max(taken):
        now = max(taken) + 1
    return str(now)


def _normalize(note: Any) -> Optional[Dict[str, Any]]:
    """Coerce a stored record to message shape, or None if it has no usable text."""
    if not isinstance(note, dict) or not isinstance(note.get("text"), str) or not note["text"].strip():
        return None
    out = dict(note)
    if out.get("id") not in (None, ""):
        out["id"] = str(out["id"])
    if not isinstance(out.get("user"), str) or not out["user"]:
        out["user"] = DEFAULT_USER
    if not isinstance(out.get("t"), str) or not out["t"]:
        out["t"] = utc_isoformat()
    return out


# -----------------------------
# JsonFileBackend
# -----------------------------
class JsonFileBackend(MessageBackend):
    """Message store kept in a single JSON document.

    File I/O runs in a worker thread so the event loop is never blocked;
    each read-modify-write holds ``self._lock``.
    """

    name = "jsonfile"

    def __init__(self, path: str | Path, *, logger: Optional[logging.Logger] = None) -> None:
        self.path = Path(path)
        self.logger = logger or logging.getLogger("chat_relay.store")
        self._lock = threading.RLock()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        try:
            return await asyncio.to_thread(fn, *args)
        except (OSError, ValueError) as e:
            raise StoreUnavailable(self.name, f"{self.path}: {e}") from e

    # --------- document ----------
    def _load(self) -> Dict[str, Any]:
        if not self.path.exists():
            return {NOTES_KEY: []}
        try:
            doc = _read_json(self.path)
        except ValueError as e:  # bad JSON or bad UTF-8
            doc = None
            reason = str(e)
        else:
            reason = "unexpected document shape"
        if isinstance(doc, dict) and isinstance(doc.get(NOTES_KEY, []), list):
            doc.setdefault(NOTES_KEY, [])
            return doc

        # Corruption fallback: keep a backup and start fresh.
        bad = self.path.with_suffix(".corrupt.json")
        self.logger.warning("Fallback store %s is unreadable (%s); moved to %s", self.path, reason, bad)
        os.replace(self.path, bad)
        return {NOTES_KEY: []}

    def _save(self, doc: Dict[str, Any]) -> None:
        _write_json(self.path, doc)

    # --------- sync operations (worker thread) ----------
    def _initialize_sync(self) -> None:
        with self._lock:
            doc = self._load()
            kept = [n for n in (_normalize(note) for note in doc[NOTES_KEY]) if n is not None]
            dropped = len(doc[NOTES_KEY]) - len(kept)
            if dropped:
                self.logger.warning("Dropped %d unusable record(s) from %s", dropped, self.path)
            for note in kept:
                if not note.get("id"):
                    note["id"] = _next_id(kept)
            doc[NOTES_KEY] = kept
            self._save(doc)

    def _list_sync(self, limit: int) -> List[Message]:
        with self._lock:
            notes = self._load()[NOTES_KEY]
        out: List[Message] = []
        for note in reversed(notes):
            if len(out) >= limit:
                break
            normalized = _normalize(note)
            if normalized is None or not normalized.get("id"):
                self.logger.warning("Skipping unusable record in %s: %r", self.path, note)
                continue
            out.append(Message.model_validate(normalized))
        return out

    def _create_sync(self, text: str, user: str) -> Message:
        with self._lock:
            doc = self._load()
            notes = doc[NOTES_KEY]
            message = Message(id=_next_id(notes), text=text, user=user or DEFAULT_USER, created_at=utc_isoformat())
            notes.append(message.to_wire())
            self._save(doc)
        return message

    def _find(self, notes: List[Dict[str, Any]], message_id: str, user: str) -> int:
        for i, note in enumerate(notes):
            if isinstance(note, dict) and str(note.get("id")) == message_id and note.get("user") == user:
                return i
        return -1

    def _update_sync(self, message_id: str, text: str, user: str) -> Optional[Message]:
        with self._lock:
            doc = self._load()
            notes = doc[NOTES_KEY]
            idx = self._find(notes, message_id, user)
            if idx < 0:
                return None
            notes[idx]["text"] = text
            self._save(doc)
            return Message.model_validate(_normalize(notes[idx]))

    def _delete_sync(self, message_id: str, user: str) -> bool:
        with self._lock:
            doc = self._load()
            notes = doc[NOTES_KEY]
            idx = self._find(notes, message_id, user)
            if idx < 0:
                return False
            del notes[idx]
            self._save(doc)
            return True

    def _clear_sync(self) -> int:
        with self._lock:
            doc = self._load()
            count = len(doc[NOTES_KEY])
            doc[NOTES_KEY] = []
            self._save(doc)
            return count

    # --------- async API ----------
    async def initialize(self) -> None:
        await self._run(self._initialize_sync)
        self.logger.info("JSON fallback store ready at %s", self.path)

    async def list_recent(self, limit: int = DEFAULT_LIMIT) -> List[Message]:
        return await self._run(self._list_sync, limit)

    async def create(self, text: str, user: str) -> Message:
        return await self._run(self._create_sync, text, user)

    async def update(self, message_id: str, text: str, user: str) -> Optional[Message]:
        return await self._run(self._update_sync, message_id, text, user)

    async def delete(self, message_id: str, user: str) -> bool:
        return await self._run(self._delete_sync, message_id, user)

    async def clear(self) -> int:
        return await self._run(self._clear_sync)

    async def close(self) -> None:
        self.logger.info("JSON fallback store session ended")
