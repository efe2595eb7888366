"""Message record and inbound event payloads."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_USER = "Anonymous"


def utc_isoformat(dt: Optional[datetime] = None) -> str:
    """Render ``dt`` (default: now) as ``YYYY-MM-DDTHH:MM:SS.mmmZ``."""
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class Message(BaseModel):
    """Canonical stored message. Serialized on the wire as ``{id, text, user, t}``."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    text: str
    user: str = DEFAULT_USER
    created_at: str = Field(alias="t")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


# -----------------------------
# Inbound payloads
# -----------------------------
# Fields are lenient: the hub reports missing values with its own error
# strings instead of pydantic's. Ids may arrive as ints.
def _opt_str(v: Any) -> Optional[str]:
    if v is None:
        return None
    if isinstance(v, bool) or not isinstance(v, (int, str)):
        raise ValueError("expected a string")
    return str(v)


class CreatePayload(BaseModel):
    text: Optional[str] = None
    user: Optional[str] = None

    @field_validator("text", "user", mode="before")
    @classmethod
    def coerce_str(cls, v: Any) -> Optional[str]:
        return _opt_str(v)


class UpdatePayload(BaseModel):
    id: Optional[str] = None
    text: Optional[str] = None
    user: Optional[str] = None

    @field_validator("id", "text", "user", mode="before")
    @classmethod
    def coerce_str(cls, v: Any) -> Optional[str]:
        return _opt_str(v)


class DeletePayload(BaseModel):
    id: Optional[str] = None
    user: Optional[str] = None

    @field_validator("id", "user", mode="before")
    @classmethod
    def coerce_str(cls, v: Any) -> Optional[str]:
        return _opt_str(v)
