"""Error taxonomy shared by the store layer and the hub."""
from __future__ import annotations


class ChatRelayError(Exception):
    """Base class for all chat relay errors."""


class ValidationError(ChatRelayError):
    """A required field is missing or empty. Reported to the sender only."""


class StoreUnavailable(ChatRelayError):
    """A backend could not complete an operation (connection, I/O, timeout).

    Raised by backends. The failover controller absorbs it when the primary
    raises and the fallback retry succeeds.
    """

    def __init__(self, backend: str, message: str) -> None:
        super().__init__(f"[{backend}] {message}")
        self.backend = backend


class StoreFailure(ChatRelayError):
    """The fallback backend failed too; the operation is lost."""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"{operation} failed on every backend{detail}")
        self.operation = operation
