"""Error taxonomy for the signaling hub.

Handler-level faults are raised as ``HubError`` subclasses and converted into
an error event for the originating connection by the router.
"""

from __future__ import annotations


class HubError(Exception):
    """Base error carrying a short machine code and a client-facing message."""

    code = "internal"
    default_message = "internal error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InvalidInput(HubError):
    code = "invalid_input"
    default_message = "invalid input"


class NotFound(HubError):
    code = "not_found"
    default_message = "not found"


class ResourceExhausted(HubError):
    code = "resource_exhausted"
    default_message = "failed to create session"


class Internal(HubError):
    code = "internal"
    default_message = "internal error"


class DuplicateKeyError(Exception):
    """Raised by a session store when a unique field collides."""

    def __init__(self, field: str) -> None:
        super().__init__(f"duplicate value for unique field {field!r}")
        self.field = field
