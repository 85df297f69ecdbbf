"""Session records and item metadata."""

from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from typing import Any

from .constants import B_ITEM_MIME, B_ITEM_NAME, B_ITEM_SIZE
from .errors import InvalidInput


@dataclass(frozen=True)
class ItemMetadata:
    name: str
    size: int
    mime_type: str

    def to_wire(self) -> dict[int, Any]:
        return {
            B_ITEM_NAME: self.name,
            B_ITEM_SIZE: self.size,
            B_ITEM_MIME: self.mime_type,
        }


@dataclass
class Session:
    public_id: str
    sender_id: bytes
    deletion_secret: str
    items: tuple[ItemMetadata, ...]
    receiver_ids: set[bytes] = field(default_factory=set)
    is_open: bool = True
    created_at: float = field(default_factory=time.time)

    def copy(self) -> Session:
        return replace(self, receiver_ids=set(self.receiver_ids))


def parse_item(raw: Any, index: int = 0) -> ItemMetadata:
    if not isinstance(raw, dict):
        raise InvalidInput(f"item {index} must be a map")

    name = raw.get(B_ITEM_NAME)
    if not isinstance(name, str) or not name.strip():
        raise InvalidInput(f"item {index} requires a non-empty name")

    size = raw.get(B_ITEM_SIZE)
    if not isinstance(size, int) or isinstance(size, bool) or size < 0:
        raise InvalidInput(f"item {index} requires a non-negative integer size")

    mime = raw.get(B_ITEM_MIME)
    if not isinstance(mime, str) or not mime.strip():
        raise InvalidInput(f"item {index} requires a media type")

    return ItemMetadata(name=name, size=size, mime_type=mime)


def parse_items(raw: Any, *, max_items: int = 0) -> tuple[ItemMetadata, ...]:
    """Validate a CREATE body into a non-empty tuple of item records.

    ``max_items`` of 0 disables the count limit.
    """
    if not isinstance(raw, (list, tuple)) or not raw:
        raise InvalidInput("at least one item is required")
    if max_items > 0 and len(raw) > max_items:
        raise InvalidInput(f"too many items ({len(raw)} > {max_items})")
    return tuple(parse_item(item, i) for i, item in enumerate(raw))
