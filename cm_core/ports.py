from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Mapping, Optional


class Sink(ABC):
    """Downstream destination for canonical records, idempotent by key."""

    @abstractmethod
    def upsert(self, record: Mapping[str, Any], key_field: str) -> None:
        """Store ``record``; a later record with the same key replaces it."""

    def close(self) -> None:
        return None


class CheckpointStore(ABC):
    """Durable position: every bucket start before it has been delivered."""

    @abstractmethod
    def get_last_position(self) -> Optional[int]:
        """Return the saved position in epoch seconds, or None if absent."""

    @abstractmethod
    def save_position(self, position: int) -> None:
        """Persist ``position``; returns once the write is durable."""
