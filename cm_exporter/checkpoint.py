from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from cm_core.errors import CheckpointError
from cm_core.ports import CheckpointStore
from cm_core.types import CandleType

log = logging.getLogger("exporter.checkpoint")


class JsonCheckpointStore(CheckpointStore):
    """One JSON file per candle type, replaced atomically on every save."""

    def __init__(self, directory: Path, candle_type: CandleType) -> None:
        self.directory = Path(directory)
        self.candle_type = candle_type
        self.path = self.directory / f"checkpoint_{candle_type.value}.json"
        self._last: Optional[int] = None

    def get_last_position(self) -> Optional[int]:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            position = payload.get("position")
        except (OSError, ValueError, AttributeError) as exc:
            raise CheckpointError(f"unreadable checkpoint file {self.path}: {exc}") from exc
        self._last = int(position) if position is not None else None
        return self._last

    def save_position(self, position: int) -> None:
        position = int(position)
        if self._last is not None and position < self._last:
            raise CheckpointError(f"checkpoint may not move backwards ({self._last} -> {position})")

        payload = {
            "type": self.candle_type.value,
            "position": position,
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.directory)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    json.dump(payload, fh)
                    fh.flush()
                    os.fsync(fh.fileno())
                os.replace(tmp_name, self.path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise CheckpointError(f"failed to write checkpoint {self.path}: {exc}") from exc
        self._last = position
        log.debug("Checkpoint saved type=%s position=%s", self.candle_type.value, position)
