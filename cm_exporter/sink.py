from __future__ import annotations

import json
import os
import re
import time
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from cm_core.ports import Sink


class NdjsonSink(Sink):
    """Append-only upsert log with simple rotation + retention cleanup.

    Each line is one record. Readers resolve upserts by keeping the last line
    per key (see ``load_latest``).
    """

    def __init__(
        self,
        path: Path,
        rotate_interval_s: float = 3600.0,
        retention_s: float = 0.0,
    ) -> None:
        self.path = Path(path)
        self.rotate_interval_s = rotate_interval_s
        self.retention_s = retention_s
        self._fh: Optional[object] = None
        self._rotate_id = _next_rotate_id(self.path)
        self._last_rotate = time.time()
        self.records_written = 0
        self._open()

    def _open(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fh = open(self.path, "a", encoding="utf-8", buffering=1)

    def _close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def _rotate(self) -> None:
        self._close()
        if self.path.exists() and self.path.stat().st_size > 0:
            rotated = self.path.with_name(f"{self.path.name}.{self._rotate_id}")
            self._rotate_id += 1
            os.replace(self.path, rotated)
        self._open()
        self._last_rotate = time.time()
        self._cleanup()

    def _cleanup(self) -> None:
        if self.retention_s <= 0:
            return
        now = time.time()
        for candidate in _rotated_files(self.path):
            age = now - candidate.stat().st_mtime
            if age > self.retention_s:
                candidate.unlink(missing_ok=True)

    def upsert(self, record: Mapping[str, Any], key_field: str) -> None:
        if not record.get(key_field):
            raise ValueError(f"record has no {key_field!r} field")
        if self._fh is None:
            self._open()
        if self.rotate_interval_s > 0 and (time.time() - self._last_rotate) >= self.rotate_interval_s:
            self._rotate()
        assert self._fh is not None
        self._fh.write(json.dumps(dict(record), ensure_ascii=False, separators=(",", ":")) + "\n")
        self.records_written += 1

    def close(self) -> None:
        self._close()


def _rotated_files(path: Path) -> List[Path]:
    pattern = re.compile(rf"^{re.escape(path.name)}\.(\d+)$")
    if not path.parent.exists():
        return []
    found = []
    for candidate in path.parent.iterdir():
        m = pattern.match(candidate.name)
        if m and candidate.is_file():
            found.append((int(m.group(1)), candidate))
    return [p for _, p in sorted(found)]


def _next_rotate_id(path: Path) -> int:
    rotated = _rotated_files(path)
    if not rotated:
        return 0
    return int(rotated[-1].name.rsplit(".", 1)[1]) + 1


def load_latest(path: Path, key_field: str = "key") -> Dict[str, Dict[str, Any]]:
    """Resolve an NDJSON sink (rotated files first) to its latest record per key."""
    path = Path(path)
    latest: Dict[str, Dict[str, Any]] = {}
    files = _rotated_files(path) + ([path] if path.exists() else [])
    for fpath in files:
        with open(fpath, "r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                record = json.loads(line)
                latest[record[key_field]] = record
    return latest
