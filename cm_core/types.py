from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

KEY_FIELD = "key"


class CandleType(str, Enum):
    NEWS = "news"
    SOCIAL = "social"


class Phase(str, Enum):
    INIT = "init"
    BACKFILL = "backfill"
    DRAIN = "drain"
    LIVE = "live"


@dataclass(frozen=True)
class HistoricRange:
    first: int
    last: int


@dataclass
class ReconcileResult:
    action: str  # "forwarded" | "buffered" | "skipped"
    details: str = ""


@dataclass
class ReconcilerState:
    backfill_forwarded: int = 0
    drain_forwarded: int = 0
    live_forwarded: int = 0
    buffered: int = 0
    skipped_stale: int = 0
    malformed: int = 0
    windows_completed: int = 0
    checkpoint_failures: int = 0
    max_buffered: int = 0
