from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, List, Mapping, Optional, Sequence

from cm_core.errors import BackfillError, ExporterError
from cm_core.normalizer import floor_to_resolution, parse_candle_type
from cm_core.types import CandleType
from cm_history.base import ProviderQuery

log = logging.getLogger("exporter.paginator")


@dataclass(frozen=True)
class PageWindow:
    start_s: int
    end_s: int


@dataclass
class WindowBatch:
    window: PageWindow
    candles: List[Mapping[str, Any]] = field(default_factory=list)
    queries: int = 0


def paginate_by_time(start_s: int, end_s: int, step_s: int) -> Iterator[PageWindow]:
    """Yield consecutive [start, end) windows covering [start_s, end_s).

    The last window is clipped to end_s.
    """
    if end_s <= start_s:
        return
    if step_s <= 0:
        raise ValueError(f"step_s must be positive (got {step_s})")

    cursor = start_s
    while cursor < end_s:
        next_end = min(cursor + step_s, end_s)
        yield PageWindow(start_s=cursor, end_s=next_end)
        cursor = next_end


class HistoricalPaginator:
    """Walks a closed time range window by window, one query per asset.

    Every candle of a window is returned before the next window is queried.
    Any query failure aborts the walk with BackfillError.
    """

    def __init__(
        self,
        provider: ProviderQuery,
        candle_type: CandleType | str,
        resolution: str,
        window_s: int = 300,
        assets: Optional[Sequence[str]] = None,
        use_all_assets: bool = False,
    ) -> None:
        self.provider = provider
        self.candle_type = parse_candle_type(candle_type)
        self.resolution = resolution
        self.window_s = int(window_s)
        if self.window_s <= 0:
            raise ValueError(f"window_s must be positive (got {window_s})")
        self.assets = list(assets) if assets else None
        self.use_all_assets = bool(use_all_assets)

    def resolve_start(self, position: Optional[int]) -> Optional[int]:
        """Backfill start for a checkpoint; None means there is nothing to replay."""
        if position is not None:
            return int(position)
        try:
            rng = self.provider.historic_range(self.candle_type)
        except ExporterError:
            raise
        except Exception as exc:
            raise BackfillError(f"historic range query failed: {exc}") from exc
        if rng is None:
            log.info("Provider reports no history for type=%s", self.candle_type.value)
            return None
        start = floor_to_resolution(rng.first, self.resolution)
        log.info("No checkpoint; replaying full history from %s (last=%s)", start, rng.last)
        return start

    def resolve_assets(self) -> Optional[List[str]]:
        """Assets to query per window, or None for a single all-assets query."""
        if self.use_all_assets and self.provider.supports_all_assets():
            return None
        if self.assets:
            return sorted(set(self.assets))
        try:
            return sorted(self.provider.assets())
        except ExporterError:
            raise
        except Exception as exc:
            raise BackfillError(f"asset list query failed: {exc}") from exc

    def _query(self, asset: Optional[str], window: PageWindow) -> List[Mapping[str, Any]]:
        try:
            return list(
                self.provider.historic_window(
                    self.candle_type,
                    asset,
                    window.start_s,
                    window.end_s,
                    self.resolution,
                )
            )
        except ExporterError:
            raise
        except Exception as exc:
            raise BackfillError(
                f"window query failed asset={asset or '*'} [{window.start_s}, {window.end_s}): {exc}"
            ) from exc

    def iter_windows(self, start_s: int, end_s: int) -> Iterator[WindowBatch]:
        assets = self.resolve_assets()
        targets: Iterable[Optional[str]] = [None] if assets is None else assets
        for window in paginate_by_time(start_s, end_s, self.window_s):
            batch = WindowBatch(window=window)
            for asset in targets:
                batch.candles.extend(self._query(asset, window))
                batch.queries += 1
            log.debug(
                "Window [%s, %s) queries=%s candles=%s",
                window.start_s,
                window.end_s,
                batch.queries,
                len(batch.candles),
            )
            yield batch

    def backfill(self, start_s: int, end_s: int) -> Iterator[Mapping[str, Any]]:
        """Raw candles of [start_s, end_s), window after window."""
        for batch in self.iter_windows(start_s, end_s):
            yield from batch.candles
