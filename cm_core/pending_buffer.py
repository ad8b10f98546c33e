from __future__ import annotations

from collections import deque
from typing import Any, Deque, Iterator, Mapping, Optional, Tuple

from sortedcontainers import SortedDict

from cm_core.errors import PendingBufferOverflow


class PendingBuffer:
    """Live candles held back while the backfill is running.

    Candles are grouped by bucket start; draining yields them by ascending
    bucket start and, within one bucket, in arrival order.
    """

    def __init__(self, max_size: Optional[int] = None) -> None:
        self.max_size = int(max_size) if max_size else None
        self._by_ts: SortedDict = SortedDict()
        self._size = 0

    def __len__(self) -> int:
        return self._size

    def add(self, timestamp: int, candle: Mapping[str, Any]) -> int:
        if self.max_size is not None and self._size >= self.max_size:
            raise PendingBufferOverflow(f"pending buffer full ({self._size} candles)")
        bucket: Deque[Mapping[str, Any]] = self._by_ts.setdefault(int(timestamp), deque())
        bucket.append(candle)
        self._size += 1
        return self._size

    def drain_ordered(self) -> Iterator[Tuple[int, Mapping[str, Any]]]:
        """Pop (timestamp, candle) pairs in order until the buffer is empty.

        Candles added while draining are picked up in their sorted position.
        """
        while self._by_ts:
            ts, bucket = self._by_ts.peekitem(0)
            candle = bucket.popleft()
            if not bucket:
                del self._by_ts[ts]
            self._size -= 1
            yield ts, candle

    def clear(self) -> None:
        self._by_ts.clear()
        self._size = 0
