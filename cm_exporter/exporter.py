from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional, Tuple

from cm_core.errors import StreamClosedError
from cm_core.normalizer import floor_to_resolution
from cm_core.pending_buffer import PendingBuffer
from cm_core.ports import CheckpointStore, Sink
from cm_core.reconciler import CandleReconciler
from cm_exporter.settings import ExporterSettings
from cm_exporter.ws_stream import CandleStream
from cm_history.base import ProviderQuery
from cm_history.paginator import HistoricalPaginator, WindowBatch


@dataclass
class LiveCandle:
    candle: Mapping[str, Any]


@dataclass
class BackfillWindow:
    batch: WindowBatch
    done: asyncio.Future


@dataclass
class BackfillDone:
    pass


@dataclass
class PumpFailed:
    source: str
    error: BaseException


class SentimentExporter:
    """Runs the live and backfill flows and feeds both into one reconciler.

    Only ``run()`` touches the reconciler. The pumps post messages to a
    queue, so a live candle can never interleave with a window or the drain.
    """

    def __init__(
        self,
        settings: ExporterSettings,
        provider: ProviderQuery,
        sink: Sink,
        checkpoints: CheckpointStore,
        stream: Optional[CandleStream] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.stream = stream if settings.live_enabled else None
        self.clock = clock
        self.reconciler = CandleReconciler(
            settings.candle_type,
            sink,
            checkpoints,
            buffer=PendingBuffer(max_size=settings.pending_buffer_max),
            checkpoint_errors_fatal=settings.checkpoint_errors_fatal,
            buffer_warn_every=settings.pending_buffer_warn,
        )
        self.paginator = HistoricalPaginator(
            provider,
            settings.candle_type,
            settings.resolution,
            window_s=settings.backfill_window_s,
            assets=settings.assets or None,
            use_all_assets=settings.use_all_assets_query,
        )
        self.live_ready = asyncio.Event()
        self._stopping = False
        self._last_hb = 0.0
        self._log = logging.getLogger("exporter.coordinator")

    def backfill_range(self, position: Optional[int]) -> Tuple[Optional[int], int]:
        """[start, end) still missing for ``position``; start None means nothing to replay."""
        end = floor_to_resolution(int(self.clock()) - self.settings.backfill_safety_margin_s, self.settings.resolution)
        start = self.paginator.resolve_start(position)
        return start, end

    async def _pump_live(self, queue: asyncio.Queue) -> None:
        assert self.stream is not None
        try:
            async for candle in self.stream.subscribe():
                queue.put_nowait(LiveCandle(candle))
            if not self._stopping:
                raise StreamClosedError("live stream ended")
        except Exception as exc:
            queue.put_nowait(PumpFailed("live", exc))

    async def _pump_backfill(self, queue: asyncio.Queue, position: Optional[int]) -> None:
        loop = asyncio.get_running_loop()
        try:
            start, end = await asyncio.to_thread(self.backfill_range, position)
            if start is not None and start < end:
                self._log.info("Backfill [%s, %s) window_s=%s", start, end, self.settings.backfill_window_s)
                windows = self.paginator.iter_windows(start, end)
                while True:
                    batch = await asyncio.to_thread(next, windows, None)
                    if batch is None:
                        break
                    done = loop.create_future()
                    queue.put_nowait(BackfillWindow(batch, done))
                    await done
            else:
                self._log.info("Nothing to backfill start=%s end=%s", start, end)
            queue.put_nowait(BackfillDone())
        except Exception as exc:
            queue.put_nowait(PumpFailed("backfill", exc))

    def _maybe_heartbeat(self) -> None:
        now = time.monotonic()
        if now - self._last_hb < self.settings.heartbeat_s:
            return
        self._last_hb = now
        st = self.reconciler.state
        self._log.info(
            "HB phase=%s position=%s backfill=%s drain=%s live=%s buffered=%s pending=%s stale=%s malformed=%s windows=%s max_buffered=%s",
            self.reconciler.phase.value,
            self.reconciler.position,
            st.backfill_forwarded,
            st.drain_forwarded,
            st.live_forwarded,
            st.buffered,
            len(self.reconciler.buffer),
            st.skipped_stale,
            st.malformed,
            st.windows_completed,
            st.max_buffered,
        )

    def _handle(self, msg: Any) -> bool:
        """Apply one message; returns True when the run is complete."""
        if isinstance(msg, LiveCandle):
            self.reconciler.on_live(msg.candle)
            return False
        if isinstance(msg, BackfillWindow):
            try:
                window = msg.batch.window
                n = self.reconciler.on_backfill_window(window.end_s, msg.batch.candles)
                self._log.info(
                    "Window [%s, %s) done queries=%s forwarded=%s",
                    window.start_s,
                    window.end_s,
                    msg.batch.queries,
                    n,
                )
            finally:
                if not msg.done.done():
                    msg.done.set_result(None)
            return False
        if isinstance(msg, BackfillDone):
            drained = self.reconciler.finish_backfill()
            self.live_ready.set()
            self._log.info("Backfill complete; drained=%s position=%s", drained, self.reconciler.position)
            if self.stream is None:
                self._log.info("Live stream disabled; historical run finished")
                return True
            return False
        if isinstance(msg, PumpFailed):
            self._log.error("%s flow failed: %s", msg.source, msg.error)
            raise msg.error
        raise TypeError(f"unexpected message {msg!r}")

    async def run(self) -> None:
        """Run until a historical-only backfill completes; errors propagate."""
        queue: asyncio.Queue = asyncio.Queue()
        tasks = []
        self._stopping = False
        self._last_hb = time.monotonic()
        try:
            position = self.reconciler.load_checkpoint()
            if self.stream is not None:
                tasks.append(asyncio.create_task(self._pump_live(queue), name="live"))
            self.reconciler.begin_backfill()
            tasks.append(asyncio.create_task(self._pump_backfill(queue, position), name="backfill"))

            while True:
                try:
                    msg = await asyncio.wait_for(queue.get(), timeout=max(0.1, self.settings.heartbeat_s))
                except asyncio.TimeoutError:
                    self._maybe_heartbeat()
                    continue
                if self._handle(msg):
                    return
                self._maybe_heartbeat()
        finally:
            self._stopping = True
            if self.stream is not None:
                self.stream.close()
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
