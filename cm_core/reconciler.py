from __future__ import annotations

import logging
from typing import Any, Iterable, Mapping, Optional

from cm_core.errors import CheckpointError
from cm_core.normalizer import bucket_start, normalize, parse_candle_type
from cm_core.pending_buffer import PendingBuffer
from cm_core.ports import CheckpointStore, Sink
from cm_core.types import KEY_FIELD, CandleType, Phase, ReconcileResult, ReconcilerState

_NEXT_PHASE = {
    Phase.INIT: Phase.BACKFILL,
    Phase.BACKFILL: Phase.DRAIN,
    Phase.DRAIN: Phase.LIVE,
}


class CandleReconciler:
    """State machine that reconciles the backfill and live candle paths.

    It performs no network I/O of its own and must be driven from a single
    task; the sink and checkpoint ports are called synchronously.

    Phases run INIT -> BACKFILL -> DRAIN -> LIVE and never go back:
      - INIT/BACKFILL: live candles are parked in the pending buffer,
        backfilled candles are forwarded with the force override and the
        checkpoint follows completed window boundaries
      - DRAIN: parked candles are replayed by ascending bucket start
      - LIVE: live candles are forwarded as they arrive and the checkpoint
        follows their bucket start

    Outside BACKFILL a candle older than the checkpoint is only forwarded if
    the provider flagged it ``updated``; the sink upserts it by key.
    """

    def __init__(
        self,
        candle_type: CandleType | str,
        sink: Sink,
        checkpoints: CheckpointStore,
        buffer: Optional[PendingBuffer] = None,
        checkpoint_errors_fatal: bool = True,
        buffer_warn_every: int = 5000,
    ) -> None:
        self.candle_type = parse_candle_type(candle_type)
        self.sink = sink
        self.checkpoints = checkpoints
        self.buffer = buffer if buffer is not None else PendingBuffer()
        self.checkpoint_errors_fatal = bool(checkpoint_errors_fatal)
        self.buffer_warn_every = max(0, int(buffer_warn_every))
        self.phase = Phase.INIT
        self.position: Optional[int] = None
        self.state = ReconcilerState()
        self._log = logging.getLogger("exporter.reconciler")

    def _transition(self, target: Phase) -> None:
        if _NEXT_PHASE.get(self.phase) is not target:
            raise RuntimeError(f"illegal phase transition {self.phase.value} -> {target.value}")
        self._log.info(
            "Phase %s -> %s position=%s buffered=%s",
            self.phase.value,
            target.value,
            self.position,
            len(self.buffer),
        )
        self.phase = target

    def load_checkpoint(self) -> Optional[int]:
        """Read the persisted position. Only valid in INIT."""
        if self.phase is not Phase.INIT:
            raise RuntimeError("checkpoint is read once, before the backfill starts")
        try:
            self.position = self.checkpoints.get_last_position()
        except Exception as exc:
            raise CheckpointError(f"failed to read checkpoint: {exc}") from exc
        self._log.info("Checkpoint loaded type=%s position=%s", self.candle_type.value, self.position)
        return self.position

    def begin_backfill(self) -> None:
        self._transition(Phase.BACKFILL)

    def on_live(self, raw: Mapping[str, Any]) -> ReconcileResult:
        try:
            ts = bucket_start(raw)
        except (TypeError, ValueError) as exc:
            self.state.malformed += 1
            self._log.warning("Dropping malformed live candle: %s", exc)
            return ReconcileResult("skipped", "malformed")

        if self.phase is not Phase.LIVE:
            size = self.buffer.add(ts, raw)
            self.state.buffered += 1
            self.state.max_buffered = max(self.state.max_buffered, size)
            if self.buffer_warn_every and size % self.buffer_warn_every == 0:
                self._log.warning("Pending buffer holds %s live candles (phase=%s)", size, self.phase.value)
            return ReconcileResult("buffered", f"ts={ts} size={size}")

        return self._forward(raw, ts, force=False, path="live")

    def on_backfill_window(self, window_end: int, candles: Iterable[Mapping[str, Any]]) -> int:
        """Forward one completed window and move the checkpoint to its end."""
        if self.phase is not Phase.BACKFILL:
            raise RuntimeError(f"backfill window delivered in phase {self.phase.value}")
        forwarded = 0
        for raw in candles:
            try:
                ts = bucket_start(raw)
            except (TypeError, ValueError) as exc:
                self.state.malformed += 1
                self._log.warning("Dropping malformed historical candle: %s", exc)
                continue
            result = self._forward(raw, ts, force=True, path="backfill")
            if result.action == "forwarded":
                forwarded += 1
        self._advance(int(window_end), fatal=True)
        self.state.windows_completed += 1
        return forwarded

    def finish_backfill(self) -> int:
        """Replay the pending buffer in bucket order, then switch to LIVE."""
        self._transition(Phase.DRAIN)
        drained = 0
        for ts, raw in self.buffer.drain_ordered():
            result = self._forward(raw, ts, force=False, path="drain")
            if result.action == "forwarded":
                drained += 1
        self.buffer.clear()
        self._transition(Phase.LIVE)
        return drained

    def _forward(self, raw: Mapping[str, Any], ts: int, force: bool, path: str) -> ReconcileResult:
        updated = bool(raw.get("updated", False))
        if not force and self.position is not None and ts < self.position and not updated:
            self.state.skipped_stale += 1
            return ReconcileResult("skipped", f"stale ts={ts} position={self.position}")

        try:
            record = normalize(raw, self.candle_type)
        except ValueError as exc:
            self.state.malformed += 1
            self._log.warning("Dropping malformed %s candle: %s", path, exc)
            return ReconcileResult("skipped", "malformed")

        self.sink.upsert(record, KEY_FIELD)
        if path == "backfill":
            self.state.backfill_forwarded += 1
        elif path == "drain":
            self.state.drain_forwarded += 1
            self._advance(ts, fatal=self.checkpoint_errors_fatal)
        else:
            self.state.live_forwarded += 1
            self._advance(ts, fatal=self.checkpoint_errors_fatal)
        return ReconcileResult("forwarded", record[KEY_FIELD])

    def _advance(self, position: int, fatal: bool) -> bool:
        if self.position is not None and position <= self.position:
            return False
        try:
            self.checkpoints.save_position(position)
        except Exception as exc:
            if fatal:
                raise CheckpointError(f"failed to save checkpoint position={position}: {exc}") from exc
            self.state.checkpoint_failures += 1
            self._log.exception("Checkpoint save failed position=%s; continuing", position)
        self.position = position
        return True
