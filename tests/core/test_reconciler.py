from __future__ import annotations

import logging

import pytest

from cm_core.errors import CheckpointError
from cm_core.pending_buffer import PendingBuffer
from cm_core.reconciler import CandleReconciler
from cm_core.types import CandleType, Phase

from tests._fakes import MemoryCheckpoints, MemorySink, candle

T = 1_700_000_400


def _started(position=None, **kwargs):
    sink = MemorySink()
    checkpoints = MemoryCheckpoints(position=position, **kwargs.pop("checkpoint_kwargs", {}))
    rec = CandleReconciler(CandleType.SOCIAL, sink, checkpoints, **kwargs)
    rec.load_checkpoint()
    rec.begin_backfill()
    return rec, sink, checkpoints


def test_live_candle_during_backfill_is_buffered_then_replayed_first():
    rec, sink, checkpoints = _started(position=T - 600)

    result = rec.on_live(candle("BTC", T))
    assert result.action == "buffered"
    assert sink.log == []

    rec.on_backfill_window(T - 300, [candle("BTC", T - 600), candle("ETH", T - 540)])
    rec.on_backfill_window(T, [candle("BTC", T - 120)])
    assert sink.keys() == [
        f"social_{T - 600}_1m_BTC",
        f"social_{T - 540}_1m_ETH",
        f"social_{T - 120}_1m_BTC",
    ]

    rec.on_live(candle("ETH", T + 60))
    drained = rec.finish_backfill()

    assert drained == 2
    assert sink.keys()[3:] == [f"social_{T}_1m_BTC", f"social_{T + 60}_1m_ETH"]
    assert rec.phase is Phase.LIVE
    assert len(rec.buffer) == 0


def test_backfill_checkpoint_tracks_window_boundaries():
    rec, _, checkpoints = _started(position=T - 600)

    rec.on_backfill_window(T - 300, [candle("BTC", T - 600), candle("BTC", T - 360)])
    rec.on_backfill_window(T, [candle("BTC", T - 240)])

    assert checkpoints.saves == [T - 300, T]
    assert rec.state.windows_completed == 2


def test_backfill_forwards_without_updated_flag():
    rec, sink, _ = _started(position=T)
    rec.on_backfill_window(T + 300, [candle("BTC", T, updated=False)])
    assert sink.keys() == [f"social_{T}_1m_BTC"]
    assert rec.state.backfill_forwarded == 1


def test_live_forward_advances_checkpoint_to_bucket_start():
    rec, sink, checkpoints = _started(position=T)
    rec.finish_backfill()

    rec.on_live(candle("BTC", T + 60))
    rec.on_live(candle("ETH", T + 120))

    assert checkpoints.saves == [T + 60, T + 120]
    assert rec.state.live_forwarded == 2


def test_checkpoint_is_monotonic_across_full_run():
    rec, _, checkpoints = _started(position=None)

    rec.on_live(candle("BTC", T + 180))
    rec.on_live(candle("ETH", T + 120))
    rec.on_backfill_window(T, [candle("BTC", T - 60)])
    rec.on_backfill_window(T + 60, [candle("BTC", T)])
    rec.finish_backfill()
    rec.on_live(candle("BTC", T + 240))
    rec.on_live(candle("ETH", T + 180))
    rec.on_live(candle("BTC", T + 300))

    assert checkpoints.saves == sorted(checkpoints.saves)
    assert checkpoints.saves[-1] == T + 300


def test_revised_bucket_overwrites_same_key():
    rec, sink, _ = _started(position=T)
    rec.finish_backfill()

    rec.on_live(candle("BTC", T + 60, positive=3))
    rec.on_live(candle("BTC", T + 60, updated=True, positive=9))

    key = f"social_{T + 60}_1m_BTC"
    assert len(sink.records) == 1
    assert sink.records[key]["positive"] == 9
    assert sink.records[key]["updated"] is True


def test_stale_live_candle_is_skipped_unless_updated():
    rec, sink, _ = _started(position=T)
    rec.finish_backfill()

    skipped = rec.on_live(candle("BTC", T - 60))
    revised = rec.on_live(candle("BTC", T - 120, updated=True))

    assert skipped.action == "skipped"
    assert revised.action == "forwarded"
    assert sink.keys() == [f"social_{T - 120}_1m_BTC"]
    assert rec.state.skipped_stale == 1


def test_buffered_candles_covered_by_backfill_are_not_replayed():
    rec, sink, _ = _started(position=T - 300)
    rec.on_live(candle("BTC", T - 120))
    rec.on_backfill_window(T, [candle("BTC", T - 120)])

    assert rec.finish_backfill() == 0
    assert sink.keys() == [f"social_{T - 120}_1m_BTC"]


def test_forwarding_same_record_twice_is_idempotent():
    rec, sink, _ = _started(position=T)
    rec.finish_backfill()
    rec.on_live(candle("BTC", T, updated=True))
    once = dict(sink.records)
    rec.on_live(candle("BTC", T, updated=True))
    assert sink.records == once


def test_malformed_live_candle_is_dropped():
    rec, sink, _ = _started(position=T)
    rec.finish_backfill()
    assert rec.on_live({"asset": "BTC"}).action == "skipped"
    assert rec.on_live({"start_time": T + 60}).action == "skipped"
    assert sink.log == []
    assert rec.state.malformed == 2


def test_live_checkpoint_failure_fatal_by_default():
    rec, _, _ = _started(position=T, checkpoint_kwargs={"fail_saves": True})
    rec.finish_backfill()
    with pytest.raises(CheckpointError):
        rec.on_live(candle("BTC", T + 60))


def test_live_checkpoint_failure_can_be_swallowed(caplog):
    rec, sink, _ = _started(
        position=T,
        checkpoint_errors_fatal=False,
        checkpoint_kwargs={"fail_saves": True},
    )
    rec.finish_backfill()

    with caplog.at_level(logging.ERROR, logger="exporter.reconciler"):
        rec.on_live(candle("BTC", T + 60))
        rec.on_live(candle("BTC", T + 120))

    assert len(sink.log) == 2
    assert rec.position == T + 120
    assert rec.state.checkpoint_failures == 2
    assert "Checkpoint save failed" in caplog.text


def test_backfill_checkpoint_failure_is_always_fatal():
    rec, _, _ = _started(
        position=T,
        checkpoint_errors_fatal=False,
        checkpoint_kwargs={"fail_saves": True},
    )
    with pytest.raises(CheckpointError):
        rec.on_backfill_window(T + 300, [candle("BTC", T)])


def test_phases_only_move_forward():
    rec = CandleReconciler("news", MemorySink(), MemoryCheckpoints())
    with pytest.raises(RuntimeError):
        rec.finish_backfill()
    rec.load_checkpoint()
    rec.begin_backfill()
    with pytest.raises(RuntimeError):
        rec.begin_backfill()
    rec.finish_backfill()
    with pytest.raises(RuntimeError):
        rec.on_backfill_window(T, [])


def test_buffer_limit_applies_during_backfill():
    from cm_core.errors import PendingBufferOverflow

    rec, _, _ = _started(position=T, buffer=PendingBuffer(max_size=1))
    rec.on_live(candle("BTC", T + 60))
    with pytest.raises(PendingBufferOverflow):
        rec.on_live(candle("BTC", T + 120))
