from __future__ import annotations

import pytest

from cm_core.errors import BackfillError
from cm_core.types import CandleType, HistoricRange
from cm_history.paginator import HistoricalPaginator, PageWindow, paginate_by_time

from tests._fakes import FakeProvider, candle

T0 = 1_700_000_100


@pytest.mark.parametrize(
    "start,end,step",
    [(0, 600, 300), (T0, T0 + 601, 300), (T0, T0 + 60, 300), (T0, T0 + 3000, 7), (5, 6, 1)],
)
def test_windows_cover_range_without_gaps_or_overlap(start, end, step):
    windows = list(paginate_by_time(start, end, step))

    assert windows[0].start_s == start
    assert windows[-1].end_s == end
    for prev, nxt in zip(windows, windows[1:]):
        assert prev.end_s == nxt.start_s
    assert all(w.end_s - w.start_s <= step for w in windows)


def test_empty_or_inverted_range_yields_nothing():
    assert list(paginate_by_time(600, 600, 300)) == []
    assert list(paginate_by_time(900, 600, 300)) == []


def test_ten_minutes_two_assets_makes_four_queries():
    provider = FakeProvider({"BTC", "ETH"})
    paginator = HistoricalPaginator(provider, CandleType.NEWS, "1m", window_s=300)

    batches = list(paginator.iter_windows(T0, T0 + 600))

    assert [b.window for b in batches] == [PageWindow(T0, T0 + 300), PageWindow(T0 + 300, T0 + 600)]
    assert provider.queries == [
        ("BTC", T0, T0 + 300),
        ("ETH", T0, T0 + 300),
        ("BTC", T0 + 300, T0 + 600),
        ("ETH", T0 + 300, T0 + 600),
    ]


def test_window_candles_are_returned_before_next_window():
    rows = [candle("ETH", T0 + 360), candle("BTC", T0 + 60), candle("ETH", T0), candle("BTC", T0 + 420)]
    provider = FakeProvider({"BTC", "ETH"}, candles=rows)
    paginator = HistoricalPaginator(provider, CandleType.NEWS, "1m", window_s=300)

    stamps = [(c["asset"], c["start_time"]) for c in paginator.backfill(T0, T0 + 600)]

    assert stamps == [("BTC", T0 + 60), ("ETH", T0), ("BTC", T0 + 420), ("ETH", T0 + 360)]


def test_all_assets_query_when_supported():
    provider = FakeProvider({"BTC", "ETH"}, all_assets=True)
    paginator = HistoricalPaginator(provider, CandleType.NEWS, "1m", window_s=300, use_all_assets=True)

    list(paginator.iter_windows(T0, T0 + 600))

    assert provider.queries == [(None, T0, T0 + 300), (None, T0 + 300, T0 + 600)]


def test_configured_assets_override_provider_list():
    provider = FakeProvider({"BTC", "ETH", "XRP"})
    paginator = HistoricalPaginator(provider, CandleType.NEWS, "1m", window_s=300, assets=["XRP"])
    list(paginator.iter_windows(T0, T0 + 300))
    assert provider.queries == [("XRP", T0, T0 + 300)]


def test_query_failure_aborts_backfill():
    provider = FakeProvider({"BTC", "ETH"}, fail_on_call=3)
    paginator = HistoricalPaginator(provider, CandleType.NEWS, "1m", window_s=300)

    it = paginator.iter_windows(T0, T0 + 900)
    first = next(it)
    assert first.queries == 2
    with pytest.raises(BackfillError):
        next(it)
    assert len(provider.queries) == 3


def test_resolve_start_uses_checkpoint_or_full_history():
    provider = FakeProvider({"BTC"}, history=HistoricRange(first=T0 + 17, last=T0 + 6000))
    paginator = HistoricalPaginator(provider, CandleType.SOCIAL, "1m")

    assert paginator.resolve_start(T0 + 600) == T0 + 600
    assert paginator.resolve_start(None) == T0 + 17 - (T0 + 17) % 60

    empty = HistoricalPaginator(FakeProvider({"BTC"}), CandleType.SOCIAL, "1m")
    assert empty.resolve_start(None) is None


def test_window_size_must_be_positive():
    with pytest.raises(ValueError):
        HistoricalPaginator(FakeProvider(set()), CandleType.NEWS, "1m", window_s=0)
