from __future__ import annotations

from pathlib import Path

import pytest

from cm_core.errors import ConfigurationError
from cm_core.types import CandleType
from cm_exporter.settings import ExporterSettings


def test_defaults(monkeypatch):
    monkeypatch.setenv("CANDLE_TYPE", "news")
    for name in ("ASSETS", "BACKFILL_WINDOW_S", "LIVE_ENABLED", "SINK_PATH", "RESOLUTION"):
        monkeypatch.delenv(name, raising=False)

    settings = ExporterSettings.from_env()

    assert settings.candle_type is CandleType.NEWS
    assert settings.resolution == "1m"
    assert settings.assets == ()
    assert settings.backfill_window_s == 300
    assert settings.live_enabled is True
    assert settings.checkpoint_errors_fatal is True
    assert settings.resolved_sink_path == Path("out") / "news_candles.ndjson"


def test_invalid_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("CANDLE_TYPE", "social")
    monkeypatch.setenv("BACKFILL_WINDOW_S", "five minutes")
    monkeypatch.setenv("WS_PING_INTERVAL_S", "not-a-number")
    monkeypatch.setenv("HEARTBEAT_S", "bad")

    settings = ExporterSettings.from_env()

    assert settings.backfill_window_s == 300
    assert settings.ws_ping_interval_s == 20
    assert settings.heartbeat_s == 30.0


def test_lists_and_flags(monkeypatch):
    monkeypatch.setenv("CANDLE_TYPE", "social")
    monkeypatch.setenv("ASSETS", " btc, eth ,,")
    monkeypatch.setenv("LIVE_ENABLED", "0")
    monkeypatch.setenv("CHECKPOINT_ERRORS_FATAL", "false")
    monkeypatch.setenv("SINK_PATH", "/tmp/x.ndjson")

    settings = ExporterSettings.from_env()

    assert settings.assets == ("BTC", "ETH")
    assert settings.live_enabled is False
    assert settings.checkpoint_errors_fatal is False
    assert settings.resolved_sink_path == Path("/tmp/x.ndjson")


@pytest.mark.parametrize(
    "env",
    [
        {"CANDLE_TYPE": "twitter"},
        {"CANDLE_TYPE": "news", "RESOLUTION": "7m"},
        {"CANDLE_TYPE": "news", "BACKFILL_WINDOW_S": "-5"},
    ],
)
def test_configuration_errors(monkeypatch, env):
    monkeypatch.delenv("CANDLE_TYPE", raising=False)
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    with pytest.raises(ConfigurationError):
        ExporterSettings.from_env()


def test_missing_candle_type(monkeypatch):
    monkeypatch.delenv("CANDLE_TYPE", raising=False)
    with pytest.raises(ConfigurationError):
        ExporterSettings.from_env()
