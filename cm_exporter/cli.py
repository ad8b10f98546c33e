from __future__ import annotations

import asyncio
import logging
import sys
from typing import Optional

from cm_core.errors import ConfigurationError, ExporterError
from cm_exporter.checkpoint import JsonCheckpointStore
from cm_exporter.exporter import SentimentExporter
from cm_exporter.logging_config import setup_logging
from cm_exporter.settings import ExporterSettings
from cm_exporter.sink import NdjsonSink
from cm_exporter.ws_stream import CandleStream
from cm_history.client import ProviderRestClient

log = logging.getLogger("exporter.main")


def _on_stream_status(typ: str, details: dict) -> None:
    if typ in ("ws_close", "ws_error", "ws_ping_timeout", "ws_connect_failed", "ws_server_error"):
        log.warning("Stream status %s %s", typ, details)
    else:
        log.info("Stream status %s %s", typ, details)


def build_exporter(settings: ExporterSettings, sink: NdjsonSink) -> SentimentExporter:
    provider = ProviderRestClient(
        settings.provider_rest_url,
        token=settings.provider_token,
        timeout_s=settings.provider_timeout_s,
        all_assets=settings.use_all_assets_query,
    )
    stream: Optional[CandleStream] = None
    if settings.live_enabled:
        stream = CandleStream(
            settings.provider_ws_url,
            settings.candle_type,
            settings.resolution,
            assets=settings.assets,
            token=settings.provider_token,
            on_status=_on_stream_status,
            insecure_tls=settings.insecure_tls,
            open_timeout_s=settings.ws_open_timeout_s,
            ping_interval_s=settings.ws_ping_interval_s,
            ping_timeout_s=settings.ws_ping_timeout_s,
            recv_poll_timeout_s=settings.ws_recv_poll_timeout_s,
            max_queue=settings.ws_max_queue,
        )
    checkpoints = JsonCheckpointStore(settings.checkpoint_dir, settings.candle_type)
    return SentimentExporter(settings, provider, sink, checkpoints, stream=stream)


def main() -> int:
    """Run the exporter; returns 0 after a clean historical-only run, 1 on failure."""
    try:
        settings = ExporterSettings.from_env()
    except ConfigurationError as exc:
        logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s - %(message)s")
        log.error("Invalid configuration: %s", exc)
        return 1

    log_path = setup_logging(settings.log_level, candle_type=settings.candle_type.value, base_dir=settings.log_dir)
    log.info("Exporter logging to %s", log_path)
    log.info(
        "Exporter config type=%s resolution=%s assets=%s all_assets_query=%s live=%s window_s=%s margin_s=%s",
        settings.candle_type.value,
        settings.resolution,
        ",".join(settings.assets) or "<provider>",
        settings.use_all_assets_query,
        settings.live_enabled,
        settings.backfill_window_s,
        settings.backfill_safety_margin_s,
    )
    log.info(
        "Checkpoint dir=%s errors_fatal=%s sink=%s",
        settings.checkpoint_dir,
        settings.checkpoint_errors_fatal,
        settings.resolved_sink_path,
    )
    if settings.live_enabled:
        # No reconnect policy: a dropped stream ends the process and the
        # supervisor restart resumes from the checkpoint.
        log.info("Live stream url=%s (no automatic reconnect)", settings.provider_ws_url)

    sink: Optional[NdjsonSink] = None
    try:
        sink = NdjsonSink(
            settings.resolved_sink_path,
            rotate_interval_s=settings.sink_rotate_s,
            retention_s=settings.sink_retention_s,
        )
        exporter = build_exporter(settings, sink)
        asyncio.run(exporter.run())
    except ExporterError:
        log.exception("Fatal exporter error")
        return 1
    except KeyboardInterrupt:
        log.warning("Interrupted")
        return 1
    except Exception:
        log.exception("Unexpected exporter failure")
        return 1
    finally:
        if sink is not None:
            sink.close()

    log.info("Exporter finished cleanly records=%s", sink.records_written)
    return 0


if __name__ == "__main__":
    sys.exit(main())
