"""Runtime for the sentiment candle exporter: stream, checkpoint, sink, coordinator."""

from .checkpoint import JsonCheckpointStore
from .exporter import SentimentExporter
from .settings import ExporterSettings
from .sink import NdjsonSink, load_latest
from .ws_stream import CandleStream

__all__ = [
    "CandleStream",
    "ExporterSettings",
    "JsonCheckpointStore",
    "NdjsonSink",
    "SentimentExporter",
    "load_latest",
]
