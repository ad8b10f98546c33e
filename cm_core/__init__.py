"""I/O-free ingestion logic shared by the backfill and live paths."""

from .errors import (
    BackfillError,
    CheckpointError,
    ConfigurationError,
    ExporterError,
    PendingBufferOverflow,
    ProviderConnectionError,
    StreamClosedError,
)
from .normalizer import bucket_start, make_key, normalize, parse_candle_type
from .pending_buffer import PendingBuffer
from .ports import CheckpointStore, Sink
from .reconciler import CandleReconciler
from .types import KEY_FIELD, CandleType, HistoricRange, Phase, ReconcileResult, ReconcilerState

__all__ = [
    "BackfillError",
    "CandleReconciler",
    "CandleType",
    "CheckpointError",
    "CheckpointStore",
    "ConfigurationError",
    "ExporterError",
    "HistoricRange",
    "KEY_FIELD",
    "PendingBuffer",
    "PendingBufferOverflow",
    "Phase",
    "ProviderConnectionError",
    "ReconcileResult",
    "ReconcilerState",
    "Sink",
    "StreamClosedError",
    "bucket_start",
    "make_key",
    "normalize",
    "parse_candle_type",
]
