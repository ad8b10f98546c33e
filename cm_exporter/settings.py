from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from cm_core.errors import ConfigurationError
from cm_core.normalizer import parse_candle_type, resolution_seconds
from cm_core.types import CandleType


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y")


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def _env_list(name: str) -> Tuple[str, ...]:
    raw = os.getenv(name) or ""
    return tuple(part.strip().upper() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class ExporterSettings:
    candle_type: CandleType
    resolution: str = "1m"
    assets: Tuple[str, ...] = ()
    use_all_assets_query: bool = False

    provider_rest_url: str = "http://localhost:8080"
    provider_ws_url: str = "ws://localhost:8080/v1/stream"
    provider_token: Optional[str] = None
    provider_timeout_s: float = 30.0

    ws_open_timeout_s: float = 60.0
    ws_ping_interval_s: int = 20
    ws_ping_timeout_s: int = 60
    ws_recv_poll_timeout_s: float = 5.0
    ws_max_queue: int = 256
    insecure_tls: bool = False

    backfill_window_s: int = 300
    backfill_safety_margin_s: int = 120
    pending_buffer_max: int = 200_000
    pending_buffer_warn: int = 5000

    live_enabled: bool = True
    checkpoint_dir: Path = Path("state")
    checkpoint_errors_fatal: bool = True

    sink_path: Optional[Path] = None
    sink_rotate_s: float = 3600.0
    sink_retention_s: float = 0.0

    heartbeat_s: float = 30.0
    log_level: str = "INFO"
    log_dir: Path = Path("logs")

    def __post_init__(self) -> None:
        resolution_seconds(self.resolution)
        if self.backfill_window_s <= 0:
            raise ConfigurationError(f"BACKFILL_WINDOW_S must be positive (got {self.backfill_window_s})")
        if self.backfill_safety_margin_s < 0:
            raise ConfigurationError(
                f"BACKFILL_SAFETY_MARGIN_S must not be negative (got {self.backfill_safety_margin_s})"
            )

    @property
    def resolved_sink_path(self) -> Path:
        if self.sink_path is not None:
            return self.sink_path
        return Path("out") / f"{self.candle_type.value}_candles.ndjson"

    @classmethod
    def from_env(cls) -> "ExporterSettings":
        """Build settings from the environment, read at call time.

        Unparsable numbers fall back to their defaults; an unknown candle type
        or resolution raises ConfigurationError.
        """
        candle_type = parse_candle_type(os.getenv("CANDLE_TYPE"))
        sink_path = _env_str("SINK_PATH")
        return cls(
            candle_type=candle_type,
            resolution=_env_str("RESOLUTION", "1m"),
            assets=_env_list("ASSETS"),
            use_all_assets_query=_env_bool("USE_ALL_ASSETS_QUERY", False),
            provider_rest_url=_env_str("PROVIDER_REST_URL", cls.provider_rest_url),
            provider_ws_url=_env_str("PROVIDER_WS_URL", cls.provider_ws_url),
            provider_token=_env_str("PROVIDER_TOKEN"),
            provider_timeout_s=_env_float("PROVIDER_TIMEOUT_S", 30.0),
            ws_open_timeout_s=_env_float("WS_OPEN_TIMEOUT_S", 60.0),
            ws_ping_interval_s=_env_int("WS_PING_INTERVAL_S", 20),
            ws_ping_timeout_s=_env_int("WS_PING_TIMEOUT_S", 60),
            ws_recv_poll_timeout_s=_env_float("WS_RECV_POLL_TIMEOUT_S", 5.0),
            ws_max_queue=_env_int("WS_MAX_QUEUE", 256),
            insecure_tls=_env_bool("INSECURE_TLS", False),
            backfill_window_s=_env_int("BACKFILL_WINDOW_S", 300),
            backfill_safety_margin_s=_env_int("BACKFILL_SAFETY_MARGIN_S", 120),
            pending_buffer_max=_env_int("PENDING_BUFFER_MAX", 200_000),
            pending_buffer_warn=_env_int("PENDING_BUFFER_WARN", 5000),
            live_enabled=_env_bool("LIVE_ENABLED", True),
            checkpoint_dir=Path(_env_str("CHECKPOINT_DIR", "state")),
            checkpoint_errors_fatal=_env_bool("CHECKPOINT_ERRORS_FATAL", True),
            sink_path=Path(sink_path) if sink_path else None,
            sink_rotate_s=_env_float("SINK_ROTATE_S", 3600.0),
            sink_retention_s=_env_float("SINK_RETENTION_S", 0.0),
            heartbeat_s=_env_float("HEARTBEAT_S", 30.0),
            log_level=_env_str("LOG_LEVEL", "INFO"),
            log_dir=Path(_env_str("LOG_DIR", "logs")),
        )
