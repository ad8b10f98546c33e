import logging
from datetime import datetime, timezone
from pathlib import Path


def setup_logging(
    level: str = "INFO",
    candle_type: str = "news",
    base_dir: str | Path = "logs",
) -> Path:
    """
    Configure logging for one exporter process:
      - Console (stdout)
      - Daily log file in logs/exporter/<candle_type>/<candle_type>_YYYY-MM-DD.log (UTC date)

    One process exports one candle type, so the type is part of the file
    name and the log dir.

    Returns:
      Path to the "current" daily log file.
    """

    log_dir = Path(base_dir) / "exporter" / candle_type
    log_dir.mkdir(parents=True, exist_ok=True)
    date_str = datetime.now(timezone.utc).strftime("%Y-%m-%d")
    log_path = log_dir / f"{candle_type}_{date_str}.log"

    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for h in list(root.handlers):
        root.removeHandler(h)

    fmt = logging.Formatter(f"%(asctime)s %(levelname)s [{candle_type}] %(name)s - %(message)s")
    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(fmt)
    sh = logging.StreamHandler()
    sh.setFormatter(fmt)
    root.addHandler(fh)
    root.addHandler(sh)

    # websockets logs every frame and urllib3 every request at DEBUG
    quiet = max(root.level, logging.INFO)
    for name in ("websockets", "urllib3"):
        logging.getLogger(name).setLevel(quiet)
    return log_path
