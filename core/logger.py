"""JSON lines journal for signals, orders, stops and position events.

Records are grouped into families so one day produces a handful of files:
- strategy: signals, entries
- trades: orders, stops, positions

Critical records (orders, stops, positions) are fsync'd so they survive a
crash right after the venue call. A failed write is logged and dropped; the
journal never interrupts trading.
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from core.logging_utils import get_logger

logger = get_logger(__name__)

LAYER_FAMILY_MAP = {
    "signals": "strategy",
    "entries": "strategy",
    "orders": "trades",
    "stops": "trades",
    "positions": "trades",
}


def get_logs_dir() -> Path:
    """Mode-scoped journal directory (``logs/<mode>/``)."""
    base = Path(os.getenv("LOGS_DIR", "logs"))
    mode = (os.getenv("TRADING_MODE") or "live").lower()
    return base / mode


def utc_date_str(ts: datetime = None) -> str:
    """Return YYYY-MM-DD in UTC."""
    if ts is None:
        ts = datetime.now(timezone.utc)
    elif ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.strftime("%Y-%m-%d")


def utc_iso_str(ts: datetime = None) -> str:
    """Return ISO 8601 timestamp with Z suffix."""
    if ts is None:
        ts = datetime.now(timezone.utc)
    elif ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"


def log_path(layer: str, ts: datetime = None) -> Path:
    """Return path for logs/<mode>/{family}_{date}.jsonl."""
    family = LAYER_FAMILY_MAP.get(layer, layer)
    return get_logs_dir() / f"{family}_{utc_date_str(ts)}.jsonl"


def append_jsonl(path: Path, record: dict, critical: bool = False):
    """
    Append a JSON record as a single line.

    Args:
        path: Target log file path
        record: Dictionary to log as JSON
        critical: If True, fsync after the write (slower but crash-safe)
    """
    line = json.dumps(record, separators=(",", ":"), default=str) + "\n"
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        if critical:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
            try:
                os.write(fd, line.encode("utf-8"))
                os.fsync(fd)
            finally:
                os.close(fd)
        else:
            with open(path, "a") as f:
                f.write(line)
    except OSError as e:
        logger.warning("[JOURNAL] Failed to write %s: %s", path.name, e)


def _stamp(layer: str, record: dict, ts: datetime = None) -> dict:
    return {"ts": utc_iso_str(ts), "layer": layer, **record}


def log_signal(record: dict, ts: datetime = None):
    """Log a raised, replaced, expired or cleared volume signal."""
    append_jsonl(log_path("signals", ts), _stamp("signals", record, ts))


def log_entry(record: dict, ts: datetime = None):
    """Log an entry decision or opener outcome (pass or fail)."""
    append_jsonl(log_path("entries", ts), _stamp("entries", record, ts))


def log_order(record: dict, ts: datetime = None):
    """Log order placement/response (critical - uses fsync)."""
    append_jsonl(log_path("orders", ts), _stamp("orders", record, ts), critical=True)


def log_stop(record: dict, ts: datetime = None):
    """Log TP/SL placement or trailing move (critical - uses fsync)."""
    append_jsonl(log_path("stops", ts), _stamp("stops", record, ts), critical=True)


def log_position(record: dict, ts: datetime = None):
    """Log position opened/filled/adopted/closed (critical - uses fsync)."""
    append_jsonl(log_path("positions", ts), _stamp("positions", record, ts), critical=True)
