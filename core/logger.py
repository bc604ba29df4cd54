"""JSON lines audit log.

Records are grouped into families, one file per family per UTC day:
- decisions: every per-instrument decision the engine produced
- orders: order placements, stop updates and rejections
- sweeps: orphaned algo order cancellations

Order records use fsync so they survive a crash right after placement.
"""

import json
import os
from datetime import datetime, timezone
from pathlib import Path

from core.config import settings


def get_logs_dir() -> Path:
    return Path(settings.logs_dir)


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


def log_path(family: str, ts: datetime = None) -> Path:
    """Return path for logs/{family}_{date}.jsonl."""
    return get_logs_dir() / f"{family}_{utc_date_str(ts)}.jsonl"


def append_jsonl(path: Path, record: dict, critical: bool = False):
    """
    Append a JSON record as a single line.

    Args:
        path: Target log file path
        record: Dictionary to log as JSON
        critical: If True, fsync after the write (slower but crash-safe)
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError:
        pass

    line = json.dumps(record, separators=(",", ":"), default=str) + "\n"

    if critical:
        try:
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644)
            try:
                os.write(fd, line.encode("utf-8"))
                os.fsync(fd)
            finally:
                os.close(fd)
        except OSError:
            with open(path, "a") as f:
                f.write(line)
    else:
        with open(path, "a") as f:
            f.write(line)


def log_decision(record: dict, ts: datetime = None):
    """Log an engine decision."""
    append_jsonl(log_path("decisions", ts), record)


def log_order(record: dict, ts: datetime = None):
    """Log order placement/response (critical - uses fsync)."""
    append_jsonl(log_path("orders", ts), record, critical=True)


def log_sweep(record: dict, ts: datetime = None):
    """Log orphaned algo order cancellations."""
    append_jsonl(log_path("sweeps", ts), record)
