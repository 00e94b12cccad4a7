from __future__ import annotations

import contextvars
import json
import logging
import os
import queue
import time
from collections import deque
from contextlib import contextmanager
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from typing import Any, Iterator

# Fields attached to every record logged while a launch is in progress (worker label, port).
_WORKER_FIELDS: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "selfstart_worker_fields", default={}
)
_RECENT: deque[dict[str, Any]] = deque(maxlen=500)
_STANDARD_ATTRS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}
_QUEUE: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
_listener: QueueListener | None = None
_log_dir: Path | None = None
DEFAULT_LOG_DIR = Path.home() / ".selfstart" / "logs"
LOG_FILE_NAME = "selfstart.log"


def _utc_stamp(created: float) -> str:
    millis = int((created % 1) * 1000)
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(created)) + f".{millis:03d}Z"


class ContextFilter(logging.Filter):
    """Copies the current worker fields onto a record unless it sets them itself."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _WORKER_FIELDS.get().items():
            if not hasattr(record, key):
                setattr(record, key, value)
        return True


class StructuredFormatter(logging.Formatter):
    def _plain(self, value: Any) -> Any:
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        if isinstance(value, dict):
            return {str(k): self._plain(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._plain(v) for v in value]
        return str(value)

    def as_dict(self, record: logging.LogRecord) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "timestamp": _utc_stamp(record.created),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, self._plain(value))
            for key, value in vars(record).items()
            if key not in _STANDARD_ATTRS and key not in payload and value is not None
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return payload

    def format(self, record: logging.LogRecord) -> str:
        return json.dumps(self.as_dict(record), ensure_ascii=False)


class InMemoryLogHandler(logging.Handler):
    """Keeps the latest records so an error report can show what led up to it."""

    def __init__(self) -> None:
        super().__init__()
        self._structured = StructuredFormatter()

    def emit(self, record: logging.LogRecord) -> None:
        try:
            _RECENT.append(self._structured.as_dict(record))
        except Exception:
            self.handleError(record)


def _resolve_log_dir(explicit: str | Path | None = None) -> Path:
    raw = explicit or os.getenv("SELFSTART_LOG_DIR")
    return Path(raw).expanduser() if raw else DEFAULT_LOG_DIR


def configure_logging(
    level: int = logging.INFO,
    log_dir: str | Path | None = None,
    *,
    to_file: bool = True,
) -> logging.Logger:
    """Routes all logging through one queue to stderr, the log file and the recent-records buffer.

    Calling it again replaces the previous setup.
    """
    global _listener, _log_dir
    formatter = StructuredFormatter()
    targets: list[logging.Handler] = [logging.StreamHandler()]
    if to_file:
        _log_dir = _resolve_log_dir(log_dir)
        _log_dir.mkdir(parents=True, exist_ok=True)
        targets.append(
            RotatingFileHandler(_log_dir / LOG_FILE_NAME, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")
        )
    for handler in targets:
        handler.setFormatter(formatter)
    targets.append(InMemoryLogHandler())

    queue_handler = QueueHandler(_QUEUE)
    # Worker fields live in contextvars, so they are read before the queue hop.
    queue_handler.addFilter(ContextFilter())
    root = logging.getLogger()
    root.handlers = [queue_handler]
    root.setLevel(level)
    shutdown_logging()
    _listener = QueueListener(_QUEUE, *targets, respect_handler_level=True)
    _listener.start()
    return logging.getLogger("selfstart")


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Adds ``fields`` (None values skipped) to every record logged inside the block.

    Tasks created inside the block keep the fields for their whole life.
    """
    merged = {**_WORKER_FIELDS.get(), **{k: v for k, v in fields.items() if v is not None}}
    token = _WORKER_FIELDS.set(merged)
    try:
        yield
    finally:
        _WORKER_FIELDS.reset(token)


def get_recent_logs(limit: int = 200, worker: str | None = None) -> list[dict[str, Any]]:
    if limit <= 0:
        return []
    records = [item for item in _RECENT if worker is None or item.get("worker") == worker]
    return records[-limit:]


def shutdown_logging() -> None:
    global _listener
    if _listener is not None:
        _listener.stop()
        _listener = None


def get_log_dir() -> Path:
    return _log_dir or DEFAULT_LOG_DIR


def write_diagnostic_report(kind: str, payload: dict[str, Any], *, worker: str | None = None) -> Path:
    """Writes ``payload`` under ``<log dir>/reports``.

    With ``worker`` set, the report also carries that worker's recent log records.
    """
    if worker is not None:
        payload = {**payload, "recent_logs": get_recent_logs(worker=worker)}
    reports_dir = get_log_dir() / "reports"
    reports_dir.mkdir(parents=True, exist_ok=True)
    stamp = time.strftime("%Y%m%dT%H%M%S", time.gmtime())
    path = reports_dir / f"{kind}-{stamp}.json"
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False), encoding="utf-8")
    return path
