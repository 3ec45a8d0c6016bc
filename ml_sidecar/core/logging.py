from __future__ import annotations

import contextvars
import json
import logging
import os
import queue
import time
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from pathlib import Path
from typing import Any

_LOG_CONTEXT: contextvars.ContextVar[dict[str, Any]] = contextvars.ContextVar(
    "ml_sidecar_log_ctx", default={}
)
_RESERVED_LOG_RECORD_ATTRS = {
    "name",
    "msg",
    "args",
    "levelname",
    "levelno",
    "pathname",
    "filename",
    "module",
    "exc_info",
    "exc_text",
    "stack_info",
    "lineno",
    "funcName",
    "created",
    "msecs",
    "relativeCreated",
    "thread",
    "threadName",
    "processName",
    "process",
    "taskName",
    "message",
}
_LOG_QUEUE: queue.SimpleQueue[logging.LogRecord] = queue.SimpleQueue()
_LOG_LISTENER: QueueListener | None = None
DEFAULT_LOG_DIR = Path.home() / ".ml-sidecar" / "logs"
WORKER_LOGGER = "ml-sidecar.worker"
MAX_MESSAGE_CHARS = 16 * 1024


class ContextFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        context = _LOG_CONTEXT.get({})
        for key, value in context.items():
            setattr(record, key, value)
        return True


class WorkerOutputFilter(logging.Filter):
    """Passes only relayed worker stdout/stderr, or everything but it when ``invert``."""

    def __init__(self, invert: bool = False):
        super().__init__()
        self.invert = invert

    def filter(self, record: logging.LogRecord) -> bool:
        return (record.name == WORKER_LOGGER) != self.invert


class StructuredFormatter(logging.Formatter):
    def _normalize(self, value: Any) -> Any:
        if value is None or isinstance(value, (str, int, float, bool)):
            return value
        if isinstance(value, dict):
            return {str(k): self._normalize(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._normalize(v) for v in value]
        return str(value)

    def format(self, record: logging.LogRecord) -> str:
        timestamp = time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(record.created))
        payload: dict[str, Any] = {
            "timestamp": f"{timestamp}.{int(record.msecs):03d}Z",
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": _truncate(record.getMessage()),
        }
        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_LOG_RECORD_ATTRS and key not in payload and value is not None
        }
        if record.name == WORKER_LOGGER:
            payload["source"] = "worker"
            payload["worker"] = {"pid": extras.pop("pid", None), "stream": extras.pop("stream", None)}
        for key, value in extras.items():
            payload[key] = self._normalize(value)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def _truncate(message: str) -> str:
    if len(message) <= MAX_MESSAGE_CHARS:
        return message
    return f"{message[:MAX_MESSAGE_CHARS]}... [{len(message) - MAX_MESSAGE_CHARS} chars truncated]"


def _resolve_log_dir(explicit: str | Path | None = None) -> Path:
    if explicit:
        return Path(explicit).expanduser()
    raw = os.getenv("ML_SIDECAR_LOG_DIR")
    if raw:
        return Path(raw).expanduser()
    return DEFAULT_LOG_DIR


def _file_handler(path: Path, formatter: logging.Formatter, *filters: logging.Filter) -> RotatingFileHandler:
    handler = RotatingFileHandler(path, maxBytes=10 * 1024 * 1024, backupCount=5, encoding="utf-8")
    handler.setFormatter(formatter)
    for log_filter in filters:
        handler.addFilter(log_filter)
    return handler


def configure_logging(
    level: int = logging.INFO,
    log_dir: str | Path | None = None,
    worker_level: int = logging.INFO,
) -> logging.Logger:
    """
    Route all records through one queue listener.

    Supervisor records go to the console and ``sidecar.log``; relayed worker
    output goes to the console and its own ``worker.log``. ``worker_level``
    caps how much worker chatter is relayed at all.
    """
    global _LOG_LISTENER
    formatter = StructuredFormatter()
    context_filter = ContextFilter()
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(context_filter)
    handlers: list[logging.Handler] = [console_handler]

    target_dir = _resolve_log_dir(log_dir)
    try:
        target_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            _file_handler(target_dir / "sidecar.log", formatter, context_filter, WorkerOutputFilter(invert=True))
        )
        handlers.append(_file_handler(target_dir / "worker.log", formatter, WorkerOutputFilter()))
    except OSError as exc:
        console_handler.handle(
            logging.makeLogRecord(
                {"name": "ml-sidecar", "levelno": logging.WARNING, "levelname": "WARNING",
                 "msg": "logging.file_unavailable", "log_dir": str(target_dir), "error": str(exc)}
            )
        )

    root = logging.getLogger()
    root.handlers = [QueueHandler(_LOG_QUEUE)]
    root.setLevel(level)
    logging.getLogger(WORKER_LOGGER).setLevel(worker_level)
    if _LOG_LISTENER:
        _LOG_LISTENER.stop()
    listener = QueueListener(_LOG_QUEUE, *handlers, respect_handler_level=True)
    listener.start()
    _LOG_LISTENER = listener
    return logging.getLogger("ml-sidecar")


def push_log_context(**kwargs: Any) -> contextvars.Token:
    context = dict(_LOG_CONTEXT.get({}))
    for key, value in kwargs.items():
        if value is not None:
            context[key] = value
    return _LOG_CONTEXT.set(context)


def pop_log_context(token: contextvars.Token) -> None:
    _LOG_CONTEXT.reset(token)


def shutdown_logging() -> None:
    global _LOG_LISTENER
    if _LOG_LISTENER:
        _LOG_LISTENER.stop()
        _LOG_LISTENER = None
