"""
applyforge: structured run logging

Purpose
- Write one JSON object per line to ``<log_dir>/<run_id>/applyforge.jsonl``.
- Route ``structlog`` events through the stdlib logger tree so the engine's
  event loggers and plain ``logging`` calls share one sink.

Functional requirements
- Emission never blocks an apply run: records pass through a bounded queue and
  are counted, not waited on, when it is full.
- Secret-looking keys and inline credentials are masked before writing.
- Correlation fields (run, step, trace, span, bundle root) are bound with
  ``structlog.contextvars`` and copied onto every record on the emitting thread.
"""

from __future__ import annotations

import atexit
import json
import logging
import logging.handlers
import math
import queue
import re
import sys
import threading
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Final

import structlog

JSONScalar = str | int | float | bool | None
JSONValue = JSONScalar | list["JSONValue"] | dict[str, "JSONValue"]
LogRedactor = Callable[[JSONValue], JSONValue]

REDACTED: Final[str] = "***REDACTED***"
CORRELATION_KEYS: Final[tuple[str, ...]] = (
    "run_id",
    "step_name",
    "trace_id",
    "span_id",
    "bundle_root",
)

_DEFAULT_LOGGER_NAME: Final[str] = "applyforge"
_DEFAULT_LOG_FILENAME: Final[str] = "applyforge.jsonl"

_SECRET_KEY_FRAGMENTS: Final[tuple[str, ...]] = (
    "secret",
    "token",
    "password",
    "passphrase",
    "api_key",
    "apikey",
    "authorization",
    "credential",
    "cookie",
    "private_key",
)
_INLINE_SECRET: Final[re.Pattern[str]] = re.compile(
    r"(?i)\b(api[_-]?key|token|password|secret|authorization)\b\s*([:=])\s*([^\s,;]+)"
)
_BEARER_TOKEN: Final[re.Pattern[str]] = re.compile(r"(?i)\bbearer\s+[A-Za-z0-9._~+/-]+=*")

# Attributes every LogRecord carries, plus the ones QueueHandler.prepare and
# the correlation snapshot add; anything else arrived through ``extra``.
_RECORD_ATTRIBUTES: Final[frozenset[str]] = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime", "correlation"}


@dataclass(frozen=True, slots=True)
class LoggingConfig:
    """Settings for one run's queue-backed JSON-lines logging."""

    run_id: str
    base_log_dir: Path | str = Path("logs")
    logger_name: str = _DEFAULT_LOGGER_NAME
    level: int | str = "INFO"
    queue_size: int = 4096
    log_filename: str = _DEFAULT_LOG_FILENAME
    log_to_stdout: bool = False
    rotating_file: bool = False
    max_bytes: int = 10_000_000
    backup_count: int = 5
    redactor: LogRedactor | None = None


class _RunQueueHandler(logging.handlers.QueueHandler):
    def __init__(self, log_queue: queue.Queue[logging.LogRecord]) -> None:
        super().__init__(log_queue)
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    def prepare(self, record: logging.LogRecord) -> logging.LogRecord:
        # The listener thread cannot see this thread's context variables.
        context = get_correlation_context()
        if context:
            record.correlation = context
        return super().prepare(record)

    def enqueue(self, record: logging.LogRecord) -> None:
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            with self._dropped_lock:
                self._dropped += 1


class JsonLineFormatter(logging.Formatter):
    """Render a record as a single sorted-key JSON object.

    Top-level keys: ``timestamp``, ``level``, ``logger``, ``message``, the
    correlation keys, then ``fields`` (everything passed through ``extra`` or
    as ``structlog`` event keys), ``exception`` and ``stack`` when present.
    """

    def __init__(self, *, run_id: str, redactor: LogRedactor) -> None:
        super().__init__()
        self._run_id = run_id
        self._redactor = redactor

    def format(self, record: logging.LogRecord) -> str:
        event: dict[str, JSONValue] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC)
            .isoformat(timespec="milliseconds")
            .replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": self._masked_text(record.getMessage()),
        }
        event.update(self._correlation(record))

        extras = {
            key: _jsonable(value)
            for key, value in vars(record).items()
            if key not in _RECORD_ATTRIBUTES
            and key not in CORRELATION_KEYS
            and not key.startswith("_")
        }
        if extras:
            event["fields"] = self._redactor(extras)
        if record.exc_info:
            event["exception"] = self._masked_text(self.formatException(record.exc_info))
        if record.stack_info:
            event["stack"] = self._masked_text(str(record.stack_info))
        return json.dumps(event, sort_keys=True, separators=(",", ":"), ensure_ascii=False)

    def _correlation(self, record: logging.LogRecord) -> dict[str, str]:
        merged = {"run_id": self._run_id}
        snapshot = getattr(record, "correlation", None)
        sources: list[Mapping[str, object]] = [vars(record)]
        if isinstance(snapshot, Mapping):
            sources.append(snapshot)
        for source in sources:
            for key in CORRELATION_KEYS:
                value = source.get(key)
                if isinstance(value, str) and value.strip():
                    merged[key] = value.strip()
        return merged

    def _masked_text(self, text: str) -> str:
        masked = self._redactor(text)
        if isinstance(masked, str):
            return masked
        return json.dumps(masked, sort_keys=True, ensure_ascii=False)


class StructuredLoggingHandle:
    """The installed queue, listener, and sinks for one run's log file."""

    def __init__(
        self,
        *,
        logger: logging.Logger,
        run_id: str,
        log_path: Path,
        log_queue: queue.Queue[logging.LogRecord],
        queue_handler: _RunQueueHandler,
        sinks: tuple[logging.Handler, ...],
        listener: logging.handlers.QueueListener,
    ) -> None:
        self.logger = logger
        self.run_id = run_id
        self.log_path = log_path
        self._queue = log_queue
        self._queue_handler = queue_handler
        self._sinks = sinks
        self._listener = listener
        self._lock = threading.Lock()
        self._closed = False

    @property
    def run_log_dir(self) -> Path:
        return self.log_path.parent

    @property
    def dropped_records(self) -> int:
        return self._queue_handler.dropped

    @property
    def is_shutdown(self) -> bool:
        return self._closed

    def flush(self, *, timeout_seconds: float = 2.0) -> None:
        deadline = time.monotonic() + max(timeout_seconds, 0.0)
        while self._queue.unfinished_tasks and time.monotonic() < deadline:
            time.sleep(0.01)
        for sink in self._sinks:
            sink.flush()

    def shutdown(self, *, timeout_seconds: float = 2.0) -> None:
        """Drain the queue, stop the listener, and close every sink; idempotent."""

        with self._lock:
            if self._closed:
                return
            self.flush(timeout_seconds=timeout_seconds)
            self._listener.stop()
            self.logger.removeHandler(self._queue_handler)
            self._queue_handler.close()
            for sink in self._sinks:
                sink.close()
            self._closed = True


_active_lock = threading.Lock()
_active: StructuredLoggingHandle | None = None
_atexit_installed = False


def setup_logging(
    observability_config: Mapping[str, object] | None = None,
    *,
    run_id: str,
    log_dir: Path | str | None = None,
    logger_name: str = _DEFAULT_LOGGER_NAME,
) -> StructuredLoggingHandle:
    """Install run logging from the ``[observability]`` config table.

    Also routes ``structlog`` through the stdlib tree, so every
    ``structlog.get_logger("applyforge...")`` event lands in the same file.
    """

    cfg = dict(observability_config or {})
    level = cfg.get("log_level", "INFO")
    base_log_dir = log_dir if log_dir is not None else cfg.get("log_dir", "logs")
    handle = setup_structured_logging(
        LoggingConfig(
            run_id=run_id,
            base_log_dir=base_log_dir if isinstance(base_log_dir, (str, Path)) else "logs",
            logger_name=logger_name,
            level=level if isinstance(level, (int, str)) else "INFO",
            log_to_stdout=bool(cfg.get("log_to_stdout", False)),
            redactor=None if cfg.get("redact_secrets", True) else _unredacted,
        )
    )
    configure_structlog()
    return handle


def configure_structlog() -> None:
    """Send ``structlog`` events to stdlib loggers; event keys become record extras."""

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.render_to_log_kwargs,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
    )


def setup_structured_logging(config: LoggingConfig) -> StructuredLoggingHandle:
    """Install queue-backed JSON-lines logging for one run, replacing any active setup."""

    shutdown_logging()

    run_id = _require_text(config.run_id, "run_id")
    logger_name = _require_text(config.logger_name, "logger_name")
    filename = _require_text(config.log_filename, "log_filename")
    if Path(filename).name != filename:
        raise ValueError("log_filename must not include path separators")
    if isinstance(config.queue_size, bool) or not isinstance(config.queue_size, int):
        raise ValueError("queue_size must be a positive integer")
    if config.queue_size <= 0:
        raise ValueError("queue_size must be a positive integer")
    level = _resolve_level(config.level)

    log_path = Path(config.base_log_dir) / run_id / filename
    log_path.parent.mkdir(parents=True, exist_ok=True)

    formatter = JsonLineFormatter(
        run_id=run_id,
        redactor=config.redactor if config.redactor is not None else default_log_redactor,
    )
    sinks: list[logging.Handler] = [_file_sink(config, log_path)]
    if config.log_to_stdout:
        sinks.append(logging.StreamHandler(sys.stdout))
    for sink in sinks:
        sink.setLevel(level)
        sink.setFormatter(formatter)

    logger = logging.getLogger(logger_name)
    for stale in list(logger.handlers):
        logger.removeHandler(stale)
        stale.close()
    logger.setLevel(level)
    logger.propagate = False

    log_queue: queue.Queue[logging.LogRecord] = queue.Queue(maxsize=config.queue_size)
    queue_handler = _RunQueueHandler(log_queue)
    queue_handler.setLevel(level)
    listener = logging.handlers.QueueListener(log_queue, *sinks, respect_handler_level=True)
    listener.start()
    logger.addHandler(queue_handler)

    handle = StructuredLoggingHandle(
        logger=logger,
        run_id=run_id,
        log_path=log_path,
        log_queue=log_queue,
        queue_handler=queue_handler,
        sinks=tuple(sinks),
        listener=listener,
    )
    _install_active(handle)
    return handle


def shutdown_logging(
    handle: StructuredLoggingHandle | None = None,
    *,
    timeout_seconds: float = 2.0,
) -> None:
    """Shut down ``handle`` (default: the active one) and forget it if it was active."""

    global _active
    target = handle if handle is not None else get_active_logging_handle()
    if target is None:
        return
    target.shutdown(timeout_seconds=timeout_seconds)
    with _active_lock:
        if _active is target:
            _active = None


def get_active_logging_handle() -> StructuredLoggingHandle | None:
    with _active_lock:
        return _active


def get_correlation_context() -> dict[str, str]:
    """Correlation fields bound in the current context."""

    bound = structlog.contextvars.get_contextvars()
    return {
        key: value
        for key, value in bound.items()
        if key in CORRELATION_KEYS and isinstance(value, str)
    }


@contextmanager
def correlation_scope(**fields: str | None) -> Iterator[None]:
    """Bind correlation fields for the block; a ``None`` value unbinds that field.

    The previous bindings are restored on exit, so scopes nest.
    """

    bind: dict[str, str] = {}
    unbind: list[str] = []
    for key, value in fields.items():
        if key not in CORRELATION_KEYS:
            raise ValueError(f"unknown correlation key {key!r}")
        if value is None:
            unbind.append(key)
        else:
            bind[key] = _require_text(value, "correlation value")

    saved = structlog.contextvars.get_contextvars()
    structlog.contextvars.unbind_contextvars(*unbind)
    structlog.contextvars.bind_contextvars(**bind)
    try:
        yield
    finally:
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(**saved)


def default_log_redactor(value: JSONValue) -> JSONValue:
    """Mask values under secret-looking keys and inline ``key=value`` or bearer credentials."""

    if isinstance(value, str):
        masked = _INLINE_SECRET.sub(lambda m: f"{m.group(1)}{m.group(2)}{REDACTED}", value)
        return _BEARER_TOKEN.sub(f"Bearer {REDACTED}", masked)
    if isinstance(value, list):
        return [default_log_redactor(item) for item in value]
    if isinstance(value, dict):
        return {
            key: REDACTED if _is_secret_key(key) else default_log_redactor(item)
            for key, item in value.items()
        }
    return value


def _is_secret_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SECRET_KEY_FRAGMENTS)


def _unredacted(value: JSONValue) -> JSONValue:
    return value


def _jsonable(value: object) -> JSONValue:
    if value is None or isinstance(value, (bool, int, str)):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, Mapping):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (set, frozenset)):
        return sorted((_jsonable(item) for item in value), key=repr)
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    return str(value)


def _file_sink(config: LoggingConfig, log_path: Path) -> logging.Handler:
    if config.rotating_file:
        return logging.handlers.RotatingFileHandler(
            log_path,
            maxBytes=max(1, int(config.max_bytes)),
            backupCount=max(1, int(config.backup_count)),
            encoding="utf-8",
        )
    return logging.FileHandler(log_path, encoding="utf-8")


def _install_active(handle: StructuredLoggingHandle) -> None:
    global _active, _atexit_installed
    with _active_lock:
        _active = handle
        if not _atexit_installed:
            atexit.register(shutdown_logging)
            _atexit_installed = True


def _require_text(value: object, label: str) -> str:
    if not isinstance(value, str):
        raise ValueError(f"{label} must be a string, got {type(value).__name__}")
    stripped = value.strip()
    if not stripped:
        raise ValueError(f"{label} must not be empty")
    return stripped


def _resolve_level(level: int | str) -> int:
    if isinstance(level, int):
        return level
    resolved = logging.getLevelNamesMapping().get(str(level).strip().upper())
    if resolved is None:
        raise ValueError(f"unsupported logging level {level!r}")
    return resolved


__all__ = [
    "CORRELATION_KEYS",
    "JSONScalar",
    "JSONValue",
    "JsonLineFormatter",
    "LogRedactor",
    "LoggingConfig",
    "REDACTED",
    "StructuredLoggingHandle",
    "configure_structlog",
    "correlation_scope",
    "default_log_redactor",
    "get_active_logging_handle",
    "get_correlation_context",
    "setup_logging",
    "setup_structured_logging",
    "shutdown_logging",
]
