"""ARMADA structured logging with JSON output and worker context."""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import MutableMapping
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

LOG_FILE_NAME = "armada.log"

# Process-wide fields merged into every JSON record
_log_context: dict[str, Any] = {}

# Record attributes copied into JSON output when a call site passes them via ``extra``
_EXTRA_FIELDS = ("feature_id", "worker_id", "task_id", "batch", "event")


def _record_field(record: logging.LogRecord, key: str) -> Any:
    """Per-record value first, then the process context."""
    return getattr(record, key, _log_context.get(key))


class JsonFormatter(logging.Formatter):
    """One JSON object per line, for the rotating file handler."""

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, UTC)
        entry: dict[str, Any] = {
            "ts": created.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
            **_log_context,
        }
        entry.update({key: getattr(record, key) for key in _EXTRA_FIELDS if hasattr(record, key)})

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored single-line output: ``HH:MM:SS LEVEL [worker:feature] message``."""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def context_label(record: logging.LogRecord) -> str:
        parts = [_record_field(record, key) for key in ("worker_id", "feature_id")]
        label = ":".join(str(part) for part in parts if part is not None)
        return f"[{label}] " if label else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        line = f"{color}{clock} {record.levelname:8s}{self.RESET} {self.context_label(record)}{record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def set_worker_context(
    worker_id: str | None = None,
    run_id: str | None = None,
    **kwargs: Any,
) -> None:
    """Replace the context merged into subsequent JSON records.

    Args:
        worker_id: Worker the process is acting for
        run_id: Distribution run identifier
        **kwargs: Additional context fields
    """
    global _log_context
    fields = {"worker_id": worker_id, "run_id": run_id}
    _log_context = {key: value for key, value in fields.items() if value is not None}
    _log_context.update(kwargs)


def clear_worker_context() -> None:
    global _log_context
    _log_context = {}


def get_logger(name: str) -> logging.Logger:
    """Return ``armada.<name>``; names already in the namespace are kept."""
    return logging.getLogger(name if name.startswith("armada.") else f"armada.{name}")


def _level(name: str) -> int:
    normalized = name.upper()
    if normalized == "WARN":
        normalized = "WARNING"
    return logging.getLevelNamesMapping().get(normalized, logging.INFO)


def setup_logging(
    level: str = "info",
    log_dir: str | Path | None = None,
    json_output: bool = True,
    console_output: bool = True,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 5,
) -> None:
    """Configure the ``armada`` logger tree.

    Calling this again replaces the previous handlers.

    Args:
        level: Log level (debug, info, warn, error)
        log_dir: Directory for the rotating JSON log file
        json_output: Write JSON records to ``log_dir``
        console_output: Write colored records to stderr
        max_bytes: Size at which the JSON log rotates
        backup_count: Rotated files to keep
    """
    log_level = _level(level)
    handlers: list[logging.Handler] = []

    if console_output:
        console = logging.StreamHandler(sys.stderr)
        console.setFormatter(ConsoleFormatter())
        handlers.append(console)

    if log_dir and json_output:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        json_file = RotatingFileHandler(directory / LOG_FILE_NAME, maxBytes=max_bytes, backupCount=backup_count)
        json_file.setFormatter(JsonFormatter())
        handlers.append(json_file)

    root = logging.getLogger("armada")
    for old in root.handlers:
        old.close()
    root.handlers = []
    root.setLevel(log_level)
    for handler in handlers:
        handler.setLevel(log_level)
        root.addHandler(handler)
    root.propagate = False


class LoggerAdapter(logging.LoggerAdapter[logging.Logger]):
    """Adapter that stamps feature and worker ids onto each record."""

    def process(self, msg: str, kwargs: MutableMapping[str, Any]) -> tuple[str, MutableMapping[str, Any]]:
        kwargs["extra"] = {**kwargs.get("extra", {}), **self.extra}
        return msg, kwargs


def get_feature_logger(feature_id: str, worker_id: str | None = None) -> LoggerAdapter:
    """Logger for messages about one feature, optionally on a known worker."""
    extra: dict[str, Any] = {"feature_id": feature_id}
    if worker_id is not None:
        extra["worker_id"] = worker_id
    return LoggerAdapter(get_logger("feature"), extra)


# Console logging until a command configures something else
setup_logging(console_output=True, json_output=False)
