"""Logging utilities for dataset executions.

Console or JSON output, configured from ``RunnerSettings``, and an
execution-scoped logger that stamps every message with the execution and
dataset it belongs to. In JSON output those two ids are top-level keys so
log aggregators can filter one execution's lines without parsing
``extra``.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from dataset_runner.lib.settings import RunnerSettings, get_settings

__all__ = [
    "CONTEXT_FIELDS",
    "ExecutionLogger",
    "JSONFormatter",
    "configure_logging",
    "get_execution_logger",
    "setup_logging",
]

CONTEXT_FIELDS = ("execution_id", "dataset_id")

_RESERVED_ATTRS = frozenset(logging.LogRecord("", 0, "", 0, "", (), None).__dict__) | {"message", "asctime"}

CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Loggers that are chatty at INFO; they only pass warnings through
QUIET_LOGGERS = ("httpx", "httpcore")


class JSONFormatter(logging.Formatter):
    """One JSON object per log line.

    Example output:
        {"timestamp": "2025-01-15T10:30:00.123Z", "level": "INFO",
         "logger": "dataset_runner.lib.orchestrator",
         "message": "Execution completed with 15 rows in 812ms (2 API calls)",
         "execution_id": "9f2c...", "dataset_id": "ds-products",
         "location": "orchestrator.py:245"}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                entry[name] = value

        entry["location"] = f"{record.filename}:{record.lineno}"

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        extra = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and key not in CONTEXT_FIELDS
        }
        if extra:
            entry["extra"] = extra

        return json.dumps(entry, default=str)


class ExecutionLogger:
    """Logger that carries execution context.

    Example:
        log = get_execution_logger(__name__, execution_id="9f2c", dataset_id="ds-1")
        log.info("Fetched %d records", 250)  # extra={"execution_id": ..., "dataset_id": ...}
    """

    def __init__(self, name: str, **context: Any):
        self._logger = logging.getLogger(name)
        self._context: Dict[str, Any] = dict(context)

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self._context)

    def bind(self, **kwargs: Any) -> "ExecutionLogger":
        """Return a new logger with additional context fields."""
        merged = dict(self._context)
        merged.update(kwargs)
        return ExecutionLogger(self._logger.name, **merged)

    def _log(self, level: int, msg: str, *args: Any, **kwargs: Any) -> None:
        extra = kwargs.pop("extra", {})
        extra.update(self._context)
        self._logger.log(level, msg, *args, extra=extra, **kwargs)

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._log(logging.ERROR, msg, *args, **kwargs)

    def exception(self, msg: str, *args: Any, **kwargs: Any) -> None:
        """Log an exception with traceback."""
        kwargs["exc_info"] = True
        self._log(logging.ERROR, msg, *args, **kwargs)


def get_execution_logger(name: str, **context: Any) -> ExecutionLogger:
    """Get an execution-scoped logger.

    Args:
        name: Logger name (typically module path)
        **context: Context fields (execution_id, dataset_id, ...)
    """
    return ExecutionLogger(name, **context)


def setup_logging(
    level: Union[str, int] = "INFO",
    log_format: str = "console",
    log_file: Optional[str] = None,
) -> None:
    """Install handlers on the root logger, replacing any existing ones.

    Args:
        level: Level name ("DEBUG", "INFO", ...) or number
        log_format: "json" for JSONFormatter, "console" for plain text
        log_file: Optional file that receives the same lines as stdout
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown log level: {level}")

    if log_format == "json":
        formatter: logging.Formatter = JSONFormatter()
    elif log_format == "console":
        formatter = logging.Formatter(CONSOLE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")
    else:
        raise ValueError(f"log_format must be 'json' or 'console', got '{log_format}'")

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root_logger.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def configure_logging(settings: Optional[RunnerSettings] = None) -> None:
    """Apply ``log_level``, ``log_format`` and ``log_file`` from settings.

    With no argument the settings are read from the environment, so
    ``DATASET_RUNNER_LOG_FORMAT=json`` switches a deployment to JSON lines.
    """
    settings = settings or get_settings()
    setup_logging(settings.log_level, settings.log_format, settings.log_file)
