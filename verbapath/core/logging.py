"""Logging configuration for the pathway engine.

Context fields (execution id, request id, student id) live in a
``ContextVar`` so that concurrent runs and requests served by one process
each stamp their own fields onto the records they emit.
"""

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - [%(module)s:%(funcName)s:%(lineno)d] - %(message)s"

# Third-party loggers that are too chatty at INFO
QUIET_LOGGERS = ("uvicorn.access", "sqlalchemy.engine", "sqlalchemy.pool", "httpx", "httpcore", "asyncio")

_log_context: ContextVar[Dict[str, Any]] = ContextVar("verbapath_log_context", default={})


class StructuredFormatter(logging.Formatter):
    """Formatter emitting one JSON object per log record."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": traceback.format_exception(*record.exc_info),
            }

        entry.update(getattr(record, "extra_fields", {}))
        return json.dumps(entry, default=str)


class ExecutionContextFilter(logging.Filter):
    """Copies the current task's logging context onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        fields = dict(_log_context.get())
        fields.update(getattr(record, "extra_fields", {}))
        record.extra_fields = fields
        return True


def _build_handler(handler: logging.Handler, formatter: logging.Formatter) -> logging.Handler:
    handler.setFormatter(formatter)
    handler.addFilter(ExecutionContextFilter())
    return handler


def setup_logging(
    level: str = "INFO",
    log_file: Optional[str] = None,
    log_format: Optional[str] = None,
    structured: bool = False,
    max_size: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 5
) -> logging.Logger:
    """
    Configure the root logger for the engine, the API and the CLI.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path of a rotating log file
        log_format: Format string for plain-text output
        structured: Emit JSON lines instead of plain text
        max_size: Size in bytes at which the log file rotates
        backup_count: Number of rotated files to keep

    Returns:
        The root logger
    """
    level = level.upper()
    if structured:
        formatter = StructuredFormatter()
    else:
        formatter = logging.Formatter(fmt=log_format or DEFAULT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, level))
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    root_logger.addHandler(_build_handler(logging.StreamHandler(sys.stdout), formatter))

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        root_logger.addHandler(_build_handler(
            RotatingFileHandler(log_file, maxBytes=max_size, backupCount=backup_count),
            formatter,
        ))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    logging.getLogger("uvicorn").setLevel(logging.INFO)

    engine_level = logging.DEBUG if level == "DEBUG" else logging.INFO
    for name in ("verbapath.core", "verbapath.runners", "verbapath.api"):
        logging.getLogger(name).setLevel(engine_level)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance for the given name."""
    return logging.getLogger(name)


def set_logging_context(**kwargs):
    """Add fields to the logging context of the current task."""
    _log_context.set({**_log_context.get(), **kwargs})


def clear_logging_context():
    """Drop every field from the logging context of the current task."""
    _log_context.set({})


def get_logging_context() -> Dict[str, Any]:
    return dict(_log_context.get())


def log_with_context(logger: logging.Logger, level: int, message: str, **context):
    """Log a message with additional structured fields."""
    logger.log(level, message, extra={"extra_fields": context})


class NodeEventLogger:
    """Structured log lines for the node lifecycle of one run."""

    def __init__(self, execution_id: str):
        self.logger = get_logger("verbapath.core.nodes")
        self.execution_id = execution_id

    def wave_dispatched(self, node_ids):
        log_with_context(
            self.logger, logging.DEBUG,
            f"Dispatching wave: {', '.join(node_ids)}",
            execution_id=self.execution_id,
            wave=list(node_ids),
        )

    def node_finished(self, node_id: str, node_type: str, status: str, started_at: datetime):
        duration_ms = round((datetime.utcnow() - started_at).total_seconds() * 1000, 2)
        log_with_context(
            self.logger, logging.DEBUG,
            f"Node {node_id} ({node_type}) {status} in {duration_ms}ms",
            execution_id=self.execution_id,
            node_id=node_id,
            node_type=node_type,
            node_status=status,
            duration_ms=duration_ms,
        )

    def node_paused(self, node_id: str, node_type: str):
        log_with_context(
            self.logger, logging.INFO,
            f"Run {self.execution_id} paused at node {node_id} awaiting input",
            execution_id=self.execution_id,
            node_id=node_id,
            node_type=node_type,
        )

    def node_skipped(self, node_id: str, reason: str):
        log_with_context(
            self.logger, logging.DEBUG,
            f"Node {node_id} skipped: {reason}",
            execution_id=self.execution_id,
            node_id=node_id,
            node_status="skipped",
        )

    def node_failed(self, node_id: str, node_type: str, error_code: str, message: str):
        log_with_context(
            self.logger, logging.ERROR,
            f"Node {node_id} failed: {message}",
            execution_id=self.execution_id,
            node_id=node_id,
            node_type=node_type,
            error_code=error_code,
        )


class ErrorRecoveryLogger:
    """Log lines for retries of calls to external collaborators."""

    def __init__(self, operation: str):
        self.logger = get_logger("verbapath.recovery")
        self.operation = operation

    def log_recovery_attempt(self, error: Exception, attempt: int, max_attempts: int):
        log_with_context(
            self.logger, logging.WARNING,
            f"Attempt {attempt}/{max_attempts} of {self.operation} failed: {error}",
            operation=self.operation,
            error_type=type(error).__name__,
            attempt=attempt,
            max_attempts=max_attempts,
        )

    def log_recovery_success(self, attempts_used: int):
        log_with_context(
            self.logger, logging.INFO,
            f"Recovered {self.operation} after {attempts_used} attempts",
            operation=self.operation,
            attempts_used=attempts_used,
            recovery_status="success",
        )

    def log_recovery_failure(self, final_error: Exception, attempts_used: int):
        log_with_context(
            self.logger, logging.ERROR,
            f"Giving up on {self.operation} after {attempts_used} attempts: {final_error}",
            operation=self.operation,
            error_type=type(final_error).__name__,
            attempts_used=attempts_used,
            recovery_status="failed",
        )
