"""
Centralized logging configuration.

Console output is human-readable; the optional file handler writes one JSON
object per line. Loggers returned by :func:`get_logger` take keyword fields
(``logger.info("Job skipped", job_id=..., queue=...)``) and can carry bound
context across a job's lifetime via :meth:`StructuredLogger.bind`.
"""
import logging
import logging.config
import json
import sys
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from pathlib import Path

ROOT_LOGGER_NAME = "gifter_jobs"
SERVICE_NAME = "gifter-jobs"

# Third-party loggers routed through our handlers, with their own floor level
_LIBRARY_LEVELS = {
    "uvicorn": "INFO",
    "sqlalchemy.engine": "WARNING",
    "httpx": "WARNING",      # openai SDK request lines
    "aiohttp": "WARNING",
}


class JSONFormatter(logging.Formatter):
    """One JSON document per record; structured fields are merged at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat().replace("+00:00", "Z"),
            "service": SERVICE_NAME,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}.{record.funcName}:{record.lineno}",
            "thread_name": record.threadName,
        }
        fields = getattr(record, "fields", None)
        if fields:
            entry.update(fields)
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """Plain text line with structured fields appended as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = getattr(record, "fields", None)
        if not fields:
            return line
        rendered = " ".join(f"{key}={value}" for key, value in fields.items())
        return f"{line} | {rendered}"


class StructuredLogger:
    """
    Thin wrapper over :class:`logging.Logger` that accepts structured fields.

    ``None`` values are dropped; ``exc_info`` is forwarded to the underlying
    logger. Context bound with :meth:`bind` is added to every record.
    """

    def __init__(self, name: str, context: Optional[Dict[str, Any]] = None):
        self.logger = logging.getLogger(name)
        self.context: Dict[str, Any] = dict(context or {})

    def bind(self, **context: Any) -> "StructuredLogger":
        """Child logger with extra fields attached to every record it emits."""
        return StructuredLogger(self.logger.name, {**self.context, **context})

    def _emit(self, level: int, message: str, **kwargs):
        if not self.logger.isEnabledFor(level):
            return
        exc_info = kwargs.pop("exc_info", None)
        fields = {k: v for k, v in {**self.context, **kwargs}.items() if v is not None}
        self.logger.log(level, message, exc_info=exc_info, extra={"fields": fields}, stacklevel=3)

    def debug(self, message: str, **kwargs):
        self._emit(logging.DEBUG, message, **kwargs)

    def info(self, message: str, **kwargs):
        self._emit(logging.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        self._emit(logging.WARNING, message, **kwargs)

    def error(self, message: str, **kwargs):
        self._emit(logging.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._emit(logging.CRITICAL, message, **kwargs)


def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[str] = None,
    enable_console: bool = True
) -> None:
    """
    Configure the ``gifter_jobs`` logger tree plus noisy third-party loggers.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path for rotating JSON-lines output
        enable_console: Whether to log to stdout
    """
    handlers: Dict[str, Dict[str, Any]] = {}
    if enable_console:
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "stream": sys.stdout,
            "formatter": "standard",
            "level": log_level
        }
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,  # 10MB
            "backupCount": 5,
            "formatter": "json",
            "level": log_level
        }
    handler_names = list(handlers)

    loggers: Dict[str, Dict[str, Any]] = {
        ROOT_LOGGER_NAME: {"level": log_level, "handlers": handler_names, "propagate": False},
    }
    for name, level in _LIBRARY_LEVELS.items():
        loggers[name] = {"level": level, "handlers": handler_names, "propagate": False}

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "json": {"()": JSONFormatter},
            "standard": {
                "()": ConsoleFormatter,
                "fmt": "%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s",
                "datefmt": "%Y-%m-%d %H:%M:%S",
            },
        },
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": log_level, "handlers": handler_names},
    })


def get_logger(name: str) -> StructuredLogger:
    """Structured logger under the ``gifter_jobs`` tree (pass ``__name__``)."""
    if name == ROOT_LOGGER_NAME or name.startswith(ROOT_LOGGER_NAME + "."):
        return StructuredLogger(name)
    return StructuredLogger(f"{ROOT_LOGGER_NAME}.{name}")


def log_business_event(
    event_type: str,
    details: Dict[str, Any],
    job_id: Optional[str] = None,
    queue: Optional[str] = None
) -> None:
    """
    Audit-trail record for something the business cares about.

    Args:
        event_type: e.g. 'job_enqueued', 'collections_generated', 'product_ingested'
        details: Event-specific fields
        job_id: Job id when the event belongs to a queued job
        queue: Queue name when applicable
    """
    get_logger("audit").info(
        f"Business event: {event_type}",
        event_type=event_type,
        job_id=job_id,
        queue=queue,
        **details
    )


def log_performance(
    operation: str,
    duration_ms: float,
    additional_data: Optional[Dict[str, Any]] = None
) -> None:
    """Timing record for a job run, pipeline stage or scheduled task."""
    get_logger("performance").info(
        f"Performance: {operation}",
        operation=operation,
        duration_ms=round(duration_ms, 2),
        **(additional_data or {})
    )
