"""
Logging Configuration

structlog is the single rendering path. Domain services log through
structlog loggers; the persistence layer and third-party libraries log
through stdlib ``logging``. Both reach one root handler whose
``ProcessorFormatter`` renders them identically, as JSON for production
or as console lines for development.
"""

import logging
import sys
from enum import Enum
from typing import Any, Dict, List, Optional

import structlog


class LogLevel(str, Enum):
    """Log levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class LogFormat(str, Enum):
    """Log output formats."""

    JSON = "json"
    PRETTY = "pretty"
    SIMPLE = "simple"


SERVICE_NAME = "did-engine"

QUIET_LOGGERS = ("httpx", "httpcore", "asyncio", "aiosqlite", "sqlalchemy.engine")


def _add_service(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    event_dict.setdefault("service", SERVICE_NAME)
    return event_dict


def _shared_processors() -> List[Any]:
    """Processors applied to structlog and stdlib records alike."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        _add_service,
    ]


def _renderer(format: str) -> Any:
    if format == LogFormat.JSON.value:
        return structlog.processors.JSONRenderer(default=str)
    if format == LogFormat.PRETTY.value:
        return structlog.dev.ConsoleRenderer(colors=True)
    return structlog.dev.ConsoleRenderer(colors=False)


def build_formatter(format: str = LogFormat.PRETTY.value) -> structlog.stdlib.ProcessorFormatter:
    """Root handler formatter for the given output format."""
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_shared_processors(),
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.format_exc_info,
            _renderer(format),
        ],
    )


def setup_logging(
    level: str = LogLevel.INFO.value,
    format: str = LogFormat.PRETTY.value,
    service_name: Optional[str] = None,
) -> None:
    """
    Configure logging for the engine.

    Replaces any root handler with a single stdout handler. Safe to call
    more than once; the last call wins.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: Log format (json, pretty, simple)
        service_name: Value of the ``service`` field on every line
    """
    global SERVICE_NAME

    if service_name:
        SERVICE_NAME = service_name

    numeric_level = getattr(logging, level.upper())
    format = format.lower()

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    handler.setFormatter(build_formatter(format))

    root_logger = logging.getLogger()
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    structlog.configure(
        processors=[
            *_shared_processors(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.get_logger(__name__).debug("logging_configured", level=level, format=format)


def get_logger(name: str) -> Any:
    """Structured logger bound to ``name`` (typically ``__name__``)."""
    return structlog.get_logger(name)


class LogContext:
    """
    Binds run-scoped fields to every log line emitted inside the block.

    Usage:
        with LogContext(job="did_renewal", run_date="2026-01-15"):
            logger.info("company_processed")
    """

    def __init__(self, **kwargs: Any):
        self._fields = kwargs
        self._tokens: Dict[str, Any] = {}

    def __enter__(self) -> "LogContext":
        self._tokens = structlog.contextvars.bind_contextvars(**self._fields)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)

    @staticmethod
    def all() -> Dict[str, Any]:
        """Fields currently bound."""
        return structlog.contextvars.get_contextvars()


__all__ = [
    "LogLevel",
    "LogFormat",
    "build_formatter",
    "setup_logging",
    "get_logger",
    "LogContext",
]
