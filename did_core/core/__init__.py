# Core infrastructure shared by the engine components

from did_core.core.logging import (
    LogLevel,
    LogFormat,
    LogContext,
    setup_logging,
    get_logger,
)

__all__ = [
    "LogLevel",
    "LogFormat",
    "LogContext",
    "setup_logging",
    "get_logger",
]
