"""
qanun_logging - Structured logging for the Qanun document workflow.

Provides:
- QanunLogger: configure once, get per-module loggers anywhere
- get_logger(): keyword-style logger (logger.info("event", key=value))
- LogContext: context manager for temporary per-block log fields
- session_scope(): binds a workflow session id to every log line in a block
- LogLevel, TimedOperation: supporting types

Usage:
    from qanun_logging import QanunLogger, get_logger
    QanunLogger.configure("qanun-workflow", level=settings.log_level)

    logger = get_logger(__name__)
    logger.info("extraction_succeeded", file_name="loi.pdf", confidence=0.95)

    with session_scope(session.session_id):
        session.run_mapping("legal")
"""

from .logger import (
    QanunLogger,
    QanunLoggerInstance,
    LogLevel,
    LogContext,
    TimedOperation,
    get_logger,
    session_id_var,
    log_context_var,
)
from .session import session_scope, get_session_id

__all__ = [
    "QanunLogger",
    "QanunLoggerInstance",
    "LogLevel",
    "LogContext",
    "TimedOperation",
    "get_logger",
    "session_id_var",
    "log_context_var",
    "session_scope",
    "get_session_id",
]
