"""Re-exports from the shared qanun_logging package."""

from qanun_logging import (
    QanunLogger,
    QanunLoggerInstance,
    LogLevel,
    LogContext,
    TimedOperation,
    get_logger,
    session_id_var,
    log_context_var,
    session_scope,
    get_session_id,
)
