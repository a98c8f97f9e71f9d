"""
Structured logger implementation for Qanun.

- Development (ENV=development / dev / local): colorized, human-readable output
- Anything else: compact single-line JSON
"""

import json
import logging
import os
import sys
import time
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Type, Union


# ── Context variables ─────────────────────────────────────────────────────────

session_id_var: ContextVar[Optional[str]] = ContextVar("session_id", default=None)
log_context_var: ContextVar[Dict[str, Any]] = ContextVar("log_context", default={})


# ── ANSI colors ───────────────────────────────────────────────────────────────


class _Colors:
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"
    DEBUG = "\033[36m"
    INFO = "\033[32m"
    WARNING = "\033[33m"
    ERROR = "\033[31m"
    TIMESTAMP = "\033[90m"
    SERVICE = "\033[35m"
    SESSION = "\033[34m"
    KEY = "\033[90m"
    VALUE = "\033[97m"

    LEVEL_MAP = {
        "DEBUG": DEBUG,
        "INFO": INFO,
        "WARN": WARNING,
        "ERROR": ERROR,
    }


# ── Public types ──────────────────────────────────────────────────────────────


class LogLevel(str, Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"


class LogContext:
    """
    Temporary log fields for a block of work.

        with LogContext(workflow_id="wf-1", step="mapping"):
            logger.info("mapping_started")   # carries both fields
    """

    def __init__(self, **kwargs: Any) -> None:
        self.new_context = kwargs
        self.previous_context: Dict[str, Any] = {}

    def __enter__(self) -> "LogContext":
        self.previous_context = log_context_var.get().copy()
        log_context_var.set({**self.previous_context, **self.new_context})
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Any,
    ) -> bool:
        log_context_var.set(self.previous_context)
        return False


# ── Formatter ─────────────────────────────────────────────────────────────────


class StructuredFormatter(logging.Formatter):
    """Pretty lines in development, JSON lines elsewhere."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name
        self._is_dev = os.getenv("ENV", "development") in ("development", "dev", "local")

    def _build_entry(self, record: logging.LogRecord) -> Dict[str, Any]:
        level_name = record.levelname.upper()
        if level_name == "WARNING":
            level_name = "WARN"

        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level_name,
            "service": self.service_name,
            "message": record.getMessage(),
        }

        if record.name and record.name != "root":
            entry["module"] = record.name.split(".")[-1]

        session_id = session_id_var.get()
        if session_id:
            entry["sessionId"] = session_id

        if getattr(record, "method_name", None):
            entry["method"] = record.method_name

        context = log_context_var.get().copy()
        if getattr(record, "log_context", None):
            context.update(record.log_context)
        if context:
            entry["context"] = context

        if getattr(record, "duration", None) is not None:
            entry["duration"] = record.duration

        if record.exc_info:
            exc_type, exc_value, exc_tb = record.exc_info
            entry["error"] = {
                "type": exc_type.__name__ if exc_type else "Unknown",
                "message": str(exc_value) if exc_value else "",
            }
            if self._is_dev:
                entry["error"]["stack"] = "".join(
                    traceback.format_exception(exc_type, exc_value, exc_tb)
                )

        return entry

    @staticmethod
    def _pretty(entry: Dict[str, Any]) -> str:
        C = _Colors
        level = entry.get("level", "INFO")
        level_color = C.LEVEL_MAP.get(level, C.INFO)

        ts_raw = entry.get("timestamp", "")
        try:
            ts = ts_raw.split("T")[1][:12]
        except (IndexError, AttributeError):
            ts = ts_raw

        parts = [
            f"{C.TIMESTAMP}{ts}{C.RESET}",
            f"{level_color}{C.BOLD}{level:<5}{C.RESET}",
            f"{C.SERVICE}[{entry.get('service', '')}]{C.RESET}",
        ]

        if "module" in entry:
            location = entry["module"]
            if "method" in entry:
                location += f".{entry['method']}"
            parts.append(f"{C.BOLD}{location}{C.RESET}")

        parts.append(f"── {entry.get('message', '')}")
        lines = ["  ".join(parts)]

        session = entry.get("sessionId")
        if session:
            lines.append(f"    {C.KEY}sessionId:{C.RESET} {C.SESSION}{session}{C.RESET}")

        dur = entry.get("duration")
        if dur is not None:
            lines.append(f"    {C.KEY}duration:{C.RESET} {dur}ms")

        for k, v in (entry.get("context") or {}).items():
            lines.append(f"    {C.KEY}{k}:{C.RESET} {C.VALUE}{v}{C.RESET}")

        err = entry.get("error")
        if err:
            lines.append(
                f"    {C.ERROR}{C.BOLD}error:{C.RESET} "
                f"{C.ERROR}{err.get('type', 'Unknown')}: {err.get('message', '')}{C.RESET}"
            )
            for sline in (err.get("stack") or "").strip().splitlines():
                lines.append(f"      {C.DIM}{sline}{C.RESET}")

        return "\n".join(lines)

    def format(self, record: logging.LogRecord) -> str:
        entry = self._build_entry(record)
        if self._is_dev:
            return self._pretty(entry)
        return json.dumps(entry, default=str, ensure_ascii=False)


# ── QanunLogger ───────────────────────────────────────────────────────────────


class QanunLogger:
    """
    Process-level logging setup.

        QanunLogger.configure("qanun-workflow", level=settings.log_level)
        logger = QanunLogger.get("mapping")
    """

    _service_name: Optional[str] = None
    _root_logger: Optional[logging.Logger] = None
    _min_level: LogLevel = LogLevel.INFO

    _LEVEL_TO_INT: Dict[str, int] = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARN": logging.WARNING,
        "ERROR": logging.ERROR,
    }

    @classmethod
    def configure(
        cls,
        service_name: str,
        level: Union[str, LogLevel] = LogLevel.INFO,
    ) -> logging.Logger:
        """Configure the service logger. Call once at startup."""
        cls._service_name = service_name

        if isinstance(level, str):
            normalized = level.upper()
            if normalized == "WARNING":
                normalized = "WARN"
            try:
                level = LogLevel(normalized)
            except ValueError:
                level = LogLevel.INFO
        cls._min_level = level

        logger = logging.getLogger(service_name)
        logger.setLevel(cls._LEVEL_TO_INT.get(level.value, logging.INFO))
        logger.handlers.clear()

        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(StructuredFormatter(service_name))
        logger.addHandler(handler)
        logger.propagate = False

        cls._root_logger = logger
        return logger

    @classmethod
    def get(cls, context: Union[Type, str]) -> "QanunLoggerInstance":
        if cls._root_logger is None:
            cls.configure("qanun")

        name = context if isinstance(context, str) else context.__name__
        return QanunLoggerInstance(cls._root_logger.getChild(name), name)

    @classmethod
    def set_session_id(cls, session_id: Optional[str]) -> None:
        session_id_var.set(session_id)

    @classmethod
    def get_session_id(cls) -> Optional[str]:
        return session_id_var.get()

    @classmethod
    def set_context(cls, **kwargs: Any) -> None:
        current = log_context_var.get().copy()
        current.update(kwargs)
        log_context_var.set(current)

    @classmethod
    def clear_context(cls) -> None:
        log_context_var.set({})


class QanunLoggerInstance:
    """Logger bound to a module or class name."""

    def __init__(self, logger: logging.Logger, name: str) -> None:
        self._logger = logger
        self._name = name

    def _log(
        self,
        level: int,
        message: str,
        method: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        error: Optional[BaseException] = None,
        duration: Optional[int] = None,
    ) -> None:
        extra = {
            "method_name": method,
            "log_context": context if isinstance(context, dict) else {},
            "duration": duration,
        }
        if error is not None:
            self._logger.log(level, message, exc_info=error, extra=extra)
        else:
            self._logger.log(level, message, extra=extra)

    def debug(self, message: str, method: Optional[str] = None, context: Optional[Dict[str, Any]] = None) -> None:
        self._log(logging.DEBUG, message, method, context)

    def info(
        self,
        message: str,
        method: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        duration: Optional[int] = None,
    ) -> None:
        self._log(logging.INFO, message, method, context, duration=duration)

    def warn(self, message: str, method: Optional[str] = None, context: Optional[Dict[str, Any]] = None) -> None:
        self._log(logging.WARNING, message, method, context)

    warning = warn

    def error(
        self,
        message: str,
        method: Optional[str] = None,
        error: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self._log(logging.ERROR, message, method, context, error)

    def timed(self, operation: str, context: Optional[Dict[str, Any]] = None) -> "TimedOperation":
        return TimedOperation(self, operation, context)


class TimedOperation:
    """Logs start, completion and elapsed milliseconds of a block."""

    def __init__(
        self,
        logger: QanunLoggerInstance,
        operation: str,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.logger = logger
        self.operation = operation
        self.context = context or {}
        self.start_time: float = 0
        self.duration_ms: Optional[int] = None

    def __enter__(self) -> "TimedOperation":
        self.start_time = time.perf_counter()
        self.logger.debug(f"{self.operation}_started", context=self.context)
        return self

    def __exit__(
        self,
        exc_type: Optional[Type[BaseException]],
        exc_val: Optional[BaseException],
        exc_tb: Any,
    ) -> bool:
        self.duration_ms = int((time.perf_counter() - self.start_time) * 1000)
        if exc_type:
            self.logger.error(
                f"{self.operation}_failed",
                error=exc_val,
                context={**self.context, "duration": self.duration_ms},
            )
        else:
            self.logger.info(
                f"{self.operation}_completed",
                context=self.context,
                duration=self.duration_ms,
            )
        return False


# ── Keyword-style shim ────────────────────────────────────────────────────────


class _CompatLogger:
    """
    Accepts structlog-style keyword calls:

        logger.info("mapping_completed", mapped=4, unmapped=2)
        logger.error("recognition_failed", error=exc)
    """

    def __init__(self, instance: QanunLoggerInstance) -> None:
        self._instance = instance

    def _extract(
        self, kwargs: Dict[str, Any]
    ) -> tuple[Optional[BaseException], Optional[str], Optional[Dict[str, Any]]]:
        raw_error = kwargs.pop("error", None)
        error: Optional[BaseException] = None
        if isinstance(raw_error, BaseException):
            error = raw_error
        elif raw_error is not None:
            kwargs["error"] = str(raw_error)

        method = kwargs.pop("method", None)
        return error, method, (kwargs or None)

    def debug(self, event: str, **kwargs: Any) -> None:
        _, method, ctx = self._extract(kwargs)
        self._instance.debug(event, method=method, context=ctx)

    def info(self, event: str, **kwargs: Any) -> None:
        _, method, ctx = self._extract(kwargs)
        self._instance.info(event, method=method, context=ctx)

    def warning(self, event: str, **kwargs: Any) -> None:
        _, method, ctx = self._extract(kwargs)
        self._instance.warn(event, method=method, context=ctx)

    warn = warning

    def error(self, event: str, **kwargs: Any) -> None:
        error, method, ctx = self._extract(kwargs)
        self._instance.error(event, method=method, error=error, context=ctx)

    def exception(self, event: str, **kwargs: Any) -> None:
        exc = sys.exc_info()[1]
        if exc is not None:
            kwargs.setdefault("error", exc)
        self.error(event, **kwargs)


def get_logger(name: Optional[str] = None) -> _CompatLogger:
    """
    Module-level logger:

        logger = get_logger(__name__)
        logger.info("event_name", key=value)
    """
    short_name = name.split(".")[-1] if name and "." in name else (name or "app")
    return _CompatLogger(QanunLogger.get(short_name))
