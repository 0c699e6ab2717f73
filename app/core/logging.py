"""
Structured logging.

Every record can carry an ``extra_data`` dict::

    logger.info("Booking accepted", extra_data={"booking_id": 12, "final_price": "100.00"})

In JSON mode (production) a record is one line with the request's
correlation ID. Verification codes, provider secrets and tokens found
anywhere inside ``extra_data`` are masked before the line is written.
"""
import json
import logging
import secrets
import sys
import time
from contextvars import ContextVar
from datetime import datetime
from functools import wraps
from typing import Any

correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="")

_MASK = "***"

_SENSITIVE_KEYS = frozenset({
    "code",
    "submitted_code",
    "client_secret",
    "secret",
    "token",
    "access_token",
    "password",
    "authorization",
    "api_key",
    "stripe_signature",
})

# Libraries that are chatty at INFO
_NOISY_LOGGERS = {
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "sqlalchemy.engine": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "celery": logging.INFO,
}

_TEXT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | [%(correlation_id)s] | %(message)s"


def redact(value: Any) -> Any:
    """Copy of ``value`` with every sensitive key masked, at any depth"""
    if isinstance(value, dict):
        masked = {}
        for key, item in value.items():
            if item is not None and str(key).lower() in _SENSITIVE_KEYS:
                masked[key] = _MASK
            else:
                masked[key] = redact(item)
        return masked
    if isinstance(value, (list, tuple)):
        return [redact(item) for item in value]
    return value


class JSONFormatter(logging.Formatter):

    def __init__(self, app_name: str = "parcelshare") -> None:
        super().__init__()
        self.app_name = app_name

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "app": self.app_name,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        correlation_id = correlation_id_var.get()
        if correlation_id:
            entry["correlation_id"] = correlation_id

        extra_data = getattr(record, "extra_data", None)
        if extra_data:
            entry["extra"] = redact(extra_data)

        if record.exc_info:
            entry["exception_type"] = record.exc_info[0].__name__ if record.exc_info[0] else None
            entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(entry, ensure_ascii=False, default=str)


class CorrelationIdFilter(logging.Filter):
    """Makes ``%(correlation_id)s`` usable in the text format"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        return True


class StructuredLogger(logging.Logger):
    """``logging.Logger`` whose level methods also accept ``extra_data=``"""

    def _log(
        self,
        level: int,
        msg: object,
        args,
        exc_info=None,
        extra: dict[str, Any] | None = None,
        stack_info: bool = False,
        stacklevel: int = 1,
        extra_data: dict[str, Any] | None = None,
    ) -> None:
        if extra_data:
            extra = {**(extra or {}), "extra_data": extra_data}
        # One more frame to skip: this override sits between the caller and logging
        super()._log(level, msg, args, exc_info, extra, stack_info, stacklevel + 1)


logging.setLoggerClass(StructuredLogger)


def setup_logging(level: str = "INFO", json_format: bool = True, app_name: str = "parcelshare") -> None:
    """
    Route the root logger to stdout.

    ``json_format=False`` gives a one-line text format for local runs.
    """
    numeric_level = getattr(logging, level.upper())
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(numeric_level)
    if json_format:
        handler.setFormatter(JSONFormatter(app_name=app_name))
    else:
        handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        handler.addFilter(CorrelationIdFilter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(numeric_level)
    root_logger.addHandler(handler)

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)


def generate_correlation_id() -> str:
    return secrets.token_hex(4)


def set_correlation_id(correlation_id: str | None = None) -> str:
    """Bind ``correlation_id`` (or a fresh one) to the current context"""
    cid = correlation_id or generate_correlation_id()
    correlation_id_var.set(cid)
    return cid


def get_correlation_id() -> str:
    """Current correlation ID; a fresh one is bound when none is set"""
    return correlation_id_var.get() or set_correlation_id()


def get_logger(name: str) -> StructuredLogger:
    return logging.getLogger(name)  # type: ignore[return-value]


def log_async_operation(operation_name: str):
    """
    Time an async call and log its outcome.

    Used around payment provider requests: success is logged at INFO,
    a raised exception at WARNING (and re-raised unchanged).
    """
    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            logger = get_logger(func.__module__)
            started = time.perf_counter()
            logger.debug(f"{operation_name} started", extra_data={"operation": operation_name})

            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                logger.warning(
                    f"{operation_name} failed: {type(e).__name__}",
                    extra_data={
                        "operation": operation_name,
                        "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                        "error": str(e),
                    },
                )
                raise

            logger.info(
                f"{operation_name} completed",
                extra_data={
                    "operation": operation_name,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 1),
                },
            )
            return result

        return wrapper
    return decorator
