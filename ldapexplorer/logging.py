from __future__ import annotations

import logging
import logging.config
import time
import uuid
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from functools import wraps
from typing import Any, ParamSpec, TypeVar

audit_logger = logging.getLogger("audit")
performance_logger = logging.getLogger("performance")
correlation_id_var = ContextVar("correlation_id", default="")


class CorrelationFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get()
        return True


@contextmanager
def correlation_context() -> Iterator[uuid.UUID]:
    correlation_id = uuid.uuid4()
    token = correlation_id_var.set(str(correlation_id))
    try:
        yield correlation_id
    finally:
        correlation_id_var.reset(token)


@contextmanager
def ensure_correlation_context() -> Iterator[str]:
    """
    Reuses the current correlation id (e.g. the one of a web request),
    and only creates a new one if there isn't one.
    """
    if current := correlation_id_var.get():
        yield current
        return
    with correlation_context() as correlation_id:
        yield str(correlation_id)


def configure_logging(log_level: int, log_files: str | None) -> None:
    logging.config.dictConfig(get_log_config(log_level, log_files))


# Handler name -> (level, formatter, whether records get a correlation id).
# Each handler has its own file when logging to files.
_HANDLERS: dict[str, tuple[int | str, str, bool]] = {
    "app": ("", "default", True),
    "access": ("INFO", "default", True),
    "audit": ("INFO", "bare", False),
    "performance": ("INFO", "bare", False),
}

# Loggers that only go to their own handler.
_SEPARATE_LOGGERS = {
    "audit": "audit",
    "performance": "performance",
    "uvicorn.access": "access",
}


def _handler(
    name: str, log_level: int, log_files: str | None
) -> dict[str, Any]:
    level, formatter, with_correlation_id = _HANDLERS[name]
    handler: dict[str, Any] = {"level": level or log_level, "formatter": formatter}
    if with_correlation_id:
        handler["filters"] = ["correlation_id"]
    if log_files:
        handler["class"] = "logging.FileHandler"
        handler["filename"] = log_files.format(name)
    else:
        handler["class"] = "logging.StreamHandler"
    return handler


def get_log_config(log_level: int, log_files: str | None) -> dict:
    """
    Logging for the service: application logs tagged with the correlation
    id of the search, plus separate audit, performance and access logs.

    `log_files` is a pattern where `{}` is replaced by the handler name,
    without it everything goes to standard out.
    """
    loggers: dict[str, Any] = {
        "": {"level": log_level, "handlers": ["app"]},
        # ldap3 is very chatty below WARNING.
        "ldap3": {"level": "WARNING"},
    }
    for logger_name, handler_name in _SEPARATE_LOGGERS.items():
        loggers[logger_name] = {
            "level": "INFO",
            "handlers": [handler_name],
            "propagate": False,
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "handlers": {
            name: _handler(name, log_level, log_files) for name in _HANDLERS
        },
        "filters": {"correlation_id": {"()": CorrelationFilter}},
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s %(name)s %(message)s "
                "(%(correlation_id)s)"
            },
            "bare": {"format": "%(asctime)s %(message)s"},
        },
        "loggers": loggers,
    }


TC = TypeVar("TC")
P = ParamSpec("P")


def performance_log(
    id_param: int | None = None,
) -> Callable[[Callable[P, Awaitable[TC]]], Callable[P, Awaitable[TC]]]:
    def config_decorator(
        func: Callable[P, Awaitable[TC]]
    ) -> Callable[P, Awaitable[TC]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> TC:
            start = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                time_taken = (time.perf_counter() - start) * 1000
                id_arg = args[id_param] if id_param is not None else ".."
                method = f"{func.__qualname__}({id_arg})"

                performance_logger.info(
                    "METHOD=%s TIME_TAKEN=%d CORRELATION_ID=%s",
                    method,
                    time_taken,
                    correlation_id_var.get(),
                )

        return wrapper

    return config_decorator
