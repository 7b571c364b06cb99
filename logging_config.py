"""
logging_config.py - Centralized logging configuration.

Provides consistent logging setup across all modules, the account-number
masking helper used in every log line that mentions an account, and the
`graceful` decorator used around persistence calls.
"""

from __future__ import annotations

import functools
import inspect
import logging
import sys
from typing import Callable, TypeVar

T = TypeVar("T")

# Third-party loggers that are chatty at INFO.
NOISY_LOGGERS = ("httpx", "httpcore", "PIL")


def setup_logging(level: int = logging.INFO, json_format: bool = False) -> None:
    """Configure root logger with consistent formatting.

    Args:
        level: Logging level.
        json_format: If True, emit JSON-like log lines.
    """
    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    if json_format:
        formatter = logging.Formatter(
            '{"timestamp":"%(asctime)s","level":"%(levelname)s",'
            '"module":"%(name)s","message":"%(message)s"}',
            datefmt="%H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(name)-20s] %(levelname)-7s %(message)s",
            datefmt="%H:%M:%S",
        )

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)
    root.addHandler(handler)

    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))


def get_logger(name: str) -> logging.Logger:
    """Get a named logger."""
    return logging.getLogger(name)


def mask_account(account_number: str | None) -> str:
    """Mask an account number for logs, keeping the first and last two digits."""
    text = str(account_number or "")
    if len(text) <= 4:
        return "*" * len(text)
    return f"{text[:2]}{'*' * (len(text) - 4)}{text[-2:]}"


def graceful(
    default_factory: Callable[[], T],
    exceptions: tuple[type[BaseException], ...] = (Exception,),
    log_level: int = logging.WARNING,
):
    """Decorator that catches `exceptions` and returns a default value.

    Works on both plain and `async def` functions. Used where a failure
    must degrade the feature (no persistence) instead of failing the caller.
    """

    def _log(func, exc: BaseException) -> None:
        logger = logging.getLogger(func.__module__)
        logger.log(
            log_level,
            "%s failed | error_type=%s | error=%s | fallback=default",
            func.__qualname__,
            type(exc).__name__,
            exc,
        )

    def decorator(func):
        if inspect.iscoroutinefunction(func):

            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                try:
                    return await func(*args, **kwargs)
                except exceptions as exc:
                    _log(func, exc)
                    return default_factory()

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except exceptions as exc:
                _log(func, exc)
                return default_factory()

        return wrapper

    return decorator
