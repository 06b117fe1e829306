"""
Error Handling Decorators

``handle_errors`` turns a per-item failure into a logged skip, so one bad
input file does not abort a whole catalog rebuild. ``timed`` reports how
long rebuilds, refreshes and searches take.
"""

from __future__ import annotations

import functools
import logging
import time
from typing import Any, Callable, Optional, Tuple, Type


def handle_errors(
    *exception_types: Type[Exception],
    default: Any = None,
    log_level: int = logging.ERROR,
    reraise: bool = False,
    message: Optional[str] = None,
):
    """
    Log matching exceptions from the wrapped function and return ``default``.

    Records go to the wrapped function's module logger. Tracebacks are
    attached only at ERROR and above.

    Args:
        exception_types: Exception types to catch (default: Exception)
        default: Value returned instead of raising
        log_level: Level the failure is logged at
        reraise: Log, then let the exception propagate
        message: Log prefix; defaults to "<function> failed"

    Example:
        @handle_errors(ET.ParseError, OSError, default=None,
                       log_level=logging.WARNING)
        def parse_collection(path):
            ...
    """
    caught: Tuple[Type[Exception], ...] = exception_types or (Exception,)

    def decorator(func: Callable) -> Callable:
        log = logging.getLogger(func.__module__)
        prefix = message or f"{func.__name__} failed"

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            try:
                return func(*args, **kwargs)
            except caught as e:
                log.log(log_level, f"{prefix}: {e}", exc_info=log_level >= logging.ERROR)
                if reraise:
                    raise
                return default
        return wrapper
    return decorator


def timed(func: Callable) -> Callable:
    """Log the wall-clock duration of each call at DEBUG."""
    log = logging.getLogger(func.__module__)

    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        started = time.monotonic()
        try:
            return func(*args, **kwargs)
        finally:
            log.debug(f"{func.__qualname__} took {(time.monotonic() - started) * 1000:.1f} ms")
    return wrapper
