"""Performance Logging.

Decorator timing orchestration calls and flagging slow ones.
"""

import functools
import logging
import time
from typing import Any, Callable, Optional

from src.logging_config.config import DEFAULT_LOGGING_CONFIG

logger = logging.getLogger(__name__)


def log_performance(
    threshold_ms: Optional[float] = None,
    logger_name: Optional[str] = None,
    include_args: bool = False,
) -> Callable:
    """Decorator that logs function execution time.

    Logs every call at DEBUG and slow calls (at or above the threshold)
    at WARNING. Failures are logged at ERROR and re-raised.

    Example:
        @log_performance(threshold_ms=500)
        def submit_for_approval(self, ...):
            ...
    """
    if threshold_ms is None:
        threshold_ms = DEFAULT_LOGGING_CONFIG.slow_threshold_ms

    def decorator(func: Callable) -> Callable:
        _logger = logging.getLogger(logger_name or func.__module__)
        func_name = func.__qualname__

        @functools.wraps(func)
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            start = time.perf_counter()
            failed = False
            try:
                return func(*args, **kwargs)
            except Exception as exc:
                failed = True
                duration_ms = (time.perf_counter() - start) * 1000
                _logger.error(
                    f"{func_name} failed after {duration_ms:.1f}ms: {type(exc).__name__}",
                    extra={"duration_ms": round(duration_ms, 2)},
                )
                raise
            finally:
                if not failed:
                    duration_ms = (time.perf_counter() - start) * 1000
                    extra = {"duration_ms": round(duration_ms, 2)}
                    if include_args:
                        extra["extra_data"] = _summarize_args(args, kwargs)
                    if duration_ms >= threshold_ms:
                        _logger.warning(f"Slow operation: {func_name} took {duration_ms:.1f}ms", extra=extra)
                    else:
                        _logger.debug(f"{func_name} completed in {duration_ms:.1f}ms", extra=extra)

        return wrapper

    return decorator


def _summarize_args(args: tuple, kwargs: dict, max_len: int = 100) -> str:
    """Short, truncated summary of call arguments."""
    parts = []
    for arg in args[:3]:
        rep = repr(arg)
        parts.append(rep[:max_len] + "..." if len(rep) > max_len else rep)
    if len(args) > 3:
        parts.append(f"... +{len(args) - 3} more args")
    for key, val in list(kwargs.items())[:3]:
        rep = repr(val)
        parts.append(f"{key}=" + (rep[:max_len] + "..." if len(rep) > max_len else rep))
    return ", ".join(parts)
