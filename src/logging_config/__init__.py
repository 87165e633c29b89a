"""Structured Logging & Operation Tracing.

JSON or console log output, per-operation context binding (actor,
correlation id, workflow ids) and call timing for the HR workflow core.
"""

from src.logging_config.config import LogFormat, LoggingConfig, LogLevel
from src.logging_config.context import OperationContext, generate_correlation_id, get_context_dict
from src.logging_config.performance import log_performance
from src.logging_config.setup import configure_logging, get_logger, resolve_config

__all__ = [
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "OperationContext",
    "configure_logging",
    "generate_correlation_id",
    "get_context_dict",
    "get_logger",
    "log_performance",
    "resolve_config",
]
