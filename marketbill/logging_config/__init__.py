"""Structured logging and run tracing for billing jobs.

Provides JSON or console log output, run/store id propagation through
contextvars, and timing of billing pipelines.
"""

from marketbill.logging_config.config import LogFormat, LoggingConfig, LogLevel
from marketbill.logging_config.context import RunContext, generate_run_id
from marketbill.logging_config.performance import PerformanceTimer, log_performance
from marketbill.logging_config.setup import configure_logging, get_logger

__all__ = [
    "LogFormat",
    "LogLevel",
    "LoggingConfig",
    "PerformanceTimer",
    "RunContext",
    "configure_logging",
    "generate_run_id",
    "get_logger",
    "log_performance",
]
