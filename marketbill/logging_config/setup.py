"""Logging Setup.

Routes every billing log record through one stdout handler, either as
one JSON object per line (production, picked up by the log collector) or
as a short colored line for running the job by hand.
"""

import dataclasses
import json
import logging
import os
import sys
from datetime import datetime, timezone
from typing import Optional

from marketbill.logging_config.config import DEFAULT_LOGGING_CONFIG, LogFormat, LoggingConfig, LogLevel
from marketbill.logging_config.context import get_context_dict

# Attributes passed through ``extra=`` by the billing pipeline
BILLING_FIELDS = ("duration_ms", "invoice_id", "total_fee", "fee_count", "extra_data")

QUIET_LOGGERS = ("asyncio", "aiosqlite", "sqlalchemy.engine")


def _record_time(record: logging.LogRecord) -> datetime:
    return datetime.fromtimestamp(record.created, tz=timezone.utc)


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, with the run context merged in."""

    def __init__(self, service_name: str = "marketbill", include_caller: bool = True):
        super().__init__()
        self.service_name = service_name
        self.include_caller = include_caller

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": _record_time(record).isoformat(),
            "service": self.service_name,
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        entry.update(get_context_dict())
        if self.include_caller:
            entry["caller"] = f"{record.module}.{record.funcName}:{record.lineno}"

        entry.update(
            (name, getattr(record, name)) for name in BILLING_FIELDS if hasattr(record, name)
        )

        if record.exc_info and record.exc_info[0] is not None:
            exc_type, exc, _ = record.exc_info
            entry["exception"] = {
                "type": exc_type.__name__,
                "message": str(exc),
                "traceback": self.formatException(record.exc_info),
            }
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Readable single-line output for manual runs.

    ``12:00:01.250 INFO     [run=1f2e3d4c store=S1] marketbill.billing.scheduler: ...``
    """

    LEVEL_COLORS = {
        logging.DEBUG: "\033[2m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[1;31m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _tags() -> str:
        ctx = get_context_dict()
        tags = []
        if "run_id" in ctx:
            tags.append(f"run={ctx.pop('run_id')[:8]}")
        if "store_id" in ctx:
            tags.append(f"store={ctx.pop('store_id')}")
        tags.extend(f"{key}={value}" for key, value in ctx.items())
        return f"[{' '.join(tags)}] " if tags else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelno, "")
        clock = _record_time(record).strftime("%H:%M:%S.%f")[:-3]
        line = (
            f"{clock} {color}{record.levelname:<8}{self.RESET} "
            f"{self._tags()}{record.name}: {record.getMessage()}"
        )
        if record.exc_info and record.exc_info[0] is not None:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


def _apply_env_overrides(config: LoggingConfig) -> LoggingConfig:
    level = os.environ.get("MARKETBILL_LOG_LEVEL", "").upper()
    if level in LogLevel.__members__:
        config = dataclasses.replace(config, level=LogLevel(level))

    fmt = os.environ.get("MARKETBILL_LOG_FORMAT", "").lower()
    if fmt in {f.value for f in LogFormat}:
        config = dataclasses.replace(config, format=LogFormat(fmt))
    return config


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Install the billing log handler on the root logger.

    Call once when the job or CLI starts. ``MARKETBILL_LOG_LEVEL`` and
    ``MARKETBILL_LOG_FORMAT`` take precedence over ``config``.
    """
    config = _apply_env_overrides(config or DEFAULT_LOGGING_CONFIG)

    if config.format == LogFormat.JSON:
        formatter: logging.Formatter = StructuredFormatter(config.service_name, config.include_caller)
    else:
        formatter = ConsoleFormatter()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(config.level.value)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
