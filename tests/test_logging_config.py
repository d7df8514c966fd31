"""Tests for structured logging and run tracing."""

import json
import logging
import sys

import pytest

from marketbill.logging_config.config import LogFormat, LoggingConfig, LogLevel
from marketbill.logging_config.context import (
    RunContext,
    generate_run_id,
    get_context_dict,
    get_run_id,
    get_store_id,
)
from marketbill.logging_config.performance import PerformanceTimer, log_performance
from marketbill.logging_config.setup import (
    ConsoleFormatter,
    StructuredFormatter,
    configure_logging,
)


def _record(msg="closing cycle", level=logging.INFO, **extra):
    record = logging.LogRecord("marketbill.billing", level, __file__, 10, msg, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestLoggingConfig:
    def test_default_config_values(self):
        config = LoggingConfig()
        assert config.level == LogLevel.INFO
        assert config.format == LogFormat.JSON
        assert config.include_caller is True
        assert config.slow_threshold_ms == 5000.0
        assert config.service_name == "marketbill"

    def test_log_format_enum_values(self):
        assert LogFormat.JSON.value == "json"
        assert LogFormat.CONSOLE.value == "console"


class TestRunContext:
    def test_generate_run_id_unique(self):
        assert generate_run_id() != generate_run_id()

    def test_binds_and_restores(self):
        assert get_run_id() == ""
        with RunContext(run_id="run-1") as ctx:
            assert get_run_id() == "run-1"
            assert ctx.elapsed_ms >= 0
        assert get_run_id() == ""

    def test_nested_store_context_inherits_run(self):
        with RunContext(run_id="run-1"):
            with RunContext(store_id="S1") as inner:
                assert inner.run_id == "run-1"
                assert get_context_dict() == {"run_id": "run-1", "store_id": "S1"}
            assert get_store_id() == ""
            assert get_context_dict() == {"run_id": "run-1"}

    def test_bind_extra(self):
        with RunContext(run_id="run-1") as ctx:
            ctx.bind(cycle_end="2025-01-31")
            assert get_context_dict()["cycle_end"] == "2025-01-31"
        assert "cycle_end" not in get_context_dict()


class TestFormatters:
    def test_structured_formatter(self):
        formatter = StructuredFormatter(service_name="marketbill")
        with RunContext(run_id="run-1", store_id="S1"):
            line = formatter.format(_record(invoice_id="inv-1", total_fee="25.00"))
        entry = json.loads(line)
        assert entry["message"] == "closing cycle"
        assert entry["level"] == "INFO"
        assert entry["service"] == "marketbill"
        assert entry["run_id"] == "run-1"
        assert entry["store_id"] == "S1"
        assert entry["invoice_id"] == "inv-1"
        assert entry["total_fee"] == "25.00"
        assert "caller" in entry

    def test_structured_formatter_exception(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord(
                "marketbill", logging.ERROR, __file__, 1, "failed", (), sys.exc_info()
            )
        entry = json.loads(StructuredFormatter(include_caller=False).format(record))
        assert entry["exception"]["type"] == "RuntimeError"
        assert "caller" not in entry

    def test_console_formatter_includes_context(self):
        with RunContext(run_id="run-1", store_id="S1"):
            line = ConsoleFormatter().format(_record())
        assert "closing cycle" in line
        assert "[run=run-1 store=S1]" in line


class TestConfigureLogging:
    def test_json_output(self, restore_logging):
        configure_logging(LoggingConfig(format=LogFormat.JSON, level=LogLevel.WARNING))
        root = logging.getLogger()
        assert root.level == logging.WARNING
        assert isinstance(root.handlers[0].formatter, StructuredFormatter)
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    def test_env_overrides(self, monkeypatch, restore_logging):
        monkeypatch.setenv("MARKETBILL_LOG_LEVEL", "debug")
        monkeypatch.setenv("MARKETBILL_LOG_FORMAT", "console")
        configure_logging()
        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, ConsoleFormatter)


class TestPerformance:
    @pytest.mark.asyncio
    async def test_log_performance_returns_result(self):
        @log_performance(threshold_ms=10_000)
        async def close():
            return 42

        assert await close() == 42

    @pytest.mark.asyncio
    async def test_slow_call_warns(self, caplog):
        @log_performance(threshold_ms=0, logger_name="marketbill.test")
        async def close():
            return None

        with caplog.at_level(logging.WARNING, logger="marketbill.test"):
            await close()
        assert "Slow operation" in caplog.text

    @pytest.mark.asyncio
    async def test_failure_logged_and_reraised(self, caplog):
        @log_performance(logger_name="marketbill.test")
        async def close():
            raise ValueError("bad cycle")

        with pytest.raises(ValueError):
            await close()
        assert "failed after" in caplog.text

    def test_rejects_sync_function(self):
        with pytest.raises(TypeError):
            @log_performance()
            def close():
                return None

    def test_timer_measures(self, caplog):
        with caplog.at_level(logging.INFO):
            with PerformanceTimer("billing_run") as timer:
                sum(range(1000))
        assert timer.duration_ms >= 0
        assert "billing_run completed" in caplog.text
