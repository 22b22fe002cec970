"""Tests for EngineSettings and the logging helpers."""

import pytest
import structlog
from pydantic import ValidationError as PydanticValidationError

from isx_spine.core.logging import LogContext, clear_context, configure_logging, get_logger
from isx_spine.core.settings import EngineSettings, get_settings


class TestEngineSettings:
    def test_defaults(self):
        s = EngineSettings(_env_file=None)
        assert s.default_mode == "accumulative"
        assert s.default_max_retries == 3
        assert s.retry_multiplier == 2.0
        assert s.api_prefix == "/api/v1"

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("ISX_SPINE_DEFAULT_MAX_RETRIES", "5")
        monkeypatch.setenv("ISX_SPINE_CONNECTION_QUEUE_SIZE", "8")
        s = EngineSettings(_env_file=None)
        assert s.default_max_retries == 5
        assert s.connection_queue_size == 8

    def test_heartbeat_timeout_must_exceed_interval(self):
        with pytest.raises(PydanticValidationError):
            EngineSettings(_env_file=None, heartbeat_interval=30, heartbeat_timeout=10)

    def test_retry_cap_must_cover_base(self):
        with pytest.raises(PydanticValidationError):
            EngineSettings(_env_file=None, retry_base_delay=5, retry_max_delay=1)

    def test_get_settings_is_cached(self):
        assert get_settings() is get_settings()


class TestLogging:
    def setup_method(self):
        clear_context()

    def teardown_method(self):
        clear_context()
        structlog.reset_defaults()

    def test_json_output_carries_context(self, capsys):
        configure_logging(level="INFO", json_format=True)
        log = get_logger("isx_spine.test")
        with LogContext(operation_id="op_1", trace_id=None):
            log.info("step.start", step="scraping")
        out = capsys.readouterr().out
        assert '"operation_id": "op_1"' in out
        assert '"event": "step.start"' in out
        assert "trace_id" not in out

    def test_context_unbound_after_exit(self, capsys):
        configure_logging(level="INFO", json_format=True)
        log = get_logger("isx_spine.test")
        with LogContext(operation_id="op_2"):
            pass
        log.info("after")
        assert "op_2" not in capsys.readouterr().out

    def test_debug_suppressed_at_info(self, capsys):
        configure_logging(level="INFO", json_format=True)
        get_logger("isx_spine.test").debug("hidden")
        assert "hidden" not in capsys.readouterr().out
