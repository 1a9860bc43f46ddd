"""Tests for the logger module."""

import pytest
from loguru import logger as loguru_logger

from arepo.logger import LoggerSettings, configure_logging, get_logger


class TestLoggerSettings:
    @pytest.mark.unit
    def test_default_logger_settings(self) -> None:
        settings = LoggerSettings()
        assert settings.level == "INFO"
        assert "time" in settings.format
        assert "{extra[mod_name]" in settings.format_string

    @pytest.mark.unit
    def test_environment_override(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("AREPO_LOGGER_LEVEL", "DEBUG")
        assert LoggerSettings().level == "DEBUG"


class TestGetLogger:
    @pytest.mark.unit
    def test_binds_module_name(self) -> None:
        records: list[dict] = []
        sink_id = loguru_logger.add(lambda message: records.append(message.record), level="DEBUG")
        try:
            get_logger("arepo.repository.coordinator").debug("hello")
        finally:
            loguru_logger.remove(sink_id)

        assert records[-1]["extra"]["mod_name"] == "coordinator"
        assert records[-1]["message"] == "hello"

    @pytest.mark.unit
    def test_configure_logging_returns_sink_id(self) -> None:
        sink_id = configure_logging(LoggerSettings(level="warning", colorize=False))
        try:
            assert isinstance(sink_id, int)
        finally:
            loguru_logger.remove(sink_id)
