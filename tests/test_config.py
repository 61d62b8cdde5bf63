"""Tests for settings loading and logging setup."""

import logging
from logging.handlers import TimedRotatingFileHandler

import pytest
from pydantic import ValidationError

from esgsync import ConfigError, SyncSettings, load_settings
from esgsync.config import LoggingSettings, RealtimeSettings
from esgsync.log import init_logging


class TestDefaults:
    def test_defaults(self) -> None:
        settings = SyncSettings()
        assert settings.cache.retry_budget == "60s"
        assert settings.realtime.max_subscriptions == 10
        assert settings.realtime.debounce == "500ms"
        assert settings.realtime.table_labels["calculated_emissions"] == "Emissions"
        assert settings.refresh.interval == "30s"
        assert settings.autosave.debounce == "3s"
        assert settings.backend.url == ""

    def test_settings_are_frozen(self) -> None:
        settings = SyncSettings()
        with pytest.raises(ValidationError):
            settings.refresh = None  # type: ignore[misc]

    def test_invalid_duration_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RealtimeSettings(debounce="soon")

    def test_unknown_keys_rejected(self) -> None:
        with pytest.raises(ValidationError):
            RealtimeSettings.model_validate({"debounce_ms": 100})


class TestLoadSettings:
    def test_no_file_no_env(self) -> None:
        assert load_settings(environ={}) == SyncSettings()

    def test_yaml_file(self, tmp_path) -> None:
        path = tmp_path / "esgsync.yaml"
        path.write_text(
            "realtime:\n"
            "  debounce: 250ms\n"
            "  max_subscriptions: 4\n"
            "autosave:\n"
            "  debounce: 1s\n"
            "backend:\n"
            "  url: https://example.test\n"
            "  api_key: anon\n",
            encoding="utf-8",
        )

        settings = load_settings(path, environ={})

        assert settings.realtime.debounce == "250ms"
        assert settings.realtime.max_subscriptions == 4
        assert settings.autosave.debounce == "1s"
        assert settings.autosave.saved_display == "2s"
        assert settings.backend.url == "https://example.test"

    def test_empty_file(self, tmp_path) -> None:
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        assert load_settings(path, environ={}) == SyncSettings()

    def test_env_overrides_file(self, tmp_path) -> None:
        path = tmp_path / "esgsync.yaml"
        path.write_text("refresh:\n  interval: 1m\n", encoding="utf-8")

        settings = load_settings(
            path,
            environ={
                "ESGSYNC__REFRESH__INTERVAL": "10s",
                "ESGSYNC__REALTIME__MAX_SUBSCRIPTIONS": "3",
                "UNRELATED": "x",
            },
        )

        assert settings.refresh.interval == "10s"
        assert settings.realtime.max_subscriptions == 3

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(ConfigError, match="not found"):
            load_settings(tmp_path / "missing.yaml", environ={})

    def test_invalid_yaml(self, tmp_path) -> None:
        path = tmp_path / "bad.yaml"
        path.write_text("realtime: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            load_settings(path, environ={})

    def test_top_level_must_be_mapping(self, tmp_path) -> None:
        path = tmp_path / "list.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="mapping"):
            load_settings(path, environ={})

    def test_short_env_name_rejected(self) -> None:
        with pytest.raises(ConfigError):
            load_settings(environ={"ESGSYNC__REFRESH": "10s"})

    def test_env_path_through_scalar_rejected(self, tmp_path) -> None:
        path = tmp_path / "esgsync.yaml"
        path.write_text("refresh: 5\n", encoding="utf-8")
        with pytest.raises(ConfigError, match="mapping"):
            load_settings(path, environ={"ESGSYNC__REFRESH__INTERVAL": "10s"})

    def test_validation_error_wrapped(self) -> None:
        with pytest.raises(ConfigError) as exc_info:
            load_settings(environ={"ESGSYNC__REALTIME__DEBOUNCE": "often"})
        assert isinstance(exc_info.value.__cause__, ValidationError)


class TestInitLogging:
    @pytest.fixture(autouse=True)
    def restore_package_logger(self):
        logger = logging.getLogger("esgsync")
        handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
        yield
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
        for handler in handlers:
            logger.addHandler(handler)
        logger.setLevel(level)
        logger.propagate = propagate

    def test_stream_handler_only(self) -> None:
        root_handlers = list(logging.getLogger().handlers)

        logger = init_logging(LoggingSettings(level="debug"))

        assert logger.name == "esgsync"
        assert logger.level == logging.DEBUG
        assert not logger.propagate
        assert len(logger.handlers) == 1
        assert logging.getLogger().handlers == root_handlers

    def test_second_call_replaces_own_handlers(self) -> None:
        logger = logging.getLogger("esgsync")
        foreign = logging.NullHandler()
        logger.addHandler(foreign)

        init_logging(LoggingSettings())
        init_logging(LoggingSettings(level="ERROR"))

        assert foreign in logger.handlers
        assert len(logger.handlers) == 2
        assert logger.level == logging.ERROR

    def test_file_handler(self, tmp_path) -> None:
        log_file = tmp_path / "logs" / "esgsync.log"
        logger = init_logging(LoggingSettings(level="WARNING", file_path=str(log_file)))
        file_handlers = [
            h for h in logger.handlers if isinstance(h, TimedRotatingFileHandler)
        ]
        assert len(file_handlers) == 1
        assert log_file.parent.is_dir()

    def test_invalid_level(self) -> None:
        with pytest.raises(ValueError, match="Invalid logging level"):
            init_logging(LoggingSettings(level="LOUD"))
