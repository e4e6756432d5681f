"""
Tests for configuration and logging setup
"""

import json
import logging

import bank_ledger.config as config_module
from bank_ledger.config import LedgerConfig, get_config, reload_config
from bank_ledger.logging_config import JSONFormatter, log_action, setup_logging


class TestLedgerConfig:
    """Test environment-driven settings"""

    def teardown_method(self):
        reload_config()

    def test_defaults(self, monkeypatch):
        for name in ("LEDGER_STORAGE_BACKEND", "LEDGER_CURRENCY", "LEDGER_LOCK_TIMEOUT_SECONDS"):
            monkeypatch.delenv(name, raising=False)
        config = LedgerConfig(_env_file=None)

        assert config.storage_backend == "sqlite"
        assert config.currency == "USD"
        assert config.lock_timeout_seconds == 5.0
        assert config.notification_webhook_url == ""
        assert config.log_format == "json"

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LEDGER_STORAGE_BACKEND", "memory")
        monkeypatch.setenv("LEDGER_LOCK_TIMEOUT_SECONDS", "2.5")
        monkeypatch.setenv("LEDGER_CURRENCY", "EUR")

        config = LedgerConfig(_env_file=None)

        assert config.storage_backend == "memory"
        assert config.lock_timeout_seconds == 2.5
        assert config.currency == "EUR"

    def test_reload_replaces_global(self, monkeypatch):
        before = get_config()
        monkeypatch.setenv("LEDGER_NOTIFICATION_WORKERS", "7")

        reloaded = reload_config()

        assert reloaded is not before
        assert reloaded.notification_workers == 7
        assert get_config() is reloaded
        assert config_module._config is reloaded

    def test_environment_read_on_first_use(self, monkeypatch):
        monkeypatch.setattr(config_module, "_config", None)
        monkeypatch.setenv("LEDGER_LOCK_TIMEOUT_SECONDS", "1.5")

        assert get_config().lock_timeout_seconds == 1.5
        assert get_config() is get_config()


class TestLogging:
    """Test structured logging helpers"""

    def test_json_formatter_drops_empty_fields(self):
        logger = logging.getLogger("ledger.test.formatter")
        record = logger.makeRecord(logger.name, logging.INFO, __name__, 0, "credit committed", (), None)
        record.correlation_id = "corr-9"

        data = json.loads(JSONFormatter().format(record))

        assert data['message'] == "credit committed"
        assert data['correlation_id'] == "corr-9"
        assert data['level'] == "INFO"
        assert "user_id" not in data

    def test_setup_logging_writes_json_file(self, tmp_path):
        log_file = tmp_path / "ledger.log"
        logger = setup_logging(level="DEBUG", log_file=str(log_file), logger_name="ledger_test_file")

        log_action(logger, "INFO", "Account opened", user_id="teller-1",
                   action="open_account", resource="account:2026000001",
                   extra={'email': "ada@example.com"})
        for handler in logger.handlers:
            handler.flush()

        line = json.loads(log_file.read_text().strip().splitlines()[-1])
        assert line['message'] == "Account opened"
        assert line['user_id'] == "teller-1"
        assert line['action'] == "open_account"
        assert line['extra'] == {'email': "ada@example.com"}
        assert not logger.propagate

        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    def test_setup_logging_replaces_handlers(self):
        setup_logging(logger_name="ledger_test_dupes")
        logger = setup_logging(log_format="text", logger_name="ledger_test_dupes")

        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        logger.removeHandler(logger.handlers[0])

    def test_log_action_respects_level(self):
        logger = logging.getLogger("ledger_test_level")
        logger.setLevel(logging.WARNING)
        captured = []
        handler = logging.Handler()
        handler.emit = captured.append
        logger.addHandler(handler)
        try:
            log_action(logger, "INFO", "ignored")
            log_action(logger, "ERROR", "kept", correlation_id="c-1")
        finally:
            logger.removeHandler(handler)

        assert [r.getMessage() for r in captured] == ["kept"]
        assert captured[0].correlation_id == "c-1"
