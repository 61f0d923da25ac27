"""
Test suite for configuration and structured logging
"""

import json
import sys
import logging

import pytest

from back_office.config import BackOfficeConfig, get_config, reload_config
from back_office.logging_config import JSONFormatter, log_action, setup_logging


class TestConfig:
    """Environment-driven settings"""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("BACK_OFFICE_MAX_FAILED_LOGINS", raising=False)
        config = BackOfficeConfig()

        assert config.max_failed_logins == 5
        assert config.lockout_hours == 24
        assert config.account_number_prefix == "ACCT-"
        assert config.jwt_algorithm == "HS256"

    def test_env_prefix(self, monkeypatch):
        monkeypatch.setenv("BACK_OFFICE_DATABASE_URL", "memory://")
        monkeypatch.setenv("BACK_OFFICE_MAX_FAILED_LOGINS", "3")
        monkeypatch.setenv("BACK_OFFICE_ENABLE_AUDIT_LOGGING", "false")

        config = BackOfficeConfig()

        assert config.database_url == "memory://"
        assert config.max_failed_logins == 3
        assert config.enable_audit_logging is False

    def test_reload(self, monkeypatch):
        monkeypatch.setenv("BACK_OFFICE_API_PORT", "9090")
        assert reload_config().api_port == 9090
        assert get_config().api_port == 9090

        monkeypatch.delenv("BACK_OFFICE_API_PORT")
        assert reload_config().api_port == 8080


class TestJSONFormatter:
    """Structured log lines"""

    def make_record(self, **attrs):
        record = logging.LogRecord("back_office.ledger", logging.INFO, __file__, 10,
                                   "Posted %s", ("entry",), None)
        for key, value in attrs.items():
            setattr(record, key, value)
        return record

    def test_basic_fields(self):
        entry = json.loads(JSONFormatter().format(self.make_record()))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "back_office.ledger"
        assert entry["message"] == "Posted entry"
        assert "timestamp" in entry
        assert "user_id" not in entry

    def test_structured_fields(self):
        record = self.make_record(user_id="tina", action="post_transaction",
                                  resource="txn-1", extra={"amount": "5.00"})

        entry = json.loads(JSONFormatter().format(record))

        assert entry["user_id"] == "tina"
        assert entry["action"] == "post_transaction"
        assert entry["resource"] == "txn-1"
        assert entry["extra"] == {"amount": "5.00"}

    def test_exception_included(self):
        try:
            raise RuntimeError("boom")
        except RuntimeError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))

        assert "RuntimeError: boom" in entry["exception"]


class TestLogAction:
    """log_action helper"""

    def test_attaches_structured_fields(self, caplog):
        logger = logging.getLogger("log_action_test")
        caplog.set_level(logging.INFO, logger="log_action_test")

        log_action(logger, "info", "Account opened", user_id="tina",
                   action="open_account", resource="acct-1", extra={"type": "savings"})

        record = caplog.records[-1]
        assert record.getMessage() == "Account opened"
        assert record.user_id == "tina"
        assert record.action == "open_account"
        assert record.extra == {"type": "savings"}

    def test_respects_level(self, caplog):
        logger = logging.getLogger("log_action_quiet")
        caplog.set_level(logging.WARNING, logger="log_action_quiet")

        log_action(logger, "info", "ignored")

        assert not [r for r in caplog.records if r.name == "log_action_quiet"]


class TestSetupLogging:
    """Handler installation"""

    @pytest.fixture
    def logger_name(self):
        name = "setup_logging_test"
        yield name
        logger = logging.getLogger(name)
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()
        logger.propagate = True

    def test_json_to_file(self, tmp_path, logger_name):
        log_file = tmp_path / "office.log"
        logger = setup_logging("DEBUG", "json", str(log_file), logger_name=logger_name)

        logger.debug("hello")
        for handler in logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip())
        assert entry["message"] == "hello"
        assert logger.level == logging.DEBUG
        assert not logger.propagate

    def test_no_duplicate_handlers(self, logger_name):
        setup_logging(logger_name=logger_name)
        logger = setup_logging(log_format="text", logger_name=logger_name)

        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
