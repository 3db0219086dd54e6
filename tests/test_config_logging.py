"""
Tests for configuration and structured logging
"""

import json
import logging
from decimal import Decimal

from loan_engine.config import LoanEngineConfig, get_config, reload_config
from loan_engine.logging_config import JSONFormatter, setup_logging, get_logger, log_action


class TestConfig:
    """Test pydantic-settings configuration"""

    def test_defaults(self):
        config = LoanEngineConfig()

        assert config.database_url == "memory://"
        assert config.currency == "NGN"
        assert config.activation_grace_days == 7
        assert config.min_installments == 2
        assert config.max_installments == 365
        assert config.default_penalty_rate == "5"
        assert config.liquidation_amount_tolerance == "1"
        assert config.loan_account_number_attempts == 10
        assert config.enable_audit_logging

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("LOAN_ENGINE_MAX_INSTALLMENTS", "100")
        monkeypatch.setenv("LOAN_ENGINE_DATABASE_URL", "sqlite:///loans.db")

        config = LoanEngineConfig()
        assert config.max_installments == 100
        assert config.database_url == "sqlite:///loans.db"

    def test_reload(self, monkeypatch):
        monkeypatch.setenv("LOAN_ENGINE_ACTIVATION_GRACE_DAYS", "3")
        try:
            assert reload_config().activation_grace_days == 3
            assert get_config().activation_grace_days == 3
        finally:
            monkeypatch.delenv("LOAN_ENGINE_ACTIVATION_GRACE_DAYS")
            reload_config()
        assert get_config().activation_grace_days == 7


class TestLogging:
    """Test JSON and text log output"""

    def test_json_log_action(self, tmp_path):
        log_file = tmp_path / "engine.log"
        logger = setup_logging("INFO", logger_name="loan_engine.test_json", log_file=str(log_file))

        log_action(
            logger, "info", "Loan created", user_id="U1", action="create_loan",
            resource="loan:L1", extra={"principal_amount": "50000"}
        )
        for handler in logger.handlers:
            handler.flush()

        entry = json.loads(log_file.read_text().strip())
        assert entry["message"] == "Loan created"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "loan_engine.test_json"
        assert entry["action"] == "create_loan"
        assert entry["resource"] == "loan:L1"
        assert entry["user_id"] == "U1"
        assert entry["extra"] == {"principal_amount": "50000"}
        assert "correlation_id" not in entry

    def test_level_filtering(self, tmp_path):
        log_file = tmp_path / "engine.log"
        logger = setup_logging("WARNING", logger_name="loan_engine.test_level", log_file=str(log_file))

        log_action(logger, "info", "ignored")
        log_action(logger, "warning", "kept")
        for handler in logger.handlers:
            handler.flush()

        lines = log_file.read_text().strip().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["message"] == "kept"

    def test_text_format(self, tmp_path):
        log_file = tmp_path / "engine.log"
        logger = setup_logging("INFO", logger_name="loan_engine.test_text",
                               log_format="text", log_file=str(log_file))
        logger.info("plain line")
        for handler in logger.handlers:
            handler.flush()

        assert "INFO loan_engine.test_text: plain line" in log_file.read_text()

    def test_setup_replaces_handlers(self):
        logger = setup_logging("INFO", logger_name="loan_engine.test_handlers")
        setup_logging("INFO", logger_name="loan_engine.test_handlers")
        assert len(logger.handlers) == 1
        assert isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert get_logger("loan_engine.test_handlers") is logger

    def test_formatter_serializes_decimals(self):
        record = logging.LogRecord("loan_engine", logging.INFO, __file__, 1, "msg", (), None)
        record.extra = {"amount": Decimal('8950')}

        assert json.loads(JSONFormatter().format(record))["extra"] == {"amount": "8950"}
