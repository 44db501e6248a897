from __future__ import annotations

import logging

from marketplace_payments.config import Settings
from marketplace_payments.logging.setup import configure_logging, logging_config


def test_console_only_without_log_dir():
    config = logging_config(Settings(LOG_DIR="", LOG_LEVEL="debug"))

    assert list(config["handlers"]) == ["console"]
    assert config["loggers"]["marketplace_payments"]["level"] == "DEBUG"
    assert config["loggers"]["stripe"]["level"] == "WARNING"


def test_rotating_file_handler(tmp_path):
    log_dir = tmp_path / "logs"
    settings = Settings(LOG_DIR=str(log_dir), LOG_LEVEL="INFO")

    configure_logging(settings)
    logging.getLogger("marketplace_payments.test").info("hello")
    for handler in logging.getLogger("marketplace_payments").handlers:
        handler.flush()

    assert "hello" in (log_dir / "marketplace_payments.log").read_text()
