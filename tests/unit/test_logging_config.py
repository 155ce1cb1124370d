"""Unit tests for logging setup."""
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

import structlog

from src.core.config import LoggingConfig
from src.utils.logging_config import setup_logging


def file_handlers(path: Path):
    return [
        h for h in logging.getLogger().handlers
        if isinstance(h, RotatingFileHandler) and Path(h.baseFilename) == path.resolve()
    ]


class TestSetupLogging:
    """Test structlog and file handler configuration."""

    def test_creates_log_directory_and_handler(self, tmp_path, restore_logging):
        log_file = tmp_path / "logs" / "bot.log"
        config = LoggingConfig(
            log_level="DEBUG",
            log_file=str(log_file),
            log_file_max_size_mb=1,
            log_file_backup_count=2,
        )

        setup_logging(config)

        assert log_file.parent.is_dir()
        handlers = file_handlers(log_file)
        assert len(handlers) == 1
        assert handlers[0].maxBytes == 1024 * 1024
        assert handlers[0].backupCount == 2
        assert handlers[0].level == logging.DEBUG

    def test_repeated_setup_adds_one_handler(self, tmp_path, restore_logging):
        log_file = tmp_path / "bot.log"
        config = LoggingConfig(log_file=str(log_file))

        setup_logging(config)
        setup_logging(config)

        assert len(file_handlers(log_file)) == 1

    def test_structlog_renders_json(self, tmp_path, restore_logging):
        setup_logging(LoggingConfig(log_file=str(tmp_path / "bot.log")))

        assert structlog.is_configured()
        processors = structlog.get_config()['processors']
        assert isinstance(processors[-1], structlog.processors.JSONRenderer)
