"""Logging configuration."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

import structlog

from src.core.config import LoggingConfig, app_config


def setup_logging(config: Optional[LoggingConfig] = None):
    """Configure structured logging."""
    config = config or app_config.logging
    level = getattr(logging, config.log_level.upper())

    # Create logs directory
    log_path = Path(config.log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Rotating file handler, one per log file
    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and \
                Path(handler.baseFilename) == log_path.resolve():
            return

    file_handler = RotatingFileHandler(
        config.log_file,
        maxBytes=config.log_file_max_size_mb * 1024 * 1024,
        backupCount=config.log_file_backup_count,
    )
    file_handler.setLevel(level)
    root_logger.addHandler(file_handler)
