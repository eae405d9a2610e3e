"""
Logging configuration for the cache-first search layer.
Provides console logging, optional rotating file output and JSON formatting.
"""

import json
import logging
import logging.handlers
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from common.config import Settings, settings as default_settings

# Extra attributes copied into JSON records when present
_CONTEXT_FIELDS = ("request_id", "cache_key", "provider_id", "cache_type")


class JSONFormatter(logging.Formatter):
    """Custom JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for name in _CONTEXT_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)

        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(config: Optional[Settings] = None) -> logging.Logger:
    """
    Configure logging for the process.

    Sets up:
    - Console logging
    - File logging with rotation (optional)
    - JSON or standard formatting

    Calling it twice is a no-op.
    """
    config = config or default_settings

    root_logger = logging.getLogger()
    if getattr(root_logger, "_search_cache_configured", False):
        return root_logger

    log_level_str = config.log_level.upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    if config.enable_json_logging:
        formatter: logging.Formatter = JSONFormatter()
    else:
        formatter = logging.Formatter(config.log_format, datefmt="%Y-%m-%d %H:%M:%S")

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if config.enable_file_logging:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            filename=config.log_file,
            maxBytes=config.log_max_bytes,
            backupCount=config.log_backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    # Provider HTTP clients are chatty at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"Logging initialized - Level: {log_level_str}")
    logger.info(f"File logging: {'Enabled' if config.enable_file_logging else 'Disabled'}")
    if config.enable_file_logging:
        logger.info(f"Log file: {config.log_file}")
    logger.info(f"JSON logging: {'Enabled' if config.enable_json_logging else 'Disabled'}")

    root_logger._search_cache_configured = True
    return root_logger

