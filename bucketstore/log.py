import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

from flask import g, has_request_context

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        return _CONTROL_CHAR_PATTERN.sub("", value)
    return value


class RequestAwareLogger(logging.LoggerAdapter):
    """Prefix records with ``request_id=...`` while a request is being handled."""

    def process(self, msg, kwargs):
        request_id = getattr(g, "request_id", None) if has_request_context() else None
        if request_id:
            msg = f"request_id={request_id} {msg}"
        return msg, kwargs


def get_logger(name: str) -> RequestAwareLogger:
    return RequestAwareLogger(logging.getLogger(f"bucketstore.{name}"), {})


def configure_logging(level_name: str, logs_dir: Optional[Path]) -> Optional[Path]:
    """Configure the root logger and attach a rotating file handler once.

    Passing ``None`` for *logs_dir* skips the file handler.
    """

    numeric_level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=numeric_level, format=LOG_FORMAT)
    logging.getLogger("bucketstore").setLevel(numeric_level)
    if logs_dir is None:
        return None

    logs_dir.mkdir(parents=True, exist_ok=True)
    log_path = logs_dir / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path
