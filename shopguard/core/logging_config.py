# shopguard/core/logging_config.py
"""Logging configuration with redaction of credentials and personal data"""

import os
import re
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any


SENSITIVE_FIELDS = (
    'password', 'token', 'email', 'user_id', 'phone',
    'credit_card', 'api_key', 'secret', 'authorization'
)

_EMAIL_RE = re.compile(r'([A-Za-z0-9._%+-]{1,2})[A-Za-z0-9._%+-]*@([A-Za-z0-9.-]+\.[A-Za-z]{2,})')
_BEARER_RE = re.compile(r'(Bearer\s+)[A-Za-z0-9._~+/=-]+', re.IGNORECASE)


def mask_value(value: Any) -> Any:
    """Mask e-mail addresses and bearer tokens inside a string"""
    if not isinstance(value, str):
        return value
    value = _EMAIL_RE.sub(r'\1***@\2', value)
    return _BEARER_RE.sub(r'\1***', value)


def redact(data: Any) -> Any:
    """Recursively replace sensitive mapping entries with '***'"""
    if isinstance(data, dict):
        cleaned = {}
        for key, value in data.items():
            if any(field in str(key).lower() for field in SENSITIVE_FIELDS):
                cleaned[key] = '***'
            else:
                cleaned[key] = redact(value)
        return cleaned
    if isinstance(data, (list, tuple)):
        return type(data)(redact(v) for v in data)
    return mask_value(data)


class RedactingFilter(logging.Filter):
    """Scrubs e-mails and tokens from log messages before any handler sees them"""

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_value(record.msg)
        if isinstance(record.args, dict):
            record.args = redact(record.args)
        elif isinstance(record.args, tuple):
            record.args = tuple(redact(a) for a in record.args)
        return True


def setup_logging():
    """Configure the logging system"""
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_dir = Path(os.getenv("LOG_DIR", "logs"))

    log_dir.mkdir(parents=True, exist_ok=True)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    redacting_filter = RedactingFilter()

    # Console handler (attach once)
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler)
               for h in root_logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        console_handler.addFilter(redacting_filter)
        root_logger.addHandler(console_handler)

    # Rotating file handler, 5 MB per file, 5 backups
    log_file = log_dir / 'shopguard.log'
    if not any(isinstance(h, RotatingFileHandler) and h.baseFilename == str(log_file.resolve())
               for h in root_logger.handlers):
        file_handler = RotatingFileHandler(
            filename=str(log_file),
            maxBytes=5 * 1024 * 1024,  # 5 MB
            backupCount=5,
            encoding='utf-8'
        )
        file_handler.setFormatter(formatter)
        file_handler.addFilter(redacting_filter)
        root_logger.addHandler(file_handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return root_logger
