"""
Logging Configuration Module

Structured logging setup with file rotation and credential redaction for
the Velar pipeline. API keys travel in query strings and SDK error texts,
so every handler gets a CredentialFilter.
"""

import json
import logging
import logging.handlers
import re
import sys
import traceback
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional


class CredentialFilter(logging.Filter):
    """Filter to redact API keys and home directory paths from log records."""

    def __init__(self, home: Optional[str] = None):
        super().__init__()
        home = home or str(Path.home())
        self.sensitive_patterns = [
            (re.compile(r'([?&]key=)[^&\s\'"]+'), r'\1[REDACTED]'),
            (re.compile(r'AIza[0-9A-Za-z_\-]{20,}'), '[REDACTED]'),
            (re.compile(r'(api[_-]?key["\']?\s*[:=]\s*["\']?)[^"\'\s,}]+', re.IGNORECASE), r'\1[REDACTED]'),
        ]
        if home and home not in ('/', '\\'):
            self.sensitive_patterns.append((re.compile(re.escape(home)), '~'))

    def redact(self, message: str) -> str:
        for pattern, replacement in self.sensitive_patterns:
            message = pattern.sub(replacement, message)
        return message

    def filter(self, record: logging.LogRecord) -> bool:
        """Render the message once, redact it and drop the args."""
        try:
            message = record.getMessage()
        except (TypeError, ValueError):
            message = str(record.msg)
        record.msg = self.redact(message)
        record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """JSON formatter for structured file logs."""

    RESERVED = {
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename', 'module', 'lineno',
        'funcName', 'created', 'msecs', 'relativeCreated', 'thread', 'threadName', 'processName',
        'process', 'exc_info', 'exc_text', 'stack_info', 'taskName', 'message',
    }

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created).isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
            'function': record.funcName,
            'line': record.lineno
        }

        if record.exc_info and record.exc_info[0]:
            log_data['exception'] = {
                'type': record.exc_info[0].__name__,
                'message': str(record.exc_info[1]),
                'traceback': traceback.format_exception(*record.exc_info)
            }

        for key, value in record.__dict__.items():
            if key not in self.RESERVED:
                log_data[f'extra_{key}'] = value

        return json.dumps(log_data, default=str, ensure_ascii=False)


class ApplicationLogger:
    """
    Application logging manager.

    Configures the root logger with a rotating file handler (JSON by
    default) and an optional console handler, both redacting credentials.
    """

    def __init__(
        self,
        app_name: str = "velar",
        log_dir: Optional[Path] = None,
        log_level: str = "INFO",
        max_file_size: int = 5 * 1024 * 1024,  # 5MB
        backup_count: int = 3,
        enable_console: bool = True,
        enable_json: bool = True
    ):
        """
        Initialize application logger.

        Args:
            app_name: Application name for log file naming
            log_dir: Directory for log files (default: ./logs)
            log_level: Minimum log level to capture
            max_file_size: Maximum size of each log file in bytes
            backup_count: Number of backup log files to keep
            enable_console: Whether to log to the console (stderr)
            enable_json: Whether to use JSON formatting for file logs
        """
        self.app_name = app_name
        self.log_dir = Path(log_dir) if log_dir else Path("logs")
        self.log_level = self._parse_level(log_level)
        self.max_file_size = max_file_size
        self.backup_count = backup_count
        self.enable_console = enable_console
        self.enable_json = enable_json
        self.credential_filter = CredentialFilter()

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self._configure_root_logger()

    @staticmethod
    def _parse_level(level: str) -> int:
        value = logging.getLevelName(str(level).upper())
        if not isinstance(value, int):
            raise ValueError(f"Unknown log level: {level}")
        return value

    @property
    def log_file(self) -> Path:
        return self.log_dir / f"{self.app_name}.log"

    def _configure_root_logger(self) -> None:
        root_logger = logging.getLogger()
        root_logger.setLevel(self.log_level)

        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        file_handler = logging.handlers.RotatingFileHandler(
            self.log_file,
            maxBytes=self.max_file_size,
            backupCount=self.backup_count,
            encoding='utf-8'
        )
        if self.enable_json:
            file_handler.setFormatter(JSONFormatter())
        else:
            file_handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
        root_logger.addHandler(file_handler)

        if self.enable_console:
            console_handler = logging.StreamHandler(sys.stderr)
            console_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
            root_logger.addHandler(console_handler)

        for handler in root_logger.handlers:
            handler.addFilter(self.credential_filter)

        # httpx logs full request URLs at INFO, including the key parameter
        logging.getLogger('httpx').setLevel(max(self.log_level, logging.WARNING))

    def set_log_level(self, level: str) -> None:
        """
        Change the log level of the root logger.

        Args:
            level: New log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        """
        self.log_level = self._parse_level(level)
        logging.getLogger().setLevel(self.log_level)


_app_logger: Optional[ApplicationLogger] = None


def setup_logging(
    log_dir: Optional[Path] = None,
    log_level: str = "INFO",
    enable_console: bool = True,
    enable_json: bool = True
) -> ApplicationLogger:
    """
    Set up application logging.

    Returns:
        Configured ApplicationLogger instance
    """
    global _app_logger

    _app_logger = ApplicationLogger(
        log_dir=log_dir,
        log_level=log_level,
        enable_console=enable_console,
        enable_json=enable_json
    )
    return _app_logger


def get_logger(name: str) -> logging.Logger:
    """Get a module logger; handlers live on the root logger."""
    return logging.getLogger(name)
