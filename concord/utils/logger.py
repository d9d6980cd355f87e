#!/usr/bin/env python3
"""
🔍 Centralized Logging System for Concord
Console logging everywhere, rotating files on servers, and structured
JSON output for log aggregation when CONCORD_JSON_LOGS=1.

All component loggers live under the ``concord`` namespace
(``concord.engine``, ``concord.scheduler`` ...) and propagate to the
handlers installed here.
"""

import json
import logging
import logging.handlers
import os
import platform
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict

IS_DEV_MODE = '--dev' in sys.argv or os.getenv('CONCORD_DEV') == '1'
ENABLE_JSON_LOGS = os.getenv('CONCORD_JSON_LOGS', '0') == '1'
ENABLE_FILE_LOGGING = os.getenv('CONCORD_FILE_LOGS', '0' if IS_DEV_MODE else '1') == '1'
MAX_LOG_SIZE = 5 * 1024 * 1024
BACKUP_COUNT = 3


def _get_app_log_dir() -> Path:
    """Get application log directory path-agnostically"""
    env_log_dir = os.getenv('CONCORD_LOG_DIR')
    if env_log_dir:
        return Path(env_log_dir)
    return Path.home() / ".concord" / "logs"


LOG_DIR = _get_app_log_dir()
LOG_LEVEL = logging.INFO

_env_level = os.getenv('CONCORD_LOG_LEVEL')
if _env_level:
    LOG_LEVEL = getattr(logging, _env_level.upper(), LOG_LEVEL)

_RESERVED = {
    'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname', 'levelno',
    'lineno', 'module', 'msecs', 'message', 'pathname', 'process', 'processName',
    'relativeCreated', 'thread', 'threadName', 'exc_info', 'exc_text', 'stack_info',
    'taskName', 'no_color',
}


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for console output."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m'
    }

    def format(self, record: logging.LogRecord) -> str:
        if getattr(record, 'no_color', False):
            return super().format(record)
        color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        original = record.levelname
        record.levelname = f"{color}{original}{self.COLORS['RESET']}"
        try:
            return super().format(record)
        finally:
            record.levelname = original


class JSONFormatter(logging.Formatter):
    """Structured JSON formatter.

    Example output:
        {"timestamp": "2026-03-04T10:30:00.123000Z", "level": "INFO",
         "logger": "concord.engine", "message": "Transition applied",
         "kind": "play_candidate", "targetId": "sand-table"}
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            'timestamp': datetime.fromtimestamp(record.created, tz=timezone.utc).replace(tzinfo=None).isoformat() + 'Z',
            'level': record.levelname,
            'logger': record.name,
            'message': record.getMessage(),
        }
        if record.levelno >= logging.WARNING:
            log_data['source'] = f"{record.filename}:{record.lineno}"
            log_data['function'] = record.funcName
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED or key in log_data:
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data, ensure_ascii=True, sort_keys=True, default=str)


def _file_formatter() -> logging.Formatter:
    if ENABLE_JSON_LOGS:
        return JSONFormatter()
    return logging.Formatter('%(asctime)s | %(name)s | %(levelname)s | %(filename)s:%(lineno)d | %(message)s')


def setup_logger(name: str = "concord", level: Any = None) -> logging.Logger:
    """
    Sets up a logger with console and (optionally) rotating file handlers

    Args:
        name: Logger name; use "concord" to configure every component logger
        level: Optional level override (name or number)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    if isinstance(level, str):
        level = getattr(logging, level.upper(), LOG_LEVEL)
    effective = level or LOG_LEVEL
    logger.setLevel(effective)

    if logger.handlers:
        return logger

    console_handler = logging.StreamHandler()
    console_handler.setLevel(effective)
    if ENABLE_JSON_LOGS:
        console_handler.setFormatter(JSONFormatter())
    elif IS_DEV_MODE or sys.stderr.isatty():
        console_handler.setFormatter(ColoredFormatter('%(asctime)s | %(levelname)s | %(name)s | %(message)s'))
    else:
        console_handler.setFormatter(logging.Formatter('%(asctime)s | %(levelname)s | %(name)s | %(message)s'))
    logger.addHandler(console_handler)

    if ENABLE_FILE_LOGGING:
        try:
            LOG_DIR.mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                LOG_DIR / "concord.log", maxBytes=MAX_LOG_SIZE, backupCount=BACKUP_COUNT, encoding='utf-8'
            )
            file_handler.setLevel(effective)
            file_handler.setFormatter(_file_formatter())
            logger.addHandler(file_handler)

            error_handler = logging.handlers.RotatingFileHandler(
                LOG_DIR / "concord_errors.log", maxBytes=MAX_LOG_SIZE, backupCount=BACKUP_COUNT, encoding='utf-8'
            )
            error_handler.setLevel(logging.ERROR)
            error_handler.setFormatter(_file_formatter())
            logger.addHandler(error_handler)
        except OSError as exc:
            logger.warning("File logging disabled, %s is not writable: %s", LOG_DIR, exc)

    return logger


def log_startup(logger: logging.Logger, component: str) -> None:
    """Log startup banner with basic host information."""
    import psutil

    logger.info(f"🚀 Starting {component}")
    memory = psutil.virtual_memory()
    logger.info(f"🖥️  Platform: {platform.platform()} | 🐍 Python {platform.python_version()}")
    logger.info(f"💾 Memory: {memory.available / (1024**3):.1f}GB available")
    if ENABLE_FILE_LOGGING:
        logger.info(f"📂 Log Directory: {LOG_DIR}")


def log_structured(logger: logging.Logger, level: int, message: str, **context: Any) -> None:
    """Log a message with structured context fields.

    In JSON mode context fields appear as separate JSON keys; otherwise
    they are appended to the message as ``key=value`` pairs.

    Example:
        >>> log_structured(logger, logging.INFO, "Item trashed",
        ...                feature="music", item_id="a1b2c3", remaining=2)
    """
    if not logger.isEnabledFor(level):
        return
    if ENABLE_JSON_LOGS:
        safe = {k if k not in _RESERVED else f"ctx_{k}": v for k, v in context.items()}
        logger.log(level, message, extra=safe)
    elif context:
        context_str = " ".join(f"{k}={v}" for k, v in context.items())
        logger.log(level, f"{message} | {context_str}")
    else:
        logger.log(level, message)
