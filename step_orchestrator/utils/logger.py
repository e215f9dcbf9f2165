"""
Logger module - Logging configuration and utilities

This module provides logging configuration with support for:
- Console logging with a Unicode-safe stream handler
- Rotating file logging
- Configuration from .env / environment variables

All package loggers hang below the ``step_orchestrator`` logger, so the
handlers are attached once and shared.
"""

import logging
import logging.handlers
import os
import sys
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = "step_orchestrator"

# Flag to track if handlers have been attached to the package logger
_logging_initialized = False


class SafeStreamHandler(logging.StreamHandler):
    """
    StreamHandler that never raises on characters the console cannot encode.
    """

    def emit(self, record):
        try:
            msg = self.format(record)
            stream = self.stream
            try:
                stream.write(msg + self.terminator)
            except UnicodeEncodeError:
                encoding = getattr(stream, "encoding", None) or "utf-8"
                safe_msg = msg.encode(encoding, errors="replace").decode(encoding)
                stream.write(safe_msg + self.terminator)
            self.flush()
        except Exception:
            self.handleError(record)


def initialize_logging(
    log_folder: Optional[str] = None,
    log_level: Optional[str] = None,
    enable_console: Optional[bool] = None,
    enable_file: Optional[bool] = None,
    max_bytes: Optional[int] = None,
    backup_count: Optional[int] = None,
    force: bool = False
) -> logging.Logger:
    """
    Attach console and file handlers to the package logger.

    Explicit arguments win over environment variables:
    AGENT_LOG_FOLDER, AGENT_LOG_LEVEL, AGENT_ENABLE_CONSOLE_LOGGING,
    AGENT_ENABLE_FILE_LOGGING, AGENT_LOG_MAX_BYTES, AGENT_LOG_BACKUP_COUNT.

    Args:
        log_folder: Folder for log files (default: ./logs)
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Enable console logging
        enable_file: Enable rotating file logging
        max_bytes: Max file size before rotation (default: 10MB)
        backup_count: Number of backup files to keep
        force: Re-initialize even if handlers were already attached

    Returns:
        The package root logger
    """
    global _logging_initialized

    root = logging.getLogger(ROOT_LOGGER_NAME)
    if _logging_initialized and not force:
        return root

    _logging_initialized = True

    from step_orchestrator.config.env_config import EnvConfig

    EnvConfig.load_env_file()

    log_folder = log_folder or EnvConfig.get("AGENT_LOG_FOLDER", "./logs")
    log_level = (log_level or EnvConfig.get("AGENT_LOG_LEVEL", "INFO")).upper()
    if enable_console is None:
        enable_console = EnvConfig.get_bool("AGENT_ENABLE_CONSOLE_LOGGING", True)
    if enable_file is None:
        enable_file = EnvConfig.get_bool("AGENT_ENABLE_FILE_LOGGING", False)
    if max_bytes is None:
        max_bytes = EnvConfig.get_int("AGENT_LOG_MAX_BYTES", 10 * 1024 * 1024)
    if backup_count is None:
        backup_count = EnvConfig.get_int("AGENT_LOG_BACKUP_COUNT", 5)

    level = getattr(logging, log_level, logging.INFO)
    root.setLevel(level)
    root.handlers.clear()

    if enable_console:
        handler = SafeStreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(name)s | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        root.addHandler(handler)

    if enable_file:
        Path(log_folder).mkdir(parents=True, exist_ok=True)
        log_file = os.path.join(log_folder, f"{ROOT_LOGGER_NAME}.log")
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        root.addHandler(file_handler)

    return root


def get_logger(name: str, level: Optional[str] = None) -> logging.Logger:
    """
    Get or create a logger with standard formatting and .env configuration.

    Handlers are attached to the package root logger on first call; loggers
    for modules outside the package are parented under it so they share
    the same handlers.

    Args:
        name: Logger name (typically __name__)
        level: Optional logging level override (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Configured logger instance
    """
    initialize_logging()

    if name != ROOT_LOGGER_NAME and not name.startswith(ROOT_LOGGER_NAME + "."):
        name = f"{ROOT_LOGGER_NAME}.{name}"

    logger = logging.getLogger(name)
    if level:
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    return logger
