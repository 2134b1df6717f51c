"""
Logging configuration and utilities.

Routes sync and encryption diagnostics to stderr and an optional log file,
and keeps the HTTP client libraries used by the delivery transport and the
connectivity probe at their own, quieter level.
"""

import logging
import sys
from pathlib import Path

from personal_health_sync.utils.exceptions import ConfigurationError
from personal_health_sync.utils.parameters import LoggingConfig

HTTP_CLIENT_LOGGERS = ("httpx", "httpcore")


def resolve_level(name: str) -> int:
    """
    Translate a level name such as ``"debug"`` into its numeric value.

    Raises:
        ConfigurationError: If the name is not a standard logging level.
    """
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ConfigurationError(f"Unknown logging level: {name}")
    return level


def _reset_handlers(logger: logging.Logger) -> None:
    # Commands may configure logging more than once per process.
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def setup_logging(config: LoggingConfig, logger_name: str | None = None) -> logging.Logger:
    """
    Set up logging for the application.

    Args:
        config: Logging configuration.
        logger_name: Optional logger name. If None, configures the root logger.

    Returns:
        Configured logger instance.
    """
    level = resolve_level(config.level)
    logger = logging.getLogger(logger_name)
    logger.setLevel(level)
    _reset_handlers(logger)

    formatter = logging.Formatter(config.format)
    handlers: list[logging.Handler] = []

    if config.console:
        handlers.append(logging.StreamHandler(sys.stderr))

    if config.file:
        log_file = Path(config.file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))

    for handler in handlers:
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    http_level = max(level, resolve_level(config.http_level))
    for name in HTTP_CLIENT_LOGGERS:
        logging.getLogger(name).setLevel(http_level)

    return logger


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance by name (typically ``__name__``)."""
    return logging.getLogger(name)
