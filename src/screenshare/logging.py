"""Logging configuration for screenshare.

Everything under the "screenshare" logger goes to stderr and, when
configured, to a log file. The WebRTC stack below us logs every STUN
transaction at INFO, so its loggers are capped at WARNING unless the
session itself runs at DEBUG.
"""

import logging
from pathlib import Path

from screenshare.config import Config

LOGGER_NAME = "screenshare"
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# Third-party loggers that flood INFO during ICE gathering.
NOISY_LOGGERS = ("aioice", "aiortc", "libav")

_logger: logging.Logger | None = None


def _level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    return level if isinstance(level, int) else logging.INFO


def _handlers(config: Config) -> list[logging.Handler]:
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if config.log_file:
        log_path = Path(config.log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.insert(0, logging.FileHandler(log_path))

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(config: Config) -> logging.Logger:
    """Configure the screenshare logger from the config.

    Calling it again returns the already configured logger; use
    reset_logging() first to apply a different config.

    Args:
        config: Configuration object with log settings.

    Returns:
        The "screenshare" logger.
    """
    global _logger

    if _logger is not None:
        return _logger

    level = _level(config.log_level)
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)
    logger.handlers.clear()
    for handler in _handlers(config):
        logger.addHandler(handler)
    logger.propagate = False

    library_level = logging.DEBUG if level <= logging.DEBUG else logging.WARNING
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(library_level)

    _logger = logger
    return logger


def reset_logging() -> None:
    """Drop handlers and forget the configured logger. Used by tests."""
    global _logger
    if _logger is None:
        return

    for handler in _logger.handlers:
        handler.close()
    _logger.handlers.clear()
    _logger.propagate = True
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.NOTSET)
    _logger = None
