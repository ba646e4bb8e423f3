"""
Logging configuration for the bot and the realtime layer.
"""

import logging
import os
import sys


def setup_logging(name: str = "matchbot.bot", level: str | None = None) -> logging.Logger:
    """Setup a named logger with proper format and a stdout handler."""

    level = (level or os.getenv("LOG_LEVEL") or "INFO").upper()

    # Create logger
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # Remove existing handlers
    logger.handlers.clear()

    # Create console handler with formatting
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)

    formatter = logging.Formatter(
        '[%(asctime)s] [%(name)s] [%(levelname)s] %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    # Prevent propagation to root logger
    logger.propagate = False

    return logger


def token_prefix(token: str | None) -> str | None:
    """First characters of a credential, safe to log."""
    return str(token)[:6] if token else None


def configure_log_level(level: str) -> None:
    """Apply a configured level to the service loggers and their handlers."""
    level = (level or "INFO").upper()
    for logger in (bot_logger, realtime_logger):
        logger.setLevel(level)
        for handler in logger.handlers:
            handler.setLevel(level)


# Global logger instances
bot_logger = setup_logging("matchbot.bot")
realtime_logger = setup_logging("matchbot.realtime")
