"""Logging setup for TradeGuard.

Modules log through ``logging.getLogger(__name__)``, so configuring the
``tradeguard`` logger once at startup covers the whole package.
"""

import logging
import logging.handlers
import os

LOG_FORMAT = "%(asctime)s [%(levelname)s] [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"  # ISO 8601

LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def configure_from_settings(settings, name: str = "tradeguard") -> logging.Logger:
    """Attach a console handler, and a rotating file handler when enabled.

    Calling it again only updates the level.

    Raises:
        ValueError: If ``settings.log_level`` is not a standard level name
    """
    logger = logging.getLogger(name)

    level = settings.log_level.upper()
    if level not in LEVELS:
        raise ValueError(f"Invalid log level: {settings.log_level}. Must be one of: {', '.join(LEVELS)}")
    logger.setLevel(getattr(logging, level))

    if logger.handlers:
        return logger

    handlers = [logging.StreamHandler()]
    if settings.log_to_file:
        os.makedirs(settings.log_dir, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                os.path.join(settings.log_dir, f"{name}.log"),
                maxBytes=settings.log_max_bytes,
                backupCount=settings.log_backup_count,
            )
        )

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    return logger
