import logging
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def configure_logging(level: Optional[str] = None) -> logging.Logger:
    """Configure the root ``agentchat`` logger with a console handler."""
    from config.settings import settings

    logger = logging.getLogger("agentchat")
    logger.setLevel((level or settings.LOG_LEVEL).upper())
    logger.propagate = False  # Prevent double logging

    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(handler)

    return logger
