import logging
import sys
from typing import Optional

from loguru import logger
from mailsync.config import settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {extra[name]}:{function}:{line} | {message}"

# Libraries that log every pooled connection or retried request at INFO
NOISY_LOGGERS = ("urllib3", "sqlalchemy.engine", "celery.worker.strategy")


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None):
    """
    Configure Loguru sinks for the API process and Celery workers.

    Args:
        level: Minimum level, defaults to LOG_LEVEL
        log_file: Optional rotating file sink, defaults to LOG_FILE
    """
    level = level or settings.log_level
    log_file = log_file or settings.log_file

    logger.remove()
    logger.add(
        sys.stdout,
        format=CONSOLE_FORMAT,
        level=level,
        colorize=True,
        backtrace=True,
        diagnose=settings.debug,
    )

    if log_file:
        logger.add(
            log_file,
            format=FILE_FORMAT,
            level=level,
            rotation="500 MB",
            retention="10 days",
            compression="zip",
            backtrace=True,
            diagnose=False,
        )

    if not settings.debug:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    return logger


# Records logged without a bound name still need one for the format string
logger.configure(extra={"name": "mailsync"})


def get_logger(name: str = None):
    """Get a logger bound to a component name, e.g. ``get_logger("gmail_connector")``."""
    if name:
        return logger.bind(name=name)
    return logger
