"""
Logging configuration

A stdout sink for whoever watches the sync, plus daily-rotated files when
log_to_file is on. Errors also go to their own file, kept longer so failed
runs can be looked at after the fact.
"""
import sys
from typing import Optional

from loguru import logger

from crmpulse.config import Settings, get_settings

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logger(settings: Optional[Settings] = None):
    """(Re)configure every sink from settings"""
    settings = settings or get_settings()
    logger.remove()

    logger.add(sys.stdout, colorize=True, format=CONSOLE_FORMAT, level=settings.log_level.upper())

    if settings.log_to_file:
        logger.add(
            f"{settings.log_dir}/{settings.app_name}_{{time:YYYY-MM-DD}}.log",
            rotation="00:00",
            retention="30 days",
            compression="zip",
            level="INFO",
        )
        logger.add(
            f"{settings.log_dir}/errors_{{time:YYYY-MM-DD}}.log",
            rotation="00:00",
            retention="90 days",
            level="ERROR",
            backtrace=True,
        )

    return logger


log = setup_logger()
