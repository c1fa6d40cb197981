"""
Logger configuration for PixelMint.
"""

import sys
from pathlib import Path

from loguru import logger

from .config import Settings


def get_log_path(settings: Settings) -> Path:
    """Get the log directory path."""
    return Path(settings.data_dir) / "logs"


def setup_logging(settings: Settings) -> None:
    """Configure Loguru logger based on generation core settings."""
    logger.remove()  # Remove default handler

    log_level = settings.log_level.upper()

    # Console logger
    logger.add(
        sys.stderr,
        level=log_level,
        format="<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        colorize=True,
    )

    if settings.log_to_file:
        log_path = get_log_path(settings)
        log_path.mkdir(parents=True, exist_ok=True)
        log_file = log_path / "pixelmint.log"

        logger.add(
            log_file,
            level=log_level,
            rotation=f"{settings.max_log_size} MB",
            retention="10 days",
            compression="zip",
            encoding="utf-8",
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} - {message}",
            enqueue=True,  # Make logging non-blocking
            backtrace=True,
            diagnose=True,
        )

    logger.info("Logger initialized")
