# Centralized logging configuration
import logging
import os
from logging.handlers import RotatingFileHandler

from . import config


def setup_logger(name="surgebot", log_dir=None, level=None):
    """Set up a logger with file rotation and, outside production, console output"""
    log_dir = log_dir or config.LOG_DIR
    level = level or config.LOG_LEVEL
    os.makedirs(log_dir, exist_ok=True)

    logger = logging.getLogger(name)

    # Avoid adding handlers multiple times
    if not logger.handlers:
        logger.setLevel(level)

        file_handler = RotatingFileHandler(
            os.path.join(log_dir, f"{name}.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s [in %(pathname)s:%(lineno)d]"
        ))
        logger.addHandler(file_handler)

        if config.ENV != "production":
            console_handler = logging.StreamHandler()
            console_handler.setFormatter(logging.Formatter(
                "%(asctime)s [%(levelname)s] %(name)s: %(message)s", "%H:%M:%S"
            ))
            logger.addHandler(console_handler)

    return logger
