import logging
import os
from logging.handlers import TimedRotatingFileHandler
from typing import Optional

from .config import get_settings

LOG_FORMAT = '[%(asctime)s] %(levelname)s %(name)s: %(message)s'

file_handler = None


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None):
    global file_handler
    cfg = get_settings()
    level = level or cfg.LOG_LEVEL
    log_file = log_file or cfg.LOG_FILE

    root_logger = logging.getLogger()
    root_logger.setLevel(level.upper())
    formatter = logging.Formatter(LOG_FORMAT)
    # Close previous file handler if it exists
    if file_handler:
        file_handler.close()
        file_handler = None
    handlers = []
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        # Daily rotation, keep 14 days
        file_handler = TimedRotatingFileHandler(log_file, when="midnight", interval=1, backupCount=14)
        file_handler.setFormatter(formatter)
        handlers.append(file_handler)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    handlers.append(stream_handler)
    root_logger.handlers = handlers
    root_logger.info("[BOOT] Logging initialized (level=%s, file=%s)", level.upper(), log_file or "-")


def close_logging():
    global file_handler
    if file_handler:
        file_handler.close()
        file_handler = None
