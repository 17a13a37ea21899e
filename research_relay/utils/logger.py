import logging
import os
from logging.handlers import RotatingFileHandler

from research_relay.config import settings

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: str = None, log_path: str = None):
    """
    Configures the root logger with a console handler and a rotating file handler.
    Safe to call more than once; handlers are only attached the first time.
    """
    level = (level or settings.LOG_LEVEL).upper()
    log_path = log_path if log_path is not None else settings.LOG_PATH

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    if getattr(root_logger, "_research_relay_configured", False):
        return root_logger

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_path:
        try:
            os.makedirs(log_path, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(log_path, "research_relay.log"),
                maxBytes=5 * 1024 * 1024,
                backupCount=3,
                encoding="utf-8",
            )
            file_handler.setFormatter(formatter)
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.warning(f"File logging disabled, could not use {log_path}: {e}")

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    root_logger._research_relay_configured = True
    return root_logger
