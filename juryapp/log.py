import logging
import os
from logging.handlers import RotatingFileHandler

LOGGER_NAME = "juryapp"
DEFAULT_LOG_BACKUP_COUNT = 10
DEFAULT_LOG_MAX_BYTES = 5 * 1024 * 1024

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level="INFO", log_dir=None):
    """Attach handlers to the package logger. Safe to call more than once."""
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level)

    formatter = logging.Formatter(_FORMAT, datefmt=_DATEFMT)

    if not any(getattr(h, "_jury_handler", False) for h in logger.handlers):
        stream = logging.StreamHandler()
        stream.setFormatter(formatter)
        stream._jury_handler = True
        logger.addHandler(stream)

        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            file_handler = RotatingFileHandler(
                os.path.join(log_dir, "juryapp.log"),
                maxBytes=DEFAULT_LOG_MAX_BYTES,
                backupCount=DEFAULT_LOG_BACKUP_COUNT,
            )
            file_handler.setFormatter(formatter)
            file_handler._jury_handler = True
            logger.addHandler(file_handler)

    return logger
