import logging
import sys
from pathlib import Path

import config

LOGGER_NAME = "token_storage"


def setup_logger():
    logger = logging.getLogger(LOGGER_NAME)
    # Modules call this at import time; configure handlers only once
    if logger.handlers:
        return logger

    logs_dir = Path(config.LOG_DIR)
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger.setLevel(logging.DEBUG)

    file_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
    )
    console_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    )

    # File handler (for detailed logging)
    file_handler = logging.FileHandler(logs_dir / f"{LOGGER_NAME}.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_formatter)

    # Console handler (for basic logging)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(console_formatter)

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger
