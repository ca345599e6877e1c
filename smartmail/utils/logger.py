import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logger(
    name: str = "smartmail",
    log_dir: Optional[str] = None,
    level: Optional[str] = None,
) -> logging.Logger:
    """
    Configure the application logger: rotating file plus stderr.

    Batch jobs run for minutes, so the file log is what operators read after
    the fact; stderr is for interactive CLI runs.
    """
    log_dir = log_dir or os.environ.get(
        "SMARTMAIL_LOG_DIR", os.path.join(os.path.expanduser("~"), ".smartmail", "logs")
    )
    level = level or os.environ.get("SMARTMAIL_LOG_LEVEL", "INFO")

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # Re-running setup (tests, CLI re-entry) must not stack handlers
    if logger.handlers:
        return logger

    formatter = logging.Formatter(LOG_FORMAT)

    try:
        os.makedirs(log_dir, exist_ok=True)
        # Max 5MB, keep 3 backups
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, "smartmail.log"),
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
    except OSError as e:
        sys.stderr.write(f"SmartMail: file logging disabled ({e})\n")

    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    return logger


logger = setup_logger()
