import json
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

from .utils.credential_formatter import mask_secret

_FAILURE_LOGGER_NAME = "keypool_library.failures"


class JsonFormatter(logging.Formatter):
    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.getMessage(),
        }
        return json.dumps(log_record)


def configure_failure_logger(log_dir: str = "logs") -> logging.Logger:
    """Sets up a dedicated JSON logger for failed upstream calls."""
    if not os.path.exists(log_dir):
        os.makedirs(log_dir)

    logger = logging.getLogger(_FAILURE_LOGGER_NAME)
    logger.setLevel(logging.INFO)

    # Prevent logs from propagating to the library logger
    logger.propagate = False

    # Use a rotating file handler to keep log files from growing too large
    handler = RotatingFileHandler(
        os.path.join(log_dir, "failures.log"),
        maxBytes=5 * 1024 * 1024,  # 5 MB
        backupCount=2,
    )
    handler.setFormatter(JsonFormatter())

    # Add handler only if it hasn't been added before
    if not any(isinstance(h, RotatingFileHandler) for h in logger.handlers):
        logger.addHandler(handler)

    return logger


def log_failure(
    credential_id: str,
    secret: str,
    model: Optional[str],
    outcome: str,
    status: Optional[int] = None,
    error: Optional[Exception] = None,
) -> None:
    """Logs a structured message for a failed upstream call.

    Nothing is written until ``configure_failure_logger`` has attached a
    handler; the logger does not propagate.
    """
    logger = logging.getLogger(_FAILURE_LOGGER_NAME)
    if not logger.handlers:
        return

    log_data = {
        "credential_id": credential_id,
        "api_key_ending": mask_secret(secret),
        "model": model,
        "outcome": outcome,
        "status": status,
        "error_type": type(error).__name__ if error else None,
        "error_message": str(error) if error else None,
    }
    logger.error(json.dumps(log_data))
