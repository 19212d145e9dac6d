# src/logging_config.py
#
# Centralized logging configuration for the scheduler service

import logging
import sys
import os


def setup_logging(log_level: str = None):
    """
    Setup console logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
                   Defaults to INFO, or from LOG_LEVEL env var
    """
    if log_level is None:
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()

    formatter = logging.Formatter(
        fmt='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level, logging.INFO))

    # don't stack handlers when the app module is re-imported (uvicorn reload, tests)
    if not any(getattr(h, "_scheduler_console", False) for h in root_logger.handlers):
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setFormatter(formatter)
        console_handler._scheduler_console = True
        root_logger.addHandler(console_handler)

    # Suppress noisy third-party loggers
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return root_logger


# Initialize logging on import
setup_logging()

# Module-level logger for convenience
logger = logging.getLogger(__name__)
