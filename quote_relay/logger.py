"""Logging helpers for the quote relay service."""

import logging
import os
from datetime import datetime, timezone

LOG_FORMAT = "[%(asctime)s] [%(levelname)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "QuoteRelay") -> logging.Logger:
    """Return a configured :class:`logging.Logger` instance.

    Note: Logging configuration should be done via :func:`configure_logging`
    in the main entry point (main.py) to avoid duplicate handlers.
    """
    return logging.getLogger(name)


def configure_logging(level: str = "INFO", log_dir: str | None = None) -> None:
    """Configure the root logger once for the whole process.

    When ``log_dir`` is given, records are also appended to a file named
    ``app-YYYY-MM-DD.log`` inside that directory.
    """
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        today = datetime.now(timezone.utc).strftime("%Y-%m-%d")
        handlers.append(logging.FileHandler(os.path.join(log_dir, f"app-{today}.log"), encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATEFMT,
        handlers=handlers,
        force=True,  # Force reconfiguration to avoid duplicate handlers
    )
