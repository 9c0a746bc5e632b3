"""Functions for logging."""

import logging


def setup_logger(level: str) -> None:
    """Configure the root logger so every module logs to stderr."""
    level_value = getattr(logging, level.upper(), logging.INFO)
    root_logger = logging.getLogger()
    root_logger.setLevel(level_value)
    # Remove all handlers associated with the root logger (avoid duplicate logs)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root_logger.addHandler(handler)
    # urllib3 logs every retried connection at warning level; our own retry log is enough
    logging.getLogger("urllib3").setLevel(max(level_value, logging.ERROR))
