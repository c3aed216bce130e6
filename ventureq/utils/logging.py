"""Logging utilities"""

import logging
from pathlib import Path


LOG_DIR = Path.home() / ".ventureq" / "logs"


def setup_logger(name: str) -> logging.Logger:
    """Configure per-component logging: INFO to file, WARNING to console"""
    logger = logging.getLogger(f"ventureq.{name}")
    logger.setLevel(logging.INFO)

    # Avoid duplicate handlers
    if logger.handlers:
        return logger

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(LOG_DIR / f"{name}.log")
    except OSError:
        # Read-only home (containers, CI): console only
        fh = None

    if fh is not None:
        fh.setLevel(logging.INFO)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    ch = logging.StreamHandler()
    ch.setLevel(logging.WARNING)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    return logger
