"""
Logging setup for the reconciler service and CLI.
"""

from __future__ import annotations

import logging
import sys


def setup_logging(verbose: bool = False, log_file: str | None = None) -> logging.Logger:
    """
    Set up logging configuration.

    Args:
        verbose: Enable verbose (DEBUG) logging
        log_file: Optional path to a log file

    Returns:
        Logger instance for the sgr package
    """
    level = logging.DEBUG if verbose else logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
        force=True,
    )

    return logging.getLogger("sgr")
