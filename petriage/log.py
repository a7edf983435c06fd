from __future__ import annotations

import logging

from rich.console import Console
from rich.logging import RichHandler

ROOT_LOGGER = "petriage"


def setup_logging(level: str = "WARNING") -> logging.Logger:
    """Attach one stderr RichHandler to the package logger; safe to call repeatedly."""
    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(getattr(logging, level.upper(), logging.WARNING))
    logger.propagate = False
    if not any(isinstance(h, RichHandler) for h in logger.handlers):
        logger.addHandler(
            RichHandler(
                console=Console(stderr=True),
                show_path=False,
                rich_tracebacks=True,
                markup=False,
            )
        )
    return logger
