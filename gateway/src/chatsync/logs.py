from __future__ import annotations

import logging
import sys
from typing import TextIO

_DEFAULT_FMT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"
_HANDLER_NAME = "chatsync-stream"


def setup_logging(level: str = "INFO", stream: TextIO | None = None) -> logging.Logger:
    """Attach a single stream handler to the ``chatsync`` logger.

    Calling it again replaces the handler instead of stacking duplicates.
    """

    logger = logging.getLogger("chatsync")
    for handler in list(logger.handlers):
        if handler.get_name() == _HANDLER_NAME:
            logger.removeHandler(handler)

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(_DEFAULT_FMT, datefmt=_DEFAULT_DATEFMT))
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
    return logger
