"""Engine logging: one UTC stream handler on the root logger.

The level comes from ``settings.log_level`` (``LOG_LEVEL``) unless the CLI
passes one. Component tags like ``[STAGE]`` go in the message itself.
"""

import logging
import time
from typing import Optional, Union

from core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"
HANDLER_NAME = "swaptrader"

# third-party loggers that drown the engine's own lines at INFO
QUIET_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _level(level: Union[str, int, None]) -> int:
    if isinstance(level, int):
        return level
    name = (level or settings.log_level).upper()
    resolved = logging.getLevelName(name)
    return resolved if isinstance(resolved, int) else logging.INFO


def _engine_handler(root: logging.Logger) -> Optional[logging.Handler]:
    return next((h for h in root.handlers if h.get_name() == HANDLER_NAME), None)


def setup_logging(level: Union[str, int, None] = None) -> logging.Logger:
    """Attach the engine handler once and (re)apply the level."""
    root = logging.getLogger()
    handler = _engine_handler(root)
    if handler is None:
        formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
        formatter.converter = time.gmtime
        handler = logging.StreamHandler()
        handler.set_name(HANDLER_NAME)
        handler.setFormatter(formatter)
        root.addHandler(handler)
        for name in QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    resolved = _level(level)
    root.setLevel(resolved)
    handler.setLevel(resolved)
    return root


def get_logger(name: str) -> logging.Logger:
    """Module logger. Leaves an already configured level alone."""
    if _engine_handler(logging.getLogger()) is None:
        setup_logging()
    return logging.getLogger(name)
