from __future__ import annotations

import logging
import sys

_HANDLER_NAME = "backupledger-console"


def configure_logging(level: str | int = "INFO") -> None:
    """Install a single console handler on the root logger.

    Safe to call more than once; an earlier handler installed here is replaced
    instead of duplicated.
    """
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        if handler.get_name() == _HANDLER_NAME:
            root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    )

    root_logger.setLevel(level.upper() if isinstance(level, str) else level)
    root_logger.addHandler(handler)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
