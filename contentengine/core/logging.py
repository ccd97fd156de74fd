from __future__ import annotations

import logging
import sys

from contentengine.core.config import get_settings


_LOG_FORMAT = "%(asctime)s level=%(levelname)s logger=%(name)s %(message)s"
_HANDLER_NAME = "contentengine"


def configure_logging(level: str | None = None) -> None:
    # Install one stream handler on the root logger; repeated calls only adjust the level.
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if any(getattr(handler, "name", None) == _HANDLER_NAME for handler in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # Keep chatty driver loggers at warning so job events stay readable.
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("arq").setLevel(max(logging.INFO, root.level))
