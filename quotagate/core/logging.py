from __future__ import annotations

import logging

from quotagate.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging() -> None:
    # Apply the configured level once; repeated app factories must not stack handlers.
    settings = get_settings()
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=_LOG_FORMAT)
    root.setLevel(level)
    # httpx logs every request at INFO; keep relay chatter at WARNING.
    logging.getLogger("httpx").setLevel(logging.WARNING)
