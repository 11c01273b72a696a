from __future__ import annotations

import logging

from remindrelay.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure root logging once per process; repeated app factories must not stack handlers.
    global _configured
    level_name = get_settings().log_level.upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    root.setLevel(level)
    if _configured:
        return
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_LOG_FORMAT))
        root.addHandler(handler)
    # Keep per-request HTTP client chatter out of delivery logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
