from __future__ import annotations

import logging

from shiftcall.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging() -> None:
    # Configure root logging once per process so API, worker and scripts share one format.
    global _configured
    if _configured:
        return
    settings = get_settings()
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    logging.basicConfig(level=level, format=_LOG_FORMAT)
    # Provider SDK chatter drowns delivery logs at INFO.
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    _configured = True
