"""Logging setup for host applications without their own configuration."""

from __future__ import annotations

import logging

from chat_sync.core.settings import Settings, settings as default_settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def configure_logging(level: str | int | None = None, config: Settings | None = None) -> None:
    """Install a basic stream handler on the ``chat_sync`` logger.

    Does nothing if the logger already has handlers, so calling it twice (or
    from a host that configured logging itself) is harmless.
    """
    cfg = config or default_settings
    logger = logging.getLogger("chat_sync")
    logger.setLevel(level if level is not None else cfg.log_level.upper())
    if logger.handlers:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
