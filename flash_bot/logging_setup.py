from __future__ import annotations

import logging

from flash_bot.errors import ConfigError

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"

# Per-request and per-frame chatter from the transport libraries.
_QUIET_LOGGERS = ("httpx", "httpcore", "websockets")


def resolve_level(name: str) -> int:
    """Maps a LOG_LEVEL name to its numeric level; unknown names are a config error."""
    level = logging.getLevelName(name.strip().upper())
    if not isinstance(level, int):
        raise ConfigError(f"unknown log level {name!r}", setting_name="LOG_LEVEL")
    return level


def configure_logging(level: str) -> None:
    logging.basicConfig(level=resolve_level(level), format=LOG_FORMAT)
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
