"""Error taxonomy for the discovery pipeline.

Only ``ConfigError`` and ``ExhaustedRetries`` are meant to reach the
process boundary; everything else is contained and logged by the
component that owns the failing resource.
"""

from __future__ import annotations


class FlashBotError(Exception):
    """Base class for pipeline errors."""


class TransportError(FlashBotError):
    """Connection-level failure. Triggers a reconnect."""

    def __init__(self, message: str, code: int | None = None) -> None:
        super().__init__(message)
        self.code = code


class DecodeError(FlashBotError):
    """Malformed event or call payload. The item is dropped, never retried."""


class QueryError(FlashBotError):
    """A single read failed. The account is skipped for this scan cycle only."""


class ConfigError(FlashBotError):
    """Missing or invalid startup configuration. Fatal."""

    def __init__(self, message: str, setting_name: str | None = None) -> None:
        super().__init__(message)
        self.setting_name = setting_name


class ExhaustedRetries(FlashBotError):
    """Reconnect attempts exceeded. Fatal; the process must exit."""

    def __init__(self, attempts: int) -> None:
        super().__init__(f"gave up after {attempts} reconnect attempts")
        self.attempts = attempts
