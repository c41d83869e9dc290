"""Error taxonomy shared by the provider adapters, the store and the batch driver."""

from __future__ import annotations

from typing import Any, Sequence


class MarketSyncError(Exception):
    """Base class for synchronization failures."""


class ConfigurationError(MarketSyncError):
    """A required credential or setting is missing. Never retried or cascaded."""


class ProviderUnavailable(MarketSyncError):
    """Every endpoint variant of a provider operation failed."""

    def __init__(self, message: str, *, attempts: Sequence[Any] = ()) -> None:
        super().__init__(message)
        self.message = message
        self.attempts = tuple(attempts)


class PersistenceError(MarketSyncError):
    """Writing to the local store failed."""

    def __init__(self, message: str, *, original: BaseException | None = None) -> None:
        super().__init__(message)
        self.original = original


__all__ = [
    "ConfigurationError",
    "MarketSyncError",
    "PersistenceError",
    "ProviderUnavailable",
]
