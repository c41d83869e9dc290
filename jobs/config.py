"""Static configuration for sync targets and provider settings."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Iterable

from pipelines.common import DEFAULT_TIMEOUT_SECONDS
from pipelines.model import SyncTarget


@dataclass(frozen=True)
class TargetConfig:
    """A named location refreshed by the scheduled sync."""

    key: str
    city: str
    state: str
    zip_code: str | None = None

    def to_target(self) -> SyncTarget:
        return SyncTarget(city=self.city, state=self.state, zip_code=self.zip_code)


TARGET_LOCATIONS: tuple[TargetConfig, ...] = (
    TargetConfig(key="canton_ga", city="Canton", state="GA", zip_code="30115"),
    TargetConfig(key="woodstock_ga", city="Woodstock", state="GA", zip_code="30188"),
    TargetConfig(key="alpharetta_ga", city="Alpharetta", state="GA", zip_code="30004"),
    TargetConfig(key="atlanta_ga", city="Atlanta", state="GA"),
)


def get_target_by_key(key: str) -> TargetConfig | None:
    for target in TARGET_LOCATIONS:
        if target.key == key:
            return target
    return None


def iter_targets(keys: Iterable[str] | None = None) -> Iterable[TargetConfig]:
    if keys is None:
        return TARGET_LOCATIONS
    selected = []
    for key in keys:
        target = get_target_by_key(key)
        if target:
            selected.append(target)
    return tuple(selected)


@dataclass(frozen=True)
class ProviderSettings:
    """Process-wide, read-only provider configuration resolved at startup."""

    attom_api_key: str | None = None
    attom_base_url: str | None = None
    mls_api_key: str | None = None
    mls_base_url: str | None = None
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    max_concurrency: int = 1
    market_data_max_age_hours: float = 24.0

    @classmethod
    def from_env(cls) -> "ProviderSettings":
        return cls(
            attom_api_key=os.getenv("ATTOM_API_KEY") or None,
            attom_base_url=os.getenv("ATTOM_BASE_URL") or None,
            mls_api_key=os.getenv("MLS_API_KEY") or None,
            mls_base_url=os.getenv("MLS_BASE_URL") or None,
            timeout_seconds=float(os.getenv("PROVIDER_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS)),
            max_concurrency=max(1, int(os.getenv("SYNC_MAX_CONCURRENCY", "1"))),
            market_data_max_age_hours=float(os.getenv("MARKET_DATA_MAX_AGE_HOURS", "24")),
        )

    @property
    def has_any_credentials(self) -> bool:
        return bool(self.attom_api_key or self.mls_api_key)


__all__ = [
    "ProviderSettings",
    "TARGET_LOCATIONS",
    "TargetConfig",
    "get_target_by_key",
    "iter_targets",
]
