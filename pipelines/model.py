"""Canonical data model for market snapshots and listings synchronized from providers."""

from __future__ import annotations

import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

SELLERS_MARKET = "Seller's Market"
BUYERS_MARKET = "Buyer's Market"
BALANCED_MARKET = "Balanced"

_DIRECTIONS = {
    "north": "n",
    "south": "s",
    "east": "e",
    "west": "w",
    "northeast": "ne",
    "northwest": "nw",
    "southeast": "se",
    "southwest": "sw",
}
_STREET_TYPES = {
    "street": "st",
    "avenue": "ave",
    "boulevard": "blvd",
    "drive": "dr",
    "lane": "ln",
    "road": "rd",
    "court": "ct",
    "place": "pl",
    "circle": "cir",
    "terrace": "ter",
    "highway": "hwy",
    "parkway": "pkwy",
}


class Provenance(str, Enum):
    """Where a stored or returned record came from."""

    API = "api"
    FALLBACK = "fallback"
    EXISTING = "existing"
    EXCEPTION = "exception"
    FALLBACK_ERROR = "fallback_error"


class _Model(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        str_strip_whitespace=True,
        frozen=True,
    )


def determine_market_type(inventory_months: Any) -> str:
    """Classify a market from its months of inventory."""

    try:
        months = float(inventory_months)
    except (TypeError, ValueError):
        return BALANCED_MARKET
    if months != months:  # NaN
        return BALANCED_MARKET
    if months < 3:
        return SELLERS_MARKET
    if months > 6:
        return BUYERS_MARKET
    return BALANCED_MARKET


def normalize_address(address: str | None) -> str:
    """Lowercase, abbreviate street types and directions, strip punctuation."""

    if not address:
        return ""
    addr = str(address).lower().strip()
    addr = re.sub(r"[.,#]", " ", addr)
    words = [_STREET_TYPES.get(word, _DIRECTIONS.get(word, word)) for word in addr.split()]
    return " ".join(words)


def normalize_zip(zip_code: str | None) -> str:
    if not zip_code:
        return ""
    digits = re.sub(r"\D", "", str(zip_code))
    return digits[:5]


class SyncTarget(_Model):
    """A location descriptor refreshed in one synchronization pass."""

    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _blank_zip_is_none(cls, data: Any) -> Any:
        if isinstance(data, dict):
            for key in ("zip_code", "zipCode"):
                if key in data and not str(data[key] or "").strip():
                    data = {**data, key: None}
        return data

    @property
    def label(self) -> str:
        suffix = f" {self.zip_code}" if self.zip_code else ""
        return f"{self.city}, {self.state}{suffix}"

    def key(self) -> tuple[str, str, str]:
        """Natural location key; a missing zip is stored as the empty string."""
        return self.city, self.state, self.zip_code or ""


class MarketSnapshot(_Model):
    """Market statistics for one location and one calendar month."""

    city: str
    state: str
    zip_code: str = ""
    month: int = Field(..., ge=1, le=12)
    year: int = Field(..., ge=1900)
    median_price: float
    average_price_per_sqft: Optional[float] = None
    days_on_market: Optional[int] = None
    active_listings: Optional[int] = None
    inventory_months: Optional[float] = None
    sale_to_list_ratio: Optional[float] = None
    price_reductions: Optional[int] = None
    market_type: str = BALANCED_MARKET
    provenance: Provenance
    created_at: datetime

    @model_validator(mode="before")
    @classmethod
    def _derive_market_type(cls, data: Any) -> Any:
        if isinstance(data, dict):
            if data.get("zip_code", data.get("zipCode")) is None:
                data = {k: v for k, v in data.items() if k not in ("zip_code", "zipCode")}
                data["zip_code"] = ""
            if not data.get("market_type") and not data.get("marketType"):
                inventory = data.get("inventory_months", data.get("inventoryMonths"))
                data = {**data, "market_type": determine_market_type(inventory)}
        return data

    def key(self) -> tuple[str, str, str, int, int]:
        return self.city, self.state, self.zip_code, self.month, self.year


class Property(_Model):
    """A single listing, either stored locally or returned by a provider."""

    external_id: Optional[str] = None
    address: str
    city: str
    state: str
    zip_code: str = ""
    price: Optional[float] = None
    beds: Optional[int] = None
    baths: Optional[float] = None
    sqft: Optional[float] = None
    property_type: Optional[str] = None
    status: Optional[str] = None
    source: Optional[str] = None
    provenance: Provenance = Provenance.API

    @property
    def address_key(self) -> str:
        return f"addr:{normalize_address(self.address)}|{normalize_zip(self.zip_code)}"

    @property
    def identity_key(self) -> str:
        """External id when the provider assigned one, else normalized address + zip."""
        if self.external_id and self.external_id.strip():
            return f"id:{self.external_id.strip()}"
        return self.address_key


class SaleRecord(_Model):
    sale_date: Optional[date] = None
    amount: Optional[float] = None
    document_type: Optional[str] = None


class PersistResult(_Model):
    """Outcome of reconciling one snapshot into the local store."""

    success: bool
    provenance: Provenance
    snapshot: Optional[MarketSnapshot] = None
    error: Optional[str] = None


class SyncResult(_Model):
    target: SyncTarget
    success: bool
    source: Provenance
    error: Optional[str] = None
    snapshot: Optional[MarketSnapshot] = None
    variant: Optional[str] = Field(
        default=None, description="Endpoint variant that answered; diagnostics only."
    )


class SyncSummary(_Model):
    """Aggregate of one batch run. Only ``api`` results count as successes."""

    results: list[SyncResult] = Field(default_factory=list)
    errors: list[SyncResult] = Field(default_factory=list)
    total_attempted: int = 0
    total_success: int = 0
    total_errors: int = 0
    completion_rate: float = Field(0.0, ge=0.0, le=1.0)
    provenance_counts: dict[str, int] = Field(default_factory=dict)
    cancelled: bool = False
    pending: list[SyncTarget] = Field(default_factory=list)

    @classmethod
    def from_results(
        cls,
        outcomes: list[SyncResult],
        *,
        pending: list[SyncTarget] | None = None,
        cancelled: bool = False,
    ) -> "SyncSummary":
        results = [outcome for outcome in outcomes if outcome.source is Provenance.API]
        errors = [outcome for outcome in outcomes if outcome.source is not Provenance.API]
        counts: dict[str, int] = {}
        for outcome in outcomes:
            counts[outcome.source.value] = counts.get(outcome.source.value, 0) + 1
        attempted = len(outcomes)
        return cls(
            results=results,
            errors=errors,
            total_attempted=attempted,
            total_success=len(results),
            total_errors=len(errors),
            completion_rate=(len(results) / attempted) if attempted else 0.0,
            provenance_counts=counts,
            cancelled=cancelled,
            pending=list(pending or []),
        )


class ListingSyncResult(_Model):
    """Outcome of pulling MLS listings into the local store.

    ``status`` is ``success``, ``warning`` (nothing to do, e.g. no credential)
    or ``error``.
    """

    status: str
    message: str
    fetched: int = 0
    stored: int = 0
    synced_at: Optional[datetime] = None


class SyncStatus(_Model):
    """Last recorded run of a named job."""

    status_key: str
    status: str
    records: int = 0
    message: Optional[str] = None
    synced_at: datetime


class PropertyFilters(_Model):
    """Search filters shared by the local store query and the MLS feed query."""

    location: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    property_type: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    min_beds: Optional[int] = None
    min_baths: Optional[float] = None
    min_sqft: Optional[float] = None
    max_sqft: Optional[float] = None
    status: Optional[str] = None
    limit: int = Field(50, ge=1, le=500)
    live: Optional[bool] = Field(
        default=None,
        description="Force (True) or suppress (False) the live provider lookup; None decides automatically.",
    )


__all__ = [
    "BALANCED_MARKET",
    "BUYERS_MARKET",
    "SELLERS_MARKET",
    "ListingSyncResult",
    "MarketSnapshot",
    "PersistResult",
    "Property",
    "PropertyFilters",
    "Provenance",
    "SaleRecord",
    "SyncResult",
    "SyncSummary",
    "SyncStatus",
    "SyncTarget",
    "determine_market_type",
    "normalize_address",
    "normalize_zip",
]
