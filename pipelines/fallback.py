"""Synthetic market snapshots used when no provider variant answers.

The values are fixed constants rather than anything salvaged from a partial
provider response, so a fallback row is always recognizable by its provenance
and reproducible in tests.
"""

from __future__ import annotations

import logging
from datetime import datetime

from pipelines.common import utcnow
from pipelines.model import MarketSnapshot, Provenance, SyncTarget

FALLBACK_MEDIAN_PRICE = 450_000.0
FALLBACK_DAYS_ON_MARKET = 30
FALLBACK_ACTIVE_LISTINGS = 145
FALLBACK_PRICE_PER_SQFT = 250.0
FALLBACK_INVENTORY_MONTHS = 3.5
FALLBACK_SALE_TO_LIST_RATIO = 0.97
FALLBACK_PRICE_REDUCTIONS = 10

logger = logging.getLogger(__name__)


def fallback_snapshot(location: SyncTarget, *, now: datetime | None = None) -> MarketSnapshot:
    """Placeholder snapshot for ``location`` in the current period."""

    now = now or utcnow()
    logger.warning("Using fallback market data for %s.", location.label)
    city, state, zip_code = location.key()
    return MarketSnapshot(
        city=city,
        state=state,
        zip_code=zip_code,
        month=now.month,
        year=now.year,
        median_price=FALLBACK_MEDIAN_PRICE,
        average_price_per_sqft=FALLBACK_PRICE_PER_SQFT,
        days_on_market=FALLBACK_DAYS_ON_MARKET,
        active_listings=FALLBACK_ACTIVE_LISTINGS,
        inventory_months=FALLBACK_INVENTORY_MONTHS,
        sale_to_list_ratio=FALLBACK_SALE_TO_LIST_RATIO,
        price_reductions=FALLBACK_PRICE_REDUCTIONS,
        provenance=Provenance.FALLBACK,
        created_at=now,
    )


__all__ = [
    "FALLBACK_ACTIVE_LISTINGS",
    "FALLBACK_DAYS_ON_MARKET",
    "FALLBACK_INVENTORY_MONTHS",
    "FALLBACK_MEDIAN_PRICE",
    "FALLBACK_PRICE_PER_SQFT",
    "FALLBACK_PRICE_REDUCTIONS",
    "FALLBACK_SALE_TO_LIST_RATIO",
    "fallback_snapshot",
]
