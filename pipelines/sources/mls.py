"""MLS listing feed (Datafiniti-style search API) adapter."""

from __future__ import annotations

import logging
import os
from typing import Any, Mapping

import httpx

from pipelines.common import DEFAULT_TIMEOUT_SECONDS, coerce_float, coerce_int, fetch_json
from pipelines.errors import ConfigurationError
from pipelines.model import Property, PropertyFilters, Provenance

MLS_BASE_URL = "https://api.datafiniti.co/v4"
API_KEY_ENV = "MLS_API_KEY"
BASE_URL_ENV = "MLS_BASE_URL"
SEARCH_PATH = "/properties/search"
SEARCH_VIEW = "property_preview"

logger = logging.getLogger(__name__)


def _resolve_api_key(api_key: str | None) -> str:
    resolved = api_key or os.getenv(API_KEY_ENV)
    if not resolved:
        raise ConfigurationError(
            f"MLS feed API key missing. Set {API_KEY_ENV} or pass api_key explicitly."
        )
    return resolved


def _resolve_base_url(base_url: str | None) -> str:
    return (base_url or os.getenv(BASE_URL_ENV) or MLS_BASE_URL).rstrip("/")


def build_query(filters: PropertyFilters) -> str:
    """Translate search filters into the feed's query language."""

    parts: list[str] = []
    if filters.city:
        parts.append(f'address.city:"{filters.city}"')
    if filters.state:
        parts.append(f'address.state:"{filters.state}"')
    if filters.zip_code:
        parts.append(f'address.postalCode:"{filters.zip_code}"')
    if filters.location and not (filters.city or filters.state or filters.zip_code):
        parts.append(f'"{filters.location}"')
    if filters.property_type:
        parts.append(f'type:"{filters.property_type}"')
    if filters.min_price is not None:
        parts.append(f"prices.amountMin:>={filters.min_price:g}")
    if filters.max_price is not None:
        parts.append(f"prices.amountMax:<={filters.max_price:g}")
    if filters.min_beds is not None:
        parts.append(f"numBedroom:>={filters.min_beds}")
    if filters.min_baths is not None:
        parts.append(f"numBathroom:>={filters.min_baths:g}")
    if filters.min_sqft is not None:
        parts.append(f"floorSizeValue:>={filters.min_sqft:g}")
    if filters.max_sqft is not None:
        parts.append(f"floorSizeValue:<={filters.max_sqft:g}")
    if filters.status:
        parts.append(f'mostRecentStatus:"{filters.status}"')
    return " AND ".join(parts) if parts else "keys:*"


def normalize_listing(record: Mapping[str, Any]) -> Property:
    """Convert a feed record (or a legacy MLS listing) into a ``Property``."""

    if "dateAdded" in record or "mostRecentPriceAmount" in record:
        return Property(
            external_id=str(record["id"]) if record.get("id") else None,
            address=str(record.get("address") or ""),
            city=str(record.get("city") or ""),
            state=str(record.get("province") or record.get("state") or ""),
            zip_code=str(record.get("postalCode") or ""),
            price=coerce_float(record.get("mostRecentPriceAmount")),
            beds=coerce_int(record.get("numBedroom")),
            baths=coerce_float(record.get("numBathroom")),
            sqft=coerce_float(record.get("floorSizeValue")),
            property_type=record.get("propertyType"),
            status=record.get("mostRecentStatus"),
            source="mls",
            provenance=Provenance.API,
        )

    external_id = record.get("mlsId") or record.get("id")
    return Property(
        external_id=str(external_id) if external_id else None,
        address=str(record.get("address") or ""),
        city=str(record.get("city") or ""),
        state=str(record.get("state") or ""),
        zip_code=str(record.get("zipCode") or ""),
        price=coerce_float(record.get("price")),
        beds=coerce_int(record.get("bedrooms")),
        baths=coerce_float(record.get("bathrooms")),
        sqft=coerce_float(record.get("squareFeet")),
        property_type=record.get("propertyType"),
        status=record.get("status"),
        source="mls",
        provenance=Provenance.API,
    )


def _records(payload: Any) -> list[Mapping[str, Any]]:
    records = payload.get("records") if isinstance(payload, Mapping) else None
    if not isinstance(records, list):
        return []
    return [record for record in records if isinstance(record, Mapping)]


async def _search(
    query: str,
    *,
    num_records: int,
    api_key: str | None,
    base_url: str | None,
    client: httpx.AsyncClient | None,
    timeout: float,
) -> list[Mapping[str, Any]]:
    resolved_key = _resolve_api_key(api_key)
    body = {
        "query": query,
        "format": "JSON",
        "num_records": num_records,
        "download": False,
        "view": SEARCH_VIEW,
    }
    logger.debug("MLS feed query: %s", query)
    payload = await fetch_json(
        f"{_resolve_base_url(base_url)}{SEARCH_PATH}",
        client=client,
        method="POST",
        headers={"Authorization": f"Bearer {resolved_key}", "Content-Type": "application/json"},
        json=body,
        timeout=timeout,
    )
    return _records(payload)


async def search_listings(
    filters: PropertyFilters,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> list[Property]:
    """Search the feed and normalize every returned record."""

    records = await _search(
        build_query(filters),
        num_records=filters.limit,
        api_key=api_key,
        base_url=base_url,
        client=client,
        timeout=timeout,
    )
    listings = []
    for record in records:
        try:
            listings.append(normalize_listing(record))
        except ValueError as exc:
            logger.warning("Skipping malformed MLS record %s: %s", record.get("id"), exc)
    logger.info("Retrieved %s listings from the MLS feed.", len(listings))
    return listings


async def fetch_listing(
    external_id: str,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> Property | None:
    """Look up a single listing by the feed's id."""

    records = await _search(
        f"id:{external_id}",
        num_records=1,
        api_key=api_key,
        base_url=base_url,
        client=client,
        timeout=timeout,
    )
    if not records:
        logger.warning("No MLS listing found with id %s.", external_id)
        return None
    return normalize_listing(records[0])


__all__ = [
    "MLS_BASE_URL",
    "build_query",
    "fetch_listing",
    "normalize_listing",
    "search_listings",
]
