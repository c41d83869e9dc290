"""Property search that merges the local store with the live MLS feed, plus
single-address lookups against the property-data API."""

from __future__ import annotations

import logging
from typing import Iterable

import duckdb
import httpx

from pipelines.errors import ConfigurationError, ProviderUnavailable
from pipelines.model import Property, PropertyFilters, SaleRecord
from pipelines.sources import attom, mls
from storage.db import fetch_properties, upsert_properties

LIVE_LOOKUP_THRESHOLD = 20

logger = logging.getLogger(__name__)


def merge_properties(local: Iterable[Property], external: Iterable[Property]) -> list[Property]:
    """Union of both lists; local rows keep their order and win every collision.

    Two rows that both carry an external id collide only on that id. When
    either side lacks one, the normalized address + zip decides instead.
    """

    merged: list[Property] = []
    identities: set[str] = set()
    addresses: set[str] = set()
    anonymous_addresses: set[str] = set()

    def take(prop: Property) -> None:
        merged.append(prop)
        identities.add(prop.identity_key)
        addresses.add(prop.address_key)
        if prop.identity_key == prop.address_key:
            anonymous_addresses.add(prop.address_key)

    for prop in local:
        take(prop)

    for prop in external:
        if prop.identity_key == prop.address_key:
            collides = prop.address_key in addresses
        else:
            collides = prop.identity_key in identities or prop.address_key in anonymous_addresses
        if not collides:
            take(prop)
    return merged


def _wants_live_lookup(filters: PropertyFilters, local_count: int, mls_api_key: str | None) -> bool:
    if filters.live is not None:
        return filters.live
    return bool(mls_api_key) and local_count < LIVE_LOOKUP_THRESHOLD


async def search_properties(
    filters: PropertyFilters,
    *,
    conn: duckdb.DuckDBPyConnection,
    mls_api_key: str | None = None,
    mls_base_url: str | None = None,
    client: httpx.AsyncClient | None = None,
    timeout: float = mls.DEFAULT_TIMEOUT_SECONDS,
) -> list[Property]:
    """Search stored listings, topping up from the MLS feed when results are thin.

    Feed failures never fail the search; the local rows are returned alone.
    """

    local = fetch_properties(conn, filters)
    if not _wants_live_lookup(filters, len(local), mls_api_key):
        return local

    try:
        external = await mls.search_listings(
            filters,
            api_key=mls_api_key,
            base_url=mls_base_url,
            client=client,
            timeout=timeout,
        )
    except (ConfigurationError, ProviderUnavailable, httpx.HTTPError, ValueError) as exc:
        logger.warning("Live MLS lookup failed; returning %s local results: %s", len(local), exc)
        return local

    merged = merge_properties(local, external)
    logger.info(
        "Property search returned %s results (%s local, %s from the MLS feed).",
        len(merged),
        len(local),
        len(merged) - len(local),
    )
    return merged[: filters.limit]


async def lookup_property(
    address: str,
    *,
    city: str,
    state: str,
    zip_code: str | None = None,
    conn: duckdb.DuckDBPyConnection,
    api_key: str | None = None,
    base_url: str | None = None,
    client: httpx.AsyncClient | None = None,
    timeout: float = attom.DEFAULT_TIMEOUT_SECONDS,
) -> Property:
    """Fetch one address from the property-data API and keep it in the local store.

    Raises ``ConfigurationError`` without a key and ``ProviderUnavailable`` when
    no endpoint variant knows the address.
    """

    outcome = await attom.fetch_property_details(
        address,
        city=city,
        state=state,
        zip_code=zip_code,
        api_key=api_key,
        base_url=base_url,
        client=client,
        timeout=timeout,
    )
    record = outcome.payload["property"][0]
    prop = attom.normalize_property(record)
    upsert_properties(conn, [prop])
    logger.info("Stored property details for %s (variant %s).", address, outcome.variant)
    return prop


async def lookup_sale_history(
    address: str,
    *,
    city: str,
    state: str,
    zip_code: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
    client: httpx.AsyncClient | None = None,
    timeout: float = attom.DEFAULT_TIMEOUT_SECONDS,
) -> list[SaleRecord]:
    outcome = await attom.fetch_sale_history(
        address,
        city=city,
        state=state,
        zip_code=zip_code,
        api_key=api_key,
        base_url=base_url,
        client=client,
        timeout=timeout,
    )
    return attom.normalize_sale_history(outcome.payload)


__all__ = [
    "LIVE_LOOKUP_THRESHOLD",
    "lookup_property",
    "lookup_sale_history",
    "merge_properties",
    "search_properties",
]
