"""Property-data API (ATTOM) adapter.

Issues the HTTP calls for market statistics, property details and sale history
through the endpoint cascade, and converts the raw payloads into
``MarketSnapshot``, ``Property`` and ``SaleRecord`` objects.
"""

from __future__ import annotations

import logging
import os
import statistics
from datetime import date, datetime
from typing import Any, Iterable, Mapping

import httpx

from pipelines.cascade import CascadeResult, EndpointVariant, run_cascade
from pipelines.common import (
    DEFAULT_TIMEOUT_SECONDS,
    coerce_float,
    coerce_int,
    send_once,
    utcnow,
)
from pipelines.errors import ConfigurationError
from pipelines.model import MarketSnapshot, Property, Provenance, SaleRecord, SyncTarget

ATTOM_BASE_URL = "https://api.gateway.attomdata.com"
API_KEY_ENV = "ATTOM_API_KEY"
BASE_URL_ENV = "ATTOM_BASE_URL"

AREA_STATS_PATH = "/propertyapi/v1.0.0/property/areastats"
SALE_SNAPSHOT_PATH = "/propertyapi/v1.0.0/sale/snapshot"
AREA_DETAIL_PATH = "/propertyapi/v1.0.0/area/full"
ADDRESS_SEARCH_PATH = "/propertyapi/v1.0.0/property/address"
PROPERTY_DETAIL_PATH = "/propertyapi/v1.0.0/property/detail"
EXPANDED_PROFILE_PATH = "/propertyapi/v1.0.0/property/expandedprofile"
BASIC_PROFILE_PATH = "/propertyapi/v1.0.0/property/basicprofile"
SALE_HISTORY_DETAIL_PATH = "/propertyapi/v1.0.0/saleshistory/detail"
SALE_HISTORY_BASIC_PATH = "/propertyapi/v1.0.0/saleshistory/basichistory"

NO_RESULT_MESSAGE = "SuccessWithoutResult"

# ATTOM named metric -> (snapshot field, kind)
MARKET_STAT_FIELDS: Mapping[str, tuple[str, str]] = {
    "MedianSalePrice": ("median_price", "float"),
    "MedianPricePerSqft": ("average_price_per_sqft", "float"),
    "AverageDaysOnMarket": ("days_on_market", "int"),
    "ActiveListingCount": ("active_listings", "int"),
    "MonthsOfInventory": ("inventory_months", "float"),
    "SaleToListRatio": ("sale_to_list_ratio", "float"),
    "PriceReductionCount": ("price_reductions", "int"),
}

_SALE_SNAPSHOT_FILTERS = {
    "minsaleamt": "100000",
    "maxsaleamt": "10000000",
    "propertytype": "SFR",
    "page": "1",
    "pagesize": "50",
}

_PROPERTY_TYPES = (
    ("CONDO", "Condo"),
    ("TOWN", "Townhouse"),
    ("MFR", "Multi-Family"),
    ("MULTI", "Multi-Family"),
    ("LAND", "Land"),
)

logger = logging.getLogger(__name__)


def _resolve_api_key(api_key: str | None) -> str:
    resolved = api_key or os.getenv(API_KEY_ENV)
    if not resolved:
        raise ConfigurationError(
            f"Property-data API key missing. Set {API_KEY_ENV} or pass api_key explicitly."
        )
    return resolved


def _resolve_base_url(base_url: str | None) -> str:
    return base_url or os.getenv(BASE_URL_ENV) or ATTOM_BASE_URL


def _headers(api_key: str) -> dict[str, str]:
    return {
        "apikey": api_key,
        "Accept": "application/json",
        "Accept-Encoding": "gzip",
    }


# -- endpoint tables ---------------------------------------------------------


def _by_postal(extra: Mapping[str, str] | None = None):
    def build(ctx: Mapping[str, Any]) -> dict[str, Any] | None:
        if not ctx.get("zip_code"):
            return None
        return {"postalcode": ctx["zip_code"], **(extra or {})}

    return build


def _by_city_state(ctx: Mapping[str, Any]) -> dict[str, Any]:
    return {"city": ctx["city"], "state": ctx["state"]}


def _snapshot_by_city_state(ctx: Mapping[str, Any]) -> dict[str, Any]:
    return {"address1": ctx["city"], "address2": ctx["state"], **_SALE_SNAPSHOT_FILTERS}


def _area_by_name(ctx: Mapping[str, Any]) -> dict[str, Any]:
    return {"areaname": ctx["city"], "areastate": ctx["state"]}


def _by_address(ctx: Mapping[str, Any]) -> dict[str, Any]:
    line2 = f"{ctx['city']}, {ctx['state']} {ctx.get('zip_code') or ''}".strip()
    return {"address1": ctx["address"], "address2": line2}


def _by_address_paged(ctx: Mapping[str, Any]) -> dict[str, Any]:
    return {**_by_address(ctx), "page": "1", "pagesize": "10"}


MARKET_STATISTICS_VARIANTS: tuple[EndpointVariant, ...] = (
    EndpointVariant("areastats_postalcode", AREA_STATS_PATH, _by_postal()),
    EndpointVariant("areastats_city_state", AREA_STATS_PATH, _by_city_state),
    EndpointVariant(
        "sale_snapshot_postalcode", SALE_SNAPSHOT_PATH, _by_postal(_SALE_SNAPSHOT_FILTERS)
    ),
    EndpointVariant("sale_snapshot_city_state", SALE_SNAPSHOT_PATH, _snapshot_by_city_state),
    EndpointVariant("area_detail_postalcode", AREA_DETAIL_PATH, _by_postal()),
    EndpointVariant("area_detail_name", AREA_DETAIL_PATH, _area_by_name),
)

PROPERTY_DETAIL_VARIANTS: tuple[EndpointVariant, ...] = (
    EndpointVariant("address_search", ADDRESS_SEARCH_PATH, _by_address_paged),
    EndpointVariant("property_detail", PROPERTY_DETAIL_PATH, _by_address),
    EndpointVariant("expanded_profile", EXPANDED_PROFILE_PATH, _by_address),
    EndpointVariant("basic_profile", BASIC_PROFILE_PATH, _by_address),
)

SALE_HISTORY_VARIANTS: tuple[EndpointVariant, ...] = (
    EndpointVariant("sale_history_detail", SALE_HISTORY_DETAIL_PATH, _by_address),
    EndpointVariant("sale_history_basic", SALE_HISTORY_BASIC_PATH, _by_address),
    EndpointVariant("expanded_profile", EXPANDED_PROFILE_PATH, _by_address),
    EndpointVariant("property_detail", PROPERTY_DETAIL_PATH, _by_address),
)


# -- payload checks ----------------------------------------------------------


def _check_status(payload: Any) -> str | None:
    if not isinstance(payload, Mapping):
        return "Payload is not a JSON object"
    status = payload.get("status")
    if isinstance(status, Mapping) and status.get("msg") == NO_RESULT_MESSAGE:
        return f"Provider returned no data ({NO_RESULT_MESSAGE})"
    records = payload.get("property")
    if records is not None and (not isinstance(records, list) or not records):
        return f"Provider returned no data ({NO_RESULT_MESSAGE})"
    return None


def _named_metrics(payload: Mapping[str, Any]) -> dict[str, Any]:
    areas = payload.get("area")
    if not isinstance(areas, list) or not areas or not isinstance(areas[0], Mapping):
        return {}
    entries = areas[0].get("marketstat")
    if not isinstance(entries, list):
        return {}
    metrics: dict[str, Any] = {}
    for entry in entries:
        if isinstance(entry, Mapping):
            metrics.update(entry)
    return metrics


def _sale_amount(record: Mapping[str, Any]) -> float | None:
    sale = record.get("sale")
    if not isinstance(sale, Mapping):
        return None
    amount = sale.get("amount")
    if isinstance(amount, Mapping):
        amount = amount.get("saleamt")
    return coerce_float(amount)


def _sale_records(payload: Mapping[str, Any]) -> list[Mapping[str, Any]]:
    records = payload.get("property")
    if not isinstance(records, list):
        return []
    return [record for record in records if isinstance(record, Mapping)]


def check_property_payload(payload: Any) -> str | None:
    rejection = _check_status(payload)
    if rejection:
        return rejection
    if not _sale_records(payload):
        return "Payload carries no property records"
    return None


# -- normalization -----------------------------------------------------------


def _snapshot_from_named_metrics(metrics: Mapping[str, Any]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name, (field, kind) in MARKET_STAT_FIELDS.items():
        raw = metrics.get(name)
        values[field] = coerce_int(raw) if kind == "int" else coerce_float(raw)
    return values


def _snapshot_from_sales(records: Iterable[Mapping[str, Any]]) -> dict[str, Any]:
    records = list(records)
    prices = [amount for record in records if (amount := _sale_amount(record)) is not None]

    marketing_days = []
    per_sqft = []
    unsold = 0
    for record in records:
        sale = record.get("sale") if isinstance(record.get("sale"), Mapping) else {}
        days = coerce_float(sale.get("marketingTime"))
        if days is not None:
            marketing_days.append(days)
        if not sale.get("saleTransDate"):
            unsold += 1
        amount = _sale_amount(record)
        building = record.get("building") if isinstance(record.get("building"), Mapping) else {}
        size = building.get("size") if isinstance(building.get("size"), Mapping) else {}
        sqft = coerce_float(size.get("universalsize"))
        if amount and sqft:
            per_sqft.append(amount / sqft)

    return {
        "median_price": float(statistics.median(prices)) if prices else None,
        "days_on_market": round(statistics.fmean(marketing_days)) if marketing_days else None,
        "average_price_per_sqft": round(statistics.fmean(per_sqft), 2) if per_sqft else None,
        "active_listings": unsold,
    }


def _market_values(payload: Mapping[str, Any]) -> dict[str, Any]:
    metrics = _named_metrics(payload)
    if coerce_float(metrics.get("MedianSalePrice")) is not None:
        return _snapshot_from_named_metrics(metrics)
    return _snapshot_from_sales(_sale_records(payload))


def check_market_payload(payload: Any) -> str | None:
    """Return why ``payload`` cannot yield market statistics, or ``None``.

    Runs the same extraction as ``parse_market_statistics``, so a payload the
    cascade accepts always parses and a malformed one falls through to the
    next variant.
    """

    rejection = _check_status(payload)
    if rejection:
        return rejection
    if _market_values(payload).get("median_price") is None:
        return "Payload carries no market statistics"
    return None


def parse_market_statistics(
    payload: Mapping[str, Any],
    location: SyncTarget,
    *,
    now: datetime | None = None,
) -> MarketSnapshot:
    """Build an ``api`` snapshot for the current period from either payload shape."""

    now = now or utcnow()
    values = _market_values(payload)
    if values.get("median_price") is None:
        raise ValueError("Market payload has no median price")

    city, state, zip_code = location.key()
    return MarketSnapshot(
        city=city,
        state=state,
        zip_code=zip_code,
        month=now.month,
        year=now.year,
        provenance=Provenance.API,
        created_at=now,
        **values,
    )


def _map_property_type(raw: Any) -> str:
    if isinstance(raw, str):
        upper = raw.upper()
        for marker, label in _PROPERTY_TYPES:
            if marker in upper:
                return label
    return "Single Family"


def normalize_property(record: Mapping[str, Any]) -> Property:
    """Convert an ATTOM property object into a ``Property``."""

    address = record.get("address") if isinstance(record.get("address"), Mapping) else {}
    building = record.get("building") if isinstance(record.get("building"), Mapping) else {}
    rooms = building.get("rooms") if isinstance(building.get("rooms"), Mapping) else {}
    size = building.get("size") if isinstance(building.get("size"), Mapping) else {}
    summary = record.get("summary") if isinstance(record.get("summary"), Mapping) else {}
    identifier = record.get("identifier") if isinstance(record.get("identifier"), Mapping) else {}
    sale = record.get("sale") if isinstance(record.get("sale"), Mapping) else {}

    attom_id = identifier.get("attomId") or identifier.get("Id")
    return Property(
        external_id=str(attom_id) if attom_id else None,
        address=str(address.get("line1") or ""),
        city=str(address.get("locality") or ""),
        state=str(address.get("countrySubd") or ""),
        zip_code=str(address.get("postal1") or ""),
        price=_sale_amount(record),
        beds=coerce_int(rooms.get("beds")),
        baths=coerce_float(rooms.get("bathstotal")),
        sqft=coerce_float(size.get("universalsize") or size.get("livingsize")),
        property_type=_map_property_type(summary.get("proptype")),
        status="Sold" if sale.get("saleTransDate") else "Active",
        source="attom",
        provenance=Provenance.API,
    )


def _parse_date(raw: Any) -> date | None:
    if not isinstance(raw, str) or not raw.strip():
        return None
    try:
        return datetime.fromisoformat(raw.strip()[:10]).date()
    except ValueError:
        return None


def normalize_sale_history(payload: Mapping[str, Any]) -> list[SaleRecord]:
    """Flatten every ``salehistory`` entry (or single ``sale``) in the payload."""

    sales: list[SaleRecord] = []
    for record in _sale_records(payload):
        entries = record.get("salehistory")
        if not isinstance(entries, list):
            entries = [record["sale"]] if isinstance(record.get("sale"), Mapping) else []
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            amount = entry.get("amount") if isinstance(entry.get("amount"), Mapping) else {}
            sales.append(
                SaleRecord(
                    sale_date=_parse_date(entry.get("saleTransDate") or amount.get("salerecdate")),
                    amount=coerce_float(amount.get("saleamt") if amount else entry.get("amount")),
                    document_type=amount.get("saletranstype") or entry.get("saleTransType"),
                )
            )
    return sales


# -- operations --------------------------------------------------------------


async def fetch_market_statistics(
    location: SyncTarget,
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> CascadeResult:
    """Fetch raw market statistics for ``location``.

    Raises ``ConfigurationError`` before any request when the key is missing and
    ``ProviderUnavailable`` when every endpoint variant failed.
    """

    resolved_key = _resolve_api_key(api_key)
    city, state, zip_code = location.key()
    return await run_cascade(
        MARKET_STATISTICS_VARIANTS,
        {"city": city, "state": state, "zip_code": zip_code},
        base_url=_resolve_base_url(base_url),
        headers=_headers(resolved_key),
        check=check_market_payload,
        client=client,
        timeout=timeout,
        operation=f"market statistics for {location.label}",
    )


async def fetch_property_details(
    address: str,
    *,
    city: str,
    state: str,
    zip_code: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> CascadeResult:
    """Fetch the raw property-detail payload for a street address."""

    resolved_key = _resolve_api_key(api_key)
    return await run_cascade(
        PROPERTY_DETAIL_VARIANTS,
        {"address": address, "city": city, "state": state, "zip_code": zip_code},
        base_url=_resolve_base_url(base_url),
        headers=_headers(resolved_key),
        check=check_property_payload,
        client=client,
        timeout=timeout,
        operation=f"property details for {address}",
    )


async def fetch_sale_history(
    address: str,
    *,
    city: str,
    state: str,
    zip_code: str | None = None,
    api_key: str | None = None,
    base_url: str | None = None,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> CascadeResult:
    """Fetch the raw sale-history payload for a street address."""

    resolved_key = _resolve_api_key(api_key)
    return await run_cascade(
        SALE_HISTORY_VARIANTS,
        {"address": address, "city": city, "state": state, "zip_code": zip_code},
        base_url=_resolve_base_url(base_url),
        headers=_headers(resolved_key),
        check=check_property_payload,
        client=client,
        timeout=timeout,
        operation=f"sale history for {address}",
    )


async def check_api_key(
    *,
    api_key: str | None = None,
    base_url: str | None = None,
    client: httpx.AsyncClient | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> bool:
    """Return whether the provider accepts the configured key (anything but 401/403)."""

    try:
        resolved_key = _resolve_api_key(api_key)
    except ConfigurationError as exc:
        logger.warning("%s", exc)
        return False
    try:
        response = await send_once(
            f"{_resolve_base_url(base_url)}{ADDRESS_SEARCH_PATH}",
            client=client,
            headers=_headers(resolved_key),
            params={"address1": "123", "address2": "test"},
            timeout=timeout,
        )
    except httpx.HTTPError as exc:
        logger.warning("Property-data API key check failed: %s", exc)
        return False
    return response.status_code not in (401, 403)


__all__ = [
    "ATTOM_BASE_URL",
    "MARKET_STATISTICS_VARIANTS",
    "PROPERTY_DETAIL_VARIANTS",
    "SALE_HISTORY_VARIANTS",
    "check_api_key",
    "check_market_payload",
    "check_property_payload",
    "fetch_market_statistics",
    "fetch_property_details",
    "fetch_sale_history",
    "normalize_property",
    "normalize_sale_history",
    "parse_market_statistics",
]
