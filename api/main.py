"""FastAPI service exposing market snapshot sync, listing sync and property search."""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Iterator, Sequence

import duckdb
import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn
from pydantic import BaseModel, Field
from dotenv import load_dotenv

from jobs.config import ProviderSettings
from jobs.sync_listings import LISTINGS_STATUS_KEY, sync_listings
from jobs.sync_market import get_market_data, sync_all
from pipelines.errors import ConfigurationError, ProviderUnavailable
from pipelines.model import PropertyFilters, SyncTarget
from pipelines.search import lookup_property, lookup_sale_history, search_properties
from pipelines.sources import attom, mls
from storage.db import connect, count_properties, fetch_sync_status

DEFAULT_LIMIT = 50
MAX_LIMIT = 500
load_dotenv()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    conn = connect()
    conn.close()
    app.state.settings = ProviderSettings.from_env()
    yield


app = FastAPI(title="Market Sync API", version="0.1.0", lifespan=lifespan)


def _configure_cors() -> None:
    raw_origins = os.getenv("API_CORS_ORIGINS", "*")
    origins = [origin.strip() for origin in raw_origins.split(",") if origin.strip()]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins or ["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=True,
    )


_configure_cors()


def get_settings(request: Request) -> ProviderSettings:
    settings = getattr(request.app.state, "settings", None)
    return settings or ProviderSettings.from_env()


async def get_http_client(
    settings: ProviderSettings = Depends(get_settings),
) -> AsyncIterator[httpx.AsyncClient]:
    """Outbound client for provider calls; overridden in tests."""
    async with httpx.AsyncClient(timeout=settings.timeout_seconds) as client:
        yield client


def get_connection() -> Iterator[duckdb.DuckDBPyConnection]:
    conn = connect()
    try:
        yield conn
    finally:
        conn.close()


class SyncRequest(BaseModel):
    locations: list[SyncTarget] = Field(default_factory=list)


def _serialize(models: Sequence[BaseModel]) -> list[dict[str, Any]]:
    return [model.model_dump(mode="json", by_alias=True) for model in models]


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/market-data/sync")
async def sync_market_data(
    body: SyncRequest,
    settings: ProviderSettings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
    conn: duckdb.DuckDBPyConnection = Depends(get_connection),
):
    if not body.locations:
        raise HTTPException(status_code=400, detail="At least one location is required.")
    if not settings.has_any_credentials:
        raise HTTPException(status_code=503, detail="No market data provider is configured.")

    summary = await sync_all(body.locations, conn=conn, settings=settings, client=client)
    return JSONResponse(content=summary.model_dump(mode="json", by_alias=True))


@app.get("/market-data")
async def list_market_data(
    city: str = Query(..., min_length=1, description="City name"),
    state: str = Query(..., min_length=2, description="Two-letter state code"),
    zip_code: str | None = Query(None, alias="zipCode", description="Optional ZIP code"),
    settings: ProviderSettings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
    conn: duckdb.DuckDBPyConnection = Depends(get_connection),
):
    try:
        snapshots = await get_market_data(
            city, state, zip_code, conn=conn, settings=settings, client=client
        )
    except duckdb.Error as exc:  # pragma: no cover
        raise HTTPException(status_code=500, detail="Database query failed") from exc
    return JSONResponse(content={"count": len(snapshots), "items": _serialize(snapshots)})


@app.get("/properties/search")
async def search(
    location: str | None = Query(None, description="Free-text city, state or ZIP"),
    city: str | None = Query(None),
    state: str | None = Query(None),
    zip_code: str | None = Query(None, alias="zipCode"),
    property_type: str | None = Query(None, alias="propertyType"),
    status: str | None = Query(None),
    min_price: float | None = Query(None, alias="minPrice", ge=0),
    max_price: float | None = Query(None, alias="maxPrice", ge=0),
    min_beds: int | None = Query(None, alias="minBeds", ge=0),
    min_baths: float | None = Query(None, alias="minBaths", ge=0),
    min_sqft: float | None = Query(None, alias="minSqft", ge=0),
    max_sqft: float | None = Query(None, alias="maxSqft", ge=0),
    live: bool | None = Query(None, description="Force or suppress the live MLS lookup"),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT, description="Maximum records returned"),
    settings: ProviderSettings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
    conn: duckdb.DuckDBPyConnection = Depends(get_connection),
):
    filters = PropertyFilters(
        location=location,
        city=city,
        state=state,
        zip_code=zip_code,
        property_type=property_type,
        status=status,
        min_price=min_price,
        max_price=max_price,
        min_beds=min_beds,
        min_baths=min_baths,
        min_sqft=min_sqft,
        max_sqft=max_sqft,
        live=live,
        limit=limit,
    )
    try:
        properties = await search_properties(
            filters,
            conn=conn,
            mls_api_key=settings.mls_api_key,
            mls_base_url=settings.mls_base_url,
            client=client,
            timeout=settings.timeout_seconds,
        )
    except duckdb.Error as exc:  # pragma: no cover
        raise HTTPException(status_code=500, detail="Database query failed") from exc
    return JSONResponse(content={"count": len(properties), "items": _serialize(properties)})


@app.get("/market-data/test-connection")
async def check_market_data_connection(
    city: str = Query("Canton", min_length=1),
    state: str = Query("GA", min_length=2),
    zip_code: str | None = Query("30115", alias="zipCode"),
    settings: ProviderSettings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    """Check the property-data key and fetch one location without storing it."""

    if not settings.attom_api_key:
        raise HTTPException(status_code=503, detail="Property-data API is not configured.")

    accepted = await attom.check_api_key(
        api_key=settings.attom_api_key,
        base_url=settings.attom_base_url,
        client=client,
        timeout=settings.timeout_seconds,
    )
    if not accepted:
        return JSONResponse(
            status_code=502,
            content={"success": False, "message": "Property-data API rejected the configured key."},
        )

    target = SyncTarget(city=city, state=state, zip_code=zip_code)
    try:
        outcome = await attom.fetch_market_statistics(
            target,
            api_key=settings.attom_api_key,
            base_url=settings.attom_base_url,
            client=client,
            timeout=settings.timeout_seconds,
        )
        snapshot = attom.parse_market_statistics(outcome.payload, target)
    except (ProviderUnavailable, ValueError) as exc:
        logger.warning("Property-data connection test failed for %s: %s", target.label, exc)
        return JSONResponse(status_code=502, content={"success": False, "message": str(exc)})

    return JSONResponse(
        content={
            "success": True,
            "message": f"Connected; market statistics for {target.label} via {outcome.variant}.",
            "data": snapshot.model_dump(mode="json", by_alias=True),
        }
    )


@app.post("/properties/sync")
async def sync_properties(
    filters: PropertyFilters | None = None,
    settings: ProviderSettings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
    conn: duckdb.DuckDBPyConnection = Depends(get_connection),
):
    if not settings.mls_api_key:
        raise HTTPException(status_code=503, detail="MLS API key not configured.")

    result = await sync_listings(filters, conn=conn, settings=settings, client=client)
    status_code = 502 if result.status == "error" else 200
    return JSONResponse(
        status_code=status_code, content=result.model_dump(mode="json", by_alias=True)
    )


@app.get("/properties/sync/status")
def listing_sync_status(
    settings: ProviderSettings = Depends(get_settings),
    conn: duckdb.DuckDBPyConnection = Depends(get_connection),
):
    last = fetch_sync_status(conn, LISTINGS_STATUS_KEY)
    configured = bool(settings.mls_api_key)
    return JSONResponse(
        content={
            "status": "active" if configured else "inactive",
            "message": "MLS feed configured." if configured else "MLS API key not configured.",
            "lastSync": last.model_dump(mode="json", by_alias=True) if last else None,
            "propertiesCount": count_properties(conn, source="mls"),
        }
    )


@app.get("/properties/lookup")
async def property_lookup(
    address: str = Query(..., min_length=1, description="Street address"),
    city: str = Query(..., min_length=1),
    state: str = Query(..., min_length=2),
    zip_code: str | None = Query(None, alias="zipCode"),
    settings: ProviderSettings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
    conn: duckdb.DuckDBPyConnection = Depends(get_connection),
):
    try:
        prop = await lookup_property(
            address,
            city=city,
            state=state,
            zip_code=zip_code,
            conn=conn,
            api_key=settings.attom_api_key,
            base_url=settings.attom_base_url,
            client=client,
            timeout=settings.timeout_seconds,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except ProviderUnavailable as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    except ValueError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return JSONResponse(content=prop.model_dump(mode="json", by_alias=True))


@app.get("/properties/sale-history")
async def property_sale_history(
    address: str = Query(..., min_length=1, description="Street address"),
    city: str = Query(..., min_length=1),
    state: str = Query(..., min_length=2),
    zip_code: str | None = Query(None, alias="zipCode"),
    settings: ProviderSettings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    try:
        sales = await lookup_sale_history(
            address,
            city=city,
            state=state,
            zip_code=zip_code,
            api_key=settings.attom_api_key,
            base_url=settings.attom_base_url,
            client=client,
            timeout=settings.timeout_seconds,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    except ProviderUnavailable as exc:
        raise HTTPException(status_code=404, detail=exc.message) from exc
    return JSONResponse(content={"count": len(sales), "items": _serialize(sales)})


@app.get("/properties/mls/{external_id}")
async def mls_listing(
    external_id: str,
    settings: ProviderSettings = Depends(get_settings),
    client: httpx.AsyncClient = Depends(get_http_client),
):
    if not settings.mls_api_key:
        raise HTTPException(status_code=503, detail="MLS API key not configured.")
    try:
        listing = await mls.fetch_listing(
            external_id,
            api_key=settings.mls_api_key,
            base_url=settings.mls_base_url,
            client=client,
            timeout=settings.timeout_seconds,
        )
    except (httpx.HTTPError, ValueError) as exc:
        raise HTTPException(status_code=502, detail=f"MLS lookup failed: {exc}") from exc
    if listing is None:
        raise HTTPException(status_code=404, detail=f"No MLS listing with id {external_id}.")
    return JSONResponse(content=listing.model_dump(mode="json", by_alias=True))


if __name__ == "__main__":  # pragma: no cover
    uvicorn.run(
        app, host=os.getenv("API_HOST", "0.0.0.0"), port=int(os.getenv("API_PORT", "8000"))
    )
