"""Batch job that pulls MLS listings into the local ``properties`` table."""

from __future__ import annotations

import asyncio
import logging
import os
from datetime import datetime

import duckdb
import httpx
from dotenv import load_dotenv

from jobs.config import ProviderSettings
from pipelines.common import client_scope, utcnow
from pipelines.errors import ProviderUnavailable
from pipelines.model import ListingSyncResult, PropertyFilters
from pipelines.sources import mls
from storage.db import connect, record_sync_status, upsert_properties

load_dotenv()

logger = logging.getLogger(__name__)

LISTINGS_STATUS_KEY = "mls_listings"
DEFAULT_SYNC_LIMIT = 100


async def sync_listings(
    filters: PropertyFilters | None = None,
    *,
    conn: duckdb.DuckDBPyConnection | None = None,
    settings: ProviderSettings | None = None,
    client: httpx.AsyncClient | None = None,
    now: datetime | None = None,
) -> ListingSyncResult:
    """Fetch listings matching ``filters`` from the feed and upsert them.

    Never raises for provider or storage failures; the outcome is returned and
    recorded under ``LISTINGS_STATUS_KEY``. Without an MLS credential nothing
    is fetched and a ``warning`` result is returned.
    """

    filters = filters or PropertyFilters(limit=DEFAULT_SYNC_LIMIT)
    settings = settings or ProviderSettings.from_env()
    now = now or utcnow()
    owns_conn = conn is None
    conn = conn if conn is not None else connect()
    try:
        if not settings.mls_api_key:
            logger.warning("MLS_API_KEY is not set; listing synchronization skipped.")
            return ListingSyncResult(
                status="warning",
                message="MLS API key not configured. Synchronization skipped.",
                synced_at=now,
            )

        logger.info("Starting MLS listing synchronization (limit=%s)...", filters.limit)
        fetched = 0
        try:
            async with client_scope(client, timeout=settings.timeout_seconds) as http:
                listings = await mls.search_listings(
                    filters,
                    api_key=settings.mls_api_key,
                    base_url=settings.mls_base_url,
                    client=http,
                    timeout=settings.timeout_seconds,
                )
            fetched = len(listings)
            stored = upsert_properties(conn, listings)
        except (ProviderUnavailable, httpx.HTTPError, duckdb.Error, ValueError) as exc:
            logger.error("Error synchronizing MLS listings: %s", exc)
            result = ListingSyncResult(
                status="error",
                message=f"Failed to synchronize MLS data: {exc}",
                fetched=fetched,
                synced_at=now,
            )
        else:
            result = ListingSyncResult(
                status="success",
                message=f"Successfully synchronized {stored} properties from MLS",
                fetched=fetched,
                stored=stored,
                synced_at=now,
            )
            logger.info("Stored %s of %s listings from the MLS feed.", stored, fetched)

        record_sync_status(
            conn,
            LISTINGS_STATUS_KEY,
            status=result.status,
            records=result.stored,
            message=result.message,
            synced_at=now,
        )
        return result
    finally:
        if owns_conn:
            conn.close()


def main(filters: PropertyFilters | None = None) -> int:
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"))
    result = asyncio.run(sync_listings(filters))
    logger.info("Listing sync finished with status %s: %s", result.status, result.message)
    return 1 if result.status == "error" else 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())


__all__ = ["DEFAULT_SYNC_LIMIT", "LISTINGS_STATUS_KEY", "main", "sync_listings"]
