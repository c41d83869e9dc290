import json

import httpx
import pytest

from jobs import sync_listings
from jobs.config import ProviderSettings
from pipelines.model import ListingSyncResult, PropertyFilters, Provenance
from storage.db import count_properties, fetch_properties, fetch_sync_status

KEYED = ProviderSettings(mls_api_key="token")


def _record(idx):
    return {
        "id": f"AV{idx}",
        "address": f"{idx} Peachtree Rd",
        "city": "Atlanta",
        "province": "GA",
        "postalCode": "30305",
        "mostRecentPriceAmount": 400000 + idx,
        "numBedroom": 3,
        "dateAdded": "2025-01-01T00:00:00Z",
    }


@pytest.mark.asyncio
async def test_sync_listings_stores_feed_records(db_conn, mock_client, now):
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"records": [_record(1), _record(2), _record(2)]})

    async with mock_client(handler) as client:
        result = await sync_listings.sync_listings(
            PropertyFilters(city="Atlanta", limit=25),
            conn=db_conn,
            settings=KEYED,
            client=client,
            now=now,
        )

    assert result.status == "success"
    assert (result.fetched, result.stored) == (3, 2)
    assert bodies[0]["num_records"] == 25
    assert count_properties(db_conn, source="mls") == 2

    stored = fetch_properties(db_conn, PropertyFilters(city="Atlanta"))
    assert {prop.external_id for prop in stored} == {"AV1", "AV2"}
    assert all(prop.provenance is Provenance.EXISTING for prop in stored)

    status = fetch_sync_status(db_conn, sync_listings.LISTINGS_STATUS_KEY)
    assert (status.status, status.records, status.synced_at) == ("success", 2, now)


@pytest.mark.asyncio
async def test_sync_listings_without_key_is_a_warning(db_conn, mock_client):
    calls = []

    def handler(request):  # pragma: no cover - must not be called
        calls.append(request)
        return httpx.Response(200, json={"records": []})

    async with mock_client(handler) as client:
        result = await sync_listings.sync_listings(
            conn=db_conn, settings=ProviderSettings(), client=client
        )

    assert result.status == "warning"
    assert result.message == "MLS API key not configured. Synchronization skipped."
    assert calls == []
    assert fetch_sync_status(db_conn, sync_listings.LISTINGS_STATUS_KEY) is None


@pytest.mark.asyncio
async def test_sync_listings_reports_feed_errors(db_conn, mock_client, now):
    def handler(request):
        return httpx.Response(503, text="maintenance")

    async with mock_client(handler) as client:
        result = await sync_listings.sync_listings(
            conn=db_conn, settings=KEYED, client=client, now=now
        )

    assert result.status == "error"
    assert result.stored == 0
    assert "503" in result.message
    assert count_properties(db_conn) == 0
    assert fetch_sync_status(db_conn, sync_listings.LISTINGS_STATUS_KEY).status == "error"


@pytest.mark.asyncio
async def test_sync_listings_defaults_to_standard_limit(db_conn, mock_client):
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"records": []})

    async with mock_client(handler) as client:
        result = await sync_listings.sync_listings(conn=db_conn, settings=KEYED, client=client)

    assert result.status == "success"
    assert bodies[0]["num_records"] == sync_listings.DEFAULT_SYNC_LIMIT


def test_main_exit_code_follows_status(monkeypatch):
    async def fake_sync(filters):
        return ListingSyncResult(status="error", message="boom")

    monkeypatch.setattr(sync_listings, "sync_listings", fake_sync)

    assert sync_listings.main() == 1
