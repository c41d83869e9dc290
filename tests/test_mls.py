import json

import httpx
import pytest

from pipelines.errors import ConfigurationError
from pipelines.model import PropertyFilters, Provenance
from pipelines.sources import mls


def _record(idx, **overrides):
    record = {
        "id": f"AV{idx}",
        "address": f"{idx} Peachtree Rd",
        "city": "Atlanta",
        "province": "GA",
        "postalCode": "30305",
        "mostRecentPriceAmount": 400000 + idx,
        "numBedroom": 3,
        "numBathroom": 2,
        "floorSizeValue": 1800,
        "propertyType": "Single Family Dwelling",
        "mostRecentStatus": "For Sale",
        "dateAdded": "2025-01-01T00:00:00Z",
    }
    record.update(overrides)
    return record


def test_build_query_defaults_to_everything():
    assert mls.build_query(PropertyFilters()) == "keys:*"


def test_build_query_combines_filters():
    filters = PropertyFilters(city="Canton", state="GA", min_price=250000, min_beds=3, status="For Sale")

    query = mls.build_query(filters)

    assert query == (
        'address.city:"Canton" AND address.state:"GA" AND prices.amountMin:>=250000 '
        'AND numBedroom:>=3 AND mostRecentStatus:"For Sale"'
    )


def test_build_query_free_text_location_only_without_structured_location():
    assert mls.build_query(PropertyFilters(location="Roswell")) == '"Roswell"'
    assert mls.build_query(PropertyFilters(location="Roswell", city="Canton")) == 'address.city:"Canton"'


@pytest.mark.asyncio
async def test_search_listings_posts_query_with_bearer_key(mock_client):
    requests = []

    def handler(request):
        requests.append(request)
        return httpx.Response(200, json={"num_found": 2, "records": [_record(1), _record(2)]})

    async with mock_client(handler) as client:
        listings = await mls.search_listings(
            PropertyFilters(zip_code="30305", limit=10), api_key="token", client=client
        )

    request = requests[0]
    assert request.method == "POST"
    assert request.url == "https://api.datafiniti.co/v4/properties/search"
    assert request.headers["authorization"] == "Bearer token"
    body = json.loads(request.content)
    assert body["query"] == 'address.postalCode:"30305"'
    assert body["num_records"] == 10

    assert [listing.external_id for listing in listings] == ["AV1", "AV2"]
    first = listings[0]
    assert first.price == pytest.approx(400001.0)
    assert first.state == "GA"
    assert first.baths == pytest.approx(2.0)
    assert first.source == "mls"
    assert first.provenance is Provenance.API


@pytest.mark.asyncio
async def test_search_listings_requires_key(mock_client):
    def handler(request):  # pragma: no cover - must not be called
        raise AssertionError("no request expected")

    async with mock_client(handler) as client:
        with pytest.raises(ConfigurationError):
            await mls.search_listings(PropertyFilters(), client=client)


@pytest.mark.asyncio
async def test_search_listings_raises_on_http_error(mock_client):
    def handler(request):
        return httpx.Response(502, text="bad gateway")

    async with mock_client(handler) as client:
        with pytest.raises(httpx.HTTPStatusError):
            await mls.search_listings(PropertyFilters(), api_key="token", client=client)


@pytest.mark.asyncio
async def test_fetch_listing(mock_client):
    queries = []

    def handler(request):
        query = json.loads(request.content)["query"]
        queries.append(query)
        records = [_record(7)] if query == "id:AV7" else []
        return httpx.Response(200, json={"records": records})

    async with mock_client(handler) as client:
        found = await mls.fetch_listing("AV7", api_key="token", client=client)
        missing = await mls.fetch_listing("AV8", api_key="token", client=client)

    assert found.address == "7 Peachtree Rd"
    assert missing is None
    assert queries == ["id:AV7", "id:AV8"]


def test_normalize_legacy_listing():
    listing = mls.normalize_listing(
        {
            "mlsId": "FMLS-991",
            "address": "55 Oak Ln",
            "city": "Woodstock",
            "state": "GA",
            "zipCode": "30188",
            "price": "$365,000",
            "bedrooms": 4,
            "bathrooms": 3,
            "squareFeet": 2200,
            "status": "Active",
        }
    )

    assert listing.external_id == "FMLS-991"
    assert listing.price == pytest.approx(365000.0)
    assert listing.zip_code == "30188"
    assert listing.status == "Active"
