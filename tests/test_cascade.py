import httpx
import pytest

from pipelines.cascade import EndpointVariant, run_cascade
from pipelines.errors import ProviderUnavailable
from pipelines.model import SyncTarget
from pipelines.sources import attom

BASE_URL = "https://provider.test"


def _variant(name, path, *, requires_zip=False):
    def build(ctx):
        if requires_zip and not ctx.get("zip_code"):
            return None
        return {"q": name}

    return EndpointVariant(name, path, build)


@pytest.mark.asyncio
async def test_run_cascade_returns_first_success(mock_client):
    seen = []

    def handler(request):
        seen.append(request.url.path)
        if request.url.path == "/v1/first":
            return httpx.Response(404, text="not here")
        return httpx.Response(200, json={"ok": True})

    variants = (_variant("first", "/v1/first"), _variant("second", "/v2/second"), _variant("third", "/v3/third"))
    async with mock_client(handler) as client:
        result = await run_cascade(variants, {}, base_url=BASE_URL, headers={}, client=client)

    assert result.variant == "second"
    assert result.payload == {"ok": True}
    assert seen == ["/v1/first", "/v2/second"]
    assert [attempt.ok for attempt in result.attempts] == [False, True]
    assert result.attempts[0].status_code == 404


@pytest.mark.asyncio
async def test_run_cascade_skips_variants_that_do_not_apply(mock_client):
    seen = []

    def handler(request):
        seen.append(request.url.path)
        return httpx.Response(200, json={"ok": True})

    variants = (_variant("by_zip", "/zip", requires_zip=True), _variant("by_city", "/city"))
    async with mock_client(handler) as client:
        result = await run_cascade(
            variants, {"zip_code": ""}, base_url=BASE_URL, headers={}, client=client
        )

    assert result.variant == "by_city"
    assert seen == ["/city"]
    assert len(result.attempts) == 1


@pytest.mark.asyncio
async def test_run_cascade_exhaustion_raises_last_error(mock_client):
    def handler(request):
        return httpx.Response(500, text=f"boom at {request.url.path}")

    variants = (_variant("a", "/a"), _variant("b", "/b"))
    async with mock_client(handler) as client:
        with pytest.raises(ProviderUnavailable) as excinfo:
            await run_cascade(variants, {}, base_url=BASE_URL, headers={}, client=client)

    assert excinfo.value.message == "500 - boom at /b [/b]"
    assert [attempt.variant for attempt in excinfo.value.attempts] == ["a", "b"]


@pytest.mark.asyncio
async def test_run_cascade_records_transport_errors_and_continues(mock_client):
    def handler(request):
        if request.url.path == "/down":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, json={"ok": True})

    variants = (_variant("down", "/down"), _variant("up", "/up"))
    async with mock_client(handler) as client:
        result = await run_cascade(variants, {}, base_url=BASE_URL, headers={}, client=client)

    assert result.variant == "up"
    assert "ConnectError" in result.attempts[0].error


@pytest.mark.asyncio
async def test_run_cascade_rejects_unusable_payloads(mock_client):
    def handler(request):
        if request.url.path == "/text":
            return httpx.Response(200, text="<html>maintenance</html>")
        if request.url.path == "/empty":
            return httpx.Response(200, json={"empty": True})
        return httpx.Response(200, json={"data": 1})

    def check(payload):
        return "empty payload" if payload.get("empty") else None

    variants = (_variant("text", "/text"), _variant("empty", "/empty"), _variant("good", "/good"))
    async with mock_client(handler) as client:
        result = await run_cascade(
            variants, {}, base_url=BASE_URL, headers={}, check=check, client=client
        )

    assert result.variant == "good"
    assert "not valid JSON" in result.attempts[0].error
    assert result.attempts[1].error == "empty payload [/empty]"


@pytest.mark.asyncio
async def test_run_cascade_without_applicable_variants(mock_client):
    def handler(request):  # pragma: no cover - must not be called
        raise AssertionError("no request expected")

    async with mock_client(handler) as client:
        with pytest.raises(ProviderUnavailable) as excinfo:
            await run_cascade(
                (_variant("zip_only", "/zip", requires_zip=True),),
                {},
                base_url=BASE_URL,
                headers={},
                client=client,
                operation="market statistics",
            )

    assert excinfo.value.attempts == ()
    assert "market statistics" in excinfo.value.message


@pytest.mark.asyncio
async def test_market_statistics_tries_each_variant_once_in_order(mock_client):
    seen = []

    def handler(request):
        seen.append((request.url.path, dict(request.url.params)))
        return httpx.Response(503, text="unavailable")

    target = SyncTarget(city="Canton", state="GA", zip_code="30115")
    async with mock_client(handler) as client:
        with pytest.raises(ProviderUnavailable) as excinfo:
            await attom.fetch_market_statistics(target, api_key="k", client=client)

    assert [path for path, _ in seen] == [variant.path for variant in attom.MARKET_STATISTICS_VARIANTS]
    assert seen[0][1] == {"postalcode": "30115"}
    assert seen[1][1] == {"city": "Canton", "state": "GA"}
    assert excinfo.value.message.endswith(f"[{attom.AREA_DETAIL_PATH}]")


@pytest.mark.asyncio
async def test_market_statistics_skips_postal_variants_without_zip(mock_client):
    seen = []

    def handler(request):
        seen.append(dict(request.url.params))
        return httpx.Response(500, text="error")

    target = SyncTarget(city="Atlanta", state="GA")
    async with mock_client(handler) as client:
        with pytest.raises(ProviderUnavailable):
            await attom.fetch_market_statistics(target, api_key="k", client=client)

    assert len(seen) == 3
    assert all("postalcode" not in params for params in seen)


@pytest.mark.asyncio
async def test_market_statistics_treats_no_result_as_failure(
    mock_client, no_result_payload, areastats_payload
):
    def handler(request):
        if "postalcode" in request.url.params:
            return httpx.Response(200, json=no_result_payload)
        return httpx.Response(200, json=areastats_payload)

    target = SyncTarget(city="Canton", state="GA", zip_code="30115")
    async with mock_client(handler) as client:
        result = await attom.fetch_market_statistics(target, api_key="k", client=client)

    assert result.variant == "areastats_city_state"
    assert "SuccessWithoutResult" in result.attempts[0].error
