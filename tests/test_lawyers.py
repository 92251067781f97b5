import httpx
import pytest
import respx
from httpx import Response

from counsel_intake.lawyers import (
    QUOTA_MESSAGE,
    LawyerSearchClient,
    LawyerSearchError,
    LawyerSearchTimeoutError,
    QuotaExceededError,
    practice_area_for,
)

BASE = "http://lawyers.test/v1"


@pytest.mark.asyncio
async def test_search_maps_matter_and_location_to_query():
    client = LawyerSearchClient(BASE, "secret")
    captured = {}
    try:
        with respx.mock(assert_all_called=True) as respx_mock:

            def handler(request):
                captured["params"] = dict(request.url.params)
                captured["auth"] = request.headers["authorization"]
                return Response(
                    200,
                    json={
                        "lawyers": [
                            {"lawyer_id": 7, "full_name": "Ann Attorney", "city": "Durham", "state": "NC", "avg_rating": 4.9}
                        ],
                        "total": 12,
                    },
                )

            respx_mock.get(f"{BASE}/lawyers").mock(side_effect=handler)
            results = await client.search_by_matter_type("Tenant Rights Law", location="Durham, NC", limit=5)
    finally:
        await client.close()

    assert captured["params"] == {"practiceArea": "Real Estate Law", "limit": "5", "city": "Durham", "state": "NC"}
    assert captured["auth"] == "Bearer secret"
    assert results.total == 12
    lawyer = results.lawyers[0]
    assert (lawyer.id, lawyer.name, lawyer.location, lawyer.rating) == ("7", "Ann Attorney", "Durham, NC", 4.9)


@pytest.mark.asyncio
async def test_quota_errors_are_recognised():
    client = LawyerSearchClient(BASE, "secret")
    try:
        with respx.mock() as respx_mock:
            respx_mock.get(f"{BASE}/lawyers").mock(return_value=Response(429, text="Daily quota exceeded"))
            with pytest.raises(QuotaExceededError) as excinfo:
                await client.search_by_matter_type("Family Law")
    finally:
        await client.close()
    assert excinfo.value.status_code == 429
    assert str(excinfo.value) == QUOTA_MESSAGE


@pytest.mark.asyncio
async def test_other_failures_are_generic_errors():
    client = LawyerSearchClient(BASE, "secret")
    try:
        with respx.mock() as respx_mock:
            route = respx_mock.get(f"{BASE}/lawyers")
            route.mock(return_value=Response(500, text="boom"))
            with pytest.raises(LawyerSearchError) as excinfo:
                await client.search_by_matter_type("Family Law")
            assert not isinstance(excinfo.value, QuotaExceededError)

            route.mock(side_effect=httpx.ReadTimeout("slow"))
            with pytest.raises(LawyerSearchTimeoutError):
                await client.search_by_matter_type("Family Law")
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_disabled_without_api_key():
    client = LawyerSearchClient(BASE, None)
    try:
        assert not client.enabled
        with pytest.raises(LawyerSearchError):
            await client.search_by_matter_type("Family Law")
    finally:
        await client.close()


def test_practice_area_defaults_to_general_practice():
    assert practice_area_for("Contract Review") == "Business Law"
    assert practice_area_for("Space Law") == "General Practice"
