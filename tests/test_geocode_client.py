"""Tests for the geocoding client."""

import httpx
import pytest

from storefront.config import GeocodeConfig
from storefront.errors import UpstreamError
from storefront.geocode_client import GeocodeClient


def client_for(handler, key="maps-key"):
    return GeocodeClient(GeocodeConfig(google_maps_api_key=key), transport=httpx.MockTransport(handler))


async def test_search_returns_locations():
    seen = []

    def handler(request):
        seen.append(dict(request.url.params))
        return httpx.Response(200, json={"results": [
            {"formatted_address": "Connaught Place, New Delhi",
             "geometry": {"location": {"lat": 28.6315, "lng": 77.2167}}},
            {"formatted_address": "no geometry"},
        ]})

    results = await client_for(handler).search("  connaught place ")

    assert seen == [{"address": "connaught place", "key": "maps-key"}]
    assert [r.to_dict() for r in results] == [
        {"lat": 28.6315, "lon": 77.2167, "display_name": "Connaught Place, New Delhi"}
    ]


async def test_blank_query_or_missing_key_skips_network():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"results": []})

    assert await client_for(handler).search("   ") == []
    assert await client_for(handler, key="").search("delhi") == []
    assert (await client_for(handler, key="").reverse(1.0, 2.0)).is_empty
    assert calls == []


@pytest.mark.parametrize("components, city", [
    ([{"long_name": "Pune", "types": ["locality", "political"]}], "Pune"),
    ([{"long_name": "Koregaon Park", "types": ["sublocality"]}], "Koregaon Park"),
    ([{"long_name": "Pune District", "types": ["administrative_area_level_2"]}], "Pune District"),
    ([], ""),
])
async def test_reverse_city_fallbacks(components, city):
    def handler(request):
        assert request.url.params["latlng"] == "18.5,73.8"
        return httpx.Response(200, json={"results": [{"address_components": components}]})

    result = await client_for(handler).reverse(18.5, 73.8)

    assert result.city == city


async def test_reverse_without_results_is_empty():
    result = await client_for(lambda request: httpx.Response(200, json={"results": []})).reverse(0, 0)

    assert result.is_empty


async def test_http_error_is_upstream_error():
    with pytest.raises(UpstreamError) as exc:
        await client_for(lambda request: httpx.Response(403)).search("delhi")

    assert exc.value.status_code == 403
