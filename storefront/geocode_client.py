"""
Google Geocoding client

Backs the address map: forward search for the search box, and reverse
lookup to fill city/state/pincode for a dropped marker. A missing API key
disables both calls; they return empty results instead of failing.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import httpx

from .config import config, GeocodeConfig
from .errors import UpstreamError
from .utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class GeocodeResult:
    lat: float
    lon: float
    display_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"lat": self.lat, "lon": self.lon, "display_name": self.display_name}


@dataclass
class ReverseGeocode:
    city: str = ""
    state: str = ""
    pincode: str = ""
    display_name: str = ""

    @property
    def is_empty(self) -> bool:
        return not (self.city or self.state or self.pincode)

    def to_dict(self) -> Dict[str, str]:
        return {"city": self.city, "state": self.state, "pincode": self.pincode}


def _component(components: Optional[List[Dict[str, Any]]], kind: str) -> str:
    for component in components or []:
        if kind in component.get("types", []):
            return component.get("long_name") or ""
    return ""


class GeocodeClient:
    """Thin async wrapper over the Google Geocoding API"""

    def __init__(self, geocode_config: Optional[GeocodeConfig] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = geocode_config or config.geocode
        self._transport = transport

    async def _get(self, params: Dict[str, str]) -> Dict[str, Any]:
        params = {**params, "key": self.config.google_maps_api_key}
        try:
            async with httpx.AsyncClient(
                timeout=float(self.config.timeout), transport=self._transport
            ) as client:
                response = await client.get(self.config.base_url, params=params)
                response.raise_for_status()
                return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"[Geocode] HTTP {e.response.status_code} from geocoding API")
            raise UpstreamError("Geocoding failed", status_code=e.response.status_code,
                                endpoint="geocode") from e
        except httpx.HTTPError as e:
            logger.error(f"[Geocode] Geocoding API unreachable: {e}")
            raise UpstreamError("Geocoding failed", status_code=503, endpoint="geocode") from e

    async def search(self, query: str) -> List[GeocodeResult]:
        """
        Forward-geocode a free-text query

        Args:
            query: Search box text

        Returns:
            Matching places; empty for a blank query or when geocoding is disabled
        """
        if not query or not query.strip():
            return []
        if not self.config.enabled:
            logger.debug("[Geocode] No API key configured, search disabled")
            return []

        data = await self._get({"address": query.strip()})
        results = []
        for item in data.get("results") or []:
            location = (item.get("geometry") or {}).get("location") or {}
            if "lat" not in location or "lng" not in location:
                continue
            results.append(GeocodeResult(
                lat=float(location["lat"]),
                lon=float(location["lng"]),
                display_name=item.get("formatted_address", "")
            ))
        return results

    async def reverse(self, lat: float, lng: float) -> ReverseGeocode:
        """Resolve city, state and pincode for a map marker"""
        if not self.config.enabled:
            return ReverseGeocode()

        data = await self._get({"latlng": f"{lat},{lng}"})
        results = data.get("results") or []
        if not results:
            return ReverseGeocode()

        first = results[0]
        components = first.get("address_components")
        return ReverseGeocode(
            city=(_component(components, "locality")
                  or _component(components, "sublocality")
                  or _component(components, "administrative_area_level_2")),
            state=_component(components, "administrative_area_level_1"),
            pincode=_component(components, "postal_code"),
            display_name=first.get("formatted_address", "")
        )


_geocode_client: Optional[GeocodeClient] = None


def get_geocode_client() -> GeocodeClient:
    """Get singleton GeocodeClient instance"""
    global _geocode_client
    if _geocode_client is None:
        _geocode_client = GeocodeClient()
    return _geocode_client
