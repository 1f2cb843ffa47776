"""
Google Maps web-service client (geocoding, reverse geocoding, directions).

The maps provider is an opaque collaborator: only the fields the dashboard
uses are read from its responses.
"""

from typing import Any, Dict, List, Optional, Tuple

import httpx

from config import settings, get_logger

logger = get_logger("maps")

MAPS_BASE_URL = "https://maps.googleapis.com/maps/api"
PINNED_DESTINATION = "Pinned destination"


class MapsUnavailable(Exception):
    """No API key configured, or the provider could not be reached."""


class GeocodeNotFound(Exception):
    pass


class MapsClient:
    def __init__(self, api_key: str, timeout: float = 10, transport: Optional[httpx.BaseTransport] = None):
        self.api_key = api_key
        self._http = httpx.Client(base_url=MAPS_BASE_URL, timeout=timeout, transport=transport)

    def _get(self, path: str, params: Dict[str, Any]) -> Dict[str, Any]:
        if not self.api_key:
            raise MapsUnavailable("GOOGLE_MAPS_API_KEY is not set")
        try:
            resp = self._http.get(path, params={**params, "key": self.api_key})
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPError as exc:
            logger.warning("maps request %s failed: %s", path, exc)
            raise MapsUnavailable(str(exc)) from exc

    def geocode(self, address: str) -> Dict[str, Any]:
        data = self._get("/geocode/json", {"address": address})
        results = data.get("results") or []
        if data.get("status") != "OK" or not results:
            raise GeocodeNotFound(address)
        first = results[0]
        location = (first.get("geometry") or {}).get("location") or {}
        if "lat" not in location or "lng" not in location:
            raise GeocodeNotFound(address)
        return {
            "address": first.get("formatted_address") or address,
            "lat": float(location["lat"]),
            "lng": float(location["lng"]),
        }

    def reverse_geocode(self, lat: float, lng: float) -> str:
        try:
            data = self._get("/geocode/json", {"latlng": f"{lat},{lng}"})
        except MapsUnavailable:
            return PINNED_DESTINATION
        results = data.get("results") or []
        if data.get("status") == "OK" and results and results[0].get("formatted_address"):
            return results[0]["formatted_address"]
        return PINNED_DESTINATION

    def directions(self, origin: Tuple[float, float], destination: Tuple[float, float]) -> Optional[Dict[str, Any]]:
        """Driving route between two points, or None when the provider finds none."""
        data = self._get(
            "/directions/json",
            {
                "origin": f"{origin[0]},{origin[1]}",
                "destination": f"{destination[0]},{destination[1]}",
                "mode": "driving",
            },
        )
        routes = data.get("routes") or []
        if data.get("status") != "OK" or not routes:
            return None
        legs = routes[0].get("legs") or []
        if not legs:
            return None
        leg = legs[0]
        return {
            "distanceText": (leg.get("distance") or {}).get("text"),
            "durationText": (leg.get("duration") or {}).get("text"),
            "path": _leg_path(leg),
        }


def _leg_path(leg: Dict[str, Any]) -> List[List[float]]:
    path: List[List[float]] = []
    for step in leg.get("steps") or []:
        for key in ("start_location", "end_location"):
            point = step.get(key) or {}
            if "lat" in point and "lng" in point:
                coords = [float(point["lat"]), float(point["lng"])]
                if not path or path[-1] != coords:
                    path.append(coords)
    return path


_client: Optional[MapsClient] = None


def get_maps_client() -> MapsClient:
    global _client
    if _client is None:
        _client = MapsClient(settings.google_maps_api_key, timeout=settings.maps_timeout_seconds)
    return _client
