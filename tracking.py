"""
Driver tracking geometry.

Positions are written out-of-band by the driver app into
driverLocations/<driverId>. Nothing here is persisted: every snapshot is
recomputed from the latest location document, with no smoothing or history.
"""

from datetime import datetime, timedelta, timezone
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

STALE_AFTER = timedelta(minutes=5)
ARRIVAL_RADIUS_M = 200.0
OFF_ROUTE_THRESHOLD_M = 200.0
IDLE_SPEED_MPS = 0.5
EARTH_RADIUS_M = 6378137.0

_COMPASS = ["N", "NE", "E", "SE", "S", "SW", "W", "NW"]

# order documents from older app versions store the drop-off under other keys
_DESTINATION_KEYS = (
    ("destinationLat", "destinationLng"),
    ("locationLat", "locationLng"),
    ("deliveryLat", "deliveryLng"),
    ("lat", "lng"),
)

Point = Tuple[float, float]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def as_utc(value: Any) -> Optional[datetime]:
    """Coerce the timestamp shapes found in the store into an aware UTC datetime."""
    if isinstance(value, datetime):
        return value.astimezone(timezone.utc) if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if _is_number(value):
        return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
    if isinstance(value, Mapping) and _is_number(value.get("seconds")):
        return datetime.fromtimestamp(value["seconds"], tz=timezone.utc)
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.endswith("Z"):
            raw = raw[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(raw)
        except ValueError:
            return None
        return parsed.astimezone(timezone.utc) if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    return None


def distance_m(a: Point, b: Point) -> float:
    """Great-circle distance in meters between two (lat, lng) points."""
    lat1, lng1 = map(math.radians, a)
    lat2, lng2 = map(math.radians, b)
    dlat = lat2 - lat1
    dlng = lng2 - lng1
    h = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlng / 2) ** 2
    return 2 * EARTH_RADIUS_M * math.asin(min(1.0, math.sqrt(h)))


def is_arriving(driver: Point, destination: Point) -> bool:
    return distance_m(driver, destination) <= ARRIVAL_RADIUS_M


def is_off_route(driver: Point, path: Sequence[Point]) -> bool:
    if not path:
        return False
    nearest = min(distance_m(driver, point) for point in path)
    return nearest > OFF_ROUTE_THRESHOLD_M


def is_stale(updated_at: Optional[datetime], now: datetime) -> bool:
    if updated_at is None:
        return False
    return now - updated_at > STALE_AFTER


def parse_driver_location(doc: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc or not _is_number(doc.get("lat")) or not _is_number(doc.get("lng")):
        return None
    return {
        "lat": float(doc["lat"]),
        "lng": float(doc["lng"]),
        "speed": doc["speed"] if _is_number(doc.get("speed")) else None,
        "heading": doc["heading"] if _is_number(doc.get("heading")) else None,
        "updatedAt": as_utc(doc.get("updatedAt")),
    }


def order_driver_status(active_flag: bool, updated_at: Optional[datetime], now: datetime) -> str:
    if active_flag:
        return "Active"
    if updated_at is None or is_stale(updated_at, now):
        return "Offline"
    return "Active"


def fleet_driver_status(location: Optional[Mapping[str, Any]], now: datetime) -> str:
    updated_at = location.get("updatedAt") if location else None
    if updated_at is None or is_stale(updated_at, now):
        return "Offline"
    if location.get("speed") is not None and location["speed"] < IDLE_SPEED_MPS:
        return "Idle"
    return "Active"


def speed_kmh(speed_mps: Optional[float]) -> Optional[int]:
    if speed_mps is None:
        return None
    return int(math.floor(speed_mps * 3.6 + 0.5))


def heading_label(heading: Optional[float]) -> Optional[str]:
    if heading is None:
        return None
    degrees = int(math.floor(heading + 0.5))
    idx = int(math.floor((degrees % 360) / 45 + 0.5)) % 8
    return f"{degrees}° {_COMPASS[idx]}"


def resolve_destination(order: Mapping[str, Any]) -> Optional[Point]:
    lat = lng = None
    for lat_key, _ in _DESTINATION_KEYS:
        if order.get(lat_key) is not None:
            lat = order[lat_key]
            break
    for _, lng_key in _DESTINATION_KEYS:
        if order.get(lng_key) is not None:
            lng = order[lng_key]
            break
    if _is_number(lat) and _is_number(lng):
        return float(lat), float(lng)
    return None


def driver_label(user: Mapping[str, Any]) -> str:
    return user.get("name") or user.get("fullName") or user.get("email") or user.get("id") or ""


def build_tracking_snapshot(
    order: Mapping[str, Any],
    driver_user: Optional[Mapping[str, Any]],
    location_doc: Optional[Mapping[str, Any]],
    route: Optional[Mapping[str, Any]],
    now: datetime,
) -> Dict[str, Any]:
    location = parse_driver_location(location_doc)
    destination = resolve_destination(order)
    updated_at = location["updatedAt"] if location else None
    active_flag = bool(driver_user and driver_user.get("isDriverActive"))

    arriving = False
    off_route = False
    path: List[Point] = [tuple(p) for p in (route or {}).get("path", [])]
    if location:
        here = (location["lat"], location["lng"])
        if destination:
            arriving = is_arriving(here, destination)
        off_route = is_off_route(here, path)

    return {
        "orderId": order.get("id"),
        "driverId": order.get("driverId"),
        "driverName": order.get("driverName"),
        "driverStatus": order_driver_status(active_flag, updated_at, now),
        "location": location,
        "stale": is_stale(updated_at, now),
        "speedKmh": speed_kmh(location["speed"]) if location else None,
        "headingLabel": heading_label(location["heading"]) if location else None,
        "destination": {"lat": destination[0], "lng": destination[1]} if destination else None,
        "destinationAddress": order.get("destinationAddress"),
        "route": dict(route) if route else None,
        "arrivingSoon": arriving,
        "offRoute": off_route,
        "computedAt": now,
    }
