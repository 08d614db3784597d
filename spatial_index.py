"""
Multi-resolution H3 grid indexing.

Listings and amenities carry one cell id per supported resolution. Proximity
is approximated by cell equality at the resolution tied to the travel mode:

    walking   -> res 7  (~1.2 km hex edge)
    transit   -> res 7  (riders walk to and from stops)
    bicycling -> res 6  (~3.2 km hex edge)
    driving   -> res 5  (~8.5 km hex edge)

MODE_RESOLUTIONS is the single source of truth for that table; call sites
go through resolution_for_mode() rather than restating it.
"""

import math
from enum import Enum
from typing import Dict, List, Tuple

import h3

EARTH_RADIUS_M = 6_371_000


class TravelMode(str, Enum):
    WALKING = "walking"
    BICYCLING = "bicycling"
    DRIVING = "driving"
    TRANSIT = "transit"


class Resolution(int, Enum):
    FINE = 7
    MEDIUM = 6
    COARSE = 5


SUPPORTED_RESOLUTIONS = (Resolution.FINE, Resolution.MEDIUM, Resolution.COARSE)

MODE_RESOLUTIONS: Dict[TravelMode, Resolution] = {
    TravelMode.WALKING: Resolution.FINE,
    TravelMode.TRANSIT: Resolution.FINE,
    TravelMode.BICYCLING: Resolution.MEDIUM,
    TravelMode.DRIVING: Resolution.COARSE,
}

DEFAULT_AMENITY_MODE = TravelMode.WALKING
DEFAULT_COMMUTE_MODE = TravelMode.TRANSIT


def parse_travel_mode(value, default: TravelMode = None) -> TravelMode:
    """Coerce a request/LLM string to a TravelMode.

    Returns *default* for empty input. Raises ValueError for anything else
    that isn't a known mode.
    """
    if isinstance(value, TravelMode):
        return value
    if value is None or (isinstance(value, str) and not value.strip()):
        if default is None:
            raise ValueError("travel mode is required")
        return default
    try:
        return TravelMode(str(value).strip().lower())
    except ValueError:
        raise ValueError(f"Unknown travel mode: {value!r}") from None


def resolution_for_mode(mode: TravelMode) -> Resolution:
    return MODE_RESOLUTIONS[TravelMode(mode)]


def is_valid_coordinate(lat, lng) -> bool:
    try:
        lat = float(lat)
        lng = float(lng)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat) or math.isnan(lng):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lng <= 180.0


def cell_id(lat: float, lng: float, resolution: int) -> str:
    """H3 cell containing (lat, lng) at *resolution*. Pure."""
    return h3.latlng_to_cell(lat, lng, int(resolution))


def cell_ids(lat: float, lng: float) -> Dict[Resolution, str]:
    """Cell ids at every supported resolution."""
    return {res: cell_id(lat, lng, res) for res in SUPPORTED_RESOLUTIONS}


def cell_boundary(cell: str) -> List[Dict[str, float]]:
    """Polygon vertices of *cell* as [{"lat", "lng"}, ...] for map overlays."""
    return [{"lat": lat, "lng": lng} for lat, lng in h3.cell_to_boundary(cell)]


def cell_center(cell: str) -> Tuple[float, float]:
    return h3.cell_to_latlng(cell)


def haversine_meters(origin: Tuple[float, float], dest: Tuple[float, float]) -> float:
    """Great-circle distance in meters on a sphere of Earth's mean radius."""
    lat1, lon1 = math.radians(origin[0]), math.radians(origin[1])
    lat2, lon2 = math.radians(dest[0]), math.radians(dest[1])

    dlat = lat2 - lat1
    dlon = lon2 - lon1

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(min(1.0, math.sqrt(a)))

    return EARTH_RADIUS_M * c
