"""
Google Maps client: Distance Matrix for commutes, Places for listing Q&A.

Every call goes through _traced_get so timings land in the request trace.
Transport errors, non-JSON bodies and non-OK top-level statuses are raised
as UpstreamUnavailable; per-element statuses are left to the caller.
"""

import logging
import time
from typing import Dict, List, Optional, Sequence, Tuple

import requests

from dw_trace import get_trace
from errors import UpstreamUnavailable

logger = logging.getLogger(__name__)

LatLng = Tuple[float, float]


class GoogleMapsClient:
    """Client for Google Maps APIs"""

    # Per-call timeout in seconds.  Keeps any single request from hanging
    # the whole search.
    DEFAULT_TIMEOUT = 10

    # Distance Matrix allows at most 25 origins per request.
    DISTANCE_MATRIX_MAX_ORIGINS = 25

    def __init__(self, api_key: str, timeout: Optional[float] = None):
        self.api_key = api_key
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.timeout = timeout or self.DEFAULT_TIMEOUT
        self.session = requests.Session()
        self.session.trust_env = False

    def _traced_get(self, endpoint_name: str, url: str, params: dict) -> dict:
        """GET request with trace recording and upstream error translation."""
        t0 = time.time()
        trace = get_trace()
        try:
            response = self.session.get(url, params=params, timeout=self.timeout)
            data = response.json()
        except (requests.RequestException, ValueError) as exc:
            elapsed_ms = int((time.time() - t0) * 1000)
            if trace:
                trace.record_api_call("google_maps", endpoint_name, elapsed_ms, ok=False,
                                      provider_status=type(exc).__name__)
            raise UpstreamUnavailable(
                f"Google Maps {endpoint_name} request failed: {exc}", service="google_maps"
            ) from exc

        elapsed_ms = int((time.time() - t0) * 1000)
        provider_status = data.get("status", "") if isinstance(data, dict) else ""
        if trace:
            trace.record_api_call(
                "google_maps",
                endpoint_name,
                elapsed_ms,
                ok=response.status_code == 200,
                provider_status=provider_status,
            )
        if response.status_code != 200 or not isinstance(data, dict):
            raise UpstreamUnavailable(
                f"Google Maps {endpoint_name} returned HTTP {response.status_code}",
                service="google_maps",
            )
        return data

    def distance_matrix(
        self,
        origins: Sequence[LatLng],
        destination: LatLng,
        mode: str,
    ) -> List[Dict]:
        """Travel from each origin to one destination.

        Returns one Distance Matrix element per origin, in order. Elements
        keep the provider's shape ({"status", "duration", "distance"}).
        Origins beyond the per-request limit are sent in further chunks.
        """
        if not origins:
            return []
        url = f"{self.base_url}/distancematrix/json"
        elements: List[Dict] = []
        for i in range(0, len(origins), self.DISTANCE_MATRIX_MAX_ORIGINS):
            chunk = origins[i: i + self.DISTANCE_MATRIX_MAX_ORIGINS]
            params = {
                "origins": "|".join(f"{o[0]},{o[1]}" for o in chunk),
                "destinations": f"{destination[0]},{destination[1]}",
                "mode": mode,
                "key": self.api_key,
            }
            data = self._traced_get("distance_matrix", url, params)
            if data.get("status") != "OK":
                raise UpstreamUnavailable(
                    f"Distance Matrix API failed: {data.get('status')}",
                    service="google_maps",
                )
            rows = data.get("rows") or []
            if len(rows) != len(chunk):
                raise UpstreamUnavailable(
                    f"Distance Matrix returned {len(rows)} rows for {len(chunk)} origins",
                    service="google_maps",
                )
            for row in rows:
                row_elements = row.get("elements") or [{"status": "MISSING_ELEMENT"}]
                elements.append(row_elements[0])
        return elements

    def places_nearby(
        self,
        lat: float,
        lng: float,
        keyword: Optional[str] = None,
        radius_meters: int = 1500,
    ) -> List[Dict]:
        """Search for places near a location"""
        url = f"{self.base_url}/place/nearbysearch/json"
        params = {
            "location": f"{lat},{lng}",
            "radius": radius_meters,
            "key": self.api_key,
        }
        if keyword:
            params["keyword"] = keyword

        data = self._traced_get("places_nearby", url, params)

        if data.get("status") not in ["OK", "ZERO_RESULTS"]:
            raise UpstreamUnavailable(
                f"Places API failed: {data.get('status')}", service="google_maps"
            )

        return data.get("results", [])
