"""
Google Maps proxy client: geocoding, nearby competitors, planned developments.

The HTTP routes pass Google's JSON straight through to the browser, so
every method returns (status_code, body) rather than raising on a
non-OK Google status.  Network failures raise requests exceptions.
"""

import logging
import time
from typing import Any, Dict, Optional, Tuple

import requests

from tc_trace import get_trace

logger = logging.getLogger(__name__)

# Text Search query used to surface planned or under-construction sites.
DEVELOPMENTS_QUERY = (
    "planned gas station OR gas station permit OR proposed gas station "
    "OR coming soon gas station OR gas station construction"
)

DEFAULT_PLACES_RADIUS_M = 1609
DEFAULT_DEVELOPMENTS_RADIUS_M = 5000


class GoogleMapsProxy:
    """Thin traced client for the Google Maps web service APIs."""

    # 10 s is generous for Google Maps; p99 is well under 2 s.
    DEFAULT_TIMEOUT = 10

    def __init__(self, api_key: Optional[str]):
        self.api_key = api_key or ""
        self.base_url = "https://maps.googleapis.com/maps/api"
        self.session = requests.Session()
        self.session.trust_env = False

    def close(self):
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.close()

    def _traced_get(
        self, endpoint_name: str, path: str, params: Dict[str, Any]
    ) -> Tuple[int, Dict[str, Any]]:
        """GET with trace recording.  Returns (http_status, json_body)."""
        params = dict(params, key=self.api_key)
        t0 = time.time()
        response = self.session.get(
            f"{self.base_url}/{path}", params=params, timeout=self.DEFAULT_TIMEOUT,
        )
        elapsed_ms = int((time.time() - t0) * 1000)
        data = response.json()
        provider_status = data.get("status", "") if isinstance(data, dict) else ""
        trace = get_trace()
        if trace:
            trace.record_api_call(
                service="google_maps",
                endpoint=endpoint_name,
                elapsed_ms=elapsed_ms,
                status_code=response.status_code,
                provider_status=provider_status,
            )
        if provider_status not in ("", "OK", "ZERO_RESULTS"):
            logger.warning("Google %s returned status %s", endpoint_name, provider_status)
        return response.status_code, data

    def geocode(self, address: str) -> Tuple[int, Dict[str, Any]]:
        return self._traced_get("geocode", "geocode/json", {"address": address})

    def places_nearby(
        self,
        lat: float,
        lng: float,
        radius: int = DEFAULT_PLACES_RADIUS_M,
        place_type: str = "gas_station",
    ) -> Tuple[int, Dict[str, Any]]:
        """Competitor sites of place_type within radius meters."""
        params = {
            "location": f"{lat},{lng}",
            "radius": radius,
            "type": place_type,
        }
        return self._traced_get("places_nearby", "place/nearbysearch/json", params)

    def planned_developments(
        self, lat: float, lng: float, radius: int = DEFAULT_DEVELOPMENTS_RADIUS_M
    ) -> Tuple[int, Dict[str, Any]]:
        """Text search for planned, permitted or proposed sites nearby."""
        params = {
            "query": DEVELOPMENTS_QUERY,
            "location": f"{lat},{lng}",
            "radius": radius,
        }
        return self._traced_get("developments", "place/textsearch/json", params)
