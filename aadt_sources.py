"""
AADT layer sources: fetch station and volume map features for a point.

Both ArcGIS layers are queried concurrently within a search radius, then
handed to aadt_estimator.estimate_aadt() once both have arrived.  If one
layer fails the other is still used and the failure is reported in the
search metadata; if both fail the error propagates.

Layer URLs and the default radius come from the environment:
  AADT_STATIONS_URL, AADT_VOLUME_MAP_URL, AADT_SEARCH_RADIUS_M
"""

import logging
import os
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from aadt_estimator import SelectionResult, estimate_aadt
from arcgis_http import ArcGISQueryError, ArcGISRateLimitError, arcgis_query
from tc_trace import get_trace, set_trace

logger = logging.getLogger(__name__)


_NCDOT_SERVICES = "https://services.arcgis.com/NuWFvHYDMVmmxMeM/ArcGIS/rest/services"

DEFAULT_SEARCH_RADIUS_M = int(os.environ.get("AADT_SEARCH_RADIUS_M", "150"))


@dataclass(frozen=True)
class FeatureLayer:
    """One ArcGIS FeatureServer layer to query."""
    name: str          # trace/endpoint label, e.g. "stations"
    url: str           # .../FeatureServer/<n>/query
    out_fields: str    # comma-separated attribute list, or "*"


STATIONS_LAYER = FeatureLayer(
    name="stations",
    url=os.environ.get(
        "AADT_STATIONS_URL",
        f"{_NCDOT_SERVICES}/NCDOT_AADT_Stations/FeatureServer/0/query",
    ),
    out_fields="AADT,YEAR_",
)

VOLUME_MAP_LAYER = FeatureLayer(
    name="volume_map",
    url=os.environ.get(
        "AADT_VOLUME_MAP_URL",
        f"{_NCDOT_SERVICES}/NCDOT_AADT_Traffic_Segments/FeatureServer/0/query",
    ),
    out_fields="*",
)


@dataclass
class AADTLookup:
    """Result of a live lookup, with the parameters that produced it."""
    result: SelectionResult
    search: Dict[str, Any] = field(default_factory=dict)


def build_query_params(
    layer: FeatureLayer, lat: float, lng: float, radius_m: int
) -> Dict[str, str]:
    """ArcGIS spatial query: features within radius_m meters of (lat, lng)."""
    return {
        "f": "json",
        "where": "1=1",
        "outFields": layer.out_fields,
        "geometry": f"{lng},{lat}",
        "geometryType": "esriGeometryPoint",
        "inSR": "4326",
        "outSR": "4326",
        "spatialRel": "esriSpatialRelIntersects",
        "distance": str(radius_m),
        "units": "esriSRUnit_Meter",
        "returnGeometry": "true",
    }


def fetch_layer_features(
    layer: FeatureLayer, lat: float, lng: float, radius_m: int
) -> List[Dict[str, Any]]:
    """Fetch raw features from one layer.

    Returns [] when the response has no features array.  Upstream errors
    (ArcGISQueryError, ArcGISRateLimitError) propagate.
    """
    data = arcgis_query(
        layer.url,
        build_query_params(layer, lat, lng, radius_m),
        caller=layer.name,
    )
    features = data.get("features") if isinstance(data, dict) else None
    if not isinstance(features, list):
        logger.info("ArcGIS layer %s returned no features array", layer.name)
        return []
    return features


def _stage(trace, name: str):
    return trace.stage(name) if trace else nullcontext()


def _fetch_in_thread(parent_trace, layer, lat, lng, radius_m):
    """Fetch one layer in a worker thread, timed as its own stage."""
    set_trace(parent_trace)
    try:
        with _stage(parent_trace, f"fetch_{layer.name}"):
            return fetch_layer_features(layer, lat, lng, radius_m)
    finally:
        set_trace(None)


def lookup_aadt(
    lat: float, lng: float, radius_m: Optional[int] = None
) -> AADTLookup:
    """Fetch both layers around (lat, lng) and select the best AADT.

    Raises ArcGISQueryError when neither layer could be fetched.
    """
    if radius_m is None:
        radius_m = DEFAULT_SEARCH_RADIUS_M

    layers = (STATIONS_LAYER, VOLUME_MAP_LAYER)
    parent_trace = get_trace()
    collections: Dict[str, List[Dict[str, Any]]] = {}
    failures: Dict[str, Exception] = {}

    with ThreadPoolExecutor(max_workers=len(layers)) as pool:
        futures = {
            layer.name: pool.submit(
                _fetch_in_thread, parent_trace, layer, lat, lng, radius_m,
            )
            for layer in layers
        }
        for name, future in futures.items():
            try:
                collections[name] = future.result()
            except (ArcGISQueryError, ArcGISRateLimitError) as e:
                logger.warning("AADT layer %s unavailable: %s", name, e)
                failures[name] = e
                collections[name] = []

    if len(failures) == len(layers):
        raise ArcGISQueryError(
            "All AADT layers failed: "
            + "; ".join(f"{name}: {err}" for name, err in failures.items())
        )

    search = {
        "lat": lat,
        "lng": lng,
        "radius_m": radius_m,
        "layers": [layer.name for layer in layers],
        "degraded_layers": sorted(failures),
    }

    with _stage(parent_trace, "select"):
        result = estimate_aadt(
            lat,
            lng,
            collections[STATIONS_LAYER.name],
            collections[VOLUME_MAP_LAYER.name],
        )

    return AADTLookup(result=result, search=search)
