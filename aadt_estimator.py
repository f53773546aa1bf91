"""
AADT Estimator: nearest traffic-count selection near a point.

Estimates Annual Average Daily Traffic (AADT) at a location from two
ArcGIS feature layers: point count stations and polyline traffic volume
map segments. Every usable feature becomes a Candidate; the nearest one
wins, with newer counts and then higher counts breaking exact ties.

Data sources (fetched by aadt_sources.py, never here):
  - Count station points (AADT, YEAR_)
  - Traffic volume map segments (year-specific and generic AADT fields)

Limitations:
  - Segment distance is sampled at up to the first 3 vertices of the first
    path, not projected onto the polyline.  Long segments can look farther
    away than they are.
  - Upstream data is sparse and inconsistent; unusable features are dropped
    without error.
  - An explicit year of 0 sorts exactly like a missing year.
"""

import logging
import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

EARTH_RADIUS_MILES = 3958.761
METERS_PER_MILE = 1609.344

# Maximum number of vertices sampled from a segment's first path.
MAX_LINE_SAMPLES = 3

# Station layer attribute names.
STATION_VOLUME_FIELD = "AADT"
STATION_YEAR_FIELD = "YEAR_"

# Volume map attribute names, most specific first.  The first field that
# coerces to a finite number is used.
LINE_VOLUME_FIELDS = (
    "AADT_2023",
    "AADT_2022",
    "AADT_2021",
    "AADT_2020",
    "AADT",
    "aadt",
    "VOLUME",
)
LINE_YEAR_FIELDS = (
    "AADT_YEAR",
    "YEAR_",
    "YEAR",
    "year",
)

NOT_FOUND_MESSAGE = "No AADT found nearby"


class CandidateSource(str, Enum):
    STATION = "station"          # point count station layer
    VOLUME_MAP = "volume-map"    # polyline traffic volume map layer


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass(frozen=True)
class Candidate:
    """One usable traffic count, normalised across both layers."""
    value: float                  # AADT, always finite and > 0
    year: Optional[int]           # measurement year, None when not reported
    distance: float               # great-circle miles from the query point
    source: CandidateSource


@dataclass(frozen=True)
class AADTEstimate:
    """The selected traffic count for a location."""
    value: float
    year: Optional[int]
    distance_m: int               # rounded meters from the query point
    source: CandidateSource
    candidate_count: int          # candidates considered, including the winner


@dataclass(frozen=True)
class AADTNotFound:
    """No usable count in either layer."""
    candidate_count: int = 0


SelectionResult = Union[AADTEstimate, AADTNotFound]


# =============================================================================
# GEOMETRY HELPERS
# =============================================================================

def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Haversine distance between two points, returned in statute miles."""
    lat1_r, lon1_r = math.radians(lat1), math.radians(lon1)
    lat2_r, lon2_r = math.radians(lat2), math.radians(lon2)

    dlat = lat2_r - lat1_r
    dlon = lon2_r - lon1_r

    a = (math.sin(dlat / 2) ** 2
         + math.cos(lat1_r) * math.cos(lat2_r) * math.sin(dlon / 2) ** 2)
    # Rounding can push a just past 1.0 for near-antipodal points.
    c = 2 * math.asin(min(1.0, math.sqrt(a)))

    return EARTH_RADIUS_MILES * c


def miles_to_meters(miles: float) -> int:
    """Convert miles to whole meters, rounding halves up."""
    return int(math.floor(miles * METERS_PER_MILE + 0.5))


def _validate_coordinate(lat: float, lng: float) -> None:
    """Reject query coordinates that cannot produce a meaningful distance."""
    for label, val, limit in (("latitude", lat, 90.0), ("longitude", lng, 180.0)):
        if isinstance(val, bool) or not isinstance(val, (int, float)):
            raise ValueError(f"Invalid {label}: {val!r}")
        if not math.isfinite(val) or abs(val) > limit:
            raise ValueError(f"Invalid {label}: {val!r}")


def _finite_coord(val: Any) -> Optional[float]:
    """Return val as a float if it is a finite number, else None."""
    if isinstance(val, bool) or not isinstance(val, (int, float)):
        return None
    val = float(val)
    return val if math.isfinite(val) else None


# =============================================================================
# ATTRIBUTE COERCION
# =============================================================================

def _to_number(raw: Any) -> Optional[float]:
    """Coerce an attribute value to a finite float, or None.

    Accepts numbers and numeric strings ("12000", " 8500.0 ").  Missing,
    blank, boolean and non-numeric values all come back as None.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        num = float(raw)
    elif isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        try:
            num = float(text)
        except ValueError:
            return None
    else:
        return None
    return num if math.isfinite(num) else None


def _is_present(raw: Any) -> bool:
    if raw is None:
        return False
    if isinstance(raw, str) and not raw.strip():
        return False
    return True


def _to_year(raw: Any) -> Optional[int]:
    """Parse a present year attribute.

    Returns None for a missing year.  Raises ValueError when a year is
    present but is not a whole number, so the caller can drop the feature.
    """
    if not _is_present(raw):
        return None
    num = _to_number(raw)
    if num is None or not num.is_integer():
        raise ValueError(f"Unparsable year: {raw!r}")
    return int(num)


AttributeExtractor = Callable[[Dict[str, Any]], Any]


def _field(name: str) -> AttributeExtractor:
    def extract(attrs: Dict[str, Any]) -> Any:
        return attrs.get(name)
    extract.__name__ = f"field_{name}"
    return extract


LINE_VOLUME_EXTRACTORS: Tuple[AttributeExtractor, ...] = tuple(
    _field(name) for name in LINE_VOLUME_FIELDS
)
LINE_YEAR_EXTRACTORS: Tuple[AttributeExtractor, ...] = tuple(
    _field(name) for name in LINE_YEAR_FIELDS
)


def _first_number(
    attrs: Dict[str, Any], extractors: Sequence[AttributeExtractor]
) -> Optional[float]:
    """First extractor result that coerces to a finite number."""
    for extract in extractors:
        num = _to_number(extract(attrs))
        if num is not None:
            return num
    return None


def _first_present(
    attrs: Dict[str, Any], extractors: Sequence[AttributeExtractor]
) -> Any:
    """First extractor result that is present (not None or blank)."""
    for extract in extractors:
        raw = extract(attrs)
        if _is_present(raw):
            return raw
    return None


def _feature_parts(feature: Any) -> Tuple[Dict[str, Any], Any]:
    """Split a raw ArcGIS feature into (attributes, geometry)."""
    if not isinstance(feature, dict):
        return {}, None
    attrs = feature.get("attributes")
    if not isinstance(attrs, dict):
        attrs = {}
    return attrs, feature.get("geometry")


# =============================================================================
# CANDIDATE EXTRACTION
# =============================================================================

def extract_point_candidates(
    lat: float, lng: float, features: Sequence[Any]
) -> List[Candidate]:
    """Build candidates from count station point features."""
    candidates: List[Candidate] = []
    for feature in features or []:
        attrs, geometry = _feature_parts(feature)
        if not isinstance(geometry, dict):
            continue

        x = _finite_coord(geometry.get("x"))
        y = _finite_coord(geometry.get("y"))
        if x is None or y is None:
            continue

        value = _to_number(attrs.get(STATION_VOLUME_FIELD))
        if value is None or value <= 0:
            continue

        try:
            year = _to_year(attrs.get(STATION_YEAR_FIELD))
        except ValueError:
            continue

        candidates.append(Candidate(
            value=value,
            year=year,
            distance=haversine_miles(lat, lng, y, x),
            source=CandidateSource.STATION,
        ))

    return candidates


def _line_samples(geometry: Dict[str, Any]) -> List[Any]:
    """Pick the vertices used to measure distance to a segment.

    Up to MAX_LINE_SAMPLES vertices of the first path; failing that, the
    geometry's own x/y pair; failing that, nothing.
    """
    paths = geometry.get("paths")
    if isinstance(paths, list) and paths:
        first = paths[0]
        if isinstance(first, list) and first:
            return first[:MAX_LINE_SAMPLES]

    if "x" in geometry and "y" in geometry:
        return [[geometry.get("x"), geometry.get("y")]]

    return []


def _nearest_sample_miles(
    lat: float, lng: float, samples: Sequence[Any]
) -> Optional[float]:
    """Minimum distance over the samples with finite coordinates."""
    best: Optional[float] = None
    for vertex in samples:
        if not isinstance(vertex, (list, tuple)) or len(vertex) < 2:
            continue
        x = _finite_coord(vertex[0])
        y = _finite_coord(vertex[1])
        if x is None or y is None:
            continue

        dist = haversine_miles(lat, lng, y, x)
        if math.isfinite(dist) and (best is None or dist < best):
            best = dist

    return best


def extract_line_candidates(
    lat: float, lng: float, features: Sequence[Any]
) -> List[Candidate]:
    """Build candidates from traffic volume map polyline features."""
    candidates: List[Candidate] = []
    for feature in features or []:
        attrs, geometry = _feature_parts(feature)
        if not isinstance(geometry, dict):
            continue

        samples = _line_samples(geometry)
        if not samples:
            continue

        distance = _nearest_sample_miles(lat, lng, samples)
        if distance is None:
            continue

        value = _first_number(attrs, LINE_VOLUME_EXTRACTORS)
        if value is None or value <= 0:
            continue

        try:
            year = _to_year(_first_present(attrs, LINE_YEAR_EXTRACTORS))
        except ValueError:
            continue

        candidates.append(Candidate(
            value=value,
            year=year,
            distance=distance,
            source=CandidateSource.VOLUME_MAP,
        ))

    return candidates


def extract_candidates(
    lat: float,
    lng: float,
    points: Sequence[Any],
    lines: Sequence[Any],
) -> List[Candidate]:
    """Station candidates followed by volume map candidates, input order kept."""
    station = extract_point_candidates(lat, lng, points)
    volume_map = extract_line_candidates(lat, lng, lines)
    logger.debug(
        "AADT candidates: %d/%d station, %d/%d volume-map",
        len(station), len(points or []), len(volume_map), len(lines or []),
    )
    return station + volume_map


# =============================================================================
# SELECTION
# =============================================================================

def _rank_key(candidate: Candidate) -> Tuple[float, int, float]:
    # Missing year ranks as 0 here and nowhere else.
    return (candidate.distance, -(candidate.year or 0), -candidate.value)


def select_nearest(candidates: Sequence[Candidate]) -> SelectionResult:
    """Pick the nearest candidate; newer, then larger, counts break ties."""
    if not candidates:
        return AADTNotFound(candidate_count=0)

    best = sorted(candidates, key=_rank_key)[0]

    return AADTEstimate(
        value=best.value,
        year=best.year,
        distance_m=miles_to_meters(best.distance),
        source=best.source,
        candidate_count=len(candidates),
    )


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def estimate_aadt(
    lat: float,
    lng: float,
    points: Sequence[Any],
    lines: Sequence[Any],
) -> SelectionResult:
    """Estimate AADT at (lat, lng) from raw station and volume map features.

    Pure function of its inputs: no I/O and no shared state, so it is safe
    to call from several threads at once.

    Raises ValueError if lat/lng is not a finite, in-range coordinate.
    """
    _validate_coordinate(lat, lng)
    candidates = extract_candidates(lat, lng, points, lines)
    return select_nearest(candidates)


def _json_number(value: float) -> Union[int, float]:
    return int(value) if float(value).is_integer() else value


def serialize_for_result(
    result: SelectionResult, search: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Render a SelectionResult as the JSON body of the /aadt endpoint."""
    if isinstance(result, AADTEstimate):
        return {
            "aadt": _json_number(result.value),
            "year": result.year,
            "distance_m": result.distance_m,
            "source": result.source.value,
            "candidate_count": result.candidate_count,
        }
    return {
        "error": NOT_FOUND_MESSAGE,
        "candidate_count": result.candidate_count,
        "search": dict(search or {}),
    }
