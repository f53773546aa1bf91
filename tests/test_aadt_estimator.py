"""Unit tests for aadt_estimator.py: candidate extraction and nearest selection.

Tests cover: haversine distance, unit conversion, attribute coercion,
station and volume map extraction, selection ordering, the main entry
point, and JSON serialisation.
"""

import math

import pytest

from aadt_estimator import (
    EARTH_RADIUS_MILES,
    LINE_VOLUME_FIELDS,
    NOT_FOUND_MESSAGE,
    AADTEstimate,
    AADTNotFound,
    Candidate,
    CandidateSource,
    _to_number,
    _to_year,
    estimate_aadt,
    extract_candidates,
    extract_line_candidates,
    extract_point_candidates,
    haversine_miles,
    miles_to_meters,
    select_nearest,
    serialize_for_result,
)

QUERY_LAT, QUERY_LNG = 35.0, -80.0


def _point(x, y, **attrs):
    return {"attributes": attrs, "geometry": {"x": x, "y": y}}


def _line(path, **attrs):
    return {"attributes": attrs, "geometry": {"paths": [path]}}


def _cand(distance, year=None, value=1000.0, source=CandidateSource.STATION):
    return Candidate(value=value, year=year, distance=distance, source=source)


# =========================================================================
# Haversine distance
# =========================================================================

class TestHaversineMiles:
    def test_same_point_is_zero(self):
        assert haversine_miles(35.0, -80.0, 35.0, -80.0) == 0.0

    def test_one_degree_latitude(self):
        # One degree of arc on a 3958.761 mi sphere
        dist = haversine_miles(35.0, -80.0, 36.0, -80.0)
        assert dist == pytest.approx(EARTH_RADIUS_MILES * math.pi / 180, rel=1e-9)

    def test_antipodal_is_half_circumference(self):
        dist = haversine_miles(0.0, 0.0, 0.0, 180.0)
        assert dist == pytest.approx(math.pi * EARTH_RADIUS_MILES, rel=1e-9)

    def test_near_antipodal_does_not_raise(self):
        dist = haversine_miles(45.0, 10.0, -45.0, -170.0000001)
        assert math.isfinite(dist)
        assert dist <= math.pi * EARTH_RADIUS_MILES

    def test_tiny_distance_is_positive(self):
        dist = haversine_miles(35.0, -80.0, 35.0000001, -80.0)
        assert 0 < dist < 0.0001

    def test_symmetry(self):
        d1 = haversine_miles(35.0, -80.0, 35.01, -80.01)
        d2 = haversine_miles(35.01, -80.01, 35.0, -80.0)
        assert abs(d1 - d2) < 1e-12


class TestMilesToMeters:
    def test_zero(self):
        assert miles_to_meters(0) == 0

    def test_one_mile(self):
        assert miles_to_meters(1.0) == 1609

    def test_rounds_to_nearest(self):
        assert miles_to_meters(0.0931) == 150   # 149.83 m
        assert miles_to_meters(0.0928) == 149   # 149.35 m

    def test_monotonic(self):
        miles = [0, 0.001, 0.01, 0.0931, 0.1, 0.5, 1, 2.5, 10]
        meters = [miles_to_meters(m) for m in miles]
        assert meters == sorted(meters)


# =========================================================================
# Attribute coercion
# =========================================================================

class TestCoercion:
    def test_number_from_int_and_string(self):
        assert _to_number(12000) == 12000.0
        assert _to_number(" 8500.5 ") == 8500.5

    def test_number_rejects_junk(self):
        for raw in (None, "", "   ", "n/a", True, float("nan"), float("inf"), [1]):
            assert _to_number(raw) is None

    def test_year_missing_is_none(self):
        assert _to_year(None) is None
        assert _to_year("") is None

    def test_year_parses_numbers_and_strings(self):
        assert _to_year(2022) == 2022
        assert _to_year(2022.0) == 2022
        assert _to_year("2021") == 2021

    def test_year_zero_is_kept(self):
        assert _to_year(0) == 0

    def test_unparsable_year_raises(self):
        with pytest.raises(ValueError):
            _to_year("last year")
        with pytest.raises(ValueError):
            _to_year(2021.5)


# =========================================================================
# Station (point) extraction
# =========================================================================

class TestExtractPointCandidates:
    def test_basic_station(self):
        cands = extract_point_candidates(
            QUERY_LAT, QUERY_LNG, [_point(-80.001, 35.001, AADT=12000, YEAR_=2022)],
        )
        assert len(cands) == 1
        c = cands[0]
        assert c.value == 12000
        assert c.year == 2022
        assert c.source == CandidateSource.STATION
        assert c.distance == pytest.approx(
            haversine_miles(QUERY_LAT, QUERY_LNG, 35.001, -80.001)
        )

    def test_missing_year_is_absent(self):
        cands = extract_point_candidates(QUERY_LAT, QUERY_LNG, [_point(-80.0, 35.0, AADT=500)])
        assert cands[0].year is None

    def test_year_zero_is_not_absent(self):
        cands = extract_point_candidates(
            QUERY_LAT, QUERY_LNG, [_point(-80.0, 35.0, AADT=500, YEAR_=0)],
        )
        assert cands[0].year == 0

    def test_string_volume_is_coerced(self):
        cands = extract_point_candidates(QUERY_LAT, QUERY_LNG, [_point(-80.0, 35.0, AADT="7400")])
        assert cands[0].value == 7400

    @pytest.mark.parametrize("volume", [0, -5, "abc", None, "", float("nan")])
    def test_unusable_volume_is_skipped(self, volume):
        cands = extract_point_candidates(QUERY_LAT, QUERY_LNG, [_point(-80.0, 35.0, AADT=volume)])
        assert cands == []

    def test_unparsable_year_skips_feature(self):
        cands = extract_point_candidates(
            QUERY_LAT, QUERY_LNG, [_point(-80.0, 35.0, AADT=500, YEAR_="unknown")],
        )
        assert cands == []

    def test_bad_geometry_is_skipped(self):
        features = [
            {"attributes": {"AADT": 500}},
            {"attributes": {"AADT": 500}, "geometry": None},
            _point(None, 35.0, AADT=500),
            _point(-80.0, "35.0", AADT=500),
            _point(float("inf"), 35.0, AADT=500),
            "not a feature",
        ]
        assert extract_point_candidates(QUERY_LAT, QUERY_LNG, features) == []

    def test_missing_attributes_is_skipped(self):
        cands = extract_point_candidates(
            QUERY_LAT, QUERY_LNG, [{"geometry": {"x": -80.0, "y": 35.0}}],
        )
        assert cands == []

    def test_preserves_input_order(self):
        features = [
            _point(-80.01, 35.01, AADT=1),
            _point(-80.0, 35.0, AADT=2),
            _point(-80.02, 35.02, AADT=3),
        ]
        cands = extract_point_candidates(QUERY_LAT, QUERY_LNG, features)
        assert [c.value for c in cands] == [1, 2, 3]


# =========================================================================
# Volume map (line) extraction
# =========================================================================

class TestExtractLineCandidates:
    def test_distance_is_min_over_first_three_vertices(self):
        path = [[-80.03, 35.03], [-80.02, 35.02], [-80.001, 35.001]]
        cands = extract_line_candidates(QUERY_LAT, QUERY_LNG, [_line(path, AADT=9000)])
        expected = haversine_miles(QUERY_LAT, QUERY_LNG, 35.001, -80.001)
        first_vertex = haversine_miles(QUERY_LAT, QUERY_LNG, 35.03, -80.03)
        assert cands[0].distance == pytest.approx(expected)
        assert cands[0].distance < first_vertex
        assert cands[0].source == CandidateSource.VOLUME_MAP

    def test_only_first_three_vertices_sampled(self):
        path = [[-80.03, 35.03], [-80.02, 35.02], [-80.01, 35.01], [-80.0, 35.0]]
        cands = extract_line_candidates(QUERY_LAT, QUERY_LNG, [_line(path, AADT=9000)])
        assert cands[0].distance == pytest.approx(
            haversine_miles(QUERY_LAT, QUERY_LNG, 35.01, -80.01)
        )

    def test_only_first_path_sampled(self):
        feature = {
            "attributes": {"AADT": 9000},
            "geometry": {"paths": [[[-80.02, 35.02]], [[-80.0, 35.0]]]},
        }
        cands = extract_line_candidates(QUERY_LAT, QUERY_LNG, [feature])
        assert cands[0].distance == pytest.approx(
            haversine_miles(QUERY_LAT, QUERY_LNG, 35.02, -80.02)
        )

    def test_invalid_vertices_ignored(self):
        path = [[None, 35.0], ["a", "b"], [-80.005, 35.005]]
        cands = extract_line_candidates(QUERY_LAT, QUERY_LNG, [_line(path, AADT=9000)])
        assert cands[0].distance == pytest.approx(
            haversine_miles(QUERY_LAT, QUERY_LNG, 35.005, -80.005)
        )

    def test_all_vertices_invalid_skips_feature(self):
        path = [[None, None], [-80.0]]
        assert extract_line_candidates(QUERY_LAT, QUERY_LNG, [_line(path, AADT=9000)]) == []

    def test_centroid_fallback(self):
        feature = {"attributes": {"AADT": 9000}, "geometry": {"paths": [], "x": -80.0, "y": 35.0}}
        cands = extract_line_candidates(QUERY_LAT, QUERY_LNG, [feature])
        assert len(cands) == 1
        assert cands[0].distance == 0.0

    def test_no_usable_geometry_skips_feature(self):
        features = [
            {"attributes": {"AADT": 9000}, "geometry": {"paths": []}},
            {"attributes": {"AADT": 9000}, "geometry": {"paths": [[]]}},
            {"attributes": {"AADT": 9000}, "geometry": {}},
            {"attributes": {"AADT": 9000}},
        ]
        assert extract_line_candidates(QUERY_LAT, QUERY_LNG, features) == []

    def test_volume_probes_fields_in_order(self):
        feature = _line(
            [[-80.0, 35.0]],
            AADT_2023=None,
            AADT_2022="n/a",
            AADT_2021="15000",
            AADT=4000,
        )
        cands = extract_line_candidates(QUERY_LAT, QUERY_LNG, [feature])
        assert cands[0].value == 15000

    def test_generic_volume_field_used_last(self):
        feature = _line([[-80.0, 35.0]], VOLUME=321)
        assert extract_line_candidates(QUERY_LAT, QUERY_LNG, [feature])[0].value == 321

    def test_first_numeric_volume_of_zero_skips_feature(self):
        feature = _line([[-80.0, 35.0]], AADT_2023=0, AADT=5000)
        assert extract_line_candidates(QUERY_LAT, QUERY_LNG, [feature]) == []

    def test_no_volume_skips_feature(self):
        feature = _line([[-80.0, 35.0]], ROUTE="US 74")
        assert extract_line_candidates(QUERY_LAT, QUERY_LNG, [feature]) == []

    def test_year_probes_fields_in_order(self):
        feature = _line([[-80.0, 35.0]], AADT=100, AADT_YEAR="", YEAR_=2020, YEAR=2019)
        assert extract_line_candidates(QUERY_LAT, QUERY_LNG, [feature])[0].year == 2020

    def test_missing_year_is_absent(self):
        feature = _line([[-80.0, 35.0]], AADT=100)
        assert extract_line_candidates(QUERY_LAT, QUERY_LNG, [feature])[0].year is None

    def test_volume_fields_include_generic_aadt(self):
        assert "AADT" in LINE_VOLUME_FIELDS
        assert LINE_VOLUME_FIELDS.index("AADT") > LINE_VOLUME_FIELDS.index("AADT_2020")


class TestExtractCandidates:
    def test_stations_before_segments(self):
        cands = extract_candidates(
            QUERY_LAT,
            QUERY_LNG,
            [_point(-80.0, 35.0, AADT=1)],
            [_line([[-80.0, 35.0]], AADT=2)],
        )
        assert [c.source for c in cands] == [CandidateSource.STATION, CandidateSource.VOLUME_MAP]

    def test_duplicates_are_kept(self):
        cands = extract_candidates(
            QUERY_LAT,
            QUERY_LNG,
            [_point(-80.0, 35.0, AADT=1), _point(-80.0, 35.0, AADT=1)],
            [_line([[-80.0, 35.0]], AADT=1)],
        )
        assert len(cands) == 3


# =========================================================================
# Selection
# =========================================================================

class TestSelectNearest:
    def test_empty_is_not_found(self):
        result = select_nearest([])
        assert isinstance(result, AADTNotFound)
        assert result.candidate_count == 0

    def test_nearest_wins_over_newer_and_larger(self):
        result = select_nearest([
            _cand(0.5, year=2024, value=90000),
            _cand(0.1, year=2010, value=100),
        ])
        assert result.value == 100

    def test_selected_is_never_farther_than_any_other(self):
        cands = [_cand(d) for d in (0.7, 0.2, 1.5, 0.2001, 0.9)]
        result = select_nearest(cands)
        assert result.distance_m == miles_to_meters(min(c.distance for c in cands))

    def test_tie_prefers_newer_year(self):
        result = select_nearest([
            _cand(0.1, year=2021, value=5000),
            _cand(0.1, year=2023, value=3000),
        ])
        assert result.value == 3000
        assert result.year == 2023

    def test_tie_prefers_dated_over_undated(self):
        result = select_nearest([
            _cand(0.1, year=None, value=9000),
            _cand(0.1, year=2015, value=100),
        ])
        assert result.year == 2015

    def test_tie_on_year_prefers_larger_value(self):
        result = select_nearest([
            _cand(0.1, year=2022, value=800),
            _cand(0.1, year=2022, value=1200),
        ])
        assert result.value == 1200

    def test_year_zero_ties_with_missing_year(self):
        result = select_nearest([
            _cand(0.1, year=0, value=100),
            _cand(0.1, year=None, value=200),
        ])
        assert result.value == 200
        assert result.year is None

    def test_year_zero_winner_keeps_zero(self):
        result = select_nearest([
            _cand(0.1, year=None, value=100),
            _cand(0.1, year=0, value=200),
        ])
        assert result.value == 200
        assert result.year == 0
        assert serialize_for_result(result)["year"] == 0

    def test_result_fields(self):
        result = select_nearest([
            _cand(1.0, year=2020, value=4321, source=CandidateSource.VOLUME_MAP),
            _cand(2.0),
        ])
        assert isinstance(result, AADTEstimate)
        assert result.distance_m == 1609
        assert result.source == CandidateSource.VOLUME_MAP
        assert result.candidate_count == 2

    def test_candidate_count_matches_input(self):
        for n in range(1, 6):
            cands = [_cand(0.1 * i) for i in range(n)]
            assert select_nearest(cands).candidate_count == n


# =========================================================================
# Main entry point
# =========================================================================

class TestEstimateAadt:
    def test_station_closer_than_segment(self):
        points = [_point(-80.001, 35.001, AADT=12000, YEAR_=2022)]
        lines = [_line([[-80.02, 35.02], [-80.01, 35.01], [-80.03, 35.03]],
                       AADT=18000, YEAR_=2020)]

        result = estimate_aadt(35.0, -80.0, points, lines)

        assert isinstance(result, AADTEstimate)
        assert result.value == 12000
        assert result.year == 2022
        assert result.source == CandidateSource.STATION
        assert result.candidate_count == 2
        assert 130 < result.distance_m < 160

    def test_freshness_beats_magnitude_at_same_distance(self):
        points = [_point(-80.001, 35.001, AADT=5000, YEAR_=2021)]
        lines = [_line([[-80.001, 35.001]], AADT=3000, YEAR_=2023)]

        result = estimate_aadt(35.0, -80.0, points, lines)

        assert result.value == 3000
        assert result.year == 2023
        assert result.source == CandidateSource.VOLUME_MAP

    def test_empty_inputs(self):
        result = estimate_aadt(35.0, -80.0, [], [])
        assert isinstance(result, AADTNotFound)
        assert result.candidate_count == 0

    def test_all_features_unusable(self):
        points = [_point(-80.0, 35.0, AADT=-5)]
        lines = [_line([[None, None]], AADT=100)]
        result = estimate_aadt(35.0, -80.0, points, lines)
        assert isinstance(result, AADTNotFound)

    def test_query_point_on_station(self):
        result = estimate_aadt(35.0, -80.0, [_point(-80.0, 35.0, AADT=100)], [])
        assert result.distance_m == 0

    def test_year_zero_reaches_output(self):
        points = [_point(-80.001, 35.001, AADT=900, YEAR_=0)]
        lines = [_line([[-80.001, 35.001]], AADT=400)]

        result = estimate_aadt(35.0, -80.0, points, lines)

        assert result.value == 900
        assert result.year == 0
        assert serialize_for_result(result)["year"] == 0

    @pytest.mark.parametrize("lat,lng", [
        (float("nan"), -80.0),
        (35.0, float("inf")),
        (91.0, -80.0),
        (35.0, -180.5),
        ("35.0", -80.0),
        (None, -80.0),
    ])
    def test_invalid_query_coordinate_raises(self, lat, lng):
        with pytest.raises(ValueError):
            estimate_aadt(lat, lng, [], [])


# =========================================================================
# Serialisation
# =========================================================================

class TestSerializeForResult:
    def test_found(self):
        result = AADTEstimate(
            value=12000.0, year=2022, distance_m=144,
            source=CandidateSource.STATION, candidate_count=2,
        )
        assert serialize_for_result(result) == {
            "aadt": 12000,
            "year": 2022,
            "distance_m": 144,
            "source": "station",
            "candidate_count": 2,
        }

    def test_found_without_year(self):
        result = AADTEstimate(
            value=812.5, year=None, distance_m=10,
            source=CandidateSource.VOLUME_MAP, candidate_count=1,
        )
        body = serialize_for_result(result)
        assert body["year"] is None
        assert body["aadt"] == 812.5
        assert body["source"] == "volume-map"

    def test_not_found_includes_search(self):
        search = {"lat": 35.0, "lng": -80.0, "radius_m": 150}
        body = serialize_for_result(AADTNotFound(), search)
        assert body == {
            "error": NOT_FOUND_MESSAGE,
            "candidate_count": 0,
            "search": search,
        }
