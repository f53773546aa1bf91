"""Tests for competition.py: competitor count adjustment."""

import pytest

from competition import CompetitionCounts, adjust_competition_counts


class TestAdjustCompetitionCounts:
    def test_subtracts_one_competitor(self):
        counts = adjust_competition_counts(2, 1)
        assert counts.comp_count == 1
        assert counts.heavy_count == 1

    def test_never_negative(self):
        counts = adjust_competition_counts(0, 0)
        assert counts == CompetitionCounts(comp_count=0, heavy_count=0)

    def test_single_competitor_leaves_small_impact(self):
        counts = adjust_competition_counts(1, 0)
        assert counts.comp_count == pytest.approx(0.2)

    def test_heavy_capped_at_adjusted_total(self):
        counts = adjust_competition_counts(1, 3)
        assert counts.comp_count == pytest.approx(0.2)
        assert counts.heavy_count == pytest.approx(0.2)

    def test_heavy_below_total_unchanged(self):
        counts = adjust_competition_counts(6, 2)
        assert counts.comp_count == 5
        assert counts.heavy_count == 2

    @pytest.mark.parametrize("bad", [None, "3", float("nan"), float("inf"), -4, True])
    def test_unusable_inputs_count_as_zero(self, bad):
        counts = adjust_competition_counts(bad, bad)
        assert counts.comp_count == 0
        assert counts.heavy_count == 0
