"""Tests for the 3-year EPS CAGR / PEG estimator."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from eps_growth import (
    cagr_3y,
    estimate,
    months_between,
    nearest_three_years_back,
    peg_from_cagr,
)
from schemas import RunConfig


class TestMonthsBetween:
    def test_whole_years(self):
        assert months_between("2024-03-31", "2021-03-31") == 36

    def test_day_of_month_ignored(self):
        assert months_between("2024-03-01", "2021-02-28") == 37


class TestCagr:
    def test_doubling_over_three_years(self):
        assert cagr_3y(4.0, 2.0) == pytest.approx(0.259921, abs=1e-6)

    def test_flat_eps_is_zero_growth(self):
        assert cagr_3y(2.0, 2.0) == pytest.approx(0.0)

    @pytest.mark.parametrize("now,then", [
        (None, 2.0), (4.0, None), (4.0, 0.0), (4.0, -1.0), (-4.0, 2.0), (0.0, 2.0),
    ])
    def test_unusable_base_returns_none(self, now, then):
        assert cagr_3y(now, then) is None


class TestPeg:
    def test_peg_from_positive_growth(self):
        cagr = cagr_3y(4.0, 2.0)
        # exact value 20 / 0.259921 = 76.946; 76.96 quoted elsewhere is a loose rounding
        assert peg_from_cagr(20.0, cagr) == pytest.approx(76.946, abs=1e-2)

    @pytest.mark.parametrize("pe,cagr", [(20.0, 0.0), (20.0, -0.1), (None, 0.2), (20.0, None)])
    def test_peg_undefined(self, pe, cagr):
        assert peg_from_cagr(pe, cagr) is None


class TestPairing:
    def test_empty_history(self):
        assert nearest_three_years_back([]) == (None, None)

    def test_single_period_has_no_then(self, make_period):
        now, then = nearest_three_years_back([make_period("X", "2024-03-31")])
        assert now.period_end == "2024-03-31"
        assert then is None

    def test_nearest_to_36_months(self, make_period):
        history = [make_period("X", d) for d in
                   ["2020-09-30", "2021-03-31", "2021-06-30", "2024-03-31"]]
        now, then = nearest_three_years_back(history)
        assert then.period_end == "2021-03-31"

    def test_outside_window_ignored(self, make_period):
        history = [make_period("X", "2020-06-30"),   # 45 months
                   make_period("X", "2022-03-31"),   # 24 months
                   make_period("X", "2024-03-31")]
        _, then = nearest_three_years_back(history)
        assert then is None

    def test_window_bounds_inclusive(self, make_period):
        history = [make_period("X", "2020-09-30"), make_period("X", "2024-03-31")]
        _, then = nearest_three_years_back(history)
        assert months_between("2024-03-31", "2020-09-30") == 42
        assert then.period_end == "2020-09-30"

    def test_equal_distance_resolves_to_earliest(self, make_period):
        history = [make_period("X", "2020-12-31", eps_basic=1.0),   # 39 months
                   make_period("X", "2021-06-30", eps_basic=3.0),   # 33 months
                   make_period("X", "2024-03-31", eps_basic=2.0)]
        _, then = nearest_three_years_back(history)
        assert then.period_end == "2020-12-31"


class TestEstimate:
    def test_end_to_end(self, make_period):
        history = [make_period("X", "2021-03-31", eps_basic=2.0),
                   make_period("X", "2024-03-31", eps_basic=4.0)]
        assert estimate(history) == pytest.approx(0.259921, abs=1e-6)

    def test_missing_eps_returns_none(self, make_period):
        history = [make_period("X", "2021-03-31", eps_basic=None),
                   make_period("X", "2024-03-31", eps_basic=4.0)]
        assert estimate(history) is None

    def test_no_pairing_returns_none(self, make_period):
        assert estimate([make_period("X", "2024-03-31", eps_basic=4.0)]) is None

    def test_configured_window(self, make_period):
        history = [make_period("X", "2022-03-31", eps_basic=2.0),
                   make_period("X", "2024-03-31", eps_basic=4.0)]
        assert estimate(history) is None
        narrow = RunConfig.ScoringConfig(peg_min_months=20, peg_max_months=28,
                                         peg_target_months=24)
        assert estimate(history, narrow) == pytest.approx(2.0 ** (1 / 3) - 1)

    def test_quarterly_and_annual_never_mixed(self, make_period):
        history = [make_period("X", "2021-12-31", "annual", eps_basic=4.0),
                   make_period("X", "2021-12-31", eps_basic=1.0),
                   make_period("X", "2024-12-31", "annual", eps_basic=4.8),
                   make_period("X", "2024-12-31", eps_basic=1.2)]
        now, then = nearest_three_years_back(history)
        assert now.timeframe == then.timeframe == "quarterly"
        assert estimate(history) == pytest.approx(1.2 ** (1 / 3) - 1)

    def test_stored_mixed_history(self, store, make_period):
        store.upsert_fundamentals_history([
            make_period("X", "2021-12-31", "annual", eps_basic=4.0),
            make_period("X", "2021-12-31", eps_basic=1.0),
            make_period("X", "2024-12-31", "annual", eps_basic=4.8),
            make_period("X", "2024-12-31", eps_basic=1.2),
        ])
        growth = estimate(store.get_fundamentals_history("X"))
        assert growth == pytest.approx(0.0627, abs=1e-4)

    def test_annual_base_not_paired_with_quarter(self, make_period):
        history = [make_period("X", "2021-03-31", "annual", eps_basic=2.0),
                   make_period("X", "2024-03-31", eps_basic=4.0)]
        assert estimate(history) is None
