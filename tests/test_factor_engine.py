"""Tests for per-ticker factor computation in factor_engine.

Covers the technical factors (momentum with its open fallback,
volatility, volume, VWAP deviation), the valuation ratios and their
null rules, latest-fundamentals derivation and the Excel export.
"""

import sys
from pathlib import Path

import pytest
from openpyxl import load_workbook

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from factor_engine import (
    EXCEL_COLUMNS,
    RATIO_COLS,
    compute_technical_factors,
    compute_valuation_ratios,
    derive_latest,
    write_excel,
)
from schemas import DailyBar, FundamentalsLatest


@pytest.fixture
def fund():
    return FundamentalsLatest(
        ticker="X", net_income=100.0, shares_outstanding=50.0,
        shareholders_equity=500.0, revenue=1000.0, total_liabilities=250.0,
        operating_cash_flow=80.0, capital_expenditures=30.0, dividends=10.0,
    )


# =====================================================================
# TECHNICAL FACTORS
# =====================================================================

class TestTechnicalFactors:
    def test_momentum_from_prior_close(self, make_bar):
        f = compute_technical_factors(make_bar("X", open=105.0, close=110.0), prev_close=100.0)
        assert f["momentum"] == pytest.approx(0.10)

    def test_momentum_falls_back_to_open(self, make_bar):
        f = compute_technical_factors(make_bar("X", open=100.0, close=110.0), prev_close=None)
        assert f["momentum"] == pytest.approx(0.10)

    def test_zero_prior_close_uses_open(self, make_bar):
        f = compute_technical_factors(make_bar("X", open=100.0, close=90.0), prev_close=0.0)
        assert f["momentum"] == pytest.approx(-0.10)

    def test_volatility_is_range_over_open(self, make_bar):
        f = compute_technical_factors(make_bar("X", open=100.0, high=105.0, low=95.0))
        assert f["volatility"] == pytest.approx(0.10)

    def test_volume_and_vwap_dev(self, make_bar):
        f = compute_technical_factors(make_bar("X", close=102.0, vwap=100.0, volume=12345))
        assert f["volume"] == 12345
        assert f["vwap_dev"] == pytest.approx(0.02)

    def test_missing_fields_give_zeros(self):
        bar = DailyBar(date="2024-06-03", ticker="X")
        f = compute_technical_factors(bar)
        assert f == {"momentum": 0.0, "volatility": 0.0, "volume": 0.0, "vwap_dev": 0.0}

    def test_never_none(self, make_bar):
        bar = make_bar("X", open=0.0, high=None, low=None, vwap=0.0, volume=None)
        f = compute_technical_factors(bar, prev_close=float("nan"))
        assert all(v is not None for v in f.values())
        assert f["momentum"] == 0.0
        assert f["vwap_dev"] == 0.0


# =====================================================================
# VALUATION RATIOS
# =====================================================================

class TestValuationRatios:
    def test_all_ratios(self, fund):
        r = compute_valuation_ratios(fund, 20.0, eps_cagr=0.25)
        assert r["pe"] == pytest.approx(10.0)
        assert r["pb"] == pytest.approx(2.0)
        assert r["ps"] == pytest.approx(1.0)
        assert r["roe"] == pytest.approx(0.2)
        assert r["de"] == pytest.approx(0.5)
        assert r["fcf_yield"] == pytest.approx(0.05)
        assert r["dividend_yield"] == pytest.approx(0.01)
        assert r["peg"] == pytest.approx(40.0)
        assert r["peg3"] == r["peg"]

    def test_no_fundamentals(self):
        r = compute_valuation_ratios(None, 20.0, eps_cagr=0.25)
        assert set(r) == set(RATIO_COLS)
        assert all(v is None for v in r.values())

    @pytest.mark.parametrize("price", [0.0, -5.0, None])
    def test_non_positive_price(self, fund, price):
        r = compute_valuation_ratios(fund, price)
        assert all(v is None for v in r.values())

    def test_zero_earnings_leaves_pe_null(self, fund):
        fund = fund.model_copy(update={"net_income": 0.0})
        r = compute_valuation_ratios(fund, 20.0, eps_cagr=0.25)
        assert r["pe"] is None
        assert r["peg"] is None
        assert r["roe"] == 0.0

    def test_negative_equity(self, fund):
        fund = fund.model_copy(update={"shareholders_equity": -100.0})
        r = compute_valuation_ratios(fund, 20.0)
        assert r["pb"] is None
        assert r["de"] is None
        assert r["roe"] == pytest.approx(-1.0)

    def test_missing_shares(self, fund):
        fund = fund.model_copy(update={"shares_outstanding": None})
        r = compute_valuation_ratios(fund, 20.0)
        for k in ("pe", "pb", "ps", "fcf_yield", "dividend_yield"):
            assert r[k] is None
        assert r["roe"] == pytest.approx(0.2)
        assert r["de"] == pytest.approx(0.5)

    def test_no_growth_no_peg(self, fund):
        r = compute_valuation_ratios(fund, 20.0, eps_cagr=None)
        assert r["pe"] == pytest.approx(10.0)
        assert r["peg"] is None and r["peg3"] is None


# =====================================================================
# LATEST FUNDAMENTALS DERIVATION
# =====================================================================

class TestDeriveLatest:
    def test_derives_and_persists(self, seeded_store):
        out = derive_latest(seeded_store, ["T00", "T09"], updated_at="2024-06-03T00:00:00")
        latest, history = out["T00"]
        assert latest is not None
        assert len(history) == 5
        assert seeded_store.get_fundamentals_latest("T00") == latest

    def test_ticker_without_history(self, seeded_store):
        latest, history = derive_latest(seeded_store, ["T09"])["T09"]
        assert latest is None
        assert history == []

    def test_falls_back_to_stored_snapshot(self, store):
        snap = FundamentalsLatest(ticker="ZZ", net_income=1.0, updated_at="x")
        store.upsert_fundamentals_latest([snap])
        latest, _ = derive_latest(store, ["ZZ"])["ZZ"]
        assert latest == snap


# =====================================================================
# EXCEL EXPORT
# =====================================================================

class TestWriteExcel:
    def test_header_and_rows(self, tmp_path):
        rows = [{"ticker": "AAA", "composite": 1.234567, "pe": None, "volume": 1e6},
                {"ticker": "BBB", "composite": -0.5, "pe": float("nan")}]
        path = write_excel(rows, tmp_path / "out" / "scores.xlsx")
        ws = load_workbook(path)["Scores"]
        values = list(ws.values)
        assert list(values[0]) == [h for _, h in EXCEL_COLUMNS]
        assert values[1][0] == 1
        assert values[1][1] == "AAA"
        assert values[1][2] == pytest.approx(1.2346)
        assert values[2][0] == 2
        assert values[2][7] is None
