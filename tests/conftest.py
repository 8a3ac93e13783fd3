"""Shared fixtures for Equity Factor Ranker tests."""

import json
import sys
from pathlib import Path

import pytest

# Ensure project root is importable
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

from factor_engine import load_config
from schemas import DailyBar, FundamentalsPeriod
from store import Store

FIXTURES = Path(__file__).resolve().parent / "fixtures"

DATE = "2024-06-03"
PREV_WEEK = "2024-05-27"
TICKERS = [f"T{i:02d}" for i in range(10)]


@pytest.fixture
def cfg():
    """The production config.yaml, validated."""
    return load_config(ROOT / "config.yaml")


@pytest.fixture
def vx_filings():
    """Polygon vX financials payload (mixed schema variants)."""
    with open(FIXTURES / "vx_financials_sample.json") as f:
        return json.load(f)["results"]


@pytest.fixture
def store(tmp_path):
    """Empty store on a temporary SQLite file."""
    st = Store(tmp_path / "quant.db")
    st.init_schema()
    yield st
    st.close()


def bar(ticker, date=DATE, open=100.0, high=105.0, low=95.0, close=102.0,
        volume=1_000_000, vwap=101.0):
    return DailyBar(date=date, ticker=ticker, open=open, high=high, low=low,
                    close=close, volume=volume, vwap=vwap)


def period(ticker, period_end, timeframe="quarterly", **fields):
    fields.setdefault("filing_date", period_end)
    return FundamentalsPeriod(ticker=ticker, period_end=period_end,
                              timeframe=timeframe, **fields)


@pytest.fixture
def make_bar():
    return bar


@pytest.fixture
def make_period():
    return period


@pytest.fixture
def seeded_store(store):
    """Ten tickers with bars on DATE and PREV_WEEK, fundamentals for most.

    T00..T07 carry four quarters of history plus a quarter three years
    back (EPS pairing for PEG); T08 and T09 have no fundamentals.
    """
    today, prior = [], []
    for i, t in enumerate(TICKERS):
        close = 50.0 + 7.0 * i
        today.append(bar(t, DATE, open=close * 0.98, high=close * 1.03,
                         low=close * 0.96, close=close,
                         volume=200_000 * (i + 1), vwap=close * 0.995))
        prior.append(bar(t, PREV_WEEK, close=close / (1.0 + 0.01 * (i - 4))))
    store.upsert_daily_bars(today + prior)

    periods = []
    for i, t in enumerate(TICKERS[:8]):
        shares = 1e8 * (1 + i % 3)
        for q, end in enumerate(["2023-06-30", "2023-09-30", "2023-12-31", "2024-03-31"]):
            periods.append(period(
                t, end,
                revenue=2e8 + 1e7 * i + 1e6 * q,
                net_income=(2e7 + 3e6 * i) * (1 if i != 5 else -1),
                operating_cash_flow=3e7 + 1e6 * i,
                capital_expenditures=1e7,
                dividends=2e6 * (i % 2),
                shares_outstanding=shares,
                shareholders_equity=5e8 + 5e7 * i if i != 6 else -1e8,
                total_liabilities=3e8 + 1e7 * i,
                eps_basic=0.8 + 0.1 * i,
            ))
        periods.append(period(t, "2021-03-31",
                              eps_basic=0.5 + 0.05 * i,
                              shares_outstanding=shares))
    store.upsert_fundamentals_history(periods)
    return store
