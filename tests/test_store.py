"""Tests for the SQLite store: upserts, the filtered score query and
universe snapshots."""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
from schemas import BenchmarkBar, ReferenceTicker, UniverseRow
from store import MAX_QUERY_LIMIT, Store, shift_date

DATE = "2024-06-03"


@pytest.fixture
def scored(store):
    """Six score rows plus a universe snapshot for four of them."""
    tickers = ["AAPL", "AMZN", "GOOG", "MSFT", "NVDA", "ZZZ"]
    store.write_score_rows(DATE, [
        {"ticker": t, "composite": float(len(tickers) - i), "pe": 10.0 + i}
        for i, t in enumerate(tickers)
    ])
    store._upsert_many("universe", ("date", "ticker", "market_cap", "avg_volume"),
                       ("date", "ticker"), [
        UniverseRow(date=DATE, ticker="AAPL", market_cap=3e12, avg_volume=5e7),
        UniverseRow(date=DATE, ticker="AMZN", market_cap=2e12, avg_volume=4e7),
        UniverseRow(date=DATE, ticker="GOOG", market_cap=5e8, avg_volume=2e5),
        UniverseRow(date=DATE, ticker="MSFT", market_cap=None, avg_volume=1e6),
    ])
    return store


class TestBasics:
    def test_shift_date(self):
        assert shift_date("2024-06-03", -7) == "2024-05-27"
        assert shift_date("2024-03-01", -1) == "2024-02-29"

    def test_init_schema_idempotent(self, store):
        store.init_schema()
        assert store.count_scores(DATE) == 0

    def test_upsert_bar_overwrites(self, store, make_bar):
        store.upsert_daily_bars([make_bar("X", close=10.0)])
        store.upsert_daily_bars([make_bar("X", close=11.0)])
        assert store.get_bar(DATE, "X").close == 11.0
        assert store.get_universe_tickers(DATE) == ["X"]

    def test_close_n_days_before_exact_date_only(self, store, make_bar):
        store.upsert_daily_bars([make_bar("X", "2024-05-27", close=9.0),
                                 make_bar("X", "2024-05-28", close=9.5)])
        assert store.get_close_n_days_before(DATE, 7, "X") == 9.0
        assert store.get_close_n_days_before(DATE, 5, "X") is None

    def test_dates_and_closes(self, store, make_bar):
        store.upsert_daily_bars([make_bar("X", "2024-06-03", close=1.0),
                                 make_bar("Y", "2024-06-03", close=2.0),
                                 make_bar("X", "2024-06-05", close=3.0)])
        assert store.latest_bar_date() == "2024-06-05"
        assert store.next_bar_date("2024-06-03") == "2024-06-05"
        assert store.next_bar_date("2024-06-05") is None
        assert store.bar_dates("2024-06-01", "2024-06-30") == ["2024-06-03", "2024-06-05"]
        assert store.get_closes("2024-06-03") == {"X": 1.0, "Y": 2.0}
        assert store.get_closes("2024-06-03", ["Y"]) == {"Y": 2.0}

    def test_fundamentals_history_ordered(self, store, make_period):
        store.upsert_fundamentals_history([make_period("X", "2024-03-31"),
                                           make_period("X", "2021-03-31", "annual")])
        history = store.get_fundamentals_history("X")
        assert [p.period_end for p in history] == ["2021-03-31", "2024-03-31"]
        assert store.fundamentals_tickers() == ["X"]

    def test_reference_and_spy(self, store):
        store.upsert_reference_tickers([ReferenceTicker(ticker="A", market_cap=1.0)],
                                       updated_at="2024-06-03T00:00:00")
        assert store.count_reference_tickers() == 1
        store.upsert_spy_bars([BenchmarkBar(date="2024-06-03", close=530.0),
                               BenchmarkBar(date="2024-06-04", close=531.0)])
        assert store.get_spy_closes("2024-06-04", "2024-06-30") == {"2024-06-04": 531.0}

    def test_context_manager_closes(self, tmp_path):
        with Store(tmp_path / "db" / "q.db") as st:
            st.init_schema()
        assert (tmp_path / "db" / "q.db").exists()


class TestQueryScores:
    def test_unfiltered_sorted_by_composite(self, scored):
        total, rows = scored.query_scores(DATE)
        assert total == 6
        assert [r["ticker"] for r in rows] == ["AAPL", "AMZN", "GOOG", "MSFT", "NVDA", "ZZZ"]
        assert rows[0]["market_cap"] == 3e12

    def test_substring_case_insensitive(self, scored):
        total, rows = scored.query_scores(DATE, q="a")
        assert total == 3
        assert {r["ticker"] for r in rows} == {"AAPL", "AMZN", "NVDA"}

    def test_min_mcap_keeps_unknown_caps(self, scored):
        total, rows = scored.query_scores(DATE, min_mcap=1e9)
        # GOOG filtered; MSFT (null cap) and NVDA/ZZZ (no universe row) pass
        assert total == 5
        assert "GOOG" not in {r["ticker"] for r in rows}

    def test_min_vol(self, scored):
        total, rows = scored.query_scores(DATE, min_vol=1e7)
        assert {r["ticker"] for r in rows} == {"AAPL", "AMZN", "NVDA", "ZZZ"}

    def test_pagination_total_counts_all_matches(self, scored):
        total, rows = scored.query_scores(DATE, limit=2, offset=2)
        assert total == 6
        assert [r["ticker"] for r in rows] == ["GOOG", "MSFT"]

    def test_limit_clamped(self, scored):
        _, rows = scored.query_scores(DATE, limit=0)
        assert len(rows) == 1
        _, rows = scored.query_scores(DATE, limit=10_000, offset=-5)
        assert len(rows) == 6
        assert MAX_QUERY_LIMIT == 500

    def test_unknown_date(self, scored):
        assert scored.query_scores("1999-01-01") == (0, [])

    def test_top_tickers(self, scored):
        assert scored.top_tickers(DATE, 2) == ["AAPL", "AMZN"]
        assert scored.latest_score_date() == DATE


class TestRefreshUniverse:
    def test_average_volume_over_window(self, store, make_bar):
        bars = [make_bar("X", d, volume=v) for d, v in
                [("2024-05-29", 100.0), ("2024-05-30", 200.0),
                 ("2024-05-31", 300.0), ("2024-06-03", 400.0)]]
        store.upsert_daily_bars(bars)
        assert store.refresh_universe(DATE, window=2) == 1
        row = store.conn.execute(
            "SELECT * FROM universe WHERE date = ? AND ticker = 'X'", (DATE,)).fetchone()
        assert row["avg_volume"] == pytest.approx(350.0)

    def test_market_cap_from_reference_or_shares(self, store, make_bar):
        store.upsert_daily_bars([make_bar("A", close=10.0), make_bar("B", close=20.0),
                                 make_bar("C", close=30.0)])
        store.upsert_reference_tickers([
            ReferenceTicker(ticker="A", market_cap=5e9),
            ReferenceTicker(ticker="B", share_class_shares_outstanding=1e6),
        ])
        store.refresh_universe(DATE)
        caps = {r["ticker"]: r["market_cap"] for r in store.conn.execute(
            "SELECT ticker, market_cap FROM universe WHERE date = ?", (DATE,))}
        assert caps == {"A": 5e9, "B": 2e7, "C": None}

    def test_defaults_to_latest_bar_date(self, store, make_bar):
        store.upsert_daily_bars([make_bar("X", "2024-06-03"), make_bar("X", "2024-06-04")])
        store.refresh_universe()
        dates = [r[0] for r in store.conn.execute("SELECT date FROM universe")]
        assert dates == ["2024-06-04"]

    def test_empty_store(self, store):
        assert store.refresh_universe() == 0
