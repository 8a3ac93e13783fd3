#!/usr/bin/env python3
"""
SQLite persistence for bars, fundamentals, scores and universe snapshots.

One ``Store`` wraps one sqlite3 connection in WAL mode so the query API can
read while a scoring run writes. The connection runs in autocommit mode;
multi-statement writes open an explicit ``BEGIN IMMEDIATE`` transaction.

Usage:
    store = Store("data/quant.db")
    store.init_schema()
    store.upsert_daily_bars(bars)
    store.write_score_rows("2024-06-03", rows)
    total, rows = store.query_scores("2024-06-03", q="AA", limit=50)
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date as _date, timedelta
from pathlib import Path
from typing import Iterable, Optional

from pydantic import BaseModel

from schemas import (
    BenchmarkBar,
    DailyBar,
    FundamentalsLatest,
    FundamentalsPeriod,
    ReferenceTicker,
    UniverseRow,
)

logger = logging.getLogger(__name__)

MAX_QUERY_LIMIT = 500
DEFAULT_QUERY_LIMIT = 50


class PersistenceError(RuntimeError):
    """A write transaction failed and was rolled back."""


SCHEMA = """
CREATE TABLE IF NOT EXISTS daily_bars (
    date TEXT NOT NULL,
    ticker TEXT NOT NULL,
    open REAL, high REAL, low REAL, close REAL,
    volume REAL, vwap REAL,
    PRIMARY KEY (date, ticker)
);
CREATE TABLE IF NOT EXISTS fundamentals_history (
    ticker TEXT NOT NULL,
    period_end TEXT NOT NULL,
    timeframe TEXT NOT NULL,
    filing_date TEXT,
    fiscal_year INTEGER,
    fiscal_period TEXT,
    revenue REAL, net_income REAL, operating_cash_flow REAL,
    capital_expenditures REAL, dividends REAL,
    shares_outstanding REAL, shareholders_equity REAL, total_liabilities REAL,
    eps_basic REAL,
    PRIMARY KEY (ticker, period_end, timeframe)
);
CREATE TABLE IF NOT EXISTS fundamentals_latest (
    ticker TEXT PRIMARY KEY,
    filing_date TEXT,
    fiscal_year INTEGER,
    fiscal_period TEXT,
    revenue REAL, net_income REAL, operating_cash_flow REAL,
    capital_expenditures REAL, dividends REAL,
    shares_outstanding REAL, shareholders_equity REAL, total_liabilities REAL,
    updated_at TEXT
);
CREATE TABLE IF NOT EXISTS scores (
    date TEXT NOT NULL,
    ticker TEXT NOT NULL,
    momentum REAL, volatility REAL, volume REAL, vwap_dev REAL,
    pe REAL, pb REAL, de REAL, fcf_yield REAL, peg REAL, peg3 REAL,
    ps REAL, roe REAL, dividend_yield REAL,
    composite REAL NOT NULL,
    PRIMARY KEY (date, ticker)
);
CREATE TABLE IF NOT EXISTS universe (
    date TEXT NOT NULL,
    ticker TEXT NOT NULL,
    market_cap REAL,
    avg_volume REAL,
    PRIMARY KEY (date, ticker)
);
CREATE TABLE IF NOT EXISTS reference_tickers (
    ticker TEXT PRIMARY KEY,
    name TEXT,
    market_cap REAL,
    share_class_shares_outstanding REAL,
    currency TEXT,
    updated_at TEXT
);
CREATE TABLE IF NOT EXISTS spy_daily (
    date TEXT PRIMARY KEY,
    open REAL, high REAL, low REAL, close REAL, volume REAL
);
CREATE INDEX IF NOT EXISTS idx_daily_bars_date ON daily_bars (date);
CREATE INDEX IF NOT EXISTS idx_daily_bars_ticker ON daily_bars (ticker, date);
CREATE INDEX IF NOT EXISTS idx_scores_date ON scores (date, composite DESC);
CREATE INDEX IF NOT EXISTS idx_fh_ticker ON fundamentals_history (ticker, period_end);
"""

BAR_COLS = ("date", "ticker", "open", "high", "low", "close", "volume", "vwap")
PERIOD_COLS = tuple(FundamentalsPeriod.model_fields)
LATEST_COLS = tuple(FundamentalsLatest.model_fields)
SCORE_COLS = ("date", "ticker", "momentum", "volatility", "volume", "vwap_dev",
              "pe", "pb", "de", "fcf_yield", "peg", "peg3", "ps", "roe",
              "dividend_yield", "composite")


def _upsert_sql(table: str, cols: tuple, key: tuple) -> str:
    placeholders = ",".join("?" for _ in cols)
    updates = ",".join(f"{c}=excluded.{c}" for c in cols if c not in key)
    return (f"INSERT INTO {table} ({','.join(cols)}) VALUES ({placeholders}) "
            f"ON CONFLICT({','.join(key)}) DO UPDATE SET {updates}")


def _as_dict(row) -> dict:
    if isinstance(row, BaseModel):
        return row.model_dump()
    return dict(row)


def shift_date(d: str, days: int) -> str:
    """ISO date ``d`` moved by ``days`` calendar days."""
    return (_date.fromisoformat(d) + timedelta(days=days)).isoformat()


class Store:
    """SQLite-backed persistent store."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path, isolation_level=None,
                                    check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode = WAL")
        self.conn.execute("PRAGMA synchronous = NORMAL")

    def close(self):
        self.conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    def init_schema(self):
        self.conn.executescript(SCHEMA)

    @contextmanager
    def transaction(self):
        """BEGIN IMMEDIATE ... COMMIT, rolled back on any exception."""
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")

    def _upsert_many(self, table: str, cols: tuple, key: tuple, rows) -> int:
        sql = _upsert_sql(table, cols, key)
        params = [tuple(_as_dict(r).get(c) for c in cols) for r in rows]
        if not params:
            return 0
        with self.transaction() as conn:
            conn.executemany(sql, params)
        return len(params)

    # ------------------------------------------------------------------
    # Daily bars
    # ------------------------------------------------------------------
    def upsert_daily_bars(self, bars: Iterable[DailyBar]) -> int:
        return self._upsert_many("daily_bars", BAR_COLS, ("date", "ticker"), bars)

    def get_bar(self, date: str, ticker: str) -> Optional[DailyBar]:
        row = self.conn.execute(
            "SELECT * FROM daily_bars WHERE date = ? AND ticker = ?",
            (date, ticker)).fetchone()
        return DailyBar(**dict(row)) if row else None

    def get_bars(self, date: str) -> list:
        rows = self.conn.execute(
            "SELECT * FROM daily_bars WHERE date = ? ORDER BY ticker", (date,)).fetchall()
        return [DailyBar(**dict(r)) for r in rows]

    def get_close_n_days_before(self, date: str, n: int, ticker: str) -> Optional[float]:
        """Close exactly ``n`` calendar days before ``date``; None if absent."""
        row = self.conn.execute(
            "SELECT close FROM daily_bars WHERE date = ? AND ticker = ?",
            (shift_date(date, -n), ticker)).fetchone()
        return row["close"] if row else None

    def get_universe_tickers(self, date: str) -> list:
        rows = self.conn.execute(
            "SELECT DISTINCT ticker FROM daily_bars WHERE date = ? ORDER BY ticker",
            (date,)).fetchall()
        return [r["ticker"] for r in rows]

    def latest_bar_date(self) -> Optional[str]:
        row = self.conn.execute("SELECT MAX(date) AS d FROM daily_bars").fetchone()
        return row["d"] if row else None

    def bar_dates(self, start: str, end: str) -> list:
        rows = self.conn.execute(
            "SELECT DISTINCT date FROM daily_bars WHERE date BETWEEN ? AND ? ORDER BY date",
            (start, end)).fetchall()
        return [r["date"] for r in rows]

    def get_closes(self, date: str, tickers: Optional[Iterable[str]] = None) -> dict:
        """ticker -> close on ``date`` (restricted to ``tickers`` if given)."""
        rows = self.conn.execute(
            "SELECT ticker, close FROM daily_bars WHERE date = ?", (date,)).fetchall()
        wanted = set(tickers) if tickers is not None else None
        return {r["ticker"]: r["close"] for r in rows
                if wanted is None or r["ticker"] in wanted}

    def next_bar_date(self, date: str) -> Optional[str]:
        row = self.conn.execute(
            "SELECT MIN(date) AS d FROM daily_bars WHERE date > ?", (date,)).fetchone()
        return row["d"] if row else None

    # ------------------------------------------------------------------
    # Fundamentals
    # ------------------------------------------------------------------
    def upsert_fundamentals_history(self, periods: Iterable[FundamentalsPeriod]) -> int:
        return self._upsert_many("fundamentals_history", PERIOD_COLS,
                                 ("ticker", "period_end", "timeframe"), periods)

    def get_fundamentals_history(self, ticker: str) -> list:
        rows = self.conn.execute(
            "SELECT * FROM fundamentals_history WHERE ticker = ? "
            "ORDER BY period_end ASC, timeframe ASC", (ticker,)).fetchall()
        return [FundamentalsPeriod(**dict(r)) for r in rows]

    def fundamentals_tickers(self) -> list:
        rows = self.conn.execute(
            "SELECT DISTINCT ticker FROM fundamentals_history ORDER BY ticker").fetchall()
        return [r["ticker"] for r in rows]

    def upsert_fundamentals_latest(self, latest: Iterable[FundamentalsLatest]) -> int:
        return self._upsert_many("fundamentals_latest", LATEST_COLS, ("ticker",), latest)

    def get_fundamentals_latest(self, ticker: str) -> Optional[FundamentalsLatest]:
        row = self.conn.execute(
            "SELECT * FROM fundamentals_latest WHERE ticker = ?", (ticker,)).fetchone()
        return FundamentalsLatest(**dict(row)) if row else None

    # ------------------------------------------------------------------
    # Reference tickers / benchmark
    # ------------------------------------------------------------------
    def upsert_reference_tickers(self, refs: Iterable[ReferenceTicker],
                                 updated_at: Optional[str] = None) -> int:
        cols = ("ticker", "name", "market_cap", "share_class_shares_outstanding",
                "currency", "updated_at")
        rows = [{**_as_dict(r), "updated_at": updated_at} for r in refs]
        return self._upsert_many("reference_tickers", cols, ("ticker",), rows)

    def count_reference_tickers(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM reference_tickers").fetchone()[0]

    def upsert_spy_bars(self, bars: Iterable[BenchmarkBar]) -> int:
        cols = ("date", "open", "high", "low", "close", "volume")
        return self._upsert_many("spy_daily", cols, ("date",), bars)

    def get_spy_closes(self, start: str, end: str) -> dict:
        rows = self.conn.execute(
            "SELECT date, close FROM spy_daily WHERE date BETWEEN ? AND ? ORDER BY date",
            (start, end)).fetchall()
        return {r["date"]: r["close"] for r in rows}

    # ------------------------------------------------------------------
    # Scores
    # ------------------------------------------------------------------
    def write_score_rows(self, date: str, rows) -> int:
        """Replace every score row for ``date`` in one transaction.

        Readers see either the previous complete set or the new one. On
        any failure the transaction is rolled back, the previous rows stay
        in place and PersistenceError is raised.
        """
        sql = f"INSERT INTO scores ({','.join(SCORE_COLS)}) " \
              f"VALUES ({','.join('?' for _ in SCORE_COLS)})"
        n = 0
        try:
            with self.transaction() as conn:
                conn.execute("DELETE FROM scores WHERE date = ?", (date,))
                for row in rows:
                    rec = _as_dict(row)
                    if rec.get("date", date) != date:
                        raise PersistenceError(
                            f"score row for {rec.get('ticker')} is dated "
                            f"{rec.get('date')}, expected {date}")
                    rec["date"] = date
                    conn.execute(sql, tuple(rec.get(c) for c in SCORE_COLS))
                    n += 1
        except PersistenceError:
            raise
        except sqlite3.Error as e:
            raise PersistenceError(f"score write failed for {date}: {e}") from e
        return n

    def get_scores(self, date: str) -> list:
        rows = self.conn.execute(
            "SELECT * FROM scores WHERE date = ? ORDER BY composite DESC, ticker ASC",
            (date,)).fetchall()
        return [dict(r) for r in rows]

    def count_scores(self, date: str) -> int:
        return self.conn.execute(
            "SELECT COUNT(*) FROM scores WHERE date = ?", (date,)).fetchone()[0]

    def latest_score_date(self) -> Optional[str]:
        row = self.conn.execute("SELECT MAX(date) AS d FROM scores").fetchone()
        return row["d"] if row else None

    def score_dates(self, start: str, end: str) -> list:
        rows = self.conn.execute(
            "SELECT DISTINCT date FROM scores WHERE date BETWEEN ? AND ? ORDER BY date",
            (start, end)).fetchall()
        return [r["date"] for r in rows]

    def top_tickers(self, date: str, n: int) -> list:
        rows = self.conn.execute(
            "SELECT ticker FROM scores WHERE date = ? "
            "ORDER BY composite DESC, ticker ASC LIMIT ?", (date, n)).fetchall()
        return [r["ticker"] for r in rows]

    def query_scores(self, date: str, q: str = "", min_mcap: float = 0.0,
                     min_vol: float = 0.0, limit: int = DEFAULT_QUERY_LIMIT,
                     offset: int = 0) -> tuple:
        """Filtered, paginated scores joined with the universe snapshot.

        A ticker with no universe row (or a null market cap / volume)
        passes the corresponding minimum filter. Returns ``(total, rows)``
        where ``total`` counts every matching row before pagination.
        """
        limit = max(1, min(int(limit), MAX_QUERY_LIMIT))
        offset = max(0, int(offset))
        where = (
            "FROM scores AS s "
            "LEFT JOIN universe AS u ON u.date = s.date AND u.ticker = s.ticker "
            "WHERE s.date = :date "
            "AND (:q = '' OR instr(upper(s.ticker), :q) > 0) "
            "AND (u.market_cap IS NULL OR u.market_cap >= :min_mcap) "
            "AND (u.avg_volume IS NULL OR u.avg_volume >= :min_vol)"
        )
        params = {"date": date, "q": (q or "").strip().upper(),
                  "min_mcap": float(min_mcap or 0), "min_vol": float(min_vol or 0)}
        total = self.conn.execute(f"SELECT COUNT(*) {where}", params).fetchone()[0]
        rows = self.conn.execute(
            f"SELECT s.*, u.market_cap, u.avg_volume {where} "
            "ORDER BY s.composite DESC, s.ticker ASC LIMIT :limit OFFSET :offset",
            {**params, "limit": limit, "offset": offset}).fetchall()
        return total, [dict(r) for r in rows]

    # ------------------------------------------------------------------
    # Universe
    # ------------------------------------------------------------------
    def refresh_universe(self, date: Optional[str] = None, window: int = 20) -> int:
        """Snapshot market cap and trailing average volume for ``date``.

        Covers every ticker with a bar on ``date`` (default: latest bar
        date). Average volume is the mean over the ticker's last ``window``
        trading days up to ``date``. Market cap comes from the reference
        table, falling back to close x share-class shares outstanding.
        """
        date = date or self.latest_bar_date()
        if not date:
            return 0
        rows = self.conn.execute(
            """
            SELECT b.ticker, b.close, r.market_cap, r.share_class_shares_outstanding AS sh,
                   (SELECT AVG(v.volume) FROM (
                        SELECT volume FROM daily_bars
                        WHERE ticker = b.ticker AND date <= b.date
                        ORDER BY date DESC LIMIT ?) AS v) AS avg_volume
            FROM daily_bars AS b
            LEFT JOIN reference_tickers AS r ON r.ticker = b.ticker
            WHERE b.date = ?
            """, (window, date)).fetchall()
        snapshot = []
        for r in rows:
            cap = r["market_cap"]
            if cap is None and r["sh"] is not None and r["close"] is not None:
                cap = r["sh"] * r["close"]
            snapshot.append(UniverseRow(date=date, ticker=r["ticker"],
                                        market_cap=cap, avg_volume=r["avg_volume"]))
        n = self._upsert_many("universe", ("date", "ticker", "market_cap", "avg_volume"),
                              ("date", "ticker"), snapshot)
        logger.info("Universe for %s: %d tickers", date, n)
        return n
