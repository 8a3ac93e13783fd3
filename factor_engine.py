#!/usr/bin/env python3
"""
Equity Factor Ranker - Factor Engine
====================================
Turns one date's daily bars plus stored fundamentals into ranked,
persisted score rows:

    bars(date) + bars(date - 7d) + FundamentalsLatest + 3y EPS CAGR
        -> raw factors -> cross-sectional z-scores -> weighted composite
        -> sorted ScoreRows -> one atomic write

Twelve factors feed the composite. Technical factors (momentum,
volatility, volume, vwap_dev) are z-scored raw. Lower-is-better ratios
(pe, pb, de, ps, peg) are inverted to 1/x first, with 0 standing in for a
null or zero ratio. Higher-is-better ratios (fcf_yield, roe,
dividend_yield) are z-scored directly with 0 for null.

The pipeline is a pure function of (date, bars, fundamentals, weights):
weights are passed in explicitly, never read from module state.
"""

import json
import logging
import math
from collections.abc import Mapping
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd
import yaml
from openpyxl import Workbook
from scipy.stats import zscore as _scipy_zscore

import eps_growth
from fundamentals import compute_latest
from schemas import DEFAULT_WEIGHTS, RunConfig, ScoreRow, ScoringWeights

logger = logging.getLogger(__name__)


# =========================================================================
# A. Load configuration
# =========================================================================
ROOT = Path(__file__).resolve().parent
CONFIG_PATH = ROOT / "config.yaml"
WEIGHTS_OVERRIDE_PATH = ROOT / "config" / "weights.json"


class NoCrossSectionError(RuntimeError):
    """No daily bars exist for the date being scored."""

    def __init__(self, date: str):
        self.date = date
        super().__init__(f"score failed for {date}: no bars")


def load_config(path: Path = CONFIG_PATH) -> RunConfig:
    """Load config.yaml and validate it into a RunConfig.

    A missing file yields the all-defaults config; an empty file is
    treated the same way.
    """
    path = Path(path)
    if not path.exists():
        return RunConfig()
    with open(path, "r") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path.name} must contain a mapping, got {type(raw).__name__}")
    return RunConfig(**raw)


def load_weights(cfg: RunConfig, override_path: Path = WEIGHTS_OVERRIDE_PATH) -> dict:
    """Effective weight map: config.yaml weights with the JSON override on top."""
    weights = cfg.weights.model_dump()
    override_path = Path(override_path)
    if override_path.exists():
        with open(override_path, "r") as f:
            override = json.load(f) or {}
        weights = ScoringWeights(**{**weights, **override}).model_dump()
    return weights


# =========================================================================
# B. Derive latest fundamentals from stored history
# =========================================================================
def derive_latest(store, tickers, updated_at: Optional[str] = None) -> dict:
    """Recompute FundamentalsLatest for ``tickers`` and persist it.

    Returns ``{ticker: (latest_or_None, history)}`` so the caller can reuse
    the history for the PEG estimate. Tickers without any stored period
    fall back to whatever latest snapshot is already stored.
    """
    out = {}
    fresh = []
    for t in tickers:
        history = store.get_fundamentals_history(t)
        latest = compute_latest(t, history, updated_at=updated_at)
        if latest is None:
            latest = store.get_fundamentals_latest(t)
        else:
            fresh.append(latest)
        out[t] = (latest, history)
    if fresh:
        store.upsert_fundamentals_latest(fresh)
    logger.debug("Derived latest fundamentals for %d of %d tickers",
                 len(fresh), len(out))
    return out


# =========================================================================
# C. Technical factors
# =========================================================================
def _num(v) -> Optional[float]:
    if v is None:
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def compute_technical_factors(bar, prev_close=None) -> dict:
    """momentum / volatility / volume / vwap_dev for one bar; never None."""
    close = _num(bar.close) or 0.0
    open_ = _num(bar.open)
    high, low = _num(bar.high), _num(bar.low)
    vwap = _num(bar.vwap)
    prev = _num(prev_close)

    if prev:
        momentum = (close - prev) / prev
    elif open_:
        momentum = (close - open_) / open_
    else:
        momentum = 0.0

    if open_ and high is not None and low is not None:
        volatility = (high - low) / open_
    else:
        volatility = 0.0

    return {
        "momentum": momentum,
        "volatility": volatility,
        "volume": _num(bar.volume) or 0.0,
        "vwap_dev": (close - vwap) / vwap if vwap else 0.0,
    }


# =========================================================================
# D. Valuation ratios (point-in-time fundamentals x price)
# =========================================================================
RATIO_COLS = ["pe", "pb", "de", "fcf_yield", "peg", "peg3", "ps", "roe", "dividend_yield"]


def compute_valuation_ratios(fund, price, eps_cagr: Optional[float] = None) -> dict:
    """Ratios from a FundamentalsLatest snapshot and the day's close.

    Every ratio is independently nullable. All are None without
    fundamentals or without a positive price.
    """
    out = dict.fromkeys(RATIO_COLS)
    price = _num(price)
    if fund is None or price is None or price <= 0:
        return out

    shares = _num(fund.shares_outstanding)
    shares = shares if shares is not None and shares > 0 else None
    ni = _num(fund.net_income)
    equity = _num(fund.shareholders_equity)
    revenue = _num(fund.revenue)
    liabilities = _num(fund.total_liabilities)
    ocf = _num(fund.operating_cash_flow)
    capex = _num(fund.capital_expenditures)
    dividends = _num(fund.dividends)

    if shares is not None and ni is not None:
        eps = ni / shares
        if eps != 0:
            out["pe"] = price / eps
    if shares is not None and equity is not None and equity > 0:
        out["pb"] = price / (equity / shares)
    if shares is not None and revenue is not None and revenue > 0:
        out["ps"] = price / (revenue / shares)
    if equity and ni is not None:
        out["roe"] = ni / equity
    if equity is not None and equity > 0 and liabilities is not None:
        out["de"] = liabilities / equity
    if shares is not None and ocf is not None and capex is not None:
        out["fcf_yield"] = (ocf - capex) / (shares * price)
    if shares is not None and dividends is not None:
        out["dividend_yield"] = (dividends / shares) / price

    peg = eps_growth.peg_from_cagr(out["pe"], eps_cagr)
    out["peg"] = peg
    out["peg3"] = peg
    return out


# =========================================================================
# E. Factor direction
# =========================================================================
# True = higher is better. Lower-is-better ratios are inverted before
# z-scoring so every normalized column reads "higher is better".
METRIC_DIR = {
    "momentum": True, "volatility": True, "volume": True, "vwap_dev": True,
    "pe": False, "pb": False, "de": False, "ps": False, "peg": False,
    "fcf_yield": True, "roe": True, "dividend_yield": True,
}
INVERTED_FACTORS = frozenset(k for k, v in METRIC_DIR.items() if not v)

# weight key -> normalized factor column
WEIGHT_KEYS = {
    "momentum": "momentum",
    "volatility": "volatility",
    "volume": "volume",
    "vwap": "vwap_dev",
    "pe": "pe_inv",
    "pb": "pb_inv",
    "de": "de_inv",
    "fcf_yield": "fcf_yield",
    "peg": "peg_inv",
    "ps": "ps_inv",
    "roe": "roe",
    "dividend_yield": "dividend_yield",
}
FACTOR_COLS = list(WEIGHT_KEYS.values())


def _inverse(v) -> float:
    v = _num(v)
    return 1.0 / v if v else 0.0


def normalized_inputs(df: pd.DataFrame) -> pd.DataFrame:
    """The twelve pre-z-score factor columns, with null/zero substitution."""
    out = pd.DataFrame(index=df.index)
    for factor, higher_better in METRIC_DIR.items():
        col = df[factor] if factor in df.columns else pd.Series(np.nan, index=df.index)
        if higher_better:
            out[factor] = pd.to_numeric(col, errors="coerce").fillna(0.0).astype(float)
        else:
            out[f"{factor}_inv"] = col.map(_inverse).astype(float)
    return out[FACTOR_COLS]


# =========================================================================
# F. Cross-sectional z-scores
# =========================================================================
def zscores(values) -> np.ndarray:
    """Population z-scores (ddof=0), one per input, same order.

    Empty input gives an empty array. Zero spread (every value equal,
    n=1 included) gives zeros rather than a division by zero.
    """
    arr = np.asarray(values, dtype=float).ravel()
    if arr.size == 0:
        return np.array([], dtype=float)
    arr = np.where(np.isfinite(arr), arr, 0.0)
    # ptp before dividing: float error in the mean can fake a spread
    if np.ptp(arr) == 0:
        return np.zeros(arr.size, dtype=float)
    return _scipy_zscore(arr, ddof=0)


def zscore_frame(inputs: pd.DataFrame) -> pd.DataFrame:
    """Apply ``zscores`` column by column; columns keep a ``z_`` prefix."""
    return pd.DataFrame(
        {f"z_{c}": zscores(inputs[c].to_numpy()) for c in inputs.columns},
        index=inputs.index,
    )


def build_cross_section(records: list) -> pd.DataFrame:
    """Raw factor records -> DataFrame with inverted inputs and z-scores."""
    df = pd.DataFrame.from_records(records)
    if df.empty:
        return df
    inputs = normalized_inputs(df)
    for c in inputs.columns:
        if c not in df.columns:
            df[c] = inputs[c]
    return pd.concat([df, zscore_frame(inputs)], axis=1)


# =========================================================================
# G. Composite score
# =========================================================================
def _weight_map(weights) -> dict:
    if weights is None:
        return {}
    if isinstance(weights, ScoringWeights):
        return weights.model_dump()
    if isinstance(weights, Mapping):
        return dict(weights)
    raise TypeError(f"weights must be a mapping, got {type(weights).__name__}")


def compute_composite(df: pd.DataFrame, weights) -> pd.DataFrame:
    """composite = sum(weight_k * z_k); absent weights and NaN z-scores count 0."""
    if df.empty:
        df["composite"] = pd.Series(dtype=float)
        return df
    wmap = _weight_map(weights)
    composite = pd.Series(0.0, index=df.index)
    for key, col in WEIGHT_KEYS.items():
        w = _num(wmap.get(key)) or 0.0
        zcol = f"z_{col}"
        if w == 0 or zcol not in df.columns:
            continue
        composite += df[zcol].fillna(0.0) * w
    df["composite"] = composite.astype(float)
    return df


# =========================================================================
# H. Ranking
# =========================================================================
def rank_scores(df: pd.DataFrame) -> pd.DataFrame:
    """Sort composite descending, ticker ascending on ties; 1-based rank."""
    if df.empty:
        df["rank"] = pd.Series(dtype=int)
        return df
    df = df.sort_values(["composite", "ticker"], ascending=[False, True],
                        kind="mergesort").reset_index(drop=True)
    df["rank"] = np.arange(1, len(df) + 1)
    return df


def to_score_rows(df: pd.DataFrame, date: str) -> list:
    rows = []
    for rec in df.to_dict("records"):
        vals = {}
        for c in ScoreRow.model_fields:
            if c == "date":
                continue
            v = rec.get(c)
            vals[c] = None if v is None or (isinstance(v, float) and math.isnan(v)) else v
        rows.append(ScoreRow(date=date, **vals))
    return rows


# =========================================================================
# I. Per-date scoring run
# =========================================================================
def score_date(store, date: str, weights=None, cfg: Optional[RunConfig] = None,
               ctx=None) -> pd.DataFrame:
    """Score every ticker with a bar on ``date`` and persist atomically.

    Order: derive latest fundamentals, compute raw factors, z-score the
    full cross-section, composite + rank, one write. Raises
    NoCrossSectionError when the date has no bars and PersistenceError
    (from the store) when the write fails; in both cases any rows already
    stored for the date are left untouched.
    """
    cfg = cfg or RunConfig()
    if weights is None:
        weights = dict(DEFAULT_WEIGHTS)

    bars = store.get_bars(date)
    if not bars:
        raise NoCrossSectionError(date)

    tickers = [b.ticker for b in bars]
    fund = derive_latest(store, tickers)
    lookback = cfg.scoring.momentum_lookback_days

    records = []
    n_fund = n_peg = 0
    for bar in bars:
        prev_close = store.get_close_n_days_before(date, lookback, bar.ticker)
        latest, history = fund.get(bar.ticker, (None, []))
        cagr = eps_growth.estimate(history, cfg.scoring) if history else None
        rec = {"ticker": bar.ticker}
        rec.update(compute_technical_factors(bar, prev_close))
        rec.update(compute_valuation_ratios(latest, bar.close, cagr))
        n_fund += latest is not None
        n_peg += rec["peg3"] is not None
        records.append(rec)

    df = build_cross_section(records)
    df = compute_composite(df, weights)
    df = rank_scores(df)

    written = store.write_score_rows(date, to_score_rows(df, date))
    logger.info("Scored %s: %d tickers (%d with fundamentals, %d with PEG)",
                date, written, n_fund, n_peg)
    if ctx is not None:
        ctx.log.info(f"Scored {written} tickers", extra={
            "date": date, "phase": "score", "count": written})
        ctx.save_artifact(f"scores_{date}", df)
    return df


# =========================================================================
# J. Write to Excel (openpyxl only)
# =========================================================================
EXCEL_COLUMNS = [
    ("rank", "Rank"), ("ticker", "Ticker"), ("composite", "Composite"),
    ("momentum", "Momentum"), ("volatility", "Volatility"), ("volume", "Volume"),
    ("vwap_dev", "VWAP_Dev"), ("pe", "P/E"), ("pb", "P/B"), ("ps", "P/S"),
    ("de", "D/E"), ("roe", "ROE"), ("fcf_yield", "FCF_Yield"),
    ("dividend_yield", "Div_Yield"), ("peg3", "PEG_3y"),
    ("market_cap", "Market_Cap"), ("avg_volume", "Avg_Volume"),
]


def write_excel(rows: list, out_path: Path, sheet: str = "Scores") -> str:
    """Write ranked score rows (dicts in display order) to an .xlsx file."""
    out_path = Path(out_path)
    out_path.parent.mkdir(parents=True, exist_ok=True)
    wb = Workbook()
    ws = wb.active
    ws.title = sheet
    ws.append([h for _, h in EXCEL_COLUMNS])
    for i, row in enumerate(rows, start=1):
        vals = []
        for src, _ in EXCEL_COLUMNS:
            v = i if src == "rank" and row.get("rank") is None else row.get(src)
            if isinstance(v, float) and not math.isfinite(v):
                v = None
            elif isinstance(v, float) and src not in ("volume", "market_cap", "avg_volume"):
                v = round(v, 4)
            vals.append(v)
        ws.append(vals)
    ws.freeze_panes = "A2"
    wb.save(str(out_path))
    return str(out_path)


# =========================================================================
# Diagnostics
# =========================================================================
def print_summary(df: pd.DataFrame, date: str, top: int = 10):
    print(f"\n  Scored {len(df)} tickers for {date}")
    if df.empty:
        return
    have = {c: int(df[c].notna().sum()) for c in ("pe", "pb", "ps", "roe", "peg3")
            if c in df.columns}
    print("  Ratio coverage: " + ", ".join(f"{k}={v}" for k, v in have.items()))
    print(f"  Top {min(top, len(df))}:")
    for rec in df.head(top).to_dict("records"):
        print(f"    {int(rec['rank']):>3}. {rec['ticker']:<6} {rec['composite']:+.4f}")
