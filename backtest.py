#!/usr/bin/env python3
"""
Equity Factor Ranker - Top-N Backtest & Pick Tracking
=====================================================
Replays stored score rows against stored daily closes:

  A. run_topn_backtest: on each scored date hold the top ``pct`` percent
     by composite, equal weight, and book the return to the ticker's next
     trading-day close. SPY (spy_daily) is the benchmark.
  B. track_top_picks: freeze the top-N of the start date and follow the
     equal-weight basket day by day through the end date.
  C. Summary statistics and CSV output to ./validation/.

IMPORTANT DISCLAIMERS:
  * No transaction costs, slippage or liquidity limits.
  * Survivorship: only tickers present in the stored bars are considered.
  * Results are for MODEL VALIDATION ONLY and do NOT represent achievable
    live trading performance.
"""

import math
from pathlib import Path

import numpy as np
import pandas as pd

VALIDATION_DIR = Path(__file__).resolve().parent / "validation"
TRADING_DAYS = 252


def _clamp_pct(pct) -> float:
    try:
        pct = float(pct)
    except (TypeError, ValueError):
        pct = 20.0
    return min(100.0, max(1.0, pct))


def _ret(prev, cur):
    if prev is None or cur is None or prev <= 0:
        return None
    return (cur - prev) / prev


# =========================================================================
# A. Top-pct strategy vs SPY
# =========================================================================
def run_topn_backtest(store, start: str, end: str, pct: float = 20) -> dict:
    """Daily-rebalanced top-``pct``% basket vs SPY over scored dates.

    Returns ``{"strategy": [...], "spy": [...], "summary": {...}}`` where the
    series are ``{"date", "value"}`` cumulative indexes starting from 1.0.
    """
    if start > end:
        raise ValueError("start must be on or before end")
    pct = _clamp_pct(pct)
    dates = store.score_dates(start, end)
    spy = store.get_spy_closes(start, end)

    strat_idx, spy_idx = 1.0, 1.0
    strategy, bench, daily = [], [], []
    prev_spy = None
    for d in dates:
        n = max(1, math.floor(pct / 100.0 * store.count_scores(d)))
        picks = store.top_tickers(d, n)
        nxt = store.next_bar_date(d)
        rets = []
        if nxt is not None:
            today = store.get_closes(d, picks)
            tomorrow = store.get_closes(nxt, picks)
            for t in picks:
                r = _ret(today.get(t), tomorrow.get(t))
                if r is not None:
                    rets.append(r)
        day_ret = float(np.mean(rets)) if rets else 0.0
        strat_idx *= 1.0 + day_ret
        daily.append(day_ret)
        strategy.append({"date": d, "value": strat_idx})

        close = spy.get(d)
        if close is not None:
            if prev_spy is not None:
                spy_idx *= 1.0 + (_ret(prev_spy, close) or 0.0)
                bench.append({"date": d, "value": spy_idx})
            prev_spy = close

    summary = {"start": start, "end": end, "pct": pct, "dates": len(dates),
               **_perf_metrics(daily)}
    summary["spy_total_return"] = (bench[-1]["value"] - 1.0) if bench else 0.0
    return {"strategy": strategy, "spy": bench, "summary": summary}


# =========================================================================
# B. Start-date top-N pick tracking
# =========================================================================
def track_top_picks(store, start: str, end: str, n: int = 10) -> dict:
    """Follow the start date's top-``n`` basket through ``end``.

    Each day's return is the mean of the picks' close-to-close returns
    (tickers without both closes are skipped that day).
    """
    picks = store.top_tickers(start, n)
    empty = {"series": [], "summary": {"start": start, "end": end,
                                       "picks": picks, "totalRet": 0.0}}
    if not picks:
        return empty
    dates = [d for d in store.bar_dates(start, end) if d > start]
    if not dates:
        return empty

    prev = store.get_closes(start, picks)
    index = 1.0
    series = []
    for d in dates:
        cur = store.get_closes(d, picks)
        rets = [r for r in (_ret(prev.get(t), c) for t, c in cur.items()) if r is not None]
        day_ret = float(np.mean(rets)) if rets else 0.0
        index *= 1.0 + day_ret
        series.append({"date": d, "value": index, "dailyRet": day_ret})
        prev = cur
    return {"series": series,
            "summary": {"start": start, "end": end, "picks": picks,
                        "totalRet": series[-1]["value"] - 1.0}}


# =========================================================================
# C. Statistics + output
# =========================================================================
def _perf_metrics(daily_returns: list) -> dict:
    """Total / annualized return, annualized vol, max drawdown."""
    arr = np.array(daily_returns, dtype=float)
    n = len(arr)
    if n == 0:
        return {"total_return": 0.0, "ann_return": 0.0, "ann_vol": 0.0, "max_dd": 0.0}

    cum = float(np.prod(1 + arr))
    years = n / TRADING_DAYS
    if cum <= 0:
        ann_ret = -1.0
    else:
        ann_ret = cum ** (1 / years) - 1

    ann_vol = float(np.std(arr, ddof=1) * np.sqrt(TRADING_DAYS)) if n > 1 else 0.0

    cum_ret = np.cumprod(1 + arr)
    running_max = np.maximum.accumulate(cum_ret)
    max_dd = float(np.min(cum_ret / running_max - 1))

    return {"total_return": cum - 1.0, "ann_return": float(ann_ret),
            "ann_vol": ann_vol, "max_dd": max_dd}


def write_outputs(result: dict, out_dir: Path = VALIDATION_DIR) -> str:
    """Write the strategy/SPY series side by side as CSV."""
    out_dir = Path(out_dir)
    out_dir.mkdir(parents=True, exist_ok=True)
    strat = pd.DataFrame(result["strategy"], columns=["date", "value"]).rename(
        columns={"value": "strategy"})
    spy = pd.DataFrame(result["spy"], columns=["date", "value"]).rename(
        columns={"value": "spy"})
    df = strat.merge(spy, on="date", how="left")
    s = result["summary"]
    path = out_dir / f"backtest_{s['start']}_{s['end']}_top{int(s['pct'])}.csv"
    df.to_csv(str(path), index=False)
    return str(path)


def print_summary(result: dict):
    s = result["summary"]
    print(f"\n  Backtest {s['start']} -> {s['end']}  (top {s['pct']:g}%, {s['dates']} dates)")
    print(f"    Strategy total return: {s['total_return']:+.2%}")
    print(f"    SPY total return:      {s['spy_total_return']:+.2%}")
    print(f"    Annualized vol:        {s['ann_vol']:.2%}")
    print(f"    Max drawdown:          {s['max_dd']:.2%}")
