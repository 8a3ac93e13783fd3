#!/usr/bin/env python3
"""
PEG(3y) Estimator
=================
Three-year EPS CAGR from a ticker's stored period history, used as the
growth denominator of the PEG factor.

The most recent period is "now"; "then" is the strictly earlier period of
the same timeframe whose period_end lies 30 to 42 months back and is
nearest to 36 months. Quarterly EPS is never paired with annual EPS.
Equal distances resolve to the earliest period in the history.
"""

import logging
from datetime import date
from typing import Optional, Sequence

from schemas import FundamentalsPeriod

logger = logging.getLogger(__name__)

MIN_MONTHS = 30
MAX_MONTHS = 42
TARGET_MONTHS = 36


def _parse(d: str) -> date:
    return date.fromisoformat(str(d)[:10])


def months_between(later: str, earlier: str) -> int:
    """Calendar-month distance, ignoring the day of month."""
    a, b = _parse(later), _parse(earlier)
    return (a.year - b.year) * 12 + (a.month - b.month)


def nearest_three_years_back(history: Sequence[FundamentalsPeriod],
                             min_months: int = MIN_MONTHS,
                             max_months: int = MAX_MONTHS,
                             target_months: int = TARGET_MONTHS):
    """Return ``(now, then)`` from an ascending history.

    ``then`` is None when no earlier period of ``now``'s timeframe falls
    inside the window.
    Returns ``(None, None)`` for an empty history.
    """
    if not history:
        return None, None
    now = history[-1]
    best = None
    best_diff = None
    for rec in history[:-1]:
        if rec.timeframe != now.timeframe or rec.period_end >= now.period_end:
            continue
        months = months_between(now.period_end, rec.period_end)
        if months < min_months or months > max_months:
            continue
        diff = abs(months - target_months)
        # strict < keeps the earliest candidate on ties
        if best_diff is None or diff < best_diff:
            best, best_diff = rec, diff
    return now, best


def cagr_3y(eps_now: Optional[float], eps_then: Optional[float]) -> Optional[float]:
    """(now / then) ** (1/3) - 1, or None when the base is unusable."""
    if eps_now is None or eps_then is None:
        return None
    if eps_then <= 0:
        return None
    ratio = eps_now / eps_then
    if ratio <= 0:
        return None
    return ratio ** (1.0 / 3.0) - 1.0


def estimate(history: Sequence[FundamentalsPeriod], scoring_cfg=None) -> Optional[float]:
    """3-year EPS CAGR for a ticker, or None.

    ``history`` must be ordered by period_end ascending (the order
    ``Store.get_fundamentals_history`` returns). ``scoring_cfg`` is an
    optional ``RunConfig.ScoringConfig`` overriding the pairing window.
    """
    if scoring_cfg is not None:
        window = (scoring_cfg.peg_min_months, scoring_cfg.peg_max_months,
                  scoring_cfg.peg_target_months)
    else:
        window = (MIN_MONTHS, MAX_MONTHS, TARGET_MONTHS)
    now, then = nearest_three_years_back(history, *window)
    if now is None or then is None:
        return None
    return cagr_3y(now.eps_basic, then.eps_basic)


def peg_from_cagr(pe: Optional[float], cagr: Optional[float]) -> Optional[float]:
    """P/E over growth; only defined for a positive growth rate."""
    if pe is None or cagr is None or cagr <= 0:
        return None
    return pe / cagr
