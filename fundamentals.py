#!/usr/bin/env python3
"""
Fundamentals Normalizer
=======================
Maps raw financial-statement filings (several historical upstream schema
variants) onto the canonical FundamentalsPeriod record, and derives the
per-ticker FundamentalsLatest snapshot from stored period history.

Field lookups are driven by FIELD_PATHS: for each canonical field an
ordered list of key paths is tried and the first present, non-null,
numeric value wins. Values wrapped as ``{"value": x}`` (Polygon vX) are
unwrapped transparently, so the same table serves the vX payloads and the
older flat layouts.
"""

import logging
import math
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from schemas import (
    FLOW_FIELDS,
    POINT_IN_TIME_FIELDS,
    FundamentalsLatest,
    FundamentalsPeriod,
)

logger = logging.getLogger(__name__)


# =========================================================================
# A. Field lookup table
# =========================================================================
# Paths are relative to the statement block (``raw["financials"]`` when
# present, otherwise the raw record itself). Order matters.
FIELD_PATHS = {
    "revenue": (
        ("income_statement", "revenues"),
        ("income_statement", "revenue"),
        ("income_statement", "total_revenue"),
        ("income_statement", "revenue_net"),
        ("income_statement", "sales_and_services_net"),
        ("income_statement", "salesRevenueNet"),
    ),
    "net_income": (
        ("income_statement", "net_income_loss_attributable_to_parent"),
        ("income_statement", "net_income_loss"),
        ("income_statement", "net_income"),
        ("income_statement", "netIncome"),
        ("income_statement", "netIncomeLoss"),
    ),
    "operating_cash_flow": (
        ("cash_flow_statement", "net_cash_flow_from_operating_activities"),
        ("cash_flow_statement", "net_cash_flow_from_operating_activities_continuing"),
        ("cash_flow_statement", "net_cash_provided_by_used_in_operating_activities"),
        ("cash_flow_statement", "net_cash_from_operating_activities"),
        ("cash_flow_statement", "cash_from_operations"),
    ),
    "capital_expenditures": (
        ("cash_flow_statement", "capital_expenditures"),
        ("cash_flow_statement", "capital_expenditure"),
        ("cash_flow_statement", "payments_to_acquire_property_plant_and_equipment"),
        ("cash_flow_statement", "purchase_of_property_and_equipment"),
        ("cash_flow_statement", "purchase_of_property_plant_equipment"),
        ("cash_flow_statement", "capex"),
    ),
    "dividends": (
        ("cash_flow_statement", "dividends_paid"),
        ("cash_flow_statement", "payments_of_dividends"),
        ("cash_flow_statement", "dividend_paid"),
        ("comprehensive_income", "common_stock_dividends"),
        ("income_statement", "cashDividendsPaid"),
        ("income_statement", "cash_dividends_paid"),
    ),
    "shares_outstanding": (
        ("balance_sheet", "common_stock_shares_outstanding"),
        ("income_statement", "basic_average_shares"),
        ("income_statement", "diluted_average_shares"),
        ("weighted_avg_diluted_shares_outstanding",),
        ("weighted_avg_shares_outstanding_diluted",),
        ("weighted_avg_shares_outstanding",),
        ("weighted_average_shares_outstanding",),
        ("income_statement", "weightedAverageShsOutDil"),
        ("income_statement", "weightedAverageShsOut"),
    ),
    "shareholders_equity": (
        ("balance_sheet", "equity_attributable_to_parent"),
        ("balance_sheet", "equity"),
        ("balance_sheet", "stockholders_equity"),
        ("balance_sheet", "shareholders_equity"),
        ("balance_sheet", "total_shareholders_equity"),
        ("balance_sheet", "totalStockholdersEquity"),
    ),
    "total_liabilities": (
        ("balance_sheet", "liabilities"),
        ("balance_sheet", "total_liabilities"),
        ("balance_sheet", "totalLiabilities"),
    ),
    "eps_basic": (
        ("income_statement", "basic_earnings_per_share"),
        ("income_statement", "eps_basic"),
        ("income_statement", "earnings_per_share_basic"),
        ("income_statement", "eps"),
    ),
}

# Record-level (not statement-level) keys, in priority order.
PERIOD_END_KEYS = ("end_date", "period_of_report_date", "period_end", "report_period")
FILING_DATE_KEYS = ("filing_date", "acceptance_datetime")

_TIMEFRAME_ALIASES = {
    "quarterly": "quarterly", "quarter": "quarterly", "q": "quarterly",
    "annual": "annual", "annually": "annual", "yearly": "annual", "fy": "annual",
}


# =========================================================================
# B. Defensive extraction
# =========================================================================
def unwrap_value(v: Any) -> Any:
    """Return ``v["value"]`` for ``{"value": ...}`` containers, else ``v``."""
    if isinstance(v, dict) and "value" in v:
        return v["value"]
    return v


def _as_number(v: Any) -> Optional[float]:
    v = unwrap_value(v)
    if v is None or isinstance(v, bool):
        return None
    if isinstance(v, (int, float)):
        f = float(v)
    elif isinstance(v, str):
        try:
            f = float(v.strip())
        except ValueError:
            return None
    else:
        return None
    return f if math.isfinite(f) else None


def _walk(obj: Any, path: tuple) -> Any:
    cur = obj
    for key in path:
        if not isinstance(cur, dict) or key not in cur:
            return None
        cur = cur[key]
    return cur


def extract_field(financials: Any, paths: Iterable[tuple]) -> Optional[float]:
    """First present, non-null, numeric value among ``paths``; None otherwise."""
    if not isinstance(financials, dict):
        return None
    for path in paths:
        val = _as_number(_walk(financials, path))
        if val is not None:
            return val
    return None


def _first_str(raw: dict, keys: tuple) -> Optional[str]:
    for k in keys:
        v = raw.get(k)
        if v is None:
            continue
        s = str(v).strip()
        if s:
            return s[:10]
    return None


def _resolve_timeframe(raw: dict) -> Optional[str]:
    tf = raw.get("timeframe")
    if isinstance(tf, str) and tf.strip():
        return _TIMEFRAME_ALIASES.get(tf.strip().lower())
    fp = str(raw.get("fiscal_period") or "").strip().upper()
    if fp == "FY":
        return "annual"
    if fp in ("Q1", "Q2", "Q3", "Q4"):
        return "quarterly"
    return None


def _fiscal_year(raw: dict) -> Optional[int]:
    fy = _as_number(raw.get("fiscal_year"))
    return int(fy) if fy is not None else None


# =========================================================================
# C. Filing -> FundamentalsPeriod
# =========================================================================
def normalize_filing(ticker: str, raw: Any) -> Optional[FundamentalsPeriod]:
    """Map one raw filing onto a FundamentalsPeriod.

    Returns None when the record cannot be keyed (not a mapping, no period
    end, or a timeframe outside {quarterly, annual} such as ``ttm``).
    Unrecognized or missing statement fields only produce None values.
    """
    if not isinstance(raw, dict):
        return None
    period_end = _first_str(raw, PERIOD_END_KEYS)
    if period_end is None:
        return None
    timeframe = _resolve_timeframe(raw)
    if timeframe is None:
        return None

    fin = raw.get("financials")
    if not isinstance(fin, dict):
        fin = raw

    values = {field: extract_field(fin, paths) for field, paths in FIELD_PATHS.items()}
    fiscal_period = raw.get("fiscal_period")

    return FundamentalsPeriod(
        ticker=ticker,
        period_end=period_end,
        timeframe=timeframe,
        filing_date=_first_str(raw, FILING_DATE_KEYS) or period_end,
        fiscal_year=_fiscal_year(raw),
        fiscal_period=str(fiscal_period) if fiscal_period is not None else None,
        **values,
    )


def normalize_filings(ticker: str, raws: Iterable[Any]) -> list:
    """Normalize a batch of filings, skipping unkeyable records.

    Duplicate (period_end, timeframe) keys keep the last record seen,
    matching the store's upsert semantics.
    """
    out: dict = {}
    skipped = 0
    for raw in raws or []:
        rec = normalize_filing(ticker, raw)
        if rec is None:
            skipped += 1
            continue
        out[(rec.period_end, rec.timeframe)] = rec
    if skipped:
        logger.debug("%s: skipped %d unrecognized filings", ticker, skipped)
    return list(out.values())


# =========================================================================
# D. History -> FundamentalsLatest (TTM + point-in-time)
# =========================================================================
def _recency_key(p: FundamentalsPeriod):
    # Same period_end: later filing first, then quarterly over annual.
    return (p.period_end, p.filing_date or "", p.timeframe == "quarterly")


def _ttm_sum(quarters: list, field: str) -> Optional[float]:
    vals = [getattr(q, field) for q in quarters if getattr(q, field) is not None]
    return float(sum(vals)) if vals else None


def compute_latest(ticker: str, history: Iterable[FundamentalsPeriod],
                   updated_at: Optional[str] = None) -> Optional[FundamentalsLatest]:
    """Derive the latest snapshot for ``ticker`` from its period history.

    Parameters
    ----------
    ticker : str
        Ticker symbol.
    history : iterable of FundamentalsPeriod
        Stored periods for the ticker, any order, any timeframe.
    updated_at : str, optional
        Stamp for the snapshot; defaults to the current UTC time.

    Returns
    -------
    FundamentalsLatest or None
        None when the history is empty. Flow fields are summed over the
        four most recent quarterly periods (nulls skipped; None when no
        quarter carries the field). Stock fields copy from the single most
        recent period regardless of timeframe.
    """
    periods = [p for p in history if p.period_end]
    if not periods:
        return None

    quarters = sorted((p for p in periods if p.timeframe == "quarterly"),
                      key=lambda p: p.period_end, reverse=True)[:4]
    latest = max(periods, key=_recency_key)

    ttm = {f: (_ttm_sum(quarters, f) if quarters else None) for f in FLOW_FIELDS}
    pit = {f: getattr(latest, f) for f in POINT_IN_TIME_FIELDS}

    return FundamentalsLatest(
        ticker=ticker,
        filing_date=latest.filing_date or latest.period_end,
        fiscal_year=latest.fiscal_year,
        fiscal_period=latest.fiscal_period,
        updated_at=updated_at or datetime.now(timezone.utc).isoformat(timespec="seconds"),
        **ttm,
        **pit,
    )
