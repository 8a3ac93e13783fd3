#!/usr/bin/env python3
"""
Polygon.io REST client.

Thin wrapper over one ``requests.Session`` covering the four endpoints the
pipeline consumes: grouped daily bars, vX financials (paged by next_url),
v3 reference tickers and per-ticker daily ranges (SPY benchmark).

Retry policy
------------
* Transport errors and 5xx responses retry with exponential backoff
  (1s / 2s / 4s).
* HTTP 429 pauses ``RATE_LIMIT_PAUSE`` seconds and retries.
* 404 is "no data": paging stops and the caller gets what was collected.
* Other 4xx responses fail immediately with UpstreamError.
"""

import logging
import math
import os
import time
from datetime import datetime, timezone
from typing import Optional

import requests

from schemas import BenchmarkBar, DailyBar, ReferenceTicker, RunConfig

logger = logging.getLogger(__name__)

RATE_LIMIT_PAUSE = 1.0

_NON_RETRYABLE_STATUS = {400, 401, 403}
_RATE_LIMIT_PATTERNS = ["429", "too many requests", "rate limit", "exceeded the maximum requests"]


class UpstreamError(RuntimeError):
    """The upstream API refused the request or retries ran out."""


def _is_rate_limited(err_str: str) -> bool:
    """Check if an error string indicates upstream rate limiting."""
    return any(p in err_str.lower() for p in _RATE_LIMIT_PATTERNS)


def _num(v) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _volume(v) -> Optional[float]:
    f = _num(v)
    return float(round(f)) if f is not None else None


class PolygonClient:
    """Synchronous Polygon client with retry/backoff."""

    def __init__(self, api_key: str, cfg: Optional[RunConfig.PolygonConfig] = None,
                 session: Optional[requests.Session] = None):
        if not api_key:
            raise UpstreamError("Polygon API key is missing")
        self.cfg = cfg or RunConfig.PolygonConfig()
        self.api_key = api_key
        self.base_url = self.cfg.base_url.rstrip("/")
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})

    @classmethod
    def from_config(cls, cfg: RunConfig, session=None) -> "PolygonClient":
        """Build a client reading the key from the env var named in config."""
        key = os.environ.get(cfg.polygon.api_key_env, "")
        if not key:
            raise UpstreamError(f"{cfg.polygon.api_key_env} missing from environment")
        return cls(key, cfg.polygon, session=session)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------
    def _get_json(self, url: str, params: Optional[dict] = None) -> Optional[dict]:
        """GET with retries. Returns parsed JSON, or None on 404."""
        params = {**(params or {}), "apiKey": self.api_key}
        max_retries = self.cfg.max_retries
        last_err = None
        for attempt in range(max_retries):
            try:
                resp = self.session.get(url, params=params, timeout=self.cfg.timeout_seconds)
            except requests.RequestException as e:
                last_err = f"{type(e).__name__}: {e}"
                if _is_rate_limited(last_err):
                    time.sleep(RATE_LIMIT_PAUSE)
                    continue
            else:
                status = resp.status_code
                if status == 200:
                    return resp.json()
                if status == 404:
                    return None
                last_err = f"HTTP {status}: {resp.text[:200]}"
                if status == 429 or _is_rate_limited(last_err):
                    logger.warning("Rate limited on %s, pausing %.1fs", url, RATE_LIMIT_PAUSE)
                    time.sleep(RATE_LIMIT_PAUSE)
                    continue
                if status in _NON_RETRYABLE_STATUS:
                    break
            # Exponential backoff: 1s, 2s, 4s
            if attempt < max_retries - 1:
                time.sleep(2 ** attempt)
        raise UpstreamError(f"GET {url} failed after {max_retries} attempts: {last_err}")

    def _paged(self, url: str, params: Optional[dict], max_rows: Optional[int] = None) -> list:
        """Follow ``next_url`` links until exhausted, 404 or ``max_rows``."""
        out = []
        while url:
            data = self._get_json(url, params)
            if data is None:
                break
            out.extend(data.get("results") or [])
            if max_rows is not None and len(out) >= max_rows:
                return out[:max_rows]
            # next_url already carries the query; only apiKey is re-added
            url, params = data.get("next_url"), None
            if url and self.cfg.throttle_seconds:
                time.sleep(self.cfg.throttle_seconds)
        return out

    # ------------------------------------------------------------------
    # Endpoints
    # ------------------------------------------------------------------
    def grouped_daily(self, date: str) -> list:
        """All US stock bars for one date (empty list when none)."""
        url = f"{self.base_url}/v2/aggs/grouped/locale/us/market/stocks/{date}"
        data = self._get_json(url, {"adjusted": "true"}) or {}
        bars = []
        for r in data.get("results") or []:
            ticker = r.get("T")
            if not ticker:
                continue
            bars.append(DailyBar(
                date=date, ticker=ticker,
                open=_num(r.get("o")), high=_num(r.get("h")),
                low=_num(r.get("l")), close=_num(r.get("c")),
                volume=_volume(r.get("v")), vwap=_num(r.get("vw")),
            ))
        return bars

    def financials(self, ticker: str, timeframe: str = "quarterly",
                   max_rows: Optional[int] = None) -> list:
        """Raw vX financial filings for one ticker and timeframe, newest first."""
        url = f"{self.base_url}/vX/reference/financials"
        params = {"ticker": ticker, "timeframe": timeframe, "order": "desc",
                  "sort": "filing_date", "limit": self.cfg.page_limit}
        return self._paged(url, params, max_rows)

    def reference_tickers(self, max_rows: Optional[int] = None, us_only: bool = True) -> list:
        url = f"{self.base_url}/v3/reference/tickers"
        params = {"market": "stocks", "active": "true", "limit": 1000, "sort": "ticker"}
        if us_only:
            params["locale"] = "us"
        refs = []
        for it in self._paged(url, params, max_rows):
            if not it.get("ticker"):
                continue
            refs.append(ReferenceTicker(
                ticker=it["ticker"],
                name=it.get("name"),
                market_cap=_num(it.get("market_cap")),
                share_class_shares_outstanding=_num(it.get("share_class_shares_outstanding")),
                currency=it.get("currency_name") or it.get("currency"),
            ))
        return refs

    def ticker_range(self, ticker: str, start: str, end: str) -> list:
        """Daily bars for one ticker between two dates (inclusive)."""
        url = f"{self.base_url}/v2/aggs/ticker/{ticker}/range/1/day/{start}/{end}"
        data = self._get_json(url, {"adjusted": "true", "sort": "asc", "limit": 50000}) or {}
        bars = []
        for r in data.get("results") or []:
            ts = _num(r.get("t"))
            if ts is None:
                continue
            d = datetime.fromtimestamp(ts / 1000, tz=timezone.utc).date().isoformat()
            bars.append(BenchmarkBar(
                date=d, open=_num(r.get("o")), high=_num(r.get("h")),
                low=_num(r.get("l")), close=_num(r.get("c")), volume=_volume(r.get("v")),
            ))
        return bars
