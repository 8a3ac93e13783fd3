#!/usr/bin/env python3
"""
Typed schemas for the Equity Factor Ranker.

Provides Pydantic models for the records that cross pipeline boundaries
(bars, fundamentals, score rows, universe snapshots) and for the validated
config.yaml contents. Storage rows are read back into these models so the
scoring code never sees raw sqlite tuples.
"""

import math
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


# =========================================================================
# Market data
# =========================================================================

class DailyBar(BaseModel):
    """One trading day's aggregate for one ticker."""
    date: str
    ticker: str
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    volume: Optional[float] = None
    vwap: Optional[float] = None


class BenchmarkBar(BaseModel):
    """Daily bar for the SPY benchmark series."""
    date: str
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    volume: Optional[float] = None


class ReferenceTicker(BaseModel):
    ticker: str
    name: Optional[str] = None
    market_cap: Optional[float] = None
    share_class_shares_outstanding: Optional[float] = None
    currency: Optional[str] = None


# =========================================================================
# Fundamentals
# =========================================================================

Timeframe = Literal["quarterly", "annual"]

FLOW_FIELDS = (
    "revenue",
    "net_income",
    "operating_cash_flow",
    "capital_expenditures",
    "dividends",
)

POINT_IN_TIME_FIELDS = (
    "shares_outstanding",
    "shareholders_equity",
    "total_liabilities",
)


class FundamentalsPeriod(BaseModel):
    """Canonical per-period fundamentals record.

    Keyed by (ticker, period_end, timeframe). Every numeric field is
    nullable: the normalizer fills what the upstream filing carries and
    leaves the rest as None.
    """
    ticker: str
    period_end: str
    timeframe: Timeframe
    filing_date: Optional[str] = None
    fiscal_year: Optional[int] = None
    fiscal_period: Optional[str] = None

    revenue: Optional[float] = None
    net_income: Optional[float] = None
    operating_cash_flow: Optional[float] = None
    capital_expenditures: Optional[float] = None
    dividends: Optional[float] = None
    shares_outstanding: Optional[float] = None
    shareholders_equity: Optional[float] = None
    total_liabilities: Optional[float] = None
    eps_basic: Optional[float] = None


class FundamentalsLatest(BaseModel):
    """Most recent snapshot per ticker: TTM flows + point-in-time stocks.

    TTM fields are None unless at least one quarterly period exists.
    """
    ticker: str
    filing_date: Optional[str] = None
    fiscal_year: Optional[int] = None
    fiscal_period: Optional[str] = None

    # TTM (sum of up to four most recent quarters)
    revenue: Optional[float] = None
    net_income: Optional[float] = None
    operating_cash_flow: Optional[float] = None
    capital_expenditures: Optional[float] = None
    dividends: Optional[float] = None

    # Point-in-time (most recent period of any timeframe)
    shares_outstanding: Optional[float] = None
    shareholders_equity: Optional[float] = None
    total_liabilities: Optional[float] = None

    updated_at: Optional[str] = None


# =========================================================================
# Scores
# =========================================================================

class ScoreRow(BaseModel):
    """Persisted scoring output for one (date, ticker).

    Raw technical factors are never null; valuation ratios may be.
    The composite is always a finite number.
    """
    date: str
    ticker: str

    momentum: float = 0.0
    volatility: float = 0.0
    volume: float = 0.0
    vwap_dev: float = 0.0

    pe: Optional[float] = None
    pb: Optional[float] = None
    de: Optional[float] = None
    fcf_yield: Optional[float] = None
    peg: Optional[float] = None
    peg3: Optional[float] = None
    ps: Optional[float] = None
    roe: Optional[float] = None
    dividend_yield: Optional[float] = None

    composite: float

    @field_validator("composite")
    @classmethod
    def composite_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError(f"composite must be finite, got {v}")
        return v


class UniverseRow(BaseModel):
    date: str
    ticker: str
    market_cap: Optional[float] = None
    avg_volume: Optional[float] = None


# =========================================================================
# RunConfig: top-level config schema
# =========================================================================

DEFAULT_WEIGHTS = {
    "momentum": 0.15, "volatility": 0.10, "volume": 0.08, "vwap": 0.07,
    "pe": 0.10, "pb": 0.10, "de": 0.05, "fcf_yield": 0.07, "peg": 0.03,
    "ps": 0.05, "roe": 0.12, "dividend_yield": 0.08,
}


class ScoringWeights(BaseModel):
    """Composite weights per factor.

    Any real number is accepted (zero and negative included); a key left
    out of a weights section weighs 0. Unknown keys are rejected so a
    misspelled factor never silently drops out.
    """
    model_config = ConfigDict(extra="forbid")

    momentum: float = 0.0
    volatility: float = 0.0
    volume: float = 0.0
    vwap: float = 0.0
    pe: float = 0.0
    pb: float = 0.0
    de: float = 0.0
    fcf_yield: float = 0.0
    peg: float = 0.0
    ps: float = 0.0
    roe: float = 0.0
    dividend_yield: float = 0.0

    @field_validator("*")
    @classmethod
    def weight_finite(cls, v: float) -> float:
        if not math.isfinite(v):
            raise ValueError(f"Weight must be a finite number, got {v}")
        return v


class RunConfig(BaseModel):
    """Schema for validated config.yaml contents."""

    class ScoringConfig(BaseModel):
        momentum_lookback_days: int = Field(7, ge=1)
        peg_min_months: int = Field(30, ge=1)
        peg_max_months: int = Field(42, ge=1)
        peg_target_months: int = Field(36, ge=1)

        @model_validator(mode="after")
        def window_contains_target(self) -> "RunConfig.ScoringConfig":
            if not (self.peg_min_months <= self.peg_target_months <= self.peg_max_months):
                raise ValueError(
                    "peg_target_months must lie within "
                    f"[{self.peg_min_months}, {self.peg_max_months}]"
                )
            return self

    class PolygonConfig(BaseModel):
        base_url: str = "https://api.polygon.io"
        api_key_env: str = "POLYGON_API_KEY"
        timeout_seconds: float = Field(30, gt=0)
        max_retries: int = Field(3, ge=1)
        page_limit: int = Field(50, ge=1, le=1000)
        throttle_seconds: float = Field(0.14, ge=0)

    class StorageConfig(BaseModel):
        db_path: str = "data/quant.db"

    class UniverseConfig(BaseModel):
        avg_volume_window: int = Field(20, ge=1)

    class ServerConfig(BaseModel):
        host: str = "0.0.0.0"
        port: int = Field(3000, ge=1, le=65535)
        default_limit: int = Field(50, ge=1)
        max_limit: int = Field(500, ge=1)

    class SchedulerConfig(BaseModel):
        interval_minutes: float = Field(30, gt=0)

    weights: ScoringWeights = Field(
        default_factory=lambda: ScoringWeights(**DEFAULT_WEIGHTS))
    scoring: ScoringConfig = ScoringConfig()
    polygon: PolygonConfig = PolygonConfig()
    storage: StorageConfig = StorageConfig()
    universe: UniverseConfig = UniverseConfig()
    server: ServerConfig = ServerConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
