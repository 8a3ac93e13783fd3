#!/usr/bin/env python3
"""
Equity Factor Ranker - Command Line Entry Point
===============================================
    python run_screener.py init-db
    python run_screener.py fetch-bars 2024-06-03
    python run_screener.py fetch-fundamentals --universe 2024-06-03 --max 500
    python run_screener.py fetch-reference
    python run_screener.py fetch-spy 2024-01-01 2024-06-30
    python run_screener.py score 2024-06-03
    python run_screener.py universe 2024-06-03
    python run_screener.py backfill 2024-05-01 2024-06-03
    python run_screener.py auto
    python run_screener.py backtest 2024-01-01 2024-06-30 --pct 20
    python run_screener.py export 2024-06-03 --xlsx output/scores.xlsx
    python run_screener.py dashboard --out output/dashboard.html

Every command records a run under runs/<run_id>/ (JSON log, config
snapshot, metadata). Exit status is non-zero when the command failed.
"""

import argparse
import sys
import time
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
from dotenv import load_dotenv
from pydantic import ValidationError

from run_context import RunContext

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------
ROOT = Path(__file__).resolve().parent
OUTPUT_DIR = ROOT / "output"


# ---------------------------------------------------------------------------
# CLI argument parsing
# ---------------------------------------------------------------------------
def _date(s: str) -> str:
    try:
        return datetime.strptime(s, "%Y-%m-%d").date().isoformat()
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {s!r}")


def _tickers(s: str) -> list:
    return [t.strip().upper() for t in s.split(",") if t.strip()]


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(description="Equity Factor Ranker")
    p.add_argument("--config", type=str, default=None,
                   help="Path to config.yaml (default: ./config.yaml)")
    sub = p.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the SQLite schema")

    s = sub.add_parser("fetch-bars", help="Fetch grouped daily bars for a date")
    s.add_argument("date", type=_date)

    s = sub.add_parser("fetch-fundamentals", help="Fetch and normalize financial filings")
    g = s.add_mutually_exclusive_group(required=True)
    g.add_argument("--tickers", type=_tickers, help="Comma-separated tickers")
    g.add_argument("--universe", type=_date, metavar="DATE",
                   help="Every ticker with a bar on DATE")
    g.add_argument("--all-latest-date", action="store_true",
                   help="Every ticker with a bar on the latest bar date")
    s.add_argument("--max", type=int, default=None, help="Cap the number of tickers")

    s = sub.add_parser("fetch-reference", help="Fetch reference tickers (market caps)")
    s.add_argument("--max", type=int, default=None, help="Cap the number of rows")
    s.add_argument("--all", action="store_true", help="Include non-US listings")

    s = sub.add_parser("fetch-spy", help="Fetch SPY benchmark bars")
    s.add_argument("start", type=_date)
    s.add_argument("end", type=_date, nargs="?", default=None)

    s = sub.add_parser("derive-latest", help="Recompute latest fundamentals from history")
    s.add_argument("--tickers", type=_tickers, default=None)

    s = sub.add_parser("score", help="Score one date")
    s.add_argument("date", type=_date)

    s = sub.add_parser("universe", help="Refresh the universe snapshot")
    s.add_argument("date", type=_date, nargs="?", default=None)

    s = sub.add_parser("backfill", help="Fetch + score every weekday in a range")
    s.add_argument("start", type=_date)
    s.add_argument("end", type=_date)

    sub.add_parser("auto", help="Fetch, score and refresh universe for today")

    s = sub.add_parser("backtest", help="Top-pct strategy vs SPY")
    s.add_argument("start", type=_date)
    s.add_argument("end", type=_date)
    s.add_argument("--pct", type=float, default=20.0)

    s = sub.add_parser("export", help="Export one date's ranking to Excel")
    s.add_argument("date", type=_date)
    s.add_argument("--xlsx", type=str, required=True)

    s = sub.add_parser("dashboard", help="Write the HTML dashboard")
    s.add_argument("date", type=_date, nargs="?", default=None)
    s.add_argument("--out", type=str, default=None)
    return p


# ---------------------------------------------------------------------------
# Config loader with error handling
# ---------------------------------------------------------------------------
def load_config_safe(path: str | None = None):
    """Load and validate config.yaml; exit with a clear message on failure."""
    import yaml
    from factor_engine import CONFIG_PATH, load_config

    config_path = Path(path) if path else CONFIG_PATH
    try:
        return load_config(config_path)
    except (yaml.YAMLError, ValueError, ValidationError) as e:
        print(f"\n  ERROR: Failed to load {config_path.name}: {e}")
        sys.exit(1)


def open_store(cfg):
    from store import Store
    db_path = Path(cfg.storage.db_path)
    if not db_path.is_absolute():
        db_path = ROOT / db_path
    store = Store(db_path)
    store.init_schema()
    return store


def _client(cfg):
    from polygon_client import PolygonClient
    return PolygonClient.from_config(cfg)


def _today() -> str:
    return datetime.now(timezone.utc).date().isoformat()


# ---------------------------------------------------------------------------
# Fetch commands
# ---------------------------------------------------------------------------
def fetch_bars(store, client, date: str, ctx) -> int:
    """Fetch + upsert one date's grouped bars. Raises UpstreamError."""
    bars = client.grouped_daily(date)
    n = store.upsert_daily_bars(bars)
    ctx.log.info(f"Stored {n} daily bars for {date}",
                 extra={"date": date, "phase": "fetch", "step": "bars", "count": n})
    return n


def cmd_fetch_bars(args, cfg, ctx, store) -> int:
    from polygon_client import UpstreamError
    try:
        fetch_bars(store, _client(cfg), args.date, ctx)
    except UpstreamError as e:
        ctx.log.error(f"fetch failed for {args.date}: {e}", extra={"date": args.date})
        return 1
    return 0


def cmd_fetch_fundamentals(args, cfg, ctx, store) -> int:
    from fundamentals import compute_latest, normalize_filings
    from polygon_client import UpstreamError

    if args.tickers:
        tickers = args.tickers
    else:
        date = args.universe or store.latest_bar_date()
        if not date:
            ctx.log.error("No daily bars stored; run fetch-bars first")
            return 1
        tickers = store.get_universe_tickers(date)
    if args.max:
        tickers = tickers[:args.max]

    client = _client(cfg)
    ok, failed = [], []
    t0 = time.time()
    print(f"Fetching fundamentals for {len(tickers)} tickers...")
    for i, t in enumerate(tickers, 1):
        try:
            raws = client.financials(t, "quarterly") + client.financials(t, "annual")
        except UpstreamError as e:
            ctx.log.warning(f"fetch failed: {e}", extra={"ticker": t, "phase": "fetch"})
            failed.append(t)
            continue
        periods = normalize_filings(t, raws)
        if not periods:
            ctx.log.info("no financials found", extra={"ticker": t, "phase": "fetch"})
            failed.append(t)
            continue
        store.upsert_fundamentals_history(periods)
        latest = compute_latest(t, store.get_fundamentals_history(t))
        if latest is not None:
            store.upsert_fundamentals_latest([latest])
        ok.append(t)
        if i % 25 == 0:
            print(f"  {i}/{len(tickers)} tickers ({time.time() - t0:.0f}s)")

    ctx.save_fetch_report("fundamentals", ok, failed)
    print(f"  Stored fundamentals for {len(ok)} tickers, {len(failed)} skipped")
    return 0


def cmd_fetch_reference(args, cfg, ctx, store) -> int:
    from polygon_client import UpstreamError
    try:
        refs = _client(cfg).reference_tickers(max_rows=args.max, us_only=not args.all)
    except UpstreamError as e:
        ctx.log.error(f"reference fetch failed: {e}")
        return 1
    stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
    n = store.upsert_reference_tickers(refs, updated_at=stamp)
    ctx.log.info(f"Stored {n} reference tickers", extra={"phase": "fetch", "count": n})
    return 0


def cmd_fetch_spy(args, cfg, ctx, store) -> int:
    from polygon_client import UpstreamError
    end = args.end or _today()
    try:
        bars = _client(cfg).ticker_range("SPY", args.start, end)
    except UpstreamError as e:
        ctx.log.error(f"SPY fetch failed: {e}")
        return 1
    n = store.upsert_spy_bars(bars)
    ctx.log.info(f"Stored {n} SPY bars {args.start}..{end}", extra={"count": n})
    return 0


def cmd_derive_latest(args, cfg, ctx, store) -> int:
    from factor_engine import derive_latest
    tickers = args.tickers or store.fundamentals_tickers()
    out = derive_latest(store, tickers)
    n = sum(1 for latest, history in out.values() if history)
    ctx.log.info(f"Derived latest fundamentals for {n} tickers", extra={"count": n})
    return 0


# ---------------------------------------------------------------------------
# Scoring
# ---------------------------------------------------------------------------
def score(store, date: str, cfg, ctx) -> int:
    """Score one date; returns an exit code."""
    from factor_engine import NoCrossSectionError, load_weights, print_summary, score_date
    from store import PersistenceError

    weights = load_weights(cfg)
    ctx.save_effective_weights(weights)
    try:
        df = score_date(store, date, weights, cfg, ctx=ctx)
    except NoCrossSectionError as e:
        ctx.log.error(str(e), extra={"date": date, "phase": "score"})
        return 1
    except PersistenceError as e:
        ctx.log.error(f"score failed for {date}: {e}", extra={"date": date, "phase": "score"})
        return 1
    print_summary(df, date)
    return 0


def cmd_score(args, cfg, ctx, store) -> int:
    return score(store, args.date, cfg, ctx)


def cmd_universe(args, cfg, ctx, store) -> int:
    n = store.refresh_universe(args.date, window=cfg.universe.avg_volume_window)
    if n == 0:
        ctx.log.warning("No bars for universe snapshot", extra={"date": args.date})
        return 1
    ctx.log.info(f"Universe refreshed: {n} tickers", extra={"date": args.date, "count": n})
    return 0


def cmd_backfill(args, cfg, ctx, store) -> int:
    from polygon_client import UpstreamError
    if args.start > args.end:
        ctx.log.error("start must be on or before end")
        return 1
    client = _client(cfg)
    days = [d.date().isoformat() for d in pd.bdate_range(args.start, args.end)]
    scored = 0
    for day in days:
        print(f"== {day} ==")
        try:
            n = fetch_bars(store, client, day, ctx)
        except UpstreamError as e:
            ctx.log.error(f"fetch failed for {day}: {e}", extra={"date": day})
            return 1
        if n == 0:
            ctx.log.info(f"No bars for {day} (market closed?)", extra={"date": day})
            continue
        if score(store, day, cfg, ctx) != 0:
            return 1
        scored += 1
    store.refresh_universe(window=cfg.universe.avg_volume_window)
    print(f"Backfill done: {scored} of {len(days)} weekdays scored.")
    return 0


def cmd_auto(args, cfg, ctx, store) -> int:
    """fetch -> score -> universe for today; later steps run even if one fails."""
    from polygon_client import UpstreamError
    day = _today()
    failures = 0
    try:
        fetch_bars(store, _client(cfg), day, ctx)
    except UpstreamError as e:
        ctx.log.warning(f"fetch failed for {day}: {e}", extra={"date": day})
        failures += 1
    if score(store, day, cfg, ctx) != 0:
        failures += 1
    if store.refresh_universe(day, window=cfg.universe.avg_volume_window) == 0:
        failures += 1
    return 1 if failures else 0


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------
def cmd_backtest(args, cfg, ctx, store) -> int:
    from backtest import print_summary, run_topn_backtest, write_outputs
    try:
        result = run_topn_backtest(store, args.start, args.end, args.pct)
    except ValueError as e:
        ctx.log.error(str(e))
        return 1
    print_summary(result)
    path = write_outputs(result)
    print(f"  Written: {path}")
    return 0


def cmd_export(args, cfg, ctx, store) -> int:
    from factor_engine import write_excel
    from store import MAX_QUERY_LIMIT

    rows, offset = [], 0
    while True:
        total, page = store.query_scores(args.date, limit=MAX_QUERY_LIMIT, offset=offset)
        rows.extend(page)
        offset += len(page)
        if not page or offset >= total:
            break
    if not rows:
        ctx.log.error(f"No scores stored for {args.date}", extra={"date": args.date})
        return 1
    path = write_excel(rows, Path(args.xlsx))
    print(f"  Written: {path} ({len(rows)} rows)")
    return 0


def cmd_dashboard(args, cfg, ctx, store) -> int:
    from factor_engine import load_weights
    from generate_dashboard import generate_dashboard
    out = Path(args.out) if args.out else None
    generate_dashboard(store, args.date, load_weights(cfg), out)
    return 0


def cmd_init_db(args, cfg, ctx, store) -> int:
    print(f"  Database ready: {store.db_path}")
    return 0


COMMANDS = {
    "init-db": cmd_init_db,
    "fetch-bars": cmd_fetch_bars,
    "fetch-fundamentals": cmd_fetch_fundamentals,
    "fetch-reference": cmd_fetch_reference,
    "fetch-spy": cmd_fetch_spy,
    "derive-latest": cmd_derive_latest,
    "score": cmd_score,
    "universe": cmd_universe,
    "backfill": cmd_backfill,
    "auto": cmd_auto,
    "backtest": cmd_backtest,
    "export": cmd_export,
    "dashboard": cmd_dashboard,
}


# ---------------------------------------------------------------------------
# MAIN
# ---------------------------------------------------------------------------
def main(argv=None) -> int:
    t0 = time.time()
    args = build_parser().parse_args(argv)
    load_dotenv(ROOT / ".env")

    ctx = RunContext(command=args.command)
    print("============================================")
    print(f"  EQUITY FACTOR RANKER: {args.command}  [run_id={ctx.run_id}]")
    print("============================================")

    cfg = load_config_safe(args.config)
    ctx.save_config(cfg)

    try:
        with open_store(cfg) as store:
            code = COMMANDS[args.command](args, cfg, ctx, store)
    except Exception as e:
        ctx.log.exception(f"{args.command} failed: {e}")
        code = 1

    total_time = round(time.time() - t0, 1)
    ctx.save_metadata({
        "cli_args": {k: v for k, v in vars(args).items()},
        "exit_code": code,
        "total_time_seconds": total_time,
    })
    ctx.close()
    return code


if __name__ == "__main__":
    sys.exit(main())
