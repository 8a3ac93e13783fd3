#!/usr/bin/env python3
"""
Equity Factor Ranker - Scheduled Pipeline Runner
================================================
Runs the daily steps for today's date, once at startup and then every
``scheduler.interval_minutes``:
  1. run_screener.py fetch-bars DATE  -> grouped daily bars
  2. run_screener.py score DATE       -> factor scores
  3. run_screener.py universe DATE    -> market cap / avg volume snapshot

Each step runs as a subprocess. A failing step is reported as a warning
and the remaining steps still run. Status is written to data/status.json
for the /api/status endpoint.

Usage:
    python run_pipeline.py             # loop forever
    python run_pipeline.py --once      # single pass
    python run_pipeline.py --date 2024-06-03 --once
"""

import argparse
import json
import subprocess
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parent
STATUS_PATH = ROOT / "data" / "status.json"

STEPS = [
    ("fetch daily bars", "fetch-bars"),
    ("compute scores", "score"),
    ("refresh universe", "universe"),
]


def run_step(label: str, args: list) -> int:
    """Run one run_screener.py subcommand as a subprocess, streaming output."""
    print(f"\n{'=' * 60}")
    print(f"  PIPELINE STEP: {label}")
    print(f"{'=' * 60}\n")

    result = subprocess.run(
        [sys.executable, str(ROOT / "run_screener.py"), *args],
        cwd=str(ROOT),
    )
    if result.returncode != 0:
        print(f"\n  warn: {label} failed with exit code {result.returncode}")
    return result.returncode


def write_status(status: dict, path: Path = STATUS_PATH):
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(status, indent=2))
    tmp.replace(path)


def run_once(date: str | None = None, status_path: Path = STATUS_PATH) -> dict:
    """One fetch -> score -> universe pass; returns the step exit codes."""
    date = date or datetime.now(timezone.utc).date().isoformat()
    started = datetime.now(timezone.utc).isoformat(timespec="seconds")
    write_status({"running": True, "date": date, "started": started}, status_path)

    print(f"[pipeline] Processing {date}")
    codes = {}
    for label, cmd in STEPS:
        codes[cmd] = run_step(label, [cmd, date])
    ok = all(c == 0 for c in codes.values())

    status = {
        "running": False,
        "date": date,
        "last_run": started,
        "finished": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        "last_status": "ok" if ok else "partial",
        "steps": codes,
    }
    write_status(status, status_path)
    print(f"[pipeline] Done for {date} ({status['last_status']})")
    return status


def main():
    parser = argparse.ArgumentParser(description="Scheduled fetch/score/universe runner")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--date", type=str, default=None,
                        help="Date to process (default: today, UTC)")
    parser.add_argument("--interval", type=float, default=None,
                        help="Minutes between passes (default: scheduler.interval_minutes)")
    args = parser.parse_args()

    if args.once:
        status = run_once(args.date)
        sys.exit(0 if status["last_status"] == "ok" else 1)

    interval = args.interval
    if interval is None:
        from factor_engine import load_config
        interval = load_config().scheduler.interval_minutes

    print("=" * 60)
    print(f"  EQUITY FACTOR RANKER - SCHEDULER (every {interval:g} min)")
    print("=" * 60)
    while True:
        t0 = time.time()
        status = run_once(args.date)
        status["next_run"] = (datetime.now(timezone.utc)
                              + timedelta(minutes=interval)).isoformat(timespec="seconds")
        write_status(status)
        time.sleep(max(0.0, interval * 60 - (time.time() - t0)))


if __name__ == "__main__":
    main()
