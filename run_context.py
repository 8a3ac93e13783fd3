#!/usr/bin/env python3
"""
Run Context: per-command run records for the Equity Factor Ranker.

Provides:
  - run_id generation (UUID4)
  - Config snapshot saving
  - Structured JSON logging (runs/{run_id}/run.log)
  - Scored cross-section artifacts (Parquet)
  - Fetch reports (which tickers succeeded / failed)
  - Run metadata (timestamps, git sha, versions)

Usage:
    ctx = RunContext(command="score")
    ctx.save_config(cfg)
    ctx.log.info("Scored", extra={"date": "2024-06-03", "count": 412})
    ctx.save_artifact("scores_2024-06-03", df)
    ctx.save_metadata({...})
"""

import hashlib
import importlib.metadata
import json
import logging
import platform
import subprocess
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import pandas as pd
import yaml
from pydantic import BaseModel

ROOT = Path(__file__).resolve().parent
RUNS_DIR = ROOT / "runs"

_EXTRA_FIELDS = ("ticker", "date", "phase", "step", "count", "status",
                 "elapsed_ms", "run_id")


class _JSONFormatter(logging.Formatter):
    """Structured JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "module": record.module,
            "func": record.funcName,
            "msg": record.getMessage(),
        }
        for key in _EXTRA_FIELDS:
            val = getattr(record, key, None)
            if val is not None:
                entry[key] = val
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class RunContext:
    """Manages a single command run's metadata, artifacts and logging."""

    def __init__(self, command: str = "run", run_id: str | None = None,
                 runs_dir: Path | None = None):
        self.command = command
        self.run_id = run_id or uuid.uuid4().hex[:12]
        self.start_time = datetime.now()
        self.run_dir = Path(runs_dir or RUNS_DIR) / self.run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.log = logging.getLogger(f"ranker.{self.run_id}")
        self.log.setLevel(logging.DEBUG)
        self.log.propagate = False
        self.log.handlers.clear()

        fh = logging.FileHandler(str(self.run_dir / "run.log"), encoding="utf-8")
        fh.setFormatter(_JSONFormatter())
        self.log.addHandler(fh)

        ch = logging.StreamHandler(sys.stdout)
        ch.setFormatter(logging.Formatter(
            "%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S"))
        ch.setLevel(logging.INFO)
        self.log.addHandler(ch)

        # library modules log through their own module loggers; route
        # those into this run's file as well
        self._lib_logger = logging.getLogger()
        self._lib_handler = logging.FileHandler(str(self.run_dir / "run.log"), encoding="utf-8")
        self._lib_handler.setFormatter(_JSONFormatter())
        self._lib_handler.setLevel(logging.INFO)
        self._lib_logger.addHandler(self._lib_handler)
        self._prev_root_level = self._lib_logger.level
        if self._lib_logger.level > logging.INFO or self._lib_logger.level == logging.NOTSET:
            self._lib_logger.setLevel(logging.INFO)

        self.log.info(f"Run started: {command}", extra={"run_id": self.run_id, "step": command})

    def close(self):
        """Detach handlers so repeated runs in one process do not pile up."""
        self._lib_logger.removeHandler(self._lib_handler)
        self._lib_handler.close()
        self._lib_logger.setLevel(self._prev_root_level)
        for h in list(self.log.handlers):
            self.log.removeHandler(h)
            h.close()

    def save_config(self, cfg) -> Path:
        """Save a snapshot of the config used for this run."""
        data = cfg.model_dump() if isinstance(cfg, BaseModel) else cfg
        path = self.run_dir / "config.yaml"
        with open(path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
        self.log.info("Config snapshot saved", extra={"phase": "init"})
        return path

    @staticmethod
    def config_hash(cfg, weights: dict | None = None) -> str:
        """Deterministic hash of the scoring-relevant configuration."""
        data = cfg.model_dump() if isinstance(cfg, BaseModel) else dict(cfg)
        relevant = {
            "weights": weights if weights is not None else data.get("weights", {}),
            "scoring": data.get("scoring", {}),
        }
        raw = json.dumps(relevant, sort_keys=True)
        return hashlib.sha256(raw.encode()).hexdigest()[:12]

    def save_artifact(self, name: str, df: pd.DataFrame) -> Path:
        """Save an intermediate DataFrame as Parquet."""
        path = self.run_dir / f"{name}.parquet"
        df.to_parquet(str(path), index=False)
        self.log.info(f"Artifact saved: {name} ({len(df)} rows)",
                      extra={"phase": "artifact", "step": name, "count": len(df)})
        return path

    def save_fetch_report(self, name: str, ok: list, failed: list) -> Path:
        """Record which tickers a fetch step stored and which it skipped."""
        data = {
            "ok": sorted(ok),
            "failed": sorted(failed),
            "ok_count": len(ok),
            "failed_count": len(failed),
        }
        path = self.run_dir / f"{name}.json"
        with open(path, "w") as f:
            json.dump(data, f, indent=2)
        return path

    def save_effective_weights(self, weights: dict) -> Path:
        """Save the weight map actually used (config + override file)."""
        path = self.run_dir / "effective_weights.json"
        with open(path, "w") as f:
            json.dump(weights, f, indent=2)
        return path

    def save_metadata(self, extra: dict | None = None) -> Path:
        """Save run metadata (call at end of a command)."""
        end_time = datetime.now()
        meta = {
            "run_id": self.run_id,
            "command": self.command,
            "start_time": self.start_time.isoformat(),
            "end_time": end_time.isoformat(),
            "elapsed_seconds": round((end_time - self.start_time).total_seconds(), 1),
            "git_sha": _get_git_sha(),
            "python_version": sys.version,
            "platform": platform.platform(),
            "packages": _get_package_versions(),
        }
        if extra:
            meta.update(extra)
        path = self.run_dir / "meta.json"
        with open(path, "w") as f:
            json.dump(meta, f, indent=2, default=str)
        self.log.info("Run metadata saved", extra={"run_id": self.run_id})
        return path


def _get_git_sha() -> str:
    """Get the current git commit SHA, or 'unknown' if not in a git repo."""
    try:
        result = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            capture_output=True, text=True, timeout=5,
            cwd=str(ROOT),
        )
        if result.returncode == 0:
            return result.stdout.strip()
    except (FileNotFoundError, subprocess.TimeoutExpired):
        pass
    return "unknown"


def _get_package_versions() -> dict:
    """Get versions of key dependencies."""
    versions = {}
    for pkg in ["requests", "pandas", "numpy", "scipy", "openpyxl", "pyyaml",
                "pyarrow", "pydantic", "fastapi", "uvicorn", "python-dotenv"]:
        try:
            versions[pkg] = importlib.metadata.version(pkg)
        except importlib.metadata.PackageNotFoundError:
            versions[pkg] = "unknown"
    return versions
