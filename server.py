#!/usr/bin/env python3
"""
FastAPI server: read-only query API over stored scores plus the dashboard.

Endpoints
---------
GET  /api/latest-date                     -> {"date": ...}
GET  /api/scores/{date}                   -> all rows for a date
GET  /api/scores_filtered/{date}          -> {"total", "rows"} (q, min_mcap, min_vol, limit, offset)
GET  /api/top50, /api/top10               -> top rows (date defaults to latest)
GET  /api/top10_track?start&end           -> start-date top 10 followed through end
GET  /api/weights                         -> effective weight map used by scoring
POST /api/weights                         -> replace the override file
POST /api/weights/reset                   -> drop the override, back to config.yaml
GET  /api/backtest?start&end&pct          -> top-pct strategy vs SPY
GET  /api/status                          -> scheduler status (data/status.json)
GET  /                                    -> HTML dashboard

Weight edits only change config/weights.json; stored scores change on the
next scoring run.

Usage:
    python server.py                       # host/port from config.yaml
    RUN_SCHEDULER=1 python server.py       # also start run_pipeline.py
"""

import json
import logging
import os
import re
import subprocess
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from fastapi import Body, FastAPI, HTTPException, Query
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import ValidationError

import backtest
from factor_engine import load_config, load_weights
from generate_dashboard import generate_html, prepare_dashboard_data
from schemas import RunConfig, ScoringWeights
from store import Store

logger = logging.getLogger(__name__)

ROOT = Path(__file__).resolve().parent
CONFIG_DIR = ROOT / "config"
STATUS_PATH = ROOT / "data" / "status.json"

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

TOP_COLS = ("ticker", "composite", "pe", "pb", "de", "fcf_yield", "peg", "peg3",
            "ps", "roe", "dividend_yield", "market_cap", "avg_volume")


def _check_date(d: Optional[str], name: str = "date") -> str:
    if not d or not _DATE_RE.match(d):
        raise HTTPException(status_code=400, detail=f"{name} must be YYYY-MM-DD")
    return d


def _read_json(path: Path) -> Optional[dict]:
    try:
        with open(path, "r") as f:
            return json.load(f)
    except FileNotFoundError:
        return None


def create_app(cfg: Optional[RunConfig] = None, store: Optional[Store] = None,
               config_dir: Path = CONFIG_DIR, status_path: Path = STATUS_PATH) -> FastAPI:
    """Build the app; ``store`` defaults to the configured database, opened lazily."""
    cfg = cfg or load_config()
    config_dir = Path(config_dir)
    weights_path = config_dir / "weights.json"

    app = FastAPI(title="Equity Factor Ranker API", version="1.0.0")
    app.state.store = store

    def get_store() -> Store:
        if app.state.store is None:
            db_path = Path(cfg.storage.db_path)
            if not db_path.is_absolute():
                db_path = ROOT / db_path
            app.state.store = Store(db_path)
            app.state.store.init_schema()
        return app.state.store

    def current_weights() -> dict:
        return load_weights(cfg, weights_path)

    def save_weights(w: dict):
        config_dir.mkdir(parents=True, exist_ok=True)
        with open(weights_path, "w") as f:
            json.dump(w, f, indent=2)

    def top_rows(date: Optional[str], n: int) -> list:
        st = get_store()
        date = date or st.latest_score_date()
        if not date:
            return []
        _, rows = st.query_scores(_check_date(date), limit=n)
        return [{k: r.get(k) for k in TOP_COLS} for r in rows]

    # ------------------------------------------------------------------
    # Scores
    # ------------------------------------------------------------------
    @app.get("/api/latest-date")
    def latest_date():
        return {"date": get_store().latest_score_date()}

    @app.get("/api/scores/{date}")
    def scores(date: str):
        return get_store().get_scores(_check_date(date))

    @app.get("/api/scores_filtered/{date}")
    def scores_filtered(date: str, q: str = "", min_mcap: float = 0.0,
                        min_vol: float = 0.0,
                        limit: int = cfg.server.default_limit,
                        offset: int = 0):
        limit = max(1, min(limit, cfg.server.max_limit))
        total, rows = get_store().query_scores(
            _check_date(date), q=q, min_mcap=min_mcap, min_vol=min_vol,
            limit=limit, offset=offset)
        return JSONResponse({"total": total, "rows": rows},
                            headers={"Cache-Control": "public, max-age=30"})

    @app.get("/api/top50")
    def top50(date: Optional[str] = None):
        return top_rows(date, 50)

    @app.get("/api/top10")
    def top10(date: Optional[str] = None):
        return top_rows(date, 10)

    @app.get("/api/top10_track")
    def top10_track(start: Optional[str] = None, end: Optional[str] = None):
        if not start or not end:
            raise HTTPException(status_code=400,
                                detail="start and end are required (YYYY-MM-DD)")
        return backtest.track_top_picks(get_store(), _check_date(start, "start"),
                                        _check_date(end, "end"), n=10)

    # ------------------------------------------------------------------
    # Weights
    # ------------------------------------------------------------------
    @app.get("/api/weights")
    def get_weights():
        return current_weights()

    @app.post("/api/weights")
    def post_weights(body: dict = Body(...)):
        try:
            w = ScoringWeights(**body).model_dump()
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=json.loads(e.json()))
        # written in full: a key the caller left out is stored as 0
        save_weights(w)
        return {"ok": True, "weights": w}

    @app.post("/api/weights/reset")
    def reset_weights():
        weights_path.unlink(missing_ok=True)
        w = current_weights()
        return {"ok": True, "weights": w}

    # ------------------------------------------------------------------
    # Backtest / status / dashboard
    # ------------------------------------------------------------------
    @app.get("/api/backtest")
    def run_backtest(start: Optional[str] = None, end: Optional[str] = None,
                     pct: float = Query(20)):
        if not start or not end:
            raise HTTPException(status_code=400, detail="start and end are required")
        try:
            result = backtest.run_topn_backtest(
                get_store(), _check_date(start, "start"), _check_date(end, "end"), pct)
        except ValueError as e:
            raise HTTPException(status_code=400, detail=str(e))
        return result

    @app.get("/api/status")
    def status():
        return _read_json(Path(status_path)) or {"running": False}

    @app.get("/", response_class=HTMLResponse)
    def index():
        return generate_html(prepare_dashboard_data(get_store(), None, current_weights()))

    return app


def main():
    import uvicorn

    load_dotenv(ROOT / ".env")
    cfg = load_config()
    if os.environ.get("RUN_SCHEDULER") == "1":
        subprocess.Popen([sys.executable, str(ROOT / "run_pipeline.py")], cwd=str(ROOT))
        print("Scheduler enabled.")
    host = os.environ.get("HOST", cfg.server.host)
    port = int(os.environ.get("PORT", cfg.server.port))
    uvicorn.run(create_app(cfg), host=host, port=port)


if __name__ == "__main__":
    main()
