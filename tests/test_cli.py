"""Tests for the command-line layer: run_screener commands, the scheduled
pipeline runner and RunContext records.
"""

import json
import logging
import sys
from argparse import Namespace
from pathlib import Path
from unittest.mock import MagicMock, patch

import pandas as pd
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))
import run_pipeline
import run_screener
from polygon_client import UpstreamError
from run_context import RunContext
from schemas import DEFAULT_WEIGHTS, DailyBar

DATE = "2024-06-03"


@pytest.fixture
def ctx(tmp_path):
    c = RunContext(command="test", runs_dir=tmp_path / "runs")
    yield c
    c.close()


# =====================================================================
# ARGUMENT PARSING
# =====================================================================

class TestParser:
    def test_score_date_parsed(self):
        args = run_screener.build_parser().parse_args(["score", DATE])
        assert args.command == "score"
        assert args.date == DATE

    def test_bad_date_rejected(self):
        with pytest.raises(SystemExit):
            run_screener.build_parser().parse_args(["score", "06/03/2024"])

    def test_ticker_list_normalized(self):
        args = run_screener.build_parser().parse_args(
            ["fetch-fundamentals", "--tickers", "aapl, msft,"])
        assert args.tickers == ["AAPL", "MSFT"]

    def test_fundamentals_source_required(self):
        with pytest.raises(SystemExit):
            run_screener.build_parser().parse_args(["fetch-fundamentals"])

    def test_every_command_dispatched(self):
        parser = run_screener.build_parser()
        sub = next(a for a in parser._actions if a.dest == "command")
        assert set(sub.choices) == set(run_screener.COMMANDS)


# =====================================================================
# COMMANDS
# =====================================================================

class TestCommands:
    def test_score_success(self, seeded_store, cfg, ctx):
        with patch("factor_engine.load_weights", return_value=dict(DEFAULT_WEIGHTS)):
            assert run_screener.score(seeded_store, DATE, cfg, ctx) == 0
        assert seeded_store.count_scores(DATE) == 10
        assert (ctx.run_dir / f"scores_{DATE}.parquet").exists()
        saved = json.loads((ctx.run_dir / "effective_weights.json").read_text())
        assert saved == DEFAULT_WEIGHTS

    def test_score_without_bars_fails(self, store, cfg, ctx):
        with patch("factor_engine.load_weights", return_value=dict(DEFAULT_WEIGHTS)):
            assert run_screener.score(store, DATE, cfg, ctx) == 1
        assert store.count_scores(DATE) == 0

    def test_fetch_bars_upstream_error(self, store, cfg, ctx):
        client = MagicMock()
        client.grouped_daily.side_effect = UpstreamError("HTTP 500")
        with patch("run_screener._client", return_value=client):
            code = run_screener.cmd_fetch_bars(Namespace(date=DATE), cfg, ctx, store)
        assert code == 1

    def test_fetch_bars_stores(self, store, cfg, ctx):
        client = MagicMock()
        client.grouped_daily.return_value = [DailyBar(date=DATE, ticker="X", close=1.0)]
        with patch("run_screener._client", return_value=client):
            code = run_screener.cmd_fetch_bars(Namespace(date=DATE), cfg, ctx, store)
        assert code == 0
        assert store.get_bar(DATE, "X").close == 1.0

    def test_fetch_fundamentals(self, store, cfg, ctx, vx_filings):
        client = MagicMock()
        client.financials.side_effect = lambda t, tf, max_rows=None: (
            vx_filings if t == "AAPL" and tf == "quarterly" else [])
        args = Namespace(tickers=["AAPL", "NONE"], universe=None,
                         all_latest_date=False, max=None)
        with patch("run_screener._client", return_value=client):
            assert run_screener.cmd_fetch_fundamentals(args, cfg, ctx, store) == 0
        assert len(store.get_fundamentals_history("AAPL")) == 3
        assert store.get_fundamentals_latest("AAPL").revenue == pytest.approx(
            90753000000 + 119575000000)
        report = json.loads((ctx.run_dir / "fundamentals.json").read_text())
        assert report["ok"] == ["AAPL"]
        assert report["failed"] == ["NONE"]

    def test_universe_without_bars(self, store, cfg, ctx):
        assert run_screener.cmd_universe(Namespace(date=DATE), cfg, ctx, store) == 1

    def test_export(self, seeded_store, cfg, ctx, tmp_path):
        with patch("factor_engine.load_weights", return_value=dict(DEFAULT_WEIGHTS)):
            run_screener.score(seeded_store, DATE, cfg, ctx)
        out = tmp_path / "scores.xlsx"
        code = run_screener.cmd_export(Namespace(date=DATE, xlsx=str(out)), cfg, ctx, seeded_store)
        assert code == 0
        assert len(pd.read_excel(out)) == 10

    def test_export_empty_date(self, store, cfg, ctx, tmp_path):
        args = Namespace(date=DATE, xlsx=str(tmp_path / "x.xlsx"))
        assert run_screener.cmd_export(args, cfg, ctx, store) == 1

    def test_backfill_stops_on_fetch_failure(self, store, cfg, ctx):
        client = MagicMock()
        client.grouped_daily.side_effect = [
            [DailyBar(date="2024-05-31", ticker="X", open=1.0, close=1.1)],
            UpstreamError("HTTP 500"),
        ]
        args = Namespace(start="2024-05-31", end="2024-06-04")
        with patch("run_screener._client", return_value=client), \
                patch("factor_engine.load_weights", return_value=dict(DEFAULT_WEIGHTS)):
            assert run_screener.cmd_backfill(args, cfg, ctx, store) == 1
        assert store.count_scores("2024-05-31") == 1
        # weekends skipped: Friday then Monday
        dates = [c.args[0] for c in client.grouped_daily.call_args_list]
        assert dates == ["2024-05-31", "2024-06-03"]


# =====================================================================
# SCHEDULED PIPELINE
# =====================================================================

class TestPipeline:
    def test_all_steps_ok(self, tmp_path):
        status_path = tmp_path / "status.json"
        with patch("run_pipeline.run_step", return_value=0) as step:
            status = run_pipeline.run_once(DATE, status_path)
        assert [c.args[1] for c in step.call_args_list] == [
            ["fetch-bars", DATE], ["score", DATE], ["universe", DATE]]
        assert status["last_status"] == "ok"
        assert json.loads(status_path.read_text())["running"] is False

    def test_failed_step_does_not_stop_later_steps(self, tmp_path):
        with patch("run_pipeline.run_step", side_effect=[1, 0, 0]) as step:
            status = run_pipeline.run_once(DATE, tmp_path / "status.json")
        assert step.call_count == 3
        assert status["last_status"] == "partial"
        assert status["steps"]["fetch-bars"] == 1


# =====================================================================
# RUN CONTEXT
# =====================================================================

class TestRunContext:
    def test_structured_log_and_metadata(self, ctx, cfg):
        ctx.save_config(cfg)
        ctx.log.info("Scored", extra={"date": DATE, "count": 3})
        path = ctx.save_metadata({"exit_code": 0})
        meta = json.loads(path.read_text())
        assert meta["command"] == "test"
        assert meta["exit_code"] == 0
        lines = [json.loads(l) for l in (ctx.run_dir / "run.log").read_text().splitlines()]
        scored = [l for l in lines if l["msg"] == "Scored"]
        assert scored and scored[0]["date"] == DATE and scored[0]["count"] == 3
        assert (ctx.run_dir / "config.yaml").exists()

    def test_config_hash_tracks_weights(self, cfg):
        a = RunContext.config_hash(cfg)
        b = RunContext.config_hash(cfg, {**DEFAULT_WEIGHTS, "pe": 0.0})
        assert a != b
        assert a == RunContext.config_hash(cfg)

    def test_close_restores_root_level(self, tmp_path):
        root = logging.getLogger()
        saved = root.level
        root.setLevel(logging.WARNING)
        try:
            c = RunContext(command="test", runs_dir=tmp_path / "runs")
            assert root.level == logging.INFO
            c.close()
            assert root.level == logging.WARNING
        finally:
            root.setLevel(saved)
