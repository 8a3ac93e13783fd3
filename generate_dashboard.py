#!/usr/bin/env python3
"""
HTML Dashboard Generator for the Equity Factor Ranker.
======================================================
Builds one self-contained HTML page: ranked score table with ticker /
market-cap / volume filters, the active weight map and a top-N vs SPY
backtest chart (Chart.js).

The page embeds a snapshot of the scores so a written file works offline.
When served by ``server.py`` it switches to the live ``/api`` endpoints for
filtering, pagination, weight edits and backtests.

Usage:
    python generate_dashboard.py                      # latest scored date
    python generate_dashboard.py --date 2024-06-03 --output out.html
"""

import argparse
import json
import math
from datetime import datetime
from pathlib import Path

import numpy as np

ROOT = Path(__file__).resolve().parent
SNAPSHOT_ROWS = 500

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _safe(v):
    """Convert numpy/pandas types to JSON-safe Python types."""
    if v is None or (isinstance(v, float) and not math.isfinite(v)):
        return None
    if isinstance(v, (np.integer,)):
        return int(v)
    if isinstance(v, (np.floating,)):
        f = float(v)
        return round(f, 6) if math.isfinite(f) else None
    if isinstance(v, float):
        return round(v, 6)
    return v


def prepare_dashboard_data(store, date: str | None, weights: dict) -> str:
    """Snapshot of one date's ranking as a JSON string for embedding."""
    date = date or store.latest_score_date()
    rows, total = [], 0
    if date:
        total, rows = store.query_scores(date, limit=SNAPSHOT_ROWS)
    data = {
        "date": date,
        "total": total,
        "rows": [{k: _safe(v) for k, v in r.items()} for r in rows],
        "weights": {k: _safe(v) for k, v in (weights or {}).items()},
        "generated": datetime.now().strftime("%Y-%m-%d %H:%M"),
    }
    # keep "</script>" inside string values from closing the tag
    return json.dumps(data).replace("</", "<\\/")


def generate_html(data_json: str) -> str:
    """Build the complete dashboard HTML string."""
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Equity Factor Ranker</title>
    <script src="https://cdn.jsdelivr.net/npm/chart.js@4.5.1" crossorigin="anonymous"></script>
    <style>
{_css()}
    </style>
</head>
<body>
    <div class="dashboard-container">
        <header class="dashboard-header">
            <h1>Equity Factor Ranker</h1>
            <span class="run-info" id="run-info"></span>
        </header>

        <section class="section">
            <h2 class="section-title">Ranking</h2>
            <div class="filters">
                <input id="f-q" placeholder="Ticker contains">
                <input id="f-mcap" type="number" min="0" placeholder="Min market cap">
                <input id="f-vol" type="number" min="0" placeholder="Min avg volume">
                <select id="f-limit"><option>25</option><option selected>50</option><option>100</option><option>500</option></select>
                <button onclick="applyFilters(0)">Apply</button>
            </div>
            <div class="table-section"><table id="score-table"></table></div>
            <div class="pager">
                <button onclick="page(-1)">Prev</button>
                <span id="page-info"></span>
                <button onclick="page(1)">Next</button>
            </div>
        </section>

        <section class="section">
            <h2 class="section-title">Weights</h2>
            <div id="weights" class="weights"></div>
            <div class="live-only">
                <button onclick="saveWeights()">Save</button>
                <button onclick="resetWeights()">Reset to config.yaml</button>
                <span class="note">Saved weights apply from the next scoring run.</span>
            </div>
        </section>

        <section class="section live-only">
            <h2 class="section-title">Backtest: top % vs SPY</h2>
            <div class="filters">
                <input id="bt-start" type="date">
                <input id="bt-end" type="date">
                <input id="bt-pct" type="number" min="1" max="100" value="20">
                <button onclick="runBacktest()">Run</button>
            </div>
            <div class="chart-container"><canvas id="bt-chart"></canvas></div>
        </section>
    </div>
    <script>
const DATA = {data_json};
{_js()}
    </script>
</body>
</html>
"""


def _css() -> str:
    return """
        :root {
            --bg-primary: #0d1117;
            --bg-card: #161b22;
            --border: rgba(255,255,255,.08);
            --text-primary: #e6edf3;
            --text-secondary: #7d8590;
            --accent: #58a6ff;
            --green: #3fb950;
            --red: #f85149;
            --gap: 16px;
            --radius: 10px;
            --font-mono: 'JetBrains Mono', monospace;
        }
        body { background: var(--bg-primary); color: var(--text-primary);
               font-family: system-ui, sans-serif; margin: 0; }
        .dashboard-container { max-width: 1400px; margin: 0 auto; padding: var(--gap); }
        .dashboard-header { display: flex; align-items: baseline; gap: var(--gap); }
        .run-info, .note { color: var(--text-secondary); font-size: 13px; }
        .section { background: var(--bg-card); border: 1px solid var(--border);
                   border-radius: var(--radius); padding: var(--gap); margin-bottom: var(--gap); }
        .section-title { margin: 0 0 12px; font-size: 18px; }
        .filters, .pager { display: flex; gap: 8px; align-items: center; margin-bottom: 12px; }
        input, select, button { background: var(--bg-primary); color: var(--text-primary);
                                border: 1px solid var(--border); border-radius: 6px; padding: 6px 10px; }
        button { cursor: pointer; border-color: var(--accent); }
        table { border-collapse: collapse; width: 100%; font-family: var(--font-mono); font-size: 12px; }
        th, td { padding: 6px 8px; border-bottom: 1px solid var(--border); text-align: right; }
        th:nth-child(2), td:nth-child(2) { text-align: left; }
        td.pos { color: var(--green); }
        td.neg { color: var(--red); }
        .weights { display: grid; grid-template-columns: repeat(auto-fill, minmax(170px, 1fr)); gap: 8px; }
        .weights label { display: flex; justify-content: space-between; gap: 6px; font-size: 13px; }
        .weights input { width: 70px; }
        .chart-container { position: relative; height: 320px; }
        body.offline .live-only { display: none; }
"""


def _js() -> str:
    return """
const LIVE = location.protocol.startsWith('http');
const COLS = [
  ['ticker','Ticker'], ['composite','Composite'], ['momentum','Mom'], ['volatility','Vol'],
  ['vwap_dev','VWAP dev'], ['pe','P/E'], ['pb','P/B'], ['ps','P/S'], ['de','D/E'],
  ['roe','ROE'], ['fcf_yield','FCF yld'], ['dividend_yield','Div yld'], ['peg3','PEG 3y'],
  ['market_cap','Mkt cap'], ['avg_volume','Avg vol'],
];
let state = { offset: 0, total: DATA.total, date: DATA.date };
let btChart = null;

function fmt(v, key) {
  if (v === null || v === undefined) return '';
  if (key === 'market_cap' || key === 'avg_volume' || key === 'volume') {
    if (Math.abs(v) >= 1e9) return (v / 1e9).toFixed(1) + 'B';
    if (Math.abs(v) >= 1e6) return (v / 1e6).toFixed(1) + 'M';
    return Math.round(v).toLocaleString();
  }
  return typeof v === 'number' ? v.toFixed(4) : v;
}

function renderTable(rows) {
  const head = '<tr><th>#</th>' + COLS.map(c => `<th>${c[1]}</th>`).join('') + '</tr>';
  const body = rows.map((r, i) => '<tr><td>' + (state.offset + i + 1) + '</td>' +
    COLS.map(([k]) => {
      const cls = k === 'composite' ? (r[k] >= 0 ? 'pos' : 'neg') : '';
      return `<td class="${cls}">${fmt(r[k], k)}</td>`;
    }).join('') + '</tr>').join('');
  document.getElementById('score-table').innerHTML = head + body;
  const limit = +document.getElementById('f-limit').value;
  const last = Math.min(state.offset + limit, state.total);
  document.getElementById('page-info').textContent =
    state.total ? `${state.offset + 1}-${last} of ${state.total}` : 'no rows';
}

function filterLocal(q, minCap, minVol) {
  return DATA.rows.filter(r =>
    (!q || r.ticker.toUpperCase().includes(q)) &&
    (r.market_cap === null || r.market_cap >= minCap) &&
    (r.avg_volume === null || r.avg_volume >= minVol));
}

async function applyFilters(offset) {
  state.offset = Math.max(0, offset);
  const q = document.getElementById('f-q').value.trim().toUpperCase();
  const minCap = +document.getElementById('f-mcap').value || 0;
  const minVol = +document.getElementById('f-vol').value || 0;
  const limit = +document.getElementById('f-limit').value;
  if (LIVE && state.date) {
    const p = new URLSearchParams({ q, min_mcap: minCap, min_vol: minVol, limit, offset: state.offset });
    const res = await fetch(`/api/scores_filtered/${state.date}?${p}`);
    const body = await res.json();
    state.total = body.total;
    renderTable(body.rows);
  } else {
    const rows = filterLocal(q, minCap, minVol);
    state.total = rows.length;
    renderTable(rows.slice(state.offset, state.offset + limit));
  }
}

function page(dir) {
  const limit = +document.getElementById('f-limit').value;
  const next = state.offset + dir * limit;
  if (next < 0 || next >= state.total) return;
  applyFilters(next);
}

function renderWeights(w) {
  document.getElementById('weights').innerHTML = Object.entries(w).map(([k, v]) =>
    `<label>${k}<input data-key="${k}" type="number" step="0.01" value="${v}" ${LIVE ? '' : 'disabled'}></label>`
  ).join('');
}

async function saveWeights() {
  const w = {};
  document.querySelectorAll('#weights input').forEach(el => { w[el.dataset.key] = parseFloat(el.value) || 0; });
  const res = await fetch('/api/weights', { method: 'POST', headers: { 'Content-Type': 'application/json' }, body: JSON.stringify(w) });
  const body = await res.json();
  if (body.weights) renderWeights(body.weights);
}

async function resetWeights() {
  const res = await fetch('/api/weights/reset', { method: 'POST' });
  const body = await res.json();
  if (body.weights) renderWeights(body.weights);
}

async function runBacktest() {
  const start = document.getElementById('bt-start').value;
  const end = document.getElementById('bt-end').value;
  const pct = document.getElementById('bt-pct').value;
  if (!start || !end) return;
  const res = await fetch(`/api/backtest?start=${start}&end=${end}&pct=${pct}`);
  const body = await res.json();
  const ctx = document.getElementById('bt-chart');
  if (btChart) btChart.destroy();
  btChart = new Chart(ctx, {
    type: 'line',
    data: { datasets: [
      { label: `Top ${pct}%`, data: body.strategy.map(p => ({ x: p.date, y: p.value })), borderColor: '#58a6ff', pointRadius: 0 },
      { label: 'SPY', data: body.spy.map(p => ({ x: p.date, y: p.value })), borderColor: '#d29922', pointRadius: 0 },
    ] },
    options: { maintainAspectRatio: false, parsing: false, scales: { x: { type: 'category', labels: body.strategy.map(p => p.date) } } },
  });
}

async function init() {
  if (!LIVE) document.body.classList.add('offline');
  if (LIVE && !state.date) {
    const d = await (await fetch('/api/latest-date')).json();
    state.date = d.date;
  }
  document.getElementById('run-info').textContent =
    `Scores for ${state.date || 'n/a'} · generated ${DATA.generated}`;
  let w = DATA.weights;
  if (LIVE) w = await (await fetch('/api/weights')).json();
  renderWeights(w);
  applyFilters(0);
}
init();
"""


def generate_dashboard(store, date: str | None, weights: dict,
                       output_path: Path | None = None) -> Path:
    """Render the dashboard for ``date`` (default: latest scored date) to a file."""
    date = date or store.latest_score_date()
    data_json = prepare_dashboard_data(store, date, weights)
    if output_path is None:
        output_path = ROOT / "output" / f"dashboard_{date or 'empty'}.html"
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    output_path.write_text(generate_html(data_json), encoding="utf-8")
    print(f"Dashboard generated: {output_path} ({output_path.stat().st_size / 1024:.0f} KB)")
    return output_path


def main():
    from factor_engine import load_config, load_weights
    from store import Store

    parser = argparse.ArgumentParser(description="Generate the HTML dashboard")
    parser.add_argument("--date", type=str, default=None,
                        help="Scored date (default: latest)")
    parser.add_argument("--output", type=str, default=None,
                        help="Output HTML path (default: output/dashboard_<date>.html)")
    args = parser.parse_args()

    cfg = load_config()
    with Store(ROOT / cfg.storage.db_path) as store:
        store.init_schema()
        generate_dashboard(store, args.date, load_weights(cfg),
                           Path(args.output) if args.output else None)


if __name__ == "__main__":
    main()
