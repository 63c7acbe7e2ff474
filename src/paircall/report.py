from __future__ import annotations

import datetime as _dt
import logging
from pathlib import Path
from typing import Any, Dict

from jinja2 import Template

logger = logging.getLogger(__name__)


_REPORT_TEMPLATE = Template(
    """<!doctype html>
<html lang="en">
<head>
  <meta charset="utf-8">
  <title>paircall report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    table { border-collapse: collapse; margin-top: 0.6em; }
    th, td { border: 1px solid #ddd; padding: 8px; }
    th { background: #f2f2f2; text-align: left; }
    .grid { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
    .card { border: 1px solid #ddd; border-radius: 8px; padding: 12px; }
    .small { color: #666; font-size: 0.9em; }
    img { max-width: 100%; height: auto; border: 1px solid #eee; border-radius: 6px; }
  </style>
</head>
<body>

<h1>paircall report</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Run summary</h2>
<div class="grid">
  <div class="card">
    <h3>Inputs</h3>
    <table>
      <tr><th>Tumor BAM</th><td><code>{{ inputs.tumor }}</code></td></tr>
      <tr><th>Normal BAM</th><td><code>{{ inputs.normal }}</code></td></tr>
      <tr><th>Candidates</th><td><code>{{ inputs.candidates }}</code></td></tr>
      <tr><th>Reference</th><td><code>{{ inputs.reference or "-" }}</code></td></tr>
    </table>
  </div>
  <div class="card">
    <h3>Model</h3>
    <table>
      {% for key, value in model.items() %}
      <tr><th>{{ key }}</th><td>{{ value }}</td></tr>
      {% endfor %}
    </table>
  </div>
</div>

<h2>Candidates</h2>
<table>
  {% for key, value in counts.items() %}
  <tr><th>{{ key }}</th><td>{{ value }}</td></tr>
  {% endfor %}
</table>

<h2>Plots</h2>
<div class="grid">
  <div class="card">
    <h3>Most probable event</h3>
    <img src="{{ plots.event_counts }}" alt="event counts">
  </div>
  <div class="card">
    <h3>Posterior distribution</h3>
    <img src="{{ plots.posterior_hist }}" alt="posterior histogram">
  </div>
</div>

<h2>Outputs</h2>
<ul>
  <li><code>{{ output }}</code> (calls, PROB_* fields are PHRED-scaled posteriors)</li>
  {% if observations %}
  <li><code>{{ observations }}</code> (per-read observations)</li>
  {% endif %}
  <li><code>summary.json</code> (machine-readable summary)</li>
</ul>

<hr>
<p class="small">paircall {{ version }} in {{ runtime_seconds | round(1) }} s</p>
</body>
</html>"""
)


def render_report(
    *,
    outdir: str | Path,
    version: str,
    summary: Dict[str, Any],
    plots: Dict[str, str],
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        inputs=summary.get("inputs", {}),
        model=summary.get("model", {}),
        counts=summary.get("counts", {}),
        output=summary.get("output"),
        observations=summary.get("observations"),
        runtime_seconds=float(summary.get("runtime_seconds", 0.0)),
        plots=plots,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    logger.info("Wrote report %s", out_path)
    return out_path
