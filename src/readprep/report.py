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
  <title>readprep transform report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
    pre { padding: 12px; overflow-x: auto; }
    h1, h2, h3 { margin-top: 1.2em; }
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

<h1>readprep transform report</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Run summary</h2>
<div class="grid">
  <div class="card">
    <h3>Inputs and outputs</h3>
    <table>
      <tr><th>Input</th><td><code>{{ summary.input }}</code></td></tr>
      <tr><th>Output</th><td><code>{{ summary.output }}</code></td></tr>
      <tr><th>Reads in</th><td>{{ summary.reads_in }}</td></tr>
      <tr><th>Reads out</th><td>{{ summary.reads_out }}</td></tr>
      <tr><th>Runtime</th><td>{{ "%.2f"|format(summary.runtime_seconds) }} s</td></tr>
    </table>
  </div>
  <div class="card">
    <h3>Execution</h3>
    <table>
      <tr><th>Parallelism</th><td>{{ summary.context.parallelism }}</td></tr>
      <tr><th>Partitions</th><td>{{ summary.context.partitions }}</td></tr>
      <tr><th>Duplicate policy</th><td><code>{{ summary.config.duplicate_policy }}</code></td></tr>
      <tr><th>Covariates</th><td><code>{{ summary.config.covariates|join(", ") }}</code></td></tr>
      <tr><th>Min observations per bucket</th><td>{{ summary.config.min_observations_for_bucket }}</td></tr>
    </table>
  </div>
</div>

<h2>Stages</h2>
<table>
  <tr><th>Stage</th><th>Reads</th><th>Runtime (s)</th><th>Details</th></tr>
  {% for st in summary.stages %}
  <tr>
    <td>{{ st.name }}</td>
    <td>{{ st.reads }}</td>
    <td>{{ "%.2f"|format(st.runtime_seconds) }}</td>
    <td>{% for k, v in st.details.items() %}{{ k }}={{ v }}{% if not loop.last %}, {% endif %}{% endfor %}</td>
  </tr>
  {% endfor %}
</table>

{% if summary.flagstat %}
<h2>Flag statistics (QC-passed)</h2>
<table>
  {% for k, v in summary.flagstat.items() %}
  <tr><th>{{ k }}</th><td>{{ v }}</td></tr>
  {% endfor %}
</table>
{% endif %}

<h2>Plots</h2>
<div class="grid">
  {% for name, path in plots.items() %}
  <div class="card">
    <h3>{{ name|replace("_", " ") }}</h3>
    <img src="{{ path }}" alt="{{ name }}">
  </div>
  {% endfor %}
</div>

<h2>Outputs</h2>
<ul>
  <li><code>{{ summary.output }}</code> (processed reads)</li>
  {% if summary.config.dump_recalibration_table %}
  <li><code>{{ summary.config.dump_recalibration_table }}</code> (recalibration table)</li>
  {% endif %}
  <li><code>summary.json</code> (machine-readable summary)</li>
</ul>

<hr>
<p class="small">readprep {{ version }}</p>
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
        summary=summary,
        plots=plots,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    logger.info("Report written: %s", out_path)
    return out_path
