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
  <title>polishcons Report</title>
  <style>
    body { font-family: Arial, Helvetica, sans-serif; margin: 24px; }
    code, pre { background: #f6f8fa; padding: 2px 4px; border-radius: 4px; }
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

<h1>polishcons Report</h1>
<p class="small">Generated: {{ generated_at }}</p>

<h2>Run summary</h2>
<div class="grid">
  <div class="card">
    <h3>Inputs</h3>
    <table>
      <tr><th>BAM</th><td><code>{{ run.bam_path }}</code></td></tr>
      <tr><th>Reference</th><td><code>{{ run.ref_path }}</code></td></tr>
      <tr><th>Mode</th><td>{{ run.mode }}</td></tr>
      <tr><th>Chimera detection</th><td>{{ run.chimera_detection }}</td></tr>
    </table>
  </div>
  <div class="card">
    <h3>Retention</h3>
    <table>
      <tr><th>Bin size</th><td>{{ run.config.bin_size }}</td></tr>
      <tr><th>Max coverage</th><td>{{ run.config.max_coverage }}</td></tr>
      <tr><th>Trimming</th><td>{{ run.config.trim }} (taboo {{ run.config.indel_taboo }})</td></tr>
      <tr><th>Quality weighted</th><td>{{ run.config.qual_weighted }}</td></tr>
    </table>
  </div>
</div>

<h2>Alignments</h2>
<table>
  <tr><th>Total reads seen</th><td>{{ run.counts.reads_total }}</td></tr>
  <tr><th>Unmapped skipped</th><td>{{ run.counts.reads_unmapped }}</td></tr>
  <tr><th>Duplicates skipped</th><td>{{ run.counts.reads_skipped_duplicates }}</td></tr>
  <tr><th>Secondary skipped</th><td>{{ run.counts.reads_skipped_secondary }}</td></tr>
  <tr><th>Supplementary skipped</th><td>{{ run.counts.reads_skipped_supplementary }}</td></tr>
  <tr><th>No matching reference</th><td>{{ run.counts.reads_no_reference }}</td></tr>
  <tr><th>Admitted</th><td>{{ run.counts.reads_admitted }}</td></tr>
  <tr><th>Rejected (bin full)</th><td>{{ run.counts.reads_rejected }}</td></tr>
  <tr><th>Unscored</th><td>{{ run.counts.reads_unscored }}</td></tr>
</table>

<h2>Contigs</h2>
<table>
  <tr>
    <th>Contig</th><th>Length</th><th>Retained</th><th>Consensus length</th>
    <th>Mean confidence</th><th>Uncovered columns</th><th>Chimera candidates</th>
    {% if run.mode == "haplo" %}<th>Haplotype coverage</th>{% endif %}
  </tr>
  {% for name, c in run.contigs.items() %}
  <tr>
    <td><code>{{ name }}</code></td><td>{{ c.length }}</td><td>{{ c.retained }}</td>
    <td>{{ c.consensus_length }}</td><td>{{ "%.1f"|format(c.mean_confidence) }}</td>
    <td>{{ c.uncovered_columns }}</td><td>{{ c.chimeras }}</td>
    {% if run.mode == "haplo" %}
    <td>
      {% if c.haplotype.coverage.accepted %}{{ c.haplotype.coverage.estimate }}
      ({{ c.haplotype.evicted }} evicted){% else %}not significant{% endif %}
    </td>
    {% endif %}
  </tr>
  {% endfor %}
</table>
{% if run.contigs_without_alignments %}
<p class="small">Without retained alignments: {{ run.contigs_without_alignments|join(", ") }}</p>
{% endif %}

<h2>Plots</h2>
<div class="grid">
  <div class="card">
    <h3>Alignment counts</h3>
    <img src="{{ plots.read_counts }}" alt="read counts">
  </div>
  {% if plots.chimera_scores %}
  <div class="card">
    <h3>Chimera scores</h3>
    <img src="{{ plots.chimera_scores }}" alt="chimera scores">
  </div>
  {% endif %}
</div>
{% for name, png in plots.coverage.items() %}
<div class="card" style="margin-top:16px;">
  <h3>Coverage: {{ name }}</h3>
  <img src="{{ png }}" alt="coverage {{ name }}">
</div>
{% endfor %}

<h2>Outputs</h2>
<ul>
  <li><code>{{ run.consensus_fq }}</code> (consensus; quality = confidence, header <code>cov=</code> = coverage)</li>
  <li><code>{{ run.chimeras_tsv }}</code> ({{ run.chimeras_total }} chimera candidate region(s))</li>
  {% if run.retained_bam %}
  <li><code>{{ run.retained_bam }}</code> ({{ run.retained_written }} retained alignments)</li>
  {% endif %}
  <li><code>summary.json</code> (machine-readable summary)</li>
</ul>

<h2>Interpretation notes</h2>
<ul>
  <li>Confidence phreds are derived from the winning state's accumulated frequency, capped at 40.</li>
  <li>Positions without any retained observation fall back to the draft base with zero confidence.</li>
  <li>Chimera scores are the fraction of columns where pooling the two sides raises entropy by more than {{ run.config.chimera_entropy_delta }} bits.</li>
</ul>

<hr>
<p class="small">polishcons {{ version }}</p>
</body>
</html>"""
)


def render_report(
    *,
    outdir: str | Path,
    version: str,
    run: Dict[str, Any],
    plots: Dict[str, Any],
) -> Path:
    outdir = Path(outdir)
    outdir.mkdir(parents=True, exist_ok=True)

    plots = dict(plots)
    plots.setdefault("coverage", {})
    plots.setdefault("chimera_scores", "")

    html = _REPORT_TEMPLATE.render(
        generated_at=_dt.datetime.now().isoformat(timespec="seconds"),
        version=version,
        run=run,
        plots=plots,
    )

    out_path = outdir / "report.html"
    out_path.write_text(html, encoding="utf-8")
    return out_path
