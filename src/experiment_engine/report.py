"""
Experiment reporting: analysis JSON, plots and an HTML executive summary.

Artifacts go to artifacts/experiments/<experiment_id>/.
"""

import json
import logging
from pathlib import Path
from typing import Any, Dict

from jinja2 import Environment, select_autoescape

from .schema import ExperimentAnalysis

logger = logging.getLogger(__name__)

DEFAULT_ARTIFACTS_DIR = "artifacts/experiments"

EXEC_SUMMARY_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <title>Experiment {{ experiment_id }}: executive summary</title>
  <style>
    body { font-family: sans-serif; margin: 2em; color: #222; }
    table { border-collapse: collapse; margin-bottom: 1.5em; }
    th, td { border: 1px solid #ccc; padding: 4px 10px; text-align: right; }
    th:first-child, td:first-child { text-align: left; }
    .winner { color: #27ae60; font-weight: bold; }
    .warning { color: #c0392b; }
  </style>
</head>
<body>
  <h1>Experiment {{ experiment_id }}</h1>
  <p>Analysis type: {{ analysis.analysis_type }} &middot; generated {{ analysis.generated_at }}</p>
  {% if not analysis.srm_passed %}
  <p class="warning">Sample ratio mismatch detected (p={{ "%.4g"|format(analysis.srm_p_value) }}).
  Results should not be interpreted.</p>
  {% endif %}

  <h2>Variants</h2>
  <table>
    <tr><th>Variant</th><th>Participants</th><th>Conversions</th><th>Rate</th><th>Revenue / user</th></tr>
    {% for m in analysis.variant_metrics %}
    <tr>
      <td>{{ m.variant_id }}</td>
      <td>{{ m.participants }}</td>
      <td>{{ m.conversions }}</td>
      <td>{{ "%.2f%%"|format(m.conversion_rate * 100) }}</td>
      <td>{{ "%.2f"|format(m.average_revenue_per_user) }}</td>
    </tr>
    {% endfor %}
  </table>

  <h2>Treatment vs control</h2>
  <table>
    <tr><th>Variant</th><th>Lift</th><th>p-value</th><th>Adjusted p</th><th>Significant</th><th>P(beat control)</th></tr>
    {% for r in analysis.results %}
    <tr>
      <td>{{ r.variant_id }}</td>
      <td>{{ "%.2f%%"|format(r.lift) }}</td>
      <td>{{ "%.4f"|format(r.p_value) }}</td>
      <td>{{ "%.4f"|format(r.adjusted_p_value) if r.adjusted_p_value is not none else "-" }}</td>
      <td>{{ "yes" if r.is_significant else "no" }}</td>
      <td>{{ "%.3f"|format(r.probability_to_beat_control) if r.probability_to_beat_control is not none else "-" }}</td>
    </tr>
    {% endfor %}
  </table>

  {% if analysis.sample_size_analysis %}
  {% set s = analysis.sample_size_analysis %}
  <h2>Sample size</h2>
  <p>Smallest arm: {{ s.current_sample_size }} of {{ s.required_sample_size }} required per arm
  (power vs MDE {{ "%.2f"|format(s.power_achieved) }}, observed power {{ "%.2f"|format(s.observed_power) }}).</p>
  {% endif %}

  <h2>Recommendations</h2>
  <ul>
    {% for rec in analysis.recommendations %}
    <li{% if rec.type == "winner" %} class="winner"{% endif %}>
      <strong>{{ rec.type }}</strong>: {{ rec.reason }}. {{ rec.suggested_action }}
    </li>
    {% endfor %}
  </ul>
</body>
</html>
"""


def save_analysis(
    analysis: ExperimentAnalysis,
    artifacts_dir: str = DEFAULT_ARTIFACTS_DIR,
) -> Path:
    """
    Write analysis.json (and plots when matplotlib is available).

    Returns:
        Path to analysis.json
    """
    out_dir = Path(artifacts_dir) / analysis.experiment_id
    out_dir.mkdir(parents=True, exist_ok=True)

    path = out_dir / "analysis.json"
    with open(path, "w") as f:
        json.dump(analysis.to_dict(), f, indent=2)

    _save_plots(analysis, out_dir)
    logger.info(f"Analysis saved to {out_dir}")
    return path


def render_exec_summary(
    analysis_dict: Dict[str, Any],
    experiment_id: str,
    artifacts_dir: str = DEFAULT_ARTIFACTS_DIR,
) -> Path:
    """
    Render the HTML executive summary for an analysis dict.

    Args:
        analysis_dict: ExperimentAnalysis.to_dict() output
        experiment_id: Experiment identifier
        artifacts_dir: Base artifacts directory

    Returns:
        Path to exec_summary.html
    """
    env = Environment(autoescape=select_autoescape(default_for_string=True))
    html = env.from_string(EXEC_SUMMARY_TEMPLATE).render(
        experiment_id=experiment_id,
        analysis=analysis_dict,
    )

    out_dir = Path(artifacts_dir) / experiment_id
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / "exec_summary.html"
    path.write_text(html, encoding="utf-8")
    logger.info(f"Executive summary written to {path}")
    return path


def _save_plots(analysis: ExperimentAnalysis, out_dir: Path) -> None:
    """Conversion rate per variant and lift intervals."""
    try:
        import matplotlib
        matplotlib.use("Agg")
        import matplotlib.pyplot as plt
    except ImportError:
        return

    if analysis.variant_metrics:
        fig, ax = plt.subplots(figsize=(6, 4))
        names = [m.variant_id for m in analysis.variant_metrics]
        rates = [m.conversion_rate for m in analysis.variant_metrics]
        ax.bar(names, rates, color="#3498db")
        ax.set_ylabel("conversion_rate")
        ax.set_title(f"Experiment {analysis.experiment_id}: conversion by variant")
        plt.tight_layout()
        plt.savefig(out_dir / "conversion_chart.png", dpi=100)
        plt.close(fig)

    if analysis.results:
        fig, ax = plt.subplots(figsize=(6, 1 + len(analysis.results)))
        ax.axvline(0, color="gray", linestyle="--")
        for i, r in enumerate(analysis.results):
            diff = r.treatment_rate - r.control_rate
            ax.errorbar(
                diff, i,
                xerr=[[diff - r.difference_interval.lower], [r.difference_interval.upper - diff]],
                fmt="o", color="#9b59b6", capsize=5,
            )
        ax.set_yticks(range(len(analysis.results)))
        ax.set_yticklabels([r.variant_id for r in analysis.results])
        ax.set_xlabel("Rate difference vs control")
        plt.tight_layout()
        plt.savefig(out_dir / "lift_ci.png", dpi=100)
        plt.close(fig)
