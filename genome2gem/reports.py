"""
Run Summary Reports

Writes the task ledger of a finished run as a TSV table and a compact HTML
overview: per-stage task counts, failed tasks and the artifacts published
for every sample.

Output Files (in the data directory):
    genome2gem_run_summary.tsv   one row per task instance
    genome2gem_run_summary.html  overview for browsing
"""

from dataclasses import asdict
from datetime import datetime
from pathlib import Path
from typing import Dict, Union
import logging

import pandas as pd
from jinja2 import Template

from . import __version__
from .utils import format_elapsed_time

logger = logging.getLogger(__name__)

SUMMARY_PREFIX = "genome2gem_run_summary"

LEDGER_COLUMNS = ['stage', 'sample_id', 'cpus', 'status', 'elapsed', 'error']
STATUS_ORDER = ['succeeded', 'failed', 'skipped', 'cancelled', 'running', 'pending']


RUN_SUMMARY_TEMPLATE = """
<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="generator" content="genome2gem">
    <title>genome2gem run summary - {{ method }}</title>
    <style>
        body { font-family: -apple-system, "Segoe UI", Helvetica, Arial, sans-serif; margin: 2em; color: #222; }
        h1 { margin-bottom: 0.2em; }
        .subtitle { color: #666; margin-bottom: 1.5em; }
        .quick-stats { display: flex; gap: 1em; margin-bottom: 2em; }
        .quick-stat { background: #f4f6f8; border-radius: 6px; padding: 0.8em 1.2em; }
        .quick-stat .number { font-size: 1.6em; font-weight: 600; }
        .quick-stat .label { color: #666; font-size: 0.9em; }
        .state-done { color: #2e7d32; }
        .state-failed { color: #c62828; }
        table { border-collapse: collapse; margin-bottom: 2em; }
        th, td { border-bottom: 1px solid #ddd; padding: 0.4em 0.8em; text-align: left; }
        th { background: #f4f6f8; }
        .alert { color: #555; font-style: italic; }
    </style>
</head>
<body>
    <h1>genome2gem run summary</h1>
    <div class="subtitle">
        Strategy <strong>{{ method }}</strong> |
        state <strong class="state-{{ state | lower }}">{{ state }}</strong> |
        elapsed {{ elapsed }} | generated {{ timestamp }} | v{{ version }}
    </div>

    <div class="quick-stats">
        {% for stat in quick_stats %}
        <div class="quick-stat">
            <div class="number">{{ stat.value }}</div>
            <div class="label">{{ stat.label }}</div>
        </div>
        {% endfor %}
    </div>

    <h2>Stages</h2>
    {{ stage_table | safe }}

    <h2>Samples</h2>
    {{ sample_table | safe }}

    <h2>Failed tasks</h2>
    {% if failures %}
    <table>
        <tr><th>Stage</th><th>Sample</th><th>Error</th></tr>
        {% for failure in failures %}
        <tr><td>{{ failure.stage }}</td><td>{{ failure.sample_id or "(run)" }}</td><td>{{ failure.cause }}</td></tr>
        {% endfor %}
    </table>
    {% else %}
    <p class="alert">No task failed.</p>
    {% endif %}
</body>
</html>
"""


def ledger_to_dataframe(records) -> pd.DataFrame:
    """Task ledger as a DataFrame with one row per task instance."""
    rows = [asdict(record) for record in records]
    df = pd.DataFrame(rows, columns=LEDGER_COLUMNS)
    df['elapsed'] = df['elapsed'].astype(float).round(2)
    return df


def stage_counts(ledger: pd.DataFrame) -> pd.DataFrame:
    """Number of tasks per stage and status, stages in ledger order."""
    if ledger.empty:
        return pd.DataFrame(columns=['stage'])

    counts = pd.crosstab(ledger['stage'], ledger['status'])
    statuses = [s for s in STATUS_ORDER if s in counts.columns]
    counts = counts[statuses]
    counts = counts.reindex(ledger['stage'].drop_duplicates().tolist())
    return counts.reset_index()


def sample_table(result) -> pd.DataFrame:
    """Published model and quality report per sample."""
    failed = {f.sample_id: f.stage for f in result.failures if f.sample_id}
    rows = []
    for sample in result.samples:
        model = result.models.get(sample.id)
        report = result.reports.get(sample.id)
        rows.append({
            'sample_id': sample.id,
            'assembly': sample.assembly.name,
            'model': model.path.name if model else '',
            'quality_report': report.path.name if report else '',
            'failed_stage': failed.get(sample.id, ''),
        })
    return pd.DataFrame(rows, columns=['sample_id', 'assembly', 'model', 'quality_report', 'failed_stage'])


def _dataframe_to_html(df: pd.DataFrame) -> str:
    if df.empty:
        return '<p class="alert">No data available</p>'
    return df.to_html(index=False, border=0, escape=True)


def render_run_summary(result) -> str:
    """Render the HTML overview of a finished run."""
    ledger = ledger_to_dataframe(result.records)
    n_failed_samples = len({f.sample_id for f in result.failures if f.sample_id})

    quick_stats = [
        {'value': len(result.samples), 'label': 'Samples'},
        {'value': len(result.models), 'label': 'Models'},
        {'value': len(result.reports), 'label': 'Quality reports'},
        {'value': n_failed_samples, 'label': 'Failed samples'},
    ]

    return Template(RUN_SUMMARY_TEMPLATE).render(
        method=result.topology.method,
        state=result.state.name,
        elapsed=format_elapsed_time(result.elapsed),
        timestamp=datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        version=__version__,
        quick_stats=quick_stats,
        stage_table=_dataframe_to_html(stage_counts(ledger)),
        sample_table=_dataframe_to_html(sample_table(result)),
        failures=result.failures,
    )


def write_run_summary(result, output_dir: Union[str, Path]) -> Dict[str, Path]:
    """
    Write the TSV ledger and the HTML overview of ``result``.

    Parameters
    ----------
    result : PipelineResult
        Finished run
    output_dir : Union[str, Path]
        Directory to write into (normally the data directory)

    Returns
    -------
    Dict[str, Path]
        Paths keyed by 'tsv' and 'html'
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    tsv_path = output_dir / f"{SUMMARY_PREFIX}.tsv"
    ledger_to_dataframe(result.records).to_csv(tsv_path, sep='\t', index=False)

    html_path = output_dir / f"{SUMMARY_PREFIX}.html"
    with open(html_path, 'w', encoding='utf-8') as f:
        f.write(render_run_summary(result))

    logger.info(f"Run summary written to {tsv_path} and {html_path.name}")
    return {'tsv': tsv_path, 'html': html_path}
