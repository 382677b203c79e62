"""
Report module: writes matrices, RSD tables, box plots and the HTML summary.
"""

from __future__ import annotations

import html
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Sequence

import numpy as np
import pandas as pd
import seaborn as sns
from matplotlib.figure import Figure

from .data_io import SampleMetadata, write_matrix, write_table
from .pipeline import PipelineResult

logger = logging.getLogger(__name__)

DEFAULT_PLOT_WINDOW = (-500.0, 500.0)


@dataclass
class ReportArtifacts:
    """Paths written by write_report."""
    matrices: dict[str, Path] = field(default_factory=dict)
    rsd_table: Path | None = None
    summary: Path | None = None
    pqn_factors: Path | None = None
    plots: list[Path] = field(default_factory=list)
    metadata: Path | None = None
    html_report: Path | None = None


def plot_rsd_boxplot(
    rsd_table: pd.DataFrame,
    output_path: Path,
    ylim: Sequence[float] | None = None,
    title: str = 'Robust RSD by normalization method',
) -> Path:
    """Grouped box plot of RSD per method, optionally clipped to ``ylim``."""
    data = rsd_table.dropna(subset=['RSD'])
    order = [str(m) for m in pd.unique(rsd_table['Method'].astype(str))]

    fig = Figure(figsize=(max(6.0, 1.1 * len(order)), 5.0))
    ax = fig.add_subplot(111)

    if data.empty:
        ax.text(0.5, 0.5, 'No defined RSD values', ha='center', va='center')
    else:
        plot_data = data.assign(Method=data['Method'].astype(str))
        sns.boxplot(data=plot_data, x='Method', y='RSD', order=order, ax=ax, color='#1f77b4')

    if ylim is not None:
        ax.set_ylim(float(ylim[0]), float(ylim[1]))
        title = f"{title} (clipped to {ylim[0]:g}% .. {ylim[1]:g}%)"

    ax.set_title(title, fontsize=12)
    ax.set_xlabel('Method', fontsize=11)
    ax.set_ylabel('RSD (%)', fontsize=11)
    ax.tick_params(axis='x', labelrotation=45)
    fig.tight_layout()
    fig.savefig(output_path, dpi=150)

    logger.info(f"Saved plot to {output_path}")
    return Path(output_path)


def pqn_factor_table(result: PipelineResult, metadata: SampleMetadata) -> pd.DataFrame | None:
    if result.pqn is None:
        return None
    pqn = result.pqn
    samples = list(pqn.factors.index)
    return pd.DataFrame({
        'Sample': samples,
        'Group': [metadata.groups.get(s, '') for s in samples],
        'IsQC': [metadata.is_qc(s) if s in metadata.groups else False for s in samples],
        'ScalingFactor': pqn.factors.to_numpy(),
        'RatiosUsed': pqn.n_ratios.reindex(samples).to_numpy(),
    })


def generate_run_metadata(
    result: PipelineResult,
    metadata: SampleMetadata,
    parameters: dict,
    input_files: list[str],
) -> dict:
    """Provenance for a run: version, inputs, sample groups, parameters and outcomes."""
    try:
        from importlib.metadata import version
        pipeline_version = version('metanorm')
    except Exception:
        pipeline_version = 'development'

    raw = result.matrices.get('Raw')
    return {
        'pipeline_version': pipeline_version,
        'processing_date': datetime.now(timezone.utc).isoformat(),
        'source_files': input_files,
        'matrix': {
            'n_metabolites': raw.n_metabolites if raw is not None else 0,
            'n_samples': raw.n_samples if raw is not None else 0,
            'n_missing': int(np.isnan(raw.values).sum()) if raw is not None else 0,
        },
        'sample_metadata': {
            'qc_group_label': metadata.qc_label,
            'n_qc': len(metadata.qc_samples),
            'group_counts': metadata.group_counts(),
        },
        'processing_parameters': parameters,
        'methods': result.methods,
        'failures': result.failures,
        'best_scaling_method': result.best_scaling_method,
        'best_glog_method': result.best_glog_method,
        'method_log': result.method_log,
    }


def generate_html_report(result: PipelineResult, output_path: Path, plots: Sequence[Path] = ()) -> None:
    """Write a self-contained HTML summary of the RSD comparison."""
    summary = result.summary
    header_cells = ''.join(f'<th>{html.escape(str(c))}</th>' for c in summary.columns)
    body_rows = []
    for _, row in summary.iterrows():
        cells = []
        for col in summary.columns:
            value = row[col]
            if isinstance(value, float):
                cells.append(f'<td>{value:.3f}</td>' if np.isfinite(value) else '<td>-</td>')
            else:
                cells.append(f'<td>{html.escape(str(value))}</td>')
        body_rows.append(f"<tr>{''.join(cells)}</tr>")

    failures = ''.join(
        f'<div class="warning">{html.escape(m)}: {html.escape(msg)}</div>'
        for m, msg in result.failures.items()
    ) or '<p>No failed methods</p>'

    best = result.best_scaling_method
    images = ''.join(
        f'<img src="{html.escape(Path(p).name)}" alt="{html.escape(Path(p).stem)}">' for p in plots
    )

    page = f"""
    <!DOCTYPE html>
    <html>
    <head>
        <title>Normalization RSD Report</title>
        <style>
            body {{ font-family: Arial, sans-serif; margin: 40px; }}
            h1 {{ color: #333; }}
            h2 {{ color: #666; border-bottom: 1px solid #ccc; }}
            .best {{ color: #006600; background: #e0ffe0; padding: 10px; }}
            .warning {{ color: #cc6600; background: #fff3e0; padding: 10px; margin: 5px 0; }}
            table {{ border-collapse: collapse; margin: 20px 0; }}
            th, td {{ border: 1px solid #ccc; padding: 8px; text-align: left; }}
            th {{ background: #f0f0f0; }}
            img {{ max-width: 100%; margin: 10px 0; }}
        </style>
    </head>
    <body>
        <h1>Normalization RSD Report</h1>

        <h2>Lowest Median |RSD|</h2>
        <div class="best">{html.escape(best) if best else 'No method with a defined RSD'}</div>

        <h2>RSD Summary</h2>
        <table>
            <tr>{header_cells}</tr>
            {''.join(body_rows)}
        </table>

        <h2>Failed Methods</h2>
        {failures}

        <h2>Plots</h2>
        {images or '<p>No plots</p>'}

        <h2>Processing Steps</h2>
        <ol>
            {''.join(f'<li>{html.escape(step)}</li>' for step in result.method_log)}
        </ol>
    </body>
    </html>
    """

    with open(output_path, 'w') as f:
        f.write(page)

    logger.info(f"HTML report saved to {output_path}")


def write_report(
    result: PipelineResult,
    metadata: SampleMetadata,
    output_dir: Path,
    output_format: str = 'csv',
    write_matrices: bool = True,
    plots: bool = True,
    plot_window: Sequence[float] = DEFAULT_PLOT_WINDOW,
    html_report: bool = True,
    parameters: dict | None = None,
    input_files: list[str] | None = None,
) -> ReportArtifacts:
    """Write every artifact of a pipeline run into ``output_dir``."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    artifacts = ReportArtifacts()

    if write_matrices:
        for method, matrix in result.matrices.items():
            path = output_dir / f"normalised_{method}.{output_format}"
            artifacts.matrices[method] = write_matrix(matrix, path, metadata, output_format)
        logger.info(f"Saved {len(artifacts.matrices)} matrices to {output_dir}")

    artifacts.rsd_table = write_table(result.rsd_table, output_dir / f"all_rsd.{output_format}", output_format)
    logger.info(f"Saved RSD table to {artifacts.rsd_table}")
    artifacts.summary = write_table(result.summary, output_dir / f"rsd_summary.{output_format}", output_format)

    factors = pqn_factor_table(result, metadata)
    if factors is not None:
        artifacts.pqn_factors = write_table(factors, output_dir / f"pqn_factors.{output_format}", output_format)

    if plots:
        artifacts.plots.append(plot_rsd_boxplot(result.rsd_table, output_dir / 'rsd_boxplot.png'))
        artifacts.plots.append(
            plot_rsd_boxplot(result.rsd_table, output_dir / 'rsd_boxplot_clipped.png', ylim=plot_window)
        )

    run_metadata = generate_run_metadata(result, metadata, parameters or {}, input_files or [])
    artifacts.metadata = output_dir / 'metadata.json'
    with open(artifacts.metadata, 'w') as f:
        json.dump(run_metadata, f, indent=2, default=str)
    logger.info(f"Saved run metadata to {artifacts.metadata}")

    if html_report:
        artifacts.html_report = output_dir / 'report.html'
        generate_html_report(result, artifacts.html_report, artifacts.plots)

    return artifacts
