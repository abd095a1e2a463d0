#!/usr/bin/env python3
"""
COVID Spatial Correlation - STEP 7: Visualization
=================================================

Figures for the batch results:
  - C(r) for a single week, significant bins highlighted, with the
    interpolated and significance-threshold correlation lengths marked
  - xi(T) time series of both correlation-length estimates against weekly
    total cases

Inputs:
  - results/outputs/step_6_weekly_time_series.csv
  - results/outputs/step_6_correlation_curves.csv
  - results/outputs/step_6_run_summary.json

Outputs:
  - results/figures/correlation_curve_week_<T>.png
  - results/figures/correlation_length_series.png

Environment Variables:
  - CS_FIGURES_DIR: Figure directory (default: results/figures)
  - CS_SINGLE_WEEK: Week shown in the C(r) figure (default: 40)
"""

import sys
from pathlib import Path
from typing import Optional

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import matplotlib as mpl
import numpy as np
import pandas as pd

# Anchor to package root
ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from covid_spatial.utils.config import AnalysisConfig, CSConfig
from covid_spatial.utils.exceptions import (
    ConfigurationError, CSDataError, CSFileError, SafeErrorHandler, safe_csv_read, safe_json_read
)
from covid_spatial.utils.logger import CSLogger

logger = CSLogger()

COLOR_CURVE = '#1e4a5f'
COLOR_SIGNIFICANT = '#2D0140'
COLOR_INTERP = '#4A90C2'
COLOR_SIGNIFICANCE = '#C24A4A'


def set_publication_style():
    """Sets matplotlib rcParams for consistent, publication-quality figures."""
    mpl.rcParams.update({
        'font.family': 'serif',
        'font.size': 12,
        'axes.titlesize': 14,
        'axes.labelsize': 12,
        'xtick.labelsize': 10,
        'ytick.labelsize': 10,
        'legend.fontsize': 10,
        'figure.titlesize': 16,
        'figure.dpi': 150,
        'axes.grid': True,
        'grid.color': '#495773',
        'grid.linestyle': '--',
        'grid.linewidth': 0.5,
        'axes.edgecolor': '#1e4a5f',
        'axes.labelcolor': '#1e4a5f',
        'xtick.color': '#1e4a5f',
        'ytick.color': '#1e4a5f',
        'text.color': '#1e4a5f',
    })


def plot_correlation_curve(curve: pd.DataFrame, week: int, output_path: Path,
                           xi_interp: Optional[float] = None,
                           xi_significance: Optional[float] = None) -> Path:
    """
    Plot C(r) of one week from a curve table (midpoint_km, correlation, significant).

    Undefined bins are left out of the line, not drawn as zero.
    """
    df = curve.sort_values('midpoint_km')
    defined = df[df['correlation'].notna()]
    if defined.empty:
        raise CSDataError(f"Week {week} has no defined correlation bins")

    significant = defined['significant'].map(lambda s: str(s).lower() in ('true', '1')).astype(bool)

    fig, ax = plt.subplots(figsize=(9, 5.5))
    ax.plot(defined['midpoint_km'], defined['correlation'], '-', color=COLOR_CURVE,
            linewidth=1.5, label='C(r)')
    ax.scatter(defined.loc[significant, 'midpoint_km'], defined.loc[significant, 'correlation'],
               color=COLOR_SIGNIFICANT, s=25, zorder=3, label='significant')
    ax.scatter(defined.loc[~significant, 'midpoint_km'], defined.loc[~significant, 'correlation'],
               facecolors='none', edgecolors=COLOR_CURVE, s=25, zorder=3, label='not significant')
    ax.axhline(0.0, color='black', linewidth=0.8)

    if xi_interp is not None and np.isfinite(xi_interp):
        ax.axvline(xi_interp, color=COLOR_INTERP, linestyle='--',
                   label=f'xi interpolated = {xi_interp:.0f} km')
    if xi_significance is not None and np.isfinite(xi_significance):
        ax.axvline(xi_significance, color=COLOR_SIGNIFICANCE, linestyle=':',
                   label=f'xi significance = {xi_significance:.0f} km')

    ax.set_xlabel('Distance r (km)')
    ax.set_ylabel('C(r)')
    ax.set_title(f'Spatial correlation, week {week}')
    ax.legend(loc='upper right')
    fig.tight_layout()

    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    return output_path


def plot_correlation_length_series(series: pd.DataFrame, output_path: Path) -> Path:
    """Plot xi(T) from both methods with weekly total cases on a secondary axis."""
    required = ['date', 'xi_interp_km', 'xi_significance_km', 'total_cases']
    missing = [c for c in required if c not in series.columns]
    if missing:
        raise CSDataError(f"Time series is missing columns: {missing}")
    if series.empty:
        raise CSDataError("Time series is empty")

    dates = pd.to_datetime(series['date'])

    fig, ax = plt.subplots(figsize=(12, 5.5))
    ax.plot(dates, series['xi_interp_km'], 'o-', color=COLOR_INTERP, markersize=3,
            label='xi interpolated')
    ax.plot(dates, series['xi_significance_km'], 's-', color=COLOR_SIGNIFICANCE, markersize=3,
            label='xi significance')
    ax.set_xlabel('Week start')
    ax.set_ylabel('Correlation length (km)')

    cases_ax = ax.twinx()
    cases_ax.fill_between(dates, series['total_cases'].astype(float), color='#495773', alpha=0.15,
                          label='weekly cases')
    cases_ax.set_ylabel('Weekly cases')
    cases_ax.grid(False)

    lines, labels = ax.get_legend_handles_labels()
    more_lines, more_labels = cases_ax.get_legend_handles_labels()
    ax.legend(lines + more_lines, labels + more_labels, loc='upper left')
    ax.set_title('Correlation length over time')
    fig.autofmt_xdate()
    fig.tight_layout()

    output_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(output_path, dpi=150, bbox_inches='tight')
    plt.close(fig)
    return output_path


def render_figures(series: pd.DataFrame, curves: pd.DataFrame, week: int,
                   figures_dir: Path) -> list:
    """Render both figures; a figure that cannot be drawn is logged and skipped."""
    set_publication_style()
    written = []

    row = series[series['week'] == week]
    xi_interp = float(row['xi_interp_km'].iloc[0]) if not row.empty else None
    xi_significance = float(row['xi_significance_km'].iloc[0]) if not row.empty else None

    curve_path = SafeErrorHandler.safe_analysis_operation(
        lambda: plot_correlation_curve(curves[curves['week'] == week], week,
                                       figures_dir / f'correlation_curve_week_{week}.png',
                                       xi_interp, xi_significance),
        error_message=f"Correlation curve figure for week {week} skipped",
    )
    if curve_path is not None:
        written.append(curve_path)

    series_path = SafeErrorHandler.safe_analysis_operation(
        lambda: plot_correlation_length_series(series, figures_dir / 'correlation_length_series.png'),
        error_message="Correlation length figure skipped",
    )
    if series_path is not None:
        written.append(series_path)

    for path in written:
        logger.success(f"Figure saved: {path}")
    return written


def render_batch_figures(batch, week: Optional[int] = None,
                         figures_dir: Optional[Path] = None) -> list:
    """Figures straight from an in-memory BatchResult."""
    if figures_dir is None:
        figures_dir = CSConfig.get_path('CS_FIGURES_DIR')
    if week is None:
        week = batch.cfg.single_week
    return render_figures(batch.to_frame(), batch.curves_frame(), week, figures_dir)


def main():
    logger.info("=" * 70)
    logger.info("STEP 7: Visualization")
    logger.info("=" * 70)

    try:
        cfg = AnalysisConfig.from_env().validate()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return False
    figures_dir = CSConfig.get_path('CS_FIGURES_DIR')

    try:
        series = safe_csv_read(cfg.output_dir / 'step_6_weekly_time_series.csv')
        curves = safe_csv_read(cfg.output_dir / 'step_6_correlation_curves.csv')
        summary = safe_json_read(cfg.output_dir / 'step_6_run_summary.json')
    except (CSFileError, CSDataError) as e:
        logger.error(f"Failed to load batch outputs (run step 6 first): {e}")
        return False

    logger.info(f"Batch covered weeks {summary['weeks']['first']}..{summary['weeks']['last']}: "
                f"{summary['status_counts']}")
    written = render_figures(series, curves, cfg.single_week, figures_dir)
    return bool(written)


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
