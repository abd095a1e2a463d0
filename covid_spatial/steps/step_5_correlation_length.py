#!/usr/bin/env python3
"""
COVID Spatial Correlation - STEP 5: Correlation Length
======================================================

Extracts the correlation length xi(T) from a correlation curve C(r, T) with
two independent methods:

1. Interpolation: piecewise-linear interpolant through the defined
   (bin midpoint, C) points; the first sign change is bracketed and solved
   with Brent's method. The root is accepted only if |C(root)| is within the
   root tolerance. No extrapolation outside [min(r), max(r)].
2. Significance threshold: midpoint of the first bin (in increasing distance)
   whose Spearman test is no longer significant.

Both values are kept per week even when they disagree. A method that cannot
produce a value yields None together with the reason.

Inputs (standalone run):
  - results/outputs/step_4_correlation_week_<T>.csv

Outputs (standalone run):
  - results/outputs/step_5_correlation_length_week_<T>.json

Environment Variables:
  - CS_ROOT_TOLERANCE: Maximum |C(root)| accepted (default: 1e-8)
"""

import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

import numpy as np
import pandas as pd
from scipy.interpolate import interp1d
from scipy.optimize import brentq

# Anchor to package root
ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from covid_spatial.utils.config import AnalysisConfig
from covid_spatial.utils.exceptions import (
    ConfigurationError, CSDataError, CSFileError, RootNotFoundError, safe_csv_read, safe_json_write
)
from covid_spatial.utils.logger import CSLogger
from covid_spatial.steps.step_4_correlation_analysis import CorrelationCurve

logger = CSLogger()


@dataclass(frozen=True)
class CorrelationLength:
    """Both correlation-length estimates of one week (None = undefined)."""
    week: int
    interpolated_km: Optional[float]
    significance_km: Optional[float]
    interpolation_error: Optional[str] = None
    significance_error: Optional[str] = None


def interpolated_root(x: np.ndarray, y: np.ndarray, tolerance: float = 1e-8) -> float:
    """
    First zero crossing of the linear interpolant through (x, y).

    Raises:
        RootNotFoundError: fewer than two points, no sign change in range, or
            residual above tolerance
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    if x.size < 2:
        raise RootNotFoundError(f"{x.size} defined bin(s), need at least 2")
    order = np.argsort(x)
    x, y = x[order], y[order]

    f = interp1d(x, y, kind='linear', bounds_error=True, assume_sorted=True)

    signs = np.sign(y)
    zeros = np.flatnonzero(signs == 0)
    crossings = np.flatnonzero(signs[:-1] * signs[1:] < 0)
    first_zero = zeros[0] if zeros.size else None
    first_crossing = crossings[0] if crossings.size else None

    if first_zero is None and first_crossing is None:
        raise RootNotFoundError(f"No sign change in [{x[0]:g}, {x[-1]:g}] km")

    if first_zero is not None and (first_crossing is None or first_zero <= first_crossing):
        root = float(x[first_zero])
    else:
        lo, hi = x[first_crossing], x[first_crossing + 1]
        try:
            root = float(brentq(lambda r: float(f(r)), lo, hi, xtol=1e-12, maxiter=200))
        except (ValueError, RuntimeError) as e:
            raise RootNotFoundError(f"Root finding failed in [{lo:g}, {hi:g}] km: {e}") from e

    if not x[0] <= root <= x[-1]:
        raise RootNotFoundError(f"Root {root:g} km outside [{x[0]:g}, {x[-1]:g}] km")
    residual = abs(float(f(root)))
    if residual > tolerance:
        raise RootNotFoundError(f"Residual {residual:.3g} at {root:g} km exceeds tolerance {tolerance:g}")
    return root


def significance_threshold(midpoints_km: Sequence[float], significant: Sequence[Optional[bool]]) -> float:
    """
    Midpoint of the first bin whose correlation is no longer significant.

    Raises:
        RootNotFoundError: fewer than two bins with a defined test, or every
            defined bin significant
    """
    tested = [(m, s) for m, s in zip(midpoints_km, significant) if s is not None]
    if len(tested) < 2:
        raise RootNotFoundError(f"{len(tested)} bin(s) with a significance test, need at least 2")
    for midpoint, is_significant in sorted(tested, key=lambda t: t[0]):
        if not is_significant:
            return float(midpoint)
    raise RootNotFoundError("All tested bins are significant")


class CorrelationLengthSolver:
    """Runs both correlation-length methods on a curve; never raises on failure."""

    def __init__(self, tolerance: float = 1e-8):
        self.tolerance = tolerance

    def solve(self, curve: CorrelationCurve) -> CorrelationLength:
        mask = curve.defined_mask()
        x = np.asarray(curve.midpoints_km, dtype=float)[mask]
        y = np.asarray(curve.values, dtype=float)[mask]

        interpolated, interp_error = None, None
        try:
            interpolated = interpolated_root(x, y, self.tolerance)
        except RootNotFoundError as e:
            interp_error = str(e)
            logger.debug(f"Week {curve.week}: interpolated xi undefined ({e})")

        by_significance, sig_error = None, None
        try:
            by_significance = significance_threshold(curve.midpoints_km, curve.significant)
        except RootNotFoundError as e:
            sig_error = str(e)
            logger.debug(f"Week {curve.week}: significance xi undefined ({e})")

        return CorrelationLength(curve.week, interpolated, by_significance, interp_error, sig_error)


def curve_from_frame(df: pd.DataFrame, week: int) -> CorrelationCurve:
    """Rebuild a curve from the per-week CSV written by step 4."""
    required = ['midpoint_km', 'correlation', 'significant', 'p_value', 'n_pairs']
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise CSDataError(f"Correlation curve table is missing columns: {missing}")
    df = df.sort_values('midpoint_km')
    significant = tuple(None if pd.isna(s) else str(s).lower() in ('true', '1') for s in df['significant'])
    return CorrelationCurve(
        week=week,
        midpoints_km=tuple(float(v) for v in df['midpoint_km']),
        values=tuple(float(v) for v in df['correlation']),
        significant=significant,
        p_values=tuple(float(v) for v in df['p_value']),
        n_pairs=tuple(int(v) for v in df['n_pairs']),
    )


def main():
    logger.info("=" * 70)
    logger.info("STEP 5: Correlation Length")
    logger.info("=" * 70)

    try:
        cfg = AnalysisConfig.from_env().validate()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return False
    week = cfg.single_week
    curve_path = cfg.output_dir / f'step_4_correlation_week_{week}.csv'

    try:
        curve = curve_from_frame(safe_csv_read(curve_path), week)
    except (CSFileError, CSDataError) as e:
        logger.error(f"Failed to load correlation curve (run step 4 first): {e}")
        return False

    length = CorrelationLengthSolver(cfg.root_tolerance).solve(curve)
    safe_json_write({
        'week': week,
        'xi_interp_km': length.interpolated_km,
        'xi_significance_km': length.significance_km,
        'interp_failure': length.interpolation_error,
        'significance_failure': length.significance_error,
    }, cfg.output_dir / f'step_5_correlation_length_week_{week}.json')

    logger.success(f"Week {week}: xi_interp = {length.interpolated_km}, "
                   f"xi_significance = {length.significance_km}")
    return True


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
