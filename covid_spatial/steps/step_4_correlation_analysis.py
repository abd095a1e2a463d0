#!/usr/bin/env python3
"""
COVID Spatial Correlation - STEP 4: Per-Week Correlation Analysis
=================================================================

Computes the spatial correlation function C(r, T) for one week T.

Algorithm Overview:
For every distance bin r_i, take all corpus pairs (i, j) in the bin whose two
endpoints both have a defined X_T, and compute
  m1, m2      = means of X_T(i) and X_T(j)
  s1^2, s2^2  = population variances (divided by n, not n - 1)
  cross       = mean(X1 * X2) - m1 * m2
  C(r_i, T)   = cross / sqrt(s1^2 * s2^2)
Significance comes from a two-sided Spearman rank test; a bin is significant
iff its p-value is below alpha.

A bin with fewer than two usable pairs, or a constant sequence on either side,
has an undefined value and undefined significance. Undefined values are NaN in
the curve and never enter downstream computations as zero.

Outputs (single-week run):
  - results/outputs/step_4_correlation_week_<T>.csv
  - results/outputs/step_4_correlation_week_<T>.json

Environment Variables:
  - CS_SINGLE_WEEK: Week index of the illustrative run (default: 40)
  - CS_SINGLE_WEEK_ALPHA: Significance threshold of the illustrative run (default: 1e-6)
"""

import sys
import time
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats

# Anchor to package root
ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from covid_spatial.utils.config import AnalysisConfig
from covid_spatial.utils.exceptions import (
    ConfigurationError, CSDataError, CSFileError, DegenerateBinError, safe_json_write
)
from covid_spatial.utils.logger import CSLogger
from covid_spatial.steps.step_2_pairwise_corpus import DistanceBinner, PairwiseCorpus
from covid_spatial.steps.step_3_weekly_signals import AlignedSignals

logger = CSLogger()


@dataclass(frozen=True)
class CorrelationCurve:
    """C(r, T) for one week, one entry per distance bin."""
    week: int
    midpoints_km: Tuple[float, ...]
    values: Tuple[float, ...]
    significant: Tuple[Optional[bool], ...]
    p_values: Tuple[float, ...]
    n_pairs: Tuple[int, ...]

    def __post_init__(self):
        lengths = {len(self.midpoints_km), len(self.values), len(self.significant),
                   len(self.p_values), len(self.n_pairs)}
        if len(lengths) != 1:
            raise ValueError(f"Correlation curve fields differ in length: {sorted(lengths)}")

    @property
    def num_bins(self) -> int:
        return len(self.values)

    def defined_mask(self) -> np.ndarray:
        return np.isfinite(np.asarray(self.values, dtype=float))

    @property
    def is_empty(self) -> bool:
        return not self.defined_mask().any()

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({
            'bin_index': np.arange(1, self.num_bins + 1),
            'midpoint_km': self.midpoints_km,
            'correlation': self.values,
            'significant': pd.array(self.significant, dtype='boolean'),
            'p_value': self.p_values,
            'n_pairs': self.n_pairs,
        })

    @classmethod
    def undefined(cls, week: int, midpoints_km: Sequence[float]) -> "CorrelationCurve":
        n = len(midpoints_km)
        return cls(week, tuple(float(m) for m in midpoints_km), (float('nan'),) * n,
                   (None,) * n, (float('nan'),) * n, (0,) * n)


def bin_correlation(x1: np.ndarray, x2: np.ndarray, bin_index: int = 0) -> float:
    """
    Population-normalized correlation of two paired sequences.

    Raises:
        DegenerateBinError: fewer than two pairs or a constant sequence
    """
    n = x1.size
    if n < 2:
        raise DegenerateBinError(bin_index, f"{n} usable pair(s)")
    if np.ptp(x1) == 0 or np.ptp(x2) == 0:
        raise DegenerateBinError(bin_index, "zero variance")

    m1 = x1.mean()
    m2 = x2.mean()
    d1 = x1 - m1
    d2 = x2 - m2
    s1_sq = np.mean(d1 * d1)
    s2_sq = np.mean(d2 * d2)
    if not (s1_sq > 0 and s2_sq > 0):
        raise DegenerateBinError(bin_index, "zero variance")

    # mean(X1*X2) - m1*m2, evaluated on centered values
    cross = np.mean(d1 * d2)
    return float(np.clip(cross / np.sqrt(s1_sq * s2_sq), -1.0, 1.0))


def rank_significance(x1: np.ndarray, x2: np.ndarray, alpha: float) -> Tuple[float, Optional[bool]]:
    """Two-sided Spearman p-value and whether it falls below alpha (None if undefined)."""
    with warnings.catch_warnings():
        warnings.simplefilter('ignore')
        p_value = float(stats.spearmanr(x1, x2).pvalue)
    if not np.isfinite(p_value):
        return float('nan'), None
    return p_value, bool(p_value < alpha)


def curve_from_slices(slices: Iterable[Tuple[np.ndarray, np.ndarray]], x: np.ndarray, week: int,
                      midpoints_km: Sequence[float], alpha: float) -> CorrelationCurve:
    """
    C(r, T) from per-bin (origin, destination) county positions and one
    week's signal vector.

    x is indexed by county position with NaN for undefined signals; pairs
    with an undefined endpoint are left out of their bin.
    """
    num_bins = len(midpoints_km)
    values = [float('nan')] * num_bins
    significant: list = [None] * num_bins
    p_values = [float('nan')] * num_bins
    n_pairs = [0] * num_bins

    for k, (bin_origin, bin_destination) in enumerate(slices):
        x1 = x[bin_origin]
        x2 = x[bin_destination]
        usable = np.isfinite(x1) & np.isfinite(x2)
        x1, x2 = x1[usable], x2[usable]
        n_pairs[k] = int(x1.size)

        try:
            values[k] = bin_correlation(x1, x2, k + 1)
        except DegenerateBinError as e:
            logger.debug(f"Week {week}: {e}")
            continue
        p_values[k], significant[k] = rank_significance(x1, x2, alpha)

    return CorrelationCurve(week, tuple(float(m) for m in midpoints_km), tuple(values),
                            tuple(significant), tuple(p_values), tuple(n_pairs))


def estimate_curve(origin: np.ndarray, destination: np.ndarray, offsets: np.ndarray,
                   x: np.ndarray, week: int, midpoints_km: Sequence[float],
                   alpha: float) -> CorrelationCurve:
    """
    Worker-side entry: offsets[k]:offsets[k+1] delimits the pairs of bin k+1
    in the bin-sorted origin and destination arrays.
    """
    slices = ((origin[offsets[k]:offsets[k + 1]], destination[offsets[k]:offsets[k + 1]])
              for k in range(len(midpoints_km)))
    return curve_from_slices(slices, x, week, midpoints_km, alpha)



class CorrelationEstimator:
    """Joins the pairwise corpus with one week of signals, bin by bin."""

    def __init__(self, corpus: PairwiseCorpus, signals: AlignedSignals,
                 binner: DistanceBinner, alpha: float):
        if corpus.county_ids != signals.county_ids:
            raise CSDataError("Signal matrix is not aligned with the corpus county order")
        if corpus.num_bins != binner.num_bins:
            raise CSDataError("Corpus and binner disagree on the number of bins")
        if not 0.0 < alpha < 1.0:
            raise ConfigurationError(f"Significance alpha must lie in (0, 1), got {alpha}")
        self.corpus = corpus
        self.signals = signals
        self.midpoints_km = tuple(float(m) for m in binner.midpoints())
        self.alpha = alpha

    def compute(self, week: int) -> CorrelationCurve:
        slices = (self.corpus.bin_slice(k) for k in range(1, self.corpus.num_bins + 1))
        return curve_from_slices(slices, self.signals.column(week), week, self.midpoints_km, self.alpha)


def main():
    """Illustrative single-week run with the single-week significance threshold."""
    from covid_spatial.steps.step_1_county_geo_index import build_geo_index
    from covid_spatial.steps.step_3_weekly_signals import build_signal_table
    from covid_spatial.steps.step_5_correlation_length import CorrelationLengthSolver

    logger.info("=" * 70)
    logger.info("STEP 4: Per-Week Correlation Analysis")
    logger.info("=" * 70)
    start_time = time.time()

    try:
        cfg = AnalysisConfig.from_env().validate()
        binner = DistanceBinner.from_config(cfg)
        geo = build_geo_index(cfg)
        table = build_signal_table(cfg)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return False
    except (CSFileError, CSDataError) as e:
        logger.error(f"Failed to load inputs: {e}")
        return False

    corpus = PairwiseCorpus.build(geo, binner)
    estimator = CorrelationEstimator(corpus, table.align(geo.ids), binner, cfg.single_week_alpha)
    week = cfg.single_week

    logger.process(f"Computing C(r) for week {week} (alpha = {cfg.single_week_alpha:g})")
    curve = estimator.compute(week)
    tested = [s for s in curve.significant if s is not None]
    logger.test(f"Spearman: {sum(tested)} of {len(tested)} tested bins significant at alpha = {cfg.single_week_alpha:g}")
    length = CorrelationLengthSolver(cfg.root_tolerance).solve(curve)

    cfg.output_dir.mkdir(parents=True, exist_ok=True)
    curve.to_frame().to_csv(cfg.output_dir / f'step_4_correlation_week_{week}.csv', index=False)
    safe_json_write({
        'week': week,
        'week_start': table.week_start(week).isoformat(),
        'alpha': cfg.single_week_alpha,
        'defined_bins': int(curve.defined_mask().sum()),
        'xi_interp_km': length.interpolated_km,
        'xi_significance_km': length.significance_km,
        'interp_failure': length.interpolation_error,
        'significance_failure': length.significance_error,
    }, cfg.output_dir / f'step_4_correlation_week_{week}.json')

    logger.success(f"Week {week}: xi_interp = {length.interpolated_km}, "
                   f"xi_significance = {length.significance_km}")
    logger.info(f"Execution time: {time.time() - start_time:.1f} seconds")
    return True


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
