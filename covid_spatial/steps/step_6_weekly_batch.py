#!/usr/bin/env python3
"""
COVID Spatial Correlation - STEP 6: Weekly Batch Analysis
=========================================================

Runs the correlation estimator and the correlation-length solver over a
contiguous range of weeks and exports the weekly time series.

Algorithm Overview:
1. Build the county universe (step 1), the pairwise corpus (step 2) and the
   weekly signal table (step 3), once
2. Determine the week range; without an explicit start week the warm-up
   weeks (fewer than CS_MIN_COUNTIES_PER_WEEK observed counties) are skipped
3. Fan the weeks out over a process pool whose initializer installs the
   read-only context (corpus arrays, aligned signal matrix, alpha, tolerance)
4. Merge the per-week results by week index and export

Performance Features:
- Corpus arrays and the signal matrix are shipped once per worker, not per task
- Per-week failures are isolated: a failing week is logged and recorded as
  status `failed`, all other weeks proceed
- CS_WORKERS=1 runs in-process

Outputs:
  - results/outputs/step_6_weekly_time_series.csv
  - results/outputs/step_6_correlation_curves.csv
  - results/outputs/step_6_data_gaps.csv
  - results/outputs/step_6_run_summary.json

Environment Variables:
  - CS_WEEK_START, CS_WEEK_END: Week range (default: auto warm-up .. last week)
  - CS_SIGNIFICANCE_ALPHA: Spearman threshold of the batch run (default: 1e-2)
  - CS_WORKERS: Number of parallel workers (default: CPU count)
"""

import argparse
import sys
import time
from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import dataclass
from datetime import date
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

# Anchor to package root
ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from covid_spatial.utils.config import AnalysisConfig
from covid_spatial.utils.exceptions import (
    ConfigurationError, CSDataError, CSFileError, safe_json_write
)
from covid_spatial.utils.logger import CSLogger
from covid_spatial.steps.step_1_county_geo_index import build_geo_index
from covid_spatial.steps.step_2_pairwise_corpus import DistanceBinner, PairwiseCorpus
from covid_spatial.steps.step_3_weekly_signals import (
    MONTHLY_BUCKET_DAYS, AlignedSignals, WeeklySignalTable, build_signal_table
)
from covid_spatial.steps.step_4_correlation_analysis import CorrelationCurve, estimate_curve
from covid_spatial.steps.step_5_correlation_length import CorrelationLength, CorrelationLengthSolver

logger = CSLogger()

STATUS_OK = 'ok'
STATUS_EMPTY = 'empty_curve'
STATUS_INSUFFICIENT = 'insufficient_counties'
STATUS_FAILED = 'failed'


@dataclass(frozen=True)
class WeekContext:
    """Read-only inputs shared by every week of a batch."""
    origin: np.ndarray
    destination: np.ndarray
    offsets: np.ndarray
    signals: AlignedSignals
    midpoints_km: Tuple[float, ...]
    alpha: float
    root_tolerance: float


# Worker-global context to reduce pickling overhead per task
WORKER_CONTEXT: Optional[WeekContext] = None


def _init_worker_context(context: WeekContext):
    """Initializer to load heavy context once per worker process."""
    global WORKER_CONTEXT
    WORKER_CONTEXT = context


def analyze_week(context: WeekContext, week: int) -> Tuple[CorrelationCurve, CorrelationLength]:
    curve = estimate_curve(context.origin, context.destination, context.offsets,
                           context.signals.column(week), week, context.midpoints_km, context.alpha)
    length = CorrelationLengthSolver(context.root_tolerance).solve(curve)
    return curve, length


def process_week_worker(week: int):
    """
    Analyze one week inside a worker process.

    Returns (week, curve, length, error); curve and length are None when the
    week failed, error then holds the reason.
    """
    try:
        curve, length = analyze_week(WORKER_CONTEXT, week)
        return week, curve, length, None
    except Exception as e:
        return week, None, None, f"{type(e).__name__}: {e}"


@dataclass(frozen=True)
class WeeklyResult:
    """Outcome of one week; undefined values are None or NaN, never zero."""
    week: int
    week_start: date
    total_cases: float
    curve: CorrelationCurve
    length: Optional[CorrelationLength]
    status: str
    error: Optional[str] = None
    missing_ids: Tuple[str, ...] = ()

    @property
    def xi_interp_km(self) -> Optional[float]:
        return self.length.interpolated_km if self.length else None

    @property
    def xi_significance_km(self) -> Optional[float]:
        return self.length.significance_km if self.length else None


class BatchResult:
    """Per-week results of one batch, ordered by week index."""

    def __init__(self, results: Sequence[WeeklyResult], column_names: Sequence[str],
                 cfg: AnalysisConfig):
        self.results = tuple(sorted(results, key=lambda r: r.week))
        self.column_names = list(column_names)
        self.cfg = cfg

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self):
        return iter(self.results)

    @property
    def weeks(self) -> List[int]:
        return [r.week for r in self.results]

    def get(self, week: int) -> Optional[WeeklyResult]:
        return next((r for r in self.results if r.week == week), None)

    def status_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for r in self.results:
            counts[r.status] = counts.get(r.status, 0) + 1
        return counts

    def to_frame(self) -> pd.DataFrame:
        """One row per week: totals, C(r) per bin, both correlation lengths, status."""
        rows = []
        for r in self.results:
            row = {'date': r.week_start.isoformat(), 'week': r.week, 'total_cases': r.total_cases}
            row.update(zip(self.column_names, r.curve.values))
            row['xi_interp_km'] = r.xi_interp_km
            row['xi_significance_km'] = r.xi_significance_km
            row['status'] = r.status
            rows.append(row)

        columns = ['date', 'week', 'total_cases', 'delta_cases'] + self.column_names + \
                  ['xi_interp_km', 'xi_significance_km', 'status']
        df = pd.DataFrame(rows)
        if df.empty:
            return pd.DataFrame(columns=columns)
        df['delta_cases'] = df['total_cases'].diff()
        for col in ('xi_interp_km', 'xi_significance_km'):
            df[col] = pd.to_numeric(df[col], errors='coerce')
        return df[columns]

    def curves_frame(self) -> pd.DataFrame:
        """Long table of every week's curve (week, bin, midpoint, correlation, ...)."""
        frames = []
        for r in self.results:
            df = r.curve.to_frame()
            df.insert(0, 'week', r.week)
            frames.append(df)
        if not frames:
            return pd.DataFrame(columns=['week', 'bin_index', 'midpoint_km', 'correlation',
                                         'significant', 'p_value', 'n_pairs'])
        return pd.concat(frames, ignore_index=True)

    def data_gaps_frame(self) -> pd.DataFrame:
        """One row per (week, county) whose signal was undefined in an analyzed week."""
        rows = [{'week': r.week, 'fips': fips} for r in self.results for fips in r.missing_ids]
        return pd.DataFrame(rows, columns=['week', 'fips'])

    def export_time_series(self, path) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.to_frame().to_csv(path, index=False)
        return path

    def summary(self) -> dict:
        def _stats(values):
            values = np.asarray([v for v in values if v is not None], dtype=float)
            if values.size == 0:
                return {'n': 0, 'median_km': None, 'min_km': None, 'max_km': None}
            return {'n': int(values.size), 'median_km': float(np.median(values)),
                    'min_km': float(values.min()), 'max_km': float(values.max())}

        return {
            'weeks': {'first': self.weeks[0] if self.results else None,
                      'last': self.weeks[-1] if self.results else None,
                      'count': len(self.results)},
            'status_counts': self.status_counts(),
            'xi_interp': _stats(r.xi_interp_km for r in self.results),
            'xi_significance': _stats(r.xi_significance_km for r in self.results),
            'failures': {str(r.week): r.error for r in self.results if r.error},
            'missing_counties': {str(r.week): len(r.missing_ids) for r in self.results if r.missing_ids},
            'configuration': list(self.cfg.describe()),
        }


class WeeklyBatchRunner:
    """Runs the per-week analysis over a contiguous week range."""

    def __init__(self, corpus: PairwiseCorpus, table: WeeklySignalTable,
                 binner: DistanceBinner, cfg: AnalysisConfig):
        if corpus.num_bins != binner.num_bins:
            raise CSDataError("Corpus and binner disagree on the number of bins")
        self.corpus = corpus
        self.table = table
        self.binner = binner
        self.cfg = cfg
        self.midpoints_km = tuple(float(m) for m in binner.midpoints())
        self._signals = table.align(corpus.county_ids)

    def eligible_weeks(self) -> List[int]:
        """Contiguous week range of the run."""
        weeks = self.table.weeks
        if not weeks:
            return []

        start = self.cfg.week_start
        if start is None:
            start = next((w for w in weeks
                          if self.table.observed_counties(w) >= self.cfg.min_counties_per_week), None)
            if start is None:
                logger.warning(f"No week reaches {self.cfg.min_counties_per_week} observed counties")
                return []
            if start > weeks[0]:
                logger.info(f"Skipping warm-up weeks {weeks[0]}..{start - 1}")

        end = self.cfg.week_end if self.cfg.week_end is not None else max(weeks)
        return list(range(start, end + 1))

    def _context(self) -> WeekContext:
        return WeekContext(
            origin=self.corpus.origin,
            destination=self.corpus.destination,
            offsets=self.corpus.offsets,
            signals=self._signals,
            midpoints_km=self.midpoints_km,
            alpha=self.cfg.significance_alpha,
            root_tolerance=self.cfg.root_tolerance,
        )

    def missing_counties(self, week: int) -> Tuple[str, ...]:
        """Corpus counties without a defined signal in week; their pairs are left out."""
        undefined = np.isnan(self._signals.column(week))
        return tuple(fips for fips, gap in zip(self.corpus.county_ids, undefined) if gap)

    def _result(self, week: int, curve: Optional[CorrelationCurve],
                length: Optional[CorrelationLength], status: str,
                error: Optional[str] = None) -> WeeklyResult:
        if curve is None:
            curve = CorrelationCurve.undefined(week, self.midpoints_km)
        missing = ()
        if status in (STATUS_OK, STATUS_EMPTY):
            missing = self.missing_counties(week)
            if missing:
                logger.debug(f"Week {week}: {len(missing)} counties without a signal value")
        return WeeklyResult(week, self.table.week_start(week), self.table.total_cases(week),
                            curve, length, status, error, missing)


    def _completed(self, week: int, curve, length, error) -> WeeklyResult:
        if error is not None:
            logger.error(f"Week {week}: analysis failed: {error}")
            return self._result(week, None, None, STATUS_FAILED, error)
        status = STATUS_EMPTY if curve.is_empty else STATUS_OK
        return self._result(week, curve, length, status)

    def run(self) -> BatchResult:
        weeks = self.eligible_weeks()
        results: Dict[int, WeeklyResult] = {}

        runnable = []
        for week in weeks:
            observed = self.table.observed_counties(week)
            if observed < self.cfg.min_counties_per_week:
                results[week] = self._result(
                    week, None, None, STATUS_INSUFFICIENT,
                    f"{observed} observed counties, need {self.cfg.min_counties_per_week}")
            else:
                runnable.append(week)

        context = self._context()
        num_workers = min(self.cfg.workers, max(1, len(runnable)))
        logger.process(f"Analyzing {len(runnable)} weeks with {num_workers} worker(s) "
                       f"({len(weeks) - len(runnable)} below the county floor)")

        if num_workers <= 1:
            for week in runnable:
                try:
                    curve, length = analyze_week(context, week)
                    results[week] = self._completed(week, curve, length, None)
                except Exception as e:
                    results[week] = self._completed(week, None, None, f"{type(e).__name__}: {e}")
        else:
            with ProcessPoolExecutor(max_workers=num_workers,
                                     initializer=_init_worker_context,
                                     initargs=(context,)) as executor:
                future_to_week = {executor.submit(process_week_worker, w): w for w in runnable}

                for future in as_completed(future_to_week):
                    week = future_to_week[future]
                    try:
                        results[week] = self._completed(*future.result())
                    except Exception as e:
                        results[week] = self._completed(week, None, None, f"Worker failed: {e}")

        batch = BatchResult(results.values(), self.binner.column_names(), self.cfg)
        logger.success(f"Batch complete: {batch.status_counts()}")
        return batch


def run_batch(cfg: AnalysisConfig, geo=None, table: Optional[WeeklySignalTable] = None) -> BatchResult:
    """Build inputs for cfg (unless given) and run the batch."""
    cfg.validate()
    binner = DistanceBinner.from_config(cfg)
    if geo is None:
        geo = build_geo_index(cfg)
    if table is None:
        table = build_signal_table(cfg)

    corpus = PairwiseCorpus.build(geo, binner)
    return WeeklyBatchRunner(corpus, table, binner, cfg).run()


def build_arg_parser() -> argparse.ArgumentParser:
    """Build command line argument parser."""

    parser = argparse.ArgumentParser(
        description="Step 6: Weekly Spatial Correlation Batch",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    parser.add_argument("--week-start", type=int, help="First week index (default: end of warm-up)")
    parser.add_argument("--week-end", type=int, help="Last week index (default: last observed week)")
    parser.add_argument("--max-distance-km", type=float, help="Distance cutoff in km")
    parser.add_argument("--bin-bounds", type=str, help="Comma-separated bin upper bounds in km")
    parser.add_argument("--significance-alpha", type=float, help="Spearman significance threshold")
    parser.add_argument("--root-tolerance", type=float, help="Maximum |C| accepted at the interpolated root")
    parser.add_argument("--min-population", type=int, help="Population floor for included counties")
    parser.add_argument("--min-counties-per-week", type=int, help="Observed counties needed to analyze a week")
    parser.add_argument("--anchor-date", type=str, help="First day of week 1 (YYYY-MM-DD)")
    parser.add_argument("--bucket-days", type=int, help="Bucket length in days")
    parser.add_argument("--monthly", action="store_true", help=f"Use {MONTHLY_BUCKET_DAYS}-day buckets")
    parser.add_argument("--workers", type=int, help="Number of parallel workers")
    parser.add_argument("--data-dir", type=str, help="Input data directory")
    parser.add_argument("--output-dir", type=str, help="Output directory")
    parser.add_argument("--figures", action="store_true", help="Also render C(r) and xi(T) figures")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    return parser


def main(argv: Optional[Sequence[str]] = None):
    """Main entry point."""
    args = build_arg_parser().parse_args(argv)
    if args.monthly and args.bucket_days is None:
        args.bucket_days = MONTHLY_BUCKET_DAYS

    logger.info("=" * 70)
    logger.info("STEP 6: Weekly Spatial Correlation Batch")
    logger.info("=" * 70)
    start_time = time.time()

    try:
        cfg = AnalysisConfig.from_args_and_env(args).validate()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1
    logger.set_verbose(cfg.verbose)
    for line in cfg.describe():
        logger.info(f"  {line}")

    try:
        batch = run_batch(cfg)
    except (CSFileError, CSDataError) as e:
        logger.error(f"Failed to load inputs: {e}")
        return 1

    out = cfg.output_dir
    batch.export_time_series(out / 'step_6_weekly_time_series.csv')
    batch.curves_frame().to_csv(out / 'step_6_correlation_curves.csv', index=False)
    batch.data_gaps_frame().to_csv(out / 'step_6_data_gaps.csv', index=False)
    summary = batch.summary()
    summary['execution_time_s'] = round(time.time() - start_time, 2)
    safe_json_write(summary, out / 'step_6_run_summary.json')

    if args.figures:
        from covid_spatial.steps.step_7_visualization import render_batch_figures
        render_batch_figures(batch)

    logger.success(f"Time series written to {out / 'step_6_weekly_time_series.csv'}")
    logger.info(f"Execution time: {time.time() - start_time:.1f} seconds")
    return 0


if __name__ == "__main__":
    sys.exit(main())
