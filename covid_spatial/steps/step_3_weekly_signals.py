#!/usr/bin/env python3
"""
COVID Spatial Correlation - STEP 3: Weekly Signal Table
=======================================================

Turns raw daily county case/death records into the per-county, per-week
signal X_T: the week-over-week change of the population-normalized daily case
fraction.

Pipeline (each stage is a pure function of its input frame):
1. normalize_records      - 5-character FIPS, unresolvable codes dropped
2. filter_from_anchor     - records dated before the anchor removed
3. assign_buckets         - bucket = ceil((date - anchor + 1) / L)
4. aggregate_buckets      - cases/deaths summed per (fips, bucket), per-day averages
5. join_population        - counties without population or below the floor
                            dropped and recorded as DataGapError
6. normalize_by_population - fraction = cases_per_day / population
7. first_difference       - X_T = fraction_T - fraction_{previous bucket};
                            the earliest bucket of a county uses 0 as predecessor

The same pipeline builds monthly tables with L = MONTHLY_BUCKET_DAYS.

Inputs:
  - data/us-counties-<year>.csv (date, county, state, fips, cases, deaths)
  - data/PopulationEstimates.xlsx (or .csv)

Outputs:
  - results/outputs/step_3_weekly_signals.csv
  - results/outputs/step_3_excluded_counties.csv

Environment Variables:
  - CS_ANCHOR_DATE: First day of bucket 1 (default: 2020-01-21)
  - CS_BUCKET_DAYS: Bucket length in days (default: 7)
  - CS_MIN_POPULATION: Population floor (default: 10000)
"""

import sys
import time
from dataclasses import dataclass
from datetime import date, timedelta
from pathlib import Path
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

# Anchor to package root
ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from covid_spatial.utils.config import AnalysisConfig
from covid_spatial.utils.exceptions import (
    ConfigurationError, CSDataError, CSFileError, DataGapError, safe_csv_read
)
from covid_spatial.utils.logger import CSLogger
from covid_spatial.steps.step_1_county_geo_index import load_population_estimates, normalize_fips

logger = CSLogger()

WEEKLY_BUCKET_DAYS = 7
MONTHLY_BUCKET_DAYS = 30

RECORD_COLUMNS = ['date', 'fips', 'cases', 'deaths']


def load_daily_records(paths: Iterable[Union[str, Path]]) -> pd.DataFrame:
    """Read and concatenate yearly daily-record files into one stream."""
    frames = []
    for path in sorted(Path(p) for p in paths):
        df = safe_csv_read(path, dtype={'fips': str})
        missing = [c for c in RECORD_COLUMNS if c not in df.columns]
        if missing:
            raise CSDataError(f"Daily records file {path} is missing columns: {missing}")
        logger.info(f"Loaded {len(df)} daily records from {path.name}")
        frames.append(df)

    if not frames:
        raise CSFileError("No daily record files found")

    records = pd.concat(frames, ignore_index=True)
    records['date'] = pd.to_datetime(records['date'])
    return records


# ---------------------------------------------------------------------------
# Pipeline stages
# ---------------------------------------------------------------------------

def normalize_records(records: pd.DataFrame) -> pd.DataFrame:
    """
    Pre: columns date, fips, cases, deaths.
    Post: fips is a 5-character string on every row; rows whose code could
    not be resolved are gone.
    """
    out = records.loc[:, RECORD_COLUMNS].copy()
    out['fips'] = normalize_fips(out['fips'])
    dropped = int(out['fips'].isna().sum())
    if dropped:
        logger.debug(f"Dropped {dropped} records with unresolvable county codes")
    out = out[out['fips'].notna()]
    out['date'] = pd.to_datetime(out['date'])
    out['cases'] = pd.to_numeric(out['cases'], errors='coerce')
    out['deaths'] = pd.to_numeric(out['deaths'], errors='coerce')
    return out.reset_index(drop=True)


def filter_from_anchor(records: pd.DataFrame, anchor_date: date) -> pd.DataFrame:
    """Post: every record is dated on or after the anchor."""
    return records[records['date'] >= pd.Timestamp(anchor_date)].reset_index(drop=True)


def assign_buckets(records: pd.DataFrame, anchor_date: date, bucket_days: int) -> pd.DataFrame:
    """
    Pre: records dated on or after the anchor.
    Post: integer column `week` >= 1; the anchor day falls in bucket 1.
    """
    out = records.copy()
    days = (out['date'] - pd.Timestamp(anchor_date)).dt.days
    out['week'] = np.ceil((days + 1) / bucket_days).astype(np.int64)
    return out


def aggregate_buckets(records: pd.DataFrame, bucket_days: int) -> pd.DataFrame:
    """
    Pre: columns fips, week, cases, deaths.
    Post: one row per (fips, week) with bucket sums and per-day averages.
    """
    grouped = records.groupby(['fips', 'week'], as_index=False)[['cases', 'deaths']].sum(min_count=1)
    grouped['cases_per_day'] = grouped['cases'] / bucket_days
    grouped['deaths_per_day'] = grouped['deaths'] / bucket_days
    return grouped


def join_population(buckets: pd.DataFrame, population: Mapping[str, float],
                    min_population: int) -> Tuple[pd.DataFrame, List[DataGapError]]:
    """
    Pre: one row per (fips, week).
    Post: every remaining county has a population >= min_population; the
    identities removed are returned as DataGapError entries.
    """
    lookup = pd.Series(population, dtype=float)
    out = buckets.copy()
    out['population'] = out['fips'].map(lookup)

    gaps = []
    counties = out.drop_duplicates('fips')[['fips', 'population']]
    for fips, pop in zip(counties['fips'], counties['population']):
        if pd.isna(pop):
            gaps.append(DataGapError(fips, "missing population"))
        elif pop < min_population:
            gaps.append(DataGapError(fips, f"population below {min_population}"))

    excluded = {g.identity for g in gaps}
    out = out[~out['fips'].isin(excluded)].reset_index(drop=True)
    return out, gaps


def normalize_by_population(buckets: pd.DataFrame) -> pd.DataFrame:
    """Post: column `fraction` = cases_per_day / population (NaN stays NaN)."""
    out = buckets.copy()
    out['fraction'] = out['cases_per_day'] / out['population']
    return out


def first_difference(buckets: pd.DataFrame) -> pd.DataFrame:
    """
    Post: column `x` = fraction minus the fraction of the county's preceding
    bucket. The earliest bucket of each county has predecessor 0, so its x
    equals its own fraction.
    """
    out = buckets.sort_values(['fips', 'week']).reset_index(drop=True)
    previous = out.groupby('fips')['fraction'].shift(1)
    is_first = out.groupby('fips').cumcount() == 0
    previous = previous.where(~is_first, 0.0)
    out['x'] = out['fraction'] - previous
    return out


# ---------------------------------------------------------------------------
# Signal table
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AlignedSignals:
    """Dense county x week matrix of X_T in a fixed county order (NaN = undefined)."""
    county_ids: Tuple[str, ...]
    weeks: Tuple[int, ...]
    values: np.ndarray

    def column(self, week: int) -> np.ndarray:
        try:
            k = self.weeks.index(week)
        except ValueError:
            return np.full(len(self.county_ids), np.nan)
        return self.values[:, k]


class WeeklySignalTable:
    """X_T per (county, bucket) with exact-key lookups."""

    def __init__(self, frame: pd.DataFrame, anchor_date: date, bucket_days: int = WEEKLY_BUCKET_DAYS,
                 data_gaps: Sequence[DataGapError] = ()):
        self._frame = frame.reset_index(drop=True)
        self.anchor_date = anchor_date
        self.bucket_days = bucket_days
        self.data_gaps = tuple(data_gaps)
        self._x = self._frame.pivot(index='fips', columns='week', values='x')
        self._totals = self._frame.groupby('week')['cases'].sum(min_count=1)

    @classmethod
    def build(cls, records: pd.DataFrame, population: Mapping[str, float], anchor_date: date,
              bucket_days: int = WEEKLY_BUCKET_DAYS, min_population: int = 10000) -> "WeeklySignalTable":
        """Run the full pipeline on raw daily records."""
        staged = normalize_records(records)
        staged = filter_from_anchor(staged, anchor_date)
        staged = assign_buckets(staged, anchor_date, bucket_days)
        staged = aggregate_buckets(staged, bucket_days)
        staged, gaps = join_population(staged, population, min_population)
        staged = normalize_by_population(staged)
        staged = first_difference(staged)

        for gap in gaps:
            logger.debug(f"Excluded county {gap.identity}: {gap.reason}")
        if gaps:
            logger.warning(f"Excluded {len(gaps)} counties from the signal table (see excluded_ids)")

        table = cls(staged, anchor_date, bucket_days, gaps)
        logger.info(f"Signal table: {len(table.counties)} counties, {len(table.weeks)} buckets "
                    f"of {bucket_days} days from {anchor_date.isoformat()}")
        return table

    @property
    def weeks(self) -> List[int]:
        return [int(w) for w in self._x.columns]

    @property
    def counties(self) -> List[str]:
        return list(self._x.index)

    @property
    def excluded_ids(self) -> dict:
        return {gap.identity: gap.reason for gap in self.data_gaps}

    def signal(self, fips: str, week: int) -> Optional[float]:
        """X_T for one county and week, or None when undefined."""
        try:
            value = self._x.at[fips, week]
        except KeyError:
            return None
        return None if pd.isna(value) else float(value)

    def observed_counties(self, week: int) -> int:
        if week not in self._x.columns:
            return 0
        return int(self._x[week].notna().sum())

    def total_cases(self, week: int) -> float:
        value = self._totals.get(week, np.nan)
        return float(value) if pd.notna(value) else float('nan')

    def week_start(self, week: int) -> date:
        return self.anchor_date + timedelta(days=(week - 1) * self.bucket_days)

    def align(self, county_ids: Sequence[str]) -> AlignedSignals:
        """Reindex X_T to the given county order; absent counties are all-NaN rows."""
        matrix = self._x.reindex(index=list(county_ids))
        values = matrix.to_numpy(dtype=float)
        values.setflags(write=False)
        return AlignedSignals(tuple(county_ids), tuple(self.weeks), values)

    def to_frame(self) -> pd.DataFrame:
        out = self._frame.copy()
        out['week_start'] = [self.week_start(int(w)) for w in out['week']]
        return out


def build_signal_table(cfg: AnalysisConfig,
                       record_paths: Optional[Sequence[Path]] = None,
                       population: Optional[Mapping[str, float]] = None) -> WeeklySignalTable:
    """Load inputs from the data directory and build the table for cfg."""
    if record_paths is None:
        record_paths = sorted(cfg.data_dir.glob('us-counties-*.csv'))
    if population is None:
        candidates = [cfg.data_dir / 'PopulationEstimates.xlsx', cfg.data_dir / 'PopulationEstimates.csv']
        population_path = next((p for p in candidates if p.exists()), None)
        if population_path is None:
            raise CSFileError(f"No population estimates file in {cfg.data_dir}")
        population = load_population_estimates(population_path, cfg.population_years)

    records = load_daily_records(record_paths)
    return WeeklySignalTable.build(records, population, cfg.anchor_date,
                                   cfg.bucket_days, cfg.min_population)


def main():
    logger.info("=" * 70)
    logger.info("STEP 3: Weekly Signal Table")
    logger.info("=" * 70)
    start_time = time.time()

    try:
        cfg = AnalysisConfig.from_env().validate()
        table = build_signal_table(cfg)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return False
    except (CSFileError, CSDataError) as e:
        logger.error(f"Failed to build signal table: {e}")
        return False

    cfg.output_dir.mkdir(parents=True, exist_ok=True)
    table.to_frame().to_csv(cfg.output_dir / 'step_3_weekly_signals.csv', index=False)
    pd.DataFrame([{'fips': g.identity, 'reason': g.reason} for g in table.data_gaps],
                 columns=['fips', 'reason']).to_csv(cfg.output_dir / 'step_3_excluded_counties.csv', index=False)

    logger.success(f"Signal table written: {len(table.counties)} counties, {len(table.weeks)} weeks")
    logger.info(f"Execution time: {time.time() - start_time:.1f} seconds")
    return True


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
