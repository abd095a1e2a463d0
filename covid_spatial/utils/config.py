#!/usr/bin/env python3
"""
COVID Spatial Correlation - Centralized Configuration Management
================================================================

Environment-variable backed configuration shared by all analysis steps, plus
the AnalysisConfig dataclass that carries one run's parameters explicitly
through the pipeline.

Every numeric literal of the methodology (distance cutoff, bin bounds,
significance thresholds, population floor, anchor date, bucket length) lives in
CSConfig.DEFAULTS and can be overridden through the matching CS_* variable.
"""

import argparse
import multiprocessing as mp
import os
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import numpy as np

from covid_spatial.utils.exceptions import ConfigurationError


class CSConfig:
    """Centralized configuration management for the correlation analysis"""

    DEFAULTS = {
        # Distance binning
        'CS_MAX_DISTANCE_KM': 1000.0,
        'CS_BIN_FIRST_KM': 50.0,
        'CS_BIN_STEP_KM': 20.0,
        'CS_BIN_LAST_KM': 970.0,
        'CS_BIN_BOUNDS': None,  # Comma-separated explicit upper bounds

        # Significance (batch vs single-week illustration)
        'CS_SIGNIFICANCE_ALPHA': 1e-2,
        'CS_SINGLE_WEEK_ALPHA': 1e-6,
        'CS_ROOT_TOLERANCE': 1e-8,

        # County universe
        'CS_MIN_POPULATION': 10000,
        'CS_MIN_COUNTIES_PER_WEEK': 22,

        # Time bucketing
        'CS_ANCHOR_DATE': '2020-01-21',
        'CS_BUCKET_DAYS': 7,
        'CS_WEEK_START': None,
        'CS_WEEK_END': None,
        'CS_SINGLE_WEEK': 40,

        # Population estimate years averaged into one figure
        'CS_POPULATION_YEARS': '2020,2021,2022',

        # Processing
        'CS_WORKERS': None,  # Will default to CPU count

        # Paths
        'CS_DATA_DIR': 'data',
        'CS_OUTPUT_DIR': 'results/outputs',
        'CS_FIGURES_DIR': 'results/figures',
    }

    @staticmethod
    def get_int(key: str, default: Optional[int] = None) -> int:
        """
        Get integer configuration value.

        Raises:
            ValueError: If no default provided and key is missing
            ConfigurationError: If the variable is set but not an integer
        """
        if default is None:
            default = CSConfig.DEFAULTS.get(key)

        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ValueError(f"Required configuration {key} not found and no default provided")
            return default

        try:
            return int(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid integer value for {key}: '{value}'") from e

    @staticmethod
    def get_float(key: str, default: Optional[float] = None) -> float:
        """
        Get float configuration value.

        Raises:
            ValueError: If no default provided and key is missing
            ConfigurationError: If the variable is set but not a number
        """
        if default is None:
            default = CSConfig.DEFAULTS.get(key)

        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ValueError(f"Required configuration {key} not found and no default provided")
            return default

        try:
            return float(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid float value for {key}: '{value}'") from e

    @staticmethod
    def get_bool(key: str, default: Optional[bool] = None) -> bool:
        if default is None:
            default = CSConfig.DEFAULTS.get(key, False)

        value = os.getenv(key)
        if value is None:
            return default

        return str(value).lower() in ('1', 'true', 'yes', 'on')

    @staticmethod
    def get_str(key: str, default: Optional[str] = None) -> str:
        """
        Get string configuration value.

        Raises:
            ValueError: If no default provided and key not found
        """
        if default is None:
            default = CSConfig.DEFAULTS.get(key)

        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ValueError(f"Required configuration {key} not found and no default provided")
            return default
        return value

    @staticmethod
    def get_optional_int(key: str) -> Optional[int]:
        """
        Get optional integer that can be None.
        Handles special values like 'all', 'auto', 'none' as None.
        """
        value = os.getenv(key)
        if value is None:
            return CSConfig.DEFAULTS.get(key)

        value_lower = value.strip().lower()
        if value_lower in ('all', 'auto', 'none', ''):
            return None

        try:
            return int(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid integer value for {key}: '{value}'") from e

    @staticmethod
    def get_path(key: str, default: Optional[Union[str, Path]] = None) -> Path:
        if default is None:
            default = CSConfig.DEFAULTS.get(key)

        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ValueError(f"Required path configuration {key} not found")
            return Path(default)
        return Path(value)

    @staticmethod
    def get_worker_count(env_var: str = 'CS_WORKERS') -> int:
        """
        Get a valid worker count from an environment variable.
        Caps the value at the number of available CPU cores.
        """
        default_workers = mp.cpu_count()
        value = os.getenv(env_var)
        if value is None or value.strip().lower() in ('auto', ''):
            return default_workers
        try:
            user_workers = int(value)
        except ValueError as e:
            raise ConfigurationError(f"Invalid integer value for {env_var}: '{value}'") from e
        return max(1, min(user_workers, default_workers))

    @staticmethod
    def get_population_years() -> List[int]:
        raw = CSConfig.get_str('CS_POPULATION_YEARS')
        try:
            return _parse_years(raw)
        except ValueError as e:
            raise ConfigurationError(f"Invalid CS_POPULATION_YEARS '{raw}': {e}") from e

    @staticmethod
    def get_bin_upper_bounds() -> Tuple[float, ...]:
        """
        Upper bounds of the distance bins in km.

        CS_BIN_BOUNDS takes precedence; otherwise the bounds run from
        CS_BIN_FIRST_KM to CS_BIN_LAST_KM in CS_BIN_STEP_KM steps with a final
        bound at CS_MAX_DISTANCE_KM.
        """
        explicit = os.getenv('CS_BIN_BOUNDS')
        if explicit:
            try:
                return tuple(float(v) for v in explicit.split(',') if v.strip())
            except ValueError as e:
                raise ConfigurationError(f"Invalid CS_BIN_BOUNDS '{explicit}': {e}") from e

        return default_bin_upper_bounds(
            first_km=CSConfig.get_float('CS_BIN_FIRST_KM'),
            step_km=CSConfig.get_float('CS_BIN_STEP_KM'),
            last_km=CSConfig.get_float('CS_BIN_LAST_KM'),
            cutoff_km=CSConfig.get_float('CS_MAX_DISTANCE_KM'),
        )

    @classmethod
    def validate_configuration(cls) -> List[str]:
        """
        Validate current environment configuration and return list of issues.
        """
        try:
            return AnalysisConfig.from_env().issues()
        except (ValueError, TypeError, ConfigurationError) as e:
            return [f"Configuration validation error: {e}"]

    @classmethod
    def print_configuration(cls, logger_func=print):
        logger_func("=== Spatial Correlation Configuration ===")
        cfg = AnalysisConfig.from_env()
        for line in cfg.describe():
            logger_func(f"  {line}")
        logger_func("=========================================")


def default_bin_upper_bounds(first_km: Optional[float] = None, step_km: Optional[float] = None,
                             last_km: Optional[float] = None,
                             cutoff_km: Optional[float] = None) -> Tuple[float, ...]:
    """Upper bounds first_km, first_km+step_km, ..., last_km, then cutoff_km.

    Arguments left as None take their CSConfig.DEFAULTS value.
    """
    defaults = CSConfig.DEFAULTS
    first_km = defaults['CS_BIN_FIRST_KM'] if first_km is None else first_km
    step_km = defaults['CS_BIN_STEP_KM'] if step_km is None else step_km
    last_km = defaults['CS_BIN_LAST_KM'] if last_km is None else last_km
    cutoff_km = defaults['CS_MAX_DISTANCE_KM'] if cutoff_km is None else cutoff_km

    if step_km <= 0:
        raise ConfigurationError(f"Bin step must be positive, got {step_km}")
    bounds = list(np.arange(first_km, last_km + step_km / 2, step_km))
    if cutoff_km > bounds[-1]:
        bounds.append(cutoff_km)
    return tuple(float(b) for b in bounds)


def _parse_years(raw: str) -> List[int]:
    return [int(y) for y in raw.split(',') if y.strip()]


def _parse_date(value: Union[str, date]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ConfigurationError(f"Invalid date format. Use YYYY-MM-DD: {exc}") from exc


_DEFAULTS = CSConfig.DEFAULTS


@dataclass(frozen=True)
class AnalysisConfig:
    """All parameters of one analysis run; field defaults come from CSConfig.DEFAULTS."""

    anchor_date: date = _parse_date(_DEFAULTS['CS_ANCHOR_DATE'])
    bucket_days: int = _DEFAULTS['CS_BUCKET_DAYS']
    week_start: Optional[int] = _DEFAULTS['CS_WEEK_START']
    week_end: Optional[int] = _DEFAULTS['CS_WEEK_END']
    single_week: int = _DEFAULTS['CS_SINGLE_WEEK']
    max_distance_km: float = _DEFAULTS['CS_MAX_DISTANCE_KM']
    bin_upper_bounds: Tuple[float, ...] = field(default_factory=default_bin_upper_bounds)
    min_population: int = _DEFAULTS['CS_MIN_POPULATION']
    min_counties_per_week: int = _DEFAULTS['CS_MIN_COUNTIES_PER_WEEK']
    significance_alpha: float = _DEFAULTS['CS_SIGNIFICANCE_ALPHA']
    single_week_alpha: float = _DEFAULTS['CS_SINGLE_WEEK_ALPHA']
    root_tolerance: float = _DEFAULTS['CS_ROOT_TOLERANCE']
    population_years: Tuple[int, ...] = tuple(_parse_years(_DEFAULTS['CS_POPULATION_YEARS']))
    workers: int = 1
    data_dir: Path = Path(_DEFAULTS['CS_DATA_DIR'])
    output_dir: Path = Path(_DEFAULTS['CS_OUTPUT_DIR'])
    verbose: bool = False


    @classmethod
    def from_env(cls) -> "AnalysisConfig":
        return cls(
            anchor_date=_parse_date(CSConfig.get_str('CS_ANCHOR_DATE')),
            bucket_days=CSConfig.get_int('CS_BUCKET_DAYS'),
            week_start=CSConfig.get_optional_int('CS_WEEK_START'),
            week_end=CSConfig.get_optional_int('CS_WEEK_END'),
            single_week=CSConfig.get_int('CS_SINGLE_WEEK'),
            max_distance_km=CSConfig.get_float('CS_MAX_DISTANCE_KM'),
            bin_upper_bounds=CSConfig.get_bin_upper_bounds(),
            min_population=CSConfig.get_int('CS_MIN_POPULATION'),
            min_counties_per_week=CSConfig.get_int('CS_MIN_COUNTIES_PER_WEEK'),
            significance_alpha=CSConfig.get_float('CS_SIGNIFICANCE_ALPHA'),
            single_week_alpha=CSConfig.get_float('CS_SINGLE_WEEK_ALPHA'),
            root_tolerance=CSConfig.get_float('CS_ROOT_TOLERANCE'),
            population_years=tuple(CSConfig.get_population_years()),
            workers=CSConfig.get_worker_count(),
            data_dir=CSConfig.get_path('CS_DATA_DIR'),
            output_dir=CSConfig.get_path('CS_OUTPUT_DIR'),
            verbose=CSConfig.get_bool('CS_VERBOSE', False),
        )

    @classmethod
    def from_args_and_env(cls, args: argparse.Namespace) -> "AnalysisConfig":
        """Command line arguments override CS_* environment variables."""
        base = cls.from_env()
        overrides = {}

        def take(attr: str, cast=lambda v: v):
            value = getattr(args, attr, None)
            if value is not None:
                overrides[attr] = cast(value)

        take('anchor_date', _parse_date)
        take('bucket_days', int)
        take('week_start', int)
        take('week_end', int)
        take('single_week', int)
        take('max_distance_km', float)
        take('min_population', int)
        take('min_counties_per_week', int)
        take('significance_alpha', float)
        take('single_week_alpha', float)
        take('root_tolerance', float)
        take('workers', int)
        take('data_dir', Path)
        take('output_dir', Path)

        bounds = getattr(args, 'bin_bounds', None)
        if bounds:
            try:
                overrides['bin_upper_bounds'] = tuple(float(v) for v in bounds.split(',') if v.strip())
            except ValueError as e:
                raise ConfigurationError(f"Invalid --bin-bounds '{bounds}': {e}") from e
        elif 'max_distance_km' in overrides:
            # Keep the default step layout but end it at the new cutoff
            cutoff = overrides['max_distance_km']
            kept = [b for b in base.bin_upper_bounds if b < cutoff]
            overrides['bin_upper_bounds'] = tuple(kept + [cutoff])

        if getattr(args, 'verbose', False):
            overrides['verbose'] = True

        return replace(base, **overrides)

    @property
    def num_bins(self) -> int:
        return len(self.bin_upper_bounds)

    def issues(self) -> List[str]:
        """Return a list of configuration problems (empty if valid)."""
        issues = []
        bounds = np.asarray(self.bin_upper_bounds, dtype=float)

        if bounds.size == 0:
            issues.append("At least one distance bin upper bound is required")
        else:
            if not np.all(np.isfinite(bounds)):
                issues.append(f"Bin upper bounds must be finite: {list(bounds)}")
            if bounds[0] <= 0:
                issues.append(f"First bin upper bound must be positive, got {bounds[0]}")
            if bounds.size > 1 and np.any(np.diff(bounds) <= 0):
                issues.append(f"Bin upper bounds must be strictly increasing: {list(bounds)}")
            if bounds[-1] != self.max_distance_km:
                issues.append(
                    f"Last bin upper bound ({bounds[-1]}) must equal the distance cutoff ({self.max_distance_km})"
                )

        if not self.max_distance_km > 0:
            issues.append(f"Distance cutoff must be positive, got {self.max_distance_km}")
        for name in ('significance_alpha', 'single_week_alpha'):
            alpha = getattr(self, name)
            if not 0.0 < alpha < 1.0:
                issues.append(f"{name} must lie in (0, 1), got {alpha}")
        if not self.root_tolerance > 0:
            issues.append(f"root_tolerance must be positive, got {self.root_tolerance}")
        if self.min_population < 0:
            issues.append(f"min_population must be non-negative, got {self.min_population}")
        if self.min_counties_per_week < 2:
            issues.append(f"min_counties_per_week must be at least 2, got {self.min_counties_per_week}")
        if self.bucket_days < 1:
            issues.append(f"bucket_days must be at least 1, got {self.bucket_days}")
        if self.week_start is not None and self.week_start < 1:
            issues.append(f"week_start must be >= 1, got {self.week_start}")
        if self.week_start is not None and self.week_end is not None and self.week_end < self.week_start:
            issues.append(f"week_end ({self.week_end}) must not precede week_start ({self.week_start})")
        if self.workers < 1:
            issues.append(f"Worker count ({self.workers}) must be at least 1")
        if not self.population_years:
            issues.append("At least one population estimate year is required")

        return issues

    def validate(self) -> "AnalysisConfig":
        """Raise ConfigurationError listing every problem; return self when valid."""
        issues = self.issues()
        if issues:
            raise ConfigurationError("; ".join(issues))
        return self

    def describe(self) -> Sequence[str]:
        bounds = self.bin_upper_bounds
        return [
            f"Anchor date: {self.anchor_date.isoformat()} (bucket {self.bucket_days} days)",
            f"Week range: {self.week_start or 'auto'} .. {self.week_end or 'last'}",
            f"Distance cutoff: {self.max_distance_km} km, {len(bounds)} bins "
            f"({bounds[0] if bounds else '-'} .. {bounds[-1] if bounds else '-'} km)",
            f"Minimum population: {self.min_population}",
            f"Minimum counties per week: {self.min_counties_per_week}",
            f"Significance alpha: batch {self.significance_alpha:g}, single week {self.single_week_alpha:g}",
            f"Root tolerance: {self.root_tolerance:g}",
            f"Workers: {self.workers}",
        ]

