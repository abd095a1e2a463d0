#!/usr/bin/env python3
"""
COVID Spatial Correlation - STEP 1: County Universe and Geographic Index
========================================================================

Builds the fixed county universe for the analysis and the great-circle
distance lookup between county centroids.

Algorithm Overview:
1. Load the county reference table (FIPS, name, state, land area, centroid)
2. Load population estimates and average them over the configured years
3. Normalize FIPS codes to 5-character zero-padded strings
4. Exclude counties with an unknown region, invalid centroid, missing
   population or population below the floor; each exclusion is kept as a
   DataGapError for diagnostics
5. Expose County records and haversine distances by FIPS

Inputs:
  - data/county_reference.csv
  - data/PopulationEstimates.xlsx (or .csv)

Outputs:
  - results/outputs/step_1_county_universe.csv
  - results/outputs/step_1_excluded_counties.csv

Environment Variables:
  - CS_MIN_POPULATION: Population floor for inclusion (default: 10000)
  - CS_POPULATION_YEARS: Estimate years averaged into one figure (default: 2020,2021,2022)
  - CS_DATA_DIR / CS_OUTPUT_DIR: Input and output directories
"""

import sys
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd

# Anchor to package root
ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from covid_spatial.utils.config import AnalysisConfig, CSConfig
from covid_spatial.utils.exceptions import (
    CSDataError, CSFileError, DataGapError,
    safe_csv_read, safe_excel_read, validate_file_exists
)
from covid_spatial.utils.logger import CSLogger

logger = CSLogger()

EARTH_RADIUS_KM = 6371.0088  # Mean Earth radius (IUGG)
FIPS_WIDTH = 5
UNKNOWN_REGION = "unknown"

# Census regions; states and territories absent here resolve to UNKNOWN_REGION
STATE_REGIONS = {
    **dict.fromkeys([
        'Connecticut', 'Maine', 'Massachusetts', 'New Hampshire', 'Rhode Island',
        'Vermont', 'New Jersey', 'New York', 'Pennsylvania',
    ], 'Northeast'),
    **dict.fromkeys([
        'Illinois', 'Indiana', 'Michigan', 'Ohio', 'Wisconsin', 'Iowa', 'Kansas',
        'Minnesota', 'Missouri', 'Nebraska', 'North Dakota', 'South Dakota',
    ], 'Midwest'),
    **dict.fromkeys([
        'Delaware', 'District of Columbia', 'Florida', 'Georgia', 'Maryland',
        'North Carolina', 'South Carolina', 'Virginia', 'West Virginia', 'Alabama',
        'Kentucky', 'Mississippi', 'Tennessee', 'Arkansas', 'Louisiana', 'Oklahoma',
        'Texas',
    ], 'South'),
    **dict.fromkeys([
        'Arizona', 'Colorado', 'Idaho', 'Montana', 'Nevada', 'New Mexico', 'Utah',
        'Wyoming', 'Alaska', 'California', 'Hawaii', 'Oregon', 'Washington',
    ], 'West'),
}

# Column names seen in county gazetteer / reference exports
REFERENCE_COLUMN_ALIASES = {
    'GEOID': 'fips', 'FIPS': 'fips', 'fips_code': 'fips',
    'NAME': 'name', 'county': 'name', 'County': 'name',
    'STATE': 'state', 'State': 'state', 'state_name': 'state',
    'ALAND_SQMI': 'land_area', 'LandArea': 'land_area', 'area': 'land_area',
    'INTPTLAT': 'latitude', 'lat': 'latitude', 'Latitude': 'latitude',
    'INTPTLONG': 'longitude', 'lon': 'longitude', 'lng': 'longitude', 'Longitude': 'longitude',
    'POPULATION': 'population', 'Population': 'population',
}


@dataclass(frozen=True)
class County:
    """One county of the analysis universe."""
    fips: str
    name: str
    region: str
    land_area: float
    latitude: float
    longitude: float
    population: int


def great_circle_distance(lat1, lon1, lat2, lon2):
    """
    Haversine great-circle distance in kilometers.

    Accepts scalars or numpy arrays (broadcast) in degrees.
    """
    lat1_rad = np.radians(lat1)
    lon1_rad = np.radians(lon1)
    lat2_rad = np.radians(lat2)
    lon2_rad = np.radians(lon2)

    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad
    a = np.sin(dlat / 2)**2 + np.cos(lat1_rad) * np.cos(lat2_rad) * np.sin(dlon / 2)**2
    # Clip 'a' to [0,1] to handle floating-point errors at antipodal points
    a = np.clip(a, 0.0, 1.0)
    return EARTH_RADIUS_KM * 2 * np.arcsin(np.sqrt(a))


def _normalize_code(value) -> Optional[str]:
    if value is None or (isinstance(value, float) and np.isnan(value)):
        return None
    text = str(value).strip()
    if text.endswith('.0'):
        text = text[:-2]
    if not text.isdigit() or len(text) > FIPS_WIDTH:
        return None
    return text.zfill(FIPS_WIDTH)


def normalize_fips(codes: pd.Series) -> pd.Series:
    """
    Zero-pad county codes to FIPS_WIDTH characters.

    Codes that cannot be resolved to a county (missing, non-numeric, too long)
    come back missing; callers drop them with notna().
    """
    return codes.map(_normalize_code)


def load_county_reference(path: Union[str, Path]) -> pd.DataFrame:
    """Load the county reference table and map its columns to canonical names."""
    df = safe_csv_read(path, dtype={'fips': str, 'GEOID': str, 'FIPS': str})
    df.columns = [c.strip() for c in df.columns]
    df = df.rename(columns={k: v for k, v in REFERENCE_COLUMN_ALIASES.items() if k in df.columns})

    missing = [c for c in ('fips', 'state', 'latitude', 'longitude') if c not in df.columns]
    if missing:
        raise CSDataError(f"County reference {path} is missing columns: {missing}")

    logger.success(f"Loaded county reference: {len(df)} rows from {Path(path).name}")
    return df


def average_population(estimates: pd.DataFrame, years: Iterable[int],
                       fips_column: str = 'FIPStxt') -> pd.Series:
    """
    Average the POP_ESTIMATE_<year> columns into a single figure per county.

    Years without a column are ignored; a county whose estimates are all
    missing gets NaN, not zero.
    """
    years = list(years)
    columns = [f"POP_ESTIMATE_{y}" for y in years if f"POP_ESTIMATE_{y}" in estimates.columns]
    if not columns:
        raise CSDataError(f"No population estimate columns for years {list(years)}")

    fips = normalize_fips(estimates[fips_column])
    values = estimates[columns].apply(pd.to_numeric, errors='coerce')
    averaged = values.mean(axis=1, skipna=True)

    result = pd.Series(averaged.to_numpy(), index=fips.to_numpy(), name='population')
    result = result[result.index.notna()]
    return result[~result.index.duplicated(keep='first')]


def load_population_estimates(path: Union[str, Path], years: Iterable[int]) -> pd.Series:
    """Load a USDA-style population estimates file (Excel or CSV) and average it."""
    path = validate_file_exists(path, "Population estimates file")
    if path.suffix.lower() in ('.xlsx', '.xls'):
        estimates = safe_excel_read(path, skiprows=4, dtype={'FIPStxt': str})
    else:
        estimates = safe_csv_read(path, dtype={'FIPStxt': str}, thousands=',')

    population = average_population(estimates, years)
    logger.success(f"Loaded population estimates for {len(population)} counties from {path.name}")
    return population


class GeoIndex:
    """
    Immutable county universe with great-circle distance lookup.

    Counties are held in a fixed order; index positions are shared with the
    pairwise corpus and the aligned weekly signal matrix.
    """

    def __init__(self, counties: Sequence[County], data_gaps: Sequence[DataGapError] = ()):
        self._counties = tuple(counties)
        self._positions = {c.fips: i for i, c in enumerate(self._counties)}
        if len(self._positions) != len(self._counties):
            raise CSDataError("Duplicate FIPS codes in county universe")
        self.lats = np.array([c.latitude for c in self._counties], dtype=float)
        self.lons = np.array([c.longitude for c in self._counties], dtype=float)
        self.populations = np.array([c.population for c in self._counties], dtype=np.int64)
        self.data_gaps = tuple(data_gaps)

    @classmethod
    def from_reference(cls, reference: pd.DataFrame,
                       population: Optional[Mapping[str, float]] = None,
                       min_population: int = 10000) -> "GeoIndex":
        """
        Build the universe from a canonical reference table.

        Population comes from `population` (FIPS -> figure) when given,
        otherwise from the table's own `population` column.
        """
        df = reference.copy()
        df['fips'] = normalize_fips(df['fips'])
        gaps: List[DataGapError] = []

        for raw in reference.loc[df['fips'].isna(), 'fips']:
            gaps.append(DataGapError(str(raw), "unresolvable county code"))
        df = df[df['fips'].notna()]

        duplicated = df['fips'].duplicated(keep='first')
        for fips in df.loc[duplicated, 'fips']:
            gaps.append(DataGapError(fips, "duplicate county code"))
        df = df[~duplicated]

        if population is not None:
            pop_lookup = pd.Series(population, dtype=float)
            df['population'] = df['fips'].map(pop_lookup)
        elif 'population' not in df.columns:
            df['population'] = np.nan
        df['population'] = pd.to_numeric(df['population'], errors='coerce')
        df['latitude'] = pd.to_numeric(df['latitude'], errors='coerce')
        df['longitude'] = pd.to_numeric(df['longitude'], errors='coerce')
        df['region'] = df['state'].map(STATE_REGIONS).fillna(UNKNOWN_REGION)

        checks = [
            (df['region'] == UNKNOWN_REGION, "unknown region"),
            (~np.isfinite(df['latitude']) | ~np.isfinite(df['longitude']), "missing coordinates"),
            ((df['latitude'].abs() > 90) | (df['longitude'].abs() > 180), "coordinates out of range"),
            (df['population'].isna(), "missing population"),
            (df['population'] < min_population, f"population below {min_population}"),
        ]
        keep = pd.Series(True, index=df.index)
        for mask, reason in checks:
            mask = mask.fillna(False) & keep
            for fips in df.loc[mask, 'fips']:
                gaps.append(DataGapError(fips, reason))
            keep &= ~mask

        kept = df[keep]
        land_area = kept['land_area'] if 'land_area' in kept.columns else pd.Series(np.nan, index=kept.index)
        names = kept['name'] if 'name' in kept.columns else kept['fips']
        counties = [
            County(
                fips=fips,
                name=str(name),
                region=region,
                land_area=float(area) if pd.notna(area) else float('nan'),
                latitude=float(lat),
                longitude=float(lon),
                population=int(round(pop)),
            )
            for fips, name, region, area, lat, lon, pop in zip(
                kept['fips'], names, kept['region'], pd.to_numeric(land_area, errors='coerce'),
                kept['latitude'], kept['longitude'], kept['population'])
        ]

        for gap in gaps:
            logger.debug(f"Excluded county {gap.identity}: {gap.reason}")
        if gaps:
            logger.warning(f"Excluded {len(gaps)} counties from the universe (see excluded_ids)")
        logger.info(f"County universe: {len(counties)} counties with population >= {min_population}")
        return cls(counties, gaps)

    def __len__(self) -> int:
        return len(self._counties)

    def __contains__(self, fips: str) -> bool:
        return fips in self._positions

    def __iter__(self):
        return iter(self._counties)

    @property
    def ids(self) -> tuple:
        return tuple(c.fips for c in self._counties)

    @property
    def excluded_ids(self) -> Dict[str, str]:
        return {gap.identity: gap.reason for gap in self.data_gaps}

    def get(self, fips: str) -> Optional[County]:
        pos = self._positions.get(fips)
        return None if pos is None else self._counties[pos]

    def index_of(self, fips: str) -> Optional[int]:
        return self._positions.get(fips)

    def county_at(self, index: int) -> County:
        return self._counties[index]

    def distance(self, a: str, b: str) -> float:
        """Great-circle distance between two county centroids in km."""
        ia, ib = self._positions.get(a), self._positions.get(b)
        if ia is None or ib is None:
            raise DataGapError(a if ia is None else b, "county not in universe")
        if ia == ib:
            return 0.0
        return float(great_circle_distance(self.lats[ia], self.lons[ia], self.lats[ib], self.lons[ib]))

    def distance_matrix(self) -> np.ndarray:
        """Full county x county distance matrix (n^2 memory; small universes only)."""
        d = great_circle_distance(self.lats[:, None], self.lons[:, None],
                                  self.lats[None, :], self.lons[None, :])
        np.fill_diagonal(d, 0.0)
        return d

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([asdict(c) for c in self._counties],
                            columns=['fips', 'name', 'region', 'land_area', 'latitude', 'longitude', 'population'])

    def exclusions_frame(self) -> pd.DataFrame:
        return pd.DataFrame([{'fips': g.identity, 'reason': g.reason} for g in self.data_gaps],
                            columns=['fips', 'reason'])


def build_geo_index(cfg: AnalysisConfig,
                    reference_path: Optional[Path] = None,
                    population_path: Optional[Path] = None) -> GeoIndex:
    """Load reference and population inputs from the data directory and build the index."""
    reference_path = reference_path or cfg.data_dir / 'county_reference.csv'
    if population_path is None:
        candidates = [cfg.data_dir / 'PopulationEstimates.xlsx', cfg.data_dir / 'PopulationEstimates.csv']
        population_path = next((p for p in candidates if p.exists()), None)

    reference = load_county_reference(reference_path)
    population = None
    if population_path is not None:
        population = load_population_estimates(population_path, cfg.population_years)
    return GeoIndex.from_reference(reference, population, cfg.min_population)


def main():
    """Build the county universe and write it (with exclusions) to the output directory."""
    logger.info("=" * 70)
    logger.info("STEP 1: County Universe and Geographic Index")
    logger.info("=" * 70)
    start_time = time.time()

    issues = CSConfig.validate_configuration()
    if issues:
        for issue in issues:
            logger.error(f"Configuration issue: {issue}")
        return False

    cfg = AnalysisConfig.from_env()
    CSConfig.print_configuration(logger.info)

    try:
        geo = build_geo_index(cfg)
    except (CSFileError, CSDataError) as e:
        logger.error(f"Failed to build county universe: {e}")
        return False

    cfg.output_dir.mkdir(parents=True, exist_ok=True)
    geo.to_frame().to_csv(cfg.output_dir / 'step_1_county_universe.csv', index=False)
    geo.exclusions_frame().to_csv(cfg.output_dir / 'step_1_excluded_counties.csv', index=False)

    logger.success(f"County universe written: {len(geo)} counties, {len(geo.data_gaps)} excluded")
    logger.info(f"Execution time: {time.time() - start_time:.1f} seconds")
    return True


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
