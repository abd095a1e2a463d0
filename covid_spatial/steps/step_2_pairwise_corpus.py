#!/usr/bin/env python3
"""
COVID Spatial Correlation - STEP 2: Distance Binning and Pairwise Corpus
========================================================================

Materializes, once, every ordered pair of distinct counties whose centroids
lie within the distance cutoff, tagged with its great-circle distance and
distance bin.

Algorithm Overview:
1. Project county centroids onto the unit sphere and index them in a k-d tree
2. Query all unordered pairs within the chord length of the cutoff
3. Compute exact haversine distances for the candidates (vectorized)
4. Drop candidates beyond the cutoff, assign 1-based bin indices
5. Store both (i, j) and (j, i), sorted by bin for contiguous per-bin slices

Binning:
  Bin i covers (upper[i-1], upper[i]] with upper[0] = 0, so a distance d
  belongs to the smallest i with d <= upper[i]. The last upper bound is the
  distance cutoff; pairs beyond it are excluded from the corpus entirely.

Outputs:
  - results/outputs/step_2_pair_counts.csv

Environment Variables:
  - CS_MAX_DISTANCE_KM: Distance cutoff (default: 1000)
  - CS_BIN_FIRST_KM, CS_BIN_STEP_KM, CS_BIN_LAST_KM: Default bin layout (50, 20, 970)
  - CS_BIN_BOUNDS: Explicit comma-separated upper bounds (overrides the layout)
"""

import sys
import time
from pathlib import Path
from typing import Iterator, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.spatial import cKDTree

# Anchor to package root
ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(ROOT))

from covid_spatial.utils.config import AnalysisConfig
from covid_spatial.utils.exceptions import ConfigurationError, CSDataError, CSFileError
from covid_spatial.utils.logger import CSLogger
from covid_spatial.steps.step_1_county_geo_index import (
    EARTH_RADIUS_KM, GeoIndex, build_geo_index, great_circle_distance
)

logger = CSLogger()


class DistanceBinner:
    """Ordered, gapless partition of [0, cutoff] into distance bins."""

    def __init__(self, upper_bounds: Sequence[float]):
        bounds = np.asarray(upper_bounds, dtype=float)
        if bounds.ndim != 1 or bounds.size == 0:
            raise ConfigurationError("At least one distance bin upper bound is required")
        if not np.all(np.isfinite(bounds)):
            raise ConfigurationError(f"Bin upper bounds must be finite: {bounds.tolist()}")
        if bounds[0] <= 0:
            raise ConfigurationError(f"First bin upper bound must be positive, got {bounds[0]}")
        if np.any(np.diff(bounds) <= 0):
            raise ConfigurationError(f"Bin upper bounds must be strictly increasing: {bounds.tolist()}")

        self.upper_bounds = bounds
        self.lower_bounds = np.concatenate([[0.0], bounds[:-1]])

    @classmethod
    def from_config(cls, cfg: AnalysisConfig) -> "DistanceBinner":
        cfg.validate()
        return cls(cfg.bin_upper_bounds)

    @property
    def num_bins(self) -> int:
        return int(self.upper_bounds.size)

    @property
    def cutoff_km(self) -> float:
        return float(self.upper_bounds[-1])

    def bin_of(self, distance: float) -> Optional[int]:
        """1-based bin of a distance, or None beyond the cutoff."""
        if not np.isfinite(distance) or distance < 0:
            raise ValueError(f"Distance must be a finite non-negative number, got {distance}")
        if distance > self.cutoff_km:
            return None
        return int(np.searchsorted(self.upper_bounds, distance, side='left')) + 1

    def bins_of(self, distances: np.ndarray) -> np.ndarray:
        """Vectorized bin_of; 0 marks distances beyond the cutoff."""
        distances = np.asarray(distances, dtype=float)
        if np.any(~np.isfinite(distances)) or np.any(distances < 0):
            raise ValueError("Distances must be finite and non-negative")
        bins = np.searchsorted(self.upper_bounds, distances, side='left') + 1
        bins[distances > self.cutoff_km] = 0
        return bins.astype(np.int64)

    def bounds(self, bin_index: int) -> Tuple[float, float]:
        self._check(bin_index)
        return float(self.lower_bounds[bin_index - 1]), float(self.upper_bounds[bin_index - 1])

    def midpoint(self, bin_index: int) -> float:
        lower, upper = self.bounds(bin_index)
        return (lower + upper) / 2

    def midpoints(self) -> np.ndarray:
        return (self.lower_bounds + self.upper_bounds) / 2

    def column_names(self) -> list:
        return [f"C_{m:g}km" for m in self.midpoints()]

    def _check(self, bin_index: int):
        if not 1 <= bin_index <= self.num_bins:
            raise IndexError(f"Bin index {bin_index} outside 1..{self.num_bins}")


class CountyPair(NamedTuple):
    origin: str
    destination: str
    distance_km: float
    bin_index: int


def _unit_vectors(lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    lat = np.radians(lats)
    lon = np.radians(lons)
    return np.column_stack((np.cos(lat) * np.cos(lon), np.cos(lat) * np.sin(lon), np.sin(lat)))


def candidate_pairs(lats: np.ndarray, lons: np.ndarray, cutoff_km: float) -> np.ndarray:
    """
    Unordered index pairs (i < j) whose centroids may lie within cutoff_km.

    The k-d tree works on chord length, which is monotonic in arc length, so
    no pair within the cutoff is missed; a small slack absorbs rounding.
    """
    if len(lats) < 2:
        return np.empty((0, 2), dtype=np.int64)
    angle = min(cutoff_km / EARTH_RADIUS_KM, np.pi)
    chord = 2.0 * np.sin(angle / 2.0) * (1.0 + 1e-9)
    tree = cKDTree(_unit_vectors(lats, lons))
    return tree.query_pairs(r=chord, output_type='ndarray').astype(np.int64)


class PairwiseCorpus:
    """
    All ordered county pairs within the cutoff, grouped by distance bin.

    Arrays are indexed by county position in the GeoIndex. Immutable once
    built; rebuild when the universe or cutoff changes.
    """

    def __init__(self, county_ids: Sequence[str], origin: np.ndarray, destination: np.ndarray,
                 distance_km: np.ndarray, bin_index: np.ndarray, num_bins: int):
        order = np.argsort(bin_index, kind='stable')
        self.county_ids = tuple(county_ids)
        self.origin = np.ascontiguousarray(origin[order])
        self.destination = np.ascontiguousarray(destination[order])
        self.distance_km = np.ascontiguousarray(distance_km[order])
        self.bin_index = np.ascontiguousarray(bin_index[order])
        self.num_bins = int(num_bins)
        self._offsets = np.searchsorted(self.bin_index, np.arange(1, self.num_bins + 2), side='left')
        for arr in (self.origin, self.destination, self.distance_km, self.bin_index):
            arr.setflags(write=False)

    @classmethod
    def build(cls, geo: GeoIndex, binner: DistanceBinner) -> "PairwiseCorpus":
        """Generate every ordered pair i != j with distance <= binner.cutoff_km."""
        cutoff = binner.cutoff_km
        candidates = candidate_pairs(geo.lats, geo.lons, cutoff)
        i, j = candidates[:, 0], candidates[:, 1]

        distances = great_circle_distance(geo.lats[i], geo.lons[i], geo.lats[j], geo.lons[j])
        within = distances <= cutoff
        i, j, distances = i[within], j[within], distances[within]
        bins = binner.bins_of(distances)

        # Both directions of every unordered pair
        origin = np.concatenate([i, j])
        destination = np.concatenate([j, i])
        distance_km = np.concatenate([distances, distances])
        bin_index = np.concatenate([bins, bins])

        corpus = cls(geo.ids, origin, destination, distance_km, bin_index, binner.num_bins)
        logger.info(f"Pairwise corpus: {len(candidates)} candidate pairs, "
                    f"{len(corpus)} ordered pairs within {cutoff:g} km")
        return corpus

    def __len__(self) -> int:
        return int(self.origin.size)

    def bin_slice(self, bin_index: int) -> Tuple[np.ndarray, np.ndarray]:
        """Origin and destination county positions of every pair in one bin."""
        if not 1 <= bin_index <= self.num_bins:
            raise IndexError(f"Bin index {bin_index} outside 1..{self.num_bins}")
        start, stop = self._offsets[bin_index - 1], self._offsets[bin_index]
        return self.origin[start:stop], self.destination[start:stop]

    @property
    def offsets(self) -> np.ndarray:
        """offsets[k]:offsets[k+1] delimits the pairs of bin k+1."""
        return self._offsets

    def counts_per_bin(self) -> np.ndarray:
        return np.diff(self._offsets)

    def _iter_range(self, start: int, stop: int) -> Iterator[CountyPair]:
        ids = self.county_ids
        for k in range(start, stop):
            yield CountyPair(ids[self.origin[k]], ids[self.destination[k]],
                             float(self.distance_km[k]), int(self.bin_index[k]))

    def pairs_in_bin(self, bin_index: int) -> Iterator[CountyPair]:
        if not 1 <= bin_index <= self.num_bins:
            raise IndexError(f"Bin index {bin_index} outside 1..{self.num_bins}")
        return self._iter_range(self._offsets[bin_index - 1], self._offsets[bin_index])

    def all_pairs(self) -> Iterator[CountyPair]:
        return self._iter_range(0, len(self))

    def to_frame(self) -> pd.DataFrame:
        ids = np.asarray(self.county_ids, dtype=object)
        return pd.DataFrame({
            'origin': ids[self.origin],
            'destination': ids[self.destination],
            'distance_km': self.distance_km,
            'bin_index': self.bin_index,
        })


def main():
    """Build the pairwise corpus for the configured universe and report pairs per bin."""
    logger.info("=" * 70)
    logger.info("STEP 2: Distance Binning and Pairwise Corpus")
    logger.info("=" * 70)
    start_time = time.time()

    try:
        cfg = AnalysisConfig.from_env().validate()
        binner = DistanceBinner.from_config(cfg)
        geo = build_geo_index(cfg)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return False
    except (CSFileError, CSDataError) as e:
        logger.error(f"Failed to build county universe: {e}")
        return False

    logger.process(f"Building corpus for {len(geo)} counties, cutoff {binner.cutoff_km:g} km")
    corpus = PairwiseCorpus.build(geo, binner)

    counts = pd.DataFrame({
        'bin_index': np.arange(1, binner.num_bins + 1),
        'lower_km': binner.lower_bounds,
        'upper_km': binner.upper_bounds,
        'midpoint_km': binner.midpoints(),
        'n_pairs': corpus.counts_per_bin(),
    })
    cfg.output_dir.mkdir(parents=True, exist_ok=True)
    counts.to_csv(cfg.output_dir / 'step_2_pair_counts.csv', index=False)

    logger.success(f"Corpus built: {len(corpus)} ordered pairs in {binner.num_bins} bins")
    logger.info(f"Execution time: {time.time() - start_time:.1f} seconds")
    return True


if __name__ == "__main__":
    sys.exit(0 if main() else 1)
