import numpy as np
import pytest

from conftest import make_reference
from covid_spatial.steps.step_1_county_geo_index import GeoIndex, great_circle_distance
from covid_spatial.steps.step_2_pairwise_corpus import (
    CountyPair, DistanceBinner, PairwiseCorpus, candidate_pairs
)
from covid_spatial.utils.config import AnalysisConfig
from covid_spatial.utils.exceptions import ConfigurationError


@pytest.fixture
def binner():
    return DistanceBinner.from_config(AnalysisConfig())


def test_bin_edges_are_upper_inclusive(binner):
    assert binner.num_bins == 48
    assert binner.cutoff_km == 1000.0
    assert binner.bin_of(0.0) == 1
    assert binner.bin_of(50.0) == 1
    assert binner.bin_of(50.001) == 2
    assert binner.bin_of(70.0) == 2
    assert binner.bin_of(999.9) == 48
    assert binner.bin_of(1000.0) == 48
    assert binner.bin_of(1000.01) is None


def test_bin_of_rejects_negative_distance(binner):
    with pytest.raises(ValueError):
        binner.bin_of(-1.0)
    with pytest.raises(ValueError):
        binner.bin_of(float('nan'))


def test_bins_partition_the_range(binner):
    distances = np.linspace(0.0, 1000.0, 20001)
    bins = binner.bins_of(distances)
    assert bins.min() == 1 and bins.max() == 48
    assert np.all(np.diff(bins) >= 0)
    for d, b in zip(distances[::997], bins[::997]):
        lower, upper = binner.bounds(int(b))
        assert b == binner.bin_of(d)
        assert (lower < d <= upper) or (b == 1 and d == 0.0)


def test_bins_of_marks_beyond_cutoff(binner):
    assert list(binner.bins_of([10.0, 1500.0])) == [1, 0]


def test_midpoints_and_columns(binner):
    assert binner.midpoint(1) == 25.0
    assert binner.midpoint(2) == 60.0
    assert binner.midpoint(48) == 985.0
    names = binner.column_names()
    assert names[0] == 'C_25km' and names[-1] == 'C_985km'
    with pytest.raises(IndexError):
        binner.bounds(49)


@pytest.mark.parametrize('bounds', [[], [0.0, 10.0], [10.0, 5.0], [10.0, np.inf]])
def test_malformed_bounds_rejected(bounds):
    with pytest.raises(ConfigurationError):
        DistanceBinner(bounds)


def test_four_counties_on_a_line(binner):
    # 0.4 degree spacing on the equator: 44.48, 88.96 and 133.43 km
    geo = GeoIndex.from_reference(make_reference([(0.0, 0.4 * k) for k in range(4)]))
    corpus = PairwiseCorpus.build(geo, binner)

    assert len(corpus) == 12
    counts = corpus.counts_per_bin()
    assert counts[0] == 6
    assert counts[2] == 4
    assert counts[5] == 2
    assert counts.sum() == 12

    assert np.all(corpus.origin != corpus.destination)
    assert np.all(corpus.distance_km <= binner.cutoff_km)
    assert sorted(p.destination for p in corpus.pairs_in_bin(6)) == ['20001', '20004']

    farthest = list(corpus.pairs_in_bin(6))
    assert farthest[0].distance_km == pytest.approx(133.434, abs=1e-2)
    assert isinstance(farthest[0], CountyPair)
    assert list(corpus.pairs_in_bin(2)) == []


def test_both_directions_are_stored(binner):
    geo = GeoIndex.from_reference(make_reference([(0.0, 0.0), (0.0, 0.4)]))
    pairs = {(p.origin, p.destination) for p in PairwiseCorpus.build(geo, binner).all_pairs()}
    assert pairs == {('20001', '20002'), ('20002', '20001')}


def test_pairs_beyond_cutoff_excluded(binner):
    # 0, 5 and 10 degrees apart: 556 km pairs kept, the 1112 km pair dropped
    geo = GeoIndex.from_reference(make_reference([(0.0, 0.0), (0.0, 5.0), (0.0, 10.0)]))
    corpus = PairwiseCorpus.build(geo, binner)
    frame = corpus.to_frame()
    assert len(corpus) == 4
    assert not ((frame['origin'] == '20001') & (frame['destination'] == '20003')).any()


def test_candidate_pairs_cover_every_pair_within_cutoff(rng):
    lats = rng.uniform(30, 45, 60)
    lons = rng.uniform(-110, -80, 60)
    found = {tuple(p) for p in candidate_pairs(lats, lons, 400.0).tolist()}
    for i in range(60):
        for j in range(i + 1, 60):
            if great_circle_distance(lats[i], lons[i], lats[j], lons[j]) <= 400.0:
                assert (i, j) in found


def test_corpus_arrays_are_read_only(binner):
    geo = GeoIndex.from_reference(make_reference([(0.0, 0.0), (0.0, 0.4)]))
    corpus = PairwiseCorpus.build(geo, binner)
    with pytest.raises(ValueError):
        corpus.origin[0] = 1


def test_bin_slice_matches_pairs_in_bin(binner):
    geo = GeoIndex.from_reference(make_reference([(0.0, 0.4 * k) for k in range(4)]))
    corpus = PairwiseCorpus.build(geo, binner)
    origin, destination = corpus.bin_slice(6)
    assert len(origin) == len(destination) == 2
    ids = corpus.county_ids
    assert {(ids[o], ids[d]) for o, d in zip(origin, destination)} == \
        {(p.origin, p.destination) for p in corpus.pairs_in_bin(6)}
    assert corpus.bin_slice(2)[0].size == 0
    with pytest.raises(IndexError):
        corpus.bin_slice(0)
