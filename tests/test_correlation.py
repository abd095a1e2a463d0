import numpy as np
import pytest

from covid_spatial.steps.step_2_pairwise_corpus import DistanceBinner, PairwiseCorpus
from covid_spatial.steps.step_3_weekly_signals import AlignedSignals
from covid_spatial.steps.step_4_correlation_analysis import (
    CorrelationCurve, CorrelationEstimator, bin_correlation, estimate_curve, rank_significance
)
from covid_spatial.utils.exceptions import ConfigurationError, CSDataError, DegenerateBinError


def test_perfect_positive_correlation(rng):
    x1 = rng.normal(size=200)
    assert bin_correlation(x1, 2.5 * x1 + 4.0) == pytest.approx(1.0, abs=1e-12)


def test_perfect_negative_correlation(rng):
    x1 = rng.normal(size=200)
    assert bin_correlation(x1, -0.3 * x1 + 1.0) == pytest.approx(-1.0, abs=1e-12)


def test_independent_signals_near_zero(rng):
    x1 = rng.normal(size=50000)
    x2 = rng.normal(size=50000)
    assert abs(bin_correlation(x1, x2)) < 0.03


def test_matches_population_normalized_formula(rng):
    x1 = rng.normal(size=40)
    x2 = 0.5 * x1 + rng.normal(size=40)
    cross = np.mean(x1 * x2) - x1.mean() * x2.mean()
    expected = cross / np.sqrt(x1.var() * x2.var())
    assert bin_correlation(x1, x2) == pytest.approx(expected, rel=1e-10)


@pytest.mark.parametrize('x1, x2', [
    (np.array([1.0]), np.array([2.0])),
    (np.array([]), np.array([])),
    (np.array([1.0, 1.0, 1.0]), np.array([1.0, 2.0, 3.0])),
    (np.array([1.0, 2.0, 3.0]), np.array([4.0, 4.0, 4.0])),
])
def test_degenerate_bins_raise(x1, x2):
    with pytest.raises(DegenerateBinError):
        bin_correlation(x1, x2, bin_index=7)


def test_rank_significance():
    x = np.arange(12, dtype=float)
    p_value, significant = rank_significance(x, x ** 3, 1e-2)
    assert p_value < 1e-2
    assert significant is True

    p_value, significant = rank_significance(x, np.array([3, 1, 4, 1, 5, 9, 2, 6, 5, 3, 5, 8.0]), 1e-6)
    assert significant is False


def _two_bin_layout():
    # bin 1: county pairs (0, 1), (1, 2), (2, 3), (3, 4) both ways; bin 2: a single pair (0, 4)
    origin = np.array([0, 1, 1, 2, 2, 3, 3, 4, 0, 4])
    destination = np.array([1, 0, 2, 1, 3, 2, 4, 3, 4, 0])
    offsets = np.array([0, 8, 10])
    return origin, destination, offsets


def test_single_pair_bin_is_undefined_not_zero():
    origin, destination, offsets = _two_bin_layout()
    x = np.array([1.0, 2.0, 3.0, 4.0, 5.0])
    curve = estimate_curve(origin[:9], destination[:9], np.array([0, 8, 9]), x, 5, (25.0, 60.0), 0.01)

    assert np.isfinite(curve.values[0])
    assert np.isnan(curve.values[1])
    assert curve.values[1] != 0.0
    assert curve.significant[1] is None
    assert curve.n_pairs == (8, 1)


def test_undefined_signals_drop_their_pairs():
    origin, destination, offsets = _two_bin_layout()
    x = np.array([1.0, 2.0, np.nan, 4.0, 5.0])
    curve = estimate_curve(origin, destination, offsets, x, 5, (25.0, 60.0), 0.01)
    # pairs touching county 2 are gone from bin 1
    assert curve.n_pairs == (4, 2)
    # (0, 4) and (4, 0) mirror each other
    assert curve.values[1] == pytest.approx(-1.0)


def test_zero_variance_week_gives_empty_curve():
    origin, destination, offsets = _two_bin_layout()
    curve = estimate_curve(origin, destination, offsets, np.full(5, 0.25), 1, (25.0, 60.0), 0.01)
    assert curve.is_empty
    assert all(s is None for s in curve.significant)


def test_curve_frame_and_undefined_factory():
    curve = CorrelationCurve.undefined(3, [25.0, 60.0, 80.0])
    frame = curve.to_frame()
    assert frame['bin_index'].tolist() == [1, 2, 3]
    assert frame['correlation'].isna().all()
    assert frame['significant'].isna().all()
    with pytest.raises(ValueError):
        CorrelationCurve(1, (25.0,), (0.1, 0.2), (None,), (0.5,), (2,))


def _estimator_inputs(grid_geo, rng, weeks=(1,)):
    binner = DistanceBinner([50.0, 100.0, 150.0])
    corpus = PairwiseCorpus.build(grid_geo, binner)
    values = rng.normal(size=(len(grid_geo), len(weeks)))
    signals = AlignedSignals(grid_geo.ids, tuple(weeks), values)
    return corpus, signals, binner


def test_estimator_on_grid(grid_geo, rng):
    corpus, signals, binner = _estimator_inputs(grid_geo, rng)
    estimator = CorrelationEstimator(corpus, signals, binner, 0.01)
    curve = estimator.compute(1)
    assert curve.num_bins == 3
    assert curve.midpoints_km == (25.0, 75.0, 125.0)
    assert curve.n_pairs == tuple(int(n) for n in corpus.counts_per_bin())
    assert all(-1.0 <= v <= 1.0 for v in curve.values)

    missing_week = estimator.compute(9)
    assert missing_week.is_empty
    assert missing_week.n_pairs == (0, 0, 0)


def test_estimator_rejects_misaligned_signals(grid_geo, rng):
    corpus, signals, binner = _estimator_inputs(grid_geo, rng)
    shuffled = AlignedSignals(tuple(reversed(signals.county_ids)), signals.weeks, signals.values)
    with pytest.raises(CSDataError):
        CorrelationEstimator(corpus, shuffled, binner, 0.01)
    with pytest.raises(ConfigurationError):
        CorrelationEstimator(corpus, signals, binner, 1.5)


def test_estimator_agrees_with_worker_entry(grid_geo, rng):
    corpus, signals, binner = _estimator_inputs(grid_geo, rng)
    from_corpus = CorrelationEstimator(corpus, signals, binner, 0.01).compute(1)
    from_arrays = estimate_curve(corpus.origin, corpus.destination, corpus.offsets,
                                 signals.column(1), 1, binner.midpoints(), 0.01)
    assert from_corpus.n_pairs == from_arrays.n_pairs
    np.testing.assert_allclose(from_corpus.values, from_arrays.values)
    assert from_corpus.significant == from_arrays.significant
