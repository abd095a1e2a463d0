"""
Five counties on the equator at 0, 1, 2, 5 and 10 degrees of longitude, three
weeks of records, three distance bins.

Bins (km): (0, 170] holds the 1-degree neighbours, (170, 610] the 2 to 5 degree
pairs, (610, 1170] the pairs reaching the county at 10 degrees. Week 3 injects
a spike in the far county, so the far bin is dominated by one outlier and the
nearest bin stays comparatively coherent.
"""

import json

import numpy as np
import pandas as pd
import pytest

from conftest import ANCHOR, make_reference, make_weekly_records
from covid_spatial.steps.step_1_county_geo_index import GeoIndex
from covid_spatial.steps.step_3_weekly_signals import WeeklySignalTable
from covid_spatial.steps.step_6_weekly_batch import (
    STATUS_EMPTY, STATUS_OK, main, run_batch
)
from covid_spatial.utils.config import AnalysisConfig

POINTS = [(0.0, 0.0), (0.0, 1.0), (0.0, 2.0), (0.0, 5.0), (0.0, 10.0)]
BOUNDS = (170.0, 610.0, 1170.0)

# Weekly cases: flat for two weeks, then week 3 deviates by 100, 0, 90, 50 and 10000 cases
WEEKLY_CASES = {
    '20001': [700, 700, 800],
    '20002': [700, 700, 700],
    '20003': [700, 700, 790],
    '20004': [700, 700, 750],
    '20005': [700, 700, 10700],
}


def scenario_config(**overrides):
    params = dict(
        anchor_date=ANCHOR,
        week_start=1,
        week_end=3,
        max_distance_km=1170.0,
        bin_upper_bounds=BOUNDS,
        min_counties_per_week=2,
        significance_alpha=0.2,
        workers=1,
    )
    params.update(overrides)
    return AnalysisConfig(**params)


@pytest.fixture
def scenario():
    reference = make_reference(POINTS)
    geo = GeoIndex.from_reference(reference)
    population = dict(zip(reference['fips'], reference['population'].astype(float)))
    table = WeeklySignalTable.build(make_weekly_records(WEEKLY_CASES), population, ANCHOR)
    return geo, table


def test_three_week_scenario(scenario):
    geo, table = scenario
    batch = run_batch(scenario_config(), geo=geo, table=table)

    assert batch.weeks == [1, 2, 3]
    # identical signals in weeks 1 and 2 leave every bin without variance
    assert batch.get(1).status == STATUS_EMPTY
    assert batch.get(2).status == STATUS_EMPTY

    week3 = batch.get(3)
    assert week3.status == STATUS_OK
    assert week3.total_cases == 13740.0
    curve = week3.curve
    assert curve.midpoints_km == (85.0, 390.0, 890.0)
    assert curve.n_pairs == (4, 10, 6)
    assert all(np.isfinite(curve.values))

    nearest, farthest = curve.values[0], curve.values[-1]
    assert nearest == pytest.approx(-0.99449, abs=1e-4)
    assert farthest == pytest.approx(-0.99996, abs=1e-4)
    assert nearest > farthest

    assert curve.significant == (True, False, True)
    mid2, mid3 = curve.midpoints_km[1], curve.midpoints_km[2]
    assert mid2 <= week3.xi_significance_km <= mid3
    # every bin is negative, so the interpolated length is undefined
    assert week3.xi_interp_km is None


def test_scenario_parallel_run_matches(scenario):
    geo, table = scenario
    serial = run_batch(scenario_config(), geo=geo, table=table).to_frame()
    parallel = run_batch(scenario_config(workers=2), geo=geo, table=table).to_frame()
    pd.testing.assert_frame_equal(serial, parallel)


def write_inputs(data_dir):
    data_dir.mkdir()
    make_reference(POINTS).drop(columns='population').to_csv(data_dir / 'county_reference.csv', index=False)
    make_weekly_records(WEEKLY_CASES).to_csv(data_dir / 'us-counties-2020.csv', index=False)
    pd.DataFrame({
        'FIPStxt': [str(20001 + k) for k in range(5)],
        'POP_ESTIMATE_2020': [100000] * 5,
        'POP_ESTIMATE_2021': [100000] * 5,
        'POP_ESTIMATE_2022': [100000] * 5,
    }).to_csv(data_dir / 'PopulationEstimates.csv', index=False)


def test_command_line_run(tmp_path):
    write_inputs(tmp_path / 'data')
    out = tmp_path / 'out'
    code = main([
        '--data-dir', str(tmp_path / 'data'),
        '--output-dir', str(out),
        '--bin-bounds', '170,610,1170',
        '--max-distance-km', '1170',
        '--min-counties-per-week', '2',
        '--week-start', '1',
        '--significance-alpha', '0.2',
        '--workers', '1',
    ])
    assert code == 0

    series = pd.read_csv(out / 'step_6_weekly_time_series.csv')
    assert series['week'].tolist() == [1, 2, 3]
    assert list(series.columns[4:7]) == ['C_85km', 'C_390km', 'C_890km']
    assert series['xi_significance_km'].iloc[2] == 390.0
    assert np.isnan(series['delta_cases'].iloc[0])

    summary = json.loads((out / 'step_6_run_summary.json').read_text())
    assert summary['status_counts'] == {STATUS_EMPTY: 2, STATUS_OK: 1}
    assert (out / 'step_6_correlation_curves.csv').exists()


def test_command_line_rejects_bad_bins(tmp_path):
    code = main(['--bin-bounds', '300,100,1000', '--output-dir', str(tmp_path)])
    assert code == 1
    assert not (tmp_path / 'step_6_weekly_time_series.csv').exists()


def test_command_line_rejects_unparsable_alpha(tmp_path, monkeypatch):
    monkeypatch.setenv('CS_SIGNIFICANCE_ALPHA', '0.05x')
    code = main(['--output-dir', str(tmp_path)])
    assert code == 1
    assert not (tmp_path / 'step_6_run_summary.json').exists()
