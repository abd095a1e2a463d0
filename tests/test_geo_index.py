import numpy as np
import pandas as pd
import pytest

from conftest import make_reference
from covid_spatial.steps.step_1_county_geo_index import (
    EARTH_RADIUS_KM, GeoIndex, average_population, great_circle_distance,
    load_county_reference, load_population_estimates, normalize_fips
)
from covid_spatial.utils.exceptions import CSDataError, DataGapError

KM_PER_DEGREE = EARTH_RADIUS_KM * np.pi / 180.0


def test_one_degree_along_equator():
    assert great_circle_distance(0.0, 0.0, 0.0, 1.0) == pytest.approx(KM_PER_DEGREE, rel=1e-9)


def test_distance_symmetric_and_zero_on_diagonal(rng):
    points = [(rng.uniform(25, 49), rng.uniform(-124, -67)) for _ in range(12)]
    geo = GeoIndex.from_reference(make_reference(points))
    ids = geo.ids
    for a in ids:
        assert geo.distance(a, a) == 0.0
        for b in ids:
            assert geo.distance(a, b) == pytest.approx(geo.distance(b, a), rel=1e-6)

    matrix = geo.distance_matrix()
    assert np.allclose(matrix, matrix.T)
    assert np.all(np.diag(matrix) == 0.0)


def test_unknown_county_distance_raises(line_reference):
    geo = GeoIndex.from_reference(line_reference)
    with pytest.raises(DataGapError) as excinfo:
        geo.distance('20001', '99999')
    assert excinfo.value.identity == '99999'


def test_normalize_fips_pads_and_rejects():
    codes = pd.Series(['1001', 1003.0, '06037', 'abc', '123456', None], dtype=object)
    normalized = normalize_fips(codes)
    assert list(normalized.iloc[:3]) == ['01001', '01003', '06037']
    assert normalized.iloc[3:].isna().all()
    assert normalized.notna().sum() == 3


def test_exclusions_are_recorded_with_reasons():
    reference = pd.DataFrame({
        'fips': ['20001', '20003', '20005', '20007', '72001', 'bad', '20001', '20009'],
        'name': list('ABCDEFGH'),
        'state': ['Kansas'] * 4 + ['Puerto Rico', 'Kansas', 'Kansas', 'Kansas'],
        'latitude': [38.0, 38.5, np.nan, 39.0, 18.2, 38.0, 38.0, 39.5],
        'longitude': [-98.0, -98.5, -99.0, -99.5, -66.5, -98.0, -98.0, -97.0],
        'population': [50000, 8000, 20000, np.nan, 30000, 40000, 60000, 15000],
    })
    geo = GeoIndex.from_reference(reference, min_population=10000)

    assert geo.ids == ('20001', '20009')
    reasons = geo.excluded_ids
    assert reasons['20003'] == 'population below 10000'
    assert reasons['20005'] == 'missing coordinates'
    assert reasons['20007'] == 'missing population'
    assert reasons['72001'] == 'unknown region'
    assert reasons['bad'] == 'unresolvable county code'
    assert geo.get('20001').population == 50000
    assert geo.get('20003') is None
    assert '20003' not in geo


def test_population_lookup_overrides_column(line_reference):
    population = {'20001': 5000.0, '20002': 250000.0}
    geo = GeoIndex.from_reference(line_reference, population=population)
    assert geo.ids == ('20002',)
    assert geo.excluded_ids['20001'] == 'population below 10000'
    assert geo.excluded_ids['20003'] == 'missing population'


def test_county_records(line_reference):
    geo = GeoIndex.from_reference(line_reference)
    county = geo.county_at(geo.index_of('20004'))
    assert county.region == 'Midwest'
    assert county.longitude == 5.0
    frame = geo.to_frame()
    assert list(frame['fips']) == list(geo.ids)
    assert geo.exclusions_frame().empty


def test_average_population_never_zero_fills():
    estimates = pd.DataFrame({
        'FIPStxt': ['1001', '1003', '1005'],
        'POP_ESTIMATE_2020': [100.0, np.nan, 300.0],
        'POP_ESTIMATE_2021': [200.0, np.nan, np.nan],
    })
    population = average_population(estimates, [2020, 2021, 2022])
    assert population['01001'] == 150.0
    assert np.isnan(population['01003'])
    assert population['01005'] == 300.0


def test_average_population_requires_a_year_column():
    estimates = pd.DataFrame({'FIPStxt': ['1001'], 'POP_ESTIMATE_2019': [1.0]})
    with pytest.raises(CSDataError):
        average_population(estimates, [2020])


def test_load_population_csv_with_thousands_separator(tmp_path):
    path = tmp_path / 'PopulationEstimates.csv'
    path.write_text('FIPStxt,State,POP_ESTIMATE_2020,POP_ESTIMATE_2021\n'
                    '1001,AL,"55,000","57,000"\n')
    population = load_population_estimates(path, [2020, 2021])
    assert population['01001'] == 56000.0


def test_load_reference_maps_gazetteer_columns(tmp_path):
    path = tmp_path / 'county_reference.csv'
    path.write_text('GEOID,NAME,STATE,ALAND_SQMI,INTPTLAT,INTPTLONG\n'
                    '01001,Autauga,Alabama,594.4,32.53,-86.64\n')
    reference = load_county_reference(path)
    assert {'fips', 'name', 'state', 'land_area', 'latitude', 'longitude'} <= set(reference.columns)
    assert reference.loc[0, 'fips'] == '01001'


def test_load_reference_missing_columns(tmp_path):
    path = tmp_path / 'county_reference.csv'
    path.write_text('fips,name\n01001,Autauga\n')
    with pytest.raises(CSDataError):
        load_county_reference(path)
