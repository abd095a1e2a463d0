from datetime import date, timedelta

import numpy as np
import pandas as pd
import pytest

from covid_spatial.steps.step_1_county_geo_index import GeoIndex

ANCHOR = date(2020, 1, 21)


def make_reference(points, state='Kansas', population=100000, first_fips=20001):
    """County reference table for (lat, lon) points, FIPS numbered from first_fips."""
    return pd.DataFrame({
        'fips': [str(first_fips + k) for k in range(len(points))],
        'name': [f'County {k}' for k in range(len(points))],
        'state': state,
        'land_area': 500.0,
        'latitude': [p[0] for p in points],
        'longitude': [p[1] for p in points],
        'population': population,
    })


def make_weekly_records(weekly_cases, anchor=ANCHOR):
    """
    Daily records with one row per county and week, dated on the week's first day.

    weekly_cases maps FIPS -> list of case counts for weeks 1, 2, ...
    """
    rows = []
    for fips, counts in weekly_cases.items():
        for k, cases in enumerate(counts):
            rows.append({
                'date': pd.Timestamp(anchor + timedelta(days=7 * k)),
                'county': f'County {fips}',
                'state': 'Kansas',
                'fips': fips,
                'cases': cases,
                'deaths': 0,
            })
    return pd.DataFrame(rows)


@pytest.fixture
def line_reference():
    """Five counties on the equator at 0, 1, 2, 5 and 10 degrees of longitude."""
    return make_reference([(0.0, 0.0), (0.0, 1.0), (0.0, 2.0), (0.0, 5.0), (0.0, 10.0)])


@pytest.fixture
def grid_geo():
    """25 counties on a 5 x 5 grid with 0.3 degree spacing."""
    points = [(40.0 + 0.3 * i, -98.0 + 0.3 * j) for i in range(5) for j in range(5)]
    return GeoIndex.from_reference(make_reference(points))


@pytest.fixture
def rng():
    return np.random.default_rng(20200121)
