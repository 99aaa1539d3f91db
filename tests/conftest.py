import numpy as np
import pandas as pd
import pytest

from sci_proximity.config import HOME, NEIGHBOR, WEIGHT, ENTITY, DATE, VALUE, POP, RATE
from sci_proximity.ingest.ingest_connectivity import add_self_loops, shares_from_edges


def make_outcomes(rows, pop=10000.0):
    """Outcome series from (entity, date, value) tuples; rate equals value at pop 10k."""
    df = pd.DataFrame(rows, columns=[ENTITY, DATE, VALUE])
    df[DATE] = pd.to_datetime(df[DATE])
    df[POP] = pop
    df[RATE] = df[VALUE] / df[POP] * 10000
    return df


@pytest.fixture
def abc_edges():
    return pd.DataFrame({
        HOME: ['A', 'A'],
        NEIGHBOR: ['B', 'C'],
        WEIGHT: [2.0, 1.0],
    })


@pytest.fixture
def abc_shares(abc_edges):
    return shares_from_edges(add_self_loops(abc_edges, 0.0))


@pytest.fixture
def county_ids():
    return ['01001', '01003', '01005', '01007',
            '06001', '06003', '06005', '06007',
            '36005', '36061', '36081', '36119']


@pytest.fixture
def county_shares(county_ids):
    rng = np.random.default_rng(7)
    rows = []
    for home in county_ids:
        for neighbor in county_ids:
            if rng.random() < 0.2 and home != neighbor:
                continue
            rows.append((home, neighbor, float(rng.integers(1, 1000))))
    edges = pd.DataFrame(rows, columns=[HOME, NEIGHBOR, WEIGHT])
    return shares_from_edges(edges)


@pytest.fixture
def county_dates():
    return pd.date_range('2020-03-02', periods=6, freq='14D')


@pytest.fixture
def county_outcomes(county_ids, county_dates):
    rng = np.random.default_rng(11)
    rows = []
    for entity in county_ids:
        total = 0
        for date in county_dates:
            total += int(rng.integers(0, 50))
            rows.append((entity, date, float(total)))
    df = make_outcomes(rows)
    # a few missing cells
    missing = rng.random(len(df)) < 0.1
    df.loc[missing, VALUE] = np.nan
    df.loc[missing, RATE] = np.nan
    df['pop'] = rng.integers(1000, 100000, len(df)).astype(float)
    df[RATE] = df[VALUE] / df['pop'] * 10000
    return df
