import pandas as pd
import pytest

from sci_proximity.config import HOME, NEIGHBOR, WEIGHT, DISTANCE, ENTITY, POP
from sci_proximity.construct.share_within_distance import connection_shares, share_within_distance


@pytest.fixture
def sci_edges():
    return pd.DataFrame({
        HOME: ['01001', '01001', '01001', '01003'],
        NEIGHBOR: ['01001', '01003', '06075', '01001'],
        WEIGHT: [10.0, 5.0, 1.0, 2.0],
    })


@pytest.fixture
def distances():
    return pd.DataFrame({
        HOME: ['01001', '01003', '01001', '06075'],
        NEIGHBOR: ['01003', '01001', '06075', '01001'],
        DISTANCE: [100.0, 100.0, 2000.0, 2000.0],
    })


@pytest.fixture
def populations():
    return pd.DataFrame({ENTITY: ['01001', '01003', '06075'], POP: [100.0, 200.0, 1000.0]})


def test_connection_shares(sci_edges, distances, populations):
    shares = connection_shares(sci_edges, distances, populations)
    home = shares[shares[HOME] == '01001'].set_index(NEIGHBOR)

    # SCI x population: 1000 connections to each neighbor
    assert home['connection_share'].tolist() == pytest.approx([1 / 3] * 3)
    assert shares.groupby(HOME)['connection_share'].sum().tolist() == pytest.approx([1.0, 1.0])


def test_share_within(sci_edges, distances, populations):
    within = share_within_distance(sci_edges, distances, populations)

    assert list(within.columns) == ['user_loc', 'share_within50', 'share_within150']
    row = within.set_index('user_loc').loc['01001']
    assert row['share_within50'] == pytest.approx(1 / 3)
    assert row['share_within150'] == pytest.approx(2 / 3)
    # 01003 only links to a county 100 miles away
    other = within.set_index('user_loc').loc['01003']
    assert other['share_within50'] == 0.0
    assert other['share_within150'] == pytest.approx(1.0)


def test_counties_without_distances_dropped(sci_edges, distances, populations):
    edges = pd.concat([sci_edges, pd.DataFrame({HOME: ['01001'], NEIGHBOR: ['99001'], WEIGHT: [50.0]})],
                      ignore_index=True)
    within = share_within_distance(edges, distances, populations, thresholds=(50,))
    assert within.set_index('user_loc').loc['01001', 'share_within50'] == pytest.approx(1 / 3)
