"""
Share of Friends Within X Miles
===============================
For each county, estimates the share of its residents' friendship links
that point to counties within a given distance. Links to a county are
proportional to SCI x friend-county population (assumes Facebook
penetration is similar across counties).
"""

import logging
from typing import Sequence

import pandas as pd

from sci_proximity.config import HOME, NEIGHBOR, WEIGHT, DISTANCE, ENTITY, POP, WITHIN_MILES
from sci_proximity.ingest.ingest_connectivity import add_self_loops

logger = logging.getLogger(__name__)


def connection_shares(edges: pd.DataFrame, distances: pd.DataFrame,
                      pops: pd.DataFrame) -> pd.DataFrame:
    """
    Share of each home's estimated connections located in each neighbor.

    Only pairs where both counties appear in the distance table are kept.
    Self-pairs get distance 0.

    Returns:
        DataFrame with columns home, neighbor, distance, connection_share
    """
    known = set(distances[HOME])
    dat = edges[edges[HOME].isin(known) & edges[NEIGHBOR].isin(known)]
    dat = dat.merge(distances[[HOME, NEIGHBOR, DISTANCE]], on=[HOME, NEIGHBOR], how='left')
    dat.loc[dat[HOME] == dat[NEIGHBOR], DISTANCE] = 0.0

    n_missing = int(dat[DISTANCE].isna().sum())
    if n_missing:
        logger.info(f"{n_missing:,} county pairs have no distance")

    pop = pops.set_index(ENTITY)[POP]
    dat = dat[dat[HOME].isin(pop.index) & dat[NEIGHBOR].isin(pop.index)].copy()
    dat['connections'] = dat[WEIGHT] * dat[NEIGHBOR].map(pop)

    totals = dat.groupby(HOME)['connections'].transform('sum')
    dat = dat[totals > 0].copy()
    dat['connection_share'] = dat['connections'] / totals[totals > 0]
    return dat[[HOME, NEIGHBOR, DISTANCE, 'connection_share']].reset_index(drop=True)


def share_within_distance(edges: pd.DataFrame, distances: pd.DataFrame, pops: pd.DataFrame,
                          thresholds: Sequence[float] = WITHIN_MILES,
                          home_col: str = 'user_loc') -> pd.DataFrame:
    """
    Share of each home's connections within each distance threshold.

    Args:
        edges: Cleaned SCI edges (home, neighbor, weight), before share
            normalization
        distances: Cleaned distances (home, neighbor, distance)
        pops: County populations (entity, pop)
        thresholds: Distances (miles) to report
        home_col: Name of the home column in the output

    Returns:
        DataFrame with columns <home_col>, share_within<X> for each threshold
    """
    distances = add_self_loops(distances, 0.0, value_col=DISTANCE)
    shares = connection_shares(edges, distances, pops)

    out = pd.DataFrame({HOME: sorted(shares[HOME].unique())})
    for threshold in thresholds:
        # a missing distance never counts as within
        within = shares['connection_share'].where(shares[DISTANCE] <= threshold, 0.0)
        col = f'share_within{threshold:g}'
        out[col] = out[HOME].map(within.groupby(shares[HOME]).sum())

    logger.info(f"Share within {list(thresholds)} miles for {len(out):,} counties")
    return out.rename(columns={HOME: home_col})
