"""
Connectivity Ingestion
======================
Loads county-to-county connectivity tables (Facebook Social Connectedness
Index, NBER county distances, PlaceIQ LEX mobility exchange) and turns them
into per-home shares that sum to one.

Author: Research pipeline
Created: 2020
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import numpy as np
import pandas as pd

from sci_proximity.config import (
    HOME, NEIGHBOR, WEIGHT, DISTANCE, SHARE, DATE,
    NYC_MERGE_MAP, MAX_DOMESTIC_FIPS, DEFAULT_SKIP_THRESHOLD,
)
from sci_proximity.errors import ConfigurationError
from sci_proximity.ingest.fips import (
    normalize_ids, apply_merge_map, within_domain, check_skip_rate,
)

logger = logging.getLogger(__name__)

# Source column names in the published files
SCI_COLUMNS = ('user_loc', 'fr_loc', 'scaled_sci')
DISTANCE_COLUMNS = ('county1', 'county2', 'mi_to_county')
LEX_COLUMNS = ('date', 'county1', 'county2', 'lex')


@dataclass
class ConnectivityShares:
    """Normalized connectivity: one row per (home, neighbor[, date]) with a share."""
    shares: pd.DataFrame
    excluded_homes: List = field(default_factory=list)
    time_varying: bool = False
    source: str = ''
    # cleaned edges before self-loops and normalization (SCI loader)
    edges: Optional[pd.DataFrame] = None

    @property
    def homes(self) -> List[str]:
        return sorted(self.shares[HOME].unique())

    @property
    def n_edges(self) -> int:
        return len(self.shares)


# =============================================================================
# Reading & cleaning
# =============================================================================

def read_edge_table(path, columns: Optional[Sequence[str]] = None,
                    sep: Optional[str] = None) -> pd.DataFrame:
    """
    Read a raw edge table. Tab-delimited for .tsv/.txt, comma otherwise.

    All columns are read as strings so identifiers keep their leading zeros.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Edge table not found at {path}")
    if sep is None:
        sep = '\t' if path.suffix.lower() in ('.tsv', '.txt') else ','

    df = pd.read_csv(path, sep=sep, usecols=list(columns) if columns else None, dtype=str)
    logger.info(f"Loaded {len(df):,} rows from {path.name}")
    return df


def clean_edges(
    raw: pd.DataFrame,
    home_col: str,
    neighbor_col: str,
    value_col: str,
    value_name: str = WEIGHT,
    date_col: Optional[str] = None,
    id_kind: str = 'fips',
    max_code: Optional[int] = MAX_DOMESTIC_FIPS,
    merge_map: Optional[Dict[str, str]] = NYC_MERGE_MAP,
    blank_values: str = 'malformed',
    skip_threshold: float = DEFAULT_SKIP_THRESHOLD,
    label: str = 'edges',
) -> pd.DataFrame:
    """
    Validate and collapse a raw edge list.

    Steps: normalize identifiers, skip malformed rows, merge reporting
    units, discard pairs outside the valid domain, and average duplicate
    pairs created by the merge.

    Args:
        raw: Raw edge table
        home_col, neighbor_col, value_col: Source column names
        value_name: Output name of the value column
        date_col: Date column for time-varying tables
        id_kind: 'fips' or 'code'
        max_code: Largest valid FIPS code (None disables the domain filter)
        merge_map: Sub-entity -> reporting entity map
        blank_values: 'malformed' counts empty values as malformed rows,
            'drop' treats them as missing join keys and drops them quietly
        skip_threshold: Largest tolerated share of malformed rows
        label: Name used in log messages

    Returns:
        DataFrame with columns [date,] home, neighbor, <value_name>
    """
    if blank_values not in ('malformed', 'drop'):
        raise ConfigurationError(f"blank_values must be 'malformed' or 'drop', got {blank_values!r}")

    n_total = len(raw)
    raw_values = raw[value_col]
    blank = raw_values.isna() | (raw_values.astype(str).str.strip() == '')

    df = pd.DataFrame({
        HOME: normalize_ids(raw[home_col], id_kind),
        NEIGHBOR: normalize_ids(raw[neighbor_col], id_kind),
        value_name: pd.to_numeric(raw_values, errors='coerce'),
    }, index=raw.index)
    keys = [HOME, NEIGHBOR]
    if date_col is not None:
        df.insert(0, DATE, pd.to_datetime(raw[date_col], errors='coerce'))
        keys = [DATE] + keys

    malformed = df[keys].isna().any(axis=1) | (df[value_name] < 0)
    if blank_values == 'malformed':
        malformed |= df[value_name].isna()
    else:
        malformed |= df[value_name].isna() & ~blank
        n_blank = int((blank & ~malformed).sum())
        if n_blank:
            logger.info(f"{label}: dropping {n_blank:,} rows with no {value_col}")
        df = df[~blank | malformed]
        malformed = malformed[~blank | malformed]

    check_skip_rate(n_total, int(malformed.sum()), label, skip_threshold)
    df = df[~malformed].copy()

    df[HOME] = apply_merge_map(df[HOME], merge_map)
    df[NEIGHBOR] = apply_merge_map(df[NEIGHBOR], merge_map)

    in_domain = (within_domain(df[HOME], id_kind, max_code) &
                 within_domain(df[NEIGHBOR], id_kind, max_code))
    n_outside = int((~in_domain).sum())
    if n_outside:
        logger.info(f"{label}: discarded {n_outside:,} pairs outside the valid domain")
    df = df[in_domain]

    n_before = len(df)
    df = df.groupby(keys, sort=True)[value_name].mean().reset_index()
    if len(df) < n_before:
        logger.info(f"{label}: averaged {n_before - len(df):,} duplicate pairs")

    logger.info(f"{label}: {len(df):,} edges, {df[HOME].nunique():,} homes")
    return df


def domain_homes(raw: pd.DataFrame, home_col: str, id_kind: str = 'fips',
                 max_code: Optional[int] = MAX_DOMESTIC_FIPS,
                 merge_map: Optional[Dict[str, str]] = NYC_MERGE_MAP) -> List[str]:
    """Valid, in-domain home identifiers present in a raw table."""
    ids = apply_merge_map(normalize_ids(raw[home_col], id_kind), merge_map)
    ids = ids[within_domain(ids, id_kind, max_code)].dropna()
    return sorted(ids.unique())


# =============================================================================
# Self-loops & shares
# =============================================================================

def add_self_loops(edges: pd.DataFrame, value: float, value_col: str = WEIGHT) -> pd.DataFrame:
    """
    Add a (home, home) edge carrying `value` for every home that lacks one.

    Rules used by the loaders: SCI self-loops get weight 0 and distance
    self-loops get distance 0. Existing self-loops are left untouched.
    """
    keys = [DATE] if DATE in edges.columns else []
    homes = edges[keys + [HOME]].drop_duplicates()
    existing = edges.loc[edges[HOME] == edges[NEIGHBOR], keys + [HOME]].drop_duplicates()

    missing = homes.merge(existing, how='left', indicator=True)
    missing = missing[missing['_merge'] == 'left_only'].drop(columns='_merge')
    if missing.empty:
        return edges

    loops = missing.assign(**{NEIGHBOR: missing[HOME], value_col: float(value)})
    logger.info(f"Synthesized {len(loops):,} self-loops with {value_col}={value}")

    out = pd.concat([edges, loops[edges.columns]], ignore_index=True)
    return out.sort_values(keys + [HOME, NEIGHBOR]).reset_index(drop=True)


def compute_shares(edges: pd.DataFrame, value_col: str = WEIGHT,
                   by: Sequence[str] = (HOME,),
                   homes: Optional[Iterable[str]] = None):
    """
    Normalize weights to shares within each `by` group.

    Groups with zero total weight are excluded and logged. When `homes` is
    given, homes from it that have no edges at all are reported as excluded
    as well.

    Returns:
        (shares DataFrame, list of excluded groups)
    """
    by = list(by)
    totals = edges.groupby(by)[value_col].transform('sum')
    zero = ~(totals > 0)

    excluded = []
    if zero.any():
        groups = edges.loc[zero, by].drop_duplicates()
        excluded = [tuple(r) if len(by) > 1 else r[0] for r in groups.itertuples(index=False)]

    if homes is not None:
        present = set(edges[HOME])
        excluded += [h for h in homes if h not in present]

    for group in excluded:
        logger.warning(f"Excluding home {group}: no neighbor with positive weight")

    shares = edges.loc[~zero].copy()
    shares[SHARE] = shares[value_col] / totals[~zero]
    shares = shares.drop(columns=[value_col])
    return shares.reset_index(drop=True), excluded


def shares_from_edges(edges: pd.DataFrame, value_col: str = WEIGHT,
                      homes: Optional[Iterable[str]] = None,
                      source: str = '') -> ConnectivityShares:
    """Build ConnectivityShares from cleaned edges. Time-varying if a date column is present."""
    time_varying = DATE in edges.columns
    by = (DATE, HOME) if time_varying else (HOME,)
    shares, excluded = compute_shares(edges, value_col=value_col, by=by, homes=homes)
    return ConnectivityShares(shares=shares, excluded_homes=excluded,
                              time_varying=time_varying, source=source)


def distance_weights(distances: pd.DataFrame, value_col: str = DISTANCE) -> pd.DataFrame:
    """
    Inverse-distance weights, 1 / (1 + distance).

    A pair with no distance is dropped from its home's neighbor set; it is
    never treated as zero distance.
    """
    missing = distances[value_col].isna()
    if missing.any():
        logger.info(f"Dropping {int(missing.sum()):,} pairs with no distance")
    out = distances[~missing].copy()
    out[WEIGHT] = 1.0 / (1.0 + out[value_col])
    return out.drop(columns=[value_col])


# =============================================================================
# Loaders
# =============================================================================

def load_sci_shares(path, columns: Sequence[str] = SCI_COLUMNS, id_kind: str = 'fips',
                    max_code: Optional[int] = MAX_DOMESTIC_FIPS,
                    merge_map: Optional[Dict[str, str]] = NYC_MERGE_MAP,
                    synthesize_self_loops: bool = True,
                    skip_threshold: float = DEFAULT_SKIP_THRESHOLD) -> ConnectivityShares:
    """Load a Social Connectedness Index table and normalize it to shares."""
    home_col, neighbor_col, value_col = columns
    raw = read_edge_table(path, columns)
    edges = clean_edges(raw, home_col, neighbor_col, value_col, id_kind=id_kind,
                        max_code=max_code, merge_map=merge_map,
                        skip_threshold=skip_threshold, label='sci')
    cleaned = edges
    if synthesize_self_loops:
        edges = add_self_loops(edges, 0.0)
    homes = domain_homes(raw, home_col, id_kind, max_code, merge_map)
    shares = shares_from_edges(edges, homes=homes, source='sci')
    shares.edges = cleaned
    return shares


def load_distance_table(path, columns: Sequence[str] = DISTANCE_COLUMNS,
                        id_kind: str = 'fips',
                        max_code: Optional[int] = MAX_DOMESTIC_FIPS,
                        merge_map: Optional[Dict[str, str]] = NYC_MERGE_MAP,
                        synthesize_self_loops: bool = True,
                        skip_threshold: float = DEFAULT_SKIP_THRESHOLD) -> pd.DataFrame:
    """Load a county-to-county distance table (home, neighbor, distance)."""
    home_col, neighbor_col, value_col = columns
    raw = read_edge_table(path, columns)
    distances = clean_edges(raw, home_col, neighbor_col, value_col, value_name=DISTANCE,
                            id_kind=id_kind, max_code=max_code, merge_map=merge_map,
                            blank_values='drop', skip_threshold=skip_threshold,
                            label='distance')
    if synthesize_self_loops:
        distances = add_self_loops(distances, 0.0, value_col=DISTANCE)
    return distances


def load_distance_shares(path, columns: Sequence[str] = DISTANCE_COLUMNS,
                         **kwargs) -> ConnectivityShares:
    """Load distances and normalize inverse-distance weights to shares."""
    distances = load_distance_table(path, columns, **kwargs)
    return shares_from_edges(distance_weights(distances), source='distance')


def load_lex_shares(path, columns: Sequence[str] = LEX_COLUMNS, id_kind: str = 'fips',
                    max_code: Optional[int] = MAX_DOMESTIC_FIPS,
                    merge_map: Optional[Dict[str, str]] = NYC_MERGE_MAP,
                    dates: Optional[Iterable] = None,
                    skip_threshold: float = DEFAULT_SKIP_THRESHOLD) -> ConnectivityShares:
    """
    Load LEX into time-varying shares.

    `path` is either a long table (date, home, neighbor, lex) or a directory
    of daily PlaceIQ county matrices (see read_lex_wide_files). Shares are
    normalized separately for every (date, home).

    Args:
        dates: Restrict to these time steps (e.g. the case-data cadence)
    """
    if Path(path).is_dir():
        columns = LEX_COLUMNS
        raw = read_lex_wide_files(path, dates)
    else:
        raw = read_edge_table(path, columns)
    date_col, home_col, neighbor_col, value_col = columns
    edges = clean_edges(raw, home_col, neighbor_col, value_col, date_col=date_col,
                        id_kind=id_kind, max_code=max_code, merge_map=merge_map,
                        skip_threshold=skip_threshold, label='lex')
    if dates is not None:
        keep = pd.DatetimeIndex(pd.to_datetime(list(dates)))
        edges = edges[edges[DATE].isin(keep)].reset_index(drop=True)
        logger.info(f"lex: {len(edges):,} edges on {edges[DATE].nunique()} selected dates")
    return shares_from_edges(edges, source='lex')


def lex_wide_to_long(wide: pd.DataFrame, date, home_col: str = 'COUNTY') -> pd.DataFrame:
    """
    Reshape one day of the published PlaceIQ county LEX matrix into long form.

    The published file has one row per home county and one column per
    neighbor county.
    """
    long = wide.melt(id_vars=[home_col], var_name='county2', value_name='lex')
    long = long.rename(columns={home_col: 'county1'})
    long.insert(0, 'date', pd.Timestamp(date))
    long['lex'] = pd.to_numeric(long['lex'], errors='coerce')
    return long[np.isfinite(long['lex'])].reset_index(drop=True)


def read_lex_wide_files(directory, dates: Optional[Iterable] = None,
                        pattern: str = '*.csv*', home_col: str = 'COUNTY') -> pd.DataFrame:
    """
    Read a directory of daily county LEX matrices into one long table.

    The date of each file is taken from a YYYY-MM-DD stamp in its name
    (e.g. county_lex_2020-03-16.csv.gz). Files without a stamp, or outside
    `dates` when given, are skipped.

    Returns:
        DataFrame with columns date, county1, county2, lex
    """
    directory = Path(directory)
    wanted = None if dates is None else set(pd.to_datetime(list(dates)))

    frames = []
    for path in sorted(directory.glob(pattern)):
        stamp = re.search(r'\d{4}-\d{2}-\d{2}', path.name)
        if stamp is None:
            logger.warning(f"lex: no date in file name {path.name}, skipping")
            continue
        date = pd.Timestamp(stamp.group())
        if wanted is not None and date not in wanted:
            continue
        frames.append(lex_wide_to_long(pd.read_csv(path, dtype=str), date, home_col))

    if not frames:
        raise FileNotFoundError(f"No LEX files matching {pattern} in {directory}")
    logger.info(f"lex: read {len(frames)} daily matrices from {directory}")
    return pd.concat(frames, ignore_index=True)
