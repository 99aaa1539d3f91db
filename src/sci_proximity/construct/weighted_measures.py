"""
Weighted Proximity Measures
===========================
Builds "Social / Physical / LEX Proximity to Cases": for every home county
and time step, the share-weighted sum of an outcome (cases, deaths) over the
home's neighbors.

The share table is held as a sparse home x neighbor matrix per partition
and multiplied by a dense neighbor x date outcome matrix. Partitions (by
state prefix of the home county, or by time step) are independent and are
merged by concatenation.

Author: Research pipeline
Created: 2020
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import sparse

from sci_proximity.config import (
    HOME, NEIGHBOR, SHARE, DATE, ENTITY, VALUE, RATE, STATE_PREFIX_LENGTH,
)
from sci_proximity.errors import ConfigurationError, DataIntegrityError
from sci_proximity.ingest.fips import state_prefix
from sci_proximity.ingest.ingest_connectivity import ConnectivityShares

logger = logging.getLogger(__name__)

PARTITION_MODES = ('home_prefix', 'time_step', 'none')


@dataclass
class AggregationConfig:
    """How a weighted measure is computed and named."""
    measure: str = 'weighted_aggregate'
    partition_by: str = 'home_prefix'
    prefix_length: int = STATE_PREFIX_LENGTH
    dates_per_partition: int = 1
    max_workers: int = 1
    home_col: str = HOME
    date_col: str = DATE

    def __post_init__(self):
        if self.partition_by not in PARTITION_MODES:
            raise ConfigurationError(
                f"partition_by must be one of {PARTITION_MODES}, got {self.partition_by!r}")
        if self.prefix_length < 1:
            raise ConfigurationError(f"prefix_length must be >= 1, got {self.prefix_length}")
        if self.dates_per_partition < 1:
            raise ConfigurationError(
                f"dates_per_partition must be >= 1, got {self.dates_per_partition}")
        if self.max_workers < 1:
            raise ConfigurationError(f"max_workers must be >= 1, got {self.max_workers}")
        if not self.measure:
            raise ConfigurationError("measure name must not be empty")

    @property
    def rate_measure(self) -> str:
        return f'{self.measure}_per_10k'

    @property
    def output_columns(self) -> List[str]:
        return [self.home_col, self.date_col, self.measure, self.rate_measure]


@dataclass
class OutcomeMatrix:
    """Outcomes as entity x date arrays, with missing cells zeroed and flagged."""
    entities: pd.Index
    dates: pd.DatetimeIndex
    values: Dict[str, np.ndarray] = field(default_factory=dict)
    present: Dict[str, np.ndarray] = field(default_factory=dict)


@dataclass
class PartitionResult:
    key: str
    frame: pd.DataFrame
    n_edges: int


# =============================================================================
# Building blocks
# =============================================================================

def build_outcome_matrix(outcomes: pd.DataFrame, entities: Optional[Sequence[str]] = None,
                         columns: Sequence[str] = (VALUE, RATE)) -> OutcomeMatrix:
    """
    Pivot a long outcome table (entity, date, value, value_per_10k) to arrays.

    Args:
        outcomes: Long outcome table
        entities: Row order (the neighbor set); entities without outcomes
            get an all-missing row
        columns: Outcome columns to pivot

    Returns:
        OutcomeMatrix
    """
    dupes = outcomes.duplicated([ENTITY, DATE])
    if dupes.any():
        raise DataIntegrityError(f"{int(dupes.sum()):,} duplicate (entity, date) outcome rows")

    dates = pd.DatetimeIndex(sorted(outcomes[DATE].unique()))
    if entities is None:
        entities = sorted(outcomes[ENTITY].unique())
    entities = pd.Index(entities)

    matrix = OutcomeMatrix(entities=entities, dates=dates)
    for col in columns:
        wide = outcomes.pivot(index=ENTITY, columns=DATE, values=col)
        arr = wide.reindex(index=entities, columns=dates).to_numpy(dtype=float)
        present = ~np.isnan(arr)
        matrix.values[col] = np.where(present, arr, 0.0)
        matrix.present[col] = present.astype(float)
    return matrix


def share_matrix(shares: pd.DataFrame, neighbors: pd.Index) -> Tuple[pd.Index, sparse.csr_matrix]:
    """Sparse home x neighbor share matrix for one partition (or one date)."""
    homes = pd.Index(sorted(shares[HOME].unique()))
    rows = homes.get_indexer(shares[HOME])
    cols = neighbors.get_indexer(shares[NEIGHBOR])
    S = sparse.csr_matrix(
        (shares[SHARE].to_numpy(dtype=float), (rows, cols)),
        shape=(len(homes), len(neighbors)),
    )
    return homes, S


def _aggregate_block(homes: pd.Index, S: sparse.csr_matrix, matrix: OutcomeMatrix,
                     date_positions: np.ndarray, config: AggregationConfig) -> pd.DataFrame:
    """
    Weighted sums for a block of homes and dates.

    A neighbor with a missing outcome adds nothing for that date and the
    other shares are not rescaled. A (home, date) cell is dropped when no
    positive-share neighbor has an outcome.
    """
    pattern = S.copy()
    pattern.data = (pattern.data > 0).astype(float)

    dates = matrix.dates[date_positions]
    n_homes, n_dates = len(homes), len(dates)
    frame = pd.DataFrame({
        config.home_col: np.repeat(homes.to_numpy(), n_dates),
        config.date_col: np.tile(dates.to_numpy(), n_homes),
    })

    keep = np.zeros(n_homes * n_dates, dtype=bool)
    for col, name in ((VALUE, config.measure), (RATE, config.rate_measure)):
        weighted = np.asarray(S @ matrix.values[col][:, date_positions]).ravel()
        contributors = np.asarray(pattern @ matrix.present[col][:, date_positions]).ravel()
        has_data = contributors > 0
        frame[name] = np.where(has_data, weighted, np.nan)
        keep |= has_data

    return frame[keep]


def _date_chunks(n_dates: int, size: int) -> List[np.ndarray]:
    return [np.arange(i, min(i + size, n_dates)) for i in range(0, n_dates, size)]


# =============================================================================
# Partitions
# =============================================================================

def plan_partitions(shares: ConnectivityShares, matrix: OutcomeMatrix,
                    config: AggregationConfig) -> List[Tuple[str, pd.DataFrame, np.ndarray]]:
    """
    Split the work into independent (key, share rows, date positions) tasks.

    Raises:
        DataIntegrityError: if the tasks drop or double-count an edge or a date
    """
    table = shares.shares
    all_dates = np.arange(len(matrix.dates))

    if shares.time_varying:
        usable = table[DATE].isin(matrix.dates)
        if not usable.all():
            n_dates = table.loc[~usable, DATE].nunique()
            logger.info(f"Skipping {int((~usable).sum()):,} edges on {n_dates} dates with no outcomes")
        table = table[usable]

    if config.partition_by == 'home_prefix':
        prefixes = state_prefix(table[HOME], config.prefix_length)
        tasks = [(key, part, all_dates) for key, part in table.groupby(prefixes, sort=True)]
    elif config.partition_by == 'time_step':
        tasks = []
        for positions in _date_chunks(len(matrix.dates), config.dates_per_partition):
            key = f"{matrix.dates[positions[0]]:%Y-%m-%d}"
            if shares.time_varying:
                part = table[table[DATE].isin(matrix.dates[positions])]
            else:
                part = table
            tasks.append((key, part, positions))
    else:
        tasks = [('all', table, all_dates)]

    _check_coverage(tasks, len(table), len(matrix.dates), shares.time_varying, config)
    return tasks


def _check_coverage(tasks, n_edges: int, n_dates: int, time_varying: bool,
                    config: AggregationConfig):
    if config.partition_by == 'time_step':
        covered_dates = sum(len(positions) for _, _, positions in tasks)
        if covered_dates != n_dates:
            raise DataIntegrityError(
                f"Time partitions cover {covered_dates} dates, expected {n_dates}")
        if not time_varying:
            return
    covered_edges = sum(len(part) for _, part, _ in tasks)
    if covered_edges != n_edges:
        raise DataIntegrityError(
            f"Partitions cover {covered_edges:,} edges, expected {n_edges:,}")


def aggregate_partition(key: str, part: pd.DataFrame, matrix: OutcomeMatrix,
                        date_positions: np.ndarray, config: AggregationConfig,
                        time_varying: bool = False) -> PartitionResult:
    """Weighted measure for one partition."""
    if part.empty or len(date_positions) == 0:
        return PartitionResult(key=key, frame=_empty_frame(config), n_edges=len(part))

    if not time_varying:
        homes, S = share_matrix(part, matrix.entities)
        frame = _aggregate_block(homes, S, matrix, date_positions, config)
        return PartitionResult(key=key, frame=frame, n_edges=len(part))

    wanted = set(matrix.dates[date_positions])
    frames = []
    for date, day in part.groupby(DATE, sort=True):
        if date not in wanted:
            continue
        homes, S = share_matrix(day, matrix.entities)
        position = np.array([matrix.dates.get_loc(date)])
        frames.append(_aggregate_block(homes, S, matrix, position, config))
    frame = pd.concat(frames, ignore_index=True) if frames else _empty_frame(config)
    return PartitionResult(key=key, frame=frame, n_edges=len(part))


def _empty_frame(config: AggregationConfig) -> pd.DataFrame:
    frame = pd.DataFrame({col: pd.Series(dtype=float) for col in config.output_columns})
    frame[config.home_col] = frame[config.home_col].astype(object)
    frame[config.date_col] = pd.Series(dtype='datetime64[ns]')
    return frame


def merge_partitions(results: Sequence[PartitionResult], config: AggregationConfig) -> pd.DataFrame:
    """Concatenate partition results and sort by home then date."""
    frames = [r.frame for r in sorted(results, key=lambda r: r.key) if not r.frame.empty]
    if not frames:
        return _empty_frame(config)
    merged = pd.concat(frames, ignore_index=True)
    merged = merged.sort_values([config.home_col, config.date_col], kind='mergesort')
    return merged[config.output_columns].reset_index(drop=True)


# =============================================================================
# Entry point
# =============================================================================

def compute_weighted_measure(shares: ConnectivityShares, outcomes: pd.DataFrame,
                             config: Optional[AggregationConfig] = None) -> pd.DataFrame:
    """
    Share-weighted sum of neighbor outcomes for every (home, date).

    Args:
        shares: Normalized connectivity (static or time-varying)
        outcomes: Long outcome table (entity, date, value, value_per_10k)
        config: Naming and partitioning options

    Returns:
        DataFrame with columns home, date, <measure>, <measure>_per_10k,
        one row per (home, date) with at least one contributing neighbor,
        sorted by home then date
    """
    config = config or AggregationConfig()
    neighbors = sorted(shares.shares[NEIGHBOR].unique())
    matrix = build_outcome_matrix(outcomes, entities=neighbors)

    tasks = plan_partitions(shares, matrix, config)
    logger.info(f"{config.measure}: {shares.n_edges:,} edges, {len(matrix.dates)} dates, "
                f"{len(tasks)} partitions by {config.partition_by}")

    def run(task):
        key, part, positions = task
        result = aggregate_partition(key, part, matrix, positions, config, shares.time_varying)
        logger.info(f"{config.measure}: partition {key} -> {len(result.frame):,} rows")
        return result

    if config.max_workers > 1 and len(tasks) > 1:
        with ThreadPoolExecutor(max_workers=config.max_workers) as executor:
            results = list(executor.map(run, tasks))
    else:
        results = [run(task) for task in tasks]

    measure = merge_partitions(results, config)
    logger.info(f"{config.measure}: {len(measure):,} rows for "
                f"{measure[config.home_col].nunique():,} homes")
    return measure


def compute_source_measures(shares: ConnectivityShares, outcomes: Dict[str, pd.DataFrame],
                            source: str, home_col: str = 'user_loc',
                            **config_kwargs) -> pd.DataFrame:
    """
    Weighted measures of several outcomes for one connectivity source.

    Args:
        shares: Connectivity shares for the source
        outcomes: Outcome name ('cases', 'deaths') -> outcome series
        source: Measure prefix ('sci', 'dist', 'lex')
        home_col: Name of the home column in the output
        config_kwargs: Further AggregationConfig options

    Returns:
        One table with <source>_weighted_<outcome>[_per_10k] columns,
        outer-joined on (home, date)
    """
    merged = None
    for outcome, series in outcomes.items():
        config = AggregationConfig(measure=f'{source}_weighted_{outcome}',
                                   home_col=home_col, **config_kwargs)
        measure = compute_weighted_measure(shares, series, config)
        if merged is None:
            merged = measure
        else:
            merged = merged.merge(measure, on=[home_col, config.date_col], how='outer')
    if merged is None:
        raise ConfigurationError("No outcomes given")
    return merged.sort_values([home_col, DATE], kind='mergesort').reset_index(drop=True)


def write_weighted_measure(df: pd.DataFrame, path, parquet: bool = False) -> Path:
    """Write a weighted measure as CSV (and parquet alongside when asked)."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    out = df.copy()
    date_cols = out.select_dtypes(include='datetime').columns
    for col in date_cols:
        out[col] = out[col].dt.strftime('%Y-%m-%d')
    out.to_csv(path, index=False)
    logger.info(f"Saved: {path}")
    if parquet:
        parquet_path = path.with_suffix('.parquet')
        df.to_parquet(parquet_path, index=False)
        logger.info(f"Saved: {parquet_path}")
    return path
