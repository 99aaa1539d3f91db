"""
COVID-19 Outcome Ingestion
==========================
Downloads the Johns Hopkins CSSE county time series, reshapes it to a
county-date panel on a fixed cadence (every other Monday), attaches ACS
county populations, and computes period-over-period changes with negative
corrections clamped to zero.

Author: Research pipeline
Created: 2020
"""

import logging
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence

import numpy as np
import pandas as pd
import requests

from sci_proximity.config import (
    ENTITY, DATE, VALUE, POP, RATE, RAW_PATH,
    NYC_MERGE_MAP, MAX_JHU_FIPS, PER_POP_SCALE, DEFAULT_SKIP_THRESHOLD,
    CadenceConfig, DEFAULT_CADENCE,
)
from sci_proximity.errors import ConfigurationError, DataIntegrityError
from sci_proximity.ingest.fips import normalize_ids, apply_merge_map, check_skip_rate

logger = logging.getLogger(__name__)

# Snapshot of the CSSE repository used for the published results
JHU_COMMIT = '64689f437b15e336aca4b65f0240576f5a52c091'
JHU_URL = ("https://raw.githubusercontent.com/CSSEGISandData/COVID-19/{commit}/"
           "csse_covid_19_data/csse_covid_19_time_series/time_series_covid19_{measure}_US.csv")
JHU_MEASURES = ('confirmed', 'deaths')
JHU_DATE_FORMAT = '%m/%d/%y'

# ACS 2017 5-year DP05 column names
ACS_FIPS_COL = 'GEO.id2'
ACS_POP_COL = 'HC01_VC03'

OUTCOME_COLUMNS = ('entity_id', 'date', 'raw_count', 'population')

# =============================================================================
# Download
# =============================================================================

def download_jhu_time_series(measure: str = 'confirmed', dest_dir: Optional[Path] = None,
                             commit: str = JHU_COMMIT, force: bool = False) -> Optional[Path]:
    """
    Download a JHU CSSE US county time series file.

    Args:
        measure: 'confirmed' or 'deaths'
        dest_dir: Directory to store the file in (default: RAW_PATH/jhu)
        commit: Repository commit to pin the snapshot to
        force: If True, re-download even if the file exists

    Returns:
        Path to the CSV file, or None if the download failed
    """
    if measure not in JHU_MEASURES:
        raise ConfigurationError(f"Unknown JHU measure {measure!r}; expected one of {JHU_MEASURES}")

    dest_dir = Path(dest_dir) if dest_dir is not None else RAW_PATH / 'jhu'
    dest_dir.mkdir(parents=True, exist_ok=True)
    csv_path = dest_dir / f"time_series_covid19_{measure}_US_{commit[:7]}.csv"

    if csv_path.exists() and not force:
        logger.info(f"JHU {measure}: Using existing file {csv_path.name}")
        return csv_path

    url = JHU_URL.format(commit=commit, measure=measure)
    logger.info(f"JHU {measure}: Downloading from {url}")

    try:
        response = requests.get(url, timeout=120)
        response.raise_for_status()
    except requests.exceptions.RequestException as e:
        logger.error(f"JHU {measure}: Download failed - {e}")
        return None

    csv_path.write_bytes(response.content)
    logger.info(f"JHU {measure}: Saved {csv_path.stat().st_size / 1e6:.1f} MB "
                f"({datetime.now().isoformat(timespec='seconds')})")
    return csv_path


# =============================================================================
# Reshaping
# =============================================================================

def _is_jhu_date(column: str) -> bool:
    try:
        datetime.strptime(str(column), JHU_DATE_FORMAT)
    except ValueError:
        return False
    return True


def reshape_jhu_time_series(wide: pd.DataFrame, value_name: str = VALUE,
                            skip_threshold: float = DEFAULT_SKIP_THRESHOLD) -> pd.DataFrame:
    """
    Convert the wide JHU file (one column per day) to long county-date rows.

    Territories and 'unassigned' / 'out of state' rows (FIPS >= 80000) are
    dropped.

    Returns:
        DataFrame with columns entity, date, <value_name>
    """
    df = wide[wide['FIPS'].notna()]
    if 'iso2' in df.columns:
        df = df[df['iso2'] == 'US']
    fips_num = pd.to_numeric(df['FIPS'], errors='coerce')
    df = df[fips_num < MAX_JHU_FIPS]

    date_cols = [c for c in df.columns if _is_jhu_date(c)]
    if not date_cols:
        raise DataIntegrityError("No date columns found in JHU time series")

    long = df.melt(id_vars=['FIPS'], value_vars=date_cols, var_name=DATE, value_name=value_name)
    long[ENTITY] = normalize_ids(long['FIPS'])
    long[DATE] = pd.to_datetime(long[DATE], format=JHU_DATE_FORMAT)
    long[value_name] = pd.to_numeric(long[value_name], errors='coerce')

    malformed = long[ENTITY].isna() | long[value_name].isna() | (long[value_name] < 0)
    check_skip_rate(len(long), int(malformed.sum()), f'jhu {value_name}', skip_threshold)
    long = long[~malformed]

    logger.info(f"JHU {value_name}: {long[ENTITY].nunique():,} counties, "
                f"{long[DATE].min():%Y-%m-%d} to {long[DATE].max():%Y-%m-%d}")
    return long[[ENTITY, DATE, value_name]].reset_index(drop=True)


def load_county_populations(path, fips_col: str = ACS_FIPS_COL, pop_col: str = ACS_POP_COL,
                            merge_map: Optional[Dict[str, str]] = NYC_MERGE_MAP,
                            skip_threshold: float = DEFAULT_SKIP_THRESHOLD) -> pd.DataFrame:
    """
    Load county populations, summing sub-entities into their reporting unit.

    Returns:
        DataFrame with columns entity, pop
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Population data not found at {path}")
    raw = pd.read_csv(path, usecols=[fips_col, pop_col], dtype=str)
    return clean_populations(raw, fips_col, pop_col, merge_map, skip_threshold)


def clean_populations(raw: pd.DataFrame, fips_col: str = ACS_FIPS_COL, pop_col: str = ACS_POP_COL,
                      merge_map: Optional[Dict[str, str]] = NYC_MERGE_MAP,
                      skip_threshold: float = DEFAULT_SKIP_THRESHOLD) -> pd.DataFrame:
    """Normalize a raw population table; see load_county_populations."""
    pops = pd.DataFrame({
        ENTITY: normalize_ids(raw[fips_col]),
        POP: pd.to_numeric(raw[pop_col], errors='coerce'),
    })
    malformed = pops[ENTITY].isna() | pops[POP].isna() | (pops[POP] < 0)
    # ACS downloads carry a second header row of labels
    check_skip_rate(len(pops), int(malformed.sum()), 'population', skip_threshold)
    pops = pops[~malformed].copy()

    pops[ENTITY] = apply_merge_map(pops[ENTITY], merge_map)
    pops = pops.groupby(ENTITY, as_index=False)[POP].sum()
    logger.info(f"Population: {len(pops):,} counties")
    return pops


def select_cadence(df: pd.DataFrame, cadence: CadenceConfig = DEFAULT_CADENCE,
                   entity_col: str = ENTITY, date_col: str = DATE) -> pd.DataFrame:
    """
    Restrict a daily series to the configured cadence.

    Keeps days on `cadence.weekday`, then every `cadence.stride`-th such day
    per entity (positions stride, 2*stride, ...), up to `cadence.end_date`.
    """
    if not 0 <= cadence.weekday <= 6:
        raise ConfigurationError(f"weekday must be in 0..6, got {cadence.weekday}")
    if cadence.stride < 1:
        raise ConfigurationError(f"stride must be >= 1, got {cadence.stride}")

    out = df[df[date_col].dt.dayofweek == cadence.weekday]
    out = out.sort_values([entity_col, date_col])
    position = out.groupby(entity_col).cumcount() + 1
    out = out[position % cadence.stride == 0]
    if cadence.end_date is not None:
        out = out[out[date_col] <= cadence.end_date]

    logger.info(f"Cadence: kept {out[date_col].nunique()} time steps "
                f"(weekday={cadence.weekday}, stride={cadence.stride})")
    return out.reset_index(drop=True)


def cadence_dates(dates: Iterable, cadence: CadenceConfig = DEFAULT_CADENCE) -> pd.DatetimeIndex:
    """Every time step of the cadence between the first and last of `dates`."""
    dates = pd.to_datetime(pd.Series(list(dates))).dropna()
    if dates.empty:
        return pd.DatetimeIndex([])
    return pd.date_range(dates.min(), dates.max(), freq=cadence.step)


def build_outcome_series(long: pd.DataFrame, pops: pd.DataFrame,
                         value_col: str = VALUE) -> pd.DataFrame:
    """
    Attach population and per-10k rate to a long outcome table.

    Returns:
        DataFrame with columns entity, date, value, pop, value_per_10k
    """
    dupes = long.duplicated([ENTITY, DATE])
    if dupes.any():
        raise DataIntegrityError(f"{int(dupes.sum()):,} duplicate (entity, date) outcome rows")

    out = long.rename(columns={value_col: VALUE}).merge(pops[[ENTITY, POP]], on=ENTITY, how='left')
    pop = out[POP].where(out[POP] > 0)
    out[RATE] = out[VALUE] / pop * PER_POP_SCALE

    n_no_pop = int(pop.isna().groupby(out[ENTITY]).all().sum())
    if n_no_pop:
        logger.warning(f"{n_no_pop:,} entities have no population; their per-10k rate is missing")

    out = out.sort_values([ENTITY, DATE]).reset_index(drop=True)
    return out[[ENTITY, DATE, VALUE, POP, RATE]]


def prepare_jhu_outcomes(wide: pd.DataFrame, pops: pd.DataFrame,
                         cadence: CadenceConfig = DEFAULT_CADENCE) -> pd.DataFrame:
    """Wide JHU file -> cadence-filtered outcome series with per-10k rates."""
    long = reshape_jhu_time_series(wide)
    long = select_cadence(long, cadence)
    return build_outcome_series(long, pops)


def load_outcome_table(path, columns: Sequence[str] = OUTCOME_COLUMNS, id_kind: str = 'fips',
                       skip_threshold: float = DEFAULT_SKIP_THRESHOLD) -> pd.DataFrame:
    """
    Load a flat outcome table (entity_id, date, raw_count, population).

    A missing population leaves the per-10k rate missing; it does not make
    the row malformed.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Outcome table not found at {path}")
    sep = '\t' if path.suffix.lower() in ('.tsv', '.txt') else ','
    raw = pd.read_csv(path, sep=sep, usecols=list(columns), dtype=str)
    return clean_outcome_table(raw, columns, id_kind, skip_threshold)


def clean_outcome_table(raw: pd.DataFrame, columns: Sequence[str] = OUTCOME_COLUMNS,
                        id_kind: str = 'fips',
                        skip_threshold: float = DEFAULT_SKIP_THRESHOLD) -> pd.DataFrame:
    """Validate a raw flat outcome table; see load_outcome_table."""
    entity_col, date_col, count_col, pop_col = columns
    long = pd.DataFrame({
        ENTITY: normalize_ids(raw[entity_col], id_kind),
        DATE: pd.to_datetime(raw[date_col], errors='coerce'),
        VALUE: pd.to_numeric(raw[count_col], errors='coerce'),
    })
    malformed = long[[ENTITY, DATE, VALUE]].isna().any(axis=1) | (long[VALUE] < 0)
    check_skip_rate(len(long), int(malformed.sum()), 'outcomes', skip_threshold)

    pops = pd.DataFrame({ENTITY: long[ENTITY], POP: pd.to_numeric(raw[pop_col], errors='coerce')})
    pops = pops[~malformed].dropna().drop_duplicates(ENTITY)
    return build_outcome_series(long[~malformed], pops)


# =============================================================================
# Changes
# =============================================================================

def date_grid(df: pd.DataFrame, date_col: str = DATE,
              dates: Optional[Iterable] = None) -> pd.DatetimeIndex:
    """Ordered time steps: `dates` if given, else every date present in `df`."""
    values = df[date_col].dropna().unique() if dates is None else list(dates)
    return pd.DatetimeIndex(sorted(set(pd.to_datetime(values)))).astype('datetime64[ns]')


def lagged_values(df: pd.DataFrame, value_col: str, lag: int, entity_col: str = ENTITY,
                  date_col: str = DATE, dates: Optional[Iterable] = None) -> np.ndarray:
    """
    Value of `value_col` for the same entity `lag` time steps earlier.

    Steps are counted on the date grid, not by row position, so an entity
    with no row on the earlier step gets NaN. The result is aligned with
    the rows of `df`.

    Raises:
        DataIntegrityError: on duplicate (entity, date) rows or dates off the grid
    """
    grid = date_grid(df, date_col, dates)
    row_dates = pd.to_datetime(df[date_col]).astype('datetime64[ns]')
    position = grid.get_indexer(row_dates)
    if (position < 0).any():
        raise DataIntegrityError(f"{int((position < 0).sum()):,} rows have dates off the time grid")
    if df.duplicated([entity_col, date_col]).any():
        raise DataIntegrityError(f"Duplicate ({entity_col}, {date_col}) rows")

    prior = position - lag
    valid = prior >= 0
    prior_dates = np.full(len(df), np.datetime64('NaT'), dtype='datetime64[ns]')
    prior_dates[valid] = grid.values[prior[valid]]

    keys = pd.DataFrame({entity_col: df[entity_col].to_numpy(), date_col: prior_dates})
    lookup = pd.DataFrame({entity_col: df[entity_col].to_numpy(), date_col: row_dates.to_numpy(),
                           '_lagged': df[value_col].to_numpy(dtype=float)})
    return keys.merge(lookup, on=[entity_col, date_col], how='left')['_lagged'].to_numpy()


def period_change(df: pd.DataFrame, value_col: str, lag: int = 1,
                  out_col: Optional[str] = None, entity_col: str = ENTITY,
                  date_col: str = DATE, dates: Optional[Iterable] = None) -> pd.DataFrame:
    """
    Change in `value_col` over `lag` time steps within each entity.

    Cumulative counts should never fall; a negative change is a data
    correction and is set to zero. Every clamp is logged. Rows whose entity
    has no value `lag` steps earlier on the date grid (`dates`, or every
    date in `df`) have no change (NaN).
    """
    out_col = out_col or f'chg_{value_col}'
    out = df.sort_values([entity_col, date_col]).reset_index(drop=True)
    change = out[value_col] - lagged_values(out, value_col, lag, entity_col, date_col, dates)

    negative = change < 0
    if negative.any():
        clamped = out.loc[negative, [entity_col, date_col]].assign(original=change[negative])
        for entity, date, original in clamped.itertuples(index=False):
            logger.info(f"Clamped {out_col} for {entity} on {pd.Timestamp(date):%Y-%m-%d}: "
                        f"{original:.4f} -> 0")
        logger.warning(f"{out_col}: clamped {int(negative.sum()):,} negative changes to zero")

    out[out_col] = change.where(~negative, 0.0)
    return out
