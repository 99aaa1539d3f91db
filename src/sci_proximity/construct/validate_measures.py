"""
Weighted Measure Validation
===========================
Sanity checks for connectivity shares and weighted measures: shares sum to
one, measures are non-negative, output keys are unique and sorted, and
partitioned results match a full-data control computation.

Author: Research pipeline
Created: 2020
"""

import logging
from dataclasses import replace
from pathlib import Path
from typing import Optional

import numpy as np
import pandas as pd

from sci_proximity.config import HOME, DATE, SHARE, SHARE_TOLERANCE
from sci_proximity.errors import PartitionMismatchError
from sci_proximity.ingest.ingest_connectivity import ConnectivityShares
from sci_proximity.construct.weighted_measures import AggregationConfig, compute_weighted_measure

logger = logging.getLogger(__name__)

# =============================================================================
# Validation Functions
# =============================================================================

def validate_shares(shares: ConnectivityShares, tol: float = SHARE_TOLERANCE) -> dict:
    """Check that shares are in [0, 1] and sum to one per home (per date)."""
    table = shares.shares
    by = [DATE, HOME] if shares.time_varying else [HOME]
    checks = {}

    sums = table.groupby(by)[SHARE].sum()
    deviation = (sums - 1.0).abs()
    checks['share_sums'] = {
        'expected': f'1 +/- {tol:g}',
        'n_groups': len(sums),
        'actual_min': sums.min() if len(sums) else np.nan,
        'actual_max': sums.max() if len(sums) else np.nan,
        'pass': bool((deviation <= tol).all())
    }

    checks['share_range'] = {
        'expected': '[0, 1]',
        'actual_min': table[SHARE].min() if len(table) else np.nan,
        'actual_max': table[SHARE].max() if len(table) else np.nan,
        'pass': bool(((table[SHARE] >= 0) & (table[SHARE] <= 1 + tol)).all())
    }

    checks['excluded_not_present'] = {
        'expected': 'excluded homes absent from shares',
        'n_excluded': len(shares.excluded_homes),
        'pass': (shares.time_varying or
                 not set(shares.excluded_homes) & set(table[HOME]))
    }
    return checks


def validate_measure(df: pd.DataFrame, config: Optional[AggregationConfig] = None) -> dict:
    """Check non-negativity, key uniqueness and sort order of a weighted measure."""
    config = config or AggregationConfig()
    keys = [config.home_col, config.date_col]
    checks = {}

    for col in (config.measure, config.rate_measure):
        values = df[col].dropna()
        checks[f'{col}_nonnegative'] = {
            'expected': '>= 0',
            'actual_min': values.min() if len(values) else np.nan,
            'pass': bool((values >= 0).all())
        }

    checks['unique_keys'] = {
        'expected': 'one row per (home, date)',
        'n_duplicates': int(df.duplicated(keys).sum()),
        'pass': not df.duplicated(keys).any()
    }

    sorted_df = df.sort_values(keys, kind='mergesort')
    checks['sorted'] = {
        'expected': 'sorted by home then date',
        'pass': sorted_df.index.equals(df.index)
    }

    checks['no_empty_rows'] = {
        'expected': 'every row has a value',
        'pass': not df[[config.measure, config.rate_measure]].isna().all(axis=1).any()
    }
    return checks


def compare_measures(left: pd.DataFrame, right: pd.DataFrame,
                     config: AggregationConfig, tol: float = SHARE_TOLERANCE) -> dict:
    """Row-level comparison of two weighted measure tables."""
    keys = [config.home_col, config.date_col]
    merged = left.merge(right, on=keys, how='outer', suffixes=('_left', '_right'), indicator=True)

    only_one_side = int((merged['_merge'] != 'both').sum())
    max_diff = 0.0
    n_diff = 0
    for col in (config.measure, config.rate_measure):
        a = merged[f'{col}_left'].to_numpy(dtype=float)
        b = merged[f'{col}_right'].to_numpy(dtype=float)
        both = ~np.isnan(a) & ~np.isnan(b)
        diff = np.abs(a[both] - b[both])
        if diff.size:
            max_diff = max(max_diff, float(diff.max()))
        n_diff += int((diff > tol).sum()) + int((np.isnan(a) != np.isnan(b)).sum())

    return {
        'n_rows_left': len(left),
        'n_rows_right': len(right),
        'n_unmatched_rows': only_one_side,
        'n_mismatched_values': n_diff,
        'max_abs_diff': max_diff,
        'pass': only_one_side == 0 and n_diff == 0
    }


def check_partition_invariance(shares: ConnectivityShares, outcomes: pd.DataFrame,
                               config: AggregationConfig, tol: float = SHARE_TOLERANCE,
                               strict: bool = True) -> dict:
    """
    Compare a partitioned computation with a single-partition control run.

    Raises:
        PartitionMismatchError: in strict mode, if the two disagree
    """
    partitioned = compute_weighted_measure(shares, outcomes, config)
    control = compute_weighted_measure(shares, outcomes, replace(config, partition_by='none', max_workers=1))
    result = compare_measures(partitioned, control, config, tol)

    if not result['pass']:
        msg = (f"Partitioning by {config.partition_by} changed {config.measure}: "
               f"{result['n_unmatched_rows']} unmatched rows, "
               f"{result['n_mismatched_values']} mismatched values "
               f"(max diff {result['max_abs_diff']:.3g})")
        if strict:
            raise PartitionMismatchError(msg, n_mismatched=result['n_mismatched_values'] + result['n_unmatched_rows'],
                                         max_abs_diff=result['max_abs_diff'])
        logger.warning(msg)
    return result


def summarize_measure(df: pd.DataFrame, config: Optional[AggregationConfig] = None) -> pd.DataFrame:
    """Cross-home summary of a weighted measure by date."""
    config = config or AggregationConfig()
    return (df.groupby(config.date_col)
              .agg(n_homes=(config.home_col, 'nunique'),
                   mean=(config.measure, 'mean'),
                   median=(config.measure, 'median'),
                   max=(config.measure, 'max'),
                   mean_per_10k=(config.rate_measure, 'mean'))
              .reset_index())

# =============================================================================
# Main Validation Report
# =============================================================================

def run_validation_report(shares: ConnectivityShares, measure: pd.DataFrame,
                          config: AggregationConfig, output_dir: Optional[Path] = None) -> bool:
    """Print share and measure checks; optionally save the by-date summary."""
    print("="*70)
    print(f"{config.measure.upper()} VALIDATION REPORT")
    print("="*70)
    print(f"Homes with shares: {shares.shares[HOME].nunique():,}")
    print(f"Excluded homes: {len(shares.excluded_homes):,}")
    print(f"Rows: {len(measure):,}")

    all_pass = True
    for title, checks in (("1. SHARES", validate_shares(shares)),
                          ("2. WEIGHTED MEASURE", validate_measure(measure, config))):
        print("\n" + "-"*70)
        print(title)
        print("-"*70)
        for check_name, result in checks.items():
            status = "PASS" if result['pass'] else "FAIL"
            print(f"  {check_name}: {status}")
            if not result['pass']:
                print(f"    Details: {result}")
                all_pass = False

    summary = summarize_measure(measure, config)
    print("\n" + "-"*70)
    print("3. BY-DATE SUMMARY")
    print("-"*70)
    print(summary.round(4).to_string(index=False))

    if output_dir is not None:
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        summary_path = output_dir / f'{config.measure}_summary.csv'
        summary.to_csv(summary_path, index=False)
        print(f"\nSaved: {summary_path.name}")

    return all_pass
