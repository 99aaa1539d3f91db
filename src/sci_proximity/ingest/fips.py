"""
Identifier Utilities
====================
Normalization of county FIPS codes and region codes, reporting-unit merges
(e.g. the five NYC boroughs reported as one county), domain filtering and
accounting for malformed rows.
"""

import logging
from typing import Dict, Optional

import numpy as np
import pandas as pd

from sci_proximity.config import FIPS_WIDTH, DEFAULT_SKIP_THRESHOLD
from sci_proximity.errors import ConfigurationError, DataIntegrityError

logger = logging.getLogger(__name__)

ID_KINDS = ('fips', 'code')


def normalize_ids(values: pd.Series, kind: str = 'fips',
                  width: int = FIPS_WIDTH) -> pd.Series:
    """
    Convert raw identifiers to canonical strings.

    Args:
        values: Raw identifier column (numbers or strings)
        kind: 'fips' for zero-padded numeric codes, 'code' for NUTS3 /
            country style codes
        width: Width of a padded FIPS code

    Returns:
        Object Series of canonical identifiers, NaN where a value cannot
        be parsed
    """
    if kind == 'fips':
        cleaned = values.astype(str).str.strip().str.replace('"', '', regex=False)
        numeric = pd.to_numeric(cleaned, errors='coerce')
        valid = (numeric.notna() & (numeric >= 0) &
                 (numeric < 10 ** width) & (numeric % 1 == 0))
        out = pd.Series(np.nan, index=values.index, dtype=object)
        out.loc[valid] = numeric[valid].astype('int64').astype(str).str.zfill(width)
        return out
    if kind == 'code':
        cleaned = values.where(values.notna(), '').astype(str).str.strip().str.upper()
        return cleaned.where(cleaned != '', np.nan).astype(object)
    raise ConfigurationError(f"Unknown identifier kind {kind!r}; expected one of {ID_KINDS}")


def apply_merge_map(ids: pd.Series, merge_map: Optional[Dict[str, str]]) -> pd.Series:
    """Map sub-entities onto the reporting entity they are published under."""
    if not merge_map:
        return ids
    return ids.replace(merge_map)


def within_domain(ids: pd.Series, kind: str = 'fips',
                  max_code: Optional[int] = None) -> pd.Series:
    """Boolean mask of identifiers inside the valid domain range."""
    if kind != 'fips' or max_code is None:
        return ids.notna()
    return pd.to_numeric(ids, errors='coerce') <= max_code


def check_skip_rate(n_total: int, n_skipped: int, label: str,
                    threshold: float = DEFAULT_SKIP_THRESHOLD) -> float:
    """
    Log the number of skipped rows and abort if too many were skipped.

    Returns:
        The skip rate

    Raises:
        DataIntegrityError: if the skip rate exceeds the threshold
    """
    rate = n_skipped / n_total if n_total > 0 else 0.0
    if n_skipped:
        logger.warning(f"{label}: skipped {n_skipped:,} of {n_total:,} malformed rows ({100*rate:.2f}%)")
    if rate > threshold:
        raise DataIntegrityError(
            f"{label}: {100*rate:.1f}% of rows are malformed "
            f"(threshold {100*threshold:.1f}%)"
        )
    return rate


def state_prefix(ids: pd.Series, length: int = 2) -> pd.Series:
    """Leading characters of each identifier (state code for FIPS)."""
    return ids.astype(str).str[:length]
