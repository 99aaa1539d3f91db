"""
Pipeline Configuration
======================
Paths, data constants and logging setup shared by the ingest and construct
stages.

Author: Research pipeline
Created: 2020
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import pandas as pd

# =============================================================================
# Paths
# =============================================================================

BASE_PATH = Path(os.environ.get('SCI_PROXIMITY_HOME', Path.cwd()))
INPUT_PATH = BASE_PATH / 'data' / 'input'
RAW_PATH = BASE_PATH / 'data' / 'raw'
INTERMEDIATE_PATH = BASE_PATH / 'data' / 'intermediate'
OUTPUT_PATH = BASE_PATH / 'data' / 'output'
LOG_PATH = BASE_PATH / 'logs'

# =============================================================================
# Data constants
# =============================================================================

# Hopkins reports all of New York City under New York County (Manhattan)
NYC_REPORTING_FIPS = '36061'
NYC_BOROUGH_FIPS = ('36005', '36047', '36081', '36085')
NYC_MERGE_MAP = {fips: NYC_REPORTING_FIPS for fips in NYC_BOROUGH_FIPS}

# County codes above this are territories
MAX_DOMESTIC_FIPS = 57000
# Hopkins uses 80xxx / 90xxx for out-of-state and unassigned cases
MAX_JHU_FIPS = 80000

FIPS_WIDTH = 5
STATE_PREFIX_LENGTH = 2

PER_POP_SCALE = 10000

# Rows that fail validation may be skipped up to this share of the input
DEFAULT_SKIP_THRESHOLD = 0.5

# Shares must sum to one within this tolerance
SHARE_TOLERANCE = 1e-9

# Distance thresholds (miles) for the share-of-friends-within measures
WITHIN_MILES = (50, 150)

# First period with a notable number of US cases
PANEL_START_DATE = pd.Timestamp('2020-03-16')


# =============================================================================
# Canonical column names
# =============================================================================

HOME = 'home'
NEIGHBOR = 'neighbor'
WEIGHT = 'weight'
DISTANCE = 'distance'
SHARE = 'share'
DATE = 'date'
ENTITY = 'entity'
VALUE = 'value'
POP = 'pop'
RATE = 'value_per_10k'


@dataclass(frozen=True)
class CadenceConfig:
    """Which days of a daily series are kept as time steps.

    weekday follows pandas (Monday=0). Of the matching days, positions
    stride, 2*stride, ... (1-based, per entity) are kept.
    """
    weekday: int = 0
    stride: int = 2
    end_date: Optional[pd.Timestamp] = pd.Timestamp('2020-07-20')

    @property
    def step(self) -> pd.Timedelta:
        """Spacing of consecutive kept time steps."""
        return pd.Timedelta(weeks=self.stride)


DEFAULT_CADENCE = CadenceConfig()

# =============================================================================
# Logging
# =============================================================================

def setup_logging(log_name: str, level: int = logging.INFO,
                  log_dir: Optional[Path] = None) -> logging.Logger:
    """Configure file + console logging for a driver script."""
    log_dir = Path(log_dir) if log_dir is not None else LOG_PATH
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(log_dir / f'{log_name}.log'),
            logging.StreamHandler()
        ]
    )
    return logging.getLogger(log_name)
