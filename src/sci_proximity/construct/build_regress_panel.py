"""
Time Series Regression Panel
============================
Joins county case/death changes with the weighted proximity measures,
builds lags and log(x + 1) transforms, and fits the time-series
regressions described by explicit, validated regression specs.

Cases are analyzed as 2-week changes and deaths (which take longer to
manifest) as 4-week changes; the panel has one row per county per 2-week
period.

Author: Research pipeline
Created: 2020
"""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm

from sci_proximity.config import (
    ENTITY, DATE, VALUE, POP, PER_POP_SCALE, PANEL_START_DATE, STATE_PREFIX_LENGTH,
)
from sci_proximity.errors import ConfigurationError, DataIntegrityError
from sci_proximity.ingest.ingest_covid_cases import (
    cadence_dates, date_grid, lagged_values, period_change,
)

logger = logging.getLogger(__name__)

# Weighted measure source -> letter used in variable names (swc, dwc, lwc)
SOURCE_CODES = {'sci': 's', 'dist': 'd', 'lex': 'l'}
REQUIRED_SOURCES = ('sci', 'dist')

CASE_LAGS = (1, 2)
DEATH_LAGS = (2, 4)

ID_COLUMNS = ['county_fips', 'state_fips', DATE, 'week_num']
OWN_COLUMNS = [POP, 'cases', 'deaths', 'chg_cases', 'chg_deaths_4wk']

# =============================================================================
# Variable names
# =============================================================================

def case_base(source: Optional[str] = None) -> str:
    """Name stem of a 2-week case change ('chg_cases_10k', 'chg_swc_10k', ...)."""
    return 'chg_cases_10k' if source is None else f'chg_{SOURCE_CODES[source]}wc_10k'


def death_base(source: Optional[str] = None) -> str:
    """Name stem of a 4-week death change ('chg_deaths_10k_4wk', 'chg_swd_10k_4wk', ...)."""
    return 'chg_deaths_10k_4wk' if source is None else f'chg_{SOURCE_CODES[source]}wd_10k_4wk'


def current_column(base: str) -> str:
    """Column holding the unlagged change for a stem."""
    if base.startswith(('chg_cases', 'chg_deaths')):
        return base
    return 'change_' + base[len('chg_'):]


def panel_columns(sources: Sequence[str] = tuple(SOURCE_CODES),
                  extra_columns: Iterable[str] = ()) -> List[str]:
    """Every column build_time_series_panel can produce for these sources."""
    cols = list(ID_COLUMNS) + list(OWN_COLUMNS)
    groups = [(case_base(), CASE_LAGS), (death_base(), DEATH_LAGS)]
    for source in sources:
        cols += [f'{source}_weighted_{outcome}{suffix}'
                 for outcome in ('cases', 'deaths') for suffix in ('', '_per_10k')]
        groups += [(case_base(source), CASE_LAGS), (death_base(source), DEATH_LAGS)]
    for base, lags in groups:
        lagged = [f'l{k}_{base}' for k in lags]
        cols += [current_column(base)] + lagged
        cols += [f'log_{base}'] + [f'log_{name}' for name in lagged]
    cols += list(extra_columns)
    return list(dict.fromkeys(cols))


# =============================================================================
# Panel construction
# =============================================================================

def weighted_measure_changes(measures: pd.DataFrame, source: str,
                             home_col: str = 'user_loc',
                             dates: Optional[Iterable] = None) -> pd.DataFrame:
    """
    Clamped changes of a source's per-10k weighted cases (2 weeks) and
    deaths (4 weeks, i.e. two periods).

    Periods are steps on `dates` (default: the regular cadence spanning the
    measure dates); a home with no measure on the earlier step gets no change.
    """
    if source not in SOURCE_CODES:
        raise ConfigurationError(f"Unknown weighted measure source {source!r}")

    if dates is None:
        dates = cadence_dates(measures[DATE])
    out = measures.copy()
    cases_col = f'{source}_weighted_cases_per_10k'
    deaths_col = f'{source}_weighted_deaths_per_10k'
    if cases_col not in out.columns:
        raise DataIntegrityError(f"{source} measures have no {cases_col} column")

    out = period_change(out, cases_col, lag=1, out_col=current_column(case_base(source)),
                        entity_col=home_col, dates=dates)
    if deaths_col in out.columns:
        out = period_change(out, deaths_col, lag=2, out_col=current_column(death_base(source)),
                            entity_col=home_col, dates=dates)
    return out


def own_outcome_changes(cases: pd.DataFrame, deaths: Optional[pd.DataFrame] = None) -> pd.DataFrame:
    """County cases/deaths with clamped 2-week case and 4-week death changes."""
    own = cases[[ENTITY, DATE, VALUE, POP]].rename(columns={VALUE: 'cases'})
    if deaths is not None:
        own = own.merge(deaths[[ENTITY, DATE, VALUE]].rename(columns={VALUE: 'deaths'}),
                        on=[ENTITY, DATE], how='left')
    else:
        own['deaths'] = np.nan

    own = period_change(own, 'cases', lag=1, out_col='chg_cases')
    own = period_change(own, 'deaths', lag=2, out_col='chg_deaths_4wk')
    return own


def add_lags(panel: pd.DataFrame, base: str, lags: Sequence[int],
             group_col: str = 'county_fips') -> pd.DataFrame:
    """Lagged copies l<k>_<base> of a change column, k periods back on the panel's dates."""
    for k in lags:
        panel[f'l{k}_{base}'] = lagged_values(panel, current_column(base), k,
                                              entity_col=group_col, date_col=DATE)
    return panel


def add_logs(panel: pd.DataFrame, base: str, lags: Sequence[int]) -> pd.DataFrame:
    """log(x + 1) of the current and lagged change columns."""
    panel[f'log_{base}'] = np.log(panel[current_column(base)] + 1)
    for k in lags:
        panel[f'log_l{k}_{base}'] = np.log(panel[f'l{k}_{base}'] + 1)
    return panel


def build_time_series_panel(cases: pd.DataFrame, deaths: Optional[pd.DataFrame],
                            weighted: Mapping[str, pd.DataFrame],
                            covariates: Optional[pd.DataFrame] = None,
                            start_date: Optional[pd.Timestamp] = PANEL_START_DATE,
                            home_col: str = 'user_loc') -> pd.DataFrame:
    """
    Build the county x 2-week regression panel.

    Args:
        cases: Case outcome series (entity, date, value, pop, value_per_10k)
        deaths: Death outcome series, or None
        weighted: Source ('sci', 'dist', optional 'lex') -> weighted measure
            table with <source>_weighted_cases[_per_10k] and optionally
            <source>_weighted_deaths[_per_10k] columns
        covariates: County covariates keyed by 'county_fips'
        start_date: First period kept (lags are built after this filter)
        home_col: Home column of the weighted measure tables

    Returns:
        Panel DataFrame sorted by county_fips, date
    """
    missing = [s for s in REQUIRED_SOURCES if s not in weighted]
    if missing:
        raise ConfigurationError(f"Missing required weighted measures: {missing}")

    panel = own_outcome_changes(cases, deaths).rename(columns={ENTITY: 'county_fips'})
    periods = date_grid(panel)

    # counties need SCI and distance measures; LEX covers fewer counties.
    # Measures are joined onto the county x period grid before differencing.
    for source, measures in weighted.items():
        keep = [c for c in measures.columns if c.startswith(f'{source}_weighted')]
        table = measures[[home_col, DATE] + keep].rename(columns={home_col: 'county_fips'})
        how = 'inner' if source in REQUIRED_SOURCES else 'left'
        panel = panel.merge(table, on=['county_fips', DATE], how=how)
        panel = weighted_measure_changes(panel, source, 'county_fips', dates=periods)

    if start_date is not None:
        panel = panel[panel[DATE] >= start_date]

    if covariates is not None:
        panel = panel.merge(covariates, on='county_fips', how='left')

    panel = panel.sort_values(['county_fips', DATE]).reset_index(drop=True)
    panel['state_fips'] = panel['county_fips'].astype(str).str[:STATE_PREFIX_LENGTH]

    pop = panel[POP].where(panel[POP] > 0)
    panel['chg_cases_10k'] = panel['chg_cases'] / pop * PER_POP_SCALE
    panel['chg_deaths_10k_4wk'] = panel['chg_deaths_4wk'] / pop * PER_POP_SCALE

    sources = [None] + list(weighted)
    for source in sources:
        if current_column(case_base(source)) in panel.columns:
            panel = add_lags(panel, case_base(source), CASE_LAGS)
            panel = add_logs(panel, case_base(source), CASE_LAGS)
        if current_column(death_base(source)) in panel.columns:
            panel = add_lags(panel, death_base(source), DEATH_LAGS)
            panel = add_logs(panel, death_base(source), DEATH_LAGS)

    # week of year as in lubridate::week
    panel['week_num'] = (panel[DATE].dt.dayofyear - 1) // 7 + 1

    logger.info(f"Panel: {len(panel):,} rows, {panel['county_fips'].nunique():,} counties, "
                f"{panel[DATE].nunique()} periods")
    return panel


# =============================================================================
# Regression specs
# =============================================================================

@dataclass(frozen=True)
class RegressionSpec:
    """One regression: outcome, predictors, dummy fixed effects, cluster variable."""
    name: str
    outcome: str
    predictors: Tuple[str, ...]
    fixed_effects: Tuple[str, ...] = ()
    cluster: Optional[str] = None
    min_obs: int = 100

    @property
    def fields(self) -> Tuple[str, ...]:
        extra = (self.cluster,) if self.cluster else ()
        return (self.outcome,) + self.predictors + self.fixed_effects + extra

    def validate(self, available_columns: Iterable[str]):
        """Raise ConfigurationError if this regression names unknown or conflicting fields."""
        available = set(available_columns)
        if not self.predictors:
            raise ConfigurationError(f"{self.name}: no predictors")
        unknown = [f for f in self.fields if f not in available]
        if unknown:
            raise ConfigurationError(f"{self.name}: unknown fields {unknown}")
        if self.outcome in self.predictors:
            raise ConfigurationError(f"{self.name}: outcome {self.outcome} is also a predictor")
        if len(set(self.predictors)) != len(self.predictors):
            raise ConfigurationError(f"{self.name}: duplicate predictors")
        if self.min_obs < 1:
            raise ConfigurationError(f"{self.name}: min_obs must be >= 1")


def spec_from_dict(entry: Mapping) -> RegressionSpec:
    try:
        return RegressionSpec(
            name=str(entry['name']),
            outcome=str(entry['outcome']),
            predictors=tuple(entry['predictors']),
            fixed_effects=tuple(entry.get('fixed_effects', ())),
            cluster=entry.get('cluster'),
            min_obs=int(entry.get('min_obs', 100)),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ConfigurationError(f"Invalid regression spec {entry!r}: {e}") from e


def load_regression_specs(source: Union[str, Path, Sequence[Mapping]],
                          available_columns: Optional[Iterable[str]] = None) -> List[RegressionSpec]:
    """
    Load regression specs from a JSON file (a list of objects) or from dicts,
    validating every named field against the panel columns.
    """
    if isinstance(source, (str, Path)):
        with open(source) as f:
            entries = json.load(f)
    else:
        entries = list(source)

    if not isinstance(entries, list):
        raise ConfigurationError("Regression specs must be a list")

    available = list(available_columns) if available_columns is not None else panel_columns()
    specs = [spec_from_dict(entry) for entry in entries]
    names = [s.name for s in specs]
    if len(set(names)) != len(names):
        raise ConfigurationError("Regression spec names must be unique")
    for spec in specs:
        spec.validate(available)
    logger.info(f"Loaded {len(specs)} regression specs")
    return specs


def default_case_specs() -> List[RegressionSpec]:
    """Baseline case regressions: own lags plus social and physical proximity lags."""
    own = ('log_l1_chg_cases_10k', 'log_l2_chg_cases_10k')
    social = ('log_l1_chg_swc_10k', 'log_l2_chg_swc_10k')
    physical = ('log_l1_chg_dwc_10k', 'log_l2_chg_dwc_10k')
    fe = ('county_fips', 'week_num')
    return [
        RegressionSpec('cases_own', 'log_chg_cases_10k', own, fe, 'state_fips'),
        RegressionSpec('cases_social', 'log_chg_cases_10k', own + social, fe, 'state_fips'),
        RegressionSpec('cases_physical', 'log_chg_cases_10k', own + physical, fe, 'state_fips'),
        RegressionSpec('cases_both', 'log_chg_cases_10k', own + social + physical, fe, 'state_fips'),
    ]


# =============================================================================
# Estimation
# =============================================================================

def fit_regression(panel: pd.DataFrame, spec: RegressionSpec):
    """
    OLS with dummy fixed effects and (optionally) clustered standard errors.

    Returns:
        statsmodels results, or None if there are too few complete rows
    """
    spec.validate(panel.columns)
    subset = panel.dropna(subset=list(spec.fields))
    subset = subset[np.isfinite(subset[[spec.outcome, *spec.predictors]]).all(axis=1)]

    if len(subset) < spec.min_obs:
        logger.warning(f"{spec.name}: Insufficient observations ({len(subset)})")
        return None

    dummies = [pd.get_dummies(subset[fe].astype(str), prefix=fe, drop_first=True).astype(float)
               for fe in spec.fixed_effects]
    X = pd.concat([subset[list(spec.predictors)].astype(float)] + dummies, axis=1)
    X = sm.add_constant(X, has_constant='add')
    y = subset[spec.outcome].astype(float)

    if spec.cluster:
        groups = pd.factorize(subset[spec.cluster])[0]
        model = sm.OLS(y, X).fit(cov_type='cluster', cov_kwds={'groups': groups})
    else:
        model = sm.OLS(y, X).fit()

    logger.info(f"{spec.name}: N = {len(subset):,}, R2 = {model.rsquared:.4f}")
    return model


def _stars(p: float) -> str:
    return "***" if p < 0.01 else "**" if p < 0.05 else "*" if p < 0.1 else ""


def summarize_fits(fits: Mapping[str, object], specs: Sequence[RegressionSpec]) -> pd.DataFrame:
    """Coefficient table (predictors only) for fitted specs."""
    rows = []
    for spec in specs:
        model = fits.get(spec.name)
        if model is None:
            continue
        for var in spec.predictors:
            if var not in model.params.index:
                continue
            rows.append({
                'spec': spec.name,
                'variable': var,
                'coef': model.params[var],
                'se': model.bse[var],
                't': model.tvalues[var],
                'p': model.pvalues[var],
                'stars': _stars(model.pvalues[var]),
                'n': int(model.nobs),
                'r2': model.rsquared,
            })
    return pd.DataFrame(rows, columns=['spec', 'variable', 'coef', 'se', 't', 'p', 'stars', 'n', 'r2'])


def run_regressions(panel: pd.DataFrame, specs: Sequence[RegressionSpec]) -> Tuple[Dict[str, object], pd.DataFrame]:
    """Fit every spec and return (fits by name, coefficient table)."""
    fits = {spec.name: fit_regression(panel, spec) for spec in specs}
    return fits, summarize_fits(fits, specs)
