"""
Build Time Series Regression Data
=================================
Joins county case/death changes with Social / Physical / LEX Proximity to
Cases, adds covariates and the share of friends within 50/150 miles,
builds lags and logs, and fits the configured regressions.

Inputs (from make_weighted_measures.py):
    cases_series.csv, deaths_series.csv
    sci_weighted_cases_deaths.csv, dist_weighted_cases_deaths.csv
    lex_weighted_cases_deaths.csv (optional)
    share_within_x_miles.csv
    cty_covariates_oi.csv - Opportunity Insights county covariates (optional)
Outputs:
    time_series_regress_dat.csv
    time_series_coefficients.csv
"""

import sys
import argparse
from pathlib import Path

import pandas as pd

from sci_proximity.config import INPUT_PATH, INTERMEDIATE_PATH, OUTPUT_PATH, setup_logging
from sci_proximity.ingest.fips import normalize_ids
from sci_proximity.construct.build_regress_panel import (
    build_time_series_panel, panel_columns, load_regression_specs, default_case_specs,
    run_regressions,
)

logger = setup_logging('build_time_series_regress_dat')

OI_COLUMNS = ['state', 'county', 'med_hhinc2016', 'popdensity2010']


def read_series(path: Path, id_col: str, dates: bool = True) -> pd.DataFrame:
    df = pd.read_csv(path, dtype={id_col: str}, parse_dates=['date'] if dates else None)
    df[id_col] = normalize_ids(df[id_col])
    return df


def load_covariates(oi_path: Path, within_path: Path) -> pd.DataFrame:
    """Opportunity Insights covariates (per 10k scaled) and share-within measures."""
    covariates = None
    if oi_path.exists():
        oi = pd.read_csv(oi_path, usecols=OI_COLUMNS)
        oi['county_fips'] = normalize_ids(oi['state'] * 1000 + oi['county'])
        oi['med_hhinc2016_10k'] = oi['med_hhinc2016'] / 10000
        oi['popdensity2010_10k'] = oi['popdensity2010'] / 10000
        covariates = oi.drop(columns=['state', 'county'])
    else:
        logger.warning(f"Covariates not found at {oi_path}")

    if within_path.exists():
        within = read_series(within_path, 'user_loc', dates=False).rename(columns={'user_loc': 'county_fips'})
        covariates = within if covariates is None else covariates.merge(within, on='county_fips', how='outer')
    return covariates


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description='Build the time series regression panel')
    parser.add_argument('--input-dir', type=Path, default=INTERMEDIATE_PATH)
    parser.add_argument('--covariates', type=Path, default=INPUT_PATH / 'cty_covariates_oi.csv')
    parser.add_argument('--specs', type=Path, help='JSON list of regression specs')
    parser.add_argument('--output-dir', type=Path, default=OUTPUT_PATH)
    args = parser.parse_args(argv)

    cases = read_series(args.input_dir / 'cases_series.csv', 'entity')
    deaths = read_series(args.input_dir / 'deaths_series.csv', 'entity')

    weighted = {}
    for source in ('sci', 'dist', 'lex'):
        path = args.input_dir / f'{source}_weighted_cases_deaths.csv'
        if path.exists():
            weighted[source] = read_series(path, 'user_loc')
        else:
            logger.warning(f"No {source} weighted measures at {path}")

    covariates = load_covariates(args.covariates, args.input_dir / 'share_within_x_miles.csv')
    panel = build_time_series_panel(cases, deaths, weighted, covariates)

    args.output_dir.mkdir(parents=True, exist_ok=True)
    panel_path = args.output_dir / 'time_series_regress_dat.csv'
    panel.to_csv(panel_path, index=False)
    logger.info(f"Saved: {panel_path}")

    extra = [] if covariates is None else [c for c in covariates.columns if c != 'county_fips']
    available = panel_columns(list(weighted), extra)
    specs = load_regression_specs(args.specs, available) if args.specs else default_case_specs()

    fits, coefficients = run_regressions(panel, specs)
    coef_path = args.output_dir / 'time_series_coefficients.csv'
    coefficients.to_csv(coef_path, index=False)
    logger.info(f"Saved: {coef_path}")

    for spec in specs:
        rows = coefficients[coefficients['spec'] == spec.name]
        if rows.empty:
            logger.info(f"{spec.name}: not estimated")
            continue
        logger.info(f"{spec.name} (N = {rows['n'].iloc[0]:,}, R2 = {rows['r2'].iloc[0]:.4f})")
        for row in rows.itertuples(index=False):
            logger.info(f"  {row.variable:25s}: {row.coef:10.5f} (t={row.t:6.2f}){row.stars}")
    return 0


if __name__ == '__main__':
    sys.exit(main())
