"""
Make Weighted Proximity Measures
================================
Builds Social, Physical and (optionally) LEX Proximity to Cases/Deaths for
US counties, plus the share of each county's friends within 50/150 miles.

Inputs:
    SCI county-county table (user_loc, fr_loc, scaled_sci)
    NBER county distances (county1, county2, mi_to_county)
    ACS 2017 5-year county populations (GEO.id2, HC01_VC03)
    JHU CSSE confirmed / deaths time series (downloaded if not given)
    LEX long table (date, county1, county2, lex), or a directory of daily
        PlaceIQ county matrices - optional
Outputs:
    cases_series.csv, deaths_series.csv
    sci_weighted_cases_deaths.csv
    dist_weighted_cases_deaths.csv
    lex_weighted_cases_deaths.csv
    share_within_x_miles.csv
    validation/<measure>_summary.csv - by-date summaries from the validation reports
"""

import sys
import argparse
from pathlib import Path

import pandas as pd

from sci_proximity.config import (
    INPUT_PATH, INTERMEDIATE_PATH, DEFAULT_SKIP_THRESHOLD, CadenceConfig, setup_logging,
)
from sci_proximity.ingest.ingest_connectivity import (
    load_sci_shares, shares_from_edges, load_distance_table, distance_weights, load_lex_shares,
)
from sci_proximity.ingest.ingest_covid_cases import (
    download_jhu_time_series, load_county_populations, prepare_jhu_outcomes,
)
from sci_proximity.construct.weighted_measures import (
    AggregationConfig, compute_source_measures, write_weighted_measure,
)
from sci_proximity.construct.share_within_distance import share_within_distance
from sci_proximity.construct.validate_measures import run_validation_report

logger = setup_logging('make_weighted_measures')


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description='Make SCI / distance / LEX weighted case measures')
    parser.add_argument('--sci', type=Path, required=True, help='County-county SCI file (tsv)')
    parser.add_argument('--distances', type=Path,
                        default=INPUT_PATH / 'sf12010countydistancemiles.csv')
    parser.add_argument('--populations', type=Path, default=INPUT_PATH / 'ACS_17_5YR_DP05.csv')
    parser.add_argument('--cases', type=Path, help='JHU confirmed file (downloaded if omitted)')
    parser.add_argument('--deaths', type=Path, help='JHU deaths file (downloaded if omitted)')
    parser.add_argument('--lex', type=Path, help='Long LEX table or directory of daily LEX matrices (optional)')
    parser.add_argument('--output-dir', type=Path, default=INTERMEDIATE_PATH)
    parser.add_argument('--end-date', default='2020-07-20',
                        help="Last time step kept, or 'none' (default: 2020-07-20)")
    parser.add_argument('--partition-by', default='home_prefix',
                        choices=['home_prefix', 'time_step', 'none'])
    parser.add_argument('--workers', type=int, default=1)
    parser.add_argument('--skip-threshold', type=float, default=DEFAULT_SKIP_THRESHOLD)
    parser.add_argument('--parquet', action='store_true', help='Also write parquet files')
    return parser.parse_args(argv)


def report_measures(shares, measures, source, outcomes, output_dir) -> bool:
    """Run the validation report for each outcome measure of one source."""
    all_pass = True
    for outcome in outcomes:
        config = AggregationConfig(measure=f'{source}_weighted_{outcome}', home_col='user_loc')
        table = measures[config.output_columns].dropna(
            how='all', subset=[config.measure, config.rate_measure])
        if not run_validation_report(shares, table, config, output_dir / 'validation'):
            logger.warning(f"{config.measure}: validation checks failed")
            all_pass = False
    return all_pass


def main(argv=None) -> int:
    args = parse_args(argv)
    end_date = None if args.end_date.lower() == 'none' else pd.Timestamp(args.end_date)
    cadence = CadenceConfig(end_date=end_date)
    agg_options = dict(partition_by=args.partition_by, max_workers=args.workers)

    # 1. COVID data
    pops = load_county_populations(args.populations, skip_threshold=args.skip_threshold)
    outcomes = {}
    for name, measure, path in (('cases', 'confirmed', args.cases), ('deaths', 'deaths', args.deaths)):
        path = path or download_jhu_time_series(measure)
        if path is None:
            logger.error(f"No {name} data available")
            return 1
        wide = pd.read_csv(path, low_memory=False)
        outcomes[name] = prepare_jhu_outcomes(wide, pops, cadence)
        series_path = args.output_dir / f'{name}_series.csv'
        series_path.parent.mkdir(parents=True, exist_ok=True)
        outcomes[name].to_csv(series_path, index=False)
        logger.info(f"Saved: {series_path}")

    # 2. Social Proximity to Cases
    sci_shares = load_sci_shares(args.sci, skip_threshold=args.skip_threshold)
    sci = compute_source_measures(sci_shares, outcomes, 'sci', **agg_options)
    write_weighted_measure(sci, args.output_dir / 'sci_weighted_cases_deaths.csv', args.parquet)
    report_measures(sci_shares, sci, 'sci', outcomes, args.output_dir)

    # 3. Physical Proximity to Cases
    distances = load_distance_table(args.distances, skip_threshold=args.skip_threshold)
    dist_shares = shares_from_edges(distance_weights(distances), source='distance')
    dist = compute_source_measures(dist_shares, outcomes, 'dist', **agg_options)
    write_weighted_measure(dist, args.output_dir / 'dist_weighted_cases_deaths.csv', args.parquet)
    report_measures(dist_shares, dist, 'dist', outcomes, args.output_dir)

    # 4. LEX Proximity to Cases
    if args.lex is not None:
        dates = outcomes['cases']['date'].unique()
        lex_shares = load_lex_shares(args.lex, dates=dates, skip_threshold=args.skip_threshold)
        lex = compute_source_measures(lex_shares, outcomes, 'lex', **agg_options)
        write_weighted_measure(lex, args.output_dir / 'lex_weighted_cases_deaths.csv', args.parquet)
        report_measures(lex_shares, lex, 'lex', outcomes, args.output_dir)

    # 5. Share of friends within X miles
    within = share_within_distance(sci_shares.edges, distances, pops)
    within_path = args.output_dir / 'share_within_x_miles.csv'
    within.to_csv(within_path, index=False)
    logger.info(f"Saved: {within_path}")

    logger.info("Weighted measures complete")
    return 0


if __name__ == '__main__':
    sys.exit(main())
