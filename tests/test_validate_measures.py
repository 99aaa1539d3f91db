import pandas as pd
import pytest

from sci_proximity.config import HOME, SHARE
from sci_proximity.errors import PartitionMismatchError
from sci_proximity.ingest.ingest_connectivity import ConnectivityShares
from sci_proximity.construct import validate_measures
from sci_proximity.construct.validate_measures import (
    validate_shares, validate_measure, compare_measures, check_partition_invariance,
    summarize_measure, run_validation_report,
)
from sci_proximity.construct.weighted_measures import AggregationConfig, compute_weighted_measure


def test_valid_shares(county_shares):
    checks = validate_shares(county_shares)
    assert all(result['pass'] for result in checks.values())


def test_bad_share_sums():
    shares = ConnectivityShares(pd.DataFrame({HOME: ['A', 'A'], 'neighbor': ['A', 'B'], SHARE: [0.5, 0.6]}),
                                excluded_homes=['A'])
    checks = validate_shares(shares)
    assert not checks['share_sums']['pass']
    assert checks['share_range']['pass']
    assert not checks['excluded_not_present']['pass']


def test_valid_measure(county_shares, county_outcomes):
    config = AggregationConfig()
    measure = compute_weighted_measure(county_shares, county_outcomes, config)
    checks = validate_measure(measure, config)

    assert set(checks) == {'weighted_aggregate_nonnegative', 'weighted_aggregate_per_10k_nonnegative',
                           'unique_keys', 'sorted', 'no_empty_rows'}
    assert all(result['pass'] for result in checks.values())


def test_unsorted_measure_flagged(county_shares, county_outcomes):
    measure = compute_weighted_measure(county_shares, county_outcomes)
    shuffled = measure.sample(frac=1.0, random_state=3)
    assert not validate_measure(shuffled)['sorted']['pass']


def test_compare_measures(county_shares, county_outcomes):
    config = AggregationConfig()
    measure = compute_weighted_measure(county_shares, county_outcomes, config)
    assert compare_measures(measure, measure.copy(), config)['pass']

    changed = measure.copy()
    changed.loc[0, config.measure] += 1.0
    result = compare_measures(changed, measure.iloc[1:], config)
    assert not result['pass']
    assert result['n_unmatched_rows'] == 1


@pytest.mark.parametrize('partition_by', ['home_prefix', 'time_step'])
def test_partition_invariance_check(county_shares, county_outcomes, partition_by):
    result = check_partition_invariance(county_shares, county_outcomes,
                                        AggregationConfig(partition_by=partition_by))
    assert result['pass']
    assert result['max_abs_diff'] < 1e-9


def test_partition_mismatch(county_shares, county_outcomes, monkeypatch):
    real = validate_measures.compute_weighted_measure

    def perturbed(shares, outcomes, config):
        out = real(shares, outcomes, config)
        if config.partition_by != 'none':
            out.loc[0, config.measure] += 1.0
        return out

    monkeypatch.setattr(validate_measures, 'compute_weighted_measure', perturbed)
    config = AggregationConfig(partition_by='home_prefix')

    with pytest.raises(PartitionMismatchError) as excinfo:
        check_partition_invariance(county_shares, county_outcomes, config)
    assert excinfo.value.n_mismatched == 1
    assert excinfo.value.max_abs_diff == pytest.approx(1.0)

    result = check_partition_invariance(county_shares, county_outcomes, config, strict=False)
    assert not result['pass']


def test_summary_and_report(county_shares, county_outcomes, county_dates, tmp_path, capsys):
    config = AggregationConfig()
    measure = compute_weighted_measure(county_shares, county_outcomes, config)

    summary = summarize_measure(measure, config)
    assert list(summary.columns) == ['date', 'n_homes', 'mean', 'median', 'max', 'mean_per_10k']
    assert len(summary) == len(county_dates)

    assert run_validation_report(county_shares, measure, config, tmp_path)
    assert (tmp_path / 'weighted_aggregate_summary.csv').exists()
    assert 'WEIGHTED_AGGREGATE VALIDATION REPORT' in capsys.readouterr().out
