import json
import logging

import numpy as np
import pandas as pd
import pytest

from sci_proximity.config import ENTITY, DATE, VALUE, POP, RATE
from sci_proximity.errors import ConfigurationError, DataIntegrityError
from sci_proximity.construct.build_regress_panel import (
    case_base, death_base, current_column, panel_columns, weighted_measure_changes,
    build_time_series_panel, RegressionSpec, load_regression_specs, default_case_specs,
    fit_regression, summarize_fits, run_regressions,
)

DATES = pd.date_range('2020-03-02', periods=6, freq='14D')


def outcome_series(values_by_county, pops):
    rows = []
    for county, values in values_by_county.items():
        for date, value in zip(DATES, values):
            rows.append((county, date, float(value), pops[county]))
    df = pd.DataFrame(rows, columns=[ENTITY, DATE, VALUE, POP])
    df[RATE] = df[VALUE] / df[POP] * 10000
    return df


def weighted_table(source, cases_by_county, deaths_by_county=None):
    rows = []
    for county, values in cases_by_county.items():
        deaths = (deaths_by_county or {}).get(county, [np.nan] * len(values))
        for date, value, death in zip(DATES, values, deaths):
            rows.append((county, date, value * 100, float(value), death * 100, float(death)))
    return pd.DataFrame(rows, columns=['user_loc', DATE,
                                       f'{source}_weighted_cases', f'{source}_weighted_cases_per_10k',
                                       f'{source}_weighted_deaths', f'{source}_weighted_deaths_per_10k'])


@pytest.fixture
def inputs():
    pops = {'01001': 10000.0, '01003': 20000.0}
    cases = outcome_series({'01001': [0, 10, 30, 60, 100, 150], '01003': [0, 5, 5, 20, 40, 60]}, pops)
    deaths = outcome_series({'01001': [0, 0, 1, 2, 4, 7], '01003': [0, 0, 0, 1, 1, 2]}, pops)
    weighted = {
        'sci': weighted_table('sci', {'01001': [1, 2, 3, 4, 5, 6], '01003': [1, 2, 1.5, 3, 4, 5]},
                              {'01001': [0, 0, 1, 1, 2, 2], '01003': [0, 0, 1, 1, 2, 2]}),
        'dist': weighted_table('dist', {'01001': [2, 4, 6, 8, 10, 12], '01003': [1, 1, 2, 2, 3, 3]},
                               {'01001': [0, 1, 1, 2, 2, 3], '01003': [0, 1, 1, 2, 2, 3]}),
    }
    return cases, deaths, weighted


def row(panel, county, date):
    match = panel[(panel['county_fips'] == county) & (panel[DATE] == pd.Timestamp(date))]
    assert len(match) == 1
    return match.iloc[0]


class TestNames:

    def test_bases(self):
        assert case_base() == 'chg_cases_10k'
        assert case_base('sci') == 'chg_swc_10k'
        assert death_base('lex') == 'chg_lwd_10k_4wk'
        assert current_column('chg_dwc_10k') == 'change_dwc_10k'
        assert current_column('chg_cases_10k') == 'chg_cases_10k'

    def test_default_specs_use_known_columns(self):
        available = panel_columns(('sci', 'dist'))
        for spec in default_case_specs():
            spec.validate(available)


class TestPanel:

    def test_rows_and_periods(self, inputs):
        cases, deaths, weighted = inputs
        panel = build_time_series_panel(cases, deaths, weighted)

        assert len(panel) == 10
        assert panel[DATE].min() == pd.Timestamp('2020-03-16')
        assert panel['state_fips'].unique().tolist() == ['01']
        assert row(panel, '01001', '2020-03-16')['week_num'] == 11

    def test_own_changes_and_lags(self, inputs):
        panel = build_time_series_panel(*inputs)

        first = row(panel, '01001', '2020-03-16')
        assert first['chg_cases'] == 10
        assert first['chg_cases_10k'] == pytest.approx(10.0)
        assert first['log_chg_cases_10k'] == pytest.approx(np.log(11))
        # lags start after the first kept period
        assert np.isnan(first['l1_chg_cases_10k'])

        second = row(panel, '01001', '2020-03-30')
        assert second['l1_chg_cases_10k'] == pytest.approx(10.0)
        assert second['chg_deaths_4wk'] == 1
        assert second['chg_deaths_10k_4wk'] == pytest.approx(1.0)

        assert row(panel, '01003', '2020-03-30')['chg_cases_10k'] == 0.0

    def test_weighted_changes_clamped(self, inputs):
        panel = build_time_series_panel(*inputs)

        assert row(panel, '01003', '2020-03-30')['change_swc_10k'] == 0.0
        assert row(panel, '01003', '2020-04-13')['l1_chg_swc_10k'] == 0.0
        assert row(panel, '01001', '2020-03-30')['change_dwc_10k'] == pytest.approx(2.0)
        assert row(panel, '01001', '2020-03-30')['change_swd_10k_4wk'] == pytest.approx(1.0)

    def test_lex_is_optional(self, inputs):
        cases, deaths, weighted = inputs
        weighted = dict(weighted, lex=weighted_table('lex', {'01001': [1, 1, 2, 2, 3, 3]}))
        panel = build_time_series_panel(cases, deaths, weighted)

        assert len(panel) == 10
        assert panel.loc[panel['county_fips'] == '01003', 'change_lwc_10k'].isna().all()
        assert row(panel, '01001', '2020-03-30')['change_lwc_10k'] == pytest.approx(1.0)

    def test_covariates_and_columns(self, inputs):
        cases, deaths, weighted = inputs
        covariates = pd.DataFrame({'county_fips': ['01001'], 'share_within50': [0.4]})
        panel = build_time_series_panel(cases, deaths, weighted, covariates)

        assert row(panel, '01001', '2020-04-13')['share_within50'] == 0.4
        assert np.isnan(row(panel, '01003', '2020-04-13')['share_within50'])
        assert set(panel.columns) <= set(panel_columns(('sci', 'dist'), ['share_within50']))

    def test_required_sources(self, inputs):
        cases, deaths, weighted = inputs
        with pytest.raises(ConfigurationError):
            build_time_series_panel(cases, deaths, {'sci': weighted['sci']})

    def test_weighted_source_checks(self, inputs):
        _, _, weighted = inputs
        with pytest.raises(ConfigurationError):
            weighted_measure_changes(weighted['sci'], 'mobility')
        with pytest.raises(DataIntegrityError):
            weighted_measure_changes(weighted['sci'].drop(columns=['sci_weighted_cases_per_10k']), 'sci')

    def test_weighted_change_needs_previous_step(self):
        measures = weighted_table('sci', {'01001': [1, 2, 3]})
        measures = measures[measures[DATE] != DATES[1]]
        out = weighted_measure_changes(measures, 'sci')

        assert out[DATE].tolist() == [DATES[0], DATES[2]]
        assert out['change_swc_10k'].isna().all()

    def test_lex_gap_is_not_bridged(self, inputs):
        cases, deaths, weighted = inputs
        lex = weighted_table('lex', {'01001': [1, 1, 2, 2, 3, 3]})
        lex = lex[lex[DATE] != pd.Timestamp('2020-03-16')]
        panel = build_time_series_panel(cases, deaths, dict(weighted, lex=lex))

        assert len(panel) == 10
        assert np.isnan(row(panel, '01001', '2020-03-16')['change_lwc_10k'])
        assert np.isnan(row(panel, '01001', '2020-03-30')['change_lwc_10k'])
        assert row(panel, '01001', '2020-04-13')['change_lwc_10k'] == 0.0
        assert np.isnan(row(panel, '01001', '2020-04-13')['l1_chg_lwc_10k'])
        assert row(panel, '01001', '2020-04-27')['change_lwc_10k'] == pytest.approx(1.0)

    def test_sci_gap_drops_row_and_breaks_lags(self, inputs):
        cases, deaths, weighted = inputs
        sci = weighted['sci']
        sci = sci[~((sci['user_loc'] == '01003') & (sci[DATE] == pd.Timestamp('2020-03-30')))]
        panel = build_time_series_panel(cases, deaths, dict(weighted, sci=sci))

        assert len(panel) == 9
        after = row(panel, '01003', '2020-04-13')
        assert after['chg_cases'] == 15
        assert np.isnan(after['change_swc_10k'])
        assert np.isnan(after['l1_chg_cases_10k'])
        assert row(panel, '01001', '2020-04-13')['l1_chg_cases_10k'] == pytest.approx(20.0)


class TestSpecs:

    def test_load_from_json(self, tmp_path):
        path = tmp_path / 'specs.json'
        path.write_text(json.dumps([
            {'name': 'social', 'outcome': 'log_chg_cases_10k',
             'predictors': ['log_l1_chg_swc_10k'], 'fixed_effects': ['county_fips'],
             'cluster': 'state_fips', 'min_obs': 50},
        ]))
        specs = load_regression_specs(path, panel_columns(('sci', 'dist')))

        assert specs == [RegressionSpec('social', 'log_chg_cases_10k', ('log_l1_chg_swc_10k',),
                                        ('county_fips',), 'state_fips', 50)]

    @pytest.mark.parametrize('entries', [
        [{'name': 'a', 'outcome': 'log_chg_cases_10k', 'predictors': ['not_a_column']}],
        [{'name': 'a', 'outcome': 'log_chg_cases_10k', 'predictors': ['log_chg_cases_10k']}],
        [{'name': 'a', 'outcome': 'log_chg_cases_10k', 'predictors': []}],
        [{'name': 'a', 'predictors': ['log_l1_chg_swc_10k']}],
        [{'name': 'a', 'outcome': 'log_chg_cases_10k', 'predictors': ['log_l1_chg_swc_10k']}] * 2,
        [{'name': 'a', 'outcome': 'log_chg_cases_10k', 'predictors': ['log_l1_chg_swc_10k'],
          'cluster': 'region'}],
        {'name': 'a'},
    ])
    def test_invalid_specs(self, entries):
        with pytest.raises(ConfigurationError):
            load_regression_specs(entries if isinstance(entries, list) else [entries],
                                  panel_columns(('sci', 'dist')))


class TestRegression:

    @pytest.fixture
    def toy_panel(self):
        rng = np.random.default_rng(0)
        groups = np.repeat(np.arange(20), 10)
        x = rng.normal(size=groups.size)
        effects = rng.normal(size=20)[groups]
        return pd.DataFrame({
            'g': groups,
            'x': x,
            'y': 2.0 * x + effects + rng.normal(scale=0.01, size=groups.size),
        })

    def test_fit_recovers_slope(self, toy_panel):
        spec = RegressionSpec('toy', 'y', ('x',), ('g',), 'g', min_obs=10)
        model = fit_regression(toy_panel, spec)

        assert model.params['x'] == pytest.approx(2.0, abs=0.01)
        assert model.nobs == 200

        table = summarize_fits({'toy': model}, [spec])
        assert table['variable'].tolist() == ['x']
        assert table['stars'].iloc[0] == '***'
        assert table['n'].iloc[0] == 200

    def test_missing_rows_dropped(self, toy_panel):
        toy_panel.loc[:9, 'y'] = np.nan
        toy_panel.loc[10, 'x'] = np.inf
        model = fit_regression(toy_panel, RegressionSpec('toy', 'y', ('x',), min_obs=10))
        assert model.nobs == 189

    def test_too_few_observations(self, toy_panel, caplog):
        spec = RegressionSpec('toy', 'y', ('x',), min_obs=1000)
        with caplog.at_level(logging.WARNING):
            fits, table = run_regressions(toy_panel, [spec])

        assert fits == {'toy': None}
        assert table.empty
        assert 'Insufficient observations' in caplog.text

    def test_unknown_column(self, toy_panel):
        with pytest.raises(ConfigurationError):
            fit_regression(toy_panel, RegressionSpec('toy', 'y', ('z',)))
