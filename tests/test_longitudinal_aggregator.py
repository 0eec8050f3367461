"""
Tests for the cross-year longitudinal aggregator

Run: pytest tests/test_longitudinal_aggregator.py -v
"""

import numpy as np
import pandas as pd
import pytest

from eyfsp_pipeline.longitudinal.aggregator import (
    LongitudinalConfig,
    build_panel,
    canonical_column,
    derive_school_changes,
    derive_sen_flags,
    index_by_academic_year,
    resolve_ever_true,
    resolve_first_available,
    resolve_max_over_years,
    to_long,
)


def cohort_series(mapping):
    return pd.Series(mapping, name='cohort').rename_axis('pupil_id')


def panel_row(panel, pupil):
    return panel.set_index('pupil_id').loc[pupil]


class TestToLong:
    """Tests for normalisation of yearly snapshots"""

    def test_aliases_and_suffixes_applied(self):
        snapshots = {
            2009: pd.DataFrame({'pupil_id': [1], 'FSMeligible_SPR09': [1], 'Gender_SPR09': ['F']}),
        }
        long = to_long(snapshots, aliases={'FSMeligible': 'fsm', 'Gender': 'sex'},
                       strip_suffix_pattern=r'_SPR\d{2}$')

        assert set(long['field']) == {'fsm', 'sex'}
        assert (long['year'] == 2009).all()

    def test_missing_and_blank_values_dropped(self):
        snapshots = {2010: pd.DataFrame({'pupil_id': [1, 2, 3], 'sex': ['M', None, '  ']})}
        long = to_long(snapshots)
        assert long['pupil_id'].tolist() == [1]

    def test_field_absent_from_a_year_is_not_an_error(self):
        snapshots = {
            2008: pd.DataFrame({'pupil_id': [1], 'sex': ['M'], 'nsiblings': [2]}),
            2009: pd.DataFrame({'pupil_id': [1], 'sex': ['M']}),
        }
        long = to_long(snapshots)
        assert long[long['field'] == 'nsiblings']['year'].tolist() == [2008]

    def test_all_missing_snapshot_is_not_an_error(self):
        """A year whose every value is missing contributes no rows"""
        snapshots = {
            2007: pd.DataFrame({'pupil_id': [1], 'sex': ['M']}),
            2008: pd.DataFrame({'pupil_id': [1], 'sex': [None]}),
        }
        long = to_long(snapshots)

        assert list(long.columns) == ['pupil_id', 'year', 'field', 'value']
        assert long['year'].tolist() == [2007]

    def test_every_snapshot_empty(self):
        snapshots = {2008: pd.DataFrame({'pupil_id': [1, 2], 'sex': [None, ' ']})}
        long = to_long(snapshots)
        assert long.empty
        assert 'year' in long.columns

    def test_missing_pupil_id_raises(self):
        with pytest.raises(ValueError):
            to_long({2008: pd.DataFrame({'id': [1], 'sex': ['M']})})

    def test_duplicate_pupil_year_keeps_first(self):
        snapshots = {2008: pd.DataFrame({'pupil_id': [1, 1], 'sex': ['M', 'F']})}
        long = to_long(snapshots)
        assert long['value'].tolist() == ['M']

    def test_canonical_column(self):
        assert canonical_column('URN_SPR12', {'URN': 'school_id'}, r'_SPR\d{2}$') == 'school_id'
        assert canonical_column('sex', {}) == 'sex'


class TestResolveFirstAvailable:
    """Tests for time-invariant field resolution"""

    def test_baseline_year_takes_precedence(self, longitudinal_config):
        snapshots = {
            2007: pd.DataFrame({'pupil_id': [1], 'sex': ['M']}),
            2008: pd.DataFrame({'pupil_id': [1], 'sex': ['F']}),
        }
        resolved = resolve_first_available(
            to_long(snapshots), cohort_series({1: 1}), longitudinal_config.cohorts, ['sex']
        )
        assert resolved.loc[1, 'sex'] == 'M'

    def test_first_later_year_fills_missing_baseline(self, longitudinal_config):
        snapshots = {
            2007: pd.DataFrame({'pupil_id': [1], 'sex': [None]}),
            2009: pd.DataFrame({'pupil_id': [1], 'sex': ['F']}),
            2011: pd.DataFrame({'pupil_id': [1], 'sex': ['M']}),
        }
        resolved = resolve_first_available(
            to_long(snapshots), cohort_series({1: 1}), longitudinal_config.cohorts, ['sex']
        )
        assert resolved.loc[1, 'sex'] == 'F'

    def test_years_before_baseline_ignored(self, longitudinal_config):
        # Cohort 2 baseline is 2008
        snapshots = {
            2007: pd.DataFrame({'pupil_id': [2], 'sex': ['M']}),
            2010: pd.DataFrame({'pupil_id': [2], 'sex': ['F']}),
        }
        resolved = resolve_first_available(
            to_long(snapshots), cohort_series({2: 2}), longitudinal_config.cohorts, ['sex']
        )
        assert resolved.loc[2, 'sex'] == 'F'

    def test_unresolved_field_is_missing(self, longitudinal_config):
        snapshots = {2007: pd.DataFrame({'pupil_id': [1], 'sex': ['M']})}
        resolved = resolve_first_available(
            to_long(snapshots), cohort_series({1: 1, 3: 1}), longitudinal_config.cohorts,
            ['sex', 'birth_month']
        )
        assert pd.isna(resolved.loc[3, 'sex'])
        assert resolved['birth_month'].isna().all()


class TestResolveMaxOverYears:
    """Tests for sibling count resolution"""

    def test_scenario_max_over_sibling_years(self):
        """Sibling counts 2 (2008) and 3 (2013) resolve to 3"""
        snapshots = {
            2008: pd.DataFrame({'pupil_id': [1], 'nsiblings': [2]}),
            2013: pd.DataFrame({'pupil_id': [1], 'nsiblings': [3]}),
        }
        siblings = resolve_max_over_years(to_long(snapshots), 'nsiblings', [2008, 2010, 2013], [2015])
        assert siblings.loc[1] == 3

    def test_fallback_only_where_primary_missing(self):
        snapshots = {
            2010: pd.DataFrame({'pupil_id': [1], 'nsiblings': [1]}),
            2015: pd.DataFrame({'pupil_id': [1, 2], 'nsiblings': [4, 2]}),
        }
        siblings = resolve_max_over_years(to_long(snapshots), 'nsiblings', [2008, 2010, 2013], [2015])
        assert siblings.loc[1] == 1
        assert siblings.loc[2] == 2

    def test_other_years_ignored(self):
        snapshots = {2009: pd.DataFrame({'pupil_id': [1], 'nsiblings': [5]})}
        siblings = resolve_max_over_years(to_long(snapshots), 'nsiblings', [2008, 2010, 2013], [2015])
        assert 1 not in siblings.index


class TestResolveEverTrue:
    """Tests for ever-true flags over the cohort window"""

    def test_scenario_true_in_one_window_year(self, longitudinal_config):
        """SEN in 2012 only, window 2007-2013: ever_sen = 1"""
        snapshots = {
            year: pd.DataFrame({'pupil_id': [1], 'sen_provision': ['S' if year == 2012 else 'N']})
            for year in range(2007, 2014)
        }
        long = to_long(snapshots)
        long = pd.concat([long, derive_sen_flags(long, longitudinal_config.sen_provision)])
        ever = resolve_ever_true(long, cohort_series({1: 1}), longitudinal_config.cohorts, ['sen'])
        assert ever.loc[1, 'ever_sen'] == 1

    def test_all_false_is_zero_and_unobserved_is_missing(self, longitudinal_config):
        snapshots = {2008: pd.DataFrame({'pupil_id': [1], 'fsm': ['false']})}
        ever = resolve_ever_true(
            to_long(snapshots), cohort_series({1: 1, 3: 1}), longitudinal_config.cohorts, ['fsm']
        )
        assert ever.loc[1, 'ever_fsm'] == 0
        assert ever.loc[3, 'ever_fsm'] is pd.NA

    def test_outside_window_ignored(self, longitudinal_config):
        snapshots = {
            2010: pd.DataFrame({'pupil_id': [1], 'fsm': [0]}),
            2014: pd.DataFrame({'pupil_id': [1], 'fsm': [1]}),
        }
        ever = resolve_ever_true(to_long(snapshots), cohort_series({1: 1}),
                                 longitudinal_config.cohorts, ['fsm'])
        assert ever.loc[1, 'ever_fsm'] == 0

    def test_adding_true_observation_is_monotonic(self, longitudinal_config):
        base = {year: pd.DataFrame({'pupil_id': [1, 3], 'fsm': ['N', 'Y']}) for year in (2008, 2009)}
        extended = dict(base)
        extended[2010] = pd.DataFrame({'pupil_id': [1, 3], 'fsm': ['Y', 'N']})

        cohorts = cohort_series({1: 1, 3: 1})
        before = resolve_ever_true(to_long(base), cohorts, longitudinal_config.cohorts, ['fsm'])
        after = resolve_ever_true(to_long(extended), cohorts, longitudinal_config.cohorts, ['fsm'])

        assert (after['ever_fsm'] >= before['ever_fsm']).all()
        assert after.loc[1, 'ever_fsm'] == 1
        assert after.loc[3, 'ever_fsm'] == 1

    def test_sen_codes(self, longitudinal_config):
        long = to_long({2009: pd.DataFrame({'pupil_id': [1, 2, 3, 4], 'sen_provision': ['N', 'S', 'K', 'Z']})})
        flags = derive_sen_flags(long, longitudinal_config.sen_provision)
        wide = flags.pivot(index='pupil_id', columns='field', values='value')

        assert wide.loc[1].tolist() == [0, 0, 0]
        assert wide.loc[2, 'sen_statement'] == 1 and wide.loc[2, 'sen_support'] == 0
        assert wide.loc[3, 'sen'] == 1 and wide.loc[3, 'sen_support'] == 1
        assert 4 not in wide.index


class TestAcademicYears:
    """Tests for academic-year indexing and school changes"""

    def test_index_by_academic_year(self, longitudinal_config):
        snapshots = {
            2008: pd.DataFrame({'pupil_id': [2], 'school_id': [100001.0]}),
            2010: pd.DataFrame({'pupil_id': [2], 'school_id': [100007.0]}),
            2021: pd.DataFrame({'pupil_id': [2], 'school_id': [100009.0]}),
        }
        wide = index_by_academic_year(to_long(snapshots), cohort_series({2: 2}),
                                      longitudinal_config.cohorts, ['school_id'])

        assert wide.loc[2, 'school_id_y0'] == '100001'
        assert wide.loc[2, 'school_id_y2'] == '100007'
        assert pd.isna(wide.loc[2, 'school_id_y1'])
        assert 'school_id_y13' not in wide.columns
        assert len(wide.columns) == 12

    def test_school_changes(self, longitudinal_config):
        columns = {f'school_id_y{a}': [None, None, None] for a in range(12)}
        panel = pd.DataFrame({'pupil_id': [1, 2, 3], 'cohort': [1, 1, 2], **columns})
        panel.loc[0, ['school_id_y2', 'school_id_y3', 'school_id_y4', 'school_id_y5']] = ['a', 'b', 'b', 'c']
        panel.loc[2, ['school_id_y1', 'school_id_y2']] = ['x', 'x']

        result = derive_school_changes(panel, longitudinal_config.cohorts)

        assert bool(result.loc[0, 'changed_school_y3']) is True
        assert bool(result.loc[0, 'changed_school_y4']) is False
        assert result.loc[0, 'changed_school_y6'] is pd.NA
        assert result.loc[0, 'n_school_changes'] == 2
        assert result.loc[1, 'n_school_changes'] is pd.NA
        assert result.loc[2, 'n_school_changes'] == 0
        assert 'changed_school_y0' not in result.columns


class TestBuildPanel:
    """End-to-end panel construction"""

    @pytest.fixture
    def panel(self, longitudinal_config):
        cohorts = pd.DataFrame({'pupil_id': [1, 2, 3, 4], 'cohort': [1, 2, 1, 9]})
        snapshots = {
            2007: pd.DataFrame({
                'pupil_id': [1, 3, 99],
                'sex': ['M', 'F', 'M'],
                'birth_month': [9, np.nan, 1],
                'FSMeligible_SPR07': [0, 0, 1],
                'sen_provision': ['N', 'N', 'S'],
                'URN': [100001, 100002, 100003],
            }),
            2008: pd.DataFrame({
                'pupil_id': [1, 2, 3],
                'sex': ['F', 'F', 'F'],
                'birth_month': [9, 4, 11],
                'FSMeligible': [1, np.nan, 0],
                'NumberOfSiblings': [2, 1, np.nan],
                'URN': [100001, 300003, 100002],
            }),
            # No sex or FSM columns this year
            2009: pd.DataFrame({'pupil_id': [1], 'URN': [100001]}),
            2010: pd.DataFrame({'pupil_id': [1], 'URN': [100005]}),
            2012: pd.DataFrame({'pupil_id': [1], 'sen_provision': ['S']}),
            2013: pd.DataFrame({'pupil_id': [1], 'NumberOfSiblings': [3]}),
        }
        return build_panel(cohorts, snapshots, longitudinal_config)

    def test_population_is_cohort_table(self, panel):
        """Snapshot-only pupils and unconfigured cohorts are dropped"""
        assert sorted(panel['pupil_id']) == [1, 2, 3]

    def test_resolved_fields(self, panel):
        pupil = panel_row(panel, 1)
        assert pupil['sex'] == 'M'
        assert pupil['birth_month'] == 9
        assert pupil['nsiblings'] == 3
        assert pupil['ever_fsm'] == 1
        assert pupil['ever_sen'] == 1

    def test_missing_fields_tolerated(self, panel):
        pupil = panel_row(panel, 2)
        assert pupil['cohort'] == 2
        assert pupil['sex'] == 'F'
        assert pupil['birth_month'] == 4
        assert pd.isna(pupil['ever_fsm'])
        assert pd.isna(pupil['ever_sen'])

    def test_later_year_fills_missing_baseline(self, panel):
        assert panel_row(panel, 3)['birth_month'] == 11

    def test_school_history(self, panel):
        pupil = panel_row(panel, 1)
        assert pupil['school_id_y0'] == '100001'
        assert pupil['school_id_y3'] == '100005'
        assert bool(pupil['changed_school_y3']) is True
        assert pupil['n_school_changes'] == 1

        # Only changes inside the cohort's counted years contribute
        assert pd.isna(panel_row(panel, 3)['n_school_changes'])

    def test_all_missing_year_tolerated(self, longitudinal_config):
        cohorts = pd.DataFrame({'pupil_id': [1], 'cohort': [1]})
        snapshots = {
            2007: pd.DataFrame({'pupil_id': [1], 'sex': ['M'], 'URN': [100001]}),
            2008: pd.DataFrame({'pupil_id': [1], 'sex': [None], 'URN': [np.nan]}),
        }
        panel = build_panel(cohorts, snapshots, longitudinal_config)
        pupil = panel_row(panel, 1)

        assert pupil['sex'] == 'M'
        assert pupil['school_id_y0'] == '100001'
        assert pd.isna(pupil['school_id_y1'])

    def test_config_requires_cohorts(self):
        with pytest.raises(ValueError):
            LongitudinalConfig.from_dict({'cohorts': {}})

    def test_shipped_config_loads(self, pipeline_config):
        config = LongitudinalConfig.from_dict(pipeline_config['longitudinal'])
        assert sorted(config.cohorts) == [1, 2, 3]
        assert config.cohorts[1].ever_window == (2007, 2013)
        assert all(len(c.school_change_years) == 5 for c in config.cohorts.values())
