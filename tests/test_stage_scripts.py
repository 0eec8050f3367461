"""
Tests for the stage scripts

Each processor's run() is called on small files in a temporary directory,
with a config written next to them. Checks the written outputs, the lineage
files and the exit codes.

Run: pytest tests/test_stage_scripts.py -v
"""

import copy
import sys
from pathlib import Path

import numpy as np
import pandas as pd
import pytest
import yaml

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "infrastructure" / "scripts" / "transform"))
sys.path.insert(0, str(project_root / "infrastructure" / "scripts" / "analyze"))

from build_analysis_table import AnalysisTableBuilder
from build_census_panel import CensusPanelBuilder
from clean_eyfsp import EYFSPCleaner
from score_factors import FactorScorer


def write_config(tmp_path, pipeline_config, **sections):
    """Shipped config with some top-level sections replaced"""
    config = copy.deepcopy(pipeline_config)
    config.update(sections)
    path = tmp_path / "pipeline.yaml"
    with open(path, 'w') as f:
        yaml.safe_dump(config, f)
    return path


def read_lineage(output_file):
    with open(output_file.parent / f"{output_file.stem}_lineage.yaml") as f:
        return yaml.safe_load(f)


class TestCleanEYFSP:
    """Tests for stage 1 (clean_eyfsp.py)"""

    def test_writes_clean_table_report_and_lineage(self, tmp_path, pipeline_config, make_assessment):
        raw = make_assessment(
            items={'att': [1, 1, 1, 1, 0, 0, 0, 0, 0]},
            totals={'score_att': '7'},
            n_rows=3,
        )
        raw_file = tmp_path / "raw" / "eyfsp.csv"
        raw_file.parent.mkdir()
        raw.to_csv(raw_file, index=False)
        output_file = tmp_path / "processed" / "eyfsp_clean.csv"

        cleaner = EYFSPCleaner(write_config(tmp_path, pipeline_config))
        assert cleaner.run(raw_file, output_file) == 0

        table = pd.read_csv(output_file)
        assert table['pupil_id'].tolist() == [1000, 1001, 1002]
        assert (table['score_att'] == 7).all()
        assert (table['score_psed'] == 25).all()
        assert table['mismatch_att'].all()

        report = pd.read_csv(tmp_path / "processed" / "eyfsp_clean_recovery.csv")
        assert report.set_index('target').loc['score_eyfsp_overall', 'n_recovered'] == 3

        lineage = read_lineage(output_file)
        assert lineage['n_pupils'] == 3
        assert lineage['n_mismatches'] == 3
        assert lineage['source_files'] == [str(raw_file)]

    def test_duplicate_pupils_dropped(self, tmp_path, pipeline_config, make_assessment):
        raw = make_assessment(n_rows=2)
        raw = pd.concat([raw, raw.iloc[[0]]], ignore_index=True)
        raw_file = tmp_path / "eyfsp.csv"
        raw.to_csv(raw_file, index=False)
        output_file = tmp_path / "eyfsp_clean.csv"

        assert EYFSPCleaner(write_config(tmp_path, pipeline_config)).run(raw_file, output_file) == 0
        assert len(pd.read_csv(output_file)) == 2

    def test_missing_pupil_id_returns_error(self, tmp_path, pipeline_config, make_assessment):
        raw_file = tmp_path / "eyfsp.csv"
        make_assessment().drop(columns=['pupil_id']).to_csv(raw_file, index=False)
        output_file = tmp_path / "eyfsp_clean.csv"

        assert EYFSPCleaner(write_config(tmp_path, pipeline_config)).run(raw_file, output_file) == 1
        assert not output_file.exists()

    def test_missing_input_raises(self, tmp_path, pipeline_config):
        cleaner = EYFSPCleaner(write_config(tmp_path, pipeline_config))
        with pytest.raises(FileNotFoundError):
            cleaner.run(tmp_path / "absent.csv", tmp_path / "out.csv")


class TestBuildCensusPanel:
    """Tests for stage 2 (build_census_panel.py)"""

    @pytest.fixture
    def census_files(self, tmp_path):
        census_dir = tmp_path / "census"
        census_dir.mkdir()
        pd.DataFrame({'pupil_id': [1, 2], 'cohort': [1, 2]}).to_csv(tmp_path / "cohorts.csv", index=False)
        pd.DataFrame({
            'pupil_id': [1, 99],
            'Gender': ['M', 'F'],
            'MonthOfBirth': [9, 1],
            'FSMeligible': [1, 0],
            'URN': [100001, 100009],
        }).to_csv(census_dir / "census_2007.csv", index=False)
        pd.DataFrame({
            'pupil_id': [1, 2],
            'Gender': ['F', 'F'],
            'MonthOfBirth': [9, 4],
            'FSMeligible': [0, 0],
            'URN': [100001, 200002],
        }).to_csv(census_dir / "census_2008.csv", index=False)
        # A year in which nothing was recorded
        pd.DataFrame({'pupil_id': [1, 2], 'Gender': [np.nan, np.nan]}).to_csv(
            census_dir / "census_2009.csv", index=False
        )
        return tmp_path / "cohorts.csv", census_dir

    def test_writes_panel_and_lineage(self, tmp_path, pipeline_config, census_files):
        cohort_file, census_dir = census_files
        output_file = tmp_path / "processed" / "census_panel.csv"

        builder = CensusPanelBuilder(write_config(tmp_path, pipeline_config))
        assert builder.run(cohort_file, census_dir, "census_*.csv", output_file) == 0

        panel = pd.read_csv(output_file).set_index('pupil_id')
        assert sorted(panel.index) == [1, 2]
        assert panel.loc[1, 'sex'] == 'M'
        assert panel.loc[2, 'sex'] == 'F'
        assert panel.loc[1, 'ever_fsm'] == 1
        assert panel.loc[2, 'ever_fsm'] == 0
        assert panel.loc[1, 'school_id_y0'] == 100001

        lineage = read_lineage(output_file)
        assert lineage['n_pupils'] == 2
        assert lineage['census_years'] == [2007, 2008, 2009]

    def test_no_census_files_returns_error(self, tmp_path, pipeline_config, census_files):
        cohort_file, _ = census_files
        empty = tmp_path / "empty"
        empty.mkdir()
        output_file = tmp_path / "census_panel.csv"

        builder = CensusPanelBuilder(write_config(tmp_path, pipeline_config))
        assert builder.run(cohort_file, empty, "census_*.csv", output_file) == 1
        assert not output_file.exists()


class TestScoreFactors:
    """Tests for stage 3 (score_factors.py)"""

    @pytest.fixture
    def factor_section(self, factor_config):
        return {
            'groups': {name: list(items) for name, items in factor_config.groups.items()},
            'anchors': dict(factor_config.anchors),
            'cross_loadings': 'zero',
            'max_iter': 2000,
            'tolerance': 1.0e-6,
            'modification_index_minimum': 10,
            'sample': {'required_columns': ['sex']},
        }

    def write_inputs(self, tmp_path, items):
        assessment = items.reset_index()
        assessment['score_eyfsp_overall'] = 60
        assessment.loc[0, 'score_eyfsp_overall'] = 0
        panel = pd.DataFrame({'pupil_id': assessment['pupil_id'], 'sex': 'F'})

        eyfsp_file = tmp_path / "eyfsp_clean.csv"
        panel_file = tmp_path / "census_panel.csv"
        assessment.to_csv(eyfsp_file, index=False)
        panel.to_csv(panel_file, index=False)
        return eyfsp_file, panel_file

    def test_writes_scores_and_model_outputs(self, tmp_path, pipeline_config, factor_section,
                                             two_factor_items):
        eyfsp_file, panel_file = self.write_inputs(tmp_path, two_factor_items)
        output_dir = tmp_path / "factors"

        scorer = FactorScorer(write_config(tmp_path, pipeline_config, factors=factor_section))
        assert scorer.run(eyfsp_file, panel_file, output_dir) == 0

        scores = pd.read_csv(output_dir / "factor_scores.csv")
        assert list(scores.columns) == ['pupil_id', 'cogn', 'semo']
        # The pupil with a zero overall score is not scored
        assert len(scores) == len(two_factor_items) - 1
        assert 0 not in set(scores['pupil_id'])

        errors = pd.read_csv(output_dir / "factor_score_se.csv")
        assert list(errors.columns) == ['pupil_id', 'cogn', 'semo']
        assert (errors[['cogn', 'semo']] > 0).all().all()

        loadings = pd.read_csv(output_dir / "factor_loadings.csv")
        assert len(loadings) == 24
        assert int(loadings['anchor'].sum()) == 2
        assert (output_dir / "eigenvalues.csv").exists()
        assert (output_dir / "modification_indices.csv").exists()

        with open(output_dir / "measurement_error.yaml") as f:
            summary = yaml.safe_load(f)
        assert set(summary['measurement_error_sd']) == {'cogn', 'semo'}
        assert summary['fit']['df'] == 66 - 13
        assert 'score_cov' in summary

        lineage = read_lineage(output_dir / "factor_scores.csv")
        assert lineage['anchors'] == {'cogn': 'c1', 'semo': 's1'}
        assert lineage['n_scored'] == len(two_factor_items) - 1

    def test_model_failure_returns_error_without_scores(self, tmp_path, pipeline_config,
                                                        factor_section, two_factor_items):
        eyfsp_file, panel_file = self.write_inputs(tmp_path, two_factor_items.iloc[:800])
        output_dir = tmp_path / "factors"
        factor_section['max_iter'] = 1

        scorer = FactorScorer(write_config(tmp_path, pipeline_config, factors=factor_section))
        assert scorer.run(eyfsp_file, panel_file, output_dir) == 1
        assert not (output_dir / "factor_scores.csv").exists()
        assert not (output_dir / "measurement_error.yaml").exists()

    def test_empty_sample_returns_error(self, tmp_path, pipeline_config, factor_section,
                                        two_factor_items):
        eyfsp_file, panel_file = self.write_inputs(tmp_path, two_factor_items.iloc[:50])
        pd.DataFrame({'pupil_id': [-1], 'sex': ['F']}).to_csv(panel_file, index=False)

        scorer = FactorScorer(write_config(tmp_path, pipeline_config, factors=factor_section))
        assert scorer.run(eyfsp_file, panel_file, tmp_path / "factors") == 1


class TestBuildAnalysisTable:
    """Tests for stage 4 (build_analysis_table.py)"""

    def test_writes_table_and_lineage(self, tmp_path, pipeline_config):
        panel_file = tmp_path / "census_panel.csv"
        scores_file = tmp_path / "factor_scores.csv"
        eyfsp_file = tmp_path / "eyfsp_clean.csv"
        outcomes_file = tmp_path / "offending.csv"
        output_file = tmp_path / "exports" / "analysis_table.csv"

        pd.DataFrame({'pupil_id': [1, 2, 3], 'cohort': [1, 1, 2], 'sex': ['M', None, 'F']}).to_csv(
            panel_file, index=False)
        pd.DataFrame({'pupil_id': [1, 2, 3], 'cogn_esem': [0.1, 0.2, 0.3],
                      'semo_esem': [-0.1, 0.0, 0.4]}).to_csv(scores_file, index=False)
        pd.DataFrame({'pupil_id': [1, 2, 3], 'score_eyfsp_overall': [80, 90, 100]}).to_csv(
            eyfsp_file, index=False)
        pd.DataFrame({'pupil_id': [2], 'n_offences': [4]}).to_csv(outcomes_file, index=False)

        analysis = {
            'assessment_columns': ['score_eyfsp_overall'],
            'outcome_columns': ['n_offences'],
            'absent_outcome_value': 0,
            'weight_column': 'ipw',
            'controls': ['sex'],
        }
        builder = AnalysisTableBuilder(write_config(tmp_path, pipeline_config, analysis=analysis))
        assert builder.run(panel_file, scores_file, eyfsp_file, outcomes_file, None, output_file) == 0

        table = pd.read_csv(output_file).set_index('pupil_id')
        assert table['n_offences'].to_dict() == {1: 0, 2: 4, 3: 0}
        assert table['missing_vars'].to_dict() == {1: 0, 2: 1, 3: 0}
        assert table.loc[3, 'score_eyfsp_overall'] == 100

        lineage = read_lineage(output_file)
        assert lineage['n_pupils'] == 3
        assert lineage['n_missing_vars'] == 1
        assert lineage['weight_column'] is None
