#!/usr/bin/env python3
"""
Estimate cognitive and socio-emotional factor scores

Fits the anchored two-factor model to the calibrated EYFSP items of the
scoring sample and writes EBM factor scores with their measurement error.

Outputs (in --output-dir):
    factor_scores.csv        pupil_id plus one column per factor
    factor_loadings.csv      EFA starting values, CFA estimates, free/fixed status
    measurement_error.yaml   V, me_sd, score covariance, Psi, fit, reliability
    eigenvalues.csv          scree data from the exploratory model
    factor_score_se.csv      pupil_id plus each pupil's score standard errors
    modification_indices.csv fixed cross-loadings with a large score-test index

Usage:
    python score_factors.py [--eyfsp <clean_file>] [--panel <panel_file>] [--output-dir <dir>]
"""

import argparse
import logging
from pathlib import Path
import sys

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "utilities"))
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent / "src"))
from common import (
    DataProcessor,
    create_data_lineage_file,
    format_number,
    save_yaml_config,
    setup_logging,
)
from eyfsp_pipeline.factors import (
    FactorConfig,
    FactorModelError,
    run_esem,
    select_scoring_sample,
)

logger = logging.getLogger(__name__)


class FactorScorer(DataProcessor):
    """Stage 3: latent factor scoring"""

    def run(self, eyfsp_file: Path, panel_file: Path, output_dir: Path,
            cross_loadings: str = None) -> int:
        config = FactorConfig.from_dict(self.config.get('factors') or {})
        if cross_loadings:
            config.cross_loadings = cross_loadings
        overall = (self.config.get('eyfsp') or {}).get('overall_column', 'score_eyfsp_overall')

        assessment = self.load_data(eyfsp_file)
        panel = self.load_data(panel_file)

        sample = select_scoring_sample(
            assessment, panel, config.required_columns, self.pupil_id, overall
        )
        if sample.empty:
            logger.error("Scoring sample is empty")
            return 1

        items = sample.set_index(self.pupil_id)
        try:
            result = run_esem(items, config)
        except FactorModelError as e:
            logger.error(f"Factor model failed, no scores written: {e}")
            return 1

        scores = result.scores.scores.rename_axis(self.pupil_id).reset_index()
        output_dir.mkdir(parents=True, exist_ok=True)
        scores_file = output_dir / 'factor_scores.csv'
        self.save_data(scores, scores_file)
        self.save_data(result.loading_table(), output_dir / 'factor_loadings.csv')
        self.save_data(result.efa.eigenvalues, output_dir / 'eigenvalues.csv')
        self.save_data(
            result.scores.standard_errors.rename_axis(self.pupil_id).reset_index(),
            output_dir / 'factor_score_se.csv',
        )
        self.save_data(result.modification_indices, output_dir / 'modification_indices.csv')
        save_yaml_config(result.summary(), output_dir / 'measurement_error.yaml')

        logger.info("\n" + "=" * 60)
        logger.info("FACTOR SCORE SUMMARY")
        logger.info("=" * 60)
        for name in result.scores.scores.columns:
            column = result.scores.scores[name]
            logger.info(f"  {name}: n={format_number(column.notna().sum())} "
                        f"mean={format_number(column.mean(), 3)} sd={format_number(column.std(), 3)}")

        create_data_lineage_file(
            scores_file,
            [eyfsp_file, panel_file],
            [
                "Selected pupils with complete controls and a non-zero overall score",
                "Estimated tetrachoric correlations",
                "Fitted exploratory model for starting values",
                f"Fitted anchored confirmatory model (cross-loadings: {config.cross_loadings})",
                "Computed EBM factor scores",
            ],
            {
                'n_scored': int(result.scores.scores.notna().all(axis=1).sum()),
                'n_partial': result.scores.n_partial,
                'n_unscored': result.scores.n_unscored,
                'anchors': dict(config.anchors),
            },
        )
        return 0


def main():
    parser = argparse.ArgumentParser(
        description="Estimate EYFSP factor scores",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--eyfsp", type=Path, help="Cleaned EYFSP table (default: paths.eyfsp_clean)")
    parser.add_argument("--panel", type=Path, help="Census panel (default: paths.census_panel)")
    parser.add_argument("--output-dir", type=Path, help="Output directory (default: paths.factors_dir)")
    parser.add_argument("--cross-loadings", choices=['zero', 'free'],
                        help="Override factors.cross_loadings")
    parser.add_argument("--config", type=Path, help="Pipeline config (default: config/pipeline.yaml)")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--log-file", type=Path, help="Optional log file")

    args = parser.parse_args()
    setup_logging(args.log_level, args.log_file)

    try:
        scorer = FactorScorer(args.config)
        return scorer.run(
            args.eyfsp or scorer.path('eyfsp_clean'),
            args.panel or scorer.path('census_panel'),
            args.output_dir or scorer.path('factors_dir'),
            args.cross_loadings,
        )
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Factor scoring failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
