#!/usr/bin/env python3
"""
Assemble the analysis table read by the regression stage

Joins the census panel, factor scores, EYFSP totals, offending outcomes and
(optional) sampling weights on pupil_id.

Usage:
    python build_analysis_table.py [--panel <file>] [--scores <file>] [--outcomes <file>] [--weights <file>]
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
    setup_logging,
)
from eyfsp_pipeline.analysis import AnalysisConfig, build_analysis_table

logger = logging.getLogger(__name__)


class AnalysisTableBuilder(DataProcessor):
    """Stage 4: per-pupil regression input"""

    def run(self, panel_file: Path, scores_file: Path, eyfsp_file: Path,
            outcomes_file: Path, weights_file: Path, output_file: Path) -> int:
        config = AnalysisConfig.from_dict(self.config.get('analysis') or {}, self.pupil_id)

        panel = self.load_data(panel_file)
        scores = self.load_data(scores_file)
        sources = [panel_file, scores_file]

        assessment = None
        if eyfsp_file:
            assessment = self.load_data(eyfsp_file)
            sources.append(eyfsp_file)

        outcomes = None
        if outcomes_file:
            outcomes = self.load_data(outcomes_file)
            sources.append(outcomes_file)
        else:
            logger.warning("No outcomes file configured, outcome columns will be absent")

        weights = None
        if weights_file:
            weights = self.load_data(weights_file)
            sources.append(weights_file)

        table = build_analysis_table(panel, scores, outcomes, weights, config, assessment)
        self.save_data(table, output_file)

        create_data_lineage_file(
            output_file,
            sources,
            [
                "Inner join of census panel and factor scores",
                "Left join of EYFSP totals",
                f"Left join of outcomes (absent = {config.absent_outcome_value})",
                "Left join of sampling weights" if weights is not None else "No sampling weights",
                "Flagged pupils with missing controls",
            ],
            {
                'n_pupils': len(table),
                'n_missing_vars': int(table['missing_vars'].sum()),
                'weight_column': config.weight_column if weights is not None else None,
                'controls': config.controls,
            },
        )
        return 0


def main():
    parser = argparse.ArgumentParser(
        description="Assemble the regression analysis table",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--panel", type=Path, help="Census panel (default: paths.census_panel)")
    parser.add_argument("--scores", type=Path, help="Factor scores (default: <paths.factors_dir>/factor_scores.csv)")
    parser.add_argument("--eyfsp", type=Path, help="Cleaned EYFSP table (default: paths.eyfsp_clean)")
    parser.add_argument("--outcomes", type=Path, help="Offending outcomes (default: paths.outcomes)")
    parser.add_argument("--weights", type=Path, help="Sampling weights (default: paths.weights)")
    parser.add_argument("--output", type=Path, help="Analysis table (default: paths.analysis_table)")
    parser.add_argument("--config", type=Path, help="Pipeline config (default: config/pipeline.yaml)")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--log-file", type=Path, help="Optional log file")

    args = parser.parse_args()
    setup_logging(args.log_level, args.log_file)

    try:
        builder = AnalysisTableBuilder(args.config)
        factors_dir = builder.path('factors_dir')
        return builder.run(
            args.panel or builder.path('census_panel'),
            args.scores or (factors_dir / 'factor_scores.csv' if factors_dir else None),
            args.eyfsp or builder.path('eyfsp_clean'),
            args.outcomes or builder.path('outcomes'),
            args.weights or builder.path('weights'),
            args.output or builder.path('analysis_table'),
        )
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Analysis table build failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
