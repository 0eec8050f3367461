#!/usr/bin/env python3
"""
Build the longitudinal census panel

Reads the baseline cohort table and every yearly census extract, and writes
one row per pupil with time-invariant characteristics, ever-true flags,
academic-year school identifiers and school-change counts.

Usage:
    python build_census_panel.py [--cohorts <file>] [--census-dir <dir>] [--pattern <glob>]

Example:
    python build_census_panel.py --census-dir data/raw/census --pattern "Census_SPR*.dta"
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
    find_census_files,
    setup_logging,
)
from eyfsp_pipeline.longitudinal import LongitudinalConfig, build_panel

logger = logging.getLogger(__name__)


class CensusPanelBuilder(DataProcessor):
    """Stage 2: cross-year longitudinal aggregation"""

    def run(self, cohort_file: Path, census_dir: Path, pattern: str, output_file: Path) -> int:
        config = LongitudinalConfig.from_dict(self.config.get('longitudinal') or {}, self.pupil_id)

        files = find_census_files(census_dir, pattern)
        if not files:
            logger.error(f"No census files matching '{pattern}' in {census_dir}")
            return 1
        logger.info(f"Found census extracts for {', '.join(str(y) for y in sorted(files))}")

        cohorts = self.load_data(cohort_file)
        snapshots = {year: self.load_data(path) for year, path in sorted(files.items())}

        panel = build_panel(cohorts, snapshots, config)
        self.save_data(panel, output_file)

        create_data_lineage_file(
            output_file,
            [cohort_file] + [files[y] for y in sorted(files)],
            [
                "Normalised yearly extracts to long form",
                "Derived SEN and category flags",
                "Resolved time-invariant fields from the baseline year",
                "Resolved sibling count as maximum over sibling years",
                "Resolved ever-true flags over cohort windows",
                "Indexed identifiers by academic year and counted school changes",
            ],
            {
                'n_pupils': len(panel),
                'census_years': sorted(int(y) for y in files),
            },
        )
        return 0


def main():
    parser = argparse.ArgumentParser(
        description="Build the longitudinal census panel",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--cohorts", type=Path, help="Baseline cohort table (default: paths.cohorts)")
    parser.add_argument("--census-dir", type=Path, help="Directory of yearly extracts (default: paths.census_dir)")
    parser.add_argument("--pattern", help="Glob for yearly extracts (default: paths.census_pattern)")
    parser.add_argument("--output", type=Path, help="Panel output (default: paths.census_panel)")
    parser.add_argument("--config", type=Path, help="Pipeline config (default: config/pipeline.yaml)")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--log-file", type=Path, help="Optional log file")

    args = parser.parse_args()
    setup_logging(args.log_level, args.log_file)

    try:
        builder = CensusPanelBuilder(args.config)
        pattern = args.pattern or (builder.config.get('paths') or {}).get('census_pattern', 'census_*.csv')
        return builder.run(
            args.cohorts or builder.path('cohorts'),
            args.census_dir or builder.path('census_dir'),
            pattern,
            args.output or builder.path('census_panel'),
        )
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Census panel build failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
