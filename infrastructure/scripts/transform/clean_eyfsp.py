#!/usr/bin/env python3
"""
Clean the EYFSP extract and recover missing totals

Parses the 117 binary item responses, recovers sub-scale, domain and overall
totals bottom-up, and writes the cleaned table with diagnostic columns.

Usage:
    python clean_eyfsp.py [--input <raw_file>] [--output <clean_file>] [--config <yaml>]

Example:
    python clean_eyfsp.py --input data/raw/eyfsp/eyfsp_items.dta
"""

import argparse
import logging
from pathlib import Path
import sys

# Add utilities and the library to path
sys.path.insert(0, str(Path(__file__).parent.parent.parent / "utilities"))
sys.path.insert(0, str(Path(__file__).parent.parent.parent.parent / "src"))
from common import (
    DataProcessor,
    create_data_lineage_file,
    setup_logging,
    validate_required_columns,
)
from eyfsp_pipeline.recovery import domains_from_config, recover_assessment

logger = logging.getLogger(__name__)


class EYFSPCleaner(DataProcessor):
    """Stage 1: item recovery and validation"""

    def run(self, input_file: Path, output_file: Path) -> int:
        eyfsp = self.config.get('eyfsp') or {}
        domains = domains_from_config(eyfsp)

        raw = self.load_data(input_file)
        if not validate_required_columns(raw, [self.pupil_id], "EYFSP extract"):
            return 1

        duplicated = raw[self.pupil_id].duplicated()
        if duplicated.any():
            logger.warning(f"Dropping {duplicated.sum():,} duplicate pupil records")
            raw = raw[~duplicated]

        result = recover_assessment(
            raw,
            domains,
            true_tokens=eyfsp.get('true_tokens', ['true', 't', 'yes', 'y', '1']),
            false_tokens=eyfsp.get('false_tokens', ['false', 'f', 'no', 'n', '0']),
            overall_column=eyfsp.get('overall_column', 'score_eyfsp_overall'),
        )
        result.report.log_summary()

        self.save_data(result.table, output_file)

        report = result.report.to_frame()
        self.save_data(report, output_file.parent / f"{output_file.stem}_recovery.csv")

        create_data_lineage_file(
            output_file,
            [input_file],
            [
                "Parsed item tokens to 1/0/missing",
                "Recovered sub-scale totals from complete items",
                "Recovered domain totals from sub-scale totals",
                "Recovered overall total from domain totals",
                "Flagged reported/recomputed mismatches",
            ],
            {
                'n_pupils': len(result.table),
                'n_rejected_item_tokens': result.report.n_rejected_items,
                'n_mismatches': result.report.total_mismatches,
            },
        )
        return 0


def main():
    parser = argparse.ArgumentParser(
        description="Clean EYFSP items and recover missing totals",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--input", type=Path, help="Raw EYFSP extract (default: paths.eyfsp_raw)")
    parser.add_argument("--output", type=Path, help="Cleaned table (default: paths.eyfsp_clean)")
    parser.add_argument("--config", type=Path, help="Pipeline config (default: config/pipeline.yaml)")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--log-file", type=Path, help="Optional log file")

    args = parser.parse_args()
    setup_logging(args.log_level, args.log_file)

    try:
        cleaner = EYFSPCleaner(args.config)
        input_file = args.input or cleaner.path('eyfsp_raw')
        output_file = args.output or cleaner.path('eyfsp_clean')
        return cleaner.run(input_file, output_file)
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"EYFSP cleaning failed: {e}")
        return 1


if __name__ == '__main__':
    sys.exit(main())
