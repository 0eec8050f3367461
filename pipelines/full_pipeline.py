#!/usr/bin/env python3
"""
Full data processing pipeline for the EYFSP latent traits analysis

This pipeline orchestrates the complete data flow:
1. Clean EYFSP items and recover missing totals
2. Build the longitudinal census panel
3. Estimate cognitive and socio-emotional factor scores
4. Assemble the analysis table for the regression stage

Each stage reads the previous stage's files from disk, so a failed run can
be resumed with --start-from.

Usage:
    python full_pipeline.py [--config <yaml>] [--start-from <stage>] [--cross-loadings zero|free]

Example:
    python full_pipeline.py
    python full_pipeline.py --start-from scores --cross-loadings free
"""

import argparse
import logging
from pathlib import Path
import sys
import subprocess
from datetime import datetime
from typing import List, Optional

# Add utilities to path
sys.path.insert(0, str(Path(__file__).parent.parent / "infrastructure" / "utilities"))
from common import get_project_root, load_pipeline_config, resolve_path, setup_logging

logger = logging.getLogger(__name__)


STAGES = ['clean', 'panel', 'scores', 'analysis']


class PipelineRunner:
    """
    Orchestrate the full data processing pipeline
    """

    def __init__(self, config_path: Optional[Path] = None, start_from: str = 'clean',
                 cross_loadings: Optional[str] = None, log_level: str = 'INFO'):
        """
        Initialize pipeline

        Args:
            config_path: Pipeline config (default: config/pipeline.yaml)
            start_from: First stage to run; earlier stages' outputs are reused
            cross_loadings: Override for the factor model's cross-loading mode
            log_level: Log level passed on to every stage
        """
        if start_from not in STAGES:
            raise ValueError(f"Unknown stage '{start_from}', expected one of {STAGES}")

        self.root = get_project_root()
        self.config_path = Path(config_path) if config_path else None
        self.config = load_pipeline_config(config_path)
        self.start_from = start_from
        self.cross_loadings = cross_loadings
        self.log_level = log_level

        self.scripts_dir = self.root / "infrastructure" / "scripts"

        self.steps_completed = []
        self.steps_failed = []
        self.steps_skipped = []

    def common_args(self) -> List[str]:
        args = ["--log-level", self.log_level]
        if self.config_path:
            args.extend(["--config", str(self.config_path)])
        return args

    def run_script(self, script_path: Path, args: list = None) -> bool:
        """
        Run a stage script and capture output

        Args:
            script_path: Path to script
            args: List of command-line arguments

        Returns:
            True if script succeeded
        """
        cmd = [sys.executable, str(script_path)]
        if args:
            cmd.extend(args)

        logger.info(f"Running: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                check=True
            )

            # Stage scripts log to stderr
            for stream in (result.stdout, result.stderr):
                for line in (stream or '').split('\n'):
                    if line.strip():
                        logger.info(f"  | {line}")

            return True

        except subprocess.CalledProcessError as e:
            logger.error(f"Script failed with exit code {e.returncode}")
            if e.stderr:
                logger.error(f"Error output:\n{e.stderr}")
            return False

    def step_clean(self) -> bool:
        """
        Step 1: Item recovery and validation

        Returns:
            True if successful
        """
        logger.info("\n" + "="*60)
        logger.info("STEP 1: CLEAN EYFSP AND RECOVER TOTALS")
        logger.info("="*60)

        script = self.scripts_dir / "transform" / "clean_eyfsp.py"
        return self.run_script(script, self.common_args())

    def step_panel(self) -> bool:
        """
        Step 2: Cross-year longitudinal aggregation

        Returns:
            True if successful
        """
        logger.info("\n" + "="*60)
        logger.info("STEP 2: BUILD LONGITUDINAL CENSUS PANEL")
        logger.info("="*60)

        script = self.scripts_dir / "transform" / "build_census_panel.py"
        return self.run_script(script, self.common_args())

    def step_scores(self) -> bool:
        """
        Step 3: Latent factor scoring

        Returns:
            True if successful
        """
        logger.info("\n" + "="*60)
        logger.info("STEP 3: ESTIMATE FACTOR SCORES")
        logger.info("="*60)

        script = self.scripts_dir / "analyze" / "score_factors.py"
        args = self.common_args()
        if self.cross_loadings:
            args.extend(["--cross-loadings", self.cross_loadings])
        return self.run_script(script, args)

    def step_analysis(self) -> bool:
        """
        Step 4: Analysis table for the regression stage

        Returns:
            True if successful
        """
        logger.info("\n" + "="*60)
        logger.info("STEP 4: ASSEMBLE ANALYSIS TABLE")
        logger.info("="*60)

        script = self.scripts_dir / "transform" / "build_analysis_table.py"
        return self.run_script(script, self.common_args())

    def run(self) -> bool:
        """
        Run the pipeline, stopping at the first failed stage

        Returns:
            True if all steps succeeded
        """
        start_time = datetime.now()

        logger.info("="*60)
        logger.info("EYFSP LATENT TRAITS PIPELINE")
        logger.info("="*60)
        logger.info(f"Config: {self.config_path or 'config/pipeline.yaml'}")
        logger.info(f"Start from: {self.start_from}")
        logger.info(f"Cross-loadings: {self.cross_loadings or (self.config.get('factors') or {}).get('cross_loadings', 'zero')}")
        logger.info(f"Started: {start_time.strftime('%Y-%m-%d %H:%M:%S')}")

        steps = [
            ("clean", self.step_clean),
            ("panel", self.step_panel),
            ("scores", self.step_scores),
            ("analysis", self.step_analysis),
        ]
        first = STAGES.index(self.start_from)

        for index, (step_name, step_func) in enumerate(steps):
            if index < first:
                self.steps_skipped.append(step_name)
                logger.info(f"- {step_name} skipped (--start-from {self.start_from})")
                continue
            try:
                success = step_func()
                if success:
                    self.steps_completed.append(step_name)
                    logger.info(f"✓ {step_name} completed")
                else:
                    self.steps_failed.append(step_name)
                    logger.error(f"✗ {step_name} failed")
                    break
            except Exception as e:
                self.steps_failed.append(step_name)
                logger.error(f"✗ {step_name} failed with exception: {e}")
                break

        end_time = datetime.now()
        duration = end_time - start_time

        logger.info("\n" + "="*60)
        logger.info("PIPELINE SUMMARY")
        logger.info("="*60)
        logger.info(f"Completed steps: {len(self.steps_completed)}/{len(steps) - len(self.steps_skipped)}")

        if self.steps_completed:
            logger.info("\n✓ Completed:")
            for step in self.steps_completed:
                logger.info(f"  - {step}")

        if self.steps_failed:
            logger.info("\n✗ Failed:")
            for step in self.steps_failed:
                logger.info(f"  - {step}")
            logger.info(f"Outputs of completed stages are kept; resume with --start-from {self.steps_failed[0]}")

        logger.info(f"\nDuration: {duration}")
        logger.info(f"Finished: {end_time.strftime('%Y-%m-%d %H:%M:%S')}")

        success = len(self.steps_failed) == 0
        if success:
            paths = self.config.get('paths') or {}
            logger.info("\n✓ Pipeline completed successfully!")
            logger.info("\nOutput locations:")
            for key in ('eyfsp_clean', 'census_panel', 'factors_dir', 'analysis_table'):
                if paths.get(key):
                    logger.info(f"  {key}: {resolve_path(paths[key])}")
        else:
            logger.error("\n✗ Pipeline failed")

        return success


def main():
    parser = argparse.ArgumentParser(
        description="Run the complete EYFSP latent traits pipeline",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )

    parser.add_argument(
        "--config",
        type=Path,
        help="Pipeline config (default: config/pipeline.yaml)"
    )
    parser.add_argument(
        "--start-from",
        choices=STAGES,
        default='clean',
        help="First stage to run (default: clean)"
    )
    parser.add_argument(
        "--cross-loadings",
        choices=['zero', 'free'],
        help="Override the factor model's non-anchor cross-loadings"
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Logging level"
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        help="Save log to file"
    )

    args = parser.parse_args()

    setup_logging(args.log_level, log_file=args.log_file)

    try:
        pipeline = PipelineRunner(
            config_path=args.config,
            start_from=args.start_from,
            cross_loadings=args.cross_loadings,
            log_level=args.log_level,
        )
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Cannot start pipeline: {e}")
        return 1

    success = pipeline.run()

    return 0 if success else 1


if __name__ == "__main__":
    sys.exit(main())
