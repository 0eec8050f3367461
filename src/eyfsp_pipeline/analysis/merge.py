"""
Analysis table assembly

Joins the census panel, factor scores, EYFSP totals, offending outcomes and
sampling weights into the single per-pupil table the regression stage reads.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pandas as pd

logger = logging.getLogger(__name__)


@dataclass
class AnalysisConfig:
    pupil_id: str = 'pupil_id'
    assessment_columns: List[str] = field(default_factory=list)
    outcome_columns: List[str] = field(default_factory=list)
    absent_outcome_value: float = 0
    weight_column: Optional[str] = None
    controls: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, config: Optional[Dict] = None, pupil_id: str = 'pupil_id') -> 'AnalysisConfig':
        config = config or {}
        return cls(
            pupil_id=pupil_id,
            assessment_columns=list(config.get('assessment_columns') or []),
            outcome_columns=list(config.get('outcome_columns') or []),
            absent_outcome_value=config.get('absent_outcome_value', 0),
            weight_column=config.get('weight_column'),
            controls=list(config.get('controls') or []),
        )


def _unique_pupils(df: pd.DataFrame, pupil_id: str, name: str) -> pd.DataFrame:
    if pupil_id not in df.columns:
        raise ValueError(f"{name} has no '{pupil_id}' column")
    duplicated = df[pupil_id].duplicated()
    if duplicated.any():
        logger.warning(f"{name}: dropping {duplicated.sum():,} duplicate pupil rows")
        df = df[~duplicated]
    return df


def build_analysis_table(
    panel: pd.DataFrame,
    scores: pd.DataFrame,
    outcomes: Optional[pd.DataFrame] = None,
    weights: Optional[pd.DataFrame] = None,
    config: Optional[AnalysisConfig] = None,
    assessment: Optional[pd.DataFrame] = None,
) -> pd.DataFrame:
    """
    Merge all per-pupil inputs of the regression stage

    Args:
        panel: Longitudinal census panel
        scores: Factor scores (pupil_id plus one column per factor)
        outcomes: Offending outcomes. Pupils without a record get
            ``absent_outcome_value`` in every outcome column.
        weights: Sampling weights with ``weight_column``
        config: Column lists
        assessment: Cleaned EYFSP table, source of ``assessment_columns``

    Returns:
        One row per pupil present in both the panel and the scores, with a
        ``missing_vars`` flag (1 if any control is missing)

    Raises:
        ValueError: If an input lacks the pupil id or a configured column
    """
    config = config or AnalysisConfig()
    pupil_id = config.pupil_id

    panel = _unique_pupils(panel, pupil_id, 'Panel')
    scores = _unique_pupils(scores, pupil_id, 'Factor scores')

    table = panel.merge(scores, on=pupil_id, how='inner', suffixes=('', '_score'))
    logger.info(f"Panel {len(panel):,} x scores {len(scores):,} -> {len(table):,} pupils")

    if assessment is not None and config.assessment_columns:
        assessment = _unique_pupils(assessment, pupil_id, 'Assessment')
        absent = [c for c in config.assessment_columns if c not in assessment.columns]
        if absent:
            raise ValueError(f"Assessment missing columns: {', '.join(absent)}")
        columns = [c for c in config.assessment_columns if c not in table.columns]
        table = table.merge(assessment[[pupil_id] + columns], on=pupil_id, how='left')

    if outcomes is not None:
        outcomes = _unique_pupils(outcomes, pupil_id, 'Outcomes')
        absent = [c for c in config.outcome_columns if c not in outcomes.columns]
        if absent:
            raise ValueError(f"Outcomes missing columns: {', '.join(absent)}")
        matched = table[pupil_id].isin(outcomes[pupil_id])
        table = table.merge(outcomes[[pupil_id] + config.outcome_columns], on=pupil_id, how='left')
        for column in config.outcome_columns:
            table[column] = table[column].fillna(config.absent_outcome_value)
        logger.info(f"  Outcomes matched for {int(matched.sum()):,} pupils, "
                    f"{int((~matched).sum()):,} set to {config.absent_outcome_value}")

    if weights is not None:
        if not config.weight_column:
            raise ValueError("Weights supplied but no weight_column configured")
        weights = _unique_pupils(weights, pupil_id, 'Weights')
        if config.weight_column not in weights.columns:
            raise ValueError(f"Weights missing column '{config.weight_column}'")
        table = table.merge(weights[[pupil_id, config.weight_column]], on=pupil_id, how='left')
        n_missing = int(table[config.weight_column].isna().sum())
        if n_missing:
            logger.warning(f"  {n_missing:,} pupils have no sampling weight")

    absent = [c for c in config.controls if c not in table.columns]
    if absent:
        raise ValueError(f"Analysis table missing control columns: {', '.join(absent)}")
    if config.controls:
        table['missing_vars'] = table[config.controls].isna().any(axis=1).astype(int)
    else:
        table['missing_vars'] = 0

    logger.info(f"  {int(table['missing_vars'].sum()):,} pupils with a missing control")
    return table
