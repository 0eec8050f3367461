"""
ESEM-within-CFA scoring pipeline

tetrachoric -> EFA (starting values) -> anchored CFA -> EBM scores
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import pandas as pd

from eyfsp_pipeline.recovery.item_recovery import OVERALL_COLUMN
from .cfa import CFAResult, build_model_spec, fit_cfa, loading_table, modification_indices
from .efa import EFAResult, fit_efa, log_efa_loadings
from .reliability import reliability_table, score_determinacy
from .scoring import FactorScores, ebm_scores
from .tetrachoric import TetrachoricResult, tetrachoric

logger = logging.getLogger(__name__)


@dataclass
class FactorConfig:
    groups: Dict[str, List[str]]
    anchors: Dict[str, str]
    cross_loadings: str = 'zero'
    rotation: str = 'geomin_obl'
    efa_method: str = 'minres'
    max_iter: int = 2000
    tolerance: float = 1e-6
    modification_index_minimum: float = 10.0
    required_columns: List[str] = field(default_factory=list)

    @property
    def items(self) -> List[str]:
        return [i for members in self.groups.values() for i in members]

    @classmethod
    def from_dict(cls, config: Dict) -> 'FactorConfig':
        if not config.get('groups'):
            raise ValueError("factors config defines no item groups")
        sample = config.get('sample') or {}
        return cls(
            groups={name: list(items) for name, items in config['groups'].items()},
            anchors=dict(config.get('anchors') or {}),
            cross_loadings=config.get('cross_loadings', 'zero'),
            rotation=config.get('rotation', 'geomin_obl'),
            efa_method=config.get('efa_method', 'minres'),
            max_iter=int(config.get('max_iter', 2000)),
            tolerance=float(config.get('tolerance', 1e-6)),
            modification_index_minimum=float(config.get('modification_index_minimum', 10.0)),
            required_columns=list(sample.get('required_columns') or []),
        )


@dataclass
class ESEMResult:
    tetrachoric: TetrachoricResult
    efa: EFAResult
    cfa: CFAResult
    scores: FactorScores
    reliability: pd.DataFrame
    modification_indices: pd.DataFrame = field(default_factory=pd.DataFrame)
    groups: Dict[str, List[str]] = field(default_factory=dict)

    def loading_table(self) -> pd.DataFrame:
        return loading_table(self.efa.loadings, self.cfa)

    def summary(self) -> Dict:
        """Process-wide artifacts in plain Python types (for YAML export)"""
        def matrix(df):
            return {r: {c: float(df.loc[r, c]) for c in df.columns} for r in df.index}

        return {
            'n_items': len(self.cfa.spec.items),
            'n_obs': int(self.cfa.n_obs),
            'free_cross_loadings': int(self.cfa.spec.free.sum()) - sum(len(m) for m in self.groups.values()),
            'fit': {k: float(v) for k, v in self.cfa.fit.items()},
            'psi': matrix(self.cfa.psi),
            'measurement_error_cov': matrix(self.scores.measurement_error),
            'measurement_error_sd': {k: float(v) for k, v in self.scores.measurement_error_sd.items()},
            'score_cov': matrix(self.scores.score_covariance),
            'reliability': matrix(self.reliability),
            'tetrachoric_smoothed': bool(self.tetrachoric.smoothed),
            'n_large_modification_indices': int(len(self.modification_indices)),
        }


def select_scoring_sample(
    assessment: pd.DataFrame,
    panel: pd.DataFrame,
    required_columns: Optional[List[str]] = None,
    pupil_id: str = 'pupil_id',
    overall_column: str = OVERALL_COLUMN,
) -> pd.DataFrame:
    """
    Pupils eligible for factor scoring

    Keeps pupils present in both tables with no missing required control
    (missing_vars == 0) and a present, non-zero overall EYFSP score.
    """
    required_columns = required_columns or []
    absent = [c for c in required_columns if c not in panel.columns]
    if absent:
        raise ValueError(f"Panel missing required columns: {', '.join(absent)}")

    controls = panel[[pupil_id] + required_columns].copy()
    controls['missing_vars'] = controls[required_columns].isna().any(axis=1).astype(int)

    merged = controls[[pupil_id, 'missing_vars']].merge(assessment, on=pupil_id, how='inner')
    overall = merged[overall_column]
    keep = (merged['missing_vars'] == 0) & (overall.notna() & (overall != 0)).fillna(False).astype(bool)

    logger.info(f"Scoring sample: {len(merged):,} matched pupils, "
                f"{int((merged['missing_vars'] == 1).sum()):,} with missing controls, "
                f"{int(keep.sum()):,} kept")
    return merged[keep].reset_index(drop=True)


def run_esem(items: pd.DataFrame, config: FactorConfig) -> ESEMResult:
    """
    Fit the measurement model and score every row of ``items``

    Args:
        items: Item responses for the scoring sample, indexed by pupil
        config: Fixed item groups, anchors and estimation settings

    Raises:
        FactorModelError: If the confirmatory model fails. No scores are
            produced in that case.
    """
    missing = [i for i in config.items if i not in items.columns]
    if missing:
        raise ValueError(f"Scoring data missing configured items: {', '.join(missing)}")

    data = items[config.items]

    logger.info("\n" + "=" * 60)
    logger.info("STEP 0: TETRACHORIC CORRELATIONS")
    logger.info("=" * 60)
    tetra = tetrachoric(data)

    logger.info("\n" + "=" * 60)
    logger.info("STEP 1: EXPLORATORY MODEL")
    logger.info("=" * 60)
    efa = fit_efa(tetra.rho, config.groups, config.rotation, config.efa_method)
    log_efa_loadings(efa)

    logger.info("\n" + "=" * 60)
    logger.info("STEP 2: ANCHORED CONFIRMATORY MODEL")
    logger.info("=" * 60)
    spec = build_model_spec(efa.loadings, config.groups, config.anchors, config.cross_loadings)
    cfa = fit_cfa(tetra, spec, config.max_iter, config.tolerance)

    mods = modification_indices(tetra, cfa, config.modification_index_minimum)
    if mods.empty:
        logger.info(f"  No modification index >= {config.modification_index_minimum:g}")
    else:
        logger.warning(f"  {len(mods)} fixed loadings with modification index >= "
                       f"{config.modification_index_minimum:g}")
        for row in mods.head(10).itertuples():
            logger.info(f"    {row.factor} =~ {row.item}: MI={row.mi:.1f} EPC={row.epc:.3f}")

    logger.info("\n" + "=" * 60)
    logger.info("STEP 3: EBM FACTOR SCORES")
    logger.info("=" * 60)
    scores = ebm_scores(data, cfa, tetra.thresholds)

    reliability = reliability_table(data, tetra.rho, cfa, config.groups)
    reliability['determinacy'] = score_determinacy(
        cfa.lambda_, cfa.theta.to_numpy(), cfa.psi.to_numpy()
    )
    for factor, row in reliability.iterrows():
        logger.info(f"  {factor}: alpha={row['alpha']:.3f} ordinal alpha={row['ordinal_alpha']:.3f} "
                    f"omega={row['omega']:.3f}")

    return ESEMResult(
        tetrachoric=tetra, efa=efa, cfa=cfa, scores=scores,
        reliability=reliability, modification_indices=mods, groups=config.groups,
    )
