"""Latent factor scoring: tetrachoric EFA -> anchored CFA -> EBM scores."""

from .cfa import CFAResult, FactorModelError, ModelSpec, build_model_spec, fit_cfa, modification_indices
from .efa import EFAResult, fit_efa
from .esem import ESEMResult, FactorConfig, run_esem, select_scoring_sample
from .scoring import FactorScores, ebm_scores, posterior_covariance, shrinkage_matrix
from .tetrachoric import TetrachoricResult, tetrachoric

__all__ = [
    "CFAResult",
    "EFAResult",
    "ESEMResult",
    "FactorConfig",
    "FactorModelError",
    "FactorScores",
    "ModelSpec",
    "TetrachoricResult",
    "build_model_spec",
    "ebm_scores",
    "fit_cfa",
    "fit_efa",
    "modification_indices",
    "posterior_covariance",
    "run_esem",
    "select_scoring_sample",
    "shrinkage_matrix",
    "tetrachoric",
]
