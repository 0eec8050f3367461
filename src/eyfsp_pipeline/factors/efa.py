"""
Exploratory two-factor model on the tetrachoric matrix

The oblique EFA loadings are only starting values for the anchored
confirmatory model. They are not reported as final estimates.
"""

import logging
from dataclasses import dataclass
from itertools import permutations
from typing import Dict, List, Optional

import numpy as np
import pandas as pd
from factor_analyzer import FactorAnalyzer

logger = logging.getLogger(__name__)


@dataclass
class EFAResult:
    loadings: pd.DataFrame           # items x factors, columns named after the groups
    factor_correlation: pd.DataFrame
    eigenvalues: pd.DataFrame        # original and common-factor eigenvalues (scree data)
    variance: pd.DataFrame


def _match_factors(loadings: np.ndarray, items: List[str], groups: Dict[str, List[str]]):
    """Assign each semantic group the factor its items load on most strongly"""
    names = list(groups)
    strength = np.array([
        [np.abs(loadings[[items.index(i) for i in groups[g]], k]).mean() for k in range(loadings.shape[1])]
        for g in names
    ])
    best = max(permutations(range(loadings.shape[1]), len(names)),
               key=lambda order: sum(strength[g, k] for g, k in enumerate(order)))
    return dict(zip(names, best))


def fit_efa(
    rho: pd.DataFrame,
    groups: Dict[str, List[str]],
    rotation: str = 'geomin_obl',
    method: str = 'minres',
) -> EFAResult:
    """
    Fit the exploratory model and label factors by semantic group

    Args:
        rho: Item correlation matrix (tetrachoric)
        groups: {factor_name: [items]}. Each group's factor is the one its
            items load on most strongly, with the sign flipped so the mean
            own-group loading is positive.
        rotation: factor_analyzer rotation (oblique)
        method: Extraction method

    Returns:
        EFAResult with loadings ordered as rho's items
    """
    items = list(rho.columns)
    grouped = [i for g in groups.values() for i in g]
    missing = sorted(set(grouped) - set(items))
    if missing:
        raise ValueError(f"Grouped items not in the correlation matrix: {', '.join(missing)}")

    n_factors = len(groups)
    fa = FactorAnalyzer(n_factors=n_factors, rotation=rotation, method=method,
                        use_smc=True, is_corr_matrix=True)
    fa.fit(rho.to_numpy())

    raw = np.asarray(fa.loadings_)
    phi = getattr(fa, 'phi_', None)
    phi = np.eye(n_factors) if phi is None else np.asarray(phi)

    assignment = _match_factors(raw, items, groups)
    order = [assignment[g] for g in groups]
    signs = []
    for g, k in zip(groups, order):
        own = raw[[items.index(i) for i in groups[g]], k]
        signs.append(-1.0 if own.mean() < 0 else 1.0)
    signs = np.array(signs)

    loadings = raw[:, order] * signs
    phi = phi[np.ix_(order, order)] * np.outer(signs, signs)

    names = list(groups)
    original, common = fa.get_eigenvalues()
    variance = fa.get_factor_variance()

    result = EFAResult(
        loadings=pd.DataFrame(loadings, index=items, columns=names),
        factor_correlation=pd.DataFrame(phi, index=names, columns=names),
        eigenvalues=pd.DataFrame({
            'factor': np.arange(1, len(original) + 1),
            'original': original,
            'common': common,
        }),
        variance=pd.DataFrame(
            np.vstack(variance)[:2, order],
            index=['ss_loadings', 'proportion_var'],
            columns=names,
        ),
    )

    logger.info(f"EFA ({method}, {rotation}): factor correlation {phi[0, 1]:.3f}")
    for name in names:
        own = result.loadings.loc[groups[name], name]
        logger.info(f"  {name}: mean own loading {own.mean():.3f}, min {own.min():.3f}")

    return result


def log_efa_loadings(efa: EFAResult, threshold: Optional[float] = 0.3):
    """Log the items loading above threshold on each factor"""
    for name in efa.loadings.columns:
        column = efa.loadings[name]
        dominant = column[column.abs() > threshold].sort_values(ascending=False)
        logger.info(f"{name}: {len(dominant)} items with |loading| > {threshold}")
        for item, value in dominant.items():
            logger.info(f"  {item}: {value:.3f}")
