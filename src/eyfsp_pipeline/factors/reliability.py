"""
Scale reliability diagnostics

Internal consistency (Cronbach's alpha on raw items, ordinal alpha on the
tetrachoric matrix) and model-based omega from the confirmatory loadings.
"""

from typing import Dict, List

import numpy as np
import pandas as pd

from .cfa import CFAResult


def cronbach_alpha(items: pd.DataFrame) -> float:
    """Cronbach's alpha on complete cases"""
    complete = items.astype(float).dropna()
    k = complete.shape[1]
    if k < 2 or len(complete) < 2:
        return float('nan')
    item_var = complete.var(axis=0, ddof=1).sum()
    total_var = complete.sum(axis=1).var(ddof=1)
    if total_var == 0:
        return float('nan')
    return float(k / (k - 1) * (1 - item_var / total_var))


def ordinal_alpha(rho: pd.DataFrame) -> float:
    """Standardised alpha from a (tetrachoric) correlation matrix"""
    k = rho.shape[0]
    if k < 2:
        return float('nan')
    return float(k / (k - 1) * (1 - k / rho.to_numpy().sum()))


def omega(cfa: CFAResult, factor: str) -> float:
    """
    (sum lambda)^2 / ((sum lambda)^2 + sum theta) over items loading on factor
    """
    column = cfa.loadings[factor]
    loading = column[column != 0]
    common = loading.sum() ** 2
    unique = cfa.theta[loading.index].sum()
    return float(common / (common + unique))


def reliability_table(
    items: pd.DataFrame,
    rho: pd.DataFrame,
    cfa: CFAResult,
    groups: Dict[str, List[str]],
) -> pd.DataFrame:
    rows = []
    for factor, members in groups.items():
        rows.append({
            'factor': factor,
            'n_items': len(members),
            'alpha': cronbach_alpha(items[members]),
            'ordinal_alpha': ordinal_alpha(rho.loc[members, members]),
            'omega': omega(cfa, factor),
        })
    return pd.DataFrame(rows).set_index('factor')


def score_determinacy(loadings: np.ndarray, theta: np.ndarray, psi: np.ndarray) -> np.ndarray:
    """Correlation between each factor and its regression score estimate"""
    sigma = loadings @ psi @ loadings.T + np.diag(theta)
    explained = psi @ loadings.T @ np.linalg.solve(sigma, loadings @ psi)
    return np.sqrt(np.clip(np.diag(explained) / np.diag(psi), 0.0, 1.0))
