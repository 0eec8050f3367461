"""
Empirical Bayes modal factor scores and their measurement error

Given the fitted Lambda, Theta and Psi:

    V = (Psi^-1 + Lambda' Theta^-1 Lambda)^-1         posterior covariance
    W = Psi Lambda' (Lambda Psi Lambda' + Theta)^-1    shrinkage matrix

Each binary response is mapped to the conditional mean of its standard
normal latent response given the observed category, and W is applied to
the resulting vector. diag(V) is each factor's measurement-error variance,
used downstream for error correction. All steps are closed-form linear
algebra, so scores are reproducible bit for bit.
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import stats

from .cfa import CFAResult, FactorModelError

logger = logging.getLogger(__name__)


def posterior_covariance(loadings: np.ndarray, theta: np.ndarray, psi: np.ndarray) -> np.ndarray:
    """V = (Psi^-1 + Lambda' Theta^-1 Lambda)^-1 for diagonal Theta (given as a vector)"""
    precision = np.linalg.inv(psi) + loadings.T @ (loadings / theta[:, None])
    return np.linalg.inv(precision)


def shrinkage_matrix(loadings: np.ndarray, theta: np.ndarray, psi: np.ndarray) -> np.ndarray:
    """W = Psi Lambda' (Lambda Psi Lambda' + Theta)^-1"""
    sigma = loadings @ psi @ loadings.T + np.diag(theta)
    # sigma is symmetric, so W' = sigma^-1 Lambda Psi
    return np.linalg.solve(sigma, loadings @ psi).T


def latent_response_means(items: pd.DataFrame, thresholds: pd.Series) -> pd.DataFrame:
    """
    E[y* | y] for each binary response

    y = 1: phi(tau) / (1 - Phi(tau))
    y = 0: -phi(tau) / Phi(tau)
    """
    tau = thresholds.reindex(items.columns).to_numpy(dtype=float)
    if np.isnan(tau).any():
        raise ValueError("Thresholds missing for some scored items")

    density = stats.norm.pdf(tau)
    upper = density / stats.norm.sf(tau)
    lower = -density / stats.norm.cdf(tau)

    values = items.astype(float).to_numpy()
    means = np.where(values == 1, upper, np.where(values == 0, lower, np.nan))
    return pd.DataFrame(means, index=items.index, columns=items.columns)


@dataclass
class FactorScores:
    """
    Attributes:
        scores: One row per pupil, one column per factor
        measurement_error: V, the posterior (measurement-error) covariance
        measurement_error_sd: sqrt(diag V) for complete response vectors
        standard_errors: Per-pupil sqrt(diag V) for the pupil's observed items
        shrinkage: W for complete response vectors
        score_covariance: W Lambda Psi, covariance of complete-data scores
        n_partial: Pupils scored from a subset of items
        n_unscored: Pupils with no observed item
    """
    scores: pd.DataFrame
    measurement_error: pd.DataFrame
    measurement_error_sd: pd.Series
    standard_errors: pd.DataFrame
    shrinkage: pd.DataFrame
    score_covariance: pd.DataFrame
    n_partial: int = 0
    n_unscored: int = 0


def ebm_scores(items: pd.DataFrame, cfa: CFAResult, thresholds: pd.Series) -> FactorScores:
    """
    Score pupils on the fitted factors

    Pupils with missing items are scored with W restricted to their observed
    items. Pupils are grouped by missingness pattern, so each distinct pattern
    is solved once, and its posterior covariance gives the standard errors
    of those pupils. A pupil with no observed item gets missing scores, never
    zero.

    Args:
        items: Item responses (0/1/<NA>), indexed by pupil
        cfa: Fitted confirmatory model
        thresholds: Item thresholds from the tetrachoric stage

    Raises:
        FactorModelError: If the model matrices are not invertible
    """
    names = list(cfa.loadings.columns)
    model_items = list(cfa.loadings.index)
    absent = [i for i in model_items if i not in items.columns]
    if absent:
        raise ValueError(f"Scoring data missing model items: {', '.join(absent)}")

    loadings = cfa.lambda_
    theta = cfa.theta.to_numpy()
    psi = cfa.psi.to_numpy()

    try:
        v = posterior_covariance(loadings, theta, psi)
        w = shrinkage_matrix(loadings, theta, psi)
    except np.linalg.LinAlgError as e:
        raise FactorModelError(f"Model matrices are singular: {e}") from e

    z = latent_response_means(items[model_items], thresholds).to_numpy()
    observed = ~np.isnan(z)

    scores = np.full((len(z), len(names)), np.nan)
    errors = np.full((len(z), len(names)), np.nan)
    patterns, inverse = np.unique(observed, axis=0, return_inverse=True)
    inverse = np.asarray(inverse).reshape(-1)

    for index, pattern in enumerate(patterns):
        rows = inverse == index
        if not pattern.any():
            continue
        if pattern.all():
            weights, cov = w, v
        else:
            weights = shrinkage_matrix(loadings[pattern], theta[pattern], psi)
            cov = posterior_covariance(loadings[pattern], theta[pattern], psi)
        scores[rows] = z[rows][:, pattern] @ weights.T
        errors[rows] = np.sqrt(np.diag(cov))

    complete = observed.all(axis=1)
    unscored = ~observed.any(axis=1)

    result = FactorScores(
        scores=pd.DataFrame(scores, index=items.index, columns=names),
        measurement_error=pd.DataFrame(v, index=names, columns=names),
        measurement_error_sd=pd.Series(np.sqrt(np.diag(v)), index=names, name='me_sd'),
        standard_errors=pd.DataFrame(errors, index=items.index, columns=names),
        shrinkage=pd.DataFrame(w, index=names, columns=model_items),
        score_covariance=pd.DataFrame(w @ loadings @ psi, index=names, columns=names),
        n_partial=int((~complete & ~unscored).sum()),
        n_unscored=int(unscored.sum()),
    )

    logger.info(f"Scored {len(items) - result.n_unscored:,} pupils "
                f"({result.n_partial:,} from partial responses, {result.n_unscored:,} unscored)")
    for name in names:
        logger.info(f"  {name}: measurement-error SD {result.measurement_error_sd[name]:.4f}")

    return result
