"""
Tetrachoric correlations for binary items

Two-step estimator: thresholds come from the pairwise marginal proportions,
then rho maximises the 2x2 multinomial likelihood with the thresholds held
fixed. The bivariate normal CDF is evaluated by quadrature over the Plackett
identity, so estimates are deterministic.
"""

import logging
from dataclasses import dataclass
from typing import Tuple

import numpy as np
import pandas as pd
from scipy import integrate, optimize, stats

logger = logging.getLogger(__name__)


ZERO_CELL_CORRECTION = 0.5
RHO_BOUND = 0.9999


@dataclass
class TetrachoricResult:
    """
    Attributes:
        rho: Item x item tetrachoric correlation matrix
        thresholds: Item thresholds tau = Phi^-1(1 - p) on the full column
        n_pairs: Pairwise complete N
        acov: Asymptotic sampling variance of each correlation
        smoothed: True if the matrix was adjusted to be positive definite
    """
    rho: pd.DataFrame
    thresholds: pd.Series
    n_pairs: pd.DataFrame
    acov: pd.DataFrame
    smoothed: bool = False

    @property
    def n_obs(self) -> int:
        values = self.n_pairs.to_numpy()
        return int(values[np.triu_indices_from(values, k=1)].min()) if len(values) > 1 else int(values.min())


def bvn_density(h: float, k: float, r: float) -> float:
    """Standard bivariate normal density at (h, k) with correlation r"""
    det = 1.0 - r * r
    return np.exp(-(h * h - 2.0 * r * h * k + k * k) / (2.0 * det)) / (2.0 * np.pi * np.sqrt(det))


def bvn_cdf(h: float, k: float, rho: float) -> float:
    """
    P(X <= h, Y <= k) for a standard bivariate normal with correlation rho

    Uses Phi2(h, k; rho) = Phi(h)Phi(k) + integral_0^rho phi2(h, k; r) dr
    """
    base = stats.norm.cdf(h) * stats.norm.cdf(k)
    if rho == 0:
        return base
    value, _ = integrate.quad(lambda r: bvn_density(h, k, r), 0.0, rho, epsabs=1e-12, epsrel=1e-10)
    return float(np.clip(base + value, 0.0, 1.0))


def cell_probabilities(tau_i: float, tau_j: float, rho: float) -> np.ndarray:
    """
    Model probabilities of the 2x2 table [[p00, p01], [p10, p11]]

    An item scores 1 when its latent response exceeds its threshold.
    """
    p00 = bvn_cdf(tau_i, tau_j, rho)
    p0_ = stats.norm.cdf(tau_i)
    p_0 = stats.norm.cdf(tau_j)
    p01 = p0_ - p00
    p10 = p_0 - p00
    p11 = 1.0 - p0_ - p_0 + p00
    probs = np.array([[p00, p01], [p10, p11]])
    return np.clip(probs, 1e-15, 1.0)


def pair_table(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """2x2 count table of two 0/1 arrays on pairwise complete rows"""
    mask = ~(np.isnan(x) | np.isnan(y))
    codes = (2 * x[mask] + y[mask]).astype(int)
    return np.bincount(codes, minlength=4).reshape(2, 2).astype(float)


def tetrachoric_pair(table: np.ndarray, correction: float = ZERO_CELL_CORRECTION) -> Tuple[float, float, float, float]:
    """
    Estimate one tetrachoric correlation from a 2x2 table

    Args:
        table: Counts [[n00, n01], [n10, n11]]
        correction: Added to empty cells before estimation

    Returns:
        (rho, acov, tau_i, tau_j)

    Raises:
        ValueError: If either item is constant on the pairwise sample
    """
    table = np.asarray(table, dtype=float)
    n = table.sum()
    if n == 0 or (table.sum(axis=1) == 0).any() or (table.sum(axis=0) == 0).any():
        raise ValueError("Tetrachoric correlation undefined: an item has no variance in the pair")

    adjusted = np.where(table == 0, correction, table)
    total = adjusted.sum()
    tau_i = stats.norm.ppf(adjusted[0, :].sum() / total)
    tau_j = stats.norm.ppf(adjusted[:, 0].sum() / total)

    def negative_loglik(rho):
        return -np.sum(adjusted * np.log(cell_probabilities(tau_i, tau_j, rho)))

    fit = optimize.minimize_scalar(
        negative_loglik, bounds=(-RHO_BOUND, RHO_BOUND), method='bounded',
        options={'xatol': 1e-8}
    )
    rho = float(fit.x)

    probs = cell_probabilities(tau_i, tau_j, rho)
    density = bvn_density(tau_i, tau_j, rho)
    information = n * density ** 2 * np.sum(1.0 / probs)
    acov = 1.0 / information if information > 0 else np.inf

    return rho, acov, float(tau_i), float(tau_j)


def smooth_correlation(matrix: np.ndarray, eps: float = 1e-8) -> Tuple[np.ndarray, bool]:
    """
    Clip non-positive eigenvalues and rescale to a unit diagonal

    Returns:
        (matrix, True if an adjustment was made)
    """
    eigvals, eigvecs = np.linalg.eigh(matrix)
    if np.all(eigvals > eps):
        return matrix, False

    eigvals = np.maximum(eigvals, 100 * eps)
    adjusted = eigvecs @ np.diag(eigvals) @ eigvecs.T
    d = np.sqrt(np.diag(adjusted))
    adjusted = adjusted / np.outer(d, d)
    adjusted = (adjusted + adjusted.T) / 2
    np.fill_diagonal(adjusted, 1.0)
    return adjusted, True


def item_thresholds(items: pd.DataFrame) -> pd.Series:
    """Thresholds tau = Phi^-1(P(item = 0)) on each full column"""
    p0 = 1.0 - items.astype(float).mean(skipna=True)
    constant = p0[(p0 <= 0) | (p0 >= 1)]
    if not constant.empty:
        raise ValueError(f"Items with no variance: {', '.join(constant.index)}")
    return pd.Series(stats.norm.ppf(p0.to_numpy()), index=items.columns, name='threshold')


def tetrachoric(items: pd.DataFrame, correction: float = ZERO_CELL_CORRECTION,
                smooth: bool = True) -> TetrachoricResult:
    """
    Tetrachoric correlation matrix of binary item columns

    Args:
        items: One column per item, values 0/1 or missing
        correction: Zero-cell correction
        smooth: Adjust the matrix to be positive definite if needed

    Returns:
        TetrachoricResult
    """
    columns = list(items.columns)
    data = items.astype(float).to_numpy()
    p = len(columns)

    thresholds = item_thresholds(items)
    rho = np.eye(p)
    acov = np.zeros((p, p))
    n_pairs = np.zeros((p, p), dtype=int)

    logger.info(f"Estimating {p * (p - 1) // 2:,} tetrachoric correlations for {p} items...")

    for i in range(p):
        n_pairs[i, i] = int((~np.isnan(data[:, i])).sum())
        for j in range(i + 1, p):
            table = pair_table(data[:, i], data[:, j])
            r, v, _, _ = tetrachoric_pair(table, correction)
            rho[i, j] = rho[j, i] = r
            acov[i, j] = acov[j, i] = v
            n_pairs[i, j] = n_pairs[j, i] = int(table.sum())

    smoothed = False
    if smooth:
        rho, smoothed = smooth_correlation(rho)
        if smoothed:
            logger.warning("Tetrachoric matrix was not positive definite and has been smoothed")

    return TetrachoricResult(
        rho=pd.DataFrame(rho, index=columns, columns=columns),
        thresholds=thresholds,
        n_pairs=pd.DataFrame(n_pairs, index=columns, columns=columns),
        acov=pd.DataFrame(acov, index=columns, columns=columns),
        smoothed=smoothed,
    )
