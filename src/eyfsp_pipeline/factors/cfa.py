"""
Anchored two-factor confirmatory model (ESEM within CFA)

Model for the latent responses y* of the binary items:

    y* = Lambda eta + eps,   Var(eta) = Psi (unit diagonal),   Var(y*) = 1

so Theta = I - diag(Lambda Psi Lambda'). The free parameters are fitted by
diagonally weighted least squares to the tetrachoric correlations, with the
inverse asymptotic variances as weights.

Identification: each factor's variance is fixed at 1, and each anchor item's
cross-loading is fixed at its EFA value. In ``zero`` mode every other
cross-loading is fixed at 0. In ``free`` mode every other cross-loading is
estimated, starting from its EFA value.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List

import numpy as np
import pandas as pd
from scipy import optimize

from .tetrachoric import TetrachoricResult

logger = logging.getLogger(__name__)


CROSS_LOADING_MODES = ('zero', 'free')
PHI_BOUND = 0.99
BOUND_TOLERANCE = 1e-4


class FactorModelError(RuntimeError):
    """The confirmatory model did not converge or is inadmissible"""


@dataclass
class ModelSpec:
    """
    Loading pattern for the confirmatory model

    Attributes:
        items: Item order (rows of every matrix)
        factors: Factor order (columns)
        start: Starting / fixed loading values
        free: True where a loading is estimated
        anchors: {factor: anchor item}
    """
    items: List[str]
    factors: List[str]
    start: np.ndarray
    free: np.ndarray
    anchors: Dict[str, str] = field(default_factory=dict)

    @property
    def n_free(self) -> int:
        # free loadings plus the factor correlation
        return int(self.free.sum()) + 1

    def describe(self) -> pd.DataFrame:
        rows = []
        for i, item in enumerate(self.items):
            for k, factor in enumerate(self.factors):
                rows.append({
                    'item': item,
                    'factor': factor,
                    'start': self.start[i, k],
                    'free': bool(self.free[i, k]),
                    'anchor': self.is_anchor(i, k),
                })
        return pd.DataFrame(rows)

    def is_anchor(self, i: int, k: int) -> bool:
        """True for an anchor item's fixed cross-loading"""
        if self.free[i, k]:
            return False
        others = [f for f in self.factors if f != self.factors[k]]
        return any(self.anchors.get(f) == self.items[i] for f in others)

    def syntax(self) -> str:
        """lavaan-style model text, for the log"""
        lines = []
        for k, factor in enumerate(self.factors):
            terms = []
            for i, item in enumerate(self.items):
                if self.free[i, k]:
                    terms.append(f"start({self.start[i, k]:.5f})*{item}")
                elif self.is_anchor(i, k):
                    terms.append(f"{self.start[i, k]:.5f}*{item}")
            lines.append(f"{factor} =~ " + " + ".join(terms))
        return "\n".join(lines)


def build_model_spec(
    efa_loadings: pd.DataFrame,
    groups: Dict[str, List[str]],
    anchors: Dict[str, str],
    cross_loadings: str = 'zero',
) -> ModelSpec:
    """
    Turn EFA loadings into the confirmatory loading pattern

    Args:
        efa_loadings: items x factors EFA loadings (columns = group names)
        groups: {factor: own items}
        anchors: {factor: anchor item}. The anchor is one of the factor's own
            items. Its loading on the other factor is fixed at the EFA value.
        cross_loadings: 'zero' or 'free' for non-anchor cross-loadings

    Raises:
        ValueError: On an unknown mode, a missing anchor, or an anchor
            outside its own group
    """
    if cross_loadings not in CROSS_LOADING_MODES:
        raise ValueError(f"cross_loadings must be one of {CROSS_LOADING_MODES}, got '{cross_loadings}'")

    factors = list(groups)
    if len(factors) != 2:
        raise ValueError(f"Exactly two factors are supported, got {len(factors)}")

    items = [i for f in factors for i in groups[f]]
    if len(set(items)) != len(items):
        raise ValueError("An item is assigned to more than one factor")

    for factor in factors:
        anchor = anchors.get(factor)
        if anchor is None:
            raise ValueError(f"No anchor item configured for factor '{factor}'")
        if anchor not in groups[factor]:
            raise ValueError(f"Anchor '{anchor}' is not one of the items of '{factor}'")

    efa = efa_loadings.loc[items, factors].to_numpy(dtype=float)
    start = np.zeros_like(efa)
    free = np.zeros(efa.shape, dtype=bool)

    for k, factor in enumerate(factors):
        other = factors[1 - k]
        for i, item in enumerate(items):
            own = item in groups[factor]
            if own:
                start[i, k] = efa[i, k]
                free[i, k] = True
            elif item == anchors[other]:
                start[i, k] = efa[i, k]
            elif cross_loadings == 'free':
                start[i, k] = efa[i, k]
                free[i, k] = True

    return ModelSpec(items=items, factors=factors, start=start, free=free, anchors=dict(anchors))


@dataclass
class CFAResult:
    loadings: pd.DataFrame       # Lambda
    psi: pd.DataFrame            # factor covariance
    theta: pd.Series             # residual variances (diagonal of Theta)
    fit: Dict[str, float]
    spec: ModelSpec
    n_obs: int

    @property
    def lambda_(self) -> np.ndarray:
        return self.loadings.to_numpy()

    @property
    def theta_matrix(self) -> np.ndarray:
        return np.diag(self.theta.to_numpy())

    @property
    def factor_correlation(self) -> float:
        return float(self.psi.iloc[0, 1])


def _unpack(x: np.ndarray, spec: ModelSpec):
    loadings = spec.start.copy()
    loadings[spec.free] = x[:-1]
    phi = x[-1]
    psi = np.array([[1.0, phi], [phi, 1.0]])
    return loadings, psi


def dwls_weights(tetra: TetrachoricResult, items: List[str]) -> np.ndarray:
    acov = tetra.acov.loc[items, items].to_numpy()
    with np.errstate(divide='ignore'):
        weights = np.where((acov > 0) & np.isfinite(acov), 1.0 / acov, 0.0)
    np.fill_diagonal(weights, 0.0)
    return weights


def check_admissible(loadings: np.ndarray, psi: np.ndarray) -> np.ndarray:
    """
    Residual variances of an admissible solution

    Raises:
        FactorModelError: If Psi is not positive definite or any residual
            variance is not positive (Heywood case)
    """
    if np.any(np.linalg.eigvalsh(psi) <= 0):
        raise FactorModelError("Inadmissible solution: factor covariance matrix is not positive definite")

    theta = 1.0 - np.einsum('ij,jk,ik->i', loadings, psi, loadings)
    if np.any(theta <= 0):
        raise FactorModelError(
            f"Inadmissible solution: {int((theta <= 0).sum())} non-positive residual variances"
        )
    return theta


def fit_statistics(residuals: np.ndarray, weights: np.ndarray, sample: np.ndarray,
                   n_free: int, n_obs: int, minimum: float) -> Dict[str, float]:
    """
    DWLS fit diagnostics

    The statistic is the weighted residual sum of squares. It is not mean- or
    variance-adjusted, so the indices are descriptive only.
    """
    p = sample.shape[0]
    upper = np.triu_indices(p, k=1)
    df = p * (p - 1) // 2 - n_free

    chi2 = float(minimum)
    baseline = float(np.sum(weights[upper] * sample[upper] ** 2))
    df_baseline = p * (p - 1) // 2

    rmsea = np.sqrt(max(chi2 - df, 0.0) / (df * (n_obs - 1))) if df > 0 and n_obs > 1 else 0.0
    denominator = max(chi2 - df, baseline - df_baseline, 0.0)
    cfi = 1.0 - max(chi2 - df, 0.0) / denominator if denominator > 0 else 1.0
    if df > 0 and baseline / df_baseline > 1:
        tli = ((baseline / df_baseline) - (chi2 / df)) / ((baseline / df_baseline) - 1.0)
    else:
        tli = 1.0
    srmr = float(np.sqrt(np.mean(residuals[upper] ** 2)))

    return {
        'chi2_dwls': chi2,
        'df': float(df),
        'baseline_chi2': baseline,
        'baseline_df': float(df_baseline),
        'rmsea': float(rmsea),
        'cfi': float(cfi),
        'tli': float(tli),
        'srmr': srmr,
        'n_obs': float(n_obs),
    }


def fit_cfa(
    tetra: TetrachoricResult,
    spec: ModelSpec,
    max_iter: int = 2000,
    tolerance: float = 1e-6,
) -> CFAResult:
    """
    Estimate the confirmatory model

    Loadings are unbounded, so a Heywood case shows up as a non-positive
    residual variance. The factor correlation is kept inside +/-PHI_BOUND and
    an estimate on that bound is inadmissible.

    Args:
        tetra: Tetrachoric correlations of (at least) the model's items
        spec: Loading pattern from build_model_spec
        max_iter: Optimiser iteration limit
        tolerance: Projected-gradient tolerance

    Returns:
        CFAResult

    Raises:
        FactorModelError: On non-convergence or an inadmissible solution.
            There is no fallback.
    """
    items = spec.items
    sample = tetra.rho.loc[items, items].to_numpy()
    weights = dwls_weights(tetra, items)

    upper = np.triu_indices(len(items), k=1)
    scale = float(weights[upper].mean())
    if not scale > 0:
        raise FactorModelError("No correlation has a usable asymptotic variance")
    # Same minimiser, objective of order one
    scaled = weights / scale

    x0 = np.append(spec.start[spec.free], 0.0)
    bounds = [(None, None)] * int(spec.free.sum()) + [(-PHI_BOUND, PHI_BOUND)]

    def objective(x):
        loadings, psi = _unpack(x, spec)
        residuals = sample - loadings @ psi @ loadings.T
        np.fill_diagonal(residuals, 0.0)
        weighted = scaled * residuals
        value = 0.5 * np.sum(weighted * residuals)
        grad_loadings = -2.0 * weighted @ loadings @ psi
        grad_phi = -2.0 * (loadings.T @ weighted @ loadings)[0, 1]
        return value, np.append(grad_loadings[spec.free], grad_phi)

    logger.info(f"Fitting confirmatory model: {len(items)} items, {spec.n_free} free parameters")
    logger.debug("Model syntax:\n" + spec.syntax())

    result = optimize.minimize(
        objective, x0, jac=True, method='L-BFGS-B', bounds=bounds,
        options={'maxiter': max_iter, 'gtol': tolerance, 'ftol': 1e-12},
    )
    if not result.success:
        raise FactorModelError(f"Confirmatory model did not converge after {result.nit} iterations: {result.message}")

    loadings, psi = _unpack(result.x, spec)
    if abs(psi[0, 1]) >= PHI_BOUND - BOUND_TOLERANCE:
        raise FactorModelError(
            f"Inadmissible solution: factor correlation {psi[0, 1]:.4f} is on its bound"
        )
    theta = check_admissible(loadings, psi)

    residuals = sample - loadings @ psi @ loadings.T
    np.fill_diagonal(residuals, 0.0)
    fit = fit_statistics(residuals, weights, sample, spec.n_free, tetra.n_obs, result.fun * scale)
    fit['iterations'] = float(result.nit)

    logger.info(
        f"  Converged in {result.nit} iterations: DWLS={fit['chi2_dwls']:.2f} on {fit['df']:.0f} df, "
        f"RMSEA={fit['rmsea']:.3f}, CFI={fit['cfi']:.3f}, SRMR={fit['srmr']:.3f}"
    )
    logger.info(f"  Factor correlation: {psi[0, 1]:.3f}")

    return CFAResult(
        loadings=pd.DataFrame(loadings, index=items, columns=spec.factors),
        psi=pd.DataFrame(psi, index=spec.factors, columns=spec.factors),
        theta=pd.Series(theta, index=items, name='theta'),
        fit=fit,
        spec=spec,
        n_obs=tetra.n_obs,
    )


def loading_table(efa_loadings: pd.DataFrame, cfa: CFAResult) -> pd.DataFrame:
    """Long table of EFA starting values, CFA estimates and parameter status"""
    table = cfa.spec.describe()
    table['efa'] = [efa_loadings.loc[r.item, r.factor] for r in table.itertuples()]
    table['estimate'] = [cfa.loadings.loc[r.item, r.factor] for r in table.itertuples()]
    table['theta'] = table['item'].map(cfa.theta)
    return table[['item', 'factor', 'efa', 'start', 'estimate', 'free', 'anchor', 'theta']]


def _loading_derivative(loadings: np.ndarray, psi: np.ndarray, upper, i: int, k: int) -> np.ndarray:
    """d sigma_ab / d lambda_ik over the off-diagonal pairs (a, b)"""
    m = loadings @ psi
    a, b = upper
    return np.where(a == i, m[b, k], 0.0) + np.where(b == i, m[a, k], 0.0)


def modification_indices(tetra: TetrachoricResult, cfa: CFAResult,
                         minimum: float = 0.0) -> pd.DataFrame:
    """
    Score-test modification indices for the fixed non-anchor loadings

    For each fixed loading the index is the expected drop in the DWLS
    statistic if that loading alone were freed, with the free parameters
    re-optimised to first order:

        MI = (J_j' W r)^2 / (J_j' W J_j - J_j' W J_f (J_f' W J_f)^-1 J_f' W J_j)

    where r are the correlation residuals, W the DWLS weights and J the
    derivatives of the implied correlations. The expected parameter change
    is (J_j' W r) / (denominator). Like the fit statistic the indices are not
    scaled and are descriptive only.

    Args:
        tetra: Tetrachoric correlations used for the fit
        cfa: Fitted model
        minimum: Only indices at or above this value are returned

    Returns:
        DataFrame with item, factor, mi, epc sorted by decreasing mi
    """
    spec = cfa.spec
    items = spec.items
    loadings = cfa.lambda_
    psi = cfa.psi.to_numpy()

    upper = np.triu_indices(len(items), k=1)
    sample = tetra.rho.loc[items, items].to_numpy()
    w = dwls_weights(tetra, items)[upper]
    r = (sample - loadings @ psi @ loadings.T)[upper]

    a, b = upper
    columns = [_loading_derivative(loadings, psi, upper, i, k) for i, k in zip(*np.nonzero(spec.free))]
    columns.append(loadings[a, 0] * loadings[b, 1] + loadings[a, 1] * loadings[b, 0])
    j_free = np.column_stack(columns)
    information = j_free.T @ (w[:, None] * j_free)

    rows = []
    for i, k in zip(*np.nonzero(~spec.free)):
        if spec.is_anchor(i, k):
            continue
        j = _loading_derivative(loadings, psi, upper, i, k)
        score = float(j @ (w * r))
        cross = j_free.T @ (w * j)
        denominator = float(j @ (w * j) - cross @ np.linalg.solve(information, cross))
        if denominator <= 0:
            continue
        rows.append({
            'item': items[i],
            'factor': spec.factors[k],
            'mi': score ** 2 / denominator,
            'epc': score / denominator,
        })

    table = pd.DataFrame(rows, columns=['item', 'factor', 'mi', 'epc'])
    table = table[table['mi'] >= minimum]
    return table.sort_values('mi', ascending=False).reset_index(drop=True)
