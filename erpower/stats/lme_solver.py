"""Custom LME solver for crossed random-intercept linear mixed models.

Implements REML estimation via profiled deviance optimization,
following Bates et al. (2015) "Fitting Linear Mixed-Effects Models
Using lme4" (JSS 67(1), arXiv:1406.5823), for models of the form

    y = X beta + Z_1 b_1 + ... + Z_m b_m + e

with one independent random intercept per grouping factor (e.g. subjects
and stimulus actors). All cross-products with the stacked indicator
matrix Z are precomputed once; each deviance evaluation then works on a
q x q system where q is the total number of random-effect levels.

Denominator degrees of freedom for linear combinations of the fixed
effects use the Satterthwaite approximation, computed the way lmerTest
does: the fixed-effect covariance is differentiated numerically with
respect to the variance parameters (standard deviations), and the
asymptotic covariance of those parameters is twice the inverse Hessian
of the REML deviance.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
from scipy import linalg, sparse

FLOAT_NEAR_ZERO = 1e-15
SINGULAR_TOL = 1e-4  # lme4 isSingular() tolerance on relative factors
GRADIENT_TOL = 2e-3  # lme4 check.conv.grad tolerance


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------


@dataclass
class SufficientStats:
    """Cross-products for LME fitting.

    Computed once per fit, then reused across all optimizer evaluations
    of the profiled deviance.
    """

    N: int  # total observations
    p: int  # fixed effects (including intercept)
    group_sizes: List[int]  # levels per grouping factor
    ZtZ: np.ndarray  # (q, q)
    ZtX: np.ndarray  # (q, p)
    Zty: np.ndarray  # (q,)
    XtX: np.ndarray  # (p, p)
    Xty: np.ndarray  # (p,)
    yty: float

    @property
    def q(self) -> int:
        return int(sum(self.group_sizes))

    def expand(self, per_group: np.ndarray) -> np.ndarray:
        """Repeat one value per grouping factor over that factor's levels."""
        return np.repeat(np.asarray(per_group, dtype=float), self.group_sizes)


@dataclass
class LMEResult:
    """Result of LME model fitting."""

    beta: np.ndarray  # (p,) fixed effects incl. intercept
    sigma2: float  # residual variance
    tau2: np.ndarray  # (m,) random intercept variances, one per grouping factor
    theta: np.ndarray  # (m,) relative covariance factors tau / sigma
    cov_beta: np.ndarray  # (p, p) covariance of fixed effects
    se_beta: np.ndarray  # (p,) standard errors
    deviance: float  # REML criterion at optimum
    converged: bool
    singular: bool
    message: str = ""
    stats: Optional[SufficientStats] = field(default=None, repr=False)
    _cov_jacobian: Optional[np.ndarray] = field(default=None, repr=False)
    _varpar_cov: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def log_likelihood(self) -> float:
        """REML log-likelihood."""
        return -0.5 * self.deviance

    def satterthwaite_df(self, L: np.ndarray) -> float:
        """Satterthwaite degrees of freedom for the contrast ``L @ beta``.

        Returns ``nan`` when the variance-parameter Hessian is degenerate.
        """
        if self.stats is None:
            raise ValueError("Sufficient statistics are required for Satterthwaite degrees of freedom")
        if self._cov_jacobian is None:
            self._cov_jacobian, self._varpar_cov = _satterthwaite_components(self)

        L = np.asarray(L, dtype=float)
        variance = float(L @ self.cov_beta @ L)
        grad = np.array([L @ jac @ L for jac in self._cov_jacobian])
        denom = float(grad @ self._varpar_cov @ grad)
        if not np.isfinite(denom) or denom <= FLOAT_NEAR_ZERO:
            return float("nan")
        return 2.0 * variance**2 / denom


# ---------------------------------------------------------------------------
# Sufficient statistics computation
# ---------------------------------------------------------------------------


def compute_sufficient_statistics(X, y, group_codes: Sequence[np.ndarray], group_sizes: Sequence[int]) -> SufficientStats:
    """Precompute cross-products for crossed random intercepts.

    Z stacks one indicator block per grouping factor, so ``Z'Z`` holds the
    level counts on its diagonal blocks and the cross-classification
    counts off the diagonal.

    Args:
        X: (N, p) fixed-effects design matrix (with intercept column).
        y: (N,) response vector.
        group_codes: One (N,) integer code array per grouping factor.
        group_sizes: Number of levels per grouping factor.

    Returns:
        SufficientStats instance.
    """
    N, p = X.shape
    blocks = []
    for codes, size in zip(group_codes, group_sizes):
        blocks.append(sparse.csr_matrix((np.ones(N), (np.arange(N), codes)), shape=(N, size)))
    Z = sparse.hstack(blocks, format="csr")

    return SufficientStats(
        N=N,
        p=p,
        group_sizes=[int(s) for s in group_sizes],
        ZtZ=(Z.T @ Z).toarray(),
        ZtX=np.asarray(Z.T @ X),
        Zty=np.asarray(Z.T @ y).ravel(),
        XtX=X.T @ X,
        Xty=X.T @ y,
        yty=float(y @ y),
    )


# ---------------------------------------------------------------------------
# Profiled deviance
# ---------------------------------------------------------------------------


def _profiled_deviance(theta_vec, stats: SufficientStats) -> float:
    """Evaluate the profiled REML deviance at relative factors *theta_vec*.

    With Lambda = diag(theta) expanded over levels:
        L L' = Lambda Z'Z Lambda + I
        c_u = L^-1 Lambda Z'y,  C_X = L^-1 Lambda Z'X
        R_X R_X' = X'X - C_X' C_X
        r^2 = y'y - c_u'c_u - beta' (X'y - C_X' c_u)

    Returns:
        ``log|L|^2 + log|R_X|^2 + (N-p) (1 + log(2 pi r^2 / (N-p)))``,
        or ``1e30`` where the system is not positive definite.
    """
    N, p = stats.N, stats.p
    lam = stats.expand(theta_vec)
    M = lam[:, None] * stats.ZtZ * lam[None, :] + np.eye(stats.q)

    try:
        L = linalg.cholesky(M, lower=True)
        cu = linalg.solve_triangular(L, lam * stats.Zty, lower=True)
        CX = linalg.solve_triangular(L, lam[:, None] * stats.ZtX, lower=True)
        A = stats.XtX - CX.T @ CX
        b = stats.Xty - CX.T @ cu
        R_X = linalg.cholesky(A, lower=True)
    except linalg.LinAlgError:
        return 1e30

    beta = linalg.cho_solve((R_X, True), b)
    r_sq = stats.yty - cu @ cu - beta @ b
    if r_sq <= 0:
        return 1e30

    log_det_L = 2.0 * np.sum(np.log(np.diag(L)))
    log_det_RX = 2.0 * np.sum(np.log(np.diag(R_X)))
    n_resid = N - p
    return float(log_det_L + log_det_RX + n_resid * (1.0 + np.log(2.0 * np.pi * r_sq / n_resid)))


def _extract_results(theta_opt, stats: SufficientStats, deviance: float, converged: bool, message: str) -> LMEResult:
    """Extract beta, sigma2, tau2, cov_beta from optimal theta."""
    N, p = stats.N, stats.p
    lam = stats.expand(theta_opt)
    M = lam[:, None] * stats.ZtZ * lam[None, :] + np.eye(stats.q)

    L = linalg.cholesky(M, lower=True)
    cu = linalg.solve_triangular(L, lam * stats.Zty, lower=True)
    CX = linalg.solve_triangular(L, lam[:, None] * stats.ZtX, lower=True)
    A = stats.XtX - CX.T @ CX
    b = stats.Xty - CX.T @ cu

    beta = np.linalg.solve(A, b)
    r_sq = stats.yty - cu @ cu - beta @ b
    sigma2 = float(r_sq / (N - p))

    cov_beta = sigma2 * np.linalg.inv(A)
    cov_beta = 0.5 * (cov_beta + cov_beta.T)
    se_beta = np.sqrt(np.maximum(np.diag(cov_beta), 0.0))

    theta_opt = np.asarray(theta_opt, dtype=float)
    return LMEResult(
        beta=beta,
        sigma2=sigma2,
        tau2=sigma2 * theta_opt**2,
        theta=theta_opt,
        cov_beta=cov_beta,
        se_beta=se_beta,
        deviance=deviance,
        converged=converged,
        singular=bool(np.any(theta_opt < SINGULAR_TOL)),
        message=message,
        stats=stats,
    )


def _deviance_gradient(theta_vec, stats: SufficientStats) -> np.ndarray:
    """Analytic gradient of the profiled REML deviance.

    With V = I + Z Lambda^2 Z' and P the REML projection
    ``V^-1 - V^-1 X (X'V^-1 X)^-1 X'V^-1``, the derivative for factor k is

        2 theta_k [tr(Z_k' P Z_k) - (N-p) |Z_k' P y|^2 / y'Py]

    All terms are formed from the q x q cross-products via Woodbury.
    """
    N, p = stats.N, stats.p
    theta_vec = np.asarray(theta_vec, dtype=float)
    lam = stats.expand(theta_vec)
    M = lam[:, None] * stats.ZtZ * lam[None, :] + np.eye(stats.q)
    W = lam[:, None] * stats.ZtZ  # Lambda Z'Z

    try:
        factor = linalg.cho_factor(M, lower=True)
        ZVZ = stats.ZtZ - W.T @ linalg.cho_solve(factor, W)
        ZVX = stats.ZtX - W.T @ linalg.cho_solve(factor, lam[:, None] * stats.ZtX)
        ZVy = stats.Zty - W.T @ linalg.cho_solve(factor, lam * stats.Zty)
        L = linalg.cholesky(M, lower=True)
        cu = linalg.solve_triangular(L, lam * stats.Zty, lower=True)
        CX = linalg.solve_triangular(L, lam[:, None] * stats.ZtX, lower=True)
        A = stats.XtX - CX.T @ CX
        b = stats.Xty - CX.T @ cu
        A_factor = linalg.cho_factor(A, lower=True)
    except linalg.LinAlgError:
        return np.zeros_like(theta_vec)

    beta = linalg.cho_solve(A_factor, b)
    r_sq = stats.yty - cu @ cu - beta @ b
    if r_sq <= 0:
        return np.zeros_like(theta_vec)

    ZPZ_diag = np.diag(ZVZ) - np.einsum("ij,ji->i", ZVX, linalg.cho_solve(A_factor, ZVX.T))
    ZPy = ZVy - ZVX @ beta
    starts = np.concatenate([[0], np.cumsum(stats.group_sizes)[:-1]]).astype(int)
    trace = np.add.reduceat(ZPZ_diag, starts)
    quad = np.add.reduceat(ZPy**2, starts)
    return 2.0 * theta_vec * (trace - (N - p) * quad / r_sq)


def _projected_gradient(theta, stats: SufficientStats) -> np.ndarray:
    """Deviance gradient, zeroed where the lower bound is active."""
    grad = _deviance_gradient(theta, stats)
    at_bound = (theta <= SINGULAR_TOL) & (grad > 0)
    grad[at_bound] = 0.0
    return grad


def lme_fit(X, y, group_codes, group_sizes, warm_theta=None) -> LMEResult:
    """Fit a crossed random-intercept model by REML.

    Minimises the profiled deviance over the relative factors with
    L-BFGS-B (lower bound 0) on the analytic gradient. The fit counts as converged when the
    optimizer reports success or the projected gradient at the optimum
    is below the lme4 tolerance.

    Args:
        X: (N, p) design matrix with intercept.
        y: (N,) response.
        group_codes: Integer level codes, one array per grouping factor.
        group_sizes: Levels per grouping factor.
        warm_theta: Optional starting relative factors.

    Returns:
        LMEResult with estimated parameters.
    """
    from scipy.optimize import minimize

    X = np.asarray(X, dtype=float)
    y = np.asarray(y, dtype=float)
    N, p = X.shape
    if N <= p:
        raise ValueError(f"Not enough observations ({N}) for {p} fixed effects")
    if np.linalg.matrix_rank(X) < p:
        raise ValueError("Fixed-effect design matrix is rank deficient")

    stats = compute_sufficient_statistics(X, y, group_codes, group_sizes)
    m = len(stats.group_sizes)

    def objective(theta_vec):
        return _profiled_deviance(theta_vec, stats)

    def gradient(theta_vec):
        return _deviance_gradient(theta_vec, stats)

    # gtol governs the stop; ftol sits below the deviance's rounding level.
    # A zero relative factor is stationary, so warm starts begin off the bound.
    x0 = np.ones(m) if warm_theta is None else np.maximum(np.asarray(warm_theta, dtype=float), 1e-2)
    result = minimize(
        objective,
        x0,
        jac=gradient,
        method="L-BFGS-B",
        bounds=[(0.0, 1e4)] * m,
        options={"maxiter": 500, "ftol": 1e-15, "gtol": 1e-9},
    )

    theta_opt = np.maximum(result.x, 0.0)
    deviance = float(result.fun)
    converged = bool(np.isfinite(deviance) and deviance < 1e30)
    if converged and not result.success:
        grad = _projected_gradient(theta_opt, stats)
        converged = bool(np.max(np.abs(grad)) < GRADIENT_TOL)

    message = result.message if isinstance(result.message, str) else result.message.decode()
    return _extract_results(theta_opt, stats, deviance, converged, message)


# ---------------------------------------------------------------------------
# Satterthwaite degrees of freedom
# ---------------------------------------------------------------------------


def _fixed_covariance(varpar, stats: SufficientStats) -> np.ndarray:
    """Fixed-effect covariance ``(X' V^-1 X)^-1`` for variance parameters.

    *varpar* holds the random-intercept SDs followed by the residual SD.
    Woodbury with ``S = diag(sd)`` keeps the system q x q and stays valid
    when an SD is exactly zero.
    """
    sd = stats.expand(varpar[:-1])
    sigma2 = varpar[-1] ** 2
    M = sigma2 * np.eye(stats.q) + sd[:, None] * stats.ZtZ * sd[None, :]
    P = linalg.solve(M, sd[:, None] * stats.ZtX, assume_a="pos")
    XVX = (stats.XtX - (sd[:, None] * stats.ZtX).T @ P) / sigma2
    return np.linalg.inv(XVX)


def _reml_deviance_varpar(varpar, stats: SufficientStats) -> float:
    """Unprofiled REML deviance as a function of (SDs, residual SD)."""
    N, p, q = stats.N, stats.p, stats.q
    sd = stats.expand(varpar[:-1])
    sigma2 = varpar[-1] ** 2
    M = sigma2 * np.eye(q) + sd[:, None] * stats.ZtZ * sd[None, :]

    try:
        L = linalg.cholesky(M, lower=True)
    except linalg.LinAlgError:
        return np.inf

    W = linalg.solve_triangular(L, sd[:, None] * stats.ZtX, lower=True)
    w = linalg.solve_triangular(L, sd * stats.Zty, lower=True)
    XVX = (stats.XtX - W.T @ W) / sigma2
    XVy = (stats.Xty - W.T @ w) / sigma2
    yVy = (stats.yty - w @ w) / sigma2

    sign, log_det_XVX = np.linalg.slogdet(XVX)
    if sign <= 0:
        return np.inf
    beta = np.linalg.solve(XVX, XVy)
    quad = yVy - beta @ XVy

    # log|V| = N log sigma2 + log|M| - q log sigma2
    log_det_V = (N - q) * np.log(sigma2) + 2.0 * np.sum(np.log(np.diag(L)))
    return float(log_det_V + log_det_XVX + quad + (N - p) * np.log(2.0 * np.pi))


def _reml_gradient_varpar(varpar, stats: SufficientStats) -> np.ndarray:
    """Analytic gradient of :func:`_reml_deviance_varpar`.

    For a random-intercept SD ``s_k`` the derivative is
    ``2 s_k [tr(Z_k' P Z_k) - |Z_k' P y|^2]``. The residual SD follows from
    scaling all SDs by ``c``, which shifts the deviance by
    ``2 (N-p) log c + (c^-2 - 1) y'Py``.
    """
    N, p, q = stats.N, stats.p, stats.q
    varpar = np.asarray(varpar, dtype=float)
    sd = stats.expand(varpar[:-1])
    sigma2 = varpar[-1] ** 2
    M = sigma2 * np.eye(q) + sd[:, None] * stats.ZtZ * sd[None, :]
    factor = linalg.cho_factor(M, lower=True)

    W = sd[:, None] * stats.ZtZ
    SZX = sd[:, None] * stats.ZtX
    SZy = sd * stats.Zty
    ZVZ_diag = (np.diag(stats.ZtZ) - np.einsum("ij,ij->j", W, linalg.cho_solve(factor, W))) / sigma2
    ZVX = (stats.ZtX - W.T @ linalg.cho_solve(factor, SZX)) / sigma2
    ZVy = (stats.Zty - W.T @ linalg.cho_solve(factor, SZy)) / sigma2
    XVX = (stats.XtX - SZX.T @ linalg.cho_solve(factor, SZX)) / sigma2
    XVy = (stats.Xty - SZX.T @ linalg.cho_solve(factor, SZy)) / sigma2
    yVy = (stats.yty - SZy @ linalg.cho_solve(factor, SZy)) / sigma2

    beta = np.linalg.solve(XVX, XVy)
    quad = yVy - beta @ XVy
    ZPZ_diag = ZVZ_diag - np.einsum("ij,ji->i", ZVX, np.linalg.solve(XVX, ZVX.T))
    ZPy = ZVy - ZVX @ beta

    starts = np.concatenate([[0], np.cumsum(stats.group_sizes)[:-1]]).astype(int)
    sds = varpar[:-1]
    grad_sd = 2.0 * sds * (np.add.reduceat(ZPZ_diag, starts) - np.add.reduceat(ZPy**2, starts))
    grad_sigma = (2.0 * (N - p) - 2.0 * quad - sds @ grad_sd) / varpar[-1]
    return np.append(grad_sd, grad_sigma)


def _satterthwaite_components(result: LMEResult):
    """Jacobian of cov(beta) and asymptotic covariance of the variance parameters.

    Both are central differences at ``(sqrt(tau2), sigma)``: of the
    fixed-effect covariance for the Jacobian, and of the analytic REML
    gradient for the Hessian. The deviance is even in each SD, so the
    differences are valid at a zero SD as well.
    """
    stats = result.stats
    varpar = np.append(np.sqrt(result.tau2), np.sqrt(result.sigma2))
    k = len(varpar)
    sigma = varpar[-1]
    steps = 1e-4 * np.maximum(np.abs(varpar), 0.1 * sigma)

    jacobian = []
    hessian = np.zeros((k, k))
    for i in range(k):
        up, down = varpar.copy(), varpar.copy()
        up[i] += steps[i]
        down[i] -= steps[i]
        jacobian.append((_fixed_covariance(up, stats) - _fixed_covariance(down, stats)) / (2 * steps[i]))
        hessian[:, i] = (_reml_gradient_varpar(up, stats) - _reml_gradient_varpar(down, stats)) / (2 * steps[i])
    hessian = 0.5 * (hessian + hessian.T)

    if not np.all(np.isfinite(hessian)):
        varpar_cov = np.full((k, k), np.nan)
    else:
        varpar_cov = 2.0 * np.linalg.pinv(hessian)

    return np.array(jacobian), varpar_cov
