"""
Laplace approximation and INLA-style integration for LGCP models.

For hyperparameters theta the latent field x ~ N(0, Q(theta)^-1) is combined
with the point-pattern likelihood

    l(x) = sum_i eta(s_i) - sum_j w_j exp(eta(u_j)),   eta = M x,

where s_i are the observed points and (u_j, w_j) the integration points.
The conditional posterior of x is approximated by a Gaussian at its mode
(Newton iterations), which gives the Laplace approximation of the marginal
likelihood. The hyperparameter posterior is then either summarised by its
mode ("eb") or integrated on a grid in standardised coordinates ("grid").
"""

from dataclasses import dataclass
import itertools
import time
import warnings

import numpy as np
from scipy import optimize, sparse, stats

from typing import Dict, List, Literal, Optional, Tuple

from lgcp_spde.components import Intercept, LGCPModel
from lgcp_spde.exceptions import ConditioningError, ConvergenceError, ModelError
from lgcp_spde.integration import IntegrationPoints
from lgcp_spde.matrices import SparseFactor

Strategy = Literal["eb", "grid"]

_PENALTY = 1e10


@dataclass
class FitOptions:
    """
    Settings for fit_lgcp.

    Attributes
    ----------
    strategy : {"eb", "grid"}
        "eb" conditions on the hyperparameter mode, "grid" integrates over it
    newton_tol : float
        Convergence tolerance on max|dx| of the inner Newton iterations
    newton_max_iter : int
        Maximum Newton iterations per hyperparameter value
    optimizer_max_iter : int
        Maximum L-BFGS-B iterations for the hyperparameter mode
    gradient_step : float
        Step of the central differences used for the hyperparameter gradient
    hessian_step : float
        Step of the finite-difference Hessian at the mode
    grid_step : float
        Grid spacing in standardised hyperparameter coordinates
    grid_threshold : float
        Keep grid points whose log density is within this of the mode
    max_grid_points : int
        Fall back to "eb" when the grid would be larger
    exact_variance_max_n : int
        Latent dimension up to which marginal variances are computed exactly
    n_variance_samples : int
        Samples used for marginal variances above that dimension
    seed : int, optional
        Seed for sample-based variances
    verbose : bool
        Print progress
    """

    strategy: Strategy = "grid"
    newton_tol: float = 1e-6
    newton_max_iter: int = 50
    optimizer_max_iter: int = 100
    gradient_step: float = 1e-3
    hessian_step: float = 0.02
    grid_step: float = 1.0
    grid_threshold: float = 2.5
    max_grid_points: int = 400
    exact_variance_max_n: int = 2500
    n_variance_samples: int = 1000
    seed: Optional[int] = 0
    verbose: bool = True

    def __post_init__(self):
        if self.strategy not in ("eb", "grid"):
            raise ValueError(f"Unknown strategy {self.strategy!r}. Use 'eb' or 'grid'")
        if self.newton_tol <= 0 or self.newton_max_iter < 1:
            raise ValueError("newton_tol must be positive and newton_max_iter at least 1")
        if self.grid_step <= 0 or self.grid_threshold <= 0:
            raise ValueError("grid_step and grid_threshold must be positive")
        if self.hessian_step <= 0 or self.gradient_step <= 0:
            raise ValueError("Finite-difference steps must be positive")


@dataclass
class LaplaceState:
    """Gaussian approximation of x | theta, points."""

    theta: np.ndarray
    mode: np.ndarray
    factor: SparseFactor
    log_marginal: float
    log_posterior: float
    n_newton: int


class LaplaceApproximation:
    """
    Inner Gaussian approximation of the latent field for fixed hyperparameters.

    :param model: LGCPModel
    :param points: Observed event locations
    :param ips: Integration points of the observation domain
    """

    def __init__(self, model: LGCPModel, points: np.ndarray, ips: IntegrationPoints,
                 tol: float = 1e-6, max_iter: int = 50):
        self.model = model
        self.points = np.asarray(points, dtype=float)
        self.ips = ips
        self.tol = tol
        self.max_iter = max_iter

        self.n_points = len(self.points)
        M_obs = model.design(self.points)
        self.b = np.asarray(M_obs.sum(axis=0)).ravel()
        self.M_int = model.design(ips.locations).tocsr()
        self.w = ips.weights
        self.warm_start = self.initial_latent()

    def initial_latent(self) -> np.ndarray:
        """Zero latent vector with intercepts at the log mean intensity."""
        x = np.zeros(self.model.n_latent)
        rate = max(self.n_points, 1) / self.ips.total_measure
        for comp in self.model.components:
            if isinstance(comp, Intercept):
                x[self.model.latent_slices[comp.name]] = np.log(rate)
        return x

    def log_likelihood(self, x: np.ndarray) -> float:
        with np.errstate(over='ignore'):
            return float(self.b @ x - self.w @ np.exp(self.M_int @ x))

    def _objective(self, x: np.ndarray, Q: sparse.spmatrix) -> float:
        return self.log_likelihood(x) - 0.5 * float(x @ (Q @ x))

    def _hessian(self, x: np.ndarray, Q: sparse.spmatrix) -> Tuple[sparse.csc_matrix, np.ndarray]:
        lam = self.w * np.exp(self.M_int @ x)
        H = self.M_int.T @ sparse.diags(lam) @ self.M_int
        return sparse.csc_matrix(Q + H), lam

    def find_mode(self, Q: sparse.spmatrix, x0: np.ndarray) -> Tuple[np.ndarray, float, int]:
        """
        Newton iterations with step halving for argmax l(x) - x'Qx/2.

        :raises ConvergenceError: if max|dx| does not fall below the tolerance
        """
        x = np.array(x0, dtype=float)
        f = self._objective(x, Q)
        if not np.isfinite(f):
            x = self.initial_latent()
            f = self._objective(x, Q)

        for it in range(1, self.max_iter + 1):
            P, lam = self._hessian(x, Q)
            grad = self.b - self.M_int.T @ lam - Q @ x
            dx = SparseFactor(P).solve(grad)

            step = 1.0
            for _ in range(40):
                x_new = x + step * dx
                f_new = self._objective(x_new, Q)
                if np.isfinite(f_new) and f_new >= f - 1e-10 * (1.0 + abs(f)):
                    break
                step *= 0.5
            else:
                raise ConvergenceError("Newton line search failed to increase the objective")

            delta = float(np.max(np.abs(x_new - x))) if len(x) else 0.0
            x, f = x_new, f_new
            if delta < self.tol:
                return x, f, it

        raise ConvergenceError(f"Newton iterations did not converge in {self.max_iter} "
                               f"iterations (last max|dx| = {delta:.3g})")

    def evaluate(self, theta: np.ndarray, x0: Optional[np.ndarray] = None) -> LaplaceState:
        theta = np.asarray(theta, dtype=float)
        Q = self.model.precision(theta)
        log_det_Q = SparseFactor(Q).log_det()

        x, f, n_iter = self.find_mode(Q, self.warm_start if x0 is None else x0)
        P, _ = self._hessian(x, Q)
        factor = SparseFactor(P)
        self.warm_start = x

        log_ml = f + 0.5 * log_det_Q - 0.5 * factor.log_det()
        log_post = log_ml + self.model.log_prior(theta)
        return LaplaceState(theta=theta, mode=x, factor=factor, log_marginal=log_ml,
                            log_posterior=log_post, n_newton=n_iter)


def _mixture_quantiles(means: np.ndarray, sds: np.ndarray, weights: np.ndarray,
                       probs=(0.025, 0.5, 0.975)) -> List[float]:
    """Quantiles of a finite mixture of normals."""
    lo = float(np.min(means - 10.0 * sds))
    hi = float(np.max(means + 10.0 * sds))

    def cdf(x):
        return float(np.dot(weights, stats.norm.cdf(x, loc=means, scale=sds)))

    return [optimize.brentq(lambda x: cdf(x) - p, lo, hi, xtol=1e-10) for p in probs]


class LGCPResult:
    """
    Fitted LGCP model.

    Attributes
    ----------
    model : LGCPModel
    theta_mode : np.ndarray
        Posterior mode of theta (log range, log sigma per field)
    theta_cov : np.ndarray
        Inverse of the negative Hessian of the log posterior at the mode
    theta_grid : np.ndarray
        Integration points in theta, shape (K, n_theta)
    theta_weights : np.ndarray
        Normalised weights of the grid points
    grid_step : float
        Grid spacing in standardised coordinates, used for the hyperparameter mixtures
    latent_mean, latent_sd : np.ndarray
        Marginal posterior moments of the latent vector
    summary_fixed : dict
        Per fixed effect: mean, sd, q0.025, median, q0.975
    summary_hyperpar : dict
        Per hyperparameter (user scale): mean, sd, q0.025, median, q0.975, mode
    summary_random : dict
        Per field: vertex-wise mean and sd
    log_marginal_likelihood : float
    """

    def __init__(self, model: LGCPModel, points: np.ndarray, ips: IntegrationPoints,
                 states: List[LaplaceState], weights: np.ndarray, theta_mode: np.ndarray,
                 theta_cov: np.ndarray, log_marginal_likelihood: float, strategy: str,
                 latent_vars: List[np.ndarray], fit_time: float = 0.0, grid_step: float = 1.0):
        self.model = model
        self.points = points
        self.ips = ips
        self.states = states
        self.theta_grid = np.array([s.theta for s in states]).reshape(len(states), model.n_theta)
        self.theta_weights = weights
        self.theta_mode = theta_mode
        self.theta_cov = theta_cov
        self.log_marginal_likelihood = log_marginal_likelihood
        self.strategy = strategy
        self.fit_time = fit_time
        self.grid_step = grid_step

        modes = np.array([s.mode for s in states])
        variances = np.array(latent_vars)
        self._config_means = modes
        self._config_sds = np.sqrt(variances)

        self.latent_mean = weights @ modes
        second = weights @ (variances + modes ** 2)
        self.latent_sd = np.sqrt(np.maximum(second - self.latent_mean ** 2, 0.0))

        self.summary_fixed = self._summarise_fixed()
        self.summary_hyperpar = self._summarise_hyperpar()
        self.summary_random = {
            f.name: {
                'mean': self.latent_mean[model.latent_slices[f.name]],
                'sd': self.latent_sd[model.latent_slices[f.name]],
            }
            for f in model.fields
        }

    def _summarise_fixed(self) -> Dict[str, Dict[str, float]]:
        summary = {}
        for comp in self.model.fixed_effects:
            idx = self.model.latent_slices[comp.name].start
            means = self._config_means[:, idx]
            sds = self._config_sds[:, idx]
            q_lo, q_med, q_hi = _mixture_quantiles(means, sds, self.theta_weights)
            summary[comp.name] = {
                'mean': float(self.latent_mean[idx]),
                'sd': float(self.latent_sd[idx]),
                'q0.025': q_lo,
                'median': q_med,
                'q0.975': q_hi,
            }
        return summary

    def hyperpar_mixture(self, name: str) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Normal mixture for the log of a hyperparameter.

        For "eb" this is the Gaussian at the mode. For "grid" each grid point
        contributes a normal at its theta value with its grid weight; the
        component sd is half a grid step along that coordinate.

        :returns: (means, sds, weights) in log space
        """
        i = self.model.theta_names.index(name)
        sd = float(np.sqrt(max(self.theta_cov[i, i], 0.0)))
        if self.strategy != "grid":
            return np.array([self.theta_mode[i]]), np.array([max(sd, 1e-12)]), np.ones(1)
        width = max(0.5 * self.grid_step * sd, 1e-12)
        return self.theta_grid[:, i], np.full(self.n_configurations, width), self.theta_weights

    def _summarise_hyperpar(self) -> Dict[str, Dict[str, float]]:
        """Summaries on the user scale of the log-normal mixture of each hyperparameter."""
        summary = {}
        for name in self.model.theta_names:
            means, sds, weights = self.hyperpar_mixture(name)
            mean = float(weights @ np.exp(means + 0.5 * sds ** 2))
            second = float(weights @ np.exp(2 * means + 2 * sds ** 2))
            q_lo, q_med, q_hi = np.exp(_mixture_quantiles(means, sds, weights))
            if len(means) == 1:
                mode = float(np.exp(means[0] - sds[0] ** 2))
            else:
                x, dens = self.posterior_density(name, n_points=2000)
                mode = float(x[np.argmax(dens)])
            summary[name] = {
                'mean': mean,
                'sd': float(np.sqrt(max(second - mean ** 2, 0.0))),
                'q0.025': float(q_lo),
                'median': float(q_med),
                'q0.975': float(q_hi),
                'mode': mode,
            }
        return summary

    @property
    def n_configurations(self) -> int:
        return len(self.states)

    def sample_latent(self, n_samples: int = 1000, seed: Optional[int] = None) -> np.ndarray:
        """
        Draw latent vectors from the mixture of Gaussian approximations.

        :returns: Array of shape (n_samples, n_latent)
        """
        rng = np.random.default_rng(seed)
        counts = rng.multinomial(n_samples, self.theta_weights)
        draws = []
        for state, count in zip(self.states, counts):
            if count > 0:
                draws.append(state.mode + state.factor.sample(count, rng))
        samples = np.vstack(draws)
        return samples[rng.permutation(n_samples)]

    def sample_linear_predictor(self, locations: np.ndarray, names: Optional[List[str]] = None,
                                n_samples: int = 1000, seed: Optional[int] = None) -> np.ndarray:
        """Samples of the linear predictor at locations, shape (n_samples, n_locations)."""
        M = self.model.design(locations, names=names)
        X = self.sample_latent(n_samples, seed)
        return np.asarray((M @ X.T).T)

    def posterior_density(self, name: str, n_points: int = 200) -> Tuple[np.ndarray, np.ndarray]:
        """
        Marginal posterior density of a hyperparameter or fixed effect.

        :param name: A hyperparameter name such as "Range for field", or a fixed effect name
        :returns: (x, density)
        """
        if name in self.model.theta_names:
            means, sds, weights = self.hyperpar_mixture(name)
            x = np.exp(np.linspace(np.min(means - 4 * sds), np.max(means + 4 * sds), n_points))
            dens = stats.lognorm.pdf(x[:, None], sds[None, :], scale=np.exp(means)[None, :]) @ weights
            return x, dens

        fixed = [c.name for c in self.model.fixed_effects]
        if name in fixed:
            idx = self.model.latent_slices[name].start
            means = self._config_means[:, idx]
            sds = self._config_sds[:, idx]
            x = np.linspace(np.min(means - 4 * sds), np.max(means + 4 * sds), n_points)
            dens = stats.norm.pdf(x[:, None], loc=means[None, :], scale=sds[None, :]) @ self.theta_weights
            return x, dens

        raise ModelError(f"Unknown parameter {name!r}. Available: {self.model.theta_names + fixed}")

    def summary(self) -> str:
        """Formatted summary of fixed effects and hyperparameters."""
        lines = [f"LGCP fit ({self.strategy}, {self.n_configurations} hyperparameter "
                 f"configuration(s), {self.fit_time:.1f}s)", ""]
        header = f"{'':<22}{'mean':>10}{'sd':>10}{'q0.025':>10}{'median':>10}{'q0.975':>10}"
        for title, table in (("Fixed effects:", self.summary_fixed),
                             ("Hyperparameters:", self.summary_hyperpar)):
            if not table:
                continue
            lines.append(title)
            lines.append(header)
            for name, s in table.items():
                lines.append(f"{name:<22}{s['mean']:>10.4g}{s['sd']:>10.4g}{s['q0.025']:>10.4g}"
                             f"{s['median']:>10.4g}{s['q0.975']:>10.4g}")
            lines.append("")
        lines.append(f"Log marginal likelihood: {self.log_marginal_likelihood:.3f}")
        return "\n".join(lines)

    def __repr__(self) -> str:
        return (f"LGCPResult(strategy={self.strategy!r}, n_configurations={self.n_configurations}, "
                f"log_marginal_likelihood={self.log_marginal_likelihood:.3f})")


def _central_gradient(fun, theta: np.ndarray, h: float) -> np.ndarray:
    grad = np.zeros_like(theta)
    for i in range(len(theta)):
        e = np.zeros_like(theta)
        e[i] = h
        grad[i] = (fun(theta + e) - fun(theta - e)) / (2 * h)
    return grad


def _finite_difference_hessian(fun, theta: np.ndarray, h: float, f0: float) -> np.ndarray:
    n = len(theta)
    H = np.zeros((n, n))
    eye = np.eye(n) * h
    for i in range(n):
        H[i, i] = (fun(theta + eye[i]) - 2 * f0 + fun(theta - eye[i])) / h ** 2
        for j in range(i):
            H[i, j] = H[j, i] = (fun(theta + eye[i] + eye[j]) - fun(theta + eye[i] - eye[j])
                                 - fun(theta - eye[i] + eye[j]) + fun(theta - eye[i] - eye[j])) / (4 * h ** 2)
    return H


def _regularise_hessian(H: np.ndarray) -> np.ndarray:
    evals, evecs = np.linalg.eigh(H)
    if np.all(evals > 0):
        return H
    warnings.warn("Hessian of the hyperparameter posterior is not positive definite at "
                  "the mode; using absolute eigenvalues")
    evals = np.maximum(np.abs(evals), 1e-2)
    return (evecs * evals) @ evecs.T


def _marginal_variances(state: LaplaceState, options: FitOptions,
                        rng: np.random.Generator) -> np.ndarray:
    if state.factor.n <= options.exact_variance_max_n:
        return state.factor.inverse_diagonal()
    draws = state.factor.sample(options.n_variance_samples, rng)
    return np.var(draws, axis=0)


def _in_bounds(theta: np.ndarray, bounds: List[Tuple[float, float]]) -> bool:
    return all(lo <= t <= hi for t, (lo, hi) in zip(theta, bounds))


def fit_lgcp(
    model: LGCPModel,
    points: np.ndarray,
    ips: IntegrationPoints,
    options: Optional[FitOptions] = None,
) -> LGCPResult:
    """
    Fit an LGCP model by Laplace approximation.

    :param model: LGCPModel for the log intensity
    :param points: Observed events, (n, 2) for 2D or (n,) for 1D
    :param ips: Integration points of the observation domain
    :param options: FitOptions
    :returns: LGCPResult

    Examples
    --------
    >>> ips = integration_points(mesh, domain)
    >>> result = fit_lgcp(model, points, ips, FitOptions(strategy="eb"))
    >>> result.summary_hyperpar["Range for field"]["median"]
    """
    options = options or FitOptions()
    start = time.time()

    points = np.asarray(points, dtype=float)
    if model.dim == 1 or (model.dim is None and ips.dim == 1):
        points = points.ravel()
    elif points.size == 0:
        points = points.reshape(0, 2)
    if ips.total_measure <= 0:
        raise ModelError("Integration points have zero total weight")

    lap = LaplaceApproximation(model, points, ips, tol=options.newton_tol,
                               max_iter=options.newton_max_iter)
    bounds = model.theta_bounds()
    n_theta = model.n_theta

    if options.verbose:
        print(f"Fitting {model!r}")
        print(f"  {lap.n_points} points, {ips.n} integration points, "
              f"|domain| = {ips.total_measure:.4g}")

    n_evals = [0]

    def neg_log_post(theta):
        n_evals[0] += 1
        try:
            return -lap.evaluate(theta).log_posterior
        except (ConditioningError, ConvergenceError) as e:
            warnings.warn(f"Laplace approximation failed at theta={np.round(theta, 3)}: {e}")
            return _PENALTY

    theta0 = model.initial_theta()

    if n_theta == 0:
        theta_mode = theta0
        theta_cov = np.zeros((0, 0))
        strategy = "eb"
    else:
        def fun_and_grad(theta):
            f = neg_log_post(theta)
            return f, _central_gradient(neg_log_post, theta, options.gradient_step)

        opt = optimize.minimize(fun_and_grad, theta0, jac=True, method="L-BFGS-B",
                                bounds=bounds, options={'maxiter': options.optimizer_max_iter})
        if not opt.success:
            warnings.warn(f"Hyperparameter optimisation did not converge: {opt.message}")
        theta_mode = opt.x

        if options.verbose:
            print(f"  Hyperparameter mode after {opt.nit} iterations "
                  f"({n_evals[0]} Laplace evaluations):")
            for name, value in zip(model.theta_names, np.exp(theta_mode)):
                print(f"    {name}: {value:.4g}")

        f_mode = neg_log_post(theta_mode)
        H = _finite_difference_hessian(neg_log_post, theta_mode, options.hessian_step, f_mode)
        theta_cov = np.linalg.inv(_regularise_hessian(H))
        strategy = options.strategy

    mode_state = lap.evaluate(theta_mode)
    states = [mode_state]
    log_volume = 0.0

    if strategy == "grid":
        grid_states, log_volume = _explore_grid(lap, mode_state, theta_cov, bounds, options)
        if grid_states is None:
            strategy = "eb"
        else:
            states = grid_states

    log_post = np.array([s.log_posterior for s in states])
    top = np.max(log_post)
    weights = np.exp(log_post - top)
    weights /= weights.sum()

    if strategy == "grid":
        log_ml = top + np.log(np.sum(np.exp(log_post - top))) + log_volume
    else:
        log_ml = mode_state.log_posterior
        if n_theta > 0:
            log_ml += 0.5 * n_theta * np.log(2 * np.pi) + 0.5 * np.linalg.slogdet(theta_cov)[1]

    rng = np.random.default_rng(options.seed)
    latent_vars = [_marginal_variances(s, options, rng) for s in states]

    result = LGCPResult(model, points, ips, states, weights, theta_mode, theta_cov,
                        float(log_ml), strategy, latent_vars, fit_time=time.time() - start,
                        grid_step=options.grid_step)
    if options.verbose:
        print(f"  Done in {result.fit_time:.1f}s, {result.n_configurations} configuration(s)")
    return result


def _explore_grid(lap: LaplaceApproximation, mode_state: LaplaceState, theta_cov: np.ndarray,
                  bounds: List[Tuple[float, float]], options: FitOptions):
    """
    Grid over z with theta = mode + V diag(sqrt(lambda)) z.

    Each axis is walked outwards in steps of grid_step until the log density
    drops by more than grid_threshold; the tensor product of the axis ranges
    is evaluated and points within the threshold are kept.

    :returns: (states, log volume element) or (None, 0) if the grid is too large
    """
    n_theta = len(mode_state.theta)
    evals, evecs = np.linalg.eigh(theta_cov)
    scale = evecs * np.sqrt(np.maximum(evals, 1e-12))
    step = options.grid_step
    top = mode_state.log_posterior

    cache: Dict[Tuple[int, ...], Optional[LaplaceState]] = {(0,) * n_theta: mode_state}

    def state_at(index):
        index = tuple(index)
        if index not in cache:
            theta = mode_state.theta + scale @ (step * np.array(index, dtype=float))
            if not _in_bounds(theta, bounds):
                cache[index] = None
            else:
                try:
                    cache[index] = lap.evaluate(theta, x0=mode_state.mode)
                except (ConditioningError, ConvergenceError) as e:
                    warnings.warn(f"Skipping grid point {index}: {e}")
                    cache[index] = None
        return cache[index]

    def within(state):
        return state is not None and top - state.log_posterior <= options.grid_threshold

    limits = []
    for k in range(n_theta):
        axis = []
        for direction in (-1, 1):
            j = 0
            while j < 20:
                index = [0] * n_theta
                index[k] = direction * (j + 1)
                if not within(state_at(index)):
                    break
                j += 1
            axis.append(j)
        limits.append(range(-axis[0], axis[1] + 1))

    n_grid = int(np.prod([len(r) for r in limits]))
    if n_grid > options.max_grid_points:
        warnings.warn(f"Hyperparameter grid would have {n_grid} points "
                      f"(max_grid_points={options.max_grid_points}); using the mode only")
        return None, 0.0

    states = []
    for index in itertools.product(*limits):
        state = state_at(index)
        if within(state):
            states.append(state)

    if options.verbose:
        print(f"  Grid integration: {len(states)} of {n_grid} points kept")

    log_volume = n_theta * np.log(step) + 0.5 * float(np.sum(np.log(np.maximum(evals, 1e-12))))
    return states, log_volume
