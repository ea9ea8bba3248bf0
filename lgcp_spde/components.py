"""
Latent model components for LGCP models.

A model is a sum of components evaluated at locations,

    eta(s) = sum_k M_k(s) x_k,

where each component contributes a sparse design block M_k and a Gaussian
prior with precision Q_k(theta_k). Fixed effects have no hyperparameters;
SPDE fields carry theta = (log range, log sigma) with a PC prior.
"""

import re

import numpy as np
from scipy import sparse
from scipy.interpolate import RegularGridInterpolator

from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from lgcp_spde.exceptions import ModelError
from lgcp_spde.matrices import kappa_tau_from_range_sigma, lumped_mass, matern_nu, matern_precision
from lgcp_spde.pc_priors import pc_matern_log_density, pc_prior_range, pc_prior_sigma, pc_range_quantile


class GridCovariate:
    """
    Raster covariate on a regular grid.

    Parameters
    ----------
    x : np.ndarray
        Increasing grid coordinates along the first axis
    y : np.ndarray, optional
        Increasing grid coordinates along the second axis. None for a 1D covariate
    values : np.ndarray
        Covariate values, shape (len(x), len(y)) or (len(x),)
    method : str
        "linear" or "nearest"

    Locations outside the grid take the value of the nearest grid cell.
    """

    def __init__(self, x, y=None, values=None, method: str = "linear"):
        if values is None:
            raise ValueError("GridCovariate needs values")
        if method not in ("linear", "nearest"):
            raise ValueError(f"Unknown interpolation method {method!r}")

        axes = (np.asarray(x, dtype=float),)
        if y is not None:
            axes = axes + (np.asarray(y, dtype=float),)
        values = np.asarray(values, dtype=float)

        expected = tuple(len(a) for a in axes)
        if values.shape != expected:
            raise ValueError(f"values has shape {values.shape}, expected {expected}")
        if np.any(~np.isfinite(values)):
            raise ValueError("Covariate grid contains NaN or infinite values")

        self.axes = axes
        self.values = values
        self.method = method
        self.dim = len(axes)
        self._interp = RegularGridInterpolator(axes, values, method=method)

    def __call__(self, locations: np.ndarray) -> np.ndarray:
        locations = np.asarray(locations, dtype=float)
        if self.dim == 1:
            pts = locations.reshape(-1, 1)
        else:
            pts = np.atleast_2d(locations)
            if pts.shape[1] != 2:
                raise ValueError(f"Expected (n, 2) locations, got shape {locations.shape}")
        lo = np.array([a[0] for a in self.axes])
        hi = np.array([a[-1] for a in self.axes])
        return self._interp(np.clip(pts, lo, hi))


class Component:
    """
    Base class for latent components.

    Subclasses set ``n_latent`` and implement ``design`` and ``precision``.
    Components without hyperparameters leave ``n_theta = 0``.
    """

    n_theta = 0
    is_fixed = True

    def __init__(self, name: str):
        if not name or not re.match(r"^[A-Za-z_][A-Za-z0-9_.]*$", name):
            raise ModelError(f"Invalid component name {name!r}")
        self.name = name

    @property
    def n_latent(self) -> int:
        raise NotImplementedError

    @property
    def theta_names(self) -> List[str]:
        return []

    def design(self, locations: np.ndarray) -> sparse.csr_matrix:
        raise NotImplementedError

    def precision(self, theta: np.ndarray) -> sparse.csc_matrix:
        raise NotImplementedError

    def log_prior(self, theta: np.ndarray) -> float:
        return 0.0

    def initial_theta(self) -> np.ndarray:
        return np.zeros(0)

    def theta_bounds(self) -> List[Tuple[float, float]]:
        return []

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r})"


def _n_locations(locations: np.ndarray) -> int:
    locations = np.asarray(locations)
    return locations.shape[0] if locations.ndim > 0 else 1


class Intercept(Component):
    """Constant effect with a vague Gaussian prior of precision ``prec``."""

    def __init__(self, name: str = "Intercept", prec: float = 0.001):
        super().__init__(name)
        if prec <= 0:
            raise ValueError(f"prec must be positive, got {prec}")
        self.prec = prec

    @property
    def n_latent(self) -> int:
        return 1

    def design(self, locations):
        return sparse.csr_matrix(np.ones((_n_locations(locations), 1)))

    def precision(self, theta=None):
        return sparse.csc_matrix(np.array([[self.prec]]))


class Covariate(Component):
    """
    Linear effect of a spatial covariate.

    :param name: Component name, also the name of the regression coefficient
    :param values: Callable mapping locations to covariate values, or a GridCovariate
    :param prec: Prior precision of the coefficient
    """

    def __init__(self, name: str, values: Union[Callable, GridCovariate], prec: float = 0.001):
        super().__init__(name)
        if not callable(values):
            raise ModelError(f"Covariate {name!r} needs a callable or GridCovariate")
        if prec <= 0:
            raise ValueError(f"prec must be positive, got {prec}")
        self.values = values
        self.prec = prec

    @property
    def n_latent(self) -> int:
        return 1

    def evaluate(self, locations: np.ndarray) -> np.ndarray:
        z = np.asarray(self.values(locations), dtype=float).ravel()
        if len(z) != _n_locations(locations):
            raise ModelError(f"Covariate {self.name!r} returned {len(z)} values "
                             f"for {_n_locations(locations)} locations")
        if np.any(~np.isfinite(z)):
            raise ModelError(f"Covariate {self.name!r} has NaN or infinite values")
        return z

    def design(self, locations):
        return sparse.csr_matrix(self.evaluate(locations)[:, None])

    def precision(self, theta=None):
        return sparse.csc_matrix(np.array([[self.prec]]))


class SPDEField(Component):
    """
    Matern Gaussian random field through the SPDE approach.

    The field lives on the mesh vertices and is mapped to locations by the
    piecewise linear projector. Its hyperparameters are
    theta = (log practical range, log marginal sd), with a PC prior given by
    P(range < r0) = p_range and P(sigma > s0) = p_sigma.

    Parameters
    ----------
    name : str
        Component name
    mesh : SPDEMesh or IntervalMesh
        Mesh with generated vertices
    alpha : int
        SPDE order (1 or 2); requires nu = alpha - d/2 > 0
    prior_range : tuple, optional
        (r0, p_range). Default: (extent / 5, 0.5)
    prior_sigma : tuple, optional
        (s0, p_sigma). Default: (1.0, 0.5)
    """

    is_fixed = False
    n_theta = 2

    def __init__(
        self,
        name: str,
        mesh,
        alpha: int = 2,
        prior_range: Optional[Tuple[float, float]] = None,
        prior_sigma: Optional[Tuple[float, float]] = None,
    ):
        super().__init__(name)
        if mesh.vertices is None:
            raise ModelError("Mesh not yet generated. Call create_mesh() first.")
        self.mesh = mesh
        self.d = mesh.dim
        self.alpha = alpha
        self.nu = matern_nu(alpha, self.d)

        vertices = np.asarray(mesh.vertices)
        extent = float(np.max(np.ptp(vertices.reshape(len(vertices), -1), axis=0)))
        self.extent = extent

        if prior_range is None:
            prior_range = (extent / 5.0, 0.5)
        if prior_sigma is None:
            prior_sigma = (1.0, 0.5)
        self.prior_range = tuple(prior_range)
        self.prior_sigma = tuple(prior_sigma)
        self.lambda_rho = pc_prior_range(*self.prior_range, d=self.d)['lambda_rho']
        self.lambda_sigma = pc_prior_sigma(*self.prior_sigma)['lambda_sigma']

        C, G = mesh.fem_matrices()
        self.C0 = lumped_mass(C)
        self.G = G

    @property
    def n_latent(self) -> int:
        return self.mesh.n_vertices

    @property
    def theta_names(self) -> List[str]:
        return [f"Range for {self.name}", f"Stdev for {self.name}"]

    def design(self, locations):
        return sparse.csr_matrix(self.mesh.projector(locations))

    def range_sigma(self, theta: np.ndarray) -> Tuple[float, float]:
        return float(np.exp(theta[0])), float(np.exp(theta[1]))

    def precision(self, theta):
        range_, sigma = self.range_sigma(theta)
        kappa, tau = kappa_tau_from_range_sigma(range_, sigma, self.alpha, self.d)
        return matern_precision(self.C0, self.G, kappa, tau, self.alpha)

    def log_prior(self, theta):
        return pc_matern_log_density(theta, self.lambda_rho, self.lambda_sigma, self.d)

    def initial_theta(self) -> np.ndarray:
        """Prior median range (kept inside the mesh extent) and unit sd."""
        median_range = pc_range_quantile(0.5, self.lambda_rho, self.d)
        h = np.median(self.mesh.edge_lengths())
        median_range = float(np.clip(median_range, 2.0 * h, self.extent))
        return np.array([np.log(median_range), 0.0])

    def theta_bounds(self) -> List[Tuple[float, float]]:
        h = float(np.min(self.mesh.edge_lengths()))
        return [
            (np.log(h / 2.0), np.log(self.extent * 100.0)),
            (np.log(1e-3), np.log(20.0)),
        ]

    def __repr__(self) -> str:
        return (f"SPDEField(name={self.name!r}, n_vertices={self.n_latent}, "
                f"alpha={self.alpha}, d={self.d})")


def parse_formula(formula: str) -> Tuple[Optional[str], List[str]]:
    """
    Split ``"lhs ~ A + B"`` into the response and the ordered term names.

    >>> parse_formula("coordinates ~ Intercept + field")
    ('coordinates', ['Intercept', 'field'])
    """
    if formula.count("~") > 1:
        raise ModelError(f"Formula has more than one '~': {formula!r}")
    if "~" in formula:
        lhs, rhs = formula.split("~")
        lhs = lhs.strip() or None
    else:
        lhs, rhs = None, formula
    terms = [t.strip() for t in rhs.split("+")]
    if any(t == "" for t in terms):
        raise ModelError(f"Empty term in formula {formula!r}")
    if len(set(terms)) != len(terms):
        raise ModelError(f"Duplicate term in formula {formula!r}")
    return lhs, terms


class LGCPModel:
    """
    Additive latent Gaussian model for the log intensity.

    :param components: Components, keyed by their names
    :param formula: Optional formula "lhs ~ A + B" selecting and ordering
        components. The left-hand side is ignored. Without a formula all
        components are used in the given order.

    Examples
    --------
    >>> model = LGCPModel([Intercept(), SPDEField("field", mesh)],
    ...                   formula="coordinates ~ Intercept + field")
    >>> model.theta_names
    ['Range for field', 'Stdev for field']
    """

    def __init__(self, components: Sequence[Component], formula: Optional[str] = None):
        available: Dict[str, Component] = {}
        for comp in components:
            if comp.name in available:
                raise ModelError(f"Duplicate component name {comp.name!r}")
            available[comp.name] = comp

        if formula is not None:
            self.response, names = parse_formula(formula)
            unknown = [n for n in names if n not in available]
            if unknown:
                raise ModelError(f"Unknown component(s) in formula: {unknown}. "
                                 f"Available: {list(available)}")
            selected = [available[n] for n in names]
        else:
            self.response = None
            selected = list(components)

        if not selected:
            raise ModelError("Model needs at least one component")

        dims = {c.d for c in selected if isinstance(c, SPDEField)}
        if len(dims) > 1:
            raise ModelError("All SPDE fields must share the same dimension")

        self.components = selected
        self.formula = formula

        self.latent_slices: Dict[str, slice] = {}
        self.theta_slices: Dict[str, slice] = {}
        i = j = 0
        for comp in selected:
            self.latent_slices[comp.name] = slice(i, i + comp.n_latent)
            self.theta_slices[comp.name] = slice(j, j + comp.n_theta)
            i += comp.n_latent
            j += comp.n_theta
        self.n_latent = i
        self.n_theta = j

    def __getitem__(self, name: str) -> Component:
        for comp in self.components:
            if comp.name == name:
                return comp
        raise ModelError(f"No component named {name!r}")

    @property
    def names(self) -> List[str]:
        return [c.name for c in self.components]

    @property
    def fixed_effects(self) -> List[Component]:
        return [c for c in self.components if c.is_fixed]

    @property
    def fields(self) -> List[SPDEField]:
        return [c for c in self.components if isinstance(c, SPDEField)]

    @property
    def dim(self) -> Optional[int]:
        fields = self.fields
        return fields[0].d if fields else None

    @property
    def theta_names(self) -> List[str]:
        return [n for c in self.components for n in c.theta_names]

    def design(self, locations: np.ndarray, names: Optional[Sequence[str]] = None) -> sparse.csr_matrix:
        """
        Design matrix mapping the latent vector to the linear predictor.

        :param locations: Evaluation locations
        :param names: Restrict to these components; the columns of the others are zero
        """
        if names is not None:
            for n in names:
                self[n]
        blocks = []
        n = _n_locations(locations)
        for comp in self.components:
            if names is None or comp.name in names:
                blocks.append(comp.design(locations))
            else:
                blocks.append(sparse.csr_matrix((n, comp.n_latent)))
        return sparse.hstack(blocks, format='csr')

    def precision(self, theta: np.ndarray) -> sparse.csc_matrix:
        theta = np.asarray(theta, dtype=float)
        blocks = [c.precision(theta[self.theta_slices[c.name]]) for c in self.components]
        return sparse.block_diag(blocks, format='csc')

    def log_prior(self, theta: np.ndarray) -> float:
        theta = np.asarray(theta, dtype=float)
        return float(sum(c.log_prior(theta[self.theta_slices[c.name]]) for c in self.components))

    def initial_theta(self) -> np.ndarray:
        parts = [c.initial_theta() for c in self.components]
        return np.concatenate(parts) if parts else np.zeros(0)

    def theta_bounds(self) -> List[Tuple[float, float]]:
        return [b for c in self.components for b in c.theta_bounds()]

    def __repr__(self) -> str:
        terms = " + ".join(self.names)
        return f"LGCPModel({terms}, n_latent={self.n_latent}, n_theta={self.n_theta})"
