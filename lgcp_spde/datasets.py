"""
Example point patterns: simulated LGCPs and CSV loading.
"""

import numpy as np
import pandas as pd
import shapely

from typing import Callable, Dict, Optional, Tuple

from lgcp_spde.exceptions import CoordsError
from lgcp_spde.matrices import (SparseFactor, kappa_tau_from_range_sigma, lumped_mass,
                                matern_precision)
from lgcp_spde.mesh import as_polygon


def rectangle(xmin: float, ymin: float, xmax: float, ymax: float) -> np.ndarray:
    """Corners of an axis-aligned rectangle, counter-clockwise."""
    if not (xmax > xmin and ymax > ymin):
        raise ValueError(f"Degenerate rectangle {(xmin, ymin, xmax, ymax)}")
    return np.array([[xmin, ymin], [xmax, ymin], [xmax, ymax], [xmin, ymax]], dtype=float)


def sample_matern_field(mesh, range_: float, sigma: float, alpha: int = 2,
                        seed: Optional[int] = None) -> np.ndarray:
    """One draw of the SPDE Matern field at the mesh vertices."""
    C, G = mesh.fem_matrices()
    kappa, tau = kappa_tau_from_range_sigma(range_, sigma, alpha, mesh.dim)
    Q = matern_precision(lumped_mass(C), G, kappa, tau, alpha)
    rng = np.random.default_rng(seed)
    return SparseFactor(Q).sample(1, rng)[0]


def simulate_lgcp_2d(
    mesh,
    domain,
    range_: float,
    sigma: float,
    intercept: float,
    alpha: int = 2,
    covariate: Optional[Callable[[np.ndarray], np.ndarray]] = None,
    beta: float = 0.0,
    seed: Optional[int] = None,
) -> Dict:
    """
    Simulate a 2D LGCP by Lewis-Shedler thinning.

    log lambda(s) = intercept + beta * covariate(s) + u(s), with u a Matern
    SPDE field on the mesh.

    :param mesh: SPDEMesh covering the domain
    :param domain: Observation window polygon
    :param range_: Practical range of the field
    :param sigma: Marginal sd of the field
    :param intercept: Log baseline intensity
    :param covariate: Optional callable of (n, 2) locations
    :param beta: Covariate coefficient
    :param seed: Random seed
    :returns: Dict with 'points', 'field' (vertex values), 'lambda_max'
    """
    rng = np.random.default_rng(seed)
    polygon = as_polygon(domain)
    field = sample_matern_field(mesh, range_, sigma, alpha, seed=rng.integers(2 ** 31))

    def log_intensity(locs):
        eta = intercept + mesh.projector(locs) @ field
        if covariate is not None:
            eta = eta + beta * np.asarray(covariate(locs), dtype=float).ravel()
        return eta

    xmin, ymin, xmax, ymax = polygon.bounds
    # Piecewise linear field attains its maximum at a vertex; covariate bound on a grid
    upper = intercept + float(np.max(field))
    if covariate is not None and beta != 0:
        gx, gy = np.meshgrid(np.linspace(xmin, xmax, 200), np.linspace(ymin, ymax, 200))
        z = beta * np.asarray(covariate(np.column_stack([gx.ravel(), gy.ravel()])), dtype=float)
        upper += float(np.max(z)) + 0.05 * float(np.ptp(z))
    lambda_max = float(np.exp(upper))

    n_candidates = rng.poisson(lambda_max * (xmax - xmin) * (ymax - ymin))
    candidates = np.column_stack([rng.uniform(xmin, xmax, n_candidates),
                                  rng.uniform(ymin, ymax, n_candidates)])
    candidates = candidates[shapely.contains_xy(polygon, candidates[:, 0], candidates[:, 1])]

    if len(candidates):
        accept = rng.uniform(size=len(candidates)) * lambda_max < np.exp(log_intensity(candidates))
        points = candidates[accept]
    else:
        points = candidates.reshape(0, 2)

    return {'points': points, 'field': field, 'lambda_max': lambda_max}


def simulate_lgcp_1d(
    mesh,
    domain: Tuple[float, float],
    range_: float,
    sigma: float,
    intercept: float,
    alpha: int = 2,
    seed: Optional[int] = None,
) -> Dict:
    """
    Simulate a 1D LGCP on an interval by thinning.

    :returns: Dict with sorted 'points', 'field' (knot values), 'lambda_max'
    """
    lower, upper = float(domain[0]), float(domain[1])
    if not upper > lower:
        raise ValueError(f"Domain must satisfy lower < upper, got {domain}")
    rng = np.random.default_rng(seed)
    field = sample_matern_field(mesh, range_, sigma, alpha, seed=rng.integers(2 ** 31))
    lambda_max = float(np.exp(intercept + np.max(field)))

    n_candidates = rng.poisson(lambda_max * (upper - lower))
    candidates = rng.uniform(lower, upper, n_candidates)
    eta = intercept + mesh.projector(candidates) @ field
    accept = rng.uniform(size=n_candidates) * lambda_max < np.exp(eta)

    return {'points': np.sort(candidates[accept]), 'field': field, 'lambda_max': lambda_max}


def load_points(path, x: str = "x", y: Optional[str] = "y", **read_csv_kwargs) -> np.ndarray:
    """
    Read a point pattern from a CSV file.

    :param path: File path or buffer accepted by pandas.read_csv
    :param x: Column with the first coordinate
    :param y: Column with the second coordinate; None for 1D data
    :returns: (n, 2) array, or (n,) when y is None
    """
    df = pd.read_csv(path, **read_csv_kwargs)
    columns = [x] if y is None else [x, y]
    missing = [c for c in columns if c not in df.columns]
    if missing:
        raise CoordsError(f"Columns {missing} not found; available: {list(df.columns)}")

    values = df[columns].dropna()
    if len(values) < len(df):
        print(f"Dropped {len(df) - len(values)} rows with missing coordinates")
    coords = values.to_numpy(dtype=float)
    return coords[:, 0] if y is None else coords
