"""
Posterior prediction of intensity surfaces and model components.
"""

from dataclasses import dataclass

import numpy as np
import shapely

from typing import Dict, List, Optional, Sequence, Tuple, Union

from lgcp_spde.exceptions import ModelError
from lgcp_spde.mesh import as_polygon

Target = Union[str, Sequence[str]]

_QUANTILES = (('q0.025', 2.5), ('median', 50.0), ('q0.975', 97.5))


def summarise_samples(samples: np.ndarray) -> Dict[str, np.ndarray]:
    """Mean, sd and 95% interval along the first axis of a sample array."""
    summary = {
        'mean': np.mean(samples, axis=0),
        'sd': np.std(samples, axis=0, ddof=1) if len(samples) > 1 else np.zeros(samples.shape[1:]),
    }
    for key, q in _QUANTILES:
        summary[key] = np.percentile(samples, q, axis=0)
    return summary


def _resolve_target(result, what: Target) -> Tuple[Optional[List[str]], bool]:
    """Component names for the predictor and whether to exponentiate."""
    if isinstance(what, str):
        if what == "intensity":
            return None, True
        if what == "log_intensity":
            return None, False
        what = [what]
    names = list(what)
    unknown = [n for n in names if n not in result.model.names]
    if unknown:
        raise ModelError(f"Cannot predict {unknown}: not a model component. "
                         f"Use 'intensity', 'log_intensity' or one of {result.model.names}")
    return names, False


def predict(
    result,
    locations: np.ndarray,
    what: Target = "intensity",
    n_samples: int = 1000,
    seed: Optional[int] = None,
    keep_samples: bool = True,
) -> Dict[str, np.ndarray]:
    """
    Posterior predictive summaries at locations.

    :param result: LGCPResult from fit_lgcp
    :param locations: (n, 2) points for 2D models, (n,) for 1D
    :param what: "intensity" (exp of the full linear predictor), "log_intensity",
        a component name or a list of component names (summed, on the linear scale)
    :param n_samples: Number of posterior samples
    :param seed: Random seed
    :param keep_samples: Include the (n_samples, n) sample array under 'samples'
    :returns: Dict with mean, sd, q0.025, median, q0.975 (and samples)

    Examples
    --------
    >>> grid = pixels(mesh, domain, nx=100, ny=100)
    >>> pred = predict(result, grid.locations, what="intensity", seed=1)
    >>> image = grid.to_image(pred['mean'])
    """
    if n_samples < 2:
        raise ValueError(f"n_samples must be at least 2, got {n_samples}")
    names, exponentiate = _resolve_target(result, what)

    eta = result.sample_linear_predictor(locations, names=names, n_samples=n_samples, seed=seed)
    values = np.exp(eta) if exponentiate else eta

    summary = summarise_samples(values)
    if keep_samples:
        summary['samples'] = values
    return summary


@dataclass
class PixelGrid:
    """
    Regular grid of prediction locations masked to a domain.

    Attributes
    ----------
    x, y : np.ndarray
        Pixel centre coordinates along each axis
    mask : np.ndarray
        Boolean (ny, nx) array, True for pixels inside the domain
    locations : np.ndarray
        (n_inside, 2) centres of the pixels inside the domain
    """

    x: np.ndarray
    y: np.ndarray
    mask: np.ndarray
    locations: np.ndarray

    @property
    def shape(self) -> Tuple[int, int]:
        return self.mask.shape

    @property
    def extent(self) -> Tuple[float, float, float, float]:
        """(xmin, xmax, ymin, ymax) of the pixel edges, as used by imshow."""
        dx = self.x[1] - self.x[0] if len(self.x) > 1 else 1.0
        dy = self.y[1] - self.y[0] if len(self.y) > 1 else 1.0
        return (self.x[0] - dx / 2, self.x[-1] + dx / 2, self.y[0] - dy / 2, self.y[-1] + dy / 2)

    def to_image(self, values: np.ndarray) -> np.ndarray:
        """Place per-location values into an (ny, nx) image, NaN outside the domain."""
        values = np.asarray(values, dtype=float)
        if len(values) != len(self.locations):
            raise ValueError(f"Expected {len(self.locations)} values, got {len(values)}")
        image = np.full(self.mask.shape, np.nan)
        image[self.mask] = values
        return image


def pixels(mesh, domain=None, nx: int = 100, ny: int = 100) -> PixelGrid:
    """
    Pixel centres covering the domain (or the mesh) for prediction.

    :param mesh: SPDEMesh; its boundary is used when domain is None
    :param domain: Polygon as (n, 2) array or shapely Polygon
    :param nx: Pixels along x
    :param ny: Pixels along y
    """
    if nx < 1 or ny < 1:
        raise ValueError(f"nx and ny must be positive, got {(nx, ny)}")
    if domain is not None:
        polygon = as_polygon(domain)
    else:
        mesh._require_mesh()
        polygon = mesh.outer_boundary if mesh.outer_boundary is not None else mesh.inner_boundary
    xmin, ymin, xmax, ymax = polygon.bounds

    dx = (xmax - xmin) / nx
    dy = (ymax - ymin) / ny
    x = xmin + dx * (np.arange(nx) + 0.5)
    y = ymin + dy * (np.arange(ny) + 0.5)
    X, Y = np.meshgrid(x, y)

    mask = shapely.contains_xy(polygon, X, Y)
    locations = np.column_stack([X[mask], Y[mask]])
    return PixelGrid(x=x, y=y, mask=mask, locations=locations)


def interval_grid(mesh=None, domain: Optional[Tuple[float, float]] = None, n: int = 200) -> np.ndarray:
    """Evenly spaced prediction locations on an interval (the mesh domain by default)."""
    if domain is None:
        if mesh is None:
            raise ValueError("Provide a mesh or a domain")
        domain = mesh.domain
    lower, upper = float(domain[0]), float(domain[1])
    if not upper > lower:
        raise ValueError(f"Domain must satisfy lower < upper, got {domain}")
    return np.linspace(lower, upper, n)
