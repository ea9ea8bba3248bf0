"""
Plotting helpers for meshes, intensity surfaces and posterior summaries.
"""

import matplotlib.pyplot as plt
import numpy as np

from typing import Dict, Optional, Sequence

from lgcp_spde.mesh import as_polygon


def plot_mesh(mesh, points: Optional[np.ndarray] = None, domain=None,
              ax: Optional[plt.Axes] = None, title: str = "Mesh"):
    """
    Plot the triangulation with optional points and domain outline.

    Args:
        mesh: SPDEMesh with a generated mesh
        points: Event locations (n, 2)
        domain: Observation window polygon
        ax: Matplotlib axis (creates new if None)
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 7))

    mesh._require_mesh()
    ax.triplot(mesh.vertices[:, 0], mesh.vertices[:, 1], mesh.triangles,
               color='0.6', linewidth=0.5)
    if domain is not None:
        x, y = as_polygon(domain).exterior.xy
        ax.plot(x, y, 'b-', linewidth=1.5, label='Domain')
    if points is not None and len(points):
        points = np.asarray(points)
        ax.plot(points[:, 0], points[:, 1], 'r.', markersize=3, label='Points')
    ax.set_aspect('equal')
    ax.set_title(f"{title} ({mesh.n_vertices} vertices)")
    if domain is not None or points is not None:
        ax.legend(loc='upper right')

    return ax


def plot_intensity(grid, values: np.ndarray, title: str = "Posterior mean intensity",
                   points: Optional[np.ndarray] = None, ax: Optional[plt.Axes] = None,
                   **kwargs):
    """
    Plot a per-pixel prediction as an image.

    Args:
        grid: PixelGrid from predict.pixels
        values: Values at grid.locations, e.g. predict(...)['mean'] or ['sd']
        points: Event locations to overlay
        ax: Matplotlib axis
        **kwargs: Additional arguments for imshow
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(8, 7))

    kwargs.setdefault('cmap', 'viridis')
    im = ax.imshow(grid.to_image(values), origin='lower', extent=grid.extent, **kwargs)
    if points is not None and len(points):
        points = np.asarray(points)
        ax.plot(points[:, 0], points[:, 1], 'w.', markersize=2)
    ax.set_title(title)
    plt.colorbar(im, ax=ax)

    return ax


def plot_intensity_1d(locations: np.ndarray, prediction: Dict[str, np.ndarray],
                      points: Optional[np.ndarray] = None, title: str = "Intensity",
                      ax: Optional[plt.Axes] = None):
    """
    Posterior mean with a 95% credible band on an interval.

    Args:
        locations: Prediction locations (n,)
        prediction: Output of predict() at those locations
        points: Events, drawn as a rug
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(10, 5))

    ax.fill_between(locations, prediction['q0.025'], prediction['q0.975'],
                    color='C0', alpha=0.3, label='95% interval')
    ax.plot(locations, prediction['mean'], 'C0-', linewidth=2, label='Mean')
    if points is not None and len(points):
        ax.plot(points, np.zeros_like(points), 'k|', markersize=10, label='Events')
    ax.set_xlabel('Location')
    ax.set_title(title)
    ax.legend()
    ax.grid(True, alpha=0.3)

    return ax


def plot_posterior_density(result, names: Optional[Sequence[str]] = None):
    """
    Posterior densities of hyperparameters and fixed effects.

    Args:
        result: LGCPResult
        names: Parameters to plot; all hyperparameters and fixed effects by default
    """
    if names is None:
        names = result.model.theta_names + [c.name for c in result.model.fixed_effects]
    names = list(names)

    fig, axes = plt.subplots(1, len(names), figsize=(5 * len(names), 4))
    if len(names) == 1:
        axes = [axes]

    for ax, name in zip(axes, names):
        x, density = result.posterior_density(name)
        ax.plot(x, density, 'b-', linewidth=2)
        ax.set_xlabel(name)
        ax.set_ylabel('Density')
        ax.set_title(name)
        ax.grid(True, alpha=0.3)

    plt.tight_layout()
    return fig


def plot_abundance(abundance: Dict, ax: Optional[plt.Axes] = None,
                   title: str = "Posterior predictive abundance"):
    """
    Distribution of the number of events N.

    Args:
        abundance: Output of estimate_abundance
        ax: Matplotlib axis
    """
    if ax is None:
        fig, ax = plt.subplots(figsize=(10, 5))

    dist = abundance['N']
    ax.plot(dist['n'], dist['pmf'], 'k-', linewidth=1.5, label='N')
    ax.axvline(abundance['lambda']['mean'], color='C1', linestyle='--', label='E[Lambda]')
    for key in ('q0.025', 'q0.975'):
        ax.axvline(dist[key], color='0.5', linestyle=':')
    lo = max(0, int(dist['q0.025'] - 4 * dist['sd']))
    hi = int(dist['q0.975'] + 4 * dist['sd']) + 1
    ax.set_xlim(lo, hi)
    ax.set_xlabel('Number of events')
    ax.set_ylabel('Probability')
    ax.set_title(title)
    ax.legend()
    ax.grid(True, alpha=0.3)

    return ax
