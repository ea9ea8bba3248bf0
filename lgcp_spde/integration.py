"""
Integration points for the LGCP likelihood and abundance integrals.

The intensity integral over the study area is approximated by a weighted
sum over mesh vertices. Weights are obtained by integrating the piecewise
linear basis functions over the part of the mesh inside the domain: each
element is subdivided, sub-element centroids inside the domain carry their
area (or length), and the result is projected back onto the vertices.
"""

from dataclasses import dataclass

import numpy as np
import shapely

from typing import Optional, Tuple

from lgcp_spde.exceptions import MeshError
from lgcp_spde.matrices import lumped_mass
from lgcp_spde.mesh import as_polygon


@dataclass
class IntegrationPoints:
    """
    Weighted integration locations.

    Attributes
    ----------
    locations : np.ndarray
        (n, 2) points for 2D domains, (n,) for 1D
    weights : np.ndarray
        Non-negative quadrature weights, shape (n,)
    vertex_index : np.ndarray, optional
        Mesh vertex each location coincides with
    """

    locations: np.ndarray
    weights: np.ndarray
    vertex_index: Optional[np.ndarray] = None

    def __post_init__(self) -> None:
        self.locations = np.asarray(self.locations, dtype=float)
        self.weights = np.asarray(self.weights, dtype=float).ravel()
        if len(self.locations) != len(self.weights):
            raise ValueError(
                f"{len(self.locations)} locations but {len(self.weights)} weights"
            )
        if np.any(self.weights < 0) or np.any(~np.isfinite(self.weights)):
            raise ValueError("Integration weights must be finite and non-negative")

    @property
    def n(self) -> int:
        return len(self.weights)

    @property
    def dim(self) -> int:
        return 1 if self.locations.ndim == 1 else 2

    @property
    def total_measure(self) -> float:
        """Area (2D) or length (1D) covered by the weights."""
        return float(np.sum(self.weights))


def _reference_centroids(nsub: int) -> Tuple[np.ndarray, int]:
    """
    Centroids, in reference coordinates (xi, eta), of the m^2 sub-triangles
    of a regular refinement with m = 2^nsub divisions per edge.
    """
    m = 2 ** nsub
    centroids = []
    for i in range(m):
        for j in range(m - i):
            centroids.append(((3 * i + 1) / (3 * m), (3 * j + 1) / (3 * m)))
            if i + j <= m - 2:
                centroids.append(((3 * i + 2) / (3 * m), (3 * j + 2) / (3 * m)))
    return np.array(centroids), m * m


def integration_points_2d(mesh, domain=None, nsub: int = 2) -> IntegrationPoints:
    """
    Integration points on mesh vertices for a 2D domain.

    :param mesh: SPDEMesh with a generated mesh
    :param domain: Polygon ((n, 2) array or shapely Polygon). If None, the whole mesh
    :param nsub: Each triangle is split into 4^nsub sub-triangles
    :return: IntegrationPoints whose weights sum to the area of domain ∩ mesh
    """
    if mesh.vertices is None:
        raise MeshError("Mesh not yet generated. Call create_mesh() first.")
    if nsub < 0:
        raise ValueError(f"nsub must be non-negative, got {nsub}")

    vertices, triangles = mesh.vertices, mesh.triangles
    n_vertices = len(vertices)

    if domain is None:
        C, _ = mesh.fem_matrices()
        weights = lumped_mass(C)
    else:
        polygon = as_polygon(domain)

        ref, n_sub = _reference_centroids(nsub)
        bary = np.column_stack([1.0 - ref.sum(axis=1), ref[:, 0], ref[:, 1]])

        tri_coords = vertices[triangles]
        # (n_tri, n_ref, 2) sub-triangle centroids in physical space
        points = np.einsum('rk,tkd->trd', bary, tri_coords)
        v0, v1, v2 = tri_coords[:, 0], tri_coords[:, 1], tri_coords[:, 2]
        areas = 0.5 * np.abs((v1[:, 0] - v0[:, 0]) * (v2[:, 1] - v0[:, 1]) -
                             (v2[:, 0] - v0[:, 0]) * (v1[:, 1] - v0[:, 1]))

        flat = points.reshape(-1, 2)
        inside = shapely.contains_xy(polygon, flat[:, 0], flat[:, 1]).reshape(points.shape[:2])
        sub_weights = inside * (areas / n_sub)[:, None]

        # w_vertex = A_sub^T w_sub with A_sub the barycentric weights
        contrib = sub_weights[:, :, None] * bary[None, :, :]
        rows = triangles[:, None, :].repeat(len(ref), axis=1).ravel()
        weights = np.bincount(rows, weights=contrib.ravel(), minlength=n_vertices)

    keep = weights > 0
    return IntegrationPoints(
        locations=vertices[keep],
        weights=weights[keep],
        vertex_index=np.where(keep)[0],
    )


def integration_points_1d(mesh, domain: Optional[Tuple[float, float]] = None,
                          n_gauss: int = 3) -> IntegrationPoints:
    """
    Integration points on knots for a 1D domain.

    Gauss-Legendre nodes inside each knot interval (clipped to the domain)
    are aggregated onto the two knots of the interval.

    :param mesh: IntervalMesh
    :param domain: Interval (lower, upper). If None, the mesh extent
    :param n_gauss: Gauss-Legendre nodes per interval
    :return: IntegrationPoints whose weights sum to the domain length covered by the mesh
    """
    knots = mesh.knots
    lower, upper = mesh.domain if domain is None else (float(domain[0]), float(domain[1]))
    if not upper > lower:
        raise ValueError(f"Domain must satisfy lower < upper, got {(lower, upper)}")

    nodes, gauss_w = np.polynomial.legendre.leggauss(n_gauss)

    a = np.clip(knots[:-1], lower, upper)
    b = np.clip(knots[1:], lower, upper)
    length = b - a
    active = length > 0

    weights = np.zeros(len(knots))
    if np.any(active):
        idx = np.where(active)[0]
        half = 0.5 * length[idx][:, None]
        mid = 0.5 * (a[idx] + b[idx])[:, None]
        x = mid + half * nodes[None, :]
        w = half * gauss_w[None, :]
        h = (knots[idx + 1] - knots[idx])[:, None]
        t = (x - knots[idx][:, None]) / h
        np.add.at(weights, idx, np.sum(w * (1.0 - t), axis=1))
        np.add.at(weights, idx + 1, np.sum(w * t, axis=1))

    keep = weights > 0
    return IntegrationPoints(
        locations=knots[keep],
        weights=weights[keep],
        vertex_index=np.where(keep)[0],
    )


def integration_points(mesh, domain=None, **kwargs) -> IntegrationPoints:
    """Integration points for a mesh of either dimension."""
    if mesh.dim == 1:
        return integration_points_1d(mesh, domain, **kwargs)
    return integration_points_2d(mesh, domain, **kwargs)
