"""
SPDE mesh generation for point-pattern models.

This module creates triangular meshes (2D) and interval meshes (1D) for
SPDE approximations following Lindgren et al. (2011). The 2D mesh has a
finely resolved inner region covering the study area and a coarser outer
extension that keeps boundary effects of the SPDE away from the data.
"""

import numpy as np

import meshpy.triangle as triangle
import shapely
from shapely.geometry import Polygon, MultiPolygon
from scipy.spatial import ConvexHull, KDTree

from typing import Tuple, Dict, Optional, Sequence, Union

import warnings

from lgcp_spde.coords import estimate_characteristic_scale
from lgcp_spde.exceptions import MeshError
from lgcp_spde.matrices import (
    compute_fem_matrices,
    compute_fem_matrices_1d,
    compute_projector_matrix,
    compute_projector_matrix_1d,
    locate_points,
    locate_points_1d,
)

PairOrScalar = Union[float, Sequence[float]]


def _as_pair(value: Optional[PairOrScalar], name: str) -> Optional[Tuple[float, float]]:
    if value is None:
        return None
    if np.isscalar(value):
        return float(value), float(value)
    value = tuple(float(v) for v in value)
    if len(value) != 2:
        raise MeshError(f"{name} must be a scalar or a pair (inner, outer), got {value}")
    return value


def as_polygon(boundary) -> Polygon:
    """Coerce an (n, 2) vertex array or a shapely polygon into a valid Polygon."""
    if isinstance(boundary, MultiPolygon):
        raise MeshError("MultiPolygon boundaries are not supported; pass a single Polygon")
    if not isinstance(boundary, Polygon):
        boundary = np.asarray(boundary, dtype=float)
        if boundary.ndim != 2 or boundary.shape[1] != 2 or len(boundary) < 3:
            raise MeshError(f"Boundary must be an (n >= 3, 2) array, got {boundary.shape}")
        boundary = Polygon(boundary)
    if boundary.is_empty or not boundary.is_valid or boundary.area <= 0:
        raise MeshError("Boundary polygon is empty, self-intersecting or has zero area")
    return boundary


def _ring_points(ring) -> np.ndarray:
    # shapely rings repeat the first vertex at the end
    return np.asarray(ring.coords)[:-1, :2]


class SPDEMesh:
    """
    2D SPDE mesh with data-adaptive default parameters.

    Attributes
    ----------
    coords : np.ndarray
        Projected point coordinates
    projection_info : Dict
        Metadata from coordinate preprocessing
    mesh_params : Dict
        Parameters the mesh was built with
    vertices : np.ndarray
        Mesh vertex coordinates
    triangles : np.ndarray
        Triangle connectivity matrix
    inner_boundary, outer_boundary : shapely Polygon
        Boundaries of the fine and coarse mesh regions
    diagnostics : Dict
        Mesh quality metrics
    """

    dim = 2

    def __init__(
        self,
        coords: np.ndarray,
        projection_info: Optional[Dict] = None
    ):
        """
        Initialize mesh generator with preprocessed coordinates.

        Parameters
        ----------
        coords : np.ndarray
            Projected point coordinates from preprocess_coords()
        projection_info : Dict, optional
            Projection metadata from preprocess_coords()
        """
        coords = np.asarray(coords, dtype=float)

        if coords.ndim != 2 or coords.shape[1] != 2:
            raise MeshError(f"Expected coords shape (n_obs, 2), got {coords.shape}")

        if len(coords) < 3:
            raise MeshError(
                f"Need at least 3 coordinates for mesh generation, got {len(coords)}"
            )

        self.coords = coords
        self.projection_info = projection_info or {}
        self.mesh_params = None
        self.vertices = None
        self.triangles = None
        self.inner_boundary = None
        self.outer_boundary = None
        self.diagnostics = None
        self._fem = None

    @property
    def n_vertices(self) -> int:
        self._require_mesh()
        return len(self.vertices)

    def _require_mesh(self) -> None:
        if self.vertices is None:
            raise MeshError("Mesh not yet generated. Call create_mesh() first.")

    def default_parameters(self) -> Dict[str, float]:
        """
        Data-driven defaults: inner edge a fifteenth of the point extent,
        outer edge three times coarser, cutoff a fifth of the inner edge.
        """
        scale = estimate_characteristic_scale(self.coords)
        inner = scale['extent'] / 15.0
        if not np.isfinite(inner) or inner <= 0:
            raise MeshError("Cannot derive a mesh resolution from degenerate coordinates")
        return {
            'max_edge': (inner, inner * 3.0),
            'offset': (-0.1, -0.3),
            'cutoff': inner / 5.0,
        }

    def create_mesh(
        self,
        boundary=None,
        max_edge: Optional[PairOrScalar] = None,
        offset: Optional[PairOrScalar] = None,
        cutoff: Optional[float] = None,
        min_angle: float = 21.0,
        verbose: bool = True
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Generate a triangular mesh with an inner and an outer region.

        :param boundary: Study area polygon ((n, 2) array or shapely Polygon).
            If None, the convex hull of the points extended by the inner offset
        :param max_edge: Largest triangle edge as (inner, outer) or a scalar for both
        :param offset: Extension distances (inner, outer). Negative values are
            fractions of the domain diameter
        :param cutoff: Points closer than this are merged into one vertex
        :param min_angle: Minimum triangle angle in degrees
        :param verbose: Print mesh generation progress and diagnostics
        :return: Tuple of (vertices, triangles)
        """
        defaults = None
        if max_edge is None or cutoff is None:
            defaults = self.default_parameters()

        max_edge = _as_pair(max_edge, 'max_edge') or defaults['max_edge']
        offset = _as_pair(offset, 'offset') or (-0.1, -0.3)
        if cutoff is None:
            cutoff = min(defaults['cutoff'], max_edge[0] / 5.0)

        if max_edge[0] <= 0 or max_edge[1] <= 0:
            raise MeshError(f"max_edge must be positive, got {max_edge}")
        if cutoff < 0:
            raise MeshError(f"cutoff must be non-negative, got {cutoff}")
        if not 0 < min_angle < 34:
            raise MeshError(f"min_angle must be in (0, 34) degrees, got {min_angle}")

        if verbose:
            print(f"Creating mesh for {len(self.coords)} points...")
            print(f"  Max edge (inner/outer): {max_edge[0]:.3f} / {max_edge[1]:.3f}")
            print(f"  Cutoff: {cutoff:.3f}")

        inner, outer, offsets = self._create_boundaries(boundary, offset)
        mesh_points = self._select_mesh_points(inner, cutoff)

        self.vertices, self.triangles = self._build_triangulation(
            inner, outer, mesh_points, max_edge, min_angle
        )
        self.inner_boundary = inner
        self.outer_boundary = outer
        self.mesh_params = {
            'max_edge': max_edge,
            'offset': offsets,
            'cutoff': cutoff,
            'min_angle': min_angle,
            'n_mesh_points': len(mesh_points),
        }
        self._fem = None
        self.diagnostics = self._compute_mesh_diagnostics()

        if verbose:
            self._print_diagnostics()

        return self.vertices, self.triangles

    def _create_boundaries(self, boundary, offset: Tuple[float, float]):
        if boundary is None:
            try:
                hull = ConvexHull(self.coords)
            except Exception as e:
                raise MeshError(f"Cannot build convex hull of points: {e}")
            base = Polygon(self.coords[hull.vertices])
        else:
            base = as_polygon(boundary)

        minx, miny, maxx, maxy = base.bounds
        diameter = float(np.hypot(maxx - minx, maxy - miny))

        def resolve(d):
            return -d * diameter if d < 0 else d

        inner_offset, outer_offset = resolve(offset[0]), resolve(offset[1])

        if boundary is None and inner_offset > 0:
            inner = base.buffer(inner_offset, quad_segs=2)
        else:
            inner = base

        if outer_offset > 0:
            outer = inner.buffer(outer_offset, quad_segs=2)
        else:
            outer = None

        return inner, outer, (inner_offset, outer_offset)

    def _select_mesh_points(self, inner: Polygon, cutoff: float) -> np.ndarray:
        """
        Points strictly inside the inner region, thinned so that no two are
        closer than the cutoff.
        """
        x, y = self.coords[:, 0], self.coords[:, 1]
        inside = shapely.contains_xy(inner, x, y)
        n_outside = int(np.sum(~inside))
        if n_outside:
            warnings.warn(f"{n_outside} points lie outside the boundary and are not used as mesh vertices")

        candidates = self.coords[inside]
        if len(candidates) == 0:
            return candidates

        # Keep clear of the boundary segments
        boundary_dist = shapely.distance(inner.boundary, shapely.points(candidates))
        candidates = candidates[boundary_dist > max(cutoff, 1e-9 * inner.length)]

        if cutoff <= 0 or len(candidates) == 0:
            return np.unique(candidates, axis=0)

        tree = KDTree(candidates)
        removed = np.zeros(len(candidates), dtype=bool)
        keep = []
        for i in range(len(candidates)):
            if removed[i]:
                continue
            keep.append(i)
            removed[tree.query_ball_point(candidates[i], cutoff)] = True
        return candidates[keep]

    def _build_triangulation(
        self,
        inner: Polygon,
        outer: Optional[Polygon],
        mesh_points: np.ndarray,
        max_edge: Tuple[float, float],
        min_angle: float
    ) -> Tuple[np.ndarray, np.ndarray]:
        """
        Constrained quality triangulation with MeshPy; one region per
        boundary with its own area bound.
        """
        # Area of an equilateral triangle with the requested edge length
        inner_area = np.sqrt(3) / 4 * max_edge[0] ** 2
        outer_area = np.sqrt(3) / 4 * max_edge[1] ** 2

        rings = [_ring_points(inner.exterior)]
        rings += [_ring_points(r) for r in inner.interiors]
        if outer is not None:
            rings.append(_ring_points(outer.exterior))

        points = []
        facets = []
        for ring in rings:
            start = len(points)
            points.extend(ring.tolist())
            n = len(ring)
            facets.extend([start + i, start + (i + 1) % n] for i in range(n))
        points.extend(mesh_points.tolist())

        mesh_info = triangle.MeshInfo()
        mesh_info.set_points(points)
        mesh_info.set_facets(facets)
        holes = [Polygon(r).representative_point() for r in inner.interiors]
        if holes:
            mesh_info.set_holes([(p.x, p.y) for p in holes])

        seeds = [(inner.representative_point(), inner_area)]
        if outer is not None:
            seeds.append((outer.difference(inner).representative_point(), outer_area))
        mesh_info.regions.resize(len(seeds))
        for i, (pt, area) in enumerate(seeds):
            mesh_info.regions[i] = [pt.x, pt.y, i, area]

        try:
            built = triangle.build(
                mesh_info,
                min_angle=min_angle,
                attributes=True,
                volume_constraints=True,
                max_volume=outer_area,
                generate_faces=False
            )
        except Exception as e:
            raise MeshError(f"Triangulation failed: {e}")

        vertices = np.array(built.points, dtype=float)
        triangles = np.array(built.elements, dtype=np.int64)
        if len(triangles) == 0:
            raise MeshError("Triangulation produced no triangles")

        # Drop vertices not referenced by any triangle (e.g. inside holes)
        used = np.unique(triangles)
        if len(used) < len(vertices):
            remap = np.full(len(vertices), -1, dtype=np.int64)
            remap[used] = np.arange(len(used))
            vertices = vertices[used]
            triangles = remap[triangles]

        return vertices, triangles

    def edge_lengths(self) -> np.ndarray:
        """Lengths of all unique mesh edges."""
        self._require_mesh()
        edges = np.vstack([self.triangles[:, [0, 1]],
                           self.triangles[:, [1, 2]],
                           self.triangles[:, [2, 0]]])
        edges = np.unique(np.sort(edges, axis=1), axis=0)
        return np.linalg.norm(self.vertices[edges[:, 1]] - self.vertices[edges[:, 0]], axis=1)

    def triangle_areas(self) -> np.ndarray:
        self._require_mesh()
        v0, v1, v2 = (self.vertices[self.triangles[:, k]] for k in range(3))
        return 0.5 * np.abs((v1[:, 0] - v0[:, 0]) * (v2[:, 1] - v0[:, 1]) -
                            (v2[:, 0] - v0[:, 0]) * (v1[:, 1] - v0[:, 1]))

    def fem_matrices(self):
        """Mass and stiffness matrices (C, G), cached."""
        self._require_mesh()
        if self._fem is None:
            C, G, _ = compute_fem_matrices(self.vertices, self.triangles)
            self._fem = (C, G)
        return self._fem

    def projector(self, points: np.ndarray):
        """Projector matrix from mesh vertices to points."""
        self._require_mesh()
        return compute_projector_matrix(self.vertices, self.triangles, points)

    def locate(self, points: np.ndarray):
        """Triangle index, barycentric weights and inside mask for points."""
        self._require_mesh()
        return locate_points(self.vertices, self.triangles, points)

    def _compute_mesh_diagnostics(self) -> Dict:
        """
        Compute user-interpretable mesh diagnostics.
        """
        n_vertices = len(self.vertices)
        n_obs = len(self.coords)
        areas = self.triangle_areas()
        edges = self.edge_lengths()
        total_area = float(np.sum(areas))

        return {
            'n_vertices': n_vertices,
            'n_triangles': len(self.triangles),
            'n_observations': n_obs,
            'mesh_to_obs_ratio': n_vertices / n_obs,
            'mean_triangle_area': float(np.mean(areas)),
            'total_area': total_area,
            'mesh_density': n_vertices / total_area if total_area > 0 else 0.0,
            'edge_lengths': {
                'min': float(edges.min()),
                'median': float(np.median(edges)),
                'max': float(edges.max()),
            },
        }

    def _print_diagnostics(self):
        """Print user-friendly diagnostics."""
        d = self.diagnostics
        e = d['edge_lengths']

        print("\nMesh Generation Complete:")
        print(f"  {d['n_vertices']:,} mesh vertices")
        print(f"  {d['n_triangles']:,} triangles")
        print(f"  Mesh/point ratio: {d['mesh_to_obs_ratio']:.1f}")
        print(f"  Total area: {d['total_area']:.1f} units^2")
        print(f"  Edge lengths: min {e['min']:.3f}, median {e['median']:.3f}, max {e['max']:.3f}")

        if d['n_vertices'] > 5000:
            print("  WARNING: Large mesh - expect slow model fitting")

    def get_mesh_info(self) -> Dict:
        """
        Get comprehensive mesh information.

        Returns
        -------
        Dict containing mesh parameters, diagnostics, and metadata
        """
        self._require_mesh()
        return {
            'mesh_params': self.mesh_params,
            'diagnostics': self.diagnostics,
            'projection_info': self.projection_info,
            'n_vertices': len(self.vertices),
            'n_triangles': len(self.triangles),
            'n_observations': len(self.coords)
        }

    def compute_scale_diagnostics(self, verbose: bool = True) -> Dict:
        """
        Compare the mesh resolution with the spatial scale of the points.

        :param verbose: Print diagnostic information and warn about a coarse mesh
        :return: Dict with 'spatial_scale', 'validation', 'suggestions' and 'edge_lengths'
        """
        self._require_mesh()

        spatial_scale = estimate_characteristic_scale(self.coords)
        edges = self.edge_lengths()
        inner_edges = edges
        if self.inner_boundary is not None:
            mids = self._edge_midpoints()
            in_inner = shapely.contains_xy(self.inner_boundary, mids[:, 0], mids[:, 1])
            if np.any(in_inner):
                inner_edges = edges[in_inner]
        max_edge = float(np.percentile(inner_edges, 90))

        minx, miny, maxx, maxy = (self.inner_boundary.bounds if self.inner_boundary is not None
                                  else (*self.coords.min(axis=0), *self.coords.max(axis=0)))
        domain_extent = max(maxx - minx, maxy - miny)

        suggested_range = float(np.clip(spatial_scale['characteristic_scale'] * 3,
                                        domain_extent * 0.05, domain_extent * 0.5))
        edge_to_range_ratio = max_edge / suggested_range
        resolution_ok = edge_to_range_ratio < 0.5

        validation = {
            'resolution_ok': resolution_ok,
            'edge_to_range_ratio': edge_to_range_ratio,
            'max_inner_edge': max_edge,
        }
        suggestions = {
            'spatial_range_suggestion': suggested_range,
            'mesh_extent': domain_extent,
            'max_edge_suggestion': suggested_range / 5.0,
        }

        if verbose:
            print("\nScale Diagnostics:")
            print(f"  Characteristic point spacing: {spatial_scale['characteristic_scale']:.3f}")
            print(f"  Suggested prior range: {suggested_range:.3f}")
            print(f"  Mesh resolution adequate: {resolution_ok}")
            if not resolution_ok:
                warnings.warn(
                    f"Mesh may be too coarse for the spatial scale of the data.\n"
                    f"  Inner edge length (90%): {max_edge:.3f}\n"
                    f"  Suggested range: {suggested_range:.3f}\n"
                    f"  Consider max_edge <= {suggestions['max_edge_suggestion']:.3f}"
                )

        self.scale_diagnostics = {
            'spatial_scale': spatial_scale,
            'validation': validation,
            'suggestions': suggestions,
            'edge_lengths': {'min': float(edges.min()), 'max': float(edges.max())},
        }
        return self.scale_diagnostics

    def _edge_midpoints(self) -> np.ndarray:
        edges = np.vstack([self.triangles[:, [0, 1]],
                           self.triangles[:, [1, 2]],
                           self.triangles[:, [2, 0]]])
        edges = np.unique(np.sort(edges, axis=1), axis=0)
        return 0.5 * (self.vertices[edges[:, 0]] + self.vertices[edges[:, 1]])


class IntervalMesh:
    """
    1D mesh of piecewise linear basis functions on sorted knots.

    Examples
    --------
    >>> mesh = IntervalMesh.from_domain((0, 55), max_edge=2.0)
    >>> mesh.n_vertices
    29
    """

    dim = 1

    def __init__(self, knots: np.ndarray):
        knots = np.asarray(knots, dtype=float).ravel()
        if len(knots) < 2:
            raise MeshError(f"1D mesh needs at least 2 knots, got {len(knots)}")
        if np.any(~np.isfinite(knots)):
            raise MeshError("1D mesh knots contain NaN or infinite values")
        knots = np.unique(knots)
        if len(knots) < 2:
            raise MeshError("1D mesh needs at least 2 distinct knots")
        self.knots = knots
        self._fem = None

    @classmethod
    def from_domain(cls, domain: Tuple[float, float], max_edge: float,
                    extension: float = 0.0) -> "IntervalMesh":
        """
        Regularly spaced knots covering the domain plus an extension at each end.

        :param domain: Interval (lower, upper)
        :param max_edge: Largest knot spacing
        :param extension: Distance the mesh extends beyond each end of the domain
        """
        lower, upper = float(domain[0]), float(domain[1])
        if not upper > lower:
            raise MeshError(f"Domain must satisfy lower < upper, got {domain}")
        if max_edge <= 0:
            raise MeshError(f"max_edge must be positive, got {max_edge}")
        if extension < 0:
            raise MeshError(f"extension must be non-negative, got {extension}")
        lo, hi = lower - extension, upper + extension
        n_intervals = int(np.ceil((hi - lo) / max_edge - 1e-9))
        return cls(np.linspace(lo, hi, n_intervals + 1))

    @property
    def vertices(self) -> np.ndarray:
        return self.knots

    @property
    def n_vertices(self) -> int:
        return len(self.knots)

    @property
    def domain(self) -> Tuple[float, float]:
        return float(self.knots[0]), float(self.knots[-1])

    def edge_lengths(self) -> np.ndarray:
        return np.diff(self.knots)

    def fem_matrices(self):
        """Mass and stiffness matrices (C, G), cached."""
        if self._fem is None:
            C, G, _ = compute_fem_matrices_1d(self.knots)
            self._fem = (C, G)
        return self._fem

    def projector(self, points: np.ndarray):
        return compute_projector_matrix_1d(self.knots, points)

    def locate(self, points: np.ndarray):
        """Interval index, weights on its two knots and inside mask for points."""
        return locate_points_1d(self.knots, points)

    def get_mesh_info(self) -> Dict:
        h = self.edge_lengths()
        return {
            'n_vertices': self.n_vertices,
            'domain': self.domain,
            'edge_lengths': {'min': float(h.min()), 'max': float(h.max())},
        }

    def __repr__(self) -> str:
        lo, hi = self.domain
        return f"IntervalMesh(n_vertices={self.n_vertices}, domain=({lo:g}, {hi:g}))"
