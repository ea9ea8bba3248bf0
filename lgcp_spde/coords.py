"""
Coordinate preprocessing for point patterns.

Event locations and study-area boundaries are validated, projected from
lon/lat to an equal-area or UTM system when needed, and rescaled to km for
large regions so that mesh edges and prior ranges live on a sensible scale.
"""

import numpy as np
import pyproj

from scipy.spatial import ConvexHull, KDTree
from scipy.sparse.csgraph import minimum_spanning_tree
from scipy.spatial.distance import pdist, squareform
from shapely.geometry import Polygon

from lgcp_spde.exceptions import CoordsError
from typing import Tuple, Dict, Optional


def estimate_characteristic_scale(coords: np.ndarray, max_points: int = 1000,
                                  seed: Optional[int] = 0) -> Dict[str, float]:
    """
    Estimate characteristic spatial scale from point pattern.

    :param coords: Coordinate array (n_obs, 2)
    :param max_points: Subsample size for the pairwise computations
    :param seed: Seed for the subsample
    :return: Dict with scale estimates: characteristic_scale, min_distance,
        median_distance, nn_distance, extent, mesh_recommended_edge
    """
    coords = np.asarray(coords, dtype=float)
    n_obs = len(coords)
    if n_obs < 2:
        raise CoordsError("Need at least 2 coordinates to estimate a spatial scale")

    if n_obs > max_points:
        rng = np.random.default_rng(seed)
        coords_sub = coords[rng.choice(n_obs, max_points, replace=False)]
    else:
        coords_sub = coords

    dists_flat = pdist(coords_sub)
    positive = dists_flat[dists_flat > 0]
    if len(positive) == 0:
        raise CoordsError("All coordinates coincide; spatial scale is undefined")
    min_dist = np.min(positive)
    median_dist = np.median(positive)

    # Duplicated events give zero-length MST edges, so drop them
    mst = minimum_spanning_tree(squareform(dists_flat))
    mst_edges = mst.tocoo().data
    mst_edges = mst_edges[mst_edges > 0]
    characteristic_scale = np.percentile(mst_edges, 75) if len(mst_edges) else median_dist

    tree = KDTree(coords)
    nn, _ = tree.query(coords, k=2)
    nn_positive = nn[:, 1][nn[:, 1] > 0]
    nn_distance = np.median(nn_positive) if len(nn_positive) else min_dist

    extent = max(np.ptp(coords[:, 0]), np.ptp(coords[:, 1]))

    return {
        'characteristic_scale': characteristic_scale,
        'min_distance': min_dist,
        'median_distance': median_dist,
        'nn_distance': nn_distance,
        'extent': extent,
        'mesh_recommended_edge': characteristic_scale * 0.3
    }


def is_geographic(coords: np.ndarray) -> bool:
    """True if every point lies inside the lon/lat value ranges."""
    x_vals, y_vals = coords[:, 0], coords[:, 1]
    return bool(np.all(np.abs(x_vals) <= 180) and np.all(np.abs(y_vals) <= 90))


def wrap_longitudes(coords: np.ndarray) -> Tuple[np.ndarray, bool]:
    """
    Move longitudes into 0-360 when the points straddle the antimeridian.

    A longitude spread over 180 degrees is read as a pattern crossing the
    dateline rather than one spanning half the globe.

    :param coords: Geographic coordinates (lon/lat)
    :return: Tuple of (coordinates, crossed); the input is never modified
    """
    lon = coords[:, 0]
    if np.ptp(lon) <= 180:
        return coords, False
    wrapped = coords.copy()
    wrapped[:, 0] = np.mod(lon, 360.0)
    return wrapped, True


def hull_vertices(coords: np.ndarray) -> np.ndarray:
    """Convex hull vertices, or all points when the hull is degenerate."""
    if len(coords) < 3:
        return coords
    try:
        return coords[ConvexHull(coords).vertices]
    except Exception:
        # Collinear or coincident points
        return coords


def hull_diameter(coords: np.ndarray) -> float:
    """Largest distance between two points of the pattern."""
    distances = pdist(hull_vertices(coords))
    return float(distances.max()) if len(distances) else 0.0


def geodesic_diameter_km(lonlat: np.ndarray) -> float:
    """Largest WGS84 great-circle distance between hull vertices, in km."""
    vertices = hull_vertices(lonlat)
    if len(vertices) < 2:
        return 0.0
    geod = pyproj.Geod(ellps="WGS84")
    i, j = np.triu_indices(len(vertices), k=1)
    _, _, dist_m = geod.inv(vertices[i, 0], vertices[i, 1], vertices[j, 0], vertices[j, 1])
    return float(np.max(dist_m)) / 1000.0


def utm_zone(lon: float, lat: float) -> Tuple[int, bool]:
    """UTM zone number and southern-hemisphere flag for a point."""
    lon = (lon + 180.0) % 360.0 - 180.0
    zone = int(np.clip(np.floor((lon + 180.0) / 6.0) + 1, 1, 60))
    return zone, lat < 0


def choose_projection(lonlat: np.ndarray) -> Dict:
    """
    Pick a metric projection suited to the size of a lon/lat pattern.

    Patterns under 1000 km across go to the UTM zone of their centroid,
    patterns under 11000 km to an Albers equal-area conic with standard
    parallels one sixth in from the latitude limits, and anything larger to
    Mollweide.

    :param lonlat: Geographic coordinates, already wrapped if needed
    :return: Dict with keys scale, proj4_string, system, diameter_km
    """
    diameter_km = geodesic_diameter_km(lonlat)
    lon0, lat0 = lonlat.mean(axis=0)

    if diameter_km < 1000:
        zone, south = utm_zone(lon0, lat0)
        hemisphere = " +south" if south else ""
        return {
            'scale': 'single_region',
            'proj4_string': f"+proj=utm +zone={zone}{hemisphere} +datum=WGS84 +units=m +no_defs",
            'system': f"UTM Zone {zone}{'S' if south else 'N'}",
            'diameter_km': diameter_km,
        }

    if diameter_km < 11000:
        lat_lo, lat_hi = lonlat[:, 1].min(), lonlat[:, 1].max()
        inset = (lat_hi - lat_lo) / 6
        return {
            'scale': 'multi_region',
            'proj4_string': (f"+proj=aea +lat_1={lat_lo + inset:.2f} +lat_2={lat_hi - inset:.2f} "
                             f"+lat_0={lat0:.2f} +lon_0={lon0:.2f} +datum=WGS84 +units=m +no_defs"),
            'system': "Albers Equal-Area Conic",
            'diameter_km': diameter_km,
        }

    return {
        'scale': 'global',
        'proj4_string': f"+proj=moll +lon_0={lon0:.2f} +datum=WGS84 +units=m +no_defs",
        'system': "Mollweide Equal-Area",
        'diameter_km': diameter_km,
    }


def project_coordinates(coords: np.ndarray, proj4_string: str) -> np.ndarray:
    """Transform lon/lat (EPSG:4326) into the given projection."""
    transformer = pyproj.Transformer.from_crs("EPSG:4326", proj4_string, always_xy=True)
    return np.column_stack(transformer.transform(coords[:, 0], coords[:, 1]))


def remove_duplicate_coords(coords: np.ndarray, tolerance: float = 1e-6) -> Tuple[np.ndarray, np.ndarray, int]:
    """
    Remove duplicate coordinates within tolerance, keeping the first occurrence.

    :return: Tuple of (unique_coords, unique_indices, n_duplicates)
    """
    if len(coords) <= 1:
        return coords, np.arange(len(coords)), 0

    tree = KDTree(coords)
    pairs = tree.query_pairs(tolerance, output_type='ndarray')
    indices_to_remove = set(int(j) for i, j in pairs if i < j)

    unique_indices = np.array([i for i in range(len(coords)) if i not in indices_to_remove])
    unique_coords = coords[unique_indices]
    return unique_coords, unique_indices, len(coords) - len(unique_coords)


def preprocess_coords(coords: np.ndarray,
                      tolerance: float = 1e-6,
                      remove_duplicates: bool = False,
                      crs: str = "auto",
                      verbose: bool = True) -> Tuple[np.ndarray, np.ndarray, Dict]:
    """
    Validate, project, and optionally deduplicate event coordinates.

    Repeated events at one location are genuine data in a point pattern, so
    duplicates are kept unless ``remove_duplicates`` is set.

    :param coords: Input coordinates of shape (n_obs, 2), lon/lat (auto-detected) or projected
    :param tolerance: Tolerance for duplicate detection
    :param remove_duplicates: If True, drop duplicate coordinates
    :param crs: "auto" to detect lon/lat from the value range, or "geographic" / "projected"
    :param verbose: Print progress
    :return: Tuple of (projected_coords, kept_indices, projection_info dict)
    :raises CoordsError: If input validation fails
    """
    coords = np.asarray(coords, dtype=float)

    if coords.ndim != 2 or coords.shape[1] != 2:
        raise CoordsError(f"Expected coords shape (n_obs, 2), got {coords.shape}")

    if len(coords) < 1:
        raise CoordsError("Point pattern is empty")

    if np.any(~np.isfinite(coords)):
        raise CoordsError("Coordinates contain NaN or infinite values")

    if crs not in ("auto", "geographic", "projected"):
        raise CoordsError(f"Unknown crs {crs!r}. Use 'auto', 'geographic' or 'projected'")
    is_geo = is_geographic(coords) if crs == "auto" else crs == "geographic"

    if is_geo:
        coords, crossed = wrap_longitudes(coords)
        projection = choose_projection(coords)
        projected = project_coordinates(coords, projection['proj4_string'])
        if verbose:
            print("Detected geographic coordinates (lon/lat)")
            if crossed:
                print("Points straddle the antimeridian; longitudes wrapped to 0-360")
            print(f"Pattern diameter approximately {projection['diameter_km']:.1f} km, "
                  f"projected to {projection['system']}")

        # Large regions are carried in km so mesh edges stay O(1)-O(100)
        extent_m = np.ptp(projected, axis=0).max()
        if extent_m > 100000:
            projected *= 0.001
            rescale_factor, coordinate_units, unit_to_km = 0.001, 'kilometers', 1.0
            if verbose:
                print(f"Rescaled coordinates from meters to km (extent: {extent_m / 1000:.1f} km)")
        else:
            rescale_factor, coordinate_units, unit_to_km = 1.0, 'meters', 0.001
    else:
        if verbose:
            print("Detected projected coordinates - using as-is")
        crossed = False
        projection = {
            'scale': 'unknown',
            'proj4_string': None,
            'system': "User-provided projection",
            'diameter_km': hull_diameter(coords) / 1000,
        }
        projected = coords.copy()
        rescale_factor, coordinate_units, unit_to_km = 1.0, 'unknown', 0.001

    kept_indices = np.arange(len(projected))
    if remove_duplicates:
        projected, kept_indices, n_duplicates = remove_duplicate_coords(projected, tolerance)
        if n_duplicates > 0 and verbose:
            print(f"Removed {n_duplicates} duplicate coordinates (tolerance={tolerance})")

    lower, upper = projected.min(axis=0), projected.max(axis=0)
    projection_info = {
        'proj4_string': projection['proj4_string'],
        'system': projection['system'],
        'scale': projection['scale'],
        'projected_bbox': (lower[0], lower[1], upper[0], upper[1]),
        'hull_diameter_km': projection['diameter_km'],
        'antimeridian_crossing': crossed,
        'coordinate_units': coordinate_units,
        'unit_to_km': unit_to_km,
        'rescale_factor': rescale_factor,
    }

    if verbose:
        width, height = upper - lower
        print(f"Coordinate preprocessing complete: {len(coords)} -> {len(projected)} points")
        print(f"Projected extent: {width:.3f} x {height:.3f} {coordinate_units}")

    return projected, kept_indices, projection_info


def project_boundary(boundary, projection_info: Optional[Dict]):
    """
    Put a boundary polygon into the same space as preprocessed points.

    :param boundary: Polygon vertices (n, 2) or a shapely Polygon, in the
        coordinates the points were given in
    :param projection_info: Dict returned by preprocess_coords()
    :return: Projected (and rescaled) boundary, of the same kind as the input
    """
    if isinstance(boundary, Polygon):
        if not projection_info or not projection_info.get('proj4_string'):
            return boundary
        return Polygon(_project_ring(np.asarray(boundary.exterior.coords)[:, :2], projection_info),
                       [_project_ring(np.asarray(r.coords)[:, :2], projection_info)
                        for r in boundary.interiors])

    boundary = np.asarray(boundary, dtype=float)
    if boundary.ndim != 2 or boundary.shape[1] != 2 or len(boundary) < 3:
        raise CoordsError(f"Boundary must be an (n >= 3, 2) array, got {boundary.shape}")

    if not projection_info or not projection_info.get('proj4_string'):
        return boundary.copy()
    return _project_ring(boundary, projection_info)


def _project_ring(ring: np.ndarray, projection_info: Dict) -> np.ndarray:
    if projection_info.get('antimeridian_crossing'):
        ring = ring.copy()
        ring[:, 0] = np.mod(ring[:, 0], 360.0)
    projected = project_coordinates(ring, projection_info['proj4_string'])
    return projected * projection_info.get('rescale_factor', 1.0)
