"""
FEM matrix computation for SPDE approximations.

This module computes the sparse matrices (C, G, A) of the finite element
discretisation of a Matern field on a triangulated (2D) or interval (1D)
mesh, the resulting GMRF precision matrix Q, and the sparse factorisation
used for log determinants, solves and sampling, following the SPDE
approach of Lindgren et al, 2011.
"""

import numpy as np
from scipy import sparse
from scipy.sparse.csgraph import reverse_cuthill_mckee
from scipy.sparse.linalg import splu, spsolve_triangular, eigsh
from scipy.spatial import KDTree
from scipy.special import gamma
from typing import Tuple, Optional
import warnings

from lgcp_spde.exceptions import MatrixError, ConditioningError


def compute_fem_matrices(
    vertices: np.ndarray,
    triangles: np.ndarray,
    obs_coords: Optional[np.ndarray] = None,
    verbose: bool = False
) -> Tuple[sparse.csr_matrix, sparse.csr_matrix, Optional[sparse.csr_matrix]]:
    """
    Compute FEM matrices for a triangulated mesh.

    Parameters
    ----------
    vertices : np.ndarray
        Mesh vertex coordinates of shape (n_mesh, 2)
    triangles : np.ndarray
        Triangle connectivity of shape (n_tri, 3)
    obs_coords : np.ndarray, optional
        Point coordinates of shape (n_obs, 2). If None, A is not computed
    verbose : bool
        Print computation progress

    Returns
    -------
    C : sparse.csr_matrix
        Mass matrix (n_mesh x n_mesh)
    G : sparse.csr_matrix
        Stiffness matrix (n_mesh x n_mesh)
    A : sparse.csr_matrix or None
        Projector matrix (n_obs x n_mesh)
    """
    vertices = np.asarray(vertices, dtype=float)
    triangles = np.asarray(triangles, dtype=np.int64)

    if verbose:
        print("Computing FEM matrices:")
        print(f"  Mesh: {len(vertices)} vertices, {len(triangles)} triangles")

    C = _compute_mass_matrix_vectorized(vertices, triangles)
    G = _compute_stiffness_matrix_vectorized(vertices, triangles)

    A = None
    if obs_coords is not None:
        A = compute_projector_matrix(vertices, triangles, obs_coords)

    if verbose:
        _print_matrix_diagnostics(C, G, A)

    return C, G, A


def _triangle_areas_vectorized(tri_coords: np.ndarray) -> np.ndarray:
    """
    Compute areas of all triangles.

    :param tri_coords: Triangle coordinates of shape (n_tri, 3, 2)
    :return: Triangle areas of shape (n_tri,)
    """
    v1, v2, v3 = tri_coords[:, 0], tri_coords[:, 1], tri_coords[:, 2]
    return 0.5 * np.abs(
        (v2[:, 0] - v1[:, 0]) * (v3[:, 1] - v1[:, 1]) -
        (v3[:, 0] - v1[:, 0]) * (v2[:, 1] - v1[:, 1])
    )


def _drop_degenerate(vertices: np.ndarray, triangles: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    areas = _triangle_areas_vectorized(vertices[triangles])
    degenerate_mask = areas <= 1e-12 * max(1.0, np.max(areas, initial=0.0))
    if np.any(degenerate_mask):
        warnings.warn(f"Found {np.sum(degenerate_mask)} degenerate triangles, skipping")
        return triangles[~degenerate_mask], areas[~degenerate_mask]
    return triangles, areas


def _assemble(triangles: np.ndarray, local: np.ndarray, n_vertices: int) -> sparse.csr_matrix:
    """Scatter per-triangle 3x3 blocks of shape (n_tri, 3, 3) into a global matrix."""
    rows = np.repeat(triangles, 3, axis=1).ravel()
    cols = np.tile(triangles, (1, 3)).ravel()
    M = sparse.coo_matrix((local.ravel(), (rows, cols)), shape=(n_vertices, n_vertices))
    M = M.tocsr()
    M.eliminate_zeros()
    return M


def _compute_mass_matrix_vectorized(vertices: np.ndarray, triangles: np.ndarray) -> sparse.csr_matrix:
    """
    Compute mass matrix C where C[i,j] = integral(psi_i(s) * psi_j(s) ds).

    For linear elements each triangle contributes area/6 on the diagonal and
    area/12 off the diagonal.
    """
    triangles, areas = _drop_degenerate(vertices, triangles)
    pattern = (np.ones((3, 3)) + np.eye(3)) / 12.0
    local = areas[:, None, None] * pattern[None, :, :]
    return _assemble(triangles, local, len(vertices))


def _compute_basis_gradients_vectorized(tri_coords: np.ndarray) -> np.ndarray:
    """
    Compute gradients of the three linear basis functions on every triangle.

    :param tri_coords: Triangle coordinates of shape (n_tri, 3, 2)
    :return: Basis function gradients of shape (n_tri, 3, 2)
    """
    v1, v2, v3 = tri_coords[:, 0], tri_coords[:, 1], tri_coords[:, 2]
    B = np.stack([v2 - v1, v3 - v1], axis=2)
    det_B = B[:, 0, 0] * B[:, 1, 1] - B[:, 0, 1] * B[:, 1, 0]

    if np.any(np.abs(det_B) < 1e-15):
        raise MatrixError(f"Found {np.sum(np.abs(det_B) < 1e-15)} degenerate triangles in gradient computation")

    B_inv = np.empty_like(B)
    B_inv[:, 0, 0] = B[:, 1, 1] / det_B
    B_inv[:, 0, 1] = -B[:, 0, 1] / det_B
    B_inv[:, 1, 0] = -B[:, 1, 0] / det_B
    B_inv[:, 1, 1] = B[:, 0, 0] / det_B

    gradients = np.empty((len(tri_coords), 3, 2))
    gradients[:, 0, :] = -(B_inv[:, 0, :] + B_inv[:, 1, :])
    gradients[:, 1, :] = B_inv[:, 0, :]
    gradients[:, 2, :] = B_inv[:, 1, :]
    return gradients


def _compute_stiffness_matrix_vectorized(vertices: np.ndarray, triangles: np.ndarray) -> sparse.csr_matrix:
    """
    Compute stiffness matrix G where G[i,j] = integral(grad(psi_i) . grad(psi_j) ds).
    """
    triangles, areas = _drop_degenerate(vertices, triangles)
    gradients = _compute_basis_gradients_vectorized(vertices[triangles])
    local = areas[:, None, None] * np.einsum('tik,tjk->tij', gradients, gradients)
    return _assemble(triangles, local, len(vertices))


def _barycentric(points: np.ndarray, tri_verts: np.ndarray) -> np.ndarray:
    """
    Barycentric coordinates of points[i] with respect to tri_verts[i].

    :param points: (n, 2)
    :param tri_verts: (n, 3, 2)
    :return: (n, 3); negative entries mean the point is outside
    """
    v1, v2, v3 = tri_verts[:, 0], tri_verts[:, 1], tri_verts[:, 2]

    def signed_area(p1, p2, p3):
        return 0.5 * ((p2[:, 0] - p1[:, 0]) * (p3[:, 1] - p1[:, 1]) -
                      (p3[:, 0] - p1[:, 0]) * (p2[:, 1] - p1[:, 1]))

    total = signed_area(v1, v2, v3)
    if np.any(np.abs(total) <= 1e-15):
        raise MatrixError("Degenerate triangles in barycentric coordinate computation")

    return np.column_stack([
        signed_area(points, v2, v3) / total,
        signed_area(v1, points, v3) / total,
        signed_area(v1, v2, points) / total,
    ])


def locate_points(
    vertices: np.ndarray,
    triangles: np.ndarray,
    points: np.ndarray,
    n_candidates: int = 10,
    tol: float = 1e-10
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Find the triangle containing each point.

    Candidates come from a KDTree on triangle centroids; points not resolved
    that way are checked against all triangles. Points outside the mesh are
    snapped to the triangle they are closest to being inside of.

    :return: Tuple of (triangle index, barycentric weights (n, 3), inside mask)
    """
    points = np.atleast_2d(np.asarray(points, dtype=float))
    n_points = len(points)
    n_tri = len(triangles)

    tri_idx = np.full(n_points, -1, dtype=np.int64)
    bary = np.zeros((n_points, 3))
    if n_points == 0:
        return tri_idx, bary, np.zeros(0, dtype=bool)

    centroids = vertices[triangles].mean(axis=1)
    k = min(n_candidates, n_tri)
    _, candidates = KDTree(centroids).query(points, k=k)
    candidates = candidates.reshape(n_points, k)

    best_score = np.full(n_points, -np.inf)
    for j in range(k):
        cand = candidates[:, j]
        b = _barycentric(points, vertices[triangles[cand]])
        score = b.min(axis=1)
        better = score > best_score
        tri_idx[better] = cand[better]
        bary[better] = b[better]
        best_score[better] = score[better]

    unresolved = np.where(best_score < -tol)[0]
    for i in unresolved:
        b = _barycentric(np.repeat(points[i:i + 1], n_tri, axis=0), vertices[triangles])
        score = b.min(axis=1)
        j = int(np.argmax(score))
        if score[j] > best_score[i]:
            tri_idx[i], bary[i], best_score[i] = j, b[j], score[j]

    inside = best_score >= -tol
    if np.any(~inside):
        clipped = np.clip(bary[~inside], 0.0, None)
        bary[~inside] = clipped / clipped.sum(axis=1, keepdims=True)
    bary[inside] = np.clip(bary[inside], 0.0, None)
    bary = bary / bary.sum(axis=1, keepdims=True)

    return tri_idx, bary, inside


def compute_projector_matrix(
    vertices: np.ndarray,
    triangles: np.ndarray,
    points: np.ndarray
) -> sparse.csr_matrix:
    """
    Compute projector matrix A where A[i,k] = psi_k(s_i).

    Each row holds the barycentric weights of the point in its triangle and
    sums to 1.
    """
    points = np.atleast_2d(np.asarray(points, dtype=float))
    n_obs = len(points)
    tri_idx, bary, inside = locate_points(vertices, triangles, points)

    n_outside = int(np.sum(~inside))
    if n_outside > 0.1 * n_obs:
        warnings.warn(f"{n_outside} points outside mesh; projected to nearest triangle")

    rows = np.repeat(np.arange(n_obs), 3)
    cols = triangles[tri_idx].ravel() if n_obs else np.zeros(0, dtype=np.int64)
    values = bary.ravel()
    keep = np.abs(values) > 1e-12

    return sparse.csr_matrix((values[keep], (rows[keep], cols[keep])),
                             shape=(n_obs, len(vertices)))


def compute_fem_matrices_1d(
    knots: np.ndarray,
    points: Optional[np.ndarray] = None
) -> Tuple[sparse.csr_matrix, sparse.csr_matrix, Optional[sparse.csr_matrix]]:
    """
    Compute FEM matrices for piecewise linear hat functions on sorted knots.

    :param knots: Strictly increasing knot locations
    :param points: Optional evaluation points for the projector A
    :return: Tuple of (C, G, A)
    """
    knots = np.asarray(knots, dtype=float)
    if knots.ndim != 1 or len(knots) < 2:
        raise MatrixError("1D mesh needs at least 2 knots")
    h = np.diff(knots)
    if np.any(h <= 0):
        raise MatrixError("1D mesh knots must be strictly increasing")

    n = len(knots)
    seg = np.arange(n - 1)
    rows = np.concatenate([seg, seg + 1, seg, seg + 1])
    cols = np.concatenate([seg, seg + 1, seg + 1, seg])

    c_vals = np.concatenate([h / 3, h / 3, h / 6, h / 6])
    g_vals = np.concatenate([1 / h, 1 / h, -1 / h, -1 / h])

    C = sparse.coo_matrix((c_vals, (rows, cols)), shape=(n, n)).tocsr()
    G = sparse.coo_matrix((g_vals, (rows, cols)), shape=(n, n)).tocsr()

    A = None
    if points is not None:
        A = compute_projector_matrix_1d(knots, points)
    return C, G, A


def locate_points_1d(knots: np.ndarray, points: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Find the knot interval containing each point.

    :return: Tuple of (interval index, weights (n, 2) on its left/right knots, inside mask)
    """
    points = np.asarray(points, dtype=float).ravel()
    inside = (points >= knots[0]) & (points <= knots[-1])
    clamped = np.clip(points, knots[0], knots[-1])
    idx = np.clip(np.searchsorted(knots, clamped, side='right') - 1, 0, len(knots) - 2)
    t = (clamped - knots[idx]) / (knots[idx + 1] - knots[idx])
    return idx, np.column_stack([1.0 - t, t]), inside


def compute_projector_matrix_1d(knots: np.ndarray, points: np.ndarray) -> sparse.csr_matrix:
    """Linear interpolation weights of points on the knot basis."""
    knots = np.asarray(knots, dtype=float)
    idx, weights, inside = locate_points_1d(knots, points)
    n_obs = len(idx)

    n_outside = int(np.sum(~inside))
    if n_outside > 0.1 * max(n_obs, 1):
        warnings.warn(f"{n_outside} points outside 1D mesh; clamped to the end knots")

    rows = np.repeat(np.arange(n_obs), 2)
    cols = np.column_stack([idx, idx + 1]).ravel()
    values = weights.ravel()
    keep = np.abs(values) > 1e-12
    return sparse.csr_matrix((values[keep], (rows[keep], cols[keep])),
                             shape=(n_obs, len(knots)))


def lumped_mass(C: sparse.spmatrix) -> np.ndarray:
    """Row sums of the mass matrix (the diagonal of the lumped mass C0)."""
    return np.asarray(C.sum(axis=1)).ravel()


def matern_nu(alpha: int, d: int) -> float:
    """Matern smoothness nu = alpha - d/2 for an SPDE of order alpha in d dimensions."""
    if alpha not in (1, 2):
        raise ValueError(f"Alpha={alpha} not supported. Use alpha=1 or alpha=2")
    nu = alpha - d / 2.0
    if nu <= 0:
        raise ValueError(f"alpha={alpha} gives nu={nu} in {d}D; need nu > 0")
    return nu


def kappa_tau_from_range_sigma(range_: float, sigma: float, alpha: int, d: int) -> Tuple[float, float]:
    """
    Map practical range and marginal sd to the SPDE parameters.

    kappa = sqrt(8 nu) / range
    tau^2 = Gamma(nu) / (Gamma(alpha) (4 pi)^(d/2) kappa^(2 nu) sigma^2)
    """
    nu = matern_nu(alpha, d)
    kappa = np.sqrt(8.0 * nu) / range_
    scaling = gamma(nu) / (gamma(alpha) * (4.0 * np.pi) ** (d / 2.0))
    tau = np.sqrt(scaling) / (sigma * kappa ** nu)
    return kappa, tau


def matern_precision(
    C0: np.ndarray,
    G: sparse.spmatrix,
    kappa: float,
    tau: float,
    alpha: int = 2
) -> sparse.csc_matrix:
    """
    Precision matrix of the SPDE field using the lumped mass matrix C0.

    alpha=1: Q = tau^2 (kappa^2 C0 + G)
    alpha=2: Q = tau^2 (kappa^4 C0 + 2 kappa^2 G + G C0^-1 G)
    """
    C0_mat = sparse.diags(C0)
    if alpha == 1:
        Q = tau ** 2 * (kappa ** 2 * C0_mat + G)
    elif alpha == 2:
        GCG = G @ sparse.diags(1.0 / C0) @ G
        Q = tau ** 2 * (kappa ** 4 * C0_mat + 2.0 * kappa ** 2 * G + GCG)
    else:
        raise ValueError(f"Alpha={alpha} not supported. Use alpha=1 or alpha=2")
    Q = sparse.csc_matrix(Q)
    return 0.5 * (Q + Q.T)


class SparseFactor:
    """
    LDL^T-type factorisation of a sparse symmetric positive definite matrix.

    The matrix is permuted with reverse Cuthill-McKee to limit fill-in and
    factorised by SuperLU without pivoting, so that U = D L^T. This gives log
    determinants, solves and samples from N(0, Q^-1).
    """

    def __init__(self, Q: sparse.spmatrix):
        Q = sparse.csc_matrix(Q)
        n = Q.shape[0]
        self.n = n
        self.perm = reverse_cuthill_mckee(Q.tocsr(), symmetric_mode=True)
        self.iperm = np.empty_like(self.perm)
        self.iperm[self.perm] = np.arange(n)
        Qp = Q[self.perm][:, self.perm].tocsc()

        try:
            self._lu = splu(Qp, permc_spec='NATURAL', diag_pivot_thresh=0.0,
                            options={'SymmetricMode': True})
        except RuntimeError as e:
            raise ConditioningError(f"Sparse factorisation failed: {e}")

        if not (np.array_equal(self._lu.perm_r, np.arange(n)) and
                np.array_equal(self._lu.perm_c, np.arange(n))):
            raise ConditioningError("Factorisation needed pivoting; matrix is not positive definite")

        self._U = self._lu.U.tocsr()
        self.d = self._U.diagonal()
        if np.any(~np.isfinite(self.d)) or np.any(self.d <= 0):
            raise ConditioningError("Precision matrix is not positive definite")

    def log_det(self) -> float:
        return float(np.sum(np.log(self.d)))

    def solve(self, b: np.ndarray) -> np.ndarray:
        b = np.asarray(b, dtype=float)
        x = self._lu.solve(b[self.perm])
        return x[self.iperm]

    def sample(self, n_samples: int, rng: np.random.Generator) -> np.ndarray:
        """Draws from N(0, Q^-1), shape (n_samples, n)."""
        z = rng.standard_normal((self.n, n_samples))
        v = spsolve_triangular(self._U, np.sqrt(self.d)[:, None] * z, lower=False)
        v = np.asarray(v).reshape(self.n, n_samples)
        return v[self.iperm].T

    def inverse_diagonal(self) -> np.ndarray:
        """Exact diagonal of Q^-1 through dense solves."""
        return np.diag(self.solve(np.eye(self.n))).copy()


def sparse_log_det(Q: sparse.spmatrix) -> float:
    """Log determinant of a sparse positive definite matrix."""
    return SparseFactor(Q).log_det()


def check_precision_conditioning(Q: sparse.spmatrix, verbose: bool = True) -> dict:
    """
    Estimate the condition number of a precision matrix and warn about issues.

    :param Q: Symmetric precision matrix
    :param verbose: Emit warnings
    :return: Dictionary with condition_number, lambda_max, lambda_min, well_conditioned
    """
    Q = sparse.csc_matrix(Q)
    try:
        lambda_max = eigsh(Q, k=1, which='LA', return_eigenvectors=False,
                           tol=1e-3, maxiter=1000)[0]
        lambda_min = eigsh(Q, k=1, sigma=0, which='LM', return_eigenvectors=False,
                           tol=1e-3, maxiter=1000)[0]
    except Exception as e:
        raise ConditioningError(f"Eigenvalue estimation failed: {e}")

    condition_number = lambda_max / lambda_min if lambda_min > 0 else np.inf

    if verbose:
        if condition_number > 1e10:
            warnings.warn(
                f"Precision matrix is poorly conditioned (condition number {condition_number:.2e}).\n"
                f"  The range is probably far below the mesh resolution or far above the mesh extent."
            )
        elif condition_number > 1e7:
            warnings.warn(f"Precision matrix conditioning is marginal ({condition_number:.2e}).")

    return {
        'condition_number': condition_number,
        'lambda_max': lambda_max,
        'lambda_min': lambda_min,
        'well_conditioned': bool(condition_number < 1e7),
    }


def _print_matrix_diagnostics(
    C: sparse.csr_matrix,
    G: sparse.csr_matrix,
    A: Optional[sparse.csr_matrix]
) -> None:
    """Print matrix diagnostics for user information."""
    print("\nMatrix Diagnostics:")
    for label, M in (('C', C), ('G', G), ('A', A)):
        if M is None:
            continue
        density = M.nnz / max(M.shape[0] * M.shape[1], 1) * 100
        print(f"  {label} matrix: {M.shape[0]}x{M.shape[1]}, {M.nnz:,} non-zeros ({density:.2f}% dense)")
    if A is not None and A.shape[0] > 0:
        print(f"    Average entries per point: {A.nnz / A.shape[0]:.1f}")
