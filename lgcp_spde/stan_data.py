"""
Stan export of LGCP models.

The exported problem has the same discretisation as fit_lgcp: fixed
effects, one SPDE field on the mesh vertices, and the quadrature form of
the point-process likelihood. The field precision is assembled inside Stan
from C0 and G; its log determinant uses the generalised eigenvalues of
(G, C0), computed once here.
"""

import json

import numpy as np
from scipy import sparse
from scipy.linalg import eigh

from typing import Any, Dict

from lgcp_spde.components import LGCPModel, SPDEField
from lgcp_spde.exceptions import ModelError
from lgcp_spde.integration import IntegrationPoints


def sparse_to_stan_csr(matrix: sparse.spmatrix) -> Dict[str, Any]:
    """
    Convert a scipy sparse matrix to Stan's CSR representation.

    :param matrix: Scipy sparse matrix
    :returns: Dict with nnz, w (values), v (1-based column indices), u (1-based row starts)
    """
    matrix = sparse.csr_matrix(matrix)
    matrix.sort_indices()
    return {
        'nnz': int(matrix.nnz),
        'w': matrix.data.astype(float),
        'v': (matrix.indices + 1).astype(int),
        'u': (matrix.indptr + 1).astype(int),
    }


def _add_csr(data: Dict, prefix: str, matrix: sparse.spmatrix) -> None:
    csr = sparse_to_stan_csr(matrix)
    data[f'{prefix}_nnz'] = csr['nnz']
    data[f'{prefix}_w'] = csr['w']
    data[f'{prefix}_v'] = csr['v']
    data[f'{prefix}_u'] = csr['u']


def generalised_eigenvalues(C0: np.ndarray, G: sparse.spmatrix) -> np.ndarray:
    """Eigenvalues of C0^-1/2 G C0^-1/2, non-negative up to rounding."""
    s = 1.0 / np.sqrt(C0)
    K = (sparse.diags(s) @ G @ sparse.diags(s)).toarray()
    return np.clip(eigh(0.5 * (K + K.T), eigvals_only=True), 0.0, None)


def prepare_stan_data(
    model: LGCPModel,
    points: np.ndarray,
    ips: IntegrationPoints,
    verbose: bool = True
) -> Dict[str, Any]:
    """
    Stan data for a model with fixed effects and exactly one SPDE field.

    Parameters
    ----------
    model : LGCPModel
        Fixed-effect components plus one SPDEField
    points : np.ndarray
        Observed events
    ips : IntegrationPoints
        Integration points of the observation domain
    verbose : bool
        Print a summary

    Returns
    -------
    Dict with the data block fields of generate_lgcp_stan_code()
    """
    fields = model.fields
    if len(fields) != 1:
        raise ModelError(f"Stan export needs exactly one SPDE field, model has {len(fields)}")
    spde: SPDEField = fields[0]
    fixed = model.fixed_effects
    if len(fixed) + 1 != len(model.components):
        raise ModelError("Stan export supports fixed effects and one SPDE field only")

    points = np.asarray(points, dtype=float)
    if spde.d == 1:
        points = points.ravel()

    fixed_names = [c.name for c in fixed]
    X_obs = model.design(points, names=fixed_names)[:, _fixed_columns(model)].toarray()
    X_int = model.design(ips.locations, names=fixed_names)[:, _fixed_columns(model)].toarray()
    A_obs = spde.design(points)
    A_int = spde.design(ips.locations)

    data = {
        'N_obs': len(points),
        'N_int': ips.n,
        'P': len(fixed),
        'N_mesh': spde.n_latent,
        'X_obs': X_obs,
        'X_int': X_int,
        'weights': ips.weights,
        'C0': spde.C0,
        'G_eigen': generalised_eigenvalues(spde.C0, spde.G),
        'alpha': spde.alpha,
        'd': spde.d,
        'lambda_rho': spde.lambda_rho,
        'lambda_sigma': spde.lambda_sigma,
        'prec_fixed': np.array([c.prec for c in fixed], dtype=float),
    }
    _add_csr(data, 'A_obs', A_obs)
    _add_csr(data, 'A_int', A_int)
    _add_csr(data, 'G', spde.G)

    if verbose:
        print("Stan data:")
        print(f"  Points: {data['N_obs']}, integration points: {data['N_int']}")
        print(f"  Fixed effects: {fixed_names}")
        print(f"  Mesh vertices: {data['N_mesh']} (alpha={spde.alpha}, d={spde.d})")
        print(f"  Non-zeros: A_obs {data['A_obs_nnz']}, A_int {data['A_int_nnz']}, G {data['G_nnz']}")

    return data


def _fixed_columns(model: LGCPModel) -> np.ndarray:
    return np.array([model.latent_slices[c.name].start for c in model.fixed_effects], dtype=int)


def save_stan_data(data: Dict[str, Any], path: str) -> None:
    """Write Stan data as JSON, converting arrays to lists."""
    def convert(value):
        if isinstance(value, np.ndarray):
            return value.tolist()
        if isinstance(value, np.generic):
            return value.item()
        return value

    with open(path, 'w') as f:
        json.dump({k: convert(v) for k, v in data.items()}, f)


def generate_lgcp_stan_code() -> str:
    """
    Stan program matching prepare_stan_data.

    :returns: Stan model code
    """
    return """
functions {
  // Joint PC prior on (log range, log sigma), including Jacobians
  real pc_matern_lpdf(vector theta, real lambda_rho, real lambda_sigma, real d) {
    real half_d = d / 2;
    return log(half_d * lambda_rho) - half_d * theta[1]
           - lambda_rho * exp(-half_d * theta[1])
           + log(lambda_sigma) + theta[2] - lambda_sigma * exp(theta[2]);
  }
}
data {
  int<lower=0> N_obs;
  int<lower=1> N_int;
  int<lower=0> P;
  int<lower=1> N_mesh;
  matrix[N_obs, P] X_obs;
  matrix[N_int, P] X_int;

  int<lower=0> A_obs_nnz;
  vector[A_obs_nnz] A_obs_w;
  array[A_obs_nnz] int A_obs_v;
  array[N_obs + 1] int A_obs_u;

  int<lower=0> A_int_nnz;
  vector[A_int_nnz] A_int_w;
  array[A_int_nnz] int A_int_v;
  array[N_int + 1] int A_int_u;

  vector<lower=0>[N_int] weights;
  vector<lower=0>[N_mesh] C0;
  int<lower=0> G_nnz;
  vector[G_nnz] G_w;
  array[G_nnz] int G_v;
  array[N_mesh + 1] int G_u;
  vector<lower=0>[N_mesh] G_eigen;

  int<lower=1, upper=2> alpha;
  int<lower=1, upper=2> d;
  real<lower=0> lambda_rho;
  real<lower=0> lambda_sigma;
  vector<lower=0>[P] prec_fixed;
}
transformed data {
  real nu = alpha - d / 2.0;
  real log_det_C0 = sum(log(C0));
  real tau_scale = tgamma(nu) / (tgamma(alpha) * pow(4 * pi(), d / 2.0));
}
parameters {
  vector[P] beta;
  vector[N_mesh] u;
  vector[2] theta;  // log range, log sigma
}
transformed parameters {
  real practical_range = exp(theta[1]);
  real sigma = exp(theta[2]);
  real kappa = sqrt(8 * nu) / practical_range;
  real tau = sqrt(tau_scale) / (sigma * pow(kappa, nu));
}
model {
  vector[N_mesh] Gu = csr_matrix_times_vector(N_mesh, N_mesh, G_w, G_v, G_u, u);
  real kappa2 = square(kappa);
  real quad;
  if (alpha == 1) {
    quad = kappa2 * dot_product(C0 .* u, u) + dot_product(u, Gu);
  } else {
    quad = square(kappa2) * dot_product(C0 .* u, u) + 2 * kappa2 * dot_product(u, Gu)
           + dot_product(Gu ./ C0, Gu);
  }
  // log|Q| = N log tau^2 + log|C0| + alpha * sum(log(kappa^2 + eigenvalues))
  target += 0.5 * (2 * N_mesh * log(tau) + log_det_C0 + alpha * sum(log(kappa2 + G_eigen)))
            - 0.5 * square(tau) * quad;

  theta ~ pc_matern(lambda_rho, lambda_sigma, d);
  beta ~ normal(0, inv_sqrt(prec_fixed));

  // Point-process likelihood with quadrature for the intensity integral
  if (N_obs > 0) {
    target += sum(X_obs * beta + csr_matrix_times_vector(N_obs, N_mesh, A_obs_w, A_obs_v, A_obs_u, u));
  }
  target += -dot_product(weights,
                         exp(X_int * beta + csr_matrix_times_vector(N_int, N_mesh, A_int_w, A_int_v, A_int_u, u)));
}
generated quantities {
  real abundance = dot_product(weights,
      exp(X_int * beta + csr_matrix_times_vector(N_int, N_mesh, A_int_w, A_int_v, A_int_u, u)));
}
"""
