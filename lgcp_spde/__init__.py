"""
LGCP_SPDE: Log-Gaussian Cox process models with SPDE fields and Laplace approximations
"""

__version__ = "0.1.0"

# Main simplified API
from .lgcp import SpatialLGCP

# Model building
from .components import (
    Intercept,
    Covariate,
    GridCovariate,
    SPDEField,
    LGCPModel,
)
from .inference import (
    FitOptions,
    LGCPResult,
    Strategy,
    fit_lgcp,
)
from .integration import (
    IntegrationPoints,
    integration_points,
    integration_points_1d,
    integration_points_2d,
)
from .predict import predict, pixels, interval_grid, PixelGrid
from .abundance import estimate_abundance

# PC Prior utilities
from .pc_priors import (
    PriorMode,
    compute_pc_prior_params,
    validate_pc_priors,
    sample_from_pc_prior,
)

# Core components (for advanced users)
from .coords import preprocess_coords
from .mesh import SPDEMesh, IntervalMesh
from .matrices import compute_fem_matrices
from .stan_data import prepare_stan_data, sparse_to_stan_csr, generate_lgcp_stan_code
from .datasets import load_points, rectangle, simulate_lgcp_1d, simulate_lgcp_2d

# Exceptions
from .exceptions import (
    LgcpSpdeError,
    CoordsError,
    MeshError,
    MatrixError,
    ModelError,
    ConvergenceError,
    ConditioningError,
)

__all__ = [
    # Main API
    'SpatialLGCP',

    # Model building
    'Intercept',
    'Covariate',
    'GridCovariate',
    'SPDEField',
    'LGCPModel',
    'FitOptions',
    'LGCPResult',
    'Strategy',
    'fit_lgcp',
    'IntegrationPoints',
    'integration_points',
    'integration_points_1d',
    'integration_points_2d',
    'predict',
    'pixels',
    'interval_grid',
    'PixelGrid',
    'estimate_abundance',

    # PC Priors
    'PriorMode',
    'compute_pc_prior_params',
    'validate_pc_priors',
    'sample_from_pc_prior',

    # Core components
    'preprocess_coords',
    'SPDEMesh',
    'IntervalMesh',
    'compute_fem_matrices',
    'prepare_stan_data',
    'sparse_to_stan_csr',
    'generate_lgcp_stan_code',
    'load_points',
    'rectangle',
    'simulate_lgcp_1d',
    'simulate_lgcp_2d',

    # Exceptions
    'LgcpSpdeError',
    'CoordsError',
    'MeshError',
    'MatrixError',
    'ModelError',
    'ConvergenceError',
    'ConditioningError',
]
