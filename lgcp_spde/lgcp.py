"""
Streamlined LGCP workflow for 2D point patterns.

SpatialLGCP chains the individual steps: coordinate preprocessing, mesh
generation, PC prior configuration from mesh diagnostics, integration
points, model assembly, fitting, prediction and abundance estimation.
"""

import warnings

import numpy as np
import shapely

from typing import Dict, Optional

from lgcp_spde.abundance import estimate_abundance
from lgcp_spde.components import Covariate, Intercept, LGCPModel, SPDEField
from lgcp_spde.coords import preprocess_coords, project_boundary
from lgcp_spde.exceptions import CoordsError
from lgcp_spde.inference import FitOptions, LGCPResult, fit_lgcp
from lgcp_spde.integration import integration_points_2d
from lgcp_spde.mesh import SPDEMesh, as_polygon
from lgcp_spde.pc_priors import PriorMode, compute_pc_prior_params, pc_range_quantile, validate_pc_priors
from lgcp_spde.predict import PixelGrid, pixels, predict


class SpatialLGCP:
    """
    LGCP for a 2D point pattern with an SPDE field and optional covariates.

    The log intensity is Intercept + sum of covariate effects + field.

    Examples
    --------
    >>> lgcp = SpatialLGCP(points, boundary=domain, covariates={"elev": elevation})
    >>> result = lgcp.fit()
    >>> print(lgcp.get_prior_report())
    >>> surface = lgcp.predict_surface(nx=100, ny=100)
    >>> abundance = lgcp.abundance()
    """

    def __init__(
        self,
        points: np.ndarray,
        boundary=None,
        covariates: Optional[Dict] = None,
        prior_mode: PriorMode = "auto",
        prior_range=None,
        prior_sigma=None,
        alpha: int = 2,
        max_edge=None,
        offset=None,
        cutoff: Optional[float] = None,
        crs: str = "auto",
        verbose: bool = True
    ) -> None:
        """
        :param points: Event coordinates (lon/lat or projected)
        :param boundary: Observation window in the same coordinates as points
        :param covariates: Mapping of name to callable or GridCovariate,
            evaluated in the working (projected) coordinates
        :param prior_mode: Automatic PC prior configuration, unless
            prior_range / prior_sigma are given
        :param prior_range: (r0, p) with P(range < r0) = p
        :param prior_sigma: (s0, p) with P(sigma > s0) = p
        :param alpha: SPDE order (1 or 2)
        :param max_edge: Mesh edge length, scalar or (inner, outer)
        :param offset: Mesh extension, scalar or (inner, outer)
        :param cutoff: Minimum distance between mesh vertices
        :param crs: Coordinate system of points, see preprocess_coords
        :param verbose: Print progress
        """
        self.verbose = verbose
        self.points, self.kept_idx, self.proj_info = preprocess_coords(points, crs=crs, verbose=verbose)
        self.boundary = None if boundary is None else project_boundary(boundary, self.proj_info)
        if self.boundary is not None:
            self._drop_outside_points()

        self.mesh = SPDEMesh(self.points, self.proj_info)
        self.mesh.create_mesh(boundary=self.boundary, max_edge=max_edge, offset=offset,
                              cutoff=cutoff, verbose=verbose)
        self.scale_diagnostics = self.mesh.compute_scale_diagnostics(verbose=verbose)

        self.prior_mode = prior_mode
        self.prior_params = compute_pc_prior_params(self.scale_diagnostics, prior_mode)
        if prior_range is not None:
            self.prior_params['prior_range'] = tuple(prior_range)
        if prior_sigma is not None:
            self.prior_params['prior_sigma'] = tuple(prior_sigma)
        validate_pc_priors(self.prior_params['prior_range'], self.mesh.diagnostics, verbose)

        self.field = SPDEField("field", self.mesh, alpha=alpha,
                               prior_range=self.prior_params['prior_range'],
                               prior_sigma=self.prior_params['prior_sigma'])
        self.prior_params['median_range'] = pc_range_quantile(0.5, self.field.lambda_rho)

        components = [Intercept()]
        for name, values in (covariates or {}).items():
            components.append(Covariate(name, values))
        components.append(self.field)
        self.model = LGCPModel(components)

        self.domain = self.boundary if self.boundary is not None else self.mesh.inner_boundary
        self.ips = integration_points_2d(self.mesh, self.domain)
        self.result: Optional[LGCPResult] = None

    def _drop_outside_points(self) -> None:
        # Events must lie inside the region the integration points cover
        polygon = as_polygon(self.boundary)
        inside = shapely.intersects_xy(polygon, self.points[:, 0], self.points[:, 1])
        n_outside = int(np.sum(~inside))
        if n_outside == 0:
            return
        if n_outside == len(self.points):
            raise CoordsError("No events fall inside the boundary")
        warnings.warn(f"Dropping {n_outside} of {len(self.points)} events outside the boundary")
        self.points = self.points[inside]
        self.kept_idx = self.kept_idx[inside]

    def fit(self, options: Optional[FitOptions] = None) -> LGCPResult:
        if options is None:
            options = FitOptions(verbose=self.verbose)
        self.result = fit_lgcp(self.model, self.points, self.ips, options)
        return self.result

    def _require_fit(self) -> LGCPResult:
        if self.result is None:
            self.fit()
        return self.result

    def predict_surface(self, nx: int = 100, ny: int = 100, what="intensity",
                        n_samples: int = 1000, seed: Optional[int] = None) -> Dict:
        """
        Posterior summaries on a pixel grid over the domain.

        :return: Dict with 'grid' (PixelGrid) and (ny, nx) images 'mean', 'sd',
            'q0.025', 'median', 'q0.975'
        """
        result = self._require_fit()
        grid: PixelGrid = pixels(self.mesh, self.domain, nx=nx, ny=ny)
        pred = predict(result, grid.locations, what=what, n_samples=n_samples,
                       seed=seed, keep_samples=False)
        surface = {key: grid.to_image(values) for key, values in pred.items()}
        surface['grid'] = grid
        return surface

    def abundance(self, subregion=None, n_samples: int = 1000, seed: Optional[int] = None) -> Dict:
        """
        Abundance in the domain, or in a sub-region.

        :param subregion: Polygon ((n, 2) array or shapely Polygon) in the same
            coordinates as the points passed to the constructor
        :raises ModelError: if the sub-region does not overlap the mesh
        """
        result = self._require_fit()
        ips = None
        if subregion is not None:
            ips = integration_points_2d(self.mesh, project_boundary(subregion, self.proj_info))
        return estimate_abundance(result, ips=ips, n_samples=n_samples, seed=seed)

    def get_prior_report(self) -> str:
        """Human-readable summary of the prior configuration and, if fitted, the posterior."""
        r0, p_r = self.prior_params['prior_range']
        s0, p_s = self.prior_params['prior_sigma']
        units = self.proj_info.get('coordinate_units', 'unknown')
        lines = [
            "=" * 60,
            "LGCP prior configuration",
            "=" * 60,
            f"Prior mode: {self.prior_mode}",
            f"Range: P(range < {r0:.4g}) = {p_r} ({units})",
            f"Sigma: P(sigma > {s0:.4g}) = {p_s}",
            f"Prior median range: {self.prior_params['median_range']:.4g}",
            f"Mesh: {self.mesh.n_vertices} vertices, "
            f"{len(self.ips.weights)} integration points, area {self.ips.total_measure:.4g}",
        ]
        if self.result is not None:
            lines += ["", self.result.summary()]
        return "\n".join(lines)
