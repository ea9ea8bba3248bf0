import pytest
import numpy as np
import sys
from pathlib import Path
from shapely.geometry import Polygon

# Add the package to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent))

from lgcp_spde.integration import (
    IntegrationPoints,
    integration_points,
    integration_points_1d,
    integration_points_2d,
)
from lgcp_spde.mesh import SPDEMesh, IntervalMesh
from lgcp_spde.exceptions import MeshError


@pytest.fixture(scope="module")
def square_mesh():
    rng = np.random.default_rng(0)
    points = rng.uniform(1, 9, size=(40, 2))
    domain = np.array([[0, 0], [10, 0], [10, 10], [0, 10]], dtype=float)
    mesh = SPDEMesh(points)
    mesh.create_mesh(boundary=domain, max_edge=(1.0, 3.0), offset=(0.0, 3.0), verbose=False)
    return mesh, domain


class TestIntegrationPoints:

    def test_properties(self):
        ips = IntegrationPoints(np.array([[0, 0], [1, 0]]), np.array([0.5, 1.5]))
        assert ips.n == 2
        assert ips.dim == 2
        assert ips.total_measure == pytest.approx(2.0)
        assert ips.vertex_index is None

        ips_1d = IntegrationPoints(np.array([0.0, 1.0, 2.0]), np.array([0.5, 1.0, 0.5]))
        assert ips_1d.dim == 1

    def test_length_mismatch(self):
        with pytest.raises(ValueError, match="locations but"):
            IntegrationPoints(np.zeros((3, 2)), np.ones(2))

    @pytest.mark.parametrize("weights", [[1.0, -0.1], [1.0, np.nan]])
    def test_invalid_weights(self, weights):
        with pytest.raises(ValueError, match="finite and non-negative"):
            IntegrationPoints(np.zeros((2, 2)), np.array(weights))


class TestIntegrationPoints2D:

    def test_domain_area(self, square_mesh):
        mesh, domain = square_mesh
        ips = integration_points_2d(mesh, domain)
        assert ips.total_measure == pytest.approx(100.0, rel=1e-9)
        assert np.all(ips.weights > 0)

    def test_locations_are_vertices(self, square_mesh):
        mesh, domain = square_mesh
        ips = integration_points_2d(mesh, domain)
        np.testing.assert_array_equal(ips.locations, mesh.vertices[ips.vertex_index])
        # Vertices outside the domain carry no weight
        assert ips.n < mesh.n_vertices

    def test_linear_function_integrated_exactly(self, square_mesh):
        mesh, domain = square_mesh
        ips = integration_points_2d(mesh, domain)
        # Integral of x over [0, 10]^2
        assert np.sum(ips.weights * ips.locations[:, 0]) == pytest.approx(500.0, rel=1e-9)

    def test_whole_mesh(self, square_mesh):
        mesh, _ = square_mesh
        ips = integration_points_2d(mesh)
        assert ips.total_measure == pytest.approx(np.sum(mesh.triangle_areas()))
        assert ips.n == mesh.n_vertices

    def test_subregion(self, square_mesh):
        mesh, _ = square_mesh
        west = Polygon([(0, 0), (4.3, 0), (4.3, 10), (0, 10)])
        ips = integration_points_2d(mesh, west, nsub=3)
        assert ips.total_measure == pytest.approx(43.0, rel=0.02)

    def test_curved_subregion(self, square_mesh):
        mesh, _ = square_mesh
        angles = np.linspace(0, 2 * np.pi, 200, endpoint=False)
        disc = Polygon(np.column_stack([5 + 3 * np.cos(angles), 5 + 3 * np.sin(angles)]))
        ips = integration_points_2d(mesh, disc, nsub=3)
        assert ips.total_measure == pytest.approx(disc.area, rel=0.02)

    def test_errors(self, square_mesh):
        mesh, domain = square_mesh
        with pytest.raises(ValueError, match="nsub"):
            integration_points_2d(mesh, domain, nsub=-1)
        with pytest.raises(MeshError, match="not yet generated"):
            integration_points_2d(SPDEMesh(mesh.coords), domain)


class TestIntegrationPoints1D:

    @pytest.fixture
    def mesh(self):
        return IntervalMesh(np.linspace(0, 10, 11))

    def test_whole_mesh(self, mesh):
        ips = integration_points_1d(mesh)
        assert ips.total_measure == pytest.approx(10.0)
        np.testing.assert_allclose(ips.weights, [0.5] + [1.0] * 9 + [0.5])
        assert ips.dim == 1

    def test_subinterval(self, mesh):
        ips = integration_points_1d(mesh, (2.5, 7.25))
        assert ips.total_measure == pytest.approx(4.75)
        # Linear functions are integrated exactly
        assert np.sum(ips.weights * ips.locations) == pytest.approx((7.25 ** 2 - 2.5 ** 2) / 2)

    def test_domain_beyond_mesh(self, mesh):
        ips = integration_points_1d(mesh, (-5.0, 5.0))
        assert ips.total_measure == pytest.approx(5.0)

    def test_invalid_domain(self, mesh):
        with pytest.raises(ValueError, match="lower < upper"):
            integration_points_1d(mesh, (3.0, 3.0))


class TestDispatch:

    def test_dimension_dispatch(self, square_mesh):
        mesh, domain = square_mesh
        assert integration_points(mesh, domain).dim == 2
        assert integration_points(IntervalMesh([0.0, 1.0, 2.0]), n_gauss=2).dim == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
