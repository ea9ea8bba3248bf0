import json
import pytest
import numpy as np
import sys
from pathlib import Path
from scipy import sparse

# Add the package to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent))

from lgcp_spde.components import Covariate, Intercept, LGCPModel, SPDEField
from lgcp_spde.integration import integration_points_1d
from lgcp_spde.matrices import SparseFactor, kappa_tau_from_range_sigma
from lgcp_spde.mesh import IntervalMesh
from lgcp_spde.stan_data import (
    generalised_eigenvalues,
    generate_lgcp_stan_code,
    prepare_stan_data,
    save_stan_data,
    sparse_to_stan_csr,
)
from lgcp_spde.exceptions import ModelError


@pytest.fixture
def mesh():
    return IntervalMesh.from_domain((0, 10), max_edge=1.0, extension=2.0)


@pytest.fixture
def points():
    return np.array([0.5, 1.2, 3.3, 3.4, 7.9])


@pytest.fixture
def model(mesh):
    return LGCPModel([
        Intercept(),
        Covariate("trend", lambda s: np.asarray(s) / 10.0),
        SPDEField("field", mesh, prior_range=(2.0, 0.5), prior_sigma=(1.0, 0.1)),
    ])


class TestSparseToStanCSR:

    def test_one_based_indices(self):
        M = sparse.csr_matrix(np.array([[1.0, 0.0, 2.0], [0.0, 0.0, 0.0], [0.0, 3.0, 0.0]]))
        csr = sparse_to_stan_csr(M)
        assert csr['nnz'] == 3
        np.testing.assert_array_equal(csr['w'], [1.0, 2.0, 3.0])
        np.testing.assert_array_equal(csr['v'], [1, 3, 2])
        np.testing.assert_array_equal(csr['u'], [1, 3, 3, 4])

    def test_accepts_other_formats(self):
        M = sparse.coo_matrix(([5.0], ([1], [0])), shape=(2, 2))
        csr = sparse_to_stan_csr(M)
        np.testing.assert_array_equal(csr['u'], [1, 1, 2])
        np.testing.assert_array_equal(csr['v'], [1])


class TestGeneralisedEigenvalues:

    @pytest.mark.parametrize("alpha", [1, 2])
    def test_log_det_identity(self, mesh, alpha):
        field = SPDEField("field", mesh, alpha=alpha)
        eig = generalised_eigenvalues(field.C0, field.G)
        assert eig.shape == (mesh.n_vertices,)
        assert np.all(eig >= 0)

        theta = np.log([3.0, 0.7])
        kappa, tau = kappa_tau_from_range_sigma(3.0, 0.7, alpha, d=1)
        expected = SparseFactor(field.precision(theta)).log_det()
        log_det = (mesh.n_vertices * np.log(tau ** 2) + np.sum(np.log(field.C0))
                   + alpha * np.sum(np.log(kappa ** 2 + eig)))
        assert log_det == pytest.approx(expected, rel=1e-8)


class TestPrepareStanData:

    def test_dimensions(self, model, points, mesh):
        ips = integration_points_1d(mesh, (0, 10))
        data = prepare_stan_data(model, points, ips, verbose=False)

        assert data['N_obs'] == 5
        assert data['N_int'] == ips.n
        assert data['P'] == 2
        assert data['N_mesh'] == mesh.n_vertices
        assert data['X_obs'].shape == (5, 2)
        assert data['X_int'].shape == (ips.n, 2)
        np.testing.assert_allclose(data['X_obs'][:, 0], 1.0)
        np.testing.assert_allclose(data['X_obs'][:, 1], points / 10.0)
        assert data['alpha'] == 2 and data['d'] == 1
        np.testing.assert_allclose(data['prec_fixed'], [0.001, 0.001])

    def test_projectors(self, model, points, mesh):
        ips = integration_points_1d(mesh, (0, 10))
        data = prepare_stan_data(model, points, ips, verbose=False)

        assert len(data['A_obs_u']) == data['N_obs'] + 1
        assert data['A_obs_u'][0] == 1
        assert data['A_obs_u'][-1] == data['A_obs_nnz'] + 1
        assert len(data['A_int_u']) == data['N_int'] + 1
        assert len(data['G_u']) == data['N_mesh'] + 1
        assert data['A_obs_v'].min() >= 1 and data['A_obs_v'].max() <= data['N_mesh']

        # Rebuild A_obs from the CSR arrays
        A = sparse.csr_matrix((data['A_obs_w'], data['A_obs_v'] - 1, data['A_obs_u'] - 1),
                              shape=(data['N_obs'], data['N_mesh']))
        np.testing.assert_allclose(A @ mesh.knots, points)

    def test_prior_rates(self, model, points, mesh):
        data = prepare_stan_data(model, points, integration_points_1d(mesh), verbose=False)
        field = model["field"]
        assert data['lambda_rho'] == pytest.approx(field.lambda_rho)
        assert data['lambda_sigma'] == pytest.approx(-np.log(0.1))

    def test_requires_one_field(self, mesh, points):
        ips = integration_points_1d(mesh)
        with pytest.raises(ModelError, match="exactly one SPDE field"):
            prepare_stan_data(LGCPModel([Intercept()]), points, ips, verbose=False)

        two = LGCPModel([Intercept(), SPDEField("a", mesh), SPDEField("b", mesh)])
        with pytest.raises(ModelError, match="exactly one SPDE field"):
            prepare_stan_data(two, points, ips, verbose=False)

    def test_verbose_output(self, model, points, mesh, capsys):
        prepare_stan_data(model, points, integration_points_1d(mesh), verbose=True)
        out = capsys.readouterr().out
        assert "Stan data:" in out
        assert "['Intercept', 'trend']" in out


class TestSaveStanData:

    def test_json_round_trip(self, model, points, mesh, tmp_path):
        data = prepare_stan_data(model, points, integration_points_1d(mesh), verbose=False)
        path = tmp_path / "lgcp.json"
        save_stan_data(data, str(path))

        with open(path) as f:
            loaded = json.load(f)
        assert set(loaded) == set(data)
        assert loaded['N_obs'] == 5
        assert isinstance(loaded['A_obs_v'][0], int)
        assert len(loaded['X_obs']) == 5 and len(loaded['X_obs'][0]) == 2


class TestStanCode:

    def test_blocks(self):
        code = generate_lgcp_stan_code()
        for block in ("functions {", "data {", "transformed data {", "parameters {",
                      "transformed parameters {", "model {", "generated quantities {"):
            assert block in code
        assert "pc_matern_lpdf" in code
        assert "csr_matrix_times_vector" in code

    def test_data_names_declared(self, model, points, mesh):
        code = generate_lgcp_stan_code()
        data = prepare_stan_data(model, points, integration_points_1d(mesh), verbose=False)
        for name in data:
            assert f" {name};" in code

    def test_ascii_only(self):
        generate_lgcp_stan_code().encode('ascii')


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
