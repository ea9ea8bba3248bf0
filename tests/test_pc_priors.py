"""
Unit tests for lgcp_spde.pc_priors module.

Tests PC (Penalized Complexity) prior rates, the joint density on the
internal (log range, log sigma) scale, automatic configuration,
validation and sampling.
"""

import pytest
import numpy as np
import sys
from pathlib import Path
from scipy.integrate import quad

# Add the package to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent))

from lgcp_spde.pc_priors import (
    pc_prior_range,
    pc_prior_sigma,
    pc_matern_log_density,
    pc_range_quantile,
    pc_sigma_quantile,
    compute_pc_prior_params,
    validate_pc_priors,
    sample_from_pc_prior,
)


@pytest.fixture
def mock_scale_diagnostics():
    """Scale diagnostics as returned by SPDEMesh.compute_scale_diagnostics()."""
    return {
        'spatial_scale': {
            'characteristic_scale': 2.0,
            'median_distance': 30.0,
        },
        'suggestions': {
            'spatial_range_suggestion': 15.0,
            'mesh_extent': 100.0,
        },
    }


class TestPCPriorRange:
    """Test PC prior rate for the practical range."""

    @pytest.mark.parametrize("d", [1, 2])
    def test_rate(self, d):
        result = pc_prior_range(10.0, 0.5, d)
        assert result['lambda_rho'] == pytest.approx(-np.log(0.5) * 10.0 ** (d / 2))
        assert result['rho_0'] == 10.0
        assert result['d'] == d

    @pytest.mark.parametrize("d", [1, 2])
    def test_quantile_matches_statement(self, d):
        """P(range < rho_0) = alpha_rho."""
        lam = pc_prior_range(4.0, 0.1, d)['lambda_rho']
        assert pc_range_quantile(0.1, lam, d) == pytest.approx(4.0)

    @pytest.mark.parametrize("args, message", [
        ((0.0, 0.5), "rho_0 must be positive"),
        ((1.0, 0.0), "alpha_rho"),
        ((1.0, 1.0), "alpha_rho"),
        ((1.0, 0.5, 3), "Unsupported dimension"),
    ])
    def test_invalid(self, args, message):
        with pytest.raises(ValueError, match=message):
            pc_prior_range(*args)


class TestPCPriorSigma:
    """Test PC prior rate for the marginal standard deviation."""

    def test_rate(self):
        result = pc_prior_sigma(1.5, 0.05)
        assert result['lambda_sigma'] == pytest.approx(-np.log(0.05) / 1.5)

    def test_quantile_matches_statement(self):
        """P(sigma > sigma_0) = alpha_sigma."""
        lam = pc_prior_sigma(2.0, 0.01)['lambda_sigma']
        assert pc_sigma_quantile(0.99, lam) == pytest.approx(2.0)

    def test_invalid(self):
        with pytest.raises(ValueError, match="sigma_0 must be positive"):
            pc_prior_sigma(-1.0, 0.05)
        with pytest.raises(ValueError, match="alpha_sigma"):
            pc_prior_sigma(1.0, 1.5)


class TestJointDensity:
    """Test the joint density on theta = (log range, log sigma)."""

    @pytest.mark.parametrize("d", [1, 2])
    def test_integrates_to_one(self, d):
        lam_r = pc_prior_range(1.0, 0.5, d)['lambda_rho']
        lam_s = pc_prior_sigma(1.0, 0.05)['lambda_sigma']

        def density(t0, t1):
            return np.exp(pc_matern_log_density(np.array([t0, t1]), lam_r, lam_s, d))

        # The density factorises, so two 1D integrals suffice
        i_range, _ = quad(lambda t: density(t, 0.0), -15, 40, limit=200)
        i_sigma, _ = quad(lambda t: density(0.0, t), -30, 5, limit=200)
        total = i_range * i_sigma / density(0.0, 0.0)
        assert total == pytest.approx(1.0, rel=1e-4)

    def test_penalises_short_ranges(self):
        lam_r = pc_prior_range(5.0, 0.5)['lambda_rho']
        lam_s = pc_prior_sigma(1.0, 0.05)['lambda_sigma']
        short = pc_matern_log_density(np.array([np.log(0.05), 0.0]), lam_r, lam_s)
        typical = pc_matern_log_density(np.array([np.log(5.0), 0.0]), lam_r, lam_s)
        assert short < typical - 10


class TestComputePCPriorParams:
    """Test automatic prior configuration."""

    def test_auto(self, mock_scale_diagnostics):
        params = compute_pc_prior_params(mock_scale_diagnostics, "auto")

        assert params['prior_range'] == (15.0, 0.5)
        assert params['prior_sigma'] == (1.0, 0.05)
        # With alpha_rho = 0.5 the prior median is rho_0
        assert params['median_range'] == pytest.approx(15.0)
        assert params['lambda_sigma'] == pytest.approx(-np.log(0.05))

    @pytest.mark.parametrize("mode, rho_0, sigma_0", [
        ("tight", 4.0, 0.5),
        ("medium", 15.0, 1.0),
        ("wide", 10.0, 2.0),
    ])
    def test_modes(self, mock_scale_diagnostics, mode, rho_0, sigma_0):
        params = compute_pc_prior_params(mock_scale_diagnostics, mode)
        assert params['prior_range'][0] == pytest.approx(rho_0)
        assert params['prior_sigma'][0] == pytest.approx(sigma_0)

    def test_unknown_mode(self, mock_scale_diagnostics):
        with pytest.raises(ValueError, match="Unknown prior_mode"):
            compute_pc_prior_params(mock_scale_diagnostics, "loose")


class TestValidatePCPriors:
    """Test prior range validation against mesh resolution."""

    @pytest.fixture
    def mesh_diagnostics(self):
        return {'edge_lengths': {'min': 1.0, 'max': 2.0}}

    def test_all_good(self, mesh_diagnostics):
        result = validate_pc_priors((10.0, 0.5), mesh_diagnostics)
        assert result == {'range_compatible': True, 'mesh_adequate': True}

    def test_range_too_small(self, mesh_diagnostics):
        with pytest.warns(UserWarning, match="too small"):
            result = validate_pc_priors((2.0, 0.5), mesh_diagnostics)
        assert not result['range_compatible']

    def test_range_too_large(self, mesh_diagnostics):
        with pytest.warns(UserWarning, match="much larger"):
            result = validate_pc_priors((500.0, 0.5), mesh_diagnostics)
        assert not result['mesh_adequate']


class TestSampleFromPCPrior:
    """Test sampling by inversion."""

    def test_tail_probabilities(self):
        lam_r = pc_prior_range(3.0, 0.2)['lambda_rho']
        lam_s = pc_prior_sigma(1.0, 0.05)['lambda_sigma']
        samples = sample_from_pc_prior(lam_r, lam_s, n_samples=20000, seed=1)

        assert samples['range'].shape == (20000,)
        assert np.all(samples['range'] > 0) and np.all(samples['sigma'] > 0)
        assert np.mean(samples['range'] < 3.0) == pytest.approx(0.2, abs=0.015)
        assert np.mean(samples['sigma'] > 1.0) == pytest.approx(0.05, abs=0.01)

    def test_reproducibility(self):
        a = sample_from_pc_prior(1.0, 1.0, n_samples=10, seed=42)
        b = sample_from_pc_prior(1.0, 1.0, n_samples=10, seed=42)
        np.testing.assert_array_equal(a['range'], b['range'])
        np.testing.assert_array_equal(a['sigma'], b['sigma'])


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
