import pytest
import numpy as np
import sys
from pathlib import Path
from shapely.geometry import Polygon

# Add the package to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent))

from lgcp_spde import SpatialLGCP, FitOptions, LGCPResult, PixelGrid
from lgcp_spde.datasets import rectangle
from lgcp_spde.exceptions import CoordsError, ModelError


@pytest.fixture(scope="module")
def events():
    """Events on [0, 10]^2, denser in the east."""
    rng = np.random.default_rng(11)
    west = rng.uniform([0.2, 0.2], [5.0, 9.8], size=(20, 2))
    east = rng.uniform([5.0, 0.2], [9.8, 9.8], size=(80, 2))
    return np.vstack([west, east])


@pytest.fixture(scope="module")
def lgcp(events):
    model = SpatialLGCP(
        events,
        boundary=rectangle(0, 0, 10, 10),
        covariates={"east": lambda s: s[:, 0] / 10.0},
        max_edge=(1.5, 3.0),
        offset=(0.0, 2.0),
        crs="projected",
        verbose=False,
    )
    model.fit(FitOptions(strategy="eb", verbose=False))
    return model


class TestSetup:

    def test_components(self, lgcp):
        assert lgcp.model.names == ["Intercept", "east", "field"]
        assert lgcp.field.d == 2
        assert lgcp.proj_info['proj4_string'] is None

    def test_integration_points_cover_domain(self, lgcp):
        assert lgcp.ips.total_measure == pytest.approx(100.0, rel=1e-9)

    def test_prior_configuration(self, lgcp):
        r0, p_r = lgcp.prior_params['prior_range']
        assert r0 > 0 and 0 < p_r < 1
        assert lgcp.field.prior_range == lgcp.prior_params['prior_range']

    def test_prior_overrides(self, events):
        model = SpatialLGCP(events, boundary=rectangle(0, 0, 10, 10), prior_range=(4.0, 0.1),
                            prior_sigma=(2.0, 0.05), max_edge=(2.0, 4.0), offset=(0.0, 2.0),
                            crs="projected", verbose=False)
        assert model.field.prior_range == (4.0, 0.1)
        assert model.field.prior_sigma == (2.0, 0.05)
        assert model.model.names == ["Intercept", "field"]

    def test_geographic_points_projected(self):
        rng = np.random.default_rng(5)
        lonlat = np.column_stack([rng.uniform(-122.5, -122.2, 30), rng.uniform(37.6, 37.9, 30)])
        model = SpatialLGCP(lonlat, verbose=False)
        assert model.proj_info['system'].startswith('UTM')
        assert model.points.min() > 1e5
        # Without a boundary the domain is the inner mesh region
        assert model.domain.equals(model.mesh.inner_boundary)

    def test_events_outside_boundary_dropped(self, events):
        outside = np.array([[12.0, 5.0], [-3.0, 4.0]])
        with pytest.warns(UserWarning, match="Dropping 2 of 102 events"):
            model = SpatialLGCP(np.vstack([events, outside]), boundary=rectangle(0, 0, 10, 10),
                                max_edge=(2.0, 4.0), offset=(0.0, 2.0), crs="projected",
                                verbose=False)
        assert len(model.points) == len(events)
        np.testing.assert_array_equal(model.kept_idx, np.arange(len(events)))

    def test_no_events_inside_boundary(self):
        with pytest.raises(CoordsError, match="No events"):
            SpatialLGCP(np.array([[20.0, 20.0], [21.0, 22.0], [23.0, 21.0]]),
                        boundary=rectangle(0, 0, 10, 10), crs="projected", verbose=False)


class TestFit:

    def test_result(self, lgcp):
        assert isinstance(lgcp.result, LGCPResult)
        assert set(lgcp.result.summary_fixed) == {"Intercept", "east"}
        assert "Range for field" in lgcp.result.summary_hyperpar

    def test_fixed_effect_intervals(self, lgcp):
        for s in lgcp.result.summary_fixed.values():
            assert s['q0.025'] < s['median'] < s['q0.975']
            assert s['sd'] > 0

    def test_prior_report(self, lgcp):
        report = lgcp.get_prior_report()
        assert "Prior mode: auto" in report
        assert "Fixed effects:" in report


class TestPredictionAndAbundance:

    def test_predict_surface(self, lgcp):
        surface = lgcp.predict_surface(nx=20, ny=15, n_samples=200, seed=1)
        assert isinstance(surface['grid'], PixelGrid)
        for key in ('mean', 'sd', 'q0.025', 'median', 'q0.975'):
            assert surface[key].shape == (15, 20)
        assert np.all(surface['mean'][surface['grid'].mask] > 0)

        east = surface['mean'][:, 15:]
        west = surface['mean'][:, :5]
        assert np.nanmean(east) > np.nanmean(west)

    def test_abundance(self, lgcp, events):
        abundance = lgcp.abundance(n_samples=500, seed=2)
        assert abundance['lambda']['mean'] == pytest.approx(len(events), rel=0.25)
        assert abundance['N']['q0.025'] < len(events) < abundance['N']['q0.975']

    def test_subregion_abundance(self, lgcp):
        west = Polygon([(0, 0), (5, 0), (5, 10), (0, 10)])
        whole = lgcp.abundance(n_samples=500, seed=3)['lambda']['mean']
        part = lgcp.abundance(subregion=west, n_samples=500, seed=3)['lambda']['mean']
        assert 0 < part < 0.5 * whole


class TestGeographicAbundance:

    @pytest.fixture(scope="class")
    def lonlat_model(self):
        rng = np.random.default_rng(8)
        lonlat = np.column_stack([rng.uniform(-122.5, -122.2, 40), rng.uniform(37.6, 37.9, 40)])
        model = SpatialLGCP(lonlat, verbose=False)
        model.fit(FitOptions(strategy="eb", verbose=False))
        return model

    def test_lonlat_subregion(self, lonlat_model):
        west = Polygon([(-122.5, 37.6), (-122.35, 37.6), (-122.35, 37.9), (-122.5, 37.9)])
        whole = lonlat_model.abundance(n_samples=300, seed=1)['lambda']['mean']
        part = lonlat_model.abundance(subregion=west, n_samples=300, seed=1)['lambda']['mean']
        assert 0 < part < whole

    def test_subregion_array(self, lonlat_model):
        west = np.array([(-122.5, 37.6), (-122.35, 37.6), (-122.35, 37.9), (-122.5, 37.9)])
        part = lonlat_model.abundance(subregion=west, n_samples=100, seed=2)['lambda']['mean']
        assert part > 0

    def test_subregion_off_mesh(self, lonlat_model):
        far = Polygon([(-121.0, 37.6), (-120.9, 37.6), (-120.9, 37.7), (-121.0, 37.7)])
        with pytest.raises(ModelError, match="zero total weight"):
            lonlat_model.abundance(subregion=far, n_samples=10, seed=0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
