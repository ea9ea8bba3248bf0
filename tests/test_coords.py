import pytest
import numpy as np
import sys
from pathlib import Path
from shapely.geometry import Polygon

# Add the package to path for testing
sys.path.insert(0, str(Path(__file__).parent.parent))

from lgcp_spde.coords import (
    is_geographic,
    wrap_longitudes,
    hull_diameter,
    geodesic_diameter_km,
    utm_zone,
    choose_projection,
    estimate_characteristic_scale,
    remove_duplicate_coords,
    preprocess_coords,
    project_boundary,
)
from lgcp_spde.exceptions import CoordsError


class TestGeographicDetection:
    """Lon/lat detection from value ranges"""

    def test_lon_lat_detected(self):
        coords = np.array([[-122.4, 37.7], [-122.3, 37.8], [-122.5, 37.6]])
        assert is_geographic(coords)

    def test_utm_not_geographic(self):
        coords = np.array([[552000, 4182000], [554000, 4184000]])
        assert not is_geographic(coords)

    def test_latitude_out_of_range(self):
        coords = np.array([[10, 95], [11, 20]])
        assert not is_geographic(coords)


class TestWrapLongitudes:

    def test_no_crossing(self):
        coords = np.array([[170, -10], [175, -12], [179, -15]], dtype=float)
        wrapped, crossed = wrap_longitudes(coords)
        assert not crossed
        assert wrapped is coords

    def test_crossing_wrapped(self):
        coords = np.array([[178, -17], [-179, -18], [179.5, -16]], dtype=float)
        wrapped, crossed = wrap_longitudes(coords)
        assert crossed
        np.testing.assert_allclose(wrapped[:, 0], [178, 181, 179.5])
        np.testing.assert_array_equal(wrapped[:, 1], coords[:, 1])
        # Input untouched
        assert coords[1, 0] == -179


class TestDiameters:

    def test_hull_diameter_square(self):
        coords = np.array([[0, 0], [3, 0], [3, 4], [0, 4], [1, 1]], dtype=float)
        assert hull_diameter(coords) == pytest.approx(5.0)

    def test_hull_diameter_degenerate(self):
        assert hull_diameter(np.array([[0.0, 0.0]])) == 0.0
        assert hull_diameter(np.array([[0.0, 0.0], [0.0, 2.0]])) == pytest.approx(2.0)
        collinear = np.array([[0, 0], [1, 1], [2, 2]], dtype=float)
        assert hull_diameter(collinear) == pytest.approx(np.sqrt(8))

    def test_geodesic_diameter(self):
        # One degree of latitude along a meridian is about 111 km
        coords = np.array([[10.0, 45.0], [10.0, 46.0]])
        assert geodesic_diameter_km(coords) == pytest.approx(111.1, rel=0.01)
        assert geodesic_diameter_km(coords[:1]) == 0.0


class TestProjectionChoice:

    def test_utm_zone(self):
        assert utm_zone(-122.3, 37.8) == (10, False)
        assert utm_zone(151.2, -33.9) == (56, True)
        # Wrapped longitudes map back to the same zone
        assert utm_zone(181.0, -17.0) == utm_zone(-179.0, -17.0)

    def test_single_region(self):
        coords = np.array([[-122.4, 37.7], [-122.2, 37.9]])
        projection = choose_projection(coords)
        assert projection['scale'] == 'single_region'
        assert '+proj=utm' in projection['proj4_string']
        assert '+zone=10' in projection['proj4_string']
        assert '+south' not in projection['proj4_string']
        assert projection['system'] == 'UTM Zone 10N'

    def test_southern_utm(self):
        coords = np.array([[151.2, -33.9], [151.3, -33.8]])
        projection = choose_projection(coords)
        assert '+south' in projection['proj4_string']
        assert projection['system'] == 'UTM Zone 56S'

    def test_multi_region(self):
        coords = np.array([[-120, 30], [-80, 48]], dtype=float)
        projection = choose_projection(coords)
        assert projection['scale'] == 'multi_region'
        assert '+proj=aea' in projection['proj4_string']
        # Standard parallels one sixth in from the latitude limits
        assert '+lat_1=33.00' in projection['proj4_string']
        assert '+lat_2=45.00' in projection['proj4_string']

    def test_global(self):
        coords = np.array([[0.0, -60.0], [0.0, 60.0], [90.0, 0.0]])
        projection = choose_projection(coords)
        assert projection['scale'] == 'global'
        assert '+proj=moll' in projection['proj4_string']
        assert projection['diameter_km'] > 11000


class TestCharacteristicScale:

    def test_regular_grid(self):
        x, y = np.meshgrid(np.arange(5.0), np.arange(5.0))
        coords = np.column_stack([x.ravel(), y.ravel()])
        scale = estimate_characteristic_scale(coords)

        assert scale['min_distance'] == pytest.approx(1.0)
        assert scale['nn_distance'] == pytest.approx(1.0)
        assert scale['characteristic_scale'] == pytest.approx(1.0)
        assert scale['extent'] == pytest.approx(4.0)
        assert scale['mesh_recommended_edge'] == pytest.approx(0.3)

    def test_duplicates_ignored(self):
        coords = np.array([[0, 0], [0, 0], [2, 0], [2, 0], [4, 0]], dtype=float)
        scale = estimate_characteristic_scale(coords)
        assert scale['min_distance'] == pytest.approx(2.0)
        assert scale['characteristic_scale'] == pytest.approx(2.0)

    def test_errors(self):
        with pytest.raises(CoordsError, match="at least 2"):
            estimate_characteristic_scale(np.array([[0.0, 0.0]]))
        with pytest.raises(CoordsError, match="coincide"):
            estimate_characteristic_scale(np.zeros((4, 2)))


class TestDuplicateRemoval:

    def test_exact_duplicates(self):
        coords = np.array([[0, 0], [1, 1], [0, 0], [2, 2]], dtype=float)
        unique_coords, indices, n_duplicates = remove_duplicate_coords(coords)

        np.testing.assert_array_equal(unique_coords, [[0, 0], [1, 1], [2, 2]])
        np.testing.assert_array_equal(indices, [0, 1, 3])
        assert n_duplicates == 1

    def test_tolerance(self):
        coords = np.array([[0, 0], [1, 1], [0.001, 0.001]], dtype=float)
        _, _, n_tight = remove_duplicate_coords(coords, tolerance=1e-6)
        _, _, n_loose = remove_duplicate_coords(coords, tolerance=0.01)
        assert n_tight == 0
        assert n_loose == 1


class TestPreprocessCoords:

    @pytest.fixture
    def projected_coords(self):
        return np.array([
            [552000, 4182000],
            [554000, 4184000],
            [552000, 4182000],
            [556000, 4186000],
            [558000, 4188000],
        ], dtype=float)

    @pytest.fixture
    def geographic_coords(self):
        return np.array([
            [-122.4, 37.7],
            [-122.3, 37.8],
            [-122.5, 37.6],
            [-122.2, 37.9],
        ])

    def test_projected_kept_as_is(self, projected_coords):
        coords, kept, info = preprocess_coords(projected_coords, verbose=False)

        np.testing.assert_array_equal(coords, projected_coords)
        np.testing.assert_array_equal(kept, np.arange(5))
        assert info['proj4_string'] is None
        assert info['scale'] == 'unknown'
        assert info['rescale_factor'] == 1.0

    def test_repeated_events_kept_by_default(self, projected_coords):
        coords, kept, _ = preprocess_coords(projected_coords, verbose=False)
        assert len(coords) == 5

    def test_remove_duplicates(self, projected_coords):
        coords, kept, _ = preprocess_coords(projected_coords, remove_duplicates=True, verbose=False)
        assert len(coords) == 4
        assert 2 not in kept

    def test_geographic_projected_to_utm(self, geographic_coords):
        coords, kept, info = preprocess_coords(geographic_coords, verbose=False)

        assert info['scale'] == 'single_region'
        assert info['system'] == 'UTM Zone 10N'
        assert info['coordinate_units'] == 'meters'
        # UTM eastings and northings for the Bay Area
        assert np.all((coords[:, 0] > 4e5) & (coords[:, 0] < 7e5))
        assert np.all((coords[:, 1] > 4.1e6) & (coords[:, 1] < 4.3e6))

    def test_large_region_rescaled_to_km(self):
        coords = np.array([[-120, 30], [-80, 48], [-100, 40], [-90, 35]], dtype=float)
        projected, _, info = preprocess_coords(coords, verbose=False)

        assert info['scale'] == 'multi_region'
        assert info['coordinate_units'] == 'kilometers'
        assert info['rescale_factor'] == 0.001
        assert np.ptp(projected[:, 0]) < 1e4

    def test_crs_override(self):
        coords = np.array([[0.0, 0.0], [10.0, 0.0], [5.0, 8.0]])
        projected, _, info = preprocess_coords(coords, crs="projected", verbose=False)
        np.testing.assert_array_equal(projected, coords)
        assert info['proj4_string'] is None

        with pytest.raises(CoordsError, match="Unknown crs"):
            preprocess_coords(coords, crs="mercator", verbose=False)

    @pytest.mark.parametrize("bad, message", [
        (np.array([1.0, 2.0, 3.0]), "Expected coords shape"),
        (np.array([[1.0, 2.0, 3.0]]), "Expected coords shape"),
        (np.zeros((0, 2)), "empty"),
        (np.array([[0.0, np.nan], [1.0, 1.0]]), "NaN or infinite"),
        (np.array([[0.0, np.inf], [1.0, 1.0]]), "NaN or infinite"),
    ])
    def test_invalid_input(self, bad, message):
        with pytest.raises(CoordsError, match=message):
            preprocess_coords(bad, verbose=False)

    def test_projection_info_keys(self, projected_coords):
        _, _, info = preprocess_coords(projected_coords, verbose=False)
        assert {'proj4_string', 'system', 'scale', 'projected_bbox', 'hull_diameter_km',
                'antimeridian_crossing', 'coordinate_units', 'rescale_factor'} <= set(info)
        x_min, y_min, x_max, y_max = info['projected_bbox']
        assert x_min <= x_max and y_min <= y_max


class TestProjectBoundary:

    def test_projected_boundary_unchanged(self):
        boundary = np.array([[0, 0], [10, 0], [10, 10], [0, 10]], dtype=float)
        np.testing.assert_array_equal(project_boundary(boundary, {'proj4_string': None}), boundary)

    def test_boundary_follows_points(self):
        points = np.array([[-122.4, 37.7], [-122.3, 37.8], [-122.5, 37.6]])
        projected, _, info = preprocess_coords(points, verbose=False)
        boundary = project_boundary(points, info)
        np.testing.assert_allclose(boundary, projected)

    def test_polygon_with_hole(self):
        points = np.array([[-122.4, 37.7], [-122.3, 37.8], [-122.5, 37.6]])
        _, _, info = preprocess_coords(points, verbose=False)
        outer = np.array([(-122.5, 37.6), (-122.2, 37.6), (-122.2, 37.9), (-122.5, 37.9)])
        hole = [(-122.4, 37.7), (-122.3, 37.7), (-122.3, 37.8), (-122.4, 37.8)]

        polygon = project_boundary(Polygon(outer, [hole]), info)
        assert isinstance(polygon, Polygon)
        assert len(polygon.interiors) == 1
        np.testing.assert_allclose(np.asarray(polygon.exterior.coords)[:-1],
                                   project_boundary(outer, info))
        assert not polygon.contains(polygon.interiors[0].centroid)

    def test_polygon_without_projection(self):
        square = Polygon([(0, 0), (10, 0), (10, 10), (0, 10)])
        assert project_boundary(square, {'proj4_string': None}) is square

    def test_invalid_boundary(self):
        with pytest.raises(CoordsError, match="Boundary"):
            project_boundary(np.array([[0, 0], [1, 1]]), None)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
