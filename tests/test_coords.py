import pytest
import numpy as np

from geo_splm.coords import (
    is_geographic,
    crosses_antimeridian,
    unwrap_antimeridian,
    approximate_extent_km,
    determine_utm_zone,
    create_projection_string,
    find_duplicate_coords,
    preprocess_coords,
    apply_projection
)
from geo_splm.exceptions import CoordsError


class TestGeographicDetection:
    """Test geographic coordinate detection"""

    def test_clearly_geographic_coords(self):
        coords = np.array([
            [-122.4, 37.8],  # San Francisco
            [-74.0, 40.7],   # New York
            [2.3, 48.9]      # Paris
        ])
        assert is_geographic(coords)

    def test_projected_coords(self):
        coords = np.array([
            [552000, 4182000],
            [654000, 4283000],
            [456000, 4184000]
        ])
        assert not is_geographic(coords)

    def test_three_dimensional_coords(self):
        assert not is_geographic(np.zeros((4, 3)))

    def test_coordinates_outside_bounds(self):
        coords = np.array([
            [200, 10],
            [0, -100]
        ])
        assert not is_geographic(coords)


class TestAntimeridianHandling:
    """Test antimeridian crossing detection and handling"""

    def test_no_crossing(self):
        coords = np.array([[-122.4, 37.8], [-121.9, 37.3]])
        assert not crosses_antimeridian(coords)

    def test_crossing_detected(self):
        coords = np.array([[179.5, -17.0], [-179.5, -17.5]])
        assert crosses_antimeridian(coords)

    def test_unwrapping(self):
        coords = np.array([[179.5, -17.0], [-179.5, -17.5]])
        unwrapped = unwrap_antimeridian(coords)
        np.testing.assert_allclose(unwrapped[:, 0], [179.5, 180.5])
        np.testing.assert_array_equal(unwrapped[:, 1], coords[:, 1])
        # input untouched
        assert coords[1, 0] == -179.5


class TestProjectionSelection:
    """Test UTM zone and projection string selection"""

    def test_extent_estimate(self):
        coords = np.array([[0.0, 0.0], [0.0, 1.0]])
        assert approximate_extent_km(coords) == pytest.approx(110.54)

    def test_utm_zone_san_francisco(self):
        coords = np.array([[-122.4, 37.8], [-122.3, 37.7]])
        assert determine_utm_zone(coords) == (10, 'north')

    def test_utm_zone_southern_hemisphere(self):
        coords = np.array([[151.2, -33.9], [151.3, -33.8]])
        assert determine_utm_zone(coords) == (56, 'south')

    def test_utm_zone_clipped(self):
        coords = np.array([[180.0, 10.0], [180.0, 10.1]])
        assert determine_utm_zone(coords)[0] == 60

    def test_regional_extent_uses_utm(self):
        coords = np.array([[-122.4, 37.8], [-122.0, 37.5]])
        proj4_string, system = create_projection_string(coords)
        assert "+proj=utm" in proj4_string
        assert "+zone=10" in proj4_string
        assert "+south" not in proj4_string
        assert system == "UTM Zone 10N"

    def test_southern_utm_string(self):
        coords = np.array([[151.2, -33.9], [151.3, -33.8]])
        proj4_string, _ = create_projection_string(coords)
        assert "+south" in proj4_string

    def test_continental_extent_uses_albers(self):
        coords = np.array([[-122.4, 37.8], [-74.0, 40.7], [-87.6, 41.9]])
        proj4_string, system = create_projection_string(coords)
        assert "+proj=aea" in proj4_string
        assert system == "Albers Equal-Area Conic"


class TestDuplicateDetection:
    """Test duplicate location detection"""

    def test_no_duplicates(self):
        coords = np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]])
        assert find_duplicate_coords(coords) == []

    def test_exact_duplicates(self):
        coords = np.array([[0.0, 0.0], [1.0, 1.0], [0.0, 0.0], [1.0, 1.0]])
        assert find_duplicate_coords(coords) == [(0, 2), (1, 3)]

    def test_tolerance(self):
        coords = np.array([[0.0, 0.0], [0.0, 1e-4]])
        assert find_duplicate_coords(coords) == []
        assert find_duplicate_coords(coords, tolerance=1e-3) == [(0, 1)]

    def test_single_point(self):
        assert find_duplicate_coords(np.array([[1.0, 2.0]])) == []


class TestPreprocessing:
    """Test the full preprocessing pipeline"""

    def test_user_coordinates_pass_through(self):
        coords = np.random.default_rng(0).uniform(0, 10, size=(15, 3))
        processed, info = preprocess_coords(coords, verbose=False)
        np.testing.assert_array_equal(processed, coords)
        assert processed is not coords
        assert not info['projected']
        assert info['proj4_string'] is None
        assert info['coordinate_units'] == 'input'
        assert info['n_duplicates'] == 0

    def test_geographic_projection_to_km(self):
        coords = np.array([[-122.4, 37.8], [-122.4, 37.9], [-122.3, 37.8]])
        processed, info = preprocess_coords(coords, geographic=True, verbose=False)
        assert info['projected']
        assert info['coordinate_units'] == 'km'
        assert info['system'] == "UTM Zone 10N"
        # 0.1 degree of latitude is about 11.1 km
        assert np.linalg.norm(processed[1] - processed[0]) == pytest.approx(11.1, rel=0.01)

    def test_antimeridian_distances(self):
        coords = np.array([[179.9, 0.0], [-179.9, 0.0]])
        processed, info = preprocess_coords(coords, geographic=True, verbose=False)
        assert info['antimeridian_crossing']
        assert np.linalg.norm(processed[1] - processed[0]) == pytest.approx(22.3, rel=0.01)

    def test_duplicates_reported_not_removed(self):
        coords = np.array([[0.0, 0.0], [2.0, 3.0], [0.0, 0.0]])
        processed, info = preprocess_coords(coords, verbose=False)
        assert processed.shape == (3, 2)
        assert info['n_duplicates'] == 1
        assert info['duplicate_pairs'] == [(0, 2)]

    def test_geographic_out_of_range(self):
        coords = np.array([[552000.0, 4182000.0], [654000.0, 4283000.0]])
        with pytest.raises(CoordsError, match="lon/lat"):
            preprocess_coords(coords, geographic=True, verbose=False)

    def test_nan_coordinates(self):
        coords = np.array([[0.0, 0.0], [np.nan, 1.0]])
        with pytest.raises(CoordsError):
            preprocess_coords(coords, verbose=False)

    def test_lonlat_hint(self, capsys):
        coords = np.array([[-122.4, 37.8], [-122.3, 37.7]])
        preprocess_coords(coords, verbose=True)
        assert "geographic=True" in capsys.readouterr().out

    def test_projection_info_structure(self):
        coords = np.array([[-122.4, 37.8], [-122.3, 37.7]])
        _, info = preprocess_coords(coords, geographic=True, verbose=False)
        for key in ('projected', 'proj4_string', 'system', 'coordinate_units',
                    'antimeridian_crossing', 'bbox', 'n_duplicates', 'duplicate_pairs'):
            assert key in info
        low, high = info['bbox']
        assert np.all(low <= high)


class TestApplyProjection:
    """Test projection of new locations"""

    def test_matches_preprocessing(self):
        coords = np.array([[-122.4, 37.8], [-122.4, 37.9], [-122.3, 37.8]])
        processed, info = preprocess_coords(coords, geographic=True, verbose=False)
        np.testing.assert_allclose(apply_projection(coords, info), processed)

    def test_antimeridian_new_points(self):
        coords = np.array([[179.9, 0.0], [-179.9, 0.0]])
        processed, info = preprocess_coords(coords, geographic=True, verbose=False)
        new = apply_projection(np.array([[-179.9, 0.0]]), info)
        np.testing.assert_allclose(new[0], processed[1])

    def test_passthrough(self):
        coords = np.array([[1.0, 2.0], [3.0, 4.0]])
        _, info = preprocess_coords(coords, verbose=False)
        np.testing.assert_array_equal(apply_projection([[5.0, 6.0]], info), [[5.0, 6.0]])

    def test_projected_model_rejects_non_lonlat(self):
        coords = np.array([[-122.4, 37.8], [-122.3, 37.7]])
        _, info = preprocess_coords(coords, geographic=True, verbose=False)
        with pytest.raises(CoordsError):
            apply_projection(np.array([[500.0, 4000.0]]), info)
