import numpy as np
import pyproj

from scipy.spatial import cKDTree

from geo_splm.distances import as_coordinate_array
from geo_splm.exceptions import CoordsError
from typing import Tuple, Dict, List

REGIONAL_EXTENT_KM = 1000.0


def is_geographic(coords: np.ndarray) -> bool:
    """
    Check whether coordinates fall inside the lon/lat value range.

    :param coords: Coordinate array of shape (n_obs, 2)
    :return: True if every point is a valid (lon, lat) pair
    """
    coords = np.asarray(coords, dtype=float)
    if coords.ndim != 2 or coords.shape[1] != 2:
        return False
    lon, lat = coords[:, 0], coords[:, 1]
    return bool(np.all((-180 <= lon) & (lon <= 180)) and np.all((-90 <= lat) & (lat <= 90)))


def crosses_antimeridian(coords: np.ndarray) -> bool:
    """True when the longitude span exceeds 180 degrees."""
    return float(np.ptp(coords[:, 0])) > 180


def unwrap_antimeridian(coords: np.ndarray) -> np.ndarray:
    """Shift negative longitudes to the 0-360 range."""
    unwrapped = coords.copy()
    unwrapped[:, 0] = np.where(coords[:, 0] < 0, coords[:, 0] + 360, coords[:, 0])
    return unwrapped


def approximate_extent_km(coords: np.ndarray) -> float:
    """
    Diagonal of the lon/lat bounding box in km, with longitude degrees
    shortened by the cosine of the mean latitude.
    """
    center_lat = np.mean(coords[:, 1])
    km_lat = 110.54 * np.ptp(coords[:, 1])
    km_lon = 111.32 * np.cos(np.radians(center_lat)) * np.ptp(coords[:, 0])
    return float(np.hypot(km_lat, km_lon))


def determine_utm_zone(coords: np.ndarray) -> Tuple[int, str]:
    """
    UTM zone containing the centroid.

    :param coords: Geographic coordinates (lon/lat)
    :return: Tuple of (zone_number, hemisphere)
    """
    centroid_lon = np.mean(coords[:, 0])
    if centroid_lon > 180:
        centroid_lon -= 360
    zone_number = int(np.floor((centroid_lon + 180) / 6) + 1)
    zone_number = max(1, min(60, zone_number))
    hemisphere = 'north' if np.mean(coords[:, 1]) >= 0 else 'south'
    return zone_number, hemisphere


def create_projection_string(coords: np.ndarray) -> Tuple[str, str]:
    """
    Proj4 string for a metric projection suited to the extent of the data.

    UTM for regional extents, Albers equal-area conic beyond
    REGIONAL_EXTENT_KM.

    :param coords: Geographic coordinates (lon/lat)
    :return: Tuple of (proj4_string, system name)
    """
    if approximate_extent_km(coords) < REGIONAL_EXTENT_KM:
        zone_number, hemisphere = determine_utm_zone(coords)
        south = " +south" if hemisphere == 'south' else ""
        proj4_string = f"+proj=utm +zone={zone_number}{south} +datum=WGS84 +units=m +no_defs"
        return proj4_string, f"UTM Zone {zone_number}{hemisphere[0].upper()}"

    lat_min, lat_max = coords[:, 1].min(), coords[:, 1].max()
    lat_span = lat_max - lat_min
    parallel_1 = lat_min + lat_span / 6
    parallel_2 = lat_max - lat_span / 6
    proj4_string = (
        f"+proj=aea +lat_1={parallel_1:.2f} +lat_2={parallel_2:.2f} "
        f"+lat_0={np.mean(coords[:, 1]):.2f} +lon_0={np.mean(coords[:, 0]):.2f} "
        f"+datum=WGS84 +units=m +no_defs"
    )
    return proj4_string, "Albers Equal-Area Conic"


def project_coordinates(coords: np.ndarray, proj4_string: str) -> np.ndarray:
    """
    Project lon/lat coordinates and convert to kilometres.

    :param coords: Geographic coordinates (lon/lat)
    :param proj4_string: Target projection in metres
    :return: Projected coordinates in km
    """
    transformer = pyproj.Transformer.from_crs("EPSG:4326", proj4_string, always_xy=True)
    x_proj, y_proj = transformer.transform(coords[:, 0], coords[:, 1])
    projected = np.column_stack([x_proj, y_proj]) / 1000.0
    if np.any(~np.isfinite(projected)):
        raise CoordsError(f"Projection to '{proj4_string}' produced non-finite coordinates")
    return projected


def find_duplicate_coords(coords: np.ndarray, tolerance: float = 1e-9) -> List[Tuple[int, int]]:
    """
    Pairs of locations closer than `tolerance`.

    :param coords: Coordinate array of shape (n_obs, d)
    :param tolerance: Distance below which two points count as duplicates
    :return: Sorted list of index pairs (i, j) with i < j
    """
    coords = as_coordinate_array(coords)
    if len(coords) < 2:
        return []
    pairs = cKDTree(coords).query_pairs(r=tolerance)
    return sorted(pairs)


def preprocess_coords(
    coords: np.ndarray,
    geographic: bool = False,
    tolerance: float = 1e-9,
    verbose: bool = True
) -> Tuple[np.ndarray, Dict]:
    """
    Validate coordinates and, for lon/lat input, project them to km.

    Duplicate locations are reported, never removed; the sampler accepts
    them as long as the model has a nugget.

    :param coords: Coordinates of shape (n_obs, d); (n_obs, 2) lon/lat when geographic
    :param geographic: Treat input as lon/lat in degrees and project it
    :param tolerance: Distance below which points are reported as duplicates
    :param verbose: Print progress
    :return: Tuple of (coordinates for modelling, projection info dict)
    :raises CoordsError: If coordinates are invalid
    """
    coords = as_coordinate_array(coords)

    if is_geographic(coords) and not geographic and verbose:
        print("Coordinates look like lon/lat; pass geographic=True to project them")

    antimeridian_crossing = False
    if geographic:
        if not is_geographic(coords):
            raise CoordsError(
                "geographic=True requires (n_obs, 2) lon/lat coordinates within "
                "[-180, 180] x [-90, 90]"
            )
        lonlat = coords
        if crosses_antimeridian(lonlat):
            lonlat = unwrap_antimeridian(lonlat)
            antimeridian_crossing = True
            if verbose:
                print("Antimeridian crossing detected - unwrapping longitudes")

        extent_km = approximate_extent_km(lonlat)
        proj4_string, system_name = create_projection_string(lonlat)
        projected = project_coordinates(lonlat, proj4_string)
        units = 'km'
        if verbose:
            print(f"Projected to: {system_name} (extent approximately {extent_km:.1f} km)")
    else:
        projected = coords.copy()
        proj4_string = None
        system_name = "User-provided coordinates"
        units = 'input'

    duplicates = find_duplicate_coords(projected, tolerance)
    if duplicates and verbose:
        print(f"Warning: Found {len(duplicates)} duplicate coordinate pairs (tolerance={tolerance})")
        print("  A zero nugget cannot be fitted with duplicate locations")

    projection_info = {
        'projected': geographic,
        'proj4_string': proj4_string,
        'system': system_name,
        'coordinate_units': units,
        'antimeridian_crossing': antimeridian_crossing,
        'bbox': (projected.min(axis=0), projected.max(axis=0)),
        'n_duplicates': len(duplicates),
        'duplicate_pairs': duplicates,
    }

    if verbose:
        extent = projected.max(axis=0) - projected.min(axis=0)
        print(f"Coordinate preprocessing complete: {len(projected)} points, "
              f"extent {' x '.join(f'{e:.3g}' for e in extent)} {units}")

    return projected, projection_info


def apply_projection(coords: np.ndarray, projection_info: Dict) -> np.ndarray:
    """
    Transform new locations the same way ``preprocess_coords`` transformed
    the observations.

    :param coords: New coordinates
    :param projection_info: Info dict returned by ``preprocess_coords``
    :return: Coordinates in the modelling system
    """
    coords = as_coordinate_array(coords)
    if not projection_info.get('projected', False):
        return coords.copy()
    if not is_geographic(coords):
        raise CoordsError("Expected (n, 2) lon/lat coordinates for a projected model")
    if projection_info.get('antimeridian_crossing', False):
        coords = unwrap_antimeridian(coords)
    return project_coordinates(coords, projection_info['proj4_string'])
