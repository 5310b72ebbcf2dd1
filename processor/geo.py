"""Great-circle distance and a coarse latitude/longitude grid on a spherical Earth."""
import math
from typing import List, Optional

from processor.models import Point

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE_LATITUDE = EARTH_RADIUS_KM * math.pi / 180.0

GRID_CELL_DEGREES = 1
MAX_COVERING_CELLS = 16


def haversine_km(origin: Point, target: Point) -> float:
    """
    Compute the haversine distance between two points.

    Args:
        origin: First point
        target: Second point

    Returns:
        Distance in kilometres
    """
    lat1 = math.radians(origin.latitude)
    lat2 = math.radians(target.latitude)
    dlat = lat2 - lat1
    dlon = math.radians(target.longitude - origin.longitude)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    )
    # Clamp to guard against floating point drift just above 1.0
    c = 2 * math.asin(math.sqrt(min(1.0, a)))
    return EARTH_RADIUS_KM * c


def within_radius(center: Point, target: Point, radius_km: float) -> bool:
    """Inclusive radius test used by every store backend."""
    return haversine_km(center, target) <= radius_km


def is_valid_radius(radius_km) -> bool:
    """A radius must be a finite number of kilometres above zero."""
    return (
        isinstance(radius_km, (int, float))
        and not isinstance(radius_km, bool)
        and math.isfinite(radius_km)
        and radius_km > 0
    )


def _wrap_longitude_cell(cell: int) -> int:
    return (cell + 180) % 360 - 180


def grid_cell(point: Point) -> str:
    """
    Name the latitude/longitude grid cell holding a point.

    Cells are GRID_CELL_DEGREES wide; 90N shares the top row and 180E
    wraps onto -180.
    """
    latitude_cell = min(math.floor(point.latitude / GRID_CELL_DEGREES), 90 // GRID_CELL_DEGREES - 1)
    longitude_cell = _wrap_longitude_cell(math.floor(point.longitude / GRID_CELL_DEGREES))
    return f'{latitude_cell}:{longitude_cell}'


def covering_cells(center: Point, radius_km: float) -> Optional[List[str]]:
    """
    List the grid cells overlapping the bounding box of a search circle.

    Every point within radius_km of center lies in one of the returned
    cells. Returns None when the box touches a pole or spans more than
    MAX_COVERING_CELLS cells; callers then need another index.
    """
    # Padding keeps points exactly on the radius inside the box
    lat_delta = radius_km / KM_PER_DEGREE_LATITUDE + 1e-9
    lat_min = center.latitude - lat_delta
    lat_max = center.latitude + lat_delta
    if lat_min <= -90.0 or lat_max >= 90.0:
        return None

    widest = max(abs(lat_min), abs(lat_max))
    lon_delta = lat_delta / math.cos(math.radians(widest))
    if lon_delta >= 180.0:
        return None

    latitude_cells = range(
        math.floor(lat_min / GRID_CELL_DEGREES), math.floor(lat_max / GRID_CELL_DEGREES) + 1
    )
    longitude_cells = range(
        math.floor((center.longitude - lon_delta) / GRID_CELL_DEGREES),
        math.floor((center.longitude + lon_delta) / GRID_CELL_DEGREES) + 1,
    )
    if len(latitude_cells) * len(longitude_cells) > MAX_COVERING_CELLS:
        return None

    return sorted({
        f'{lat}:{_wrap_longitude_cell(lon)}'
        for lat in latitude_cells
        for lon in longitude_cells
    })
