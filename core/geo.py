"""
Geospatial helpers for the ambulance registry.

Great-circle distances are computed with the haversine formula on a sphere of
radius 6371 km. The registry's spatial index is a regular latitude/longitude
grid; the helpers here map points to grid cells and work out which cells a
radius query has to visit.
"""
import math
from typing import List, Optional, Sequence, Tuple

import numpy as np

from core.errors import ValidationError
from models import GeoPoint

EARTH_RADIUS_KM = 6371.0

# Slack added to query bounding boxes so floating-point error never drops an edge cell
BOX_PAD_DEG = 1e-6

Cell = Tuple[int, int]


def haversine(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres between two points given in degrees."""
    rlat1 = math.radians(lat1)
    rlat2 = math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlng = math.radians(lng2 - lng1)

    a = (
        math.sin(dlat / 2) ** 2
        + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlng / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def distance_between(a: GeoPoint, b: GeoPoint) -> float:
    return haversine(a.latitude, a.longitude, b.latitude, b.longitude)


def haversine_many(center: GeoPoint, lats: np.ndarray, lngs: np.ndarray) -> np.ndarray:
    """Vectorised haversine from ``center`` to arrays of latitudes/longitudes."""
    rlat1 = np.radians(center.latitude)
    rlat2 = np.radians(lats)
    dlat = rlat2 - rlat1
    dlng = np.radians(lngs - center.longitude)

    a = np.sin(dlat / 2) ** 2 + np.cos(rlat1) * np.cos(rlat2) * np.sin(dlng / 2) ** 2
    a = np.clip(a, 0.0, 1.0)
    return EARTH_RADIUS_KM * 2 * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


def coordinate_errors(latitude, longitude) -> dict:
    """Return a field -> message mapping describing what is wrong with a coordinate pair."""
    errors = {}
    for field, value, limit in (("latitude", latitude, 90.0), ("longitude", longitude, 180.0)):
        if value is None:
            errors[field] = f"{field} is required"
        elif isinstance(value, bool) or not isinstance(value, (int, float)):
            errors[field] = f"{field} must be a number"
        elif not math.isfinite(value):
            errors[field] = f"{field} must be a finite number"
        elif not -limit <= value <= limit:
            errors[field] = f"{field} must be between {-limit:g} and {limit:g}"
    return errors


def validate_point(point: Optional[GeoPoint], label: str = "location") -> GeoPoint:
    """Raise ValidationError unless ``point`` is a well-formed coordinate pair."""
    if point is None:
        raise ValidationError(f"{label} is required", {label: "latitude and longitude are required"})

    errors = coordinate_errors(point.latitude, point.longitude)
    if errors:
        raise ValidationError(f"Invalid {label}: " + "; ".join(errors.values()), errors)
    return point


def cell_for(latitude: float, longitude: float, cell_deg: float) -> Cell:
    """Grid cell containing a point."""
    n_lng = lng_cell_count(cell_deg)
    row = int(math.floor((latitude + 90.0) / cell_deg))
    col = int(math.floor((longitude + 180.0) / cell_deg)) % n_lng
    return row, col


def cells_for(lats: np.ndarray, lngs: np.ndarray, cell_deg: float) -> List[Cell]:
    """Grid cells for arrays of points; used when rebuilding the whole index."""
    n_lng = lng_cell_count(cell_deg)
    rows = np.floor((lats + 90.0) / cell_deg).astype(int)
    cols = np.floor((lngs + 180.0) / cell_deg).astype(int) % n_lng
    return list(zip(rows.tolist(), cols.tolist()))


def lng_cell_count(cell_deg: float) -> int:
    return int(math.ceil(360.0 / cell_deg))


def query_window(center: GeoPoint, radius_km: float, cell_deg: float) -> Tuple[range, Sequence[int]]:
    """Rows and columns of the grid overlapping the bounding box of a radius query.

    Column numbers wrap at the antimeridian, and every column is included when
    the query cap reaches a pole.
    """
    angular = radius_km / EARTH_RADIUS_KM
    dlat = math.degrees(angular) + BOX_PAD_DEG
    lat_min = max(-90.0, center.latitude - dlat)
    lat_max = min(90.0, center.latitude + dlat)

    n_lng = lng_cell_count(cell_deg)
    rows = range(
        int(math.floor((lat_min + 90.0) / cell_deg)),
        int(math.floor((lat_max + 90.0) / cell_deg)) + 1
    )

    # Half-width of the cap in longitude; a cap containing a pole spans all of them
    ratio = math.sin(min(angular, math.pi / 2)) / max(math.cos(math.radians(center.latitude)), 1e-12)
    if lat_max >= 90.0 or lat_min <= -90.0 or angular >= math.pi / 2 or ratio >= 1.0:
        return rows, range(n_lng)

    dlng = math.degrees(math.asin(ratio)) + BOX_PAD_DEG
    if 2 * dlng >= 360.0:
        return rows, range(n_lng)

    lng_min = center.longitude - dlng
    lng_max = center.longitude + dlng

    # The last column is narrower when cell_deg does not divide 360, so a
    # wrapped range is split at the antimeridian and each end normalised
    if lng_max >= 180.0:
        columns = set(range(_column(lng_min, cell_deg, n_lng), n_lng))
        columns.update(range(0, _column(lng_max - 360.0, cell_deg, n_lng) + 1))
    elif lng_min <= -180.0:
        columns = set(range(_column(lng_min + 360.0, cell_deg, n_lng), n_lng))
        columns.update(range(0, _column(lng_max, cell_deg, n_lng) + 1))
    else:
        columns = set(range(_column(lng_min, cell_deg, n_lng), _column(lng_max, cell_deg, n_lng) + 1))

    return rows, sorted(columns)


def _column(longitude: float, cell_deg: float, n_lng: int) -> int:
    """Unwrapped column of a longitude in [-180, 180]."""
    col = int(math.floor((longitude + 180.0) / cell_deg))
    return min(max(col, 0), n_lng - 1)
