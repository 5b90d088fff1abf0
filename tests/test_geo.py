import math

import numpy as np
import pytest

from core import geo
from core.errors import ValidationError
from models import GeoPoint


def test_haversine_zero_distance():
    assert geo.haversine(28.6139, 77.2090, 28.6139, 77.2090) == 0.0


def test_haversine_one_degree_of_latitude():
    assert geo.haversine(0, 0, 1, 0) == pytest.approx(math.pi * 6371 / 180)


def test_haversine_is_symmetric():
    a = geo.haversine(28.6139, 77.2090, 19.0760, 72.8777)
    b = geo.haversine(19.0760, 72.8777, 28.6139, 77.2090)
    assert a == pytest.approx(b)
    # Delhi to Mumbai is roughly 1150 km as the crow flies
    assert 1100 < a < 1200


def test_haversine_many_matches_scalar():
    center = GeoPoint(latitude=28.6139, longitude=77.2090)
    lats = np.array([28.6, 28.7, -33.9, 51.5])
    lngs = np.array([77.2, 77.3, 151.2, -0.12])

    distances = geo.haversine_many(center, lats, lngs)

    for lat, lng, distance in zip(lats, lngs, distances):
        assert distance == pytest.approx(geo.haversine(center.latitude, center.longitude, lat, lng))


@pytest.mark.parametrize("latitude,longitude,field", [
    (90.5, 0, "latitude"),
    (-91, 0, "latitude"),
    (0, 180.01, "longitude"),
    (0, -200, "longitude"),
    (float("nan"), 0, "latitude"),
    (0, float("inf"), "longitude"),
])
def test_validate_point_rejects_bad_coordinates(latitude, longitude, field):
    with pytest.raises(ValidationError) as exc_info:
        geo.validate_point(GeoPoint(latitude=latitude, longitude=longitude))
    assert field in exc_info.value.fields


def test_validate_point_rejects_missing_point():
    with pytest.raises(ValidationError):
        geo.validate_point(None)


def test_validate_point_accepts_limits():
    point = GeoPoint(latitude=-90, longitude=180)
    assert geo.validate_point(point) is point


def test_coordinate_errors_reports_missing_fields():
    errors = geo.coordinate_errors(None, None)
    assert set(errors) == {"latitude", "longitude"}


def test_antimeridian_longitudes_share_a_column():
    assert geo.cell_for(10.0, 180.0, 0.05) == geo.cell_for(10.0, -180.0, 0.05)


def test_cells_for_matches_cell_for():
    lats = np.array([28.6139, -33.86, 0.0])
    lngs = np.array([77.2090, 151.21, -179.99])
    expected = [geo.cell_for(lat, lng, 0.05) for lat, lng in zip(lats, lngs)]
    assert geo.cells_for(lats, lngs, 0.05) == expected


def test_query_window_wraps_at_antimeridian():
    rows, columns = geo.query_window(GeoPoint(latitude=0, longitude=179.99), 5, 0.05)
    n_lng = geo.lng_cell_count(0.05)

    assert 0 in columns
    assert n_lng - 1 in columns
    assert len(columns) < 10
    assert geo.cell_for(0, -179.99, 0.05)[1] in columns


def test_query_window_wraps_when_cell_size_does_not_divide_360():
    # 360 / 0.13 is not whole, so the last column is narrower than the rest
    center = GeoPoint(latitude=0, longitude=-179.99)
    neighbour = GeoPoint(latitude=0, longitude=179.96)
    radius = geo.distance_between(center, neighbour) + 0.5

    _, columns = geo.query_window(center, radius, 0.13)

    assert geo.cell_for(neighbour.latitude, neighbour.longitude, 0.13)[1] in columns
    assert geo.cell_for(0, 180.0, 0.13)[1] in columns
    assert geo.cell_for(0, -180.0, 0.13)[1] in columns


def test_query_window_covers_all_longitudes_at_pole():
    _, columns = geo.query_window(GeoPoint(latitude=89.99, longitude=0), 5, 0.05)
    assert len(columns) == geo.lng_cell_count(0.05)


def test_query_window_is_small_for_city_radius():
    rows, columns = geo.query_window(GeoPoint(latitude=28.6139, longitude=77.2090), 5, 0.05)
    assert len(rows) <= 3
    assert len(columns) <= 4
