import mercantile
import pytest

from conftest import CENSUS_EXTENT
from tile_grid import (
    ORIGIN_SHIFT,
    Extent,
    TileCoordinate,
    TileEnumerator,
    lat_lon_to_meters,
    lat_lon_to_tile,
    meters_to_lat_lon,
    meters_to_pixels,
    pixels_to_meters,
    pixels_to_tile,
    quad_key,
    resolution,
    tile_bounds,
    tile_lat_lon_bounds,
    tms_row_to_service_row,
)


@pytest.mark.parametrize(
    "lat, lon",
    [(0.0, 0.0), (38.2, -92.4), (-33.9, 151.2), (85.0, 179.9), (-85.0, -179.9), (89.9, 10.0)],
)
def test_meters_round_trip(lat, lon):
    x, y = lat_lon_to_meters(lat, lon)
    back_lon, back_lat = meters_to_lat_lon(x, y)
    assert back_lat == pytest.approx(lat, abs=1e-9)
    assert back_lon == pytest.approx(lon, abs=1e-9)


def test_meters_match_mercantile():
    x, y = lat_lon_to_meters(40.56, -88.99)
    mx, my = mercantile.xy(-88.99, 40.56)
    assert x == pytest.approx(mx, abs=1e-6)
    assert y == pytest.approx(my, abs=1e-6)


def test_world_edges_in_meters():
    x, y = lat_lon_to_meters(0.0, 180.0)
    assert x == pytest.approx(ORIGIN_SHIFT)
    assert y == pytest.approx(0.0, abs=1e-6)


@pytest.mark.parametrize("lat", [90.0, -90.0, 91.0, -120.0])
def test_poles_are_a_domain_error(lat):
    with pytest.raises(ValueError):
        lat_lon_to_meters(lat, 0.0)


def test_resolution_halves_per_zoom():
    assert resolution(0) == pytest.approx(156543.03392804097)
    assert resolution(1) == pytest.approx(resolution(0) / 2)
    assert resolution(0, tile_size=512) == pytest.approx(resolution(0) / 2)


def test_pixels_meters_inverse():
    px, py = meters_to_pixels(-1234567.8, 2345678.9, 9)
    x, y = pixels_to_meters(px, py, 9)
    assert x == pytest.approx(-1234567.8)
    assert y == pytest.approx(2345678.9)


@pytest.mark.parametrize(
    "px, py, expected",
    [
        (0, 0, (-1, -1)),
        (1, 1, (0, 0)),
        (256, 256, (0, 0)),
        (256.5, 1, (1, 0)),
        (512, 767.9, (1, 2)),
        (-1, -300, (-1, -2)),
    ],
)
def test_pixels_to_tile_uses_ceiling_minus_one(px, py, expected):
    assert pixels_to_tile(px, py) == expected


def test_lat_lon_to_tile_matches_mercantile_for_interior_points():
    for lon, lat, zoom in [(-90.3, 38.1, 7), (2.35, 48.85, 12), (151.2, -33.9, 10)]:
        col, row = lat_lon_to_tile(lat, lon, zoom)
        expected = mercantile.tile(lon, lat, zoom)
        assert col == expected.x
        assert tms_row_to_service_row(zoom, row) == expected.y


@pytest.mark.parametrize("zoom", [0, 1, 5, 12, 20])
def test_row_flip_is_an_involution(zoom):
    for row in {0, 1, 2**zoom // 2, 2**zoom - 1}:
        assert tms_row_to_service_row(zoom, tms_row_to_service_row(zoom, row)) == row


def test_row_flip_values():
    assert tms_row_to_service_row(0, 0) == 0
    assert tms_row_to_service_row(3, 0) == 7
    assert tms_row_to_service_row(3, 5) == 2


def test_tile_bounds_match_mercantile():
    zoom, col, row = 7, 30, 78
    xyz_row = tms_row_to_service_row(zoom, row)

    meters = tile_bounds(col, row, zoom)
    expected = mercantile.xy_bounds(col, xyz_row, zoom)
    assert meters.xmin == pytest.approx(expected.left, abs=1e-6)
    assert meters.ymin == pytest.approx(expected.bottom, abs=1e-6)
    assert meters.xmax == pytest.approx(expected.right, abs=1e-6)
    assert meters.ymax == pytest.approx(expected.top, abs=1e-6)

    degrees = tile_lat_lon_bounds(col, row, zoom)
    expected = mercantile.bounds(col, xyz_row, zoom)
    assert degrees.xmin == pytest.approx(expected.west, abs=1e-9)
    assert degrees.ymin == pytest.approx(expected.south, abs=1e-9)
    assert degrees.xmax == pytest.approx(expected.east, abs=1e-9)
    assert degrees.ymax == pytest.approx(expected.north, abs=1e-9)


def test_world_tile_bounds():
    bounds = tile_bounds(0, 0, 0)
    assert bounds.as_tuple() == pytest.approx(
        (-ORIGIN_SHIFT, -ORIGIN_SHIFT, ORIGIN_SHIFT, ORIGIN_SHIFT)
    )
    degrees = tile_lat_lon_bounds(0, 0, 0)
    assert degrees.xmin == pytest.approx(-180.0)
    assert degrees.ymax == pytest.approx(85.0511287798, abs=1e-9)


def test_quad_key_length_and_root():
    assert quad_key(0, 0, 0) == ""
    for zoom in range(1, 10):
        assert len(quad_key(zoom, 0, 0)) == zoom


def test_quad_key_flips_tms_row():
    # Bing example: XYZ tile (3, 5) at level 3 is "213"
    assert quad_key(3, 3, tms_row_to_service_row(3, 5)) == "213"
    # TMS row 0 is the southern edge, so the quadkey starts in the lower half
    assert quad_key(1, 0, 0) == "2"
    assert quad_key(1, 1, 1) == "1"


def test_quad_key_matches_mercantile():
    for zoom, col, row in [(7, 30, 78), (12, 2071, 2687), (3, 7, 0)]:
        xyz_row = tms_row_to_service_row(zoom, row)
        assert quad_key(zoom, col, row) == mercantile.quadkey(col, xyz_row, zoom)


def test_extent_normalizes_corners():
    extent = Extent(10.0, 5.0, -3.0, -7.5)
    assert extent.as_tuple() == (-3.0, -7.5, 10.0, 5.0)


# ============================================================================
# Enumeration
# ============================================================================


def test_enumerator_matches_mercantile_cover():
    extent = Extent(*CENSUS_EXTENT)
    tiles = list(TileEnumerator(7, 7, extent))

    expected = {
        (t.x, tms_row_to_service_row(t.z, t.y))
        for t in mercantile.tiles(*CENSUS_EXTENT, zooms=7)
    }
    assert {(t.column, t.row) for t in tiles} == expected
    assert all(t.level == 7 for t in tiles)


def test_enumerator_count_and_uniqueness():
    enumerator = TileEnumerator(7, 10, Extent(*CENSUS_EXTENT))
    tiles = list(enumerator)

    assert len(tiles) == len(set(tiles))
    assert len(tiles) == len(enumerator)
    for zoom in range(7, 11):
        min_col, min_row, max_col, max_row = enumerator.tile_range(zoom)
        at_zoom = [t for t in tiles if t.level == zoom]
        assert len(at_zoom) == (max_col - min_col + 1) * (max_row - min_row + 1)


def test_enumerator_order_is_row_major_per_zoom():
    tiles = list(TileEnumerator(6, 8, Extent(*CENSUS_EXTENT)))
    keys = [(t.level, t.row, t.column) for t in tiles]
    assert keys == sorted(keys)


def test_enumerator_is_restartable():
    enumerator = TileEnumerator(7, 8, Extent(*CENSUS_EXTENT))
    assert list(enumerator) == list(enumerator)


def test_enumerator_accepts_reversed_corners():
    forward = TileEnumerator(8, 8, Extent(*CENSUS_EXTENT))
    xmin, ymin, xmax, ymax = CENSUS_EXTENT
    backward = TileEnumerator(8, 8, Extent(xmax, ymax, xmin, ymin))
    assert list(forward) == list(backward)


def test_enumerator_clamps_to_world_grid():
    enumerator = TileEnumerator(0, 2, Extent(-180.0, -85.0, 180.0, 85.0))
    tiles = list(enumerator)

    assert TileCoordinate(0, 0, 0) in tiles
    for zoom in range(3):
        assert enumerator.tile_range(zoom) == (0, 0, 2**zoom - 1, 2**zoom - 1)
    assert len(tiles) == 1 + 4 + 16


def test_point_extent_yields_one_tile_per_zoom():
    enumerator = TileEnumerator(3, 5, Extent(-92.4, 38.2, -92.4, 38.2))
    assert [t.level for t in enumerator] == [3, 4, 5]


@pytest.mark.parametrize("zoom_min, zoom_max", [(5, 4), (-1, 3)])
def test_enumerator_rejects_bad_zoom_range(zoom_min, zoom_max):
    with pytest.raises(ValueError):
        TileEnumerator(zoom_min, zoom_max, Extent(*CENSUS_EXTENT))


def test_enumerator_fails_fast_at_the_pole():
    enumerator = TileEnumerator(1, 1, Extent(-10.0, 0.0, 10.0, 90.0))
    with pytest.raises(ValueError):
        list(enumerator)
