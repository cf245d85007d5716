"""
Tile Grid - Spherical Web Mercator math for TMS tile pyramids

Converts between the coordinate spaces used while crawling a tile service:

    lat/lon (degrees) <-> meters (EPSG:3857) <-> pixels (per zoom) <-> tile indices

All functions are pure. Tile rows are in TMS scheme (row 0 at the south edge),
which is what MBTiles stores. Services that count rows from the north edge
(XYZ / Google / Bing quadkeys) need tms_row_to_service_row() applied exactly
once, at the point where the URL is built.
"""
from dataclasses import dataclass
from math import atan, ceil, exp, log, pi, tan
from typing import Iterator, NamedTuple, Tuple

EARTH_RADIUS = 6378137.0
ORIGIN_SHIFT = 2 * pi * EARTH_RADIUS / 2.0  # half the projected circumference
DEFAULT_TILE_SIZE = 256

TileRange = Tuple[int, int, int, int]  # (min_col, min_row, max_col, max_row)


class Point(NamedTuple):
    """A pair in a single coordinate space (degrees, meters or pixels)"""

    x: float
    y: float


@dataclass(frozen=True)
class TileCoordinate:
    """Tile address, row counted in TMS scheme"""

    level: int
    column: int
    row: int


@dataclass(frozen=True)
class Extent:
    """Bounding box; corners are normalized so that min <= max"""

    xmin: float
    ymin: float
    xmax: float
    ymax: float

    def __post_init__(self):
        xmin, xmax = sorted((self.xmin, self.xmax))
        ymin, ymax = sorted((self.ymin, self.ymax))
        object.__setattr__(self, "xmin", xmin)
        object.__setattr__(self, "xmax", xmax)
        object.__setattr__(self, "ymin", ymin)
        object.__setattr__(self, "ymax", ymax)

    def as_tuple(self) -> Tuple[float, float, float, float]:
        return self.xmin, self.ymin, self.xmax, self.ymax


# ============================================================================
# Pure Functions - Projection
# ============================================================================


def lat_lon_to_meters(lat: float, lon: float) -> Point:
    """Project WGS84 lat/lon to spherical Mercator meters"""
    if not -90.0 < lat < 90.0:
        raise ValueError(f"Latitude {lat} is outside the Mercator domain (-90, 90)")

    x = lon * ORIGIN_SHIFT / 180.0
    y = log(tan((90.0 + lat) * pi / 360.0)) / (pi / 180.0)
    y = y * ORIGIN_SHIFT / 180.0
    return Point(x, y)


def meters_to_lat_lon(x: float, y: float) -> Point:
    """Inverse of lat_lon_to_meters. Returns Point(lon, lat)"""
    lon = (x / ORIGIN_SHIFT) * 180.0
    lat = (y / ORIGIN_SHIFT) * 180.0
    lat = 180.0 / pi * (2 * atan(exp(lat * pi / 180.0)) - pi / 2.0)
    return Point(lon, lat)


def resolution(zoom: int, tile_size: int = DEFAULT_TILE_SIZE) -> float:
    """Meters per pixel at the equator for the given zoom level"""
    return (2 * pi * EARTH_RADIUS / tile_size) / (2**zoom)


def meters_to_pixels(
    x: float, y: float, zoom: int, tile_size: int = DEFAULT_TILE_SIZE
) -> Point:
    res = resolution(zoom, tile_size)
    return Point((x + ORIGIN_SHIFT) / res, (y + ORIGIN_SHIFT) / res)


def pixels_to_meters(
    px: float, py: float, zoom: int, tile_size: int = DEFAULT_TILE_SIZE
) -> Point:
    res = resolution(zoom, tile_size)
    return Point(px * res - ORIGIN_SHIFT, py * res - ORIGIN_SHIFT)


def pixels_to_tile(
    px: float, py: float, tile_size: int = DEFAULT_TILE_SIZE
) -> Tuple[int, int]:
    """
    Tile containing a pixel. Uses ceil(p / size) - 1, so a pixel sitting
    exactly on a tile edge belongs to the tile below/left of it and pixel 0
    maps to -1.
    """
    tx = int(ceil(px / float(tile_size))) - 1
    ty = int(ceil(py / float(tile_size))) - 1
    return tx, ty


def meters_to_tile(
    x: float, y: float, zoom: int, tile_size: int = DEFAULT_TILE_SIZE
) -> Tuple[int, int]:
    px, py = meters_to_pixels(x, y, zoom, tile_size)
    return pixels_to_tile(px, py, tile_size)


def lat_lon_to_tile(
    lat: float, lon: float, zoom: int, tile_size: int = DEFAULT_TILE_SIZE
) -> Tuple[int, int]:
    x, y = lat_lon_to_meters(lat, lon)
    return meters_to_tile(x, y, zoom, tile_size)


# ============================================================================
# Pure Functions - Tile Geometry and Numbering
# ============================================================================


def tile_bounds(
    tx: int, ty: int, zoom: int, tile_size: int = DEFAULT_TILE_SIZE
) -> Extent:
    """Bounds of a TMS tile in meters"""
    xmin, ymin = pixels_to_meters(tx * tile_size, ty * tile_size, zoom, tile_size)
    xmax, ymax = pixels_to_meters(
        (tx + 1) * tile_size, (ty + 1) * tile_size, zoom, tile_size
    )
    return Extent(xmin, ymin, xmax, ymax)


def tile_lat_lon_bounds(
    tx: int, ty: int, zoom: int, tile_size: int = DEFAULT_TILE_SIZE
) -> Extent:
    """Bounds of a TMS tile in degrees (x = lon, y = lat)"""
    bounds = tile_bounds(tx, ty, zoom, tile_size)
    west, south = meters_to_lat_lon(bounds.xmin, bounds.ymin)
    east, north = meters_to_lat_lon(bounds.xmax, bounds.ymax)
    return Extent(west, south, east, north)


def tms_row_to_service_row(zoom: int, row: int) -> int:
    """Flip a row between TMS (south origin) and XYZ (north origin). Self-inverse."""
    return (2**zoom - 1) - row


def quad_key(zoom: int, tx: int, ty: int) -> str:
    """Quadkey (Bing / Virtual Earth) for a TMS tile"""
    ty = tms_row_to_service_row(zoom, ty)
    digits = []
    for i in range(zoom, 0, -1):
        digit = 0
        mask = 1 << (i - 1)
        if tx & mask:
            digit += 1
        if ty & mask:
            digit += 2
        digits.append(str(digit))
    return "".join(digits)


# ============================================================================
# Tile Enumeration
# ============================================================================


def clamp_to_grid(index: int, zoom: int) -> int:
    return max(0, min(index, 2**zoom - 1))


class TileEnumerator:
    """
    Lazy sequence of the TMS tiles covering a geographic extent.

    Zoom levels are visited in ascending order; within a level tiles are
    produced row by row (ascending), columns ascending within a row. Every
    call to iter() starts over, so one enumerator can feed both a progress
    total and the crawl itself.

    Args:
        zoom_min: First zoom level (inclusive)
        zoom_max: Last zoom level (inclusive)
        extent: Extent in degrees (x = lon, y = lat)
        tile_size: Tile edge in pixels
    """

    def __init__(
        self,
        zoom_min: int,
        zoom_max: int,
        extent: Extent,
        tile_size: int = DEFAULT_TILE_SIZE,
    ):
        if zoom_min < 0 or zoom_max < zoom_min:
            raise ValueError(f"Invalid zoom range {zoom_min}-{zoom_max}")
        self.zoom_min = zoom_min
        self.zoom_max = zoom_max
        self.extent = extent
        self.tile_size = tile_size

    def tile_range(self, zoom: int) -> TileRange:
        """Column/row span of the extent at one zoom level, clamped to the grid"""
        ext = self.extent
        col_a, row_a = lat_lon_to_tile(ext.ymin, ext.xmin, zoom, self.tile_size)
        col_b, row_b = lat_lon_to_tile(ext.ymax, ext.xmax, zoom, self.tile_size)

        min_col, max_col = sorted((col_a, col_b))
        min_row, max_row = sorted((row_a, row_b))
        return (
            clamp_to_grid(min_col, zoom),
            clamp_to_grid(min_row, zoom),
            clamp_to_grid(max_col, zoom),
            clamp_to_grid(max_row, zoom),
        )

    def count(self, zoom: int) -> int:
        min_col, min_row, max_col, max_row = self.tile_range(zoom)
        return (max_col - min_col + 1) * (max_row - min_row + 1)

    def __len__(self) -> int:
        return sum(self.count(z) for z in range(self.zoom_min, self.zoom_max + 1))

    def __iter__(self) -> Iterator[TileCoordinate]:
        for zoom in range(self.zoom_min, self.zoom_max + 1):
            min_col, min_row, max_col, max_row = self.tile_range(zoom)
            for row in range(min_row, max_row + 1):
                for col in range(min_col, max_col + 1):
                    yield TileCoordinate(level=zoom, column=col, row=row)
