"""
Tile Sources - Build fetchable URLs for TMS tile coordinates

Each source type knows one map-service protocol and carries only the
configuration that protocol needs:

    plain       XYZ/TMS template ("http://tile.openstreetmap.org")
    subdomain   template with a rotating {s} host ("http://{s}.tile.../{z}/{x}/{y}.png")
    dynamic     ArcGIS dynamic map service /export
    wms111      WMS 1.1.1 GetMap (SRS, bbox as xmin,ymin,xmax,ymax)
    wms130      WMS 1.3.0 GetMap (CRS, bbox as ymin,xmin,ymax,xmax for EPSG:4326)

Tiles always arrive in TMS scheme. Whether a template source flips the row
to the north-origin scheme is an explicit `flip_rows` argument. The dynamic
and WMS sources request a geographic bbox, which has no row scheme: it is
always taken from the TMS tile.
"""
from typing import Dict, Mapping, Optional, Sequence
from urllib.parse import parse_qsl

import requests

from tile_grid import (
    DEFAULT_TILE_SIZE,
    Extent,
    TileCoordinate,
    quad_key,
    tile_lat_lon_bounds,
    tms_row_to_service_row,
)

OSM_BASE_URL = "http://tile.openstreetmap.org"
OSM_SUBDOMAIN_URL_TEMPLATE = "http://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png"
OSM_SUBDOMAINS = ("a", "b", "c")
PLAIN_PATH_SUFFIX = "/{z}/{x}/{y}.png"
SUBDOMAIN_PLACEHOLDERS = ("{s}", "{subdomain}")

DYNAMIC_EXPORT_DEFAULTS = {
    "bboxSR": "4326",
    "layers": "",
    "layerdefs": "",
    "imageSR": "",
    "format": "png",
    "transparent": "true",
    "dpi": "",
    "time": "",
    "layerTimeOptions": "",
    "f": "image",
}

# ArcGIS REST parameter names are matched case-insensitively
DYNAMIC_EXPORT_NAMES = {
    name.lower(): name for name in (*DYNAMIC_EXPORT_DEFAULTS, "bbox", "size")
}

WMS_DEFAULTS = {
    "SERVICE": "WMS",
    "REQUEST": "GetMap",
    "LAYERS": "",
    "STYLES": "",
    "FORMAT": "image/png",
    "TRANSPARENT": "TRUE",
}

# version -> (name of the spatial reference parameter, bbox axis order is lat-first)
WMS_VERSIONS = {
    "1.1.1": ("SRS", False),
    "1.3.0": ("CRS", True),
}


class ConfigurationError(ValueError):
    """Invalid tile source configuration; raised before any tile is fetched"""


def parse_overrides(text: Optional[str]) -> Dict[str, str]:
    """Parse 'key=value&key=value' into a dict. Last occurrence of a key wins."""
    if not text:
        return {}
    return dict(parse_qsl(text, keep_blank_values=True))


def build_url(base_url: str, params: Mapping[str, str]) -> str:
    """Append query parameters to a URL, keeping any query it already has"""
    return requests.Request("GET", base_url, params=dict(params)).prepare().url


def format_bbox(extent: Extent, lat_first: bool = False) -> str:
    if lat_first:
        values = (extent.ymin, extent.xmin, extent.ymax, extent.xmax)
    else:
        values = (extent.xmin, extent.ymin, extent.xmax, extent.ymax)
    return ",".join(repr(float(v)) for v in values)


def _require_url(url: Optional[str], what: str) -> str:
    if not url or not url.strip():
        raise ConfigurationError(f"The base url for the {what} cannot be empty")
    return url.strip()


# ============================================================================
# Source Types
# ============================================================================


class TileUrlSource:
    """Builds the URL of one tile. Subclasses implement tile_url()."""

    flip_rows = False

    def service_row(self, tile: TileCoordinate) -> int:
        """Row as the service expects it"""
        if self.flip_rows:
            return tms_row_to_service_row(tile.level, tile.row)
        return tile.row

    def tile_url(self, tile: TileCoordinate) -> str:
        raise NotImplementedError

    def __call__(self, tile: TileCoordinate) -> str:
        return self.tile_url(tile)


class TemplateTileSource(TileUrlSource):
    """
    Plain XYZ/TMS source.

    A base URL without placeholders gets '/{z}/{x}/{y}.png' appended.
    Placeholders: {z}/{level}, {x}/{column}, {y}/{row}, {q}/{quadkey}.
    """

    def __init__(self, base_url: str, flip_rows: bool = False):
        base_url = _require_url(base_url, "tile service")
        if "{" not in base_url:
            base_url = base_url.rstrip("/") + PLAIN_PATH_SUFFIX
        self.url_template = base_url
        self.flip_rows = flip_rows
        _check_template(self)

    def placeholders(self, tile: TileCoordinate) -> Dict[str, object]:
        row = self.service_row(tile)
        quadkey = quad_key(tile.level, tile.column, tile.row)
        return {
            "z": tile.level,
            "level": tile.level,
            "x": tile.column,
            "column": tile.column,
            "y": row,
            "row": row,
            "q": quadkey,
            "quadkey": quadkey,
        }

    def tile_url(self, tile: TileCoordinate) -> str:
        return self.url_template.format(**self.placeholders(tile))


class SubdomainTileSource(TemplateTileSource):
    """
    Template source spread over several hosts.

    The host is picked from (level + column + row) % len(subdomains), using
    the row that ends up in the URL, so a tile always hits the same host.
    """

    def __init__(
        self,
        url_template: str = OSM_SUBDOMAIN_URL_TEMPLATE,
        subdomains: Sequence[str] = OSM_SUBDOMAINS,
        flip_rows: bool = True,
    ):
        if not subdomains:
            raise ConfigurationError("At least one subdomain is required")
        url_template = _require_url(url_template, "tile service")
        if not any(p in url_template for p in SUBDOMAIN_PLACEHOLDERS):
            raise ConfigurationError(
                f"URL template {url_template!r} has no {{s}} or {{subdomain}} placeholder"
            )
        self.subdomains = tuple(subdomains)
        super().__init__(url_template, flip_rows=flip_rows)

    def placeholders(self, tile: TileCoordinate) -> Dict[str, object]:
        values = super().placeholders(tile)
        index = (tile.level + tile.column + values["row"]) % len(self.subdomains)
        values["s"] = values["subdomain"] = self.subdomains[index]
        return values


class DynamicMapExportSource(TileUrlSource):
    """ArcGIS dynamic map service: one /export request per tile"""

    def __init__(
        self,
        map_service_url: str,
        tile_size: int = DEFAULT_TILE_SIZE,
        parameters: Optional[Mapping[str, str]] = None,
    ):
        url = _require_url(map_service_url, "ArcGIS Dynamic Service")
        self.export_url = url.rstrip("/") + "/export"
        self.tile_size = tile_size
        self.parameters = dict(DYNAMIC_EXPORT_DEFAULTS)
        for name, value in (parameters or {}).items():
            self.parameters[DYNAMIC_EXPORT_NAMES.get(name.lower(), name)] = value

    def tile_extent(self, tile: TileCoordinate) -> Extent:
        return tile_lat_lon_bounds(tile.column, tile.row, tile.level, self.tile_size)

    def query(self, tile: TileCoordinate) -> Dict[str, str]:
        params = dict(self.parameters)
        params["bbox"] = format_bbox(self.tile_extent(tile))
        params["size"] = f"{self.tile_size},{self.tile_size}"
        return params

    def tile_url(self, tile: TileCoordinate) -> str:
        return build_url(self.export_url, self.query(tile))


class WmsTileSource(TileUrlSource):
    """
    WMS GetMap source for version 1.1.1 or 1.3.0.

    WMS parameter names are case-insensitive, so overrides are upper-cased
    before they are merged over the defaults.
    """

    def __init__(
        self,
        service_url: str,
        version: str,
        tile_size: int = DEFAULT_TILE_SIZE,
        parameters: Optional[Mapping[str, str]] = None,
    ):
        if version not in WMS_VERSIONS:
            raise ConfigurationError(f"Unsupported WMS version: {version}")
        self.service_url = _require_url(service_url, "WMS service")
        self.version = version
        self.tile_size = tile_size
        self.srs_param, self.lat_first = WMS_VERSIONS[version]

        self.parameters = dict(WMS_DEFAULTS)
        self.parameters[self.srs_param] = "EPSG:4326"
        for name, value in (parameters or {}).items():
            self.parameters[name.upper()] = value

    def tile_extent(self, tile: TileCoordinate) -> Extent:
        return tile_lat_lon_bounds(tile.column, tile.row, tile.level, self.tile_size)

    def bbox_string(self, tile: TileCoordinate) -> str:
        return format_bbox(self.tile_extent(tile), lat_first=self.lat_first)

    def query(self, tile: TileCoordinate) -> Dict[str, str]:
        params = dict(self.parameters)
        params["VERSION"] = self.version
        params["BBOX"] = self.bbox_string(tile)
        params["WIDTH"] = str(self.tile_size)
        params["HEIGHT"] = str(self.tile_size)
        return params

    def tile_url(self, tile: TileCoordinate) -> str:
        return build_url(self.service_url, self.query(tile))


def _check_template(source: TemplateTileSource) -> None:
    """Format the template once so bad placeholders fail at configuration time"""
    try:
        source.tile_url(TileCoordinate(level=0, column=0, row=0))
    except (KeyError, IndexError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid URL template {source.url_template!r}: {e}"
        ) from e


# ============================================================================
# Factory
# ============================================================================


SOURCE_ALIASES = {
    "plain": "plain",
    "osm": "plain",
    "xyz": "plain",
    "tms": "plain",
    "subdomain": "subdomain",
    "subdomains": "subdomain",
    "osm-subdomains": "subdomain",
    "dynamic": "dynamic",
    "ags": "dynamic",
    "ags-dynamic": "dynamic",
    "wms111": "wms111",
    "wms-1.1.1": "wms111",
    "wms130": "wms130",
    "wms-1.3.0": "wms130",
    "wms": "wms130",
}

SOURCE_TYPES = ("plain", "subdomain", "dynamic", "wms111", "wms130")
BBOX_SOURCE_TYPES = ("dynamic", "wms111", "wms130")


def create_tile_source(
    selector: str,
    base_url: str,
    overrides: Optional[str] = None,
    *,
    tile_size: int = DEFAULT_TILE_SIZE,
    subdomains: Optional[Sequence[str]] = None,
    flip_rows: Optional[bool] = None,
) -> TileUrlSource:
    """
    Build a tile source from its selector string.

    Args:
        selector: One of SOURCE_TYPES or an alias from SOURCE_ALIASES
        base_url: Service URL or URL template
        overrides: 'key=value&...' query overrides (dynamic and WMS sources)
        tile_size: Tile edge in pixels
        subdomains: Hosts for the subdomain source
        flip_rows: Force the row scheme of a template source; None keeps
            the source's default

    Raises:
        ConfigurationError: Unknown selector, empty URL, bad template, or a
            row flip requested for a bbox source
    """
    kind = SOURCE_ALIASES.get((selector or "").strip().lower())
    if kind is None:
        raise ConfigurationError(
            f"Unknown tile source {selector!r} (expected one of {', '.join(SOURCE_TYPES)})"
        )

    params = parse_overrides(overrides)
    flip = {} if flip_rows is None else {"flip_rows": flip_rows}
    if flip_rows and kind in BBOX_SOURCE_TYPES:
        raise ConfigurationError(
            f"The {kind} source requests a bbox and cannot flip tile rows"
        )

    if kind == "plain":
        return TemplateTileSource(base_url, **flip)
    if kind == "subdomain":
        return SubdomainTileSource(
            _require_url(base_url, "tile service"),
            subdomains or OSM_SUBDOMAINS,
            **flip,
        )
    if kind == "dynamic":
        return DynamicMapExportSource(base_url, tile_size=tile_size, parameters=params)
    version = "1.1.1" if kind == "wms111" else "1.3.0"
    return WmsTileSource(base_url, version, tile_size=tile_size, parameters=params)
