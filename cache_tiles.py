#!/usr/bin/env python3
"""
Tile Cutter - Crawl a map service for an extent and zoom range into MBTiles

Downloads every tile covering a lat/lon rectangle from a tile, ArcGIS dynamic
or WMS service and stores it in a content-addressed MBTiles database:
identical tile images (empty sea, blank land) are stored once and shared by
all the tile addresses that show them.

Pipeline:
    1. Enumerate TMS tiles for the extent at each zoom level
    2. Build each tile URL for the selected service type
    3. Download in parallel (-p), one attempt per tile, failures are reported
    4. Hash, deduplicate and commit in batches (-b) from parallel writers (-w)
    5. Build the unique tile index, the `tiles` view and metadata

Service types (-s):
    plain       "{url}/{z}/{x}/{y}.png" or any template with {z} {x} {y} {q}
    subdomain   template with {s}, e.g. "http://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png"
    dynamic     ArcGIS dynamic map service (MapServer URL, /export is appended)
    wms111      WMS 1.1.1 GetMap endpoint
    wms130      WMS 1.3.0 GetMap endpoint

CLI Usage:
    # ArcGIS dynamic service, default extent, zoom 7-10
    python cache_tiles.py -m "http://sampleserver1.arcgisonline.com/ArcGIS/rest/services/Demographics/ESRI_Census_USA/MapServer"

    # OpenStreetMap, zoom 7 only, XYZ rows
    python cache_tiles.py -s plain -m http://tile.openstreetmap.org --row-scheme xyz -z 7 -Z 7

    # WMS 1.3.0 with layer selection
    python cache_tiles.py -s wms130 -m https://example.com/wms --params "LAYERS=roads&STYLES=" -o cache/
"""
import argparse
import logging
import signal
import sys
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from tqdm import tqdm

from tile_grid import Extent, TileEnumerator
from tile_pipeline import (
    DEFAULT_BATCH_SIZE,
    CrawlReport,
    HttpFetcher,
    TileFailure,
    build_tile_cache,
)
from tile_sources import (
    OSM_SUBDOMAINS,
    SOURCE_ALIASES,
    ConfigurationError,
    create_tile_source,
)
from tile_store import TileStore, mbtiles_metadata

DEFAULT_MAP_SERVICE_URL = (
    "http://sampleserver1.arcgisonline.com/ArcGIS/rest/services/"
    "Demographics/ESRI_Census_USA/MapServer"
)
DEFAULT_EXTENT = (-95.844727, 35.978006, -88.989258, 40.563895)
CACHE_FILE_NAME = "tilecache.mbtiles"
MAX_ZOOM = 30
ROW_SCHEMES = {"tms": False, "xyz": True}


@dataclass(frozen=True)
class Config:
    """Immutable configuration for a cache run"""

    map_service_url: str
    source_type: str
    service_params: str
    output_dir: Path
    zoom_min: int
    zoom_max: int
    extent: Extent
    parallel_ops: int
    writers: int
    batch_size: int
    replace_existing: bool
    timeout: float
    tile_size: int
    subdomains: Tuple[str, ...]
    row_scheme: Optional[str]  # None: the source type's default

    @property
    def db_path(self) -> Path:
        return self.output_dir / CACHE_FILE_NAME


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def process_cache(config: Config) -> CrawlReport:
    """Main processing pipeline"""
    flip_rows = None if config.row_scheme is None else ROW_SCHEMES[config.row_scheme]
    source = create_tile_source(
        config.source_type,
        config.map_service_url,
        config.service_params,
        tile_size=config.tile_size,
        subdomains=config.subdomains,
        flip_rows=flip_rows,
    )
    tiles = TileEnumerator(
        config.zoom_min, config.zoom_max, config.extent, config.tile_size
    )
    total = len(tiles)

    print(f"Caching {config.map_service_url} ({config.source_type})")
    print(f"  Extent: {config.extent.as_tuple()}")
    for zoom in range(config.zoom_min, config.zoom_max + 1):
        print(f"  Zoom {zoom}: {tiles.count(zoom)} tiles")
    print(f"  Total tiles: {total}")
    print(f"Output cache: {config.db_path}")

    store = TileStore.open(config.db_path, replace=config.replace_existing)
    metadata = mbtiles_metadata(
        config.db_path.stem,
        config.extent,
        config.zoom_min,
        config.zoom_max,
        description=f"Tile cache of {config.map_service_url}",
    )

    cancel_event = threading.Event()

    with HttpFetcher(timeout=config.timeout) as fetch, tqdm(
        total=total, desc="Caching tiles", unit="tile"
    ) as pbar:

        def report_failure(failure: TileFailure) -> None:
            pbar.write(
                f"  Failed tile {failure.zoom}/{failure.column}/{failure.row}: "
                f"{failure.reason}"
            )

        def interrupt(signum, frame) -> None:
            pbar.write("Interrupted, finishing tiles in flight...")
            cancel_event.set()

        previous_handler = signal.signal(signal.SIGINT, interrupt)
        try:
            report = build_tile_cache(
                tiles,
                source,
                store,
                fetch,
                download_workers=config.parallel_ops,
                write_workers=config.writers,
                batch_size=config.batch_size,
                metadata=metadata,
                cancel_event=cancel_event,
                on_failure=report_failure,
                on_batch_failure=lambda f: pbar.write(
                    f"  Lost batch of {len(f.tiles)} tiles: {f.reason}"
                ),
                on_progress=lambda _: pbar.update(1),
            )
        finally:
            signal.signal(signal.SIGINT, previous_handler)

    stats = store.get_cache_stats()
    print("\nComplete!" if not report.cancelled else "\nCancelled.")
    print(f"  Downloaded: {report.tiles_downloaded}/{report.tiles_requested} tiles")
    print(f"  Written: {report.tiles_written} tiles, {report.images_written} new images")
    print(f"  Cache: {stats['tile_count']} tiles sharing {stats['image_count']} images")
    if report.failures:
        print(f"  Failed downloads: {len(report.failures)}")
    if report.batch_failures:
        lost = sum(len(f.tiles) for f in report.batch_failures)
        print(f"  Failed batches: {len(report.batch_failures)} ({lost} tiles)")
    print(f"  MBTiles: {config.db_path}")
    return report


def parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("true", "yes", "1"):
        return True
    if lowered in ("false", "no", "0"):
        return False
    raise argparse.ArgumentTypeError(f"Not a boolean: {value}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Cache map service tiles for an extent into an MBTiles database",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # ArcGIS dynamic map service, zoom 7-10
  %(prog)s -m "http://server/ArcGIS/rest/services/Census/MapServer"

  # OpenStreetMap through a/b/c subdomains
  %(prog)s -s subdomain -m "http://{s}.tile.openstreetmap.org/{z}/{x}/{y}.png"

  # WMS 1.1.1 with extra parameters, 4 fetches at a time
  %(prog)s -s wms111 -m https://example.com/wms --params "LAYERS=a,b" -p 4
        """,
    )

    parser.add_argument(
        "-m",
        "--mapservice",
        default=DEFAULT_MAP_SERVICE_URL,
        help="Url (or url template) of the map service to be cached",
    )
    parser.add_argument(
        "-s",
        "--source",
        default="dynamic",
        choices=sorted(SOURCE_ALIASES),
        metavar="TYPE",
        help="Service type: plain, subdomain, dynamic, wms111, wms130 (default: dynamic)",
    )
    parser.add_argument(
        "--params",
        default="",
        help="Extra 'key=value&key=value' request parameters (dynamic and WMS)",
    )
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=Path.cwd(),
        help=f"Directory where {CACHE_FILE_NAME} is stored (default: current directory)",
    )
    parser.add_argument("-z", "--minz", type=int, default=7, help="Minimum zoom level (default: 7)")
    parser.add_argument("-Z", "--maxz", type=int, default=10, help="Maximum zoom level (default: 10)")
    parser.add_argument("-x", "--minx", type=float, default=DEFAULT_EXTENT[0], help="Minimum longitude")
    parser.add_argument("-y", "--miny", type=float, default=DEFAULT_EXTENT[1], help="Minimum latitude")
    parser.add_argument("-X", "--maxx", type=float, default=DEFAULT_EXTENT[2], help="Maximum longitude")
    parser.add_argument("-Y", "--maxy", type=float, default=DEFAULT_EXTENT[3], help="Maximum latitude")
    parser.add_argument(
        "-p",
        "--parallelops",
        type=int,
        default=10,
        help="Number of concurrent downloads (default: 10)",
    )
    parser.add_argument(
        "-w",
        "--writers",
        type=int,
        default=2,
        help="Number of concurrent batch writers (default: 2)",
    )
    parser.add_argument(
        "-b",
        "--batch-size",
        type=int,
        default=DEFAULT_BATCH_SIZE,
        help=f"Tiles per database transaction (default: {DEFAULT_BATCH_SIZE})",
    )
    parser.add_argument(
        "-r",
        "--replace",
        type=parse_bool,
        default=True,
        metavar="BOOL",
        help="Delete an existing tile cache before crawling (default: true)",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=30.0,
        help="Seconds before a single tile request is given up (default: 30)",
    )
    parser.add_argument("--tile-size", type=int, default=256, help="Tile size in pixels (default: 256)")
    parser.add_argument(
        "--subdomains",
        default=",".join(OSM_SUBDOMAINS),
        help="Comma separated hosts for the subdomain source (default: a,b,c)",
    )
    parser.add_argument(
        "--row-scheme",
        choices=sorted(ROW_SCHEMES),
        help="Row numbering of a template service; tms keeps rows, xyz flips them "
        "(default depends on the service type; bbox services accept only tms)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)

    # Validate inputs
    if not (0 <= args.minz <= args.maxz <= MAX_ZOOM):
        print(f"Error: Invalid zoom range (must be 0-{MAX_ZOOM}, min <= max)", file=sys.stderr)
        return 1

    for lat in (args.miny, args.maxy):
        if not -90.0 < lat < 90.0:
            print("Error: Latitudes must be strictly between -90 and 90", file=sys.stderr)
            return 1

    if args.parallelops < 1 or args.writers < 1 or args.batch_size < 1:
        print("Error: Worker counts and batch size must be positive", file=sys.stderr)
        return 1

    if args.tile_size < 1:
        print("Error: Tile size must be a positive number of pixels", file=sys.stderr)
        return 1

    if args.timeout <= 0:
        print("Error: Timeout must be greater than 0 seconds", file=sys.stderr)
        return 1

    if args.output.exists() and not args.output.is_dir():
        print(f"Error: Output is not a directory: {args.output}", file=sys.stderr)
        return 1
    args.output.mkdir(parents=True, exist_ok=True)

    config = Config(
        map_service_url=args.mapservice,
        source_type=args.source,
        service_params=args.params,
        output_dir=args.output,
        zoom_min=args.minz,
        zoom_max=args.maxz,
        extent=Extent(args.minx, args.miny, args.maxx, args.maxy),
        parallel_ops=args.parallelops,
        writers=args.writers,
        batch_size=args.batch_size,
        replace_existing=args.replace,
        timeout=args.timeout,
        tile_size=args.tile_size,
        subdomains=tuple(s.strip() for s in args.subdomains.split(",") if s.strip()),
        row_scheme=args.row_scheme,
    )

    try:
        report = process_cache(config)
    except ConfigurationError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    return 130 if report.cancelled else 0


if __name__ == "__main__":
    sys.exit(main())
