"""
Crawl Plan - Tile counts and ground resolution per zoom level

Shows what a cache run over an extent will fetch before any request is made:
tile columns, rows and count per zoom level, plus the ground resolution
(meters per pixel) at the extent's center latitude.

Formula: resolution = (2 * pi * R / tile_size) / 2^zoom * cos(lat)

Usage:
    python show_crawl_plan.py -95.844727 35.978006 -88.989258 40.563895 --zoom 7 12
"""
import argparse

import numpy as np
import pandas as pd

from tile_grid import DEFAULT_TILE_SIZE, Extent, TileEnumerator, resolution


def crawl_plan(
    extent: Extent, zoom_min: int, zoom_max: int, tile_size: int = DEFAULT_TILE_SIZE
) -> pd.DataFrame:
    """One row per zoom level with the tile span and ground resolution"""
    tiles = TileEnumerator(zoom_min, zoom_max, extent, tile_size)
    center_lat = (extent.ymin + extent.ymax) / 2.0
    cos_lat = np.cos(np.radians(center_lat))

    data = []
    for zoom in range(zoom_min, zoom_max + 1):
        min_col, min_row, max_col, max_row = tiles.tile_range(zoom)
        columns = max_col - min_col + 1
        rows = max_row - min_row + 1
        data.append(
            [zoom, columns, rows, columns * rows, resolution(zoom, tile_size) * cos_lat]
        )

    df = pd.DataFrame(
        data, columns=["Zoom Level", "Columns", "Rows", "Tiles", "Ground Resolution"]
    )
    return df.set_index("Zoom Level")


def main(argv=None):
    parser = argparse.ArgumentParser(
        description="Show the tiles a cache run over an extent will request"
    )
    parser.add_argument("minx", type=float, help="Minimum longitude")
    parser.add_argument("miny", type=float, help="Minimum latitude")
    parser.add_argument("maxx", type=float, help="Maximum longitude")
    parser.add_argument("maxy", type=float, help="Maximum latitude")
    parser.add_argument(
        "-z",
        "--zoom",
        nargs=2,
        type=int,
        metavar=("MIN", "MAX"),
        default=[7, 10],
        help="Zoom level range (default: 7 10)",
    )
    parser.add_argument("--tile-size", type=int, default=DEFAULT_TILE_SIZE)
    args = parser.parse_args(argv)

    extent = Extent(args.minx, args.miny, args.maxx, args.maxy)
    df = crawl_plan(extent, args.zoom[0], args.zoom[1], args.tile_size)

    print(df)
    print(f"\nTotal tiles: {int(df['Tiles'].sum())}")


if __name__ == "__main__":
    main()
