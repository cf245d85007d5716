"""Shared pytest fixtures for the tile cutter test suite."""

import io
import sys
from pathlib import Path

import pytest

# Ensure the project root is in the path for imports
PROJECT_ROOT = Path(__file__).parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tile_store import TileStore  # noqa: E402

# Default crawl extent of the CLI: Missouri / Illinois area
CENSUS_EXTENT = (-95.844727, 35.978006, -88.989258, 40.563895)


@pytest.fixture()
def store(tmp_path):
    return TileStore.open(tmp_path / "tilecache.mbtiles")


@pytest.fixture()
def png_bytes():
    from PIL import Image

    stream = io.BytesIO()
    Image.new("RGB", (256, 256), (200, 220, 255)).save(stream, format="PNG")
    return stream.getvalue()


def count_rows(store, table):
    conn = store.connect()
    try:
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    finally:
        conn.close()


def map_entries(store):
    """{(zoom, column, row): image_id} for every map row"""
    conn = store.connect()
    try:
        rows = conn.execute(
            "SELECT zoom_level, tile_column, tile_row, image_id FROM map"
        ).fetchall()
    finally:
        conn.close()
    return {(z, x, y): image_id for z, x, y, image_id in rows}
