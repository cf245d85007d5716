"""
Tile Store - Content-addressed MBTiles database

Tile images are stored once per distinct content hash; a map table points
each (zoom, column, row) at an image. After the crawl a `tiles` view exposes
the standard MBTiles layout (zoom_level, tile_column, tile_row, tile_data).

Schema:
    images(id, hash, data)          one row per distinct tile image
    map(id, image_id, zoom_level, tile_column, tile_row)
    metadata(name, value)
    tiles                           view joining map -> images (built by finalize)

Batches are committed through commit_batch(), which is the only writer of
the images table. It holds the store lock for the whole
lookup-hash / allocate-id / insert transaction, so a hash can never be
given two ids by concurrent writers.
"""
import hashlib
import io
import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Optional, Sequence, Tuple

from PIL import Image

from tile_grid import Extent, TileCoordinate

logger = logging.getLogger(__name__)

SCHEMA = """
    CREATE TABLE IF NOT EXISTS images (
        id INTEGER NOT NULL UNIQUE,
        hash TEXT NOT NULL UNIQUE,
        data BLOB NOT NULL
    );

    CREATE TABLE IF NOT EXISTS map (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        image_id INTEGER NOT NULL REFERENCES images (id),
        zoom_level INTEGER NOT NULL,
        tile_column INTEGER NOT NULL,
        tile_row INTEGER NOT NULL
    );

    CREATE INDEX IF NOT EXISTS map_address ON map (zoom_level, tile_column, tile_row);

    CREATE TABLE IF NOT EXISTS metadata (name TEXT, value TEXT);

    CREATE UNIQUE INDEX IF NOT EXISTS name ON metadata (name);
"""

FINALIZE = """
    DROP INDEX IF EXISTS map_address;

    CREATE UNIQUE INDEX IF NOT EXISTS map_index ON map (zoom_level, tile_column, tile_row);

    CREATE VIEW IF NOT EXISTS tiles AS
        SELECT
            map.zoom_level AS zoom_level,
            map.tile_column AS tile_column,
            map.tile_row AS tile_row,
            images.data AS tile_data
        FROM map
        JOIN images ON images.id = map.image_id;
"""


@dataclass(frozen=True)
class TileImage:
    """Downloaded tile payload, alive between fetch and commit"""

    tile: TileCoordinate
    data: bytes


class BatchCommitError(Exception):
    """A batch transaction failed and was rolled back"""

    def __init__(self, size: int, reason: str):
        super().__init__(f"Batch of {size} tiles rolled back: {reason}")
        self.size = size
        self.reason = reason


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def detect_image_format(data: bytes) -> str:
    """Detect image format using Pillow"""
    im = Image.open(io.BytesIO(data))
    fmt = im.format.lower()

    # Normalize format names for metadata
    if fmt == "jpeg":
        return "jpg"
    elif fmt in ("png", "webp"):
        return fmt
    else:
        raise ValueError(f"Unsupported image format: {fmt}")


def mbtiles_metadata(
    name: str,
    extent: Extent,
    zoom_min: int,
    zoom_max: int,
    *,
    tile_format: Optional[str] = None,
    description: str = "",
) -> Dict[str, str]:
    """MBTiles metadata rows. Without tile_format the writer detects it later."""
    metadata = {
        "name": name,
        "type": "overlay",
        "version": "1.0",
        "description": description,
        "bounds": ",".join(map(str, extent.as_tuple())),
        "minzoom": str(zoom_min),
        "maxzoom": str(zoom_max),
    }
    if tile_format:
        metadata["format"] = tile_format
    return metadata


class TileStore:
    """SQLite tile cache. Each thread works through its own connect()."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    @classmethod
    def open(cls, path: Path, replace: bool = False) -> "TileStore":
        """Create (or reuse) the database at path and ensure the schema exists"""
        path = Path(path)
        if replace and path.exists():
            path.unlink()
            for suffix in ("-wal", "-shm"):
                Path(f"{path}{suffix}").unlink(missing_ok=True)
            logger.info("Removed existing tile cache %s", path)

        store = cls(path)
        conn = store.connect()
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.executescript(SCHEMA)
        finally:
            conn.close()
        return store

    def connect(self) -> sqlite3.Connection:
        # Autocommit mode; commit_batch issues BEGIN/COMMIT itself
        return sqlite3.connect(str(self.path), timeout=30.0, isolation_level=None)

    # ------------------------------------------------------------------------
    # Batch writes
    # ------------------------------------------------------------------------

    def commit_batch(self, conn: sqlite3.Connection, images: Sequence[TileImage]) -> int:
        """
        Store a batch of tile images in one transaction.

        Identical images share one images row, whether they meet inside this
        batch or an earlier one. Map rows at the same address are replaced.

        Returns:
            Number of new rows added to the images table

        Raises:
            BatchCommitError: The transaction failed and was rolled back
        """
        hashed = [(image, content_hash(image.data)) for image in images]

        with self._lock:
            try:
                conn.execute("BEGIN IMMEDIATE")
                added = self._write_batch(conn.cursor(), hashed)
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise BatchCommitError(len(hashed), str(e)) from e

        logger.debug("Committed batch of %d tiles (%d new images)", len(hashed), added)
        return added

    @staticmethod
    def _write_batch(
        cur: sqlite3.Cursor, hashed: Sequence[Tuple[TileImage, str]]
    ) -> int:
        batch_ids: Dict[str, int] = {}
        new_images = []
        next_id: Optional[int] = None

        for image, digest in hashed:
            if digest in batch_ids:
                continue

            row = cur.execute("SELECT id FROM images WHERE hash = ?", (digest,)).fetchone()
            if row is not None:
                batch_ids[digest] = row[0]
                continue

            if next_id is None:
                next_id = cur.execute("SELECT COALESCE(MAX(id), 0) FROM images").fetchone()[0]
            next_id += 1
            batch_ids[digest] = next_id
            new_images.append((next_id, digest, sqlite3.Binary(image.data)))

        cur.executemany(
            "INSERT INTO images (id, hash, data) VALUES (?, ?, ?)", new_images
        )

        # Last image wins if one address shows up twice in a batch
        entries = {}
        for image, digest in hashed:
            tile = image.tile
            entries[(tile.level, tile.column, tile.row)] = batch_ids[digest]

        cur.executemany(
            "DELETE FROM map WHERE zoom_level = ? AND tile_column = ? AND tile_row = ?",
            list(entries),
        )
        cur.executemany(
            "INSERT INTO map (image_id, zoom_level, tile_column, tile_row) "
            "VALUES (?, ?, ?, ?)",
            [(image_id, z, x, y) for (z, x, y), image_id in entries.items()],
        )
        return len(new_images)

    # ------------------------------------------------------------------------
    # Finalize and read access
    # ------------------------------------------------------------------------

    def finalize(self, metadata: Optional[Dict[str, str]] = None) -> None:
        """Build the unique map index and the tiles view, then write metadata"""
        conn = self.connect()
        try:
            with self._lock:
                conn.executescript(FINALIZE)
                if metadata:
                    self.write_metadata(conn, metadata.items())
        finally:
            conn.close()

    @staticmethod
    def write_metadata(
        conn: sqlite3.Connection, items: Iterable[Tuple[str, str]]
    ) -> None:
        with conn:
            conn.executemany(
                "INSERT OR REPLACE INTO metadata (name, value) VALUES (?, ?)",
                list(items),
            )

    def image_format(self, default: str = "png") -> str:
        """Format of the stored tiles, judged from the first image"""
        conn = self.connect()
        try:
            row = conn.execute("SELECT data FROM images ORDER BY id LIMIT 1").fetchone()
        finally:
            conn.close()

        if row is None:
            return default
        try:
            return detect_image_format(row[0])
        except (OSError, ValueError) as e:
            logger.warning("Could not detect tile format (%s), assuming %s", e, default)
            return default

    def read_tile(self, zoom: int, column: int, row: int) -> Optional[bytes]:
        conn = self.connect()
        try:
            result = conn.execute(
                "SELECT images.data FROM map JOIN images ON images.id = map.image_id "
                "WHERE map.zoom_level = ? AND map.tile_column = ? AND map.tile_row = ?",
                (zoom, column, row),
            ).fetchone()
        finally:
            conn.close()
        return None if result is None else result[0]

    def get_cache_stats(self) -> dict:
        """Get statistics of the tile cache"""
        conn = self.connect()
        try:
            cur = conn.cursor()
            metadata = {
                row[0]: row[1] for row in cur.execute("SELECT name, value FROM metadata")
            }

            cur.execute("SELECT MIN(zoom_level), MAX(zoom_level), COUNT(*) FROM map")
            min_zoom, max_zoom, tile_count = cur.fetchone()

            cur.execute("SELECT COUNT(*) FROM images")
            image_count = cur.fetchone()[0]
        finally:
            conn.close()

        return {
            "tile_count": tile_count,
            "image_count": image_count,
            "min_zoom": min_zoom,
            "max_zoom": max_zoom,
            "metadata": metadata,
        }
