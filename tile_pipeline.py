"""
Tile Pipeline - Download tiles in parallel and commit them in deduplicated batches

    TileEnumerator -> Downloader (P fetch threads) -> bounded queue
                   -> BatchWriter (Q writer threads, batches of B) -> TileStore

The downloader closes the queue by putting one END_OF_STREAM marker per
writer once every fetch has finished. Writers commit full batches as they
fill up and hand their leftovers back when they see the marker; the
leftovers go out as the final partial batch(es). A failed fetch or a failed
batch is recorded and the crawl goes on.
"""
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import requests

from tile_grid import TileCoordinate
from tile_sources import TileUrlSource
from tile_store import BatchCommitError, TileImage, TileStore

logger = logging.getLogger(__name__)

USER_AGENT = "TileCutter/1.0"
DEFAULT_BATCH_SIZE = 50
END_OF_STREAM = object()

Fetch = Callable[[str], bytes]


@dataclass(frozen=True)
class TileFailure:
    """A tile that could not be downloaded"""

    zoom: int
    column: int
    row: int
    reason: str

    @classmethod
    def for_tile(cls, tile: TileCoordinate, reason: str) -> "TileFailure":
        return cls(zoom=tile.level, column=tile.column, row=tile.row, reason=reason)


@dataclass(frozen=True)
class BatchFailure:
    """A batch whose transaction was rolled back"""

    tiles: Tuple[TileCoordinate, ...]
    reason: str


@dataclass
class CrawlReport:
    tiles_requested: int = 0
    tiles_downloaded: int = 0
    tiles_written: int = 0
    images_written: int = 0
    failures: List[TileFailure] = field(default_factory=list)
    batch_failures: List[BatchFailure] = field(default_factory=list)
    cancelled: bool = False


# ============================================================================
# Transport
# ============================================================================


class HttpFetcher:
    """
    Single-attempt HTTP GET returning the response body.

    Each calling thread gets its own requests.Session. Anything but a 2xx
    answer raises requests.HTTPError; timeouts raise requests.Timeout.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        user_agent: str = USER_AGENT,
        headers: Optional[Dict[str, str]] = None,
    ):
        self.timeout = timeout
        self.headers = {"User-Agent": user_agent}
        self.headers.update(headers or {})
        self._local = threading.local()
        self._sessions: List[requests.Session] = []
        self._sessions_lock = threading.Lock()

    @property
    def session(self) -> requests.Session:
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(self.headers)
            self._local.session = session
            with self._sessions_lock:
                self._sessions.append(session)
        return session

    def __call__(self, url: str) -> bytes:
        response = self.session.get(url, timeout=self.timeout)
        if not 200 <= response.status_code < 300:
            raise requests.HTTPError(f"HTTP {response.status_code}", response=response)
        return response.content

    def close(self) -> None:
        with self._sessions_lock:
            for session in self._sessions:
                session.close()
            self._sessions.clear()

    def __enter__(self) -> "HttpFetcher":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


# ============================================================================
# Stage 1 - Downloader
# ============================================================================


class Downloader:
    """
    Fetch tiles with at most `max_workers` requests in flight.

    The tile iterable is consumed lazily: a new tile is only taken once a
    fetch slot is free. Setting `cancel_event` stops new fetches; fetches
    already running are allowed to finish.
    """

    def __init__(
        self,
        source: TileUrlSource,
        fetch: Fetch,
        max_workers: int = 10,
        *,
        cancel_event: Optional[threading.Event] = None,
        on_failure: Optional[Callable[[TileFailure], None]] = None,
        on_progress: Optional[Callable[[TileCoordinate], None]] = None,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.source = source
        self.fetch = fetch
        self.max_workers = max_workers
        self.cancel_event = cancel_event or threading.Event()
        self.on_failure = on_failure
        self.on_progress = on_progress

        self.requested = 0
        self.downloaded = 0
        self.cancelled = False
        self.failures: List[TileFailure] = []
        self._lock = threading.Lock()

    def run(
        self, tiles: Iterable[TileCoordinate], output: queue.Queue, consumers: int = 1
    ) -> None:
        """Download every tile into `output`, then close it for `consumers` readers"""
        slots = threading.BoundedSemaphore(self.max_workers)
        try:
            with ThreadPoolExecutor(
                max_workers=self.max_workers, thread_name_prefix="tile-fetch"
            ) as executor:
                for tile in tiles:
                    slots.acquire()
                    if self.cancel_event.is_set():
                        slots.release()
                        self.cancelled = True
                        logger.info("Download cancelled after %d tiles", self.requested)
                        break
                    self.requested += 1
                    future = executor.submit(self._download, tile, output)
                    future.add_done_callback(lambda _: slots.release())
        finally:
            for _ in range(consumers):
                output.put(END_OF_STREAM)

    def _download(self, tile: TileCoordinate, output: queue.Queue) -> None:
        try:
            url = self.source.tile_url(tile)
            data = self.fetch(url)
        except Exception as e:  # every transport failure only costs this tile
            self._record_failure(tile, str(e) or type(e).__name__)
        else:
            output.put(TileImage(tile=tile, data=data))
            with self._lock:
                self.downloaded += 1
        finally:
            if self.on_progress is not None:
                self.on_progress(tile)

    def _record_failure(self, tile: TileCoordinate, reason: str) -> None:
        failure = TileFailure.for_tile(tile, reason)
        logger.debug(
            "Tile %d/%d/%d failed: %s", tile.level, tile.column, tile.row, reason
        )
        with self._lock:
            self.failures.append(failure)
        if self.on_failure is not None:
            self.on_failure(failure)


# ============================================================================
# Stage 2 - Deduplicating batch writer
# ============================================================================


class BatchWriter:
    """
    Drain a queue of TileImages into the store in batches of `batch_size`.

    Workers keep their own buffer. Full batches are committed right away;
    whatever is left when END_OF_STREAM arrives is committed by join() once
    all workers have stopped.
    """

    def __init__(
        self,
        store: TileStore,
        workers: int = 2,
        batch_size: int = DEFAULT_BATCH_SIZE,
        *,
        on_batch_failure: Optional[Callable[[BatchFailure], None]] = None,
    ):
        if workers < 1:
            raise ValueError("workers must be at least 1")
        if batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        self.store = store
        self.workers = workers
        self.batch_size = batch_size
        self.on_batch_failure = on_batch_failure

        self.tiles_written = 0
        self.images_written = 0
        self.batch_failures: List[BatchFailure] = []
        self._leftovers: List[TileImage] = []
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    def start(self, source: queue.Queue) -> None:
        for i in range(self.workers):
            thread = threading.Thread(
                target=self._work, args=(source,), name=f"tile-writer-{i}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

    def join(self) -> None:
        """Wait for the workers, then commit the leftover partial batches"""
        for thread in self._threads:
            thread.join()
        self._threads.clear()

        leftovers, self._leftovers = self._leftovers, []
        if not leftovers:
            return

        conn = self.store.connect()
        try:
            for start in range(0, len(leftovers), self.batch_size):
                self._commit(conn, leftovers[start : start + self.batch_size])
        finally:
            conn.close()

    def _work(self, source: queue.Queue) -> None:
        conn = self.store.connect()
        buffer: List[TileImage] = []
        try:
            while True:
                item = source.get()
                if item is END_OF_STREAM:
                    break
                buffer.append(item)
                if len(buffer) >= self.batch_size:
                    batch = buffer[: self.batch_size]
                    buffer = buffer[self.batch_size :]
                    self._commit(conn, batch)
        finally:
            with self._lock:
                self._leftovers.extend(buffer)
            conn.close()

    def _commit(self, conn, batch: List[TileImage]) -> None:
        try:
            added = self.store.commit_batch(conn, batch)
        except BatchCommitError as e:
            reason = e.reason
            logger.error("%s", e)
        except Exception as e:  # a dead writer would leave the queue undrained
            reason = str(e) or type(e).__name__
            logger.exception("Batch of %d tiles failed", len(batch))
        else:
            with self._lock:
                self.tiles_written += len(batch)
                self.images_written += added
            return

        failure = BatchFailure(tiles=tuple(image.tile for image in batch), reason=reason)
        with self._lock:
            self.batch_failures.append(failure)
        if self.on_batch_failure is not None:
            self.on_batch_failure(failure)


# ============================================================================
# Main Pipeline
# ============================================================================


def build_tile_cache(
    tiles: Iterable[TileCoordinate],
    source: TileUrlSource,
    store: TileStore,
    fetch: Fetch,
    *,
    download_workers: int = 10,
    write_workers: int = 2,
    batch_size: int = DEFAULT_BATCH_SIZE,
    queue_size: Optional[int] = None,
    metadata: Optional[Dict[str, str]] = None,
    cancel_event: Optional[threading.Event] = None,
    on_failure: Optional[Callable[[TileFailure], None]] = None,
    on_batch_failure: Optional[Callable[[BatchFailure], None]] = None,
    on_progress: Optional[Callable[[TileCoordinate], None]] = None,
) -> CrawlReport:
    """
    Crawl `tiles` into `store` and finalize it.

    Args:
        tiles: TMS tiles to fetch, usually a TileEnumerator
        source: Builds the URL of each tile
        store: Target tile store (already opened)
        fetch: fetch(url) -> bytes, raising on failure
        download_workers: Concurrent fetches (P)
        write_workers: Concurrent batch writers (Q)
        batch_size: Tiles per committed batch (B)
        queue_size: Capacity of the hand-off queue
        metadata: MBTiles metadata; "format" is detected when missing
        cancel_event: Set to stop issuing new fetches

    Returns:
        CrawlReport with counts and failure records
    """
    if queue_size is None:
        queue_size = max(2 * batch_size * write_workers, 2 * download_workers)
    tile_queue: queue.Queue = queue.Queue(maxsize=queue_size)

    downloader = Downloader(
        source,
        fetch,
        download_workers,
        cancel_event=cancel_event,
        on_failure=on_failure,
        on_progress=on_progress,
    )
    writer = BatchWriter(
        store, write_workers, batch_size, on_batch_failure=on_batch_failure
    )

    writer.start(tile_queue)
    try:
        downloader.run(tiles, tile_queue, consumers=write_workers)
    finally:
        writer.join()

    metadata = dict(metadata or {})
    if "format" not in metadata:
        metadata["format"] = store.image_format()
    store.finalize(metadata)

    return CrawlReport(
        tiles_requested=downloader.requested,
        tiles_downloaded=downloader.downloaded,
        tiles_written=writer.tiles_written,
        images_written=writer.images_written,
        failures=list(downloader.failures),
        batch_failures=list(writer.batch_failures),
        cancelled=downloader.cancelled,
    )
