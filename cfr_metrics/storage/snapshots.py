"""Immutable, gzip-compressed title snapshots keyed by (title, date).

Write path (crash safe):
  1. Create a temp file next to the final path (same directory, so the
     rename below never crosses filesystems).
  2. Compress chunks into it as they arrive, counting raw bytes; abort with
     ``SizeLimitExceeded`` as soon as the input passes the cap.
  3. fsync, then ``os.replace`` onto the final path. The rename is the only
     operation that ever touches the final path.
  4. Record the pointer row in the database.

On any failure the temp file is removed, so a crash or rejected input never
leaves a partial blob at the final path.

Each key is written at most once. Callers check ``exists`` before
dispatching a save; a second save for a stored key raises ``StorageError``
before anything is written.
"""

import gzip
import logging
import os
import tempfile
import zlib
from collections.abc import AsyncIterable
from pathlib import Path

from cfr_metrics.errors import SizeLimitExceeded, SnapshotNotFoundError, StorageError
from cfr_metrics.paths import snapshot_dir, snapshot_filename, snapshot_path
from cfr_metrics.storage.database import Database

logger = logging.getLogger(__name__)

MAX_SNAPSHOT_BYTES = 300 << 20  # raw XML accepted from the source
MAX_DECOMPRESSED_BYTES = 300 << 20  # raw XML returned by read(); never below the input cap
READ_CHUNK = 64 * 1024


class _BlobWriter:
    """Streams raw bytes through gzip into a temp file, enforcing a size cap."""

    def __init__(self, directory: Path, final_name: str, limit: int):
        self.limit = limit
        self.written = 0
        self._tmp = tempfile.NamedTemporaryFile(
            dir=directory, prefix=final_name + ".tmp-", delete=False,
        )
        self.tmp_path = Path(self._tmp.name)
        self._gz = gzip.GzipFile(fileobj=self._tmp, mode="wb")

    def write(self, chunk: bytes) -> None:
        self.written += len(chunk)
        if self.written > self.limit:
            raise SizeLimitExceeded("snapshot input", self.limit)
        try:
            self._gz.write(chunk)
        except OSError as e:
            raise StorageError(f"Cannot write {self.tmp_path}: {e}") from e

    def commit(self, final_path: Path) -> None:
        self._gz.close()
        self._tmp.flush()
        os.fsync(self._tmp.fileno())
        self._tmp.close()
        os.replace(self.tmp_path, final_path)
        os.chmod(final_path, 0o644)

    def abort(self) -> None:
        try:
            self._gz.close()
        except (OSError, ValueError):
            pass
        self._tmp.close()
        self.tmp_path.unlink(missing_ok=True)


class SnapshotStore:
    """Compressed snapshot blobs on disk plus pointer rows in the database.

    Args:
        database: Database holding the ``snapshots`` pointer table.
        data_dir: Root data directory; blobs live under ``<data_dir>/xml``.
        max_input_bytes: Cap on raw bytes accepted by ``save``. Clamped to
                         ``max_output_bytes`` so every stored snapshot
                         stays readable.
        max_output_bytes: Cap on decompressed bytes returned by ``read``.
    """

    def __init__(
        self,
        database: Database,
        data_dir: Path,
        max_input_bytes: int = MAX_SNAPSHOT_BYTES,
        max_output_bytes: int = MAX_DECOMPRESSED_BYTES,
    ):
        self.database = database
        self.data_dir = Path(data_dir)
        self.directory = snapshot_dir(self.data_dir)
        self.max_input_bytes = min(max_input_bytes, max_output_bytes)
        self.max_output_bytes = max_output_bytes
        self.directory.mkdir(parents=True, exist_ok=True)

    @classmethod
    def from_config(cls, database: Database, data_dir: Path, config: dict) -> "SnapshotStore":
        storage = config.get("storage", {})
        return cls(
            database,
            data_dir,
            max_input_bytes=storage.get("max_snapshot_bytes", MAX_SNAPSHOT_BYTES),
            max_output_bytes=storage.get("max_decompressed_bytes", MAX_DECOMPRESSED_BYTES),
        )

    def exists(self, title: int, issue_date: str) -> bool:
        return self.database.snapshot_exists(title, issue_date)

    async def save(self, title: int, issue_date: str, chunks: AsyncIterable[bytes]) -> int:
        """Stream ``chunks`` into a new snapshot.

        Returns:
            Number of raw (uncompressed) bytes stored.

        Raises:
            SizeLimitExceeded: Input passed ``max_input_bytes``; nothing is kept.
            StorageError: Disk or database failure; nothing is kept on disk.

        Errors raised by ``chunks`` itself propagate unchanged.
        """
        writer = self._open_writer(title, issue_date)
        try:
            async for chunk in chunks:
                writer.write(chunk)
        except BaseException:
            writer.abort()
            raise
        return self._finish(writer, title, issue_date)

    def save_bytes(self, title: int, issue_date: str, data: bytes) -> int:
        """Synchronous variant of ``save`` for an in-memory payload."""
        writer = self._open_writer(title, issue_date)
        try:
            writer.write(data)
        except BaseException:
            writer.abort()
            raise
        return self._finish(writer, title, issue_date)

    def read(self, title: int, issue_date: str) -> bytes:
        """Return the raw XML for a snapshot.

        Raises:
            SnapshotNotFoundError: No pointer for the key.
            SizeLimitExceeded: Decompressed output passed ``max_output_bytes``.
            StorageError: Blob missing or corrupt.
        """
        return self.read_blob(self.locate(title, issue_date))

    def locate(self, title: int, issue_date: str) -> str:
        """Return the blob path recorded for a snapshot."""
        path = self.database.snapshot_path(title, issue_date)
        if path is None:
            raise SnapshotNotFoundError(title, issue_date)
        return path

    def read_blob(self, path: str) -> bytes:
        """Decompress one blob. Touches only the filesystem, so it may run
        off the event loop thread."""
        out = bytearray()
        try:
            with gzip.open(path, "rb") as gz:
                while True:
                    chunk = gz.read(READ_CHUNK)
                    if not chunk:
                        break
                    out += chunk
                    if len(out) > self.max_output_bytes:
                        raise SizeLimitExceeded("decompressed snapshot", self.max_output_bytes)
        except (OSError, EOFError, zlib.error) as e:
            raise StorageError(f"Cannot read snapshot {path}: {e}") from e
        return bytes(out)

    def previous_date(self, title: int, before: str) -> str | None:
        """Latest snapshot date for ``title`` strictly earlier than ``before``."""
        return self.database.previous_snapshot_date(title, before)

    def _open_writer(self, title: int, issue_date: str) -> _BlobWriter:
        if self.exists(title, issue_date):
            raise StorageError(f"Snapshot for title {title} at {issue_date} already stored")
        try:
            return _BlobWriter(self.directory, snapshot_filename(title, issue_date), self.max_input_bytes)
        except OSError as e:
            raise StorageError(f"Cannot create temp file in {self.directory}: {e}") from e

    def _finish(self, writer: _BlobWriter, title: int, issue_date: str) -> int:
        final_path = snapshot_path(self.data_dir, title, issue_date)
        try:
            writer.commit(final_path)
        except OSError as e:
            writer.abort()
            raise StorageError(f"Cannot finalize snapshot {final_path}: {e}") from e
        self.database.insert_snapshot(title, issue_date, str(final_path))
        logger.info(
            "Saved snapshot title %d @ %s (%d bytes raw) -> %s",
            title, issue_date, writer.written, final_path,
        )
        return writer.written
