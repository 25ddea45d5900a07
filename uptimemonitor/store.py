"""Append-only, size-rotated CSV record store with one directory per site.

Each site directory holds files named after their UTC creation time
(``yyyy-mm-dd_HH-MM-SS.csv``), so sorting by file name sorts by age. Only the
newest file is ever appended to.
"""

import csv
import io
import logging
import threading
from collections.abc import Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import TextIO

from .models import MonitorEntry

logger = logging.getLogger(__name__)

HEADER = ("Timestamp", "URL", "Response Code", "Response Time (ms)", "Response Details")

FILE_SUFFIX = ".csv"
FILE_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"

# Length of a formatted file timestamp, e.g. "2024-01-02_10-00-00".
_TIMESTAMP_LENGTH = 19


class RecordStoreError(Exception):
    """Raised when a record file cannot be created, written or closed."""

    pass


class RecordParseError(ValueError):
    """Raised when a stored row cannot be parsed into a MonitorEntry."""

    pass


def file_name_for(moment: datetime) -> str:
    """Return the record file name for a file created at the given moment."""
    return moment.astimezone(UTC).strftime(FILE_TIMESTAMP_FORMAT) + FILE_SUFFIX


def parse_file_timestamp(path: Path) -> datetime:
    """Return the (naive, UTC) creation time encoded in a record file name.

    Raises:
        ValueError: If the name does not start with a file timestamp.
    """
    return datetime.strptime(path.name[:_TIMESTAMP_LENGTH], FILE_TIMESTAMP_FORMAT)


def list_record_files(directory: Path) -> list[Path]:
    """List the record files of a site directory, oldest first."""
    files = [p for p in directory.iterdir() if p.is_file() and p.name.endswith(FILE_SUFFIX)]
    return sorted(files, key=lambda p: p.name)


def entry_to_row(entry: MonitorEntry) -> list[str | int]:
    """Convert an entry into a CSV row."""
    return [
        entry.timestamp.isoformat(),
        entry.url,
        entry.response_code,
        entry.response_time_ms,
        entry.details if entry.details is not None else "",
    ]


def entry_from_row(row: list[str]) -> MonitorEntry:
    """Parse a CSV row into an entry.

    Raises:
        RecordParseError: If the row has too few columns, a malformed
            timestamp or a non-numeric response code or time.
    """
    if len(row) < 4:
        raise RecordParseError(f"Expected at least 4 columns, got {len(row)}: {row!r}")

    try:
        timestamp = datetime.fromisoformat(row[0])
    except ValueError:
        raise RecordParseError(f'Could not parse "{row[0]}" as a timestamp')
    if timestamp.tzinfo is None:
        raise RecordParseError(f'Timestamp "{row[0]}" has no UTC offset')

    try:
        response_code = int(row[2])
        response_time_ms = int(row[3])
    except ValueError:
        raise RecordParseError(f'Could not parse either "{row[2]}" or "{row[3]}" as an integer')

    details = row[4] if len(row) > 4 and row[4] != "" else None

    return MonitorEntry(
        timestamp=timestamp,
        url=row[1],
        response_code=response_code,
        response_time_ms=response_time_ms,
        details=details,
    )


def _complete_text(path: Path) -> str:
    """Read a file up to its last line terminator.

    A file can be appended to while it is read; anything after the final
    newline may be a partially written row and is dropped.
    """
    data = path.read_bytes()
    end = data.rfind(b"\n")
    if end < 0:
        return ""
    return data[: end + 1].decode("utf-8", errors="replace")


def read_entries(path: Path) -> Iterator[MonitorEntry]:
    """Yield the entries of a record file, skipping the header row.

    Rows that fail to parse are logged and skipped.

    Raises:
        OSError: If the file cannot be read.
    """
    reader = csv.reader(io.StringIO(_complete_text(path), newline=""), strict=True)
    try:
        for line_number, row in enumerate(reader, start=1):
            if line_number == 1 or not row:
                continue
            try:
                yield entry_from_row(row)
            except RecordParseError as e:
                logger.warning("%s, row %d: %s", path, line_number, e)
    except csv.Error as e:
        # A quoted multi-line field cut off at the end of a file being written.
        logger.warning("%s: stopped reading at row %d: %s", path, reader.line_num, e)


class RecordWriter:
    """Appends entries to the active record file of one site, rotating by size.

    On construction the newest file in the directory is reused if it does not
    exceed ``max_file_size``; otherwise a new file (with header) is created.
    After every append the file is flushed and, once it exceeds the limit,
    replaced by a new one.

    Example:
        writer = RecordWriter(Path("sites/example"), 4 * 1024 * 1024)
        writer.append(entry)
        writer.close()
    """

    def __init__(self, directory: Path, max_file_size: int) -> None:
        """Open the active record file of a site directory.

        Args:
            directory: Site directory, created if missing.
            max_file_size: Size in bytes after which a new file is started.

        Raises:
            RecordStoreError: If the directory or file cannot be opened.
        """
        self._directory = Path(directory)
        self._max_file_size = max_file_size
        self._lock = threading.Lock()
        self._closed = False
        self._handle: TextIO | None = None
        self._csv = None
        self._path: Path | None = None

        try:
            self._directory.mkdir(parents=True, exist_ok=True)
            files = list_record_files(self._directory)
            if files and files[-1].stat().st_size <= self._max_file_size:
                self._open(files[-1], write_header=False)
                logger.info("Appending records to %s", files[-1])
            else:
                self._open(self._new_file_path(), write_header=True)
                logger.info("Created record file %s", self._path)
        except OSError as e:
            raise RecordStoreError(f"Cannot open record store at {self._directory}: {e}")

    @property
    def path(self) -> Path | None:
        """The file currently being appended to."""
        return self._path

    @property
    def closed(self) -> bool:
        return self._closed

    def append(self, entry: MonitorEntry) -> None:
        """Append one entry, flush it, and rotate if the file grew too large.

        Raises:
            RecordStoreError: If the writer is closed or the write fails.
        """
        with self._lock:
            if self._closed or self._handle is None:
                raise RecordStoreError(f"Record writer for {self._directory} is closed")
            try:
                self._csv.writerow(entry_to_row(entry))
                self._handle.flush()
                if self._path.stat().st_size > self._max_file_size:
                    self._rotate()
            except OSError as e:
                raise RecordStoreError(f"Failed to write to {self._path}: {e}")

    def close(self) -> None:
        """Flush and close the active file. Safe to call more than once."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            if self._handle is not None:
                try:
                    self._handle.close()
                except OSError as e:
                    raise RecordStoreError(f"Failed to close {self._path}: {e}")
                finally:
                    self._handle = None
                    self._csv = None

    def _open(self, path: Path, write_header: bool) -> None:
        handle = open(path, "a", encoding="utf-8", newline="")
        self._handle = handle
        self._csv = csv.writer(handle)
        self._path = path
        if write_header:
            self._csv.writerow(HEADER)
            handle.flush()

    def _rotate(self) -> None:
        """Close the full file and start a new one. Caller holds the lock."""
        self._handle.close()
        self._handle = None
        new_path = self._new_file_path()
        logger.info("Record file %s exceeded %d bytes, rotating to %s", self._path, self._max_file_size, new_path)
        self._open(new_path, write_header=True)

    def _new_file_path(self) -> Path:
        """Path for a new file named after the current UTC time.

        Two rotations within the same second get a zero-padded numeric suffix
        so that a full file is never reopened and name order stays creation
        order.
        """
        name = file_name_for(datetime.now(UTC))
        path = self._directory / name
        counter = 1
        while path.exists():
            path = self._directory / f"{name[: -len(FILE_SUFFIX)]}_{counter:03d}{FILE_SUFFIX}"
            counter += 1
        return path
