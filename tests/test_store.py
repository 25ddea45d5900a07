"""Tests for the CSV record store."""

import csv
import logging
import threading
from datetime import UTC, datetime, timedelta, timezone
from pathlib import Path
from unittest.mock import patch

import pytest

from uptimemonitor.models import MonitorEntry
from uptimemonitor.store import (
    HEADER,
    RecordParseError,
    RecordStoreError,
    RecordWriter,
    entry_from_row,
    entry_to_row,
    file_name_for,
    list_record_files,
    parse_file_timestamp,
    read_entries,
)


def _entry(seconds: int = 0, code: int = 200, details: str | None = None) -> MonitorEntry:
    return MonitorEntry(
        timestamp=datetime(2024, 1, 2, 10, 0, tzinfo=UTC) + timedelta(seconds=seconds),
        url="https://example.com",
        response_code=code,
        response_time_ms=42,
        details=details,
    )


def _threaded_entry(thread: int, i: int) -> MonitorEntry:
    return _entry(thread * 1000 + i, details=f'{{\n  "thread": {thread}\n}}')


@pytest.fixture
def site_dir(tmp_path: Path) -> Path:
    """Return a (not yet existing) site directory."""
    return tmp_path / "sites" / "example"


class TestFileNames:
    """Tests for record file naming."""

    def test_file_name_uses_utc_time(self) -> None:
        """File names encode the UTC creation time."""
        moment = datetime(2024, 1, 2, 12, 30, 5, tzinfo=timezone(timedelta(hours=2)))
        assert file_name_for(moment) == "2024-01-02_10-30-05.csv"

    def test_parse_file_timestamp(self) -> None:
        """The timestamp is read back from the file name."""
        assert parse_file_timestamp(Path("2024-01-02_10-30-05.csv")) == datetime(2024, 1, 2, 10, 30, 5)

    def test_parse_file_timestamp_ignores_suffix(self) -> None:
        """Collision suffixes do not affect the parsed timestamp."""
        assert parse_file_timestamp(Path("2024-01-02_10-30-05_001.csv")) == datetime(2024, 1, 2, 10, 30, 5)

    def test_parse_file_timestamp_rejects_other_names(self) -> None:
        """Names that are not timestamps raise ValueError."""
        with pytest.raises(ValueError):
            parse_file_timestamp(Path("notes.csv"))

    def test_list_record_files_sorted_and_filtered(self, tmp_path: Path) -> None:
        """Only CSV files are listed, oldest first."""
        for name in ["2024-01-03_00-00-00.csv", "2024-01-01_00-00-00.csv", "2024-01-01_00-00-00_001.csv", "x.txt"]:
            (tmp_path / name).write_text("")
        (tmp_path / "sub.csv").mkdir()

        names = [p.name for p in list_record_files(tmp_path)]

        assert names == ["2024-01-01_00-00-00.csv", "2024-01-01_00-00-00_001.csv", "2024-01-03_00-00-00.csv"]


class TestRows:
    """Tests for row conversion."""

    def test_row_without_details_has_empty_last_column(self) -> None:
        """Entries without details write an empty fifth column."""
        assert entry_to_row(_entry()) == ["2024-01-02T10:00:00+00:00", "https://example.com", 200, 42, ""]

    def test_parses_row(self) -> None:
        """A stored row is parsed back into an entry."""
        entry = entry_from_row(["2024-01-02T10:00:00+00:00", "https://example.com", "503", "120", ""])
        assert entry == MonitorEntry(
            timestamp=datetime(2024, 1, 2, 10, 0, tzinfo=UTC),
            url="https://example.com",
            response_code=503,
            response_time_ms=120,
        )

    def test_parses_row_with_four_columns(self) -> None:
        """The details column is optional."""
        entry = entry_from_row(["2024-01-02T10:00:00+00:00", "https://example.com", "200", "5"])
        assert entry.details is None

    def test_keeps_offset_of_timestamp(self) -> None:
        """Timestamps keep the offset they were written with."""
        entry = entry_from_row(["2024-01-02T10:00:00+02:00", "https://example.com", "200", "5"])
        assert entry.timestamp.utcoffset() == timedelta(hours=2)

    def test_rejects_bad_timestamp(self) -> None:
        """Unparseable timestamps raise RecordParseError."""
        with pytest.raises(RecordParseError, match="as a timestamp"):
            entry_from_row(["yesterday", "https://example.com", "200", "5"])

    def test_rejects_naive_timestamp(self) -> None:
        """Timestamps without an offset are rejected."""
        with pytest.raises(RecordParseError, match="no UTC offset"):
            entry_from_row(["2024-01-02T10:00:00", "https://example.com", "200", "5"])

    def test_rejects_non_numeric_code(self) -> None:
        """Non-numeric code or time raise RecordParseError."""
        with pytest.raises(RecordParseError, match="as an integer"):
            entry_from_row(["2024-01-02T10:00:00+00:00", "https://example.com", "OK", "5"])

    def test_rejects_short_row(self) -> None:
        """Rows with fewer than four columns are rejected."""
        with pytest.raises(RecordParseError, match="at least 4 columns"):
            entry_from_row(["2024-01-02T10:00:00+00:00", "https://example.com"])


class TestRecordWriter:
    """Tests for RecordWriter."""

    def test_creates_directory_and_file_with_header(self, site_dir: Path) -> None:
        """A new store starts with a header row."""
        writer = RecordWriter(site_dir, 1024 * 1024)
        writer.close()

        files = list_record_files(site_dir)
        assert len(files) == 1
        assert files[0].read_text(encoding="utf-8").splitlines() == [",".join(HEADER)]

    def test_appended_entries_are_read_back(self, site_dir: Path) -> None:
        """Entries are read back exactly as written, including JSON details."""
        details = '{"status": "ok", "checks": [1, 2]}'
        entries = [_entry(0), _entry(10, code=500), _entry(20, details=details)]

        writer = RecordWriter(site_dir, 1024 * 1024)
        for entry in entries:
            writer.append(entry)
        writer.close()

        assert list(read_entries(writer.path)) == entries

    def test_entries_are_flushed_after_append(self, site_dir: Path) -> None:
        """Appended entries are visible to readers before close."""
        writer = RecordWriter(site_dir, 1024 * 1024)
        writer.append(_entry())

        assert list(read_entries(writer.path)) == [_entry()]
        writer.close()

    def test_reuses_newest_file_below_limit(self, site_dir: Path) -> None:
        """Restarting appends to the newest file if it is not full."""
        first = RecordWriter(site_dir, 1024 * 1024)
        first.append(_entry(0))
        first.close()

        second = RecordWriter(site_dir, 1024 * 1024)
        second.append(_entry(10))
        second.close()

        assert second.path == first.path
        assert len(list(read_entries(second.path))) == 2

    def test_starts_new_file_when_newest_is_full(self, site_dir: Path) -> None:
        """Restarting with an oversized newest file creates a new one."""
        site_dir.mkdir(parents=True)
        full = site_dir / "2020-01-01_00-00-00.csv"
        full.write_text(",".join(HEADER) + "\n" + "x" * 200 + "\n")

        writer = RecordWriter(site_dir, 100)
        writer.close()

        assert writer.path != full
        assert len(list_record_files(site_dir)) == 2

    def test_rotates_when_file_exceeds_limit(self, site_dir: Path) -> None:
        """Files are rotated once they exceed the size limit."""
        max_size = 200
        writer = RecordWriter(site_dir, max_size)
        for i in range(20):
            writer.append(_entry(i))
        writer.close()

        files = list_record_files(site_dir)
        assert len(files) > 1
        # Every closed file holds at most one entry past the limit.
        row_size = len(",".join(str(v) for v in entry_to_row(_entry())) + "\r\n")
        for path in files[:-1]:
            assert path.stat().st_size <= max_size + row_size
        # No entry is lost across rotations.
        read_back = [entry for path in files for entry in read_entries(path)]
        assert read_back == [_entry(i) for i in range(20)]

    def test_new_files_start_with_header(self, site_dir: Path) -> None:
        """Every rotated file begins with the header row."""
        writer = RecordWriter(site_dir, 100)
        for i in range(5):
            writer.append(_entry(i))
        writer.close()

        for path in list_record_files(site_dir):
            assert path.read_text(encoding="utf-8").splitlines()[0] == ",".join(HEADER)

    def test_same_second_rotation_gets_suffix(self, site_dir: Path) -> None:
        """Rotations within one second never reopen the full file."""
        frozen = datetime(2024, 1, 2, 10, 0, 0, tzinfo=UTC)
        with patch("uptimemonitor.store.datetime") as mock_datetime:
            mock_datetime.now.return_value = frozen
            writer = RecordWriter(site_dir, 100)
            writer.append(_entry(0))
            writer.append(_entry(1))
            writer.close()

        names = [p.name for p in list_record_files(site_dir)]
        assert names == ["2024-01-02_10-00-00.csv", "2024-01-02_10-00-00_001.csv", "2024-01-02_10-00-00_002.csv"]

    def test_many_same_second_rotations_keep_creation_order(self, site_dir: Path) -> None:
        """Name order matches creation order past the tenth rotation."""
        frozen = datetime(2024, 1, 2, 10, 0, 0, tzinfo=UTC)
        with patch("uptimemonitor.store.datetime") as mock_datetime:
            mock_datetime.now.return_value = frozen
            writer = RecordWriter(site_dir, 100)
            for i in range(12):
                writer.append(_entry(i))
            newest = writer.path
            writer.close()

        files = list_record_files(site_dir)
        assert len(files) == 13
        assert files[-1] == newest
        # Each rotated file holds exactly one entry, in append order.
        assert [next(read_entries(path)) for path in files[:-1]] == [_entry(i) for i in range(12)]

    def test_concurrent_appends_are_serialized(self, site_dir: Path) -> None:
        """Appends from several threads are neither lost nor interleaved."""
        threads_count, per_thread = 8, 50
        writer = RecordWriter(site_dir, 2000)

        def append_many(offset: int) -> None:
            for i in range(per_thread):
                writer.append(_threaded_entry(offset, i))

        threads = [threading.Thread(target=append_many, args=(n,)) for n in range(threads_count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        writer.close()

        files = list_record_files(site_dir)
        assert len(files) > 1
        for path in files:
            with open(path, encoding="utf-8", newline="") as f:
                rows = list(csv.reader(f, strict=True))
            assert rows[0] == list(HEADER)
            assert all(len(row) == 5 for row in rows)
        read_back = [entry for path in files for entry in read_entries(path)]
        expected = {_threaded_entry(n, i) for n in range(threads_count) for i in range(per_thread)}
        assert len(read_back) == threads_count * per_thread
        assert set(read_back) == expected

    def test_append_after_close_raises(self, site_dir: Path) -> None:
        """A closed writer refuses to append."""
        writer = RecordWriter(site_dir, 1024)
        writer.close()

        with pytest.raises(RecordStoreError, match="closed"):
            writer.append(_entry())

    def test_close_is_idempotent(self, site_dir: Path) -> None:
        """Closing twice is a no-op."""
        writer = RecordWriter(site_dir, 1024)
        writer.close()
        writer.close()
        assert writer.closed is True

    def test_unwritable_directory_raises(self, tmp_path: Path) -> None:
        """A directory that cannot be created raises RecordStoreError."""
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")

        with pytest.raises(RecordStoreError):
            RecordWriter(blocker / "example", 1024)


class TestReadEntries:
    """Tests for reading record files."""

    def _write(self, path: Path, body: str) -> Path:
        path.write_text(",".join(HEADER) + "\n" + body, encoding="utf-8")
        return path

    def test_skips_malformed_rows(self, tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
        """Malformed rows are logged and skipped."""
        path = self._write(
            tmp_path / "2024-01-02_10-00-00.csv",
            "2024-01-02T10:00:00+00:00,https://example.com,200,42,\n"
            "garbage,https://example.com,200,42,\n"
            "2024-01-02T10:00:10+00:00,https://example.com,500,42,\n",
        )

        with caplog.at_level(logging.WARNING, logger="uptimemonitor.store"):
            entries = list(read_entries(path))

        assert [e.response_code for e in entries] == [200, 500]
        assert "row 3" in caplog.text

    def test_ignores_partial_trailing_line(self, tmp_path: Path) -> None:
        """A row without a line terminator is not read."""
        path = self._write(
            tmp_path / "2024-01-02_10-00-00.csv",
            "2024-01-02T10:00:00+00:00,https://example.com,200,42,\n2024-01-02T10:00:10+00:00,https://exa",
        )

        assert [e.response_code for e in read_entries(path)] == [200]

    def test_ignores_multiline_details_cut_mid_field(self, tmp_path: Path) -> None:
        """A quoted details field cut after one of its newlines is not read."""
        path = self._write(
            tmp_path / "2024-01-02_10-00-00.csv",
            "2024-01-02T10:00:00+00:00,https://example.com,200,42,\n"
            '2024-01-02T10:00:10+00:00,https://example.com,200,43,"{\n  ""status"": ""ok"",\n',
        )

        entries = list(read_entries(path))

        assert len(entries) == 1
        assert entries[0].response_time_ms == 42

    def test_reads_complete_multiline_details(self, tmp_path: Path) -> None:
        """Details spanning several lines are read back whole."""
        path = self._write(
            tmp_path / "2024-01-02_10-00-00.csv",
            '2024-01-02T10:00:00+00:00,https://example.com,200,42,"{\n  ""status"": ""ok""\n}"\n',
        )

        assert [e.details for e in read_entries(path)] == ['{\n  "status": "ok"\n}']

    def test_skips_blank_lines(self, tmp_path: Path) -> None:
        """Empty rows are ignored."""
        path = self._write(
            tmp_path / "2024-01-02_10-00-00.csv",
            "\n2024-01-02T10:00:00+00:00,https://example.com,200,42,\n\n",
        )

        assert len(list(read_entries(path))) == 1

    def test_header_only_file_is_empty(self, tmp_path: Path) -> None:
        """A freshly created file yields no entries."""
        path = self._write(tmp_path / "2024-01-02_10-00-00.csv", "")
        assert list(read_entries(path)) == []

    def test_missing_file_raises_oserror(self, tmp_path: Path) -> None:
        """Reading a missing file raises OSError."""
        with pytest.raises(OSError):
            list(read_entries(tmp_path / "missing.csv"))
