"""Aggregation of recorded probe results into performance statistics."""

import logging
import time
from collections.abc import Iterable
from datetime import UTC, date, datetime, timedelta
from operator import attrgetter
from pathlib import Path

from .models import FocusInterval, MonitorEntry, PerformanceData, ReportData
from .store import list_record_files, parse_file_timestamp, read_entries

logger = logging.getLogger(__name__)


class MeasurementError(Exception):
    """Raised when a site's record directory cannot be read."""

    pass


def compute_performance_data(entries: Iterable[MonitorEntry]) -> PerformanceData:
    """Compute aggregate statistics for a set of entries.

    Entries are sorted by timestamp first. The time between two consecutive
    entries counts as uptime when both are OK and as downtime when both are
    not OK; the time across a state change counts towards neither.

    An empty set yields an average of 0 and 100% success and uptime.
    """
    ordered = sorted(entries, key=attrgetter("timestamp"))
    if not ordered:
        return PerformanceData(
            average_response_time=0.0,
            success_percent=100.0,
            total_uptime=timedelta(0),
            total_downtime=timedelta(0),
            uptime_percent=100.0,
            entry_count=0,
        )

    response_time_sum = 0
    ok_count = 0
    total_uptime = timedelta(0)
    total_downtime = timedelta(0)
    previous: MonitorEntry | None = None

    for entry in ordered:
        if entry.is_ok:
            ok_count += 1
        if previous is not None and previous.is_ok == entry.is_ok:
            span = entry.timestamp - previous.timestamp
            if entry.is_ok:
                total_uptime += span
            else:
                total_downtime += span
        response_time_sum += entry.response_time_ms
        previous = entry

    uptime_percent = 100.0
    measured = total_uptime + total_downtime
    if measured:
        uptime_percent = 100.0 * (total_uptime / measured)

    return PerformanceData(
        average_response_time=response_time_sum / len(ordered),
        success_percent=100.0 * ok_count / len(ordered),
        total_uptime=total_uptime,
        total_downtime=total_downtime,
        uptime_percent=uptime_percent,
        entry_count=len(ordered),
    )


def _start_of_day(day: date) -> datetime:
    return datetime.combine(day, datetime.min.time())


def should_read_file(path: Path, end_date: date | None) -> bool:
    """Check if a record file can contain entries up to the end date.

    Files created after the end of the end date (inclusive) are skipped.
    """
    if end_date is None:
        return True
    try:
        created_at = parse_file_timestamp(path)
    except ValueError:
        logger.warning("Skipping %s: file name is not a record file timestamp", path)
        return False
    return created_at <= _start_of_day(end_date + timedelta(days=1))


def should_read_entry(timestamp: datetime, start_date: date | None, end_date: date | None) -> bool:
    """Check if an entry falls within the window [start 00:00, end + 1 day 00:00).

    Both bounds compare against the entry's own wall-clock time; the lower
    bound is exclusive.
    """
    local = timestamp.replace(tzinfo=None)
    if start_date is not None and not local > _start_of_day(start_date):
        return False
    if end_date is not None and not local < _start_of_day(end_date + timedelta(days=1)):
        return False
    return True


class MeasurementService:
    """Reads a site's record files and computes report data for a time window.

    Example:
        service = MeasurementService("sites")
        data = service.measure("example", date(2024, 1, 1), date(2024, 1, 7))
    """

    def __init__(self, sites_dir: str | Path = "sites") -> None:
        self._sites_dir = Path(sites_dir)

    @property
    def sites_dir(self) -> Path:
        return self._sites_dir

    def measure(
        self,
        site_name: str,
        start_date: date | None = None,
        end_date: date | None = None,
        focus_intervals: Iterable[FocusInterval] = (),
    ) -> ReportData:
        """Compute report data for one site.

        Args:
            site_name: Name of the site, matching its record directory.
            start_date: First day of the window, or None for no lower bound.
            end_date: Last day of the window (inclusive), or None for no upper bound.
            focus_intervals: Daily time ranges that get their own statistics.

        Returns:
            ReportData for the window. Bounds that were not supplied are
            resolved from the first and last entry, when there is one.

        Raises:
            MeasurementError: If the site directory cannot be read.
        """
        started = time.monotonic()
        focus_intervals = list(dict.fromkeys(focus_intervals))
        site_dir = self._sites_dir / site_name

        try:
            files = list_record_files(site_dir)
        except OSError as e:
            raise MeasurementError(f"Cannot read record directory {site_dir}: {e}")

        entries: list[MonitorEntry] = []
        focus_entries: dict[FocusInterval, list[MonitorEntry]] = {fi: [] for fi in focus_intervals}
        total_file_size = 0
        file_count = 0

        for path in files:
            if not should_read_file(path, end_date):
                continue
            try:
                file_entries = list(read_entries(path))
                total_file_size += path.stat().st_size
            except OSError as e:
                logger.error("Failed to read record file %s: %s", path, e)
                continue
            file_count += 1

            for entry in file_entries:
                if not should_read_entry(entry.timestamp, start_date, end_date):
                    continue
                entries.append(entry)
                for focus_interval in focus_intervals:
                    if focus_interval.contains(entry.timestamp):
                        focus_entries[focus_interval].append(entry)

        if start_date is None and entries:
            start_date = entries[0].timestamp.date()
        if end_date is None and entries:
            end_date = entries[-1].timestamp.date()

        aggregate = compute_performance_data(entries)
        focus_performance = {fi: compute_performance_data(focus_entries[fi]) for fi in focus_intervals}
        duration_ms = int((time.monotonic() - started) * 1000)

        logger.debug(
            "Measured %s: %d entries from %d files (%d bytes) in %dms",
            site_name,
            len(entries),
            file_count,
            total_file_size,
            duration_ms,
        )

        return ReportData(
            generated_at=datetime.now(UTC),
            start_date=start_date,
            end_date=end_date,
            site_name=site_name,
            measurement_duration_ms=duration_ms,
            total_file_size=total_file_size,
            file_count=file_count,
            entries=tuple(entries),
            aggregate_performance=aggregate,
            focus_interval_performance=focus_performance,
        )
