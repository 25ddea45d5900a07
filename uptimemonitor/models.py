"""Data models for probe records and measurement results."""

from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta


@dataclass(frozen=True)
class MonitorEntry:
    """Result of a single probe, as stored in a site's record file.

    Attributes:
        timestamp: Moment the probe started (timezone-aware).
        url: URL that was probed.
        response_code: HTTP status code of the response.
        response_time_ms: Elapsed time of the request in milliseconds.
        details: Raw response body for JSON responses, None otherwise.
    """

    timestamp: datetime
    url: str
    response_code: int
    response_time_ms: int
    details: str | None = None

    @property
    def is_ok(self) -> bool:
        """Whether the probe counts as successful (status below 400)."""
        return self.response_code < 400


@dataclass(frozen=True)
class FocusInterval:
    """Inclusive daily time-of-day range, e.g. business hours."""

    start: time
    end: time

    def contains(self, timestamp: datetime) -> bool:
        """Check if the wall-clock time of a timestamp falls within the range."""
        return self.start <= timestamp.time() <= self.end

    @property
    def label(self) -> str:
        return f"{self.start.strftime('%H:%M')}-{self.end.strftime('%H:%M')}"


@dataclass(frozen=True)
class PerformanceData:
    """Aggregate statistics computed over a list of entries.

    Attributes:
        average_response_time: Mean response time in milliseconds.
        success_percent: Percentage of probes that were OK (0.0-100.0).
        total_uptime: Time spanned by consecutive OK probes.
        total_downtime: Time spanned by consecutive failing probes.
        uptime_percent: Uptime share of uptime plus downtime (0.0-100.0).
        entry_count: Number of entries the statistics were computed from.
    """

    average_response_time: float
    success_percent: float
    total_uptime: timedelta
    total_downtime: timedelta
    uptime_percent: float
    entry_count: int


@dataclass(frozen=True)
class ReportData:
    """Result of one measurement run for one site.

    Attributes:
        generated_at: When the measurement was performed.
        start_date: First day of the measured window, None if unresolved.
        end_date: Last day of the measured window (inclusive), None if unresolved.
        site_name: Name of the measured site.
        measurement_duration_ms: Wall-clock time the measurement took.
        total_file_size: Bytes of record files scanned.
        file_count: Number of record files scanned.
        entries: All entries inside the window, in file order.
        aggregate_performance: Statistics over all entries.
        focus_interval_performance: Statistics per requested focus interval.
    """

    generated_at: datetime
    start_date: date | None
    end_date: date | None
    site_name: str
    measurement_duration_ms: int
    total_file_size: int
    file_count: int
    entries: tuple[MonitorEntry, ...]
    aggregate_performance: PerformanceData
    focus_interval_performance: dict[FocusInterval, PerformanceData] = field(default_factory=dict)
