"""Output formats for measurement results (plain text, JSON and PDF)."""

import io
import json
from datetime import date, timedelta
from typing import BinaryIO, Protocol
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import HRFlowable, Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from .config import ConfigError
from .models import MonitorEntry, PerformanceData, ReportData

REPORT_TITLE = "Site Performance Report"

ACCENT_COLOR = colors.Color(79 / 255, 27 / 255, 230 / 255)

PAGE_MARGIN = 21 * mm

# Width available to tables between the page margins.
CONTENT_WIDTH = A4[0] - 2 * PAGE_MARGIN


class Formatter(Protocol):
    """Renders the ReportData of one site to a binary stream."""

    extension: str

    def write(self, data: ReportData, out: BinaryIO) -> None:
        """Write the rendered report.

        Raises:
            OSError: If writing to the stream fails.
        """
        ...


def format_duration(duration: timedelta) -> str:
    """Format a duration as "1d 02h 03m 04s"."""
    total_seconds = int(duration.total_seconds())
    days, remainder = divmod(total_seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{days}d {hours:02d}h {minutes:02d}m {seconds:02d}s"


def _format_date(day: date | None) -> str:
    return day.isoformat() if day is not None else "n/a"


def _long_date(day: date | None) -> str:
    """Format a date as "2 January 2024"."""
    if day is None:
        return "n/a"
    return f"{day.day} {day.strftime('%B %Y')}"


class TextFormatter:
    """Short human-readable summary."""

    extension = ".txt"

    def write(self, data: ReportData, out: BinaryIO) -> None:
        out.write(self.render(data).encode("utf-8"))

    def render(self, data: ReportData) -> str:
        perf = data.aggregate_performance
        lines = [
            f"Performance data for site {data.site_name} from {_format_date(data.start_date)} "
            f"to {_format_date(data.end_date)}, generated in {data.measurement_duration_ms} ms.",
            f"Average response time: {perf.average_response_time:.2f} (ms)",
            f"Percent of requests that were successful: {perf.success_percent:.2f}",
            f"Uptime: {perf.uptime_percent:.4f}%",
            f"Total uptime: {format_duration(perf.total_uptime)}",
            f"Total downtime: {format_duration(perf.total_downtime)}",
            f"Total number of entries: {len(data.entries)}",
        ]
        for focus_interval, focus_perf in data.focus_interval_performance.items():
            lines.append(
                f"Focus interval {focus_interval.label}: {focus_perf.entry_count} entries, "
                f"uptime {focus_perf.uptime_percent:.4f}%, "
                f"success {focus_perf.success_percent:.2f}%, "
                f"average response time {focus_perf.average_response_time:.2f} (ms)"
            )
        return "\n".join(lines) + "\n"


def _performance_to_dict(perf: PerformanceData) -> dict:
    return {
        "average_response_time": perf.average_response_time,
        "success_percent": perf.success_percent,
        "total_uptime_seconds": perf.total_uptime.total_seconds(),
        "total_downtime_seconds": perf.total_downtime.total_seconds(),
        "uptime_percent": perf.uptime_percent,
        "entry_count": perf.entry_count,
    }


def _entry_to_dict(entry: MonitorEntry) -> dict:
    return {
        "timestamp": entry.timestamp.isoformat(),
        "url": entry.url,
        "response_code": entry.response_code,
        "response_time_ms": entry.response_time_ms,
        "details": entry.details,
    }


def report_to_dict(data: ReportData) -> dict:
    """Convert report data into JSON-compatible primitives."""
    return {
        "generated_at": data.generated_at.isoformat(),
        "start_date": data.start_date.isoformat() if data.start_date else None,
        "end_date": data.end_date.isoformat() if data.end_date else None,
        "site_name": data.site_name,
        "measurement_duration_ms": data.measurement_duration_ms,
        "total_file_size": data.total_file_size,
        "file_count": data.file_count,
        "aggregate_performance": _performance_to_dict(data.aggregate_performance),
        "focus_interval_performance": {
            fi.label: _performance_to_dict(perf) for fi, perf in data.focus_interval_performance.items()
        },
        "entries": [_entry_to_dict(entry) for entry in data.entries],
    }


class JsonFormatter:
    """Pretty-printed JSON dump of the complete report data."""

    extension = ".json"

    def write(self, data: ReportData, out: BinaryIO) -> None:
        text = json.dumps(report_to_dict(data), indent=2)
        out.write(text.encode("utf-8"))
        out.write(b"\n")


class PdfFormatter:
    """A4 PDF document with heading, general statistics and focus intervals.

    The full entry table can be large and is only included when requested.
    """

    extension = ".pdf"

    def __init__(self, include_entries: bool = False) -> None:
        self.include_entries = include_entries
        styles = getSampleStyleSheet()
        self._title_style = ParagraphStyle("ReportTitle", parent=styles["Title"], alignment=0, fontSize=24)
        self._subtitle_style = ParagraphStyle(
            "ReportSubtitle", parent=styles["Normal"], fontName="Helvetica-Oblique", fontSize=16,
            leading=20, textColor=colors.darkgrey,
        )
        self._heading_style = ParagraphStyle("ReportHeading", parent=styles["Heading2"], fontSize=18)
        self._body_style = styles["Normal"]

    def write(self, data: ReportData, out: BinaryIO) -> None:
        # The stream is only written once the whole document has been built.
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            leftMargin=PAGE_MARGIN,
            rightMargin=PAGE_MARGIN,
            topMargin=PAGE_MARGIN,
            bottomMargin=PAGE_MARGIN,
            title=f"{REPORT_TITLE} - {data.site_name}",
        )
        story = self._heading(data) + self._general_stats(data) + self._focus_intervals(data)
        if self.include_entries:
            story += self._entries(data)
        doc.build(story)
        out.write(buffer.getvalue())

    def _heading(self, data: ReportData) -> list:
        start = _long_date(data.start_date)
        end = _long_date(data.end_date)
        generated = data.generated_at
        generated_text = f"{_long_date(generated.date())} at {generated.strftime('%H:%M')} {generated.strftime('%Z')}"
        return [
            Paragraph(REPORT_TITLE, self._title_style),
            Paragraph(f"For the <b>{escape(data.site_name)}</b> site.", self._subtitle_style),
            Spacer(1, 4 * mm),
            Paragraph(f"Measured from <b>{start} to {end}</b>", self._body_style),
            Paragraph(f"This report was generated at <b>{generated_text.strip()}</b>", self._body_style),
            Paragraph(
                f"{data.file_count} files were processed in {data.measurement_duration_ms} ms.",
                self._body_style,
            ),
            Spacer(1, 3 * mm),
            HRFlowable(width="100%", thickness=3, color=ACCENT_COLOR),
            Spacer(1, 6 * mm),
        ]

    def _general_stats(self, data: ReportData) -> list:
        perf = data.aggregate_performance
        rows = [
            ["Uptime:", f"{perf.uptime_percent:.4f}%"],
            ["Average Response Time:", f"{perf.average_response_time:.4f} ms"],
            ["Successful Request Percentage:", f"{perf.success_percent:.2f}%"],
            ["Total Uptime:", format_duration(perf.total_uptime)],
            ["Total Downtime:", format_duration(perf.total_downtime)],
            ["Total Measurements Recorded:", str(len(data.entries))],
        ]
        table = Table(rows, hAlign="LEFT")
        table.setStyle(TableStyle([
            ("FONTNAME", (0, 0), (0, -1), "Helvetica"),
            ("FONTNAME", (1, 0), (1, -1), "Courier-Bold"),
            ("LEFTPADDING", (0, 0), (-1, -1), 0),
        ]))
        return [Paragraph("General Information", self._heading_style), table, Spacer(1, 6 * mm)]

    def _focus_intervals(self, data: ReportData) -> list:
        if not data.focus_interval_performance:
            return []
        rows = [["Interval", "Uptime", "Success", "Avg. Response", "Entries"]]
        for focus_interval, perf in data.focus_interval_performance.items():
            rows.append([
                focus_interval.label,
                f"{perf.uptime_percent:.4f}%",
                f"{perf.success_percent:.2f}%",
                f"{perf.average_response_time:.2f} ms",
                str(perf.entry_count),
            ])
        table = Table(rows, hAlign="LEFT", repeatRows=1)
        table.setStyle(TableStyle([
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("LINEBELOW", (0, 0), (-1, 0), 1, ACCENT_COLOR),
        ]))
        return [Paragraph("Focus Intervals", self._heading_style), table, Spacer(1, 6 * mm)]

    def _entries(self, data: ReportData) -> list:
        rows = [["Timestamp", "URL", "Response Code", "Response Time (ms)"]]
        for entry in data.entries:
            rows.append([
                entry.timestamp.isoformat(),
                entry.url,
                str(entry.response_code),
                str(entry.response_time_ms),
            ])
        table = Table(rows, repeatRows=1, colWidths=[CONTENT_WIDTH * share for share in (0.25, 0.39, 0.16, 0.20)])
        table.setStyle(TableStyle([
            ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 7),
            ("GRID", (0, 0), (-1, -1), 0.25, colors.grey),
            ("TOPPADDING", (0, 0), (-1, -1), 2),
            ("BOTTOMPADDING", (0, 0), (-1, -1), 2),
        ]))
        return [
            Paragraph("All Recorded Entries", self._heading_style),
            Paragraph("The following table shows a list of every recorded measurement.", self._body_style),
            Spacer(1, 3 * mm),
            table,
        ]


FORMATTERS: dict[str, Formatter] = {
    "text": TextFormatter(),
    "json": JsonFormatter(),
    "pdf": PdfFormatter(),
}


def get_formatter(name: str) -> Formatter:
    """Return the formatter registered for a format tag (case-insensitive).

    Raises:
        ConfigError: If the format is unknown.
    """
    formatter = FORMATTERS.get(name.strip().lower())
    if formatter is None:
        raise ConfigError(f"Unknown format '{name}'. Must be one of: {tuple(FORMATTERS)}")
    return formatter
