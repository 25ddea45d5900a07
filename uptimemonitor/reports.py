"""Scheduled multi-site report generation, bundling and distribution."""

import logging
import re
import shutil
import zipfile
from dataclasses import dataclass, field
from datetime import UTC, date, datetime
from enum import Enum
from pathlib import Path

from dateutil.relativedelta import relativedelta

from .config import ConfigError, DistributionConfig, ReportConfig, parse_focus_interval, parse_period
from .formatters import get_formatter
from .mailer import Mailer
from .measurement import MeasurementError, MeasurementService
from .models import FocusInterval

logger = logging.getLogger(__name__)

STAGING_TIMESTAMP_FORMAT = "%Y-%m-%d_%H-%M-%S"


class ReportError(Exception):
    """Raised when a site's report cannot be rendered."""

    pass


class Interval(Enum):
    """How often a report is generated, as a cron expression in UTC."""

    WEEKLY = "0 1 * * 1"  # Mondays at 01:00
    MONTHLY = "0 1 1 * *"  # first day of the month at 01:00

    @property
    def cron(self) -> str:
        return self.value


@dataclass(frozen=True)
class ReportJob:
    """Validated, immutable parameters of one report."""

    name: str
    sites: tuple[str, ...]
    format: str
    span: relativedelta
    focus_intervals: tuple[FocusInterval, ...] = ()
    distributions: tuple[DistributionConfig, ...] = ()
    interval: Interval = Interval.WEEKLY


@dataclass
class ReportResult:
    """Outcome of one report run.

    Attributes:
        archive: ZIP file holding the per-site reports, None if nothing was generated.
        site_files: Per-site report files that went into the archive.
        site_errors: Error message per site that could not be reported on.
        distributed: Delivery result per distribution target ("via:to").
    """

    archive: Path | None
    site_files: list[Path] = field(default_factory=list)
    site_errors: dict[str, str] = field(default_factory=dict)
    distributed: dict[str, bool] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.archive is not None and not self.site_errors


def build_report_job(report: ReportConfig) -> ReportJob:
    """Validate a raw report definition.

    Raises:
        ConfigError: If sites are missing or format, span, interval or a
            focus interval is malformed.
    """
    if not report.sites:
        raise ConfigError(f"Missing sites for report '{report.name}'")

    get_formatter(report.format)

    try:
        interval = Interval[report.interval.strip().upper()]
    except KeyError:
        raise ConfigError(
            f"Invalid interval '{report.interval}' for report '{report.name}'. "
            f"Must be one of: {tuple(i.name.lower() for i in Interval)}"
        )

    return ReportJob(
        name=report.name,
        sites=tuple(report.sites),
        format=report.format.strip().lower(),
        span=parse_period(report.span),
        focus_intervals=tuple(parse_focus_interval(fi) for fi in report.focus_intervals),
        distributions=tuple(report.distribution),
        interval=interval,
    )


def sanitize_name(name: str) -> str:
    """Replace whitespace runs in a report name with dashes."""
    return re.sub(r"\s+", "-", name.strip())


class ReportGenerator:
    """Generates one report: a ZIP archive with one file per site.

    Example:
        generator = ReportGenerator(job, MeasurementService("sites"), "reports", mailer)
        result = generator.generate()
    """

    def __init__(
        self,
        job: ReportJob,
        measurement: MeasurementService,
        reports_dir: str | Path = "reports",
        mailer: Mailer | None = None,
    ) -> None:
        self._job = job
        self._measurement = measurement
        self._reports_dir = Path(reports_dir)
        self._mailer = mailer
        self._formatter = get_formatter(job.format)

    @property
    def job(self) -> ReportJob:
        return self._job

    def generate(self, now: datetime | None = None) -> ReportResult:
        """Measure every site, bundle the outputs, and distribute the archive.

        A site that fails is logged and left out; the remaining sites are
        still reported on.

        Raises:
            OSError: If the staging directory or archive cannot be created.
        """
        job = self._job
        now = now or datetime.now(UTC)
        start_date = (now - job.span).date()
        end_date = now.date()
        logger.info("Generating report '%s' for %s to %s", job.name, start_date, end_date)

        staging_dir = self._create_staging_dir(now)
        result = ReportResult(archive=None)

        try:
            for site in job.sites:
                try:
                    site_file = self._generate_site_report(site, staging_dir, start_date, end_date)
                except (MeasurementError, ReportError, OSError) as e:
                    logger.error("Report '%s': skipping site %s: %s", job.name, site, e)
                    result.site_errors[site] = str(e)
                    continue
                logger.info("Generated site report: %s", site_file)
                result.site_files.append(site_file)

            if result.site_files:
                result.archive = self._bundle(staging_dir, result.site_files)
        finally:
            shutil.rmtree(staging_dir, ignore_errors=True)

        self._log_summary(result)

        if result.archive is not None and job.distributions:
            if self._mailer is None:
                logger.warning("Report '%s' has distribution targets but no mailer", job.name)
            else:
                result.distributed = self._mailer.distribute(
                    job.name, list(job.sites), job.format, result.archive, list(job.distributions)
                )

        return result

    def _create_staging_dir(self, now: datetime) -> Path:
        """Create a staging directory no other run uses.

        Runs of the same report within one second get a zero-padded suffix.
        A name is also skipped while its archive exists.
        """
        base = f"{now.strftime(STAGING_TIMESTAMP_FORMAT)}_{sanitize_name(self._job.name)}"
        self._reports_dir.mkdir(parents=True, exist_ok=True)
        path = self._reports_dir / base
        counter = 1
        while True:
            if not path.with_name(path.name + ".zip").exists():
                try:
                    path.mkdir()
                    return path
                except FileExistsError:
                    pass
            path = self._reports_dir / f"{base}_{counter:03d}"
            counter += 1

    def _generate_site_report(self, site: str, directory: Path, start_date: date, end_date: date) -> Path:
        data = self._measurement.measure(site, start_date, end_date, self._job.focus_intervals)
        path = directory / f"{site}{self._formatter.extension}"
        with open(path, "wb") as out:
            try:
                self._formatter.write(data, out)
            except OSError:
                raise
            except Exception as e:
                raise ReportError(f"Failed to render {self._job.format} report for {site}: {e}") from e
        return path

    def _bundle(self, staging_dir: Path, files: list[Path]) -> Path:
        archive = staging_dir.with_name(staging_dir.name + ".zip")
        with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for path in files:
                zf.write(path, arcname=path.name)
        logger.info("Report archive written to %s", archive)
        return archive

    def _log_summary(self, result: ReportResult) -> None:
        for site in self._job.sites:
            status = f"FAILED ({result.site_errors[site]})" if site in result.site_errors else "OK"
            logger.info("Report '%s' site %s: %s", self._job.name, site, status)


def run_report(
    job: ReportJob,
    measurement: MeasurementService,
    reports_dir: str | Path,
    mailer: Mailer | None = None,
) -> ReportResult:
    """Generate a report from captured job parameters.

    This is what the scheduler invokes for each report run.
    """
    return ReportGenerator(job, measurement, reports_dir, mailer).generate()
