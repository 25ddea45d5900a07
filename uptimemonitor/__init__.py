"""UptimeMonitor - Records site availability and generates uptime reports."""

import argparse
import logging
import signal
import sys
from threading import Event, Thread
from typing import Optional

__version__ = "0.1.0"

# Global shutdown event for signal handlers
_shutdown_event: Optional[Event] = None

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for the application."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        stream=sys.stderr,
    )


def _handle_shutdown(signum: int, frame: object) -> None:
    """Signal handler for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s, initiating shutdown...", sig_name)
    if _shutdown_event is not None:
        _shutdown_event.set()


def _watch_stdin(shutdown_event: Event) -> None:
    """Set the shutdown event when "stop" is entered or stdin closes."""
    for line in sys.stdin:
        if line.strip().lower() == "stop":
            logger.info("Stop command received")
            break
    shutdown_event.set()


def _cmd_run(args: argparse.Namespace) -> None:
    """Execute the run command - record all sites and schedule reports."""
    global _shutdown_event

    _setup_logging(args.verbose)

    logger.info("UptimeMonitor %s starting...", __version__)

    # Import here to avoid circular imports and allow logging setup first
    from functools import partial

    from .config import ConfigError, load_config
    from .mailer import Mailer
    from .measurement import MeasurementService
    from .recorder import SiteRecorder
    from .reports import build_report_job, run_report
    from .scheduler import Scheduler
    from .store import RecordStoreError

    # 1. Load configuration
    try:
        config = load_config(args.config)
        logger.info("Configuration loaded from %s", args.config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    # 2. Setup shutdown handler
    _shutdown_event = Event()
    signal.signal(signal.SIGTERM, _handle_shutdown)
    signal.signal(signal.SIGINT, _handle_shutdown)

    scheduler = Scheduler(max_workers=len(config.sites) + len(config.reports) + 1)
    recorders: list[SiteRecorder] = []

    try:
        # 3. Start one recorder per site
        for site in config.sites:
            try:
                recorder = SiteRecorder(site, config.storage.sites_dir, config.max_file_size)
            except RecordStoreError as e:
                logger.error("Cannot monitor site %s: %s", site.name, e)
                continue
            recorders.append(recorder)
            logger.info("Monitoring site '%s' every %d seconds", site.name, site.interval)
            scheduler.schedule_recurring(f"site:{site.name}", recorder.probe, site.interval)

        if not recorders:
            logger.error("No site could be monitored")
            sys.exit(1)

        # 4. Schedule reports
        measurement = MeasurementService(config.storage.sites_dir)
        mailer = Mailer(config.mail.smtp)
        for report in config.reports:
            try:
                job = build_report_job(report)
            except ConfigError as e:
                logger.error("Skipping report '%s': %s", report.name, e)
                continue
            task = partial(run_report, job, measurement, config.storage.reports_dir, mailer)
            scheduler.schedule_cron(f"report:{job.name}", task, job.interval.cron)

        logger.info("Started monitoring all configured sites")

        if not args.no_cli:
            logger.info('Type "stop" to shut down')
            Thread(target=_watch_stdin, args=(_shutdown_event,), daemon=True, name="stdin").start()

        # 5. Wait for shutdown signal
        _shutdown_event.wait()

    except KeyboardInterrupt:
        # Backup handler if signal doesn't work
        logger.info("Keyboard interrupt received")
    finally:
        # 6. Cleanup - stop ticks first, then close record files
        logger.info("Stopping monitoring...")
        scheduler.shutdown(wait=True)

        for recorder in recorders:
            recorder.close()
        logger.info("Record files closed")

        logger.info("Shutdown complete")


def _cmd_measure(args: argparse.Namespace) -> None:
    """Execute the measure command - print statistics for one site."""
    from datetime import date

    from .config import ConfigError, load_config, parse_focus_interval
    from .formatters import get_formatter
    from .measurement import MeasurementError, MeasurementService

    _setup_logging(args.verbose)

    try:
        start_date = date.fromisoformat(args.start) if args.start else None
        end_date = date.fromisoformat(args.end) if args.end else None
    except ValueError as e:
        print(f"Error: invalid date: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        focus_intervals = [parse_focus_interval(fi) for fi in args.focus or []]
        formatter = get_formatter(args.format)
        sites_dir = args.sites_dir
        if sites_dir is None:
            sites_dir = load_config(args.config).storage.sites_dir
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        data = MeasurementService(sites_dir).measure(args.site, start_date, end_date, focus_intervals)
    except MeasurementError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    try:
        if args.output:
            with open(args.output, "wb") as out:
                formatter.write(data, out)
        else:
            formatter.write(data, sys.stdout.buffer)
            sys.stdout.flush()
    except OSError as e:
        print(f"Error: failed to write output: {e}", file=sys.stderr)
        sys.exit(1)


def _cmd_generate_reports(args: argparse.Namespace) -> None:
    """Execute the generate-reports command - run all reports now."""
    from .config import ConfigError, load_config
    from .mailer import Mailer
    from .measurement import MeasurementService
    from .reports import build_report_job, run_report

    _setup_logging(args.verbose)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error("Configuration error: %s", e)
        sys.exit(1)

    measurement = MeasurementService(config.storage.sites_dir)
    mailer = Mailer(config.mail.smtp)
    failures = 0

    for report in config.reports:
        try:
            job = build_report_job(report)
        except ConfigError as e:
            logger.error("Skipping report '%s': %s", report.name, e)
            failures += 1
            continue
        try:
            result = run_report(job, measurement, config.storage.reports_dir, mailer)
        except OSError as e:
            logger.error("Report '%s' failed: %s", report.name, e)
            failures += 1
            continue
        if not result.ok:
            failures += 1

    if failures:
        sys.exit(1)


def main() -> None:
    """Main entry point for the uptimemonitor package."""
    parser = argparse.ArgumentParser(
        description="UptimeMonitor - Records site availability and generates uptime reports"
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"uptimemonitor {__version__}",
    )

    subparsers = parser.add_subparsers(dest="command")

    # Run subcommand (default behavior)
    run_parser = subparsers.add_parser(
        "run",
        help="Start monitoring and scheduled reports (default)",
    )
    run_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    run_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    run_parser.add_argument(
        "--no-cli",
        action="store_true",
        help="Do not read commands from stdin; run until terminated",
    )
    run_parser.set_defaults(func=_cmd_run)

    # Measure subcommand
    measure_parser = subparsers.add_parser(
        "measure",
        help="Perform measurements on recorded site data",
    )
    measure_parser.add_argument("site", help="Name of the site to measure")
    measure_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    measure_parser.add_argument(
        "--sites-dir",
        help="Record directory to read instead of the configured one",
    )
    measure_parser.add_argument("--start", help="Start date (inclusive), as an ISO-8601 date")
    measure_parser.add_argument("--end", help="End date (inclusive), as an ISO-8601 date")
    measure_parser.add_argument(
        "--format",
        default="text",
        choices=["text", "json", "pdf"],
        help="Output format (default: text)",
    )
    measure_parser.add_argument(
        "--focus",
        action="append",
        metavar="HH:MM-HH:MM",
        help="Focus interval with its own statistics (repeatable)",
    )
    measure_parser.add_argument("-o", "--output", help="File to write the results to (default: stdout)")
    measure_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    measure_parser.set_defaults(func=_cmd_measure)

    # Generate-reports subcommand
    reports_parser = subparsers.add_parser(
        "generate-reports",
        help="Generate and distribute all configured reports immediately",
    )
    reports_parser.add_argument(
        "-c", "--config",
        default="config.yaml",
        help="Path to configuration file (default: config.yaml)",
    )
    reports_parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose (debug) logging",
    )
    reports_parser.set_defaults(func=_cmd_generate_reports)

    args = parser.parse_args()

    # Default to 'run' if no command specified
    if args.command is None:
        args.config = "config.yaml"
        args.verbose = False
        args.no_cli = False
        args.func = _cmd_run

    args.func(args)
