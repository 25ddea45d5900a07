"""Configuration loader with type-safe dataclasses."""

import os
import re
from dataclasses import dataclass, field
from datetime import time
from pathlib import Path

import yaml
from dateutil.relativedelta import relativedelta

from .models import FocusInterval


class ConfigError(Exception):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


DEFAULT_MAX_FILE_SIZE = "4MB"

# Powers of 1024 for the size suffixes accepted by parse_size.
_SIZE_EXPONENTS = {"": 0, "K": 1, "M": 2, "G": 3}

_SIZE_PATTERN = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([KMG]?)B?\s*$", re.IGNORECASE)

# ISO-8601 period with date components only (e.g. P7D, P1M, P1Y2M10D, P2W).
_PERIOD_PATTERN = re.compile(r"^P(?:(\d+)Y)?(?:(\d+)M)?(?:(\d+)W)?(?:(\d+)D)?$")


def parse_size(text: str) -> int:
    """Parse a human-readable size like "4MB" or "1.5GB" into bytes.

    The numeric part may be decimal and is multiplied by 1024^n for the
    K, M and G suffixes. Without a suffix the value is taken as bytes.

    Raises:
        ConfigError: If the text is not a valid size.
    """
    match = _SIZE_PATTERN.match(str(text))
    if match is None:
        raise ConfigError(f"Invalid size '{text}' (expected e.g. 512KB, 4MB, 1GB)")
    value = float(match.group(1))
    exponent = _SIZE_EXPONENTS[match.group(2).upper()]
    return round(value * 1024**exponent)


def parse_focus_interval(text: str) -> FocusInterval:
    """Parse an "HH:MM-HH:MM" string into a FocusInterval.

    Raises:
        ConfigError: If the format is wrong or the range is reversed.
    """
    parts = str(text).split("-")
    if len(parts) != 2:
        raise ConfigError(f"Invalid focus interval format: {text}")
    try:
        start = time.fromisoformat(parts[0].strip())
        end = time.fromisoformat(parts[1].strip())
    except ValueError:
        raise ConfigError(f"Invalid focus interval format: {text}")
    if start > end:
        raise ConfigError(f"Invalid focus interval format: {text} (start must be <= end)")
    return FocusInterval(start=start, end=end)


def parse_period(text: str) -> relativedelta:
    """Parse an ISO-8601 date period (e.g. "P7D", "P1M") into a relativedelta.

    Raises:
        ConfigError: If the text is not a supported period.
    """
    match = _PERIOD_PATTERN.match(str(text).strip().upper())
    if match is None or not any(match.groups()):
        raise ConfigError(f"Invalid span '{text}' (expected an ISO-8601 period like P7D or P1M)")
    years, months, weeks, days = (int(g) if g else 0 for g in match.groups())
    return relativedelta(years=years, months=months, weeks=weeks, days=days)


@dataclass(frozen=True)
class SiteConfig:
    """Configuration for a single site to probe."""

    name: str
    url: str
    interval: int = 60  # seconds between probes

    def __post_init__(self) -> None:
        if not self.name:
            raise ConfigError("Site name cannot be empty")
        if "/" in self.name or "\\" in self.name or self.name in (".", ".."):
            raise ConfigError(f"Site name '{self.name}' cannot be used as a directory name")
        if not self.url:
            raise ConfigError(f"URL cannot be empty for '{self.name}'")
        if not self.url.startswith(("http://", "https://")):
            raise ConfigError(f"URL must start with http:// or https:// for '{self.name}'")
        if self.interval < 1:
            raise ConfigError(f"Interval must be at least 1 second for '{self.name}'")


@dataclass(frozen=True)
class StorageConfig:
    """Locations of the record store and generated reports."""

    sites_dir: str = "sites"
    reports_dir: str = "reports"


@dataclass(frozen=True)
class DistributionConfig:
    """Where a generated report is sent, e.g. via "email" to an address."""

    via: str
    to: str

    def __post_init__(self) -> None:
        if not self.via:
            raise ConfigError("Distribution 'via' cannot be empty")
        if not self.to:
            raise ConfigError(f"Distribution '{self.via}' is missing 'to'")


@dataclass(frozen=True)
class ReportConfig:
    """Raw report definition.

    Values are kept as written in the configuration file; they are validated
    when the report job is built so that one broken report does not prevent
    the others from being scheduled.
    """

    name: str
    sites: list[str] = field(default_factory=list)
    interval: str = "weekly"
    span: str = "P7D"
    format: str = "text"
    focus_intervals: list[str] = field(default_factory=list)
    distribution: list[DistributionConfig] = field(default_factory=list)


@dataclass(frozen=True)
class SmtpConfig:
    """SMTP settings used to mail reports."""

    host: str
    port: int = 465
    username: str | None = None
    password: str | None = None
    from_address: str = ""
    use_ssl: bool = True  # implicit TLS (SMTPS)
    use_tls: bool = False  # STARTTLS, only used when use_ssl is False

    def __post_init__(self) -> None:
        if not self.host:
            raise ConfigError("SMTP host cannot be empty")
        if self.port < 1 or self.port > 65535:
            raise ConfigError(f"SMTP port must be between 1 and 65535, got {self.port}")
        if not self.from_address:
            raise ConfigError("SMTP from_address cannot be empty")


@dataclass(frozen=True)
class MailConfig:
    """Configuration for outbound mail."""

    smtp: SmtpConfig | None = None


@dataclass(frozen=True)
class Config:
    """Main configuration container."""

    sites: list[SiteConfig]
    max_file_size: int = parse_size(DEFAULT_MAX_FILE_SIZE)
    storage: StorageConfig = field(default_factory=StorageConfig)
    reports: list[ReportConfig] = field(default_factory=list)
    mail: MailConfig = field(default_factory=MailConfig)

    def __post_init__(self) -> None:
        if not self.sites:
            raise ConfigError("At least one site must be configured")
        if self.max_file_size < 1:
            raise ConfigError(f"max_file_size must be positive (got {self.max_file_size})")
        names = [site.name for site in self.sites]
        duplicates = [name for name in names if names.count(name) > 1]
        if duplicates:
            raise ConfigError(f"Duplicate site names found: {set(duplicates)}")

    def site_names(self) -> list[str]:
        return [site.name for site in self.sites]


def _parse_site_config(data: dict, index: int) -> SiteConfig:
    """Parse a single site configuration entry."""
    if not isinstance(data, dict):
        raise ConfigError(f"Site entry {index} must be a dictionary")

    name = data.get("name")
    url = data.get("url")

    if name is None:
        raise ConfigError(f"Site entry {index} is missing 'name' field")
    if url is None:
        raise ConfigError(f"Site entry {index} is missing 'url' field")

    try:
        interval = int(data.get("interval", 60))
    except (TypeError, ValueError):
        raise ConfigError(f"Site entry {index} has a non-numeric 'interval'")

    return SiteConfig(name=str(name), url=str(url), interval=interval)


def _parse_storage_config(data: dict | None) -> StorageConfig:
    """Parse storage configuration section."""
    if data is None:
        return StorageConfig()
    if not isinstance(data, dict):
        raise ConfigError("'storage' section must be a dictionary")

    return StorageConfig(
        sites_dir=str(data.get("sites_dir", "sites")),
        reports_dir=str(data.get("reports_dir", "reports")),
    )


def _parse_distribution_config(data: dict, report_name: str, index: int) -> DistributionConfig:
    """Parse a single distribution entry of a report."""
    if not isinstance(data, dict):
        raise ConfigError(f"Distribution entry {index} of report '{report_name}' must be a dictionary")

    return DistributionConfig(
        via=str(data.get("via", "")).strip().lower(),
        to=str(data.get("to", "")).strip(),
    )


def _parse_report_config(data: dict, index: int) -> ReportConfig:
    """Parse a single report definition without validating its values."""
    if not isinstance(data, dict):
        raise ConfigError(f"Report entry {index} must be a dictionary")

    name = data.get("name")
    if not name:
        raise ConfigError(f"Report entry {index} is missing 'name' field")

    sites = data.get("sites") or []
    if not isinstance(sites, list):
        raise ConfigError(f"'sites' of report '{name}' must be a list")

    focus_intervals = data.get("focus_intervals") or []
    if not isinstance(focus_intervals, list):
        raise ConfigError(f"'focus_intervals' of report '{name}' must be a list")

    distribution_data = data.get("distribution") or []
    if not isinstance(distribution_data, list):
        raise ConfigError(f"'distribution' of report '{name}' must be a list")

    return ReportConfig(
        name=str(name),
        sites=[str(site) for site in sites],
        interval=str(data.get("interval", "weekly")),
        span=str(data.get("span", "P7D")),
        format=str(data.get("format", "text")),
        focus_intervals=[str(fi) for fi in focus_intervals],
        distribution=[
            _parse_distribution_config(entry, str(name), i) for i, entry in enumerate(distribution_data)
        ],
    )


def _parse_mail_config(data: dict | None) -> MailConfig:
    """Parse mail configuration section."""
    if data is None:
        return MailConfig()
    if not isinstance(data, dict):
        raise ConfigError("'mail' section must be a dictionary")

    smtp_data = data.get("smtp")
    if smtp_data is None:
        return MailConfig()
    if not isinstance(smtp_data, dict):
        raise ConfigError("'mail.smtp' section must be a dictionary")

    username = smtp_data.get("username")
    password = smtp_data.get("password")

    try:
        port = int(smtp_data.get("port", 465))
    except (TypeError, ValueError):
        raise ConfigError("'mail.smtp' has a non-numeric 'port'")

    return MailConfig(
        smtp=SmtpConfig(
            host=str(smtp_data.get("host", "")),
            port=port,
            username=str(username) if username is not None else None,
            password=str(password) if password is not None else None,
            from_address=str(smtp_data.get("from_address", "")),
            use_ssl=bool(smtp_data.get("use_ssl", True)),
            use_tls=bool(smtp_data.get("use_tls", False)),
        )
    )


def _apply_env_overrides(config_data: dict) -> dict:
    """Apply environment variable overrides to configuration.

    Supported overrides:
    - UPTIMEMONITOR_MAX_FILE_SIZE: Override max_file_size
    - UPTIMEMONITOR_SITES_DIR: Override storage.sites_dir
    - UPTIMEMONITOR_REPORTS_DIR: Override storage.reports_dir
    - UPTIMEMONITOR_SMTP_PASSWORD: Override mail.smtp.password
    """
    if not isinstance(config_data.get("storage"), dict):
        config_data["storage"] = {}

    max_file_size = os.environ.get("UPTIMEMONITOR_MAX_FILE_SIZE")
    if max_file_size is not None:
        config_data["max_file_size"] = max_file_size

    sites_dir = os.environ.get("UPTIMEMONITOR_SITES_DIR")
    if sites_dir is not None:
        config_data["storage"]["sites_dir"] = sites_dir

    reports_dir = os.environ.get("UPTIMEMONITOR_REPORTS_DIR")
    if reports_dir is not None:
        config_data["storage"]["reports_dir"] = reports_dir

    smtp_password = os.environ.get("UPTIMEMONITOR_SMTP_PASSWORD")
    if smtp_password is not None:
        mail = config_data.get("mail")
        if isinstance(mail, dict) and isinstance(mail.get("smtp"), dict):
            mail["smtp"]["password"] = smtp_password

    return config_data


def load_config(config_path: str) -> Config:
    """Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the YAML configuration file.

    Returns:
        Validated Config object.

    Raises:
        ConfigError: If the file cannot be read or configuration is invalid.
    """
    path = Path(config_path)

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML configuration: {e}")
    except OSError as e:
        raise ConfigError(f"Failed to read configuration file: {e}")

    if data is None:
        raise ConfigError("Configuration file is empty")

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a YAML dictionary")

    data = _apply_env_overrides(data)

    sites_data = data.get("sites")
    if sites_data is None:
        raise ConfigError("Configuration must contain a 'sites' section")
    if not isinstance(sites_data, list):
        raise ConfigError("'sites' must be a list")
    sites = [_parse_site_config(site_data, i) for i, site_data in enumerate(sites_data)]

    reports_data = data.get("reports") or []
    if not isinstance(reports_data, list):
        raise ConfigError("'reports' must be a list")
    reports = [_parse_report_config(report_data, i) for i, report_data in enumerate(reports_data)]

    return Config(
        sites=sites,
        max_file_size=parse_size(data.get("max_file_size", DEFAULT_MAX_FILE_SIZE)),
        storage=_parse_storage_config(data.get("storage")),
        reports=reports,
        mail=_parse_mail_config(data.get("mail")),
    )
