"""Report distribution by email over SMTP."""

import logging
import smtplib
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from pathlib import Path

from .config import DistributionConfig, SmtpConfig

logger = logging.getLogger(__name__)

SMTP_TIMEOUT = 30


def build_report_body(report_name: str, sites: list[str], format_name: str) -> str:
    """Build the HTML body of a report email."""
    site_items = "".join(f"<li>{escape(site)}</li>" for site in sites)
    return f"""Hello,<br>
<br>
The <em>{escape(report_name)}</em> report has just been generated. It contains uptime information for the following sites:<br>
<ul>
    {site_items}
</ul><br>
The report was generated using the <em>{escape(format_name.upper())}</em> format."""


class Mailer:
    """Sends generated report archives as email attachments."""

    def __init__(self, smtp_config: SmtpConfig | None) -> None:
        """Initialize mailer with SMTP configuration.

        Args:
            smtp_config: SMTP settings, or None if mail is not configured.
        """
        self._smtp = smtp_config

    @property
    def configured(self) -> bool:
        return self._smtp is not None

    def send_report(
        self,
        report_name: str,
        sites: list[str],
        format_name: str,
        archive: Path,
        to: str,
    ) -> bool:
        """Send a report archive to one recipient.

        Returns:
            True if the message was accepted by the SMTP server, False otherwise.
        """
        if self._smtp is None:
            logger.error("Cannot mail report '%s' to %s: no SMTP server configured", report_name, to)
            return False

        smtp = self._smtp
        msg = MIMEMultipart()
        msg["Subject"] = f"Uptime Report - {report_name}"
        msg["From"] = smtp.from_address
        msg["To"] = to
        msg.attach(MIMEText(build_report_body(report_name, sites, format_name), "html", "utf-8"))

        try:
            attachment = MIMEApplication(archive.read_bytes(), Name=archive.name)
        except OSError as e:
            logger.error("Cannot read report archive %s: %s", archive, e)
            return False
        attachment["Content-Disposition"] = f'attachment; filename="{archive.name}"'
        msg.attach(attachment)

        try:
            if smtp.use_ssl:
                server = smtplib.SMTP_SSL(smtp.host, smtp.port, timeout=SMTP_TIMEOUT)
            else:
                server = smtplib.SMTP(smtp.host, smtp.port, timeout=SMTP_TIMEOUT)
                if smtp.use_tls:
                    server.starttls()

            if smtp.username and smtp.password:
                server.login(smtp.username, smtp.password)

            server.sendmail(smtp.from_address, [to], msg.as_string())
            server.quit()

            logger.info("Report '%s' sent to %s", report_name, to)
            return True

        except (smtplib.SMTPException, OSError) as e:
            logger.error("An error occurred while sending report '%s' to %s: %s", report_name, to, e)
            return False

    def distribute(
        self,
        report_name: str,
        sites: list[str],
        format_name: str,
        archive: Path,
        distributions: list[DistributionConfig],
    ) -> dict[str, bool]:
        """Send a report archive to every configured distribution target.

        Returns:
            Mapping of "via:to" to whether delivery succeeded.
        """
        results: dict[str, bool] = {}
        for dist in distributions:
            key = f"{dist.via}:{dist.to}"
            if dist.via == "email":
                results[key] = self.send_report(report_name, sites, format_name, archive, dist.to)
            else:
                logger.warning("Unsupported distribution channel '%s' for report '%s'", dist.via, report_name)
                results[key] = False
        return results
