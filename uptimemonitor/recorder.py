"""Per-site HTTP probing that records every response to the record store."""

import http.client
import logging
import time
import urllib.error
import urllib.parse
import urllib.request
from datetime import UTC, datetime
from pathlib import Path

from . import __version__
from .config import SiteConfig
from .models import MonitorEntry
from .store import RecordStoreError, RecordWriter

logger = logging.getLogger(__name__)

# Seconds to wait for the connection and for each read. A probe never blocks
# much longer than this.
PROBE_TIMEOUT = 5

USER_AGENT = f"UptimeMonitor/{__version__}"

DEFAULT_HEADERS = {
    "Cache-Control": "no-cache",
    "User-Agent": USER_AGENT,
    "Accept": "*/*",
}


class _RedirectHandler(urllib.request.HTTPRedirectHandler):
    """Redirect handler that also follows 307 and 308 redirects."""

    def http_error_307(self, req, fp, code, msg, headers):
        return self._do_redirect(req, fp, code, msg, headers)

    def http_error_308(self, req, fp, code, msg, headers):
        return self._do_redirect(req, fp, code, msg, headers)

    def _do_redirect(self, req, fp, code, msg, headers):
        """Follow redirect preserving the original method and headers."""
        new_url = headers.get("Location")
        if new_url:
            new_req = urllib.request.Request(
                urllib.parse.urljoin(req.full_url, new_url),
                method=req.get_method(),
                headers=dict(req.headers),
            )
            return self.parent.open(new_req, timeout=req.timeout)
        return None


# Shared opener; urllib follows 301/302/303 on its own.
_opener = urllib.request.build_opener(_RedirectHandler())


def _is_json_response(headers) -> bool:
    """Check if the response headers declare a JSON body."""
    if headers is None:
        return False
    content_type = headers.get("Content-Type") or ""
    return content_type.split(";")[0].strip().lower() == "application/json"


def _read_details(response) -> str | None:
    """Return the body of a JSON response, None for other content types."""
    if not _is_json_response(response.headers):
        return None
    return response.read().decode("utf-8", errors="replace")


class SiteRecorder:
    """Probes one site and appends each result to that site's record files.

    The record file is opened when the recorder is created, so a recorder is
    ready to write before its first probe. ``probe()`` may be called from
    several threads at once; writes are serialized by the underlying
    RecordWriter.

    Example:
        recorder = SiteRecorder(site, "sites", 4 * 1024 * 1024)
        recorder.probe()
        recorder.close()
    """

    def __init__(self, site: SiteConfig, sites_dir: str | Path, max_file_size: int) -> None:
        """Initialize the recorder and open the site's active record file.

        Args:
            site: The site to probe.
            sites_dir: Root directory holding one directory per site.
            max_file_size: Record file size in bytes that triggers rotation.

        Raises:
            RecordStoreError: If the site's record store cannot be opened.
        """
        self._site = site
        self._writer = RecordWriter(Path(sites_dir) / site.name, max_file_size)

    @property
    def site(self) -> SiteConfig:
        return self._site

    @property
    def record_file(self) -> Path | None:
        return self._writer.path

    def probe(self) -> MonitorEntry | None:
        """Send one GET request to the site and record the response.

        Any HTTP response is recorded, including 4xx and 5xx statuses.

        Returns:
            The recorded entry, or None if no response was received or the
            entry could not be stored.
        """
        name, url = self._site.name, self._site.url
        checked_at = datetime.now(UTC)
        start = time.monotonic()
        try:
            request = urllib.request.Request(url, method="GET", headers=DEFAULT_HEADERS)
            with _opener.open(request, timeout=PROBE_TIMEOUT) as response:
                status_code = response.status
                details = _read_details(response)
                elapsed_ms = int((time.monotonic() - start) * 1000)

        except urllib.error.HTTPError as e:
            status_code = e.code
            try:
                details = _read_details(e)
            except OSError:
                details = None
            finally:
                e.close()
            elapsed_ms = int((time.monotonic() - start) * 1000)

        except urllib.error.URLError as e:
            if isinstance(e.reason, TimeoutError):
                logger.warning("%s: request to %s timed out", name, url)
            else:
                logger.error("%s: request to %s failed: %s", name, url, e.reason)
            return None

        except TimeoutError:
            logger.warning("%s: request to %s timed out", name, url)
            return None

        except (OSError, http.client.HTTPException) as e:
            logger.error("%s: request to %s failed: %s", name, url, e)
            return None

        entry = MonitorEntry(
            timestamp=checked_at,
            url=url,
            response_code=status_code,
            response_time_ms=elapsed_ms,
            details=details,
        )

        try:
            self._writer.append(entry)
        except RecordStoreError as e:
            logger.error("%s: failed to record probe result: %s", name, e)
            return None

        logger.debug("%s: %d (%dms)", name, entry.response_code, entry.response_time_ms)
        return entry

    def close(self) -> None:
        """Flush and close the active record file. Safe to call more than once."""
        try:
            self._writer.close()
        except RecordStoreError as e:
            logger.error("%s: %s", self._site.name, e)
