"""
Conditional HTTP downloads using requests.
Files are only downloaded when the origin reports a change, and are
written through a temporary ".partial" file so readers never see half a file.
"""

import logging
import os
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from pathlib import Path
from typing import Iterable, NamedTuple, Optional

import requests

log = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "podcache/1.0"
DEFAULT_TIMEOUT = 30
CHUNK_SIZE = 64 * 1024
PARTIAL_SUFFIX = ".partial"


class ResourceInfo(NamedTuple):
    """Freshness information of a downloaded resource."""
    last_modified: Optional[datetime]
    content_type: Optional[str]


def parse_http_date(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an HTTP date header.

    Args:
        value: Header value, e.g. "Wed, 21 Oct 2015 07:28:00 GMT"

    Returns:
        Aware UTC datetime, or None if missing or unparsable
    """
    if not value:
        return None

    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        log.debug("Ignoring unparsable HTTP date '%s'.", value)
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_http_date(value: datetime) -> str:
    """Format a datetime for use in If-Modified-Since."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)


class DownloadResponse:
    """
    Response of a Downloader.request() call.

    Use as a context manager so the connection is always released. The body
    must not be read when the response is unchanged.
    """

    def __init__(self, response: requests.Response):
        self._response = response

    @property
    def unchanged(self) -> bool:
        """True if the origin answered "304 Not Modified"."""
        return self._response.status_code == 304

    @property
    def last_modified(self) -> Optional[datetime]:
        return parse_http_date(self._response.headers.get("Last-Modified"))

    @property
    def content_type(self) -> Optional[str]:
        return self._response.headers.get("Content-Type")

    @property
    def info(self) -> ResourceInfo:
        return ResourceInfo(self.last_modified, self.content_type)

    def iter_content(self, chunk_size: int = CHUNK_SIZE) -> Iterable[bytes]:
        if self.unchanged:
            raise ValueError("Unchanged response has no content")
        return self._response.iter_content(chunk_size=chunk_size)

    def read(self) -> bytes:
        """Read the entire body into memory."""
        return b"".join(self.iter_content())

    def close(self) -> None:
        self._response.close()

    def __enter__(self) -> "DownloadResponse":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class Downloader:
    """Download resources, honoring Last-Modified / If-Modified-Since."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: Optional[float] = DEFAULT_TIMEOUT,
        user_agent: str = DEFAULT_USER_AGENT,
    ):
        """
        Initialize downloader.

        Args:
            session: Session to use (a new one is created if omitted)
            timeout: Request timeout in seconds, None for no timeout
            user_agent: User-Agent header sent with every request
        """
        self.session = session if session is not None else requests.Session()
        self.timeout = timeout
        self.user_agent = user_agent

    def request(self, url: str, last_modified: Optional[datetime] = None) -> DownloadResponse:
        """
        Request the given resource if it was changed.

        Args:
            url: URL to request
            last_modified: Known modification date of the resource or None

        Returns:
            Response, possibly unchanged

        Raises:
            requests.RequestException: On connection errors or any 4xx/5xx status
        """
        headers = {"User-Agent": self.user_agent}
        if last_modified is not None:
            headers["If-Modified-Since"] = format_http_date(last_modified)

        log.debug("Requesting '%s' (If-Modified-Since: %s).", url, headers.get("If-Modified-Since"))
        response = self.session.get(url, headers=headers, stream=True, timeout=self.timeout)

        if response.status_code != 304:
            try:
                response.raise_for_status()
            except requests.HTTPError:
                response.close()
                raise

        return DownloadResponse(response)

    def download(
        self,
        url: str,
        target_file: Path,
        last_modified: Optional[datetime] = None,
    ) -> Optional[ResourceInfo]:
        """
        Download the given URL to the target file.

        A known modification date is ignored if the target file does not exist,
        since there is nothing up to date to keep.

        Args:
            url: URL to download
            target_file: Destination path
            last_modified: Known modification date or None

        Returns:
            Freshness info of the new file, or None if the resource is unchanged
        """
        target_file = Path(target_file)

        if last_modified is not None and not target_file.exists():
            log.debug("Given a modification date but '%s' does not exist. Forcing download.", target_file)
            last_modified = None

        with self.request(url, last_modified) as response:
            if response.unchanged:
                log.debug("Resource at '%s' is unchanged. Not downloading.", url)
                return None

            log.debug("Downloading '%s' to '%s'.", url, target_file)
            write_atomically(response.iter_content(), target_file)
            return response.info

    def close(self) -> None:
        self.session.close()


def write_atomically(chunks: Iterable[bytes], target_file: Path) -> None:
    """
    Write chunks to a ".partial" sibling and move it over the target once complete.

    Args:
        chunks: Content to write
        target_file: Destination path. Left untouched if writing fails.
    """
    target_file = Path(target_file)
    temp_file = target_file.with_name(target_file.name + PARTIAL_SUFFIX)

    try:
        with open(temp_file, "wb") as f:
            for chunk in chunks:
                if chunk:
                    f.write(chunk)
        os.replace(temp_file, target_file)
    except BaseException:
        log.warning("Failed to write file '%s'. Removing temporary file.", temp_file)
        temp_file.unlink(missing_ok=True)
        raise
