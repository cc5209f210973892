"""
Builds the URLs under which cached files are published.
"""

from urllib.parse import quote, urlparse


class FeedURLBuilder:
    """Build URLs to a feed's local files."""

    def __init__(self, base_url: str):
        """
        Initialize builder.

        Args:
            base_url: Public address of the content server, e.g. "http://localhost:8080"

        Raises:
            ValueError: If base_url is not an absolute http(s) URL
        """
        parsed = urlparse(base_url)
        if parsed.scheme not in ('http', 'https') or not parsed.netloc:
            raise ValueError(f"Invalid base URL {base_url!r}")

        self.base_url = base_url.rstrip('/')

    def url_for(self, feed_name: str, file_name: str) -> str:
        """Returns the URL used to access the given file."""
        return f"{self.base_url}/content/{quote(feed_name)}/{quote(file_name)}"

    def __str__(self) -> str:
        return self.base_url
