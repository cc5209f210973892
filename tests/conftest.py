"""
Shared fixtures: a fake HTTP origin and feed builders.
"""

import io
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import pytest
import requests
from feedgen.feed import FeedGenerator
from requests.structures import CaseInsensitiveDict

from podcache.common.downloader import Downloader, format_http_date, parse_http_date
from podcache.common.urls import FeedURLBuilder
from podcache.content import ContentCache
from podcache.store import FeedStore
from podcache.updater import FeedUpdater

BASE_URL = "http://cache.local"
FEED_URL = "https://origin.example.com/podcast-a/feed.xml"
MEDIA_URL = "https://media.example.com/podcast-a/"


class Body(io.BytesIO):
    """Response body counting how often it was read."""

    reads = 0

    def read(self, size=-1):
        self.reads += 1
        return super().read(size)


class BrokenStream(Body):
    """Body that fails after the first read, like a dropped connection."""

    def read(self, size=-1):
        if self.tell() > 0:
            raise requests.ConnectionError("connection reset")
        return super().read(4)


class FakeOrigin(requests.Session):
    """
    Session serving registered resources without network access.

    Honors If-Modified-Since and records every request made.
    """

    def __init__(self):
        super().__init__()
        self.resources: Dict[str, Tuple[bytes, Optional[datetime], str]] = {}
        self.errors: Dict[str, int] = {}
        self.broken: set = set()
        self.requests: List[Tuple[str, Dict[str, str]]] = []
        self.responses: List[requests.Response] = []

    def serve(self, url: str, body: bytes, last_modified: Optional[datetime] = None,
              content_type: str = "application/rss+xml") -> None:
        self.resources[url] = (body, last_modified, content_type)

    def fail(self, url: str, status: int = 404) -> None:
        self.errors[url] = status

    def urls(self) -> List[str]:
        return [url for url, _ in self.requests]

    def get(self, url, headers=None, stream=False, timeout=None, **kwargs):
        headers = dict(headers or {})
        self.requests.append((url, headers))

        response = requests.Response()
        response.url = url
        response.headers = CaseInsensitiveDict()
        self.responses.append(response)

        if url in self.errors:
            response.status_code = self.errors[url]
            response.reason = "Error"
            response.raw = Body(b"error")
            return response

        if url not in self.resources:
            response.status_code = 404
            response.reason = "Not Found"
            response.raw = Body(b"not found")
            return response

        body, last_modified, content_type = self.resources[url]
        since = parse_http_date(headers.get("If-Modified-Since"))

        if last_modified is not None and since is not None and last_modified <= since:
            response.status_code = 304
            response.reason = "Not Modified"
            response.raw = Body(b"")
            return response

        response.status_code = 200
        response.reason = "OK"
        response.headers["Content-Type"] = content_type
        if last_modified is not None:
            response.headers["Last-Modified"] = format_http_date(last_modified)
        response.raw = BrokenStream(body) if url in self.broken else Body(body)
        return response


def build_rss(entries, title="Podcast A", media_url=MEDIA_URL) -> bytes:
    """
    Build an RSS feed with feedgen.

    Args:
        entries: Entry ids, newest first. Each gets an enclosure "<id>.mp3".
    """
    fg = FeedGenerator()
    fg.title(title)
    fg.link(href="https://origin.example.com/podcast-a", rel="alternate")
    fg.description(f"{title} episodes")
    fg.load_extension("podcast")

    for entry_id in entries:
        fe = fg.add_entry(order="append")
        fe.guid(entry_id, permalink=False)
        fe.title(f"Episode {entry_id}")
        fe.link(href=f"https://origin.example.com/podcast-a/{entry_id}")
        fe.enclosure(f"{media_url}{entry_id}.mp3", "1234", "audio/mpeg")
        fe.pubDate(datetime(2024, 1, 1, tzinfo=timezone.utc))

    return fg.rss_str(pretty=True)


ATOM_FEED = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Show</title>
  <id>urn:atom-show</id>
  <updated>2024-01-02T00:00:00Z</updated>
  <entry>
    <id>urn:atom-show:2</id>
    <title>Second</title>
    <updated>2024-01-02T00:00:00Z</updated>
    <link href="https://media.example.com/atom/2.ogg"/>
    <link rel="enclosure" type="audio/ogg" href="https://media.example.com/atom/2.ogg"/>
  </entry>
  <entry>
    <id>urn:atom-show:1</id>
    <title>First</title>
    <updated>2024-01-01T00:00:00Z</updated>
    <link rel="alternate" href="https://atom.example.com/1"/>
    <link rel="enclosure" type="audio/ogg" href="https://media.example.com/atom/1.ogg"/>
  </entry>
</feed>
"""


@pytest.fixture
def origin():
    return FakeOrigin()


@pytest.fixture
def downloader(origin):
    return Downloader(session=origin)


@pytest.fixture
def cache(tmp_path):
    return ContentCache(tmp_path / "data")


@pytest.fixture
def store(tmp_path):
    store = FeedStore(tmp_path / "podcache.db")
    yield store
    store.close()


@pytest.fixture
def url_builder():
    return FeedURLBuilder(BASE_URL)


@pytest.fixture
def updater(store, cache, downloader, url_builder):
    return FeedUpdater(store, cache, downloader, url_builder)
