"""
Feed manager - adds, edits and removes feed subscriptions.
"""

import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional

from podcache.common.downloader import Downloader
from podcache.common.feed_document import FeedDocument
from podcache.content import ContentCache, validate_feed_name
from podcache.errors import FeedNotFoundError
from podcache.store import DEFAULT_CONTENT_TYPE, Feed, FeedStore

log = logging.getLogger(__name__)


class FeedManager:
    """Manage subscribed feeds and their metadata."""

    def __init__(self, store: FeedStore, cache: ContentCache, downloader: Downloader):
        self.store = store
        self.cache = cache
        self.downloader = downloader

    def list_feeds(self) -> List[Feed]:
        return self.store.list_all()

    def get_feed(self, name: str) -> Optional[Feed]:
        return self.store.find_by_name(name)

    def document_path(self, name: str) -> Path:
        return self.cache.document_path(name)

    def add(self, name: str, url: str) -> Feed:
        """
        Subscribe to a feed and download it right away.

        The feed is fetched to a temporary file first, so nothing is stored if
        the download or parsing fails. Enclosures are mirrored by the next update.

        Args:
            name: Unique name of the feed, also used as its cache directory
            url: URL of the remote feed

        Returns:
            The new feed

        Raises:
            FeedExistsError: If a feed of that name already exists
            FeedParseError: If the remote document is not a valid feed
        """
        validate_feed_name(name)

        fd, temp_name = tempfile.mkstemp(prefix='feed', suffix='.xml', dir=self.cache.data_dir)
        os.close(fd)
        temp_file = Path(temp_name)

        try:
            log.info("Downloading new feed '%s' from '%s'.", name, url)
            with self.downloader.request(url) as response:
                document = FeedDocument.from_bytes(response.read())
                info = response.info

            # Always passed through the document model so later updates can read it
            document.write(temp_file)

            feed = Feed(
                name=name,
                url=url,
                content_type=info.content_type or DEFAULT_CONTENT_TYPE,
                last_modified=info.last_modified,
            )
            self.store.insert(feed)

            feed_file = self.cache.document_path(name)
            if not feed_file.exists():
                self.cache.create_feed_dir(name)
                os.replace(temp_file, feed_file)
            else:
                log.warning("Feed file '%s' already exists. Will merge on next update.", feed_file)

            return feed
        finally:
            temp_file.unlink(missing_ok=True)

    def update(self, feed: Feed) -> None:
        """
        Save changed feed information, e.g. a new URL.

        A new URL is only picked up by the next update.
        """
        self.store.save(feed)

    def edit(self, name: str, url: Optional[str] = None, content_type: Optional[str] = None) -> Feed:
        """
        Change the URL or content type of a feed.

        Raises:
            FeedNotFoundError: If no such feed exists
        """
        feed = self.store.find_by_name(name)
        if feed is None:
            raise FeedNotFoundError(f"Feed '{name}' not found")

        if url:
            feed.url = url
        if content_type:
            feed.content_type = content_type

        self.update(feed)
        return feed

    def mark_for_deletion(self, name: str) -> bool:
        """
        Mark the feed for deletion. Content is removed on the next update.

        Returns:
            False if no such feed exists
        """
        log.info("Marking feed '%s' for deletion.", name)

        if self.store.mark_for_deletion(name) == 0:
            log.debug("Feed '%s' not found. Not deleting anything.", name)
            return False
        return True

    def restore(self, name: str) -> bool:
        """
        Undo mark_for_deletion() for a feed not yet removed by an update.

        Returns:
            False if no such feed exists
        """
        log.info("Restoring feed '%s'.", name)
        return self.store.mark_for_deletion(name, marked=False) > 0
