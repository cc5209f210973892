"""
Feed updater - synchronizes every subscribed feed with its origin.

One run of update_all() is a batch over all feeds:
    1. feeds marked for deletion are removed (row and cache directory)
    2. the remote feed is fetched if it changed and merged into the local copy
    3. enclosures are downloaded and their URLs rewritten to the local cache
    4. changed feed records are written back to the store in one go

Files are written as the batch goes. The metadata write-back is part of the
store transaction and rolled back if any feed fails, files are not.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import requests

from podcache.common.downloader import Downloader, ResourceInfo
from podcache.common.feed_document import FeedDocument, FeedEntry, Enclosure, merge_entries
from podcache.common.urls import FeedURLBuilder
from podcache.content import ContentCache
from podcache.errors import FeedParseError, FeedUpdateError, InvalidNameError, PodcacheError
from podcache.store import Feed, FeedStore

log = logging.getLogger(__name__)


@dataclass
class DocumentState:
    """Outcome of fetching a feed's document."""
    document: Optional[FeedDocument]
    new_data: bool = False
    created: bool = False
    merged: bool = False


@dataclass
class MirrorResult:
    """Outcome of mirroring a feed's enclosures."""
    rewritten: bool = False
    failures: int = 0


class FeedUpdater:
    """Update feed documents and download all of their enclosures."""

    def __init__(
        self,
        store: FeedStore,
        cache: ContentCache,
        downloader: Downloader,
        url_builder: FeedURLBuilder,
    ):
        self.store = store
        self.cache = cache
        self.downloader = downloader
        self.url_builder = url_builder

    def update_all(self, force_refresh: bool = False) -> List[Feed]:
        """
        Update all feeds and remove the ones marked for deletion.

        Args:
            force_refresh: Revisit enclosures and URLs of every feed, even unchanged ones

        Returns:
            Feeds whose metadata was written back

        Raises:
            FeedUpdateError: If any feed fails. No metadata of this run is kept.
        """
        updated_feeds = []
        log.info("Updating all known feeds.")

        with self.store.list_all_exclusive() as feeds:
            for feed in feeds:
                if feed.marked_for_deletion:
                    log.info("Removing feed entry and content for '%s'.", feed)
                    self.cache.delete_feed(feed.name)
                    self.store.delete(feed)
                    continue

                try:
                    if self.update(feed, force_refresh):
                        log.info("Updated feed '%s' from URL '%s'.", feed, feed.url)
                        updated_feeds.append(feed)
                except (requests.RequestException, PodcacheError, OSError) as e:
                    log.error("Failed to update feed '%s'.", feed, exc_info=True)
                    raise FeedUpdateError(feed.name, e) from e

            if updated_feeds:
                self.store.save(updated_feeds)

        log.info("All feeds have been updated (%d changed).", len(updated_feeds))
        return updated_feeds

    def update(self, feed: Feed, force_refresh: bool = False) -> bool:
        """
        Update a single feed's files. Does not write to the store.

        Args:
            feed: Feed to update. Its fields are changed in place.
            force_refresh: Revisit enclosures even if nothing changed

        Returns:
            True if the feed record changed and needs saving
        """
        state = self._update_document(feed)
        updated = state.new_data

        if not (state.new_data or force_refresh or not feed.all_files_updated):
            log.debug("Feed '%s' is up to date.", feed)
            return updated

        document_path = self.cache.document_path(feed.name)
        document = state.document or FeedDocument.from_file(document_path)

        log.debug("Downloading missing content files for feed '%s'.", feed)
        result = self._mirror_enclosures(feed, document)

        if state.merged or result.rewritten:
            if not state.created:
                self.cache.backup_document(feed.name)

            log.debug("Saving updated feed data for '%s' to '%s'.", feed, document_path)
            document.write(document_path)
            updated = True
        else:
            log.debug("Feed content of '%s' hasn't been updated.", feed)

        if result.failures:
            log.warning("%d enclosure(s) of feed '%s' could not be downloaded.", result.failures, feed)
        elif not feed.all_files_updated:
            feed.all_files_updated = True
            updated = True

        return updated

    def _update_document(self, feed: Feed) -> DocumentState:
        """
        Fetch the remote feed and merge it into the local document.

        A missing local document is downloaded in full. Otherwise the origin is
        asked for changes since the feed's last modification date.
        """
        document_path = self.cache.document_path(feed.name)

        if not document_path.exists():
            log.debug("No local document for '%s'. Downloading '%s'.", feed, feed.url)
            self.cache.create_feed_dir(feed.name)
            info = self.downloader.download(feed.url, document_path)

            try:
                document = FeedDocument.from_file(document_path)
            except FeedParseError:
                document_path.unlink()
                raise

            self._record_download(feed, info)
            return DocumentState(document, new_data=True, created=True)

        with self.downloader.request(feed.url, feed.last_modified) as response:
            if response.unchanged:
                log.debug("Feed '%s' not modified since %s.", feed, feed.last_modified)
                return DocumentState(None)

            log.debug("Loading new feed data of '%s' from download response.", feed)
            incoming = FeedDocument.from_bytes(response.read())
            info = response.info

        document = FeedDocument.from_file(document_path)
        merged = merge_entries(document, incoming)
        log.debug("Merged feed '%s': %s.", feed, "new entries" if merged else "no new entries")

        self._record_download(feed, info)
        return DocumentState(document, new_data=True, merged=merged)

    @staticmethod
    def _record_download(feed: Feed, info: Optional[ResourceInfo]) -> None:
        feed.last_modified = info.last_modified if info is not None else None
        feed.all_files_updated = False

    def _mirror_enclosures(self, feed: Feed, document: FeedDocument) -> MirrorResult:
        """
        Download every enclosure of the document and point it to the local copy.

        A failing enclosure is logged and skipped.
        """
        result = MirrorResult()

        for entry in document.entries:
            for enclosure in entry.enclosures:
                try:
                    content_file = self._download_enclosure(feed, enclosure.url)
                except (requests.RequestException, InvalidNameError):
                    log.error(
                        "Failed to download enclosure '%s' of feed '%s'. Will continue with next entry.",
                        enclosure.url, feed, exc_info=True,
                    )
                    result.failures += 1
                    continue

                local_url = self.url_builder.url_for(feed.name, content_file.name)
                if self._rewrite(entry, enclosure, local_url):
                    result.rewritten = True

        return result

    def _download_enclosure(self, feed: Feed, url: str) -> Path:
        """Download an enclosure unless a file of the same name is cached already."""
        target_file = self.cache.file_path(feed.name, ContentCache.file_name_for(url))

        if target_file.exists():
            log.debug("Not overwriting existing '%s'.", target_file)
        else:
            self.cache.create_feed_dir(feed.name)
            self.downloader.download(url, target_file)

        return target_file

    @staticmethod
    def _rewrite(entry: FeedEntry, enclosure: Enclosure, local_url: str) -> bool:
        changed = False

        # Entries that link straight to their media get the local link as well
        if entry.link == enclosure.url and entry.link != local_url:
            log.debug("Updating entry URL to '%s'.", local_url)
            entry.link = local_url
            changed = True

        if enclosure.url != local_url:
            log.debug("Updating enclosure with local URL '%s'.", local_url)
            enclosure.url = local_url
            changed = True

        return changed
