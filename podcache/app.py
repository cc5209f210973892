"""
Wires the podcache components together.
"""

import logging
from typing import Optional

import requests

from podcache.common.downloader import Downloader
from podcache.common.urls import FeedURLBuilder
from podcache.config import Settings
from podcache.content import ContentCache
from podcache.manager import FeedManager
from podcache.service import UpdateService
from podcache.store import FeedStore
from podcache.updater import FeedUpdater

log = logging.getLogger(__name__)


class Application:
    """All components of a podcache instance."""

    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.cache = ContentCache(settings.data_dir)
        settings.database.parent.mkdir(parents=True, exist_ok=True)
        self.store = FeedStore(settings.database)
        self.downloader = Downloader(
            session=session,
            timeout=settings.timeout,
            user_agent=settings.user_agent,
        )
        self.url_builder = FeedURLBuilder(settings.base_url)
        self.manager = FeedManager(self.store, self.cache, self.downloader)
        self.updater = FeedUpdater(self.store, self.cache, self.downloader, self.url_builder)
        self.service = UpdateService(self.updater)

        log.debug("podcache ready (data: %s, content URL: %s).", self.cache.data_dir, self.url_builder)

    def close(self) -> None:
        self.downloader.close()
        self.store.close()

    def __enter__(self) -> 'Application':
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()
