"""
Update service - runs update cycles one at a time.
"""

import logging
import threading
from typing import List, Optional

from podcache.errors import UpdateInProgressError
from podcache.store import Feed
from podcache.updater import FeedUpdater

log = logging.getLogger(__name__)


class UpdateService:
    """
    Trigger for FeedUpdater.update_all().

    A trigger arriving while a cycle runs is rejected with UpdateInProgressError.
    """

    def __init__(self, updater: FeedUpdater):
        self.updater = updater
        self._running = threading.Lock()
        self.last_error: Optional[Exception] = None

    @property
    def running(self) -> bool:
        return self._running.locked()

    def _claim(self) -> None:
        if not self._running.acquire(blocking=False):
            raise UpdateInProgressError("An update is already running")

    def _run(self, force: bool) -> List[Feed]:
        try:
            feeds = self.updater.update_all(force)
        except Exception as e:
            log.error("Failed to update feeds.", exc_info=True)
            self.last_error = e
            raise
        else:
            self.last_error = None
            return feeds
        finally:
            self._running.release()

    def update(self, force: bool = False) -> List[Feed]:
        """
        Run one update cycle.

        Args:
            force: Revisit enclosures and URLs of every feed

        Returns:
            Feeds whose metadata was written back

        Raises:
            UpdateInProgressError: If another cycle is running
        """
        self._claim()
        return self._run(force)

    def update_async(self, force: bool = False) -> threading.Thread:
        """
        Start one update cycle in a background thread.

        The claim is taken before the thread starts, so a concurrent trigger is
        rejected right here rather than inside the thread.
        """
        self._claim()

        def run():
            try:
                self._run(force)
            except Exception:
                # logged and kept in last_error by _run
                return

        thread = threading.Thread(target=run, name='podcache-update', daemon=True)
        try:
            thread.start()
        except RuntimeError:
            self._running.release()
            raise
        return thread
