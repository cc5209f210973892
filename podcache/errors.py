"""
Exceptions raised by podcache.
"""


class PodcacheError(Exception):
    """Base class for all podcache errors."""


class FeedParseError(PodcacheError):
    """A feed document could not be parsed or written."""


class InvalidNameError(PodcacheError, ValueError):
    """A feed or file name cannot be used inside the content cache."""


class FeedExistsError(PodcacheError):
    """A feed of the same name is already subscribed."""


class FeedNotFoundError(PodcacheError):
    """No feed of the given name is known."""


class UpdateInProgressError(PodcacheError):
    """Another update cycle is already running."""


class FeedUpdateError(PodcacheError):
    """Updating a single feed failed. Aborts the whole update cycle."""

    def __init__(self, feed_name: str, cause: Exception):
        super().__init__(f"Failed to update feed '{feed_name}': {cause}")
        self.feed_name = feed_name
        self.cause = cause
