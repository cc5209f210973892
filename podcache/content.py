"""
Content cache - one directory per feed holding the feed document and its
downloaded enclosures.
"""

import logging
import posixpath
import re
import shutil
from pathlib import Path
from typing import List, Optional, Union
from urllib.parse import unquote, urlparse

from podcache.common.downloader import PARTIAL_SUFFIX
from podcache.errors import InvalidNameError

log = logging.getLogger(__name__)

FEED_FILE = '_feed.xml'
BACKUP_SUFFIX = '.save'
BACKUP_FILE = FEED_FILE + BACKUP_SUFFIX

FEED_NAME_PATTERN = re.compile(r'^[A-Za-z0-9][A-Za-z0-9._-]*$')

# Longest file name most file systems accept, in bytes
MAX_NAME_BYTES = 255


def validate_feed_name(name: str) -> str:
    """
    Check that a feed name can be used as a directory name.

    Raises:
        InvalidNameError: If the name is empty or contains unsupported characters
    """
    if not name or not FEED_NAME_PATTERN.match(name) or len(name) > MAX_NAME_BYTES:
        raise InvalidNameError(f"Invalid feed name {name!r}")
    return name


def validate_file_name(file_name: str) -> str:
    """
    Check that a file name refers to a plain file inside a feed directory.

    Raises:
        InvalidNameError: On path separators, dot names, reserved cache file names
            or names too long for the file system
    """
    if (
        not file_name
        or file_name in ('.', '..')
        or '/' in file_name
        or '\\' in file_name
        or '\0' in file_name
        or file_name in (FEED_FILE, BACKUP_FILE)
        or file_name.endswith(PARTIAL_SUFFIX)
        or len((file_name + PARTIAL_SUFFIX).encode('utf-8')) > MAX_NAME_BYTES
    ):
        raise InvalidNameError(f"Invalid file name {file_name!r}")
    return file_name


class ContentCache:
    """Maps feed names to their cache directories and files."""

    def __init__(self, data_dir: Union[str, Path]):
        self.data_dir = Path(data_dir).resolve()
        log.info("Initializing content cache in '%s'.", self.data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def file_name_for(url: str) -> str:
        """
        Derive the local file name of a remote resource.

        Args:
            url: Remote URL, e.g. "https://cdn.example.com/ep/42.mp3?src=rss"

        Returns:
            Last segment of the URL path, e.g. "42.mp3"
        """
        path = unquote(urlparse(url).path)
        return validate_file_name(posixpath.basename(path))

    def feed_dir(self, name: str) -> Path:
        """Returns the directory for the given feed. May not exist."""
        return self.data_dir / validate_feed_name(name)

    def create_feed_dir(self, name: str) -> Path:
        feed_dir = self.feed_dir(name)
        feed_dir.mkdir(parents=True, exist_ok=True)
        return feed_dir

    def document_path(self, name: str) -> Path:
        """Returns the path of the feed document. May not exist."""
        return self.feed_dir(name) / FEED_FILE

    def backup_path(self, name: str) -> Path:
        return self.feed_dir(name) / BACKUP_FILE

    def file_path(self, name: str, file_name: str) -> Path:
        """Returns the path of one of the feed's content files. May not exist."""
        return self.feed_dir(name) / validate_file_name(file_name)

    def list_files(self, name: str) -> List[Path]:
        """
        List the cached content files of a feed.

        The document, its backup and unfinished downloads are not included.
        """
        feed_dir = self.feed_dir(name)
        if not feed_dir.is_dir():
            return []

        return sorted(
            path for path in feed_dir.iterdir()
            if path.is_file()
            and path.name not in (FEED_FILE, BACKUP_FILE)
            and not path.name.endswith(PARTIAL_SUFFIX)
        )

    def backup_document(self, name: str) -> Optional[Path]:
        """
        Copy the current feed document to its backup file.

        Returns:
            Path of the backup, or None if there is no document yet
        """
        document = self.document_path(name)
        if not document.exists():
            return None

        backup = self.backup_path(name)
        log.debug("Creating backup of '%s' at '%s'.", document, backup)
        shutil.copy2(document, backup)
        return backup

    def delete_feed(self, name: str) -> None:
        """Delete the feed directory and all content. Does nothing if it is missing."""
        feed_dir = self.feed_dir(name)
        if not feed_dir.exists():
            return

        log.debug("Deleting feed directory '%s' and all its content.", feed_dir)
        shutil.rmtree(feed_dir)

    def delete_file(self, name: str, file_name: str) -> None:
        path = self.file_path(name, file_name)
        if not path.exists():
            return

        log.debug("Removing feed file '%s'.", path)
        path.unlink()
