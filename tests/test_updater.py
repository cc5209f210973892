import errno
from datetime import datetime, timezone
from pathlib import Path

import feedparser
import pytest

from conftest import BASE_URL, FEED_URL, MEDIA_URL, build_rss
import podcache.common.downloader as downloader_module
from podcache.common.feed_document import FeedDocument
from podcache.common.urls import FeedURLBuilder
from podcache.errors import FeedUpdateError
from podcache.store import Feed
from podcache.updater import FeedUpdater

FIRST_MODIFIED = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)
SECOND_MODIFIED = datetime(2024, 1, 8, 8, 0, tzinfo=timezone.utc)


def local_url(name, file_name):
    return f"{BASE_URL}/content/{name}/{file_name}"


def serve_episodes(origin, entries, last_modified):
    origin.serve(FEED_URL, build_rss(entries), last_modified=last_modified)
    for entry_id in entries:
        origin.serve(f"{MEDIA_URL}{entry_id}.mp3", f"audio {entry_id}".encode(), content_type="audio/mpeg")


def snapshot_files(cache, name):
    return {
        path.name: (path.read_bytes(), path.stat().st_mtime_ns)
        for path in cache.feed_dir(name).iterdir()
    }


def test_full_cycle(origin, store, cache, updater):
    store.save(Feed("podcast-a", FEED_URL))
    serve_episodes(origin, ["ep2", "ep1"], FIRST_MODIFIED)

    # First cycle: nothing cached yet
    assert [f.name for f in updater.update_all()] == ["podcast-a"]

    document = FeedDocument.from_file(cache.document_path("podcast-a"))
    assert [e.id for e in document.entries] == ["ep2", "ep1"]
    for entry in document.entries:
        assert [e.url for e in entry.enclosures] == [local_url("podcast-a", f"{entry.id}.mp3")]
    assert cache.file_path("podcast-a", "ep1.mp3").read_bytes() == b"audio ep1"
    assert cache.file_path("podcast-a", "ep2.mp3").read_bytes() == b"audio ep2"
    assert not cache.backup_path("podcast-a").exists()

    feed = store.find_by_name("podcast-a")
    assert feed.all_files_updated
    assert feed.last_modified == FIRST_MODIFIED

    # Second cycle: origin unchanged
    origin.requests.clear()
    before = snapshot_files(cache, "podcast-a")

    assert updater.update_all() == []

    assert origin.urls() == [FEED_URL]
    assert origin.responses[-1].status_code == 304
    assert snapshot_files(cache, "podcast-a") == before
    assert store.find_by_name("podcast-a") == feed

    # Third cycle: one new episode
    origin.requests.clear()
    serve_episodes(origin, ["ep3", "ep2"], SECOND_MODIFIED)

    assert [f.name for f in updater.update_all()] == ["podcast-a"]

    assert origin.urls() == [FEED_URL, f"{MEDIA_URL}ep3.mp3"]
    document = FeedDocument.from_file(cache.document_path("podcast-a"))
    assert [e.id for e in document.entries] == ["ep3", "ep2", "ep1"]
    assert document.entries[0].enclosures[0].url == local_url("podcast-a", "ep3.mp3")
    assert cache.file_path("podcast-a", "ep3.mp3").read_bytes() == b"audio ep3"
    for name in ("ep1.mp3", "ep2.mp3"):
        assert snapshot_files(cache, "podcast-a")[name] == before[name]
    assert cache.backup_path("podcast-a").read_bytes() == before["_feed.xml"][0]

    feed = store.find_by_name("podcast-a")
    assert feed.all_files_updated
    assert feed.last_modified == SECOND_MODIFIED


def test_mirrored_feed_is_valid_for_feed_readers(origin, store, cache, updater):
    store.save(Feed("podcast-a", FEED_URL))
    serve_episodes(origin, ["ep1"], FIRST_MODIFIED)

    updater.update_all()

    parsed = feedparser.parse(cache.document_path("podcast-a").read_bytes())
    assert parsed.entries[0].enclosures[0].href == local_url("podcast-a", "ep1.mp3")


ENTRY_LINKS_TO_MEDIA = b"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>Direct</title>
<item><guid>1</guid><link>https://media.example.com/direct/1.mp3</link>
<enclosure url="https://media.example.com/direct/1.mp3" type="audio/mpeg"/></item>
</channel></rss>
"""


def test_entry_link_to_media_is_rewritten(origin, store, cache, updater):
    store.save(Feed("direct", FEED_URL))
    origin.serve(FEED_URL, ENTRY_LINKS_TO_MEDIA)
    origin.serve("https://media.example.com/direct/1.mp3", b"audio")

    updater.update_all()

    entry = FeedDocument.from_file(cache.document_path("direct")).entries[0]
    assert entry.link == local_url("direct", "1.mp3")
    assert entry.enclosures[0].url == local_url("direct", "1.mp3")


def test_other_entry_links_are_kept(origin, store, cache, updater):
    store.save(Feed("podcast-a", FEED_URL))
    serve_episodes(origin, ["ep1"], FIRST_MODIFIED)

    updater.update_all()

    entry = FeedDocument.from_file(cache.document_path("podcast-a")).entries[0]
    assert entry.link == "https://origin.example.com/podcast-a/ep1"


def test_failed_enclosure_does_not_stop_the_feed(origin, store, cache, updater):
    store.save(Feed("podcast-a", FEED_URL))
    serve_episodes(origin, ["ep2", "ep1"], FIRST_MODIFIED)
    origin.fail(f"{MEDIA_URL}ep2.mp3", 503)

    assert [f.name for f in updater.update_all()] == ["podcast-a"]

    document = FeedDocument.from_file(cache.document_path("podcast-a"))
    assert document.entries[0].enclosures[0].url == f"{MEDIA_URL}ep2.mp3"
    assert document.entries[1].enclosures[0].url == local_url("podcast-a", "ep1.mp3")
    assert not cache.file_path("podcast-a", "ep2.mp3").exists()

    feed = store.find_by_name("podcast-a")
    assert not feed.all_files_updated

    # The next cycle retries the missing file even though the feed is unchanged
    del origin.errors[f"{MEDIA_URL}ep2.mp3"]
    updater.update_all()

    assert cache.file_path("podcast-a", "ep2.mp3").read_bytes() == b"audio ep2"
    assert store.find_by_name("podcast-a").all_files_updated


def test_existing_files_are_not_downloaded_again(origin, store, cache, updater):
    store.save(Feed("podcast-a", FEED_URL))
    serve_episodes(origin, ["ep1"], FIRST_MODIFIED)
    cache.create_feed_dir("podcast-a")
    cache.file_path("podcast-a", "ep1.mp3").write_bytes(b"kept")

    updater.update_all()

    assert f"{MEDIA_URL}ep1.mp3" not in origin.urls()
    assert cache.file_path("podcast-a", "ep1.mp3").read_bytes() == b"kept"


def test_force_refresh_revisits_unchanged_feed(origin, store, cache, downloader, updater):
    store.save(Feed("podcast-a", FEED_URL))
    serve_episodes(origin, ["ep1"], FIRST_MODIFIED)
    updater.update_all()

    moved = FeedUpdater(store, cache, downloader, FeedURLBuilder("https://mirror.example.net/podcasts"))
    origin.requests.clear()

    assert moved.update_all() == []
    assert origin.urls() == [FEED_URL]

    assert [f.name for f in moved.update_all(force_refresh=True)] == ["podcast-a"]

    # Cached files are found by name, nothing is downloaded again
    assert origin.urls() == [FEED_URL, FEED_URL]
    document = FeedDocument.from_file(cache.document_path("podcast-a"))
    assert document.entries[0].enclosures[0].url == "https://mirror.example.net/podcasts/content/podcast-a/ep1.mp3"


def test_marked_feed_is_removed(origin, store, cache, updater):
    store.save(Feed("podcast-a", FEED_URL))
    serve_episodes(origin, ["ep1"], FIRST_MODIFIED)
    updater.update_all()
    store.mark_for_deletion("podcast-a")
    origin.requests.clear()

    assert updater.update_all() == []

    assert store.find_by_name("podcast-a") is None
    assert not cache.feed_dir("podcast-a").exists()
    assert origin.requests == []


def test_failing_feed_rolls_back_metadata(origin, store, cache, updater):
    good_url = "https://origin.example.com/good/feed.xml"
    store.save([Feed("a-good", good_url), Feed("b-broken", FEED_URL), Feed("c-gone", good_url)])
    store.mark_for_deletion("c-gone")
    origin.serve(good_url, build_rss(["g1"]), last_modified=FIRST_MODIFIED)
    origin.serve(f"{MEDIA_URL}g1.mp3", b"audio g1")
    origin.fail(FEED_URL, 500)

    with pytest.raises(FeedUpdateError) as excinfo:
        updater.update_all()

    assert excinfo.value.feed_name == "b-broken"

    # Files of the good feed stay, its metadata does not
    assert cache.file_path("a-good", "g1.mp3").exists()
    assert store.find_by_name("a-good").last_modified is None
    assert not store.find_by_name("a-good").all_files_updated
    assert store.find_by_name("c-gone") is not None


def test_unparsable_first_download_is_removed(origin, store, cache, updater):
    store.save(Feed("podcast-a", FEED_URL))
    origin.serve(FEED_URL, b"<html>not a feed")

    with pytest.raises(FeedUpdateError):
        updater.update_all()

    assert not cache.document_path("podcast-a").exists()


def test_recovers_from_crash_before_metadata_commit(origin, store, cache, updater):
    store.save(Feed("podcast-a", FEED_URL))
    serve_episodes(origin, ["ep1"], FIRST_MODIFIED)

    # Files written, but the metadata write-back never happened
    feed = store.find_by_name("podcast-a")
    updater.update(feed)
    assert store.find_by_name("podcast-a").last_modified is None

    updater.update_all()

    document = FeedDocument.from_file(cache.document_path("podcast-a"))
    assert [e.id for e in document.entries] == ["ep1"]
    feed = store.find_by_name("podcast-a")
    assert feed.all_files_updated
    assert feed.last_modified == FIRST_MODIFIED


LONG_NAME = "x" * 300 + ".mp3"

LONG_ENCLOSURE_NAME = f"""<?xml version="1.0"?>
<rss version="2.0"><channel><title>Long</title>
<item><guid>2</guid><enclosure url="https://m.example.com/{LONG_NAME}" type="audio/mpeg"/></item>
<item><guid>1</guid><enclosure url="https://m.example.com/ok.mp3" type="audio/mpeg"/></item>
</channel></rss>
""".encode()


def test_enclosure_name_too_long_is_skipped(origin, store, cache, updater):
    store.save(Feed("podcast-a", FEED_URL))
    origin.serve(FEED_URL, LONG_ENCLOSURE_NAME)
    origin.serve(f"https://m.example.com/{LONG_NAME}", b"long")
    origin.serve("https://m.example.com/ok.mp3", b"ok")

    assert [f.name for f in updater.update_all()] == ["podcast-a"]

    assert cache.file_path("podcast-a", "ok.mp3").read_bytes() == b"ok"
    document = FeedDocument.from_file(cache.document_path("podcast-a"))
    assert document.entries[0].enclosures[0].url == f"https://m.example.com/{LONG_NAME}"
    assert document.entries[1].enclosures[0].url == local_url("podcast-a", "ok.mp3")
    assert not store.find_by_name("podcast-a").all_files_updated


class FullDiskFile:
    """File that stores half of the first write, then runs out of space."""

    def __init__(self, f):
        self.f = f

    def __enter__(self):
        return self

    def __exit__(self, *exc_info):
        self.f.close()

    def write(self, data):
        self.f.write(data[:len(data) // 2])
        raise OSError(errno.ENOSPC, "No space left on device")


def test_failed_document_write_keeps_previous_document(origin, store, cache, updater, monkeypatch):
    store.save(Feed("podcast-a", FEED_URL))
    serve_episodes(origin, ["ep2", "ep1"], FIRST_MODIFIED)
    updater.update_all()
    previous = cache.document_path("podcast-a").read_bytes()

    def open_on_full_disk(path, mode="r", *args, **kwargs):
        f = open(path, mode, *args, **kwargs)
        if Path(path).name == "_feed.xml.partial":
            return FullDiskFile(f)
        return f

    serve_episodes(origin, ["ep3", "ep2"], SECOND_MODIFIED)
    monkeypatch.setattr(downloader_module, "open", open_on_full_disk, raising=False)

    with pytest.raises(FeedUpdateError):
        updater.update_all()

    assert cache.document_path("podcast-a").read_bytes() == previous
    assert cache.backup_path("podcast-a").read_bytes() == previous
    assert not (cache.feed_dir("podcast-a") / "_feed.xml.partial").exists()
    assert store.find_by_name("podcast-a").last_modified == FIRST_MODIFIED

    monkeypatch.delattr(downloader_module, "open")

    assert [f.name for f in updater.update_all()] == ["podcast-a"]

    document = FeedDocument.from_file(cache.document_path("podcast-a"))
    assert [e.id for e in document.entries] == ["ep3", "ep2", "ep1"]
    assert store.find_by_name("podcast-a").last_modified == SECOND_MODIFIED
