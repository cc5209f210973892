#!/usr/bin/env python3
"""
Command-line interface for podcache.
"""

import argparse
import logging
import sys
from typing import List, Optional

import requests

from podcache.app import Application
from podcache.common.feed_document import FeedDocument
from podcache.config import load_settings
from podcache.errors import PodcacheError


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="podcache",
        description="Mirror podcast feeds and their media files locally",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Subscribe to a feed (downloads the feed document right away)
  podcache add my-show https://example.com/feed.xml

  # Fetch new episodes of all feeds and download their media
  podcache update

  # Re-check all media files and rewrite their URLs
  podcache update --force

  # Use a config file
  podcache --config podcache.yaml list
        """
    )

    parser.add_argument(
        "--config", "-c",
        help="Path to YAML config file (default: podcache.yaml if present)"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Show debug logging"
    )

    commands = parser.add_subparsers(dest="command", required=True)

    add = commands.add_parser("add", help="Subscribe to a feed")
    add.add_argument("name", help="Unique feed name, used in local URLs")
    add.add_argument("url", help="URL of the remote feed")

    edit = commands.add_parser("edit", help="Change a feed's URL or content type")
    edit.add_argument("name", help="Feed name")
    edit.add_argument("--url", help="New remote URL (used from the next update)")
    edit.add_argument("--content-type", help="New content type")

    remove = commands.add_parser("remove", help="Mark a feed for deletion on the next update")
    remove.add_argument("name", help="Feed name")

    restore = commands.add_parser("restore", help="Keep a feed that was marked for deletion")
    restore.add_argument("name", help="Feed name")

    commands.add_parser("list", help="List subscribed feeds")

    show = commands.add_parser("show", help="Show the cached entries of a feed")
    show.add_argument("name", help="Feed name")

    update = commands.add_parser("update", help="Update all feeds and download new media")
    update.add_argument(
        "--force",
        action="store_true",
        help="Revisit media files and URLs of every feed, even unchanged ones"
    )

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        settings = load_settings(args.config)
        with Application(settings) as app:
            return run_command(app, args)
    except (PodcacheError, requests.RequestException, OSError, ValueError) as e:
        print(f"✗ Error: {e}", file=sys.stderr)
        return 1


def run_command(app: Application, args: argparse.Namespace) -> int:
    manager = app.manager

    if args.command == "add":
        feed = manager.add(args.name, args.url)
        print(f"✓ Added feed '{feed.name}' from {feed.url}")
        print("  Media files are downloaded on the next update")
        return 0

    if args.command == "edit":
        feed = manager.edit(args.name, url=args.url, content_type=args.content_type)
        print(f"✓ Updated feed '{feed.name}'")
        return 0

    if args.command == "remove":
        if not manager.mark_for_deletion(args.name):
            print(f"✗ Feed '{args.name}' not found", file=sys.stderr)
            return 1
        print(f"✓ Feed '{args.name}' will be removed on the next update")
        return 0

    if args.command == "restore":
        if not manager.restore(args.name):
            print(f"✗ Feed '{args.name}' not found", file=sys.stderr)
            return 1
        print(f"✓ Feed '{args.name}' restored")
        return 0

    if args.command == "list":
        feeds = manager.list_feeds()
        if not feeds:
            print("No feeds subscribed")
            return 0
        for feed in feeds:
            flags = []
            if feed.all_files_updated:
                flags.append("cached")
            if feed.marked_for_deletion:
                flags.append("to be removed")
            modified = feed.last_modified.isoformat() if feed.last_modified else "unknown"
            print(f"{feed.name:20} {feed.url}")
            print(f"{'':20} last modified: {modified}  {' '.join(flags)}")
        return 0

    if args.command == "show":
        if manager.get_feed(args.name) is None:
            print(f"✗ Feed '{args.name}' not found", file=sys.stderr)
            return 1
        document_path = manager.document_path(args.name)
        if not document_path.exists():
            print(f"Feed '{args.name}' has not been downloaded yet")
            return 0
        document = FeedDocument.from_file(document_path)
        print(f"{document.title or args.name} ({len(document.entries)} entries)")
        for entry in document.entries:
            print(f"  - {entry.title or entry.id or '(untitled)'}")
            for enclosure in entry.enclosures:
                print(f"      {enclosure.url}")
        files = app.cache.list_files(args.name)
        print(f"{len(files)} media file(s) cached")
        return 0

    if args.command == "update":
        updated = app.service.update(force=args.force)
        print(f"✓ Update finished, {len(updated)} feed(s) changed")
        for feed in updated:
            print(f"  - {feed.name}")
        return 0

    raise ValueError(f"Unknown command {args.command!r}")


if __name__ == "__main__":
    sys.exit(main())
