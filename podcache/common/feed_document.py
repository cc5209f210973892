"""
Feed document model using lxml.
Parses RSS 2.0, RSS 1.0 (RDF) and Atom feeds into an ordered list of entries
while keeping the rest of the XML (channel metadata, itunes:/podcast: tags) intact.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from lxml import etree

from podcache.common.downloader import write_atomically
from podcache.errors import FeedParseError

ATOM_NS = 'http://www.w3.org/2005/Atom'
ATOM = f'{{{ATOM_NS}}}'
RDF_NS = 'http://www.w3.org/1999/02/22-rdf-syntax-ns#'
RDF = f'{{{RDF_NS}}}'
RSS1_NS = 'http://purl.org/rss/1.0/'
RSS1 = f'{{{RSS1_NS}}}'
DC = '{http://purl.org/dc/elements/1.1/}'
ENC = '{http://purl.oclc.org/net/rss_2.0/enc#}'

FORMAT_RSS = 'rss'
FORMAT_ATOM = 'atom'
FORMAT_RDF = 'rdf'


def _parser() -> etree.XMLParser:
    return etree.XMLParser(
        remove_blank_text=True,
        resolve_entities=False,
        no_network=True,
        huge_tree=True,
    )


def _text(elem: Optional[etree._Element]) -> Optional[str]:
    if elem is None or elem.text is None:
        return None
    text = elem.text.strip()
    return text or None


@dataclass
class Enclosure:
    """A media attachment of an entry."""
    url: str
    element: etree._Element = field(repr=False, compare=False)


@dataclass
class FeedEntry:
    """
    A single item (RSS) or entry (Atom).

    Only the fields the mirror works with are exposed. Everything else stays
    in `element` and is written back unchanged.
    """
    id: Optional[str]
    link: Optional[str]
    title: Optional[str]
    published: Optional[str]
    enclosures: List[Enclosure]
    element: etree._Element = field(repr=False, compare=False)

    @property
    def identity(self) -> Optional[str]:
        """
        Key used to recognize the same entry across fetches.

        The entry id when present. Otherwise title and publication date, since
        links get rewritten to the local cache. None means the entry cannot be
        recognized and is always considered new.
        """
        if self.id:
            return self.id
        if self.title:
            return f'title:{self.title}|{self.published or ""}'
        return None


class FeedDocument:
    """An RSS or Atom feed with an ordered, mutable list of entries."""

    def __init__(self, root: etree._Element):
        """
        Initialize from a parsed XML root.

        Args:
            root: Root element (<rss>, RSS 1.0 <rdf:RDF> or Atom <feed>)

        Raises:
            FeedParseError: If the document is not RSS 2.0, RSS 1.0 or Atom
        """
        self.root = root

        if root.tag == 'rss':
            self.format = FORMAT_RSS
            self.channel = root.find('channel')
            if self.channel is None:
                raise FeedParseError("Invalid RSS feed: no channel element found")
            self.container = self.channel
        elif root.tag == f'{RDF}RDF':
            self.format = FORMAT_RDF
            self.channel = root.find(f'{RSS1}channel')
            if self.channel is None:
                raise FeedParseError("Invalid RSS 1.0 feed: no channel element found")
            # RSS 1.0 items are siblings of the channel
            self.container = root
        elif root.tag == f'{ATOM}feed':
            self.format = FORMAT_ATOM
            self.channel = root
            self.container = root
        else:
            raise FeedParseError(f"Unsupported feed format: <{root.tag}>")

        elements = self.container.findall(self._entry_tag)
        self._entry_index = self.container.index(elements[0]) if elements else None
        self.entries: List[FeedEntry] = [self._read_entry(elem) for elem in elements]

    @classmethod
    def from_bytes(cls, data: bytes) -> 'FeedDocument':
        try:
            root = etree.fromstring(data, _parser())
        except etree.XMLSyntaxError as e:
            raise FeedParseError(f"Failed to read feed: {e}") from e
        return cls(root)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> 'FeedDocument':
        try:
            tree = etree.parse(str(path), _parser())
        except etree.XMLSyntaxError as e:
            raise FeedParseError(f"Failed to read feed '{path}': {e}") from e
        return cls(tree.getroot())

    @property
    def _entry_tag(self) -> str:
        return {
            FORMAT_RSS: 'item',
            FORMAT_RDF: f'{RSS1}item',
            FORMAT_ATOM: f'{ATOM}entry',
        }[self.format]

    @property
    def title(self) -> Optional[str]:
        if self.format == FORMAT_RSS:
            return _text(self.channel.find('title'))
        if self.format == FORMAT_RDF:
            return _text(self.channel.find(f'{RSS1}title'))
        return _text(self.root.find(f'{ATOM}title'))

    def _read_entry(self, elem: etree._Element) -> FeedEntry:
        if self.format == FORMAT_RSS:
            enclosures = [
                Enclosure(enc.get('url'), enc)
                for enc in elem.findall('enclosure')
                if enc.get('url')
            ]
            return FeedEntry(
                id=_text(elem.find('guid')),
                link=_text(elem.find('link')),
                title=_text(elem.find('title')),
                published=_text(elem.find('pubDate')),
                enclosures=enclosures,
                element=elem,
            )

        if self.format == FORMAT_RDF:
            enclosures = [
                Enclosure(enc.get(f'{RDF}resource'), enc)
                for enc in elem.findall(f'{ENC}enclosure')
                if enc.get(f'{RDF}resource')
            ]
            return FeedEntry(
                id=elem.get(f'{RDF}about') or None,
                link=_text(elem.find(f'{RSS1}link')),
                title=_text(elem.find(f'{RSS1}title')),
                published=_text(elem.find(f'{DC}date')),
                enclosures=enclosures,
                element=elem,
            )

        link = None
        enclosures = []
        for link_elem in elem.findall(f'{ATOM}link'):
            rel = link_elem.get('rel', 'alternate')
            href = link_elem.get('href')
            if not href:
                continue
            if rel == 'enclosure':
                enclosures.append(Enclosure(href, link_elem))
            elif rel == 'alternate' and link is None:
                link = href

        published = _text(elem.find(f'{ATOM}published')) or _text(elem.find(f'{ATOM}updated'))
        return FeedEntry(
            id=_text(elem.find(f'{ATOM}id')),
            link=link,
            title=_text(elem.find(f'{ATOM}title')),
            published=published,
            enclosures=enclosures,
            element=elem,
        )

    def _write_entry(self, entry: FeedEntry) -> None:
        """Copy link and enclosure URLs back into the entry's XML."""
        elem = entry.element

        if self.format in (FORMAT_RSS, FORMAT_RDF):
            if self.format == FORMAT_RSS:
                url_attr, link_tag = 'url', 'link'
            else:
                url_attr, link_tag = f'{RDF}resource', f'{RSS1}link'

            for enclosure in entry.enclosures:
                enclosure.element.set(url_attr, enclosure.url)

            link_elem = elem.find(link_tag)
            if entry.link is not None:
                if link_elem is None:
                    link_elem = etree.SubElement(elem, link_tag)
                link_elem.text = entry.link
            return

        for enclosure in entry.enclosures:
            enclosure.element.set('href', enclosure.url)

        if entry.link is None:
            return
        for link_elem in elem.findall(f'{ATOM}link'):
            if link_elem.get('rel', 'alternate') == 'alternate' and link_elem.get('href'):
                link_elem.set('href', entry.link)
                return
        etree.SubElement(elem, f'{ATOM}link', rel='alternate', href=entry.link)

    def _sync_entries(self) -> None:
        """Replace the entry elements in the tree with the current entry list."""
        for elem in self.container.findall(self._entry_tag):
            self.container.remove(elem)

        index = self._entry_index
        if index is None or index > len(self.container):
            index = len(self.container)

        for offset, entry in enumerate(self.entries):
            self._write_entry(entry)
            self.container.insert(index + offset, entry.element)

        if self.format == FORMAT_RDF:
            self._sync_item_sequence()

    def _sync_item_sequence(self) -> None:
        """Rebuild the channel's <items> table of contents of an RSS 1.0 feed."""
        seq = self.channel.find(f'{RSS1}items/{RDF}Seq')
        if seq is None:
            return

        for li in seq.findall(f'{RDF}li'):
            seq.remove(li)
        for entry in self.entries:
            if entry.id:
                etree.SubElement(seq, f'{RDF}li', {f'{RDF}resource': entry.id})

    def to_bytes(self) -> bytes:
        self._sync_entries()
        return etree.tostring(
            self.root,
            encoding='utf-8',
            xml_declaration=True,
            pretty_print=True,
        )

    def write(self, output_file: Union[str, Path]) -> None:
        """
        Write feed to file. The previous file stays intact if writing fails.

        Args:
            output_file: Output file path
        """
        write_atomically([self.to_bytes()], Path(output_file))


def merge_entries(base: FeedDocument, incoming: FeedDocument) -> bool:
    """
    Merge entries of `incoming` into `base` if they do not exist there yet.

    New entries are put in front of the existing ones, keeping their order.
    Nothing is re-sorted: feeds are expected to list the newest entry first.

    Args:
        base: Feed to merge into
        incoming: Source of new entries

    Returns:
        True if anything was added

    Raises:
        FeedParseError: If the feeds are of different formats
    """
    if base.format != incoming.format:
        raise FeedParseError(f"Cannot merge {incoming.format} entries into {base.format} feed")

    known = {entry.identity for entry in base.entries if entry.identity is not None}
    new_entries = []

    for entry in incoming.entries:
        identity = entry.identity
        if identity is not None:
            if identity in known:
                continue
            known.add(identity)
        new_entries.append(entry)

    base.entries[0:0] = new_entries
    return bool(new_entries)
