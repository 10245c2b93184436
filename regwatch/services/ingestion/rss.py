"""
RSS 2.0 / Atom feed parsing.

Feeds are parsed with ElementTree when they are well-formed XML. Agency
feeds regularly are not (bare HTML entities, stray markup), so a
regex extractor over <item>/<entry> blocks takes over when the XML
parser gives up.
"""

from html import unescape
from typing import Optional, Union
from xml.etree import ElementTree
import logging
import re

from regwatch.models.domain import Source
from regwatch.services.ingestion.base import FeedParser, RawItem
from regwatch.services.ingestion.errors import ParseError

logger = logging.getLogger(__name__)

# Titles this short are navigation junk ("Home", "More...") rather than announcements
MIN_TITLE_LENGTH = 10

TITLE_TAGS = ("title",)
DESCRIPTION_TAGS = ("description", "summary", "content", "encoded")
DATE_TAGS = ("pubDate", "published", "updated", "date")
ID_TAGS = ("guid", "id")

_CDATA_RE = re.compile(r"<!\[CDATA\[(.*?)\]\]>", re.S)
_TAG_RE = re.compile(r"<[^>]+>")
_BLOCK_RE = re.compile(r"<(item|entry)(?=[\s>])[^>]*>(.*?)</\1\s*>", re.S | re.I)
_HREF_RE = re.compile(r"<link(?=[\s/>])[^>]*?href\s*=\s*[\"']([^\"']+)[\"']", re.I)
_FEED_MARKERS = ("<rss", "<feed", "<rdf:rdf", "<channel")


def clean_text(value: Optional[str]) -> str:
    """Unwrap CDATA, drop tags, decode entities and collapse whitespace."""
    if not value:
        return ""
    text = _CDATA_RE.sub(lambda m: m.group(1), value)
    # Entity-encoded markup needs decoding before tags can be stripped
    text = unescape(text)
    text = _TAG_RE.sub(" ", text)
    text = unescape(text)
    return " ".join(text.split())


def _local(tag: str) -> str:
    """Local name of an element tag, without namespace."""
    if "}" in tag:
        tag = tag.rsplit("}", 1)[1]
    if ":" in tag:
        tag = tag.rsplit(":", 1)[1]
    return tag


class RSSParser(FeedParser):
    """Parser for RSS 2.0, RSS 1.0 (RDF) and Atom feeds."""

    def parse(
        self,
        content: Union[str, bytes],
        source: Source,
        base_url: Optional[str] = None,
    ) -> list[RawItem]:
        if isinstance(content, bytes):
            content = content.decode("utf-8", errors="replace")
        content = content.lstrip("\ufeff")

        try:
            root = ElementTree.fromstring(content.encode("utf-8"))
        except ElementTree.ParseError as e:
            logger.info(f"Malformed XML from {source.name} ({e}), using fallback extractor")
            return self._parse_fallback(content, source)

        items = []
        for element in root.iter():
            if _local(element.tag) not in ("item", "entry"):
                continue
            try:
                item = self._parse_element(element)
            except Exception as e:
                logger.warning(f"Failed to parse feed entry from {source.name}: {e}")
                continue
            if item:
                items.append(item)

        if not items and _local(root.tag).lower() not in ("rss", "feed", "rdf", "channel"):
            raise ParseError(
                f"Response from {source.name} is XML but not an RSS/Atom feed (<{_local(root.tag)}>)",
                {"source": source.id},
            )

        logger.debug(f"Parsed {len(items)} items from {source.name}")
        return items

    def _children(self, element: ElementTree.Element) -> dict[str, list[ElementTree.Element]]:
        children: dict[str, list[ElementTree.Element]] = {}
        for child in element:
            children.setdefault(_local(child.tag), []).append(child)
        return children

    def _first_text(
        self,
        children: dict[str, list[ElementTree.Element]],
        names: tuple[str, ...],
    ) -> str:
        for name in names:
            for child in children.get(name, []):
                # itertext keeps text that sits inside nested XHTML content
                text = "".join(child.itertext()).strip()
                if text:
                    return text
        return ""

    def _parse_element(self, element: ElementTree.Element) -> Optional[RawItem]:
        """Parse a single <item> or <entry>."""
        children = self._children(element)

        title = clean_text(self._first_text(children, TITLE_TAGS))
        if len(title) <= MIN_TITLE_LENGTH:
            return None

        link = None
        for link_elem in children.get("link", []):
            href = link_elem.get("href")
            if href:
                if link_elem.get("rel", "alternate") == "alternate":
                    link = href.strip()
                    break
                link = link or href.strip()
            elif link_elem.text and link_elem.text.strip():
                link = link_elem.text.strip()
                break

        guid = self._first_text(children, ID_TAGS) or None
        if not link and guid and guid.startswith("http"):
            link = guid

        description = clean_text(self._first_text(children, DESCRIPTION_TAGS)) or title
        published = self._first_text(children, DATE_TAGS) or None

        categories = []
        for cat in children.get("category", []):
            term = cat.get("term") or cat.text
            if term and term.strip():
                categories.append(term.strip())

        return RawItem(
            title=title,
            description=description,
            link=link,
            published=published,
            external_id=guid,
            extra={"format": "atom" if _local(element.tag) == "entry" else "rss", "categories": categories},
        )

    def _parse_fallback(self, content: str, source: Source) -> list[RawItem]:
        """Regex extraction over <item>/<entry> blocks."""
        blocks = _BLOCK_RE.findall(content)
        if not blocks:
            head = content[:1000].lower()
            if any(marker in head for marker in _FEED_MARKERS):
                return []
            raise ParseError(
                f"Response from {source.name} is not a parseable RSS/Atom feed",
                {"source": source.id, "preview": content[:200]},
            )

        items = []
        for kind, block in blocks:
            title = clean_text(self._tag_text(block, TITLE_TAGS))
            if len(title) <= MIN_TITLE_LENGTH:
                continue

            link = clean_text(self._tag_text(block, ("link",))) or None
            if not link:
                href = _HREF_RE.search(block)
                link = unescape(href.group(1)) if href else None

            guid = clean_text(self._tag_text(block, ID_TAGS)) or None
            if not link and guid and guid.startswith("http"):
                link = guid

            items.append(RawItem(
                title=title,
                description=clean_text(self._tag_text(block, DESCRIPTION_TAGS)) or title,
                link=link,
                published=clean_text(self._tag_text(block, DATE_TAGS)) or None,
                external_id=guid,
                extra={"format": "atom" if kind.lower() == "entry" else "rss", "categories": []},
            ))

        logger.debug(f"Fallback extractor found {len(items)} items from {source.name}")
        return items

    def _tag_text(self, block: str, names: tuple[str, ...]) -> str:
        for name in names:
            pattern = re.compile(
                rf"<(?:[\w-]+:)?{name}(?=[\s>])[^>]*>(.*?)</(?:[\w-]+:)?{name}\s*>",
                re.S | re.I,
            )
            match = pattern.search(block)
            if match and match.group(1).strip():
                return match.group(1)
        return ""
