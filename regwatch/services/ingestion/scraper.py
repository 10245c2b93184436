"""
Targeted extraction from agency HTML listing pages.

Only the repeating card/row elements named by a source's CSS selectors
are read. Two layouts are supported:

- container mode: `selectors["item"]` matches one element per
  announcement, and the other selectors are evaluated inside it
- parallel mode: no item selector; title/link/date/description
  selectors are evaluated page-wide and zipped by position
"""

from typing import Optional, Union
from urllib.parse import urljoin
import logging

from bs4 import BeautifulSoup, Tag

from regwatch.models.domain import Source
from regwatch.services.ingestion.base import FeedParser, RawItem
from regwatch.services.ingestion.errors import ParseError
from regwatch.services.ingestion.rss import MIN_TITLE_LENGTH

logger = logging.getLogger(__name__)

DEFAULT_SELECTORS = {
    "title": "h2 a, h3 a, .views-row a",
    "link": "a",
    "date": "time, .date, .datetime",
    "description": "p, .summary, .teaser",
}


def _text(node: Optional[Tag]) -> str:
    if node is None:
        return ""
    return " ".join(node.get_text(" ", strip=True).split())


def _date_of(node: Optional[Tag]) -> Optional[str]:
    if node is None:
        return None
    # <time datetime="..."> carries a machine-readable date
    return node.get("datetime") or _text(node) or None


def _href_of(node: Optional[Tag]) -> Optional[str]:
    if node is None:
        return None
    if node.name != "a":
        node = node if node.get("href") else node.find("a", href=True)
    if node is None:
        return None
    href = node.get("href")
    return href.strip() if href else None


class HTMLScraper(FeedParser):
    """CSS-selector driven extractor for listing pages."""

    def parse(
        self,
        content: Union[str, bytes],
        source: Source,
        base_url: Optional[str] = None,
    ) -> list[RawItem]:
        selectors = {**DEFAULT_SELECTORS, **source.selectors}
        base_url = base_url or source.urls[0]
        soup = BeautifulSoup(content, "html.parser")

        if selectors.get("item"):
            items = self._parse_containers(soup, selectors, base_url, source)
        else:
            items = self._parse_parallel(soup, selectors, base_url, source)

        logger.debug(f"Scraped {len(items)} items from {source.name}")
        return items

    def _absolute(self, href: Optional[str], base_url: str) -> Optional[str]:
        if not href or href.startswith(("javascript:", "mailto:", "#")):
            return None
        return urljoin(base_url, href)

    def _parse_containers(
        self,
        soup: BeautifulSoup,
        selectors: dict[str, str],
        base_url: str,
        source: Source,
    ) -> list[RawItem]:
        containers = soup.select(selectors["item"])
        if not containers:
            raise ParseError(
                f"No elements match '{selectors['item']}' on {source.name}; "
                "the page layout may have changed",
                {"source": source.id, "endpoint": base_url},
            )

        items = []
        for container in containers[: source.max_items]:
            title_node = container.select_one(selectors["title"])
            title = _text(title_node)
            if len(title) <= MIN_TITLE_LENGTH:
                continue

            link = self._absolute(
                _href_of(container.select_one(selectors["link"])) or _href_of(title_node),
                base_url,
            )
            description = _text(container.select_one(selectors["description"])) or title

            items.append(RawItem(
                title=title,
                description=description,
                link=link,
                published=_date_of(container.select_one(selectors["date"])),
                external_id=link,
                extra={"scraped_from": base_url},
            ))
        return items

    def _parse_parallel(
        self,
        soup: BeautifulSoup,
        selectors: dict[str, str],
        base_url: str,
        source: Source,
    ) -> list[RawItem]:
        titles = soup.select(selectors["title"])
        if not titles:
            raise ParseError(
                f"No elements match '{selectors['title']}' on {source.name}; "
                "the page layout may have changed",
                {"source": source.id, "endpoint": base_url},
            )

        dates = soup.select(selectors["date"])
        descriptions = soup.select(selectors["description"]) if "description" in source.selectors else []
        links = soup.select(selectors["link"]) if "link" in source.selectors else []

        items = []
        for i, title_node in enumerate(titles[: source.max_items]):
            title = _text(title_node)
            if len(title) <= MIN_TITLE_LENGTH:
                continue

            href = _href_of(title_node) or (_href_of(links[i]) if i < len(links) else None)
            link = self._absolute(href, base_url)
            description = _text(descriptions[i]) if i < len(descriptions) else ""

            items.append(RawItem(
                title=title,
                description=description or title,
                link=link,
                published=_date_of(dates[i]) if i < len(dates) else None,
                external_id=link,
                extra={"scraped_from": base_url},
            ))
        return items
