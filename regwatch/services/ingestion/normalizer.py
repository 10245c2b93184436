"""
Raw item -> Alert normalization.

Handles the parts that do not depend on the feed format: date parsing,
agency re-attribution, signal typing, truncation and the audit copy of
the raw item.
"""

import json
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional
import logging
import re

from dateutil import parser as dtparser

from regwatch.models.domain import Alert, Source
from regwatch.services.ingestion.base import RawItem

logger = logging.getLogger(__name__)

ELLIPSIS = "..."

_COMPACT_DATE_RE = re.compile(r"^\d{8}$")

# CDC republishes other agencies' recalls. These cues decide who really issued one.
# Keyword sniffing misclassifies now and then; treat the result as a best guess.
FSIS_CUES = ("fsis", "food safety and inspection service", "usda")
FDA_CUES = ("fda", "food and drug administration")
FDA_RECALL_PRODUCT_CUES = ("food", "drug", "device", "allergy", "allergen", "undeclared")

SIGNAL_TYPES = [
    ("Recall", ("recall", "withdrawal", "market withdrawal")),
    ("Warning Letter", ("warning letter",)),
    ("Guidance", ("guidance", "draft guidance")),
    ("Rule Change", ("final rule", "proposed rule", "interim rule", "rule", "regulation")),
]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def truncate(text: str, limit: int) -> str:
    """Cut `text` to at most `limit` characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[: limit - len(ELLIPSIS)].rstrip() + ELLIPSIS


def parse_date(value: Optional[str], now: Optional[datetime] = None) -> Optional[datetime]:
    """
    Parse the date formats agencies actually publish.

    Order: RFC 822 (RSS), ISO 8601 (Atom/JSON), YYYYMMDD (openFDA),
    then dateutil for everything else. Naive results are taken as UTC.

    Returns:
        A timezone-aware datetime, or None if nothing could parse it
    """
    if not value or not value.strip():
        return None
    value = value.strip()
    parsed: Optional[datetime] = None

    try:
        parsed = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        pass

    if parsed is None:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass

    if parsed is None and _COMPACT_DATE_RE.match(value):
        try:
            parsed = datetime.strptime(value, "%Y%m%d")
        except ValueError:
            pass

    if parsed is None:
        try:
            parsed = dtparser.parse(value)
        except (ValueError, OverflowError, TypeError):
            return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    try:
        return parsed.astimezone(timezone.utc)
    except (OverflowError, ValueError):
        # e.g. year 1 with a positive offset falls before datetime.min in UTC
        return None


def detect_signal_type(title: str, description: str) -> str:
    text = f"{title} {description}".lower()
    for signal_type, cues in SIGNAL_TYPES:
        if any(cue in text for cue in cues):
            return signal_type
    return "Market Signal"


def detect_originating_agency(source: Source, title: str, description: str) -> Optional[str]:
    """
    Agency that actually issued an item republished by CDC, if the text says so.

    Only CDC sources are re-attributed.
    """
    if source.agency.upper() != "CDC":
        return None

    text = f"{title} {description}".lower()
    if any(cue in text for cue in FSIS_CUES):
        return "FSIS"
    if any(re.search(rf"\b{re.escape(cue)}\b", text) for cue in FDA_CUES):
        return "FDA"
    if "recall" in text and any(cue in text for cue in FDA_RECALL_PRODUCT_CUES):
        return "FDA"
    return None


class Normalizer:
    """Maps RawItems from any parser to the canonical Alert shape."""

    def __init__(
        self,
        summary_max_chars: int = 500,
        title_max_chars: int = 200,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.summary_max_chars = summary_max_chars
        self.title_max_chars = title_max_chars
        self._clock = clock or _utcnow

    def normalize(self, item: RawItem, source: Source) -> Alert:
        """
        Build an Alert from a raw item. Urgency is left at Low for the
        classifier to fill in.

        Unparseable or missing dates become "now"; an item is never
        rejected for its date alone.
        """
        now = self._clock()
        published = parse_date(item.published)
        if published is None:
            if item.published:
                logger.debug(f"Unparseable date '{item.published}' from {source.name}, using now")
            published = now

        title = truncate(" ".join(item.title.split()), self.title_max_chars)
        description = " ".join((item.description or item.title).split())

        agency = source.agency
        source_label = source.name
        provenance = None

        originating = detect_originating_agency(source, item.title, description)
        if originating:
            logger.info(f"Re-attributing '{title[:60]}' from {source.name} to {originating}")
            agency = originating
            source_label = originating
            provenance = source.name

        full_content = json.dumps(
            {
                "source_id": source.id,
                "feed": source.name,
                "signal_type": detect_signal_type(item.title, description),
                "item": item.to_dict(),
            },
            default=str,
            ensure_ascii=False,
        )

        return Alert(
            title=title,
            source=source_label,
            agency=agency,
            region=source.region,
            summary=truncate(description, self.summary_max_chars),
            published_date=published,
            external_url=item.link,
            full_content=full_content,
            external_id=item.external_id,
            provenance=provenance,
        )
