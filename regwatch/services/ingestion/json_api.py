"""
JSON REST response parsing.

Each upstream API gets a field-mapping profile that turns one record
into a RawItem. Record lists are located whether the endpoint answers
with a paginated wrapper, a bare array or a single object.
"""

import json
import re
from typing import Any, Callable, Optional, Union
import logging

from regwatch.models.domain import Source, Urgency
from regwatch.services.ingestion.base import FeedParser, RawItem
from regwatch.services.ingestion.errors import ParseError

logger = logging.getLogger(__name__)

# Keys under which paginated APIs put their record lists
RECORD_KEYS = ("results", "Results", "data", "items", "entries", "documents", "records", "Cases", "recalls")

# Keys that only appear on pagination wrappers, never on a single record
PAGINATION_KEYS = ("meta", "count", "total", "totalCount", "total_pages", "next_page_url")

RECALL_CLASS_URGENCY = {
    "I": Urgency.HIGH,
    "II": Urgency.MEDIUM,
    "III": Urgency.LOW,
}

_CLASS_RE = re.compile(r"class\s+(I{1,3})\b", re.I)


def classification_urgency(classification: Optional[str]) -> Optional[Urgency]:
    """Map an FDA/FSIS recall class ("Class I", "High - Class I") to an urgency hint."""
    if not classification:
        return None
    match = _CLASS_RE.search(classification)
    if not match:
        return None
    return RECALL_CLASS_URGENCY.get(match.group(1).upper())


def _first(record: dict, *keys: str) -> Optional[str]:
    for key in keys:
        value = record.get(key)
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            value = ", ".join(str(v) for v in value if v)
        value = str(value).strip()
        if value:
            return value
    return None


def extract_records(payload: Any) -> list[dict]:
    """Find the record list in a response body."""
    if isinstance(payload, list):
        return [r for r in payload if isinstance(r, dict)]

    if not isinstance(payload, dict):
        raise ParseError(f"Unexpected JSON payload type: {type(payload).__name__}")

    for key in RECORD_KEYS:
        value = payload.get(key)
        if isinstance(value, list):
            return [r for r in value if isinstance(r, dict)]
        if isinstance(value, dict):
            # One more level for wrappers like {"Results": {"Cases": [...]}}
            for inner_key in RECORD_KEYS:
                inner = value.get(inner_key)
                if isinstance(inner, list):
                    return [r for r in inner if isinstance(r, dict)]

    if "error" in payload and len(payload) <= 2:
        raise ParseError(f"API returned an error object: {payload['error']}")

    # Empty result pages often drop the record list altogether
    if any(key in payload for key in PAGINATION_KEYS) or any(
        key in payload and payload[key] is None for key in RECORD_KEYS
    ):
        return []

    # A single object is one record
    return [payload]


# =============================================================================
# Field-mapping profiles
# =============================================================================

def _map_openfda_enforcement(record: dict, source: Source) -> Optional[RawItem]:
    product = _first(record, "product_description")
    if not product:
        return None
    classification = _first(record, "classification") or "Unclassified"
    reason = _first(record, "reason_for_recall") or ""
    status = _first(record, "status") or "Unknown"
    recall_number = _first(record, "recall_number")

    description = f"{reason} Status: {status}."
    if recall_number:
        description += f" Recall number: {recall_number}."
    firm = _first(record, "recalling_firm")
    if firm:
        description += f" Firm: {firm}."

    event_id = _first(record, "event_id")
    link = (
        f"https://www.accessdata.fda.gov/scripts/ires/index.cfm?Event={event_id}"
        if event_id
        else None
    )

    return RawItem(
        title=f"{product[:150]} Recall - {classification}",
        description=description.strip(),
        link=link,
        published=_first(record, "report_date", "recall_initiation_date"),
        external_id=recall_number or event_id,
        urgency_hint=classification_urgency(classification),
        extra={
            "classification": classification,
            "recalling_firm": firm,
            "distribution_pattern": _first(record, "distribution_pattern"),
            "state": _first(record, "state"),
        },
    )


def _map_federal_register(record: dict, source: Source) -> Optional[RawItem]:
    title = _first(record, "title")
    if not title:
        return None
    agencies = record.get("agencies") or []
    agency_name = None
    if agencies and isinstance(agencies[0], dict):
        agency_name = agencies[0].get("name") or agencies[0].get("raw_name")

    return RawItem(
        title=f"{agency_name or source.agency}: {title}",
        description=_first(record, "abstract", "excerpts") or title,
        link=_first(record, "html_url", "pdf_url"),
        published=_first(record, "publication_date"),
        external_id=_first(record, "document_number"),
        extra={"document_type": _first(record, "type"), "agency_name": agency_name},
    )


def _map_epa_echo(record: dict, source: Source) -> Optional[RawItem]:
    title = _first(record, "case_name", "CaseName", "defendant_entity")
    if not title:
        return None
    return RawItem(
        title=title,
        description=_first(record, "case_summary", "CaseSummary") or title,
        link=_first(record, "link", "url"),
        published=_first(record, "action_date", "date_achieved", "SettlementDate", "date_updated"),
        external_id=_first(record, "case_number", "CaseNumber"),
        extra={"media": _first(record, "environmental_media")},
    )


def _map_fsis_recalls(record: dict, source: Source) -> Optional[RawItem]:
    product = _first(record, "field_title", "product_name", "title")
    if not product:
        return None
    risk = _first(record, "field_risk_level", "field_recall_classification", "classification")
    return RawItem(
        title=f"FSIS Recall: {product}",
        description=_first(record, "field_summary", "field_recall_reason", "summary") or product,
        link=_first(record, "field_recall_url", "url", "link"),
        published=_first(record, "field_recall_date", "recall_date", "date"),
        external_id=_first(record, "field_recall_number", "recall_number"),
        urgency_hint=classification_urgency(risk),
        extra={"risk_level": risk, "states": _first(record, "field_states")},
    )


def _map_cdc_outbreaks(record: dict, source: Source) -> Optional[RawItem]:
    pathogen = _first(record, "etiology", "genus", "pathogen")
    state = _first(record, "state") or "Multistate"
    year = _first(record, "year")
    if not pathogen:
        return None
    illnesses = _first(record, "illnesses")
    food = _first(record, "food_vehicle", "food")
    description = f"{pathogen} outbreak in {state}"
    if food:
        description += f" linked to {food}"
    if illnesses:
        description += f"; {illnesses} illnesses reported"

    return RawItem(
        title=f"CDC Outbreak: {pathogen} ({state}{', ' + year if year else ''})",
        description=description + ".",
        link=_first(record, "url", "link"),
        published=_first(record, "date", "updated_at") or (f"{year}-01-01" if year else None),
        external_id=f"CDC-OUTBREAK-{year or 'unknown'}-{state}-{pathogen}".replace(" ", "_"),
        extra={"illnesses": illnesses, "food_vehicle": food},
    )


def _map_generic(record: dict, source: Source) -> Optional[RawItem]:
    title = _first(record, "title", "name", "headline", "product_description", "case_name")
    if not title:
        return None
    return RawItem(
        title=title,
        description=_first(record, "description", "summary", "abstract", "reason_for_recall") or title,
        link=_first(record, "url", "link", "html_url"),
        published=_first(
            record, "published_date", "publication_date", "date", "report_date", "updated_at"
        ),
        external_id=_first(record, "id", "document_number", "recall_number", "case_number"),
        urgency_hint=classification_urgency(_first(record, "classification")),
    )


PROFILES: dict[str, Callable[[dict, Source], Optional[RawItem]]] = {
    "openfda_enforcement": _map_openfda_enforcement,
    "federal_register": _map_federal_register,
    "epa_echo": _map_epa_echo,
    "fsis_recalls": _map_fsis_recalls,
    "cdc_outbreaks": _map_cdc_outbreaks,
    "generic": _map_generic,
}


class JSONAPIParser(FeedParser):
    """Parser for JSON REST endpoints, driven by `source.api_profile`."""

    def parse(
        self,
        content: Union[str, bytes],
        source: Source,
        base_url: Optional[str] = None,
    ) -> list[RawItem]:
        mapper = PROFILES.get(source.api_profile)
        if mapper is None:
            raise ParseError(
                f"Unknown API profile '{source.api_profile}' for {source.name}",
                {"source": source.id},
            )

        try:
            payload = json.loads(content)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ParseError(f"Invalid JSON from {source.name}: {e}", {"source": source.id}) from e

        records = extract_records(payload)

        items = []
        for record in records:
            try:
                item = mapper(record, source)
            except Exception as e:
                logger.warning(f"Failed to map record from {source.name}: {e}")
                continue
            if item:
                item.extra.setdefault("record", record)
                items.append(item)

        if records and not items:
            raise ParseError(
                f"None of {len(records)} records from {source.name} matched profile "
                f"'{source.api_profile}'",
                {"source": source.id},
            )

        logger.debug(f"Parsed {len(items)} records from {source.name}")
        return items
