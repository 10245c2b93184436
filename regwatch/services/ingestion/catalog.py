"""
Built-in source catalog and loading of operator-defined sources.
"""

import json
from pathlib import Path
from typing import Optional, Union

from pydantic import TypeAdapter

from regwatch.models.domain import QuotaPeriod, Source, SourceKind

RECALL_KEYWORDS = [
    "recall", "outbreak", "listeria", "salmonella", "e. coli", "undeclared",
    "contamination", "death", "injury", "urgent", "immediate",
]

ENFORCEMENT_KEYWORDS = [
    "warning", "injunction", "seizure", "consent decree", "violation",
    "emergency", "critical",
]

RULE_KEYWORDS = [
    "final rule", "interim final", "emergency", "immediate", "effective immediately",
]

_FEDERAL_REGISTER = (
    "https://www.federalregister.gov/api/v1/documents.json"
    "?conditions[agencies][]={agency}&order=newest&per_page=20"
)

DEFAULT_SOURCES: list[Source] = [
    # --- FDA -----------------------------------------------------------------
    Source(
        id="fda_recalls",
        name="FDA Recalls, Market Withdrawals & Safety Alerts",
        agency="FDA",
        kind=SourceKind.RSS,
        urls=["https://www.fda.gov/about-fda/contact-fda/stay-informed/rss-feeds/recalls/rss.xml"],
        polling_interval_minutes=30,
        priority=9,
        keywords=RECALL_KEYWORDS,
        scoring_family="recalls",
        freshness_hours=24,
    ),
    Source(
        id="fda_press",
        name="FDA Press Releases",
        agency="FDA",
        kind=SourceKind.RSS,
        urls=["https://www.fda.gov/about-fda/contact-fda/stay-informed/rss-feeds/press-releases/rss.xml"],
        polling_interval_minutes=60,
        priority=6,
        keywords=RECALL_KEYWORDS + ENFORCEMENT_KEYWORDS,
    ),
    Source(
        id="openfda_food_enforcement",
        name="openFDA Food Enforcement Reports",
        agency="FDA",
        kind=SourceKind.API,
        urls=["https://api.fda.gov/food/enforcement.json"],
        params={"sort": "report_date:desc", "limit": 50},
        auth_param="api_key",
        api_profile="openfda_enforcement",
        rate_limit_key="openfda",
        quota_unauthenticated=1000,
        quota_authenticated=120000,
        quota_period=QuotaPeriod.DAY,
        empty_on_404=True,
        fallback_source="fda_recalls",
        polling_interval_minutes=120,
        priority=8,
        keywords=RECALL_KEYWORDS,
        scoring_family="recalls",
        freshness_hours=24 * 7,
    ),
    Source(
        id="openfda_drug_enforcement",
        name="openFDA Drug Enforcement Reports",
        agency="FDA",
        kind=SourceKind.API,
        urls=["https://api.fda.gov/drug/enforcement.json"],
        params={"sort": "report_date:desc", "limit": 50},
        auth_param="api_key",
        api_profile="openfda_enforcement",
        rate_limit_key="openfda",
        quota_unauthenticated=1000,
        quota_authenticated=120000,
        quota_period=QuotaPeriod.DAY,
        empty_on_404=True,
        fallback_source="fda_recalls",
        polling_interval_minutes=120,
        priority=8,
        keywords=RECALL_KEYWORDS,
        scoring_family="recalls",
        freshness_hours=24 * 7,
    ),
    Source(
        id="openfda_device_enforcement",
        name="openFDA Device Enforcement Reports",
        agency="FDA",
        kind=SourceKind.API,
        urls=["https://api.fda.gov/device/enforcement.json"],
        params={"sort": "report_date:desc", "limit": 50},
        auth_param="api_key",
        api_profile="openfda_enforcement",
        rate_limit_key="openfda",
        quota_unauthenticated=1000,
        quota_authenticated=120000,
        quota_period=QuotaPeriod.DAY,
        empty_on_404=True,
        polling_interval_minutes=120,
        priority=8,
        keywords=RECALL_KEYWORDS,
        scoring_family="recalls",
        freshness_hours=24 * 7,
    ),
    Source(
        id="fda_warning_letters",
        name="FDA Warning Letters",
        agency="FDA",
        kind=SourceKind.SCRAPER,
        urls=[
            "https://www.fda.gov/inspections-compliance-enforcement-and-criminal-investigations/"
            "compliance-actions-and-activities/warning-letters"
        ],
        selectors={
            "item": "table tbody tr",
            "title": "td a",
            "link": "td a",
            "date": "td time, td:first-child",
            "description": "td:nth-of-type(4)",
        },
        polling_interval_minutes=360,
        priority=6,
        keywords=ENFORCEMENT_KEYWORDS,
        max_items=20,
    ),
    # --- USDA FSIS -----------------------------------------------------------
    Source(
        id="fsis_recalls",
        name="USDA FSIS Recalls & Public Health Alerts",
        agency="FSIS",
        kind=SourceKind.RSS,
        urls=["https://www.fsis.usda.gov/fsis-content/rss/recalls.xml"],
        include_keywords=["recall", "alert"],
        polling_interval_minutes=30,
        priority=9,
        keywords=["recall", "contamination", "salmonella", "listeria", "e. coli"],
        scoring_family="recalls",
        freshness_hours=12,
    ),
    Source(
        id="fsis_recall_api",
        name="USDA FSIS Recall API",
        agency="FSIS",
        kind=SourceKind.API,
        urls=["https://www.fsis.usda.gov/fsis/api/recall/v/1"],
        api_profile="fsis_recalls",
        polling_interval_minutes=60,
        priority=9,
        keywords=["recall", "contamination", "salmonella", "listeria"],
        scoring_family="recalls",
        is_active=False,
    ),
    # --- CDC -----------------------------------------------------------------
    Source(
        id="cdc_food_safety",
        name="CDC Food Safety Alerts",
        agency="CDC",
        kind=SourceKind.RSS,
        urls=["https://tools.cdc.gov/api/v2/resources/media/316422.rss"],
        polling_interval_minutes=60,
        priority=7,
        keywords=RECALL_KEYWORDS,
        freshness_hours=72,
    ),
    Source(
        id="cdc_outbreaks",
        name="CDC Foodborne Outbreak Data",
        agency="CDC",
        kind=SourceKind.API,
        urls=["https://data.cdc.gov/resource/5xkq-dg7x.json"],
        params={"$limit": 50, "$order": "year DESC"},
        api_profile="cdc_outbreaks",
        polling_interval_minutes=24 * 60,
        priority=5,
        keywords=["outbreak", "hospitalization", "death"],
        is_active=False,
    ),
    # --- Federal Register ----------------------------------------------------
    Source(
        id="federal_register",
        name="Federal Register Rules & Notices",
        agency="Federal Register",
        kind=SourceKind.API,
        urls=[
            _FEDERAL_REGISTER.format(agency="food-and-drug-administration"),
            _FEDERAL_REGISTER.format(agency="food-safety-and-inspection-service"),
            _FEDERAL_REGISTER.format(agency="environmental-protection-agency"),
        ],
        api_profile="federal_register",
        rate_limit_key="federal_register",
        polling_interval_minutes=240,
        priority=7,
        keywords=RULE_KEYWORDS,
        scoring_family="rules",
        request_delay_seconds=0.5,
    ),
    # --- EPA -----------------------------------------------------------------
    Source(
        id="epa_news",
        name="EPA News Releases",
        agency="EPA",
        kind=SourceKind.RSS,
        urls=["https://www.epa.gov/newsreleases/search/rss"],
        polling_interval_minutes=120,
        priority=5,
        keywords=ENFORCEMENT_KEYWORDS + ["pesticide", "drinking water"],
        freshness_hours=48,
    ),
    Source(
        id="epa_echo_cases",
        name="EPA ECHO Enforcement Cases",
        agency="EPA",
        kind=SourceKind.API,
        urls=["https://echodata.epa.gov/echo/case_rest_services.get_cases?output=JSON"],
        api_profile="epa_echo",
        rate_limit_key="epa_echo",
        polling_interval_minutes=24 * 60,
        priority=8,
        keywords=ENFORCEMENT_KEYWORDS,
        scoring_family="rules",
        is_active=False,
    ),
    # --- International -------------------------------------------------------
    Source(
        id="health_canada_recalls",
        name="Health Canada Recalls and Safety Alerts",
        agency="Health Canada",
        region="Canada",
        kind=SourceKind.SCRAPER,
        urls=["https://recalls-rappels.canada.ca/en/search/site"],
        selectors={
            "item": ".search-result, .views-row",
            "title": "h3 a, .title a",
            "link": "h3 a, .title a",
            "date": "time, .ar-date",
            "description": ".ar-summary, p",
        },
        polling_interval_minutes=120,
        priority=6,
        keywords=RECALL_KEYWORDS,
        scoring_family="recalls",
        max_items=20,
    ),
    Source(
        id="efsa_news",
        name="EFSA News",
        agency="EFSA",
        region="EU",
        kind=SourceKind.SCRAPER,
        urls=["https://www.efsa.europa.eu/en/news"],
        selectors={
            "item": ".views-row",
            "title": "h3 a, .news-title a",
            "link": "h3 a, .news-title a",
            "date": "time, .date",
            "description": ".field--name-body, p",
        },
        polling_interval_minutes=240,
        priority=4,
        keywords=["risk", "outbreak", "urgent", "alert"],
        max_items=20,
    ),
]

_source_list = TypeAdapter(list[Source])


def load_sources(path: Union[str, Path]) -> list[Source]:
    """Read source definitions from a JSON file containing a list of objects."""
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return _source_list.validate_python(data)


def get_sources(path: Optional[Union[str, Path]] = None) -> list[Source]:
    """Sources from `path`, or the built-in catalog."""
    if path:
        return load_sources(path)
    return [s.model_copy(deep=True) for s in DEFAULT_SOURCES]


def filter_sources(
    sources: list[Source],
    region: Optional[str] = None,
    agency: Optional[str] = None,
    include_inactive: bool = False,
) -> list[Source]:
    """Active sources matching the region/agency filters (case-insensitive)."""
    selected = []
    for source in sources:
        if not source.is_active and not include_inactive:
            continue
        if region and source.region.lower() != region.lower():
            continue
        if agency and source.agency.lower() != agency.lower():
            continue
        selected.append(source)
    return selected
