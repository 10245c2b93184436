"""
Per-source health derived from time since the last successful fetch.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from regwatch.models.domain import HealthStatus, RunState, RunStatus, Source
from regwatch.storage.base import AlertStore

# Hours without a successful fetch before a source is no longer healthy
AGENCY_FRESHNESS_HOURS = {
    "FDA": 24,
    "FSIS": 12,
    "USDA": 12,
    "EPA": 48,
    "CDC": 72,
}
DEFAULT_FRESHNESS_HOURS = 48


def freshness_threshold(source: Source) -> timedelta:
    hours = source.freshness_hours or AGENCY_FRESHNESS_HOURS.get(
        source.agency.upper(), DEFAULT_FRESHNESS_HOURS
    )
    return timedelta(hours=hours)


def source_health(
    source: Source,
    state: Optional[RunState],
    now: Optional[datetime] = None,
) -> HealthStatus:
    """
    healthy within the freshness threshold, degraded within twice the
    threshold, critical beyond that; unknown if it never succeeded.
    """
    if state is None or state.last_success_at is None:
        return HealthStatus.UNKNOWN

    now = now or datetime.now(timezone.utc)
    age = now - state.last_success_at
    threshold = freshness_threshold(source)

    if age <= threshold:
        return HealthStatus.HEALTHY
    if age <= threshold * 2:
        return HealthStatus.DEGRADED
    return HealthStatus.CRITICAL


def overall_status(statuses: list[HealthStatus]) -> HealthStatus:
    if not statuses:
        return HealthStatus.UNKNOWN
    if HealthStatus.CRITICAL in statuses:
        return HealthStatus.CRITICAL
    if HealthStatus.DEGRADED in statuses or HealthStatus.UNKNOWN in statuses:
        return HealthStatus.DEGRADED
    return HealthStatus.HEALTHY


async def health_report(
    sources: list[Source],
    store: AlertStore,
    now: Optional[datetime] = None,
) -> dict:
    """Health for every source plus an overall status."""
    now = now or datetime.now(timezone.utc)
    entries = []

    for source in sources:
        state = await store.get_run_state(source.id)
        status = source_health(source, state, now)
        entries.append({
            "source_id": source.id,
            "name": source.name,
            "agency": source.agency,
            "status": status.value,
            "last_success_at": state.last_success_at.isoformat() if state and state.last_success_at else None,
            "last_run_at": state.last_run_at.isoformat() if state and state.last_run_at else None,
            "last_error": state.last_error if state and state.last_status == RunStatus.ERROR else None,
            "threshold_hours": freshness_threshold(source).total_seconds() / 3600,
        })

    return {
        "overall_status": overall_status([HealthStatus(e["status"]) for e in entries]).value,
        "checked_at": now.isoformat(),
        "sources": entries,
    }
