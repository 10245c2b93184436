"""
Shared fixtures: a fixed clock, recorded sleeps, in-memory storage and
source factories. No test touches the network; HTTP goes through
httpx.MockTransport.
"""

from datetime import datetime, timezone

import httpx
import pytest

from regwatch.models.domain import Source, SourceKind
from regwatch.storage.memory import InMemoryAlertStore

NOW = datetime(2024, 6, 3, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Mutable wall clock for code that takes a `clock` callable."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta):
        self.now = self.now + delta


class FakeMonotonic:
    """Mutable monotonic clock in seconds."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records delays and returns at once."""

    def __init__(self, monotonic: FakeMonotonic = None):
        self.delays: list[float] = []
        self.monotonic = monotonic

    async def __call__(self, seconds: float):
        self.delays.append(seconds)
        if self.monotonic is not None:
            self.monotonic.advance(seconds)


def mock_client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def rss_feed(*items: tuple[str, str], extra: str = "") -> str:
    """Minimal RSS 2.0 document; each item is (title, guid)."""
    body = "".join(
        f"""
        <item>
          <title>{title}</title>
          <link>https://example.gov/{guid}</link>
          <guid>{guid}</guid>
          <description>{title} announced today.</description>
          <pubDate>Mon, 03 Jun 2024 09:00:00 GMT</pubDate>
        </item>"""
        for title, guid in items
    )
    return f"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>Agency feed</title>{extra}{body}</channel></rss>"""


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def sleep():
    return RecordingSleep()


@pytest.fixture
def store():
    return InMemoryAlertStore()


@pytest.fixture
def make_source():
    """Factory for Source objects with test-friendly defaults."""

    def _make(id: str = "fda_recalls", **overrides) -> Source:
        fields = {
            "id": id,
            "name": overrides.pop("name", id.replace("_", " ").title()),
            "agency": "FDA",
            "kind": SourceKind.RSS,
            "urls": [f"https://{id.replace('_', '-')}.example.gov/feed.xml"],
            "polling_interval_minutes": 60,
            "priority": 5,
        }
        fields.update(overrides)
        return Source(**fields)

    return _make
