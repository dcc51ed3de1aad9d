from __future__ import annotations

from collections.abc import Generator
from datetime import datetime, timedelta, timezone

import pytest
import requests
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from nexus_api.ai.discovery import ApifyMapsProvider, DiscoveryService, OracleSearchProvider, ProviderError
from nexus_api.ai.models import AISearchResult
from nexus_api.ai.schemas import DiscoveryEntry, OracleDiscoveryBatch
from nexus_api.core.config import get_settings
from nexus_api.core.database import Base
from nexus_api.crm.models import CRMContact


TENANT = "tenant-a"
T0 = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


class FakeProvider:
    name = "fake"

    def __init__(self, entries: list[DiscoveryEntry] | None = None, error: Exception | None = None) -> None:
        self.entries = entries or []
        self.error = error
        self.configured = True
        self.queries: list[tuple[str, int]] = []

    def search(self, query: str, max_results: int) -> list[DiscoveryEntry]:
        self.queries.append((query, max_results))
        if self.error is not None:
            raise self.error
        return self.entries[:max_results]


class FakeResponse:
    def __init__(self, status_code: int, payload=None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


class FakeHttpSession:
    def __init__(self, response: FakeResponse | None = None, error: Exception | None = None) -> None:
        self.response = response
        self.error = error
        self.calls: list[dict] = []

    def post(self, url, **kwargs):
        self.calls.append({"url": url, **kwargs})
        if self.error is not None:
            raise self.error
        return self.response


def _entries(count: int, prefix: str = "Place") -> list[DiscoveryEntry]:
    return [DiscoveryEntry(title=f"{prefix} {index}", rating=4.5, reviews_count=10) for index in range(count)]


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_settings_cache() -> Generator[None, None, None]:
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_saved_contacts_are_served_first(db_session: Session) -> None:
    for index in range(3):
        db_session.add(
            CRMContact(
                tenant_id=TENANT,
                name=f"Saved Plumber {index}",
                source="Local SEO Discovery",
                custom_fields={"industry": "plumber", "location": "Denver", "rating": "4.8"},
            )
        )
    db_session.commit()
    primary = FakeProvider(_entries(3))
    secondary = FakeProvider(_entries(3, "Oracle"))

    result = DiscoveryService(primary, secondary).search(db_session, TENANT, "plumber", "Denver", count=3, now=T0)

    assert result.data_source == "database"
    assert result.from_database is True
    assert len(result.entries) == 3
    assert result.entries[0].rating == 4.8
    assert primary.queries == []
    assert secondary.queries == []


def test_primary_result_is_cached_and_reused(db_session: Session) -> None:
    primary = FakeProvider(_entries(5))
    secondary = FakeProvider(_entries(5, "Oracle"))
    service = DiscoveryService(primary, secondary)

    first = service.search(db_session, TENANT, "roofer", "Tulsa", now=T0)
    assert first.data_source == "apify"
    assert first.cached is False
    assert primary.queries == [("roofer in Tulsa", 5)]

    second = service.search(db_session, TENANT, "roofer", "Tulsa", now=T0 + timedelta(minutes=90))
    assert second.data_source == "cache"
    assert second.cached is True
    assert second.cache_age_minutes == 90
    assert [entry.title for entry in second.entries] == [entry.title for entry in first.entries]
    assert len(primary.queries) == 1


def test_expired_cache_and_force_refresh_go_to_providers(db_session: Session) -> None:
    primary = FakeProvider(_entries(2))
    service = DiscoveryService(primary, FakeProvider())

    service.search(db_session, TENANT, "florist", "Reno", count=2, now=T0)
    service.search(db_session, TENANT, "florist", "Reno", count=2, now=T0 + timedelta(hours=25))
    service.search(db_session, TENANT, "florist", "Reno", count=2, force_refresh=True, now=T0 + timedelta(hours=25))

    assert len(primary.queries) == 3
    assert db_session.scalar(select(func.count()).select_from(AISearchResult)) == 3


def test_primary_failure_falls_back_to_secondary(db_session: Session) -> None:
    primary = FakeProvider(error=ProviderError("Apify API error 500"))
    secondary = FakeProvider(_entries(2, "Oracle"))

    result = DiscoveryService(primary, secondary).search(db_session, TENANT, "bakery", "Austin", count=2, now=T0)

    assert result.data_source == "oracle"
    assert [entry.title for entry in result.entries] == ["Oracle 0", "Oracle 1"]
    assert "Found 2 bakery businesses in Austin" in result.result_text


def test_empty_primary_falls_back_to_secondary(db_session: Session) -> None:
    secondary = FakeProvider(_entries(1, "Oracle"))

    result = DiscoveryService(FakeProvider([]), secondary).search(db_session, TENANT, "gym", "Boise", now=T0)

    assert result.data_source == "oracle"
    assert len(secondary.queries) == 1


def test_unconfigured_primary_is_skipped(db_session: Session) -> None:
    primary = ApifyMapsProvider(token="", session=FakeHttpSession())
    secondary = FakeProvider(_entries(1, "Oracle"))

    result = DiscoveryService(primary, secondary).search(db_session, TENANT, "cafe", "Omaha", count=99, now=T0)

    assert result.data_source == "oracle"
    assert secondary.queries == [("cafe in Omaha", 50)]
    assert primary.session.calls == []


def test_apify_provider_maps_places() -> None:
    http = FakeHttpSession(
        FakeResponse(
            200,
            [
                {
                    "title": "Ace Plumbing",
                    "totalScore": 4.7,
                    "reviewsCount": 132,
                    "address": "1 Main St",
                    "phone": "+1 555 0100",
                    "website": "https://ace.example",
                    "url": "https://maps.google.com/?cid=1",
                    "categoryName": "Plumber",
                    "categories": ["Plumber", "Contractor"],
                },
                {"title": ""},
                "garbage",
            ],
        )
    )
    provider = ApifyMapsProvider(token="apify-token", session=http, timeout=30)

    places = provider.search("plumber in Denver", 5)

    assert len(places) == 1
    assert places[0].title == "Ace Plumbing"
    assert places[0].rating == 4.7
    assert places[0].reviews_count == 132
    assert places[0].category_name == "Plumber"
    call = http.calls[0]
    assert call["params"] == {"token": "apify-token"}
    assert call["json"]["searchStringsArray"] == ["plumber in Denver"]
    assert call["json"]["maxCrawledPlacesPerSearch"] == 5
    assert call["timeout"] == 30


@pytest.mark.parametrize(
    "http",
    [
        FakeHttpSession(FakeResponse(500, text="internal error")),
        FakeHttpSession(FakeResponse(200, payload=None, text="<html>")),
        FakeHttpSession(FakeResponse(200, payload={"error": "unexpected"})),
        FakeHttpSession(error=requests.Timeout("read timed out")),
        FakeHttpSession(error=requests.ConnectionError("refused")),
    ],
)
def test_apify_provider_errors_become_provider_errors(http: FakeHttpSession) -> None:
    provider = ApifyMapsProvider(token="apify-token", session=http)

    with pytest.raises(ProviderError):
        provider.search("plumber in Denver", 5)


def test_oracle_search_provider_truncates() -> None:
    class ListingOracle:
        def generate_structured(self, system_prompt, prompt, schema):
            assert schema is OracleDiscoveryBatch
            assert "up to 2 businesses" in prompt
            return OracleDiscoveryBatch(entries=_entries(4))

    entries = OracleSearchProvider(ListingOracle()).search("dentist in Miami", 2)

    assert len(entries) == 2
